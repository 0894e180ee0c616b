from __future__ import annotations

from sessioncut.models.export_models import ExportLayout, SourceRef


def select_layout(camera: SourceRef | None, screen: SourceRef | None) -> ExportLayout:
    """Pick the composition for a segment from the sources that cover it."""
    if screen is not None and camera is not None:
        return ExportLayout.SCREEN_PIP
    if camera is not None:
        return ExportLayout.CAMERA_ONLY
    if screen is not None:
        return ExportLayout.SCREEN_ONLY
    return ExportLayout.BLANK
