import pytest

from sessioncut.models.session_models import ClipRecord, ClipStatus, SourceType


class FakeTime:
    """Manually advanced millisecond clock."""

    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def fake_time() -> FakeTime:
    return FakeTime()


@pytest.fixture
def make_clip():
    """Factory for finalized clip records."""

    def _make(
        clip_id: str,
        owner_id: str,
        source_type: SourceType,
        start_ms: int,
        end_ms: int | None,
        asset_path: str | None = "",
    ) -> ClipRecord:
        if asset_path == "":
            asset_path = f"/recordings/{clip_id}.webm"
        return ClipRecord(
            id=clip_id,
            owner_id=owner_id,
            source_type=source_type,
            global_start_time_ms=start_ms,
            global_end_time_ms=end_ms,
            asset_path=asset_path,
            status=ClipStatus.FINALIZED if end_ms is not None else ClipStatus.RECORDING,
        )

    return _make
