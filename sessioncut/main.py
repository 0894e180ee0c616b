import logging
import os
from pathlib import Path

from dotenv import load_dotenv

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from sessioncut import __version__
from sessioncut.handlers.export_handler import router as export_router
from sessioncut.handlers.health_handler import router as health_router

ROOT_DIR = Path(__file__).resolve().parents[1]
load_dotenv(ROOT_DIR / ".env")

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT)

# Loggers whose output is mirrored to SESSIONCUT_LOG_FILE
EXPORT_LOGGERS = (
    "ffmpeg-renderer",
    "sessioncut.handlers.export_handler",
    "sessioncut.operators.export_operator",
    "sessioncut.operators.timeline_segmenter",
)


def _attach_file_handler(
    logger_name: str,
    log_file_path: Path,
    level_name: str | None = None,
) -> None:
    level = getattr(logging, (level_name or LOG_LEVEL).upper(), logging.INFO)
    target = logging.getLogger(logger_name)
    target.setLevel(level)

    already_attached = any(
        getattr(handler, "baseFilename", None) == str(log_file_path)
        for handler in target.handlers
    )
    if already_attached:
        return

    log_file_path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(log_file_path, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    target.addHandler(handler)


def configure_export_log() -> Path | None:
    """Mirror export logs to a file when SESSIONCUT_LOG_FILE is set."""
    raw_path = os.getenv("SESSIONCUT_LOG_FILE", "").strip()
    if not raw_path:
        return None

    log_path = Path(raw_path)
    if not log_path.is_absolute():
        log_path = ROOT_DIR / log_path
    level_name = os.getenv("SESSIONCUT_LOG_LEVEL", "").strip() or None
    for name in EXPORT_LOGGERS:
        _attach_file_handler(name, log_path, level_name=level_name)
    return log_path


def cors_origins() -> list[str]:
    raw = os.getenv("CORS_ORIGINS", "http://localhost:3000,http://localhost:5173")
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


configure_export_log()

app = FastAPI(title="sessioncut", version=__version__)


app.include_router(health_router)
app.include_router(export_router)

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

if __name__ == "__main__":
    uvicorn.run(app, host=os.getenv("HOST", "0.0.0.0"), port=int(os.getenv("PORT", "8000")))
