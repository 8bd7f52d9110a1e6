from __future__ import annotations

import asyncio
import logging
import shutil
import subprocess
import tempfile
from pathlib import Path

from fastapi import HTTPException, UploadFile

logger = logging.getLogger(__name__)

UPLOAD_CHUNK_BYTES = 1024 * 1024
FFPROBE_TIMEOUT_SECONDS = 15.0


def _ffprobe_command(binary: str, media_path: Path) -> list[str]:
    return [
        binary,
        "-v",
        "error",
        "-show_entries",
        "format=duration",
        "-of",
        "default=noprint_wrappers=1:nokey=1",
        str(media_path),
    ]


def detect_media_duration_seconds(media_path: Path) -> tuple[float | None, list[str]]:
    """Container duration from ffprobe, plus notes explaining a missing value."""
    binary = shutil.which("ffprobe")
    if binary is None:
        return None, ["ffprobe not found. Could not auto-detect media duration."]

    try:
        completed = subprocess.run(
            _ffprobe_command(binary, media_path),
            check=True,
            capture_output=True,
            text=True,
            timeout=FFPROBE_TIMEOUT_SECONDS,
        )
        duration = float(completed.stdout.strip())
    except subprocess.TimeoutExpired:
        return None, [f"ffprobe did not answer within {FFPROBE_TIMEOUT_SECONDS:.0f}s."]
    except (subprocess.CalledProcessError, ValueError) as exc:
        logger.exception("ffprobe duration detection failed for %s: %s", media_path, exc)
        return None, ["ffprobe failed to read media duration."]

    if duration <= 0:
        return None, ["ffprobe returned non-positive duration."]
    return duration, []


class FFprobeMetadataProvider:
    """Re-reads the duration of a stored practice video."""

    async def duration(self, video: str) -> float | None:
        detected, notes = await asyncio.to_thread(detect_media_duration_seconds, Path(video))
        for note in notes:
            logger.warning("%s (%s)", note, video)
        return detected


def ensure_supported_media(upload: UploadFile) -> None:
    content_type = (upload.content_type or "").lower()
    if content_type and not content_type.startswith(("video/", "audio/")):
        raise HTTPException(status_code=400, detail="Upload must be an audio or video file.")


def save_upload_to_temp(upload: UploadFile) -> Path:
    # Practice recordings default to QuickTime when the client sends no name.
    suffix = Path(upload.filename or "").suffix or ".mov"
    with tempfile.NamedTemporaryFile(delete=False, suffix=suffix) as tmp_file:
        shutil.copyfileobj(upload.file, tmp_file, UPLOAD_CHUNK_BYTES)
        return Path(tmp_file.name)
