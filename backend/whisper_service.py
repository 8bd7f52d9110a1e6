from __future__ import annotations

import asyncio
import logging
import shutil
import threading
import time

from config import WHISPER_COMPUTE_TYPE, WHISPER_DEVICE, WHISPER_MODEL
from errors import TranscriptionDegraded, TranscriptionHardError, TranscriptionTimeout
from models import AudioRange

logger = logging.getLogger(__name__)

# Messages from CTranslate2/CUDA that mean the loaded model handle is no
# longer usable and has to be rebuilt.
_DEGRADED_MARKERS = ("out of memory", "cuda", "cublas", "cudnn", "allocation")


def _is_degraded(exc: BaseException) -> bool:
    if isinstance(exc, MemoryError):
        return True
    message = str(exc).lower()
    return isinstance(exc, RuntimeError) and any(marker in message for marker in _DEGRADED_MARKERS)


class WhisperTranscriptionService:
    """faster-whisper backend for the resilient transcriber.

    The model handle is created lazily and dropped on `reset()`. Each call
    decodes only the requested time range and gives up cooperatively once
    its timeout budget is spent.
    """

    def __init__(
        self,
        model_name: str = WHISPER_MODEL,
        device: str = WHISPER_DEVICE,
        compute_type: str = WHISPER_COMPUTE_TYPE,
    ) -> None:
        self.model_name = model_name
        self.device = device
        self.compute_type = compute_type
        self._model = None
        self._model_local_only: bool | None = None
        self._lock = threading.Lock()

    def _get_model(self, local_files_only: bool = False):
        from faster_whisper import WhisperModel

        with self._lock:
            if self._model is None or self._model_local_only != local_files_only:
                logger.info(
                    "Loading Whisper model %s (device=%s, local_only=%s)",
                    self.model_name,
                    self.device,
                    local_files_only,
                )
                self._model = WhisperModel(
                    self.model_name,
                    device=self.device,
                    compute_type=self.compute_type,
                    local_files_only=local_files_only,
                )
                self._model_local_only = local_files_only
            return self._model

    def reset(self) -> None:
        with self._lock:
            if self._model is not None:
                logger.info("Discarding Whisper model handle")
            self._model = None
            self._model_local_only = None

    async def request_permission(self) -> bool:
        if shutil.which("ffmpeg") is None:
            logger.warning("ffmpeg is not installed or not on PATH. Transcription is not available.")
            return False
        try:
            await asyncio.to_thread(self._get_model)
        except Exception as exc:
            logger.exception("Whisper model could not be loaded: %s", exc)
            return False
        return True

    async def transcribe(
        self, audio: AudioRange, timeout: float, on_device_only: bool = False
    ) -> str:
        cancelled = threading.Event()
        try:
            return await asyncio.to_thread(
                self._transcribe_sync, audio, timeout, on_device_only, cancelled
            )
        except asyncio.CancelledError:
            # The worker thread cannot be interrupted; ask it to stop at the
            # next segment boundary instead.
            cancelled.set()
            raise

    def _transcribe_sync(
        self,
        audio: AudioRange,
        timeout: float,
        on_device_only: bool,
        cancelled: threading.Event,
    ) -> str:
        deadline = time.monotonic() + timeout
        try:
            model = self._get_model(local_files_only=on_device_only)
            segments, _ = model.transcribe(
                audio.source,
                clip_timestamps=[audio.start, audio.end],
                condition_on_previous_text=False,
            )

            parts: list[str] = []
            for segment in segments:
                if cancelled.is_set():
                    raise TranscriptionTimeout("transcription cancelled")
                if time.monotonic() > deadline:
                    raise TranscriptionTimeout(
                        f"no final transcript for {audio.start:.1f}-{audio.end:.1f}s within {timeout:.0f}s"
                    )
                text = (segment.text or "").strip()
                if text:
                    parts.append(text)
            return " ".join(parts)
        except TranscriptionTimeout:
            raise
        except Exception as exc:
            if _is_degraded(exc):
                raise TranscriptionDegraded(str(exc)) from exc
            raise TranscriptionHardError(str(exc)) from exc
