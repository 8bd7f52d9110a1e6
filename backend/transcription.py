from __future__ import annotations

import asyncio
import logging
import math
import threading
from enum import Enum
from typing import Callable, Protocol

from config import ResilienceSettings
from errors import (
    ResourceTimeout,
    ServiceUnavailable,
    TranscriptionDegraded,
    TranscriptionHardError,
    TranscriptionTimeout,
    VideoTooLong,
)
from models import (
    AttemptOutcome,
    AudioRange,
    Transcript,
    TranscriptionAttempt,
    TranscriptionMode,
)

logger = logging.getLogger(__name__)

ProgressReporter = Callable[[float, str], None]


class TranscriptionService(Protocol):
    async def request_permission(self) -> bool: ...

    async def transcribe(
        self, audio: AudioRange, timeout: float, on_device_only: bool = False
    ) -> str: ...

    def reset(self) -> None: ...


class UsageCounter:
    """Counts transcription attempts since the backend handle was last recreated."""

    def __init__(self) -> None:
        self._uses = 0
        self._lock = threading.Lock()

    @property
    def uses(self) -> int:
        with self._lock:
            return self._uses

    def record_use(self) -> int:
        with self._lock:
            self._uses += 1
            return self._uses

    def reset(self) -> None:
        with self._lock:
            self._uses = 0


class TranscriberState(str, Enum):
    READY = "ready"
    DIRECT = "direct"
    RECOVERING = "recovering"
    CONSERVATIVE = "conservative"
    CHUNKING = "chunking"
    DONE = "done"
    FAILED = "failed"


def chunk_windows(source: str, duration: float, chunk_seconds: float) -> list[AudioRange]:
    count = max(1, math.ceil(duration / chunk_seconds))
    return [
        AudioRange(
            source=source,
            start=index * chunk_seconds,
            end=min((index + 1) * chunk_seconds, duration),
        )
        for index in range(count)
    ]


class ResilientTranscriber:
    """Wraps an unreliable transcription backend with timeouts and recovery.

    Ordinary timeouts and hard errors fail fast. A degraded-service signal
    triggers one handle reset and a conservative retry; if that also fails,
    clips longer than a minute fall back to transcribing fixed windows one
    by one and accept the result when enough windows succeed.
    """

    def __init__(
        self,
        service: TranscriptionService,
        counter: UsageCounter | None = None,
        settings: ResilienceSettings | None = None,
    ) -> None:
        self.service = service
        self.counter = counter or UsageCounter()
        self.settings = settings or ResilienceSettings()
        self.state = TranscriberState.READY
        self.attempts: list[TranscriptionAttempt] = []

    def direct_timeout(self, duration: float) -> float:
        s = self.settings
        if duration > s.long_video_threshold_seconds:
            return s.long_video_timeout
        return min(max(duration + s.direct_padding_seconds, s.direct_min_timeout), s.direct_max_timeout)

    def conservative_timeout(self, window: AudioRange) -> float:
        s = self.settings
        return min(window.length + s.direct_padding_seconds, s.conservative_timeout_cap)

    async def transcribe(
        self,
        source: str,
        duration: float,
        report: ProgressReporter | None = None,
    ) -> Transcript:
        s = self.settings
        if duration > s.max_duration_seconds:
            self._enter(TranscriberState.FAILED)
            raise VideoTooLong()

        try:
            return await self._run(source, duration, report)
        except Exception:
            self._enter(TranscriberState.FAILED)
            raise

    async def _run(
        self, source: str, duration: float, report: ProgressReporter | None
    ) -> Transcript:
        s = self.settings
        self._enter(TranscriberState.DIRECT)
        full = AudioRange(source=source, start=0.0, end=duration)
        _notify(report, 0.1, "Transcribing speech")

        attempt = await self._attempt(TranscriptionMode.DIRECT, full, self.direct_timeout(duration))
        if attempt.succeeded:
            return self._finish(attempt.transcript, TranscriptionMode.DIRECT, duration, duration)
        if attempt.outcome == AttemptOutcome.TIMEOUT:
            raise ResourceTimeout("Speech transcription timed out.")
        if attempt.outcome == AttemptOutcome.HARD_ERROR:
            raise ServiceUnavailable(f"Speech transcription failed: {attempt.detail}")

        logger.warning("Transcription service degraded; recreating handle and retrying")
        self._enter(TranscriberState.RECOVERING)
        await self._reset_handle(s.recovery_pause_seconds)
        _notify(report, 0.3, "Recovering speech recognizer")

        self._enter(TranscriberState.CONSERVATIVE)
        window = AudioRange(
            source=source, start=0.0, end=min(duration, s.conservative_window_seconds)
        )
        attempt = await self._attempt(
            TranscriptionMode.CONSERVATIVE,
            window,
            self.conservative_timeout(window),
            on_device_only=True,
        )
        if attempt.succeeded:
            logger.info("Transcription service recovered after degradation")
            return self._finish(
                attempt.transcript, TranscriptionMode.CONSERVATIVE, window.length, duration
            )

        if duration <= s.chunk_fallback_min_duration:
            raise ServiceUnavailable(
                "Speech recognition is unavailable after recovery. Please try again later."
            )
        return await self._transcribe_chunks(source, duration, report)

    async def _transcribe_chunks(
        self, source: str, duration: float, report: ProgressReporter | None
    ) -> Transcript:
        s = self.settings
        self._enter(TranscriberState.CHUNKING)
        windows = chunk_windows(source, duration, s.chunk_seconds)
        logger.info("Falling back to chunked transcription (%s windows)", len(windows))

        parts: list[str] = []
        successes = 0
        covered = 0.0
        for index, window in enumerate(windows):
            if index and s.chunk_pause_seconds > 0:
                await asyncio.sleep(s.chunk_pause_seconds)

            attempt = await self._attempt(
                TranscriptionMode.CHUNKED, window, s.chunk_timeout, on_device_only=True
            )
            if attempt.succeeded:
                successes += 1
                covered += window.length
                text = (attempt.transcript or "").strip()
                if text:
                    parts.append(text)
            elif attempt.outcome == AttemptOutcome.DEGRADED:
                await self._reset_handle(s.recovery_pause_seconds)

            _notify(
                report,
                0.4 + 0.6 * (index + 1) / len(windows),
                f"Transcribed chunk {index + 1} of {len(windows)}",
            )

        ratio = successes / len(windows)
        if ratio < s.min_chunk_success_ratio:
            logger.warning(
                "Chunked transcription insufficient: %s/%s windows succeeded",
                successes,
                len(windows),
            )
            raise ServiceUnavailable(
                "Speech recognition is unavailable. Too little of the audio could be transcribed."
            )
        return self._finish(" ".join(parts), TranscriptionMode.CHUNKED, covered, duration)

    async def _attempt(
        self,
        mode: TranscriptionMode,
        audio: AudioRange,
        timeout: float,
        on_device_only: bool = False,
    ) -> TranscriptionAttempt:
        if self.counter.uses >= self.settings.reset_every_uses:
            logger.info("Resetting transcription handle after %s uses", self.counter.uses)
            await self._reset_handle(self.settings.cooldown_seconds)

        transcript: str | None = None
        detail: str | None = None
        try:
            transcript = await asyncio.wait_for(
                self.service.transcribe(audio, timeout=timeout, on_device_only=on_device_only),
                timeout=timeout,
            )
            outcome = AttemptOutcome.SUCCESS
        except (asyncio.TimeoutError, TranscriptionTimeout):
            outcome = AttemptOutcome.TIMEOUT
            detail = f"no final transcript within {timeout:.0f}s"
        except TranscriptionDegraded as exc:
            outcome = AttemptOutcome.DEGRADED
            detail = str(exc) or "degraded-service signal"
        except TranscriptionHardError as exc:
            outcome = AttemptOutcome.HARD_ERROR
            detail = str(exc) or exc.__class__.__name__
        except Exception as exc:
            logger.warning("Unexpected transcription backend error: %s", exc, exc_info=True)
            outcome = AttemptOutcome.HARD_ERROR
            detail = str(exc) or exc.__class__.__name__
        finally:
            self.counter.record_use()

        attempt = TranscriptionAttempt(
            mode=mode,
            timeout=timeout,
            audio=audio,
            outcome=outcome,
            transcript=(transcript or "") if outcome == AttemptOutcome.SUCCESS else None,
            detail=detail,
        )
        self.attempts.append(attempt)
        logger.info(
            "Transcription attempt mode=%s range=%.1f-%.1fs timeout=%.0fs outcome=%s",
            mode.value,
            audio.start,
            audio.end,
            timeout,
            outcome.value,
        )
        return attempt

    async def _reset_handle(self, pause: float) -> None:
        self.service.reset()
        self.counter.reset()
        if pause > 0:
            await asyncio.sleep(pause)

    def _finish(
        self, text: str | None, mode: TranscriptionMode, covered: float, total: float
    ) -> Transcript:
        self._enter(TranscriberState.DONE)
        return Transcript(
            text=text or "", mode=mode, covered_seconds=covered, total_seconds=total
        )

    def _enter(self, state: TranscriberState) -> None:
        if state != self.state:
            logger.debug("Transcriber %s -> %s", self.state.value, state.value)
            self.state = state


def _notify(report: ProgressReporter | None, fraction: float, message: str) -> None:
    if report is not None:
        report(fraction, message)
