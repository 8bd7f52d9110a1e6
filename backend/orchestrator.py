from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Protocol

from config import OrchestratorSettings, ResilienceSettings
from errors import (
    AnalysisError,
    ClassifierError,
    NoFaceDetected,
    PermissionDenied,
    ResourceTimeout,
)
from models import AnalysisRequest, AnalysisResult, AnalysisRun, FrameClassification, RunPhase
from progress import (
    ANALYSIS_WEIGHT,
    AUTHORIZATION_WEIGHT,
    FINALIZATION_WEIGHT,
    VALIDATION_WEIGHT,
    ProgressChannel,
    ProgressUpdate,
)
from scoring import score_result
from store import SessionStore
from tasks import (
    AnalysisTask,
    ExpressionOutcome,
    ExpressionTask,
    FrameClassifier,
    GazeOutcome,
    GazeTask,
    SpeechOutcome,
    SpeechTask,
    TaskOutcome,
)
from transcription import ResilientTranscriber, TranscriptionService, UsageCounter

logger = logging.getLogger(__name__)


class MediaMetadataProvider(Protocol):
    async def duration(self, video: str) -> float | None: ...


class Strategy(str, Enum):
    CONCURRENT = "concurrent"
    SEQUENTIAL = "sequential"


def select_strategy(duration: float, threshold: float = 180.0) -> Strategy:
    """Long videos run one analysis at a time to bound decoding memory."""
    return Strategy.SEQUENTIAL if duration > threshold else Strategy.CONCURRENT


def face_sample_times(duration: float) -> list[float]:
    """Near the start, the middle, and near the end of the video."""
    return [
        min(2.0, duration * 0.1),
        duration * 0.5,
        max(duration - 2.0, duration * 0.9),
    ]


class AnalysisOrchestrator:
    """Runs face validation, authorization, the three analyses, and scoring.

    One run is active at a time; each `analyze()` call gets a fresh
    `AnalysisRun`. The transcription usage counter outlives runs because the
    backend handle it tracks does too.
    """

    def __init__(
        self,
        classifier: FrameClassifier,
        transcription_service: TranscriptionService,
        media: MediaMetadataProvider,
        store: SessionStore,
        counter: UsageCounter | None = None,
        settings: OrchestratorSettings | None = None,
        resilience: ResilienceSettings | None = None,
    ) -> None:
        self.classifier = classifier
        self.transcription_service = transcription_service
        self.media = media
        self.store = store
        self.counter = counter or UsageCounter()
        self.settings = settings or OrchestratorSettings()
        self.resilience = resilience or ResilienceSettings()
        self.run: AnalysisRun | None = None
        self.transcriber: ResilientTranscriber | None = None
        self._channel: ProgressChannel | None = None
        self._lock = asyncio.Lock()

    def build_tasks(self) -> list[AnalysisTask]:
        self.transcriber = ResilientTranscriber(
            self.transcription_service, self.counter, self.resilience
        )
        return [
            ExpressionTask(self.classifier),
            SpeechTask(self.transcriber),
            GazeTask(self.classifier),
        ]

    async def analyze(
        self, request: AnalysisRequest, channel: ProgressChannel | None = None
    ) -> AnalysisResult:
        run = await self.execute(request, channel)
        return run.result

    async def execute(
        self, request: AnalysisRequest, channel: ProgressChannel | None = None
    ) -> AnalysisRun:
        """Like `analyze`, but hands back the finished run itself."""
        async with self._lock:
            run = AnalysisRun(request=request)
            self.run = run
            self._channel = channel or ProgressChannel()
            logger.info(
                "Run %s started for %s (%.1fs)", run.run_id, request.video, request.duration
            )
            try:
                await self._validate(run)
                await self._authorize(run)
                outcomes = await self._run_tasks(run)
                await self._aggregate(run, outcomes)
                return run
            except AnalysisError as exc:
                self._fail(run, exc)
                raise
            except asyncio.CancelledError:
                self._fail(run, AnalysisError("Analysis was cancelled."))
                raise
            except Exception as exc:
                logger.exception("Run %s failed unexpectedly: %s", run.run_id, exc)
                error = AnalysisError()
                self._fail(run, error)
                raise error from exc
            finally:
                self._channel.close()

    async def _validate(self, run: AnalysisRun) -> None:
        self._enter(run, RunPhase.VALIDATING, "Checking that your face is visible")
        times = face_sample_times(run.request.duration)
        found = 0
        for index, seconds in enumerate(times):
            try:
                present = await self.classifier.detect_face_presence(run.request.video, [seconds])
            except AnalysisError:
                raise
            except Exception as exc:
                raise ClassifierError() from exc
            if present:
                found += 1
            self._advance(
                run,
                VALIDATION_WEIGHT * (index + 1) / len(times),
                f"Checked frame {index + 1} of {len(times)}",
            )

        logger.info("Run %s: face visible in %s/%s samples", run.run_id, found, len(times))
        if found < self.settings.min_face_samples:
            raise NoFaceDetected()

    async def _authorize(self, run: AnalysisRun) -> None:
        self._enter(run, RunPhase.AUTHORIZING, "Requesting speech recognition access")
        try:
            granted = await asyncio.wait_for(
                self.transcription_service.request_permission(),
                timeout=self.settings.permission_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise ResourceTimeout("Speech recognition permission request timed out.") from exc
        if not granted:
            raise PermissionDenied()
        self._advance(run, VALIDATION_WEIGHT + AUTHORIZATION_WEIGHT, "Speech recognition ready")

    async def _run_tasks(self, run: AnalysisRun) -> list[TaskOutcome]:
        strategy = select_strategy(run.request.duration, self.settings.sequential_threshold_seconds)
        self._enter(run, RunPhase.RUNNING, "Analyzing your practice")
        logger.info("Run %s: running analyses (%s)", run.run_id, strategy.value)

        tasks = self.build_tasks()
        if strategy == Strategy.SEQUENTIAL:
            return [await self._run_task(run, task, len(tasks)) for task in tasks]
        return await self._run_concurrently(run, tasks)

    async def _run_concurrently(
        self, run: AnalysisRun, tasks: list[AnalysisTask]
    ) -> list[TaskOutcome]:
        pending = [
            asyncio.create_task(
                self._run_task(run, task, len(tasks)), name=f"{run.run_id}:{task.kind}"
            )
            for task in tasks
        ]
        first_error: BaseException | None = None
        remaining = set(pending)
        try:
            while remaining:
                done, remaining = await asyncio.wait(
                    remaining, return_when=asyncio.FIRST_COMPLETED
                )
                for finished in done:
                    if first_error is None and not finished.cancelled() and finished.exception():
                        first_error = finished.exception()
                if first_error is not None and self.settings.cancel_siblings_on_failure:
                    for sibling in remaining:
                        sibling.cancel()
                    await asyncio.gather(*remaining, return_exceptions=True)
                    remaining = set()
        except asyncio.CancelledError:
            for task in pending:
                task.cancel()
            raise

        if first_error is not None:
            raise first_error
        return [task.result() for task in pending]

    async def _run_task(self, run: AnalysisRun, task: AnalysisTask, task_count: int) -> TaskOutcome:
        if task.kind in run.started_tasks:
            raise RuntimeError(f"{task.kind} analysis already started for run {run.run_id}")
        run.started_tasks.add(task.kind)
        run.task_progress[task.kind] = 0.0

        def report(fraction: float, message: str) -> None:
            self._report_task(run, task.kind, fraction, message, task_count)

        outcome = await task.run(run.request, report)
        self._record(run, outcome)
        report(1.0, f"{task.kind.capitalize()} analysis complete")
        return outcome

    def _report_task(
        self, run: AnalysisRun, kind: str, fraction: float, message: str, task_count: int
    ) -> None:
        if run.phase.is_terminal:
            return
        fraction = min(max(fraction, 0.0), 1.0)
        run.task_progress[kind] = max(run.task_progress.get(kind, 0.0), fraction)
        share = sum(run.task_progress.values()) / task_count
        self._advance(
            run,
            VALIDATION_WEIGHT + AUTHORIZATION_WEIGHT + ANALYSIS_WEIGHT * share,
            message,
            task=kind,
        )

    def _record(self, run: AnalysisRun, outcome: TaskOutcome) -> None:
        if isinstance(outcome, ExpressionOutcome):
            run.expression = FrameClassification(
                positive_count=outcome.positive_count, neutral_count=outcome.neutral_count
            )
        elif isinstance(outcome, SpeechOutcome):
            run.speech = outcome.metrics
            run.transcript = outcome.transcript.text
        elif isinstance(outcome, GazeOutcome):
            run.gaze_score = outcome.gaze_percent

    async def _aggregate(self, run: AnalysisRun, outcomes: list[TaskOutcome]) -> AnalysisResult:
        self._enter(run, RunPhase.AGGREGATING, "Building your assessment")
        expression = next(o for o in outcomes if isinstance(o, ExpressionOutcome))
        speech = next(o for o in outcomes if isinstance(o, SpeechOutcome))
        gaze = next(o for o in outcomes if isinstance(o, GazeOutcome))

        result = AnalysisResult(
            duration=await self._media_duration(run),
            smile_frames=expression.positive_count,
            neutral_frames=expression.neutral_count,
            total_words=speech.metrics.total_words,
            wpm=speech.metrics.wpm,
            filler_counts=dict(speech.metrics.filler_counts),
            gaze_score=gaze.gaze_percent,
            media_ref=run.request.video,
        )
        run.result = result
        run.score = score_result(result)
        self._advance(
            run,
            VALIDATION_WEIGHT + AUTHORIZATION_WEIGHT + ANALYSIS_WEIGHT + FINALIZATION_WEIGHT / 2,
            "Saving your session",
        )

        try:
            session = await asyncio.to_thread(self.store.save, result)
            run.session_id = session.id
        except Exception as exc:
            logger.exception("Run %s: failed to save practice session: %s", run.run_id, exc)

        run.progress = 1.0
        self._enter(run, RunPhase.COMPLETE, f"Analysis complete: {run.score.level.value}")
        logger.info(
            "Run %s complete: score=%s (%s)", run.run_id, run.score.total, run.score.level.value
        )
        return result

    async def _media_duration(self, run: AnalysisRun) -> float:
        try:
            duration = await self.media.duration(run.request.video)
        except Exception as exc:
            logger.warning("Run %s: could not re-read media duration: %s", run.run_id, exc)
            duration = None
        if duration is None or duration <= 0:
            return run.request.duration
        return duration

    def _fail(self, run: AnalysisRun, error: AnalysisError) -> None:
        run.error = error
        run.expression = None
        run.speech = None
        run.transcript = None
        run.gaze_score = None
        run.result = None
        run.score = None
        logger.warning("Run %s failed (%s): %s", run.run_id, error.kind.value, error.message)
        self._enter(run, RunPhase.FAILED, error.message)

    def _enter(self, run: AnalysisRun, phase: RunPhase, message: str) -> None:
        run.phase = phase
        run.status = message
        self._publish(run, message)

    def _advance(self, run: AnalysisRun, progress: float, message: str, task: str | None = None) -> None:
        run.progress = max(run.progress, min(progress, 1.0))
        run.status = message
        self._publish(run, message, task)

    def _publish(self, run: AnalysisRun, message: str, task: str | None = None) -> None:
        if self._channel is None:
            return
        self._channel.publish(
            ProgressUpdate(
                run_id=run.run_id,
                phase=run.phase,
                progress=run.progress,
                message=message,
                task=task,
            )
        )
