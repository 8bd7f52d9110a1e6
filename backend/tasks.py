from __future__ import annotations

import logging
from typing import Callable, Literal, Protocol, Union

from pydantic import BaseModel

from errors import AnalysisError, ClassifierError
from fillers import build_speech_metrics
from models import AnalysisRequest, FrameClassification, SamplingPolicy, SpeechMetrics, Transcript
from transcription import ResilientTranscriber

logger = logging.getLogger(__name__)

TaskReporter = Callable[[float, str], None]


class FrameClassifier(Protocol):
    async def detect_face_presence(self, video: str, timestamps: list[float]) -> bool: ...

    async def classify(self, video: str, policy: SamplingPolicy) -> FrameClassification: ...


class ExpressionOutcome(BaseModel):
    kind: Literal["expression"] = "expression"
    positive_count: int
    neutral_count: int


class SpeechOutcome(BaseModel):
    kind: Literal["speech"] = "speech"
    transcript: Transcript
    metrics: SpeechMetrics


class GazeOutcome(BaseModel):
    kind: Literal["gaze"] = "gaze"
    gaze_percent: float | None = None


TaskOutcome = Union[ExpressionOutcome, SpeechOutcome, GazeOutcome]


class AnalysisTask:
    """One of the three analyses run over the same video."""

    kind: str = ""

    async def run(self, request: AnalysisRequest, report: TaskReporter) -> TaskOutcome:
        raise NotImplementedError


async def _classify(
    classifier: FrameClassifier, request: AnalysisRequest, policy: SamplingPolicy
) -> FrameClassification:
    try:
        return await classifier.classify(request.video, policy)
    except AnalysisError:
        raise
    except Exception as exc:
        raise ClassifierError() from exc


class ExpressionTask(AnalysisTask):
    kind = "expression"

    def __init__(self, classifier: FrameClassifier) -> None:
        self.classifier = classifier

    async def run(self, request: AnalysisRequest, report: TaskReporter) -> ExpressionOutcome:
        report(0.05, "Analyzing facial expression")
        classification = await _classify(
            self.classifier, request, SamplingPolicy.for_expression(request.duration)
        )
        return ExpressionOutcome(
            positive_count=classification.positive_count,
            neutral_count=classification.neutral_count,
        )


class SpeechTask(AnalysisTask):
    kind = "speech"

    def __init__(self, transcriber: ResilientTranscriber) -> None:
        self.transcriber = transcriber

    async def run(self, request: AnalysisRequest, report: TaskReporter) -> SpeechOutcome:
        report(0.05, "Preparing speech recognition")
        transcript = await self.transcriber.transcribe(request.video, request.duration, report)
        spoken_seconds = request.duration
        if not transcript.complete:
            logger.warning(
                "Transcript covers %.1fs of %.1fs (%s)",
                transcript.covered_seconds,
                transcript.total_seconds,
                transcript.mode.value,
            )
            # Rates are taken over the audio that was actually transcribed.
            spoken_seconds = transcript.covered_seconds
        return SpeechOutcome(
            transcript=transcript,
            metrics=build_speech_metrics(transcript.text, spoken_seconds),
        )


class GazeTask(AnalysisTask):
    kind = "gaze"

    def __init__(self, classifier: FrameClassifier) -> None:
        self.classifier = classifier

    async def run(self, request: AnalysisRequest, report: TaskReporter) -> GazeOutcome:
        report(0.05, "Analyzing eye contact")
        classification = await _classify(
            self.classifier, request, SamplingPolicy.for_gaze(request.duration)
        )
        return GazeOutcome(gaze_percent=classification.gaze_percent)
