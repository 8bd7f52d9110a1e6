from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, computed_field

from errors import AnalysisError


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AnalysisRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    video: str
    duration: float = Field(ge=0)
    created_at: datetime = Field(default_factory=_utcnow)


class AudioRange(BaseModel):
    model_config = ConfigDict(frozen=True)

    source: str
    start: float = Field(ge=0)
    end: float = Field(ge=0)

    @property
    def length(self) -> float:
        return max(0.0, self.end - self.start)


class SamplingPolicy(BaseModel):
    """How densely the frame classifier samples a video."""

    model_config = ConfigDict(frozen=True)

    purpose: str = Field(pattern="^(expression|gaze)$")
    interval_seconds: float = Field(gt=0)
    max_frames: int | None = None

    @classmethod
    def for_expression(cls, duration: float) -> "SamplingPolicy":
        if duration < 30:
            interval = 0.5
        elif duration < 120:
            interval = 1.0
        else:
            interval = 1.5
        return cls(purpose="expression", interval_seconds=interval)

    @classmethod
    def for_gaze(cls, duration: float) -> "SamplingPolicy":
        fps = 1.5 if duration < 60 else 1.0
        return cls(purpose="gaze", interval_seconds=1.0 / fps, max_frames=60)


class FrameClassification(BaseModel):
    positive_count: int = Field(default=0, ge=0)
    neutral_count: int = Field(default=0, ge=0)
    gaze_percent: float | None = None


class SpeechMetrics(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_words: int = Field(default=0, ge=0)
    wpm: float = 0.0
    filler_counts: dict[str, int] = Field(default_factory=dict)

    @property
    def filler_total(self) -> int:
        return sum(self.filler_counts.values())


class TranscriptionMode(str, Enum):
    DIRECT = "direct"
    CONSERVATIVE = "conservative"
    CHUNKED = "chunked"


class AttemptOutcome(str, Enum):
    SUCCESS = "success"
    TIMEOUT = "timeout"
    DEGRADED = "degraded"
    HARD_ERROR = "hard_error"


class TranscriptionAttempt(BaseModel):
    model_config = ConfigDict(frozen=True)

    mode: TranscriptionMode
    timeout: float
    audio: AudioRange
    outcome: AttemptOutcome
    transcript: str | None = None
    detail: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.outcome == AttemptOutcome.SUCCESS


class Transcript(BaseModel):
    """Best-effort transcript plus how much of the audio it actually covers."""

    model_config = ConfigDict(frozen=True)

    text: str = ""
    mode: TranscriptionMode
    covered_seconds: float = Field(default=0.0, ge=0)
    total_seconds: float = Field(default=0.0, ge=0)

    @property
    def complete(self) -> bool:
        return self.covered_seconds >= self.total_seconds


class ConfidenceLevel(str, Enum):
    NERVOUS = "Nervous"
    NEUTRAL = "Neutral"
    CONFIDENT = "Confident"


class ConfidenceScore(BaseModel):
    model_config = ConfigDict(frozen=True)

    smile: int = Field(ge=0, le=2)
    filler: int = Field(ge=0, le=2)
    pace: int = Field(ge=0, le=2)
    gaze: int = Field(ge=0, le=2)

    @computed_field
    @property
    def total(self) -> int:
        return self.smile + self.filler + self.pace + self.gaze

    @computed_field
    @property
    def level(self) -> ConfidenceLevel:
        if self.total >= 7:
            return ConfidenceLevel.CONFIDENT
        if self.total >= 5:
            return ConfidenceLevel.NEUTRAL
        return ConfidenceLevel.NERVOUS


class AnalysisResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    duration: float = Field(ge=0)
    smile_frames: int = Field(ge=0)
    neutral_frames: int = Field(ge=0)
    total_words: int = Field(ge=0)
    wpm: float = Field(ge=0)
    filler_counts: dict[str, int] = Field(default_factory=dict)
    gaze_score: float | None = None
    media_ref: str | None = None


class PracticeSession(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = Field(default_factory=_utcnow)
    result: AnalysisResult


class RunPhase(str, Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    AUTHORIZING = "authorizing"
    RUNNING = "running"
    AGGREGATING = "aggregating"
    COMPLETE = "complete"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RunPhase.COMPLETE, RunPhase.FAILED)


class AnalysisRun(BaseModel):
    """Mutable state of one orchestrator run. Never shared between runs."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    run_id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    request: AnalysisRequest
    phase: RunPhase = RunPhase.IDLE
    progress: float = Field(default=0.0, ge=0.0, le=1.0)
    status: str = "Waiting to start"
    task_progress: dict[str, float] = Field(default_factory=dict)
    started_tasks: set[str] = Field(default_factory=set)

    expression: FrameClassification | None = None
    speech: SpeechMetrics | None = None
    transcript: str | None = None
    gaze_score: float | None = None

    result: AnalysisResult | None = None
    score: ConfidenceScore | None = None
    session_id: str | None = None
    error: AnalysisError | None = None
