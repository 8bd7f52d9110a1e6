from __future__ import annotations

import asyncio
import threading
from collections import defaultdict
from typing import Any

import pytest

from config import OrchestratorSettings, ResilienceSettings
from errors import ClassifierError
from models import AudioRange, FrameClassification, SamplingPolicy
from orchestrator import AnalysisOrchestrator
from store import InMemorySessionStore


class FakeFrameClassifier:
    """Scripted face/expression/gaze classifier that records what it was asked."""

    def __init__(
        self,
        face_presence=(True, True, True),
        positive_count: int = 10,
        neutral_count: int = 20,
        gaze_percent: float | None = 65.0,
        fail_on: str | None = None,
        delay: float = 0.0,
        events: list[str] | None = None,
    ) -> None:
        self.face_presence = list(face_presence)
        self.positive_count = positive_count
        self.neutral_count = neutral_count
        self.gaze_percent = gaze_percent
        self.fail_on = fail_on
        self.delay = delay
        self.events = events if events is not None else []
        self.presence_calls: list[list[float]] = []
        self.policies: list[SamplingPolicy] = []

    async def detect_face_presence(self, video: str, timestamps: list[float]) -> bool:
        self.presence_calls.append(list(timestamps))
        index = len(self.presence_calls) - 1
        return index < len(self.face_presence) and self.face_presence[index]

    async def classify(self, video: str, policy: SamplingPolicy) -> FrameClassification:
        self.policies.append(policy)
        self.events.append(f"{policy.purpose}:start")
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_on == policy.purpose:
            self.events.append(f"{policy.purpose}:error")
            raise ClassifierError()
        self.events.append(f"{policy.purpose}:end")
        if policy.purpose == "gaze":
            return FrameClassification(gaze_percent=self.gaze_percent)
        return FrameClassification(
            positive_count=self.positive_count, neutral_count=self.neutral_count
        )


class FakeTranscriptionService:
    """Transcription backend driven by a script of results.

    Each call consumes the next script entry: strings are returned as the
    transcript, exception instances are raised. Once the script runs out
    every call returns `default`.
    """

    def __init__(
        self,
        script=(),
        default: str = "hello there everyone",
        granted: bool = True,
        permission_delay: float = 0.0,
        delay: float = 0.0,
        events: list[str] | None = None,
    ) -> None:
        self.script = list(script)
        self.default = default
        self.granted = granted
        self.permission_delay = permission_delay
        self.delay = delay
        self.events = events if events is not None else []
        self.calls: list[tuple[AudioRange, float, bool]] = []
        self.resets = 0
        self.cancelled = False

    async def request_permission(self) -> bool:
        if self.permission_delay:
            await asyncio.sleep(self.permission_delay)
        return self.granted

    async def transcribe(self, audio: AudioRange, timeout: float, on_device_only: bool = False) -> str:
        self.calls.append((audio, timeout, on_device_only))
        self.events.append("speech:start")
        if self.delay:
            try:
                await asyncio.sleep(self.delay)
            except asyncio.CancelledError:
                self.cancelled = True
                raise
        step = self.script.pop(0) if self.script else self.default
        if isinstance(step, BaseException):
            raise step
        self.events.append("speech:end")
        return step

    def reset(self) -> None:
        self.resets += 1


class FakeMedia:
    def __init__(self, duration: float | None = None) -> None:
        self.value = duration

    async def duration(self, video: str) -> float | None:
        return self.value


class _Response:
    def __init__(self, data: list[dict[str, Any]]) -> None:
        self.data = data


class _FakeQuery:
    def __init__(self, client: "FakeSupabase", table: str) -> None:
        self.client = client
        self.table = table
        self.action = "select"
        self.payload: dict[str, Any] | None = None
        self.filters = []
        self.ordering: tuple[str, bool] | None = None
        self.row_limit: int | None = None

    def select(self, *columns: str):
        self.action = "select"
        return self

    def insert(self, row: dict[str, Any]):
        self.action = "insert"
        self.payload = row
        return self

    def update(self, values: dict[str, Any]):
        self.action = "update"
        self.payload = values
        return self

    def delete(self):
        self.action = "delete"
        return self

    def eq(self, column: str, value: Any):
        self.filters.append(lambda row: row.get(column) == value)
        return self

    def neq(self, column: str, value: Any):
        self.filters.append(lambda row: row.get(column) != value)
        return self

    def order(self, column: str, desc: bool = False):
        self.ordering = (column, desc)
        return self

    def limit(self, count: int):
        self.row_limit = count
        return self

    def execute(self) -> _Response:
        rows = self.client.tables[self.table]
        if self.action == "insert":
            rows.append(dict(self.payload))
            return _Response([dict(self.payload)])

        matched = [row for row in rows if all(check(row) for check in self.filters)]
        if self.action == "update":
            self.client.updates[self.table].append(dict(self.payload))
            self.client.update_threads.append(threading.current_thread().name)
            for row in matched:
                row.update(self.payload)
            return _Response([dict(row) for row in matched])
        if self.action == "delete":
            rows[:] = [row for row in rows if not any(row is hit for hit in matched)]
            return _Response(matched)

        if self.ordering is not None:
            column, desc = self.ordering
            matched.sort(key=lambda row: row[column], reverse=desc)
        if self.row_limit is not None:
            matched = matched[: self.row_limit]
        return _Response([dict(row) for row in matched])


class FakeSupabase:
    """In-memory stand-in for the parts of the supabase client we call."""

    def __init__(self) -> None:
        self.tables: dict[str, list[dict[str, Any]]] = defaultdict(list)
        self.updates: dict[str, list[dict[str, Any]]] = defaultdict(list)
        self.update_threads: list[str] = []

    def table(self, name: str) -> _FakeQuery:
        return _FakeQuery(self, name)


def fast_resilience(**overrides) -> ResilienceSettings:
    values = {"cooldown_seconds": 0.0, "recovery_pause_seconds": 0.0, "chunk_pause_seconds": 0.0}
    values.update(overrides)
    return ResilienceSettings(**values)


def make_orchestrator(
    classifier: FakeFrameClassifier | None = None,
    service: FakeTranscriptionService | None = None,
    store=None,
    media: FakeMedia | None = None,
    **settings,
) -> AnalysisOrchestrator:
    return AnalysisOrchestrator(
        classifier=classifier or FakeFrameClassifier(),
        transcription_service=service or FakeTranscriptionService(),
        media=media or FakeMedia(),
        store=store if store is not None else InMemorySessionStore(),
        settings=OrchestratorSettings(**settings),
        resilience=fast_resilience(),
    )


@pytest.fixture
def session_store() -> InMemorySessionStore:
    return InMemorySessionStore()


@pytest.fixture
def supabase() -> FakeSupabase:
    return FakeSupabase()
