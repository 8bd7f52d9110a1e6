import asyncio

import pytest

from conftest import FakeFrameClassifier, FakeMedia, FakeTranscriptionService, make_orchestrator
from errors import (
    ClassifierError,
    NoFaceDetected,
    PermissionDenied,
    ResourceTimeout,
    ServiceUnavailable,
    TranscriptionDegraded,
    TranscriptionHardError,
    TranscriptionTimeout,
    VideoTooLong,
)
from models import AnalysisRequest, AnalysisRun, RunPhase
from orchestrator import Strategy, face_sample_times, select_strategy
from progress import ProgressChannel
from scoring import score_result
from tasks import GazeTask


def _request(duration: float = 45.0) -> AnalysisRequest:
    return AnalysisRequest(video="talk.mov", duration=duration)


@pytest.mark.parametrize(
    "duration, strategy",
    [(179, Strategy.CONCURRENT), (180, Strategy.CONCURRENT), (181, Strategy.SEQUENTIAL)],
)
def test_select_strategy(duration, strategy):
    assert select_strategy(duration) == strategy


def test_face_sample_times():
    assert face_sample_times(45.0) == [2.0, 22.5, 43.0]
    assert face_sample_times(10.0) == [1.0, 5.0, 9.0]


def test_short_video_runs_analyses_concurrently():
    events: list[str] = []
    orchestrator = make_orchestrator(
        classifier=FakeFrameClassifier(delay=0.01, events=events),
        service=FakeTranscriptionService(delay=0.01, events=events),
    )

    asyncio.run(orchestrator.analyze(_request(179.0)))

    assert sorted(events[:3]) == ["expression:start", "gaze:start", "speech:start"]
    assert len(events) == 6


def test_long_video_runs_analyses_one_at_a_time():
    events: list[str] = []
    orchestrator = make_orchestrator(
        classifier=FakeFrameClassifier(delay=0.01, events=events),
        service=FakeTranscriptionService(delay=0.01, events=events),
    )

    asyncio.run(orchestrator.analyze(_request(181.0)))

    assert events == [
        "expression:start",
        "expression:end",
        "speech:start",
        "speech:end",
        "gaze:start",
        "gaze:end",
    ]


def test_complete_run_produces_result_score_and_session(session_store):
    orchestrator = make_orchestrator(store=session_store, media=FakeMedia(44.5))

    result = asyncio.run(orchestrator.analyze(_request(45.0)))

    run = orchestrator.run
    assert run.phase == RunPhase.COMPLETE
    assert run.progress == 1.0
    assert result.duration == 44.5
    assert result.smile_frames == 10
    assert result.neutral_frames == 20
    assert result.total_words == 3
    assert result.gaze_score == 65.0
    assert result.media_ref == "talk.mov"
    assert run.score == score_result(result)
    assert run.transcript == "hello there everyone"

    sessions = session_store.fetch_all()
    assert [session.id for session in sessions] == [run.session_id]
    assert sessions[0].result == result


def test_media_duration_falls_back_to_request():
    orchestrator = make_orchestrator(media=FakeMedia(None))
    result = asyncio.run(orchestrator.analyze(_request(45.0)))
    assert result.duration == 45.0


def test_failed_save_does_not_fail_the_run():
    class BrokenStore:
        def save(self, result):
            raise RuntimeError("database is down")

    orchestrator = make_orchestrator(store=BrokenStore())
    asyncio.run(orchestrator.analyze(_request()))

    assert orchestrator.run.phase == RunPhase.COMPLETE
    assert orchestrator.run.session_id is None


def test_face_visible_in_two_of_three_samples_is_enough():
    classifier = FakeFrameClassifier(face_presence=(True, False, True))
    orchestrator = make_orchestrator(classifier=classifier)

    asyncio.run(orchestrator.analyze(_request()))

    assert orchestrator.run.phase == RunPhase.COMPLETE
    assert len(classifier.presence_calls) == 3


def test_no_face_fails_before_any_analysis(session_store):
    classifier = FakeFrameClassifier(face_presence=(True, False, False))
    service = FakeTranscriptionService()
    orchestrator = make_orchestrator(classifier=classifier, service=service, store=session_store)

    with pytest.raises(NoFaceDetected) as excinfo:
        asyncio.run(orchestrator.analyze(_request()))

    assert excinfo.value.redo_recording
    assert orchestrator.run.phase == RunPhase.FAILED
    assert orchestrator.run.error is excinfo.value
    assert classifier.events == []
    assert service.calls == []
    assert session_store.fetch_all() == []


def test_permission_denied():
    classifier = FakeFrameClassifier()
    orchestrator = make_orchestrator(
        classifier=classifier, service=FakeTranscriptionService(granted=False)
    )

    with pytest.raises(PermissionDenied):
        asyncio.run(orchestrator.analyze(_request()))

    assert orchestrator.run.phase == RunPhase.FAILED
    assert classifier.events == []


def test_permission_request_times_out():
    orchestrator = make_orchestrator(
        service=FakeTranscriptionService(permission_delay=1.0),
        permission_timeout_seconds=0.01,
    )

    with pytest.raises(ResourceTimeout):
        asyncio.run(orchestrator.analyze(_request()))


def test_task_failure_discards_partials_and_cancels_siblings(session_store):
    classifier = FakeFrameClassifier(fail_on="expression", delay=0.01)
    service = FakeTranscriptionService(delay=5.0)
    orchestrator = make_orchestrator(classifier=classifier, service=service, store=session_store)

    with pytest.raises(ClassifierError):
        asyncio.run(orchestrator.analyze(_request()))

    run = orchestrator.run
    assert run.phase == RunPhase.FAILED
    assert run.expression is None
    assert run.speech is None
    assert run.gaze_score is None
    assert run.result is None
    assert run.score is None
    assert service.cancelled
    assert session_store.fetch_all() == []


def test_progress_never_decreases():
    orchestrator = make_orchestrator(
        classifier=FakeFrameClassifier(delay=0.01),
        service=FakeTranscriptionService(delay=0.01),
    )

    async def scenario():
        channel = ProgressChannel()
        await orchestrator.analyze(_request(), channel)
        return [update async for update in channel]

    updates = asyncio.run(scenario())

    progress = [update.progress for update in updates]
    assert progress == sorted(progress)
    assert updates[-1].phase == RunPhase.COMPLETE
    assert updates[-1].progress == 1.0
    phases = []
    for update in updates:
        if not phases or phases[-1] != update.phase:
            phases.append(update.phase)
    assert phases == [
        RunPhase.VALIDATING,
        RunPhase.AUTHORIZING,
        RunPhase.RUNNING,
        RunPhase.AGGREGATING,
        RunPhase.COMPLETE,
    ]


def test_each_call_gets_a_fresh_run():
    orchestrator = make_orchestrator()

    asyncio.run(orchestrator.analyze(_request()))
    first = orchestrator.run
    asyncio.run(orchestrator.analyze(_request()))
    second = orchestrator.run

    assert first is not second
    assert first.run_id != second.run_id
    assert first.phase == RunPhase.COMPLETE
    assert second.started_tasks == {"expression", "speech", "gaze"}


def test_a_task_cannot_start_twice_in_one_run():
    orchestrator = make_orchestrator()
    run = AnalysisRun(request=_request())
    task = GazeTask(orchestrator.classifier)

    async def scenario():
        await orchestrator._run_task(run, task, 3)
        await orchestrator._run_task(run, task, 3)

    with pytest.raises(RuntimeError):
        asyncio.run(scenario())


@pytest.mark.parametrize(
    "backend_error, expected",
    [(TranscriptionHardError(), ServiceUnavailable), (TranscriptionTimeout(), ResourceTimeout)],
)
def test_terminal_speech_failure_fails_the_run(backend_error, expected, session_store):
    classifier = FakeFrameClassifier(delay=0.05)
    service = FakeTranscriptionService(script=[backend_error])
    orchestrator = make_orchestrator(classifier=classifier, service=service, store=session_store)

    with pytest.raises(expected):
        asyncio.run(orchestrator.analyze(_request()))

    run = orchestrator.run
    assert run.phase == RunPhase.FAILED
    assert isinstance(run.error, expected)
    assert run.expression is None
    assert run.speech is None
    assert run.transcript is None
    assert run.gaze_score is None
    assert run.result is None
    assert session_store.fetch_all() == []


def test_siblings_finish_but_are_discarded_when_not_cancelled(session_store):
    events: list[str] = []
    classifier = FakeFrameClassifier(fail_on="expression", delay=0.01, events=events)
    service = FakeTranscriptionService(delay=0.05, events=events)
    orchestrator = make_orchestrator(
        classifier=classifier,
        service=service,
        store=session_store,
        cancel_siblings_on_failure=False,
    )

    with pytest.raises(ClassifierError):
        asyncio.run(orchestrator.analyze(_request()))

    run = orchestrator.run
    assert not service.cancelled
    assert "speech:end" in events
    assert "gaze:end" in events
    assert run.phase == RunPhase.FAILED
    assert run.speech is None
    assert run.transcript is None
    assert run.gaze_score is None
    assert session_store.fetch_all() == []


def test_sequential_failure_stops_later_analyses(session_store):
    events: list[str] = []
    classifier = FakeFrameClassifier(fail_on="expression", events=events)
    service = FakeTranscriptionService(events=events)
    orchestrator = make_orchestrator(classifier=classifier, service=service, store=session_store)

    with pytest.raises(ClassifierError):
        asyncio.run(orchestrator.analyze(_request(181.0)))

    assert events == ["expression:start", "expression:error"]
    assert service.calls == []
    assert orchestrator.run.phase == RunPhase.FAILED
    assert session_store.fetch_all() == []


def test_video_over_five_minutes_fails_in_speech_analysis():
    events: list[str] = []
    service = FakeTranscriptionService(events=events)
    orchestrator = make_orchestrator(
        classifier=FakeFrameClassifier(events=events), service=service
    )

    with pytest.raises(VideoTooLong):
        asyncio.run(orchestrator.analyze(_request(301.0)))

    assert orchestrator.run.phase == RunPhase.FAILED
    assert service.calls == []
    assert "gaze:start" not in events


def test_partial_transcript_rates_use_the_transcribed_window():
    words = " ".join(f"word{i}" for i in range(130))
    service = FakeTranscriptionService(script=[TranscriptionDegraded(), words])
    orchestrator = make_orchestrator(service=service)

    result = asyncio.run(orchestrator.analyze(_request(150.0)))

    # The conservative retry covers the first 60 seconds only.
    assert result.total_words == 130
    assert result.wpm == 130.0
    assert service.calls[1][0].end == 60.0


def test_cancelled_run_is_marked_failed(session_store):
    orchestrator = make_orchestrator(
        service=FakeTranscriptionService(delay=5.0), store=session_store
    )

    async def scenario():
        analysis = asyncio.create_task(orchestrator.analyze(_request()))
        await asyncio.sleep(0.05)
        analysis.cancel()
        with pytest.raises(asyncio.CancelledError):
            await analysis

    asyncio.run(scenario())

    run = orchestrator.run
    assert run.phase == RunPhase.FAILED
    assert run.error is not None
    assert run.result is None
    assert session_store.fetch_all() == []


def test_saving_step_sits_inside_the_finalization_share():
    orchestrator = make_orchestrator()

    async def scenario():
        channel = ProgressChannel()
        await orchestrator.analyze(_request(), channel)
        return [update async for update in channel]

    updates = asyncio.run(scenario())

    saving = next(update for update in updates if update.message == "Saving your session")
    assert saving.progress == pytest.approx(0.95)
