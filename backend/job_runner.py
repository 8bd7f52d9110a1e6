from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

from config import JOBS_TABLE, OrchestratorSettings, ResilienceSettings
from errors import AnalysisError
from media import FFprobeMetadataProvider, detect_media_duration_seconds
from models import AnalysisRequest
from orchestrator import AnalysisOrchestrator
from progress import ProgressChannel
from scoring import build_feedback
from store import SessionStore

logger = logging.getLogger(__name__)


def build_orchestrator(store: SessionStore) -> AnalysisOrchestrator:
    # Imported here so the API can start without the vision and ASR stacks loaded.
    from non_verbal.vision import MediaPipeFrameClassifier
    from whisper_service import WhisperTranscriptionService

    return AnalysisOrchestrator(
        classifier=MediaPipeFrameClassifier(),
        transcription_service=WhisperTranscriptionService(),
        media=FFprobeMetadataProvider(),
        store=store,
        settings=OrchestratorSettings.from_env(),
        resilience=ResilienceSettings.from_env(),
    )


def _update_job(supabase: Any, job_id: str, values: dict[str, Any]) -> None:
    supabase.table(JOBS_TABLE).update(values).eq("id", job_id).execute()


async def run_analysis_job(
    job_id: str,
    temp_path: Path,
    duration_seconds: float | None,
    supabase: Any,
    orchestrator: AnalysisOrchestrator,
) -> None:
    """Background pipeline: run one analysis and mirror its progress into the jobs table."""
    analysis: asyncio.Task | None = None
    try:
        await asyncio.to_thread(
            _update_job, supabase, job_id, {"status": "processing", "progress": 0.0}
        )

        # Auto-detect duration if not provided
        if duration_seconds is None or duration_seconds <= 0:
            detected, _ = await asyncio.to_thread(detect_media_duration_seconds, temp_path)
            duration_seconds = detected if detected is not None else 30.0

        request = AnalysisRequest(video=str(temp_path), duration=duration_seconds)
        channel = ProgressChannel()
        analysis = asyncio.create_task(orchestrator.execute(request, channel))

        async for update in channel:
            await asyncio.to_thread(
                _update_job,
                supabase,
                job_id,
                {
                    "phase": update.phase.value,
                    "progress": round(update.progress, 3),
                    "message": update.message,
                },
            )

        run = await analysis
        results: dict[str, Any] = {
            "result": run.result.model_dump(mode="json"),
            "feedback": build_feedback(run.result),
            "session_id": run.session_id,
            "transcript": run.transcript,
        }
        await asyncio.to_thread(
            _update_job, supabase, job_id, {"status": "done", "progress": 1.0, "results": results}
        )

    except AnalysisError as exc:
        logger.warning("Job %s failed (%s): %s", job_id, exc.kind.value, exc.message)
        await asyncio.to_thread(
            _update_job, supabase, job_id, {"status": "error", **exc.to_dict()}
        )

    except Exception as exc:
        logger.exception("Job %s failed: %s", job_id, exc)
        await asyncio.to_thread(
            _update_job, supabase, job_id, {"status": "error", "error_message": str(exc)}
        )

    finally:
        if analysis is not None and not analysis.done():
            analysis.cancel()
        try:
            temp_path.unlink(missing_ok=True)
        except OSError:
            logger.warning("Failed to delete temp file %s", temp_path)
