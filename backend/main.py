from __future__ import annotations

import asyncio
import logging
import os
import shutil
import uuid
from functools import lru_cache
from pathlib import Path
from typing import Any

from fastapi import BackgroundTasks, Depends, FastAPI, File, Form, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from config import JOBS_TABLE, LOG_LEVEL, MAX_VIDEO_SECONDS
from errors import VideoTooLong
from job_runner import build_orchestrator, run_analysis_job
from media import detect_media_duration_seconds, ensure_supported_media, save_upload_to_temp
from models import PracticeSession
from orchestrator import AnalysisOrchestrator
from scoring import build_feedback, score_result
from store import SessionStore, SupabaseSessionStore, get_supabase_client

logging.basicConfig(level=LOG_LEVEL)
logger = logging.getLogger(__name__)


def bootstrap_ffmpeg_path() -> None:
    """Best-effort PATH fix when ffmpeg/ffprobe live outside PATH (FFMPEG_BIN)."""
    if shutil.which("ffprobe"):
        return

    env_bin = os.getenv("FFMPEG_BIN")
    if env_bin and Path(env_bin).exists():
        os.environ["PATH"] = f"{env_bin}{os.pathsep}{os.environ.get('PATH', '')}"
        if shutil.which("ffprobe"):
            logger.info("FFmpeg discovered at %s", env_bin)


bootstrap_ffmpeg_path()

app = FastAPI(
    title="Speech Practice Coach API",
    version="0.1.0",
    description="Analyze recorded practice speeches and score speaker confidence.",
)

allowed_origins = [
    origin.strip()
    for origin in os.getenv("CORS_ALLOW_ORIGINS", "*").split(",")
    if origin.strip()
]
allow_credentials = "*" not in allowed_origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins or ["*"],
    allow_credentials=allow_credentials,
    allow_methods=["*"],
    allow_headers=["*"],
)


class AnalyzeAccepted(BaseModel):
    job_id: str
    status: str


class DeletedSessions(BaseModel):
    deleted: int


def get_supabase():
    try:
        return get_supabase_client()
    except RuntimeError as exc:
        logger.error("Supabase is not configured: %s", exc)
        raise HTTPException(status_code=503, detail="Storage backend is not configured.") from exc


@lru_cache(maxsize=1)
def _session_store() -> SessionStore:
    return SupabaseSessionStore(get_supabase_client())


def get_session_store(supabase=Depends(get_supabase)) -> SessionStore:
    return _session_store()


@lru_cache(maxsize=1)
def _orchestrator() -> AnalysisOrchestrator:
    # Shared so runs are serialized and the transcription usage count survives across jobs.
    return build_orchestrator(_session_store())


def get_orchestrator(supabase=Depends(get_supabase)) -> AnalysisOrchestrator:
    return _orchestrator()


def _session_payload(session: PracticeSession) -> dict[str, Any]:
    return {
        **session.model_dump(mode="json"),
        "score": score_result(session.result).model_dump(mode="json"),
        "feedback": build_feedback(session.result),
    }


@app.get("/")
async def root() -> dict[str, str]:
    return {"message": "Speech Practice Coach API is running."}


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/analyze", response_model=AnalyzeAccepted, status_code=202)
async def analyze_session(
    background_tasks: BackgroundTasks,
    file: UploadFile = File(...),
    duration_seconds: float | None = Form(default=None),
    supabase=Depends(get_supabase),
    orchestrator: AnalysisOrchestrator = Depends(get_orchestrator),
) -> AnalyzeAccepted:
    ensure_supported_media(file)
    temp_path = save_upload_to_temp(file)
    await file.close()

    try:
        if duration_seconds is None or duration_seconds <= 0:
            duration_seconds, notes = await asyncio.to_thread(detect_media_duration_seconds, temp_path)
            for note in notes:
                logger.warning("%s (%s)", note, temp_path)

        if duration_seconds is not None and duration_seconds > MAX_VIDEO_SECONDS:
            raise HTTPException(status_code=400, detail=VideoTooLong().message)

        job_id = str(uuid.uuid4())
        supabase.table(JOBS_TABLE).insert(
            {"id": job_id, "status": "queued", "progress": 0.0}
        ).execute()
    except Exception:
        temp_path.unlink(missing_ok=True)
        raise

    background_tasks.add_task(
        run_analysis_job, job_id, temp_path, duration_seconds, supabase, orchestrator
    )
    logger.info("Queued analysis job %s for %s", job_id, file.filename)
    return AnalyzeAccepted(job_id=job_id, status="queued")


@app.get("/jobs/{job_id}")
async def get_job(job_id: str, supabase=Depends(get_supabase)) -> dict[str, Any]:
    response = supabase.table(JOBS_TABLE).select("*").eq("id", job_id).limit(1).execute()
    rows = response.data or []
    if not rows:
        raise HTTPException(status_code=404, detail="Job not found.")
    return rows[0]


@app.get("/sessions")
async def list_sessions(store: SessionStore = Depends(get_session_store)) -> list[dict[str, Any]]:
    sessions = await asyncio.to_thread(store.fetch_all)
    return [_session_payload(session) for session in sessions]


@app.get("/sessions/{session_id}")
async def get_session(
    session_id: str, store: SessionStore = Depends(get_session_store)
) -> dict[str, Any]:
    session = await asyncio.to_thread(store.get, session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found.")
    return _session_payload(session)


@app.delete("/sessions/{session_id}", status_code=204)
async def delete_session(
    session_id: str, store: SessionStore = Depends(get_session_store)
) -> None:
    if not await asyncio.to_thread(store.delete, session_id):
        raise HTTPException(status_code=404, detail="Session not found.")


@app.delete("/sessions", response_model=DeletedSessions)
async def delete_all_sessions(store: SessionStore = Depends(get_session_store)) -> DeletedSessions:
    deleted = await asyncio.to_thread(store.delete_all)
    logger.info("Deleted %s practice sessions", deleted)
    return DeletedSessions(deleted=deleted)
