from __future__ import annotations

import os
from dataclasses import dataclass, fields

WHISPER_MODEL = os.getenv("WHISPER_MODEL", "base")
WHISPER_DEVICE = os.getenv("WHISPER_DEVICE", "cpu")
WHISPER_COMPUTE_TYPE = os.getenv("WHISPER_COMPUTE_TYPE", "int8")

SUPABASE_URL = os.getenv("SUPABASE_URL", "")
SUPABASE_KEY = os.getenv("SUPABASE_KEY", "")
SESSIONS_TABLE = os.getenv("SESSIONS_TABLE", "practice_sessions")
JOBS_TABLE = os.getenv("JOBS_TABLE", "jobs")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Uploads longer than this are rejected before any analysis starts.
MAX_VIDEO_SECONDS = 300.0


def _coerce(raw: str, current: object) -> object:
    if isinstance(current, bool):
        return raw.strip().lower() in {"1", "true", "yes", "on"}
    if isinstance(current, int):
        return int(raw)
    if isinstance(current, float):
        return float(raw)
    return raw


def _apply_env(instance, prefix: str):
    for item in fields(instance):
        raw = os.getenv(f"{prefix}{item.name.upper()}")
        if raw is not None and raw.strip():
            setattr(instance, item.name, _coerce(raw, getattr(instance, item.name)))
    return instance


@dataclass
class ResilienceSettings:
    """Tuning knobs for the transcription recovery policy.

    The reset cadence and chunk acceptance ratio were tuned empirically,
    so they are kept adjustable rather than hard-coded.
    """

    max_duration_seconds: float = MAX_VIDEO_SECONDS
    reset_every_uses: int = 2
    cooldown_seconds: float = 1.0
    recovery_pause_seconds: float = 1.0

    direct_min_timeout: float = 60.0
    direct_max_timeout: float = 120.0
    direct_padding_seconds: float = 30.0
    long_video_threshold_seconds: float = 120.0
    long_video_timeout: float = 60.0

    conservative_timeout_cap: float = 60.0
    conservative_window_seconds: float = 60.0

    chunk_fallback_min_duration: float = 60.0
    chunk_seconds: float = 15.0
    chunk_timeout: float = 10.0
    chunk_pause_seconds: float = 0.25
    min_chunk_success_ratio: float = 0.25

    @classmethod
    def from_env(cls) -> "ResilienceSettings":
        return _apply_env(cls(), "RESILIENCE_")


@dataclass
class OrchestratorSettings:
    sequential_threshold_seconds: float = 180.0
    permission_timeout_seconds: float = 10.0
    min_face_samples: int = 2
    cancel_siblings_on_failure: bool = True

    @classmethod
    def from_env(cls) -> "OrchestratorSettings":
        return _apply_env(cls(), "ORCHESTRATOR_")
