from __future__ import annotations

from typing import Any

from models import AnalysisResult, ConfidenceScore

SMILE_HIGH_PCT = 30.0
SMILE_LOW_PCT = 15.0
FILLER_GOOD_MAX = 2
FILLER_FAIR_MAX = 4
PACE_TARGET_WPM = (110.0, 150.0)
PACE_FAIR_WPM = (90.0, 170.0)
GAZE_TARGET_PCT = (60.0, 70.0)
GAZE_FAIR_PCT = (40.0, 80.0)

PACE_SLOW_WPM = 110
PACE_FAST_WPM = 150
PACE_GAUGE_WPM = (100.0, 160.0)


def smile_percent(positive: int, neutral: int) -> float:
    total = positive + neutral
    return (positive / total) * 100.0 if total > 0 else 0.0


def score_smile(pct: float) -> int:
    if pct > SMILE_HIGH_PCT:
        return 2
    if pct >= SMILE_LOW_PCT:
        return 1
    return 0


def score_fillers(total_fillers: int) -> int:
    if total_fillers <= FILLER_GOOD_MAX:
        return 2
    if total_fillers <= FILLER_FAIR_MAX:
        return 1
    return 0


def _banded(value: float, target: tuple[float, float], fair: tuple[float, float]) -> int:
    """2 inside the target band, 1 inside the wider fair band, 0 elsewhere."""
    if target[0] <= value <= target[1]:
        return 2
    if fair[0] <= value <= fair[1]:
        return 1
    return 0


def score_pace(wpm: float) -> int:
    return _banded(wpm, PACE_TARGET_WPM, PACE_FAIR_WPM)


def score_gaze(gaze_pct: float | None) -> int:
    if gaze_pct is None:
        return 0
    return _banded(gaze_pct, GAZE_TARGET_PCT, GAZE_FAIR_PCT)


def score_confidence(
    smile_pct: float,
    total_fillers: int,
    wpm: float,
    gaze_pct: float | None,
) -> ConfidenceScore:
    return ConfidenceScore(
        smile=score_smile(smile_pct),
        filler=score_fillers(total_fillers),
        pace=score_pace(wpm),
        gaze=score_gaze(gaze_pct),
    )


def score_result(result: AnalysisResult) -> ConfidenceScore:
    """Re-derive the confidence score from a stored result alone."""
    return score_confidence(
        smile_percent(result.smile_frames, result.neutral_frames),
        sum(result.filler_counts.values()),
        result.wpm,
        result.gaze_score,
    )


def classify_pace(wpm: float) -> str:
    if wpm < PACE_SLOW_WPM:
        return "slow"
    if wpm > PACE_FAST_WPM:
        return "too_fast"
    return "targeted"


def build_feedback(result: AnalysisResult) -> dict[str, Any]:
    total_fillers = sum(result.filler_counts.values())
    low, high = PACE_GAUGE_WPM
    clamped = min(max(result.wpm, low), high)
    score = score_result(result)

    return {
        "smile_ratio": round(smile_percent(result.smile_frames, result.neutral_frames) / 100.0, 4),
        "filler_total": total_fillers,
        "filler_ratio": round(total_fillers / result.total_words, 4) if result.total_words > 0 else 0.0,
        "pace_category": classify_pace(result.wpm),
        "pace_ratio": round((clamped - low) / (high - low), 4),
        "confidence": score.model_dump(mode="json"),
    }
