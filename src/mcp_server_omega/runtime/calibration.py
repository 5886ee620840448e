"""
Confidence calibration math.

Pure functions over rows of the pulse_confidence_calibration view. A bucket's
calibration_gap is avg_predicted - actual_success_rate: positive means the
system was overconfident, negative underconfident.
"""

from typing import Any, Dict, List, Optional, Tuple

OUTCOMES = ("success", "partial", "failure", "modified", "rejected", "timeout")

# within +-GAP_TOLERANCE counts as well calibrated
GAP_TOLERANCE = 0.1


def actual_success(outcome: str) -> float:
    if outcome == "success":
        return 1.0
    if outcome == "partial":
        return 0.5
    return 0.0


def confidence_error(predicted_confidence: Optional[float], outcome: str) -> Optional[float]:
    if predicted_confidence is None:
        return None
    return float(predicted_confidence) - actual_success(outcome)


def _gap(row: Dict[str, Any]) -> float:
    return float(row.get("calibration_gap") or 0.0)


def average_gap(rows: List[Dict[str, Any]]) -> Optional[float]:
    if not rows:
        return None
    return sum(_gap(r) for r in rows) / len(rows)


def calibration_status(avg_gap: Optional[float]) -> str:
    if avg_gap is None:
        return "No data"
    if abs(avg_gap) < GAP_TOLERANCE:
        return "Well calibrated"
    return "Overconfident" if avg_gap > 0 else "Underconfident"


def weighted_score(rows: List[Dict[str, Any]]) -> Tuple[int, float]:
    """(total predictions, 1 - |prediction-weighted gap|)."""
    total = sum(int(r.get("total_predictions") or 0) for r in rows)
    if total == 0:
        return 0, 0.0
    weighted_gap = sum(_gap(r) * int(r.get("total_predictions") or 0) for r in rows) / total
    return total, 1 - abs(weighted_gap)


def summarize(rows: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Summary plus recommendations for a set of calibration buckets."""
    avg = average_gap(rows)
    total, score = weighted_score(rows)
    ranked = sorted(rows, key=lambda r: abs(_gap(r)))

    if avg is not None and avg > GAP_TOLERANCE:
        recommendation = "System is overconfident. Consider reducing confidence scores by ~10%."
    elif avg is not None and avg < -GAP_TOLERANCE:
        recommendation = "System is underconfident. Consider increasing confidence scores."
    else:
        recommendation = "Calibration is within acceptable range."

    return {
        "totalBuckets": len(rows),
        "totalPredictions": total,
        "averageCalibrationGap": round(avg, 3) if avg is not None else None,
        "calibrationScore": round(score, 3) if total else None,
        "calibrationStatus": calibration_status(avg),
        "worstBucket": ranked[-1] if ranked else None,
        "bestBucket": ranked[0] if ranked else None,
        "recommendations": [recommendation],
    }


def earned_autonomy(rows: List[Dict[str, Any]]) -> Tuple[int, str, float]:
    """Autonomy level a user has earned from calibration history.

    Returns (level, reason, calibration_score).
    """
    if not rows:
        return 0, "No prediction history", 0.0

    total, score = weighted_score(rows)
    if total < 20:
        return 0, "Insufficient history (< 20 predictions)", score
    if score < 0.7:
        return 1, "Calibration needs improvement", score
    if total < 100 or score < 0.85:
        return 2, "Building trust", score
    if score >= 0.9 and total >= 200:
        return 3, "Highly calibrated, earned full autonomy", score
    return 2, "Good calibration, moderate autonomy", score
