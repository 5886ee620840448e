"""
Calibration math and earned autonomy thresholds.
"""

import pytest

from mcp_server_omega.runtime.calibration import (
    actual_success,
    calibration_status,
    confidence_error,
    earned_autonomy,
    summarize,
    weighted_score,
)


def bucket(gap, total, name="high"):
    return {"confidence_bucket": name, "calibration_gap": gap, "total_predictions": total}


class TestConfidenceError:

    @pytest.mark.parametrize("outcome, expected", [
        ("success", 1.0), ("partial", 0.5), ("failure", 0.0), ("modified", 0.0), ("rejected", 0.0),
        ("timeout", 0.0),
    ])
    def test_actual_success(self, outcome, expected):
        assert actual_success(outcome) == expected

    def test_error_is_predicted_minus_actual(self):
        assert confidence_error(0.7, "success") == pytest.approx(-0.3)
        assert confidence_error(0.7, "partial") == pytest.approx(0.2)
        assert confidence_error(None, "success") is None


class TestSummary:

    @pytest.mark.parametrize("gap, status", [
        (None, "No data"), (0.0, "Well calibrated"), (0.09, "Well calibrated"),
        (0.15, "Overconfident"), (-0.15, "Underconfident"),
    ])
    def test_status(self, gap, status):
        assert calibration_status(gap) == status

    def test_weighted_score(self):
        total, score = weighted_score([bucket(0.2, 10), bucket(0.0, 30)])
        assert total == 40
        assert score == pytest.approx(0.95)

    def test_empty(self):
        summary = summarize([])
        assert summary["totalBuckets"] == 0
        assert summary["calibrationScore"] is None
        assert summary["worstBucket"] is None
        assert summary["recommendations"] == ["Calibration is within acceptable range."]

    def test_overconfident(self):
        rows = [bucket(0.3, 10, "very_high"), bucket(0.05, 10, "medium")]
        summary = summarize(rows)
        assert summary["calibrationStatus"] == "Overconfident"
        assert summary["worstBucket"]["confidence_bucket"] == "very_high"
        assert summary["bestBucket"]["confidence_bucket"] == "medium"
        assert "reducing confidence" in summary["recommendations"][0]

    def test_underconfident(self):
        assert "increasing confidence" in summarize([bucket(-0.3, 5)])["recommendations"][0]


class TestEarnedAutonomy:

    def test_no_history(self):
        assert earned_autonomy([]) == (0, "No prediction history", 0.0)

    def test_insufficient_history(self):
        level, reason, _ = earned_autonomy([bucket(0.0, 19)])
        assert level == 0
        assert "Insufficient" in reason

    def test_poor_calibration(self):
        assert earned_autonomy([bucket(0.4, 50)])[0] == 1

    def test_building_trust(self):
        assert earned_autonomy([bucket(0.05, 50)])[:2] == (2, "Building trust")

    def test_full_autonomy(self):
        assert earned_autonomy([bucket(0.05, 250)])[0] == 3

    def test_good_but_not_excellent(self):
        level, reason, _ = earned_autonomy([bucket(0.12, 250)])
        assert (level, reason) == (2, "Good calibration, moderate autonomy")
