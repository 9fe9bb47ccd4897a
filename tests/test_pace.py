from datetime import datetime, timedelta, timezone

import pytest
from quotapulse.usage.pace import PaceStage, calculate_pace, stage_for_delta

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)
WINDOW = timedelta(hours=5)
HALFWAY = NOW + timedelta(hours=2, minutes=30)


class TestStageForDelta:
    @pytest.mark.parametrize(
        "delta, stage",
        [
            (0, PaceStage.ON_TRACK),
            (2, PaceStage.ON_TRACK),
            (-2, PaceStage.ON_TRACK),
            (4, PaceStage.SLIGHTLY_AHEAD),
            (-6, PaceStage.SLIGHTLY_BEHIND),
            (12, PaceStage.AHEAD),
            (-10, PaceStage.BEHIND),
            (12.5, PaceStage.FAR_AHEAD),
            (-40, PaceStage.FAR_BEHIND),
        ],
    )
    def test_stage(self, delta, stage):
        assert stage_for_delta(delta) == stage


class TestCalculatePace:
    def test_linear_burn_is_on_track(self):
        pace = calculate_pace(51, HALFWAY, WINDOW, NOW)
        assert pace.stage == PaceStage.ON_TRACK
        assert pace.expected_used_percent == pytest.approx(50)
        assert pace.delta_percent == pytest.approx(1)

    def test_exact_linear_burn(self):
        pace = calculate_pace(50, HALFWAY, WINDOW, NOW)
        assert pace.expected_used_percent == 50
        assert pace.delta_percent == 0
        assert pace.stage == PaceStage.ON_TRACK

    def test_exhaustion_exactly_at_reset_lasts(self):
        # 80% used after 8h of a 10h window burns the last 20% in exactly 2h
        pace = calculate_pace(80, NOW + timedelta(hours=2), timedelta(hours=10), NOW)
        assert pace.expected_used_percent == pytest.approx(80)
        assert pace.stage == PaceStage.ON_TRACK
        assert pace.will_last_to_reset is True
        assert pace.eta_until_exhausted is None

    def test_faster_burn_in_long_window_reports_eta(self):
        pace = calculate_pace(90, NOW + timedelta(hours=2), timedelta(hours=10), NOW)
        assert pace.will_last_to_reset is False
        # 90% in 8h leaves 10% at 11.25%/h
        assert pace.eta_until_exhausted.total_seconds() == pytest.approx(3200)

    def test_under_burn_lasts_until_reset(self):
        pace = calculate_pace(40, HALFWAY, WINDOW, NOW)
        assert pace.stage == PaceStage.BEHIND
        assert pace.will_last_to_reset is True
        assert pace.eta_until_exhausted is None

    def test_over_burn_reports_eta(self):
        pace = calculate_pace(80, HALFWAY, WINDOW, NOW)
        assert pace.stage == PaceStage.FAR_AHEAD
        assert pace.will_last_to_reset is False
        # 80% in 2.5h leaves 20% at 32%/h
        assert pace.eta_until_exhausted.total_seconds() == pytest.approx(2250)

    def test_eta_shrinks_as_usage_grows(self):
        slower = calculate_pace(70, HALFWAY, WINDOW, NOW)
        faster = calculate_pace(90, HALFWAY, WINDOW, NOW)
        assert faster.eta_until_exhausted < slower.eta_until_exhausted

    def test_nothing_used_lasts(self):
        pace = calculate_pace(0, HALFWAY, WINDOW, NOW)
        assert pace.will_last_to_reset is True
        assert pace.eta_until_exhausted is None
        assert pace.stage == PaceStage.FAR_BEHIND

    def test_usage_clamped(self):
        pace = calculate_pace(130, HALFWAY, WINDOW, NOW)
        assert pace.actual_used_percent == 100
        assert pace.eta_until_exhausted == timedelta(0)

    def test_unknown_reset(self):
        assert calculate_pace(50, None, WINDOW, NOW) is None

    def test_reset_in_the_past(self):
        assert calculate_pace(50, NOW - timedelta(minutes=1), WINDOW, NOW) is None

    def test_window_not_started(self):
        assert calculate_pace(50, NOW + WINDOW + timedelta(hours=1), WINDOW, NOW) is None

    def test_zero_window(self):
        assert calculate_pace(50, HALFWAY, timedelta(0), NOW) is None
