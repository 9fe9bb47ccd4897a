from datetime import datetime, timedelta, timezone
from enum import Enum

from pydantic import BaseModel


class PaceStage(str, Enum):
    ON_TRACK = "on_track"
    SLIGHTLY_AHEAD = "slightly_ahead"
    AHEAD = "ahead"
    FAR_AHEAD = "far_ahead"
    SLIGHTLY_BEHIND = "slightly_behind"
    BEHIND = "behind"
    FAR_BEHIND = "far_behind"


class UsagePace(BaseModel):
    """Actual consumption compared with a linear burn across the window.

    A positive `delta_percent` means quota is being used faster than the
    linear expectation.
    """

    model_config = {"frozen": True}

    stage: PaceStage
    delta_percent: float
    expected_used_percent: float
    actual_used_percent: float
    eta_until_exhausted: timedelta | None = None
    will_last_to_reset: bool = False


def _clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


def stage_for_delta(delta: float) -> PaceStage:
    magnitude = abs(delta)
    if magnitude <= 2:
        return PaceStage.ON_TRACK
    if magnitude <= 6:
        return PaceStage.SLIGHTLY_AHEAD if delta >= 0 else PaceStage.SLIGHTLY_BEHIND
    if magnitude <= 12:
        return PaceStage.AHEAD if delta >= 0 else PaceStage.BEHIND
    return PaceStage.FAR_AHEAD if delta >= 0 else PaceStage.FAR_BEHIND


def calculate_pace(
    used_percent: float,
    resets_at: datetime | None,
    window: timedelta,
    now: datetime | None = None,
) -> UsagePace | None:
    """Compute pace for a quota window, or None when it cannot be known."""
    if resets_at is None or window <= timedelta(0):
        return None

    current = now or datetime.now(timezone.utc)
    until_reset = resets_at - current
    if until_reset <= timedelta(0):
        return None

    elapsed = window - until_reset
    if elapsed <= timedelta(0):
        return None

    expected = _clamp(elapsed.total_seconds() / window.total_seconds() * 100)
    actual = _clamp(used_percent)
    delta = actual - expected

    eta = None
    will_last = False
    if actual > 0:
        # Time to burn the remainder at the average rate so far
        candidate_seconds = max(0.0, 100 - actual) * elapsed.total_seconds() / actual
        if candidate_seconds >= until_reset.total_seconds():
            will_last = True
        else:
            eta = timedelta(seconds=candidate_seconds)
    else:
        will_last = True

    return UsagePace(
        stage=stage_for_delta(delta),
        delta_percent=delta,
        expected_used_percent=expected,
        actual_used_percent=actual,
        eta_until_exhausted=eta,
        will_last_to_reset=will_last,
    )
