"""Short human-readable strings for readings, shared by every presentation layer."""

import math
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from quotapulse.usage.pace import PaceStage, UsagePace

_AHEAD = {PaceStage.SLIGHTLY_AHEAD, PaceStage.AHEAD, PaceStage.FAR_AHEAD}


def _split_minutes(total_minutes: int) -> tuple[int, int, int]:
    return total_minutes // (24 * 60), (total_minutes // 60) % 24, total_minutes % 60


def format_duration(duration: timedelta) -> str:
    """Compact duration such as `2d 5h`, `3h 45m` or `20m`; `now` under a minute."""
    total_minutes = math.ceil(duration.total_seconds() / 60)
    if total_minutes < 1:
        return "now"
    days, hours, minutes = _split_minutes(total_minutes)
    if days > 0:
        return f"{days}d {hours}h" if hours > 0 else f"{days}d"
    if hours > 0:
        return f"{hours}h {minutes}m" if minutes > 0 else f"{hours}h"
    return f"{total_minutes}m"


def reset_countdown(resets_at: datetime, now: datetime | None = None) -> str:
    current = now or datetime.now(timezone.utc)
    seconds = max(0.0, (resets_at - current).total_seconds())
    if seconds < 1:
        return "now"
    return "in " + format_duration(timedelta(minutes=max(1, math.ceil(seconds / 60))))


def format_pace(pace: UsagePace | None) -> str | None:
    if pace is None:
        return None

    delta = round(abs(pace.delta_percent))
    if pace.stage == PaceStage.ON_TRACK:
        left = "On pace"
    elif pace.stage in _AHEAD:
        left = f"{delta}% in deficit"
    else:
        left = f"{delta}% in reserve"

    if pace.will_last_to_reset:
        right = "Lasts until reset"
    elif pace.eta_until_exhausted is not None:
        eta = format_duration(pace.eta_until_exhausted)
        right = "Runs out now" if eta == "now" else f"Runs out in {eta}"
    else:
        right = None

    return f"Pace: {left} · {right}" if right else f"Pace: {left}"


def format_currency(amount: Decimal | float, symbol: str = "$") -> str:
    value = Decimal(str(amount))
    sign = "-" if value < 0 else ""
    return f"{sign}{symbol}{abs(value):,.2f}"


def format_token_count(tokens: int) -> str:
    for threshold, suffix in ((1_000_000_000, "B"), (1_000_000, "M"), (1_000, "K")):
        if tokens >= threshold:
            text = f"{tokens / threshold:.1f}".rstrip("0").rstrip(".")
            return f"{text}{suffix}"
    return str(tokens)


def format_usage_percent(used_percent: float) -> str:
    return f"{round(used_percent)}% used"


def format_relative_time(timestamp: datetime, now: datetime | None = None) -> str:
    elapsed = ((now or datetime.now(timezone.utc)) - timestamp).total_seconds()
    if elapsed < 30:
        return "just now"
    if elapsed < 60:
        return "less than a minute ago"
    if elapsed < 3600:
        return f"{int(elapsed // 60)}m ago"
    if elapsed < 86400:
        return f"{int(elapsed // 3600)}h ago"
    return f"{int(elapsed // 86400)}d ago"
