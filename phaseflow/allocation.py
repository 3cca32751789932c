# Time-split allocation for multi-job sessions.
# Version: 1.0.0
# Divides one elapsed duration across several jobs with the largest-remainder
# method so the parts always sum exactly to the whole.

import math
from datetime import datetime, timedelta
from fractions import Fraction
from typing import Sequence


def _safe_weight(weight: float) -> Fraction:
    try:
        number = float(weight)
    except (TypeError, ValueError):
        return Fraction(0)
    if not math.isfinite(number) or number <= 0:
        return Fraction(0)
    return Fraction(number)


def allocate(total_seconds: int, weights: Sequence[float]) -> list[int]:
    """Split a duration proportionally to weights, summing exactly to the total.

    Each job first gets the floor of its exact share; the leftover seconds
    go one by one to the largest fractional remainders, ties to the lower
    index. Negative or non-finite weights count as 0; if no weight is
    positive all jobs weigh the same.

    Args:
        total_seconds: Whole seconds to distribute.
        weights: One weight per job.

    Returns:
        Seconds per job, aligned with ``weights``.

    Example:
        >>> allocate(100, [30, 70])
        [30, 70]
        >>> allocate(10, [1, 1, 1])
        [4, 3, 3]
    """
    n = len(weights)
    if n == 0:
        return []

    total = int(total_seconds)
    if total <= 0:
        return [0] * n

    safe = [_safe_weight(w) for w in weights]
    weight_sum = sum(safe)
    if weight_sum == 0:
        safe = [Fraction(1)] * n
        weight_sum = Fraction(n)

    # Exact rational shares avoid float drift in the remainders
    exact = [total * w / weight_sum for w in safe]
    base = [math.floor(x) for x in exact]
    leftover = total - sum(base)

    order = sorted(range(n), key=lambda i: (-(exact[i] - base[i]), i))
    for i in order[:leftover]:
        base[i] += 1

    return base


def split_intervals(
    start: datetime,
    seconds: Sequence[int],
) -> list[tuple[datetime, datetime]]:
    """Lay allocated durations end to end starting at ``start``.

    Args:
        start: Server-side session start.
        seconds: Allocated seconds per job.

    Returns:
        (start, end) per job in chronological order.
    """
    intervals = []
    cursor = start
    for value in seconds:
        end = cursor + timedelta(seconds=max(0, int(value)))
        intervals.append((cursor, end))
        cursor = end
    return intervals
