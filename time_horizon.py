"""
Time horizon decomposition.

Timesteps are 1-based integers. A sub-horizon is a Python range over the
timesteps it contains, e.g. range(1, 25) for hours 1..24.
"""

from __future__ import annotations

import logging
from typing import List

from pydantic import BaseModel

from errors import ConfigurationError

logger = logging.getLogger(__name__)


class TimeHorizon(BaseModel):
    """
    start, stop : first and last timestep (inclusive).
    split       : length of each sub-horizon.
    offset      : length of a leading sub-horizon before the regular split
                  starts (0 = no leading sub-horizon).
    """

    start: int = 1
    stop: int = 8760
    split: int = 24
    offset: int = 0

    def validate_bounds(self) -> None:
        """Raise ConfigurationError for an unusable horizon."""
        if self.split <= 0:
            raise ConfigurationError(
                f"TimeHorizon.split must be positive, got {self.split}"
            )
        if self.offset < 0:
            raise ConfigurationError(
                f"TimeHorizon.offset must be non-negative, got {self.offset}: "
                "the first sub-horizon would start before 'start'"
            )
        if self.stop < self.start:
            raise ConfigurationError(
                f"TimeHorizon.stop ({self.stop}) is before start ({self.start})"
            )

    def __len__(self) -> int:
        return self.stop - self.start + 1


def _chunks(first: int, step: int, last: int) -> List[range]:
    return [range(i, min(i + step - 1, last) + 1) for i in range(first, last + 1, step)]


def split_horizon(th: TimeHorizon) -> List[range]:
    """
    Ordered, disjoint sub-horizons covering [th.start, th.stop].

    >>> split_horizon(TimeHorizon(start=1, offset=2, split=24, stop=26))
    [range(1, 3), range(3, 27)]
    """
    th.validate_bounds()
    first_regular = th.start + th.offset
    if first_regular == th.start:
        return _chunks(th.start, th.split, th.stop)

    leading = range(th.start, min(first_regular - 1, th.stop) + 1)
    if first_regular > th.stop:
        return [leading]
    return [leading] + _chunks(first_regular, th.split, th.stop)


def prev_period(T: range, t: int) -> int:
    """
    Predecessor of t within sub-horizon T.

    The first timestep wraps around to the last timestep of T; this is a
    cyclic closure of T, not the preceding global hour.
    """
    if t not in T:
        raise ValueError(f"t {t} must be in T {describe_range(T)}")
    if t == T[0]:
        return T[-1]
    return t - 1


def describe_range(T: range) -> str:
    """'t1-t24' style label."""
    if len(T) == 0:
        return "t-empty"
    return f"t{T[0]}-t{T[-1]}"
