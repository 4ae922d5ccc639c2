"""
Counter-to-rate conversion.

The RateCalculator turns successive readings of absolute, monotonically
non-decreasing counters (bytes received/transmitted, bytes read/written)
into per-second rates. The configured sampling interval is used as the time
denominator rather than a measured wall-clock delta, so scheduler jitter
introduces a bounded inaccuracy instead of coupling the rate to clock
precision.
"""

from __future__ import annotations

import math
from collections.abc import Mapping

from sysmon.errors import ConfigurationError


class RateCalculator:
    """
    Stateful converter from absolute counters to per-second rates.

    Each named counter keeps its own baseline. The first reading of a counter
    yields a rate of 0.0; later readings yield
    ``max(current - previous, 0) / interval_seconds``. A decreasing counter
    (reset, interface restart) is clamped to zero.

    One instance belongs to exactly one session and must not be shared.

    Example:
        >>> calc = RateCalculator(1.0)
        >>> calc.update({"net_rx": 1000})
        {'net_rx': 0.0}
        >>> calc.update({"net_rx": 3000})
        {'net_rx': 2000.0}
    """

    def __init__(self, interval_seconds: float) -> None:
        """
        Initialize the RateCalculator.

        Args:
            interval_seconds: Nominal time between two readings.

        Raises:
            ConfigurationError: If the interval is not a positive number.
        """
        if (
            isinstance(interval_seconds, bool)
            or not isinstance(interval_seconds, (int, float))
            or not math.isfinite(interval_seconds)
            or interval_seconds <= 0
        ):
            raise ConfigurationError(
                "interval_seconds must be a positive number",
                details={"interval_seconds": interval_seconds},
            )
        self._interval = float(interval_seconds)
        self._previous: dict[str, float] = {}

    @property
    def interval_seconds(self) -> float:
        """Get the time denominator used for every rate."""
        return self._interval

    @property
    def has_baseline(self) -> bool:
        """Check if at least one counter has a stored previous reading."""
        return bool(self._previous)

    def update(
        self,
        counters: Mapping[str, float],
        *,
        intervals: int = 1,
    ) -> dict[str, float]:
        """
        Record new counter readings and return their rates.

        Equivalent to ``compute()`` followed by ``commit()``.

        Args:
            counters: Absolute counter values keyed by counter name.
            intervals: Number of configured intervals since the previous
                reading (greater than 1 after skipped ticks).

        Returns:
            Rate per second for every counter in ``counters``.
        """
        rates = self.compute(counters, intervals=intervals)
        self.commit(counters)
        return rates

    def compute(
        self,
        counters: Mapping[str, float],
        *,
        intervals: int = 1,
    ) -> dict[str, float]:
        """Return the rates for ``counters`` without moving the baselines."""
        span = self._interval * max(int(intervals), 1)
        rates: dict[str, float] = {}
        for name, value in counters.items():
            previous = self._previous.get(name)
            if previous is None:
                rates[name] = 0.0
            else:
                rates[name] = max(float(value) - previous, 0.0) / span
        return rates

    def commit(self, counters: Mapping[str, float]) -> None:
        """Store ``counters`` as the baselines for the next reading."""
        for name, value in counters.items():
            self._previous[name] = float(value)

    def reset(self) -> None:
        """Drop all baselines; the next reading of every counter yields 0.0."""
        self._previous.clear()
