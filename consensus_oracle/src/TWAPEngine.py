"""TWAPEngine: Time-weighted average prices over rolling windows.

Samples are appended per asset and pruned once they are older than the
longest window, measured from the newest sample rather than wall-clock time
so results are deterministic for a given sample sequence.

Each sample is weighted by how long it remained the latest known price,
clamped to the window: the weight of sample ``i`` is
``min(t[i+1], ref) - t[i]`` and the last sample is weighted up to ``ref``
(the newest sample's timestamp). With a single sample, or when every sample
shares one timestamp, the window value is the latest price.

.. code-block:: python

    >>> engine = TWAPEngine(OracleState())
    >>> engine.update_twap("ETH", 3000.0, 1000.0).price_5m
    3000.0
    >>> engine.update_twap("ETH", 3100.0, 1030.0).sample_count
    2
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from .OracleState import OracleState

logger = logging.getLogger(__name__)

# Default window lengths in seconds: 5m, 15m, 1h
DEFAULT_TWAP_WINDOWS: tuple[float, float, float] = (300.0, 900.0, 3600.0)


@dataclass(frozen=True)
class TWAPSample:
    """A single price observation fed into the engine."""

    price: float
    timestamp: float


@dataclass(frozen=True)
class TWAPState:
    """TWAP snapshot for one asset.

    :ivar price_5m: TWAP over the short window, or None if no samples.
    :ivar price_15m: TWAP over the medium window, or None if no samples.
    :ivar price_1h: TWAP over the long window, or None if no samples.
    :ivar sample_count: Number of retained samples.
    :ivar last_sample_ts: Timestamp of the newest sample.
    """

    price_5m: float | None
    price_15m: float | None
    price_1h: float | None
    sample_count: int
    last_sample_ts: float

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serializable representation."""
        return {
            "price_5m": self.price_5m,
            "price_15m": self.price_15m,
            "price_1h": self.price_1h,
            "sample_count": self.sample_count,
            "last_sample_ts": self.last_sample_ts,
        }


def calculate_twap_for_window(
    samples: list[TWAPSample],
    ref: float,
    window_seconds: float,
) -> float | None:
    """Calculate the TWAP of the samples that fall inside one window.

    :param samples: Samples in arrival order.
    :param ref: End of the window (newest sample timestamp).
    :param window_seconds: Window length.
    :returns: Time-weighted average, or None if the window is empty.
    """
    window_start = ref - window_seconds
    in_window = [s for s in samples if window_start <= s.timestamp <= ref]
    if not in_window:
        return None
    if len(in_window) == 1:
        return in_window[0].price

    weighted_sum = 0.0
    total_weight = 0.0
    for i, sample in enumerate(in_window):
        until = in_window[i + 1].timestamp if i + 1 < len(in_window) else ref
        weight = max(0.0, min(until, ref) - max(sample.timestamp, window_start))
        weighted_sum += sample.price * weight
        total_weight += weight

    if total_weight == 0:
        return in_window[-1].price

    return weighted_sum / total_weight


class TWAPEngine:
    """Rolling per-asset sample store producing TWAPs over three windows.

    :ivar state: Shared oracle state holding samples and snapshots.
    :ivar windows: (short, medium, long) window lengths in seconds.
    """

    def __init__(
        self,
        state: OracleState,
        windows: tuple[float, float, float] = DEFAULT_TWAP_WINDOWS,
    ) -> None:
        """Initialize the engine.

        :param state: Oracle state to store samples in.
        :param windows: (short, medium, long) window lengths in seconds.
        :raises ValueError: If windows are not positive and ascending.
        """
        if len(windows) != 3 or any(w <= 0 for w in windows):
            raise ValueError("twap windows must be three positive durations")
        if not windows[0] <= windows[1] <= windows[2]:
            raise ValueError("twap windows must be in ascending order")

        self.state = state
        self.windows = tuple(windows)

    @property
    def retention_seconds(self) -> float:
        """How long samples are kept, relative to the newest sample."""
        return self.windows[2]

    def update_twap(self, asset: str, price: float, timestamp: float) -> TWAPState:
        """Append a sample, prune old samples and recompute all windows.

        Timestamps are expected to be non-decreasing per asset; samples are
        not reordered.

        :param asset: Asset symbol.
        :param price: Observed price.
        :param timestamp: Observation time (Unix seconds).
        :returns: Updated TWAP snapshot.
        """
        with self.state.lock:
            samples = self.state.twap_samples.setdefault(asset, [])
            samples.append(TWAPSample(price=price, timestamp=timestamp))

            cutoff = timestamp - self.retention_seconds
            pruned = 0
            while samples and samples[0].timestamp < cutoff:
                samples.pop(0)
                pruned += 1
            if pruned:
                logger.debug(f"{asset}: pruned {pruned} TWAP samples")

            twap = self._compute(samples)
            self.state.twap_states[asset] = twap
            return twap

    def get_twap(self, asset: str) -> TWAPState | None:
        """Get the current TWAP snapshot without adding a sample.

        :param asset: Asset symbol.
        :returns: TWAP snapshot, or None for an unseen asset.
        """
        with self.state.lock:
            samples = self.state.twap_samples.get(asset)
            if not samples:
                return None
            return self._compute(samples)

    def clear_twap_data(self) -> None:
        """Reset all per-asset TWAP state."""
        with self.state.lock:
            self.state.twap_samples.clear()
            self.state.twap_states.clear()
        logger.debug("TWAP data cleared")

    def _compute(self, samples: list[TWAPSample]) -> TWAPState:
        ref = samples[-1].timestamp
        short, medium, long = self.windows
        return TWAPState(
            price_5m=calculate_twap_for_window(samples, ref, short),
            price_15m=calculate_twap_for_window(samples, ref, medium),
            price_1h=calculate_twap_for_window(samples, ref, long),
            sample_count=len(samples),
            last_sample_ts=ref,
        )
