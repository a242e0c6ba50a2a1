"""
Bin mapping: PMF index -> glucose delta (mg/dL).

Each horizon has its own bin configuration. Explicit bin centers from the
model metadata are preferred; when they are missing or do not match the PMF
length, bins are assumed to be evenly spaced between min and max.

One mapping is resolved per PMF (see `bin_map`) and shared by every
reduction, so a single PMF is never read with two different mappings.
"""
import logging
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np

from glucose_forecast.config import (
    BIN_CONFIG, FALLBACK_RANGE_MARGIN, FALLBACK_RANGE_RATE
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BinConfig:
    min: float
    max: float
    n_bins: int
    bin_centers: Optional[Tuple[float, ...]] = None

    @classmethod
    def from_dict(cls, data: dict) -> 'BinConfig':
        """Parse one `bin_config` entry of the model metadata JSON."""
        delta_min = float(data['min'])
        delta_max = float(data['max'])
        centers = data.get('bin_centers')
        n_bins = int(data.get('n_bins') or (len(centers) if centers else 0))
        if n_bins <= 0:
            n_bins = int(round(delta_max - delta_min)) + 1
        if centers is not None:
            centers = tuple(float(c) for c in centers)
            if any(b < a for a, b in zip(centers, centers[1:])):
                raise ValueError("bin_centers must be monotonically non-decreasing")
        return cls(min=delta_min, max=delta_max, n_bins=n_bins, bin_centers=centers)

    def to_dict(self) -> dict:
        data = {'min': self.min, 'max': self.max, 'n_bins': self.n_bins}
        if self.bin_centers is not None:
            data['bin_centers'] = list(self.bin_centers)
        return data


def get_bin_config(horizon: int) -> BinConfig:
    """Default 1 mg/dL bin configuration for a horizon."""
    config = BIN_CONFIG[horizon]
    delta_min = config['min']
    delta_max = config['max']
    n_bins = delta_max - delta_min + 1
    centers = tuple(float(c) for c in range(delta_min, delta_max + 1))
    return BinConfig(min=float(delta_min), max=float(delta_max), n_bins=n_bins, bin_centers=centers)


def fallback_bin_config(horizon: int, n_bins: int) -> BinConfig:
    """Uniform range used when a horizon has no configuration at all."""
    spread = FALLBACK_RANGE_RATE * horizon + FALLBACK_RANGE_MARGIN
    return BinConfig(min=-spread, max=spread, n_bins=n_bins)


def uses_bin_centers(bin_config: Optional[BinConfig], pmf_length: int) -> bool:
    return (bin_config is not None and bin_config.bin_centers is not None
            and len(bin_config.bin_centers) == pmf_length)


def _uniform_step(bin_config: BinConfig, pmf_length: int) -> float:
    if pmf_length > 1:
        return (bin_config.max - bin_config.min) / (pmf_length - 1)
    return 1.0


def bin_delta(index: int, bin_config: BinConfig, pmf_length: int) -> float:
    """
    Delta value for one PMF index.

    Args:
        index: Bin index in [0, pmf_length)
        bin_config: Bin configuration for the PMF's horizon
        pmf_length: Number of entries in the PMF being mapped

    Returns:
        The bin center if centers are available and match the PMF length,
        otherwise min + index * (max - min) / (pmf_length - 1)
    """
    if not 0 <= index < pmf_length:
        raise IndexError(f"bin index {index} out of range for {pmf_length} bins")
    if uses_bin_centers(bin_config, pmf_length):
        return bin_config.bin_centers[index]
    return bin_config.min + index * _uniform_step(bin_config, pmf_length)


@dataclass(frozen=True, eq=False)
class BinMap:
    """Resolved index -> delta mapping for one PMF."""
    horizon: int
    deltas: np.ndarray
    from_centers: bool

    def __len__(self):
        return len(self.deltas)

    def delta(self, index: int) -> float:
        return float(self.deltas[index])

    @property
    def first(self) -> float:
        return float(self.deltas[0])

    @property
    def last(self) -> float:
        return float(self.deltas[-1])


def bin_map(horizon: int, bin_config: Optional[BinConfig], pmf_length: int) -> BinMap:
    """Resolve the delta of every bin of a PMF with the same rule."""
    if bin_config is None:
        bin_config = fallback_bin_config(horizon, pmf_length)
        logger.warning("No bin config for %dmin, using fallback range [%.1f, %.1f]",
                       horizon, bin_config.min, bin_config.max)

    if uses_bin_centers(bin_config, pmf_length):
        deltas = np.asarray(bin_config.bin_centers, dtype=np.float64)
        from_centers = True
    else:
        step = _uniform_step(bin_config, pmf_length)
        deltas = bin_config.min + np.arange(pmf_length, dtype=np.float64) * step
        from_centers = False
        logger.warning("FALLBACK bin centers for %dmin: min=%.1f, max=%.1f, step=%.3f",
                       horizon, bin_config.min, bin_config.max, step)

    deltas.flags.writeable = False
    return BinMap(horizon=horizon, deltas=deltas, from_centers=from_centers)


def delta_to_bin(delta, bin_config: BinConfig):
    """
    Convert delta (mg/dL) to the index of the nearest bin.
    Clamps to [0, n_bins-1] for out-of-range values.
    """
    delta = np.asarray(delta, dtype=np.float64)
    if uses_bin_centers(bin_config, bin_config.n_bins):
        centers = np.asarray(bin_config.bin_centers)
        idx = np.abs(centers[np.newaxis, :] - np.atleast_1d(delta)[:, np.newaxis]).argmin(axis=1)
        return idx[0] if delta.ndim == 0 else idx
    step = _uniform_step(bin_config, bin_config.n_bins)
    clamped = np.clip(delta, bin_config.min, bin_config.max)
    return np.round((clamped - bin_config.min) / step).astype(int)


def bin_centers_for(deltas: Sequence[float]) -> BinConfig:
    """Build a bin config from explicit centers (e.g. for synthetic PMFs)."""
    centers = [float(d) for d in deltas]
    return BinConfig.from_dict({'min': centers[0], 'max': centers[-1],
                                'n_bins': len(centers), 'bin_centers': centers})
