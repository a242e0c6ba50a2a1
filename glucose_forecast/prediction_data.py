"""
Shared data types for glucose forecasts.

All types are immutable: a forecast is computed once per reading and handed
to any number of readers.
"""
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Mapping


@dataclass(frozen=True)
class Sample:
    """A single glucose reading (epoch milliseconds, mg/dL)."""
    timestamp: int
    value: float


class TrendCategory(Enum):
    DOUBLE_DOWN = ('⬇⬇', 'Falling Rapidly')
    DOWN = ('↓', 'Falling')
    SLIGHTLY_DOWN = ('↘', 'Falling Slowly')
    FLAT = ('→', 'Steady')
    SLIGHTLY_UP = ('↗', 'Rising Slowly')
    UP = ('↑', 'Rising')
    DOUBLE_UP = ('⬆⬆', 'Rising Rapidly')

    def __init__(self, symbol, label):
        self.symbol = symbol
        self.label = label


class GlucoseZone(Enum):
    VERY_LOW = 'Very Low'
    LOW = 'Low'
    IN_RANGE = 'In Range'
    HIGH = 'High'
    VERY_HIGH = 'Very High'

    @property
    def label(self) -> str:
        return self.value


def _frozen(probabilities):
    return MappingProxyType(dict(probabilities))


@dataclass(frozen=True)
class TrendProbabilities:
    horizon: int
    probabilities: Mapping[TrendCategory, float]

    def __post_init__(self):
        object.__setattr__(self, 'probabilities', _frozen(self.probabilities))

    def probability(self, category: TrendCategory) -> float:
        return self.probabilities.get(category, 0.0)

    def most_likely(self) -> TrendCategory:
        if not self.probabilities:
            return TrendCategory.FLAT
        return max(self.probabilities, key=self.probabilities.get)

    def total(self) -> float:
        return sum(self.probabilities.values())


@dataclass(frozen=True)
class ZoneProbabilities:
    horizon: int
    current_glucose: float
    probabilities: Mapping[GlucoseZone, float]

    def __post_init__(self):
        object.__setattr__(self, 'probabilities', _frozen(self.probabilities))

    def probability(self, zone: GlucoseZone) -> float:
        return self.probabilities.get(zone, 0.0)

    def most_likely(self) -> GlucoseZone:
        if not self.probabilities:
            return GlucoseZone.IN_RANGE
        return max(self.probabilities, key=self.probabilities.get)

    @property
    def low_total(self) -> float:
        """Probability of ending up below range (very low + low)."""
        return self.probability(GlucoseZone.VERY_LOW) + self.probability(GlucoseZone.LOW)

    @property
    def high_total(self) -> float:
        """Probability of ending up above range (high + very high)."""
        return self.probability(GlucoseZone.HIGH) + self.probability(GlucoseZone.VERY_HIGH)

    def total(self) -> float:
        return sum(self.probabilities.values())


@dataclass(frozen=True)
class QuantilePrediction:
    """Q10/Q50/Q90 for one horizon, as deltas and absolute glucose values."""
    horizon: int
    q10_delta: float
    q50_delta: float
    q90_delta: float
    q10: float
    q50: float
    q90: float

    @property
    def interval_width(self) -> float:
        return self.q90 - self.q10


# ============================================================================
# Placeholder data for UIs that choose to show something when no model runs
# ============================================================================
_PLACEHOLDER_TREND = {
    TrendCategory.DOUBLE_DOWN: 0.01,
    TrendCategory.DOWN: 0.02,
    TrendCategory.SLIGHTLY_DOWN: 0.05,
    TrendCategory.FLAT: 0.84,
    TrendCategory.SLIGHTLY_UP: 0.05,
    TrendCategory.UP: 0.02,
    TrendCategory.DOUBLE_UP: 0.01,
}

_PLACEHOLDER_ZONES = {
    GlucoseZone.VERY_LOW: 0.01,
    GlucoseZone.LOW: 0.04,
    GlucoseZone.IN_RANGE: 0.85,
    GlucoseZone.HIGH: 0.08,
    GlucoseZone.VERY_HIGH: 0.02,
}


def placeholder_trend_probabilities(horizon: int) -> TrendProbabilities:
    """A typical "steady" forecast, for display testing only."""
    return TrendProbabilities(horizon=horizon, probabilities=_PLACEHOLDER_TREND)


def placeholder_zone_probabilities(horizon: int, current_glucose: float = 120.0) -> ZoneProbabilities:
    return ZoneProbabilities(horizon=horizon, current_glucose=current_glucose,
                             probabilities=_PLACEHOLDER_ZONES)


def placeholder_low_probability(current_glucose: float) -> float:
    if current_glucose < 80:
        return 0.35
    if current_glucose < 100:
        return 0.15
    if current_glucose < 120:
        return 0.05
    return 0.02
