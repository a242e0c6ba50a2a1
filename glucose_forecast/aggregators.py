"""
Reductions of a horizon PMF into quantiles, trend and zone probabilities.

All functions are pure: the same (PMF, bin map) always gives the same
result, and every reduction of one PMF uses the same bin map.

Inequalities follow the app's clinical display rules exactly:
    falling side  -> strict  (delta < -3h is DOUBLE_DOWN, delta == -3h is DOWN)
    flat / rising -> inclusive (delta == +1h is FLAT, not SLIGHTLY_UP)
"""
import logging
from typing import Optional, Tuple

import numpy as np

from glucose_forecast.binning import BinMap
from glucose_forecast.config import (
    HIGH_LIMIT, IN_RANGE_LIMIT, LOW_LIMIT, LOW_PROBABILITY_THRESHOLD,
    QUANTILE_LEVELS, VERY_LOW_LIMIT
)
from glucose_forecast.errors import NoCurrentReading
from glucose_forecast.metadata import TrendThresholds
from glucose_forecast.prediction_data import (
    GlucoseZone, QuantilePrediction, TrendCategory, TrendProbabilities, ZoneProbabilities
)

logger = logging.getLogger(__name__)

DEFAULT_TREND_THRESHOLDS = TrendThresholds()


def _check_lengths(pmf: np.ndarray, bins: BinMap) -> None:
    if pmf.shape != (len(bins),):
        raise ValueError(f"PMF has {pmf.size} bins but bin map has {len(bins)}")


# ============================================================================
# Quantiles
# ============================================================================
def extract_quantiles(pmf, bins: BinMap, current_glucose: float) -> QuantilePrediction:
    """
    Compute Q10, Q50, Q90 by walking the CDF in bin order.

    Each quantile is the delta of the first bin whose cumulative probability
    reaches (>=) the level. If a level is never reached (only possible when
    the PMF sums slightly below 1), Q10 falls back to the first bin, Q50 to 0
    and Q90 to the last bin.

    Args:
        pmf: Array of shape (n_bins,) with probabilities summing to ~1
        bins: Resolved bin map for this PMF
        current_glucose: Current reading in mg/dL

    Returns:
        QuantilePrediction with deltas and absolute values (current + delta)
    """
    pmf = np.asarray(pmf, dtype=np.float64)
    _check_lengths(pmf, bins)

    cdf = np.cumsum(pmf)
    defaults = (bins.first, 0.0, bins.last)

    deltas = []
    for level, default in zip(QUANTILE_LEVELS, defaults):
        reached = cdf >= level
        if reached.any():
            deltas.append(bins.delta(int(np.argmax(reached))))
        else:
            deltas.append(default)
    q10_delta, q50_delta, q90_delta = deltas

    logger.debug("Quantiles for %dmin: Q10=%.1f, Q50=%.1f, Q90=%.1f",
                 bins.horizon, q10_delta, q50_delta, q90_delta)

    return QuantilePrediction(
        horizon=bins.horizon,
        q10_delta=q10_delta,
        q50_delta=q50_delta,
        q90_delta=q90_delta,
        q10=current_glucose + q10_delta,
        q50=current_glucose + q50_delta,
        q90=current_glucose + q90_delta,
    )


def pmf_mean(pmf, bins: BinMap) -> float:
    """Expected delta (mg/dL) of a PMF."""
    pmf = np.asarray(pmf, dtype=np.float64)
    _check_lengths(pmf, bins)
    return float(np.sum(pmf * bins.deltas))


# ============================================================================
# Trend
# ============================================================================
def classify_trend(delta: float, horizon: float,
                   thresholds: TrendThresholds = DEFAULT_TREND_THRESHOLDS) -> TrendCategory:
    if delta < -thresholds.rapid * horizon:
        return TrendCategory.DOUBLE_DOWN
    if delta < -thresholds.moderate * horizon:
        return TrendCategory.DOWN
    if delta < -thresholds.slightly * horizon:
        return TrendCategory.SLIGHTLY_DOWN
    if delta <= thresholds.slightly * horizon:
        return TrendCategory.FLAT
    if delta <= thresholds.moderate * horizon:
        return TrendCategory.SLIGHTLY_UP
    if delta <= thresholds.rapid * horizon:
        return TrendCategory.UP
    return TrendCategory.DOUBLE_UP


def aggregate_trend(pmf, bins: BinMap, horizon: int,
                    thresholds: TrendThresholds = DEFAULT_TREND_THRESHOLDS) -> TrendProbabilities:
    """Sum bin probabilities into the 7 trend categories."""
    pmf = np.asarray(pmf, dtype=np.float64)
    _check_lengths(pmf, bins)

    totals = {category: 0.0 for category in TrendCategory}
    for delta, prob in zip(bins.deltas, pmf):
        totals[classify_trend(float(delta), horizon, thresholds)] += float(prob)

    result = TrendProbabilities(horizon=horizon, probabilities=totals)
    logger.debug("Trend probs for %dmin: %s", horizon,
                 ", ".join(f"{c.symbol}={p * 100:.1f}%" for c, p in totals.items()))
    return result


def trend_delta_range(category: TrendCategory, horizon: int,
                      thresholds: TrendThresholds = DEFAULT_TREND_THRESHOLDS
                      ) -> Tuple[Optional[float], Optional[float]]:
    """Delta interval (lower, upper) covered by a trend category; None marks an open end."""
    s = thresholds.slightly * horizon
    m = thresholds.moderate * horizon
    r = thresholds.rapid * horizon
    ranges = {
        TrendCategory.DOUBLE_DOWN: (None, -r),
        TrendCategory.DOWN: (-r, -m),
        TrendCategory.SLIGHTLY_DOWN: (-m, -s),
        TrendCategory.FLAT: (-s, s),
        TrendCategory.SLIGHTLY_UP: (s, m),
        TrendCategory.UP: (m, r),
        TrendCategory.DOUBLE_UP: (r, None),
    }
    return ranges[category]


# ============================================================================
# Zones
# ============================================================================
def classify_zone(glucose: float) -> GlucoseZone:
    if glucose < VERY_LOW_LIMIT:
        return GlucoseZone.VERY_LOW
    if glucose < LOW_LIMIT:
        return GlucoseZone.LOW
    if glucose <= IN_RANGE_LIMIT:
        return GlucoseZone.IN_RANGE
    if glucose <= HIGH_LIMIT:
        return GlucoseZone.HIGH
    return GlucoseZone.VERY_HIGH


def _require_current(current_glucose) -> float:
    if current_glucose is None or not current_glucose > 0:
        raise NoCurrentReading(f"No valid current glucose value: {current_glucose}")
    return float(current_glucose)


def aggregate_zones(pmf, bins: BinMap, horizon: int, current_glucose: float) -> ZoneProbabilities:
    """
    Sum bin probabilities by the clinical zone of current + delta.

    Zones: < 54 very low, < 70 low, <= 180 in range, <= 250 high, above very high.
    """
    current_glucose = _require_current(current_glucose)
    pmf = np.asarray(pmf, dtype=np.float64)
    _check_lengths(pmf, bins)

    totals = {zone: 0.0 for zone in GlucoseZone}
    for delta, prob in zip(bins.deltas, pmf):
        totals[classify_zone(current_glucose + float(delta))] += float(prob)

    logger.debug("Zone probabilities for %dmin (glucose=%.0f): %s", horizon, current_glucose,
                 ", ".join(f"{z.label}={p * 100:.1f}%" for z, p in totals.items()))
    return ZoneProbabilities(horizon=horizon, current_glucose=current_glucose, probabilities=totals)


def low_probability(pmf, bins: BinMap, current_glucose: float,
                    threshold: float = LOW_PROBABILITY_THRESHOLD) -> float:
    """Probability that current + delta ends up strictly below `threshold`."""
    current_glucose = _require_current(current_glucose)
    pmf = np.asarray(pmf, dtype=np.float64)
    _check_lengths(pmf, bins)
    below = (current_glucose + bins.deltas) < threshold
    return float(pmf[below].sum())


# ============================================================================
# Model trend arrow
# ============================================================================
def model_trend_rate(prediction: QuantilePrediction) -> float:
    """Median predicted rate of change in mg/dL per minute (Dexcom's rate scale)."""
    return prediction.q50_delta / prediction.horizon


def rate_to_trend(rate: float, thresholds: TrendThresholds = DEFAULT_TREND_THRESHOLDS) -> TrendCategory:
    """
    Trend arrow for a rate in mg/dL/min.

    Uses the trend aggregator's boundaries with h = 1 (strict `<` on the
    falling side, `<=` for Flat and rising), so the model arrow and the trend
    probabilities always agree. This deliberately replaces the host app's own
    rate-to-arrow table rather than reproducing it.
    """
    return classify_trend(rate, 1, thresholds)


def trends_differ(model_rate: float, sensor_rate: float) -> bool:
    """True when the model's arrow differs from the sensor's arrow."""
    if np.isnan(model_rate) or np.isnan(sensor_rate):
        return False
    return rate_to_trend(model_rate) != rate_to_trend(sensor_rate)
