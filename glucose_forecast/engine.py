"""
Prediction engine: the one object a host talks to.

    engine = init_engine(sample_source=source)
    engine.on_new_reading(Sample(timestamp, value))
    engine.get_quantiles(15)
    ...
    engine.close()

Per request: readings in the lookback window -> feature tensor -> active
model -> calibrated softmax -> bin map -> reduction. Feature tensors, PMFs
and reductions are cached for the current (variant, reading timestamp), so a
UI asking for quantiles, trend and zones of the same horizon runs the model
once.
"""
import dataclasses
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

import numpy as np

from glucose_forecast.aggregators import (
    aggregate_trend, aggregate_zones, extract_quantiles, low_probability,
    model_trend_rate, rate_to_trend
)
from glucose_forecast.binning import BinMap, bin_map
from glucose_forecast.cache import PredictionCache
from glucose_forecast.calibration import pmf_summary, softmax
from glucose_forecast.config import (
    LOOKBACK_MS, LOW_PROBABILITY_THRESHOLD, MODEL_TREND_HORIZON, PredictionSettings, load_settings
)
from glucose_forecast.errors import (
    InsufficientHistory, ModelUnavailable, PredictionError, PredictionsDisabled
)
from glucose_forecast.features import build_features
from glucose_forecast.inference import InferenceCapability
from glucose_forecast.prediction_data import (
    QuantilePrediction, Sample, TrendCategory, TrendProbabilities, ZoneProbabilities
)
from glucose_forecast.router import ModelRouter, RouterState

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class HorizonPmf:
    """Calibrated PMF of one horizon together with the bin map used for every reduction."""
    horizon: int
    probabilities: np.ndarray
    bins: BinMap

    def __len__(self):
        return len(self.probabilities)


class PredictionEngine:

    def __init__(self, router: ModelRouter, sample_source,
                 settings: PredictionSettings = PredictionSettings()):
        self.router = router
        self.cache = router.cache
        self.sample_source = sample_source
        self.settings = settings
        self._current: Optional[Sample] = None
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Host events and settings
    # ------------------------------------------------------------------
    def on_new_reading(self, sample: Sample) -> None:
        """Record the latest sensor reading; older readings are ignored."""
        with self._lock:
            if self._current is not None and sample.timestamp < self._current.timestamp:
                logger.debug("Ignoring out-of-order reading at %d", sample.timestamp)
                return
            self._current = sample
        logger.debug("New reading: %.0f mg/dL at %d", sample.value, sample.timestamp)

    @property
    def current_reading(self) -> Optional[Sample]:
        with self._lock:
            return self._current

    def set_variant(self, variant: str) -> RouterState:
        state = self.router.set_variant(variant)
        self.settings = dataclasses.replace(self.settings, model_variant=variant)
        return state

    def set_enabled(self, enabled: bool) -> None:
        self.settings = dataclasses.replace(self.settings, enabled=bool(enabled))
        if enabled:
            self.router.load()
        else:
            self.cache.invalidate()
        logger.info("Predictions %s", "enabled" if enabled else "disabled")

    @property
    def available_horizons(self) -> List[int]:
        if not self.settings.enabled or not self.router.is_available():
            return []
        try:
            return list(self.router.get_active_capability().horizons)
        except ModelUnavailable:
            return []

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _context(self) -> Tuple[InferenceCapability, Sample]:
        if not self.settings.enabled:
            raise PredictionsDisabled("Predictions are disabled")
        capability = self.router.get_active_capability()
        reading = self.current_reading
        if reading is None:
            raise InsufficientHistory("No current glucose data")
        return capability, reading

    def _features(self, capability: InferenceCapability, reading: Sample) -> np.ndarray:
        def compute():
            samples = self.sample_source.get_samples_in_range(
                reading.timestamp - LOOKBACK_MS, reading.timestamp)
            return build_features(samples, reading.timestamp, reading.value)

        return self.cache.get_features(capability.name, reading.timestamp, compute)

    def _pmf(self, capability: InferenceCapability, reading: Sample, horizon: int) -> HorizonPmf:
        if horizon not in capability.horizons:
            raise ModelUnavailable(f"No {capability.name} model for horizon {horizon}")

        def compute():
            features = self._features(capability, reading)
            logits = capability.invoke(features, horizon)
            temperature = capability.metadata.temperature(horizon)
            pmf = softmax(logits, temperature)
            bins = bin_map(horizon, capability.metadata.bins_for(horizon), len(pmf))
            logger.debug("PMF %dmin (T=%.3f): %s", horizon, temperature, pmf_summary(pmf))
            return HorizonPmf(horizon=horizon, probabilities=pmf, bins=bins)

        return self.cache.get_pmf(capability.name, reading.timestamp, horizon, compute)

    def _aggregate(self, horizon: int, key: tuple, reduce: Callable):
        capability, reading = self._context()
        distribution = self._pmf(capability, reading, horizon)
        return self.cache.get_aggregate(
            capability.name, reading.timestamp, (key, horizon),
            lambda: reduce(capability, reading, distribution))

    def _for_all_horizons(self, getter: Callable[[int], object]) -> Dict[int, object]:
        if not self.settings.enabled:
            raise PredictionsDisabled("Predictions are disabled")
        results = {}
        for horizon in self.available_horizons:
            try:
                results[horizon] = getter(horizon)
            except PredictionError as e:
                logger.warning("Skipping %dmin: %s", horizon, e)
        return results

    # ------------------------------------------------------------------
    # Predictions
    # ------------------------------------------------------------------
    def get_pmf(self, horizon: int) -> HorizonPmf:
        capability, reading = self._context()
        return self._pmf(capability, reading, horizon)

    def get_quantiles(self, horizon: int) -> QuantilePrediction:
        return self._aggregate(horizon, 'quantiles', lambda cap, reading, dist: extract_quantiles(
            dist.probabilities, dist.bins, reading.value))

    def get_all_quantiles(self) -> Dict[int, QuantilePrediction]:
        return self._for_all_horizons(self.get_quantiles)

    def get_trend_probabilities(self, horizon: int) -> TrendProbabilities:
        return self._aggregate(horizon, 'trend', lambda cap, reading, dist: aggregate_trend(
            dist.probabilities, dist.bins, horizon, cap.metadata.trend_thresholds))

    def get_all_trend_probabilities(self) -> Dict[int, TrendProbabilities]:
        return self._for_all_horizons(self.get_trend_probabilities)

    def get_zone_probabilities(self, horizon: int) -> ZoneProbabilities:
        return self._aggregate(horizon, 'zones', lambda cap, reading, dist: aggregate_zones(
            dist.probabilities, dist.bins, horizon, reading.value))

    def get_all_zone_probabilities(self) -> Dict[int, ZoneProbabilities]:
        return self._for_all_horizons(self.get_zone_probabilities)

    def get_low_probability(self, horizon: int,
                            threshold: float = LOW_PROBABILITY_THRESHOLD) -> float:
        return self._aggregate(horizon, ('low', float(threshold)),
                               lambda cap, reading, dist: low_probability(
                                   dist.probabilities, dist.bins, reading.value, threshold))

    def get_model_trend_rate(self) -> float:
        """Median predicted rate (mg/dL/min) over the next MODEL_TREND_HORIZON minutes."""
        return model_trend_rate(self.get_quantiles(MODEL_TREND_HORIZON))

    def get_model_trend(self) -> TrendCategory:
        thresholds = self.router.get_active_capability().metadata.trend_thresholds
        return rate_to_trend(self.get_model_trend_rate(), thresholds)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def close(self) -> None:
        self.router.close()
        with self._lock:
            self._current = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


def init_engine(settings: Optional[PredictionSettings] = None, sample_source=None,
                loaders: Optional[dict] = None) -> PredictionEngine:
    """
    Build a ready-to-use engine.

    Args:
        settings: Prediction settings (default: load_settings() from the environment)
        sample_source: Object with get_samples_in_range(min_time, max_time)
        loaders: Variant name -> capability loader (default: TFLite models in settings.models_dir)
    """
    if sample_source is None:
        raise ValueError("A sample source is required")
    if settings is None:
        settings = load_settings()
    if loaders is None:
        # TensorFlow is only imported when real models are requested
        from glucose_forecast.tflite_models import default_loaders
        loaders = default_loaders(settings.models_dir)

    router = ModelRouter(loaders, settings.model_variant, PredictionCache())
    if settings.enabled:
        router.load()
    return PredictionEngine(router, sample_source, settings)
