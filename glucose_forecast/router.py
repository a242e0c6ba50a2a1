"""
Model router: selects which inference capability is active.

    UNINITIALIZED -> LOADING -> READY(variant)
                             -> UNAVAILABLE

UNAVAILABLE stays until a reload or variant change succeeds. READY goes
back to LOADING only on an explicit variant change or reload. Every switch
clears the prediction cache.
"""
import logging
import threading
from enum import Enum
from typing import Callable, Dict, Optional

from glucose_forecast.cache import PredictionCache
from glucose_forecast.config import MODEL_VARIANTS
from glucose_forecast.errors import ModelUnavailable, PredictionError
from glucose_forecast.inference import InferenceCapability

logger = logging.getLogger(__name__)


class RouterState(Enum):
    UNINITIALIZED = 'uninitialized'
    LOADING = 'loading'
    READY = 'ready'
    UNAVAILABLE = 'unavailable'


class ModelRouter:

    def __init__(self, loaders: Dict[str, Callable[[], InferenceCapability]],
                 variant: str, cache: PredictionCache):
        """
        Args:
            loaders: Variant name -> zero-argument function building the capability
            variant: Initially selected variant ("single" or "multi")
            cache: Prediction cache to clear whenever the model changes
        """
        self._check_variant(variant, loaders)
        self.loaders = dict(loaders)
        self.cache = cache
        self.variant = variant
        self.state = RouterState.UNINITIALIZED
        self.last_error: Optional[Exception] = None
        self._capability: Optional[InferenceCapability] = None
        self._lock = threading.RLock()

    @staticmethod
    def _check_variant(variant, loaders):
        if variant not in MODEL_VARIANTS or variant not in loaders:
            raise ValueError(f"Unknown model variant: {variant!r} (valid: {sorted(loaders)})")

    def load(self) -> RouterState:
        """Load the selected variant if nothing is loaded yet."""
        with self._lock:
            if self.state == RouterState.UNINITIALIZED:
                self._load()
            return self.state

    def reload(self) -> RouterState:
        with self._lock:
            self._load()
            return self.state

    def set_variant(self, variant: str) -> RouterState:
        with self._lock:
            self._check_variant(variant, self.loaders)
            if variant == self.variant and self.state == RouterState.READY:
                return self.state
            logger.info("Model changed: %s -> %s", self.variant, variant)
            self.variant = variant
            self._load()
            return self.state

    def _load(self) -> None:
        self.state = RouterState.LOADING
        self._release()
        self.cache.invalidate()
        try:
            capability = self.loaders[self.variant]()
        except (PredictionError, OSError, ValueError, RuntimeError) as e:
            self.state = RouterState.UNAVAILABLE
            self.last_error = e
            logger.error("Failed to load %s model: %s", self.variant, e)
            return
        self._capability = capability
        self.last_error = None
        self.state = RouterState.READY
        logger.info("Model %s ready, horizons: %s", self.variant, capability.horizons)

    def _release(self) -> None:
        if self._capability is not None:
            try:
                self._capability.close()
            finally:
                self._capability = None

    def is_available(self) -> bool:
        return self.state == RouterState.READY

    def get_active_capability(self) -> InferenceCapability:
        with self._lock:
            if self.state != RouterState.READY or self._capability is None:
                raise ModelUnavailable(f"Selected model ({self.variant}) not available: "
                                       f"{self.state.value}")
            return self._capability

    def close(self) -> None:
        with self._lock:
            self._release()
            self.cache.invalidate()
            self.state = RouterState.UNINITIALIZED
            logger.info("Model router closed")
