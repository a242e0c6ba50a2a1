"""
Inference capabilities: one contract over two model layouts.

    single - one model per horizon (tcn_5min, tcn_10min, ...), each
             returning the logits of its own horizon.
    multi  - one multi-output model returning every horizon's logits in a
             single forward pass. TFLite does not preserve output names, so
             outputs are matched to horizons by their width (number of bins).
             The map is built once at load time.

Width matching only works while every horizon has a distinct bin count.
Two horizons with the same count cannot be told apart; that is reported as
AmbiguousOutputShape at load time instead of silently taking the first match.
"""
import logging
from typing import Dict, List, Mapping

import numpy as np

from glucose_forecast.config import BIN_CONFIG, MODEL_VARIANT_MULTI, MODEL_VARIANT_SINGLE
from glucose_forecast.errors import (
    AmbiguousOutputShape, InvalidModelOutput, ModelUnavailable, UnknownOutputShape
)
from glucose_forecast.metadata import ModelMetadata

logger = logging.getLogger(__name__)


class InferenceCapability:
    """Runs a model for one horizon and returns raw logits."""

    name = None

    def __init__(self, metadata: ModelMetadata):
        self.metadata = metadata

    @property
    def horizons(self) -> List[int]:
        raise NotImplementedError

    def invoke(self, tensor: np.ndarray, horizon: int) -> np.ndarray:
        raise NotImplementedError

    def close(self) -> None:
        pass

    def _check_horizon(self, horizon: int) -> None:
        if horizon not in self.horizons:
            raise ModelUnavailable(
                f"No {self.name} model for horizon {horizon} (available: {self.horizons})"
            )

    @staticmethod
    def _as_logits(output, horizon: int) -> np.ndarray:
        logits = np.asarray(output, dtype=np.float64).reshape(-1)
        if logits.size == 0:
            raise InvalidModelOutput(f"Empty output for horizon {horizon}")
        return logits


class SingleHorizonCapability(InferenceCapability):
    """Wraps a runtime with `horizons`, `invoke(horizon, tensor)` and `close()`."""

    name = MODEL_VARIANT_SINGLE

    def __init__(self, runtime, metadata: ModelMetadata):
        super().__init__(metadata)
        self.runtime = runtime

    @property
    def horizons(self) -> List[int]:
        return [h for h in self.metadata.prediction_horizons if h in set(self.runtime.horizons)]

    def invoke(self, tensor: np.ndarray, horizon: int) -> np.ndarray:
        self._check_horizon(horizon)
        logits = self._as_logits(self.runtime.invoke(horizon, tensor), horizon)
        expected = self.metadata.bin_counts().get(horizon)
        if expected is not None and logits.size != expected:
            logger.warning("Model for %dmin returned %d logits, metadata expects %d bins",
                           horizon, logits.size, expected)
        return logits

    def close(self) -> None:
        self.runtime.close()


def build_output_index_map(output_sizes: Mapping[int, int],
                           bin_counts: Mapping[int, int]) -> Dict[int, int]:
    """
    Match multi-output tensors to horizons by width.

    Args:
        output_sizes: output index -> number of values in that output
        bin_counts: horizon -> number of bins expected for that horizon

    Returns:
        horizon -> output index

    Raises:
        AmbiguousOutputShape: If two horizons share a bin count
        UnknownOutputShape: If an output width matches no horizon
    """
    horizons_by_width = {}
    for horizon, n_bins in bin_counts.items():
        if n_bins in horizons_by_width:
            raise AmbiguousOutputShape(
                f"Horizons {horizons_by_width[n_bins]} and {horizon} both have {n_bins} bins; "
                f"outputs cannot be identified by width"
            )
        horizons_by_width[n_bins] = horizon

    index_map = {}
    for index, width in sorted(output_sizes.items()):
        horizon = horizons_by_width.get(width)
        if horizon is None:
            raise UnknownOutputShape(f"Unknown output {index} with {width} bins")
        if horizon in index_map:
            raise AmbiguousOutputShape(
                f"Outputs {index_map[horizon]} and {index} both have {width} bins"
            )
        index_map[horizon] = index
        logger.debug("Output %d (%d bins) -> horizon %d", index, width, horizon)

    logger.info("Output index map: %s", index_map)
    return index_map


class MultiHorizonCapability(InferenceCapability):
    """Wraps a runtime with `output_sizes()`, `invoke_all(tensor)` and `close()`."""

    name = MODEL_VARIANT_MULTI

    def __init__(self, runtime, metadata: ModelMetadata):
        super().__init__(metadata)
        self.runtime = runtime
        bin_counts = metadata.bin_counts() or {
            h: BIN_CONFIG[h]['n_bins'] for h in metadata.prediction_horizons if h in BIN_CONFIG
        }
        self.output_index_map = build_output_index_map(runtime.output_sizes(), bin_counts)

    @property
    def horizons(self) -> List[int]:
        return [h for h in self.metadata.prediction_horizons if h in self.output_index_map]

    def invoke(self, tensor: np.ndarray, horizon: int) -> np.ndarray:
        self._check_horizon(horizon)
        outputs = self.runtime.invoke_all(tensor)
        index = self.output_index_map[horizon]
        if index not in outputs:
            raise InvalidModelOutput(f"Model produced no output {index} for horizon {horizon}")
        return self._as_logits(outputs[index], horizon)

    def close(self) -> None:
        self.runtime.close()
