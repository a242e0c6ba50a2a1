"""
TensorFlow Lite runtimes for the exported TCN models.

Expected files in the models directory:
    tcn_5min.tflite ... tcn_30min.tflite   + tcn_metadata.json            (single)
    tcn_multihead.tflite                   + tcn_multihead_metadata.json  (multi)

Input shape is [1, SEQ_LEN, N_CHANNELS]; each output is [1, n_bins] logits.
"""
import logging
import os
import threading
from typing import Dict, List

os.environ.setdefault('TF_CPP_MIN_LOG_LEVEL', '2')

import numpy as np
import tensorflow as tf

from glucose_forecast.config import (
    MODEL_VARIANT_MULTI, MODEL_VARIANT_SINGLE, MULTI_METADATA_FILE, MULTI_MODEL_FILE,
    SINGLE_METADATA_FILE, SINGLE_MODEL_TEMPLATE
)
from glucose_forecast.errors import ModelUnavailable, PredictionError
from glucose_forecast.inference import MultiHorizonCapability, SingleHorizonCapability
from glucose_forecast.metadata import ModelMetadata, load_metadata

logger = logging.getLogger(__name__)


def _output_width(shape) -> int:
    shape = [int(d) for d in shape]
    return shape[1] if len(shape) > 1 else shape[0]


class TfliteModel:
    """One TFLite interpreter; calls are serialized since interpreters are not thread-safe."""

    def __init__(self, model_path: str):
        self.model_path = model_path
        self.interpreter = tf.lite.Interpreter(model_path=model_path)
        self.interpreter.allocate_tensors()
        self.input_details = self.interpreter.get_input_details()
        self.output_details = self.interpreter.get_output_details()
        self._lock = threading.Lock()

        logger.debug("Loaded %s: input shape %s, %d outputs", os.path.basename(model_path),
                     self.input_details[0]['shape'], len(self.output_details))

    def output_sizes(self) -> Dict[int, int]:
        return {i: _output_width(detail['shape']) for i, detail in enumerate(self.output_details)}

    def run(self, tensor: np.ndarray) -> Dict[int, np.ndarray]:
        """Run one forward pass; returns output position -> flat float array."""
        input_detail = self.input_details[0]
        batch = np.asarray(tensor, dtype=np.float32).reshape(input_detail['shape'])
        with self._lock:
            if self.interpreter is None:
                raise ModelUnavailable(f"Model {os.path.basename(self.model_path)} has been released")
            self.interpreter.set_tensor(input_detail['index'], batch)
            self.interpreter.invoke()
            return {
                i: np.array(self.interpreter.get_tensor(detail['index'])).reshape(-1)
                for i, detail in enumerate(self.output_details)
            }

    def close(self) -> None:
        # Interpreters release their buffers on garbage collection
        with self._lock:
            self.interpreter = None


class TfliteSingleHorizonRuntime:
    """Six independent single-horizon models."""

    def __init__(self, models_dir: str, horizons: List[int]):
        self.models = {}
        for horizon in horizons:
            model_name = SINGLE_MODEL_TEMPLATE.format(horizon=horizon)
            model_path = os.path.join(models_dir, model_name)
            if not os.path.exists(model_path):
                logger.warning("Model not found: %s", model_name)
                continue
            try:
                self.models[horizon] = TfliteModel(model_path)
            except (ValueError, RuntimeError) as e:
                logger.warning("Could not load %s: %s", model_name, e)

        if not self.models:
            raise ModelUnavailable(f"No single-horizon models could be loaded from {models_dir}")
        logger.info("Loaded %d single-horizon models: %s", len(self.models), sorted(self.models))

    @property
    def horizons(self) -> List[int]:
        return sorted(self.models)

    def invoke(self, horizon: int, tensor: np.ndarray) -> np.ndarray:
        model = self.models.get(horizon)
        if model is None:
            raise ModelUnavailable(f"No single-horizon model loaded for {horizon}min")
        return model.run(tensor)[0]

    def close(self) -> None:
        for model in self.models.values():
            model.close()
        self.models.clear()


class TfliteMultiHorizonRuntime:
    """A single multi-output model predicting all horizons in one pass."""

    def __init__(self, model_path: str):
        if not os.path.exists(model_path):
            raise ModelUnavailable(f"Model not found: {model_path}")
        try:
            self.model = TfliteModel(model_path)
        except (ValueError, RuntimeError) as e:
            raise ModelUnavailable(f"Could not load {model_path}: {e}") from e
        logger.info("Loaded multi-horizon model %s with %d outputs",
                    os.path.basename(model_path), len(self.model.output_details))

    def output_sizes(self) -> Dict[int, int]:
        return self.model.output_sizes()

    def invoke_all(self, tensor: np.ndarray) -> Dict[int, np.ndarray]:
        return self.model.run(tensor)

    def close(self) -> None:
        self.model.close()


def _read_metadata(models_dir: str, filename: str) -> ModelMetadata:
    path = os.path.join(models_dir, filename)
    if not os.path.exists(path):
        logger.warning("Metadata not found: %s, using default bins and T=1.0", path)
        return ModelMetadata.default()
    try:
        return load_metadata(path)
    except (OSError, ValueError, KeyError) as e:
        raise ModelUnavailable(f"Failed to load metadata {path}: {e}") from e


def load_single_horizon_capability(models_dir: str) -> SingleHorizonCapability:
    metadata = _read_metadata(models_dir, SINGLE_METADATA_FILE)
    runtime = TfliteSingleHorizonRuntime(models_dir, metadata.prediction_horizons)
    return SingleHorizonCapability(runtime, metadata)


def load_multi_horizon_capability(models_dir: str) -> MultiHorizonCapability:
    metadata = _read_metadata(models_dir, MULTI_METADATA_FILE)
    runtime = TfliteMultiHorizonRuntime(os.path.join(models_dir, MULTI_MODEL_FILE))
    try:
        return MultiHorizonCapability(runtime, metadata)
    except PredictionError:
        runtime.close()
        raise


def default_loaders(models_dir: str) -> dict:
    """Variant name -> zero-argument loader, for the model router."""
    return {
        MODEL_VARIANT_SINGLE: lambda: load_single_horizon_capability(models_dir),
        MODEL_VARIANT_MULTI: lambda: load_multi_horizon_capability(models_dir),
    }
