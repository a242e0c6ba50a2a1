"""
Temperature-Scaled Softmax for TCN Distribution Models

Models output raw logits over horizon-specific delta bins. A per-horizon
temperature T, fitted post-hoc on validation data, is applied before the
softmax:

    p = softmax((logits - max(logits)) / T)

For well-calibrated models, T ≈ 1.0
For overconfident models, T > 1.0 (softens the distribution)
For underconfident models, T < 1.0 (sharpens the distribution)

Reference: Guo et al., "On Calibration of Modern Neural Networks", ICML 2017
"""
import json
import logging
import math
from typing import Dict

import numpy as np

from glucose_forecast.config import DEFAULT_TEMPERATURE, PMF_SUM_MAX, PMF_SUM_MIN
from glucose_forecast.errors import InvalidModelOutput

logger = logging.getLogger(__name__)


def check_temperature(temperature: float) -> float:
    temperature = float(temperature)
    if not math.isfinite(temperature) or temperature <= 0:
        raise ValueError(f"Temperature must be a positive finite number, got {temperature}")
    return temperature


def softmax(logits, temperature: float = DEFAULT_TEMPERATURE) -> np.ndarray:
    """
    Convert raw logits into a calibrated PMF.

    Args:
        logits: Shape (n_bins,) - raw model output for one horizon
        temperature: Scalar temperature value (must be > 0)

    Returns:
        Read-only float64 array of shape (n_bins,) summing to 1

    Raises:
        ValueError: If the temperature is not positive
        InvalidModelOutput: If the logits are empty or non-finite, or the
            result is not a valid PMF
    """
    temperature = check_temperature(temperature)
    logits = np.asarray(logits, dtype=np.float64).reshape(-1)

    if logits.size == 0:
        raise InvalidModelOutput("Model returned no logits")
    if not np.all(np.isfinite(logits)):
        n_bad = int(np.count_nonzero(~np.isfinite(logits)))
        raise InvalidModelOutput(f"Model returned {n_bad} non-finite logits")

    # Subtract max before scaling so exp() never overflows
    scaled = (logits - logits.max()) / temperature
    exp_values = np.exp(scaled)
    pmf = exp_values / exp_values.sum()

    validate_pmf(pmf)
    pmf.flags.writeable = False
    return pmf


def is_valid_pmf(pmf) -> bool:
    pmf = np.asarray(pmf, dtype=np.float64)
    if pmf.ndim != 1 or pmf.size == 0:
        return False
    if not np.all(np.isfinite(pmf)) or np.any(pmf < 0):
        return False
    total = float(pmf.sum())
    return PMF_SUM_MIN <= total <= PMF_SUM_MAX


def validate_pmf(pmf) -> None:
    """Raise InvalidModelOutput unless the PMF is non-negative, finite and sums to ~1."""
    if not is_valid_pmf(pmf):
        pmf = np.asarray(pmf, dtype=np.float64)
        total = float(np.nansum(pmf)) if pmf.size else 0.0
        raise InvalidModelOutput(f"Invalid PMF: size={pmf.size}, sum={total}")


def pmf_summary(pmf) -> str:
    """One-line description used in debug logs."""
    pmf = np.asarray(pmf)
    peak = int(np.argmax(pmf))
    return f"size={pmf.size}, sum={pmf.sum():.4f}, max={pmf[peak]:.4f} at idx={peak}"


def parse_temperatures(data: dict) -> Dict[int, float]:
    """Read per-horizon temperatures, skipping metadata keys starting with '_'."""
    temperatures = {}
    for key, value in data.items():
        if str(key).startswith('_'):
            continue
        temperatures[int(key)] = check_temperature(value)
    return temperatures


def load_temperatures(path: str) -> Dict[int, float]:
    """Load temperature dict from JSON file."""
    with open(path, 'r') as f:
        data = json.load(f)
    return parse_temperatures(data)
