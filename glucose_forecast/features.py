"""
Feature builder: recent glucose readings -> TCN input tensor.

Features (one row per past step, oldest first):
    x0: (G[t-k] - G[t]) / 50      - normalized relative glucose
    x1: (G[t-k] - G[t-k-1]) / 10  - velocity (first difference)

The normalization constants are fixed by the training pipeline and must not
change without retraining the models.
"""
import logging
from typing import Iterable

import numpy as np

from glucose_forecast.config import (
    LOOKBACK_MS, N_CHANNELS, RELATIVE_GLUCOSE_SCALE, SEQ_LEN, VELOCITY_SCALE
)
from glucose_forecast.errors import InsufficientHistory
from glucose_forecast.prediction_data import Sample

logger = logging.getLogger(__name__)


def select_window(samples: Iterable[Sample], now: int, seq_len: int = SEQ_LEN,
                  lookback_ms: int = LOOKBACK_MS):
    """
    Pick the most recent seq_len + 1 samples inside the lookback window.

    Args:
        samples: Readings in any order (gaps allowed)
        now: Reading timestamp in epoch milliseconds
        seq_len: Number of feature steps the model expects
        lookback_ms: How far back to search for readings

    Returns:
        List of seq_len + 1 samples sorted oldest to newest

    Raises:
        InsufficientHistory: If fewer than seq_len + 1 samples are in the window
    """
    min_time = now - lookback_ms
    in_window = sorted((s for s in samples if min_time <= s.timestamp <= now),
                       key=lambda s: s.timestamp)

    if len(in_window) < seq_len + 1:
        raise InsufficientHistory(
            f"Insufficient data: {len(in_window)} values, need {seq_len + 1}"
        )

    recent = in_window[-(seq_len + 1):]
    span_minutes = (recent[-1].timestamp - recent[0].timestamp) // 60000
    logger.debug("Using %d readings spanning %d min", len(recent), span_minutes)
    return recent


def build_features(samples: Iterable[Sample], now: int, current_value: float) -> np.ndarray:
    """
    Build the model input for the reading at `now`.

    Returns:
        Read-only float32 array of shape (SEQ_LEN, N_CHANNELS)
    """
    if current_value is None or not current_value > 0:
        raise InsufficientHistory("No current glucose data")

    recent = select_window(samples, now)
    past_values = np.array([s.value for s in recent], dtype=np.float64)

    features = np.zeros((SEQ_LEN, N_CHANNELS), dtype=np.float32)
    features[:, 0] = (past_values[1:] - current_value) / RELATIVE_GLUCOSE_SCALE
    features[:, 1] = np.diff(past_values) / VELOCITY_SCALE

    features.flags.writeable = False
    return features
