"""
Configuration for on-device glucose forecasting.

Model constants must match the values the TCN models were trained with
(sequence length, normalization, horizon-specific bins). Runtime settings
come from the environment / .env file:

   GLUCOSE_PREDICTIONS_ENABLED=true
   GLUCOSE_PREDICTION_MODEL=single   # or "multi"
   GLUCOSE_MODELS_DIR=models
"""
import os
from dataclasses import dataclass

from dotenv import load_dotenv

# ============================================================================
# Model Input
# ============================================================================
SAMPLE_INTERVAL = 5          # minutes between readings
SEQ_LEN = 8                  # 40 minutes / 5 minutes per sample
N_CHANNELS = 2               # relative glucose + velocity
LOOKBACK_MINUTES = 60        # search window for the SEQ_LEN + 1 readings
LOOKBACK_MS = LOOKBACK_MINUTES * 60 * 1000

RELATIVE_GLUCOSE_SCALE = 50.0   # x0 = (G[t-k] - G[t]) / 50
VELOCITY_SCALE = 10.0           # x1 = (G[t-k] - G[t-k-1]) / 10

# ============================================================================
# Horizons and Bins
# ============================================================================
PREDICTION_HORIZONS = [5, 10, 15, 20, 25, 30]

# Horizon-specific binning configuration (1 mg/dL bins, 99.9% coverage)
BIN_CONFIG = {
    5:  {'min': -60,  'max': 70,  'n_bins': 131},
    10: {'min': -80,  'max': 90,  'n_bins': 171},
    15: {'min': -100, 'max': 120, 'n_bins': 221},
    20: {'min': -120, 'max': 150, 'n_bins': 271},
    25: {'min': -140, 'max': 170, 'n_bins': 311},
    30: {'min': -150, 'max': 190, 'n_bins': 341},
}

# Fallback delta range when no bin config exists for a horizon: +/- (3h + 25)
FALLBACK_RANGE_RATE = 3.0
FALLBACK_RANGE_MARGIN = 25.0

DEFAULT_TEMPERATURE = 1.0

# ============================================================================
# Distribution Reductions
# ============================================================================
PMF_SUM_MIN = 0.99
PMF_SUM_MAX = 1.01

QUANTILE_LEVELS = (0.10, 0.50, 0.90)

# Trend rate thresholds in mg/dL per minute (delta = rate * horizon)
TREND_THRESHOLDS = {
    'slightly': 1.0,
    'moderate': 2.0,
    'rapid': 3.0,
}

# Clinical zone limits (mg/dL)
VERY_LOW_LIMIT = 54      # < 54 very low
LOW_LIMIT = 70           # < 70 low
IN_RANGE_LIMIT = 180     # <= 180 in range
HIGH_LIMIT = 250         # <= 250 high, above is very high

LOW_PROBABILITY_THRESHOLD = 70

# Horizon used for the model trend arrow (rate = q50 delta / horizon)
MODEL_TREND_HORIZON = 15

# ============================================================================
# Model Files
# ============================================================================
MODEL_VARIANT_SINGLE = 'single'
MODEL_VARIANT_MULTI = 'multi'
MODEL_VARIANTS = (MODEL_VARIANT_SINGLE, MODEL_VARIANT_MULTI)

SINGLE_MODEL_TEMPLATE = 'tcn_{horizon}min.tflite'
SINGLE_METADATA_FILE = 'tcn_metadata.json'
MULTI_MODEL_FILE = 'tcn_multihead.tflite'
MULTI_METADATA_FILE = 'tcn_multihead_metadata.json'


@dataclass(frozen=True)
class PredictionSettings:
    enabled: bool = True
    model_variant: str = MODEL_VARIANT_SINGLE
    models_dir: str = 'models'

    def __post_init__(self):
        if self.model_variant not in MODEL_VARIANTS:
            raise ValueError(
                f"Unknown model variant: {self.model_variant!r} (valid: {MODEL_VARIANTS})"
            )


def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def load_settings(dotenv_path=None) -> PredictionSettings:
    """Load prediction settings from the environment (and .env if present)."""
    load_dotenv(dotenv_path)
    return PredictionSettings(
        enabled=_env_flag('GLUCOSE_PREDICTIONS_ENABLED', True),
        model_variant=os.getenv('GLUCOSE_PREDICTION_MODEL', MODEL_VARIANT_SINGLE).strip().lower(),
        models_dir=os.getenv('GLUCOSE_MODELS_DIR', 'models'),
    )
