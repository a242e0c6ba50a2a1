"""
Model metadata written next to exported TFLite models.

Example (tcn_multihead_metadata.json):

    {
      "version": "2.0-E2",
      "model_type": "tcn_multihead",
      "seq_len": 8,
      "n_channels": 2,
      "prediction_horizons": [5, 10, 15, 20, 25, 30],
      "output_names": ["h5", "h10", ...],
      "bin_config": {"15": {"min": -100, "max": 120, "n_bins": 221,
                            "bin_centers": [-100, ..., 120]}, ...},
      "trend_thresholds": {"double_down": -3.0, ..., "double_up": 3.0},
      "temperatures": {"5": 1.07, "10": 1.12, ...}
    }

Bin boundaries, temperatures and horizons are read from here once at load
time; nothing in this package derives them from data.
"""
import json
import logging
import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from glucose_forecast.binning import BinConfig, get_bin_config
from glucose_forecast.calibration import check_temperature, parse_temperatures
from glucose_forecast.config import (
    DEFAULT_TEMPERATURE, N_CHANNELS, PREDICTION_HORIZONS, SEQ_LEN, TREND_THRESHOLDS
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TrendThresholds:
    """Trend boundaries as rates (mg/dL per minute); delta bounds are rate * horizon."""
    slightly: float = TREND_THRESHOLDS['slightly']
    moderate: float = TREND_THRESHOLDS['moderate']
    rapid: float = TREND_THRESHOLDS['rapid']

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'TrendThresholds':
        if not data:
            return cls()
        return cls(
            slightly=abs(float(data.get('slightly_up', data.get('flat_high', cls.slightly)))),
            moderate=abs(float(data.get('up', cls.moderate))),
            rapid=abs(float(data.get('double_up', cls.rapid))),
        )


@dataclass(frozen=True)
class ModelMetadata:
    version: str = 'unknown'
    model_type: str = 'tcn'
    seq_len: int = SEQ_LEN
    n_channels: int = N_CHANNELS
    prediction_horizons: List[int] = field(default_factory=lambda: list(PREDICTION_HORIZONS))
    output_names: List[str] = field(default_factory=list)
    bin_config: Dict[int, BinConfig] = field(default_factory=dict)
    temperatures: Dict[int, float] = field(default_factory=dict)
    trend_thresholds: TrendThresholds = field(default_factory=TrendThresholds)
    description: str = ''

    def temperature(self, horizon: int) -> float:
        return self.temperatures.get(horizon, DEFAULT_TEMPERATURE)

    def bins_for(self, horizon: int) -> Optional[BinConfig]:
        return self.bin_config.get(horizon)

    def bin_counts(self) -> Dict[int, int]:
        """Horizon -> number of bins, used to identify unnamed model outputs."""
        return {h: self.bin_config[h].n_bins for h in self.prediction_horizons
                if h in self.bin_config}

    @classmethod
    def from_dict(cls, data: dict) -> 'ModelMetadata':
        horizons = [int(h) for h in data.get('prediction_horizons', PREDICTION_HORIZONS)]
        bin_config = {int(h): BinConfig.from_dict(cfg)
                      for h, cfg in (data.get('bin_config') or {}).items()}
        temperatures = parse_temperatures(data.get('temperatures') or {})
        return cls(
            version=str(data.get('version', 'unknown')),
            model_type=str(data.get('model_type', 'tcn')),
            seq_len=int(data.get('seq_len', SEQ_LEN)),
            n_channels=int(data.get('n_channels', N_CHANNELS)),
            prediction_horizons=horizons,
            output_names=list(data.get('output_names', [])),
            bin_config=bin_config,
            temperatures=temperatures,
            trend_thresholds=TrendThresholds.from_dict(data.get('trend_thresholds')),
            description=str(data.get('description') or ''),
        )

    @classmethod
    def default(cls, temperatures: Optional[Dict[int, float]] = None) -> 'ModelMetadata':
        """Metadata with the training pipeline's default bins for every horizon."""
        temperatures = {int(h): check_temperature(t) for h, t in (temperatures or {}).items()}
        return cls(
            version='default',
            bin_config={h: get_bin_config(h) for h in PREDICTION_HORIZONS},
            temperatures=temperatures,
        )

    def to_dict(self) -> dict:
        return {
            'version': self.version,
            'model_type': self.model_type,
            'description': self.description,
            'seq_len': self.seq_len,
            'n_channels': self.n_channels,
            'prediction_horizons': list(self.prediction_horizons),
            'output_names': list(self.output_names),
            'bin_config': {str(h): cfg.to_dict() for h, cfg in self.bin_config.items()},
            'trend_thresholds': {
                'double_down': -self.trend_thresholds.rapid,
                'down': -self.trend_thresholds.moderate,
                'slightly_down': -self.trend_thresholds.slightly,
                'flat_low': -self.trend_thresholds.slightly,
                'flat_high': self.trend_thresholds.slightly,
                'slightly_up': self.trend_thresholds.slightly,
                'up': self.trend_thresholds.moderate,
                'double_up': self.trend_thresholds.rapid,
            },
            'temperatures': {str(h): t for h, t in self.temperatures.items()},
        }


def load_metadata(path: str) -> ModelMetadata:
    """Load model metadata JSON; raises OSError / ValueError on unreadable files."""
    with open(path, 'r') as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"{path}: metadata must be a JSON object")
    metadata = ModelMetadata.from_dict(data)
    logger.info("Loaded metadata %s: version=%s, model_type=%s, horizons=%s",
                os.path.basename(path), metadata.version, metadata.model_type,
                metadata.prediction_horizons)

    for horizon in metadata.prediction_horizons:
        if horizon not in metadata.bin_config:
            logger.warning("Metadata has no bin config for %dmin", horizon)
        if horizon not in metadata.temperatures:
            logger.debug("No temperature for %dmin, using T=%.1f", horizon, DEFAULT_TEMPERATURE)
    return metadata


def save_metadata(metadata: ModelMetadata, path: str) -> None:
    with open(path, 'w') as f:
        json.dump(metadata.to_dict(), f, indent=2)
