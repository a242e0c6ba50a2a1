"""On-device glucose forecasting with calibrated TCN distribution models."""
from glucose_forecast.config import PredictionSettings, load_settings
from glucose_forecast.engine import HorizonPmf, PredictionEngine, init_engine
from glucose_forecast.errors import (
    AmbiguousOutputShape, InsufficientHistory, InvalidModelOutput, ModelUnavailable,
    NoCurrentReading, PredictionError, PredictionsDisabled, UnknownOutputShape
)
from glucose_forecast.prediction_data import (
    GlucoseZone, QuantilePrediction, Sample, TrendCategory, TrendProbabilities, ZoneProbabilities
)

__version__ = "0.1.0"
