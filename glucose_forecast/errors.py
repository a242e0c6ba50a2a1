"""Errors raised by a single prediction cycle. None of them is fatal to the host."""


class PredictionError(Exception):
    """Base class for all prediction failures."""


class InsufficientHistory(PredictionError):
    """Not enough readings in the lookback window to build model input."""


class ModelUnavailable(PredictionError):
    """The selected model could not be loaded or is not ready."""


class PredictionsDisabled(ModelUnavailable):
    """Predictions are switched off in the settings."""


class InvalidModelOutput(PredictionError):
    """Non-finite logits or a PMF outside the sum tolerance."""


class UnknownOutputShape(PredictionError):
    """A multi-horizon output could not be matched to any horizon."""


class AmbiguousOutputShape(UnknownOutputShape):
    """Two horizons share a bin count, so outputs cannot be told apart by width."""


class NoCurrentReading(PredictionError):
    """A reduction needs a current glucose value and none is available."""
