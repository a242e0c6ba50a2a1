"""
Unit tests for the prediction engine (features -> model -> PMF -> reductions).

Usage:
    python -m glucose_forecast.test_engine
"""
import threading
from concurrent.futures import ThreadPoolExecutor

import numpy as np

from glucose_forecast.config import PredictionSettings
from glucose_forecast.engine import init_engine
from glucose_forecast.errors import (
    InsufficientHistory, InvalidModelOutput, ModelUnavailable, PredictionsDisabled
)
from glucose_forecast.inference import MultiHorizonCapability, SingleHorizonCapability
from glucose_forecast.prediction_data import GlucoseZone, Sample, TrendCategory
from glucose_forecast.router import RouterState
from glucose_forecast.sources import InMemorySampleSource
from glucose_forecast.test_cache import wait_for_waiters
from glucose_forecast.test_features import NOW, make_samples
from glucose_forecast.test_inference import FakeMultiRuntime, FakeSingleRuntime, fake_metadata


def build_engine(values=(150,) * 9, runtime=None, temperatures=None, enabled=True,
                 variant='single', fail_multi=False, with_reading=True):
    """Engine over in-memory readings and fake models; the last value is the current reading."""
    runtime = runtime or FakeSingleRuntime()
    metadata = fake_metadata(temperatures)

    def load_multi():
        if fail_multi:
            raise ModelUnavailable("Model not found: tcn_multihead.tflite")
        return MultiHorizonCapability(FakeMultiRuntime(), metadata)

    loaders = {
        'single': lambda: SingleHorizonCapability(runtime, metadata),
        'multi': load_multi,
    }
    samples = make_samples(values)
    engine = init_engine(PredictionSettings(enabled=enabled, model_variant=variant),
                         sample_source=InMemorySampleSource(samples), loaders=loaders)
    if with_reading:
        engine.on_new_reading(samples[-1])
    return engine, runtime


def test_reductions_share_one_inference():
    """Quantiles, trend and zones of one horizon run the model once."""
    print("Testing single inference per reading...", end=" ")

    engine, runtime = build_engine()
    quantiles = engine.get_quantiles(15)
    trend = engine.get_trend_probabilities(15)
    zones = engine.get_zone_probabilities(15)
    engine.get_low_probability(15)
    assert runtime.calls == [15], f"Expected one call, got {runtime.calls}"

    # Uniform PMF over -50..50 at 150 mg/dL
    assert np.isclose(zones.probability(GlucoseZone.IN_RANGE), 9 / 11)
    assert np.isclose(zones.probability(GlucoseZone.HIGH), 2 / 11)
    assert quantiles.q50_delta == 0.0 and quantiles.q50 == 150.0
    assert quantiles.q10_delta == -40.0 and quantiles.q90_delta == 40.0
    assert np.isclose(trend.total(), 1.0)

    # Cached results are the same objects
    assert engine.get_quantiles(15) is quantiles
    assert engine.get_pmf(15) is engine.get_pmf(15)
    assert runtime.calls == [15]

    print("PASSED")


def test_new_reading_recomputes():
    print("Testing new reading...", end=" ")

    engine, runtime = build_engine()
    engine.get_quantiles(15)

    engine.sample_source.add(Sample(timestamp=NOW + 5 * 60 * 1000, value=160.0))
    engine.on_new_reading(Sample(timestamp=NOW + 5 * 60 * 1000, value=160.0))
    assert engine.get_quantiles(15).q50 == 160.0
    assert runtime.calls == [15, 15]

    # Older readings never replace the current one
    engine.on_new_reading(Sample(timestamp=NOW, value=150.0))
    assert engine.current_reading.value == 160.0

    print("PASSED")


def test_concurrent_requests_one_inference():
    """Concurrent requests for the same (reading, horizon) trigger one model call."""
    print("Testing concurrent requests...", end=" ")

    gate = threading.Event()
    engine, runtime = build_engine(runtime=FakeSingleRuntime(delay=gate))
    getters = [engine.get_quantiles, engine.get_trend_probabilities,
               engine.get_zone_probabilities, engine.get_pmf] * 2

    with ThreadPoolExecutor(max_workers=len(getters)) as pool:
        futures = [pool.submit(getter, 15) for getter in getters]
        wait_for_waiters(engine.cache, len(getters) - 1)
        gate.set()
        for future in futures:
            future.result(timeout=5)

    assert runtime.calls == [15], f"Expected one call, got {runtime.calls}"

    print("PASSED")


def test_temperature_applied():
    print("Testing per-horizon temperature...", end=" ")

    logits = [1.0] + [0.0] * 10
    engine, _ = build_engine(runtime=FakeSingleRuntime(logits={15: logits}),
                             temperatures={15: 2.0})
    pmf = engine.get_pmf(15)
    expected = np.exp(0.5) / (np.exp(0.5) + 10)
    assert np.isclose(pmf.probabilities[0], expected)
    assert len(pmf) == 11 and pmf.bins.first == -50.0

    print("PASSED")


def test_low_probability_and_model_trend():
    print("Testing low probability and model trend...", end=" ")

    engine, _ = build_engine()
    assert engine.get_low_probability(15) == 0.0
    assert np.isclose(engine.get_low_probability(15, threshold=120), 2 / 11)
    assert engine.get_model_trend_rate() == 0.0
    assert engine.get_model_trend() == TrendCategory.FLAT

    print("PASSED")


def test_all_horizons():
    print("Testing all-horizon helpers...", end=" ")

    engine, _ = build_engine()
    assert engine.available_horizons == [5, 15]
    assert sorted(engine.get_all_quantiles()) == [5, 15]
    assert sorted(engine.get_all_trend_probabilities()) == [5, 15]
    assert sorted(engine.get_all_zone_probabilities()) == [5, 15]

    # Failing horizons are skipped, not filled in
    short, _ = build_engine(values=(150,) * 5)
    assert short.get_all_quantiles() == {}
    try:
        short.get_quantiles(15)
        raise AssertionError("Expected InsufficientHistory")
    except InsufficientHistory:
        pass

    print("PASSED")


class NanRuntime(FakeSingleRuntime):
    """Returns NaN logits for the first `bad_calls[h]` calls of horizon h."""

    def __init__(self, bad_calls):
        super().__init__()
        self.bad_calls = dict(bad_calls)

    def invoke(self, horizon, tensor):
        logits = super().invoke(horizon, tensor)
        if self.bad_calls.get(horizon, 0) > 0:
            self.bad_calls[horizon] -= 1
            return np.full(len(logits), np.nan)
        return logits


def test_non_finite_logits():
    """NaN logits raise InvalidModelOutput, are not cached, and are skipped by get_all_*."""
    print("Testing non-finite model output...", end=" ")

    engine, runtime = build_engine(runtime=NanRuntime({15: 1}))
    try:
        engine.get_quantiles(15)
        raise AssertionError("Expected InvalidModelOutput")
    except InvalidModelOutput:
        pass
    assert ('single', NOW, 15) not in engine.cache

    # The next request runs the model again and succeeds
    assert engine.get_quantiles(15).q50 == 150.0
    assert runtime.calls == [15, 15]

    engine, runtime = build_engine(runtime=NanRuntime({5: 1}))
    assert sorted(engine.get_all_quantiles()) == [15], "Horizon with NaN output must be skipped"
    assert sorted(engine.get_all_quantiles()) == [5, 15]
    assert runtime.calls.count(5) == 2 and runtime.calls.count(15) == 1

    print("PASSED")


def test_variant_switch():
    print("Testing variant switch...", end=" ")

    engine, runtime = build_engine()
    engine.get_quantiles(15)
    assert engine.set_variant('multi') == RouterState.READY
    assert engine.settings.model_variant == 'multi'
    assert runtime.closed
    assert engine.cache.current_key is None

    # The fake multi-output model returns constant logits: uniform PMF
    quantiles = engine.get_quantiles(15)
    assert quantiles.q50 == 150.0
    assert engine.cache.current_key == ('multi', NOW)

    print("PASSED")


def test_unavailable_and_disabled():
    print("Testing unavailable and disabled engine...", end=" ")

    engine, _ = build_engine(variant='multi', fail_multi=True)
    assert engine.available_horizons == []
    try:
        engine.get_pmf(15)
        raise AssertionError("Expected ModelUnavailable")
    except ModelUnavailable:
        pass

    engine, _ = build_engine()
    engine.set_enabled(False)
    assert engine.available_horizons == []
    for call in (lambda: engine.get_quantiles(15), engine.get_all_quantiles,
                 engine.get_all_trend_probabilities, engine.get_all_zone_probabilities):
        try:
            call()
            raise AssertionError("Expected PredictionsDisabled")
        except PredictionsDisabled:
            pass
    engine.set_enabled(True)
    assert engine.get_quantiles(15).q50 == 150.0

    # Horizon the model does not have
    try:
        engine.get_pmf(30)
        raise AssertionError("Expected ModelUnavailable")
    except ModelUnavailable:
        pass

    print("PASSED")


def test_no_current_reading():
    print("Testing missing current reading...", end=" ")

    engine, _ = build_engine()
    engine.close()
    try:
        engine.get_quantiles(15)
        raise AssertionError("Expected ModelUnavailable after close")
    except ModelUnavailable:
        pass

    engine, _ = build_engine(with_reading=False)
    assert engine.current_reading is None
    try:
        engine.get_pmf(15)
        raise AssertionError("Expected InsufficientHistory")
    except InsufficientHistory:
        pass

    print("PASSED")


def test_context_manager():
    print("Testing engine lifecycle...", end=" ")

    runtime = FakeSingleRuntime()
    engine, _ = build_engine(runtime=runtime)
    with engine:
        engine.get_quantiles(5)
    assert runtime.closed
    assert engine.router.state == RouterState.UNINITIALIZED
    assert engine.current_reading is None

    try:
        init_engine(PredictionSettings(), sample_source=None, loaders={})
        raise AssertionError("A sample source is required")
    except ValueError:
        pass

    print("PASSED")


def run_all_tests():
    """Run all unit tests."""
    print("\n" + "=" * 70)
    print("PREDICTION ENGINE - UNIT TESTS")
    print("=" * 70)

    test_reductions_share_one_inference()
    test_new_reading_recomputes()
    test_concurrent_requests_one_inference()
    test_temperature_applied()
    test_low_probability_and_model_trend()
    test_all_horizons()
    test_non_finite_logits()
    test_variant_switch()
    test_unavailable_and_disabled()
    test_no_current_reading()
    test_context_manager()

    print("=" * 70)
    print("ALL TESTS PASSED!")
    print("=" * 70)


if __name__ == '__main__':
    run_all_tests()
