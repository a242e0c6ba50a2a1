"""
Unit tests for the TensorFlow Lite runtimes.

Tiny linear stand-ins for the TCN (flattened input -> one logits head per
horizon) are converted to .tflite on the fly, so the tests exercise the real
interpreter without the trained models.

Usage:
    python -m glucose_forecast.test_tflite_models
"""
import os
import tempfile

os.environ['TF_CPP_MIN_LOG_LEVEL'] = '2'

import numpy as np
import tensorflow as tf

from glucose_forecast.config import (
    BIN_CONFIG, MULTI_METADATA_FILE, MULTI_MODEL_FILE, N_CHANNELS, PredictionSettings,
    SEQ_LEN, SINGLE_METADATA_FILE, SINGLE_MODEL_TEMPLATE
)
from glucose_forecast.engine import init_engine
from glucose_forecast.errors import ModelUnavailable
from glucose_forecast.metadata import ModelMetadata, save_metadata
from glucose_forecast.router import RouterState
from glucose_forecast.sources import InMemorySampleSource
from glucose_forecast.test_features import NOW, make_samples
from glucose_forecast.tflite_models import (
    TfliteModel, load_multi_horizon_capability, load_single_horizon_capability
)

# Heads deliberately out of horizon order
MULTI_HEAD_ORDER = [30, 5, 20, 10, 25, 15]


def head_weights(horizon):
    rng = np.random.RandomState(horizon)
    n_bins = BIN_CONFIG[horizon]['n_bins']
    weights = (rng.randn(SEQ_LEN * N_CHANNELS, n_bins) * 0.5).astype(np.float32)
    bias = (rng.randn(n_bins) * 0.5).astype(np.float32)
    return weights, bias


def expected_logits(features, horizon):
    weights, bias = head_weights(horizon)
    return np.asarray(features, dtype=np.float32).reshape(1, -1) @ weights + bias


class TinyTcn(tf.Module):

    def __init__(self, horizons):
        super().__init__()
        self.heads = [head_weights(h) for h in horizons]

    @tf.function(input_signature=[tf.TensorSpec([1, SEQ_LEN, N_CHANNELS], tf.float32)])
    def __call__(self, x):
        flat = tf.reshape(x, [1, SEQ_LEN * N_CHANNELS])
        return tuple(tf.matmul(flat, weights) + bias for weights, bias in self.heads)


def export_tiny_model(horizons, output_path):
    module = TinyTcn(horizons)
    concrete = module.__call__.get_concrete_function()
    converter = tf.lite.TFLiteConverter.from_concrete_functions([concrete], module)
    with open(output_path, 'wb') as f:
        f.write(converter.convert())


def export_single_models(models_dir, horizons):
    for horizon in horizons:
        export_tiny_model([horizon], os.path.join(models_dir, SINGLE_MODEL_TEMPLATE.format(horizon=horizon)))
    save_metadata(ModelMetadata.default(temperatures={15: 1.2}),
                  os.path.join(models_dir, SINGLE_METADATA_FILE))


def export_multihead_model(models_dir):
    export_tiny_model(MULTI_HEAD_ORDER, os.path.join(models_dir, MULTI_MODEL_FILE))
    save_metadata(ModelMetadata.default(), os.path.join(models_dir, MULTI_METADATA_FILE))


def sample_features():
    rng = np.random.RandomState(0)
    return rng.randn(SEQ_LEN, N_CHANNELS).astype(np.float32)


def test_tflite_model_runs():
    print("Testing TFLite interpreter wrapper...", end=" ")

    with tempfile.TemporaryDirectory() as tmpdir:
        path = os.path.join(tmpdir, 'tiny.tflite')
        export_tiny_model([15], path)
        model = TfliteModel(path)

        assert model.output_sizes() == {0: 221}
        features = sample_features()
        outputs = model.run(features)
        assert np.allclose(outputs[0], expected_logits(features, 15).reshape(-1), atol=1e-4)
        model.close()

    print("PASSED")


def test_single_horizon_capability():
    """Missing per-horizon models are skipped; the rest are served."""
    print("Testing single-horizon TFLite models...", end=" ")

    with tempfile.TemporaryDirectory() as tmpdir:
        export_single_models(tmpdir, [5, 15])
        capability = load_single_horizon_capability(tmpdir)
        try:
            assert capability.horizons == [5, 15]
            assert capability.metadata.temperature(15) == 1.2

            features = sample_features()
            logits = capability.invoke(features, 15)
            assert logits.shape == (221,)
            assert np.allclose(logits, expected_logits(features, 15).reshape(-1), atol=1e-4)

            try:
                capability.invoke(features, 30)
                raise AssertionError("Expected ModelUnavailable")
            except ModelUnavailable:
                pass
        finally:
            capability.close()

    print("PASSED")


def test_no_models():
    print("Testing empty models directory...", end=" ")

    with tempfile.TemporaryDirectory() as tmpdir:
        for loader in (load_single_horizon_capability, load_multi_horizon_capability):
            try:
                loader(tmpdir)
                raise AssertionError(f"{loader.__name__} should fail without models")
            except ModelUnavailable:
                pass

    print("PASSED")


def test_multi_horizon_capability():
    """Outputs are matched to horizons by width, whatever their order."""
    print("Testing multi-horizon TFLite model...", end=" ")

    with tempfile.TemporaryDirectory() as tmpdir:
        export_multihead_model(tmpdir)
        capability = load_multi_horizon_capability(tmpdir)
        try:
            assert capability.horizons == [5, 10, 15, 20, 25, 30]
            features = sample_features()
            for horizon in capability.horizons:
                logits = capability.invoke(features, horizon)
                assert logits.shape == (BIN_CONFIG[horizon]['n_bins'],)
                assert np.allclose(logits, expected_logits(features, horizon).reshape(-1), atol=1e-4), \
                    f"Wrong output for {horizon}min"
        finally:
            capability.close()

    print("PASSED")


def test_invoke_after_close():
    """A released model reports ModelUnavailable instead of crashing the caller."""
    print("Testing invoke after close...", end=" ")

    with tempfile.TemporaryDirectory() as tmpdir:
        export_single_models(tmpdir, [15])
        export_multihead_model(tmpdir)
        features = sample_features()

        for loader in (load_single_horizon_capability, load_multi_horizon_capability):
            capability = loader(tmpdir)
            capability.invoke(features, 15)
            capability.close()
            try:
                capability.invoke(features, 15)
                raise AssertionError(f"{loader.__name__}: expected ModelUnavailable after close")
            except ModelUnavailable:
                pass

        # The runtime itself, past the capability's horizon check
        single = load_single_horizon_capability(tmpdir)
        runtime = single.runtime
        runtime.close()
        try:
            runtime.invoke(15, features)
            raise AssertionError("Expected ModelUnavailable from a closed runtime")
        except ModelUnavailable:
            pass

        path = os.path.join(tmpdir, 'tiny.tflite')
        export_tiny_model([5], path)
        model = TfliteModel(path)
        model.close()
        try:
            model.run(features)
            raise AssertionError("Expected ModelUnavailable from a released interpreter")
        except ModelUnavailable:
            pass

    print("PASSED")


def test_engine_with_tflite_models():
    """End to end: readings -> TFLite -> calibrated PMF -> reductions."""
    print("Testing engine with TFLite models...", end=" ")

    with tempfile.TemporaryDirectory() as tmpdir:
        export_single_models(tmpdir, [5, 10, 15, 20, 25, 30])
        export_multihead_model(tmpdir)
        samples = make_samples([140, 138, 137, 135, 132, 130, 126, 123, 120])

        settings = PredictionSettings(enabled=True, model_variant='single', models_dir=tmpdir)
        with init_engine(settings, sample_source=InMemorySampleSource(samples)) as engine:
            engine.on_new_reading(samples[-1])
            assert engine.router.state == RouterState.READY
            assert engine.available_horizons == [5, 10, 15, 20, 25, 30]

            single = engine.get_all_quantiles()
            assert sorted(single) == [5, 10, 15, 20, 25, 30]
            for q in single.values():
                assert q.q10 <= q.q50 <= q.q90
            assert abs(engine.get_trend_probabilities(30).total() - 1.0) < 1e-3
            assert abs(engine.get_zone_probabilities(30).total() - 1.0) < 1e-3

            # Both variants share the same heads, so they agree (15min has T=1.2 only in single)
            assert engine.set_variant('multi') == RouterState.READY
            multi = engine.get_all_quantiles()
            assert engine.cache.current_key == ('multi', NOW)
            for horizon in (5, 10, 20, 25, 30):
                a, b = single[horizon], multi[horizon]
                assert abs(a.q50_delta - b.q50_delta) <= 1.0, f"Variants disagree at {horizon}min"
                assert abs(a.q10_delta - b.q10_delta) <= 1.0
                assert abs(a.q90_delta - b.q90_delta) <= 1.0

    print("PASSED")


def run_all_tests():
    """Run all unit tests."""
    print("\n" + "=" * 70)
    print("TFLITE RUNTIMES - UNIT TESTS")
    print("=" * 70)

    test_tflite_model_runs()
    test_single_horizon_capability()
    test_no_models()
    test_multi_horizon_capability()
    test_invoke_after_close()
    test_engine_with_tflite_models()

    print("=" * 70)
    print("ALL TESTS PASSED!")
    print("=" * 70)


if __name__ == '__main__':
    run_all_tests()
