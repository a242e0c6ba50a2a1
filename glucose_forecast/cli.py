"""
Glucose Forecast CLI - run the on-device TCN models against recorded readings

USAGE:
   python -m glucose_forecast --csv readings.csv                    # latest reading
   python -m glucose_forecast --csv readings.csv --at 2024-05-01T08:30:00
   python -m glucose_forecast --csv readings.csv --variant multi --json
   python -m glucose_forecast --share                               # Dexcom Share, last 24h
"""
import argparse
import dataclasses
import json
import logging

from glucose_forecast.config import MODEL_VARIANTS, load_settings
from glucose_forecast.engine import init_engine
from glucose_forecast.errors import PredictionError
from glucose_forecast.prediction_data import GlucoseZone
from glucose_forecast.sources import (
    CsvSampleSource, DexcomShareSampleSource, InMemorySampleSource, parse_timestamps
)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Glucose forecasts from TCN distribution models")
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--csv", type=str, metavar="FILE",
                        help="Readings CSV with displayTime and value columns")
    source.add_argument("--share", action="store_true", help="Use Dexcom Share (credentials from .env)")
    parser.add_argument("--models-dir", type=str, help="Directory with .tflite models and metadata")
    parser.add_argument("--variant", choices=MODEL_VARIANTS, help="Model variant to run")
    parser.add_argument("--at", type=str, metavar="ISO_TIME",
                        help="Predict from the last reading at or before this time")
    parser.add_argument("--horizon", type=int, help="Only show this horizon (minutes)")
    parser.add_argument("--json", action="store_true", help="Output JSON instead of a table")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    return parser


def forecast_rows(engine, horizons):
    """Collect the per-horizon forecast shown by the CLI; failed horizons carry an error."""
    rows = []
    for horizon in horizons:
        try:
            quantiles = engine.get_quantiles(horizon)
            trend = engine.get_trend_probabilities(horizon)
            zones = engine.get_zone_probabilities(horizon)
            low = engine.get_low_probability(horizon)
        except PredictionError as e:
            rows.append({"horizon": horizon, "error": str(e)})
            continue
        most_likely = trend.most_likely()
        rows.append({
            "horizon": horizon,
            "q10": quantiles.q10,
            "q50": quantiles.q50,
            "q90": quantiles.q90,
            "trend": most_likely.name,
            "trend_symbol": most_likely.symbol,
            "trend_probability": trend.probability(most_likely),
            "zones": {zone.name: p for zone, p in zones.probabilities.items()},
            "in_range": zones.probability(GlucoseZone.IN_RANGE),
            "low": low,
        })
    return rows


def print_table(reading, rows, variant):
    print(f"\nCurrent: {reading.value:.0f} mg/dL   Model: {variant}\n")
    print(f"{'Horizon':>7} {'Q10':>6} {'Q50':>6} {'Q90':>6}  {'Trend':<6} {'P':>6} "
          f"{'InRange':>8} {'<70':>6}")
    print("-" * 62)
    for row in rows:
        if "error" in row:
            print(f"{row['horizon']:>5}m  {row['error']}")
            continue
        print(f"{row['horizon']:>5}m  {row['q10']:>6.0f} {row['q50']:>6.0f} {row['q90']:>6.0f}  "
              f"{row['trend_symbol']:<6} {row['trend_probability'] * 100:>5.1f}% "
              f"{row['in_range'] * 100:>7.1f}% {row['low'] * 100:>5.1f}%")


def main(argv=None):
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    settings = load_settings()
    overrides = {"enabled": True}
    if args.models_dir:
        overrides["models_dir"] = args.models_dir
    if args.variant:
        overrides["model_variant"] = args.variant
    settings = dataclasses.replace(settings, **overrides)

    try:
        if args.csv:
            source = CsvSampleSource(args.csv)
        else:
            if not args.json:
                print("Connecting to Dexcom Share...")
            source = DexcomShareSampleSource.from_env()

        if args.at:
            reading = source.latest(now=parse_timestamps([args.at])[0])
        elif isinstance(source, InMemorySampleSource):
            reading = source.newest()
        else:
            reading = source.latest()
        if reading is None:
            print("No readings found for this period.")
            return 1

        with init_engine(settings, sample_source=source) as engine:
            engine.on_new_reading(reading)
            horizons = [args.horizon] if args.horizon else engine.available_horizons
            if not horizons:
                error = engine.router.last_error
                print(f"Error: no model available ({error})" if error else "Error: no model available")
                return 1

            rows = forecast_rows(engine, horizons)
            if args.json:
                print(json.dumps({
                    "timestamp": reading.timestamp,
                    "current": reading.value,
                    "variant": settings.model_variant,
                    "forecasts": rows,
                }, indent=2))
            else:
                print_table(reading, rows, settings.model_variant)

        return 0 if any("error" not in row for row in rows) else 1

    except (OSError, ValueError) as e:
        print(f"Error: {e}")
        return 1
