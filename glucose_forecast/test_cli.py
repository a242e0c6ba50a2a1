"""
Unit tests for the command line interface.

Usage:
    python -m glucose_forecast.test_cli
"""
import contextlib
import io
import json
import os
import tempfile

from glucose_forecast.cli import main
from glucose_forecast.test_tflite_models import export_multihead_model, export_single_models

VALUES = [140, 138, 137, 135, 132, 130, 126, 123, 120, 118, 117]


def write_readings(path):
    with open(path, 'w') as f:
        f.write("displayTime,value\n")
        for i, value in enumerate(VALUES):
            f.write(f"2024-01-15T08:{i * 5:02d}:00,{value}\n")


def run_cli(argv):
    out = io.StringIO()
    with contextlib.redirect_stdout(out):
        code = main(argv)
    return code, out.getvalue()


def test_json_output():
    print("Testing CLI JSON output...", end=" ")

    with tempfile.TemporaryDirectory() as tmpdir:
        csv_path = os.path.join(tmpdir, 'readings.csv')
        write_readings(csv_path)
        export_single_models(tmpdir, [5, 10, 15, 20, 25, 30])

        code, output = run_cli(['--csv', csv_path, '--models-dir', tmpdir, '--json'])
        assert code == 0, output
        result = json.loads(output)
        assert result["current"] == 117.0
        assert result["variant"] == "single"
        assert [row["horizon"] for row in result["forecasts"]] == [5, 10, 15, 20, 25, 30]
        for row in result["forecasts"]:
            assert row["q10"] <= row["q50"] <= row["q90"]
            assert abs(sum(row["zones"].values()) - 1.0) < 1e-3

    print("PASSED")


def test_table_output_at_time():
    print("Testing CLI table output...", end=" ")

    with tempfile.TemporaryDirectory() as tmpdir:
        csv_path = os.path.join(tmpdir, 'readings.csv')
        write_readings(csv_path)
        export_multihead_model(tmpdir)

        code, output = run_cli(['--csv', csv_path, '--models-dir', tmpdir, '--variant', 'multi',
                                '--at', '2024-01-15T08:42:00', '--horizon', '15'])
        assert code == 0, output
        assert "Current: 120 mg/dL" in output, "Last reading at or before 08:42 is 08:40"
        assert "15m" in output
        assert "Model: multi" in output

    print("PASSED")


def test_errors():
    print("Testing CLI errors...", end=" ")

    with tempfile.TemporaryDirectory() as tmpdir:
        csv_path = os.path.join(tmpdir, 'readings.csv')
        write_readings(csv_path)

        code, output = run_cli(['--csv', csv_path, '--models-dir', tmpdir])
        assert code == 1
        assert "no model available" in output

        code, output = run_cli(['--csv', os.path.join(tmpdir, 'missing.csv'), '--models-dir', tmpdir])
        assert code == 1
        assert output.startswith("Error:")

        # Not enough history before 08:20
        export_single_models(tmpdir, [15])
        code, output = run_cli(['--csv', csv_path, '--models-dir', tmpdir,
                                '--at', '2024-01-15T08:20:00', '--json'])
        assert code == 1
        assert "Insufficient data" in json.loads(output)["forecasts"][0]["error"]

    print("PASSED")


def run_all_tests():
    """Run all unit tests."""
    print("\n" + "=" * 70)
    print("CLI - UNIT TESTS")
    print("=" * 70)

    test_json_output()
    test_table_output_at_time()
    test_errors()

    print("=" * 70)
    print("ALL TESTS PASSED!")
    print("=" * 70)


if __name__ == '__main__':
    run_all_tests()
