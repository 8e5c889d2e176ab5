#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Robust Magnetometer Calibration Entry Point (run_calibration.py)

Loads measurements from CSV, builds a robust calibrator from a YAML config
and prints/saves the estimated hard iron and soft iron.

Configuration Model:
--------------------
    YAML config is the single source of truth for algorithm settings.
    CLI provides paths, the consensus method override and runtime flags.

Usage:
    python run_calibration.py --config configs/calibration.yaml \\
        --measurements mag_samples.csv --output calibration.yaml

    # Force a consensus method:
    python run_calibration.py --config calibration.yaml --method prosac

Author: magcal project
"""

import argparse
import sys
import os

# Add workspace to path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))


METHOD_CHOICES = ["ransac", "lmeds", "msac", "prosac", "promeds"]


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Robust magnetometer calibration",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Model types (YAML model.type):
  known_frame                            hard iron + Mm, known attitude/position
  known_hard_iron_and_frame              Mm, known hard iron and attitude/position
  position_and_instant                   hard iron + Mm, field norm at known position
  known_hard_iron_position_and_instant   Mm, known hard iron, field norm

Examples:
  python run_calibration.py --config calibration.yaml --measurements samples.csv
  python run_calibration.py --config calibration.yaml --method msac --output result.yaml
        """
    )
    parser.add_argument("--config", type=str, required=True,
                        help="Path to YAML config file")
    parser.add_argument("--measurements", type=str, default=None,
                        help="Measurements CSV (default: from YAML)")
    parser.add_argument("--method", type=str, default=None, choices=METHOD_CHOICES,
                        help="Consensus method (default: from YAML)")
    parser.add_argument("--output", type=str, default=None,
                        help="Write the result as YAML to this path")
    parser.add_argument("--verbose", action="store_true",
                        help="Print consensus loop progress")
    return parser.parse_args(argv)


class _ProgressPrinter:
    def on_calibrate_progress_change(self, calibrator, progress):
        print(f"[MAG-CAL] progress {100.0 * progress:5.1f}%")


def main(argv=None):
    """Main entry point - load YAML config, calibrate and report."""
    args = parse_args(argv)

    from magcal import __version__
    from magcal import config as mag_config
    from magcal.config import load_config
    from magcal.data_loaders import load_measurements_csv
    from magcal.errors import CalibrationError, NotReadyError
    from magcal.output_utils import print_calibration_summary, save_calibration_yaml
    from magcal.robust import calibrator_from_config

    print("=" * 60)
    print(f"Robust magnetometer calibration (magcal {__version__})")
    print("=" * 60)

    try:
        cfg = load_config(args.config)
        if args.method:
            cfg['ROBUST_METHOD'] = args.method.upper()
        if args.verbose:
            mag_config.VERBOSE_ROBUST = True

        csv_path = args.measurements or cfg['MEASUREMENTS_CSV']
        measurements, quality = load_measurements_csv(
            csv_path, cfg['MEASUREMENTS_COLUMNS'], cfg['MEASUREMENTS_UNIT'],
            cfg['MEASUREMENTS_STD'])

        calibrator = calibrator_from_config(cfg, measurements,
                                            listener=_ProgressPrinter() if args.verbose else None)
        if quality is not None:
            calibrator.quality_scores = quality

        print(f"  Model: {cfg['MODEL_TYPE']}  Method: {calibrator.method.name}")
        print(f"  Measurements: {len(measurements)} "
              f"(minimum {calibrator.minimum_required_measurements})")

        calibrator.calibrate()
        print_calibration_summary(calibrator)

        if args.output:
            save_calibration_yaml(args.output, calibrator)

    except (FileNotFoundError, ValueError) as e:
        print(f"[MAG-CAL] Configuration error: {e}")
        return 1
    except NotReadyError as e:
        print(f"[MAG-CAL] Not ready: {e}")
        return 1
    except CalibrationError as e:
        print(f"[MAG-CAL] Calibration failed: {e}")
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
