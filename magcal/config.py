#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Magcal Configuration Module
===========================

Handles YAML configuration loading and defines global verbosity flags for
the robust magnetometer calibrators.

Configuration Structure:
------------------------
The YAML config file contains:
- robust: consensus method and its parameters (confidence, max_iterations,
  progress_delta, threshold, stop_threshold, inlier_factor, keep flags, seed)
- model: calibration model family and fitting flags (common axis,
  refinement, linear calibrator, preliminary subset size)
- hard_iron: known hard iron (or initial guess when estimated) [T]
- initial_mm: initial soft-iron matrix guess (3x3)
- position: latitude/longitude [deg], height [m] and decimal year at which
  the measurements were taken (norm-based models)
- ground_truth_norm: known Earth field norm [T] (overrides position)
- measurements: CSV file and column mapping

Units:
------
- Flux densities in Tesla unless a `unit` key says otherwise
- Angles in degrees in the YAML file, radians everywhere in the code

Author: magcal project
"""

import numpy as np
import yaml
from typing import Dict, Any

from .units import MagneticFluxDensityUnit, convert

# ========================================
# Debug verbosity control
# ========================================
VERBOSE_DEBUG = False   # Tripwires, LM status, covariance conditioning
VERBOSE_ROBUST = False  # Per-iteration consensus loop logs


MODEL_TYPES = (
    "known_frame",
    "known_hard_iron_and_frame",
    "position_and_instant",
    "known_hard_iron_position_and_instant",
)


def load_config(config_path: str) -> Dict[str, Any]:
    """
    Load YAML configuration file and convert to a flat settings dictionary.

    Args:
        config_path: Path to YAML configuration file

    Returns:
        Dictionary with upper-case keys:
        - ROBUST_METHOD, CONFIDENCE, MAX_ITERATIONS, PROGRESS_DELTA,
          THRESHOLD, STOP_THRESHOLD, INLIER_FACTOR, KEEP_INLIERS,
          KEEP_RESIDUALS, RANDOM_SEED
        - MODEL_TYPE, COMMON_AXIS, REFINE_RESULT, KEEP_COVARIANCE,
          REFINE_PRELIMINARY, USE_LINEAR_CALIBRATOR, PRELIMINARY_SUBSET_SIZE
        - HARD_IRON, INITIAL_MM
        - LATITUDE, LONGITUDE (radians), HEIGHT, YEAR, GROUND_TRUTH_NORM
        - MEASUREMENTS_CSV, MEASUREMENTS_COLUMNS, MEASUREMENTS_UNIT,
          MEASUREMENTS_STD

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If config file is malformed
        ValueError: If a value is out of range

    Example:
        >>> config = load_config("configs/calibration.yaml")
        >>> print(config['ROBUST_METHOD'])
    """
    with open(config_path, 'r') as f:
        config = yaml.safe_load(f) or {}

    result = {}

    # ========================================
    # Robust estimator
    # ========================================
    robust = config.get('robust', {})
    result['ROBUST_METHOD'] = str(robust.get('method', 'lmeds')).upper()
    result['CONFIDENCE'] = float(robust.get('confidence', 0.99))
    result['MAX_ITERATIONS'] = int(robust.get('max_iterations', 5000))
    result['PROGRESS_DELTA'] = float(robust.get('progress_delta', 0.05))
    result['THRESHOLD'] = robust.get('threshold')
    result['STOP_THRESHOLD'] = robust.get('stop_threshold')
    result['INLIER_FACTOR'] = robust.get('inlier_factor')
    result['KEEP_INLIERS'] = bool(robust.get('keep_inliers', False))
    result['KEEP_RESIDUALS'] = bool(robust.get('keep_residuals', False))
    result['RANDOM_SEED'] = robust.get('seed')

    # ========================================
    # Calibration model
    # ========================================
    model = config.get('model', {})
    result['MODEL_TYPE'] = model.get('type', 'known_hard_iron_position_and_instant')
    if result['MODEL_TYPE'] not in MODEL_TYPES:
        raise ValueError(f"Unknown model type '{result['MODEL_TYPE']}', "
                         f"expected one of {MODEL_TYPES}")
    result['COMMON_AXIS'] = bool(model.get('common_axis', False))
    result['REFINE_RESULT'] = bool(model.get('refine_result', True))
    result['KEEP_COVARIANCE'] = bool(model.get('keep_covariance', True))
    result['REFINE_PRELIMINARY'] = bool(model.get('refine_preliminary', False))
    result['USE_LINEAR_CALIBRATOR'] = bool(model.get('use_linear_calibrator', True))
    result['PRELIMINARY_SUBSET_SIZE'] = model.get('preliminary_subset_size')

    # ========================================
    # Initial / known calibration
    # ========================================
    hard_iron = config.get('hard_iron', {})
    hi_unit = MagneticFluxDensityUnit(hard_iron.get('unit', 'T'))
    hi_values = np.array(hard_iron.get('values', [0.0, 0.0, 0.0]), dtype=float)
    result['HARD_IRON'] = convert(hi_values, hi_unit, MagneticFluxDensityUnit.TESLA)
    result['INITIAL_MM'] = np.array(config.get('initial_mm', np.zeros((3, 3))), dtype=float)

    # ========================================
    # Position and instant
    # ========================================
    position = config.get('position', {})
    result['LATITUDE'] = np.radians(float(position.get('latitude_deg', 0.0)))
    result['LONGITUDE'] = np.radians(float(position.get('longitude_deg', 0.0)))
    result['HEIGHT'] = float(position.get('height_m', 0.0))
    result['YEAR'] = float(position.get('year', 2020.0))
    result['HAS_POSITION'] = bool(position)
    result['GROUND_TRUTH_NORM'] = config.get('ground_truth_norm')

    # ========================================
    # Measurements
    # ========================================
    meas = config.get('measurements', {})
    result['MEASUREMENTS_CSV'] = meas.get('csv')
    result['MEASUREMENTS_COLUMNS'] = meas.get('columns', {})
    result['MEASUREMENTS_UNIT'] = MagneticFluxDensityUnit(meas.get('unit', 'T'))
    result['MEASUREMENTS_STD'] = meas.get('standard_deviation')

    return result
