"""
magcal - Robust Magnetometer Calibration Package

Estimates magnetometer hard-iron bias and soft-iron distortion from
flux density measurements contaminated with outliers, using
sample-consensus estimators (RANSAC, LMedS, MSAC, PROSAC, PROMedS)
followed by Levenberg-Marquardt refinement and covariance estimation.

Version: 1.2.0

Changes in v1.2.0:
- NEW: PROSAC/PROMedS progressive sampling driven by quality scores
- NEW: Known-position (field norm) calibrators with and without known hard iron
- IMPROVED: Covariance rows/columns of common-axis parameters are exactly zero
- IMPROVED: Settings are snapshotted at the start of calibrate()

Changes in v1.1.0:
- NEW: YAML configuration and CSV measurement loading (run_calibration.py)
- NEW: Tilted-dipole Earth field estimator
- FIX: Failed runs no longer overwrite the previous estimates

Modules:
- magnetometer: measurement model and residuals
- linear_calibrators: closed-form minimal-subset fitters
- nonlinear_calibrators: Levenberg-Marquardt refinement
- covariance: covariance, MSE and chi-square
- robust: consensus loop and robust calibrators
- field_model, measurements, units, config, data_loaders, output_utils
"""

import importlib

__version__ = "1.2.0"

_SUBMODULES = {
    "calibration_result",
    "config",
    "covariance",
    "data_loaders",
    "errors",
    "field_model",
    "linear_calibrators",
    "magnetometer",
    "math_utils",
    "measurements",
    "nonlinear_calibrators",
    "numerical_checks",
    "output_utils",
    "robust",
    "units",
}


def __getattr__(name):
    if name in _SUBMODULES:
        module = importlib.import_module(f".{name}", __name__)
        globals()[name] = module
        return module
    raise AttributeError(f"module 'magcal' has no attribute '{name}'")


def __dir__():
    return sorted(list(globals().keys()) + list(_SUBMODULES))


__all__ = sorted(_SUBMODULES)
