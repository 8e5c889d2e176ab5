"""
Magnetometer Measurement Model

Maps calibration parameters onto measured flux density and back:

    b_meas = b_hard_iron + (I + Mm) * b_true

where Mm holds the soft-iron scale factors on its diagonal and the
cross-coupling terms off the diagonal:

    Mm = [[sx,  mxy, mxz],
          [myx, sy,  myz],
          [mzx, mzy, sz ]]

Under the common-axis assumption myx = mzx = mzy = 0 (upper triangular Mm).

All flux densities are expressed in Tesla.

Author: magcal project
"""

import numpy as np
from typing import Optional

from .errors import NumericalInstabilityError
from .units import MagneticFluxDensityTriad


# =============================================================================
# Defaults
# =============================================================================

DEFAULT_HARD_IRON = np.zeros(3)
DEFAULT_MM = np.zeros((3, 3))

# Parameter order used by covariance matrices and parameter vectors
MM_PARAM_NAMES = ("sx", "sy", "sz", "mxy", "mxz", "myx", "myz", "mzx", "mzy")
HARD_IRON_PARAM_NAMES = ("bx", "by", "bz")

# (row, col) of each soft-iron parameter inside Mm
MM_PARAM_INDICES = (
    (0, 0), (1, 1), (2, 2),
    (0, 1), (0, 2),
    (1, 0), (1, 2),
    (2, 0), (2, 1),
)

# Soft-iron parameters left free under the common-axis assumption
COMMON_AXIS_FREE_MM = np.array(
    [True, True, True, True, True, False, True, False, False])


# =============================================================================
# Input validation
# =============================================================================

def as_vector3(name: str, value) -> np.ndarray:
    """
    Validate and copy a 3-component vector.

    Accepts arrays of shape (3,) or (3, 1) and MagneticFluxDensityTriad values
    (converted to Tesla).

    Raises:
        ValueError: if the value does not hold exactly 3 finite components
    """
    if isinstance(value, MagneticFluxDensityTriad):
        return value.to_tesla()
    arr = np.array(value, dtype=float)
    if arr.shape not in ((3,), (3, 1)):
        raise ValueError(f"{name} must have 3 components, got shape {arr.shape}")
    arr = arr.reshape(3)
    if not np.all(np.isfinite(arr)):
        raise ValueError(f"{name} must be finite, got {arr}")
    return arr


def as_matrix3(name: str, value) -> np.ndarray:
    """Validate and copy a 3x3 matrix."""
    arr = np.array(value, dtype=float)
    if arr.shape != (3, 3):
        raise ValueError(f"{name} must be 3x3, got shape {arr.shape}")
    if not np.all(np.isfinite(arr)):
        raise ValueError(f"{name} must be finite")
    return arr


# =============================================================================
# Soft-iron parameter packing
# =============================================================================

def mm_to_params(mm: np.ndarray) -> np.ndarray:
    """Flatten Mm into (sx, sy, sz, mxy, mxz, myx, myz, mzx, mzy)."""
    return np.array([mm[r, c] for r, c in MM_PARAM_INDICES], dtype=float)


def params_to_mm(params) -> np.ndarray:
    """Inverse of mm_to_params."""
    mm = np.zeros((3, 3))
    for value, (r, c) in zip(params, MM_PARAM_INDICES):
        mm[r, c] = value
    return mm


def free_parameter_mask(hard_iron_estimated: bool, common_axis: bool) -> np.ndarray:
    """
    Boolean mask over the full parameter vector marking estimated parameters.

    Full vector is [bx, by, bz, sx, ..., mzy] when hard iron is estimated and
    [sx, ..., mzy] otherwise.
    """
    mm_mask = COMMON_AXIS_FREE_MM.copy() if common_axis else np.ones(9, dtype=bool)
    if hard_iron_estimated:
        return np.concatenate([np.ones(3, dtype=bool), mm_mask])
    return mm_mask


def apply_common_axis(mm: np.ndarray) -> np.ndarray:
    """Zero the cross-coupling terms forced to zero under the common-axis assumption."""
    return np.triu(mm)


# =============================================================================
# Forward model and corrections
# =============================================================================

def predict_measured(hard_iron: np.ndarray, mm: np.ndarray,
                     b_true: np.ndarray) -> np.ndarray:
    """
    Predict measured flux density from the true one.

    Args:
        hard_iron: Hard-iron bias (3,)
        mm: Soft-iron matrix (3, 3)
        b_true: True flux density (3,) or (N, 3)

    Returns:
        Predicted measured flux density with the shape of b_true
    """
    t = np.eye(3) + mm
    return hard_iron + np.asarray(b_true) @ t.T


def fix_measurement(b_meas: np.ndarray, hard_iron: np.ndarray,
                    mm: np.ndarray) -> np.ndarray:
    """
    Remove hard-iron and soft-iron effects from measured flux density.

    Returns:
        Corrected (true) flux density with the shape of b_meas

    Raises:
        NumericalInstabilityError: if I + Mm is singular
    """
    t = np.eye(3) + mm
    try:
        t_inv = np.linalg.inv(t)
    except np.linalg.LinAlgError as e:
        raise NumericalInstabilityError(f"I + Mm is singular: {e}") from e
    return (np.asarray(b_meas) - hard_iron) @ t_inv.T


# =============================================================================
# Residuals
# =============================================================================

def frame_residuals(b_meas: np.ndarray, b_true: np.ndarray,
                    hard_iron: np.ndarray, mm: np.ndarray,
                    std: Optional[np.ndarray] = None) -> np.ndarray:
    """
    Per-measurement residual || b_meas - predict(b_true) ||.

    When std is given each residual is divided by its measurement's
    standard deviation.
    """
    diff = b_meas - predict_measured(hard_iron, mm, b_true)
    res = np.linalg.norm(diff, axis=1)
    if std is not None:
        res = res / std
    return res


def norm_residuals(b_meas: np.ndarray, hard_iron: np.ndarray, mm: np.ndarray,
                   norm: float, std: Optional[np.ndarray] = None) -> np.ndarray:
    """
    Per-measurement residual | ||(I + Mm)^-1 (b_meas - b_hard_iron)|| - B |.

    Raises:
        NumericalInstabilityError: if I + Mm is singular
    """
    b_fixed = fix_measurement(b_meas, hard_iron, mm)
    res = np.abs(np.linalg.norm(b_fixed, axis=1) - norm)
    if std is not None:
        res = res / std
    return res
