"""
Closed-form (Linear Least-Squares) Magnetometer Calibrators

Each function solves one calibration model from a set of measurements in a
single linear step. They are used both as standalone calibrators and as the
minimal-subset fitters of the robust estimators.

Models:
- Known frame: expected body field known for each measurement, hard iron
  and Mm estimated. 3 equations per measurement.
- Known hard iron and frame: as above with a fixed hard iron.
- Known hard iron, known field norm: ||(I + Mm)^-1 (b_meas - b_hi)|| = B.
  Solved as a quadratic form in v = b_meas - b_hi.
- Known field norm: hard iron unknown. Solved as a general quadric
  (ellipsoid) fit.

Soft-iron matrices recovered from a quadratic form are only defined up to a
rotation. Under the common-axis assumption (upper triangular Mm) the solution
is unique; otherwise the rotation closest to the initial guess is picked
(orthogonal Procrustes).

Rank-deficient systems raise NumericalInstabilityError.

Author: magcal project
"""

import numpy as np
from typing import Optional, Tuple

from .errors import NumericalInstabilityError
from .magnetometer import (
    MM_PARAM_INDICES,
    COMMON_AXIS_FREE_MM,
    DEFAULT_MM,
    apply_common_axis,
)
from .numerical_checks import assert_finite, check_rank


# =============================================================================
# Frame-based models
# =============================================================================

def _frame_design_matrix(b_true: np.ndarray, hard_iron_estimated: bool,
                         mm_free: np.ndarray) -> np.ndarray:
    """
    Stack 3 rows per measurement.

    Columns are [bx, by, bz] (when estimated) followed by the free soft-iron
    parameters in MM_PARAM_INDICES order.
    """
    n = b_true.shape[0]
    mm_cols = [rc for rc, free in zip(MM_PARAM_INDICES, mm_free) if free]
    offset = 3 if hard_iron_estimated else 0
    A = np.zeros((3 * n, offset + len(mm_cols)))
    for i in range(3):
        rows = np.arange(i, 3 * n, 3)
        if hard_iron_estimated:
            A[rows, i] = 1.0
        for j, (r, c) in enumerate(mm_cols):
            if r == i:
                A[rows, offset + j] = b_true[:, c]
    return A


def _unpack_mm(values: np.ndarray, mm_free: np.ndarray) -> np.ndarray:
    mm = np.zeros((3, 3))
    free_indices = [rc for rc, free in zip(MM_PARAM_INDICES, mm_free) if free]
    for value, (r, c) in zip(values, free_indices):
        mm[r, c] = value
    return mm


def _solve_frame(b_meas, b_true, hard_iron, common_axis):
    b_meas = np.asarray(b_meas, dtype=float)
    b_true = np.asarray(b_true, dtype=float)
    hard_iron_estimated = hard_iron is None
    mm_free = COMMON_AXIS_FREE_MM if common_axis else np.ones(9, dtype=bool)

    A = _frame_design_matrix(b_true, hard_iron_estimated, mm_free)
    rhs = b_meas - b_true
    if not hard_iron_estimated:
        rhs = rhs - hard_iron
    rhs = rhs.reshape(-1)

    # Column scaling keeps hard-iron (unit) and field (~1e-5 T) columns comparable
    scale = np.linalg.norm(A, axis=0)
    scale[scale == 0.0] = 1.0
    A_scaled = A / scale
    check_rank("frame design matrix", A_scaled, A.shape[1])
    x, *_ = np.linalg.lstsq(A_scaled, rhs, rcond=None)
    x = x / scale
    assert_finite("frame solution", x, raise_on_fail=True)

    if hard_iron_estimated:
        return x[:3].copy(), _unpack_mm(x[3:], mm_free)
    return np.array(hard_iron, dtype=float), _unpack_mm(x, mm_free)


def solve_known_frame(b_meas: np.ndarray, b_true: np.ndarray,
                      common_axis: bool = False) -> Tuple[np.ndarray, np.ndarray]:
    """
    Estimate hard iron and Mm from measured and expected body flux densities.

    Args:
        b_meas: Measured flux density (N, 3) [T]
        b_true: Expected body flux density (N, 3) [T]
        common_axis: Force myx = mzx = mzy = 0

    Returns:
        (hard_iron, mm)
    """
    return _solve_frame(b_meas, b_true, None, common_axis)


def solve_known_hard_iron_and_frame(b_meas: np.ndarray, b_true: np.ndarray,
                                    hard_iron: np.ndarray,
                                    common_axis: bool = False) -> Tuple[np.ndarray, np.ndarray]:
    """Estimate Mm from measured/expected flux densities with a known hard iron."""
    return _solve_frame(b_meas, b_true, np.asarray(hard_iron, dtype=float), common_axis)


# =============================================================================
# Norm-based models
# =============================================================================

def _quadric_rows(w: np.ndarray) -> np.ndarray:
    """Quadratic-form monomials [x², y², z², 2xy, 2xz, 2yz] per row of w."""
    x, y, z = w[:, 0], w[:, 1], w[:, 2]
    return np.column_stack([x * x, y * y, z * z, 2 * x * y, 2 * x * z, 2 * y * z])


def _symmetric_from_params(q: np.ndarray) -> np.ndarray:
    return np.array([
        [q[0], q[3], q[4]],
        [q[3], q[1], q[5]],
        [q[4], q[5], q[2]],
    ])


def _closest_rotation(B: np.ndarray, C: np.ndarray) -> np.ndarray:
    """Rotation X minimizing ||B X - C||_F (orthogonal Procrustes)."""
    W, _, Vt = np.linalg.svd(B.T @ C)
    d = np.sign(np.linalg.det(W @ Vt))
    return W @ np.diag([1.0, 1.0, d]) @ Vt


def soft_iron_from_quadratic_form(Q: np.ndarray, common_axis: bool,
                                  initial_mm: Optional[np.ndarray] = None) -> np.ndarray:
    """
    Recover Mm from Q = (I + Mm)^-T (I + Mm)^-1.

    Q = U^T U (Cholesky, U upper triangular) gives I + Mm = U^-1 R for any
    rotation R. The common-axis solution is R = I. Otherwise R is the
    rotation bringing U^-1 closest to I + initial_mm.

    Raises:
        NumericalInstabilityError: if Q is not positive definite
    """
    assert_finite("quadratic form", Q, raise_on_fail=True)
    Q = 0.5 * (Q + Q.T)
    try:
        L = np.linalg.cholesky(Q)
    except np.linalg.LinAlgError as e:
        raise NumericalInstabilityError(f"quadratic form is not positive definite: {e}") from e
    U = L.T
    try:
        t = np.linalg.inv(U)
    except np.linalg.LinAlgError as e:
        raise NumericalInstabilityError(f"singular Cholesky factor: {e}") from e

    if not common_axis:
        m0 = np.eye(3) + (DEFAULT_MM if initial_mm is None else initial_mm)
        t = t @ _closest_rotation(t, m0)

    mm = t - np.eye(3)
    if common_axis:
        mm = apply_common_axis(mm)
    assert_finite("soft iron", mm, raise_on_fail=True)
    return mm


def solve_known_hard_iron_norm(b_meas: np.ndarray, hard_iron: np.ndarray,
                               norm: float, common_axis: bool = False,
                               initial_mm: Optional[np.ndarray] = None) -> np.ndarray:
    """
    Estimate Mm from measurements of a field with known norm and a known
    hard iron.

    Args:
        b_meas: Measured flux density (N, 3) [T], N >= 6
        hard_iron: Known hard iron (3,) [T]
        norm: Known flux density norm B [T]
        common_axis: Force myx = mzx = mzy = 0
        initial_mm: Guess used to resolve the rotation ambiguity

    Returns:
        mm (3, 3)
    """
    if norm <= 0.0:
        raise NumericalInstabilityError(f"field norm must be positive, got {norm}")
    w = (np.asarray(b_meas, dtype=float) - hard_iron) / norm
    A = _quadric_rows(w)
    check_rank("norm design matrix", A, 6)
    q, *_ = np.linalg.lstsq(A, np.ones(A.shape[0]), rcond=None)
    return soft_iron_from_quadratic_form(_symmetric_from_params(q), common_axis, initial_mm)


def solve_norm(b_meas: np.ndarray, norm: float, common_axis: bool = False,
               initial_mm: Optional[np.ndarray] = None) -> Tuple[np.ndarray, np.ndarray]:
    """
    Estimate hard iron and Mm from measurements of a field with known norm.

    Fits the general quadric w^T A w + g^T w + c = 0 (w = b_meas / B) as the
    null space of its design matrix, then recovers the centre (hard iron) and
    the scale fixing the quadric to the known norm.

    Returns:
        (hard_iron, mm)
    """
    if norm <= 0.0:
        raise NumericalInstabilityError(f"field norm must be positive, got {norm}")
    w = np.asarray(b_meas, dtype=float) / norm
    D = np.column_stack([_quadric_rows(w), w, np.ones(w.shape[0])])
    check_rank("quadric design matrix", D, 9)

    _, _, Vt = np.linalg.svd(D)
    p = Vt[-1]
    A = _symmetric_from_params(p[:6])
    g = p[6:9]
    c = p[9]

    try:
        centre = -0.5 * np.linalg.solve(A, g)
    except np.linalg.LinAlgError as e:
        raise NumericalInstabilityError(f"degenerate quadric: {e}") from e

    k = centre @ A @ centre - c
    if not np.isfinite(k) or k == 0.0:
        raise NumericalInstabilityError("degenerate quadric scale")
    Q = A / k

    mm = soft_iron_from_quadratic_form(Q, common_axis, initial_mm)
    hard_iron = centre * norm
    assert_finite("hard iron", hard_iron, raise_on_fail=True)
    return hard_iron, mm
