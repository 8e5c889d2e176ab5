"""
Non-Linear (Levenberg-Marquardt) Magnetometer Calibrators

Refines hard iron and soft iron with scipy.optimize.least_squares using
analytic Jacobians, then estimates the parameter covariance, chi-square and
mean squared error from the weighted residuals at the solution.

Residuals are weighted by 1 / std of each measurement:
- Frame models: the 3 components of (b_meas - b_hi - (I + Mm) b_true) / std
- Norm models:  (||(I + Mm)^-1 (b_meas - b_hi)|| - B) / std

Parameter vector: [bx, by, bz] (when hard iron is estimated) followed by the
free soft-iron parameters in (sx, sy, sz, mxy, mxz, myx, myz, mzx, mzy)
order. Common-axis parameters are excluded and reported with zero
covariance.

The optimizer works on flux densities divided by the field magnitude, so
hard iron and soft iron have comparable scales. Chi-square, MSE and
covariance are reported in the original units.

Field norms do not observe the orientation of I + Mm: for any rotation R,
(I + Mm) R fits the data as well as I + Mm. Norm refinement in the general
case therefore splits the seed as I + Mm0 = U0 R0 (U0 upper triangular),
refines U and publishes U R0.

Author: magcal project
"""

import numpy as np
from scipy.linalg import rq
from scipy.optimize import least_squares
from typing import Optional

from .calibration_result import CalibrationResult
from .covariance import ensure_covariance_valid, estimate_covariance, expand_covariance, goodness_of_fit
from .errors import NumericalInstabilityError
from .magnetometer import (
    MM_PARAM_INDICES,
    apply_common_axis,
    free_parameter_mask,
    mm_to_params,
    params_to_mm,
)
from .numerical_checks import assert_finite
from . import config


DEFAULT_MAX_FUNCTION_EVALUATIONS = 200
DEFAULT_TOLERANCE = 1e-12

# Singular values of I + Mm outside this band mean the fit ran away
MIN_SOFT_IRON_SINGULAR_VALUE = 1e-3
MAX_SOFT_IRON_SINGULAR_VALUE = 1e3


class _Parametrization:
    """
    Maps between the free parameter vector and (hard_iron, mm).

    Hard iron inside the vector is expressed in units of `scale`.
    """

    def __init__(self, hard_iron, mm0, hard_iron_estimated, common_axis, scale=1.0):
        self.hard_iron_estimated = hard_iron_estimated
        self.scale = float(scale)
        self.full_mask = free_parameter_mask(hard_iron_estimated, common_axis)
        self.mm_mask = self.full_mask[3:] if hard_iron_estimated else self.full_mask
        self.hard_iron = np.array(hard_iron, dtype=float)
        self.fixed_hard_iron = self.hard_iron / self.scale
        self.mm_entries = [MM_PARAM_INDICES[p] for p in np.flatnonzero(self.mm_mask)]

        x0 = mm_to_params(mm0)[self.mm_mask]
        if hard_iron_estimated:
            x0 = np.concatenate([self.fixed_hard_iron, x0])
        self.x0 = x0

    @property
    def n_params(self):
        return self.x0.size

    @property
    def hi_offset(self):
        return 3 if self.hard_iron_estimated else 0

    def unpack(self, x):
        if self.hard_iron_estimated:
            hard_iron = x[:3]
        else:
            hard_iron = self.fixed_hard_iron
        params = np.zeros(9)
        params[self.mm_mask] = x[self.hi_offset:]
        return hard_iron, params_to_mm(params)

    def unpack_physical(self, x):
        hard_iron, mm = self.unpack(x)
        if not self.hard_iron_estimated:
            return self.hard_iron, mm
        return hard_iron * self.scale, mm


# =============================================================================
# Frame model
# =============================================================================

def _frame_residuals(x, param, b_meas, b_true, weights):
    hard_iron, mm = param.unpack(x)
    pred = hard_iron + b_true @ (np.eye(3) + mm).T
    return ((b_meas - pred) * weights[:, None]).reshape(-1)


def _frame_jacobian(x, param, b_meas, b_true, weights):
    n = b_meas.shape[0]
    J = np.zeros((3 * n, param.n_params))
    off = param.hi_offset
    for i in range(3):
        rows = np.arange(i, 3 * n, 3)
        if param.hard_iron_estimated:
            J[rows, i] = -weights
        for j, (r, c) in enumerate(param.mm_entries):
            if r == i:
                J[rows, off + j] = -b_true[:, c] * weights
    return J


# =============================================================================
# Norm model
# =============================================================================

def _norm_terms(x, param, b_meas):
    hard_iron, mm = param.unpack(x)
    t = np.eye(3) + mm
    try:
        t_inv = np.linalg.inv(t)
    except np.linalg.LinAlgError as e:
        raise NumericalInstabilityError(f"I + Mm is singular: {e}") from e
    u = (b_meas - hard_iron) @ t_inv.T
    u_norm = np.linalg.norm(u, axis=1)
    return t_inv, u, u_norm


def _norm_residuals(x, param, b_meas, norm, weights):
    _, _, u_norm = _norm_terms(x, param, b_meas)
    return (u_norm - norm) * weights


def _norm_jacobian(x, param, b_meas, norm, weights):
    t_inv, u, u_norm = _norm_terms(x, param, b_meas)
    u_norm = np.where(u_norm > 0.0, u_norm, np.finfo(float).tiny)
    # w = (I + Mm)^-T u / ||u||
    w = (u / u_norm[:, None]) @ t_inv
    J = np.zeros((b_meas.shape[0], param.n_params))
    off = param.hi_offset
    if param.hard_iron_estimated:
        J[:, :3] = -w
    for j, (r, c) in enumerate(param.mm_entries):
        J[:, off + j] = -w[:, r] * u[:, c]
    return J * weights[:, None]


def _triangular_factor(t):
    """Split t = U R with U upper triangular (positive diagonal) and R orthogonal."""
    u, r = rq(t)
    d = np.sign(np.diag(u))
    d[d == 0.0] = 1.0
    return u * d, d[:, None] * r


def _reorient(result, rotation, label):
    """Publish I + Mm = (I + Mm_U) R, carrying the covariance through the map."""
    mm = (np.eye(3) + result.mm) @ rotation - np.eye(3)

    covariance = None
    if result.covariance is not None:
        G = np.zeros((9, 9))
        for p in range(9):
            e = np.zeros(9)
            e[p] = 1.0
            G[:, p] = mm_to_params(params_to_mm(e) @ rotation)
        off = 3 if result.hard_iron_estimated else 0
        full = np.eye(off + 9)
        full[off:, off:] = G
        covariance = ensure_covariance_valid(full @ result.covariance @ full.T, label=label)

    return CalibrationResult(hard_iron=np.array(result.hard_iron), mm=mm,
                             covariance=covariance, mse=result.mse, chi_sq=result.chi_sq,
                             hard_iron_estimated=result.hard_iron_estimated)


# =============================================================================
# Shared driver
# =============================================================================

def _weights(std, n):
    if std is None:
        return np.ones(n)
    std = np.broadcast_to(np.asarray(std, dtype=float), (n,))
    return 1.0 / std


def _diverged(res, seed_cost, param):
    if not np.all(np.isfinite(res.x)) or not np.isfinite(res.cost):
        return True
    if res.cost > seed_cost:
        return True
    _, mm = param.unpack(res.x)
    sv = np.linalg.svd(np.eye(3) + mm, compute_uv=False)
    return sv[-1] < MIN_SOFT_IRON_SINGULAR_VALUE or sv[0] > MAX_SOFT_IRON_SINGULAR_VALUE


def _run(fun, jac, param, args, compute_covariance, label, max_nfev):
    """
    Minimize fun from param.x0, falling back to the seed when the fit runs
    away, and compute the statistics in physical units.

    Args are scaled by param.scale; residuals and Jacobians in physical
    units are r = s * r_s and J = s * J_s * diag(1/s for hard iron, 1 for Mm).
    """
    x0 = param.x0
    fun_args = (param,) + tuple(args)
    seed_cost = 0.5 * float(np.sum(fun(x0, *fun_args) ** 2))
    if not np.isfinite(seed_cost):
        raise NumericalInstabilityError(f"{label}: non-finite residuals at the initial point")

    x = x0
    try:
        res = least_squares(fun, x0, jac=jac, args=fun_args, method="lm",
                            ftol=DEFAULT_TOLERANCE, xtol=DEFAULT_TOLERANCE,
                            gtol=DEFAULT_TOLERANCE, max_nfev=max_nfev)
        if _diverged(res, seed_cost, param):
            if config.VERBOSE_DEBUG:
                print(f"[LM] {label}: diverged (status={res.status} cost={res.cost:.6e}), "
                      f"keeping initial solution")
        else:
            x = res.x
            if config.VERBOSE_DEBUG:
                print(f"[LM] {label}: status={res.status} nfev={res.nfev} cost={res.cost:.6e}")
    except NumericalInstabilityError as e:
        if config.VERBOSE_DEBUG:
            print(f"[LM] {label}: {e}, keeping initial solution")
    except (np.linalg.LinAlgError, ValueError) as e:
        raise NumericalInstabilityError(f"{label}: optimization failed: {e}") from e

    assert_finite(f"{label} solution", x, raise_on_fail=True)

    s = param.scale
    hard_iron, mm = param.unpack_physical(x)
    chi_sq, mse = goodness_of_fit(s * fun(x, *fun_args), param.n_params)

    covariance = None
    if compute_covariance:
        J = s * jac(x, *fun_args)
        J[:, :param.hi_offset] /= s
        cov_free = estimate_covariance(J, label=f"{label} covariance")
        covariance = expand_covariance(cov_free, param.full_mask)

    return CalibrationResult(hard_iron=np.array(hard_iron), mm=mm,
                             covariance=covariance, mse=mse, chi_sq=chi_sq,
                             hard_iron_estimated=param.hard_iron_estimated)


def refine_frame(b_meas: np.ndarray, b_true: np.ndarray,
                 hard_iron: np.ndarray, initial_mm: np.ndarray,
                 hard_iron_estimated: bool = True, common_axis: bool = False,
                 std: Optional[np.ndarray] = None,
                 compute_covariance: bool = True,
                 max_nfev: int = DEFAULT_MAX_FUNCTION_EVALUATIONS) -> CalibrationResult:
    """
    Levenberg-Marquardt refinement of a frame-based calibration.

    Args:
        b_meas: Measured flux density (N, 3) [T]
        b_true: Expected body flux density (N, 3) [T]
        hard_iron: Initial (or known, when not estimated) hard iron [T]
        initial_mm: Initial soft iron
        hard_iron_estimated: Whether hard iron is a free parameter
        common_axis: Force myx = mzx = mzy = 0
        std: Per-measurement standard deviation (N,) or scalar
        compute_covariance: Estimate the parameter covariance

    Raises:
        NumericalInstabilityError: if the solution or its covariance
            cannot be computed
    """
    b_meas = np.asarray(b_meas, dtype=float)
    b_true = np.asarray(b_true, dtype=float)
    scale = float(np.mean(np.linalg.norm(b_true, axis=1))) if b_true.size else 0.0
    if not scale > 0.0:
        scale = 1.0
    mm0 = apply_common_axis(initial_mm) if common_axis else initial_mm
    param = _Parametrization(hard_iron, mm0, hard_iron_estimated, common_axis, scale)
    weights = _weights(std, b_meas.shape[0])
    return _run(_frame_residuals, _frame_jacobian, param,
                (b_meas / scale, b_true / scale, weights), compute_covariance,
                "frame refinement", max_nfev)


def refine_norm(b_meas: np.ndarray, norm: float,
                hard_iron: np.ndarray, initial_mm: np.ndarray,
                hard_iron_estimated: bool = True, common_axis: bool = False,
                std: Optional[np.ndarray] = None,
                compute_covariance: bool = True,
                max_nfev: int = DEFAULT_MAX_FUNCTION_EVALUATIONS) -> CalibrationResult:
    """
    Levenberg-Marquardt refinement of a norm-based calibration.

    In the general (not common-axis) case the orientation of I + Mm is kept
    at that of initial_mm; only its triangular factor is refined and the
    covariance has no variance along the orientation.
    """
    b_meas = np.asarray(b_meas, dtype=float)
    norm = float(norm)
    if not norm > 0.0:
        raise ValueError(f"norm must be positive, got {norm}")

    rotation = None
    if common_axis:
        mm0 = apply_common_axis(initial_mm)
    else:
        try:
            u0, rotation = _triangular_factor(np.eye(3) + np.asarray(initial_mm, dtype=float))
        except (np.linalg.LinAlgError, ValueError) as e:
            raise NumericalInstabilityError(f"norm refinement: bad initial soft iron: {e}") from e
        mm0 = apply_common_axis(u0 - np.eye(3))

    param = _Parametrization(hard_iron, mm0, hard_iron_estimated, True, norm)
    weights = _weights(std, b_meas.shape[0])
    result = _run(_norm_residuals, _norm_jacobian, param,
                  (b_meas / norm, 1.0, weights), compute_covariance,
                  "norm refinement", max_nfev)
    if rotation is not None:
        result = _reorient(result, rotation, "norm refinement covariance")
    return result
