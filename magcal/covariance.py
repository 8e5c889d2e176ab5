"""
Covariance and Goodness-of-Fit Estimation

Covariance of the refined calibration parameters is the inverse of the
Gauss-Newton information matrix (J^T W J)^-1 built from the weighted
residual Jacobian at the solution. Parameters fixed by the common-axis
assumption are not estimated; their rows/columns are expanded back as exact
zeros through a 0/1 selection Jacobian.

Author: magcal project
"""

import numpy as np
from typing import Tuple

from .errors import NumericalInstabilityError
from . import config


def ensure_covariance_valid(P: np.ndarray, label: str = "",
                            symmetrize: bool = True,
                            check_psd: bool = True,
                            min_eigenvalue: float = 0.0) -> np.ndarray:
    """
    Ensure covariance matrix is valid (symmetric + positive semi-definite).

    Args:
        P: Covariance matrix (n x n)
        label: Debug label for logging
        symmetrize: Force symmetry
        check_psd: Check and fix negative eigenvalues
        min_eigenvalue: Minimum allowed eigenvalue

    Returns:
        P_valid: Fixed covariance matrix
    """
    n = P.shape[0]

    if symmetrize:
        scale = max(np.max(np.abs(P)), np.finfo(float).tiny)
        asymmetry = np.linalg.norm(P - P.T, ord='fro') / scale
        if asymmetry > 1e-6 and config.VERBOSE_DEBUG:
            print(f"[COV_CHECK] {label}: Asymmetry detected (relative {asymmetry:.3e}), symmetrizing")
        P = (P + P.T) / 2.0

    if check_psd:
        try:
            eigvals = np.linalg.eigvalsh(P)
        except np.linalg.LinAlgError as e:
            raise NumericalInstabilityError(f"{label}: eigenvalue computation failed: {e}") from e
        lambda_min = eigvals[0]
        if lambda_min < min_eigenvalue:
            jitter = abs(lambda_min) + min_eigenvalue
            if config.VERBOSE_DEBUG:
                print(f"[COV_CHECK] {label}: Negative eigenvalue λ_min = {lambda_min:.3e}, "
                      f"adding jitter ε = {jitter:.3e}")
            P = P + jitter * np.eye(n, dtype=float)

    return P


def estimate_covariance(jacobian: np.ndarray, label: str = "covariance") -> np.ndarray:
    """
    Covariance (J^T J)^-1 of a weighted residual Jacobian.

    Args:
        jacobian: Weighted residual Jacobian (n_residuals x n_params)
        label: Debug label for logging

    Raises:
        NumericalInstabilityError: if the information matrix is not invertible
    """
    if not np.all(np.isfinite(jacobian)):
        raise NumericalInstabilityError(f"{label}: non-finite Jacobian")

    # Rank test on the column-equilibrated information matrix
    col_norms = np.linalg.norm(jacobian, axis=0)
    if col_norms.size == 0 or np.any(col_norms <= 0.0):
        raise NumericalInstabilityError(f"{label}: information matrix has a zero column")
    J_n = jacobian / col_norms
    info = J_n.T @ J_n
    n = info.shape[0]
    s = np.linalg.svd(info, compute_uv=False)
    rank = int(np.sum(s > s[0] * n * np.finfo(float).eps * 1e3))

    if rank == n:
        try:
            cov = np.linalg.inv(info) / np.outer(col_norms, col_norms)
        except np.linalg.LinAlgError as e:
            raise NumericalInstabilityError(f"{label}: singular information matrix") from e
    else:
        raise NumericalInstabilityError(
            f"{label}: information matrix rank {rank} below {n}")

    return ensure_covariance_valid(cov, label=label)


def expand_covariance(cov_free: np.ndarray, free_mask: np.ndarray) -> np.ndarray:
    """
    Expand a covariance over free parameters to the full parameter vector.

    Uses the selection Jacobian J (full x free, entries 0/1) so that
    C_full = J C_free J^T, leaving rows/columns of fixed parameters at exactly
    zero.
    """
    free_mask = np.asarray(free_mask, dtype=bool)
    selection = np.zeros((free_mask.size, int(free_mask.sum())))
    selection[np.flatnonzero(free_mask), np.arange(int(free_mask.sum()))] = 1.0
    return selection @ cov_free @ selection.T


def goodness_of_fit(weighted_residuals: np.ndarray, n_params: int) -> Tuple[float, float]:
    """
    Chi-square and mean squared error of weighted residuals.

    Returns:
        (chi_sq, mse) with mse = chi_sq / max(n_residuals - n_params, 1)
    """
    r = np.asarray(weighted_residuals, dtype=float).ravel()
    chi_sq = float(r @ r)
    dof = max(r.size - n_params, 1)
    return chi_sq, chi_sq / dof
