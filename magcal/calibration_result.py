"""
Calibration result snapshot.

Author: magcal project
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import numpy as np

from .magnetometer import MM_PARAM_NAMES, HARD_IRON_PARAM_NAMES


@dataclass(frozen=True)
class CalibrationResult:
    """
    Immutable set of calibration parameters produced by a fit.

    covariance is None when it was not computed. mse and chi_sq are 0.0 when
    no non-linear refinement took place.
    """
    hard_iron: np.ndarray
    mm: np.ndarray
    covariance: Optional[np.ndarray] = None
    mse: float = 0.0
    chi_sq: float = 0.0
    hard_iron_estimated: bool = True

    def __post_init__(self):
        for name in ("hard_iron", "mm", "covariance"):
            value = getattr(self, name)
            if value is not None:
                value = np.array(value, dtype=float)
                value.setflags(write=False)
                object.__setattr__(self, name, value)

    @property
    def parameter_names(self):
        if self.hard_iron_estimated:
            return HARD_IRON_PARAM_NAMES + MM_PARAM_NAMES
        return MM_PARAM_NAMES

    def variance_of(self, name: str) -> Optional[float]:
        """Variance of a named parameter, None without covariance."""
        if self.covariance is None:
            return None
        idx = self.parameter_names.index(name)
        return float(self.covariance[idx, idx])
