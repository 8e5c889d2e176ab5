"""
Typed contracts for the robust calibrators.

Settings are captured as frozen snapshots at the start of every calibrate()
call so the consensus loop never observes configuration changes.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import Optional

import numpy as np


class RobustEstimatorMethod(IntEnum):
    """Consensus method used by a robust calibrator."""
    RANSAC = 1
    LMEDS = 2
    MSAC = 3
    PROSAC = 4
    PROMEDS = 5

    @property
    def is_progressive(self) -> bool:
        """PROSAC/PROMedS sample by descending quality score."""
        return self in (RobustEstimatorMethod.PROSAC, RobustEstimatorMethod.PROMEDS)

    @property
    def is_median_based(self) -> bool:
        """LMedS/PROMedS derive the inlier threshold from the median residual."""
        return self in (RobustEstimatorMethod.LMEDS, RobustEstimatorMethod.PROMEDS)

    @classmethod
    def parse(cls, value) -> "RobustEstimatorMethod":
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls[value.strip().upper()]
            except KeyError:
                raise ValueError(f"Unknown robust method '{value}'") from None
        return cls(value)


DEFAULT_ROBUST_METHOD = RobustEstimatorMethod.LMEDS


@dataclass(frozen=True)
class RobustEstimatorSettings:
    """Consensus loop configuration snapshot."""
    method: RobustEstimatorMethod
    subset_size: int
    confidence: float
    max_iterations: int
    progress_delta: float
    threshold: float
    stop_threshold: float
    inlier_factor: float
    quality_scores: Optional[np.ndarray] = None


@dataclass(frozen=True)
class ModelSettings:
    """Calibration model configuration snapshot."""
    common_axis: bool
    hard_iron: np.ndarray
    initial_mm: np.ndarray
    linear_calibrator_used: bool
    preliminary_solution_refined: bool
    result_refined: bool
    covariance_kept: bool


@dataclass(frozen=True)
class InliersData:
    """
    Consensus outcome of the best candidate.

    Attributes:
        inliers: Boolean inlier mask per measurement (None unless kept)
        residuals: Residual per measurement [T] (None unless kept)
        num_inliers: Number of inliers
        threshold: Threshold used to classify inliers [T]
        score: Consensus score (inlier count, median residual or bounded cost
            depending on the method)
    """
    inliers: Optional[np.ndarray]
    residuals: Optional[np.ndarray]
    num_inliers: int
    threshold: float
    score: float

    def inlier_indices(self) -> Optional[np.ndarray]:
        if self.inliers is None:
            return None
        return np.flatnonzero(self.inliers)
