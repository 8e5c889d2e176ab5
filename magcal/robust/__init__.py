"""
Robust (sample-consensus) magnetometer calibrators.
"""

from .types import (
    DEFAULT_ROBUST_METHOD,
    InliersData,
    ModelSettings,
    RobustEstimatorMethod,
    RobustEstimatorSettings,
)
from .estimators import ConsensusLoop, adaptive_iterations
from .calibrators import (
    CALIBRATOR_TYPES,
    RobustKnownFrameMagnetometerCalibrator,
    RobustKnownHardIronAndFrameMagnetometerCalibrator,
    RobustKnownHardIronPositionAndInstantMagnetometerCalibrator,
    RobustKnownPositionAndInstantMagnetometerCalibrator,
    RobustMagnetometerCalibrator,
    RobustMagnetometerCalibratorListener,
    calibrator_from_config,
    create_calibrator,
)

__all__ = [
    "DEFAULT_ROBUST_METHOD",
    "InliersData",
    "ModelSettings",
    "RobustEstimatorMethod",
    "RobustEstimatorSettings",
    "ConsensusLoop",
    "adaptive_iterations",
    "CALIBRATOR_TYPES",
    "RobustKnownFrameMagnetometerCalibrator",
    "RobustKnownHardIronAndFrameMagnetometerCalibrator",
    "RobustKnownHardIronPositionAndInstantMagnetometerCalibrator",
    "RobustKnownPositionAndInstantMagnetometerCalibrator",
    "RobustMagnetometerCalibrator",
    "RobustMagnetometerCalibratorListener",
    "calibrator_from_config",
    "create_calibrator",
]
