"""
Calibration Error Types

Exception hierarchy raised by the calibrators. Configuration problems use the
built-in ``ValueError``; everything below signals lifecycle or numerical
failures of a calibration run.

Author: magcal project
"""


class LockedError(RuntimeError):
    """Raised when a calibrator is mutated (or re-run) while it is running."""


class NotReadyError(RuntimeError):
    """Raised when calibrate() is invoked before the calibrator is ready."""


class CalibrationError(RuntimeError):
    """Base class for failed calibration runs."""


class NumericalInstabilityError(CalibrationError):
    """Raised when a fit is rank deficient or produces non-finite values."""


class RobustEstimationError(CalibrationError):
    """Raised when the consensus loop never finds a valid candidate."""
