"""
Robust Magnetometer Calibrators

Four calibration model families share one lifecycle implemented by
RobustMagnetometerCalibrator:

    Class                                                  Hard iron  Data
    ----------------------------------------------------   ---------  --------------------------
    RobustKnownFrameMagnetometerCalibrator                 estimated  expected body field
    RobustKnownHardIronAndFrameMagnetometerCalibrator      known      expected body field
    RobustKnownPositionAndInstantMagnetometerCalibrator    estimated  field norm at a position
    RobustKnownHardIronPositionAndInstantMagnetometerCalibrator  known  field norm at a position

The consensus method (RANSAC, LMedS, MSAC, PROSAC, PROMedS) is selected with
a RobustEstimatorMethod tag at construction time.

calibrate():
    1. checks the lock and readiness
    2. snapshots the configuration
    3. runs the consensus loop (minimal-subset linear fits, optionally
       refined with Levenberg-Marquardt)
    4. refines the best candidate over its inliers and estimates the
       covariance, MSE and chi-square
    5. publishes the result (a failed run leaves previous estimates intact)

Configuration is exposed as properties. Every setter raises LockedError while
calibrate() is running.

Author: magcal project
"""

from __future__ import annotations

import numpy as np
from typing import Optional, Sequence

from .. import config
from ..calibration_result import CalibrationResult
from ..errors import LockedError, NotReadyError
from ..field_model import DipoleEarthMagneticFluxDensityEstimator
from ..linear_calibrators import (
    solve_known_frame,
    solve_known_hard_iron_and_frame,
    solve_known_hard_iron_norm,
    solve_norm,
)
from ..magnetometer import (
    DEFAULT_HARD_IRON,
    DEFAULT_MM,
    apply_common_axis,
    as_matrix3,
    as_vector3,
    frame_residuals,
    norm_residuals,
)
from ..measurements import (
    FrameMagneticFluxDensityMeasurement,
    MagneticFluxDensityMeasurement,
)
from ..nonlinear_calibrators import refine_frame, refine_norm
from ..units import MagneticFluxDensityTriad, MagneticFluxDensityUnit, convert
from .estimators import ConsensusLoop
from .types import (
    DEFAULT_ROBUST_METHOD,
    InliersData,
    ModelSettings,
    RobustEstimatorMethod,
    RobustEstimatorSettings,
)


# =============================================================================
# Defaults
# =============================================================================

DEFAULT_CONFIDENCE = 0.99
DEFAULT_MAX_ITERATIONS = 5000
DEFAULT_PROGRESS_DELTA = 0.05
DEFAULT_INLIER_FACTOR = 1.5
DEFAULT_USE_COMMON_AXIS = False
DEFAULT_USE_LINEAR_CALIBRATOR = True
DEFAULT_REFINE_PRELIMINARY_SOLUTIONS = False
DEFAULT_REFINE_RESULT = True
DEFAULT_KEEP_COVARIANCE = True
DEFAULT_COMPUTE_AND_KEEP_INLIERS = False
DEFAULT_COMPUTE_AND_KEEP_RESIDUALS = False
DEFAULT_YEAR = 2020.0


class RobustMagnetometerCalibratorListener:
    """
    No-op listener. Subclass and override the hooks of interest; any object
    providing some of these methods can also be used.
    """

    def on_calibrate_start(self, calibrator):
        pass

    def on_calibrate_end(self, calibrator):
        pass

    def on_calibrate_next_iteration(self, calibrator, iteration):
        pass

    def on_calibrate_progress_change(self, calibrator, progress):
        pass


# =============================================================================
# Accessor helpers
# =============================================================================

def _fill_vector(out, values):
    if not isinstance(out, np.ndarray) or out.shape != (3,):
        raise ValueError(f"output array must have length 3, got "
                         f"{getattr(out, 'shape', type(out).__name__)}")
    out[:] = values
    return out


def _fill_column(out, values):
    if not isinstance(out, np.ndarray) or out.shape != (3, 1):
        raise ValueError(f"output matrix must be 3x1, got "
                         f"{getattr(out, 'shape', type(out).__name__)}")
    out[:, 0] = values
    return out


def _initial_mm_component(row, col, name):
    def getter(self):
        return float(self._initial_mm[row, col])

    def setter(self, value):
        self._check_not_running()
        value = float(value)
        if not np.isfinite(value):
            raise ValueError(f"{name} must be finite")
        self._initial_mm[row, col] = value

    return property(getter, setter, doc=f"Initial soft-iron {name}.")


def _hard_iron_component(index, name):
    def getter(self):
        return float(self._hard_iron[index])

    def setter(self, value):
        self._check_not_running()
        value = float(value)
        if not np.isfinite(value):
            raise ValueError(f"{name} must be finite")
        self._hard_iron[index] = value

    return property(getter, setter)


def _estimated_mm_component(row, col, name):
    def getter(self):
        if self._result is None:
            return None
        return float(self._result.mm[row, col])

    return property(getter, doc=f"Estimated soft-iron {name}, None if not calibrated.")


def _estimated_hard_iron_component(index, name):
    def getter(self):
        if self._result is None:
            return None
        return float(self._result.hard_iron[index])

    return property(getter, doc=f"Estimated hard iron {name} [T], None if not calibrated.")


class _RunData:
    """Arrays derived from the measurements at the start of a run."""

    def __init__(self, b_meas, std, b_true=None, norm=None):
        self.b_meas = b_meas
        self.std = std
        self.b_true = b_true
        self.norm = norm


# =============================================================================
# Base calibrator
# =============================================================================

class RobustMagnetometerCalibrator:
    """
    Shared lifecycle of the robust calibrators.

    Subclasses define the model family through the class attributes below and
    the _validate_measurement, _prepare_data, _linear_fit, _nonlinear_fit
    and _residuals hooks.
    """

    MINIMUM_MEASUREMENTS_GENERAL = 0
    MINIMUM_MEASUREMENTS_COMMON_AXIS = 0
    HARD_IRON_ESTIMATED = True
    DEFAULT_THRESHOLD = 500e-9
    DEFAULT_STOP_THRESHOLD = 1e-9

    def __init__(self, measurements=None, common_axis_used=DEFAULT_USE_COMMON_AXIS,
                 hard_iron=None, initial_mm=None, listener=None,
                 method=DEFAULT_ROBUST_METHOD, quality_scores=None,
                 threshold=None, stop_threshold=None,
                 inlier_factor=DEFAULT_INLIER_FACTOR,
                 confidence=DEFAULT_CONFIDENCE,
                 max_iterations=DEFAULT_MAX_ITERATIONS,
                 progress_delta=DEFAULT_PROGRESS_DELTA,
                 result_refined=DEFAULT_REFINE_RESULT,
                 covariance_kept=DEFAULT_KEEP_COVARIANCE,
                 preliminary_solution_refined=DEFAULT_REFINE_PRELIMINARY_SOLUTIONS,
                 linear_calibrator_used=DEFAULT_USE_LINEAR_CALIBRATOR,
                 compute_and_keep_inliers=DEFAULT_COMPUTE_AND_KEEP_INLIERS,
                 compute_and_keep_residuals=DEFAULT_COMPUTE_AND_KEEP_RESIDUALS,
                 preliminary_subset_size=None, random_state=None, verbose=False):
        self._running = False
        self._method = RobustEstimatorMethod.parse(method)
        self._result: Optional[CalibrationResult] = None
        self._inliers_data: Optional[InliersData] = None
        self._rng = np.random.default_rng(random_state)
        self.verbose = verbose
        self.last_iterations = 0

        self._measurements = ()
        self._common_axis_used = bool(common_axis_used)
        self._preliminary_subset_size = self.minimum_required_measurements
        self._hard_iron = DEFAULT_HARD_IRON.copy()
        self._initial_mm = DEFAULT_MM.copy()
        self._quality_scores = None
        self._threshold = self.DEFAULT_THRESHOLD
        self._stop_threshold = self.DEFAULT_STOP_THRESHOLD

        self.listener = listener
        self.measurements = measurements if measurements is not None else []
        if hard_iron is not None:
            self._set_hard_iron_vector(hard_iron)
        if initial_mm is not None:
            self.initial_mm = initial_mm
        if quality_scores is not None:
            self.quality_scores = quality_scores
        if threshold is not None:
            self.threshold = threshold
        if stop_threshold is not None:
            self.stop_threshold = stop_threshold
        self.inlier_factor = inlier_factor
        self.confidence = confidence
        self.max_iterations = max_iterations
        self.progress_delta = progress_delta
        self.result_refined = result_refined
        self.covariance_kept = covariance_kept
        self.preliminary_solution_refined = preliminary_solution_refined
        self.linear_calibrator_used = linear_calibrator_used
        self.compute_and_keep_inliers = compute_and_keep_inliers
        self.compute_and_keep_residuals = compute_and_keep_residuals
        if preliminary_subset_size is not None:
            self.preliminary_subset_size = preliminary_subset_size

    @classmethod
    def create(cls, measurements=None, method=DEFAULT_ROBUST_METHOD, **kwargs):
        """Build a calibrator using the given consensus method (LMedS by default)."""
        return cls(measurements, method=method, **kwargs)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def _check_not_running(self):
        if self._running:
            raise LockedError(f"{type(self).__name__} is running")

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def method(self) -> RobustEstimatorMethod:
        return self._method

    @property
    def minimum_required_measurements(self) -> int:
        if self._common_axis_used:
            return self.MINIMUM_MEASUREMENTS_COMMON_AXIS
        return self.MINIMUM_MEASUREMENTS_GENERAL

    @property
    def is_ready(self) -> bool:
        n = len(self._measurements)
        if n < self.minimum_required_measurements or n < self._preliminary_subset_size:
            return False
        if not self._linear_calibrator_used and not self._preliminary_solution_refined:
            return False
        if self._method.is_progressive:
            if self._quality_scores is None or self._quality_scores.size != n:
                return False
        return self._model_ready()

    def _model_ready(self) -> bool:
        return True

    # -------------------------------------------------------------------------
    # Measurements
    # -------------------------------------------------------------------------

    @property
    def measurements(self):
        return self._measurements

    @measurements.setter
    def measurements(self, value):
        self._check_not_running()
        if value is None:
            value = []
        value = tuple(value)
        for i, m in enumerate(value):
            self._validate_measurement(i, m)
        self._measurements = value

    def _validate_measurement(self, index, measurement):
        raise NotImplementedError

    # -------------------------------------------------------------------------
    # Model configuration
    # -------------------------------------------------------------------------

    @property
    def common_axis_used(self) -> bool:
        return self._common_axis_used

    @common_axis_used.setter
    def common_axis_used(self, value):
        self._check_not_running()
        self._common_axis_used = bool(value)
        self._preliminary_subset_size = max(self._preliminary_subset_size,
                                            self.minimum_required_measurements)

    @property
    def preliminary_subset_size(self) -> int:
        return self._preliminary_subset_size

    @preliminary_subset_size.setter
    def preliminary_subset_size(self, value):
        self._check_not_running()
        value = int(value)
        if value < self.minimum_required_measurements:
            raise ValueError(f"preliminary_subset_size must be at least "
                             f"{self.minimum_required_measurements}, got {value}")
        self._preliminary_subset_size = value

    def _set_hard_iron_vector(self, value):
        self._check_not_running()
        self._hard_iron = as_vector3("hard_iron", value)

    @property
    def initial_mm(self) -> np.ndarray:
        return self._initial_mm.copy()

    @initial_mm.setter
    def initial_mm(self, value):
        self._check_not_running()
        self._initial_mm = as_matrix3("initial_mm", value)

    initial_sx = _initial_mm_component(0, 0, "sx")
    initial_sy = _initial_mm_component(1, 1, "sy")
    initial_sz = _initial_mm_component(2, 2, "sz")
    initial_mxy = _initial_mm_component(0, 1, "mxy")
    initial_mxz = _initial_mm_component(0, 2, "mxz")
    initial_myx = _initial_mm_component(1, 0, "myx")
    initial_myz = _initial_mm_component(1, 2, "myz")
    initial_mzx = _initial_mm_component(2, 0, "mzx")
    initial_mzy = _initial_mm_component(2, 1, "mzy")

    def set_initial_scaling_factors(self, sx, sy, sz):
        self._check_not_running()
        self.initial_sx, self.initial_sy, self.initial_sz = sx, sy, sz

    def set_initial_cross_coupling_errors(self, mxy, mxz, myx, myz, mzx, mzy):
        self._check_not_running()
        self.initial_mxy, self.initial_mxz = mxy, mxz
        self.initial_myx, self.initial_myz = myx, myz
        self.initial_mzx, self.initial_mzy = mzx, mzy

    # -------------------------------------------------------------------------
    # Robust estimator configuration
    # -------------------------------------------------------------------------

    @property
    def quality_scores(self) -> Optional[np.ndarray]:
        """Quality score per measurement. Always None for non-progressive methods."""
        if self._quality_scores is None:
            return None
        return self._quality_scores.copy()

    @quality_scores.setter
    def quality_scores(self, value):
        self._check_not_running()
        if not self._method.is_progressive:
            # Only PROSAC/PROMedS use quality scores; others ignore them
            return
        if value is None:
            self._quality_scores = None
            return
        scores = np.array(value, dtype=float).reshape(-1)
        if scores.size < self.minimum_required_measurements:
            raise ValueError(f"at least {self.minimum_required_measurements} quality "
                             f"scores required, got {scores.size}")
        if not np.all(np.isfinite(scores)):
            raise ValueError("quality scores must be finite")
        self._quality_scores = scores

    @property
    def threshold(self) -> float:
        """Inlier threshold of RANSAC/MSAC/PROSAC [T]."""
        return self._threshold

    @threshold.setter
    def threshold(self, value):
        self._check_not_running()
        value = float(value)
        if not value > 0.0:
            raise ValueError(f"threshold must be positive, got {value}")
        self._threshold = value

    @property
    def stop_threshold(self) -> float:
        """Median residual below which LMedS/PROMedS stop early [T]."""
        return self._stop_threshold

    @stop_threshold.setter
    def stop_threshold(self, value):
        self._check_not_running()
        value = float(value)
        if not value > 0.0:
            raise ValueError(f"stop_threshold must be positive, got {value}")
        self._stop_threshold = value

    @property
    def inlier_factor(self) -> float:
        return self._inlier_factor

    @inlier_factor.setter
    def inlier_factor(self, value):
        self._check_not_running()
        value = float(value)
        if not value > 0.0:
            raise ValueError(f"inlier_factor must be positive, got {value}")
        self._inlier_factor = value

    @property
    def confidence(self) -> float:
        return self._confidence

    @confidence.setter
    def confidence(self, value):
        self._check_not_running()
        value = float(value)
        if not 0.0 < value < 1.0:
            raise ValueError(f"confidence must be in (0, 1), got {value}")
        self._confidence = value

    @property
    def max_iterations(self) -> int:
        return self._max_iterations

    @max_iterations.setter
    def max_iterations(self, value):
        self._check_not_running()
        value = int(value)
        if value < 1:
            raise ValueError(f"max_iterations must be at least 1, got {value}")
        self._max_iterations = value

    @property
    def progress_delta(self) -> float:
        return self._progress_delta

    @progress_delta.setter
    def progress_delta(self, value):
        self._check_not_running()
        value = float(value)
        if not 0.0 <= value <= 1.0:
            raise ValueError(f"progress_delta must be in [0, 1], got {value}")
        self._progress_delta = value

    def _bool_setting(name):
        attr = "_" + name

        def getter(self):
            return getattr(self, attr)

        def setter(self, value):
            self._check_not_running()
            setattr(self, attr, bool(value))

        return property(getter, setter)

    result_refined = _bool_setting("result_refined")
    covariance_kept = _bool_setting("covariance_kept")
    preliminary_solution_refined = _bool_setting("preliminary_solution_refined")
    linear_calibrator_used = _bool_setting("linear_calibrator_used")
    compute_and_keep_inliers = _bool_setting("compute_and_keep_inliers")
    compute_and_keep_residuals = _bool_setting("compute_and_keep_residuals")
    del _bool_setting

    @property
    def listener(self):
        return self._listener

    @listener.setter
    def listener(self, value):
        self._check_not_running()
        self._listener = value

    def _notify(self, hook, *args):
        if self._listener is None:
            return
        fn = getattr(self._listener, hook, None)
        if fn is not None:
            fn(self, *args)

    # -------------------------------------------------------------------------
    # Estimates
    # -------------------------------------------------------------------------

    @property
    def result(self) -> Optional[CalibrationResult]:
        """Last successful calibration, None before the first success."""
        return self._result

    @property
    def inliers_data(self) -> Optional[InliersData]:
        return self._inliers_data

    @property
    def estimated_hard_iron(self) -> Optional[np.ndarray]:
        if self._result is None:
            return None
        return np.array(self._result.hard_iron)

    estimated_hard_iron_x = _estimated_hard_iron_component(0, "x")
    estimated_hard_iron_y = _estimated_hard_iron_component(1, "y")
    estimated_hard_iron_z = _estimated_hard_iron_component(2, "z")

    @property
    def estimated_hard_iron_matrix(self) -> Optional[np.ndarray]:
        if self._result is None:
            return None
        return np.array(self._result.hard_iron).reshape(3, 1)

    def get_estimated_hard_iron(self, out: np.ndarray) -> Optional[np.ndarray]:
        """Copy the estimated hard iron into out (length 3), None if not calibrated."""
        if self._result is None:
            return None
        return _fill_vector(out, self._result.hard_iron)

    def get_estimated_hard_iron_matrix(self, out: np.ndarray) -> Optional[np.ndarray]:
        """Copy the estimated hard iron into out (3x1), None if not calibrated."""
        if self._result is None:
            return None
        return _fill_column(out, self._result.hard_iron)

    def get_estimated_hard_iron_as_triad(
            self, unit=MagneticFluxDensityUnit.TESLA) -> Optional[MagneticFluxDensityTriad]:
        if self._result is None:
            return None
        return MagneticFluxDensityTriad.from_array(
            convert(self._result.hard_iron, MagneticFluxDensityUnit.TESLA, unit), unit)

    @property
    def estimated_mm(self) -> Optional[np.ndarray]:
        if self._result is None:
            return None
        return np.array(self._result.mm)

    estimated_sx = _estimated_mm_component(0, 0, "sx")
    estimated_sy = _estimated_mm_component(1, 1, "sy")
    estimated_sz = _estimated_mm_component(2, 2, "sz")
    estimated_mxy = _estimated_mm_component(0, 1, "mxy")
    estimated_mxz = _estimated_mm_component(0, 2, "mxz")
    estimated_myx = _estimated_mm_component(1, 0, "myx")
    estimated_myz = _estimated_mm_component(1, 2, "myz")
    estimated_mzx = _estimated_mm_component(2, 0, "mzx")
    estimated_mzy = _estimated_mm_component(2, 1, "mzy")

    @property
    def estimated_covariance(self) -> Optional[np.ndarray]:
        if self._result is None or self._result.covariance is None:
            return None
        return np.array(self._result.covariance)

    @property
    def estimated_mse(self) -> Optional[float]:
        return None if self._result is None else self._result.mse

    @property
    def estimated_chi_sq(self) -> Optional[float]:
        return None if self._result is None else self._result.chi_sq

    # -------------------------------------------------------------------------
    # Calibration
    # -------------------------------------------------------------------------

    def _snapshot(self):
        robust = RobustEstimatorSettings(
            method=self._method,
            subset_size=self._preliminary_subset_size,
            confidence=self._confidence,
            max_iterations=self._max_iterations,
            progress_delta=self._progress_delta,
            threshold=self._threshold,
            stop_threshold=self._stop_threshold,
            inlier_factor=self._inlier_factor,
            quality_scores=self.quality_scores,
        )
        model = ModelSettings(
            common_axis=self._common_axis_used,
            hard_iron=self._hard_iron.copy(),
            initial_mm=self._initial_mm.copy(),
            linear_calibrator_used=self._linear_calibrator_used,
            preliminary_solution_refined=self._preliminary_solution_refined,
            result_refined=self._result_refined,
            covariance_kept=self._covariance_kept,
        )
        return robust, model

    def _initial_candidate(self, ms: ModelSettings) -> CalibrationResult:
        mm = apply_common_axis(ms.initial_mm) if ms.common_axis else ms.initial_mm
        return CalibrationResult(hard_iron=ms.hard_iron, mm=mm,
                                 hard_iron_estimated=self.HARD_IRON_ESTIMATED)

    def _fit_subset(self, data, indices, ms: ModelSettings):
        if ms.linear_calibrator_used:
            candidate = self._linear_fit(data, indices, ms)
        else:
            candidate = self._initial_candidate(ms)
        if ms.preliminary_solution_refined:
            candidate = self._nonlinear_fit(data, indices, candidate, ms, False)
        return [candidate]

    def calibrate(self):
        """
        Estimate hard iron and soft iron from the measurements.

        Raises:
            LockedError: if already running
            NotReadyError: if not enough measurements (or quality scores)
            CalibrationError: if the consensus loop or the refinement fails
        """
        self._check_not_running()
        if not self.is_ready:
            raise NotReadyError(
                f"{type(self).__name__} not ready: {len(self._measurements)} measurements, "
                f"{self.minimum_required_measurements} required")

        robust_settings, model_settings = self._snapshot()

        try:
            self._running = True
            self._notify("on_calibrate_start")
            if self.verbose or config.VERBOSE_ROBUST:
                print(f"[ROBUST-CAL] {type(self).__name__} {self._method.name}: "
                      f"start n={len(self._measurements)} "
                      f"subset={robust_settings.subset_size} "
                      f"common_axis={model_settings.common_axis}")

            data = self._prepare_data(model_settings)
            loop = ConsensusLoop(
                robust_settings, len(self._measurements),
                fit_subset=lambda idx: self._fit_subset(data, idx, model_settings),
                compute_residuals=lambda candidate: self._residuals(data, candidate),
                on_next_iteration=lambda it: self._notify("on_calibrate_next_iteration", it),
                on_progress_change=lambda p: self._notify("on_calibrate_progress_change", p),
                rng=self._rng,
                verbose=self.verbose,
            )
            best, evaluation = loop.estimate()
            self.last_iterations = loop.iterations

            if model_settings.result_refined:
                inlier_indices = np.flatnonzero(evaluation.inliers)
                result = self._nonlinear_fit(data, inlier_indices, best, model_settings,
                                             model_settings.covariance_kept)
            else:
                result = CalibrationResult(hard_iron=best.hard_iron, mm=best.mm,
                                           hard_iron_estimated=self.HARD_IRON_ESTIMATED)

            inliers_data = InliersData(
                inliers=evaluation.inliers.copy() if self._compute_and_keep_inliers else None,
                residuals=evaluation.residuals.copy() if self._compute_and_keep_residuals else None,
                num_inliers=evaluation.num_inliers,
                threshold=evaluation.threshold,
                score=evaluation.score,
            )

            self._result = result
            self._inliers_data = inliers_data

            if self.verbose or config.VERBOSE_ROBUST:
                print(f"[ROBUST-CAL] {type(self).__name__} {self._method.name}: "
                      f"iterations={loop.iterations} "
                      f"inliers={evaluation.num_inliers}/{len(self._measurements)} "
                      f"mse={result.mse:.6e} chi2={result.chi_sq:.6e}")

            self._notify("on_calibrate_end")
        finally:
            self._running = False

    # -------------------------------------------------------------------------
    # Model hooks
    # -------------------------------------------------------------------------

    def _prepare_data(self, ms: ModelSettings) -> _RunData:
        raise NotImplementedError

    def _linear_fit(self, data, indices, ms: ModelSettings) -> CalibrationResult:
        raise NotImplementedError

    def _nonlinear_fit(self, data, indices, initial: CalibrationResult,
                       ms: ModelSettings, compute_covariance: bool) -> CalibrationResult:
        raise NotImplementedError

    def _residuals(self, data, candidate: CalibrationResult) -> np.ndarray:
        raise NotImplementedError


# =============================================================================
# Hard-iron accessor families
# =============================================================================

class _KnownHardIronAccessors:
    """Accessors of a known (fixed) hard iron."""

    HARD_IRON_ESTIMATED = False

    @property
    def hard_iron(self) -> np.ndarray:
        return self._hard_iron.copy()

    @hard_iron.setter
    def hard_iron(self, value):
        self._set_hard_iron_vector(value)

    hard_iron_x = _hard_iron_component(0, "hard_iron_x")
    hard_iron_y = _hard_iron_component(1, "hard_iron_y")
    hard_iron_z = _hard_iron_component(2, "hard_iron_z")

    @property
    def hard_iron_matrix(self) -> np.ndarray:
        return self._hard_iron.reshape(3, 1).copy()

    @hard_iron_matrix.setter
    def hard_iron_matrix(self, value):
        self._check_not_running()
        value = np.asarray(value, dtype=float)
        if value.shape != (3, 1):
            raise ValueError(f"hard_iron_matrix must be 3x1, got shape {value.shape}")
        self._set_hard_iron_vector(value)

    def get_hard_iron(self, out: np.ndarray) -> np.ndarray:
        """Copy the hard iron into out, which must have length 3."""
        return _fill_vector(out, self._hard_iron)

    def get_hard_iron_matrix(self, out: np.ndarray) -> np.ndarray:
        """Copy the hard iron into out, which must be 3x1."""
        return _fill_column(out, self._hard_iron)

    def get_hard_iron_as_triad(self, unit=MagneticFluxDensityUnit.TESLA):
        return MagneticFluxDensityTriad.from_array(
            convert(self._hard_iron, MagneticFluxDensityUnit.TESLA, unit), unit)


class _InitialHardIronAccessors:
    """Accessors of the initial guess of an estimated hard iron."""

    HARD_IRON_ESTIMATED = True

    @property
    def initial_hard_iron(self) -> np.ndarray:
        return self._hard_iron.copy()

    @initial_hard_iron.setter
    def initial_hard_iron(self, value):
        self._set_hard_iron_vector(value)

    initial_hard_iron_x = _hard_iron_component(0, "initial_hard_iron_x")
    initial_hard_iron_y = _hard_iron_component(1, "initial_hard_iron_y")
    initial_hard_iron_z = _hard_iron_component(2, "initial_hard_iron_z")

    @property
    def initial_hard_iron_matrix(self) -> np.ndarray:
        return self._hard_iron.reshape(3, 1).copy()

    @initial_hard_iron_matrix.setter
    def initial_hard_iron_matrix(self, value):
        self._check_not_running()
        value = np.asarray(value, dtype=float)
        if value.shape != (3, 1):
            raise ValueError(f"initial_hard_iron_matrix must be 3x1, got shape {value.shape}")
        self._set_hard_iron_vector(value)

    def get_initial_hard_iron(self, out: np.ndarray) -> np.ndarray:
        return _fill_vector(out, self._hard_iron)

    def get_initial_hard_iron_matrix(self, out: np.ndarray) -> np.ndarray:
        return _fill_column(out, self._hard_iron)

    def get_initial_hard_iron_as_triad(self, unit=MagneticFluxDensityUnit.TESLA):
        return MagneticFluxDensityTriad.from_array(
            convert(self._hard_iron, MagneticFluxDensityUnit.TESLA, unit), unit)


# =============================================================================
# Frame-based models
# =============================================================================

class _FrameCalibrator(RobustMagnetometerCalibrator):
    """Measurements whose expected body flux density is known."""

    MINIMUM_MEASUREMENTS_GENERAL = 4
    MINIMUM_MEASUREMENTS_COMMON_AXIS = 4

    def __init__(self, measurements=None, field_model=None, **kwargs):
        self._field_model = field_model or DipoleEarthMagneticFluxDensityEstimator()
        super().__init__(measurements, **kwargs)

    @property
    def field_model(self):
        return self._field_model

    @field_model.setter
    def field_model(self, value):
        self._check_not_running()
        if value is None or not hasattr(value, "estimate"):
            raise ValueError("field_model must provide estimate(latitude, longitude, height, year)")
        self._field_model = value

    def _validate_measurement(self, index, measurement):
        if isinstance(measurement, FrameMagneticFluxDensityMeasurement):
            return
        if (isinstance(measurement, MagneticFluxDensityMeasurement)
                and measurement.expected_magnetic_flux_density is not None):
            return
        raise ValueError(f"measurement {index}: expected a FrameMagneticFluxDensityMeasurement "
                         f"or a MagneticFluxDensityMeasurement with an expected flux density")

    def _expected_body(self, measurement):
        if isinstance(measurement, FrameMagneticFluxDensityMeasurement):
            return measurement.expected_body_flux_density(self._field_model)
        return measurement.expected_magnetic_flux_density

    def _prepare_data(self, ms):
        b_meas = np.array([m.magnetic_flux_density for m in self._measurements])
        std = np.array([m.standard_deviation for m in self._measurements])
        b_true = np.array([self._expected_body(m) for m in self._measurements])
        return _RunData(b_meas, std, b_true=b_true)

    def _nonlinear_fit(self, data, indices, initial, ms, compute_covariance):
        return refine_frame(data.b_meas[indices], data.b_true[indices],
                            initial.hard_iron, initial.mm,
                            hard_iron_estimated=self.HARD_IRON_ESTIMATED,
                            common_axis=ms.common_axis, std=data.std[indices],
                            compute_covariance=compute_covariance)

    def _residuals(self, data, candidate):
        return frame_residuals(data.b_meas, data.b_true, candidate.hard_iron, candidate.mm)


class RobustKnownFrameMagnetometerCalibrator(_InitialHardIronAccessors, _FrameCalibrator):
    """
    Estimates hard iron and soft iron from measurements taken at known
    attitudes, positions and instants.
    """

    MINIMUM_MEASUREMENTS_GENERAL = 4
    MINIMUM_MEASUREMENTS_COMMON_AXIS = 4

    def __init__(self, measurements=None, initial_hard_iron=None, **kwargs):
        super().__init__(measurements, hard_iron=initial_hard_iron, **kwargs)

    def _linear_fit(self, data, indices, ms):
        hard_iron, mm = solve_known_frame(data.b_meas[indices], data.b_true[indices],
                                          ms.common_axis)
        return CalibrationResult(hard_iron=hard_iron, mm=mm, hard_iron_estimated=True)


class RobustKnownHardIronAndFrameMagnetometerCalibrator(_KnownHardIronAccessors, _FrameCalibrator):
    """
    Estimates soft iron from measurements taken at known attitudes, positions
    and instants, with a known hard iron.
    """

    MINIMUM_MEASUREMENTS_GENERAL = 3
    MINIMUM_MEASUREMENTS_COMMON_AXIS = 3

    def _linear_fit(self, data, indices, ms):
        hard_iron, mm = solve_known_hard_iron_and_frame(
            data.b_meas[indices], data.b_true[indices], ms.hard_iron, ms.common_axis)
        return CalibrationResult(hard_iron=hard_iron, mm=mm, hard_iron_estimated=False)


# =============================================================================
# Norm-based models
# =============================================================================

class _NormCalibrator(RobustMagnetometerCalibrator):
    """
    Measurements taken at one known position and instant with unknown
    attitude. Only the field norm is used.
    """

    DEFAULT_THRESHOLD = 1e-9

    def __init__(self, measurements=None, position=None, year=DEFAULT_YEAR,
                 ground_truth_norm=None, field_model=None, **kwargs):
        self._field_model = field_model or DipoleEarthMagneticFluxDensityEstimator()
        self._position = None
        self._year = float(year)
        self._ground_truth_norm = None
        super().__init__(measurements, **kwargs)
        if position is not None:
            self.position = position
        if ground_truth_norm is not None:
            self.ground_truth_norm = ground_truth_norm

    @property
    def field_model(self):
        return self._field_model

    @field_model.setter
    def field_model(self, value):
        self._check_not_running()
        if value is None or not hasattr(value, "estimate_norm"):
            raise ValueError("field_model must provide estimate_norm(latitude, longitude, height, year)")
        self._field_model = value

    @property
    def position(self):
        """(latitude [rad], longitude [rad], height [m]) or None."""
        return self._position

    @position.setter
    def position(self, value):
        self._check_not_running()
        if value is None:
            self._position = None
            return
        values = tuple(float(v) for v in value)
        if len(values) != 3:
            raise ValueError(f"position must be (latitude, longitude, height), got {value}")
        lat, lon, height = values
        if not -np.pi / 2 <= lat <= np.pi / 2:
            raise ValueError(f"latitude must be within [-pi/2, pi/2] rad, got {lat}")
        self._position = (lat, lon, height)

    @property
    def year(self) -> float:
        return self._year

    @year.setter
    def year(self, value):
        self._check_not_running()
        self._year = float(value)

    @property
    def ground_truth_norm(self) -> Optional[float]:
        """Explicit field norm [T]; takes precedence over the field model."""
        return self._ground_truth_norm

    @ground_truth_norm.setter
    def ground_truth_norm(self, value):
        self._check_not_running()
        if value is None:
            self._ground_truth_norm = None
            return
        value = float(value)
        if not value > 0.0:
            raise ValueError(f"ground_truth_norm must be positive, got {value}")
        self._ground_truth_norm = value

    @property
    def ground_truth_magnetic_flux_density_norm(self) -> Optional[float]:
        """Field norm used by the calibration [T], None when unknown."""
        if self._ground_truth_norm is not None:
            return self._ground_truth_norm
        if self._position is None:
            return None
        lat, lon, height = self._position
        return self._field_model.estimate_norm(lat, lon, height, self._year)

    def _model_ready(self) -> bool:
        return self._ground_truth_norm is not None or self._position is not None

    def _validate_measurement(self, index, measurement):
        if not isinstance(measurement, (MagneticFluxDensityMeasurement,
                                        FrameMagneticFluxDensityMeasurement)):
            raise ValueError(f"measurement {index}: unsupported type "
                             f"{type(measurement).__name__}")

    def _prepare_data(self, ms):
        b_meas = np.array([m.magnetic_flux_density for m in self._measurements])
        std = np.array([m.standard_deviation for m in self._measurements])
        return _RunData(b_meas, std, norm=self.ground_truth_magnetic_flux_density_norm)

    def _nonlinear_fit(self, data, indices, initial, ms, compute_covariance):
        return refine_norm(data.b_meas[indices], data.norm,
                           initial.hard_iron, initial.mm,
                           hard_iron_estimated=self.HARD_IRON_ESTIMATED,
                           common_axis=ms.common_axis, std=data.std[indices],
                           compute_covariance=compute_covariance)

    def _residuals(self, data, candidate):
        return norm_residuals(data.b_meas, candidate.hard_iron, candidate.mm, data.norm)


class RobustKnownPositionAndInstantMagnetometerCalibrator(_InitialHardIronAccessors,
                                                          _NormCalibrator):
    """Estimates hard iron and soft iron from field norms at a known position."""

    MINIMUM_MEASUREMENTS_GENERAL = 13
    MINIMUM_MEASUREMENTS_COMMON_AXIS = 10

    def __init__(self, measurements=None, position=None, year=DEFAULT_YEAR,
                 initial_hard_iron=None, **kwargs):
        super().__init__(measurements, position=position, year=year,
                         hard_iron=initial_hard_iron, **kwargs)

    def _linear_fit(self, data, indices, ms):
        hard_iron, mm = solve_norm(data.b_meas[indices], data.norm,
                                   ms.common_axis, ms.initial_mm)
        return CalibrationResult(hard_iron=hard_iron, mm=mm, hard_iron_estimated=True)


class RobustKnownHardIronPositionAndInstantMagnetometerCalibrator(_KnownHardIronAccessors,
                                                                  _NormCalibrator):
    """Estimates soft iron from field norms at a known position with a known hard iron."""

    MINIMUM_MEASUREMENTS_GENERAL = 10
    MINIMUM_MEASUREMENTS_COMMON_AXIS = 7

    def _linear_fit(self, data, indices, ms):
        mm = solve_known_hard_iron_norm(data.b_meas[indices], ms.hard_iron, data.norm,
                                        ms.common_axis, ms.initial_mm)
        return CalibrationResult(hard_iron=ms.hard_iron, mm=mm, hard_iron_estimated=False)


# =============================================================================
# Factories
# =============================================================================

CALIBRATOR_TYPES = {
    "known_frame": RobustKnownFrameMagnetometerCalibrator,
    "known_hard_iron_and_frame": RobustKnownHardIronAndFrameMagnetometerCalibrator,
    "position_and_instant": RobustKnownPositionAndInstantMagnetometerCalibrator,
    "known_hard_iron_position_and_instant": RobustKnownHardIronPositionAndInstantMagnetometerCalibrator,
}


def create_calibrator(model_type: str, measurements: Optional[Sequence] = None,
                      method=DEFAULT_ROBUST_METHOD, **kwargs) -> RobustMagnetometerCalibrator:
    """
    Build a robust calibrator by model family name.

    Args:
        model_type: One of CALIBRATOR_TYPES
        measurements: Measurement records
        method: RobustEstimatorMethod (or its name), LMedS by default
        **kwargs: Calibrator configuration
    """
    try:
        cls = CALIBRATOR_TYPES[model_type]
    except KeyError:
        raise ValueError(f"Unknown model type '{model_type}', "
                         f"expected one of {tuple(CALIBRATOR_TYPES)}") from None
    return cls.create(measurements, method=RobustEstimatorMethod.parse(method), **kwargs)


def calibrator_from_config(cfg: dict, measurements: Sequence,
                           listener=None) -> RobustMagnetometerCalibrator:
    """Wire a flat configuration dictionary (see config.load_config) into a calibrator."""
    model_type = cfg['MODEL_TYPE']
    kwargs = dict(
        common_axis_used=cfg['COMMON_AXIS'],
        initial_mm=cfg['INITIAL_MM'],
        listener=listener,
        confidence=cfg['CONFIDENCE'],
        max_iterations=cfg['MAX_ITERATIONS'],
        progress_delta=cfg['PROGRESS_DELTA'],
        result_refined=cfg['REFINE_RESULT'],
        covariance_kept=cfg['KEEP_COVARIANCE'],
        preliminary_solution_refined=cfg['REFINE_PRELIMINARY'],
        linear_calibrator_used=cfg['USE_LINEAR_CALIBRATOR'],
        compute_and_keep_inliers=cfg['KEEP_INLIERS'],
        compute_and_keep_residuals=cfg['KEEP_RESIDUALS'],
        random_state=cfg['RANDOM_SEED'],
    )
    for key, name in (('THRESHOLD', 'threshold'), ('STOP_THRESHOLD', 'stop_threshold'),
                      ('INLIER_FACTOR', 'inlier_factor'),
                      ('PRELIMINARY_SUBSET_SIZE', 'preliminary_subset_size')):
        if cfg.get(key) is not None:
            kwargs[name] = cfg[key]

    if CALIBRATOR_TYPES[model_type].HARD_IRON_ESTIMATED:
        kwargs['initial_hard_iron'] = cfg['HARD_IRON']
    else:
        kwargs['hard_iron'] = cfg['HARD_IRON']

    if model_type in ("position_and_instant", "known_hard_iron_position_and_instant"):
        if cfg.get('HAS_POSITION'):
            kwargs['position'] = (cfg['LATITUDE'], cfg['LONGITUDE'], cfg['HEIGHT'])
            kwargs['year'] = cfg['YEAR']
        if cfg.get('GROUND_TRUTH_NORM') is not None:
            kwargs['ground_truth_norm'] = cfg['GROUND_TRUTH_NORM']

    return create_calibrator(model_type, measurements, method=cfg['ROBUST_METHOD'], **kwargs)
