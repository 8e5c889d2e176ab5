import numpy as np
import pytest
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from magcal.errors import LockedError, NotReadyError
from magcal.robust import (
    RobustEstimatorMethod,
    RobustKnownFrameMagnetometerCalibrator,
    RobustKnownHardIronAndFrameMagnetometerCalibrator,
    RobustKnownHardIronPositionAndInstantMagnetometerCalibrator,
    RobustKnownPositionAndInstantMagnetometerCalibrator,
    RobustMagnetometerCalibratorListener,
    create_calibrator,
)
from magcal.units import MagneticFluxDensityTriad, MagneticFluxDensityUnit

from mag_synthetic import (
    THRESHOLD,
    RecordingListener,
    constant_field_model,
    make_frame_dataset,
)


def test_defaults():
    cal = RobustKnownFrameMagnetometerCalibrator()

    assert cal.method == RobustEstimatorMethod.LMEDS
    assert cal.measurements == ()
    assert not cal.is_ready
    assert not cal.is_running
    assert not cal.common_axis_used
    assert cal.minimum_required_measurements == 4
    assert cal.preliminary_subset_size == 4
    assert np.array_equal(cal.initial_hard_iron, np.zeros(3))
    assert np.array_equal(cal.initial_mm, np.zeros((3, 3)))
    assert cal.confidence == 0.99
    assert cal.max_iterations == 5000
    assert cal.progress_delta == 0.05
    assert cal.inlier_factor == 1.5
    assert cal.threshold == 500e-9
    assert cal.stop_threshold == 1e-9
    assert cal.result_refined
    assert cal.covariance_kept
    assert cal.linear_calibrator_used
    assert not cal.preliminary_solution_refined
    assert not cal.compute_and_keep_inliers
    assert not cal.compute_and_keep_residuals
    assert cal.listener is None

    assert cal.result is None
    assert cal.inliers_data is None
    assert cal.estimated_hard_iron is None
    assert cal.estimated_hard_iron_x is None
    assert cal.estimated_hard_iron_matrix is None
    assert cal.get_estimated_hard_iron(np.zeros(3)) is None
    assert cal.get_estimated_hard_iron_as_triad() is None
    assert cal.estimated_mm is None
    assert cal.estimated_sx is None
    assert cal.estimated_mzy is None
    assert cal.estimated_covariance is None
    assert cal.estimated_mse is None
    assert cal.estimated_chi_sq is None


def test_minimum_measurements_per_model():
    assert RobustKnownFrameMagnetometerCalibrator().minimum_required_measurements == 4
    assert RobustKnownHardIronAndFrameMagnetometerCalibrator().minimum_required_measurements == 3

    cal = RobustKnownPositionAndInstantMagnetometerCalibrator()
    assert cal.minimum_required_measurements == 13
    assert cal.threshold == 1e-9
    cal.common_axis_used = True
    assert cal.minimum_required_measurements == 10

    cal = RobustKnownHardIronPositionAndInstantMagnetometerCalibrator(common_axis_used=True)
    assert cal.minimum_required_measurements == 7
    assert cal.preliminary_subset_size == 7
    cal.common_axis_used = False
    assert cal.minimum_required_measurements == 10
    assert cal.preliminary_subset_size == 10


def test_setters_round_trip():
    cal = RobustKnownFrameMagnetometerCalibrator()
    listener = RobustMagnetometerCalibratorListener()

    cal.threshold = 2e-7
    cal.stop_threshold = 3e-9
    cal.inlier_factor = 2.5
    cal.confidence = 0.95
    cal.max_iterations = 123
    cal.progress_delta = 0.2
    cal.result_refined = False
    cal.covariance_kept = False
    cal.preliminary_solution_refined = True
    cal.linear_calibrator_used = False
    cal.compute_and_keep_inliers = True
    cal.compute_and_keep_residuals = True
    cal.listener = listener
    cal.common_axis_used = True
    cal.preliminary_subset_size = 6

    assert cal.threshold == 2e-7
    assert cal.stop_threshold == 3e-9
    assert cal.inlier_factor == 2.5
    assert cal.confidence == 0.95
    assert cal.max_iterations == 123
    assert cal.progress_delta == 0.2
    assert not cal.result_refined
    assert not cal.covariance_kept
    assert cal.preliminary_solution_refined
    assert not cal.linear_calibrator_used
    assert cal.compute_and_keep_inliers
    assert cal.compute_and_keep_residuals
    assert cal.listener is listener
    assert cal.common_axis_used
    assert cal.preliminary_subset_size == 6

    hard_iron = np.array([1e-6, 2e-6, 3e-6])
    cal.initial_hard_iron = hard_iron
    assert np.array_equal(cal.initial_hard_iron, hard_iron)
    cal.initial_hard_iron_y = -5e-6
    assert cal.initial_hard_iron_y == -5e-6
    assert cal.initial_hard_iron_matrix.shape == (3, 1)

    mm = np.arange(9, dtype=float).reshape(3, 3) * 1e-3
    cal.initial_mm = mm
    assert np.array_equal(cal.initial_mm, mm)
    assert cal.initial_myz == mm[1, 2]

    cal.set_initial_scaling_factors(0.1, 0.2, 0.3)
    assert (cal.initial_sx, cal.initial_sy, cal.initial_sz) == (0.1, 0.2, 0.3)
    cal.set_initial_cross_coupling_errors(1.0, 2.0, 3.0, 4.0, 5.0, 6.0)
    assert (cal.initial_mxy, cal.initial_mxz, cal.initial_myx,
            cal.initial_myz, cal.initial_mzx, cal.initial_mzy) == (1.0, 2.0, 3.0, 4.0, 5.0, 6.0)

    # Returned arrays are copies
    cal.initial_mm[0, 0] = 99.0
    assert cal.initial_sx == 0.1


def test_known_hard_iron_accessors_and_validation():
    cal = RobustKnownHardIronAndFrameMagnetometerCalibrator()
    hard_iron = np.array([1e-6, -2e-6, 3e-6])

    cal.hard_iron = hard_iron
    assert np.array_equal(cal.hard_iron, hard_iron)
    assert np.array_equal(cal.get_hard_iron(np.empty(3)), hard_iron)
    assert np.array_equal(cal.get_hard_iron_matrix(np.empty((3, 1))), hard_iron.reshape(3, 1))
    cal.hard_iron_matrix = 2.0 * hard_iron.reshape(3, 1)
    assert cal.hard_iron_z == 6e-6

    cal.hard_iron = MagneticFluxDensityTriad(10.0, 20.0, 30.0, MagneticFluxDensityUnit.NANOTESLA)
    assert np.allclose(cal.hard_iron, [10e-9, 20e-9, 30e-9])
    triad = cal.get_hard_iron_as_triad(MagneticFluxDensityUnit.NANOTESLA)
    assert triad.x == pytest.approx(10.0)

    with pytest.raises(ValueError):
        cal.hard_iron = np.zeros(4)
    with pytest.raises(ValueError):
        cal.get_hard_iron(np.zeros(4))
    with pytest.raises(ValueError):
        cal.get_hard_iron_matrix(np.zeros((3, 3)))
    with pytest.raises(ValueError):
        cal.get_hard_iron_matrix(np.zeros(3))
    with pytest.raises(ValueError):
        cal.hard_iron_matrix = np.zeros((1, 3))
    with pytest.raises(ValueError):
        cal.initial_mm = np.zeros((3, 2))
    with pytest.raises(ValueError):
        cal.hard_iron_x = np.nan
    with pytest.raises(ValueError):
        cal.initial_mxy = np.inf
    assert np.allclose(cal.hard_iron, [10e-9, 20e-9, 30e-9])

    initial = RobustKnownFrameMagnetometerCalibrator()
    for name in ("initial_hard_iron_x", "initial_hard_iron_y", "initial_hard_iron_z"):
        with pytest.raises(ValueError):
            setattr(initial, name, np.inf)
    assert np.array_equal(initial.initial_hard_iron, np.zeros(3))


def test_invalid_settings_raise():
    cal = RobustKnownFrameMagnetometerCalibrator()
    for name, value in (("confidence", 1.0), ("confidence", 0.0),
                        ("max_iterations", 0), ("progress_delta", 1.5),
                        ("threshold", 0.0), ("stop_threshold", -1.0),
                        ("inlier_factor", 0.0), ("preliminary_subset_size", 3)):
        with pytest.raises(ValueError):
            setattr(cal, name, value)

    # Frame calibrators need an expected body field per measurement
    from magcal.measurements import MagneticFluxDensityMeasurement
    with pytest.raises(ValueError):
        cal.measurements = [MagneticFluxDensityMeasurement(np.ones(3) * 1e-6)]


def test_quality_scores_only_used_by_progressive_methods():
    rng = np.random.default_rng(31)
    data = make_frame_dataset(rng, n=20)

    cal = RobustKnownFrameMagnetometerCalibrator.create(data.measurements,
                                                        method=RobustEstimatorMethod.RANSAC)
    cal.quality_scores = data.quality_scores
    assert cal.quality_scores is None
    assert cal.is_ready

    cal = RobustKnownFrameMagnetometerCalibrator.create(data.measurements,
                                                        method=RobustEstimatorMethod.PROSAC)
    assert not cal.is_ready
    cal.quality_scores = data.quality_scores
    assert np.array_equal(cal.quality_scores, data.quality_scores)
    assert cal.is_ready
    with pytest.raises(ValueError):
        cal.quality_scores = [1.0, 2.0]
    cal.quality_scores = np.ones(5)
    assert not cal.is_ready


def test_create_defaults_to_lmeds():
    assert RobustKnownFrameMagnetometerCalibrator.create().method == RobustEstimatorMethod.LMEDS
    cal = create_calibrator("known_hard_iron_and_frame", method="msac")
    assert isinstance(cal, RobustKnownHardIronAndFrameMagnetometerCalibrator)
    assert cal.method == RobustEstimatorMethod.MSAC
    with pytest.raises(ValueError):
        create_calibrator("unknown_model")
    with pytest.raises(ValueError):
        create_calibrator("known_frame", method="ransac2")


def test_calibrate_not_ready_raises():
    cal = RobustKnownFrameMagnetometerCalibrator()
    with pytest.raises(NotReadyError):
        cal.calibrate()
    assert not cal.is_running


def test_subset_fit_needs_linear_or_refined_solution():
    rng = np.random.default_rng(35)
    data = make_frame_dataset(rng, n=20)
    cal = RobustKnownFrameMagnetometerCalibrator(
        data.measurements, field_model=constant_field_model(),
        method=RobustEstimatorMethod.RANSAC, threshold=THRESHOLD)
    assert cal.is_ready

    cal.linear_calibrator_used = False
    assert not cal.is_ready
    with pytest.raises(NotReadyError):
        cal.calibrate()
    assert cal.result is None

    cal.preliminary_solution_refined = True
    assert cal.is_ready
    cal.linear_calibrator_used = True
    cal.preliminary_solution_refined = False
    assert cal.is_ready


class MalformedWhileRunningListener(RobustMagnetometerCalibratorListener):
    """Sets a malformed hard-iron matrix from inside on_calibrate_start."""

    def __init__(self, name):
        self.name = name
        self.error = None

    def on_calibrate_start(self, calibrator):
        try:
            setattr(calibrator, self.name, np.zeros(2))
        except (LockedError, ValueError) as e:
            self.error = e


def test_malformed_hard_iron_matrix_while_running_is_locked():
    rng = np.random.default_rng(36)
    data = make_frame_dataset(rng, n=30, outlier_percentage=0)
    for cls, name in ((RobustKnownHardIronAndFrameMagnetometerCalibrator, "hard_iron_matrix"),
                      (RobustKnownFrameMagnetometerCalibrator, "initial_hard_iron_matrix")):
        listener = MalformedWhileRunningListener(name)
        cal = cls(data.measurements, field_model=constant_field_model(), listener=listener,
                  method=RobustEstimatorMethod.RANSAC, threshold=THRESHOLD, random_state=36)
        if cls is RobustKnownHardIronAndFrameMagnetometerCalibrator:
            cal.hard_iron = data.hard_iron

        cal.calibrate()

        assert isinstance(listener.error, LockedError), name


class LockCheckingListener(RecordingListener):
    """Tries every mutator from inside the notifications."""

    def __init__(self, data):
        super().__init__()
        self.data = data
        self.locked = 0
        self.attempts = 0

    def _try(self, fn):
        self.attempts += 1
        try:
            fn()
        except LockedError:
            self.locked += 1

    def _try_all(self, cal):
        mutators = [
            lambda: setattr(cal, "measurements", self.data.measurements),
            lambda: setattr(cal, "common_axis_used", True),
            lambda: setattr(cal, "initial_hard_iron", np.zeros(3)),
            lambda: setattr(cal, "initial_hard_iron_x", 0.0),
            lambda: setattr(cal, "initial_hard_iron_matrix", np.zeros(2)),
            lambda: setattr(cal, "initial_mm", np.zeros((3, 3))),
            lambda: setattr(cal, "initial_sx", 0.0),
            lambda: cal.set_initial_scaling_factors(0.0, 0.0, 0.0),
            lambda: cal.set_initial_cross_coupling_errors(0.0, 0.0, 0.0, 0.0, 0.0, 0.0),
            lambda: setattr(cal, "quality_scores", None),
            lambda: setattr(cal, "threshold", 1e-6),
            lambda: setattr(cal, "stop_threshold", 1e-6),
            lambda: setattr(cal, "inlier_factor", 2.0),
            lambda: setattr(cal, "confidence", 0.5),
            lambda: setattr(cal, "max_iterations", 10),
            lambda: setattr(cal, "progress_delta", 0.5),
            lambda: setattr(cal, "result_refined", False),
            lambda: setattr(cal, "covariance_kept", False),
            lambda: setattr(cal, "preliminary_solution_refined", True),
            lambda: setattr(cal, "linear_calibrator_used", False),
            lambda: setattr(cal, "compute_and_keep_inliers", False),
            lambda: setattr(cal, "compute_and_keep_residuals", False),
            lambda: setattr(cal, "preliminary_subset_size", 5),
            lambda: setattr(cal, "listener", None),
            lambda: setattr(cal, "field_model", constant_field_model()),
            cal.calibrate,
        ]
        for fn in mutators:
            self._try(fn)

    def on_calibrate_start(self, calibrator):
        super().on_calibrate_start(calibrator)
        self._try_all(calibrator)

    def on_calibrate_end(self, calibrator):
        super().on_calibrate_end(calibrator)
        self._try_all(calibrator)


def test_mutators_locked_while_running():
    rng = np.random.default_rng(32)
    data = make_frame_dataset(rng, n=50)
    listener = LockCheckingListener(data)
    cal = RobustKnownFrameMagnetometerCalibrator(
        data.measurements, field_model=constant_field_model(),
        listener=listener, method=RobustEstimatorMethod.RANSAC,
        threshold=THRESHOLD, random_state=32)

    cal.calibrate()

    assert listener.attempts > 0
    assert listener.locked == listener.attempts
    assert listener.start == 1
    assert listener.end == 1
    assert not cal.is_running
    # Nothing was changed by the locked attempts
    assert cal.listener is listener
    assert cal.threshold == THRESHOLD
    assert cal.result_refined


def test_notification_accounting():
    rng = np.random.default_rng(33)
    data = make_frame_dataset(rng, n=100)
    listener = RecordingListener()
    cal = RobustKnownFrameMagnetometerCalibrator(
        data.measurements, field_model=constant_field_model(), listener=listener,
        method=RobustEstimatorMethod.MSAC, threshold=THRESHOLD, progress_delta=0.0,
        random_state=33)

    cal.calibrate()

    assert listener.start == 1
    assert listener.end == 1
    assert len(listener.iterations) == cal.last_iterations > 0
    assert listener.iterations == list(range(1, cal.last_iterations + 1))
    assert all(0.0 < p <= 1.0 for p in listener.progress)


def test_snapshot_isolates_running_configuration():
    rng = np.random.default_rng(34)
    data = make_frame_dataset(rng, n=60, outlier_percentage=0)
    cal = RobustKnownFrameMagnetometerCalibrator(
        data.measurements, field_model=constant_field_model(),
        method=RobustEstimatorMethod.RANSAC, threshold=THRESHOLD, random_state=34)

    cal.calibrate()
    first = cal.result

    # Changing settings afterwards does not alter the published result
    cal.initial_mm = np.eye(3)
    cal.threshold = 1.0
    assert cal.result is first
    assert np.allclose(cal.estimated_mm, data.mm, atol=1e-9)
