import numpy as np
import pytest
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from magcal.errors import NumericalInstabilityError
from magcal.magnetometer import (
    COMMON_AXIS_FREE_MM,
    apply_common_axis,
    as_matrix3,
    as_vector3,
    fix_measurement,
    frame_residuals,
    free_parameter_mask,
    mm_to_params,
    norm_residuals,
    params_to_mm,
    predict_measured,
)
from magcal.measurements import (
    FrameMagneticFluxDensityMeasurement,
    MagneticFluxDensityMeasurement,
)
from magcal.units import MagneticFluxDensityTriad, MagneticFluxDensityUnit


def _calibration():
    hard_iron = np.array([1e-6, -2e-6, 3e-6])
    mm = np.array([
        [0.01, 0.002, -0.001],
        [0.003, -0.02, 0.004],
        [-0.002, 0.001, 0.015],
    ])
    return hard_iron, mm


def test_predict_then_fix_recovers_true_field():
    hard_iron, mm = _calibration()
    b_true = np.array([[20e-6, -1e-6, 45e-6], [-5e-6, 30e-6, 10e-6]])

    b_meas = predict_measured(hard_iron, mm, b_true)
    assert b_meas.shape == (2, 3)
    assert np.allclose(b_meas[0], hard_iron + (np.eye(3) + mm) @ b_true[0])
    assert np.allclose(fix_measurement(b_meas, hard_iron, mm), b_true, atol=1e-18)


def test_fix_measurement_rejects_singular_soft_iron():
    mm = -np.eye(3)
    with pytest.raises(NumericalInstabilityError):
        fix_measurement(np.ones(3), np.zeros(3), mm)


def test_frame_residuals_are_zero_for_exact_model_and_weighted_by_std():
    hard_iron, mm = _calibration()
    b_true = np.array([[20e-6, -1e-6, 45e-6], [-5e-6, 30e-6, 10e-6]])
    b_meas = predict_measured(hard_iron, mm, b_true)
    b_meas[1] += np.array([0.0, 3e-7, 4e-7])

    res = frame_residuals(b_meas, b_true, hard_iron, mm)
    assert res[0] < 1e-18
    assert res[1] == pytest.approx(5e-7)

    weighted = frame_residuals(b_meas, b_true, hard_iron, mm, std=np.array([1e-7, 1e-7]))
    assert weighted[1] == pytest.approx(5.0)


def test_norm_residuals_measure_distance_to_field_norm():
    hard_iron, mm = _calibration()
    b_true = np.array([[30e-6, 0.0, 40e-6], [0.0, 50e-6, 0.0]])
    b_meas = predict_measured(hard_iron, mm, b_true)

    res = norm_residuals(b_meas, hard_iron, mm, 50e-6)
    assert np.all(res < 1e-18)

    res = norm_residuals(b_meas, hard_iron, mm, 49e-6)
    assert np.allclose(res, 1e-6)


def test_soft_iron_parameter_order():
    mm = np.arange(9, dtype=float).reshape(3, 3)
    params = mm_to_params(mm)
    # sx, sy, sz, mxy, mxz, myx, myz, mzx, mzy
    assert np.array_equal(params, [0, 4, 8, 1, 2, 3, 5, 6, 7])
    assert np.array_equal(params_to_mm(params), mm)


def test_common_axis_masks():
    assert COMMON_AXIS_FREE_MM.sum() == 6
    assert not COMMON_AXIS_FREE_MM[[5, 7, 8]].any()

    mask = free_parameter_mask(hard_iron_estimated=True, common_axis=True)
    assert mask.shape == (12,)
    assert np.flatnonzero(~mask).tolist() == [8, 10, 11]

    assert free_parameter_mask(False, False).all()

    mm = np.ones((3, 3))
    assert np.array_equal(apply_common_axis(mm), np.triu(mm))


def test_vector_and_matrix_validation():
    assert as_vector3("v", [1, 2, 3]).shape == (3,)
    assert as_vector3("v", np.ones((3, 1))).shape == (3,)
    triad = MagneticFluxDensityTriad(1.0, 2.0, 3.0, MagneticFluxDensityUnit.NANOTESLA)
    assert np.allclose(as_vector3("v", triad), [1e-9, 2e-9, 3e-9])

    for bad in ([1, 2], [1, 2, 3, 4], np.ones((1, 3)), [1.0, np.nan, 0.0]):
        with pytest.raises(ValueError):
            as_vector3("v", bad)

    with pytest.raises(ValueError):
        as_matrix3("m", np.eye(2))


def test_measurements_are_immutable_and_validated():
    m = MagneticFluxDensityMeasurement(np.array([1e-6, 2e-6, 3e-6]), 1e-7)
    with pytest.raises(ValueError):
        m.magnetic_flux_density[0] = 0.0
    with pytest.raises(Exception):
        m.standard_deviation = 2.0

    with pytest.raises(ValueError):
        MagneticFluxDensityMeasurement(np.ones(4))
    with pytest.raises(ValueError):
        MagneticFluxDensityMeasurement(np.ones(3), standard_deviation=0.0)
    with pytest.raises(ValueError):
        FrameMagneticFluxDensityMeasurement(np.ones(3), 2.0 * np.eye(3))


def test_frame_measurement_expected_body_field():
    class _Field:
        def estimate(self, latitude, longitude, height, year):
            return np.array([20e-6, 0.0, 40e-6])

    # 90 deg yaw: body x points east
    c_bn = np.array([[0.0, -1.0, 0.0], [1.0, 0.0, 0.0], [0.0, 0.0, 1.0]])
    m = FrameMagneticFluxDensityMeasurement(np.zeros(3), c_bn)
    assert np.allclose(m.expected_body_flux_density(_Field()), [0.0, -20e-6, 40e-6])
