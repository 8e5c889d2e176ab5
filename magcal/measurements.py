"""
Magnetometer Measurement Records

Immutable records consumed by the calibrators:

- MagneticFluxDensityMeasurement: measured body flux density with a standard
  deviation and, optionally, the already resolved expected body flux density.
- FrameMagneticFluxDensityMeasurement: measured body flux density taken at a
  known attitude (body to NED), position and instant. The expected body flux
  density is obtained from a field model collaborator.

Author: magcal project
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import numpy as np

from .magnetometer import as_vector3, as_matrix3


# Standard deviation used when none is provided [T]
DEFAULT_STANDARD_DEVIATION = 1.0


def _frozen_array(arr: np.ndarray) -> np.ndarray:
    arr = np.array(arr, dtype=float)
    arr.setflags(write=False)
    return arr


def _check_std(std: float) -> float:
    std = float(std)
    if not np.isfinite(std) or std <= 0.0:
        raise ValueError(f"standard_deviation must be positive, got {std}")
    return std


@dataclass(frozen=True)
class MagneticFluxDensityMeasurement:
    """Measured body flux density [T] with its standard deviation [T]."""
    magnetic_flux_density: np.ndarray
    standard_deviation: float = DEFAULT_STANDARD_DEVIATION
    expected_magnetic_flux_density: Optional[np.ndarray] = None

    def __post_init__(self):
        object.__setattr__(self, "magnetic_flux_density", _frozen_array(
            as_vector3("magnetic_flux_density", self.magnetic_flux_density)))
        object.__setattr__(self, "standard_deviation",
                           _check_std(self.standard_deviation))
        if self.expected_magnetic_flux_density is not None:
            object.__setattr__(self, "expected_magnetic_flux_density", _frozen_array(
                as_vector3("expected_magnetic_flux_density",
                           self.expected_magnetic_flux_density)))


@dataclass(frozen=True)
class FrameMagneticFluxDensityMeasurement:
    """
    Measured body flux density at a known body attitude, position and instant.

    Attributes:
        magnetic_flux_density: Measured flux density in body frame [T]
        c_body_to_ned: Rotation matrix from body to NED frame
        latitude: Geodetic latitude [rad]
        longitude: Longitude [rad]
        height: Height above ellipsoid [m]
        year: Decimal year of the measurement
        standard_deviation: Measurement standard deviation [T]
    """
    magnetic_flux_density: np.ndarray
    c_body_to_ned: np.ndarray
    latitude: float = 0.0
    longitude: float = 0.0
    height: float = 0.0
    year: float = 2020.0
    standard_deviation: float = DEFAULT_STANDARD_DEVIATION

    def __post_init__(self):
        object.__setattr__(self, "magnetic_flux_density", _frozen_array(
            as_vector3("magnetic_flux_density", self.magnetic_flux_density)))
        c = as_matrix3("c_body_to_ned", self.c_body_to_ned)
        if not np.allclose(c @ c.T, np.eye(3), atol=1e-6):
            raise ValueError("c_body_to_ned must be a rotation matrix")
        object.__setattr__(self, "c_body_to_ned", _frozen_array(c))
        object.__setattr__(self, "standard_deviation",
                           _check_std(self.standard_deviation))

    def expected_body_flux_density(self, field_model) -> np.ndarray:
        """Theoretical flux density resolved in body frame [T]."""
        b_ned = field_model.estimate(self.latitude, self.longitude,
                                     self.height, self.year)
        return self.c_body_to_ned.T @ b_ned
