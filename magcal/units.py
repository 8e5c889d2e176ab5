"""
Magnetic Flux Density Units

Small value types wrapping flux density values together with their unit.
Calibrators work internally in Tesla; these types are used at the API
boundary so callers can pass/receive nanotesla, microtesla or gauss values.

Author: magcal project
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

import numpy as np


class MagneticFluxDensityUnit(Enum):
    TESLA = "T"
    MILLITESLA = "mT"
    MICROTESLA = "uT"
    NANOTESLA = "nT"
    GAUSS = "G"


# Factor to convert one unit into Tesla
_TO_TESLA = {
    MagneticFluxDensityUnit.TESLA: 1.0,
    MagneticFluxDensityUnit.MILLITESLA: 1e-3,
    MagneticFluxDensityUnit.MICROTESLA: 1e-6,
    MagneticFluxDensityUnit.NANOTESLA: 1e-9,
    MagneticFluxDensityUnit.GAUSS: 1e-4,
}


def convert(value, from_unit: MagneticFluxDensityUnit,
            to_unit: MagneticFluxDensityUnit):
    """Convert a scalar or array between flux density units."""
    if from_unit == to_unit:
        return value
    return value * (_TO_TESLA[from_unit] / _TO_TESLA[to_unit])


@dataclass(frozen=True)
class MagneticFluxDensity:
    """Scalar flux density with unit."""
    value: float
    unit: MagneticFluxDensityUnit = MagneticFluxDensityUnit.TESLA

    def to_tesla(self) -> float:
        return float(convert(self.value, self.unit, MagneticFluxDensityUnit.TESLA))

    def to_unit(self, unit: MagneticFluxDensityUnit) -> "MagneticFluxDensity":
        return MagneticFluxDensity(float(convert(self.value, self.unit, unit)), unit)


@dataclass(frozen=True)
class MagneticFluxDensityTriad:
    """Three flux density components (x, y, z) sharing one unit."""
    x: float
    y: float
    z: float
    unit: MagneticFluxDensityUnit = MagneticFluxDensityUnit.TESLA

    @classmethod
    def from_array(cls, values, unit=MagneticFluxDensityUnit.TESLA):
        values = np.asarray(values, dtype=float).reshape(-1)
        if values.size != 3:
            raise ValueError(f"triad requires 3 values, got {values.size}")
        return cls(float(values[0]), float(values[1]), float(values[2]), unit)

    def as_array(self) -> np.ndarray:
        return np.array([self.x, self.y, self.z], dtype=float)

    def to_tesla(self) -> np.ndarray:
        return convert(self.as_array(), self.unit, MagneticFluxDensityUnit.TESLA)

    def to_unit(self, unit: MagneticFluxDensityUnit) -> "MagneticFluxDensityTriad":
        return MagneticFluxDensityTriad.from_array(
            convert(self.as_array(), self.unit, unit), unit)

    @property
    def norm(self) -> float:
        return float(np.linalg.norm(self.as_array()))

    def get_measurement_x(self) -> MagneticFluxDensity:
        return MagneticFluxDensity(self.x, self.unit)

    def get_measurement_y(self) -> MagneticFluxDensity:
        return MagneticFluxDensity(self.y, self.unit)

    def get_measurement_z(self) -> MagneticFluxDensity:
        return MagneticFluxDensity(self.z, self.unit)
