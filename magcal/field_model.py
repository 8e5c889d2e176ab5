"""
Earth Magnetic Field Estimators

Collaborators that yield the theoretical Earth magnetic flux density
(NED frame, Tesla) at a given position and instant. Calibrators only rely
on the ``estimate(latitude, longitude, height, year)`` method, so any object
providing it (for instance a full World Magnetic Model wrapper) can be used.

- ConstantEarthMagneticFluxDensityEstimator: same field everywhere. Useful
  for lab calibrations where the local field has been surveyed.
- DipoleEarthMagneticFluxDensityEstimator: degree-1 (tilted dipole)
  spherical-harmonic model with IGRF-13 2020 coefficients.

Author: magcal project
"""

import numpy as np

from .math_utils import geocentric_spherical


# Geomagnetic reference radius [m]
EARTH_REFERENCE_RADIUS = 6371200.0

# IGRF-13 degree-1 Gauss coefficients, epoch 2020.0 [nT] and secular variation [nT/yr]
IGRF_2020_G10 = -29404.8
IGRF_2020_G11 = -1450.9
IGRF_2020_H11 = 4652.5
IGRF_2020_G10_SV = 5.7
IGRF_2020_G11_SV = 7.4
IGRF_2020_H11_SV = -25.9
IGRF_EPOCH = 2020.0


class ConstantEarthMagneticFluxDensityEstimator:
    """Returns a fixed NED flux density regardless of position and time."""

    def __init__(self, b_ned):
        b_ned = np.array(b_ned, dtype=float).reshape(-1)
        if b_ned.size != 3:
            raise ValueError(f"b_ned must have 3 components, got {b_ned.size}")
        self.b_ned = b_ned

    def estimate(self, latitude=0.0, longitude=0.0, height=0.0, year=IGRF_EPOCH):
        return self.b_ned.copy()

    def estimate_norm(self, latitude=0.0, longitude=0.0, height=0.0, year=IGRF_EPOCH):
        return float(np.linalg.norm(self.b_ned))


class DipoleEarthMagneticFluxDensityEstimator:
    """
    Tilted-dipole Earth magnetic field.

    Coefficients are propagated linearly in time from the 2020 epoch using
    their secular variation. Field components are rotated from the geocentric
    to the geodetic NED frame.
    """

    def __init__(self, g10=IGRF_2020_G10, g11=IGRF_2020_G11, h11=IGRF_2020_H11,
                 epoch=IGRF_EPOCH, secular_variation=True):
        self.g10 = g10
        self.g11 = g11
        self.h11 = h11
        self.epoch = epoch
        self.secular_variation = secular_variation

    def _coefficients(self, year):
        if not self.secular_variation:
            return self.g10, self.g11, self.h11
        dt = year - self.epoch
        return (self.g10 + IGRF_2020_G10_SV * dt,
                self.g11 + IGRF_2020_G11_SV * dt,
                self.h11 + IGRF_2020_H11_SV * dt)

    def estimate(self, latitude, longitude, height=0.0, year=IGRF_EPOCH):
        """
        Args:
            latitude: Geodetic latitude [rad]
            longitude: Longitude [rad]
            height: Height above WGS84 ellipsoid [m]
            year: Decimal year

        Returns:
            Flux density in NED frame [T]
        """
        g10, g11, h11 = self._coefficients(year)
        r, theta, phi = geocentric_spherical(latitude, longitude, height)
        k = (EARTH_REFERENCE_RADIUS / r) ** 3
        sin_t, cos_t = np.sin(theta), np.cos(theta)
        m1 = g11 * np.cos(phi) + h11 * np.sin(phi)

        b_r = 2.0 * k * (g10 * cos_t + m1 * sin_t)
        b_theta = k * (g10 * sin_t - m1 * cos_t)
        b_phi = k * (g11 * np.sin(phi) - h11 * np.cos(phi))

        # Geocentric NED
        x_gc, y_gc, z_gc = -b_theta, b_phi, -b_r

        # Rotate into geodetic NED
        psi = (np.pi / 2.0 - theta) - latitude
        x = x_gc * np.cos(psi) - z_gc * np.sin(psi)
        z = x_gc * np.sin(psi) + z_gc * np.cos(psi)
        return np.array([x, y_gc, z]) * 1e-9

    def estimate_norm(self, latitude, longitude, height=0.0, year=IGRF_EPOCH):
        return float(np.linalg.norm(self.estimate(latitude, longitude, height, year)))
