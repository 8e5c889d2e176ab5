#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Magcal Math Utilities Module
============================

Attitude and geodetic helpers shared by the field model, the data loaders
and the test fixtures.

Frame Conventions:
------------------
- NED (North-East-Down): X=North, Y=East, Z=Down (navigation frame)
- Body: FRD (Forward-Right-Down)
- Quaternion: [w, x, y, z] Hamilton convention
- Euler angles: roll/pitch/yaw (ZYX intrinsic), radians

Author: magcal project
"""

import numpy as np
from pyproj import Transformer
from scipy.spatial.transform import Rotation as R_scipy


# =============================================================================
# Attitude
# =============================================================================

def euler_to_c_body_to_ned(roll: float, pitch: float, yaw: float) -> np.ndarray:
    """Body to NED rotation matrix from roll/pitch/yaw [rad]."""
    return R_scipy.from_euler("ZYX", [yaw, pitch, roll]).as_matrix()


def c_body_to_ned_to_euler(c_body_to_ned: np.ndarray) -> np.ndarray:
    """Inverse of euler_to_c_body_to_ned, returns [roll, pitch, yaw] [rad]."""
    yaw, pitch, roll = R_scipy.from_matrix(c_body_to_ned).as_euler("ZYX")
    return np.array([roll, pitch, yaw])


def quat_to_rot(q: np.ndarray) -> np.ndarray:
    """Convert quaternion [w,x,y,z] to 3x3 rotation matrix."""
    w, x, y, z = q / np.linalg.norm(q)
    return np.array([
        [1-2*(y*y+z*z), 2*(x*y-w*z),   2*(x*z+w*y)],
        [2*(x*y+w*z),   1-2*(x*x+z*z), 2*(y*z-w*x)],
        [2*(x*z-w*y),   2*(y*z+w*x),   1-2*(x*x+y*y)]
    ])


# =============================================================================
# Geodetic conversions
# =============================================================================

_ecef_cache = {"to_ecef": None}


def _ecef_transformer() -> Transformer:
    if _ecef_cache["to_ecef"] is None:
        # WGS84 geodetic (lon, lat, h) -> ECEF (x, y, z)
        _ecef_cache["to_ecef"] = Transformer.from_crs(
            "EPSG:4979", "EPSG:4978", always_xy=True)
    return _ecef_cache["to_ecef"]


def geodetic_to_ecef(latitude: float, longitude: float, height: float) -> np.ndarray:
    """
    Convert WGS84 geodetic coordinates to ECEF.

    Args:
        latitude: Geodetic latitude [rad]
        longitude: Longitude [rad]
        height: Height above ellipsoid [m]

    Returns:
        ECEF position [m]
    """
    x, y, z = _ecef_transformer().transform(
        np.degrees(longitude), np.degrees(latitude), height)
    return np.array([x, y, z], dtype=float)


def geocentric_spherical(latitude: float, longitude: float, height: float):
    """
    Geocentric radius [m], colatitude [rad] and longitude [rad] of a
    geodetic position.
    """
    ecef = geodetic_to_ecef(latitude, longitude, height)
    r = float(np.linalg.norm(ecef))
    colatitude = float(np.arccos(np.clip(ecef[2] / r, -1.0, 1.0)))
    return r, colatitude, float(np.arctan2(ecef[1], ecef[0]))
