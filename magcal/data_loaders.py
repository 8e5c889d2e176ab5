"""
Measurement Data Loaders

Reads magnetometer calibration measurements from CSV files with pandas.

Expected columns (names can be remapped through `columns`):
- bx, by, bz: measured body flux density
- std (optional): per-measurement standard deviation, same unit as bx..bz
- quality (optional): PROSAC/PROMedS quality score
- ex, ey, ez (optional): pre-resolved expected body flux density
- roll, pitch, yaw [deg] or qw, qx, qy, qz (optional): body attitude
  w.r.t. NED. Together with lat, lon [deg], height [m] and year they make
  frame measurements.

Author: magcal project
"""

import os
import numpy as np
import pandas as pd
from typing import Dict, List, Optional, Tuple

from .math_utils import euler_to_c_body_to_ned, quat_to_rot
from .measurements import (
    DEFAULT_STANDARD_DEVIATION,
    FrameMagneticFluxDensityMeasurement,
    MagneticFluxDensityMeasurement,
)
from .units import MagneticFluxDensityUnit, convert


DEFAULT_COLUMNS = {
    "bx": "bx", "by": "by", "bz": "bz",
    "std": "std", "quality": "quality",
    "ex": "ex", "ey": "ey", "ez": "ez",
    "roll": "roll", "pitch": "pitch", "yaw": "yaw",
    "qw": "qw", "qx": "qx", "qy": "qy", "qz": "qz",
    "lat": "lat", "lon": "lon", "height": "height", "year": "year",
}


def _has(df, cols, keys):
    return all(cols[k] in df.columns for k in keys)


def _attitude(row, df, cols) -> Optional[np.ndarray]:
    if _has(df, cols, ("qw", "qx", "qy", "qz")):
        q = np.array([row[cols[k]] for k in ("qw", "qx", "qy", "qz")], dtype=float)
        return quat_to_rot(q)
    if _has(df, cols, ("roll", "pitch", "yaw")):
        return euler_to_c_body_to_ned(np.radians(row[cols["roll"]]),
                                      np.radians(row[cols["pitch"]]),
                                      np.radians(row[cols["yaw"]]))
    return None


def load_measurements_csv(path: str, columns: Optional[Dict[str, str]] = None,
                          unit: MagneticFluxDensityUnit = MagneticFluxDensityUnit.TESLA,
                          standard_deviation: Optional[float] = None
                          ) -> Tuple[List, Optional[np.ndarray]]:
    """
    Load calibration measurements.

    Args:
        path: CSV path
        columns: Overrides of DEFAULT_COLUMNS
        unit: Unit of the flux density columns
        standard_deviation: Std used when the file has no std column

    Returns:
        (measurements, quality_scores or None)

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If flux density columns are missing
    """
    if not path or not os.path.exists(path):
        raise FileNotFoundError(f"Measurements CSV not found: {path}")

    cols = dict(DEFAULT_COLUMNS)
    cols.update(columns or {})

    df = pd.read_csv(path)
    if not _has(df, cols, ("bx", "by", "bz")):
        raise ValueError(f"{path}: missing flux density columns "
                         f"{[cols[k] for k in ('bx', 'by', 'bz')]}")

    def tesla(values):
        return convert(np.asarray(values, dtype=float), unit, MagneticFluxDensityUnit.TESLA)

    has_std = cols["std"] in df.columns
    has_expected = _has(df, cols, ("ex", "ey", "ez"))
    has_position = _has(df, cols, ("lat", "lon"))
    default_std = (tesla(standard_deviation) if standard_deviation is not None
                   else DEFAULT_STANDARD_DEVIATION)

    measurements = []
    for _, row in df.iterrows():
        b = tesla([row[cols["bx"]], row[cols["by"]], row[cols["bz"]]])
        std = float(tesla(row[cols["std"]])) if has_std else default_std
        c_bn = _attitude(row, df, cols)

        if c_bn is not None and has_position:
            measurements.append(FrameMagneticFluxDensityMeasurement(
                magnetic_flux_density=b,
                c_body_to_ned=c_bn,
                latitude=np.radians(row[cols["lat"]]),
                longitude=np.radians(row[cols["lon"]]),
                height=float(row[cols["height"]]) if cols["height"] in df.columns else 0.0,
                year=float(row[cols["year"]]) if cols["year"] in df.columns else 2020.0,
                standard_deviation=std,
            ))
        else:
            expected = None
            if has_expected:
                expected = tesla([row[cols["ex"]], row[cols["ey"]], row[cols["ez"]]])
            measurements.append(MagneticFluxDensityMeasurement(
                magnetic_flux_density=b,
                standard_deviation=std,
                expected_magnetic_flux_density=expected,
            ))

    quality = None
    if cols["quality"] in df.columns:
        quality = df[cols["quality"]].to_numpy(dtype=float)

    print(f"[MAG-CAL] Loaded {len(measurements)} measurements from {os.path.basename(path)}")
    return measurements, quality
