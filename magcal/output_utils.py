"""
Calibration Output Utilities

Console summary and YAML export of calibration results. The YAML layout
matches the `hard_iron` / `initial_mm` sections read by config.load_config,
so a result can seed the next calibration.

Author: magcal project
"""

import numpy as np
import yaml
from typing import Any, Dict, Optional

from .calibration_result import CalibrationResult
from .robust.types import InliersData


def result_to_dict(result: CalibrationResult,
                   inliers_data: Optional[InliersData] = None,
                   method: Optional[str] = None) -> Dict[str, Any]:
    """Plain-python dictionary of a calibration result (YAML friendly)."""
    out = {
        'hard_iron': {
            'unit': 'T',
            'values': [float(v) for v in result.hard_iron],
            'estimated': bool(result.hard_iron_estimated),
        },
        'initial_mm': [[float(v) for v in row] for row in result.mm],
        'mse': float(result.mse),
        'chi_sq': float(result.chi_sq),
    }
    if result.covariance is not None:
        out['standard_deviations'] = {
            name: float(np.sqrt(max(result.covariance[i, i], 0.0)))
            for i, name in enumerate(result.parameter_names)
        }
    if inliers_data is not None:
        out['inliers'] = {
            'count': int(inliers_data.num_inliers),
            'threshold': float(inliers_data.threshold),
            'score': float(inliers_data.score),
        }
    if method is not None:
        out['method'] = method
    return out


def save_calibration_yaml(output_path: str, calibrator) -> Dict[str, Any]:
    """
    Write the last result of a calibrator to YAML.

    Raises:
        ValueError: if the calibrator has no result
    """
    if calibrator.result is None:
        raise ValueError("calibrator has no result to save")
    data = result_to_dict(calibrator.result, calibrator.inliers_data,
                          calibrator.method.name)
    with open(output_path, 'w') as f:
        yaml.safe_dump(data, f, sort_keys=False)
    print(f"[MAG-CAL] Saved calibration to {output_path}")
    return data


def print_calibration_summary(calibrator):
    """Print the estimated calibration of a robust calibrator."""
    result = calibrator.result
    print("=" * 60)
    print(f"MAGNETOMETER CALIBRATION ({type(calibrator).__name__}, {calibrator.method.name})")
    print("=" * 60)
    if result is None:
        print("No result available")
        return

    hi = result.hard_iron * 1e9
    label = "estimated" if result.hard_iron_estimated else "known"
    print(f"\n=== Hard Iron ({label}) [nT] ===")
    print(f"[{hi[0]:.3f}, {hi[1]:.3f}, {hi[2]:.3f}]")

    print(f"\n=== Soft Iron Mm ===")
    for row in result.mm:
        print(f"[{row[0]: .6e}, {row[1]: .6e}, {row[2]: .6e}]")

    if calibrator.inliers_data is not None:
        data = calibrator.inliers_data
        print(f"\n=== Consensus ===")
        print(f"Inliers: {data.num_inliers}/{len(calibrator.measurements)} "
              f"(threshold={data.threshold:.3e} T, score={data.score:.3e})")
        print(f"Iterations: {calibrator.last_iterations}")

    print(f"\n=== Fit ===")
    print(f"MSE: {result.mse:.6e}  Chi2: {result.chi_sq:.6e}")
    if result.covariance is not None:
        std = np.sqrt(np.clip(np.diag(result.covariance), 0.0, None))
        for name, s in zip(result.parameter_names, std):
            print(f"  sigma({name}) = {s:.3e}")
    print("=" * 60)
