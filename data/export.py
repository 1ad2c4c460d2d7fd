"""
Writes the calibration result to disk.

    states file : CSV, one row per camera timestamp
                  #time(ns),px,py,pz,qw,qx,qy,qz,vx,vy,vz,bwx,bwy,bwz,bax,bay,baz
    info file   : plain-text calibration report
"""

from pathlib import Path
from typing import List, Union

import numpy as np

from logging_config import get_logger
from utilities.states import CalibrationState, GraphResult

logger = get_logger(__name__)

PathLike = Union[str, Path]

STATES_HEADER = "#time(ns),px,py,pz,qw,qx,qy,qz,vx,vy,vz,bwx,bwy,bwz,bax,bay,baz"


def _fresh_file(path: PathLike) -> Path:
    path = Path(path)
    if path.exists():
        path.unlink()
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def timestamp_to_ns(timestamp: float) -> int:
    return int(np.floor(1e9 * timestamp))


def calibration_report(calib: CalibrationState) -> List[str]:
    R = calib.R_BtoI.matrix()
    toff = calib.toff if calib.toff is not None else 0.0
    lines = ["R_BtoI:"]
    lines += [" ".join(f"{x:.9f}" for x in row) for row in R]
    lines.append("q_BtoI: " + " ".join(f"{x:.9f}" for x in calib.q_BtoI))
    lines.append("p_BinI: " + " ".join(f"{x:.9f}" for x in calib.p_BinI))
    lines.append("gravity: " + " ".join(f"{x:.9f}" for x in calib.grav_inV))
    lines.append(f"gravity norm: {calib.gravity_norm:.9f}")
    lines.append(f"t_off_vicon_to_imu: {toff:.9f}")
    return lines


def write_states_csv(result: GraphResult, path: PathLike) -> Path:
    path = _fresh_file(path)
    with path.open("w") as f:
        f.write(STATES_HEADER + "\n")
        for timestamp, state in zip(result.timestamps, result.states):
            row = ",".join(f"{x:.9f}" for x in state.as_row())
            f.write(f"{timestamp_to_ns(timestamp)},{row}\n")
    logger.info(f"Wrote {len(result)} states to {path}")
    return path


def write_info(result: GraphResult, path: PathLike) -> Path:
    path = _fresh_file(path)
    with path.open("w") as f:
        f.write("\n".join(calibration_report(result.calibration)) + "\n")
    logger.info(f"Wrote calibration report to {path}")
    return path
