"""
CSV loaders for the raw input streams.

    IMU    : t, wx, wy, wz, ax, ay, az          [s, rad/s, m/s^2]
    Vicon  : t, qw, qx, qy, qz, px, py, pz      [s, -, m], body -> vicon
    Camera : t (first column)                   [s]

Lines starting with '#' are skipped. Timestamps larger than 1e12 are taken
to be nanoseconds and converted to seconds.
"""

from pathlib import Path
from typing import List, Union

import numpy as np

from data.classes import ImuData, ViconData
from logging_config import get_logger

logger = get_logger(__name__)

PathLike = Union[str, Path]


def _load_table(path: PathLike, min_cols: int) -> np.ndarray:
    table = np.loadtxt(path, delimiter=",", comments="#", ndmin=2)
    if table.shape[1] < min_cols:
        raise ValueError(f"{path}: expected at least {min_cols} columns, got {table.shape[1]}")
    return table


def _to_seconds(t: np.ndarray) -> np.ndarray:
    t = np.asarray(t, float)
    if t.size and np.nanmax(np.abs(t)) > 1e12:
        return t * 1e-9
    return t


def load_imu_csv(path: PathLike) -> ImuData:
    table = _load_table(path, 7)
    imu = ImuData(t=_to_seconds(table[:, 0]), gyro=table[:, 1:4], accel=table[:, 4:7])
    logger.info(f"Loaded {len(imu)} IMU samples from {path}")
    return imu


def load_vicon_csv(path: PathLike) -> ViconData:
    table = _load_table(path, 8)
    vicon = ViconData(t=_to_seconds(table[:, 0]), q_BtoV=table[:, 1:5], p_BinV=table[:, 5:8])
    logger.info(f"Loaded {len(vicon)} vicon poses from {path}")
    return vicon


def load_camera_timestamps(path: PathLike) -> List[float]:
    table = _load_table(path, 1)
    timestamps = [float(t) for t in _to_seconds(table[:, 0])]
    logger.info(f"Loaded {len(timestamps)} camera timestamps from {path}")
    return timestamps
