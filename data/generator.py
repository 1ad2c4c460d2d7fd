"""
Synthetic vicon/IMU datasets with known calibration.

The truth trajectory is integrated with the same zero-order-hold scheme the
propagator uses, so that without noise the true states and calibration are
an exact zero-cost solution of the graph.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional

import numpy as np

from data.classes import ImuData, ViconData
from logging_config import get_logger
from utilities.so3 import exp_so3, quat_array_from_rot3, rot3_from_matrix
from utilities.states import CalibrationState, NavigationState

logger = get_logger(__name__)


@dataclass
class SyntheticConfig:
    duration: float = 6.0                 # [s]
    imu_rate: float = 100.0               # [Hz]
    camera_stride: int = 10               # camera every n-th IMU sample
    camera_margin: float = 1.5            # [s] kept free at both ends
    toff: float = 0.0                     # t_vicon = t_imu + toff
    R_BtoI: np.ndarray = field(default_factory=lambda: exp_so3(np.array([0.1, -0.2, 0.3])))
    p_BinI: np.ndarray = field(default_factory=lambda: np.array([0.05, -0.03, 0.02]))
    grav_inV: np.ndarray = field(default_factory=lambda: np.array([0.0, 0.0, 9.81]))
    gyro_bias: np.ndarray = field(default_factory=lambda: np.zeros(3))
    accel_bias: np.ndarray = field(default_factory=lambda: np.zeros(3))
    gyro_noise_std: float = 0.0           # per-sample [rad/s]
    accel_noise_std: float = 0.0          # per-sample [m/s^2]
    vicon_pos_noise_std: float = 0.0      # [m]
    seed: int = 0


@dataclass
class SyntheticDataset:
    imu: ImuData
    vicon: ViconData
    camera_timestamps: List[float]
    truth: Dict[float, NavigationState]   # IMU state at each camera timestamp
    calibration: CalibrationState


def omega_profile(t: float) -> np.ndarray:
    """Body angular rate [rad/s]."""
    return np.array([
        0.6 * np.sin(2 * np.pi * 0.30 * t),
        0.5 * np.sin(2 * np.pi * 0.50 * t + 1.0),
        0.4 * np.cos(2 * np.pi * 0.20 * t),
    ])


def accel_profile(t: float) -> np.ndarray:
    """Vicon-frame acceleration [m/s^2]."""
    return np.array([
        0.5 * np.sin(2 * np.pi * 0.25 * t),
        0.4 * np.cos(2 * np.pi * 0.30 * t),
        0.2 * np.sin(2 * np.pi * 0.40 * t),
    ])


class ViconImuGenerator:
    def __init__(self, cfg: Optional[SyntheticConfig] = None):
        self.cfg = cfg if cfg is not None else SyntheticConfig()

    def run(self) -> SyntheticDataset:
        cfg = self.cfg
        n = int(np.floor(cfg.duration * cfg.imu_rate)) + 1
        t = np.arange(n) / cfg.imu_rate
        rng = np.random.default_rng(cfg.seed)

        g = np.asarray(cfg.grav_inV, float).reshape(3)
        bg = np.asarray(cfg.gyro_bias, float).reshape(3)
        ba = np.asarray(cfg.accel_bias, float).reshape(3)
        R_BtoI = np.asarray(cfg.R_BtoI, float).reshape(3, 3)
        p_BinI = np.asarray(cfg.p_BinI, float).reshape(3)

        R_log = np.zeros((n, 3, 3))
        v_log = np.zeros((n, 3))
        p_log = np.zeros((n, 3))
        gyro_meas = np.zeros((n, 3))
        accel_meas = np.zeros((n, 3))

        R = np.eye(3)
        v = np.array([0.2, 0.0, 0.0])
        p = np.zeros(3)
        for k in range(n):
            R_log[k], v_log[k], p_log[k] = R, v, p

            omega = omega_profile(t[k])
            a_V = accel_profile(t[k])
            gyro_meas[k] = omega + bg
            accel_meas[k] = R.T @ (a_V + g) + ba

            if k + 1 < n:
                dt = t[k + 1] - t[k]
                p = p + v * dt + 0.5 * a_V * dt**2
                v = v + a_V * dt
                R = R @ exp_so3(omega * dt)

        if cfg.gyro_noise_std > 0.0:
            gyro_meas = gyro_meas + rng.normal(0.0, cfg.gyro_noise_std, gyro_meas.shape)
        if cfg.accel_noise_std > 0.0:
            accel_meas = accel_meas + rng.normal(0.0, cfg.accel_noise_std, accel_meas.shape)

        # Vicon sees the body frame on its own clock
        q_BtoV = np.zeros((n, 4))
        p_BinV = np.zeros((n, 3))
        for k in range(n):
            R_BtoV = rot3_from_matrix(R_log[k] @ R_BtoI)
            q_BtoV[k] = quat_array_from_rot3(R_BtoV)
            p_BinV[k] = p_log[k] + R_log[k] @ p_BinI
        if cfg.vicon_pos_noise_std > 0.0:
            p_BinV = p_BinV + rng.normal(0.0, cfg.vicon_pos_noise_std, p_BinV.shape)

        imu = ImuData(t=t, gyro=gyro_meas, accel=accel_meas)
        vicon = ViconData(t=t + cfg.toff, q_BtoV=q_BtoV, p_BinV=p_BinV)

        camera_timestamps: List[float] = []
        truth: Dict[float, NavigationState] = {}
        for k in range(0, n, cfg.camera_stride):
            if t[k] < t[0] + cfg.camera_margin or t[k] > t[-1] - cfg.camera_margin:
                continue
            timestamp = float(t[k])
            camera_timestamps.append(timestamp)
            truth[timestamp] = NavigationState(
                ori=rot3_from_matrix(R_log[k]),
                gyro_bias=bg.copy(),
                vel=v_log[k].copy(),
                accel_bias=ba.copy(),
                pos=p_log[k].copy(),
            )

        calibration = CalibrationState(
            R_BtoI=rot3_from_matrix(R_BtoI),
            p_BinI=p_BinI.copy(),
            grav_inV=g.copy(),
            toff=float(cfg.toff),
        )

        logger.info(f"Generated {n} IMU/vicon samples and {len(camera_timestamps)} camera timestamps")
        return SyntheticDataset(
            imu=imu,
            vicon=vicon,
            camera_timestamps=camera_timestamps,
            truth=truth,
            calibration=calibration,
        )
