from __future__ import annotations
from dataclasses import dataclass
from typing import Optional
import numpy as np


@dataclass
class ImuData:
    t: np.ndarray            # shape (N,)   [s]
    gyro: np.ndarray         # shape (N, 3) [rad/s]
    accel: np.ndarray        # shape (N, 3) [m/s^2]

    def __post_init__(self):
        self.t = np.asarray(self.t, float).reshape(-1)
        self.gyro = np.asarray(self.gyro, float).reshape(-1, 3)
        self.accel = np.asarray(self.accel, float).reshape(-1, 3)
        if not (len(self.t) == len(self.gyro) == len(self.accel)):
            raise ValueError("IMU arrays must have the same length")
        if len(self.t) > 1 and np.any(np.diff(self.t) <= 0.0):
            raise ValueError("IMU timestamps must be strictly increasing")

    def __len__(self):
        return len(self.t)


@dataclass
class ViconData:
    t: np.ndarray            # shape (N,)   [s], vicon clock
    q_BtoV: np.ndarray       # shape (N, 4) scalar-first, body -> vicon
    p_BinV: np.ndarray       # shape (N, 3) [m]

    def __post_init__(self):
        self.t = np.asarray(self.t, float).reshape(-1)
        self.q_BtoV = np.asarray(self.q_BtoV, float).reshape(-1, 4)
        self.p_BinV = np.asarray(self.p_BinV, float).reshape(-1, 3)
        if not (len(self.t) == len(self.q_BtoV) == len(self.p_BinV)):
            raise ValueError("Vicon arrays must have the same length")
        if len(self.t) > 1 and np.any(np.diff(self.t) <= 0.0):
            raise ValueError("Vicon timestamps must be strictly increasing")

    def __len__(self):
        return len(self.t)


@dataclass
class InterpolatedPose:
    """Vicon pose at a query time.

    R_BtoV and p_BinV are the body pose in the vicon frame, cov is the 6x6
    covariance ordered [rot, pos]. omega_B / vel_V are the time derivative of
    the interpolated segment (body angular rate, vicon-frame velocity) and
    are only filled when requested.
    """
    t: float
    R_BtoV: np.ndarray       # (3, 3)
    p_BinV: np.ndarray       # (3,)
    cov: np.ndarray          # (6, 6)
    omega_B: Optional[np.ndarray] = None
    vel_V: Optional[np.ndarray] = None


@dataclass
class PreintegratedImu:
    """Preintegrated IMU measurement between two timestamps.

    Deltas are expressed in the IMU frame at t0. The covariance and the
    residual of the factor built from it are ordered [θ, bg, v, ba, p].
    """
    t0: float
    t1: float
    dt: float
    delta_R: np.ndarray      # (3, 3)
    delta_v: np.ndarray      # (3,)
    delta_p: np.ndarray      # (3,)
    bg_lin: np.ndarray       # (3,)
    ba_lin: np.ndarray       # (3,)
    cov: np.ndarray          # (15, 15)
    J_R_bg: np.ndarray       # (3, 3)
    J_v_bg: np.ndarray       # (3, 3)
    J_v_ba: np.ndarray       # (3, 3)
    J_p_bg: np.ndarray       # (3, 3)
    J_p_ba: np.ndarray       # (3, 3)
