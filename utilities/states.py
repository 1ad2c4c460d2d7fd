from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional

import numpy as np
from gtsam import Rot3

from utilities.so3 import quat_array_from_rot3


@dataclass(frozen=True)
class NavigationState:
    """Inertial navigation state at one camera timestamp.

    Attributes:
        ori       : rotation IMU -> vicon (as a Hamilton quaternion this has the
                    same components as the JPL vicon -> IMU quaternion)
        gyro_bias : gyroscope bias (3,)
        vel       : IMU velocity in the vicon frame (3,)
        accel_bias: accelerometer bias (3,)
        pos       : IMU position in the vicon frame (3,)
    """
    ori: Rot3
    gyro_bias: np.ndarray
    vel: np.ndarray
    accel_bias: np.ndarray
    pos: np.ndarray

    @property
    def bias(self) -> np.ndarray:
        """Stacked bias [bg; ba] (6,)."""
        return np.concatenate((np.asarray(self.gyro_bias, float).reshape(3),
                               np.asarray(self.accel_bias, float).reshape(3)))

    @property
    def quat(self) -> np.ndarray:
        """Orientation as scalar-first unit quaternion [w, x, y, z]."""
        return quat_array_from_rot3(self.ori)

    def as_row(self) -> np.ndarray:
        """[px py pz qw qx qy qz vx vy vz bwx bwy bwz bax bay baz]"""
        return np.concatenate((
            np.asarray(self.pos, float).reshape(3),
            self.quat,
            np.asarray(self.vel, float).reshape(3),
            np.asarray(self.gyro_bias, float).reshape(3),
            np.asarray(self.accel_bias, float).reshape(3),
        ))

    @staticmethod
    def zero_motion(ori: Rot3, pos: np.ndarray) -> 'NavigationState':
        """State with the given pose, zero velocity and zero biases."""
        return NavigationState(
            ori=ori,
            gyro_bias=np.zeros(3),
            vel=np.zeros(3),
            accel_bias=np.zeros(3),
            pos=np.asarray(pos, float).reshape(3),
        )


@dataclass(frozen=True)
class CalibrationState:
    """Global calibration parameters shared by all states.

    Attributes:
        R_BtoI   : rotation from the vicon body frame to the IMU frame
        p_BinI   : position of the vicon body origin in the IMU frame (3,)
        grav_inV : gravity expressed in the vicon frame (3,)
        toff     : time offset t_vicon = t_imu + toff, None when not estimated
    """
    R_BtoI: Rot3
    p_BinI: np.ndarray
    grav_inV: np.ndarray
    toff: Optional[float] = None

    @property
    def gravity_norm(self) -> float:
        return float(np.linalg.norm(self.grav_inV))

    @property
    def q_BtoI(self) -> np.ndarray:
        """R_BtoI as a scalar-first unit quaternion."""
        return quat_array_from_rot3(self.R_BtoI)


@dataclass
class GraphEstimate:
    """Current best estimate carried between relinearization rounds.

    States are keyed by the stable index assigned to each camera timestamp.
    """
    calibration: CalibrationState
    states: Dict[int, NavigationState] = field(default_factory=dict)

    def state(self, index: int) -> NavigationState:
        return self.states[index]


@dataclass(frozen=True)
class GraphResult:
    """Frozen output of a full build/solve run."""
    timestamps: List[float]
    states: List[NavigationState]
    calibration: CalibrationState
    final_error: float
    round_errors: List[float]
    iterations: List[int]

    def __len__(self) -> int:
        return len(self.states)
