"""
Vicon pose interpolation.

Linear interpolation of position and geodesic (SLERP) interpolation of
orientation between the two vicon samples that bracket the query time.
"""

from __future__ import annotations

from typing import Optional

import numpy as np

from data.classes import InterpolatedPose, ViconData
from logging_config import get_logger
from utilities.so3 import exp_so3, log_so3, rot3_from_quat_array

logger = get_logger(__name__)


class Interpolator:
    """Serves vicon poses at arbitrary times from the discrete vicon stream."""

    def __init__(
        self,
        vicon: ViconData,
        sigma_rot: float = 1e-3,
        sigma_pos: float = 1e-3,
        max_gap: float = 0.1,
    ):
        if len(vicon) < 2:
            raise ValueError(f"Need at least two vicon samples, got {len(vicon)}")
        self.vicon = vicon
        self.max_gap = max_gap
        self.sample_cov = np.diag([sigma_rot**2] * 3 + [sigma_pos**2] * 3)
        self._R_BtoV = np.array([rot3_from_quat_array(q).matrix() for q in vicon.q_BtoV])
        logger.debug(f"Interpolator over [{vicon.t[0]:.6f}, {vicon.t[-1]:.6f}] "
                     f"with {len(vicon)} samples")

    def _bracket(self, timestamp: float) -> Optional[int]:
        """Index k such that t[k] <= timestamp <= t[k+1], or None."""
        t = self.vicon.t
        if timestamp < t[0] or timestamp > t[-1]:
            return None
        k = int(np.searchsorted(t, timestamp, side="right")) - 1
        k = min(k, len(t) - 2)
        if t[k + 1] - t[k] > self.max_gap:
            return None
        return k

    def get_pose(self, timestamp: float) -> Optional[InterpolatedPose]:
        """Interpolated body pose at the timestamp, or None when unavailable."""
        return self._interpolate(timestamp, with_derivative=False)

    def get_pose_with_derivative(self, timestamp: float) -> Optional[InterpolatedPose]:
        """Same as get_pose, plus the body angular rate and vicon-frame velocity."""
        return self._interpolate(timestamp, with_derivative=True)

    def _interpolate(self, timestamp: float, with_derivative: bool) -> Optional[InterpolatedPose]:
        k = self._bracket(timestamp)
        if k is None:
            return None

        t0, t1 = self.vicon.t[k], self.vicon.t[k + 1]
        seg_dt = t1 - t0
        lam = (timestamp - t0) / seg_dt

        R0, R1 = self._R_BtoV[k], self._R_BtoV[k + 1]
        p0, p1 = self.vicon.p_BinV[k], self.vicon.p_BinV[k + 1]

        # Exact sample hits return the sample itself
        if lam <= 0.0:
            R, p = R0.copy(), p0.copy()
        elif lam >= 1.0:
            R, p = R1.copy(), p1.copy()
        else:
            phi = log_so3(R0.T @ R1)
            R = R0 @ exp_so3(lam * phi)
            p = (1.0 - lam) * p0 + lam * p1

        # Blend the sample covariances of both ends
        cov = ((1.0 - lam)**2 + lam**2) * self.sample_cov

        pose = InterpolatedPose(t=float(timestamp), R_BtoV=R, p_BinV=np.asarray(p, float), cov=cov)
        if with_derivative:
            pose.omega_B = log_so3(R0.T @ R1) / seg_dt
            pose.vel_V = (p1 - p0) / seg_dt
        return pose
