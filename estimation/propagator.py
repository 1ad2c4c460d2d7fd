"""
IMU propagator: preintegration between camera timestamps.

Integrates raw IMU samples with a zero-order hold (each sample is held until
the next one) on the rotation manifold, following Forster et al.,
"On-Manifold Preintegration for Real-Time Visual-Inertial Odometry".
Alongside the deltas it accumulates the measurement covariance and the first
order Jacobians of the deltas w.r.t. the linearization biases, so the factor
can correct for bias changes without re-integrating.
"""

from __future__ import annotations

import numpy as np
import scipy.linalg

from data.classes import ImuData, PreintegratedImu
from logging_config import get_logger
from utilities.config import ImuNoiseParams
from utilities.so3 import exp_so3, right_jacobian_SO3
from utilities.utils import get_skew_matrix

logger = get_logger(__name__)


class Propagator:
    """Holds the raw IMU stream and preintegrates it on request."""

    def __init__(self, imu: ImuData, noise: ImuNoiseParams = ImuNoiseParams()):
        if len(imu) < 2:
            raise ValueError(f"Need at least two IMU samples, got {len(imu)}")
        self.imu = imu
        self.noise = noise
        logger.debug(f"Propagator over [{imu.t[0]:.6f}, {imu.t[-1]:.6f}] with {len(imu)} samples")

    @property
    def t_start(self) -> float:
        return float(self.imu.t[0])

    @property
    def t_end(self) -> float:
        return float(self.imu.t[-1])

    def has_bounding_imu(self, timestamp: float) -> bool:
        """True when IMU samples exist at or before and at or after the timestamp."""
        return self.t_start <= timestamp <= self.t_end

    def _segments(self, t0: float, t1: float):
        """Yield (gyro, accel, dt) zero-order-hold segments covering [t0, t1]."""
        t = self.imu.t
        # Sample that is active at t0 (last one at or before it)
        k = int(np.searchsorted(t, t0, side="right")) - 1
        t_curr = t0
        while t_curr < t1:
            t_next = t[k + 1] if k + 1 < len(t) else t1
            t_seg_end = min(t_next, t1)
            dt = t_seg_end - t_curr
            if dt > 0.0:
                yield self.imu.gyro[k], self.imu.accel[k], dt
            t_curr = t_seg_end
            k += 1

    def propagate(
        self,
        t0: float,
        t1: float,
        gyro_bias: np.ndarray,
        accel_bias: np.ndarray,
    ) -> PreintegratedImu:
        """
        Preintegrate the IMU between t0 and t1 around the given biases.

        The returned measurement has dt == t1 - t0 exactly.
        """
        if t1 <= t0:
            raise ValueError(f"propagate needs t1 > t0, got t0={t0:.9f}, t1={t1:.9f}")
        if not (self.has_bounding_imu(t0) and self.has_bounding_imu(t1)):
            raise ValueError(f"[{t0:.9f}, {t1:.9f}] is not bounded by IMU data "
                             f"[{self.t_start:.9f}, {self.t_end:.9f}]")

        bg = np.asarray(gyro_bias, float).reshape(3)
        ba = np.asarray(accel_bias, float).reshape(3)

        delta_R = np.eye(3)
        delta_v = np.zeros(3)
        delta_p = np.zeros(3)

        J_R_bg = np.zeros((3, 3))
        J_v_bg = np.zeros((3, 3))
        J_v_ba = np.zeros((3, 3))
        J_p_bg = np.zeros((3, 3))
        J_p_ba = np.zeros((3, 3))

        # Covariance of [δθ, δv, δp]
        cov9 = np.zeros((9, 9))

        sigma_g2 = self.noise.gyroscope_noise_density ** 2
        sigma_a2 = self.noise.accelerometer_noise_density ** 2

        for gyro, accel, dt in self._segments(t0, t1):
            omega_hat = gyro - bg
            acc_hat = accel - ba
            acc_skew = get_skew_matrix(acc_hat)

            dR = exp_so3(omega_hat * dt)
            Jr = right_jacobian_SO3(omega_hat * dt)

            # --- covariance propagation ---
            A = np.eye(9)
            A[0:3, 0:3] = dR.T
            A[3:6, 0:3] = -delta_R @ acc_skew * dt
            A[6:9, 0:3] = -0.5 * delta_R @ acc_skew * dt**2
            A[6:9, 3:6] = np.eye(3) * dt

            B_g = np.zeros((9, 3))
            B_g[0:3, :] = Jr * dt
            B_a = np.zeros((9, 3))
            B_a[3:6, :] = delta_R * dt
            B_a[6:9, :] = 0.5 * delta_R * dt**2

            # Discrete noise from continuous densities
            Q_g = np.eye(3) * sigma_g2 / dt
            Q_a = np.eye(3) * sigma_a2 / dt
            cov9 = A @ cov9 @ A.T + B_g @ Q_g @ B_g.T + B_a @ Q_a @ B_a.T

            # --- bias Jacobians (use the deltas before this step) ---
            J_p_ba = J_p_ba + J_v_ba * dt - 0.5 * delta_R * dt**2
            J_p_bg = J_p_bg + J_v_bg * dt - 0.5 * delta_R @ acc_skew @ J_R_bg * dt**2
            J_v_ba = J_v_ba - delta_R * dt
            J_v_bg = J_v_bg - delta_R @ acc_skew @ J_R_bg * dt
            J_R_bg = dR.T @ J_R_bg - Jr * dt

            # --- deltas ---
            delta_p = delta_p + delta_v * dt + 0.5 * delta_R @ acc_hat * dt**2
            delta_v = delta_v + delta_R @ acc_hat * dt
            delta_R = delta_R @ dR

        # Re-orthonormalize accumulated rotation
        U, _, Vt = np.linalg.svd(delta_R)
        delta_R = U @ Vt

        DT = t1 - t0
        cov_bg = np.eye(3) * self.noise.gyroscope_random_walk ** 2 * DT
        cov_ba = np.eye(3) * self.noise.accelerometer_random_walk ** 2 * DT

        # Reorder [θ, v, p] + biases into [θ, bg, v, ba, p]
        cov15 = scipy.linalg.block_diag(cov9, cov_bg, cov_ba)
        order = np.r_[0:3, 9:12, 3:6, 12:15, 6:9]
        cov15 = cov15[np.ix_(order, order)]

        return PreintegratedImu(
            t0=t0,
            t1=t1,
            dt=DT,
            delta_R=delta_R,
            delta_v=delta_v,
            delta_p=delta_p,
            bg_lin=bg.copy(),
            ba_lin=ba.copy(),
            cov=cov15,
            J_R_bg=J_R_bg,
            J_v_bg=J_v_bg,
            J_v_ba=J_v_ba,
            J_p_bg=J_p_bg,
            J_p_ba=J_p_ba,
        )
