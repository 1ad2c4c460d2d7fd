"""
Factor library for the vicon/IMU calibration graph.

Variables (gtsam keys):
    q(i) : Rot3     R_ItoV of navigation state i
    v(i) : Vector3  IMU velocity in the vicon frame
    p(i) : Vector3  IMU position in the vicon frame
    b(i) : Vector6  [gyro bias; accel bias]
    c(0) : Rot3     R_BtoI, vicon body -> IMU
    c(1) : Vector3  p_BinI, body origin in the IMU frame
    g(0) : Vector3  gravity in the vicon frame
    t(0) : Vector1  time offset, t_vicon = t_imu + toff

Rotations are perturbed on the right, R <- R * Exp(δθ); vectors additively.
The IMU kinematics are a_V = R_ItoV (a_m - b_a) - g.
"""

from __future__ import annotations

from typing import List

import numpy as np
import gtsam

from data.classes import InterpolatedPose, PreintegratedImu
from estimation.interpolator import Interpolator
from logging_config import get_logger
from utilities.so3 import exp_so3, log_so3, right_jacobian_inv_SO3, right_jacobian_SO3
from utilities.utils import get_skew_matrix

logger = get_logger(__name__)

# Prior on the time offset, centred on the estimate of the previous round [s]
TIME_OFFSET_PRIOR_SIGMA = 0.02

# Gravity magnitude constraint, only used when enforce_grav_mag is set [m/s^2]
GRAVITY_MAGNITUDE_SIGMA = 1e-6


class Keys:
    """Symbol helpers for all graph variables."""

    @staticmethod
    def rot(i: int) -> int:
        return gtsam.symbol("q", i)

    @staticmethod
    def vel(i: int) -> int:
        return gtsam.symbol("v", i)

    @staticmethod
    def pos(i: int) -> int:
        return gtsam.symbol("p", i)

    @staticmethod
    def bias(i: int) -> int:
        return gtsam.symbol("b", i)

    @staticmethod
    def state(i: int) -> List[int]:
        return [Keys.rot(i), Keys.vel(i), Keys.pos(i), Keys.bias(i)]

    CALIB_ROT = gtsam.symbol("c", 0)
    CALIB_POS = gtsam.symbol("c", 1)
    GRAVITY = gtsam.symbol("g", 0)
    TOFF = gtsam.symbol("t", 0)


def pose_residual(
    R_ItoV: np.ndarray,
    p_IinV: np.ndarray,
    R_BtoI: np.ndarray,
    p_BinI: np.ndarray,
    R_meas: np.ndarray,
    p_meas: np.ndarray,
    jacobians: bool = False,
):
    """
    Residual between the vicon pose predicted from an IMU state and the measured one.

        e_R = Log(R_meas^T * R_ItoV * R_BtoI)
        e_p = p_IinV + R_ItoV * p_BinI - p_meas

    R_BtoI maps body vectors into the IMU frame and R_ItoV maps IMU vectors
    into the vicon frame, so R_ItoV * R_BtoI is the predicted body -> vicon
    rotation.

    Returns e (6,) and, if requested, (H_R_I, H_p_I, H_R_c, H_p_c, E, Jr_inv(e_R)).
    """
    R_pred = R_ItoV @ R_BtoI
    E = R_meas.T @ R_pred
    e_rot = log_so3(E)
    e_pos = p_IinV + R_ItoV @ p_BinI - p_meas
    e = np.concatenate((e_rot, e_pos))

    if not jacobians:
        return e, None

    Jr_inv = right_jacobian_inv_SO3(e_rot)

    H_R_I = np.zeros((6, 3))
    H_R_I[0:3, :] = Jr_inv @ R_BtoI.T
    H_R_I[3:6, :] = -R_ItoV @ get_skew_matrix(p_BinI)

    H_p_I = np.zeros((6, 3))
    H_p_I[3:6, :] = np.eye(3)

    H_R_c = np.zeros((6, 3))
    H_R_c[0:3, :] = Jr_inv

    H_p_c = np.zeros((6, 3))
    H_p_c[3:6, :] = R_ItoV

    return e, (H_R_I, H_p_I, H_R_c, H_p_c, E, Jr_inv)


def imu_residual(
    preint: PreintegratedImu,
    R_i: np.ndarray, v_i: np.ndarray, p_i: np.ndarray, b_i: np.ndarray,
    R_j: np.ndarray, v_j: np.ndarray, p_j: np.ndarray, b_j: np.ndarray,
    grav: np.ndarray,
    jacobians: bool = False,
):
    """
    15-dim preintegration residual ordered [r_R, r_bg, r_v, r_ba, r_p].

    Returns e (15,) and, if requested, the list of Jacobians w.r.t.
    [R_i, v_i, p_i, b_i, R_j, v_j, p_j, b_j, g].
    """
    dt = preint.dt
    dbg = b_i[0:3] - preint.bg_lin
    dba = b_i[3:6] - preint.ba_lin

    # First-order bias correction of the deltas
    dR_corr = preint.delta_R @ exp_so3(preint.J_R_bg @ dbg)
    dv_corr = preint.delta_v + preint.J_v_bg @ dbg + preint.J_v_ba @ dba
    dp_corr = preint.delta_p + preint.J_p_bg @ dbg + preint.J_p_ba @ dba

    E = dR_corr.T @ R_i.T @ R_j
    r_R = log_so3(E)

    v_raw = R_i.T @ (v_j - v_i + grav * dt)
    p_raw = R_i.T @ (p_j - p_i - v_i * dt + 0.5 * grav * dt**2)
    r_v = v_raw - dv_corr
    r_p = p_raw - dp_corr
    r_bg = b_j[0:3] - b_i[0:3]
    r_ba = b_j[3:6] - b_i[3:6]

    e = np.concatenate((r_R, r_bg, r_v, r_ba, r_p))
    if not jacobians:
        return e, None

    Jr_inv = right_jacobian_inv_SO3(r_R)
    R_iT = R_i.T
    I3 = np.eye(3)

    H_R_i = np.zeros((15, 3))
    H_R_i[0:3, :] = -Jr_inv @ R_j.T @ R_i
    H_R_i[6:9, :] = get_skew_matrix(v_raw)
    H_R_i[12:15, :] = get_skew_matrix(p_raw)

    H_v_i = np.zeros((15, 3))
    H_v_i[6:9, :] = -R_iT
    H_v_i[12:15, :] = -R_iT * dt

    H_p_i = np.zeros((15, 3))
    H_p_i[12:15, :] = -R_iT

    H_b_i = np.zeros((15, 6))
    H_b_i[0:3, 0:3] = -Jr_inv @ E.T @ right_jacobian_SO3(preint.J_R_bg @ dbg) @ preint.J_R_bg
    H_b_i[3:6, 0:3] = -I3
    H_b_i[6:9, 0:3] = -preint.J_v_bg
    H_b_i[6:9, 3:6] = -preint.J_v_ba
    H_b_i[9:12, 3:6] = -I3
    H_b_i[12:15, 0:3] = -preint.J_p_bg
    H_b_i[12:15, 3:6] = -preint.J_p_ba

    H_R_j = np.zeros((15, 3))
    H_R_j[0:3, :] = Jr_inv

    H_v_j = np.zeros((15, 3))
    H_v_j[6:9, :] = R_iT

    H_p_j = np.zeros((15, 3))
    H_p_j[12:15, :] = R_iT

    H_b_j = np.zeros((15, 6))
    H_b_j[3:6, 0:3] = I3
    H_b_j[9:12, 3:6] = I3

    H_g = np.zeros((15, 3))
    H_g[6:9, :] = R_iT * dt
    H_g[12:15, :] = 0.5 * R_iT * dt**2

    return e, [H_R_i, H_v_i, H_p_i, H_b_i, H_R_j, H_v_j, H_p_j, H_b_j, H_g]


class ViconFactorBuilders:
    """Creates the factors of the vicon/IMU calibration graph."""

    def __init__(
        self,
        interpolator: Interpolator,
        toff_prior_sigma: float = TIME_OFFSET_PRIOR_SIGMA,
        grav_mag_sigma: float = GRAVITY_MAGNITUDE_SIGMA,
    ):
        self.interpolator = interpolator
        self.toff_prior_sigma = toff_prior_sigma
        self.grav_mag_sigma = grav_mag_sigma

    # ------------- vicon pose factors -------------

    def make_pose_factor(self, index: int, pose: InterpolatedPose) -> gtsam.CustomFactor:
        """Vicon pose measurement on state `index` and both extrinsic variables."""
        noise = gtsam.noiseModel.Gaussian.Covariance(pose.cov)
        keys = [Keys.rot(index), Keys.pos(index), Keys.CALIB_ROT, Keys.CALIB_POS]
        R_meas = np.asarray(pose.R_BtoV, float)
        p_meas = np.asarray(pose.p_BinV, float)

        def error_fn(this: gtsam.CustomFactor, values: gtsam.Values, jacobians=None):
            e, H = pose_residual(
                values.atRot3(keys[0]).matrix(),
                np.asarray(values.atVector(keys[1]), float),
                values.atRot3(keys[2]).matrix(),
                np.asarray(values.atVector(keys[3]), float),
                R_meas, p_meas,
                jacobians=jacobians is not None,
            )
            if jacobians is not None:
                jacobians[0] = H[0]
                jacobians[1] = H[1]
                jacobians[2] = H[2]
                jacobians[3] = H[3]
            return e

        return gtsam.CustomFactor(noise, keys, error_fn)

    def make_pose_toff_factor(
        self,
        index: int,
        timestamp: float,
        pose: InterpolatedPose,
    ) -> gtsam.CustomFactor:
        """
        Vicon pose measurement that re-queries the interpolator at
        timestamp + toff, so the time offset is estimated jointly.

        `pose` is the build-time query; its covariance defines the noise model
        and it is reused if the re-query falls outside the vicon data.
        """
        noise = gtsam.noiseModel.Gaussian.Covariance(pose.cov)
        keys = [Keys.rot(index), Keys.pos(index), Keys.CALIB_ROT, Keys.CALIB_POS, Keys.TOFF]
        interpolator = self.interpolator

        def error_fn(this: gtsam.CustomFactor, values: gtsam.Values, jacobians=None):
            toff = float(np.asarray(values.atVector(keys[4])).reshape(-1)[0])
            meas = interpolator.get_pose_with_derivative(timestamp + toff)
            if meas is None:
                logger.debug(f"no vicon pose at {timestamp + toff:.9f}, using build-time pose")
                meas = pose
                omega_B, vel_V = np.zeros(3), np.zeros(3)
            else:
                omega_B, vel_V = meas.omega_B, meas.vel_V

            e, H = pose_residual(
                values.atRot3(keys[0]).matrix(),
                np.asarray(values.atVector(keys[1]), float),
                values.atRot3(keys[2]).matrix(),
                np.asarray(values.atVector(keys[3]), float),
                np.asarray(meas.R_BtoV, float),
                np.asarray(meas.p_BinV, float),
                jacobians=jacobians is not None,
            )
            if jacobians is not None:
                E, Jr_inv = H[4], H[5]
                # R_meas(toff + δ) = R_meas Exp(ω δ), p_meas(toff + δ) = p_meas + v δ
                H_toff = np.zeros((6, 1))
                H_toff[0:3, 0] = -Jr_inv @ E.T @ omega_B
                H_toff[3:6, 0] = -vel_V
                jacobians[0] = H[0]
                jacobians[1] = H[1]
                jacobians[2] = H[2]
                jacobians[3] = H[3]
                jacobians[4] = H_toff
            return e

        return gtsam.CustomFactor(noise, keys, error_fn)

    # ------------- inertial factor -------------

    def make_imu_factor(self, index_i: int, index_j: int, preint: PreintegratedImu) -> gtsam.CustomFactor:
        """Preintegrated IMU factor between two consecutive states and gravity."""
        noise = gtsam.noiseModel.Gaussian.Covariance(preint.cov)
        keys = Keys.state(index_i) + Keys.state(index_j) + [Keys.GRAVITY]

        def error_fn(this: gtsam.CustomFactor, values: gtsam.Values, jacobians=None):
            e, H = imu_residual(
                preint,
                values.atRot3(keys[0]).matrix(),
                np.asarray(values.atVector(keys[1]), float),
                np.asarray(values.atVector(keys[2]), float),
                np.asarray(values.atVector(keys[3]), float),
                values.atRot3(keys[4]).matrix(),
                np.asarray(values.atVector(keys[5]), float),
                np.asarray(values.atVector(keys[6]), float),
                np.asarray(values.atVector(keys[7]), float),
                np.asarray(values.atVector(keys[8]), float),
                jacobians=jacobians is not None,
            )
            if jacobians is not None:
                for k, H_k in enumerate(H):
                    jacobians[k] = H_k
            return e

        return gtsam.CustomFactor(noise, keys, error_fn)

    # ------------- priors -------------

    def make_gravity_magnitude_prior(self, magnitude: float) -> gtsam.CustomFactor:
        """Constrain |g| to the given magnitude, leaving its direction free."""
        noise = gtsam.noiseModel.Isotropic.Sigma(1, self.grav_mag_sigma)
        keys = [Keys.GRAVITY]
        magnitude = float(magnitude)

        def error_fn(this: gtsam.CustomFactor, values: gtsam.Values, jacobians=None):
            g = np.asarray(values.atVector(keys[0]), float)
            norm = np.linalg.norm(g)
            if jacobians is not None:
                # The direction is undefined at g = 0
                direction = g / norm if norm > 0.0 else np.zeros(3)
                jacobians[0] = direction.reshape(1, 3)
            return np.array([norm - magnitude])

        return gtsam.CustomFactor(noise, keys, error_fn)

    def make_time_offset_prior(self, toff: float) -> gtsam.PriorFactorVector:
        """Loose prior keeping the time offset anchored at its current estimate."""
        noise = gtsam.noiseModel.Isotropic.Sigma(1, self.toff_prior_sigma)
        return gtsam.PriorFactorVector(Keys.TOFF, np.array([float(toff)]), noise)
