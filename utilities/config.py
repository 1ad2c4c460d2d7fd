"""
Configuration for the Vicon/IMU graph calibration.

The configuration is read once (YAML) into an immutable value that is
passed into the solver's constructor; nothing reads it globally.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

import numpy as np

from logging_config import get_logger
from utilities.utils import load_yaml

logger = get_logger(__name__)


class ConfigError(ValueError):
    """Raised when a configuration value is missing its expected shape or range."""


def _vector(raw: Any, size: int, name: str) -> tuple:
    arr = np.asarray(raw, dtype=float).reshape(-1)
    if arr.size != size:
        raise ConfigError(f"{name} must have {size} elements, got {arr.size}")
    if not np.all(np.isfinite(arr)):
        raise ConfigError(f"{name} must be finite, got {arr}")
    return tuple(float(x) for x in arr)


@dataclass(frozen=True)
class ImuNoiseParams:
    """Continuous-time IMU noise densities (Kalibr naming)."""
    gyroscope_noise_density: float = 1.6968e-04      # rad/s/sqrt(Hz)
    accelerometer_noise_density: float = 2.0000e-3   # m/s^2/sqrt(Hz)
    gyroscope_random_walk: float = 1.9393e-05        # rad/s^2/sqrt(Hz)
    accelerometer_random_walk: float = 3.0000e-03    # m/s^3/sqrt(Hz)


@dataclass(frozen=True)
class ViconGraphConfig:
    """
    Immutable solver configuration.

    Attributes:
        grav_inV                   : initial gravity in the vicon frame
        R_BtoI                     : initial rotation vicon body -> IMU (row-major 3x3)
        p_BinI                     : initial position of the body origin in the IMU frame
        toff_imu_to_vicon          : initial time offset, t_vicon = t_imu + toff
        enforce_grav_mag           : constrain |g| to |grav_inV|
        estimate_toff_vicon_to_imu : jointly estimate the time offset
        num_loop_relin             : extra relinearization rounds (0 => one pass)
        interp_check_window        : lookahead/lookbehind used to validate vicon interpolation [s]
        vicon_max_gap              : largest gap between vicon samples that is still interpolated [s]
        sigma_vicon_rot            : vicon orientation noise [rad]
        sigma_vicon_pos            : vicon position noise [m]
        imu_noise                  : IMU noise densities for preintegration
    """
    grav_inV: tuple = (0.0, 0.0, 9.8)
    R_BtoI: tuple = (1.0, 0.0, 0.0, 0.0, 1.0, 0.0, 0.0, 0.0, 1.0)
    p_BinI: tuple = (0.0, 0.0, 0.0)
    toff_imu_to_vicon: float = 0.0
    enforce_grav_mag: bool = False
    estimate_toff_vicon_to_imu: bool = False
    num_loop_relin: int = 0
    interp_check_window: float = 1.0
    vicon_max_gap: float = 0.1
    sigma_vicon_rot: float = 1e-3
    sigma_vicon_pos: float = 1e-3
    imu_noise: ImuNoiseParams = field(default_factory=ImuNoiseParams)

    def __post_init__(self):
        object.__setattr__(self, "grav_inV", _vector(self.grav_inV, 3, "grav_inV"))
        object.__setattr__(self, "R_BtoI", _vector(self.R_BtoI, 9, "R_BtoI"))
        object.__setattr__(self, "p_BinI", _vector(self.p_BinI, 3, "p_BinI"))

        if self.num_loop_relin < 0:
            raise ConfigError(f"num_loop_relin must be >= 0, got {self.num_loop_relin}")
        if self.interp_check_window < 0.0:
            raise ConfigError(f"interp_check_window must be >= 0, got {self.interp_check_window}")
        if self.vicon_max_gap <= 0.0:
            raise ConfigError(f"vicon_max_gap must be > 0, got {self.vicon_max_gap}")
        if self.sigma_vicon_rot <= 0.0 or self.sigma_vicon_pos <= 0.0:
            raise ConfigError("vicon sigmas must be > 0")

        if self.enforce_grav_mag and np.linalg.norm(self.grav_inV) <= 0.0:
            raise ConfigError("enforce_grav_mag needs a non-zero grav_inV")

        R = np.array(self.R_BtoI).reshape(3, 3)
        if not np.allclose(R @ R.T, np.eye(3), atol=1e-6) or np.linalg.det(R) <= 0.0:
            raise ConfigError(f"R_BtoI is not a rotation matrix:\n{R}")

    # ------------- convenience accessors -------------

    @property
    def grav_inV_vec(self) -> np.ndarray:
        return np.array(self.grav_inV, float)

    @property
    def R_BtoI_mat(self) -> np.ndarray:
        return np.array(self.R_BtoI, float).reshape(3, 3)

    @property
    def p_BinI_vec(self) -> np.ndarray:
        return np.array(self.p_BinI, float)

    # ------------- construction -------------

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "ViconGraphConfig":
        """Build a config from a (possibly partial) dictionary, using defaults for missing keys."""
        defaults = cls()
        imu_raw = raw.get("imu_noise", {}) or {}
        imu_defaults = ImuNoiseParams()
        imu_noise = ImuNoiseParams(
            gyroscope_noise_density=float(imu_raw.get(
                "gyroscope_noise_density", imu_defaults.gyroscope_noise_density)),
            accelerometer_noise_density=float(imu_raw.get(
                "accelerometer_noise_density", imu_defaults.accelerometer_noise_density)),
            gyroscope_random_walk=float(imu_raw.get(
                "gyroscope_random_walk", imu_defaults.gyroscope_random_walk)),
            accelerometer_random_walk=float(imu_raw.get(
                "accelerometer_random_walk", imu_defaults.accelerometer_random_walk)),
        )

        return cls(
            grav_inV=raw.get("grav_inV", defaults.grav_inV),
            R_BtoI=raw.get("R_BtoI", defaults.R_BtoI),
            p_BinI=raw.get("p_BinI", defaults.p_BinI),
            toff_imu_to_vicon=float(raw.get("toff_imu_to_vicon", defaults.toff_imu_to_vicon)),
            enforce_grav_mag=bool(raw.get("enforce_grav_mag", defaults.enforce_grav_mag)),
            estimate_toff_vicon_to_imu=bool(raw.get(
                "estimate_toff_vicon_to_imu", defaults.estimate_toff_vicon_to_imu)),
            num_loop_relin=int(raw.get("num_loop_relin", defaults.num_loop_relin)),
            interp_check_window=float(raw.get("interp_check_window", defaults.interp_check_window)),
            vicon_max_gap=float(raw.get("vicon_max_gap", defaults.vicon_max_gap)),
            sigma_vicon_rot=float(raw.get("sigma_vicon_rot", defaults.sigma_vicon_rot)),
            sigma_vicon_pos=float(raw.get("sigma_vicon_pos", defaults.sigma_vicon_pos)),
            imu_noise=imu_noise,
        )

    @classmethod
    def from_yaml(cls, path: Optional[str]) -> "ViconGraphConfig":
        """Load the config from a YAML file; None gives the defaults."""
        if path is None:
            return cls()
        raw = load_yaml(path)
        config = cls.from_dict(raw)
        logger.debug(f"Loaded configuration from {path}: {config}")
        return config

    def log_summary(self) -> None:
        logger.info(f"init_grav_inV: {self.grav_inV_vec}")
        logger.info(f"init_R_BtoI:\n{self.R_BtoI_mat}")
        logger.info(f"init_p_BinI: {self.p_BinI_vec}")
        logger.info(f"init_toff_imu_to_vicon: {self.toff_imu_to_vicon}")
        logger.info(f"enforce_grav_mag: {int(self.enforce_grav_mag)}")
        logger.info(f"estimate_toff_vicon_to_imu: {int(self.estimate_toff_vicon_to_imu)}")
        logger.info(f"num_loop_relin: {self.num_loop_relin}")
