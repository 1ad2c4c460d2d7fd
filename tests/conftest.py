"""
Shared synthetic problems for the calibration tests.

Datasets come from data.generator, whose truth is integrated with the same
scheme as the propagator, so a noiseless problem has the truth as an exact
zero-cost solution.
"""

import threading

import numpy as np
import pytest

from data.generator import SyntheticConfig, ViconImuGenerator
from estimation.events import RecordingObserver
from estimation.interpolator import Interpolator
from estimation.propagator import Propagator
from estimation.vicon_graph import ViconGraphSolver
from utilities.config import ViconGraphConfig


class StopAfter(threading.Event):
    """Event that reports set after a number of checks."""

    def __init__(self, checks):
        super().__init__()
        self.remaining = checks

    def is_set(self):
        self.remaining -= 1
        return self.remaining < 0


def make_dataset(**overrides):
    return ViconImuGenerator(SyntheticConfig(**overrides)).run()


def config_for(dataset, **overrides) -> ViconGraphConfig:
    """Config whose initial calibration equals the dataset truth."""
    calib = dataset.calibration
    raw = dict(
        grav_inV=tuple(calib.grav_inV),
        R_BtoI=tuple(calib.R_BtoI.matrix().reshape(-1)),
        p_BinI=tuple(calib.p_BinI),
    )
    raw.update(overrides)
    return ViconGraphConfig(**raw)


def make_solver(dataset, config, timestamps=None, observer=None, stop_event=None):
    propagator = Propagator(dataset.imu, config.imu_noise)
    interpolator = Interpolator(
        dataset.vicon,
        sigma_rot=config.sigma_vicon_rot,
        sigma_pos=config.sigma_vicon_pos,
        max_gap=config.vicon_max_gap,
    )
    if timestamps is None:
        timestamps = dataset.camera_timestamps
    if observer is None:
        observer = RecordingObserver()
    return ViconGraphSolver(config, propagator, interpolator, timestamps,
                            observer=observer, stop_event=stop_event)


@pytest.fixture
def identity_dataset():
    """Five camera timestamps, identity extrinsics, |g| = 9.8, no noise, no biases."""
    return make_dataset(
        R_BtoI=np.eye(3),
        p_BinI=np.zeros(3),
        grav_inV=np.array([0.0, 0.0, 9.8]),
        camera_stride=50,
        camera_margin=2.0,
    )


@pytest.fixture
def biased_dataset():
    return make_dataset(
        gyro_bias=np.array([0.002, -0.001, 0.0015]),
        accel_bias=np.array([0.02, -0.01, 0.015]),
        camera_stride=20,
    )
