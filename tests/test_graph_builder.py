#!/usr/bin/env python3
"""
Graph builder: pruning events, initial values, contract checks, stop signal.
"""

import numpy as np
import pytest

from estimation.errors import PropagatorContractError
from estimation.events import PruneReason, RecordingObserver
from estimation.factors import Keys
from estimation.graph_builder import ViconGraphBuilder, initial_calibration, state_from_pose
from estimation.interpolator import Interpolator
from estimation.propagator import Propagator
from utilities.states import GraphEstimate

from conftest import StopAfter, config_for, make_dataset


class NanCovInterpolator(Interpolator):
    """Returns a NaN covariance at one query time."""

    def __init__(self, vicon, bad_time, **kwargs):
        super().__init__(vicon, **kwargs)
        self.bad_time = bad_time

    def get_pose(self, timestamp):
        pose = super().get_pose(timestamp)
        if pose is not None and timestamp == self.bad_time:
            pose.cov = np.full((6, 6), np.nan)
        return pose


class ShortDtPropagator(Propagator):
    def propagate(self, t0, t1, gyro_bias, accel_bias):
        preint = super().propagate(t0, t1, gyro_bias, accel_bias)
        preint.dt = preint.dt * (1.0 - 1e-9)
        return preint


class NanCovPropagator(Propagator):
    def propagate(self, t0, t1, gyro_bias, accel_bias):
        preint = super().propagate(t0, t1, gyro_bias, accel_bias)
        preint.cov[0, 0] = np.nan
        return preint


def make_builder(dataset, config, interpolator=None, propagator=None, observer=None, stop_event=None):
    propagator = propagator if propagator is not None else Propagator(dataset.imu)
    interpolator = interpolator if interpolator is not None else Interpolator(dataset.vicon)
    timestamps = sorted(dataset.camera_timestamps)
    index_map = {t: i for i, t in enumerate(timestamps)}
    builder = ViconGraphBuilder(config, propagator, interpolator, index_map,
                                observer=observer, stop_event=stop_event)
    return builder, timestamps


@pytest.fixture
def dataset():
    return make_dataset(camera_stride=25)


def test_initial_build(dataset):
    config = config_for(dataset)
    builder, timestamps = make_builder(dataset, config)

    build = builder.build(True, timestamps, None)

    n = len(timestamps)
    assert build.timestamps == timestamps
    assert build.graph.size() == n + (n - 1)
    # 4 variables per state + R_BtoI, p_BinI, gravity
    assert build.values.size() == 4 * n + 3
    assert not build.stopped

    # States start at the vicon pose with zero velocity and biases
    for i, t in enumerate(timestamps):
        truth = dataset.truth[t]
        assert np.allclose(build.values.atRot3(Keys.rot(i)).matrix(), truth.ori.matrix(), atol=1e-9)
        assert np.allclose(build.values.atVector(Keys.pos(i)), truth.pos, atol=1e-9)
        assert np.allclose(build.values.atVector(Keys.vel(i)), 0.0)
        assert np.allclose(build.values.atVector(Keys.bias(i)), 0.0)


def test_priors_and_offset_variable(dataset):
    config = config_for(dataset, enforce_grav_mag=True, estimate_toff_vicon_to_imu=True)
    builder, timestamps = make_builder(dataset, config)

    build = builder.build(True, timestamps, None)

    n = len(timestamps)
    assert build.graph.size() == n + (n - 1) + 2
    assert build.values.exists(Keys.TOFF)
    assert build.values.atVector(Keys.TOFF)[0] == config.toff_imu_to_vicon


def test_truth_is_zero_cost(dataset):
    config = config_for(dataset)
    builder, timestamps = make_builder(dataset, config)
    calib = initial_calibration(config)
    estimate = GraphEstimate(
        calibration=calib,
        states={i: dataset.truth[t] for i, t in enumerate(timestamps)},
    )

    build = builder.build(False, timestamps, estimate)
    assert build.graph.error(build.values) < 1e-12


def test_bad_vicon_covariance_is_pruned(dataset):
    config = config_for(dataset)
    timestamps = sorted(dataset.camera_timestamps)
    bad = timestamps[2]
    interpolator = NanCovInterpolator(dataset.vicon, bad_time=bad)
    observer = RecordingObserver()
    builder, _ = make_builder(dataset, config, interpolator=interpolator, observer=observer)

    build = builder.build(True, timestamps, None)

    assert bad not in build.timestamps
    assert len(build.timestamps) == len(timestamps) - 1
    assert observer.pruned == [(bad, PruneReason.BAD_VICON_COVARIANCE)]
    assert not build.values.exists(Keys.rot(2))
    # The IMU factor bridges over the pruned state
    assert build.graph.size() == (len(timestamps) - 1) * 2 - 1


def test_later_round_prunes_unusable_timestamp(dataset):
    config = config_for(dataset)
    builder, timestamps = make_builder(dataset, config)
    first = builder.build(True, timestamps, None)

    states = {i: dataset.truth[t] for i, t in enumerate(timestamps)}
    estimate = GraphEstimate(calibration=initial_calibration(config), states=states)
    # Move the last timestamp out of the usable vicon window
    late = float(dataset.imu.t[-1] - 0.2)
    builder.index_map[late] = len(timestamps)
    build = builder.build(False, first.timestamps + [late], estimate)

    assert late not in build.timestamps
    assert build.timestamps == first.timestamps


def test_duration_mismatch_is_fatal(dataset):
    config = config_for(dataset)
    propagator = ShortDtPropagator(dataset.imu)
    builder, timestamps = make_builder(dataset, config, propagator=propagator)

    with pytest.raises(PropagatorContractError):
        builder.build(True, timestamps, None)


def test_invalid_imu_covariance_is_reported_and_fatal(dataset):
    config = config_for(dataset)
    observer = RecordingObserver()
    propagator = NanCovPropagator(dataset.imu)
    builder, timestamps = make_builder(dataset, config, propagator=propagator, observer=observer)

    with pytest.raises(PropagatorContractError):
        builder.build(True, timestamps, None)
    assert observer.imu_cov_violations == [(timestamps[0], timestamps[1])]


def test_stop_mid_build(dataset):
    config = config_for(dataset)
    builder, timestamps = make_builder(dataset, config, stop_event=StopAfter(3))

    build = builder.build(True, timestamps, None)

    assert build.stopped
    assert build.timestamps == timestamps[:3]
    assert build.graph.size() == 3 + 2


def test_state_from_pose_inverts_extrinsics(dataset):
    config = config_for(dataset)
    calib = initial_calibration(config)
    interpolator = Interpolator(dataset.vicon)
    t = dataset.camera_timestamps[0]

    state = state_from_pose(interpolator.get_pose(t), calib)
    truth = dataset.truth[t]
    assert np.allclose(state.ori.matrix(), truth.ori.matrix(), atol=1e-9)
    assert np.allclose(state.pos, truth.pos, atol=1e-9)
    assert np.allclose(state.vel, 0.0)
