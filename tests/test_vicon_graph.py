#!/usr/bin/env python3
"""
End-to-end tests of the relinearization loop on synthetic vicon/IMU data.
"""

import threading

import numpy as np
import pytest

from estimation.errors import EmptyTimestampsError, ViconGraphError
from estimation.events import PruneReason, RecordingObserver
from estimation.solver import SolverAdapter
from utilities.so3 import exp_so3, log_so3

from conftest import StopAfter, config_for, make_dataset, make_solver


def rotation_error(R_a, R_b) -> float:
    return float(np.linalg.norm(log_so3(R_a.matrix().T @ R_b.matrix())))


def test_identity_extrinsics_recovered(identity_dataset):
    print("=" * 70)
    print("Noiseless data, identity extrinsics, five timestamps")
    print("=" * 70)
    config = config_for(identity_dataset)
    solver = make_solver(identity_dataset, config)

    result = solver.build_and_solve()
    calib = result.calibration

    print(f"  final error: {result.final_error:.3e}")
    print(f"  R_BtoI error: {rotation_error(calib.R_BtoI, identity_dataset.calibration.R_BtoI):.3e}")
    print(f"  p_BinI: {calib.p_BinI}")

    assert len(result) == 5
    assert rotation_error(calib.R_BtoI, identity_dataset.calibration.R_BtoI) < 1e-6
    assert np.allclose(calib.p_BinI, np.zeros(3), atol=1e-6)
    assert abs(calib.gravity_norm - 9.8) < 1e-6
    assert calib.toff is None


def test_states_match_truth(identity_dataset):
    config = config_for(identity_dataset)
    result = make_solver(identity_dataset, config).build_and_solve()

    for timestamp, state in zip(result.timestamps, result.states):
        truth = identity_dataset.truth[timestamp]
        assert rotation_error(state.ori, truth.ori) < 1e-6
        assert np.allclose(state.pos, truth.pos, atol=1e-6)
        # Velocities start at zero and are recovered from the IMU factors
        assert np.allclose(state.vel, truth.vel, atol=1e-5)


def test_general_extrinsics_recovered_from_offset_initial_guess():
    dataset = make_dataset(camera_stride=20)
    truth = dataset.calibration
    # Start a few degrees and centimetres off, with gravity tilted
    R_init = truth.R_BtoI.matrix() @ exp_so3(np.array([0.05, -0.03, 0.04]))
    config = config_for(dataset, R_BtoI=tuple(R_init.reshape(-1)),
                        p_BinI=tuple(truth.p_BinI + 0.02),
                        grav_inV=(0.0, 0.1, 9.8), num_loop_relin=1)
    result = make_solver(dataset, config).build_and_solve()

    assert rotation_error(result.calibration.R_BtoI, truth.R_BtoI) < 1e-4
    assert np.allclose(result.calibration.p_BinI, truth.p_BinI, atol=1e-4)
    assert np.allclose(result.calibration.grav_inV, truth.grav_inV, atol=1e-4)


def test_timestamp_before_imu_is_pruned(identity_dataset):
    print("=" * 70)
    print("One camera timestamp before the first IMU sample")
    print("=" * 70)
    timestamps = [-0.5] + list(identity_dataset.camera_timestamps)
    observer = RecordingObserver()
    solver = make_solver(identity_dataset, config_for(identity_dataset),
                         timestamps=timestamps, observer=observer)

    result = solver.build_and_solve()

    assert len(result) == len(timestamps) - 1
    assert -0.5 not in result.timestamps
    assert (-0.5, PruneReason.NO_BOUNDING_IMU) in observer.pruned


def test_time_offset_recovered():
    print("=" * 70)
    print("Vicon clock 10 ms ahead of the IMU")
    print("=" * 70)
    dataset = make_dataset(toff=0.01)
    config = config_for(dataset, estimate_toff_vicon_to_imu=True, num_loop_relin=1)
    observer = RecordingObserver()

    result = make_solver(dataset, config, observer=observer).build_and_solve()

    for stats in observer.rounds:
        print(f"  round {stats.round_index}: toff = {stats.toff:.6f}, error = {stats.final_error:.3e}")
    assert result.calibration.toff is not None
    assert abs(result.calibration.toff - 0.01) < 1e-3


def test_time_offset_with_gravity_magnitude_constraint():
    dataset = make_dataset(toff=0.01, grav_inV=np.array([0.0, 0.0, 9.8]))
    config = config_for(dataset, estimate_toff_vicon_to_imu=True, enforce_grav_mag=True,
                        grav_inV=(0.0, 9.8 * np.sin(0.02), 9.8 * np.cos(0.02)),
                        num_loop_relin=1)
    result = make_solver(dataset, config).build_and_solve()

    assert abs(result.calibration.gravity_norm - 9.8) < 1e-5
    assert abs(result.calibration.toff - 0.01) < 1e-3


def test_deterministic(identity_dataset):
    config = config_for(identity_dataset, num_loop_relin=1)
    first = make_solver(identity_dataset, config).build_and_solve()
    second = make_solver(identity_dataset, config).build_and_solve()

    assert first.timestamps == second.timestamps
    assert first.final_error == second.final_error
    assert np.array_equal(first.calibration.R_BtoI.matrix(), second.calibration.R_BtoI.matrix())
    assert np.array_equal(first.calibration.p_BinI, second.calibration.p_BinI)
    for a, b in zip(first.states, second.states):
        assert np.array_equal(a.as_row(), b.as_row())


def test_index_map_is_monotonic_and_stable():
    dataset = make_dataset(camera_stride=20)
    # Unsorted input, plus one timestamp too close to the end of the vicon data
    late = float(dataset.imu.t[-1] - 0.5)
    timestamps = list(reversed(dataset.camera_timestamps)) + [late]
    observer = RecordingObserver()
    solver = make_solver(dataset, config_for(dataset), timestamps=timestamps, observer=observer)

    result = solver.build_and_solve()

    ordered = sorted(solver.index_map)
    indices = [solver.index_map[t] for t in ordered]
    assert indices == sorted(indices)
    assert len(set(indices)) == len(indices)

    assert (late, PruneReason.NO_VICON_POSE) in observer.pruned
    assert late not in result.timestamps
    # Survivors keep the index they were given before pruning
    assert all(solver.index_map[t] == ordered.index(t) for t in result.timestamps)
    assert result.timestamps == sorted(result.timestamps)


def test_pruning_leaves_only_usable_timestamps():
    dataset = make_dataset(camera_stride=10, camera_margin=0.0)
    observer = RecordingObserver()
    solver = make_solver(dataset, config_for(dataset), observer=observer)

    result = solver.build_and_solve()

    window = solver.config.interp_check_window
    for timestamp in result.timestamps:
        assert solver.propagator.has_bounding_imu(timestamp)
        assert solver.interpolator.get_pose(timestamp - window) is not None
        assert solver.interpolator.get_pose(timestamp + window) is not None

    # Everything that was dropped was reported
    dropped = set(dataset.camera_timestamps) - set(result.timestamps)
    assert dropped == {t for t, _ in observer.pruned}
    assert len(observer.pruned) == len(set(observer.pruned))


def test_extra_round_keeps_noiseless_solution(identity_dataset):
    config_once = config_for(identity_dataset)
    config_twice = config_for(identity_dataset, num_loop_relin=1)
    once = make_solver(identity_dataset, config_once).build_and_solve()
    twice = make_solver(identity_dataset, config_twice).build_and_solve()

    assert rotation_error(once.calibration.R_BtoI, twice.calibration.R_BtoI) < 1e-7
    assert np.allclose(once.calibration.p_BinI, twice.calibration.p_BinI, atol=1e-7)
    for a, b in zip(once.states, twice.states):
        assert np.allclose(a.pos, b.pos, atol=1e-7)
        assert np.allclose(a.vel, b.vel, atol=1e-6)


def test_relinearization_does_not_increase_cost(biased_dataset):
    config = config_for(biased_dataset, num_loop_relin=2)
    result = make_solver(biased_dataset, config).build_and_solve()

    print(f"  round errors: {result.round_errors}")
    assert len(result.round_errors) == 3
    for before, after in zip(result.round_errors, result.round_errors[1:]):
        assert after <= before + 1e-6


def test_biases_recovered(biased_dataset):
    config = config_for(biased_dataset, num_loop_relin=2)
    result = make_solver(biased_dataset, config).build_and_solve()

    mid = result.states[len(result) // 2]
    assert np.allclose(mid.gyro_bias, [0.002, -0.001, 0.0015], atol=1e-4)
    assert np.allclose(mid.accel_bias, [0.02, -0.01, 0.015], atol=1e-3)


def test_round_count_and_stats(identity_dataset):
    config = config_for(identity_dataset, num_loop_relin=2)
    observer = RecordingObserver()
    result = make_solver(identity_dataset, config, observer=observer).build_and_solve()

    assert [s.round_index for s in observer.rounds] == [0, 1, 2]
    assert result.iterations == [s.iterations for s in observer.rounds]
    assert result.final_error == observer.rounds[-1].final_error
    for stats in observer.rounds:
        assert stats.num_states == 5
        # 5 pose factors + 4 IMU factors
        assert stats.num_factors == 9
        assert stats.build_time >= 0.0 and stats.optimize_time >= 0.0


def test_empty_timestamps_fail_fast(identity_dataset):
    solver = make_solver(identity_dataset, config_for(identity_dataset), timestamps=[])
    with pytest.raises(EmptyTimestampsError):
        solver.build_and_solve()


def test_all_timestamps_outside_imu_fail(identity_dataset):
    solver = make_solver(identity_dataset, config_for(identity_dataset), timestamps=[-2.0, -1.0, 100.0])
    with pytest.raises(EmptyTimestampsError):
        solver.build_and_solve()


def test_negative_round_count_rejected(identity_dataset):
    solver = make_solver(identity_dataset, config_for(identity_dataset))
    with pytest.raises(ViconGraphError):
        solver.run(-1)


def test_stop_event_set_before_run(identity_dataset):
    stop = threading.Event()
    stop.set()
    solver = make_solver(identity_dataset, config_for(identity_dataset), stop_event=stop)

    # Nothing gets built, so there is nothing to solve
    with pytest.raises(EmptyTimestampsError):
        solver.build_and_solve()
    assert solver.last_graph().stopped


def test_stop_mid_run_ends_after_partial_round(identity_dataset):
    config = config_for(identity_dataset, num_loop_relin=2)
    solver = make_solver(identity_dataset, config, stop_event=StopAfter(3))

    result = solver.build_and_solve()

    assert solver.last_graph().stopped
    assert result.timestamps == identity_dataset.camera_timestamps[:3]
    assert len(result.round_errors) == 1


def test_duplicate_timestamps_share_one_state(identity_dataset):
    timestamps = identity_dataset.camera_timestamps
    repeated = timestamps + timestamps[:1] + [timestamps[2]]
    solver = make_solver(identity_dataset, config_for(identity_dataset), timestamps=repeated)

    result = solver.build_and_solve()

    assert result.timestamps == timestamps
    assert list(solver.index_map.values()) == list(range(len(timestamps)))
    assert solver.last_graph().graph.size() == 2 * len(timestamps) - 1


def test_resolve_from_own_output_is_idempotent():
    print("=" * 70)
    print("Re-optimizing from a converged solution")
    print("=" * 70)
    dataset = make_dataset(
        toff=0.01,
        gyro_noise_std=1e-3,
        accel_noise_std=1e-2,
        vicon_pos_noise_std=1e-3,
        seed=4,
    )
    config = config_for(dataset, estimate_toff_vicon_to_imu=True)
    solver = make_solver(dataset, config)
    solver.build_and_solve()

    build = solver.last_graph()
    adapter = SolverAdapter()
    first = adapter.optimize(build.graph, build.values)
    second = adapter.optimize(build.graph, first.values)

    print(f"  first: {first.final_error:.12g}  second: {second.final_error:.12g}")
    assert first.final_error > 0.0
    assert abs(second.final_error - first.final_error) <= 1e-6 * max(1.0, first.final_error)
