"""
Builds the vicon/IMU factor graph for one optimization round.

Given the current best estimate, the builder
  1. seeds the calibration variables (config on the first round),
  2. adds the gravity-magnitude and time-offset priors when enabled,
  3. filters the camera timestamps down to those with a usable vicon pose,
  4. adds one vicon pose factor per retained timestamp and one IMU
     preintegration factor per consecutive pair of retained timestamps.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import gtsam

from data.classes import InterpolatedPose
from estimation.errors import PropagatorContractError
from estimation.events import BuildObserver, PruneReason
from estimation.factors import Keys, ViconFactorBuilders
from estimation.interpolator import Interpolator
from estimation.propagator import Propagator
from logging_config import get_logger
from utilities.config import ViconGraphConfig
from utilities.so3 import rot3_from_matrix
from utilities.states import CalibrationState, GraphEstimate, NavigationState
from utilities.utils import is_invertible_covariance

logger = get_logger(__name__)


@dataclass
class BuildResult:
    graph: gtsam.NonlinearFactorGraph
    values: gtsam.Values
    timestamps: List[float]          # retained timestamps, ascending
    build_time: float
    stopped: bool = False


def initial_calibration(config: ViconGraphConfig) -> CalibrationState:
    """Calibration seeded from the configuration."""
    return CalibrationState(
        R_BtoI=rot3_from_matrix(config.R_BtoI_mat),
        p_BinI=config.p_BinI_vec,
        grav_inV=config.grav_inV_vec,
        toff=config.toff_imu_to_vicon if config.estimate_toff_vicon_to_imu else None,
    )


def insert_calibration(values: gtsam.Values, calib: CalibrationState) -> None:
    values.insert(Keys.CALIB_ROT, calib.R_BtoI)
    values.insert(Keys.CALIB_POS, np.asarray(calib.p_BinI, float).reshape(3))
    values.insert(Keys.GRAVITY, np.asarray(calib.grav_inV, float).reshape(3))
    if calib.toff is not None:
        values.insert(Keys.TOFF, np.array([float(calib.toff)]))


def insert_state(values: gtsam.Values, index: int, state: NavigationState) -> None:
    values.insert(Keys.rot(index), state.ori)
    values.insert(Keys.vel(index), np.asarray(state.vel, float).reshape(3))
    values.insert(Keys.pos(index), np.asarray(state.pos, float).reshape(3))
    values.insert(Keys.bias(index), state.bias)


def state_from_pose(pose: InterpolatedPose, calib: CalibrationState) -> NavigationState:
    """
    Initial IMU state from a vicon body pose and the extrinsic estimate.

        R_ItoV = R_BtoV * R_BtoI^T
        p_IinV = p_BinV - R_ItoV * p_BinI
    """
    R_ItoV = pose.R_BtoV @ calib.R_BtoI.matrix().T
    p_IinV = pose.p_BinV - R_ItoV @ np.asarray(calib.p_BinI, float)
    return NavigationState.zero_motion(rot3_from_matrix(R_ItoV), p_IinV)


class ViconGraphBuilder:
    """
    Assembles factors and initial values for one build/solve round.

    The builder does not own the timestamps or the estimate: both are passed
    in on each call and the retained timestamps are returned.
    """

    def __init__(
        self,
        config: ViconGraphConfig,
        propagator: Propagator,
        interpolator: Interpolator,
        index_map: Dict[float, int],
        observer: Optional[BuildObserver] = None,
        stop_event: Optional[threading.Event] = None,
    ):
        self.config = config
        self.propagator = propagator
        self.interpolator = interpolator
        self.index_map = index_map
        self.observer = observer if observer is not None else BuildObserver()
        self.stop_event = stop_event
        self.factors = ViconFactorBuilders(interpolator)

    # ------------- helpers -------------

    def _stop_requested(self) -> bool:
        return self.stop_event is not None and self.stop_event.is_set()

    def _corrected_time(self, timestamp: float, calib: CalibrationState) -> float:
        if self.config.estimate_toff_vicon_to_imu and calib.toff is not None:
            return timestamp + calib.toff
        return timestamp + self.config.toff_imu_to_vicon

    def query_pose(self, timestamp: float, calib: CalibrationState) -> Tuple[Optional[InterpolatedPose], Optional[PruneReason], str]:
        """
        Vicon pose used for a camera timestamp, or the reason it is unusable.

        The pose must also exist one check window before and after, which
        rejects timestamps near vicon dropouts and the ends of the recording.
        """
        t_corr = self._corrected_time(timestamp, calib)
        window = self.config.interp_check_window

        before = self.interpolator.get_pose(t_corr - window)
        after = self.interpolator.get_pose(t_corr + window)
        pose = self.interpolator.get_pose(t_corr)
        if before is None or after is None or pose is None:
            return None, PruneReason.NO_VICON_POSE, ""

        if not is_invertible_covariance(pose.cov):
            detail = f"R.norm = {np.linalg.norm(pose.cov):.3f}"
            return None, PruneReason.BAD_VICON_COVARIANCE, detail

        return pose, None, ""

    def filter_timestamps(
        self,
        timestamps: Sequence[float],
        calib: CalibrationState,
    ) -> Tuple[List[Tuple[float, InterpolatedPose]], List[float], bool]:
        """
        First pass: the retained (timestamp, pose) pairs and the dropped timestamps.

        Stops early (third return value True) if the stop event is set.
        """
        retained: List[Tuple[float, InterpolatedPose]] = []
        dropped: List[float] = []
        for timestamp in sorted(timestamps):
            if self._stop_requested():
                logger.warning("[BUILD]: stop requested, graph is only partially built")
                return retained, dropped, True
            pose, reason, detail = self.query_pose(timestamp, calib)
            if pose is None:
                self.observer.timestamp_pruned(timestamp, reason, detail)
                dropped.append(timestamp)
                continue
            retained.append((timestamp, pose))
        return retained, dropped, False

    def preintegrate(self, t0: float, t1: float, state_i: NavigationState):
        """Preintegrate between two retained timestamps around the bias of the first state."""
        preint = self.propagator.propagate(t0, t1, state_i.gyro_bias, state_i.accel_bias)
        if preint.dt != (t1 - t0):
            raise PropagatorContractError(
                f"preintegration duration {preint.dt!r} != requested {t1 - t0!r} "
                f"between {t0:.9f} and {t1:.9f}")
        if not is_invertible_covariance(preint.cov):
            # No noise model can be built from it, so the run cannot go on
            self.observer.imu_covariance_invalid(t0, t1, float(np.linalg.norm(preint.cov)))
            raise PropagatorContractError(
                f"preintegration covariance between {t0:.9f} and {t1:.9f} is not invertible")
        return preint

    # ------------- main entry -------------

    def build(
        self,
        initialize_variables: bool,
        timestamps: Sequence[float],
        estimate: Optional[GraphEstimate],
        round_index: int = 0,
    ) -> BuildResult:
        """
        Build the graph and the initial values for one round.

        Args:
            initialize_variables: seed calibration and states from config and vicon
            timestamps: current camera timestamps
            estimate: previous round's estimate (ignored when initializing)
            round_index: relinearization round, only used for reporting

        Returns:
            BuildResult with the graph, values and the retained timestamps.
        """
        t_start = time.perf_counter()
        graph = gtsam.NonlinearFactorGraph()
        values = gtsam.Values()

        if initialize_variables or estimate is None:
            calib = initial_calibration(self.config)
            states: Dict[int, NavigationState] = {}
        else:
            calib = estimate.calibration
            states = dict(estimate.states)

        self.observer.build_started(
            round_index=round_index,
            toff=calib.toff,
            gravity_norm=calib.gravity_norm,
        )

        insert_calibration(values, calib)

        # Priors
        if self.config.estimate_toff_vicon_to_imu:
            graph.add(self.factors.make_time_offset_prior(calib.toff))
        if self.config.enforce_grav_mag:
            graph.add(self.factors.make_gravity_magnitude_prior(np.linalg.norm(self.config.grav_inV_vec)))

        # Pass 1: decide which timestamps survive
        retained, dropped, stopped = self.filter_timestamps(timestamps, calib)
        for timestamp in dropped:
            states.pop(self.index_map[timestamp], None)

        # Pass 2: build from the retained, immutable sequence
        kept_times: List[float] = []
        prev: Optional[Tuple[float, int]] = None
        for timestamp, pose in retained:
            index = self.index_map[timestamp]

            if index not in states:
                if not (initialize_variables or estimate is None):
                    logger.warning(f"    - no estimate for camera time {timestamp:.9f}, "
                                   f"initializing it from vicon")
                states[index] = state_from_pose(pose, calib)
            insert_state(values, index, states[index])

            if self.config.estimate_toff_vicon_to_imu:
                graph.add(self.factors.make_pose_toff_factor(index, timestamp, pose))
            else:
                graph.add(self.factors.make_pose_factor(index, pose))

            if prev is not None:
                t_prev, index_prev = prev
                preint = self.preintegrate(t_prev, timestamp, states[index_prev])
                graph.add(self.factors.make_imu_factor(index_prev, index, preint))

            kept_times.append(timestamp)
            prev = (timestamp, index)

        build_time = time.perf_counter() - t_start
        logger.debug(f"[BUILD]: {graph.size()} factors, {values.size()} values, "
                     f"{len(kept_times)} states in {build_time:.4f}s")

        return BuildResult(
            graph=graph,
            values=values,
            timestamps=kept_times,
            build_time=build_time,
            stopped=stopped,
        )
