"""
Batch vicon/IMU calibration with relinearization rounds.

Round 0 initializes every navigation state from vicon and the calibration
from the configuration. Each extra round rebuilds the graph around the
previous solution: the IMU preintegration is redone with the refined bias
estimates, since its first-order bias correction is only accurate close to
the bias it was integrated with.
"""

from __future__ import annotations

import threading
from typing import Dict, List, Optional, Sequence

import numpy as np
import gtsam

from estimation.errors import EmptyTimestampsError, ViconGraphError
from estimation.events import BuildObserver, LoggingObserver, PruneReason, RoundStats
from estimation.factors import Keys
from estimation.graph_builder import BuildResult, ViconGraphBuilder
from estimation.interpolator import Interpolator
from estimation.propagator import Propagator
from estimation.solver import SolveResult, SolverAdapter, SolverParams
from logging_config import get_logger
from utilities.config import ViconGraphConfig
from utilities.states import CalibrationState, GraphEstimate, GraphResult, NavigationState

logger = get_logger(__name__)


def read_calibration(values: gtsam.Values, estimate_toff: bool) -> CalibrationState:
    toff = None
    if estimate_toff:
        toff = float(np.asarray(values.atVector(Keys.TOFF)).reshape(-1)[0])
    return CalibrationState(
        R_BtoI=values.atRot3(Keys.CALIB_ROT),
        p_BinI=np.asarray(values.atVector(Keys.CALIB_POS), float).reshape(3),
        grav_inV=np.asarray(values.atVector(Keys.GRAVITY), float).reshape(3),
        toff=toff,
    )


def read_state(values: gtsam.Values, index: int) -> NavigationState:
    bias = np.asarray(values.atVector(Keys.bias(index)), float).reshape(6)
    return NavigationState(
        ori=values.atRot3(Keys.rot(index)),
        gyro_bias=bias[0:3].copy(),
        vel=np.asarray(values.atVector(Keys.vel(index)), float).reshape(3),
        accel_bias=bias[3:6].copy(),
        pos=np.asarray(values.atVector(Keys.pos(index)), float).reshape(3),
    )


class ViconGraphSolver:
    """
    Owns the camera timestamps and the across-round estimate.

    Usage:
        solver = ViconGraphSolver(config, propagator, interpolator, timestamps)
        result = solver.build_and_solve()
    """

    def __init__(
        self,
        config: ViconGraphConfig,
        propagator: Propagator,
        interpolator: Interpolator,
        timestamps: Sequence[float],
        observer: Optional[BuildObserver] = None,
        stop_event: Optional[threading.Event] = None,
        solver_params: SolverParams = SolverParams(),
    ):
        self.config = config
        self.propagator = propagator
        self.interpolator = interpolator
        self.timestamps: List[float] = sorted(set(float(t) for t in timestamps))
        if len(self.timestamps) != len(timestamps):
            logger.debug(f"dropped {len(timestamps) - len(self.timestamps)} duplicate camera timestamps")
        self.observer = observer if observer is not None else LoggingObserver()
        self.stop_event = stop_event
        self.solver = SolverAdapter(solver_params)

        self.index_map: Dict[float, int] = {}
        self.estimate: Optional[GraphEstimate] = None
        self.result: Optional[GraphResult] = None
        self._last_build: Optional[BuildResult] = None

    # ------------- setup -------------

    def prune_unbounded(self) -> None:
        """Drop camera timestamps outside the IMU data, failing if none remain."""
        if not self.timestamps:
            logger.error("[VICON-GRAPH]: Camera timestamp vector empty!!!!")
            logger.error("[VICON-GRAPH]: Make sure your camera topic is correct...")
            raise EmptyTimestampsError("camera timestamp vector is empty")

        logger.info("cleaning camera timestamps")
        kept = []
        for timestamp in self.timestamps:
            if self.propagator.has_bounding_imu(timestamp):
                kept.append(timestamp)
            else:
                self.observer.timestamp_pruned(timestamp, PruneReason.NO_BOUNDING_IMU)
        self.timestamps = kept

        if not self.timestamps:
            logger.error("[VICON-GRAPH]: All camera timestamps where out of the range of the IMU measurements.")
            logger.error("[VICON-GRAPH]: Make sure your camera and imu topics are correct...")
            raise EmptyTimestampsError("all camera timestamps are outside the IMU data")

    def build_index_map(self) -> Dict[float, int]:
        """Ascending timestamps get ascending state indices."""
        self.index_map = {timestamp: i for i, timestamp in enumerate(self.timestamps)}
        return self.index_map

    # ------------- one round -------------

    def _adopt(self, solve: SolveResult, timestamps: List[float]) -> GraphEstimate:
        values = solve.values
        calib = read_calibration(values, self.config.estimate_toff_vicon_to_imu)
        states = {}
        for timestamp in timestamps:
            index = self.index_map[timestamp]
            states[index] = read_state(values, index)
        return GraphEstimate(calibration=calib, states=states)

    def run_round(self, builder: ViconGraphBuilder, round_index: int) -> RoundStats:
        build = builder.build(
            initialize_variables=(round_index == 0),
            timestamps=self.timestamps,
            estimate=self.estimate,
            round_index=round_index,
        )
        self.timestamps = build.timestamps
        self._last_build = build
        if not self.timestamps:
            raise EmptyTimestampsError("no camera timestamp has a usable vicon pose")

        solve = self.solver.optimize(build.graph, build.values)
        self.estimate = self._adopt(solve, build.timestamps)

        stats = RoundStats(
            round_index=round_index,
            num_factors=int(build.graph.size()),
            num_variables=int(build.values.size()),
            num_states=len(build.timestamps),
            iterations=solve.iterations,
            initial_error=solve.initial_error,
            final_error=solve.final_error,
            build_time=build.build_time,
            optimize_time=solve.duration,
            toff=self.estimate.calibration.toff,
        )
        self.observer.round_finished(stats)
        return stats

    # ------------- main entry -------------

    def run(self, max_extra_rounds: int) -> GraphResult:
        """Prune, then build and solve max_extra_rounds + 1 times."""
        if max_extra_rounds < 0:
            raise ViconGraphError(f"max_extra_rounds must be >= 0, got {max_extra_rounds}")

        self.prune_unbounded()
        self.build_index_map()
        self.estimate = None

        builder = ViconGraphBuilder(
            self.config,
            self.propagator,
            self.interpolator,
            dict(self.index_map),
            observer=self.observer,
            stop_event=self.stop_event,
        )

        rounds: List[RoundStats] = []
        for round_index in range(max_extra_rounds + 1):
            rounds.append(self.run_round(builder, round_index))
            if self._last_build.stopped:
                logger.warning(f"[VICON-GRAPH]: stopped after round {round_index}")
                break

        estimate = self.estimate
        self.result = GraphResult(
            timestamps=list(self.timestamps),
            states=[estimate.state(self.index_map[t]) for t in self.timestamps],
            calibration=estimate.calibration,
            final_error=rounds[-1].final_error,
            round_errors=[r.final_error for r in rounds],
            iterations=[r.iterations for r in rounds],
        )
        self.log_result()
        return self.result

    def build_and_solve(self) -> GraphResult:
        """Run with the configured number of relinearization rounds."""
        return self.run(self.config.num_loop_relin)

    # ------------- inspection -------------

    def last_graph(self) -> Optional[BuildResult]:
        """Graph and initial values of the most recent round."""
        return self._last_build

    def log_result(self) -> None:
        result = self.result
        if result is None:
            return
        calib = result.calibration
        first, last = result.states[0], result.states[-1]
        logger.info("======================================")
        logger.info(f"state_0: p={first.pos} q={first.quat} v={first.vel}")
        logger.info(f"state_N: p={last.pos} q={last.quat} v={last.vel}")
        logger.info(f"R_BtoI:\n{calib.R_BtoI.matrix()}")
        logger.info(f"p_BinI: {calib.p_BinI}")
        logger.info(f"gravity: {calib.grav_inV}")
        logger.info(f"gravity norm: {calib.gravity_norm:.6f}")
        logger.info(f"t_off_vicon_to_imu: {calib.toff if calib.toff is not None else 0.0}")
        logger.info("======================================")
