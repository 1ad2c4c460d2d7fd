"""
Build/solve events.

The graph builder and the relinearization loop report what they do through
a BuildObserver instead of logging inline. LoggingObserver renders events as
log lines; RecordingObserver keeps them for inspection (tests, reports).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from logging_config import get_logger

logger = get_logger(__name__)


class PruneReason(Enum):
    NO_BOUNDING_IMU = "no bounding imu"
    NO_VICON_POSE = "no vicon pose found"
    BAD_VICON_COVARIANCE = "vicon covariance not invertible"


@dataclass(frozen=True)
class RoundStats:
    round_index: int
    num_factors: int
    num_variables: int
    num_states: int
    iterations: int
    initial_error: float
    final_error: float
    build_time: float
    optimize_time: float
    toff: Optional[float] = None


class BuildObserver:
    """No-op observer; subclass and override what you need."""

    def timestamp_pruned(self, timestamp: float, reason: PruneReason, detail: str = "") -> None:
        pass

    def imu_covariance_invalid(self, t0: float, t1: float, cov_norm: float) -> None:
        pass

    def build_started(self, round_index: int, toff: Optional[float], gravity_norm: float) -> None:
        pass

    def round_finished(self, stats: RoundStats) -> None:
        pass


class LoggingObserver(BuildObserver):
    """Renders events as log lines."""

    def timestamp_pruned(self, timestamp, reason, detail=""):
        suffix = f" ({detail})" if detail else ""
        logger.info(f"    - skipping camera time {timestamp:.9f} ({reason.value}){suffix}")

    def imu_covariance_invalid(self, t0, t1, cov_norm):
        logger.error(f"IMU covariance between {t0:.9f} and {t1:.9f} is not invertible "
                     f"(norm = {cov_norm:.3f}), propagator contract violated")

    def build_started(self, round_index, toff, gravity_norm):
        logger.info(f"[BUILD]: building the graph (round {round_index})")
        if toff is not None:
            logger.info(f"[BUILD]: current time offset is {toff:.4f}")
        logger.info(f"[BUILD]: current gravity mag is {gravity_norm:.4f}")

    def round_finished(self, stats):
        logger.info(f"[VICON-GRAPH]: graph factors - {stats.num_factors}, "
                    f"nodes - {stats.num_variables}, states - {stats.num_states}")
        logger.info(f"[VICON-GRAPH]: done optimization ({stats.iterations} iterations), "
                    f"error {stats.initial_error:.6e} -> {stats.final_error:.6e}")
        if stats.toff is not None:
            logger.info(f"current t_off = {stats.toff:.4f}")
        logger.info(f"[TIME]: {stats.build_time:.4f} to build")
        logger.info(f"[TIME]: {stats.optimize_time:.4f} to optimize")
        logger.info(f"[TIME]: {stats.build_time + stats.optimize_time:.4f} total "
                    f"(loop {stats.round_index})")


@dataclass
class RecordingObserver(BuildObserver):
    """Keeps every event; optionally forwards to another observer."""
    forward: Optional[BuildObserver] = None
    pruned: List[tuple] = field(default_factory=list)
    imu_cov_violations: List[tuple] = field(default_factory=list)
    rounds: List[RoundStats] = field(default_factory=list)

    def timestamp_pruned(self, timestamp, reason, detail=""):
        self.pruned.append((timestamp, reason))
        if self.forward is not None:
            self.forward.timestamp_pruned(timestamp, reason, detail)

    def imu_covariance_invalid(self, t0, t1, cov_norm):
        self.imu_cov_violations.append((t0, t1))
        if self.forward is not None:
            self.forward.imu_covariance_invalid(t0, t1, cov_norm)

    def build_started(self, round_index, toff, gravity_norm):
        if self.forward is not None:
            self.forward.build_started(round_index, toff, gravity_norm)

    def round_finished(self, stats):
        self.rounds.append(stats)
        if self.forward is not None:
            self.forward.round_finished(stats)
