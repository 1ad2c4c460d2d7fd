from __future__ import annotations

import time
from dataclasses import dataclass

import gtsam

from logging_config import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class SolverParams:
    """Levenberg-Marquardt settings.

    The error tolerances are set so low that, in practice, the solve runs
    until it stops improving or hits max_iterations.
    """
    absolute_error_tol: float = 1e-30
    relative_error_tol: float = 1e-30
    lambda_upper_bound: float = 1e20
    max_iterations: int = 20
    verbose: bool = False


@dataclass
class SolveResult:
    values: gtsam.Values
    iterations: int
    initial_error: float
    final_error: float
    duration: float


class SolverAdapter:
    """Thin wrapper around gtsam.LevenbergMarquardtOptimizer."""

    def __init__(self, params: SolverParams = SolverParams()):
        self.params = params

    def _lm_params(self) -> gtsam.LevenbergMarquardtParams:
        params = gtsam.LevenbergMarquardtParams()
        params.setAbsoluteErrorTol(self.params.absolute_error_tol)
        params.setRelativeErrorTol(self.params.relative_error_tol)
        params.setlambdaUpperBound(self.params.lambda_upper_bound)
        params.setMaxIterations(self.params.max_iterations)
        if self.params.verbose:
            params.setVerbosity("TERMINATION")
        return params

    @staticmethod
    def error(graph: gtsam.NonlinearFactorGraph, values: gtsam.Values) -> float:
        """Total cost 0.5 * sum ||r||^2_Σ of the graph at the given values."""
        return float(graph.error(values))

    def optimize(self, graph: gtsam.NonlinearFactorGraph, values: gtsam.Values) -> SolveResult:
        """
        Optimize the graph from the given initial values.

        Never raises on non-convergence: whatever iterate the optimizer ends
        on (its best one, LM only accepts improving steps) is returned.
        """
        t_start = time.perf_counter()
        initial_error = self.error(graph, values)

        optimizer = gtsam.LevenbergMarquardtOptimizer(graph, values, self._lm_params())
        logger.debug("[VICON-GRAPH]: begin optimization")
        result = optimizer.optimize()

        duration = time.perf_counter() - t_start
        final_error = float(optimizer.error())
        iterations = int(optimizer.iterations())

        if iterations >= self.params.max_iterations:
            logger.debug(f"[VICON-GRAPH]: stopped at the iteration cap ({iterations}), "
                         f"error {final_error:.6e}")

        return SolveResult(
            values=result,
            iterations=iterations,
            initial_error=initial_error,
            final_error=final_error,
            duration=duration,
        )
