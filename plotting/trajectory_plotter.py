from __future__ import annotations

from pathlib import Path
from typing import Optional, Sequence

import numpy as np
import matplotlib.pyplot as plt

from utilities.states import GraphResult, NavigationState
from utilities.so3 import log_so3

import seaborn as sns
sns.set_theme(context="paper", style="whitegrid", palette="deep", font_scale=1.1)

plt.rcParams.update({
    "font.size": 10,
    "axes.labelsize": 10,
    "axes.titlesize": 10,
    "legend.fontsize": 9,
    "xtick.labelsize": 9,
    "ytick.labelsize": 9,
    "lines.linewidth": 1.2,
    "grid.alpha": 0.3,
})


class TrajectoryPlotter:
    """Figures of the estimated trajectory, optionally against a reference."""

    def __init__(self, result: GraphResult, show: bool = False):
        self.result = result
        self.show = show
        t = np.asarray(result.timestamps, float)
        self.t = t - t[0]

    def _stack(self, attr: str) -> np.ndarray:
        return np.array([np.asarray(getattr(s, attr), float).reshape(3) for s in self.result.states])

    def _finish(self, fig, fname: Optional[str]):
        plt.tight_layout()
        if fname is not None:
            fig.savefig(fname + ".png", dpi=200, bbox_inches="tight")
        if self.show:
            plt.show()
        else:
            plt.close(fig)

    def _plot_xyz(self, values: np.ndarray, labels, title: str, fname: Optional[str],
                  reference: Optional[np.ndarray] = None):
        fig, axes = plt.subplots(3, 1, sharex=True, figsize=(5.0, 4.5))
        for i in range(3):
            ax = axes[i]
            ax.plot(self.t, values[:, i], label="Estimate")
            if reference is not None:
                ax.plot(self.t, reference[:, i], "--", label="Reference")
            ax.set_ylabel(labels[i])
            ax.grid(True)
            if i == 0 and reference is not None:
                ax.legend(loc="upper right")
        axes[-1].set_xlabel("Time [s]")
        fig.suptitle(title, y=0.98)
        self._finish(fig, fname)
        return fig

    # ---------- plots ----------

    def plot_position(self, fname: Optional[str] = None, reference: Optional[np.ndarray] = None):
        """IMU position in the vicon frame."""
        return self._plot_xyz(self._stack("pos"), ["x [m]", "y [m]", "z [m]"],
                              "Position (vicon frame)", fname, reference)

    def plot_velocity(self, fname: Optional[str] = None, reference: Optional[np.ndarray] = None):
        return self._plot_xyz(self._stack("vel"), ["vx [m/s]", "vy [m/s]", "vz [m/s]"],
                              "Velocity (vicon frame)", fname, reference)

    def plot_biases(self, fname: Optional[str] = None):
        """Gyro and accel bias estimates, one column each."""
        bg = self._stack("gyro_bias")
        ba = self._stack("accel_bias")

        fig, axes = plt.subplots(3, 2, sharex=True, figsize=(7.0, 4.5))
        for i, axis in enumerate("xyz"):
            axes[i, 0].plot(self.t, bg[:, i])
            axes[i, 0].set_ylabel(f"bg_{axis} [rad/s]")
            axes[i, 1].plot(self.t, ba[:, i], color="C1")
            axes[i, 1].set_ylabel(f"ba_{axis} [m/s²]")
        axes[-1, 0].set_xlabel("Time [s]")
        axes[-1, 1].set_xlabel("Time [s]")
        fig.suptitle("IMU biases", y=0.98)
        self._finish(fig, fname)
        return fig

    def plot_orientation_error(self, reference, fname: Optional[str] = None):
        """
        Angle between estimated and reference orientation, in degrees.

        reference: sequence of gtsam.Rot3, one per timestamp.
        """
        err = np.array([
            np.linalg.norm(log_so3(ref.matrix().T @ s.ori.matrix()))
            for ref, s in zip(reference, self.result.states)
        ]) * 180.0 / np.pi
        rmse = float(np.sqrt(np.mean(err ** 2)))

        fig, ax = plt.subplots(figsize=(5.0, 2.5))
        ax.plot(self.t, err, label="Orientation error")
        ax.axhline(rmse, color='C1', linestyle='--', label=f"RMSE = {rmse:.4f}°")
        ax.grid(True, alpha=0.3)
        ax.set_xlabel("Time [s]")
        ax.set_ylabel("Error [°]")
        ax.legend()
        self._finish(fig, fname)
        return fig

    def plot_round_errors(self, fname: Optional[str] = None):
        """Final cost of every relinearization round."""
        errors = np.asarray(self.result.round_errors, float)
        fig, ax = plt.subplots(figsize=(4.0, 2.5))
        ax.semilogy(np.arange(len(errors)), np.maximum(errors, 1e-300), "o-")
        ax.set_xlabel("Round")
        ax.set_ylabel("Final cost")
        ax.grid(True, alpha=0.3)
        self._finish(fig, fname)
        return fig

    def plot_all(self, prefix: str, reference: Optional[Sequence[NavigationState]] = None):
        """
        Save every figure as <prefix>_<name>.png.

        reference: true states at the result timestamps, e.g. from a synthetic
        dataset. Adds the reference curves and the orientation error figure.
        """
        Path(prefix).parent.mkdir(parents=True, exist_ok=True)
        ref_pos = ref_vel = None
        if reference is not None:
            ref_pos = np.array([np.asarray(s.pos, float).reshape(3) for s in reference])
            ref_vel = np.array([np.asarray(s.vel, float).reshape(3) for s in reference])
        self.plot_position(prefix + "_position", reference=ref_pos)
        self.plot_velocity(prefix + "_velocity", reference=ref_vel)
        self.plot_biases(prefix + "_biases")
        self.plot_round_errors(prefix + "_rounds")
        if reference is not None:
            self.plot_orientation_error([s.ori for s in reference], prefix + "_orientation_error")
