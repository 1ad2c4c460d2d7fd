#!/usr/bin/env python3
"""
Batch vicon/IMU calibration.

Loads IMU, vicon and camera timestamp files (or generates a synthetic
dataset), solves the calibration graph and writes the state table and the
calibration report.

Examples:
    python run_vicon_graph.py --imu imu.csv --vicon vicon.csv --camera cam.csv \\
        --config configs/config_default.yaml --out-states out/states.csv --out-info out/info.txt
    python run_vicon_graph.py --synthetic --config configs/config_toff.yaml --plot out/synthetic
"""

import argparse
import sys

from data.export import calibration_report, write_info, write_states_csv
from data.generator import SyntheticConfig, ViconImuGenerator
from data.loaders import load_camera_timestamps, load_imu_csv, load_vicon_csv
from estimation.errors import ViconGraphError
from estimation.interpolator import Interpolator
from estimation.propagator import Propagator
from estimation.vicon_graph import ViconGraphSolver
from logging_config import get_logger
from utilities.config import ConfigError, ViconGraphConfig

logger = get_logger(__name__)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="Estimate vicon/IMU extrinsics, gravity and time offset",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )
    parser.add_argument(
        "--config",
        default=None,
        help="YAML configuration (defaults are used when omitted)"
    )
    parser.add_argument("--imu", help="IMU CSV: t,wx,wy,wz,ax,ay,az")
    parser.add_argument("--vicon", help="Vicon CSV: t,qw,qx,qy,qz,px,py,pz")
    parser.add_argument("--camera", help="Camera timestamps CSV (first column)")
    parser.add_argument(
        "--synthetic",
        action="store_true",
        help="Run on a generated dataset instead of input files"
    )
    parser.add_argument("--out-states", default=None, help="Output state table CSV")
    parser.add_argument("--out-info", default=None, help="Output calibration report")
    parser.add_argument("--plot", default=None, help="Save trajectory figures with this prefix")
    args = parser.parse_args(argv)

    if not args.synthetic and not (args.imu and args.vicon and args.camera):
        parser.error("--imu, --vicon and --camera are required unless --synthetic is given")
    return args


def load_inputs(args):
    """IMU, vicon, camera timestamps and, for synthetic runs, the true states."""
    if args.synthetic:
        dataset = ViconImuGenerator(SyntheticConfig(toff=0.01)).run()
        return dataset.imu, dataset.vicon, dataset.camera_timestamps, dataset.truth
    imu = load_imu_csv(args.imu)
    vicon = load_vicon_csv(args.vicon)
    return imu, vicon, load_camera_timestamps(args.camera), None


def main(argv=None) -> int:
    args = parse_args(argv)

    try:
        config = ViconGraphConfig.from_yaml(args.config)
    except (ConfigError, OSError) as e:
        logger.error(f"Could not load configuration: {e}")
        return 1
    config.log_summary()

    try:
        imu, vicon, timestamps, truth = load_inputs(args)
        propagator = Propagator(imu, config.imu_noise)
        interpolator = Interpolator(
            vicon,
            sigma_rot=config.sigma_vicon_rot,
            sigma_pos=config.sigma_vicon_pos,
            max_gap=config.vicon_max_gap,
        )
        solver = ViconGraphSolver(config, propagator, interpolator, timestamps)
        result = solver.build_and_solve()
    except (ViconGraphError, ValueError, OSError) as e:
        logger.error(f"Calibration failed: {e}")
        return 1

    print("\n".join(calibration_report(result.calibration)))

    if args.out_states:
        write_states_csv(result, args.out_states)
    if args.out_info:
        write_info(result, args.out_info)
    if args.plot:
        import matplotlib
        matplotlib.use("Agg")
        from plotting.trajectory_plotter import TrajectoryPlotter
        reference = None
        if truth is not None:
            reference = [truth[t] for t in result.timestamps]
        TrajectoryPlotter(result).plot_all(args.plot, reference=reference)

    return 0


if __name__ == "__main__":
    sys.exit(main())
