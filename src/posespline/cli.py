import argparse
import logging
import sys

import numpy as np

logger = logging.getLogger("posespline")

MOTIONS = ("circular", "spiral", "wave", "linear", "accelerated", "drunkard")


def build_parser():
    parser = argparse.ArgumentParser(
        description="Fit uniform B-splines on SE(3) to simulated motions or recorded trajectories.")
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--motion", choices=MOTIONS, help="Simulate and fit one of the closed-form motions.")
    source.add_argument("--input", type=str, help="Fit a spline to a TUM trajectory file.")

    # Motion parameters
    parser.add_argument("--radius", type=float, default=5.0, help="Radius of circular/spiral/wave motions.")
    parser.add_argument("--height", type=float, default=1.0,
                        help="Climb per turn (spiral) or wave amplitude (wave).")
    parser.add_argument("--from", dest="from_point", type=float, nargs=3, default=[0.0, 0.0, 0.0],
                        metavar=("X", "Y", "Z"), help="Start point of linear/accelerated motions, origin of drunkard.")
    parser.add_argument("--to", dest="to_point", type=float, nargs=3, default=[10.0, 5.0, 2.0],
                        metavar=("X", "Y", "Z"), help="End point of linear/accelerated motions.")
    parser.add_argument("--start", type=float, default=0.0, help="Start time of the simulated motion.")
    parser.add_argument("--end", type=float, default=None,
                        help="End time of the simulated motion (motion-specific default).")
    parser.add_argument("--hz", type=float, default=10.0, help="Pose sampling rate; knots are spaced 2 / hz.")
    parser.add_argument("--max-stride", type=float, default=0.5, help="Drunkard: max translation per step.")
    parser.add_argument("--max-angle", type=float, default=5.0, help="Drunkard: max rotation per axis per step (deg).")
    parser.add_argument("--seed", type=int, default=None, help="Drunkard: random seed (default: clock).")

    # Spline / fitting
    parser.add_argument("--degree", type=int, default=3, help="Spline degree.")
    parser.add_argument("--dt", type=float, default=0.2, help="Knot spacing when fitting an --input file.")
    parser.add_argument("--sample-step", type=float, default=0.01, help="Time step when sampling the spline.")

    # Outputs
    parser.add_argument("--output", type=str, default=None, help="TUM file for the sampled spline.")
    parser.add_argument("--output-poses", type=str, default=None, help="TUM file for the discrete pose sequence.")
    parser.add_argument("--output-ply", type=str, default=None, help="PLY file with the sampled spline positions.")

    parser.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    parser.add_argument("--profile", action="store_true", help="Enable cProfile for performance profiling.")
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level),
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    profiler = None
    if args.profile:
        import cProfile
        profiler = cProfile.Profile()
        logger.info("Performance profiling enabled.")
        profiler.enable()

    exit_code = actual_main_operation(args)

    if args.profile and profiler:
        import pstats
        profiler.disable()
        print("\n--- Performance Profile ---")
        stats = pstats.Stats(profiler).sort_stats('cumulative')
        stats.print_stats(20)

    sys.exit(exit_code)


def make_generator(args):
    from . import simulation

    timing = {"start_time": args.start, "hz": args.hz, "degree": args.degree}
    if args.end is not None:
        timing["end_time"] = args.end

    if args.motion == "circular":
        return simulation.SimuCircularMotion(args.radius, **timing)
    if args.motion == "spiral":
        return simulation.SimuSpiralMotion(args.radius, args.height, **timing)
    if args.motion == "wave":
        return simulation.SimuWaveMotion(args.radius, args.height, **timing)
    if args.motion == "linear":
        return simulation.SimuUniformLinearMotion(args.from_point, args.to_point, **timing)
    if args.motion == "accelerated":
        return simulation.SimuUniformAcceleratedMotion(args.from_point, args.to_point, **timing)
    return simulation.SimuDrunkardMotion(args.from_point, args.max_stride, args.max_angle,
                                         seed=args.seed, **timing)


def fit_pose_file(args):
    """Reads a TUM file and fits a spline covering all of its poses."""
    from .estimator import TrajectoryEstimator
    from .io import TrajReader
    from .trajectory import PoseSpline

    pose_seq = TrajReader(args.input).read()
    if len(pose_seq) < 2:
        raise ValueError(f"{args.input} holds {len(pose_seq)} poses, at least 2 are needed.")
    stamps = np.array([p.timestamp for p in pose_seq])
    # Half a knot of slack keeps the last pose inside the half-open interval
    spline = PoseSpline(args.dt, stamps.min(), stamps.max() + 0.5 * args.dt, args.degree)

    estimator = TrajectoryEstimator.create(spline)
    estimator.initialize_knots(pose_seq)
    for pose in pose_seq:
        estimator.add_se3_measurement(pose)
    summary = estimator.solve()
    return pose_seq, spline, summary


def actual_main_operation(args):
    """Runs one fit and writes the requested outputs. Returns the process exit code."""
    from .io import PLYWriter, TrajWriter

    try:
        if args.motion:
            logger.info("Simulating %s motion at %.1f Hz.", args.motion, args.hz)
            generator = make_generator(args)
            pose_seq, spline, summary = generator.pose_sequence, generator.trajectory, generator.summary
        else:
            logger.info("Fitting spline to %s.", args.input)
            pose_seq, spline, summary = fit_pose_file(args)

        logger.info("Spline: %r", spline)
        logger.info("Fit: %s", summary.brief_report())

        if args.output:
            TrajWriter(args.output).write_pose_sequence(spline.sampling(args.sample_step))
            logger.info("Sampled spline saved to %s.", args.output)
        if args.output_poses:
            TrajWriter(args.output_poses).write_pose_sequence(pose_seq)
            logger.info("Pose sequence saved to %s.", args.output_poses)
        if args.output_ply:
            PLYWriter(args.output_ply).write_pose_sequence(spline.sampling(args.sample_step))
            logger.info("Spline positions saved to %s.", args.output_ply)
    except FileNotFoundError as e:
        logger.error("Input file not found: %s", e.filename)
        return 1
    except ValueError as e:
        logger.error("Invalid input: %s", e)
        return 1
    return 0


if __name__ == "__main__":
    main()
