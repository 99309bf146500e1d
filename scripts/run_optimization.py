#!/usr/bin/env python3
"""Optimize a collision-free trajectory from a JSON problem description.

Loads a URDF and a problem file holding the scene, the costs and the
constraints, runs the trust-region SQP solver, and checks the initial and
final trajectories for swept-volume collisions.

Usage:
    python3 run_optimization.py [--urdf data/boxbot.urdf]
        [--config data/box_cast_test.json] [--output result.json]
"""

import argparse
import json
import logging
from pathlib import Path

import matplotlib.pyplot as plt

from trajopt_collision import (
    Environment,
    OptimizerConfig,
    PinocchioKinematics,
    ProblemConstructionInfo,
    check_trajectory,
    construct_problem,
    optimize_problem,
)
from trajopt_collision.plotting import MatplotlibPlotter, plot_axes

_DATA_DIR = Path(__file__).resolve().parent.parent / "data"


def count_contacts(env: Environment, traj, continuous: bool = True) -> int:
    return sum(len(step) for step in check_trajectory(env, traj, continuous=continuous))


def main() -> None:
    """Run trajectory optimization."""
    parser = argparse.ArgumentParser(
        description="Optimize a trajectory with collision costs and constraints",
    )
    parser.add_argument(
        "--urdf", type=str, default=str(_DATA_DIR / "boxbot.urdf"),
        help="Robot URDF (default: data/boxbot.urdf)",
    )
    parser.add_argument(
        "--config", type=str, default=str(_DATA_DIR / "box_cast_test.json"),
        help="Problem description JSON (default: data/box_cast_test.json)",
    )
    parser.add_argument(
        "--max-iter", type=int, default=None,
        help="Override the maximum number of subproblems",
    )
    parser.add_argument(
        "--frames", type=str, default=None,
        help="Directory for per-iteration scene plots (default: no plots)",
    )
    parser.add_argument(
        "--plot", type=str, default=None,
        help="Save the joint trajectory plot to this path",
    )
    parser.add_argument(
        "--output", type=str, default=None,
        help="Output JSON path (default: print summary only)",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Log per-term values every iteration",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(message)s",
    )
    logger = logging.getLogger(__name__)

    logger.info("=" * 60)
    logger.info("Collision-Aware Trajectory Optimization")
    logger.info("=" * 60)

    with open(args.config) as f:
        config = json.load(f)

    kin = PinocchioKinematics.from_urdf_file(args.urdf)
    env = Environment.from_dict(kin, config.get("scene", {}))
    logger.info("  Joints: %s", kin.joint_names)
    logger.info("  Collision objects: %s", env.collision_object_names)

    pci = ProblemConstructionInfo.from_dict(config, env)
    prob = construct_problem(pci)

    opt_config = OptimizerConfig.from_dict(config.get("optimizer", {}))
    if args.max_iter is not None:
        opt_config.max_iter = args.max_iter

    n_initial = count_contacts(env, prob.init_traj)
    logger.info("  Initial swept contacts: %d", n_initial)
    logger.info("")

    plotter = MatplotlibPlotter(output_dir=args.frames) if args.frames else None
    result = optimize_problem(prob, opt_config, plotter=plotter)

    n_final = count_contacts(env, result.traj)
    logger.info("")
    logger.info("=" * 60)
    logger.info("Results")
    logger.info("=" * 60)
    logger.info("  Status: %s", result.status.value)
    for name, value in zip(result.cost_names, result.cost_vals):
        logger.info("  cost %-20s %.4f", name, value)
    for name, value in zip(result.cnt_names, result.cnt_viols):
        logger.info("  cnt  %-20s %.4f", name, value)
    logger.info("  Final swept contacts: %d", n_final)
    logger.info(
        "  Trajectory is %s", "collision free" if n_final == 0 else "in collision",
    )

    if args.plot:
        fig, ax = plt.subplots(figsize=(8, 4))
        plot_axes(ax, result.traj, kin.joint_names)
        Path(args.plot).parent.mkdir(parents=True, exist_ok=True)
        fig.savefig(args.plot)
        logger.info("Plot saved to %s", args.plot)

    if args.output:
        output = result.to_dict()
        output["initial_contacts"] = n_initial
        output["final_contacts"] = n_final
        Path(args.output).parent.mkdir(parents=True, exist_ok=True)
        with open(args.output, "w") as f:
            json.dump(output, f, indent=2)
        logger.info("Result saved to %s", args.output)


if __name__ == "__main__":
    main()
