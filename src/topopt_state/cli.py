from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import List, Optional

import pandas as pd

from .core.config import ProblemConfig, load_config
from .core.errors import TopOptError
from .orchestrator import TopOptOrchestrator
from .restart.manager import inspect_checkpoints
from .utils.logging_utils import get_logger, rank_filter


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="topopt-state CLI")
    subparsers = parser.add_subparsers(dest="command", required=True)

    validate = subparsers.add_parser(
        "validate", help="Check a configuration, build the mesh and classify the regions"
    )
    validate.add_argument("--config", required=True)
    restart = validate.add_mutually_exclusive_group()
    restart.add_argument("--restart", dest="restart", action="store_true", default=None)
    restart.add_argument("--no-restart", dest="restart", action="store_false")
    validate.add_argument("--max-iter", type=int, default=None)
    validate.add_argument("--backend", choices=("serial", "mpi"), default=None)
    validate.add_argument("--log-level", default=None)
    validate.add_argument("--node-density", default=None, help="Optional CSV path for the node density")

    inspect = subparsers.add_parser("inspect", help="Report on the checkpoint files of a restart directory")
    inspect.add_argument("--dir", required=True)
    inspect.add_argument("--log-level", default=None)

    return parser


def apply_overrides(config: ProblemConfig, args: argparse.Namespace) -> ProblemConfig:
    """Apply command-line overrides on top of the loaded configuration."""
    if getattr(args, "restart", None) is not None:
        config.restart.enabled = args.restart
    if getattr(args, "max_iter", None) is not None:
        config.to.max_iter = args.max_iter
    if getattr(args, "backend", None):
        config.run.backend = args.backend
    if getattr(args, "log_level", None):
        config.run.log_level = args.log_level
    return config.validate()


def run_validate(args: argparse.Namespace) -> int:
    config_path = Path(args.config)
    config = apply_overrides(load_config(config_path), args)
    logger = get_logger("topopt_state", config.run.log_level)

    orchestrator = TopOptOrchestrator(config, base_dir=config_path.parent)
    for handler in logger.handlers:
        handler.addFilter(rank_filter(orchestrator.comm.rank))
    orchestrator.set_up()
    summary = orchestrator.summary()
    if args.node_density:
        orchestrator.export_node_density(args.node_density)

    if orchestrator.is_root:
        regions = ", ".join(f"{k}={v}" for k, v in summary["regions"].items())
        logger.info("Configuration %s is valid", config_path)
        logger.info("Regions: %s", regions)
        for err in summary["geometry_errors"]:
            logger.warning("Geometry: %s", err)
    return 0


def run_inspect(args: argparse.Namespace) -> int:
    logger = get_logger("topopt_state", args.log_level or "INFO")
    rows = inspect_checkpoints(args.dir)
    report = pd.DataFrame(rows).set_index("file")
    print(report.to_string())
    if all(row["status"] == "missing" for row in rows):
        logger.info("No checkpoint files in %s", args.dir)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        if args.command == "validate":
            return run_validate(args)
        if args.command == "inspect":
            return run_inspect(args)
    except TopOptError as exc:
        get_logger("topopt_state").error("%s", exc)
        return 1
    parser.error(f"Unknown command {args.command}")
    return 2


if __name__ == "__main__":
    sys.exit(main())
