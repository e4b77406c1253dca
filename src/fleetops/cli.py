"""
Fleet Ops command line

Runs one reconciler agent once and exits with its status code:
0 healthy, 1 issues not fully fixed, 2 fatal.
"""
import argparse
import asyncio
import dataclasses
import logging
import sys
from typing import List, Optional

from fleetops.reconciler import AGENTS, OpsConfig, run_agent

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fleetops",
        description="Run one fleet ops reconciler agent once.",
    )
    parser.add_argument("agent", choices=sorted(AGENTS), help="agent to run")
    parser.add_argument("--state-file", help="ops journal path (default: $OPS_STATE_FILE)")
    parser.add_argument("--policy-file", help="YAML policy overrides (default: $OPS_POLICY_FILE)")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    return parser


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    config = OpsConfig.from_env()
    overrides = {}
    if args.state_file:
        overrides["state_file"] = args.state_file
    if args.policy_file:
        overrides["policy_file"] = args.policy_file
    if args.verbose:
        overrides["log_level"] = "DEBUG"
    if overrides:
        config = dataclasses.replace(config, **overrides)

    configure_logging(config.log_level)
    logger.info(f"Running {args.agent} (journal: {config.state_file})")
    return asyncio.run(run_agent(args.agent, config))


if __name__ == "__main__":
    sys.exit(main())
