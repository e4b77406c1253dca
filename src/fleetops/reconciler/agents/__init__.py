"""Reconciler agents and the registry the CLI and Celery tasks run them from."""

import logging
from typing import Dict, Type

from ..config import OpsConfig
from .base import EXIT_FATAL, EXIT_ISSUES, EXIT_OK, Check, Reconciler, RunContext, exit_code_for
from .content_lifecycle import ContentLifecycle
from .db_maintainer import DbMaintainer
from .fleet_manager import FleetManager
from .health_guardian import HealthGuardian
from .ops_reporter import OpsReporter
from .schedule_doctor import ScheduleDoctor

logger = logging.getLogger(__name__)

AGENTS: Dict[str, Type[Reconciler]] = {
    cls.name: cls
    for cls in (HealthGuardian, FleetManager, ContentLifecycle, ScheduleDoctor, DbMaintainer, OpsReporter)
}


def build_agent(name: str, config: OpsConfig, **kwargs) -> Reconciler:
    """Instantiate the agent registered as ``name``."""
    try:
        cls = AGENTS[name]
    except KeyError:
        raise ValueError(f"Unknown agent: {name} (expected one of {', '.join(AGENTS)})") from None
    return cls(config, **kwargs)


async def run_agent(name: str, config: OpsConfig, **kwargs) -> int:
    """Run one agent once and return its exit code; unexpected errors are fatal."""
    try:
        agent = build_agent(name, config, **kwargs)
        return await agent.run()
    except Exception as e:
        logger.exception(f"[{name}] FATAL: {e}")
        return EXIT_FATAL


__all__ = [
    "AGENTS",
    "Check",
    "ContentLifecycle",
    "DbMaintainer",
    "EXIT_FATAL",
    "EXIT_ISSUES",
    "EXIT_OK",
    "FleetManager",
    "HealthGuardian",
    "OpsReporter",
    "Reconciler",
    "RunContext",
    "ScheduleDoctor",
    "build_agent",
    "exit_code_for",
    "run_agent",
]
