"""Fleet ops reconciler - autonomous operations for the Vizora deployment.

Each agent observes one concern of the deployment (service health, display
fleet, content, schedules), records incidents in a shared JSON journal,
applies bounded automated fixes and escalates what it cannot fix. The ops
reporter aggregates the journal and sends alerts, and the db maintainer does
the daily database, cache and log housekeeping.

Usage:
    from fleetops.reconciler import OpsConfig, run_agent

    config = OpsConfig.from_env()
    exit_code = await run_agent("fleet-manager", config)
"""

from .agents import AGENTS, EXIT_FATAL, EXIT_ISSUES, EXIT_OK, build_agent, run_agent
from .config import OpsConfig
from .incidents import Detection, RemediationExecutor, Remedy
from .state import OpsStateStore, make_incident_id

__version__ = "1.0.0"

__all__ = [
    # Agents
    "AGENTS",
    "build_agent",
    "run_agent",
    "EXIT_OK",
    "EXIT_ISSUES",
    "EXIT_FATAL",
    # Config
    "OpsConfig",
    # Incidents
    "Detection",
    "RemediationExecutor",
    "Remedy",
    # Journal
    "OpsStateStore",
    "make_incident_id",
]
