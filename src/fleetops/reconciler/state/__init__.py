"""Ops journal module.

Provides the persisted incident/run/audit models and the store that reads
and writes them.
"""

from .models import (
    AgentResult,
    Incident,
    IncidentStatus,
    OpsState,
    RemediationAction,
    Severity,
    SystemStatus,
)
from .store import (
    OpsStateStore,
    add_remediation,
    determine_system_status,
    make_incident_id,
    prune,
    record_agent_run,
)

__all__ = [
    "AgentResult",
    "Incident",
    "IncidentStatus",
    "OpsState",
    "RemediationAction",
    "Severity",
    "SystemStatus",
    "OpsStateStore",
    "add_remediation",
    "determine_system_status",
    "make_incident_id",
    "prune",
    "record_agent_run",
]
