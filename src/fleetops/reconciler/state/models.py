"""Data models for the ops journal.

Field names are snake_case in Python and camelCase in the persisted JSON
document, which is also what the dashboard reads.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class Severity(str, Enum):
    """Incident severity levels."""
    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"


class IncidentStatus(str, Enum):
    """Incident lifecycle states."""
    OPEN = "open"
    ESCALATED = "escalated"
    RESOLVED = "resolved"


class SystemStatus(str, Enum):
    """Overall deployment status derived from live incidents."""
    HEALTHY = "HEALTHY"
    DEGRADED = "DEGRADED"
    CRITICAL = "CRITICAL"


LIVE_STATUSES = (IncidentStatus.OPEN.value, IncidentStatus.ESCALATED.value)


@dataclass
class Incident:
    """A uniquely identified detected problem."""
    id: str
    agent: str
    type: str
    severity: str = Severity.WARNING.value
    target: str = ""
    target_id: str = ""
    detected: str = ""
    message: str = ""
    remediation: str = ""
    status: str = IncidentStatus.OPEN.value
    attempts: int = 0
    error: Optional[str] = None
    resolved_at: Optional[str] = None

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "agent": self.agent,
            "type": self.type,
            "severity": self.severity,
            "target": self.target,
            "targetId": self.target_id,
            "detected": self.detected,
            "message": self.message,
            "remediation": self.remediation,
            "status": self.status,
            "attempts": self.attempts,
        }
        if self.error is not None:
            data["error"] = self.error
        if self.resolved_at is not None:
            data["resolvedAt"] = self.resolved_at
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Incident":
        return cls(
            id=str(data["id"]),
            agent=str(data["agent"]),
            type=str(data["type"]),
            severity=str(data.get("severity", Severity.WARNING.value)),
            target=str(data.get("target", "")),
            target_id=str(data.get("targetId", "")),
            detected=str(data.get("detected", "")),
            message=str(data.get("message", "")),
            remediation=str(data.get("remediation", "")),
            status=str(data.get("status", IncidentStatus.OPEN.value)),
            attempts=int(data.get("attempts", 0)),
            error=data.get("error"),
            resolved_at=data.get("resolvedAt"),
        )


@dataclass(frozen=True)
class RemediationAction:
    """Audit record of one attempted fix. Never mutated after creation."""
    agent: str
    timestamp: str
    action: str
    target: str
    target_id: str
    method: str
    success: bool
    endpoint: Optional[str] = None
    before: Any = None
    after: Any = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "agent": self.agent,
            "timestamp": self.timestamp,
            "action": self.action,
            "target": self.target,
            "targetId": self.target_id,
            "method": self.method,
            "success": self.success,
        }
        for key, value in (
            ("endpoint", self.endpoint),
            ("before", self.before),
            ("after", self.after),
            ("error", self.error),
        ):
            if value is not None:
                data[key] = value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RemediationAction":
        return cls(
            agent=str(data["agent"]),
            timestamp=str(data["timestamp"]),
            action=str(data.get("action", "")),
            target=str(data.get("target", "unknown")),
            target_id=str(data.get("targetId", "unknown")),
            method=str(data.get("method", "")),
            success=bool(data.get("success", False)),
            endpoint=data.get("endpoint"),
            before=data.get("before"),
            after=data.get("after"),
            error=data.get("error"),
        )


@dataclass
class AgentResult:
    """One row per reconciler run."""
    agent: str
    timestamp: str
    duration_ms: int = 0
    issues_found: int = 0
    issues_fixed: int = 0
    issues_escalated: int = 0
    issues_recovered: int = 0
    incidents: List[Incident] = field(default_factory=list)
    check_errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agent": self.agent,
            "timestamp": self.timestamp,
            "durationMs": self.duration_ms,
            "issuesFound": self.issues_found,
            "issuesFixed": self.issues_fixed,
            "issuesEscalated": self.issues_escalated,
            "issuesRecovered": self.issues_recovered,
            "incidents": [i.to_dict() for i in self.incidents],
            "checkErrors": list(self.check_errors),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AgentResult":
        return cls(
            agent=str(data["agent"]),
            timestamp=str(data["timestamp"]),
            duration_ms=int(data.get("durationMs", 0)),
            issues_found=int(data.get("issuesFound", 0)),
            issues_fixed=int(data.get("issuesFixed", 0)),
            issues_escalated=int(data.get("issuesEscalated", 0)),
            issues_recovered=int(data.get("issuesRecovered", 0)),
            incidents=[Incident.from_dict(i) for i in data.get("incidents", [])],
            check_errors=[str(e) for e in data.get("checkErrors", [])],
        )


@dataclass
class OpsState:
    """The persisted aggregate shared by all agents."""
    version: int = 0
    system_status: str = SystemStatus.HEALTHY.value
    last_updated: str = ""
    last_run: Dict[str, str] = field(default_factory=dict)
    last_alert: Optional[str] = None
    incidents: List[Incident] = field(default_factory=list)
    recent_remediations: List[RemediationAction] = field(default_factory=list)
    agent_results: Dict[str, AgentResult] = field(default_factory=dict)
    run_history: List[AgentResult] = field(default_factory=list)

    def find_incident(self, incident_id: str) -> Optional[Incident]:
        for incident in self.incidents:
            if incident.id == incident_id:
                return incident
        return None

    def live_incidents(self) -> List[Incident]:
        return [i for i in self.incidents if i.is_live]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "systemStatus": self.system_status,
            "lastUpdated": self.last_updated,
            "lastRun": dict(self.last_run),
            "lastAlert": self.last_alert,
            "incidents": [i.to_dict() for i in self.incidents],
            "recentRemediations": [r.to_dict() for r in self.recent_remediations],
            "agentResults": {k: v.to_dict() for k, v in self.agent_results.items()},
            "runHistory": [r.to_dict() for r in self.run_history],
        }
