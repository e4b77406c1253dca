"""Ops journal persistence.

The journal is a single JSON document shared by every agent. It is read once
at the start of a run and written once at the end. Writers serialize through
an exclusive file lock and an atomic replace, so a killed run never leaves a
half-written journal behind.
"""

import fcntl
import hashlib
import json
import logging
import os
import tempfile
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

from ..clock import isoformat, parse_timestamp, utcnow
from .models import (
    AgentResult,
    Incident,
    OpsState,
    RemediationAction,
    Severity,
    SystemStatus,
)

logger = logging.getLogger(__name__)

RUN_HISTORY_LIMIT = 200
REMEDIATION_LIMIT = 500


class DateTimeEncoder(json.JSONEncoder):
    """JSON encoder that handles datetime objects."""
    def default(self, obj):
        if isinstance(obj, datetime):
            return isoformat(obj)
        return super().default(obj)


def make_incident_id(agent: str, incident_type: str, target_id: str) -> str:
    """Deterministic incident identity for (agent, type, target).

    The readable prefix keeps the journal greppable; the hash covers the
    full triple joined on NUL, which cannot appear in any component.
    """
    key = f"{agent}\0{incident_type}\0{target_id}"
    digest = hashlib.sha256(key.encode()).hexdigest()[:16]
    return f"{agent}:{incident_type}:{digest}"


def _load_records(raw: Any, loader, label: str) -> List[Any]:
    records = []
    if not isinstance(raw, list):
        return records
    for item in raw:
        try:
            records.append(loader(item))
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            logger.warning(f"Skipping malformed {label} record: {e}")
    return records


def state_from_dict(data: Dict[str, Any]) -> OpsState:
    """Build an OpsState, dropping records that do not parse."""
    state = OpsState()

    try:
        state.version = int(data.get("version", 0))
    except (TypeError, ValueError):
        state.version = 0
    state.system_status = str(data.get("systemStatus") or SystemStatus.HEALTHY.value)
    state.last_updated = str(data.get("lastUpdated") or "")

    last_run = data.get("lastRun")
    if isinstance(last_run, dict):
        state.last_run = {str(k): str(v) for k, v in last_run.items()}
    if data.get("lastAlert"):
        state.last_alert = str(data["lastAlert"])

    state.incidents = _load_records(data.get("incidents"), Incident.from_dict, "incident")
    state.recent_remediations = _load_records(
        data.get("recentRemediations"), RemediationAction.from_dict, "remediation"
    )
    state.run_history = _load_records(data.get("runHistory"), AgentResult.from_dict, "run")

    agent_results = data.get("agentResults")
    if isinstance(agent_results, dict):
        for agent, raw in agent_results.items():
            loaded = _load_records([raw], AgentResult.from_dict, "agent result")
            if loaded:
                state.agent_results[str(agent)] = loaded[0]

    return state


class OpsStateStore:
    """Reads and writes the ops journal at ``path``."""

    def __init__(self, path):
        self.path = Path(path)

    @property
    def lock_path(self) -> Path:
        return self.path.with_name(self.path.name + ".lock")

    def read(self) -> OpsState:
        """Load the journal. Absent or corrupt files give an empty state."""
        if not self.path.exists():
            logger.info(f"No ops journal at {self.path}, starting from empty state")
            return OpsState()

        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Ops journal {self.path} unreadable ({e}), starting from empty state")
            return OpsState()

        if not isinstance(data, dict):
            logger.warning(f"Ops journal {self.path} is not an object, starting from empty state")
            return OpsState()

        return state_from_dict(data)

    def write(self, state: OpsState) -> None:
        """Atomically replace the journal with ``state``."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(state.to_dict(), cls=DateTimeEncoder, indent=2)

        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self.path.name}.", suffix=".tmp", dir=str(self.path.parent)
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

        logger.debug(f"Ops journal written: {self.path} (version {state.version})")

    @contextmanager
    def transaction(self) -> Iterator[OpsState]:
        """Exclusive read-modify-write of the freshest journal.

        The state is written back only if the block exits cleanly.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.lock_path, "a") as lock_file:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
            try:
                state = self.read()
                yield state
                state.version += 1
                self.write(state)
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    @contextmanager
    def run_lock(self, agent: str) -> Iterator[bool]:
        """Non-blocking per-agent lock. Yields False if another run holds it."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        lock_path = self.path.with_name(f"{self.path.name}.{agent}.lock")
        with open(lock_path, "a") as lock_file:
            try:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                yield False
                return
            try:
                yield True
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)


def upsert_incidents(state: OpsState, incidents: List[Incident]) -> None:
    """Replace incidents by id, appending unseen ones."""
    index = {incident.id: pos for pos, incident in enumerate(state.incidents)}
    for incident in incidents:
        pos = index.get(incident.id)
        if pos is None:
            index[incident.id] = len(state.incidents)
            state.incidents.append(incident)
        else:
            state.incidents[pos] = incident


def record_agent_run(
    state: OpsState,
    result: AgentResult,
    history_limit: int = RUN_HISTORY_LIMIT,
) -> None:
    """Fold one run's result into the journal."""
    upsert_incidents(state, result.incidents)
    state.agent_results[result.agent] = result
    state.last_run[result.agent] = result.timestamp
    state.run_history.append(result)
    if len(state.run_history) > history_limit:
        state.run_history = state.run_history[-history_limit:]
    state.last_updated = result.timestamp


def add_remediation(
    state: OpsState,
    action: RemediationAction,
    limit: int = REMEDIATION_LIMIT,
) -> None:
    """Append to the remediation audit log, keeping the newest ``limit``."""
    state.recent_remediations.append(action)
    if len(state.recent_remediations) > limit:
        state.recent_remediations = state.recent_remediations[-limit:]


def determine_system_status(state: OpsState) -> str:
    """CRITICAL > DEGRADED > HEALTHY, from live incidents only."""
    live = state.live_incidents()
    if any(i.severity == Severity.CRITICAL.value for i in live):
        return SystemStatus.CRITICAL.value
    if any(i.severity == Severity.WARNING.value for i in live):
        return SystemStatus.DEGRADED.value
    return SystemStatus.HEALTHY.value


def prune(
    state: OpsState,
    max_age: timedelta,
    now: Optional[datetime] = None,
) -> Tuple[int, int]:
    """Drop old resolved incidents and old remediations.

    Returns (incidents pruned, remediations pruned).
    """
    cutoff = (now or utcnow()) - max_age

    kept_incidents = []
    for incident in state.incidents:
        resolved_at = parse_timestamp(incident.resolved_at)
        if not incident.is_live and resolved_at is not None and resolved_at < cutoff:
            continue
        kept_incidents.append(incident)

    kept_remediations = []
    for action in state.recent_remediations:
        stamp = parse_timestamp(action.timestamp)
        if stamp is not None and stamp < cutoff:
            continue
        kept_remediations.append(action)

    pruned = (
        len(state.incidents) - len(kept_incidents),
        len(state.recent_remediations) - len(kept_remediations),
    )
    state.incidents = kept_incidents
    state.recent_remediations = kept_remediations
    return pruned
