"""Incident lifecycle and remediation policy shared by every agent.

One executor lives for one agent run. Checks hand it detections; it looks up
the prior incident with the same identity, decides whether to fix, escalate
or just record, and keeps the run's counters.

    open -> resolved        fix verified, or problem not re-raised
    open -> escalated       attempts reached the cap, or no safe fix exists
    escalated -> resolved   problem not re-raised (recovered)

A failed attempt that uses up the last allowed attempt escalates in the same
run. Once escalated, an incident short-circuits on every later detection: no new
attempt is made and ``attempts`` stays where it was.
"""

import dataclasses
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from ..clock import isoformat, utcnow
from ..state.models import (
    AgentResult,
    Incident,
    IncidentStatus,
    Severity,
)
from ..state.store import make_incident_id

logger = logging.getLogger(__name__)


@dataclass
class Detection:
    """A problem observed by a check in this run."""
    type: str
    target: str
    target_id: str
    message: str
    severity: str = Severity.WARNING.value
    remediation: str = ""


@dataclass
class Remedy:
    """How to fix a detection.

    ``apply`` performs the fix and ``verify`` (optional) confirms it; either
    signals failure by raising. When ``confirms_fix`` is False a successful
    apply still leaves the incident open, for fixes whose effect cannot be
    observed within the run.
    """
    apply: Callable[[], Awaitable[Any]]
    verify: Optional[Callable[[], Awaitable[Any]]] = None
    max_attempts: Optional[int] = None
    confirms_fix: bool = True


class RemediationExecutor:
    """Applies the incident state machine for one agent run."""

    def __init__(
        self,
        agent: str,
        prior_incidents: Iterable[Incident],
        now: Callable[[], datetime] = utcnow,
    ):
        self.agent = agent
        self._now = now
        self._prior: Dict[str, Incident] = {i.id: i for i in prior_incidents}
        self._produced: Dict[str, Incident] = {}
        self.issues_found = 0
        self.issues_fixed = 0
        self.issues_escalated = 0
        self.issues_recovered = 0

    @property
    def incidents(self) -> List[Incident]:
        return list(self._produced.values())

    def incident_id(self, incident_type: str, target_id: str) -> str:
        return make_incident_id(self.agent, incident_type, target_id)

    def prior(self, incident_type: str, target_id: str) -> Optional[Incident]:
        return self._prior.get(self.incident_id(incident_type, target_id))

    def _timestamp(self) -> str:
        return isoformat(self._now())

    def _begin(self, detection: Detection) -> Optional[Incident]:
        """Common entry: dedupe within the run and count the finding.

        Returns the already-produced incident if this id was handled earlier
        in the run, otherwise None.
        """
        incident_id = self.incident_id(detection.type, detection.target_id)
        if incident_id in self._produced:
            logger.debug(f"Duplicate detection in run ignored: {incident_id}")
            return self._produced[incident_id]
        self.issues_found += 1
        return None

    def _live_prior(self, detection: Detection) -> Optional[Incident]:
        prior = self.prior(detection.type, detection.target_id)
        if prior is not None and prior.is_live:
            return prior
        return None

    def _new(self, detection: Detection, prior: Optional[Incident], **changes) -> Incident:
        incident = Incident(
            id=self.incident_id(detection.type, detection.target_id),
            agent=self.agent,
            type=detection.type,
            severity=detection.severity,
            target=detection.target,
            target_id=detection.target_id,
            detected=prior.detected if prior else self._timestamp(),
            message=detection.message,
            remediation=detection.remediation,
            status=IncidentStatus.OPEN.value,
            attempts=prior.attempts if prior else 0,
        )
        incident = dataclasses.replace(incident, **changes)
        self._produced[incident.id] = incident
        return incident

    def _already_escalated(self, detection: Detection, prior: Optional[Incident]) -> Optional[Incident]:
        if prior is None or prior.status != IncidentStatus.ESCALATED.value:
            return None
        logger.info(f"{detection.target}:{detection.target_id} already escalated, skipping remediation")
        self.issues_escalated += 1
        # the escalated record keeps the message that explains its severity
        self._produced[prior.id] = prior
        return prior

    def advise(self, detection: Detection) -> Incident:
        """Record a detection that has no automated fix."""
        duplicate = self._begin(detection)
        if duplicate is not None:
            return duplicate
        prior = self._live_prior(detection)
        escalated = self._already_escalated(detection, prior)
        if escalated is not None:
            return escalated
        return self._new(detection, prior)

    def escalate(self, detection: Detection) -> Incident:
        """Record a detection that needs a human straight away."""
        duplicate = self._begin(detection)
        if duplicate is not None:
            return duplicate
        prior = self._live_prior(detection)
        escalated = self._already_escalated(detection, prior)
        if escalated is not None:
            return escalated
        self.issues_escalated += 1
        logger.warning(f"Escalating {detection.type} on {detection.target}:{detection.target_id}")
        return self._new(
            detection,
            prior,
            status=IncidentStatus.ESCALATED.value,
            severity=Severity.CRITICAL.value,
        )

    async def remediate(self, detection: Detection, remedy: Remedy) -> Incident:
        """Escalate at the attempt cap, otherwise attempt and verify the fix."""
        duplicate = self._begin(detection)
        if duplicate is not None:
            return duplicate
        prior = self._live_prior(detection)
        escalated = self._already_escalated(detection, prior)
        if escalated is not None:
            return escalated

        attempts = prior.attempts if prior else 0
        label = f"{detection.target}:{detection.target_id}"

        if remedy.max_attempts is not None and attempts >= remedy.max_attempts:
            self.issues_escalated += 1
            logger.warning(f"{label}: {attempts} remediation attempts exhausted, escalating")
            return self._new(
                detection,
                prior,
                status=IncidentStatus.ESCALATED.value,
                severity=Severity.CRITICAL.value,
                message=f"{detection.message} (remediation attempts exhausted after {attempts})",
            )

        attempts += 1
        cap = remedy.max_attempts if remedy.max_attempts is not None else "-"
        logger.info(f"{label}: attempting remediation (attempt {attempts}/{cap})")

        try:
            await remedy.apply()
            if remedy.verify is not None:
                await remedy.verify()
        except Exception as e:
            logger.error(f"{label}: remediation attempt {attempts} failed: {e}")
            if remedy.max_attempts is not None and attempts >= remedy.max_attempts:
                self.issues_escalated += 1
                logger.warning(f"{label}: last allowed attempt failed, escalating")
                return self._new(
                    detection,
                    prior,
                    attempts=attempts,
                    error=str(e) or e.__class__.__name__,
                    status=IncidentStatus.ESCALATED.value,
                    severity=Severity.CRITICAL.value,
                    message=f"{detection.message} (remediation attempts exhausted after {attempts})",
                )
            return self._new(
                detection,
                prior,
                attempts=attempts,
                error=str(e) or e.__class__.__name__,
                message=f"{detection.message} (attempt {attempts} failed)",
            )

        if not remedy.confirms_fix:
            logger.info(f"{label}: remediation sent, awaiting confirmation")
            return self._new(
                detection,
                prior,
                attempts=attempts,
                message=f"{detection.message} (remediation sent, awaiting confirmation)",
            )

        self.issues_fixed += 1
        logger.info(f"{label}: remediated")
        return self._new(
            detection,
            prior,
            attempts=attempts,
            status=IncidentStatus.RESOLVED.value,
            resolved_at=self._timestamp(),
            message=f"{detection.message} (auto-remediated)",
        )

    def carry_forward(self, incident_type: str, target_id: str) -> Optional[Incident]:
        """Keep a live prior incident unchanged so it is not reconciled away."""
        prior = self.prior(incident_type, target_id)
        if prior is None or not prior.is_live or prior.id in self._produced:
            return None
        self._produced[prior.id] = prior
        return prior

    def reconcile_stale(self, skip_types: Iterable[str] = ()) -> List[Incident]:
        """Resolve this agent's live incidents that were not re-raised.

        Incidents whose type belongs to a check that failed this run are
        left alone, since their absence proves nothing.
        """
        skip = set(skip_types)
        resolved = []
        for prior in self._prior.values():
            if prior.agent != self.agent or not prior.is_live:
                continue
            if prior.id in self._produced or prior.type in skip:
                continue
            logger.info(f"Resolving stale incident {prior.id} ({prior.type} on {prior.target_id})")
            incident = dataclasses.replace(
                prior,
                status=IncidentStatus.RESOLVED.value,
                resolved_at=self._timestamp(),
            )
            self._produced[incident.id] = incident
            self.issues_recovered += 1
            resolved.append(incident)
        return resolved

    def result(self, duration_ms: int, check_errors: Optional[List[str]] = None) -> AgentResult:
        return AgentResult(
            agent=self.agent,
            timestamp=self._timestamp(),
            duration_ms=duration_ms,
            issues_found=self.issues_found,
            issues_fixed=self.issues_fixed,
            issues_escalated=self.issues_escalated,
            issues_recovered=self.issues_recovered,
            incidents=self.incidents,
            check_errors=list(check_errors or []),
        )
