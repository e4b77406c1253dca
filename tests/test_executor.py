"""Tests for the incident state machine."""

import pytest

from conftest import NOW, fixed_now, minutes_ago

from fleetops.reconciler.clock import isoformat
from fleetops.reconciler.errors import RemediationError
from fleetops.reconciler.incidents import Detection, RemediationExecutor, Remedy
from fleetops.reconciler.state import Incident, make_incident_id

AGENT = "health-guardian"


def _detection(target_id="web", type_="service-down"):
    return Detection(
        type=type_,
        target="service",
        target_id=target_id,
        severity="critical",
        message=f"{target_id} is down",
        remediation="pm2 restart",
    )


def _prior(target_id="web", type_="service-down", agent=AGENT, **kw):
    return Incident(
        id=make_incident_id(agent, type_, target_id),
        agent=agent,
        type=type_,
        severity=kw.pop("severity", "critical"),
        target="service",
        target_id=target_id,
        detected=minutes_ago(60),
        **kw,
    )


class Fix:
    """Remedy callables that count calls and optionally fail."""

    def __init__(self, fail=False):
        self.fail = fail
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.fail:
            raise RemediationError("restart did not help")


class TestRemediate:
    """Test the remediate-or-escalate decision."""

    @pytest.mark.asyncio
    async def test_verified_fix_resolves(self):
        executor = RemediationExecutor(AGENT, [], now=fixed_now)

        incident = await executor.remediate(_detection(), Remedy(apply=Fix(), verify=Fix(), max_attempts=2))

        assert incident.status == "resolved"
        assert incident.attempts == 1
        assert incident.resolved_at == isoformat(NOW)
        assert (executor.issues_found, executor.issues_fixed) == (1, 1)

    @pytest.mark.asyncio
    async def test_failed_fix_stays_open_with_error(self):
        executor = RemediationExecutor(AGENT, [], now=fixed_now)

        incident = await executor.remediate(_detection(), Remedy(apply=Fix(fail=True), max_attempts=2))

        assert incident.status == "open"
        assert incident.attempts == 1
        assert incident.error == "restart did not help"
        assert incident.detected == isoformat(NOW)
        assert executor.issues_fixed == 0

    @pytest.mark.asyncio
    async def test_failed_verify_counts_as_failed_attempt(self):
        executor = RemediationExecutor(AGENT, [], now=fixed_now)
        verify = Fix(fail=True)

        incident = await executor.remediate(_detection(), Remedy(apply=Fix(), verify=verify, max_attempts=3))

        assert verify.calls == 1
        assert incident.status == "open"
        assert incident.attempts == 1

    @pytest.mark.asyncio
    async def test_inherits_detected_and_attempts_from_open_prior(self):
        prior = _prior(attempts=1)
        executor = RemediationExecutor(AGENT, [prior], now=fixed_now)

        incident = await executor.remediate(_detection(), Remedy(apply=Fix(fail=True), max_attempts=3))

        assert incident.attempts == 2
        assert incident.detected == prior.detected

    @pytest.mark.asyncio
    async def test_last_allowed_failure_escalates_in_same_run(self):
        executor = RemediationExecutor(AGENT, [_prior(attempts=1)], now=fixed_now)

        incident = await executor.remediate(_detection(), Remedy(apply=Fix(fail=True), max_attempts=2))

        assert incident.status == "escalated"
        assert incident.severity == "critical"
        assert incident.attempts == 2
        assert executor.issues_escalated == 1

    @pytest.mark.asyncio
    async def test_cap_reached_escalates_without_attempting(self):
        fix = Fix()
        executor = RemediationExecutor(AGENT, [_prior(attempts=2)], now=fixed_now)

        incident = await executor.remediate(_detection(), Remedy(apply=fix, max_attempts=2))

        assert fix.calls == 0
        assert incident.status == "escalated"
        assert incident.attempts == 2

    @pytest.mark.asyncio
    async def test_escalated_prior_short_circuits(self):
        """Once escalated, nothing is attempted and attempts stay put."""
        fix = Fix()
        prior = _prior(attempts=2, status="escalated")
        executor = RemediationExecutor(AGENT, [prior], now=fixed_now)

        incident = await executor.remediate(_detection(), Remedy(apply=fix, max_attempts=5))

        assert fix.calls == 0
        assert incident.status == "escalated"
        assert incident.attempts == 2
        assert executor.issues_escalated == 1

    @pytest.mark.asyncio
    async def test_resolved_prior_starts_fresh_lifecycle(self):
        prior = _prior(attempts=2, status="resolved", resolved_at=minutes_ago(30))
        executor = RemediationExecutor(AGENT, [prior], now=fixed_now)

        incident = await executor.remediate(_detection(), Remedy(apply=Fix(fail=True), max_attempts=2))

        assert incident.status == "open"
        assert incident.attempts == 1
        assert incident.resolved_at is None
        assert incident.detected == isoformat(NOW)

    @pytest.mark.asyncio
    async def test_unconfirmed_fix_stays_open(self):
        """A fix whose effect cannot be observed is not counted as fixed."""
        executor = RemediationExecutor(AGENT, [], now=fixed_now)

        incident = await executor.remediate(_detection(), Remedy(apply=Fix(), confirms_fix=False))

        assert incident.status == "open"
        assert incident.attempts == 1
        assert incident.error is None
        assert executor.issues_fixed == 0

    @pytest.mark.asyncio
    async def test_duplicate_detection_in_run_is_ignored(self):
        fix = Fix()
        executor = RemediationExecutor(AGENT, [], now=fixed_now)

        first = await executor.remediate(_detection(), Remedy(apply=fix))
        second = await executor.remediate(_detection(), Remedy(apply=fix))

        assert first is second
        assert fix.calls == 1
        assert executor.issues_found == 1


class TestAdviseAndEscalate:
    """Test detections without an automated fix."""

    def test_advise_records_open_with_unchanged_attempts(self):
        executor = RemediationExecutor(AGENT, [_prior(attempts=1, severity="warning")], now=fixed_now)

        incident = executor.advise(_detection())

        assert incident.status == "open"
        assert incident.attempts == 1
        assert executor.issues_found == 1

    def test_escalated_prior_keeps_its_message(self):
        """A milder re-detection does not relabel an escalated record."""
        prior = _prior(status="escalated", message="web down, restarts exhausted")
        executor = RemediationExecutor(AGENT, [prior], now=fixed_now)
        detection = _detection()
        detection.severity = "warning"
        detection.message = "web slow"

        incident = executor.advise(detection)

        assert incident.status == "escalated"
        assert incident.severity == "critical"
        assert incident.message == "web down, restarts exhausted"

    def test_escalate_marks_critical(self):
        executor = RemediationExecutor(AGENT, [], now=fixed_now)
        detection = _detection()
        detection.severity = "warning"

        incident = executor.escalate(detection)

        assert incident.status == "escalated"
        assert incident.severity == "critical"
        assert incident.attempts == 0
        assert executor.issues_escalated == 1


class TestReconcileStale:
    """Test self-healing of incidents that were not re-raised."""

    def test_open_and_escalated_priors_resolve(self):
        open_prior = _prior(target_id="web")
        escalated_prior = _prior(target_id="realtime", status="escalated")
        executor = RemediationExecutor(AGENT, [open_prior, escalated_prior], now=fixed_now)

        resolved = executor.reconcile_stale()

        assert {i.target_id for i in resolved} == {"web", "realtime"}
        assert all(i.status == "resolved" and i.resolved_at == isoformat(NOW) for i in resolved)
        assert executor.issues_recovered == 2
        assert executor.issues_fixed == 0

    def test_re_raised_incident_is_not_resolved(self):
        executor = RemediationExecutor(AGENT, [_prior()], now=fixed_now)
        executor.advise(_detection())

        assert executor.reconcile_stale() == []

    def test_skip_types_are_left_alone(self):
        """A failed check's incidents are not resolved by its silence."""
        executor = RemediationExecutor(AGENT, [_prior(type_="pm2-errored")], now=fixed_now)

        assert executor.reconcile_stale(skip_types={"pm2-errored"}) == []
        assert executor.incidents == []

    def test_other_agents_incidents_are_untouched(self):
        other = _prior(agent="fleet-manager", type_="display_offline")
        executor = RemediationExecutor(AGENT, [other], now=fixed_now)

        assert executor.reconcile_stale() == []

    def test_carry_forward_keeps_prior_unchanged(self):
        prior = _prior(type_="display_offline", attempts=3)
        executor = RemediationExecutor(AGENT, [prior], now=fixed_now)

        assert executor.carry_forward("display_offline", "web") == prior
        assert executor.reconcile_stale() == []
        assert executor.incidents == [prior]
        assert executor.issues_found == 0
