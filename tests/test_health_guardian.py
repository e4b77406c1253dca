"""Tests for the health guardian agent."""

import httpx
import pytest

from conftest import MB, FakePm2, FakeSleep, fixed_now, pm2_entry

from fleetops.reconciler.agents import EXIT_ISSUES, EXIT_OK, HealthGuardian
from fleetops.reconciler.config import SERVICE_PROCESS_NAMES
from fleetops.reconciler.state import Incident, OpsState, make_incident_id
from fleetops.reconciler.supervisor import Pm2Supervisor

MIDDLEWARE_HEALTH = "http://localhost:3000/api/v1/health/ready"
SERVICE_DOWN_ID = make_incident_id("health-guardian", "service-down", "middleware")


class Endpoints:
    """Health endpoints answering from a url -> status map (default 200)."""

    def __init__(self):
        self.status = {}
        self.hits = []

    def handler(self, request):
        url = str(request.url)
        self.hits.append(url)
        return httpx.Response(self.status.get(url, 200))

    @property
    def transport(self):
        return httpx.MockTransport(self.handler)


def _online_processes(memory=100 * MB):
    return [pm2_entry(name, pm_id, "online", memory) for pm_id, name in enumerate(SERVICE_PROCESS_NAMES)]


def _agent(config, store, endpoints, pm2, sleep=None):
    return HealthGuardian(
        config,
        store=store,
        transport=endpoints.transport,
        now=fixed_now,
        sleep=sleep or FakeSleep(),
        supervisor=Pm2Supervisor(SERVICE_PROCESS_NAMES, runner=pm2),
    )


class TestServiceEndpoints:
    """Test restart-and-recheck of unhealthy services."""

    @pytest.mark.asyncio
    async def test_all_healthy_exits_zero(self, config, store):
        pm2 = FakePm2(_online_processes())

        code = await _agent(config, store, Endpoints(), pm2).run()

        assert code == EXIT_OK
        assert pm2.control_calls() == []
        result = store.read().agent_results["health-guardian"]
        assert result.issues_found == 0

    @pytest.mark.asyncio
    async def test_restart_then_recheck_recovers(self, config, store):
        """A restart that brings the service back resolves the incident."""
        endpoints = Endpoints()
        endpoints.status[MIDDLEWARE_HEALTH] = 503
        pm2 = FakePm2(_online_processes())
        sleep = FakeSleep()

        def recover_on_restart(args, **kwargs):
            if args[1] == "restart":
                endpoints.status[MIDDLEWARE_HEALTH] = 200
            return pm2(args, **kwargs)

        agent = _agent(config, store, endpoints, recover_on_restart, sleep)
        code = await agent.run()

        assert code == EXIT_OK
        assert sleep.calls == [30.0]
        incident = store.read().find_incident(SERVICE_DOWN_ID)
        assert incident.status == "resolved"
        assert incident.attempts == 1

    @pytest.mark.asyncio
    async def test_repeated_failure_escalates_then_stops_restarting(self, config, store):
        """Down twice with a cap of two: open, then escalated, then left alone."""
        endpoints = Endpoints()
        endpoints.status[MIDDLEWARE_HEALTH] = 503
        pm2 = FakePm2(_online_processes())

        code = await _agent(config, store, endpoints, pm2).run()
        first = store.read().find_incident(SERVICE_DOWN_ID)
        assert code == EXIT_ISSUES
        assert first.status == "open"
        assert first.attempts == 1
        assert pm2.control_calls() == [["restart", "vizora-middleware"]]

        code = await _agent(config, store, endpoints, pm2).run()
        second = store.read().find_incident(SERVICE_DOWN_ID)
        assert code == EXIT_ISSUES
        assert second.status == "escalated"
        assert second.severity == "critical"
        assert second.attempts == 2
        assert second.detected == first.detected

        await _agent(config, store, endpoints, pm2).run()
        third = store.read().find_incident(SERVICE_DOWN_ID)
        assert third.status == "escalated"
        assert third.attempts == 2
        assert len(pm2.control_calls()) == 2

        state = store.read()
        assert [i.id for i in state.incidents].count(SERVICE_DOWN_ID) == 1
        restarts = [r for r in state.recent_remediations if r.method == "pm2 restart"]
        assert len(restarts) == 2
        assert all(r.success is False for r in restarts)

    @pytest.mark.asyncio
    async def test_service_back_on_its_own_is_recovered(self, config, store):
        endpoints = Endpoints()
        endpoints.status[MIDDLEWARE_HEALTH] = 503
        pm2 = FakePm2(_online_processes())
        await _agent(config, store, endpoints, pm2).run()

        endpoints.status[MIDDLEWARE_HEALTH] = 200
        code = await _agent(config, store, endpoints, pm2).run()

        assert code == EXIT_OK
        state = store.read()
        assert state.find_incident(SERVICE_DOWN_ID).status == "resolved"
        assert state.agent_results["health-guardian"].issues_recovered == 1
        assert len(pm2.control_calls()) == 1


class TestProcessStatus:
    """Test the pm2 process checks."""

    @pytest.mark.asyncio
    async def test_errored_process_is_restarted(self, config, store):
        processes = _online_processes()
        processes[2] = pm2_entry("vizora-web", 2, "errored", 0)
        pm2 = FakePm2(processes)

        code = await _agent(config, store, Endpoints(), pm2).run()

        assert code == EXIT_OK
        assert pm2.control_calls() == [["restart", "vizora-web"]]
        incident = store.read().find_incident(make_incident_id("health-guardian", "pm2-errored", "vizora-web:2"))
        assert incident.status == "resolved"

    @pytest.mark.asyncio
    async def test_high_memory_triggers_graceful_reload(self, config, store):
        processes = _online_processes()
        processes[0] = pm2_entry("vizora-middleware", 0, "online", 480 * MB)
        pm2 = FakePm2(processes)

        await _agent(config, store, Endpoints(), pm2).run()

        assert pm2.control_calls() == [["reload", "vizora-middleware"]]
        state = store.read()
        incident = state.find_incident(make_incident_id("health-guardian", "high-memory", "vizora-middleware:0"))
        assert incident.severity == "warning"
        assert incident.status == "resolved"
        assert state.recent_remediations[-1].method == "pm2 reload"

    @pytest.mark.asyncio
    async def test_unreachable_pm2_is_isolated(self, config, store):
        """pm2 going away fails one check but keeps its prior incidents."""
        errored_id = make_incident_id("health-guardian", "pm2-errored", "vizora-web:2")
        prior = OpsState(incidents=[Incident(
            id=errored_id,
            agent="health-guardian",
            type="pm2-errored",
            severity="critical",
            target="pm2-process",
            target_id="vizora-web:2",
            attempts=1,
        )])
        store.write(prior)
        endpoints = Endpoints()
        endpoints.status[MIDDLEWARE_HEALTH] = 503
        pm2 = FakePm2()
        pm2.unreachable = True

        code = await _agent(config, store, endpoints, pm2).run()

        state = store.read()
        result = state.agent_results["health-guardian"]
        assert code == EXIT_ISSUES
        assert any(e.startswith("process-status") for e in result.check_errors)
        assert state.find_incident(errored_id).status == "open"
        assert state.find_incident(SERVICE_DOWN_ID) is not None
