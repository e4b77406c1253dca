"""Shared fakes for the reconciler tests.

HTTP goes through httpx.MockTransport, pm2 through an injected runner, and
time through a fixed clock, so no test touches the network or a real
process manager.
"""

import json
import subprocess
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from fleetops.reconciler.clock import isoformat
from fleetops.reconciler.config import OpsConfig
from fleetops.reconciler.state import OpsStateStore

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
MB = 1024 * 1024


def fixed_now():
    return NOW


def minutes_ago(minutes: float) -> str:
    return isoformat(NOW - timedelta(minutes=minutes))


def days_ago(days: float) -> str:
    return isoformat(NOW - timedelta(days=days))


class FakeControlPlane:
    """In-memory control plane answering the endpoints the agents use."""

    def __init__(self, **collections):
        self.collections = {name: list(items) for name, items in collections.items()}
        self.health = {}
        self.login_status = 200
        self.fail_paths = {}
        self.requests = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        body = json.loads(request.content) if request.content else None
        self.requests.append((request.method, path, body))

        if path in self.fail_paths:
            return httpx.Response(self.fail_paths[path], json={"message": "boom"})

        if path == "/api/v1/auth/login":
            if self.login_status != 200:
                return httpx.Response(self.login_status, json={"message": "Invalid credentials"})
            return httpx.Response(200, json={"success": True, "data": {"accessToken": "test-token"}})

        if request.method == "GET":
            if path == "/api/v1/health":
                return httpx.Response(200, json=self.health)
            name = path[len("/api/v1/"):]
            if name in self.collections:
                return httpx.Response(200, json={"success": True, "data": self.collections[name]})
            return httpx.Response(404, json={"message": "not found"})

        return httpx.Response(200, json={"success": True, "data": body})

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def mutations(self):
        """POST/PATCH requests other than login."""
        return [
            (method, path, body)
            for method, path, body in self.requests
            if method in ("POST", "PATCH") and not path.endswith("/auth/login")
        ]


def pm2_entry(name, pm_id=0, status="online", memory=100 * MB):
    return {
        "name": name,
        "pm_id": pm_id,
        "pm2_env": {"status": status, "restart_time": 0, "pm_uptime": 0},
        "monit": {"memory": memory, "cpu": 1.5},
    }


class FakePm2:
    """Stands in for subprocess.run when driving the pm2 adapter."""

    def __init__(self, processes=None, fail_verbs=()):
        self.processes = processes or []
        self.fail_verbs = set(fail_verbs)
        self.unreachable = False
        self.calls = []

    def __call__(self, args, capture_output=True, text=True, timeout=None):
        self.calls.append(list(args))
        verb = args[1]
        if verb == "jlist":
            if self.unreachable:
                raise FileNotFoundError("pm2")
            return subprocess.CompletedProcess(args, 0, stdout=json.dumps(self.processes), stderr="")
        if verb in self.fail_verbs:
            return subprocess.CompletedProcess(args, 1, stdout="", stderr="[PM2] error")
        return subprocess.CompletedProcess(args, 0, stdout="", stderr="")

    def control_calls(self):
        return [call[1:] for call in self.calls if call[1] != "jlist"]


class FakeSleep:
    """Records cooldowns instead of waiting."""

    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


@pytest.fixture
def state_file(tmp_path):
    return tmp_path / "ops-state.json"


@pytest.fixture
def store(state_file):
    return OpsStateStore(state_file)


@pytest.fixture
def config(state_file):
    return OpsConfig(
        email="ops@example.com",
        password="secret",
        state_file=str(state_file),
    )
