"""Fleet manager agent.

Runs every 10 minutes. Watches display heartbeats: pings displays that went
quiet recently, escalates ones that stayed offline, resets displays stuck in
an error state, flags whole organizations going dark and online displays
with nothing to show.
"""

import logging
import math
from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, List, Set

from ..clock import parse_timestamp
from ..incidents.executor import Detection, Remedy
from ..state.models import Severity
from .base import Check, Reconciler, RunContext

logger = logging.getLogger(__name__)

AGENT = "fleet-manager"


def display_label(display: Dict[str, Any]) -> str:
    return display.get("name") or str(display.get("id"))


def minutes_since_last_seen(display: Dict[str, Any], now: datetime) -> float:
    """Minutes since the latest heartbeat; infinite when never seen."""
    seen = parse_timestamp(display.get("lastHeartbeat") or display.get("lastSeen"))
    if seen is None:
        return math.inf
    return (now - seen).total_seconds() / 60


def is_error_state(display: Dict[str, Any]) -> bool:
    return display.get("status") == "error" or bool(display.get("error")) or bool(display.get("errorState"))


class FleetManager(Reconciler):
    name = AGENT
    resources = (("displays", "/displays"), ("schedules", "/schedules"))

    def checks(self) -> List[Check]:
        return [
            Check("offline-displays", self.check_offline, ("display_offline", "display_offline_persistent")),
            Check("error-displays", self.check_error_state, ("display_error",)),
            Check("cluster-offline", self.check_cluster_offline, ("cluster_offline",)),
            Check("no-content", self.check_no_content, ("no_content",)),
        ]

    def displays(self, ctx: RunContext) -> List[Dict[str, Any]]:
        return [d for d in ctx.snapshot.get("displays", []) if isinstance(d, dict) and d.get("id")]

    def is_online(self, display: Dict[str, Any], now: datetime) -> bool:
        if is_error_state(display) or display.get("status") == "offline":
            return False
        return minutes_since_last_seen(display, now) < self.policy.offline_threshold_minutes

    async def check_offline(self, ctx: RunContext) -> None:
        for display in self.displays(ctx):
            mins = minutes_since_last_seen(display, ctx.now)
            if mins < self.policy.offline_threshold_minutes:
                continue

            display_id = str(display["id"])
            label = display_label(display)
            offline_for = "never seen" if math.isinf(mins) else f"{round(mins)}min"

            if mins >= self.policy.persistent_threshold_minutes:
                logger.warning(f"[{self.name}] {label}: offline {offline_for} (persistent), escalating")
                ctx.executor.escalate(Detection(
                    type="display_offline_persistent",
                    target="display",
                    target_id=display_id,
                    severity=Severity.CRITICAL.value,
                    message=f'Display "{label}" has been offline ({offline_for})',
                    remediation="Manual investigation required, display unresponsive past the persistent threshold",
                ))
                # the earlier ping incident stays open until the display returns
                ctx.executor.carry_forward("display_offline", display_id)
                continue

            logger.info(f"[{self.name}] {label}: offline {offline_for}, attempting ping")
            await self._ping(ctx, display, display_id, label, mins)

    async def _ping(self, ctx: RunContext, display: Dict[str, Any], display_id: str, label: str, mins: float) -> None:
        async def ping():
            await ctx.api.post(
                "/displays/ping",
                {"displayId": display_id},
                target="display",
                target_id=display_id,
                action=f'Ping display "{label}" to trigger reconnect',
                before={
                    "lastSeen": display.get("lastHeartbeat") or display.get("lastSeen"),
                    "minutesOffline": round(mins),
                },
            )

        await ctx.executor.remediate(
            Detection(
                type="display_offline",
                target="display",
                target_id=display_id,
                severity=Severity.WARNING.value,
                message=f'Display "{label}" offline for {round(mins)}min',
                remediation="POST /displays/ping, reconnect attempt",
            ),
            Remedy(apply=ping, max_attempts=self.policy.max_ping_attempts, confirms_fix=False),
        )

    async def check_error_state(self, ctx: RunContext) -> None:
        for display in self.displays(ctx):
            if not is_error_state(display):
                continue

            display_id = str(display["id"])
            label = display_label(display)
            reason = display.get("error") or display.get("errorState") or "none"
            logger.warning(
                f"[{self.name}] {label}: in error state (status={display.get('status')}, error={reason}), resetting"
            )

            async def reset(display=display, display_id=display_id, label=label):
                await ctx.api.patch(
                    f"/displays/{display_id}",
                    {"status": "inactive"},
                    target="display",
                    target_id=display_id,
                    action=f'Reset error-state display "{label}" to inactive',
                    before={
                        "status": display.get("status"),
                        "error": display.get("error"),
                        "errorState": display.get("errorState"),
                    },
                )

            await ctx.executor.remediate(
                Detection(
                    type="display_error",
                    target="display",
                    target_id=display_id,
                    severity=Severity.WARNING.value,
                    message=f'Display "{label}" was in error state',
                    remediation='PATCH /displays/:id {"status": "inactive"}',
                ),
                Remedy(apply=reset, max_attempts=self.policy.max_reset_attempts),
            )

    async def check_cluster_offline(self, ctx: RunContext) -> None:
        by_org: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        for display in self.displays(ctx):
            org_id = display.get("organizationId")
            if org_id:
                by_org[str(org_id)].append(display)

        for org_id, org_displays in by_org.items():
            if len(org_displays) < self.policy.cluster_min_displays:
                continue
            if not all(
                minutes_since_last_seen(d, ctx.now) >= self.policy.offline_threshold_minutes
                for d in org_displays
            ):
                continue

            logger.warning(f"[{self.name}] Cluster outage: all {len(org_displays)} displays in org {org_id} offline")
            ctx.executor.escalate(Detection(
                type="cluster_offline",
                target="organization",
                target_id=org_id,
                severity=Severity.CRITICAL.value,
                message=(
                    f"All {len(org_displays)} displays in organization {org_id} are offline, "
                    "possible network or infrastructure issue"
                ),
                remediation="Manual investigation required, entire org fleet is unreachable",
            ))

    async def check_no_content(self, ctx: RunContext) -> None:
        scheduled: Set[str] = {
            str(s["displayId"])
            for s in ctx.snapshot.get("schedules", [])
            if isinstance(s, dict) and s.get("displayId") and s.get("isActive") is not False
        }

        for display in self.displays(ctx):
            if not self.is_online(display, ctx.now):
                continue
            display_id = str(display["id"])
            if display.get("currentPlaylistId") or display_id in scheduled:
                continue

            label = display_label(display)
            logger.info(f"[{self.name}] {label}: online but has no playlist and no active schedule")
            ctx.executor.advise(Detection(
                type="no_content",
                target="display",
                target_id=display_id,
                severity=Severity.WARNING.value,
                message=f'Display "{label}" is online but has no playlist assigned and no active schedule',
                remediation="Assign a playlist or schedule to the display via the dashboard",
            ))
