"""Ops reporter agent.

Runs every 30 minutes. Read-only aggregation over the journal the other
agents write: derives the system status, warns about agents that stopped
running, alerts on status transitions, pushes the journal to the dashboard
and prunes old history. It never remediates anything.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from ..api.client import login
from ..clock import isoformat, parse_timestamp
from ..errors import AuthError, FetchError
from ..notifications import send_comms_alert, send_slack_alert, update_dashboard
from ..state.models import OpsState, Severity, SystemStatus
from ..state.store import determine_system_status, prune
from .base import EXIT_ISSUES, EXIT_OK, Check, Reconciler

logger = logging.getLogger(__name__)

AGENT = "ops-reporter"


@dataclass
class AlertDecision:
    should_alert: bool
    is_recovery: bool
    reason: str


def decide_alert(
    previous: str,
    current: str,
    last_alert: Optional[datetime],
    now: datetime,
    suppression: timedelta,
) -> AlertDecision:
    """Alert on any transition; repeat CRITICAL only once the window has passed."""
    healthy = SystemStatus.HEALTHY.value
    if current == healthy and previous != healthy:
        return AlertDecision(True, True, f"Recovery: {previous} -> {current}")

    if current != previous:
        return AlertDecision(True, False, f"Status changed: {previous} -> {current}")

    if current == SystemStatus.CRITICAL.value:
        if last_alert is None:
            return AlertDecision(True, False, "CRITICAL persists, no alert on record")
        since = now - last_alert
        if since > suppression:
            return AlertDecision(True, False, f"CRITICAL persists for >{round(since.total_seconds() / 60)}min")

    return AlertDecision(False, False, "No status change; within suppression window")


def stale_agents(last_run: Dict[str, str], expected: Dict[str, float], now: datetime) -> List[str]:
    """Names of expected agents that never ran or ran longer ago than allowed."""
    stale = []
    for agent, threshold_minutes in expected.items():
        ran_at = parse_timestamp(last_run.get(agent))
        if ran_at is None:
            logger.warning(f"[{AGENT}] {agent} has never run")
            stale.append(agent)
            continue
        elapsed = (now - ran_at).total_seconds() / 60
        if elapsed > threshold_minutes:
            logger.warning(
                f"[{AGENT}] {agent} is stale, last ran {round(elapsed)}min ago (threshold {threshold_minutes}min)"
            )
            stale.append(agent)
        else:
            logger.info(f"[{AGENT}] {agent}: fresh (last ran {round(elapsed)}min ago)")
    return stale


class OpsReporter(Reconciler):
    name = AGENT
    needs_api = False

    def checks(self) -> List[Check]:
        return []

    async def _run_once(self) -> int:
        logger.info(f"[{self.name}] Starting ops reporting cycle")
        now = self.now()

        snapshot = self.store.read()
        previous = snapshot.system_status
        current = determine_system_status(snapshot)
        logger.info(
            f"[{self.name}] Journal: status={previous}, incidents={len(snapshot.incidents)}, "
            f"remediations={len(snapshot.recent_remediations)}"
        )
        logger.info(f"[{self.name}] System status: {previous} -> {current}")

        stale_agents(snapshot.last_run, self.policy.expected_agents, now)

        decision = decide_alert(
            previous,
            current,
            parse_timestamp(snapshot.last_alert),
            now,
            timedelta(minutes=self.policy.alert_suppression_minutes),
        )
        logger.info(f"[{self.name}] Alert decision: alert={decision.should_alert}, reason=\"{decision.reason}\"")

        if decision.should_alert:
            await self.send_alerts(snapshot, previous, current, decision)
        else:
            logger.info(f"[{self.name}] Alert suppressed")

        snapshot.system_status = current
        await self.push_dashboard(snapshot)

        with self.store.transaction() as state:
            state.system_status = current
            if decision.should_alert:
                state.last_alert = isoformat(now)
            incidents_pruned, remediations_pruned = prune(
                state, timedelta(hours=self.policy.prune_age_hours), now=now
            )
            if incidents_pruned or remediations_pruned:
                logger.info(
                    f"[{self.name}] Pruned {incidents_pruned} old incidents, "
                    f"{remediations_pruned} old remediations"
                )
            state.last_run[self.name] = isoformat(now)
            state.last_updated = isoformat(now)
            live = state.live_incidents()

        critical = sum(1 for i in live if i.severity == Severity.CRITICAL.value)
        logger.info(
            f"[{self.name}] Cycle complete - status: {current}, live: {len(live)} "
            f"({critical} critical), alerted: {decision.should_alert}"
        )
        return EXIT_OK if current == SystemStatus.HEALTHY.value else EXIT_ISSUES

    async def send_alerts(self, state: OpsState, previous: str, current: str, decision: AlertDecision) -> None:
        live = state.live_incidents()
        fixed = sum(r.issues_fixed for r in state.agent_results.values())

        await send_slack_alert(
            self.config.slack_webhook_url, current, previous, live, fixed, transport=self.transport
        )
        if decision.is_recovery:
            logger.info(f"[{self.name}] Recovery alert sent to Slack only")
            return
        await send_comms_alert(self.config.comms_url, current, live, fixed, transport=self.transport)

    async def push_dashboard(self, state: OpsState) -> None:
        if not (self.config.dashboard_email and self.config.dashboard_password):
            logger.info(f"[{self.name}] Dashboard update skipped, no dashboard credentials")
            return
        try:
            token = await login(
                self.config.base_url,
                self.config.dashboard_email,
                self.config.dashboard_password,
                api_prefix=self.config.api_prefix,
                transport=self.transport,
            )
        except (AuthError, FetchError) as e:
            logger.warning(f"[{self.name}] Dashboard update skipped, login failed: {e}")
            return
        if await update_dashboard(
            self.config.base_url, token, state, api_prefix=self.config.api_prefix, transport=self.transport
        ):
            logger.info(f"[{self.name}] Dashboard updated")
