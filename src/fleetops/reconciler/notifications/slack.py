"""Slack webhook alerts."""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx

from ..clock import isoformat, utcnow
from ..state.models import Incident, Severity, SystemStatus

logger = logging.getLogger(__name__)

STATUS_EMOJI = {
    SystemStatus.HEALTHY.value: ":large_green_circle:",
    SystemStatus.DEGRADED.value: ":large_yellow_circle:",
    SystemStatus.CRITICAL.value: ":red_circle:",
}

MAX_CRITICALS_SHOWN = 5
MAX_WARNINGS_SHOWN = 3


def _incident_list(incidents: List[Incident], limit: int) -> str:
    lines = "\n".join(f"* *{i.type}*: {i.message}" for i in incidents[:limit])
    if len(incidents) > limit:
        lines += f"\n_...and {len(incidents) - limit} more_"
    return lines


def build_slack_blocks(
    status: str,
    previous_status: str,
    open_incidents: List[Incident],
    fixed_count: int,
    now: Optional[datetime] = None,
) -> List[Dict[str, Any]]:
    """Block Kit payload summarising the system status change."""
    emoji = STATUS_EMOJI.get(status, ":red_circle:")
    blocks: List[Dict[str, Any]] = [
        {
            "type": "header",
            "text": {"type": "plain_text", "text": f"{emoji} Vizora Ops: {status}"},
        },
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": (
                    f"*Previous:* {previous_status} *Current:* {status}\n"
                    f"*Open incidents:* {len(open_incidents)} | *Auto-fixed:* {fixed_count}"
                ),
            },
        },
    ]

    criticals = [i for i in open_incidents if i.severity == Severity.CRITICAL.value]
    warnings = [i for i in open_incidents if i.severity == Severity.WARNING.value]

    if criticals:
        blocks.append({
            "type": "section",
            "text": {"type": "mrkdwn", "text": f"*Critical Incidents:*\n{_incident_list(criticals, MAX_CRITICALS_SHOWN)}"},
        })
    elif warnings:
        blocks.append({
            "type": "section",
            "text": {"type": "mrkdwn", "text": f"*Warnings:*\n{_incident_list(warnings, MAX_WARNINGS_SHOWN)}"},
        })

    if fixed_count > 0:
        plural = "s" if fixed_count > 1 else ""
        blocks.append({
            "type": "section",
            "text": {"type": "mrkdwn", "text": f"*Auto-remediated:* {fixed_count} issue{plural} fixed this cycle"},
        })

    blocks.append({
        "type": "context",
        "elements": [{"type": "mrkdwn", "text": f"Vizora Ops | {isoformat(now or utcnow())}"}],
    })
    return blocks


async def send_slack_alert(
    webhook_url: str,
    status: str,
    previous_status: str,
    open_incidents: List[Incident],
    fixed_count: int,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> bool:
    """Post a status alert to Slack. No-op without a webhook URL.

    Returns True if Slack accepted the message. Never raises.
    """
    if not webhook_url:
        logger.debug("SLACK_WEBHOOK_URL not set, skipping Slack alert")
        return False

    blocks = build_slack_blocks(status, previous_status, open_incidents, fixed_count)
    try:
        async with httpx.AsyncClient(timeout=10, transport=transport) as client:
            response = await client.post(webhook_url, json={"blocks": blocks})
        if not response.is_success:
            logger.warning(f"Slack webhook returned {response.status_code}")
            return False
    except httpx.HTTPError as e:
        logger.error(f"Slack alert failed: {e}")
        return False

    logger.info(f"Slack alert sent: {status}")
    return True
