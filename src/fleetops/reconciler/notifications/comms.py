"""Alerts through the comms service (Telegram relay)."""

import logging
from typing import List, Optional

import httpx

from ..state.models import Incident, Severity

logger = logging.getLogger(__name__)

MAX_INCIDENTS_LISTED = 20


def format_comms_message(status: str, open_incidents: List[Incident], fixed_count: int) -> str:
    """Markdown summary of live incidents for the comms channel."""
    criticals = [i for i in open_incidents if i.severity == Severity.CRITICAL.value]
    warnings = [i for i in open_incidents if i.severity == Severity.WARNING.value]

    lines = [
        f"*Vizora Ops: {status}*",
        f"Critical: {len(criticals)} | Warnings: {len(warnings)} | Auto-fixed: {fixed_count}",
    ]
    if open_incidents:
        lines.append("")
        for incident in open_incidents[:MAX_INCIDENTS_LISTED]:
            lines.append(
                f"- {incident.severity.upper()} `{incident.type}` "
                f"{incident.target}:{incident.target_id}: {incident.message}"
            )
        if len(open_incidents) > MAX_INCIDENTS_LISTED:
            lines.append(f"_...and {len(open_incidents) - MAX_INCIDENTS_LISTED} more_")
    else:
        lines.append("No open incidents.")
    return "\n".join(lines)


async def send_comms_alert(
    comms_url: str,
    status: str,
    open_incidents: List[Incident],
    fixed_count: int,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> bool:
    """Send an alert via the comms service. No-op without COMMS_URL.

    Returns True if the comms service accepted it. Never raises.
    """
    if not comms_url:
        logger.debug("COMMS_URL not set, skipping comms alert")
        return False

    message = format_comms_message(status, open_incidents, fixed_count)
    try:
        async with httpx.AsyncClient(timeout=10, transport=transport) as client:
            response = await client.post(
                comms_url,
                json={
                    "message": message,
                    "from": "fleetops",
                    "channel": "telegram",
                    "parse_mode": "Markdown",
                },
            )
            response.raise_for_status()
    except httpx.HTTPError as e:
        logger.error(f"Failed to send comms alert: {e}")
        return False

    logger.info(f"Comms alert sent: {status}")
    return True
