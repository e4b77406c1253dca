"""Push the ops journal to the control-plane dashboard."""

import logging
from typing import Optional

import httpx

from ..state.models import OpsState

logger = logging.getLogger(__name__)

DASHBOARD_TIMEOUT = 10.0


async def update_dashboard(
    base_url: str,
    token: str,
    state: OpsState,
    api_prefix: str = "/api/v1",
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> bool:
    """POST the full ops state to ``/health/ops-status``. Never raises."""
    data = state.to_dict()
    payload = {
        "systemStatus": data["systemStatus"],
        "lastUpdated": data["lastUpdated"],
        "lastRun": data["lastRun"],
        "lastAlert": data["lastAlert"],
        "incidents": data["incidents"],
        "recentRemediations": data["recentRemediations"],
        "agentResults": data["agentResults"],
    }
    try:
        async with httpx.AsyncClient(timeout=DASHBOARD_TIMEOUT, transport=transport) as client:
            response = await client.post(
                f"{base_url.rstrip('/')}{api_prefix}/health/ops-status",
                json=payload,
                headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
            )
        if not response.is_success:
            logger.warning(f"Dashboard update returned {response.status_code}")
            return False
    except httpx.HTTPError as e:
        logger.warning(f"Dashboard update failed: {e}")
        return False
    return True
