"""Notification module."""

from .comms import send_comms_alert
from .dashboard import update_dashboard
from .slack import send_slack_alert

__all__ = [
    "send_comms_alert",
    "send_slack_alert",
    "update_dashboard",
]
