"""Control-plane API module."""

from .client import EndpointStatus, OpsApiClient, check_endpoint, login

__all__ = [
    "EndpointStatus",
    "OpsApiClient",
    "check_endpoint",
    "login",
]
