"""Incident lifecycle module."""

from .executor import Detection, RemediationExecutor, Remedy

__all__ = [
    "Detection",
    "RemediationExecutor",
    "Remedy",
]
