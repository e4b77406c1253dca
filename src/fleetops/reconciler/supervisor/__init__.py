"""Process supervisor module."""

from .pm2 import Pm2Supervisor, ProcessInfo

__all__ = [
    "Pm2Supervisor",
    "ProcessInfo",
]
