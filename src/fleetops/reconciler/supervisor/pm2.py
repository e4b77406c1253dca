"""PM2 process supervisor adapter.

Only restart, reload, flush and jlist are ever issued, always as argument
lists, and process names only come from the allow-list the adapter was built
with. Nothing here
raises: command failures are logged and reported as False or an empty list.
"""

import json
import logging
import subprocess
from dataclasses import dataclass
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional

from ..errors import SupervisorError

logger = logging.getLogger(__name__)

COMMAND_TIMEOUT = 30
LIST_TIMEOUT = 15
FLUSH_TIMEOUT = 10


@dataclass
class ProcessInfo:
    """One entry from ``pm2 jlist``."""
    name: str
    pm_id: int
    status: str = "unknown"
    memory_bytes: int = 0
    cpu: float = 0.0
    restart_count: int = 0
    uptime: Optional[int] = None

    @property
    def label(self) -> str:
        return f"{self.name}:{self.pm_id}"

    @classmethod
    def from_jlist(cls, entry: Dict[str, Any]) -> "ProcessInfo":
        env = entry.get("pm2_env") or {}
        monit = entry.get("monit") or {}
        return cls(
            name=str(entry["name"]),
            pm_id=int(entry.get("pm_id", 0)),
            status=str(env.get("status", "unknown")),
            memory_bytes=int(monit.get("memory") or 0),
            cpu=float(monit.get("cpu") or 0.0),
            restart_count=int(env.get("restart_time") or 0),
            uptime=env.get("pm_uptime"),
        )


class Pm2Supervisor:
    """Narrow wrapper around the pm2 CLI."""

    def __init__(
        self,
        allowed_names: Iterable[str],
        binary: str = "pm2",
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ):
        self.allowed_names: FrozenSet[str] = frozenset(allowed_names)
        self.binary = binary
        self._runner = runner
        self.reachable = True

    def _run(self, args: List[str], timeout: int) -> subprocess.CompletedProcess:
        try:
            result = self._runner(
                [self.binary, *args],
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise SupervisorError(f"{self.binary} {args[0]} timed out after {timeout}s") from e
        except OSError as e:
            raise SupervisorError(f"{self.binary} not runnable: {e}") from e

        if result.returncode != 0:
            stderr = (result.stderr or "").strip()[:200]
            raise SupervisorError(f"{self.binary} {args[0]} exited {result.returncode}: {stderr}")
        return result

    def _control(self, verb: str, name: str) -> bool:
        if name not in self.allowed_names:
            logger.error(f"Refusing pm2 {verb} for non-allow-listed process: {name!r}")
            return False
        try:
            self._run([verb, name], COMMAND_TIMEOUT)
        except SupervisorError as e:
            logger.error(f"pm2 {verb} {name} failed: {e}")
            return False
        logger.info(f"pm2 {verb} {name} succeeded")
        return True

    def restart(self, name: str) -> bool:
        """Hard restart."""
        return self._control("restart", name)

    def reload(self, name: str) -> bool:
        """Graceful reload, zero-downtime in cluster mode."""
        return self._control("reload", name)

    def flush(self) -> bool:
        """Empty pm2's log files. Takes no process name."""
        try:
            self._run(["flush"], FLUSH_TIMEOUT)
        except SupervisorError as e:
            logger.error(f"pm2 flush failed: {e}")
            return False
        logger.info("pm2 flush succeeded")
        return True

    def list_processes(self) -> List[ProcessInfo]:
        """Parse ``pm2 jlist``. Empty list if pm2 is unavailable.

        ``reachable`` is updated so callers can tell "no processes" from
        "could not ask".
        """
        try:
            result = self._run(["jlist"], LIST_TIMEOUT)
            parsed = json.loads(result.stdout or "[]")
        except (SupervisorError, ValueError) as e:
            logger.warning(f"Failed to read pm2 process list, pm2 may not be running: {e}")
            self.reachable = False
            return []

        self.reachable = True
        if not isinstance(parsed, list):
            return []

        processes = []
        for entry in parsed:
            try:
                processes.append(ProcessInfo.from_jlist(entry))
            except (KeyError, TypeError, ValueError) as e:
                logger.debug(f"Skipping unparsable pm2 entry: {e}")
        return processes
