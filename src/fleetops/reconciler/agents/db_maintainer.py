"""DB maintainer agent.

Runs daily. Routine housekeeping with no incidents of its own: VACUUM
ANALYZE on the high-churn tables, a Redis memory and key count report,
truncation of stale log files and a pm2 log flush. Any task that fails is
recorded as a check error, which makes the run exit 1.
"""

import logging
from datetime import timedelta
from pathlib import Path
from typing import Any, Callable, List, Optional

import psycopg2
import redis
from psycopg2 import sql

from ..config import SERVICE_PROCESS_NAMES
from ..errors import CheckError
from ..supervisor.pm2 import Pm2Supervisor
from .base import Check, Reconciler, RunContext

logger = logging.getLogger(__name__)

AGENT = "db-maintainer"

# High-churn tables, vacuumed one at a time
VACUUM_TABLES = ("Content", "Display", "Schedule", "Playlist", "AuditLog", "User")


class DbMaintainer(Reconciler):
    name = AGENT
    needs_api = False

    def __init__(
        self,
        *args,
        supervisor: Optional[Pm2Supervisor] = None,
        db_connect: Optional[Callable[..., Any]] = None,
        redis_factory: Optional[Callable[..., Any]] = None,
        logs_dir: Optional[Path] = None,
        **kwargs,
    ):
        super().__init__(*args, **kwargs)
        self.supervisor = supervisor or Pm2Supervisor(SERVICE_PROCESS_NAMES)
        self.db_connect = db_connect or psycopg2.connect
        self.redis_factory = redis_factory or redis.Redis.from_url
        self.logs_dir = Path(logs_dir) if logs_dir else Path(self.config.state_file).parent

    def checks(self) -> List[Check]:
        return [
            Check("vacuum-analyze", self.vacuum_analyze),
            Check("redis-status", self.redis_status),
            Check("log-rotation", self.rotate_logs),
            Check("pm2-flush", self.pm2_flush),
        ]

    async def vacuum_analyze(self, ctx: RunContext) -> None:
        if not self.config.database_url:
            logger.info(f"[{self.name}] DATABASE_URL not set, skipping VACUUM ANALYZE")
            return

        logger.info(f"[{self.name}] Running VACUUM ANALYZE on {len(VACUUM_TABLES)} tables")
        try:
            conn = self.db_connect(
                self.config.database_url,
                connect_timeout=self.policy.connect_timeout_seconds,
            )
        except psycopg2.Error as e:
            raise CheckError(f"database unreachable: {e}") from e

        failed = []
        try:
            conn.autocommit = True  # VACUUM can't run in a transaction
            cursor = conn.cursor()
            try:
                cursor.execute(
                    "SET statement_timeout = %s",
                    (int(self.policy.vacuum_timeout_seconds * 1000),),
                )
                for table in VACUUM_TABLES:
                    try:
                        cursor.execute(sql.SQL("VACUUM ANALYZE {}").format(sql.Identifier(table)))
                        logger.info(f"[{self.name}]   VACUUM ANALYZE \"{table}\" OK")
                    except psycopg2.Error as e:
                        logger.error(f"[{self.name}]   VACUUM ANALYZE \"{table}\" failed: {e}")
                        failed.append(table)
            finally:
                cursor.close()
        finally:
            conn.close()

        logger.info(
            f"[{self.name}] VACUUM ANALYZE complete: "
            f"{len(VACUUM_TABLES) - len(failed)} OK, {len(failed)} failed"
        )
        if failed:
            raise CheckError(f"VACUUM ANALYZE failed for {', '.join(failed)}")

    async def redis_status(self, ctx: RunContext) -> None:
        client = self.redis_factory(self.config.redis_url, decode_responses=True, socket_timeout=10)
        try:
            memory = client.info("memory").get("used_memory_human", "unknown")
            keys = client.dbsize()
        except redis.RedisError as e:
            raise CheckError(f"redis unavailable: {e}") from e
        finally:
            client.close()
        logger.info(f"[{self.name}] Redis memory: {memory}, keys: {keys}")

    async def rotate_logs(self, ctx: RunContext) -> None:
        """Truncate ``*.log`` files not written to within the age limit.

        Files are emptied rather than removed because pm2 keeps them open.
        """
        max_age = self.policy.log_max_age_days
        if not self.logs_dir.is_dir():
            logger.info(f"[{self.name}] Logs directory not found: {self.logs_dir}")
            return

        logger.info(f"[{self.name}] Rotating logs older than {max_age} days in {self.logs_dir}")
        cutoff = (ctx.now - timedelta(days=max_age)).timestamp()
        truncated, errors = [], []
        for path in sorted(self.logs_dir.glob("*.log")):
            try:
                if path.stat().st_mtime < cutoff:
                    path.write_text("")
                    truncated.append(path.name)
                    logger.info(f"[{self.name}]   Truncated: {path.name}")
            except OSError as e:
                logger.error(f"[{self.name}]   Failed to truncate {path.name}: {e}")
                errors.append(path.name)

        logger.info(f"[{self.name}] Log rotation: {len(truncated)} truncated, {len(errors)} errors")
        if errors:
            raise CheckError(f"could not truncate {', '.join(errors)}")

    async def pm2_flush(self, ctx: RunContext) -> None:
        if not self.supervisor.flush():
            raise CheckError("pm2 flush failed")
