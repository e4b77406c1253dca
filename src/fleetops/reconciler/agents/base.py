"""Reconciler loop shared by every agent.

One run: authenticate, fetch the baseline collections concurrently, run each
check against that snapshot, reconcile incidents that were not re-raised,
persist, and map the outcome to an exit code. Fatal errors return before
anything is written.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import httpx

from ..api.client import OpsApiClient, login
from ..clock import utcnow
from ..config import OpsConfig
from ..errors import AuthError, FetchError
from ..incidents.executor import RemediationExecutor
from ..state.models import AgentResult, RemediationAction
from ..state.store import OpsStateStore, add_remediation, record_agent_run

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ISSUES = 1
EXIT_FATAL = 2


@dataclass
class RunContext:
    """Everything a check may touch during one run."""
    executor: RemediationExecutor
    snapshot: Dict[str, Any]
    api: Optional[OpsApiClient] = None
    now: datetime = field(default_factory=utcnow)
    audit: List[RemediationAction] = field(default_factory=list)

    def record(self, action: RemediationAction) -> None:
        """Audit a remediation that did not go through the API client."""
        self.audit.append(action)


@dataclass
class Check:
    """A named heuristic and the incident types it can raise."""
    name: str
    run: Callable[[RunContext], Awaitable[None]]
    incident_types: Tuple[str, ...] = ()


def exit_code_for(result: AgentResult) -> int:
    # a check that could not evaluate is not a clean run
    if result.check_errors:
        return EXIT_ISSUES
    if result.issues_found == 0:
        return EXIT_OK
    if result.issues_fixed < result.issues_found:
        return EXIT_ISSUES
    return EXIT_OK


class Reconciler:
    """Base class for agents. Subclasses declare resources and checks."""

    name = ""
    needs_api = True
    # (snapshot key, collection path) fetched concurrently before checks run
    resources: Tuple[Tuple[str, str], ...] = ()

    def __init__(
        self,
        config: OpsConfig,
        store: Optional[OpsStateStore] = None,
        policy: Any = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        now: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config = config
        self.store = store or OpsStateStore(config.state_file)
        self.policy = policy if policy is not None else config.policy_for(self.name)
        self.transport = transport
        self.now = now
        self.sleep = sleep

    def checks(self) -> List[Check]:
        raise NotImplementedError

    async def fetch(self, api: OpsApiClient) -> Dict[str, Any]:
        """Fetch all baseline collections; the first failure aborts.

        Sibling fetches still in flight are cancelled and awaited before the
        error propagates, so nothing outlives the client.
        """
        if not self.resources:
            return {}
        keys = [key for key, _ in self.resources]
        tasks = [asyncio.ensure_future(api.get_all(path)) for _, path in self.resources]
        try:
            results = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        snapshot = dict(zip(keys, results))
        logger.info(
            f"[{self.name}] Fetched "
            + ", ".join(f"{len(items)} {key}" for key, items in snapshot.items())
        )
        return snapshot

    async def connect(self) -> OpsApiClient:
        token = await login(
            self.config.base_url,
            self.config.email,
            self.config.password,
            api_prefix=self.config.api_prefix,
            transport=self.transport,
        )
        logger.info(f"[{self.name}] Authenticated successfully")
        return OpsApiClient(
            self.config.base_url,
            token,
            self.name,
            api_prefix=self.config.api_prefix,
            transport=self.transport,
        )

    async def run(self) -> int:
        """Run once, refusing to overlap a run of the same agent."""
        with self.store.run_lock(self.name) as acquired:
            if not acquired:
                logger.warning(f"[{self.name}] Previous run still in progress, skipping")
                return EXIT_OK
            return await self._run_once()

    async def _run_once(self) -> int:
        started = time.monotonic()
        logger.info(f"[{self.name}] Starting cycle")

        api = None
        try:
            snapshot: Dict[str, Any] = {}
            if self.needs_api:
                try:
                    api = await self.connect()
                    snapshot = await self.fetch(api)
                except (AuthError, FetchError) as e:
                    logger.error(f"[{self.name}] FATAL: {e}")
                    return EXIT_FATAL

            state = self.store.read()
            ctx = RunContext(
                executor=RemediationExecutor(self.name, state.incidents, now=self.now),
                snapshot=snapshot,
                api=api,
                now=self.now(),
            )

            check_errors, failed_types = await self.run_checks(ctx)
            ctx.executor.reconcile_stale(skip_types=failed_types)

            duration_ms = int((time.monotonic() - started) * 1000)
            result = ctx.executor.result(duration_ms, check_errors)
            audit = (api.audit_log if api else []) + ctx.audit
            self.persist(result, audit)
        finally:
            if api is not None:
                await api.aclose()

        logger.info(
            f"[{self.name}] Cycle complete in {result.duration_ms}ms - "
            f"found: {result.issues_found}, fixed: {result.issues_fixed}, "
            f"escalated: {result.issues_escalated}, recovered: {result.issues_recovered}"
        )
        return exit_code_for(result)

    async def run_checks(self, ctx: RunContext) -> Tuple[List[str], set]:
        """Run every check in order; a failing check never stops the rest."""
        check_errors: List[str] = []
        failed_types: set = set()
        for check in self.checks():
            logger.info(f"[{self.name}] Running check: {check.name}")
            try:
                await check.run(ctx)
            except Exception as e:
                logger.exception(f"[{self.name}] Check {check.name} failed: {e}")
                check_errors.append(f"{check.name}: {e}")
                failed_types.update(check.incident_types)
        return check_errors, failed_types

    def persist(self, result: AgentResult, audit: List[RemediationAction]) -> None:
        with self.store.transaction() as state:
            record_agent_run(state, result)
            for action in audit:
                add_remediation(state, action)
