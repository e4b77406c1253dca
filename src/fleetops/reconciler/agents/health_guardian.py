"""Health guardian agent.

Runs every 5 minutes. Probes each service's health endpoint and inspects the
pm2 process list. Down services are restarted and re-probed after a
cooldown; errored processes are restarted; processes near their memory limit
are gracefully reloaded. Repeated failures escalate.
"""

import logging
from typing import Any, Dict, List, Optional

from ..api.client import check_endpoint
from ..clock import isoformat
from ..config import SERVICE_PROCESS_NAMES, ServiceDef
from ..errors import CheckError, RemediationError
from ..incidents.executor import Detection, Remedy
from ..state.models import RemediationAction, Severity
from ..supervisor.pm2 import Pm2Supervisor, ProcessInfo
from .base import Check, Reconciler, RunContext

logger = logging.getLogger(__name__)

AGENT = "health-guardian"


class HealthGuardian(Reconciler):
    name = AGENT
    needs_api = False

    def __init__(self, *args, supervisor: Optional[Pm2Supervisor] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.services: List[ServiceDef] = list(self.config.service_definitions())
        self.supervisor = supervisor or Pm2Supervisor(SERVICE_PROCESS_NAMES)

    def checks(self) -> List[Check]:
        return [
            Check("service-endpoints", self.check_service_endpoints, ("service-down",)),
            Check("process-status", self.check_process_status, ("pm2-errored", "high-memory")),
        ]

    async def probe(self, url: str):
        return await check_endpoint(
            url,
            timeout=self.policy.health_timeout_seconds,
            transport=self.transport,
        )

    def _audit(
        self,
        ctx: RunContext,
        action: str,
        target: str,
        target_id: str,
        method: str,
        success: bool,
        before: Any = None,
        after: Any = None,
        error: Optional[str] = None,
    ) -> None:
        ctx.record(RemediationAction(
            agent=self.name,
            timestamp=isoformat(self.now()),
            action=action,
            target=target,
            target_id=target_id,
            method=method,
            success=success,
            before=before,
            after=after,
            error=error,
        ))

    async def check_service_endpoints(self, ctx: RunContext) -> None:
        for svc in self.services:
            logger.info(f"[{self.name}] Checking {svc.name}: {svc.health_url}")
            status = await self.probe(svc.health_url)
            if status.ok:
                logger.info(f"[{self.name}] {svc.name}: healthy (status {status.status})")
                continue

            logger.warning(f"[{self.name}] {svc.name}: UNHEALTHY ({status.detail})")
            await self._restart_service(ctx, svc, status.detail)

    async def _restart_service(self, ctx: RunContext, svc: ServiceDef, detail: str) -> None:
        outcome: Dict[str, Any] = {}

        async def restart():
            outcome["attempted"] = True
            outcome["restarted"] = self.supervisor.restart(svc.process_name)
            if not outcome["restarted"]:
                raise RemediationError("pm2 restart command failed")

        async def recheck():
            cooldown = self.policy.restart_cooldown_seconds
            logger.info(f"[{self.name}] {svc.name}: waiting {cooldown:.0f}s for service to start")
            await self.sleep(cooldown)
            status = await self.probe(svc.health_url)
            outcome["after"] = {"healthy": status.ok, "httpStatus": status.status, "error": status.error}
            if not status.ok:
                raise RemediationError(f"still unhealthy after restart ({status.detail})")

        incident = await ctx.executor.remediate(
            Detection(
                type="service-down",
                target="service",
                target_id=svc.name,
                severity=Severity.CRITICAL.value,
                message=f"{svc.name} is down ({detail})",
                remediation=f"pm2 restart {svc.process_name}",
            ),
            Remedy(apply=restart, verify=recheck, max_attempts=self.policy.max_attempts),
        )

        if outcome.get("attempted"):
            self._audit(
                ctx,
                action=f"Restart {svc.name} (attempt {incident.attempts})",
                target="service",
                target_id=svc.name,
                method="pm2 restart",
                success=incident.status == "resolved",
                before={"error": detail},
                after=outcome.get("after"),
                error=incident.error,
            )

    async def check_process_status(self, ctx: RunContext) -> None:
        processes = self.supervisor.list_processes()
        if not self.supervisor.reachable:
            raise CheckError("pm2 process list unavailable")

        for svc in self.services:
            procs = [p for p in processes if p.name == svc.process_name]
            if not procs:
                logger.info(f"[{self.name}] {svc.process_name}: not found in pm2 process list")
                continue
            for proc in procs:
                if proc.status in ("errored", "stopped"):
                    await self._restart_process(ctx, svc, proc)
                    continue
                await self._check_memory(ctx, svc, proc)

    async def _restart_process(self, ctx: RunContext, svc: ServiceDef, proc: ProcessInfo) -> None:
        attempted = []

        async def restart():
            attempted.append(True)
            if not self.supervisor.restart(svc.process_name):
                raise RemediationError("pm2 restart command failed")

        logger.warning(f"[{self.name}] {proc.label}: status={proc.status}")
        incident = await ctx.executor.remediate(
            Detection(
                type="pm2-errored",
                target="pm2-process",
                target_id=proc.label,
                severity=Severity.CRITICAL.value,
                message=f"PM2 process {proc.label} is {proc.status}",
                remediation=f"pm2 restart {svc.process_name}",
            ),
            Remedy(apply=restart, max_attempts=self.policy.max_attempts),
        )

        if attempted:
            self._audit(
                ctx,
                action=f"Restart {proc.status} PM2 process {proc.label}",
                target="pm2-process",
                target_id=proc.label,
                method="pm2 restart",
                success=incident.error is None,
                before={"status": proc.status, "memoryMB": proc.memory_bytes // (1024 * 1024)},
                error=incident.error,
            )

    async def _check_memory(self, ctx: RunContext, svc: ServiceDef, proc: ProcessInfo) -> None:
        if svc.memory_limit_bytes <= 0:
            return
        pct = proc.memory_bytes / svc.memory_limit_bytes * 100
        if pct <= self.policy.memory_threshold_pct:
            return

        used_mb = proc.memory_bytes // (1024 * 1024)
        limit_mb = svc.memory_limit_bytes // (1024 * 1024)
        logger.warning(f"[{self.name}] {proc.label}: high memory {used_mb}MB / {limit_mb}MB ({pct:.1f}%)")

        attempted = []

        async def reload():
            attempted.append(True)
            if not self.supervisor.reload(svc.process_name):
                raise RemediationError("pm2 reload command failed")

        incident = await ctx.executor.remediate(
            Detection(
                type="high-memory",
                target="pm2-process",
                target_id=proc.label,
                severity=Severity.WARNING.value,
                message=f"{proc.label} using {used_mb}MB ({pct:.1f}% of {limit_mb}MB limit)",
                remediation=f"pm2 reload {svc.process_name}",
            ),
            Remedy(apply=reload, max_attempts=self.policy.max_attempts),
        )

        if attempted:
            self._audit(
                ctx,
                action=f"Graceful reload {proc.label} due to high memory ({used_mb}MB / {limit_mb}MB)",
                target="pm2-process",
                target_id=proc.label,
                method="pm2 reload",
                success=incident.error is None,
                before={"memoryMB": used_mb, "memoryLimitMB": limit_mb, "memoryPct": round(pct)},
                error=incident.error,
            )
