"""Content lifecycle agent.

Runs every 15 minutes. Archives active content past its expiry date and
old content that no playlist references, and watches storage utilization
reported by the control plane's health endpoint.
"""

import logging
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Set

from ..clock import parse_timestamp
from ..incidents.executor import Detection, Remedy
from ..state.models import Severity
from .base import Check, Reconciler, RunContext

logger = logging.getLogger(__name__)

AGENT = "content-lifecycle"

# Where the health payload may keep its storage block, in order of preference
STORAGE_CONTAINERS = ("storage", "disk", "diskUsage")


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def _field(name: str) -> Callable[[Dict[str, Any]], Optional[float]]:
    def extract(block: Dict[str, Any]) -> Optional[float]:
        return _number(block.get(name))
    extract.__name__ = f"field_{name}"
    return extract


def _used_over_total(block: Dict[str, Any]) -> Optional[float]:
    used = _number(block.get("used"))
    total = _number(block.get("total"))
    if used is None or total is None or total <= 0:
        return None
    return used / total * 100


USAGE_STRATEGIES: List[Callable[[Dict[str, Any]], Optional[float]]] = [
    _field("usedPercent"),
    _field("usedPct"),
    _field("percentUsed"),
    _used_over_total,
]


def storage_usage_pct(health: Any) -> Optional[float]:
    """Usage percentage from a health payload, or None if it carries none."""
    if not isinstance(health, dict):
        return None
    block = None
    for key in STORAGE_CONTAINERS:
        if isinstance(health.get(key), dict):
            block = health[key]
            break
    if block is None:
        return None
    for strategy in USAGE_STRATEGIES:
        value = strategy(block)
        if value is not None:
            return value
    return None


def content_label(item: Dict[str, Any]) -> str:
    return item.get("name") or item.get("title") or str(item.get("id"))


class ContentLifecycle(Reconciler):
    name = AGENT
    resources = (("content", "/content"), ("playlists", "/playlists"))

    def checks(self) -> List[Check]:
        return [
            Check("expired-content", self.check_expired, ("expired_content",)),
            Check("orphaned-content", self.check_orphaned, ("orphaned_content",)),
            Check("storage-usage", self.check_storage, ("storage_high",)),
        ]

    def content(self, ctx: RunContext) -> List[Dict[str, Any]]:
        return [c for c in ctx.snapshot.get("content", []) if isinstance(c, dict) and c.get("id")]

    async def _archive(self, ctx: RunContext, item: Dict[str, Any], detection: Detection, reason: str, before: Dict[str, Any]) -> None:
        content_id = str(item["id"])
        label = content_label(item)

        async def archive():
            await ctx.api.patch(
                f"/content/{content_id}",
                {"status": "archived"},
                target="content",
                target_id=content_id,
                action=f'Archive {reason} content "{label}"',
                before=before,
            )

        await ctx.executor.remediate(
            detection,
            Remedy(apply=archive, max_attempts=self.policy.max_archive_attempts),
        )

    async def check_expired(self, ctx: RunContext) -> None:
        expired = []
        for item in self.content(ctx):
            if item.get("status") != "active":
                continue
            expires_at = parse_timestamp(item.get("expiresAt"))
            if expires_at is not None and expires_at < ctx.now:
                expired.append(item)

        if not expired:
            logger.info(f"[{self.name}] No expired active content found")
            return

        logger.info(f"[{self.name}] Found {len(expired)} expired content item(s) still active")
        for item in expired:
            content_id = str(item["id"])
            label = content_label(item)
            logger.info(f"[{self.name}] Archiving expired content: {label} (expired {item.get('expiresAt')})")
            await self._archive(
                ctx,
                item,
                Detection(
                    type="expired_content",
                    target="content",
                    target_id=content_id,
                    severity=Severity.WARNING.value,
                    message=f'Content "{label}" expired on {item.get("expiresAt")}',
                    remediation=f'PATCH /content/{content_id} {{"status": "archived"}}',
                ),
                "expired",
                {"status": item.get("status"), "expiresAt": item.get("expiresAt")},
            )

    async def check_orphaned(self, ctx: RunContext) -> None:
        referenced: Set[str] = set()
        for playlist in ctx.snapshot.get("playlists", []):
            if not isinstance(playlist, dict):
                continue
            for entry in playlist.get("items") or []:
                if isinstance(entry, dict) and entry.get("contentId"):
                    referenced.add(str(entry["contentId"]))

        cutoff = ctx.now - timedelta(days=self.policy.orphan_age_days)
        orphans = []
        for item in self.content(ctx):
            if item.get("status") != "active" or item.get("type") == "layout":
                continue
            if str(item["id"]) in referenced:
                continue
            created = parse_timestamp(item.get("createdAt"))
            if created is not None and created < cutoff:
                orphans.append(item)

        if not orphans:
            logger.info(f"[{self.name}] No orphaned content found")
            return

        logger.info(
            f"[{self.name}] Found {len(orphans)} orphaned content item(s) "
            f"(not in any playlist, older than {self.policy.orphan_age_days} days)"
        )
        for item in orphans:
            content_id = str(item["id"])
            label = content_label(item)
            logger.info(f"[{self.name}] Archiving orphaned content: {label} (created {item.get('createdAt')})")
            await self._archive(
                ctx,
                item,
                Detection(
                    type="orphaned_content",
                    target="content",
                    target_id=content_id,
                    severity=Severity.INFO.value,
                    message=(
                        f'Content "{label}" not in any playlist and older than '
                        f"{self.policy.orphan_age_days} days"
                    ),
                    remediation=f'PATCH /content/{content_id} {{"status": "archived"}}',
                ),
                "orphaned",
                {"status": item.get("status"), "createdAt": item.get("createdAt")},
            )

    async def check_storage(self, ctx: RunContext) -> None:
        health = await ctx.api.get("/health")
        usage = storage_usage_pct(health)
        if usage is None:
            logger.info(f"[{self.name}] Health endpoint does not expose storage usage, skipping")
            return

        logger.info(f"[{self.name}] Storage usage: {usage:.1f}%")
        critical = self.policy.storage_critical_pct

        if usage >= critical:
            logger.warning(f"[{self.name}] CRITICAL: storage at {usage:.1f}% (threshold {critical}%)")
            ctx.executor.escalate(Detection(
                type="storage_high",
                target="storage",
                target_id="system",
                severity=Severity.CRITICAL.value,
                message=f"Storage usage at {usage:.1f}%, exceeds critical threshold of {critical}%",
                remediation="Manual intervention required: expand storage or purge old content",
            ))
        elif usage >= self.policy.storage_warn_pct:
            logger.warning(f"[{self.name}] Storage at {usage:.1f}% (threshold {self.policy.storage_warn_pct}%)")
            ctx.executor.advise(Detection(
                type="storage_high",
                target="storage",
                target_id="system",
                severity=Severity.WARNING.value,
                message=f"Storage usage at {usage:.1f}%, approaching critical threshold of {critical}%",
                remediation="Review and archive unused content to free storage",
            ))
        else:
            logger.info(f"[{self.name}] Storage usage healthy: {usage:.1f}%")
