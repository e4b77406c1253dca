"""Schedule doctor agent.

Runs every 15 minutes. Audits schedules: deactivates active schedules whose
end date has passed or whose display no longer exists, and flags schedules
pointing at empty playlists and displays left with nothing scheduled.
"""

import logging
from typing import Any, Dict, List, Optional

from ..clock import parse_timestamp
from ..incidents.executor import Detection, Remedy
from ..state.models import Severity
from .base import Check, Reconciler, RunContext

logger = logging.getLogger(__name__)

AGENT = "schedule-doctor"


def _label(item: Dict[str, Any]) -> str:
    return item.get("name") or str(item.get("id"))


def playlist_item_count(playlist: Dict[str, Any]) -> Optional[int]:
    """Item count from ``_count.items`` or the ``items`` list; None if unknown."""
    counted = playlist.get("_count")
    if isinstance(counted, dict) and isinstance(counted.get("items"), int):
        return counted["items"]
    if isinstance(playlist.get("items"), list):
        return len(playlist["items"])
    return None


class ScheduleDoctor(Reconciler):
    name = AGENT
    resources = (
        ("schedules", "/schedules"),
        ("displays", "/displays"),
        ("playlists", "/playlists"),
    )

    def checks(self) -> List[Check]:
        return [
            Check("past-end-schedules", self.check_past_end, ("past_end_schedule",)),
            Check("orphan-schedules", self.check_orphans, ("orphan_schedule",)),
            Check("empty-playlist-schedules", self.check_empty_playlists, ("empty_playlist_schedule",)),
            Check("coverage-gaps", self.check_coverage_gaps, ("coverage_gap",)),
        ]

    @staticmethod
    def _items(ctx: RunContext, key: str) -> List[Dict[str, Any]]:
        return [i for i in ctx.snapshot.get(key, []) if isinstance(i, dict) and i.get("id")]

    def active_schedules(self, ctx: RunContext) -> List[Dict[str, Any]]:
        return [s for s in self._items(ctx, "schedules") if s.get("isActive")]

    async def _deactivate(self, ctx: RunContext, schedule: Dict[str, Any], detection: Detection, action: str, before: Dict[str, Any]) -> None:
        schedule_id = str(schedule["id"])

        async def deactivate():
            await ctx.api.patch(
                f"/schedules/{schedule_id}",
                {"isActive": False},
                target="schedule",
                target_id=schedule_id,
                action=action,
                before=before,
            )

        incident = await ctx.executor.remediate(
            detection,
            Remedy(apply=deactivate, max_attempts=self.policy.max_deactivate_attempts),
        )
        if incident.error:
            logger.warning(f"[{self.name}] Failed to deactivate \"{_label(schedule)}\": {incident.error}")

    async def check_past_end(self, ctx: RunContext) -> None:
        for schedule in self.active_schedules(ctx):
            end = parse_timestamp(schedule.get("endDate"))
            if end is None or end >= ctx.now:
                continue

            schedule_id = str(schedule["id"])
            label = _label(schedule)
            logger.info(f"[{self.name}] Past-end schedule: \"{label}\" ended {schedule.get('endDate')}")
            await self._deactivate(
                ctx,
                schedule,
                Detection(
                    type="past_end_schedule",
                    target="schedule",
                    target_id=schedule_id,
                    severity=Severity.WARNING.value,
                    message=f"Schedule \"{label}\" is active but ended {schedule.get('endDate')}",
                    remediation=f'PATCH /schedules/{schedule_id} {{"isActive": false}}',
                ),
                f"Deactivate past-end schedule \"{label}\"",
                {"isActive": True, "endDate": schedule.get("endDate")},
            )

    async def check_orphans(self, ctx: RunContext) -> None:
        display_ids = {str(d["id"]) for d in self._items(ctx, "displays")}

        for schedule in self.active_schedules(ctx):
            display_id = schedule.get("displayId")
            # group-level schedules don't reference a single display
            if not display_id or str(display_id) in display_ids:
                continue

            schedule_id = str(schedule["id"])
            label = _label(schedule)
            logger.warning(f"[{self.name}] Orphan schedule: \"{label}\" references missing display {display_id}")
            await self._deactivate(
                ctx,
                schedule,
                Detection(
                    type="orphan_schedule",
                    target="schedule",
                    target_id=schedule_id,
                    severity=Severity.CRITICAL.value,
                    message=f"Schedule \"{label}\" targets nonexistent display {display_id}",
                    remediation=f'PATCH /schedules/{schedule_id} {{"isActive": false}}',
                ),
                f"Deactivate orphan schedule \"{label}\" (display {display_id} missing)",
                {"isActive": True, "displayId": display_id},
            )

    async def check_empty_playlists(self, ctx: RunContext) -> None:
        playlists = {str(p["id"]): p for p in self._items(ctx, "playlists")}

        for schedule in self.active_schedules(ctx):
            playlist = playlists.get(str(schedule.get("playlistId")))
            if playlist is None or playlist_item_count(playlist) != 0:
                continue

            label = _label(schedule)
            playlist_label = _label(playlist)
            logger.info(f"[{self.name}] Empty playlist schedule: \"{label}\" references \"{playlist_label}\"")
            ctx.executor.advise(Detection(
                type="empty_playlist_schedule",
                target="schedule",
                target_id=str(schedule["id"]),
                severity=Severity.WARNING.value,
                message=f"Active schedule \"{label}\" references playlist \"{playlist_label}\" with 0 items",
                remediation="Manual: add content to playlist or reassign schedule",
            ))

    async def check_coverage_gaps(self, ctx: RunContext) -> None:
        scheduled = {str(s["displayId"]) for s in self.active_schedules(ctx) if s.get("displayId")}

        for display in self._items(ctx, "displays"):
            display_id = str(display["id"])
            if display.get("currentPlaylistId") or display_id in scheduled:
                continue

            label = _label(display)
            logger.info(f"[{self.name}] Coverage gap: display \"{label}\" has no playlist and no active schedule")
            ctx.executor.advise(Detection(
                type="coverage_gap",
                target="display",
                target_id=display_id,
                severity=Severity.WARNING.value,
                message=f"Display \"{label}\" has no playlist and no active schedule, screen may be blank",
                remediation="Manual: assign a playlist or create a schedule for this display",
            ))
