"""Tests for the schedule doctor agent."""

import pytest

from conftest import FakeControlPlane, days_ago, fixed_now

from fleetops.reconciler.agents import EXIT_ISSUES, EXIT_OK, ScheduleDoctor
from fleetops.reconciler.agents.schedule_doctor import playlist_item_count
from fleetops.reconciler.state import make_incident_id


def _schedule(schedule_id, **kw):
    schedule = {
        "id": schedule_id,
        "name": f"Morning {schedule_id}",
        "displayId": "d1",
        "playlistId": "p1",
        "isActive": True,
        "endDate": days_ago(-30),
    }
    schedule.update(kw)
    return schedule


def _plane(schedules, displays=None, playlists=None):
    return FakeControlPlane(
        schedules=schedules,
        displays=displays if displays is not None else [{"id": "d1", "name": "Lobby"}],
        playlists=playlists if playlists is not None else [{"id": "p1", "items": [{"contentId": "c1"}]}],
    )


def _agent(config, store, plane):
    return ScheduleDoctor(config, store=store, transport=plane.transport, now=fixed_now)


def _incident_id(type_, target_id):
    return make_incident_id("schedule-doctor", type_, target_id)


class TestPlaylistItemCount:
    def test_prefers_count_block(self):
        assert playlist_item_count({"_count": {"items": 0}, "items": [{"contentId": "c"}]}) == 0

    def test_falls_back_to_items(self):
        assert playlist_item_count({"items": []}) == 0

    def test_unknown(self):
        assert playlist_item_count({"id": "p"}) is None


class TestScheduleDoctor:
    """Test the four schedule audits."""

    @pytest.mark.asyncio
    async def test_healthy_schedules_exit_zero(self, config, store):
        plane = _plane([_schedule("s1")])

        assert await _agent(config, store, plane).run() == EXIT_OK
        assert plane.mutations() == []

    @pytest.mark.asyncio
    async def test_past_end_schedule_is_deactivated(self, config, store):
        plane = _plane([_schedule("s1"), _schedule("s2", endDate=days_ago(1))])

        code = await _agent(config, store, plane).run()

        assert code == EXIT_OK
        assert plane.mutations() == [("PATCH", "/api/v1/schedules/s2", {"isActive": False})]
        assert store.read().find_incident(_incident_id("past_end_schedule", "s2")).status == "resolved"

    @pytest.mark.asyncio
    async def test_orphan_schedule_is_deactivated_as_critical(self, config, store):
        plane = _plane([_schedule("s1"), _schedule("s2", displayId="gone")])

        await _agent(config, store, plane).run()

        incident = store.read().find_incident(_incident_id("orphan_schedule", "s2"))
        assert incident.severity == "critical"
        assert incident.status == "resolved"
        assert ("PATCH", "/api/v1/schedules/s2", {"isActive": False}) in plane.mutations()

    @pytest.mark.asyncio
    async def test_group_schedule_is_not_orphaned(self, config, store):
        plane = _plane([_schedule("s1"), _schedule("s2", displayId=None, displayGroupId="g1")])

        await _agent(config, store, plane).run()

        assert store.read().find_incident(_incident_id("orphan_schedule", "s2")) is None

    @pytest.mark.asyncio
    async def test_empty_playlist_is_advisory(self, config, store):
        plane = _plane(
            [_schedule("s1"), _schedule("s2", playlistId="p2")],
            playlists=[{"id": "p1", "items": [{"contentId": "c1"}]}, {"id": "p2", "_count": {"items": 0}}],
        )

        code = await _agent(config, store, plane).run()

        incident = store.read().find_incident(_incident_id("empty_playlist_schedule", "s2"))
        assert code == EXIT_ISSUES
        assert incident.status == "open"
        assert plane.mutations() == []

    @pytest.mark.asyncio
    async def test_display_without_schedule_or_playlist_is_a_gap(self, config, store):
        plane = _plane(
            [_schedule("s1")],
            displays=[{"id": "d1"}, {"id": "d2"}, {"id": "d3", "currentPlaylistId": "p1"}],
        )

        await _agent(config, store, plane).run()

        state = store.read()
        assert state.find_incident(_incident_id("coverage_gap", "d2")) is not None
        assert state.find_incident(_incident_id("coverage_gap", "d1")) is None
        assert state.find_incident(_incident_id("coverage_gap", "d3")) is None

    @pytest.mark.asyncio
    async def test_gap_closes_when_schedule_appears(self, config, store):
        plane = _plane([], displays=[{"id": "d1"}])
        await _agent(config, store, plane).run()
        assert store.read().find_incident(_incident_id("coverage_gap", "d1")).status == "open"

        plane.collections["schedules"] = [_schedule("s1")]
        code = await _agent(config, store, plane).run()

        assert code == EXIT_OK
        assert store.read().find_incident(_incident_id("coverage_gap", "d1")).status == "resolved"
