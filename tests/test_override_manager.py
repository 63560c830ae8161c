"""Tests for individual schedules and the unified-schedule lifecycle."""

from datetime import datetime, timezone

import pytest

from rankgrid.exceptions import (
    ConfigurationError,
    InvalidScheduleTransition,
    NotFoundError,
    ScheduleConflictError,
)
from rankgrid.modules.scheduling import ScheduleOverrideManager, ScheduleService

NOW = datetime(2024, 5, 1, 12, tzinfo=timezone.utc)
LATER = datetime(2024, 5, 20, 12, tzinfo=timezone.utc)


@pytest.fixture()
def schedules(test_db):
    return ScheduleService()


@pytest.fixture()
def manager(test_db):
    return ScheduleOverrideManager()


@pytest.fixture()
def keyword_id(keyword_factory):
    return keyword_factory("emergency plumber", questions=["Who is the best plumber in NYC?"])


class TestIndividualSchedules:

    def test_create_weekly_llm(self, schedules, keyword_id):
        schedule = schedules.set_schedule(
            "acct-1", keyword_id, "llm_visibility", "weekly", hour=9, day_of_week=1,
            llm_providers=["chatgpt", "perplexity"], now=NOW,
        )
        assert schedule["next_scheduled_at"] == "2024-05-06T09:00:00+00:00"
        assert schedule["description"] == "Weekly on Monday at 09:00 UTC"

    def test_set_replaces_existing(self, schedules, keyword_id):
        first = schedules.set_schedule("acct-1", keyword_id, "search_rank", "daily", hour=6, now=NOW)
        second = schedules.set_schedule("acct-1", keyword_id, "search_rank", "monthly", hour=6,
                                        day_of_month=15, now=NOW)
        assert first["id"] == second["id"]
        assert second["frequency"] == "monthly"
        assert len(schedules.list_schedules(keyword_id=keyword_id)) == 1

    def test_geo_grid_not_set_per_concept(self, schedules, keyword_id):
        with pytest.raises(ConfigurationError):
            schedules.set_schedule("acct-1", keyword_id, "geo_grid", "daily")

    def test_llm_needs_providers(self, schedules, keyword_id):
        with pytest.raises(ConfigurationError):
            schedules.set_schedule("acct-1", keyword_id, "llm_visibility", "daily")

    def test_disable_and_enable(self, schedules, keyword_id):
        schedule = schedules.set_schedule("acct-1", keyword_id, "search_rank", "daily", now=NOW)
        disabled = schedules.set_enabled(schedule["id"], False)
        assert disabled["next_scheduled_at"] is None
        enabled = schedules.set_enabled(schedule["id"], True, now=NOW)
        assert enabled["next_scheduled_at"] == "2024-05-02T09:00:00+00:00"

    def test_due_and_advance(self, schedules, keyword_id):
        schedule = schedules.set_schedule("acct-1", keyword_id, "search_rank", "daily", hour=6, now=NOW)
        moment = datetime(2024, 5, 2, 6, tzinfo=timezone.utc)
        assert [s["id"] for s in schedules.due_schedules(moment, ["search_rank"])] == [schedule["id"]]
        assert schedules.due_schedules(moment, ["llm_visibility"]) == []
        schedules.advance(schedule["id"], moment)
        updated = schedules.get_schedule(schedule["id"])
        assert updated["last_run_at"] == moment.isoformat()
        assert updated["next_scheduled_at"] == "2024-05-03T06:00:00+00:00"

    def test_delete(self, schedules, keyword_id):
        schedule = schedules.set_schedule("acct-1", keyword_id, "search_rank", "daily", now=NOW)
        schedules.delete_schedule(schedule["id"])
        with pytest.raises(NotFoundError):
            schedules.get_schedule(schedule["id"])


class TestUnifiedLifecycle:

    def test_pause_and_exact_restore(self, schedules, manager, keyword_id):
        llm = schedules.set_schedule(
            "acct-1", keyword_id, "llm_visibility", "weekly", hour=9, day_of_week=1,
            llm_providers=["chatgpt"], now=NOW,
        )

        preview = manager.request_unified(
            "acct-1", keyword_id, ["llm_visibility", "geo_grid"], "daily", hour=5,
            llm_providers=["chatgpt", "gemini"],
        )
        assert preview.has_conflicts
        assert [d["id"] for d in preview.duplicates] == [llm["id"]]
        assert schedules.get_schedule(llm["id"])["is_enabled"]

        active = manager.confirm_unified(preview.unified_id, now=NOW)
        assert active["state"] == "unified_active"
        assert active["paused_schedule_ids"] == [llm["id"]]
        paused = schedules.get_schedule(llm["id"])
        assert not paused["is_enabled"]
        assert paused["next_scheduled_at"] is None

        restored = manager.disable_unified(preview.unified_id, now=LATER)
        assert restored["state"] == "independent"
        assert restored["paused_schedule_ids"] == []
        after = schedules.get_schedule(llm["id"])
        assert after["is_enabled"]
        assert after["frequency"] == "weekly"
        assert after["day_of_week"] == 1
        assert after["hour"] == 9
        assert after["llm_providers"] == ["chatgpt"]
        assert after["next_scheduled_at"] == "2024-05-27T09:00:00+00:00"

    def test_confirm_rederives_duplicates(self, schedules, manager, keyword_id):
        preview = manager.request_unified("acct-1", keyword_id, ["search_rank"], "daily")
        assert preview.duplicates == []
        late = schedules.set_schedule("acct-1", keyword_id, "search_rank", "weekly", day_of_week=3, now=NOW)

        active = manager.confirm_unified(preview.unified_id, now=NOW)
        assert active["paused_schedule_ids"] == [late["id"]]

    def test_types_outside_unified_left_alone(self, schedules, manager, keyword_id):
        search = schedules.set_schedule("acct-1", keyword_id, "search_rank", "daily", now=NOW)
        preview = manager.request_unified("acct-1", keyword_id, ["geo_grid"], "daily")
        manager.confirm_unified(preview.unified_id, now=NOW)
        assert schedules.get_schedule(search["id"])["is_enabled"]

    def test_disabled_schedule_restored_disabled(self, schedules, manager, keyword_id):
        search = schedules.set_schedule("acct-1", keyword_id, "search_rank", "daily", enabled=False, now=NOW)
        preview = manager.request_unified("acct-1", keyword_id, ["search_rank"], "daily")
        active = manager.confirm_unified(preview.unified_id, now=NOW)
        # only enabled schedules are duplicates
        assert active["paused_schedule_ids"] == []
        manager.disable_unified(preview.unified_id, now=LATER)
        assert not schedules.get_schedule(search["id"])["is_enabled"]

    def test_delete_restores(self, schedules, manager, keyword_id):
        search = schedules.set_schedule("acct-1", keyword_id, "search_rank", "daily", hour=6, now=NOW)
        preview = manager.request_unified("acct-1", keyword_id, ["search_rank"], "weekly", day_of_week=0)
        manager.confirm_unified(preview.unified_id, now=NOW)

        assert manager.delete_unified(preview.unified_id, now=LATER) == [search["id"]]
        assert manager.get_for_keyword(keyword_id) is None
        after = schedules.get_schedule(search["id"])
        assert after["is_enabled"]
        assert after["frequency"] == "daily"

    def test_update_check_types(self, schedules, manager, keyword_id):
        search = schedules.set_schedule("acct-1", keyword_id, "search_rank", "daily", now=NOW)
        llm = schedules.set_schedule("acct-1", keyword_id, "llm_visibility", "daily",
                                     llm_providers=["chatgpt"], now=NOW)
        preview = manager.request_unified("acct-1", keyword_id, ["search_rank"], "daily")
        manager.confirm_unified(preview.unified_id, now=NOW)

        updated = manager.update_check_types(
            preview.unified_id, ["llm_visibility"], llm_providers=["chatgpt"], now=LATER
        )
        assert updated["check_types"] == ["llm_visibility"]
        assert updated["paused_schedule_ids"] == [llm["id"]]
        assert schedules.get_schedule(search["id"])["is_enabled"]
        assert not schedules.get_schedule(llm["id"])["is_enabled"]

    def test_cancel_pending(self, schedules, manager, keyword_id):
        search = schedules.set_schedule("acct-1", keyword_id, "search_rank", "daily", now=NOW)
        preview = manager.request_unified("acct-1", keyword_id, ["search_rank"], "daily")
        cancelled = manager.cancel_pending(preview.unified_id)
        assert cancelled["state"] == "independent"
        assert schedules.get_schedule(search["id"])["is_enabled"]

    def test_request_again_after_disable(self, manager, keyword_id):
        preview = manager.request_unified("acct-1", keyword_id, ["geo_grid"], "daily")
        manager.confirm_unified(preview.unified_id, now=NOW)
        manager.disable_unified(preview.unified_id, now=NOW)
        again = manager.request_unified("acct-1", keyword_id, ["geo_grid"], "weekly", day_of_week=2)
        assert again.unified_id == preview.unified_id
        assert again.state == "unified_pending"


class TestInvalidTransitions:

    def test_confirm_twice(self, manager, keyword_id):
        preview = manager.request_unified("acct-1", keyword_id, ["geo_grid"], "daily")
        manager.confirm_unified(preview.unified_id, now=NOW)
        with pytest.raises(InvalidScheduleTransition):
            manager.confirm_unified(preview.unified_id, now=NOW)

    def test_request_while_active(self, manager, keyword_id):
        preview = manager.request_unified("acct-1", keyword_id, ["geo_grid"], "daily")
        manager.confirm_unified(preview.unified_id, now=NOW)
        with pytest.raises(InvalidScheduleTransition):
            manager.request_unified("acct-1", keyword_id, ["search_rank"], "daily")

    def test_disable_pending(self, manager, keyword_id):
        preview = manager.request_unified("acct-1", keyword_id, ["geo_grid"], "daily")
        with pytest.raises(InvalidScheduleTransition):
            manager.disable_unified(preview.unified_id)

    def test_cancel_active(self, manager, keyword_id):
        preview = manager.request_unified("acct-1", keyword_id, ["geo_grid"], "daily")
        manager.confirm_unified(preview.unified_id, now=NOW)
        with pytest.raises(InvalidScheduleTransition):
            manager.cancel_pending(preview.unified_id)

    def test_transition_error_is_a_conflict(self, manager, keyword_id):
        preview = manager.request_unified("acct-1", keyword_id, ["geo_grid"], "daily")
        with pytest.raises(ScheduleConflictError):
            manager.disable_unified(preview.unified_id)

    def test_unknown_unified(self, manager):
        with pytest.raises(NotFoundError):
            manager.confirm_unified(123)

    def test_llm_type_needs_providers(self, manager, keyword_id):
        with pytest.raises(ConfigurationError):
            manager.request_unified("acct-1", keyword_id, ["llm_visibility"], "daily")


class TestConflicts:

    def test_individual_create_blocked_by_active_unified(self, schedules, manager, keyword_id):
        preview = manager.request_unified("acct-1", keyword_id, ["search_rank"], "daily")
        manager.confirm_unified(preview.unified_id, now=NOW)
        with pytest.raises(ScheduleConflictError):
            schedules.set_schedule("acct-1", keyword_id, "search_rank", "daily")

    def test_uncovered_type_still_allowed(self, schedules, manager, keyword_id):
        preview = manager.request_unified("acct-1", keyword_id, ["search_rank"], "daily")
        manager.confirm_unified(preview.unified_id, now=NOW)
        created = schedules.set_schedule("acct-1", keyword_id, "llm_visibility", "daily",
                                         llm_providers=["chatgpt"], now=NOW)
        assert created["is_enabled"]

    def test_paused_schedule_cannot_be_reenabled(self, schedules, manager, keyword_id):
        search = schedules.set_schedule("acct-1", keyword_id, "search_rank", "daily", now=NOW)
        preview = manager.request_unified("acct-1", keyword_id, ["search_rank"], "daily")
        manager.confirm_unified(preview.unified_id, now=NOW)
        with pytest.raises(ScheduleConflictError):
            schedules.set_enabled(search["id"], True)

    def test_pending_does_not_block(self, schedules, manager, keyword_id):
        manager.request_unified("acct-1", keyword_id, ["search_rank"], "daily")
        created = schedules.set_schedule("acct-1", keyword_id, "search_rank", "daily", now=NOW)
        assert created["is_enabled"]
