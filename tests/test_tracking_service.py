"""Tests for tracking configs, tracked terms and per-term schedules."""

from datetime import datetime, timezone

import pytest

from rankgrid.exceptions import ConfigurationError, NotFoundError, RunInProgressError, ScheduleConflictError
from rankgrid.modules.geo_grid import TrackingService
from rankgrid.modules.scheduling import ScheduleOverrideManager, ScheduleService
from rankgrid.utils.locks import KeyedRunLock

NOW = datetime(2024, 5, 1, 12, tzinfo=timezone.utc)


class TestConfigs:

    def test_create_stores_check_points(self, config_factory):
        config = config_factory(grid_size=9, radius_miles=1.0)
        assert len(config["check_points"]) == 9
        assert config["check_points"][4]["label"] == "center"
        assert config["next_scheduled_at"] is None
        assert config["schedule_description"] == "Not scheduled"

    def test_create_with_schedule(self, config_factory):
        config = config_factory(schedule_frequency="daily", schedule_hour=6, now=NOW)
        assert config["next_scheduled_at"] == "2024-05-02T06:00:00+00:00"

    def test_invalid_geometry_fails_fast(self, tracking):
        with pytest.raises(ConfigurationError):
            tracking.create_config("acct-1", 40.0, -74.0, radius_miles=2.0, grid_size=10)
        assert tracking.list_configs() == []

    def test_geometry_change_recomputes_points(self, config_factory, tracking):
        config = config_factory(grid_size=5)
        updated = tracking.update_config(config["id"], grid_size=25, radius_miles=4.0)
        assert len(updated["check_points"]) == 25
        assert updated["radius_miles"] == 4.0

    def test_geometry_change_blocked_while_running(self, test_db, config_factory):
        locks = KeyedRunLock()
        tracking = TrackingService(run_locks=locks)
        config = config_factory(grid_size=5)
        locks.try_acquire(config["id"])
        with pytest.raises(RunInProgressError):
            tracking.update_config(config["id"], grid_size=9)
        assert tracking.update_config(config["id"], name="Downtown")["name"] == "Downtown"
        with pytest.raises(RunInProgressError):
            tracking.delete_config(config["id"])

    def test_unknown_field_rejected(self, config_factory, tracking):
        config = config_factory()
        with pytest.raises(ConfigurationError):
            tracking.update_config(config["id"], account_id="someone-else")

    def test_schedule_change_recomputes_next_run(self, config_factory, tracking):
        config = config_factory()
        updated = tracking.update_config(
            config["id"], now=NOW, schedule_frequency="weekly", schedule_day_of_week=1, schedule_hour=8
        )
        assert updated["next_scheduled_at"] == "2024-05-06T08:00:00+00:00"

    def test_due_and_advance(self, config_factory, tracking):
        config = config_factory(schedule_frequency="daily", schedule_hour=6, now=NOW)
        assert tracking.due_configs(NOW) == []
        later = datetime(2024, 5, 2, 6, tzinfo=timezone.utc)
        assert tracking.due_configs(later) == [config["id"]]
        tracking.advance_schedule(config["id"], later)
        assert tracking.due_configs(later) == []
        assert tracking.get_config(config["id"])["next_scheduled_at"] == "2024-05-03T06:00:00+00:00"

    def test_disabled_config_never_due(self, config_factory, tracking):
        config = config_factory(schedule_frequency="daily", schedule_hour=6, now=NOW)
        tracking.update_config(config["id"], is_enabled=False)
        assert tracking.due_configs(datetime(2024, 6, 1, tzinfo=timezone.utc)) == []

    def test_delete(self, config_factory, tracking):
        config = config_factory()
        tracking.add_term(config["id"], "plumber")
        tracking.delete_config(config["id"])
        with pytest.raises(NotFoundError):
            tracking.get_config(config["id"])


class TestTerms:

    def test_add_term_is_idempotent(self, config_factory, tracking):
        config = config_factory()
        first = tracking.add_term(config["id"], "plumber ")
        second = tracking.add_term(config["id"], "plumber")
        assert first["id"] == second["id"]
        assert len(tracking.list_terms(config["id"])) == 1

    def test_empty_query_rejected(self, config_factory, tracking):
        config = config_factory()
        with pytest.raises(ConfigurationError):
            tracking.add_term(config["id"], "   ")

    def test_keyword_terms(self, config_factory, tracking, keyword_factory):
        with_terms = keyword_factory("plumber", search_terms=["plumber nyc", "nyc plumber"])
        bare = keyword_factory("drain repair")
        config = config_factory()
        assert [t["search_query"] for t in tracking.add_keyword_terms(config["id"], with_terms)] == [
            "plumber nyc", "nyc plumber",
        ]
        assert [t["search_query"] for t in tracking.add_keyword_terms(config["id"], bare)] == ["drain repair"]
        assert tracking.configs_for_keyword(with_terms) == [config["id"]]

    def test_unknown_keyword(self, config_factory, tracking):
        config = config_factory()
        with pytest.raises(NotFoundError):
            tracking.add_keyword_terms(config["id"], 404)

    def test_remove_term(self, config_factory, tracking):
        config = config_factory()
        term = tracking.add_term(config["id"], "plumber")
        tracking.remove_term(term["id"])
        assert tracking.list_terms(config["id"]) == []


class TestTermSchedules:

    def test_custom_schedule_creates_geo_grid_schedule(self, config_factory, tracking):
        config = config_factory()
        term = tracking.add_term(config["id"], "plumber")
        updated = tracking.set_term_schedule(term["id"], "custom", frequency="daily", hour=7, now=NOW)

        assert updated["schedule_mode"] == "custom"
        assert updated["schedule"]["check_type"] == "geo_grid"
        assert updated["schedule"]["next_scheduled_at"] == "2024-05-02T07:00:00+00:00"

        due = ScheduleService().due_schedules(datetime(2024, 5, 2, 7, tzinfo=timezone.utc), ["geo_grid"])
        assert tracking.terms_for_schedules([s["id"] for s in due]) == {config["id"]: [term["id"]]}

    def test_leaving_custom_deletes_schedule(self, config_factory, tracking):
        config = config_factory()
        term = tracking.add_term(config["id"], "plumber")
        tracking.set_term_schedule(term["id"], "custom", frequency="daily", now=NOW)
        updated = tracking.set_term_schedule(term["id"], "inherit")
        assert updated["schedule"] is None
        assert ScheduleService().list_schedules(check_type="geo_grid") == []

    def test_custom_needs_frequency(self, config_factory, tracking):
        config = config_factory()
        term = tracking.add_term(config["id"], "plumber")
        with pytest.raises(ConfigurationError):
            tracking.set_term_schedule(term["id"], "custom")

    def test_custom_blocked_by_active_unified(self, config_factory, tracking, keyword_factory):
        keyword_id = keyword_factory("plumber")
        config = config_factory()
        term = tracking.add_keyword_terms(config["id"], keyword_id)[0]
        manager = ScheduleOverrideManager()
        preview = manager.request_unified("acct-1", keyword_id, ["geo_grid"], "daily")
        manager.confirm_unified(preview.unified_id, now=NOW)

        with pytest.raises(ScheduleConflictError):
            tracking.set_term_schedule(term["id"], "custom", frequency="daily")


class TestResults:

    @pytest.mark.asyncio
    async def test_current_state_keeps_latest_per_pair(self, config_factory, tracking, credits, no_sleep):
        from datetime import date
        from conftest import FakeRankingProvider
        from rankgrid.modules.geo_grid import RankChecker

        config = config_factory(grid_size=5)
        tracking.add_term(config["id"], "plumber")
        credits.credit("acct-1", 100)
        checker = RankChecker(FakeRankingProvider(default_position=9), credits,
                              run_locks=KeyedRunLock(), sleep=no_sleep)
        await checker.run_config(config["id"], run_date=date(2024, 5, 1))
        checker._provider = FakeRankingProvider(default_position=1)
        await checker.run_config(config["id"], run_date=date(2024, 5, 2))

        state = tracking.get_current_state(config["id"])
        assert len(state) == 5
        assert {r["position"] for r in state} == {1}
        assert len(tracking.list_results(config["id"])) == 10
