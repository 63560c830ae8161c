"""Integration tests for RankGrid.

Covers database setup, module imports, configuration loading, the
scheduler wrapper, CLI smoke tests, and syntax validation of every Python
file in the project.
"""

import ast
import importlib
from pathlib import Path

import pytest

# ---------------------------------------------------------------------------
# Project root (conftest.py already puts it on sys.path)
# ---------------------------------------------------------------------------
PROJECT_ROOT = Path(__file__).resolve().parent.parent
SETTINGS_PATH = PROJECT_ROOT / "config" / "settings.yaml"


@pytest.fixture()
def cli_settings(tmp_path, monkeypatch):
    """A settings file pointing at a throwaway SQLite database."""
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.chdir(tmp_path)
    path = tmp_path / "settings.yaml"
    path.write_text(
        "database:\n"
        f"  url: sqlite:///{tmp_path / 'cli.db'}\n"
        "scheduler:\n"
        f"  job_store: sqlite:///{tmp_path / 'jobs.db'}\n",
        encoding="utf-8",
    )
    return str(path)


# ===========================================================================
# 1. Database setup
# ===========================================================================
class TestDatabaseSetup:
    """Verify that the database can be initialised with SQLite."""

    def test_init_db_creates_tables(self, test_db):
        """init_db should create every table the models declare."""
        from rankgrid.database import get_engine
        from sqlalchemy import inspect

        table_names = inspect(get_engine()).get_table_names()
        expected_tables = [
            "keywords",
            "gg_configs",
            "gg_tracked_terms",
            "gg_checks",
            "gg_daily_summaries",
            "credit_balances",
            "credit_ledger",
            "check_schedules",
            "unified_schedules",
            "paused_schedule_records",
        ]
        for table in expected_tables:
            assert table in table_names, (
                "Missing table: " + table + ". Found: " + str(table_names)
            )

    def test_get_session_context_manager(self, test_db):
        """get_session should yield a usable Session object."""
        from rankgrid.database import get_session
        from sqlalchemy import text as sa_text

        with get_session() as session:
            row = session.execute(sa_text("SELECT 1")).fetchone()
            assert row is not None
            assert row[0] == 1

    def test_get_session_rolls_back_on_error(self, test_db):
        from rankgrid.database import get_session
        from rankgrid.models import Keyword

        with pytest.raises(RuntimeError):
            with get_session() as session:
                session.add(Keyword(account_id="acct-1", phrase="plumber"))
                session.flush()
                raise RuntimeError("abort")
        with get_session() as session:
            assert session.query(Keyword).count() == 0

    def test_sqlite_connections_get_pragmas(self, test_db):
        from rankgrid.database import get_session
        from sqlalchemy import text as sa_text

        with get_session() as session:
            assert session.execute(sa_text("PRAGMA foreign_keys")).scalar() == 1
            assert session.execute(sa_text("PRAGMA journal_mode")).scalar() == "wal"

    def test_rows_readable_after_block_commits(self, test_db):
        from rankgrid.database import get_session
        from rankgrid.models import Keyword

        with get_session() as session:
            keyword = Keyword(account_id="acct-1", phrase="plumber")
            session.add(keyword)
        assert keyword.id is not None
        assert keyword.phrase == "plumber"

    def test_reset_db(self, test_db, keyword_factory):
        """reset_db should drop and recreate all tables."""
        from rankgrid.database import get_session, reset_db
        from rankgrid.models import Keyword

        keyword_factory("plumber")
        reset_db()
        with get_session() as session:
            assert session.query(Keyword).count() == 0


# ===========================================================================
# 2. Module imports
# ===========================================================================
class TestModuleImports:
    """All packages should be importable and export their main classes."""

    @pytest.mark.parametrize("module_path,class_names", [
        ("rankgrid.models", ["Keyword", "TrackingConfig", "TrackedTerm", "CheckResult",
                             "DailySummary", "CreditAccount", "CreditLedgerEntry",
                             "CheckSchedule", "UnifiedSchedule", "PausedScheduleRecord"]),
        ("rankgrid.modules.geo_grid", ["RankChecker", "SummaryAggregator", "TrackingService",
                                       "CheckPoint", "calculate_grid_points"]),
        ("rankgrid.modules.credits", ["CreditService", "PricingModel", "CostBreakdown"]),
        ("rankgrid.modules.scheduling", ["ScheduleService", "ScheduleOverrideManager",
                                         "compute_next_run", "describe_schedule"]),
        ("rankgrid.integrations.ranking_provider", ["DataForSEOMapsClient", "parse_maps_response"]),
        ("rankgrid.workflows", ["RunDispatcher", "ExecutionReport", "run_due_job"]),
        ("rankgrid.scheduler", ["RankScheduler", "parse_cron"]),
        ("rankgrid.database", ["init_db", "get_session", "reset_db", "reset_engine", "Base", "get_engine"]),
    ])
    def test_module_importable(self, module_path, class_names):
        mod = importlib.import_module(module_path)
        for cls_name in class_names:
            assert hasattr(mod, cls_name), (
                "Class " + cls_name + " not found in " + module_path
            )


# ===========================================================================
# 3. RunDispatcher initialization
# ===========================================================================
class TestRunDispatcher:
    """RunDispatcher should initialise without touching the network."""

    def test_init(self):
        from rankgrid.workflows import RunDispatcher
        dispatcher = RunDispatcher()
        assert dispatcher._rank_checker is None

    def test_lazy_accessors_exist(self):
        from rankgrid.workflows import RunDispatcher
        dispatcher = RunDispatcher()
        for name in ("_get_credits", "_get_rank_checker", "_get_tracking", "_get_schedules"):
            assert callable(getattr(dispatcher, name))

    @pytest.mark.asyncio
    async def test_empty_database_has_nothing_due(self, test_db):
        from rankgrid.workflows import RunDispatcher
        dispatcher = RunDispatcher()
        results = await dispatcher.run_due()
        await dispatcher.close()
        assert results["steps"] == {}
        assert "0/0" in results["summary"]


# ===========================================================================
# 4. Settings
# ===========================================================================
class TestSettingsYaml:
    """Configuration file should be loadable."""

    def test_settings_file_exists(self):
        assert SETTINGS_PATH.exists(), "config/settings.yaml not found"

    def test_settings_has_required_sections(self):
        import yaml
        with open(SETTINGS_PATH) as fh:
            config = yaml.safe_load(fh)
        for section in ("database", "provider", "rank_checker", "pricing", "scheduler"):
            assert section in config, "Missing config section: " + section

    def test_load_settings(self, monkeypatch):
        from rankgrid.config import load_settings
        monkeypatch.delenv("DATABASE_URL", raising=False)
        settings = load_settings(str(SETTINGS_PATH), env_path="/nonexistent/.env")
        assert settings.database_url == "sqlite:///data/rankgrid.db"
        assert settings.pricing.geo_grid_per_point == 1
        assert settings.rank_checker.max_attempts == 3
        assert settings.scheduler.dispatch_cron == "*/15 * * * *"

    def test_environment_wins_for_credentials(self, monkeypatch):
        from rankgrid.config import load_settings
        monkeypatch.setenv("DATAFORSEO_LOGIN", "env-login")
        monkeypatch.setenv("DATAFORSEO_PASSWORD", "env-secret")
        monkeypatch.setenv("DATABASE_URL", "sqlite:///env.db")
        settings = load_settings(str(SETTINGS_PATH), env_path="/nonexistent/.env")
        assert settings.provider.login == "env-login"
        assert settings.provider.password == "env-secret"
        assert settings.database_url == "sqlite:///env.db"

    def test_missing_file_uses_defaults(self, tmp_path, monkeypatch):
        from rankgrid.config import load_settings
        monkeypatch.delenv("DATABASE_URL", raising=False)
        settings = load_settings(str(tmp_path / "missing.yaml"), env_path="/nonexistent/.env")
        assert settings.provider.zoom == 13
        assert settings.pricing.llm_per_question == 2


# ===========================================================================
# 5. Scheduler wrapper
# ===========================================================================
class TestRankScheduler:

    def test_parse_cron(self):
        from rankgrid.scheduler import parse_cron
        trigger = parse_cron("*/15 * * * *")
        assert "minute='*/15'" in str(trigger)

    def test_parse_cron_rejects_wrong_field_count(self):
        from rankgrid.exceptions import ConfigurationError
        from rankgrid.scheduler import parse_cron
        with pytest.raises(ConfigurationError):
            parse_cron("0 9 * *")

    def test_register_dispatcher(self, tmp_path):
        from rankgrid.config import SchedulerSettings
        from rankgrid.scheduler import DISPATCH_JOB_ID, RankScheduler

        scheduler = RankScheduler(SchedulerSettings(job_store=f"sqlite:///{tmp_path / 'jobs' / 'jobs.db'}"))
        assert (tmp_path / "jobs").is_dir()
        scheduler.register_dispatcher(config_path="config/settings.yaml")
        jobs = scheduler.list_jobs()
        assert [job["id"] for job in jobs] == [DISPATCH_JOB_ID]
        assert scheduler.get_job(DISPATCH_JOB_ID) is not None
        assert scheduler.remove_job(DISPATCH_JOB_ID)
        assert not scheduler.remove_job(DISPATCH_JOB_ID)


# ===========================================================================
# 6. CLI commands (smoke test via CliRunner)
# ===========================================================================
class TestCLICommands:
    """CLI help should work for all registered commands."""

    def _get_runner_and_app(self):
        from typer.testing import CliRunner
        from rankgrid.cli import app
        return CliRunner(), app

    def test_main_help(self):
        runner, cli_app = self._get_runner_and_app()
        result = runner.invoke(cli_app, ["--help"])
        assert result.exit_code == 0
        assert "RankGrid" in result.output

    @pytest.mark.parametrize("command", [
        "init",
        "add-keyword",
        "create-config",
        "run-now",
        "run-due",
        "estimate",
        "summary",
        "trend",
        "balance",
        "grant",
        "serve",
        "status",
    ])
    def test_command_help(self, command):
        runner, cli_app = self._get_runner_and_app()
        result = runner.invoke(cli_app, [command, "--help"])
        assert result.exit_code == 0, (
            "Command '" + command + "' --help failed with exit code "
            + str(result.exit_code) + ": " + result.output
        )

    def test_estimate(self):
        runner, cli_app = self._get_runner_and_app()
        result = runner.invoke(cli_app, [
            "estimate", "--types", "geo_grid,llm_visibility", "--grid-size", "9",
            "--keywords", "2", "--providers", "3", "--config", str(SETTINGS_PATH),
        ])
        assert result.exit_code == 0, result.output
        # 9 x 2 geo-grid credits plus 2 x 3 x 2 LLM credits
        assert "18" in result.output
        assert "12" in result.output
        assert "30" in result.output

    def test_estimate_rejects_unknown_type(self):
        runner, cli_app = self._get_runner_and_app()
        result = runner.invoke(cli_app, ["estimate", "--types", "backlinks", "--config", str(SETTINGS_PATH)])
        assert result.exit_code == 1

    def test_keyword_config_and_credits_flow(self, cli_settings):
        runner, cli_app = self._get_runner_and_app()

        result = runner.invoke(cli_app, ["add-keyword", "acct-1", "emergency plumber", "-c", cli_settings])
        assert result.exit_code == 0, result.output
        assert "Keyword 1 created" in result.output

        result = runner.invoke(cli_app, [
            "create-config", "acct-1", "40.7128", "-74.0060", "--place-id", "ChIJ-target",
            "--grid-size", "9", "--keywords", "1", "-c", cli_settings,
        ])
        assert result.exit_code == 0, result.output
        assert "center" in result.output

        result = runner.invoke(cli_app, ["grant", "acct-1", "25", "-c", cli_settings])
        assert result.exit_code == 0, result.output
        assert "25 credits" in result.output

        result = runner.invoke(cli_app, ["balance", "acct-1", "-c", cli_settings])
        assert result.exit_code == 0, result.output
        assert "25 credits" in result.output

        result = runner.invoke(cli_app, ["status", "-c", cli_settings])
        assert result.exit_code == 0, result.output
        assert "Tracking Configs" in result.output

    def test_create_config_rejects_bad_grid(self, cli_settings):
        runner, cli_app = self._get_runner_and_app()
        result = runner.invoke(cli_app, [
            "create-config", "acct-1", "40.7", "-74.0", "--place-id", "x", "--grid-size", "10",
            "-c", cli_settings,
        ])
        assert result.exit_code == 1

    def test_summary_missing(self, cli_settings):
        runner, cli_app = self._get_runner_and_app()
        result = runner.invoke(cli_app, ["summary", "1", "--date", "2024-05-01", "-c", cli_settings])
        assert result.exit_code == 1
        assert "No summary" in result.output


# ===========================================================================
# 7. All Python files syntax validation
# ===========================================================================
class TestAllPythonFilesSyntax:
    """Every .py file in rankgrid/ and tests/ should pass ast.parse."""

    def _collect_python_files(self):
        files = []
        for directory in ("rankgrid", "tests"):
            base = PROJECT_ROOT / directory
            if base.exists():
                for py_file in base.rglob("*.py"):
                    parts = py_file.parts
                    if "venv" in parts or "__pycache__" in parts:
                        continue
                    files.append(py_file)
        return sorted(files)

    def test_all_python_files_parse(self):
        py_files = self._collect_python_files()
        assert len(py_files) > 0, "No Python files found"
        errors = []
        for py_file in py_files:
            try:
                ast.parse(py_file.read_text(encoding="utf-8"))
            except SyntaxError as exc:
                rel = py_file.relative_to(PROJECT_ROOT)
                errors.append(str(rel) + ": " + str(exc))
        if errors:
            msg = "Python syntax errors found in " + str(len(errors)) + " files:\n"
            msg += "\n".join(errors[:20])
            pytest.fail(msg)
