"""Run dispatcher: execute every due config, term schedule, individual and unified schedule."""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Protocol

from sqlalchemy import select

from rankgrid.config import Settings, load_settings
from rankgrid.database import get_session, init_db
from rankgrid.models.keyword import Keyword
from rankgrid.models.schedule import CheckType, ScheduleState, UnifiedSchedule
from rankgrid.modules.scheduling.schedule_engine import as_utc, compute_next_run

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ExecutionReport:
    """What an external check executor did; ``billable_units`` drives the debit."""
    billable_units: int = 0
    status: str = "success"
    details: dict[str, Any] = field(default_factory=dict)


class CheckExecutor(Protocol):
    """Runs search-rank or LLM-visibility checks for one concept."""

    async def execute(
        self,
        account_id: str,
        keyword_id: int,
        search_terms: list[str],
        questions: list[str],
        llm_providers: list[str],
    ) -> ExecutionReport:
        ...


@dataclass(frozen=True)
class _Concept:
    id: int
    account_id: str
    search_terms: list[str]
    questions: list[str]


class RunDispatcher:
    """Execute everything that is due, one failure never aborting the batch.

    Each unit of work (a config, a term schedule, an individual or unified
    schedule) is wrapped in try/except; its outcome is collected per step and
    the schedule is advanced whether it ran, was skipped, or failed.

    Usage::

        dispatcher = RunDispatcher.from_settings(load_settings())
        results = await dispatcher.run_due()
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        rank_checker=None,
        credits=None,
        tracking=None,
        schedules=None,
        executors: Optional[dict[CheckType, CheckExecutor]] = None,
    ) -> None:
        self._settings = settings or Settings()
        self._rank_checker = rank_checker
        self._credits = credits
        self._tracking = tracking
        self._schedules = schedules
        self._executors: dict[CheckType, CheckExecutor] = dict(executors or {})
        self._provider = None
        logger.info("RunDispatcher initialized.")

    @classmethod
    def from_settings(
        cls, settings: Settings, executors: Optional[dict[CheckType, CheckExecutor]] = None
    ) -> "RunDispatcher":
        return cls(settings=settings, executors=executors)

    # ------------------------------------------------------------------
    # Lazy-loaded collaborators
    # ------------------------------------------------------------------

    def _get_credits(self):
        if self._credits is None:
            from rankgrid.modules.credits import CreditService
            self._credits = CreditService(self._settings.pricing)
            logger.debug("CreditService created.")
        return self._credits

    def _get_rank_checker(self):
        if self._rank_checker is None:
            from rankgrid.integrations.ranking_provider import DataForSEOMapsClient
            from rankgrid.modules.geo_grid import RankChecker
            self._provider = DataForSEOMapsClient(self._settings.provider)
            self._rank_checker = RankChecker(
                provider=self._provider,
                credits=self._get_credits(),
                settings=self._settings.rank_checker,
                top_competitors=self._settings.provider.top_competitors,
            )
            logger.debug("RankChecker created.")
        return self._rank_checker

    def _get_tracking(self):
        if self._tracking is None:
            from rankgrid.modules.geo_grid import TrackingService
            self._tracking = TrackingService()
            logger.debug("TrackingService created.")
        return self._tracking

    def _get_schedules(self):
        if self._schedules is None:
            from rankgrid.modules.scheduling import ScheduleService
            self._schedules = ScheduleService()
            logger.debug("ScheduleService created.")
        return self._schedules

    async def close(self) -> None:
        if self._provider is not None:
            await self._provider.close()
            self._provider = None

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def run_due(self, now: Optional[datetime] = None) -> dict[str, Any]:
        """Run every due config and schedule as of ``now``.

        Steps:
            1. Due configs (in parallel across configs)
            2. Due custom per-term geo-grid schedules
            3. Due individual search-rank / LLM-visibility schedules
            4. Due active unified schedules
        """
        now = as_utc(now) or _utcnow()
        started = time.time()
        results: dict[str, Any] = {"now": now.isoformat(), "steps": {}}
        logger.info("Dispatching due work as of %s", now.isoformat())

        config_ids = self._get_tracking().due_configs(now)
        outcomes = await asyncio.gather(*(self._run_config(cid, now) for cid in config_ids))
        for config_id, outcome in zip(config_ids, outcomes):
            results["steps"][f"config:{config_id}"] = outcome

        results["steps"].update(await self._run_term_schedules(now))

        for schedule in self._get_schedules().due_schedules(
            now, [CheckType.SEARCH_RANK, CheckType.LLM_VISIBILITY]
        ):
            results["steps"][f"schedule:{schedule['id']}"] = await self._run_individual(
                schedule, now
            )

        for unified_id in self._due_unified(now):
            results["steps"][f"unified:{unified_id}"] = await self._run_unified(unified_id, now)

        elapsed = time.time() - started
        steps = results["steps"].values()
        ok = sum(1 for s in steps if s.get("status") not in ("error", "failed"))
        results["elapsed_seconds"] = round(elapsed, 2)
        results["summary"] = f"{ok}/{len(results['steps'])} due items processed cleanly in {elapsed:.1f}s"
        logger.info("Dispatch finished: %s", results["summary"])
        return results

    # ------------------------------------------------------------------
    # Geo-grid configs and term schedules
    # ------------------------------------------------------------------

    async def _run_config(self, config_id: int, now: datetime) -> dict[str, Any]:
        from rankgrid.modules.geo_grid.rank_checker import RunTrigger
        try:
            result = await self._get_rank_checker().run_config(
                config_id, trigger=RunTrigger.SCHEDULED, run_date=now.date()
            )
            outcome = result.to_dict()
        except Exception as exc:
            logger.exception("Scheduled run for config %s failed: %s", config_id, exc)
            outcome = {"status": "error", "error": str(exc)}
        finally:
            self._get_tracking().advance_schedule(config_id, now)
        return outcome

    async def _run_term_schedules(self, now: datetime) -> dict[str, dict[str, Any]]:
        from rankgrid.modules.geo_grid.rank_checker import RunTrigger
        schedules = self._get_schedules()
        due = schedules.due_schedules(now, [CheckType.GEO_GRID])
        if not due:
            return {}
        steps: dict[str, dict[str, Any]] = {}
        try:
            by_config = self._get_tracking().terms_for_schedules([s["id"] for s in due])
            for config_id, term_ids in by_config.items():
                key = f"terms:{config_id}:{','.join(map(str, term_ids))}"
                try:
                    result = await self._get_rank_checker().run_config(
                        config_id, trigger=RunTrigger.CUSTOM, term_ids=term_ids,
                        run_date=now.date(),
                    )
                    steps[key] = result.to_dict()
                except Exception as exc:
                    logger.exception("Custom term run for config %s failed: %s", config_id, exc)
                    steps[key] = {"status": "error", "error": str(exc)}
        finally:
            for schedule in due:
                schedules.advance(schedule["id"], now)
        return steps

    # ------------------------------------------------------------------
    # Individual search-rank / LLM-visibility schedules
    # ------------------------------------------------------------------

    @staticmethod
    def _load_concept(keyword_id: int) -> Optional[_Concept]:
        with get_session() as session:
            keyword = session.get(Keyword, keyword_id)
            if keyword is None:
                return None
            return _Concept(
                id=keyword.id,
                account_id=keyword.account_id,
                search_terms=keyword.effective_search_terms(),
                questions=list(keyword.related_questions or []),
            )

    def _type_cost(self, check_type: CheckType, concept: _Concept, providers: list[str]) -> int:
        pricing = self._get_credits().pricing
        if check_type is CheckType.SEARCH_RANK:
            return pricing.search_rank_cost(len(concept.search_terms))
        return pricing.llm_visibility_cost(len(concept.questions), len(providers))

    def _unit_price(self, check_type: CheckType) -> int:
        pricing = self._get_credits().pricing.settings
        if check_type is CheckType.SEARCH_RANK:
            return pricing.search_rank_per_check
        return pricing.llm_per_question

    async def _execute_type(
        self,
        check_type: CheckType,
        concept: _Concept,
        providers: list[str],
        run_id: str,
    ) -> dict[str, Any]:
        """Run one external executor and bill its successful units."""
        executor = self._executors.get(check_type)
        if executor is None:
            return {"status": "skipped", "reason": f"No executor registered for {check_type.value}"}
        report = await executor.execute(
            concept.account_id, concept.id, concept.search_terms, concept.questions, providers
        )
        billed = report.billable_units * self._unit_price(check_type)
        debit = None
        if billed > 0:
            debit = self._get_credits().debit(
                concept.account_id,
                billed,
                run_id,
                check_type.value,
                idempotency_key=f"{check_type.value}:{concept.id}:{run_id}",
                metadata={"keyword_id": concept.id, "units": report.billable_units},
            )
            if debit is None:
                logger.error(
                    "Could not debit %d credits for %s on keyword %s",
                    billed, check_type.value, concept.id,
                )
        return {
            "status": report.status,
            "billed_credits": debit.amount if debit else 0,
            "details": report.details,
        }

    async def _run_individual(self, schedule: dict[str, Any], now: datetime) -> dict[str, Any]:
        check_type = CheckType(schedule["check_type"])
        run_id = uuid.uuid4().hex
        try:
            concept = self._load_concept(schedule["keyword_id"])
            if concept is None:
                return {"status": "skipped", "reason": "Keyword no longer exists"}
            providers = schedule["llm_providers"]
            cost = self._type_cost(check_type, concept, providers)
            if not self._get_credits().check_balance(concept.account_id, cost):
                return {"status": "insufficient_credits", "planned_cost": cost}
            outcome = await self._execute_type(check_type, concept, providers, run_id)
            outcome["planned_cost"] = cost
            return outcome
        except Exception as exc:
            logger.exception("Schedule %s (%s) failed: %s", schedule["id"], check_type.value, exc)
            return {"status": "error", "error": str(exc)}
        finally:
            self._get_schedules().advance(schedule["id"], now)

    # ------------------------------------------------------------------
    # Unified schedules
    # ------------------------------------------------------------------

    @staticmethod
    def _due_unified(now: datetime) -> list[int]:
        with get_session() as session:
            return list(
                session.scalars(
                    select(UnifiedSchedule.id)
                    .where(
                        UnifiedSchedule.state == ScheduleState.UNIFIED_ACTIVE.value,
                        UnifiedSchedule.next_scheduled_at.is_not(None),
                        UnifiedSchedule.next_scheduled_at <= now,
                    )
                    .order_by(UnifiedSchedule.next_scheduled_at, UnifiedSchedule.id)
                ).all()
            )

    def _unified_geo_grid_cost(self, keyword_id: int) -> tuple[int, list[int]]:
        from rankgrid.modules.geo_grid.rank_checker import RunTrigger
        checker = self._get_rank_checker()
        total = 0
        config_ids = []
        for config_id in self._get_tracking().configs_for_keyword(keyword_id):
            terms = checker.select_terms(config_id, RunTrigger.UNIFIED, keyword_ids=[keyword_id])
            if terms:
                total += checker.planned_cost(config_id, len(terms))
                config_ids.append(config_id)
        return total, config_ids

    async def _run_unified(self, unified_id: int, now: datetime) -> dict[str, Any]:
        from rankgrid.modules.geo_grid.rank_checker import RunStatus, RunTrigger
        run_id = uuid.uuid4().hex
        outcome: dict[str, Any] = {"status": "error", "types": {}}
        try:
            with get_session() as session:
                unified = session.get(UnifiedSchedule, unified_id)
                keyword_id = unified.keyword_id
                types = [CheckType(t) for t in unified.check_types or []]
                providers = list(unified.llm_providers or [])
            concept = self._load_concept(keyword_id)
            if concept is None:
                outcome = {"status": "skipped", "reason": "Keyword no longer exists"}
                return outcome

            geo_cost, config_ids = (
                self._unified_geo_grid_cost(keyword_id) if CheckType.GEO_GRID in types else (0, [])
            )
            cost = geo_cost + sum(
                self._type_cost(t, concept, providers) for t in types if t is not CheckType.GEO_GRID
            )
            outcome["planned_cost"] = cost
            if not self._get_credits().check_balance(concept.account_id, cost):
                outcome["status"] = "insufficient_credits"
                return outcome

            failures = 0
            for check_type in types:
                if check_type is CheckType.GEO_GRID:
                    runs = []
                    failed_runs = 0
                    for config_id in config_ids:
                        result = await self._get_rank_checker().run_config(
                            config_id, trigger=RunTrigger.UNIFIED, keyword_ids=[keyword_id],
                            run_date=now.date(),
                        )
                        runs.append(result.to_dict())
                        if result.status not in (RunStatus.COMPLETED, RunStatus.SKIPPED):
                            failed_runs += 1
                    if not runs:
                        geo_status = "skipped"
                    elif not failed_runs:
                        geo_status = "success"
                    elif failed_runs == len(runs):
                        geo_status = "error"
                    else:
                        geo_status = "partial"
                    failures += failed_runs
                    outcome["types"][check_type.value] = {"status": geo_status, "runs": runs}
                    continue
                try:
                    type_outcome = await self._execute_type(check_type, concept, providers, run_id)
                except Exception as exc:
                    logger.exception("Unified %s: %s failed: %s", unified_id, check_type.value, exc)
                    type_outcome = {"status": "error", "error": str(exc)}
                if type_outcome["status"] not in ("success", "skipped"):
                    failures += 1
                outcome["types"][check_type.value] = type_outcome
            outcome["status"] = "partial" if failures else "completed"
            return outcome
        except Exception as exc:
            logger.exception("Unified schedule %s failed: %s", unified_id, exc)
            outcome = {"status": "error", "error": str(exc)}
            return outcome
        finally:
            self._advance_unified(unified_id, now, outcome["status"])

    @staticmethod
    def _advance_unified(unified_id: int, now: datetime, status: str) -> None:
        with get_session() as session:
            unified = session.get(UnifiedSchedule, unified_id)
            if unified is None:
                return
            unified.last_run_at = now
            unified.last_run_status = status
            if unified.state == ScheduleState.UNIFIED_ACTIVE.value:
                unified.next_scheduled_at = compute_next_run(
                    unified.frequency, unified.hour, now, unified.day_of_week, unified.day_of_month
                )


# ------------------------------------------------------------------
# APScheduler job target
# ------------------------------------------------------------------

def run_due_job(config_path: str = "config/settings.yaml") -> dict[str, Any]:
    """Synchronous job entry point; importable by reference for persistent job stores."""
    settings = load_settings(config_path)
    init_db(database_url=settings.database_url, echo=settings.database_echo)
    dispatcher = RunDispatcher.from_settings(settings)

    async def _run() -> dict[str, Any]:
        try:
            return await dispatcher.run_due()
        finally:
            await dispatcher.close()

    return asyncio.run(_run())
