"""Geo-grid rank checker: one full check run for one tracking config.

A run fans (term, point) pairs out to a small worker pool, retries transient
provider failures with backoff, records every pair as a CheckResult (``ok``
or ``error``), bills only the calls that succeeded, and finally rolls the
day up into a DailySummary.
"""

import asyncio
import logging
import random
import uuid
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy import select

from rankgrid.config import RankCheckerSettings
from rankgrid.database import get_session
from rankgrid.exceptions import (
    NotFoundError,
    ProviderError,
    QuotaExceededError,
    TransientProviderError,
)
from rankgrid.integrations.ranking_provider import RankCheckResponse, RankingProvider
from rankgrid.models.geo_grid import (
    CheckResult,
    CheckStatus,
    ScheduleMode,
    TrackedTerm,
    TrackingConfig,
)
from rankgrid.models.schedule import CheckType, ScheduleState, UnifiedSchedule
from rankgrid.modules.credits.service import CreditService
from rankgrid.modules.geo_grid.buckets import classify_position
from rankgrid.modules.geo_grid.point_calculator import CheckPoint, calculate_grid_points
from rankgrid.modules.geo_grid.summary_aggregator import SummaryAggregator
from rankgrid.utils.locks import KeyedRunLock

logger = logging.getLogger(__name__)

FEATURE_TYPE = CheckType.GEO_GRID.value

# Shared by every checker and the tracking service in this process.
RUN_LOCKS = KeyedRunLock()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RunTrigger:
    MANUAL = "manual"
    SCHEDULED = "scheduled"
    CUSTOM = "custom"
    UNIFIED = "unified"


class RunStatus:
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"
    SKIPPED = "skipped"
    INSUFFICIENT_CREDITS = "insufficient_credits"
    ALREADY_RUNNING = "already_running"


@dataclass(frozen=True)
class TermSnapshot:
    id: int
    keyword_id: Optional[int]
    search_query: str


@dataclass
class PairOutcome:
    term: TermSnapshot
    point: CheckPoint
    response: Optional[RankCheckResponse] = None
    error: Optional[str] = None
    attempts: int = 0
    quota_exhausted: bool = False

    @property
    def ok(self) -> bool:
        return self.response is not None


@dataclass
class RunResult:
    """What a run did, for logs, the CLI and the dispatcher."""
    config_id: int
    run_id: str
    status: str
    trigger: str = RunTrigger.MANUAL
    reason: Optional[str] = None
    check_date: Optional[date] = None
    total_checks: int = 0
    successful_checks: int = 0
    error_count: int = 0
    planned_cost: int = 0
    billed_credits: int = 0
    provider_cost_usd: float = 0.0
    quota_exhausted: bool = False
    errors: list[str] = field(default_factory=list)
    summary: Optional[dict[str, Any]] = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["check_date"] = self.check_date.isoformat() if self.check_date else None
        return data


@dataclass(frozen=True)
class _ConfigSnapshot:
    id: int
    account_id: str
    is_enabled: bool
    target_place_id: Optional[str]
    language_code: str
    points: list[CheckPoint]


class RankChecker:
    """Run geo-grid checks for a config against a :class:`RankingProvider`.

    Usage::

        checker = RankChecker(provider=DataForSEOMapsClient(settings.provider),
                              credits=CreditService(settings.pricing))
        result = await checker.run_config(config_id=1)
    """

    def __init__(
        self,
        provider: RankingProvider,
        credits: CreditService,
        aggregator: Optional[SummaryAggregator] = None,
        settings: Optional[RankCheckerSettings] = None,
        top_competitors: int = 3,
        run_locks: Optional[KeyedRunLock] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._provider = provider
        self._credits = credits
        self._aggregator = aggregator or SummaryAggregator()
        self._settings = settings or RankCheckerSettings()
        self._top_competitors = top_competitors
        self._locks = run_locks or RUN_LOCKS
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    @staticmethod
    def _load_config(config_id: int) -> _ConfigSnapshot:
        with get_session() as session:
            config = session.get(TrackingConfig, config_id)
            if config is None:
                raise NotFoundError(f"Tracking config {config_id} not found")
            if config.check_points:
                points = [CheckPoint.from_dict(p) for p in config.check_points]
            else:
                points = calculate_grid_points(
                    config.center_lat, config.center_lng, config.radius_miles, config.grid_size
                )
            return _ConfigSnapshot(
                id=config.id,
                account_id=config.account_id,
                is_enabled=config.is_enabled,
                target_place_id=config.target_place_id,
                language_code=config.language_code or "en",
                points=points,
            )

    @staticmethod
    def select_terms(
        config_id: int,
        trigger: str = RunTrigger.MANUAL,
        term_ids: Optional[list[int]] = None,
        keyword_ids: Optional[list[int]] = None,
    ) -> list[TermSnapshot]:
        """Enabled terms a run of this kind should check.

        Scheduled runs take only ``inherit`` terms whose concept is not owned
        by an active unified schedule covering geo-grid. Custom runs take only
        ``custom`` terms. Unified runs skip ``disabled`` terms. Explicit ids
        narrow the set further.
        """
        with get_session() as session:
            stmt = select(TrackedTerm).where(
                TrackedTerm.config_id == config_id, TrackedTerm.is_enabled.is_(True)
            )
            if term_ids:
                stmt = stmt.where(TrackedTerm.id.in_(term_ids))
            if keyword_ids:
                stmt = stmt.where(TrackedTerm.keyword_id.in_(keyword_ids))
            if trigger == RunTrigger.SCHEDULED:
                stmt = stmt.where(TrackedTerm.schedule_mode == ScheduleMode.INHERIT.value)
            elif trigger == RunTrigger.CUSTOM:
                stmt = stmt.where(TrackedTerm.schedule_mode == ScheduleMode.CUSTOM.value)
            elif trigger == RunTrigger.UNIFIED:
                stmt = stmt.where(TrackedTerm.schedule_mode != ScheduleMode.DISABLED.value)
            terms = session.scalars(stmt.order_by(TrackedTerm.id)).all()

            covered: set[int] = set()
            if trigger == RunTrigger.SCHEDULED:
                active = session.scalars(
                    select(UnifiedSchedule).where(
                        UnifiedSchedule.state == ScheduleState.UNIFIED_ACTIVE.value
                    )
                ).all()
                covered = {u.keyword_id for u in active if u.covers(CheckType.GEO_GRID)}

            return [
                TermSnapshot(t.id, t.keyword_id, t.search_query)
                for t in terms
                if t.keyword_id is None or t.keyword_id not in covered
            ]

    def planned_cost(self, config_id: int, term_count: int) -> int:
        config = self._load_config(config_id)
        return self._credits.pricing.geo_grid_cost(len(config.points), term_count)

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def is_running(self, config_id: int) -> bool:
        return self._locks.is_locked(config_id)

    async def run_config(
        self,
        config_id: int,
        trigger: str = RunTrigger.MANUAL,
        term_ids: Optional[list[int]] = None,
        keyword_ids: Optional[list[int]] = None,
        run_date: Optional[date] = None,
    ) -> RunResult:
        """Execute one check run. Returns ``already_running`` if one is in flight."""
        run_id = uuid.uuid4().hex
        if not self._locks.try_acquire(config_id):
            logger.info("Config %s already has a run in flight; skipping", config_id)
            return RunResult(
                config_id, run_id, RunStatus.ALREADY_RUNNING, trigger=trigger,
                reason="A run for this config is already in progress",
            )
        try:
            return await self._run_locked(
                config_id, run_id, trigger, term_ids, keyword_ids, run_date or _utcnow().date()
            )
        finally:
            self._locks.release(config_id)

    async def _run_locked(
        self,
        config_id: int,
        run_id: str,
        trigger: str,
        term_ids: Optional[list[int]],
        keyword_ids: Optional[list[int]],
        run_date: date,
    ) -> RunResult:
        config = self._load_config(config_id)
        result = RunResult(
            config_id, run_id, RunStatus.SKIPPED, trigger=trigger, check_date=run_date
        )

        if trigger == RunTrigger.SCHEDULED and not config.is_enabled:
            result.reason = "Config is disabled"
            return result
        if not config.target_place_id:
            result.reason = "Config has no target business id"
            logger.warning("Config %s skipped: %s", config_id, result.reason)
            return result

        terms = self.select_terms(config_id, trigger, term_ids, keyword_ids)
        if not terms:
            result.reason = "No tracked terms to check"
            logger.info("Config %s skipped: %s", config_id, result.reason)
            return result

        result.total_checks = len(terms) * len(config.points)
        result.planned_cost = self._credits.pricing.geo_grid_cost(len(config.points), len(terms))
        if not self._credits.check_balance(config.account_id, result.planned_cost):
            result.status = RunStatus.INSUFFICIENT_CREDITS
            result.reason = f"Run needs {result.planned_cost} credits"
            self._aggregator.record_insufficient_credits(config_id, run_date)
            return result

        logger.info(
            "Run %s for config %s: %d terms x %d points = %d checks (%s)",
            run_id, config_id, len(terms), len(config.points), result.total_checks, trigger,
        )
        pairs = [(term, point) for term in terms for point in config.points]
        outcomes = await self._execute(pairs, config)

        self._persist(config, run_id, run_date, outcomes)
        successes = [o for o in outcomes if o.ok]
        result.successful_checks = len(successes)
        result.error_count = len(outcomes) - len(successes)
        result.provider_cost_usd = round(sum(o.response.cost for o in successes), 6)
        result.quota_exhausted = any(o.quota_exhausted for o in outcomes)
        result.errors = [
            f"{o.term.search_query!r} at {o.point.label}: {o.error}" for o in outcomes if o.error
        ]

        result.billed_credits = self._bill(config, run_id, len(successes), trigger)
        self._touch_config(config_id)

        if not successes:
            result.status = RunStatus.FAILED
        elif result.error_count:
            result.status = RunStatus.PARTIAL
        else:
            result.status = RunStatus.COMPLETED

        try:
            result.summary = self._aggregator.summarize(config_id, run_date)
        except Exception as exc:
            logger.error("Summary for config %s on %s failed: %s", config_id, run_date, exc)
            result.errors.append(f"summary: {exc}")

        logger.info(
            "Run %s for config %s %s: %d/%d ok, %d credits billed",
            run_id, config_id, result.status, result.successful_checks,
            result.total_checks, result.billed_credits,
        )
        return result

    async def _execute(
        self, pairs: list[tuple[TermSnapshot, CheckPoint]], config: _ConfigSnapshot
    ) -> list[PairOutcome]:
        """Drain ``pairs`` with a bounded worker pool; every pair gets an outcome."""
        queue: asyncio.Queue = asyncio.Queue()
        for index, pair in enumerate(pairs):
            queue.put_nowait((index, pair))
        outcomes: list[Optional[PairOutcome]] = [None] * len(pairs)
        quota_hit = asyncio.Event()

        async def worker(worker_id: int) -> None:
            first = True
            while True:
                try:
                    index, (term, point) = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                if quota_hit.is_set():
                    outcomes[index] = PairOutcome(
                        term, point, error="Not attempted: provider quota exhausted",
                        quota_exhausted=True,
                    )
                    continue
                if not first and self._settings.request_delay_seconds > 0:
                    await self._sleep(self._settings.request_delay_seconds)
                first = False
                outcomes[index] = await self._check_pair(term, point, config, quota_hit)
                logger.debug(
                    "Worker %d: %r at %s -> %s", worker_id, term.search_query, point.label,
                    outcomes[index].error or outcomes[index].response.my_position,
                )

        workers = max(1, min(self._settings.max_concurrency, len(pairs)))
        await asyncio.gather(*(worker(i) for i in range(workers)))
        return [o for o in outcomes if o is not None]

    async def _check_pair(
        self,
        term: TermSnapshot,
        point: CheckPoint,
        config: _ConfigSnapshot,
        quota_hit: asyncio.Event,
    ) -> PairOutcome:
        outcome = PairOutcome(term, point)
        max_attempts = max(1, self._settings.max_attempts)
        for attempt in range(1, max_attempts + 1):
            outcome.attempts = attempt
            try:
                outcome.response = await self._provider.check_rank(
                    point, term.search_query, config.target_place_id, config.language_code
                )
                outcome.error = None
                return outcome
            except QuotaExceededError as exc:
                quota_hit.set()
                outcome.quota_exhausted = True
                outcome.error = f"Provider quota exhausted: {exc}"
                logger.error("Quota exhausted during config %s run; stopping dispatch", config.id)
                return outcome
            except TransientProviderError as exc:
                outcome.error = str(exc)
                if attempt < max_attempts:
                    base = self._settings.backoff_base_seconds
                    backoff = base * 2 ** (attempt - 1)
                    if self._settings.backoff_max_seconds is not None:
                        backoff = min(backoff, self._settings.backoff_max_seconds)
                    backoff += random.uniform(0, base / 2)
                    logger.warning(
                        "Attempt %d/%d failed for %r at %s: %s. Retrying in %.2fs",
                        attempt, max_attempts, term.search_query, point.label, exc, backoff,
                    )
                    await self._sleep(backoff)
            except ProviderError as exc:
                outcome.error = str(exc)
                logger.warning("Provider rejected %r at %s: %s", term.search_query, point.label, exc)
                return outcome
            except Exception as exc:
                outcome.error = f"Unexpected provider failure: {exc}"
                logger.exception("Unexpected failure for %r at %s", term.search_query, point.label)
                return outcome
        logger.error(
            "Giving up on %r at %s after %d attempts", term.search_query, point.label, max_attempts
        )
        return outcome

    # ------------------------------------------------------------------
    # Persistence and billing
    # ------------------------------------------------------------------

    def _result_values(self, outcome: PairOutcome, target: str) -> dict[str, Any]:
        if not outcome.ok:
            return {
                "status": CheckStatus.ERROR.value,
                "position": None,
                "position_bucket": None,
                "business_found": False,
                "top_competitors": None,
                "our_rating": None,
                "our_review_count": None,
                "provider_task_id": None,
                "api_cost_usd": 0.0,
                "error_message": outcome.error,
            }
        response = outcome.response
        competitors = response.top_competitors(self._top_competitors, exclude_place_id=target)
        return {
            "status": CheckStatus.OK.value,
            "position": response.my_position,
            "position_bucket": classify_position(response.my_position).value,
            "business_found": response.business_found,
            "top_competitors": competitors or None,
            "our_rating": response.our_rating,
            "our_review_count": response.our_review_count,
            "provider_task_id": response.task_id,
            "api_cost_usd": response.cost,
            "error_message": None,
        }

    def _persist(
        self,
        config: _ConfigSnapshot,
        run_id: str,
        run_date: date,
        outcomes: list[PairOutcome],
    ) -> None:
        """Upsert one CheckResult per pair on (config, term, point, date)."""
        checked_at = _utcnow()
        with get_session() as session:
            existing = {
                (r.tracked_term_id, r.point_label): r
                for r in session.scalars(
                    select(CheckResult).where(
                        CheckResult.config_id == config.id, CheckResult.check_date == run_date
                    )
                ).all()
            }
            for outcome in outcomes:
                values = self._result_values(outcome, config.target_place_id)
                values.update(
                    account_id=config.account_id,
                    keyword_id=outcome.term.keyword_id,
                    search_query=outcome.term.search_query,
                    point_lat=outcome.point.lat,
                    point_lng=outcome.point.lng,
                    checked_at=checked_at,
                    run_id=run_id,
                )
                row = existing.get((outcome.term.id, outcome.point.label))
                if row is None:
                    row = CheckResult(
                        config_id=config.id,
                        tracked_term_id=outcome.term.id,
                        point_label=outcome.point.label,
                        check_date=run_date,
                    )
                    session.add(row)
                for key, value in values.items():
                    setattr(row, key, value)
        logger.debug("Persisted %d check results for config %s", len(outcomes), config.id)

    def _bill(self, config: _ConfigSnapshot, run_id: str, successful: int, trigger: str) -> int:
        """Debit credits for successful calls only."""
        credits = self._credits.pricing.geo_grid_cost(successful, 1)
        if credits == 0:
            return 0
        debit = self._credits.debit(
            config.account_id,
            credits,
            run_id,
            FEATURE_TYPE,
            idempotency_key=f"{FEATURE_TYPE}:{config.id}:{run_id}",
            metadata={"config_id": config.id, "checks": successful, "trigger": trigger},
        )
        if debit is None:
            logger.error(
                "Could not debit %d credits for config %s run %s", credits, config.id, run_id
            )
            return 0
        return debit.amount

    @staticmethod
    def _touch_config(config_id: int) -> None:
        with get_session() as session:
            config = session.get(TrackingConfig, config_id)
            if config is not None:
                config.last_run_at = _utcnow()
