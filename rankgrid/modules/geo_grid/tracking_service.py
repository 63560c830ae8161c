"""Read and write operations over geo-grid configs, tracked terms and results."""

import logging
from datetime import date, datetime, timezone
from typing import Any, Optional

from sqlalchemy import desc, select
from sqlalchemy.orm import Session

from rankgrid.database import get_session
from rankgrid.exceptions import ConfigurationError, NotFoundError, RunInProgressError
from rankgrid.models.geo_grid import CheckResult, ScheduleMode, TrackedTerm, TrackingConfig
from rankgrid.models.keyword import Keyword
from rankgrid.models.schedule import CheckSchedule, CheckType
from rankgrid.modules.geo_grid.point_calculator import calculate_grid_points
from rankgrid.modules.geo_grid.rank_checker import RUN_LOCKS
from rankgrid.modules.scheduling.schedule_engine import (
    as_utc,
    compute_next_run,
    describe_schedule,
    validate_schedule,
)
from rankgrid.modules.scheduling.schedule_service import apply_schedule, schedule_to_dict
from rankgrid.utils.locks import KeyedRunLock

logger = logging.getLogger(__name__)

_GEOMETRY_FIELDS = {"center_lat", "center_lng", "radius_miles", "grid_size"}
_SCHEDULE_FIELDS = {
    "schedule_frequency", "schedule_day_of_week", "schedule_day_of_month", "schedule_hour",
}
_PLAIN_FIELDS = {"name", "target_place_id", "language_code", "is_enabled"}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(dt: Optional[datetime]) -> Optional[str]:
    dt = as_utc(dt)
    return dt.isoformat() if dt else None


def config_to_dict(config: TrackingConfig) -> dict[str, Any]:
    return {
        "id": config.id,
        "account_id": config.account_id,
        "name": config.name,
        "center_lat": config.center_lat,
        "center_lng": config.center_lng,
        "radius_miles": config.radius_miles,
        "grid_size": config.grid_size,
        "check_points": list(config.check_points or []),
        "target_place_id": config.target_place_id,
        "language_code": config.language_code,
        "is_enabled": config.is_enabled,
        "schedule_frequency": config.schedule_frequency,
        "schedule_day_of_week": config.schedule_day_of_week,
        "schedule_day_of_month": config.schedule_day_of_month,
        "schedule_hour": config.schedule_hour,
        "schedule_description": describe_schedule(
            config.schedule_frequency, config.schedule_hour,
            config.schedule_day_of_week, config.schedule_day_of_month,
        ),
        "next_scheduled_at": _iso(config.next_scheduled_at),
        "last_run_at": _iso(config.last_run_at),
        "term_count": len(config.terms),
    }


def term_to_dict(term: TrackedTerm) -> dict[str, Any]:
    return {
        "id": term.id,
        "config_id": term.config_id,
        "keyword_id": term.keyword_id,
        "search_query": term.search_query,
        "is_enabled": term.is_enabled,
        "schedule_mode": term.schedule_mode,
        "schedule": schedule_to_dict(term.schedule) if term.schedule else None,
    }


def result_to_dict(row: CheckResult) -> dict[str, Any]:
    return {
        "id": row.id,
        "config_id": row.config_id,
        "tracked_term_id": row.tracked_term_id,
        "keyword_id": row.keyword_id,
        "search_query": row.search_query,
        "point_label": row.point_label,
        "point_lat": row.point_lat,
        "point_lng": row.point_lng,
        "check_date": row.check_date.isoformat(),
        "checked_at": _iso(row.checked_at),
        "status": row.status,
        "position": row.position,
        "position_bucket": row.position_bucket,
        "business_found": row.business_found,
        "top_competitors": row.top_competitors or [],
        "our_rating": row.our_rating,
        "our_review_count": row.our_review_count,
        "api_cost_usd": row.api_cost_usd,
        "error_message": row.error_message,
        "run_id": row.run_id,
    }


class TrackingService:
    """Manage geo-grid configs and the terms tracked on them.

    Usage::

        tracking = TrackingService()
        config = tracking.create_config("acct", 45.0, -122.0, radius_miles=5,
                                        grid_size=9, target_place_id="ChIJ...")
        tracking.add_term(config["id"], "emergency plumber")
    """

    def __init__(self, run_locks: Optional[KeyedRunLock] = None):
        self._locks = run_locks or RUN_LOCKS

    @staticmethod
    def _load_config(session: Session, config_id: int) -> TrackingConfig:
        config = session.get(TrackingConfig, config_id)
        if config is None:
            raise NotFoundError(f"Tracking config {config_id} not found")
        return config

    @staticmethod
    def _load_term(session: Session, term_id: int) -> TrackedTerm:
        term = session.get(TrackedTerm, term_id)
        if term is None:
            raise NotFoundError(f"Tracked term {term_id} not found")
        return term

    @staticmethod
    def _apply_config_schedule(config: TrackingConfig, now: datetime) -> None:
        if not config.schedule_frequency:
            config.schedule_frequency = None
            config.next_scheduled_at = None
            return
        validate_schedule(
            config.schedule_frequency, config.schedule_hour,
            config.schedule_day_of_week, config.schedule_day_of_month,
        )
        config.next_scheduled_at = compute_next_run(
            config.schedule_frequency, config.schedule_hour, now,
            config.schedule_day_of_week, config.schedule_day_of_month,
        )

    # ------------------------------------------------------------------
    # Configs
    # ------------------------------------------------------------------

    def create_config(
        self,
        account_id: str,
        center_lat: float,
        center_lng: float,
        radius_miles: float = 3.0,
        grid_size: int = 5,
        name: str = "",
        target_place_id: Optional[str] = None,
        language_code: str = "en",
        schedule_frequency: Optional[str] = None,
        schedule_day_of_week: Optional[int] = None,
        schedule_day_of_month: Optional[int] = None,
        schedule_hour: int = 9,
        now: Optional[datetime] = None,
    ) -> dict[str, Any]:
        points = calculate_grid_points(center_lat, center_lng, radius_miles, grid_size)
        with get_session() as session:
            config = TrackingConfig(
                account_id=account_id,
                name=name,
                center_lat=center_lat,
                center_lng=center_lng,
                radius_miles=radius_miles,
                grid_size=grid_size,
                check_points=[p.to_dict() for p in points],
                target_place_id=target_place_id,
                language_code=language_code,
                is_enabled=True,
                schedule_frequency=schedule_frequency,
                schedule_day_of_week=schedule_day_of_week,
                schedule_day_of_month=schedule_day_of_month,
                schedule_hour=schedule_hour,
            )
            self._apply_config_schedule(config, now or _utcnow())
            session.add(config)
            session.flush()
            result = config_to_dict(config)
        logger.info(
            "Created config %s for %s: %d points, radius %.2f mi",
            result["id"], account_id, grid_size, radius_miles,
        )
        return result

    def update_config(
        self, config_id: int, now: Optional[datetime] = None, **changes: Any
    ) -> dict[str, Any]:
        """Update config fields; geometry changes recompute the check points.

        Raises:
            RunInProgressError: geometry change while a run holds the config.
            ConfigurationError: unknown field or invalid geometry/schedule.
        """
        unknown = set(changes) - _GEOMETRY_FIELDS - _SCHEDULE_FIELDS - _PLAIN_FIELDS
        if unknown:
            raise ConfigurationError(f"Unknown config fields: {sorted(unknown)}")

        with get_session() as session:
            config = self._load_config(session, config_id)
            geometry = {
                k: v for k, v in changes.items()
                if k in _GEOMETRY_FIELDS and getattr(config, k) != v
            }
            if geometry:
                if self._locks.is_locked(config_id):
                    raise RunInProgressError(
                        f"Config {config_id} has a run in progress; geometry cannot change"
                    )
                merged = {k: getattr(config, k) for k in _GEOMETRY_FIELDS}
                merged.update(geometry)
                points = calculate_grid_points(
                    merged["center_lat"], merged["center_lng"],
                    merged["radius_miles"], merged["grid_size"],
                )
                config.check_points = [p.to_dict() for p in points]
                logger.info("Config %s geometry changed; %d points recomputed", config_id, len(points))

            for key, value in changes.items():
                setattr(config, key, value)
            if _SCHEDULE_FIELDS & set(changes):
                self._apply_config_schedule(config, now or _utcnow())
            session.flush()
            return config_to_dict(config)

    def get_config(self, config_id: int) -> dict[str, Any]:
        with get_session() as session:
            return config_to_dict(self._load_config(session, config_id))

    def list_configs(self, account_id: Optional[str] = None) -> list[dict[str, Any]]:
        with get_session() as session:
            stmt = select(TrackingConfig)
            if account_id is not None:
                stmt = stmt.where(TrackingConfig.account_id == account_id)
            return [config_to_dict(c) for c in session.scalars(stmt.order_by(TrackingConfig.id))]

    def delete_config(self, config_id: int) -> None:
        if self._locks.is_locked(config_id):
            raise RunInProgressError(f"Config {config_id} has a run in progress")
        with get_session() as session:
            config = self._load_config(session, config_id)
            for term in config.terms:
                if term.schedule is not None:
                    session.delete(term.schedule)
            session.delete(config)
        logger.info("Deleted config %s", config_id)

    def due_configs(self, now: datetime) -> list[int]:
        """Enabled, scheduled configs whose next run is at or before ``now``."""
        with get_session() as session:
            return list(
                session.scalars(
                    select(TrackingConfig.id)
                    .where(
                        TrackingConfig.is_enabled.is_(True),
                        TrackingConfig.schedule_frequency.is_not(None),
                        TrackingConfig.next_scheduled_at.is_not(None),
                        TrackingConfig.next_scheduled_at <= as_utc(now),
                    )
                    .order_by(TrackingConfig.next_scheduled_at, TrackingConfig.id)
                ).all()
            )

    def advance_schedule(self, config_id: int, now: datetime) -> Optional[datetime]:
        with get_session() as session:
            config = session.get(TrackingConfig, config_id)
            if config is None or not config.schedule_frequency:
                return None
            config.next_scheduled_at = compute_next_run(
                config.schedule_frequency, config.schedule_hour, now,
                config.schedule_day_of_week, config.schedule_day_of_month,
            )
            return config.next_scheduled_at

    # ------------------------------------------------------------------
    # Terms
    # ------------------------------------------------------------------

    def add_term(
        self, config_id: int, search_query: str, keyword_id: Optional[int] = None
    ) -> dict[str, Any]:
        """Track a search phrase on the config; re-adding returns the existing term."""
        query = (search_query or "").strip()
        if not query:
            raise ConfigurationError("Search query must not be empty")
        with get_session() as session:
            self._load_config(session, config_id)
            term = session.scalars(
                select(TrackedTerm).where(
                    TrackedTerm.config_id == config_id, TrackedTerm.search_query == query
                )
            ).first()
            if term is None:
                term = TrackedTerm(config_id=config_id, search_query=query, keyword_id=keyword_id)
                session.add(term)
                session.flush()
                logger.info("Tracking %r on config %s", query, config_id)
            return term_to_dict(term)

    def add_keyword_terms(self, config_id: int, keyword_id: int) -> list[dict[str, Any]]:
        """Track every search term of a concept (its phrase if it has none)."""
        with get_session() as session:
            keyword = session.get(Keyword, keyword_id)
            if keyword is None:
                raise NotFoundError(f"Keyword {keyword_id} not found")
            terms = keyword.effective_search_terms()
        return [self.add_term(config_id, t, keyword_id=keyword_id) for t in terms]

    def set_term_enabled(self, term_id: int, enabled: bool) -> dict[str, Any]:
        with get_session() as session:
            term = self._load_term(session, term_id)
            term.is_enabled = enabled
            session.flush()
            return term_to_dict(term)

    def remove_term(self, term_id: int) -> None:
        with get_session() as session:
            term = self._load_term(session, term_id)
            if self._locks.is_locked(term.config_id):
                raise RunInProgressError(f"Config {term.config_id} has a run in progress")
            if term.schedule is not None:
                session.delete(term.schedule)
            session.delete(term)

    def list_terms(self, config_id: int) -> list[dict[str, Any]]:
        with get_session() as session:
            rows = session.scalars(
                select(TrackedTerm).where(TrackedTerm.config_id == config_id).order_by(TrackedTerm.id)
            ).all()
            return [term_to_dict(t) for t in rows]

    def set_term_schedule(
        self,
        term_id: int,
        mode: ScheduleMode | str,
        frequency: Optional[str] = None,
        hour: int = 9,
        day_of_week: Optional[int] = None,
        day_of_month: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> dict[str, Any]:
        """Set a term to follow its config (inherit), its own schedule, or none.

        Raises:
            ScheduleConflictError: custom mode while an active unified schedule
                owns geo-grid for the term's concept.
        """
        mode = ScheduleMode(mode)
        with get_session() as session:
            term = self._load_term(session, term_id)
            if mode is ScheduleMode.CUSTOM:
                if not frequency:
                    raise ConfigurationError("Custom term schedules need a frequency")
                config = self._load_config(session, term.config_id)
                schedule = apply_schedule(
                    session,
                    term.schedule,
                    account_id=config.account_id,
                    keyword_id=term.keyword_id,
                    check_type=CheckType.GEO_GRID,
                    frequency=frequency,
                    hour=hour,
                    day_of_week=day_of_week,
                    day_of_month=day_of_month,
                    llm_providers=None,
                    enabled=True,
                    now=now or _utcnow(),
                )
                session.flush()
                term.schedule_id = schedule.id
                term.schedule = schedule
            elif term.schedule is not None:
                old = term.schedule
                term.schedule = None
                term.schedule_id = None
                session.delete(old)
            term.schedule_mode = mode.value
            session.flush()
            return term_to_dict(term)

    def terms_for_schedules(self, schedule_ids: list[int]) -> dict[int, list[int]]:
        """Map config id -> custom term ids driven by the given schedules."""
        if not schedule_ids:
            return {}
        with get_session() as session:
            rows = session.scalars(
                select(TrackedTerm).where(
                    TrackedTerm.schedule_id.in_(schedule_ids),
                    TrackedTerm.schedule_mode == ScheduleMode.CUSTOM.value,
                    TrackedTerm.is_enabled.is_(True),
                )
            ).all()
            grouped: dict[int, list[int]] = {}
            for term in rows:
                grouped.setdefault(term.config_id, []).append(term.id)
            return grouped

    def configs_for_keyword(self, keyword_id: int) -> list[int]:
        with get_session() as session:
            return sorted(set(
                session.scalars(
                    select(TrackedTerm.config_id).where(TrackedTerm.keyword_id == keyword_id)
                ).all()
            ))

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    def list_results(
        self,
        config_id: int,
        check_date: Optional[date] = None,
        term_id: Optional[int] = None,
        limit: int = 500,
    ) -> list[dict[str, Any]]:
        with get_session() as session:
            stmt = select(CheckResult).where(CheckResult.config_id == config_id)
            if check_date is not None:
                stmt = stmt.where(CheckResult.check_date == check_date)
            if term_id is not None:
                stmt = stmt.where(CheckResult.tracked_term_id == term_id)
            stmt = stmt.order_by(
                desc(CheckResult.check_date), CheckResult.tracked_term_id, CheckResult.point_label
            ).limit(limit)
            return [result_to_dict(r) for r in session.scalars(stmt)]

    def get_current_state(self, config_id: int) -> list[dict[str, Any]]:
        """Latest result for every (term, point) pair of the config."""
        with get_session() as session:
            rows = session.scalars(
                select(CheckResult)
                .where(CheckResult.config_id == config_id)
                .order_by(desc(CheckResult.check_date), desc(CheckResult.id))
            ).all()
            latest: dict[tuple[int, str], CheckResult] = {}
            for row in rows:
                latest.setdefault((row.tracked_term_id, row.point_label), row)
            return [
                result_to_dict(r)
                for _, r in sorted(latest.items(), key=lambda item: item[0])
            ]
