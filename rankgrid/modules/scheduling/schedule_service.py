"""Individual (per check type) schedules: create, update, enable, delete, query."""

import logging
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from rankgrid.database import get_session
from rankgrid.exceptions import ConfigurationError, NotFoundError, ScheduleConflictError
from rankgrid.models.schedule import (
    CheckSchedule,
    CheckType,
    PausedScheduleRecord,
    ScheduleState,
    UnifiedSchedule,
)
from rankgrid.modules.scheduling.schedule_engine import (
    as_utc,
    compute_next_run,
    describe_schedule,
    validate_schedule,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def schedule_to_dict(schedule: CheckSchedule) -> dict[str, Any]:
    next_run = as_utc(schedule.next_scheduled_at)
    last_run = as_utc(schedule.last_run_at)
    return {
        "id": schedule.id,
        "account_id": schedule.account_id,
        "keyword_id": schedule.keyword_id,
        "check_type": schedule.check_type,
        "frequency": schedule.frequency,
        "day_of_week": schedule.day_of_week,
        "day_of_month": schedule.day_of_month,
        "hour": schedule.hour,
        "llm_providers": list(schedule.llm_providers or []),
        "is_enabled": schedule.is_enabled,
        "next_scheduled_at": next_run.isoformat() if next_run else None,
        "last_run_at": last_run.isoformat() if last_run else None,
        "description": describe_schedule(
            schedule.frequency, schedule.hour, schedule.day_of_week, schedule.day_of_month
        ),
    }


def active_unified_covering(
    session: Session, keyword_id: Optional[int], check_type: CheckType | str
) -> Optional[UnifiedSchedule]:
    """The active unified schedule that owns ``check_type`` for the concept, if any."""
    if keyword_id is None:
        return None
    unified = session.scalars(
        select(UnifiedSchedule).where(
            UnifiedSchedule.keyword_id == keyword_id,
            UnifiedSchedule.state == ScheduleState.UNIFIED_ACTIVE.value,
        )
    ).first()
    if unified is not None and unified.covers(CheckType(check_type)):
        return unified
    return None


def _ensure_no_conflict(session: Session, keyword_id: Optional[int], check_type: str) -> None:
    unified = active_unified_covering(session, keyword_id, check_type)
    if unified is not None:
        raise ScheduleConflictError(
            f"Keyword {keyword_id} has active unified schedule {unified.id} covering "
            f"{check_type}; disable it before scheduling {check_type} individually"
        )


def apply_schedule(
    session: Session,
    schedule: Optional[CheckSchedule],
    *,
    account_id: str,
    keyword_id: Optional[int],
    check_type: CheckType | str,
    frequency: str,
    hour: int,
    day_of_week: Optional[int],
    day_of_month: Optional[int],
    llm_providers: Optional[list[str]],
    enabled: bool,
    now: datetime,
) -> CheckSchedule:
    """Create or update a CheckSchedule row inside an open session.

    Raises:
        ConfigurationError: invalid timing parameters.
        ScheduleConflictError: enabling a type an active unified schedule owns.
    """
    freq = validate_schedule(frequency, hour, day_of_week, day_of_month)
    check_type = CheckType(check_type).value
    if enabled:
        _ensure_no_conflict(session, keyword_id, check_type)
    if schedule is None:
        schedule = CheckSchedule(account_id=account_id, keyword_id=keyword_id, check_type=check_type)
        session.add(schedule)
    schedule.frequency = freq.value
    schedule.hour = hour
    schedule.day_of_week = day_of_week
    schedule.day_of_month = day_of_month
    schedule.llm_providers = list(llm_providers or [])
    schedule.is_enabled = enabled
    schedule.next_scheduled_at = (
        compute_next_run(freq, hour, now, day_of_week, day_of_month) if enabled else None
    )
    return schedule


class ScheduleService:
    """Manage search-rank and LLM-visibility schedules for concepts.

    Geo-grid schedules are set per tracked term through the tracking
    service; both share :func:`apply_schedule` and the unified-schedule
    conflict check.
    """

    INDIVIDUAL_TYPES = (CheckType.SEARCH_RANK, CheckType.LLM_VISIBILITY)

    def set_schedule(
        self,
        account_id: str,
        keyword_id: int,
        check_type: CheckType | str,
        frequency: str,
        hour: int = 9,
        day_of_week: Optional[int] = None,
        day_of_month: Optional[int] = None,
        llm_providers: Optional[list[str]] = None,
        enabled: bool = True,
        now: Optional[datetime] = None,
    ) -> dict[str, Any]:
        """Create or replace the concept's schedule for one check type."""
        check_type = CheckType(check_type)
        if check_type not in self.INDIVIDUAL_TYPES:
            raise ConfigurationError(
                "Geo-grid schedules are set per tracked term, not per concept"
            )
        if check_type is CheckType.LLM_VISIBILITY and enabled and not llm_providers:
            raise ConfigurationError("LLM-visibility schedules need at least one provider")

        with get_session() as session:
            existing = session.scalars(
                select(CheckSchedule).where(
                    CheckSchedule.keyword_id == keyword_id,
                    CheckSchedule.check_type == check_type.value,
                )
            ).first()
            if existing is not None and self._is_paused(session, existing.id):
                raise ScheduleConflictError(
                    f"Schedule {existing.id} is paused by a unified schedule"
                )
            schedule = apply_schedule(
                session,
                existing,
                account_id=account_id,
                keyword_id=keyword_id,
                check_type=check_type,
                frequency=frequency,
                hour=hour,
                day_of_week=day_of_week,
                day_of_month=day_of_month,
                llm_providers=llm_providers,
                enabled=enabled,
                now=now or _utcnow(),
            )
            session.flush()
            result = schedule_to_dict(schedule)
        logger.info(
            "Schedule %s for keyword %s (%s): %s",
            result["id"], keyword_id, check_type.value, result["description"],
        )
        return result

    @staticmethod
    def _is_paused(session: Session, schedule_id: int) -> bool:
        return session.scalar(
            select(PausedScheduleRecord.id).where(PausedScheduleRecord.schedule_id == schedule_id)
        ) is not None

    def set_enabled(
        self, schedule_id: int, enabled: bool, now: Optional[datetime] = None
    ) -> dict[str, Any]:
        with get_session() as session:
            schedule = session.get(CheckSchedule, schedule_id)
            if schedule is None:
                raise NotFoundError(f"Schedule {schedule_id} not found")
            if self._is_paused(session, schedule_id):
                raise ScheduleConflictError(
                    f"Schedule {schedule_id} is paused by a unified schedule"
                )
            if enabled:
                _ensure_no_conflict(session, schedule.keyword_id, schedule.check_type)
                schedule.next_scheduled_at = compute_next_run(
                    schedule.frequency, schedule.hour, now or _utcnow(),
                    schedule.day_of_week, schedule.day_of_month,
                )
            else:
                schedule.next_scheduled_at = None
            schedule.is_enabled = enabled
            session.flush()
            return schedule_to_dict(schedule)

    def delete_schedule(self, schedule_id: int) -> None:
        with get_session() as session:
            schedule = session.get(CheckSchedule, schedule_id)
            if schedule is None:
                raise NotFoundError(f"Schedule {schedule_id} not found")
            session.delete(schedule)
        logger.info("Deleted schedule %s", schedule_id)

    def get_schedule(self, schedule_id: int) -> dict[str, Any]:
        with get_session() as session:
            schedule = session.get(CheckSchedule, schedule_id)
            if schedule is None:
                raise NotFoundError(f"Schedule {schedule_id} not found")
            return schedule_to_dict(schedule)

    def list_schedules(
        self,
        account_id: Optional[str] = None,
        keyword_id: Optional[int] = None,
        check_type: Optional[CheckType | str] = None,
    ) -> list[dict[str, Any]]:
        with get_session() as session:
            stmt = select(CheckSchedule)
            if account_id is not None:
                stmt = stmt.where(CheckSchedule.account_id == account_id)
            if keyword_id is not None:
                stmt = stmt.where(CheckSchedule.keyword_id == keyword_id)
            if check_type is not None:
                stmt = stmt.where(CheckSchedule.check_type == CheckType(check_type).value)
            return [schedule_to_dict(s) for s in session.scalars(stmt.order_by(CheckSchedule.id))]

    def due_schedules(
        self, now: datetime, check_types: Iterable[CheckType | str]
    ) -> list[dict[str, Any]]:
        """Enabled schedules of the given types whose next run is at or before ``now``."""
        types = [CheckType(t).value for t in check_types]
        with get_session() as session:
            rows = session.scalars(
                select(CheckSchedule)
                .where(
                    CheckSchedule.is_enabled.is_(True),
                    CheckSchedule.check_type.in_(types),
                    CheckSchedule.next_scheduled_at.is_not(None),
                    CheckSchedule.next_scheduled_at <= as_utc(now),
                )
                .order_by(CheckSchedule.next_scheduled_at, CheckSchedule.id)
            ).all()
            return [schedule_to_dict(s) for s in rows]

    def advance(self, schedule_id: int, now: datetime) -> Optional[datetime]:
        """Record a run at ``now`` and move the schedule to its next slot."""
        with get_session() as session:
            schedule = session.get(CheckSchedule, schedule_id)
            if schedule is None:
                return None
            schedule.last_run_at = as_utc(now)
            schedule.next_scheduled_at = (
                compute_next_run(
                    schedule.frequency, schedule.hour, now,
                    schedule.day_of_week, schedule.day_of_month,
                )
                if schedule.is_enabled else None
            )
            return schedule.next_scheduled_at
