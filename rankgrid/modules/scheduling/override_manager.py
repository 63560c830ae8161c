"""Unified-schedule state machine with exact pause/restore of individual schedules.

States per concept::

    independent --request--> unified_pending --confirm--> unified_active
         ^                        |                              |
         +------cancel------------+                              |
         +---------------disable / delete (restore)--------------+

The PausedScheduleRecord rows are the only payload carried between states:
each one is a snapshot of an individual schedule taken at confirmation time
and is consumed (restored, then deleted) when the unified schedule goes away.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from rankgrid.database import get_session
from rankgrid.exceptions import ConfigurationError, InvalidScheduleTransition, NotFoundError
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
from rankgrid.modules.scheduling.schedule_service import schedule_to_dict

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class OverridePreview:
    """What confirming a pending unified schedule would pause right now."""
    unified_id: int
    keyword_id: int
    state: str
    check_types: list[str]
    duplicates: list[dict[str, Any]] = field(default_factory=list)

    @property
    def has_conflicts(self) -> bool:
        return bool(self.duplicates)


def unified_to_dict(unified: UnifiedSchedule) -> dict[str, Any]:
    next_run = as_utc(unified.next_scheduled_at)
    last_run = as_utc(unified.last_run_at)
    return {
        "id": unified.id,
        "account_id": unified.account_id,
        "keyword_id": unified.keyword_id,
        "state": unified.state,
        "check_types": list(unified.check_types or []),
        "llm_providers": list(unified.llm_providers or []),
        "frequency": unified.frequency,
        "day_of_week": unified.day_of_week,
        "day_of_month": unified.day_of_month,
        "hour": unified.hour,
        "next_scheduled_at": next_run.isoformat() if next_run else None,
        "last_run_at": last_run.isoformat() if last_run else None,
        "last_run_status": unified.last_run_status,
        "paused_schedule_ids": sorted(r.schedule_id for r in unified.paused_records),
        "description": describe_schedule(
            unified.frequency, unified.hour, unified.day_of_week, unified.day_of_month
        ),
    }


def _normalize_types(check_types: Iterable[CheckType | str]) -> list[str]:
    try:
        types = sorted({CheckType(t).value for t in check_types})
    except ValueError as exc:
        raise ConfigurationError(str(exc)) from None
    if not types:
        raise ConfigurationError("A unified schedule needs at least one check type")
    return types


class ScheduleOverrideManager:
    """Drive the unified-schedule lifecycle for concepts.

    Usage::

        manager = ScheduleOverrideManager()
        preview = manager.request_unified("acct", keyword_id=7,
                                          check_types=["geo_grid", "llm_visibility"],
                                          frequency="weekly", day_of_week=1, hour=9,
                                          llm_providers=["chatgpt"])
        manager.confirm_unified(preview.unified_id)
        ...
        manager.disable_unified(preview.unified_id)   # restores what was paused
    """

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @staticmethod
    def _load(session: Session, unified_id: int) -> UnifiedSchedule:
        unified = session.get(UnifiedSchedule, unified_id)
        if unified is None:
            raise NotFoundError(f"Unified schedule {unified_id} not found")
        return unified

    @staticmethod
    def _duplicates(
        session: Session, keyword_id: int, check_types: Iterable[str]
    ) -> list[CheckSchedule]:
        """Enabled individual schedules the unified schedule would duplicate."""
        return list(
            session.scalars(
                select(CheckSchedule)
                .where(
                    CheckSchedule.keyword_id == keyword_id,
                    CheckSchedule.check_type.in_(list(check_types)),
                    CheckSchedule.is_enabled.is_(True),
                )
                .order_by(CheckSchedule.id)
            ).all()
        )

    def get_unified(self, unified_id: int) -> dict[str, Any]:
        with get_session() as session:
            return unified_to_dict(self._load(session, unified_id))

    def get_for_keyword(self, keyword_id: int) -> Optional[dict[str, Any]]:
        with get_session() as session:
            unified = session.scalars(
                select(UnifiedSchedule).where(UnifiedSchedule.keyword_id == keyword_id)
            ).first()
            return unified_to_dict(unified) if unified else None

    def list_unified(
        self, account_id: Optional[str] = None, state: Optional[ScheduleState | str] = None
    ) -> list[dict[str, Any]]:
        with get_session() as session:
            stmt = select(UnifiedSchedule)
            if account_id is not None:
                stmt = stmt.where(UnifiedSchedule.account_id == account_id)
            if state is not None:
                stmt = stmt.where(UnifiedSchedule.state == ScheduleState(state).value)
            return [unified_to_dict(u) for u in session.scalars(stmt.order_by(UnifiedSchedule.id))]

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def request_unified(
        self,
        account_id: str,
        keyword_id: int,
        check_types: Iterable[CheckType | str],
        frequency: str,
        hour: int = 9,
        day_of_week: Optional[int] = None,
        day_of_month: Optional[int] = None,
        llm_providers: Optional[list[str]] = None,
    ) -> OverridePreview:
        """Move the concept to ``unified_pending`` and list what would be paused.

        The returned duplicate list is informational only; confirmation
        re-derives it.
        """
        types = _normalize_types(check_types)
        freq = validate_schedule(frequency, hour, day_of_week, day_of_month)
        if CheckType.LLM_VISIBILITY.value in types and not llm_providers:
            raise ConfigurationError("LLM-visibility needs at least one provider")

        with get_session() as session:
            unified = session.scalars(
                select(UnifiedSchedule).where(UnifiedSchedule.keyword_id == keyword_id)
            ).first()
            if unified is not None and unified.state == ScheduleState.UNIFIED_ACTIVE.value:
                raise InvalidScheduleTransition(unified.id, unified.state, "request")
            if unified is None:
                unified = UnifiedSchedule(account_id=account_id, keyword_id=keyword_id)
                session.add(unified)
            unified.state = ScheduleState.UNIFIED_PENDING.value
            unified.check_types = types
            unified.llm_providers = list(llm_providers or [])
            unified.frequency = freq.value
            unified.hour = hour
            unified.day_of_week = day_of_week
            unified.day_of_month = day_of_month
            unified.next_scheduled_at = None
            session.flush()

            duplicates = [schedule_to_dict(s) for s in self._duplicates(session, keyword_id, types)]
            preview = OverridePreview(
                unified_id=unified.id,
                keyword_id=keyword_id,
                state=unified.state,
                check_types=types,
                duplicates=duplicates,
            )
        logger.info(
            "Unified schedule %s requested for keyword %s (%s); %d schedule(s) would pause",
            preview.unified_id, keyword_id, ", ".join(types), len(preview.duplicates),
        )
        return preview

    def confirm_unified(self, unified_id: int, now: Optional[datetime] = None) -> dict[str, Any]:
        """Pause every current duplicate and activate the unified schedule."""
        now = now or _utcnow()
        with get_session() as session:
            unified = self._load(session, unified_id)
            if unified.state != ScheduleState.UNIFIED_PENDING.value:
                raise InvalidScheduleTransition(unified_id, unified.state, "confirm")
            paused = self._pause(session, unified, unified.check_types)
            unified.state = ScheduleState.UNIFIED_ACTIVE.value
            unified.next_scheduled_at = compute_next_run(
                unified.frequency, unified.hour, now, unified.day_of_week, unified.day_of_month
            )
            session.flush()
            session.refresh(unified)
            result = unified_to_dict(unified)
        logger.info("Unified schedule %s active; paused schedules %s", unified_id, paused)
        return result

    def cancel_pending(self, unified_id: int) -> dict[str, Any]:
        with get_session() as session:
            unified = self._load(session, unified_id)
            if unified.state != ScheduleState.UNIFIED_PENDING.value:
                raise InvalidScheduleTransition(unified_id, unified.state, "cancel")
            unified.state = ScheduleState.INDEPENDENT.value
            unified.next_scheduled_at = None
            session.flush()
            return unified_to_dict(unified)

    def disable_unified(self, unified_id: int, now: Optional[datetime] = None) -> dict[str, Any]:
        """Restore everything the schedule paused and return to ``independent``."""
        now = now or _utcnow()
        with get_session() as session:
            unified = self._load(session, unified_id)
            if unified.state != ScheduleState.UNIFIED_ACTIVE.value:
                raise InvalidScheduleTransition(unified_id, unified.state, "disable")
            restored = self._restore(session, unified, unified.check_types, now)
            unified.state = ScheduleState.INDEPENDENT.value
            unified.next_scheduled_at = None
            session.flush()
            session.refresh(unified)
            result = unified_to_dict(unified)
        logger.info("Unified schedule %s disabled; restored %s", unified_id, restored)
        return result

    def delete_unified(self, unified_id: int, now: Optional[datetime] = None) -> list[int]:
        """Restore anything still paused, then delete the unified schedule.

        Returns the ids of restored individual schedules.
        """
        now = now or _utcnow()
        with get_session() as session:
            unified = self._load(session, unified_id)
            restored = self._restore(session, unified, None, now)
            session.delete(unified)
        logger.info("Unified schedule %s deleted; restored %s", unified_id, restored)
        return restored

    def update_check_types(
        self,
        unified_id: int,
        check_types: Iterable[CheckType | str],
        llm_providers: Optional[list[str]] = None,
        now: Optional[datetime] = None,
    ) -> dict[str, Any]:
        """Change which types an active schedule owns.

        Newly covered types pause their individual schedules; dropped types
        get theirs restored.
        """
        types = _normalize_types(check_types)
        now = now or _utcnow()
        with get_session() as session:
            unified = self._load(session, unified_id)
            if unified.state != ScheduleState.UNIFIED_ACTIVE.value:
                raise InvalidScheduleTransition(unified_id, unified.state, "update check types")
            providers = llm_providers if llm_providers is not None else unified.llm_providers
            if CheckType.LLM_VISIBILITY.value in types and not providers:
                raise ConfigurationError("LLM-visibility needs at least one provider")

            current = set(unified.check_types or [])
            added = sorted(set(types) - current)
            dropped = sorted(current - set(types))
            restored = self._restore(session, unified, dropped, now) if dropped else []
            paused = self._pause(session, unified, added) if added else []
            unified.check_types = types
            unified.llm_providers = list(providers or [])
            session.flush()
            session.refresh(unified)
            result = unified_to_dict(unified)
        logger.info(
            "Unified schedule %s types now %s (paused %s, restored %s)",
            unified_id, types, paused, restored,
        )
        return result

    # ------------------------------------------------------------------
    # Snapshot payload
    # ------------------------------------------------------------------

    def _pause(
        self, session: Session, unified: UnifiedSchedule, check_types: Iterable[str]
    ) -> list[int]:
        paused = []
        for schedule in self._duplicates(session, unified.keyword_id, check_types):
            owner = session.scalars(
                select(PausedScheduleRecord).where(
                    PausedScheduleRecord.schedule_id == schedule.id
                )
            ).first()
            if owner is not None:
                logger.warning(
                    "Schedule %s already paused by unified %s; leaving it",
                    schedule.id, owner.unified_schedule_id,
                )
                continue
            session.add(
                PausedScheduleRecord(
                    unified_schedule_id=unified.id,
                    schedule_id=schedule.id,
                    check_type=schedule.check_type,
                    frequency=schedule.frequency,
                    day_of_week=schedule.day_of_week,
                    day_of_month=schedule.day_of_month,
                    hour=schedule.hour,
                    llm_providers=list(schedule.llm_providers or []),
                    was_enabled=schedule.is_enabled,
                )
            )
            schedule.is_enabled = False
            schedule.next_scheduled_at = None
            paused.append(schedule.id)
        session.flush()
        session.expire(unified, ["paused_records"])
        return paused

    def _restore(
        self,
        session: Session,
        unified: UnifiedSchedule,
        check_types: Optional[Iterable[str]],
        now: datetime,
    ) -> list[int]:
        stmt = select(PausedScheduleRecord).where(
            PausedScheduleRecord.unified_schedule_id == unified.id
        )
        if check_types is not None:
            stmt = stmt.where(PausedScheduleRecord.check_type.in_(list(check_types)))
        restored = []
        for record in session.scalars(stmt.order_by(PausedScheduleRecord.id)).all():
            schedule = session.get(CheckSchedule, record.schedule_id)
            if schedule is not None:
                schedule.frequency = record.frequency
                schedule.day_of_week = record.day_of_week
                schedule.day_of_month = record.day_of_month
                schedule.hour = record.hour
                schedule.llm_providers = list(record.llm_providers or [])
                schedule.is_enabled = record.was_enabled
                schedule.next_scheduled_at = (
                    compute_next_run(
                        record.frequency, record.hour, now,
                        record.day_of_week, record.day_of_month,
                    )
                    if record.was_enabled else None
                )
                restored.append(schedule.id)
            session.delete(record)
        session.flush()
        session.expire(unified, ["paused_records"])
        return restored
