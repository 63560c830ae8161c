"""Individual schedules, unified (concept-level) schedules, and pause snapshots."""

import enum
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, JSON, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from rankgrid.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CheckType(str, enum.Enum):
    SEARCH_RANK = "search_rank"
    GEO_GRID = "geo_grid"
    LLM_VISIBILITY = "llm_visibility"


class Frequency(str, enum.Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class ScheduleState(str, enum.Enum):
    """Unified-schedule lifecycle. Restoring returns a schedule to INDEPENDENT."""

    INDEPENDENT = "independent"
    UNIFIED_PENDING = "unified_pending"
    UNIFIED_ACTIVE = "unified_active"


class CheckSchedule(Base):
    """A per-check-type schedule for one concept."""

    __tablename__ = "check_schedules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    keyword_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("keywords.id", ondelete="CASCADE"), nullable=True, index=True
    )
    check_type: Mapped[str] = mapped_column(String(30), nullable=False)
    frequency: Mapped[str] = mapped_column(String(20), nullable=False)
    day_of_week: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    day_of_month: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    hour: Mapped[int] = mapped_column(Integer, nullable=False, default=9)
    llm_providers: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    is_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    next_scheduled_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )
    last_run_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    def __repr__(self) -> str:
        return (
            f"<CheckSchedule id={self.id} kw={self.keyword_id} type={self.check_type} "
            f"{self.frequency} enabled={self.is_enabled}>"
        )


class UnifiedSchedule(Base):
    """Concept-level schedule that supersedes individual schedules while active."""

    __tablename__ = "unified_schedules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    keyword_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("keywords.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    state: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ScheduleState.INDEPENDENT.value
    )
    check_types: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    llm_providers: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    frequency: Mapped[str] = mapped_column(String(20), nullable=False)
    day_of_week: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    day_of_month: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    hour: Mapped[int] = mapped_column(Integer, nullable=False, default=9)
    next_scheduled_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )
    last_run_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_run_status: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    paused_records: Mapped[list["PausedScheduleRecord"]] = relationship(
        back_populates="unified_schedule", cascade="all, delete-orphan", lazy="selectin"
    )

    @property
    def is_active(self) -> bool:
        return self.state == ScheduleState.UNIFIED_ACTIVE.value

    def covers(self, check_type: CheckType) -> bool:
        return CheckType(check_type).value in (self.check_types or [])

    def __repr__(self) -> str:
        return (
            f"<UnifiedSchedule id={self.id} kw={self.keyword_id} state={self.state} "
            f"types={self.check_types}>"
        )


class PausedScheduleRecord(Base):
    """Snapshot of an individual schedule taken when a unified schedule paused it."""

    __tablename__ = "paused_schedule_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    unified_schedule_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("unified_schedules.id"), nullable=False, index=True
    )
    schedule_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("check_schedules.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    check_type: Mapped[str] = mapped_column(String(30), nullable=False)
    frequency: Mapped[str] = mapped_column(String(20), nullable=False)
    day_of_week: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    day_of_month: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    hour: Mapped[int] = mapped_column(Integer, nullable=False)
    llm_providers: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    was_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    paused_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    unified_schedule: Mapped["UnifiedSchedule"] = relationship(back_populates="paused_records")

    def __repr__(self) -> str:
        return (
            f"<PausedScheduleRecord schedule={self.schedule_id} "
            f"by={self.unified_schedule_id} type={self.check_type}>"
        )
