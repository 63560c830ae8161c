"""Geo-grid tracking configs, tracked terms, check results, and daily summaries."""

import enum
from datetime import date, datetime, timezone
from typing import TYPE_CHECKING, Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from rankgrid.database import Base

if TYPE_CHECKING:
    from rankgrid.models.keyword import Keyword
    from rankgrid.models.schedule import CheckSchedule


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PositionBucket(str, enum.Enum):
    """Ordinal visibility category; ``rank`` 0 is the best bucket."""

    TOP3 = "top3"
    TOP10 = "top10"
    TOP20 = "top20"
    NONE = "none"

    @property
    def rank(self) -> int:
        return _BUCKET_ORDER.index(self)


_BUCKET_ORDER = [
    PositionBucket.TOP3,
    PositionBucket.TOP10,
    PositionBucket.TOP20,
    PositionBucket.NONE,
]


class CheckStatus(str, enum.Enum):
    OK = "ok"
    ERROR = "error"


class ScheduleMode(str, enum.Enum):
    """Per-term schedule override."""

    INHERIT = "inherit"
    CUSTOM = "custom"
    DISABLED = "disabled"


class SummaryStatus(str, enum.Enum):
    COMPLETED = "completed"
    PARTIAL = "partial"
    NO_RESULTS = "no_results"
    INSUFFICIENT_CREDITS = "insufficient_credits"


class TrackingConfig(Base):
    """Geo-grid configuration for one business location."""

    __tablename__ = "gg_configs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    center_lat: Mapped[float] = mapped_column(Float, nullable=False)
    center_lng: Mapped[float] = mapped_column(Float, nullable=False)
    radius_miles: Mapped[float] = mapped_column(Float, nullable=False, default=3.0)
    grid_size: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    check_points: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    target_place_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    language_code: Mapped[str] = mapped_column(String(10), nullable=False, default="en")
    is_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    schedule_frequency: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    schedule_day_of_week: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    schedule_day_of_month: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    schedule_hour: Mapped[int] = mapped_column(Integer, nullable=False, default=9)
    next_scheduled_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )
    last_run_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    terms: Mapped[list["TrackedTerm"]] = relationship(
        back_populates="config", cascade="all, delete-orphan", lazy="selectin"
    )

    def __repr__(self) -> str:
        return (
            f"<TrackingConfig id={self.id} account={self.account_id!r} "
            f"grid={self.grid_size} radius={self.radius_miles}>"
        )


class TrackedTerm(Base):
    """A search phrase tracked on exactly one config."""

    __tablename__ = "gg_tracked_terms"
    __table_args__ = (UniqueConstraint("config_id", "search_query", name="uq_term_config_query"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    config_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("gg_configs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    keyword_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("keywords.id", ondelete="SET NULL"), nullable=True, index=True
    )
    search_query: Mapped[str] = mapped_column(String(500), nullable=False)
    is_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    schedule_mode: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ScheduleMode.INHERIT.value
    )
    schedule_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("check_schedules.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    config: Mapped["TrackingConfig"] = relationship(back_populates="terms")
    keyword: Mapped[Optional["Keyword"]] = relationship("Keyword", back_populates="tracked_terms")
    schedule: Mapped[Optional["CheckSchedule"]] = relationship("CheckSchedule", lazy="selectin")

    def __repr__(self) -> str:
        return (
            f"<TrackedTerm id={self.id} config={self.config_id} "
            f"query={self.search_query!r} mode={self.schedule_mode}>"
        )


class CheckResult(Base):
    """One observation for (config, term, point, date). Written only by the rank checker."""

    __tablename__ = "gg_checks"
    __table_args__ = (
        UniqueConstraint(
            "config_id", "tracked_term_id", "point_label", "check_date",
            name="uq_check_natural_key",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    config_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("gg_configs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    tracked_term_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("gg_tracked_terms.id", ondelete="CASCADE"), nullable=False, index=True
    )
    keyword_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    search_query: Mapped[str] = mapped_column(String(500), nullable=False)
    point_label: Mapped[str] = mapped_column(String(20), nullable=False)
    point_lat: Mapped[float] = mapped_column(Float, nullable=False)
    point_lng: Mapped[float] = mapped_column(Float, nullable=False)
    check_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    checked_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    status: Mapped[str] = mapped_column(String(10), nullable=False, default=CheckStatus.OK.value)
    position: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    position_bucket: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    business_found: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    top_competitors: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    our_rating: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    our_review_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    provider_task_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    api_cost_usd: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    run_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    def __repr__(self) -> str:
        return (
            f"<CheckResult id={self.id} config={self.config_id} term={self.tracked_term_id} "
            f"point={self.point_label} status={self.status} pos={self.position}>"
        )


class DailySummary(Base):
    """Per (config, date) roll-up of check results. Replaced, never appended."""

    __tablename__ = "gg_daily_summaries"
    __table_args__ = (
        UniqueConstraint("config_id", "summary_date", name="uq_summary_config_date"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    config_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("gg_configs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    summary_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    run_status: Mapped[str] = mapped_column(String(30), nullable=False)
    total_checks: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    valid_checks: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    top3_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    top10_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    top20_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    none_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    top3_pct: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    top10_pct: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    top20_pct: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    none_pct: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    avg_position: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    visibility_score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    visibility_delta: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    avg_position_delta: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    previous_summary_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    term_breakdown: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    def __repr__(self) -> str:
        return (
            f"<DailySummary config={self.config_id} date={self.summary_date} "
            f"status={self.run_status} score={self.visibility_score}>"
        )
