"""SQLAlchemy ORM models; importing this package populates Base.metadata."""

from rankgrid.models.keyword import Keyword
from rankgrid.models.geo_grid import (
    CheckResult,
    CheckStatus,
    DailySummary,
    PositionBucket,
    ScheduleMode,
    SummaryStatus,
    TrackedTerm,
    TrackingConfig,
)
from rankgrid.models.credits import (
    CreditAccount,
    CreditLedgerEntry,
    CreditType,
    TransactionType,
)
from rankgrid.models.schedule import (
    CheckSchedule,
    CheckType,
    Frequency,
    PausedScheduleRecord,
    ScheduleState,
    UnifiedSchedule,
)

__all__ = [
    "Keyword",
    "TrackingConfig",
    "TrackedTerm",
    "CheckResult",
    "DailySummary",
    "PositionBucket",
    "CheckStatus",
    "ScheduleMode",
    "SummaryStatus",
    "CreditAccount",
    "CreditLedgerEntry",
    "CreditType",
    "TransactionType",
    "CheckSchedule",
    "UnifiedSchedule",
    "PausedScheduleRecord",
    "CheckType",
    "Frequency",
    "ScheduleState",
]
