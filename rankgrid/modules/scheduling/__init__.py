"""Scheduling module: next-run math, individual schedules, unified overrides."""

from rankgrid.modules.scheduling.override_manager import OverridePreview, ScheduleOverrideManager
from rankgrid.modules.scheduling.schedule_engine import compute_next_run, describe_schedule, is_due
from rankgrid.modules.scheduling.schedule_service import ScheduleService

__all__ = [
    "OverridePreview",
    "ScheduleOverrideManager",
    "ScheduleService",
    "compute_next_run",
    "describe_schedule",
    "is_due",
]
