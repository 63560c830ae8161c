"""Geo-grid module: point geometry, rank checks, daily summaries, tracking."""

from rankgrid.modules.geo_grid.point_calculator import CheckPoint, calculate_grid_points
from rankgrid.modules.geo_grid.rank_checker import RankChecker, RunResult, RunStatus, RunTrigger
from rankgrid.modules.geo_grid.summary_aggregator import SummaryAggregator
from rankgrid.modules.geo_grid.tracking_service import TrackingService

__all__ = [
    "CheckPoint",
    "calculate_grid_points",
    "RankChecker",
    "RunResult",
    "RunStatus",
    "RunTrigger",
    "SummaryAggregator",
    "TrackingService",
]
