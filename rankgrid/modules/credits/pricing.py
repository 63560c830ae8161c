"""Credit cost model. Each check type is priced independently and costs add."""

from dataclasses import dataclass
from typing import Iterable, Optional

from rankgrid.config import PricingSettings
from rankgrid.exceptions import ConfigurationError
from rankgrid.models.schedule import CheckType


@dataclass(frozen=True)
class CostBreakdown:
    """Per-type sub-costs of a prospective run."""
    search_rank: int = 0
    geo_grid: int = 0
    llm_visibility: int = 0

    @property
    def total(self) -> int:
        return self.search_rank + self.geo_grid + self.llm_visibility

    def for_type(self, check_type: CheckType | str) -> int:
        return getattr(self, CheckType(check_type).value)

    def to_dict(self) -> dict[str, int]:
        return {
            "search_rank": self.search_rank,
            "geo_grid": self.geo_grid,
            "llm_visibility": self.llm_visibility,
            "total": self.total,
        }


def _non_negative(name: str, value: int) -> int:
    if value is None or value < 0:
        raise ConfigurationError(f"{name} must be a non-negative integer, got {value!r}")
    return int(value)


class PricingModel:
    """Turns unit counts into credits using :class:`PricingSettings`."""

    def __init__(self, settings: Optional[PricingSettings] = None):
        self.settings = settings or PricingSettings()

    def search_rank_cost(self, search_term_count: int, device_count: Optional[int] = None) -> int:
        devices = self.settings.search_rank_devices if device_count is None else device_count
        return (
            _non_negative("search_term_count", search_term_count)
            * _non_negative("device_count", devices)
            * self.settings.search_rank_per_check
        )

    def geo_grid_cost(self, grid_size: int, keyword_count: int) -> int:
        return (
            _non_negative("grid_size", grid_size)
            * _non_negative("keyword_count", keyword_count)
            * self.settings.geo_grid_per_point
        )

    def llm_visibility_cost(self, question_count: int, provider_count: int) -> int:
        return (
            _non_negative("question_count", question_count)
            * _non_negative("llm_provider_count", provider_count)
            * self.settings.llm_per_question
        )

    def breakdown(
        self,
        check_types: Iterable[CheckType | str],
        grid_size: int,
        keyword_count: int,
        llm_provider_count: int,
        search_term_count: Optional[int] = None,
        question_count: Optional[int] = None,
        device_count: Optional[int] = None,
    ) -> CostBreakdown:
        """Sub-cost per enabled type; disabled types contribute exactly zero.

        ``search_term_count`` and ``question_count`` default to
        ``keyword_count`` (one term or question per concept).
        """
        enabled = {CheckType(t) for t in check_types}
        terms = keyword_count if search_term_count is None else search_term_count
        questions = keyword_count if question_count is None else question_count
        return CostBreakdown(
            search_rank=(
                self.search_rank_cost(terms, device_count)
                if CheckType.SEARCH_RANK in enabled else 0
            ),
            geo_grid=(
                self.geo_grid_cost(grid_size, keyword_count)
                if CheckType.GEO_GRID in enabled else 0
            ),
            llm_visibility=(
                self.llm_visibility_cost(questions, llm_provider_count)
                if CheckType.LLM_VISIBILITY in enabled else 0
            ),
        )
