"""Shared pytest fixtures for RankGrid tests."""

import sys
from pathlib import Path
from typing import Any, Optional

import pytest

# Ensure project root is on sys.path so 'rankgrid' is importable.
_project_root = str(Path(__file__).resolve().parent.parent)
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from rankgrid.integrations.ranking_provider import RankCheckResponse, RankedEntry  # noqa: E402

TARGET_PLACE_ID = "ChIJ-target"


@pytest.fixture(autouse=True)
def _reset_db_engine():
    """Autouse fixture: reset the global DB engine before and after every test."""
    from rankgrid.database import reset_engine
    reset_engine()
    yield
    reset_engine()


@pytest.fixture()
def test_db(tmp_path):
    """Provide a file-backed SQLite database with all tables created.

    A file (not ``:memory:``) so every pooled connection sees the same data.
    """
    from rankgrid.database import init_db
    db_url = f"sqlite:///{tmp_path / 'rankgrid_test.db'}"
    init_db(database_url=db_url, echo=False)
    yield db_url


async def _no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture()
def no_sleep():
    """Drop-in for asyncio.sleep so retry backoff and stagger cost nothing."""
    return _no_sleep


def make_response(position: Optional[int], competitors: int = 3, cost: float = 0.002) -> RankCheckResponse:
    """A provider answer with ``competitors`` other listings and the target at ``position``."""
    entries = []
    rank = 1
    for index in range(competitors):
        if position is not None and rank == position:
            rank += 1
        entries.append(RankedEntry(position=rank, place_id=f"comp-{index}", title=f"Competitor {index}",
                                   rating=4.5, review_count=100 + index))
        rank += 1
    if position is not None:
        entries.append(RankedEntry(position=position, place_id=TARGET_PLACE_ID, title="Target Biz",
                                   rating=4.8, review_count=321))
    entries.sort(key=lambda e: e.position)
    return RankCheckResponse(
        ranked_entries=entries,
        my_position=position,
        cost=cost,
        task_id="task-1",
        our_rating=4.8 if position is not None else None,
        our_review_count=321 if position is not None else None,
    )


class FakeRankingProvider:
    """Scripted RankingProvider.

    ``positions`` maps ``(search_term, point_label)`` or ``point_label`` to a
    position (None = not found); ``failures`` maps the same keys to a list of
    exceptions raised on successive attempts before answering.
    """

    def __init__(
        self,
        default_position: Optional[int] = 5,
        positions: Optional[dict[Any, Optional[int]]] = None,
        failures: Optional[dict[Any, list[Exception]]] = None,
    ):
        self.default_position = default_position
        self.positions = positions or {}
        self.failures = {k: list(v) for k, v in (failures or {}).items()}
        self.calls: list[tuple[str, str]] = []

    @property
    def call_count(self) -> int:
        return len(self.calls)

    def _lookup(self, table: dict, term: str, label: str):
        if (term, label) in table:
            return (term, label)
        if label in table:
            return label
        return None

    async def check_rank(self, point, search_term, target_business_id, language_code="en"):
        self.calls.append((search_term, point.label))
        key = self._lookup(self.failures, search_term, point.label)
        if key is not None and self.failures[key]:
            raise self.failures[key].pop(0)
        key = self._lookup(self.positions, search_term, point.label)
        position = self.positions[key] if key is not None else self.default_position
        return make_response(position)

    async def close(self) -> None:
        return None


@pytest.fixture()
def fake_provider():
    return FakeRankingProvider()


@pytest.fixture()
def credits(test_db):
    from rankgrid.modules.credits import CreditService
    return CreditService()


@pytest.fixture()
def keyword_factory(test_db):
    """Create Keyword rows; returns the new id."""
    from rankgrid.database import get_session
    from rankgrid.models import Keyword

    def _make(phrase="emergency plumber", account_id="acct-1", search_terms=None, questions=None):
        with get_session() as session:
            keyword = Keyword(
                account_id=account_id,
                phrase=phrase,
                search_terms=list(search_terms or []),
                related_questions=list(questions or []),
            )
            session.add(keyword)
            session.flush()
            return keyword.id

    return _make


@pytest.fixture()
def tracking(test_db):
    from rankgrid.modules.geo_grid import TrackingService
    return TrackingService()


@pytest.fixture()
def config_factory(tracking):
    """Create a tracking config centred on Manhattan with the target place id."""

    def _make(grid_size=5, radius_miles=2.0, account_id="acct-1", **kwargs):
        kwargs.setdefault("target_place_id", TARGET_PLACE_ID)
        return tracking.create_config(
            account_id, 40.7128, -74.0060, radius_miles=radius_miles, grid_size=grid_size, **kwargs
        )

    return _make
