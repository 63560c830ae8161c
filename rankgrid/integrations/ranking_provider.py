"""Local search ranking provider: protocol plus the DataForSEO Google Maps client.

The client shapes requests, rate-limits itself, and normalises responses into
:class:`RankCheckResponse`. It never retries and never persists; the rank
checker owns both.
"""

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional, Protocol

import httpx

from rankgrid.config import ProviderSettings
from rankgrid.exceptions import ProviderError, QuotaExceededError, TransientProviderError
from rankgrid.utils.rate_limiter import RateLimiter

if TYPE_CHECKING:
    from rankgrid.modules.geo_grid.point_calculator import CheckPoint

logger = logging.getLogger(__name__)

MAPS_LIVE_ENDPOINT = "/serp/google/maps/live/advanced"
STATUS_OK = 20000
QUOTA_STATUS_CODES = {40200, 40210}


@dataclass(frozen=True)
class RankedEntry:
    """One business listing in the local results."""
    position: int
    place_id: Optional[str]
    title: str
    rating: Optional[float] = None
    review_count: Optional[int] = None
    address: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "position": self.position,
            "place_id": self.place_id,
            "name": self.title,
            "rating": self.rating,
            "review_count": self.review_count,
            "address": self.address,
        }


@dataclass(frozen=True)
class RankCheckResponse:
    """Normalised result of one (point, term) lookup.

    ``my_position`` is None when the target business is absent from the
    results; that is a valid answer, not an error.
    """
    ranked_entries: list[RankedEntry] = field(default_factory=list)
    my_position: Optional[int] = None
    cost: float = 0.0
    task_id: Optional[str] = None
    our_rating: Optional[float] = None
    our_review_count: Optional[int] = None

    @property
    def business_found(self) -> bool:
        return self.my_position is not None

    def top_competitors(self, limit: int, exclude_place_id: Optional[str] = None) -> list[dict]:
        entries = [e for e in self.ranked_entries if e.place_id != exclude_place_id]
        return [e.to_dict() for e in entries[:limit]]


class RankingProvider(Protocol):
    """Anything that can rank a business for a term at a coordinate."""

    async def check_rank(
        self,
        point: "CheckPoint",
        search_term: str,
        target_business_id: str,
        language_code: str = "en",
    ) -> RankCheckResponse:
        ...


def _rating(item: dict[str, Any]) -> tuple[Optional[float], Optional[int]]:
    rating = item.get("rating") or {}
    value = rating.get("value")
    votes = rating.get("votes_count")
    return (
        float(value) if value is not None else None,
        int(votes) if votes is not None else None,
    )


def parse_maps_response(payload: dict[str, Any], target_business_id: str) -> RankCheckResponse:
    """Turn a maps live/advanced payload into a :class:`RankCheckResponse`.

    Raises:
        QuotaExceededError: account or task reports a billing status code.
        TransientProviderError: task reports a 5xxxx status.
        ProviderError: any other non-OK status or an unexpected shape.
    """
    _raise_for_api_status(payload.get("status_code"), payload.get("status_message"))

    tasks = payload.get("tasks") or []
    if not tasks:
        raise ProviderError("Provider response contained no tasks")
    task = tasks[0]
    _raise_for_api_status(task.get("status_code"), task.get("status_message"))

    results = task.get("result") or []
    items = (results[0].get("items") if results else None) or []

    entries: list[RankedEntry] = []
    my_position = None
    our_rating = None
    our_reviews = None
    for item in items:
        if item.get("type") not in (None, "maps_search"):
            continue
        position = item.get("rank_group") or item.get("rank_absolute")
        if position is None:
            continue
        rating, reviews = _rating(item)
        entry = RankedEntry(
            position=int(position),
            place_id=item.get("place_id"),
            title=item.get("title") or "",
            rating=rating,
            review_count=reviews,
            address=item.get("address"),
        )
        entries.append(entry)
        if my_position is None and target_business_id and entry.place_id == target_business_id:
            my_position = entry.position
            our_rating, our_reviews = rating, reviews

    entries.sort(key=lambda e: e.position)
    return RankCheckResponse(
        ranked_entries=entries,
        my_position=my_position,
        cost=float(task.get("cost") or payload.get("cost") or 0.0),
        task_id=task.get("id"),
        our_rating=our_rating,
        our_review_count=our_reviews,
    )


def _raise_for_api_status(code: Any, message: Any) -> None:
    if code is None:
        return
    text = f"Provider status {code}: {message or 'unknown error'}"
    try:
        code = int(code)
    except (TypeError, ValueError):
        raise ProviderError(text) from None
    if code == STATUS_OK:
        return
    if code in QUOTA_STATUS_CODES:
        raise QuotaExceededError(text, status_code=code)
    if 50000 <= code < 60000:
        raise TransientProviderError(text, status_code=code)
    raise ProviderError(text, status_code=code)


class DataForSEOMapsClient:
    """Google Maps rank lookups through DataForSEO's live endpoint.

    Usage::

        client = DataForSEOMapsClient(settings.provider)
        response = await client.check_rank(point, "plumber near me", "ChIJ...")
        await client.close()
    """

    def __init__(
        self,
        settings: Optional[ProviderSettings] = None,
        client: Optional[httpx.AsyncClient] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        self._settings = settings or ProviderSettings()
        if client is None and not (self._settings.login and self._settings.password):
            logger.warning("DataForSEO credentials are not configured; requests will fail.")
        self._client = client or httpx.AsyncClient(
            base_url=self._settings.base_url,
            auth=httpx.BasicAuth(self._settings.login, self._settings.password),
            timeout=self._settings.timeout,
            headers={"Content-Type": "application/json"},
        )
        self._limiter = rate_limiter or RateLimiter(
            max_requests=self._settings.requests_per_minute,
            window_seconds=60.0,
            name="dataforseo",
        )

    def build_task(
        self, point: "CheckPoint", search_term: str, language_code: str = "en"
    ) -> dict[str, Any]:
        return {
            "keyword": search_term,
            "location_coordinate": f"{point.lat},{point.lng},{self._settings.zoom}z",
            "language_code": language_code,
            "depth": self._settings.search_depth,
        }

    async def check_rank(
        self,
        point: "CheckPoint",
        search_term: str,
        target_business_id: str,
        language_code: str = "en",
    ) -> RankCheckResponse:
        task = self.build_task(point, search_term, language_code)
        await self._limiter.acquire()
        logger.debug("Maps lookup %r at %s (%s,%s)", search_term, point.label, point.lat, point.lng)
        try:
            response = await self._client.post(MAPS_LIVE_ENDPOINT, json=[task])
        except httpx.TimeoutException as exc:
            raise TransientProviderError(f"Provider timeout: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransientProviderError(f"Provider transport error: {exc}") from exc

        status = response.status_code
        if status == 402:
            raise QuotaExceededError("Provider reports payment required", status_code=status)
        if status == 429 or status >= 500:
            raise TransientProviderError(f"Provider HTTP {status}", status_code=status)
        if status >= 400:
            raise ProviderError(f"Provider HTTP {status}: {response.text[:200]}", status_code=status)

        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderError("Provider returned malformed JSON") from exc
        if not isinstance(payload, dict):
            raise ProviderError("Provider returned an unexpected payload shape")
        return parse_maps_response(payload, target_business_id)

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        await self.close()
