"""Keyword (concept) SQLAlchemy model mirrored from the keyword library."""

from datetime import datetime, timezone
from typing import TYPE_CHECKING

from sqlalchemy import Integer, String, DateTime, JSON
from sqlalchemy.orm import Mapped, mapped_column, relationship

from rankgrid.database import Base

if TYPE_CHECKING:
    from rankgrid.models.geo_grid import TrackedTerm


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Keyword(Base):
    """A concept: one phrase with its search-term variants and related questions."""

    __tablename__ = "keywords"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    phrase: Mapped[str] = mapped_column(String(500), nullable=False, index=True)
    search_terms: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    related_questions: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    tracked_terms: Mapped[list["TrackedTerm"]] = relationship(
        "TrackedTerm", back_populates="keyword", lazy="selectin"
    )

    def effective_search_terms(self) -> list[str]:
        """Search terms to check, falling back to the phrase when none are set."""
        terms = [t for t in (self.search_terms or []) if t]
        return terms or [self.phrase]

    def __repr__(self) -> str:
        return f"<Keyword id={self.id} phrase={self.phrase!r}>"
