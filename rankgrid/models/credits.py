"""Credit balance and append-only ledger SQLAlchemy models."""

import enum
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import DateTime, Integer, JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from rankgrid.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CreditType(str, enum.Enum):
    INCLUDED = "included"
    PURCHASED = "purchased"


class TransactionType(str, enum.Enum):
    FEATURE_DEBIT = "feature_debit"
    FEATURE_REFUND = "feature_refund"
    PURCHASE = "purchase"
    MONTHLY_GRANT = "monthly_grant"
    ADJUSTMENT = "adjustment"


class CreditAccount(Base):
    """Current balance per account. Included credits are spent before purchased."""

    __tablename__ = "credit_balances"

    account_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    included_credits: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    purchased_credits: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    @property
    def total_credits(self) -> int:
        return self.included_credits + self.purchased_credits

    def __repr__(self) -> str:
        return (
            f"<CreditAccount {self.account_id!r} included={self.included_credits} "
            f"purchased={self.purchased_credits}>"
        )


class CreditLedgerEntry(Base):
    """Append-only credit movement. Reversals are new compensating rows."""

    __tablename__ = "credit_ledger"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    balance_after: Mapped[int] = mapped_column(Integer, nullable=False)
    credit_type: Mapped[str] = mapped_column(String(20), nullable=False)
    transaction_type: Mapped[str] = mapped_column(String(30), nullable=False)
    feature_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    feature_metadata: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    run_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    idempotency_key: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True, unique=True
    )
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    def __repr__(self) -> str:
        return (
            f"<CreditLedgerEntry id={self.id} account={self.account_id!r} "
            f"amount={self.amount} type={self.transaction_type}>"
        )
