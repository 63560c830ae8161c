"""Credit balances, atomic debits, refunds and grants backed by an append-only ledger."""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from sqlalchemy import desc, select, update
from sqlalchemy.exc import IntegrityError

from rankgrid.config import PricingSettings
from rankgrid.database import get_session
from rankgrid.exceptions import ConfigurationError
from rankgrid.models.credits import (
    CreditAccount,
    CreditLedgerEntry,
    CreditType,
    TransactionType,
)
from rankgrid.models.schedule import CheckType
from rankgrid.modules.credits.pricing import CostBreakdown, PricingModel
from rankgrid.utils.locks import KeyedThreadLock

logger = logging.getLogger(__name__)

DEBIT_ATTEMPTS = 5


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Balance:
    account_id: str
    included: int = 0
    purchased: int = 0

    @property
    def total(self) -> int:
        return self.included + self.purchased


@dataclass(frozen=True)
class DebitResult:
    """Outcome of a successful (or previously applied) debit."""
    account_id: str
    amount: int
    included_used: int
    purchased_used: int
    balance_after: int
    idempotency_key: str
    duplicate: bool = False


def _entry_to_dict(entry: CreditLedgerEntry) -> dict[str, Any]:
    return {
        "id": entry.id,
        "account_id": entry.account_id,
        "amount": entry.amount,
        "balance_after": entry.balance_after,
        "credit_type": entry.credit_type,
        "transaction_type": entry.transaction_type,
        "feature_type": entry.feature_type,
        "run_id": entry.run_id,
        "idempotency_key": entry.idempotency_key,
        "description": entry.description,
        "metadata": entry.feature_metadata,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }


class CreditService:
    """Estimate, check, debit and refund account credits.

    Debits are serialised per account with an in-process lock and guarded by
    a conditional UPDATE, so two runs on one account can never spend the same
    credits. Insufficient balance is a normal outcome: ``check_balance``
    returns False and ``debit`` returns None, neither raises.

    Usage::

        credits = CreditService()
        cost = credits.estimate_cost(["geo_grid"], grid_size=9, keyword_count=2,
                                     llm_provider_count=0)
        if credits.check_balance("acct-1", cost):
            ...
            credits.debit("acct-1", billed, run_id, "geo_grid")
    """

    def __init__(
        self,
        pricing: Optional[PricingSettings] = None,
        locks: Optional[KeyedThreadLock] = None,
    ):
        self.pricing = PricingModel(pricing)
        self._locks = locks or KeyedThreadLock()

    # ------------------------------------------------------------------
    # Estimation
    # ------------------------------------------------------------------

    def cost_breakdown(
        self,
        check_types: Iterable[CheckType | str],
        grid_size: int,
        keyword_count: int,
        llm_provider_count: int,
        search_term_count: Optional[int] = None,
        question_count: Optional[int] = None,
        device_count: Optional[int] = None,
    ) -> CostBreakdown:
        return self.pricing.breakdown(
            check_types,
            grid_size,
            keyword_count,
            llm_provider_count,
            search_term_count=search_term_count,
            question_count=question_count,
            device_count=device_count,
        )

    def estimate_cost(
        self,
        check_types: Iterable[CheckType | str],
        grid_size: int,
        keyword_count: int,
        llm_provider_count: int,
        search_term_count: Optional[int] = None,
        question_count: Optional[int] = None,
        device_count: Optional[int] = None,
    ) -> int:
        """Total credits for a prospective run; the sum of per-type sub-costs."""
        return self.cost_breakdown(
            check_types,
            grid_size,
            keyword_count,
            llm_provider_count,
            search_term_count=search_term_count,
            question_count=question_count,
            device_count=device_count,
        ).total

    # ------------------------------------------------------------------
    # Balances
    # ------------------------------------------------------------------

    def get_balance(self, account_id: str) -> Balance:
        with get_session() as session:
            account = session.get(CreditAccount, account_id)
            if account is None:
                return Balance(account_id=account_id)
            return Balance(account_id, account.included_credits, account.purchased_credits)

    def ensure_account(self, account_id: str) -> Balance:
        """Create a zero balance row for the account if none exists."""
        try:
            with get_session() as session:
                if session.get(CreditAccount, account_id) is None:
                    session.add(CreditAccount(account_id=account_id))
                    logger.info("Created credit balance for account %s", account_id)
        except IntegrityError:
            logger.debug("Credit balance for %s created concurrently", account_id)
        return self.get_balance(account_id)

    def check_balance(self, account_id: str, cost: int) -> bool:
        """True when the account can cover ``cost``. Never raises for insufficiency."""
        if cost <= 0:
            return True
        balance = self.get_balance(account_id)
        sufficient = balance.total >= cost
        if not sufficient:
            logger.info(
                "Insufficient credits for %s: need %d, have %d", account_id, cost, balance.total
            )
        return sufficient

    # ------------------------------------------------------------------
    # Debits
    # ------------------------------------------------------------------

    @staticmethod
    def _debit_keys(key: str) -> list[str]:
        return [key, f"{key}:included", f"{key}:purchased"]

    def _existing_debit(self, account_id: str, key: str) -> Optional[DebitResult]:
        with get_session() as session:
            entries = session.scalars(
                select(CreditLedgerEntry)
                .where(CreditLedgerEntry.idempotency_key.in_(self._debit_keys(key)))
                .order_by(CreditLedgerEntry.id)
            ).all()
            if not entries:
                return None
            included = -sum(e.amount for e in entries if e.credit_type == CreditType.INCLUDED.value)
            purchased = -sum(e.amount for e in entries if e.credit_type == CreditType.PURCHASED.value)
            return DebitResult(
                account_id=account_id,
                amount=included + purchased,
                included_used=included,
                purchased_used=purchased,
                balance_after=entries[-1].balance_after,
                idempotency_key=key,
                duplicate=True,
            )

    def debit(
        self,
        account_id: str,
        cost: int,
        run_id: str,
        feature_type: str,
        idempotency_key: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
        description: Optional[str] = None,
    ) -> Optional[DebitResult]:
        """Spend ``cost`` credits, included first then purchased.

        Writes one ledger entry per credit type touched. Repeating a debit
        with the same idempotency key returns the original outcome with
        ``duplicate=True`` and moves no credits.

        Returns:
            The debit outcome, or None when the balance is insufficient.
        """
        if cost < 0:
            raise ConfigurationError(f"Debit amount must be non-negative, got {cost}")
        key = idempotency_key or f"{feature_type}:{run_id}"
        if cost == 0:
            balance = self.get_balance(account_id)
            return DebitResult(account_id, 0, 0, 0, balance.total, key)

        with self._locks.hold(account_id):
            existing = self._existing_debit(account_id, key)
            if existing is not None:
                logger.info("Debit %s already applied; skipping", key)
                return existing
            try:
                return self._apply_debit(
                    account_id, cost, run_id, feature_type, key, metadata, description
                )
            except IntegrityError:
                logger.warning("Debit %s raced with another writer; returning prior outcome", key)
                return self._existing_debit(account_id, key)

    def _load_account(self, session, account_id: str) -> Optional[CreditAccount]:
        return session.get(CreditAccount, account_id)

    def _apply_debit(
        self,
        account_id: str,
        cost: int,
        run_id: str,
        feature_type: str,
        key: str,
        metadata: Optional[dict[str, Any]],
        description: Optional[str],
    ) -> Optional[DebitResult]:
        # The UPDATE only matches the balance that was read; a writer outside
        # this process lock forces a re-read and a fresh split.
        for attempt in range(1, DEBIT_ATTEMPTS + 1):
            with get_session() as session:
                account = self._load_account(session, account_id)
                if account is None or account.total_credits < cost:
                    have = account.total_credits if account else 0
                    logger.warning(
                        "Debit of %d for %s refused: balance %d is insufficient", cost, account_id, have
                    )
                    return None

                included, purchased = account.included_credits, account.purchased_credits
                included_used = min(included, cost)
                purchased_used = cost - included_used
                result = session.execute(
                    update(CreditAccount)
                    .where(
                        CreditAccount.account_id == account_id,
                        CreditAccount.included_credits == included,
                        CreditAccount.purchased_credits == purchased,
                    )
                    .values(
                        included_credits=included - included_used,
                        purchased_credits=purchased - purchased_used,
                        updated_at=_utcnow(),
                    )
                )
                if result.rowcount != 1:
                    logger.info(
                        "Balance for %s changed during debit %s (attempt %d/%d); re-reading",
                        account_id, key, attempt, DEBIT_ATTEMPTS,
                    )
                    continue

                split = included_used > 0 and purchased_used > 0
                running = included + purchased
                for credit_type, used in (
                    (CreditType.INCLUDED, included_used),
                    (CreditType.PURCHASED, purchased_used),
                ):
                    if used == 0:
                        continue
                    running -= used
                    session.add(
                        CreditLedgerEntry(
                            account_id=account_id,
                            amount=-used,
                            balance_after=running,
                            credit_type=credit_type.value,
                            transaction_type=TransactionType.FEATURE_DEBIT.value,
                            feature_type=feature_type,
                            feature_metadata=metadata,
                            run_id=run_id,
                            idempotency_key=f"{key}:{credit_type.value}" if split else key,
                            description=description or f"{feature_type} run {run_id}",
                        )
                    )

            logger.info(
                "Debited %d credits from %s (%d included, %d purchased) for %s",
                cost, account_id, included_used, purchased_used, key,
            )
            return DebitResult(
                account_id=account_id,
                amount=cost,
                included_used=included_used,
                purchased_used=purchased_used,
                balance_after=running,
                idempotency_key=key,
            )

        logger.error(
            "Debit %s for %s abandoned: balance kept changing over %d attempts",
            key, account_id, DEBIT_ATTEMPTS,
        )
        return None

    # ------------------------------------------------------------------
    # Credits, grants, refunds
    # ------------------------------------------------------------------

    def credit(
        self,
        account_id: str,
        amount: int,
        credit_type: CreditType = CreditType.PURCHASED,
        transaction_type: TransactionType = TransactionType.PURCHASE,
        idempotency_key: Optional[str] = None,
        description: Optional[str] = None,
        feature_type: Optional[str] = None,
        run_id: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Balance:
        """Add credits of one type. A repeated idempotency key is a no-op."""
        if amount <= 0:
            raise ConfigurationError(f"Credit amount must be positive, got {amount}")
        credit_type = CreditType(credit_type)
        transaction_type = TransactionType(transaction_type)

        with self._locks.hold(account_id):
            try:
                with get_session() as session:
                    if idempotency_key and session.scalar(
                        select(CreditLedgerEntry.id).where(
                            CreditLedgerEntry.idempotency_key == idempotency_key
                        )
                    ):
                        logger.info("Credit %s already applied; skipping", idempotency_key)
                        return self.get_balance(account_id)

                    account = session.get(CreditAccount, account_id)
                    if account is None:
                        account = CreditAccount(
                            account_id=account_id, included_credits=0, purchased_credits=0
                        )
                        session.add(account)
                    if credit_type is CreditType.INCLUDED:
                        account.included_credits += amount
                    else:
                        account.purchased_credits += amount
                    session.add(
                        CreditLedgerEntry(
                            account_id=account_id,
                            amount=amount,
                            balance_after=account.included_credits + account.purchased_credits,
                            credit_type=credit_type.value,
                            transaction_type=transaction_type.value,
                            feature_type=feature_type,
                            feature_metadata=metadata,
                            run_id=run_id,
                            idempotency_key=idempotency_key,
                            description=description,
                        )
                    )
            except IntegrityError:
                logger.warning("Credit %s raced with another writer", idempotency_key)
                return self.get_balance(account_id)

        logger.info(
            "Credited %d %s credits to %s (%s)",
            amount, credit_type.value, account_id, transaction_type.value,
        )
        return self.get_balance(account_id)

    def grant_monthly(self, account_id: str, amount: int, period: str) -> Balance:
        """Grant the plan's included credits once per ``period`` (e.g. ``2024-05``)."""
        return self.credit(
            account_id,
            amount,
            credit_type=CreditType.INCLUDED,
            transaction_type=TransactionType.MONTHLY_GRANT,
            idempotency_key=f"monthly_grant:{account_id}:{period}",
            description=f"Monthly included credits for {period}",
        )

    def refund(
        self, account_id: str, idempotency_key: str, reason: Optional[str] = None
    ) -> Optional[Balance]:
        """Compensate a prior debit with a new ledger entry keyed ``{key}:refund``.

        Refunded credits return as purchased credits so they never expire.
        Returns None when no debit exists for the key.
        """
        original = self._existing_debit(account_id, idempotency_key)
        if original is None or original.amount == 0:
            logger.warning("No debit found to refund for %s", idempotency_key)
            return None
        with get_session() as session:
            feature_type = session.scalar(
                select(CreditLedgerEntry.feature_type).where(
                    CreditLedgerEntry.idempotency_key.in_(self._debit_keys(idempotency_key))
                )
            )
        return self.credit(
            account_id,
            original.amount,
            credit_type=CreditType.PURCHASED,
            transaction_type=TransactionType.FEATURE_REFUND,
            idempotency_key=f"{idempotency_key}:refund",
            description=reason or f"Refund of {idempotency_key}",
            feature_type=feature_type,
        )

    def get_ledger(
        self,
        account_id: str,
        limit: int = 50,
        offset: int = 0,
        feature_type: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        """Most recent ledger entries first."""
        with get_session() as session:
            stmt = select(CreditLedgerEntry).where(CreditLedgerEntry.account_id == account_id)
            if feature_type:
                stmt = stmt.where(CreditLedgerEntry.feature_type == feature_type)
            stmt = stmt.order_by(desc(CreditLedgerEntry.id)).offset(offset).limit(limit)
            return [_entry_to_dict(e) for e in session.scalars(stmt).all()]
