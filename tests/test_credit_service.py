"""Tests for credit pricing, balances, debits and refunds."""

import threading

import pytest

from rankgrid.config import PricingSettings
from rankgrid.exceptions import ConfigurationError
from rankgrid.models import CreditType, TransactionType
from rankgrid.modules.credits import CreditService, PricingModel


class TestPricing:

    def test_geo_grid_cost_is_points_times_keywords(self):
        assert PricingModel().geo_grid_cost(9, 2) == 18

    def test_sub_costs_add_up(self):
        pricing = PricingModel()
        breakdown = pricing.breakdown(
            ["search_rank", "geo_grid", "llm_visibility"], grid_size=9, keyword_count=2,
            llm_provider_count=3,
        )
        assert breakdown.search_rank == pricing.search_rank_cost(2)
        assert breakdown.geo_grid == 18
        assert breakdown.llm_visibility == pricing.llm_visibility_cost(2, 3)
        assert breakdown.total == breakdown.search_rank + breakdown.geo_grid + breakdown.llm_visibility

    def test_disabled_types_cost_nothing(self):
        breakdown = PricingModel().breakdown(["geo_grid"], grid_size=25, keyword_count=1,
                                             llm_provider_count=4)
        assert breakdown.search_rank == 0
        assert breakdown.llm_visibility == 0
        assert breakdown.total == 25

    def test_adding_a_type_never_lowers_the_total(self):
        pricing = PricingModel()
        base = pricing.breakdown(["geo_grid"], 9, 3, 2).total
        more = pricing.breakdown(["geo_grid", "llm_visibility"], 9, 3, 2).total
        assert more >= base

    def test_custom_unit_prices(self):
        pricing = PricingModel(PricingSettings(geo_grid_per_point=2, llm_per_question=5))
        assert pricing.geo_grid_cost(5, 1) == 10
        assert pricing.llm_visibility_cost(question_count=2, provider_count=2) == 20

    def test_for_type(self):
        breakdown = PricingModel().breakdown(["geo_grid"], 5, 2, 0)
        assert breakdown.for_type("geo_grid") == 10
        assert breakdown.to_dict()["total"] == 10

    def test_negative_counts_rejected(self):
        with pytest.raises(ConfigurationError):
            PricingModel().geo_grid_cost(9, -1)

    def test_unknown_check_type_rejected(self):
        with pytest.raises(ValueError):
            PricingModel().breakdown(["backlinks"], 9, 1, 0)


class TestBalances:

    def test_unknown_account_has_zero_balance(self, credits):
        balance = credits.get_balance("nobody")
        assert balance.total == 0
        assert not credits.check_balance("nobody", 1)

    def test_zero_cost_always_affordable(self, credits):
        assert credits.check_balance("nobody", 0)

    def test_credit_and_check(self, credits):
        credits.credit("acct-1", 10)
        assert credits.check_balance("acct-1", 10)
        assert not credits.check_balance("acct-1", 11)

    def test_credit_rejects_non_positive(self, credits):
        with pytest.raises(ConfigurationError):
            credits.credit("acct-1", 0)

    def test_monthly_grant_once_per_period(self, credits):
        credits.grant_monthly("acct-1", 100, "2024-05")
        credits.grant_monthly("acct-1", 100, "2024-05")
        balance = credits.grant_monthly("acct-1", 100, "2024-06")
        assert balance.included == 200
        assert balance.purchased == 0

    def test_ensure_account(self, credits):
        assert credits.ensure_account("acct-9").total == 0
        assert credits.ensure_account("acct-9").total == 0


class TestDebits:

    def test_included_spent_before_purchased(self, credits):
        credits.credit("acct-1", 5, credit_type=CreditType.INCLUDED,
                       transaction_type=TransactionType.MONTHLY_GRANT)
        credits.credit("acct-1", 10)
        result = credits.debit("acct-1", 8, "run-1", "geo_grid")
        assert result.included_used == 5
        assert result.purchased_used == 3
        assert result.balance_after == 7
        balance = credits.get_balance("acct-1")
        assert (balance.included, balance.purchased) == (0, 7)

    def test_split_debit_writes_one_entry_per_type(self, credits):
        credits.credit("acct-1", 5, credit_type=CreditType.INCLUDED,
                       transaction_type=TransactionType.MONTHLY_GRANT)
        credits.credit("acct-1", 10)
        credits.debit("acct-1", 8, "run-1", "geo_grid", idempotency_key="geo_grid:1:run-1")
        debits = [e for e in credits.get_ledger("acct-1") if e["transaction_type"] == "feature_debit"]
        assert sorted(e["amount"] for e in debits) == [-5, -3]
        assert {e["idempotency_key"] for e in debits} == {
            "geo_grid:1:run-1:included", "geo_grid:1:run-1:purchased",
        }

    def test_insufficient_balance_returns_none(self, credits):
        credits.credit("acct-1", 3)
        assert credits.debit("acct-1", 4, "run-1", "geo_grid") is None
        assert credits.get_balance("acct-1").total == 3

    def test_repeated_key_moves_credits_once(self, credits):
        credits.credit("acct-1", 20)
        first = credits.debit("acct-1", 9, "run-1", "geo_grid", idempotency_key="k1")
        second = credits.debit("acct-1", 9, "run-1", "geo_grid", idempotency_key="k1")
        assert not first.duplicate
        assert second.duplicate
        assert second.amount == 9
        assert credits.get_balance("acct-1").total == 11

    def test_zero_debit_writes_nothing(self, credits):
        credits.credit("acct-1", 5)
        result = credits.debit("acct-1", 0, "run-1", "geo_grid")
        assert result.amount == 0
        assert len(credits.get_ledger("acct-1")) == 1

    def test_negative_debit_rejected(self, credits):
        with pytest.raises(ConfigurationError):
            credits.debit("acct-1", -1, "run-1", "geo_grid")

    def test_concurrent_debits_never_overspend(self, credits):
        credits.credit("acct-1", 10)
        outcomes = []

        def spend(index):
            outcomes.append(credits.debit("acct-1", 6, f"run-{index}", "geo_grid"))

        threads = [threading.Thread(target=spend, args=(i,)) for i in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sum(1 for o in outcomes if o is not None) == 1
        assert credits.get_balance("acct-1").total == 4

    def test_balance_change_between_read_and_write(self, credits, monkeypatch):
        credits.credit("acct-1", 100)
        load = credits._load_account
        reads = []

        def load_then_top_up(session, account_id):
            account = load(session, account_id)
            if not reads:
                # another service instance does not share this one's lock
                CreditService().credit(account_id, 5, idempotency_key="top-up-1")
            reads.append(account_id)
            return account

        monkeypatch.setattr(credits, "_load_account", load_then_top_up)
        result = credits.debit("acct-1", 10, "run-1", "geo_grid")

        assert result is not None
        assert result.amount == 10
        assert result.balance_after == 95
        assert len(reads) == 2
        balance = credits.get_balance("acct-1")
        assert (balance.included, balance.purchased) == (0, 95)
        debits = [e for e in credits.get_ledger("acct-1") if e["transaction_type"] == "feature_debit"]
        assert [e["amount"] for e in debits] == [-10]

    def test_ledger_filters_by_feature(self, credits):
        credits.credit("acct-1", 20)
        credits.debit("acct-1", 2, "run-1", "geo_grid")
        credits.debit("acct-1", 3, "run-2", "llm_visibility")
        entries = credits.get_ledger("acct-1", feature_type="llm_visibility")
        assert [e["amount"] for e in entries] == [-3]


class TestRefunds:

    def test_refund_returns_credits_as_purchased(self, credits):
        credits.credit("acct-1", 10, credit_type=CreditType.INCLUDED,
                       transaction_type=TransactionType.MONTHLY_GRANT)
        credits.debit("acct-1", 4, "run-1", "geo_grid", idempotency_key="k1")
        balance = credits.refund("acct-1", "k1", reason="provider outage")
        assert (balance.included, balance.purchased) == (6, 4)

    def test_refund_is_idempotent(self, credits):
        credits.credit("acct-1", 10)
        credits.debit("acct-1", 4, "run-1", "geo_grid", idempotency_key="k1")
        credits.refund("acct-1", "k1")
        balance = credits.refund("acct-1", "k1")
        assert balance.total == 10

    def test_refund_of_unknown_debit(self, credits):
        assert credits.refund("acct-1", "missing") is None

    def test_estimate_cost_matches_breakdown(self):
        service = CreditService()
        assert service.estimate_cost(["geo_grid"], 9, 2, 0) == 18
