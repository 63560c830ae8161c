"""Credits module: cost model, balances, debits and refunds."""

from rankgrid.modules.credits.pricing import CostBreakdown, PricingModel
from rankgrid.modules.credits.service import Balance, CreditService, DebitResult

__all__ = ["Balance", "CostBreakdown", "CreditService", "DebitResult", "PricingModel"]
