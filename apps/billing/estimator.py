from __future__ import annotations

import logging
from dataclasses import dataclass, asdict
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

from django.core.cache import cache

from apps.core.engine import SurveyEngineClient
from apps.core.utility import parse_decimal, parse_int

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
ESTIMATE_CACHE_TIMEOUT = 60 * 60


@dataclass(frozen=True)
class CostEstimate:
    target_respondents: int
    cost_per_respondent: Decimal
    estimated_cost: Decimal
    current_wallet_balance: Decimal
    is_sufficient_funds: bool
    required_top_up_amount: Decimal

    @classmethod
    def derive(cls, target_respondents: int, cost_per_respondent: Decimal, estimated_cost: Decimal,
               balance: Decimal) -> "CostEstimate":
        """Sufficiency and shortfall are always computed from the quoted cost and observed balance."""
        return cls(
            target_respondents=target_respondents,
            cost_per_respondent=cost_per_respondent,
            estimated_cost=estimated_cost,
            current_wallet_balance=balance,
            is_sufficient_funds=estimated_cost <= balance,
            required_top_up_amount=max(estimated_cost - balance, ZERO),
        )

    def to_wire(self) -> Dict[str, Any]:
        return {
            "targetRespondents": self.target_respondents,
            "costPerRespondent": str(self.cost_per_respondent),
            "estimatedCost": str(self.estimated_cost),
            "currentWalletBalance": str(self.current_wallet_balance),
            "isSufficientFunds": self.is_sufficient_funds,
            "requiredTopUpAmount": str(self.required_top_up_amount),
        }

    @classmethod
    def from_cache(cls, data: Dict[str, Any]) -> "CostEstimate":
        return cls(
            target_respondents=int(data["target_respondents"]),
            cost_per_respondent=Decimal(data["cost_per_respondent"]),
            estimated_cost=Decimal(data["estimated_cost"]),
            current_wallet_balance=Decimal(data["current_wallet_balance"]),
            is_sufficient_funds=bool(data["is_sufficient_funds"]),
            required_top_up_amount=Decimal(data["required_top_up_amount"]),
        )

    def to_cache(self) -> Dict[str, Any]:
        return {k: (str(v) if isinstance(v, Decimal) else v) for k, v in asdict(self).items()}


class CostEstimator:
    """
    Read-only funding check. Quotes come from the engine's cost calculation;
    nothing here ever moves money.
    """

    def __init__(self, client: SurveyEngineClient):
        self.client = client

    def estimate(self, target_respondents: Optional[int] = None, budget: Optional[Decimal] = None) -> CostEstimate:
        if target_respondents is not None and budget is not None:
            raise ValueError("Provide either target_respondents or budget, not both")

        if not target_respondents and not budget:
            balance = self.client.get_wallet_balance()
            return CostEstimate.derive(0, ZERO, ZERO, balance)

        quote = self.client.calculate_cost(target_respondents=target_respondents, budget=budget) or {}
        cpr = parse_decimal(quote.get("costPerRespondent"), ZERO)
        target = parse_int(quote.get("targetRespondents"), target_respondents or 0)
        cost = parse_decimal(quote.get("estimatedCost"))
        if cost is None:
            cost = cpr * target
        balance = parse_decimal(quote.get("currentWalletBalance"))
        if balance is None:
            balance = self.client.get_wallet_balance()

        estimate = CostEstimate.derive(target, cpr, cost, balance)
        logger.info(
            "Cost estimated",
            extra={"target": estimate.target_respondents, "cost": str(estimate.estimated_cost),
                   "sufficient": estimate.is_sufficient_funds},
        )
        return estimate


# ---- Draft estimate cache --------------------------------------------------------
# The debounced estimate for a draft lives only in the cache, tagged with the
# draft's estimate_token at the time it was computed.

def _cache_key(draft_id: int) -> str:
    return f"draft-estimate:{draft_id}"


def remember_estimate(draft_id: int, token: int, estimate: CostEstimate) -> None:
    cache.set(_cache_key(draft_id), {"token": token, "estimate": estimate.to_cache()}, ESTIMATE_CACHE_TIMEOUT)


def cached_estimate(draft_id: int, current_token: int) -> Tuple[Optional[CostEstimate], bool]:
    """Return (estimate, pending). `pending` is True while a newer edit awaits its quote."""
    entry = cache.get(_cache_key(draft_id))
    if not entry:
        return None, current_token > 0
    estimate = CostEstimate.from_cache(entry["estimate"])
    return estimate, entry["token"] != current_token


def forget_estimate(draft_id: int) -> None:
    cache.delete(_cache_key(draft_id))
