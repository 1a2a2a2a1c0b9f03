"""Spending: debits for platform purchases (boosts, tips, marketplace...)."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from types import MappingProxyType

from errors import InsufficientBalance, InvalidAmount, UnknownAction
from ledger import ZERO, LedgerStore, LedgerTransaction, to_amount
from models_ledger import LedgerReason

log = logging.getLogger(__name__)

SPEND_REASONS = frozenset({
    LedgerReason.POST_BOOST,
    LedgerReason.NFT_PURCHASE,
    LedgerReason.PREMIUM_FEATURE,
    LedgerReason.TIP_USER,
    LedgerReason.MARKETPLACE_FEE,
    LedgerReason.DOMAIN_PURCHASE,
    LedgerReason.TEMPLATE_PURCHASE,
})


@dataclass(frozen=True)
class BoostTier:
    name: str
    cost: Decimal
    duration_hours: int
    multiplier: int
    description: str


BOOST_TIERS = MappingProxyType({
    "basic": BoostTier("basic", Decimal("10"), 24, 2, "Double visibility for 24 hours"),
    "premium": BoostTier("premium", Decimal("25"), 72, 3, "Triple visibility for 72 hours"),
    "super": BoostTier("super", Decimal("50"), 168, 5, "5x visibility for 1 week"),
})


@dataclass(frozen=True)
class SpendResult:
    account_id: str
    reason: LedgerReason
    amount: Decimal
    balance: Decimal

    def to_dict(self):
        return {
            "success": True,
            "spent": float(self.amount),
            "reason": self.reason.value,
            "newBalance": float(self.balance),
        }


class SpendingEngine:
    def __init__(self, store: LedgerStore):
        self.store = store

    def spend(self, account_id, reason, amount, metadata: dict | None = None) -> SpendResult:
        spend_reason = LedgerReason.parse(reason)
        if spend_reason not in SPEND_REASONS:
            raise UnknownAction("Invalid spending reason", reason=str(reason))
        amount = to_amount(amount)
        if amount <= ZERO:
            raise InvalidAmount("Amount must be greater than 0", amount=amount)
        metadata = dict(metadata or {})

        def work(txn: LedgerTransaction) -> SpendResult:
            if txn.balance < amount:
                raise InsufficientBalance("Insufficient balance", available=txn.balance, required=amount)
            txn.append(-amount, spend_reason, metadata)
            txn.emit("tokens_spent", f"Spent {amount} CYBV on {spend_reason.value}",
                     {"amount": str(amount), "reason": spend_reason.value, "metadata": metadata})
            return SpendResult(txn.account.account_id, spend_reason, amount, txn.balance)

        result = self.store.run(account_id, work, operation=f"spend:{spend_reason.value}")
        log.info("debited %s %s from %s", amount, spend_reason.value, result.account_id)
        return result

    def boost_post(self, account_id, post_id: str, tier: str = "basic") -> SpendResult:
        boost = BOOST_TIERS.get(str(tier or "").lower())
        if boost is None:
            raise UnknownAction("Invalid boost tier", tier=str(tier), allowed=sorted(BOOST_TIERS))
        return self.spend(account_id, LedgerReason.POST_BOOST, boost.cost, {
            "relatedId": str(post_id),
            "relatedType": "post",
            "boostTier": boost.name,
            "boostDuration": boost.duration_hours,
            "multiplier": boost.multiplier,
        })
