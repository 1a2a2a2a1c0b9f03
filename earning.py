"""Earning engine: credits reward actions and the bonuses they unlock."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal

from ledger import LedgerStore, LedgerTransaction, to_amount
from models_ledger import LedgerReason
from rate_limiter import DailyRateLimiter
from reward_policy import RewardPolicy

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class BonusCredit:
    reason: LedgerReason
    amount: Decimal

    def to_dict(self):
        return {"reason": self.reason.value, "amount": float(self.amount)}


@dataclass(frozen=True)
class EarnResult:
    account_id: str
    action: LedgerReason
    amount_credited: Decimal  # primary reward only; bonuses are separate entries
    balance: Decimal
    bonuses: tuple = field(default_factory=tuple)
    login_streak: int | None = None

    def to_dict(self):
        out = {
            "success": True,
            "earned": float(self.amount_credited),
            "action": self.action.value,
            "balance": float(self.balance),
            "bonuses": [b.to_dict() for b in self.bonuses],
            "message": f"Earned {self.amount_credited} CYBV tokens for {self.action.value.replace('_', ' ')}",
        }
        if self.login_streak is not None:
            out["loginStreak"] = self.login_streak
        return out


class EarningEngine:
    def __init__(self, store: LedgerStore, policy: RewardPolicy, limiter: DailyRateLimiter):
        self.store = store
        self.policy = policy
        self.limiter = limiter

    def earn(self, account_id, action, metadata: dict | None = None) -> EarnResult:
        """Credit ``action`` to ``account_id``.

        Raises UnknownAction, DailyLimitExceeded or PersistenceFailure; on any
        of them nothing is written.
        """
        rule = self.policy.lookup(action)
        metadata = dict(metadata or {})

        def work(txn: LedgerTransaction) -> EarnResult:
            self.limiter.check_and_reserve(txn, rule.action)
            txn.append(rule.reward, rule.action, metadata)
            bonuses = []
            streak = None
            if rule.action == LedgerReason.DAILY_LOGIN:
                previous = int(txn.account.login_streak or 0)
                streak = self._update_login_streak(txn)
                bonus_reason = self.policy.streak_bonus(streak)
                # only on the transition to the threshold
                if bonus_reason is not None and streak != previous:
                    bonuses.append(self._award_bonus(txn, bonus_reason, {"streak": streak}))
            elif rule.action == LedgerReason.POST_CREATE:
                if txn.count_entries(LedgerReason.POST_CREATE) == 1 and txn.count_entries(LedgerReason.FIRST_POST) == 0:
                    bonuses.append(self._award_bonus(txn, LedgerReason.FIRST_POST, {}))

            txn.emit(
                "tokens_earned",
                f"Earned {rule.reward} CYBV for {rule.action.value}",
                {"amount": str(rule.reward), "reason": rule.action.value, "metadata": metadata},
            )
            return EarnResult(
                account_id=txn.account.account_id,
                action=rule.action,
                amount_credited=to_amount(rule.reward),
                balance=txn.balance,
                bonuses=tuple(bonuses),
                login_streak=streak,
            )

        result = self.store.run(account_id, work, operation=f"earn:{rule.action.value}")
        log.info("credited %s %s to %s", result.amount_credited, rule.action.value, result.account_id)
        return result

    def _award_bonus(self, txn: LedgerTransaction, reason: LedgerReason, metadata: dict) -> BonusCredit:
        amount = self.policy.bonus_amount(reason)
        txn.append(amount, reason, metadata)
        txn.emit("bonus_awarded", f"Bonus {amount} CYBV ({reason.value})", {"amount": str(amount), "reason": reason.value})
        return BonusCredit(reason, to_amount(amount))

    @staticmethod
    def _update_login_streak(txn: LedgerTransaction) -> int:
        account = txn.account
        today = txn.now.date()
        last = account.last_login_at
        streak = int(account.login_streak or 0)

        if last is None:
            streak = 1
        else:
            days = (today - last.date()).days
            if days == 1:
                streak += 1
            elif days > 1:
                streak = 1
            # same UTC day: unchanged

        streak = max(streak, 1)
        account.login_streak = streak
        account.longest_streak = max(int(account.longest_streak or 0), streak)
        account.last_login_at = txn.now
        return streak
