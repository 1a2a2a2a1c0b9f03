"""Per-account, per-UTC-day caps on reward actions.

Two strategies:

- ``counter`` (default): increment-and-check on a token_daily_counters row
  inside the caller's ledger transaction, so the reservation commits or rolls
  back together with the ledger entry.
- ``ledger``: count today's ledger entries for the action, then let the
  caller insert. Without the ledger store's per-account serialization this
  is the racy count-then-insert pattern; under it the overshoot is zero
  in-process and at most (writers - 1) across processes on databases that
  ignore FOR UPDATE.

The day boundary is UTC midnight.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from errors import DailyLimitExceeded
from ledger import LedgerTransaction, utc_day_bounds
from models_ledger import DailyActionCounter, LedgerReason

STRATEGY_COUNTER = "counter"
STRATEGY_LEDGER = "ledger"


@dataclass(frozen=True)
class Allowed:
    action: LedgerReason
    count: int  # occurrences today, including this reservation
    cap: int | None


class DailyRateLimiter:
    def __init__(self, policy, strategy: str = STRATEGY_COUNTER):
        if strategy not in (STRATEGY_COUNTER, STRATEGY_LEDGER):
            raise ValueError(f"unknown daily limit strategy: {strategy!r}")
        self.policy = policy
        self.strategy = strategy

    def check_and_reserve(self, txn: LedgerTransaction, action: LedgerReason, requested_count: int = 1) -> Allowed:
        """Reserve ``requested_count`` uses of ``action`` for today or raise DailyLimitExceeded."""
        cap = self.policy.daily_cap(action)
        if cap is None:
            return Allowed(action, requested_count, None)

        day_start, day_end = utc_day_bounds(txn.now)
        if self.strategy == STRATEGY_LEDGER:
            current = txn.count_entries(action, day_start, day_end)
            self._check(action, current, requested_count, cap, day_end)
            return Allowed(action, current + requested_count, cap)

        counter = self._counter(txn, action, day_start)
        current = int(counter.count or 0)
        self._check(action, current, requested_count, cap, day_end)
        counter.count = current + requested_count
        return Allowed(action, counter.count, cap)

    def count_today(self, store, account_id, action: LedgerReason, now: datetime | None = None) -> int:
        """Today's occurrences derived from the ledger (the audit definition)."""
        now = now or store.clock()
        day_start, day_end = utc_day_bounds(now)
        return store.count_entries(account_id, action, day_start, day_end)

    @staticmethod
    def _check(action, current: int, requested: int, cap: int, resets_at: datetime):
        if current + requested > cap:
            raise DailyLimitExceeded(
                "Daily limit reached for this action",
                action=action.value,
                count=current,
                limit=cap,
                resets_at=resets_at,
            )

    @staticmethod
    def _counter(txn: LedgerTransaction, action: LedgerReason, day_start: datetime) -> DailyActionCounter:
        day = day_start.date()
        counter = (
            txn.session.query(DailyActionCounter)
            .filter_by(account_id=txn.account.account_id, action=action.value, day=day)
            .with_for_update()
            .populate_existing()
            .one_or_none()
        )
        if counter is None:
            # A concurrent insert from another process trips the unique
            # constraint; the ledger store retries the whole unit.
            counter = DailyActionCounter(account_id=txn.account.account_id, action=action.value, day=day, count=0)
            txn.session.add(counter)
            txn.session.flush()
        return counter
