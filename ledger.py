"""Ledger store: the only code path that writes token balances.

Every balance-affecting operation runs as one unit of work through
``LedgerStore.run()``:

- the account is serialized in-process (per-account lock, bounded wait) and
  in the database (``SELECT ... FOR UPDATE`` on the account row);
- ledger appends and the cached balance update share one transaction;
- a SQLAlchemy failure rolls everything back and the unit is retried once,
  after which the caller gets ``PersistenceFailure``;
- activity events are published only after the commit succeeded.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from sqlalchemy import case, func
from sqlalchemy.exc import SQLAlchemyError

from errors import InvalidAccount, InvalidAmount, LedgerError, PersistenceFailure
from models_ledger import LEDGER_STATUS_COMPLETED, Account, LedgerEntry, LedgerReason

log = logging.getLogger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0")


def utcnow() -> datetime:
    # Naive UTC, matching the DateTime columns.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def utc_day_bounds(now: datetime):
    day_start = datetime(now.year, now.month, now.day)
    day_end = day_start + timedelta(days=1)
    return day_start, day_end


def to_amount(value) -> Decimal:
    """Coerce ``value`` to a 2-place Decimal (half-up)."""
    if isinstance(value, bool):
        raise InvalidAmount("Amount must be a number", amount=str(value))
    try:
        dec = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidAmount("Amount must be a number", amount=str(value)) from None
    if not dec.is_finite():
        raise InvalidAmount("Amount must be a finite number", amount=str(value))
    return dec.quantize(CENT, rounding=ROUND_HALF_UP)


def normalize_account_id(account_id) -> str:
    aid = str(account_id or "").strip().lower()
    if not aid or len(aid) > 64:
        raise InvalidAccount("Account id is required")
    return aid


@dataclass
class LedgerEvent:
    account_id: str
    type: str
    message: str
    metadata: dict = field(default_factory=dict)


@dataclass(frozen=True)
class BalanceSummary:
    account_id: str
    balance: Decimal
    total_earned: Decimal
    total_spent: Decimal

    def to_dict(self):
        return {
            "balance": str(self.balance),
            "totalEarned": str(self.total_earned),
            "totalSpent": str(self.total_spent),
        }


@dataclass(frozen=True)
class Reconciliation:
    account_id: str
    cached_balance: Decimal
    ledger_balance: Decimal
    repaired: bool = False

    @property
    def drift(self) -> Decimal:
        return self.cached_balance - self.ledger_balance

    @property
    def ok(self) -> bool:
        return self.drift == ZERO

    def to_dict(self):
        return {
            "account_id": self.account_id,
            "cached_balance": str(self.cached_balance),
            "ledger_balance": str(self.ledger_balance),
            "drift": str(self.drift),
            "repaired": self.repaired,
        }


def _count_entries(session, account_id: str, reason: LedgerReason, start=None, end=None) -> int:
    q = session.query(func.count(LedgerEntry.id)).filter(
        LedgerEntry.account_id == account_id,
        LedgerEntry.reason == reason,
    )
    if start is not None:
        q = q.filter(LedgerEntry.occurred_at >= start)
    if end is not None:
        q = q.filter(LedgerEntry.occurred_at < end)
    return int(q.scalar() or 0)


class AccountLocks:
    """Per-account re-entrant locks; entries are dropped when unused."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, list] = {}

    @contextmanager
    def hold(self, account_id: str, timeout: float):
        with self._guard:
            slot = self._locks.setdefault(account_id, [threading.RLock(), 0])
            slot[1] += 1
        acquired = slot[0].acquire(timeout=timeout)
        try:
            if not acquired:
                raise PersistenceFailure(
                    "Timed out waiting for the account to become available",
                    account_id=account_id,
                    timeout_seconds=timeout,
                )
            yield
        finally:
            if acquired:
                slot[0].release()
            with self._guard:
                slot[1] -= 1
                if slot[1] == 0:
                    self._locks.pop(account_id, None)


class LedgerTransaction:
    """Handle given to a unit of work; appends entries on a locked account."""

    def __init__(self, session, account: Account, now: datetime):
        self.session = session
        self.account = account
        self.now = now
        self.entries: list[LedgerEntry] = []
        self.events: list[LedgerEvent] = []

    @property
    def balance(self) -> Decimal:
        return to_amount(self.account.balance or 0)

    def append(self, amount, reason: LedgerReason, metadata: dict | None = None) -> LedgerEntry:
        amount = to_amount(amount)
        if amount == ZERO:
            raise InvalidAmount("Ledger amounts cannot be zero", reason=reason.value)
        entry = LedgerEntry(
            account_id=self.account.account_id,
            amount=amount,
            reason=reason,
            meta=dict(metadata or {}),
            occurred_at=self.now,
            status=LEDGER_STATUS_COMPLETED,
        )
        self.session.add(entry)
        self.account.balance = self.balance + amount
        self.account.updated_at = self.now
        if amount > ZERO:
            self.account.last_earning_at = self.now
        self.entries.append(entry)
        return entry

    def count_entries(self, reason: LedgerReason, start: datetime | None = None, end: datetime | None = None) -> int:
        # autoflush makes entries appended in this unit visible here.
        return _count_entries(self.session, self.account.account_id, reason, start, end)

    def emit(self, event_type: str, message: str, metadata: dict | None = None):
        self.events.append(LedgerEvent(self.account.account_id, event_type, message, dict(metadata or {})))


class LedgerStore:
    def __init__(self, db, clock=utcnow, publisher=None, lock_timeout: float = 5.0, max_retries: int = 1):
        self.db = db
        self.clock = clock
        self.publisher = publisher
        self.lock_timeout = lock_timeout
        self.max_retries = max_retries
        self._locks = AccountLocks()

    @property
    def session(self):
        return self.db.session

    # ---- writes ----

    def run(self, account_id, work, operation: str = "ledger"):
        """Run ``work(txn)`` as one serialized, all-or-nothing unit for ``account_id``."""
        account_id = normalize_account_id(account_id)
        attempt = 0
        with self._locks.hold(account_id, self.lock_timeout):
            while True:
                attempt += 1
                session = self.session
                try:
                    txn = LedgerTransaction(session, self._lock_account(session, account_id), self.clock())
                    result = work(txn)
                    session.commit()
                    break
                except LedgerError:
                    session.rollback()
                    raise
                except SQLAlchemyError as exc:
                    session.rollback()
                    if attempt > self.max_retries:
                        log.error("%s for %s failed after %d attempts: %s", operation, account_id, attempt, exc)
                        raise PersistenceFailure(
                            "The ledger could not be updated, nothing was applied",
                            operation=operation,
                            attempts=attempt,
                        ) from exc
                    log.warning("%s for %s failed (attempt %d), retrying: %s", operation, account_id, attempt, exc)
                except Exception:
                    session.rollback()
                    raise
        self._publish(txn.events)
        return result

    def _lock_account(self, session, account_id: str) -> Account:
        account = (
            session.query(Account)
            .filter(Account.account_id == account_id)
            .with_for_update()
            .populate_existing()
            .one_or_none()
        )
        if account is None:
            now = self.clock()
            account = Account(
                account_id=account_id,
                balance=ZERO,
                login_streak=0,
                longest_streak=0,
                created_at=now,
                updated_at=now,
            )
            session.add(account)
            session.flush()
        return account

    def _publish(self, events):
        if not self.publisher:
            return
        for ev in events:
            self.publisher.publish(ev)

    # ---- reads ----

    def get_account(self, account_id) -> Account | None:
        return self.session.get(Account, normalize_account_id(account_id))

    def ledger_sum(self, account_id) -> Decimal:
        total = (
            self.session.query(func.coalesce(func.sum(LedgerEntry.amount), 0))
            .filter(LedgerEntry.account_id == normalize_account_id(account_id))
            .scalar()
        )
        return to_amount(total or 0)

    def balance(self, account_id) -> BalanceSummary:
        account_id = normalize_account_id(account_id)
        earned, spent = (
            self.session.query(
                func.coalesce(func.sum(case((LedgerEntry.amount > 0, LedgerEntry.amount), else_=0)), 0),
                func.coalesce(func.sum(case((LedgerEntry.amount < 0, -LedgerEntry.amount), else_=0)), 0),
            )
            .filter(LedgerEntry.account_id == account_id)
            .one()
        )
        account = self.session.get(Account, account_id)
        return BalanceSummary(
            account_id=account_id,
            balance=to_amount(account.balance if account else 0),
            total_earned=to_amount(earned or 0),
            total_spent=to_amount(spent or 0),
        )

    def recent_transactions(self, account_id, limit: int = 10) -> list[LedgerEntry]:
        limit = max(1, min(int(limit), 100))
        return (
            LedgerEntry.query.filter_by(account_id=normalize_account_id(account_id))
            .order_by(LedgerEntry.occurred_at.desc(), LedgerEntry.id.desc())
            .limit(limit)
            .all()
        )

    def count_entries(self, account_id, reason: LedgerReason, start=None, end=None) -> int:
        return _count_entries(self.session, normalize_account_id(account_id), reason, start, end)

    def earnings_by_reason(self, account_id, start: datetime | None = None, end: datetime | None = None) -> list[dict]:
        q = (
            self.session.query(
                LedgerEntry.reason,
                func.sum(LedgerEntry.amount),
                func.count(LedgerEntry.id),
                func.max(LedgerEntry.occurred_at),
            )
            .filter(LedgerEntry.account_id == normalize_account_id(account_id), LedgerEntry.amount > 0)
        )
        if start is not None:
            q = q.filter(LedgerEntry.occurred_at >= start)
        if end is not None:
            q = q.filter(LedgerEntry.occurred_at <= end)
        rows = [
            {
                "reason": reason.value,
                "total_amount": to_amount(total or 0),
                "count": int(count or 0),
                "last_earned": last,
            }
            for reason, total, count, last in q.group_by(LedgerEntry.reason).all()
        ]
        rows.sort(key=lambda r: r["total_amount"], reverse=True)
        return rows

    def daily_earnings(self, account_id, days: int = 30) -> list[dict]:
        """Earned / spent / net per UTC day for the last ``days`` days, oldest first."""
        days = max(1, min(int(days), 365))
        today_start, _ = utc_day_bounds(self.clock())
        since = today_start - timedelta(days=days - 1)
        rows = (
            self.session.query(LedgerEntry.occurred_at, LedgerEntry.amount)
            .filter(
                LedgerEntry.account_id == normalize_account_id(account_id),
                LedgerEntry.occurred_at >= since,
            )
            .all()
        )
        buckets: dict[date, dict] = {}
        for occurred_at, amount in rows:
            amount = to_amount(amount)
            b = buckets.setdefault(
                occurred_at.date(),
                {"day": occurred_at.date(), "earned": ZERO, "spent": ZERO, "net": ZERO, "transactions": 0},
            )
            if amount > ZERO:
                b["earned"] += amount
            else:
                b["spent"] += -amount
            b["net"] += amount
            b["transactions"] += 1
        return [buckets[d] for d in sorted(buckets)]

    # ---- reconciliation ----

    def reconcile(self, account_id, repair: bool = False) -> Reconciliation:
        account_id = normalize_account_id(account_id)
        with self._locks.hold(account_id, self.lock_timeout):
            account = self.session.get(Account, account_id, populate_existing=True)
            cached = to_amount(account.balance if account else 0)
            ledger_balance = self.ledger_sum(account_id)
            repaired = False
            if repair and account is not None and cached != ledger_balance:
                log.warning("repairing cached balance for %s: %s -> %s", account_id, cached, ledger_balance)
                account.balance = ledger_balance
                account.updated_at = self.clock()
                try:
                    self.session.commit()
                except SQLAlchemyError as exc:
                    self.session.rollback()
                    raise PersistenceFailure("Balance repair failed", account_id=account_id) from exc
                repaired = True
            return Reconciliation(account_id, cached, ledger_balance, repaired)

    def reconcile_all(self, repair: bool = False) -> list[Reconciliation]:
        """Return the accounts whose cached balance drifted from the ledger."""
        ids = [aid for (aid,) in self.session.query(Account.account_id).order_by(Account.account_id).all()]
        drifted = []
        for account_id in ids:
            result = self.reconcile(account_id, repair=repair)
            if not result.ok:
                drifted.append(result)
        return drifted
