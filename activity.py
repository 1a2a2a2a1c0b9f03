from __future__ import annotations

import json
import logging

from sqlalchemy.exc import SQLAlchemyError

from ledger import LedgerEvent, utcnow
from models_activity import ActivityLog

log = logging.getLogger(__name__)


class ActivityPublisher:
    """Fire-and-forget sink for ledger events (best-effort, never raises).

    Events arrive only after the ledger transaction committed. Each one is
    stored as an activity_logs row and handed to any registered listeners
    (notifications, analytics, ...).
    """

    def __init__(self, db, clock=utcnow):
        self.db = db
        self.clock = clock
        self._listeners = []

    def subscribe(self, listener) -> None:
        self._listeners.append(listener)

    def publish(self, event: LedgerEvent) -> None:
        self._store(event)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                log.exception("activity listener %r failed for %s", listener, event.type)

    def _store(self, event: LedgerEvent) -> None:
        try:
            md_json = json.dumps(event.metadata, separators=(",", ":"), ensure_ascii=False, default=str)
        except (TypeError, ValueError):
            md_json = None
        session = self.db.session
        try:
            session.add(ActivityLog(
                account_id=event.account_id,
                type=(event.type or "event")[:32],
                message=(event.message or "")[:500],
                metadata_json=md_json,
                created_at=self.clock(),
            ))
            session.commit()
        except SQLAlchemyError:
            # Never break ledger flows for the activity stream.
            session.rollback()
            log.exception("activity log write failed for %s (%s)", event.account_id, event.type)

    def recent(self, account_id: str, limit: int = 20) -> list[ActivityLog]:
        return (
            ActivityLog.query.filter_by(account_id=account_id)
            .order_by(ActivityLog.created_at.desc(), ActivityLog.id.desc())
            .limit(max(1, min(int(limit), 100)))
            .all()
        )
