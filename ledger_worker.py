"""Ledger reconciliation worker.

Run this as a background 'worker' service:
  python ledger_worker.py

Every interval it compares each account's cached balance with the sum of its
ledger entries and logs any drift. With LEDGER_WORKER_REPAIR=1 the cache is
restored from the ledger (the ledger is never touched).

Environment:
- DATABASE_URL
- LEDGER_WORKER_INTERVAL_SECONDS (default 300)
- LEDGER_WORKER_REPAIR (default 0)
"""

import logging
import os
import time

from app import create_app
from services import get_token_ledger

log = logging.getLogger("ledger_worker")

INTERVAL = int(os.getenv("LEDGER_WORKER_INTERVAL_SECONDS", "300"))
REPAIR = os.getenv("LEDGER_WORKER_REPAIR", "0") == "1"


def run_once(app) -> int:
    with app.app_context():
        drifted = get_token_ledger(app).store.reconcile_all(repair=REPAIR)
    for r in drifted:
        log.warning(
            "balance drift on %s: cached=%s ledger=%s repaired=%s",
            r.account_id, r.cached_balance, r.ledger_balance, r.repaired,
        )
    return len(drifted)


def main():
    app = create_app()
    log.info("Ledger worker started (interval=%ss, repair=%s)", INTERVAL, REPAIR)
    while True:
        try:
            run_once(app)
        except Exception:
            log.exception("Worker error")
        time.sleep(INTERVAL)


if __name__ == "__main__":
    main()
