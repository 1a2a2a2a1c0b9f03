#!/usr/bin/env python3
"""One-shot ledger reconciliation (cached balances vs. ledger sums).

Intended to be run from a scheduler or by hand after an incident, from the
repository root:
  PYTHONPATH=. python scripts/reconcile_ledger.py [--repair]
"""

import sys

from app import create_app
from services import get_token_ledger


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    repair = "--repair" in argv
    app = create_app()
    with app.app_context():
        drifted = get_token_ledger(app).store.reconcile_all(repair=repair)

    print({
        "ok": not drifted or repair,
        "repair": repair,
        "drifted": [r.to_dict() for r in drifted],
    })
    return 0 if (not drifted or repair) else 1


if __name__ == "__main__":
    sys.exit(main())
