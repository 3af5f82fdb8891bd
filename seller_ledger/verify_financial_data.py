from __future__ import annotations

import argparse
import sys

from seller_ledger.config import configure_logging
from seller_ledger.db import SessionLocal
from seller_ledger.services.fee_category_service import load_fee_category_lookup
from seller_ledger.services.verification_service import run_verification


def main() -> None:
    parser = argparse.ArgumentParser(description='Run consistency checks over stored financial data.')
    parser.add_argument('account_id')
    parser.add_argument('--json', action='store_true', help='Print the report as JSON.')
    args = parser.parse_args()
    configure_logging()

    with SessionLocal() as db:
        report = run_verification(db, args.account_id, fee_categories=load_fee_category_lookup(db))

    print(report.to_json() if args.json else report.render_text())
    if not report.passed:
        sys.exit(1)


if __name__ == '__main__':
    main()
