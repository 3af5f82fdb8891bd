from __future__ import annotations

import argparse

from seller_ledger.config import configure_logging
from seller_ledger.db import SessionLocal
from seller_ledger.services.order_repair_service import (
    backfill_source_generation,
    normalize_marketplace_ids,
    repair_net_prices,
    repair_order_totals,
    repair_product_prices,
)

REPAIRS = {
    'net-prices': repair_net_prices,
    'order-totals': repair_order_totals,
    'product-prices': repair_product_prices,
    'marketplaces': normalize_marketplace_ids,
    'source-generation': backfill_source_generation,
}
# Prices must be net before totals and product prices are derived from them.
ALL_ORDER = ('marketplaces', 'net-prices', 'order-totals', 'product-prices', 'source-generation')


def main() -> None:
    parser = argparse.ArgumentParser(description='Repair stale order, product and event data for one account.')
    parser.add_argument('repair', choices=[*REPAIRS, 'all'])
    parser.add_argument('account_id')
    parser.add_argument('--dry-run', action='store_true')
    parser.add_argument('--verbose', action='store_true', help='Print every changed or skipped record.')
    args = parser.parse_args()
    configure_logging()

    names = ALL_ORDER if args.repair == 'all' else (args.repair,)
    with SessionLocal() as db:
        for name in names:
            report = REPAIRS[name](db, args.account_id, dry_run=args.dry_run)
            print(report.summary_line())
            if args.verbose:
                for outcome in report.outcomes:
                    suffix = f' ({outcome.reason})' if outcome.reason else ''
                    print(f'  {outcome.status.value} {outcome.record_id}{suffix} {outcome.detail or ""}'.rstrip())


if __name__ == '__main__':
    main()
