from __future__ import annotations

import argparse
import json
from datetime import date

from seller_ledger.config import configure_logging
from seller_ledger.db import SessionLocal
from seller_ledger.services.fee_category_service import load_fee_category_lookup
from seller_ledger.services.reconciliation_service import ProfitSummary, compute_profit_summary


def _csv(value: str) -> list[str]:
    return [part.strip() for part in value.split(',') if part.strip()]


def _render(summary: ProfitSummary) -> str:
    lines = [
        f'Profit for {summary.account_id} {summary.start_date.isoformat()}..{summary.end_date.isoformat()}',
        f'  revenue      {summary.revenue}',
        f'  fees         {summary.fees}',
        f'  refunds      {summary.refunds}',
        f'  vat          {summary.vat}',
        f'  cogs         {summary.cogs}',
        f'  ads          {summary.ads}',
        f'  net profit   {summary.net_profit}',
        f'  margin       {summary.margin}%',
        f'  orders={summary.order_count} units={summary.units} order revenue={summary.order_revenue}',
    ]
    if summary.fee_breakdown:
        lines.append('Fees by category:')
        lines.extend(f'  {row.category}: {row.amount} ({row.event_count} events)' for row in summary.fee_breakdown)
    if summary.marketplace_breakdown:
        lines.append('By marketplace:')
        lines.extend(
            f'  {row.marketplace_id}: revenue={row.revenue} fees={row.fees} refunds={row.refunds} '
            f'net={row.net_profit} margin={row.margin}%'
            for row in summary.marketplace_breakdown
        )
    return '\n'.join(lines)


def main() -> None:
    parser = argparse.ArgumentParser(description='Print the profit summary for an account and date range.')
    parser.add_argument('account_id')
    parser.add_argument('--from', dest='start_date', type=date.fromisoformat, required=True)
    parser.add_argument('--to', dest='end_date', type=date.fromisoformat, required=True)
    parser.add_argument('--marketplaces', type=_csv, default=[])
    parser.add_argument('--skus', type=_csv, default=[])
    parser.add_argument('--json', action='store_true')
    args = parser.parse_args()
    configure_logging()

    with SessionLocal() as db:
        try:
            summary = compute_profit_summary(
                db,
                args.account_id,
                start_date=args.start_date,
                end_date=args.end_date,
                fee_categories=load_fee_category_lookup(db),
                marketplace_ids=args.marketplaces,
                skus=args.skus,
            )
        except ValueError as exc:
            parser.error(str(exc))

    print(json.dumps(summary.as_dict(), indent=2, sort_keys=True) if args.json else _render(summary))


if __name__ == '__main__':
    main()
