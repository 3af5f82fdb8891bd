from __future__ import annotations

import argparse
import sys

from seller_ledger.config import configure_logging
from seller_ledger.db import SessionLocal
from seller_ledger.services.fee_category_service import load_fee_category_lookup
from seller_ledger.services.reconciliation_service import OrderBalance, load_order_balance


def _render(balance: OrderBalance) -> str:
    lines = [f'Order {balance.amazon_order_id}']
    if balance.order_status is not None:
        lines.append(
            f'  status={balance.order_status} stored total={balance.stored_total} '
            f'effective total={balance.effective_total} {balance.currency or ""}'.rstrip()
        )
    section = None
    for line in balance.lines:
        if line.section != section:
            section = line.section
            lines.append(f'{section.upper()}')
        label = f'[{line.category}] ' if line.category else ''
        lines.append(f'  {line.posted_date.date().isoformat()} {label}{line.description}: {line.amount}  (running {line.running_total})')
    for category, subtotal in balance.fee_subtotals:
        lines.append(f'  fees {category}: {subtotal}')
    lines.append(f'Revenue {balance.total_revenue} + fees {balance.total_fees} + refunds {balance.total_refunds}')
    lines.append(f'Net to seller: {balance.net}')
    return '\n'.join(lines)


def main() -> None:
    parser = argparse.ArgumentParser(description='Rebuild the payout balance of a single order.')
    parser.add_argument('amazon_order_id')
    parser.add_argument('--account-id', default=None)
    args = parser.parse_args()
    configure_logging()

    with SessionLocal() as db:
        try:
            balance = load_order_balance(
                db,
                args.amazon_order_id,
                fee_categories=load_fee_category_lookup(db),
                account_id=args.account_id,
            )
        except LookupError as exc:
            print(str(exc), file=sys.stderr)
            sys.exit(1)

    print(_render(balance))


if __name__ == '__main__':
    main()
