from __future__ import annotations

import argparse
import sys

from seller_ledger.config import configure_logging
from seller_ledger.db import SessionLocal
from seller_ledger.services.dedup_service import (
    ConfirmationRequired,
    DedupApplyError,
    DedupRunResult,
    ScanLimitExceeded,
    run_deduplication,
)


def _print_result(result: DedupRunResult, *, verbose: bool) -> None:
    plan = result.plan
    mode = 'DRY RUN' if result.report.dry_run else 'LIVE'
    print(f'[{mode}] account={result.account_id} events={plan.total_events} groups={len(plan.groups)}')
    if verbose:
        for group in plan.groups:
            keep = ','.join(str(event.id) for event in group.keep)
            remove = ','.join(str(event.id) for event in group.remove)
            print(
                f'  {group.heuristic.value} order={group.amazon_order_id} sku={group.sku or "-"} '
                f'fee_type={group.fee_type or "-"} type={group.event_type.value} keep=[{keep}] remove=[{remove}]'
            )
        for group in plan.ambiguous:
            ids = ','.join(str(event.id) for event in group.events)
            print(f'  AMBIGUOUS ({group.reason}) sku={group.sku or "-"} fee_type={group.fee_type or "-"} events=[{ids}]')
    print(result.report.summary_line())
    for reason, count in result.report.skip_reasons().items():
        print(f'  skipped {reason}: {count}')
    print(f'Events before={result.events_before}, after={result.events_after}')


def main() -> None:
    parser = argparse.ArgumentParser(description='Find and remove duplicate financial events for one account.')
    parser.add_argument('account_id')
    parser.add_argument('--dry-run', action='store_true', help='Report what would be removed without deleting.')
    parser.add_argument('--yes', action='store_true', help='Confirm a live run that deletes rows.')
    parser.add_argument('--batch-size', type=int, default=None)
    parser.add_argument('--verbose', action='store_true', help='Print every duplicate group.')
    args = parser.parse_args()
    configure_logging()

    with SessionLocal() as db:
        try:
            result = run_deduplication(
                db,
                args.account_id,
                dry_run=args.dry_run,
                confirm=args.yes,
                batch_size=args.batch_size,
            )
        except ConfirmationRequired as exc:
            print(f'Refusing to delete: {exc}', file=sys.stderr)
            sys.exit(2)
        except ScanLimitExceeded as exc:
            print(f'Aborted: {exc}', file=sys.stderr)
            sys.exit(1)
        except DedupApplyError as exc:
            print(f'Aborted: {exc}', file=sys.stderr)
            print(exc.report.summary_line(), file=sys.stderr)
            sys.exit(1)

    _print_result(result, verbose=args.verbose)


if __name__ == '__main__':
    main()
