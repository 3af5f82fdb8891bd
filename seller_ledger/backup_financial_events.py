from __future__ import annotations

import argparse
import sys
from pathlib import Path

from seller_ledger.config import configure_logging, settings
from seller_ledger.db import SessionLocal
from seller_ledger.services.event_backup_service import (
    BackupError,
    backup_financial_events,
    backup_path,
    restore_financial_events,
)


def main() -> None:
    parser = argparse.ArgumentParser(description='Back up or restore the financial events of one account.')
    subparsers = parser.add_subparsers(dest='command', required=True)

    backup = subparsers.add_parser('backup')
    backup.add_argument('account_id')
    backup.add_argument('--output', type=Path, default=None)

    restore = subparsers.add_parser('restore')
    restore.add_argument('path', type=Path)
    restore.add_argument('--dry-run', action='store_true')

    args = parser.parse_args()
    configure_logging()

    with SessionLocal() as db:
        try:
            if args.command == 'backup':
                path = args.output or backup_path(settings.backup_dir, args.account_id)
                count = backup_financial_events(db, args.account_id, path)
                print(f'Backup complete: events={count}, path={path}')
            else:
                report = restore_financial_events(db, args.path, dry_run=args.dry_run)
                print(report.summary_line())
        except BackupError as exc:
            print(f'Backup failed: {exc}', file=sys.stderr)
            sys.exit(1)


if __name__ == '__main__':
    main()
