from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from pathlib import Path

from sqlalchemy import select
from sqlalchemy.orm import Session

from seller_ledger.models import FinancialEvent, FinancialEventType, SourceGeneration
from seller_ledger.services.outcomes import BatchReport

LOGGER = logging.getLogger(__name__)

BACKUP_FORMAT_VERSION = 1
EVENT_FIELDS = (
    'id',
    'account_id',
    'marketplace_id',
    'event_type',
    'posted_date',
    'amazon_order_id',
    'financial_event_id',
    'sku',
    'description',
    'amount',
    'currency',
    'fee_type',
    'fee_category',
    'source_generation',
)


class BackupError(RuntimeError):
    pass


def _serialize_event(event: FinancialEvent) -> dict[str, object]:
    row: dict[str, object] = {}
    for name in EVENT_FIELDS:
        value = getattr(event, name)
        if isinstance(value, Decimal):
            value = str(value)
        elif isinstance(value, datetime):
            value = value.isoformat()
        elif isinstance(value, (FinancialEventType, SourceGeneration)):
            value = value.value
        row[name] = value
    return row


def _deserialize_event(row: dict[str, object]) -> FinancialEvent:
    try:
        generation = row.get('source_generation')
        return FinancialEvent(
            id=int(row['id']),
            account_id=str(row['account_id']),
            marketplace_id=row.get('marketplace_id'),
            event_type=FinancialEventType(row['event_type']),
            posted_date=datetime.fromisoformat(str(row['posted_date'])),
            amazon_order_id=row.get('amazon_order_id'),
            financial_event_id=row.get('financial_event_id'),
            sku=row.get('sku'),
            description=row.get('description') or '',
            amount=Decimal(str(row['amount'])),
            currency=row.get('currency') or 'EUR',
            fee_type=row.get('fee_type'),
            fee_category=row.get('fee_category'),
            source_generation=SourceGeneration(generation) if generation else None,
        )
    except (KeyError, TypeError, ValueError, InvalidOperation) as exc:
        raise BackupError(f'Malformed backup row {row.get("id")!r}: {exc}') from exc


def backup_path(backup_dir: Path, account_id: str, now: datetime | None = None) -> Path:
    stamp = (now or datetime.now(timezone.utc)).strftime('%Y%m%dT%H%M%SZ')
    return backup_dir / f'financial_events_{account_id}_{stamp}.json'


def backup_financial_events(db: Session, account_id: str, path: Path) -> int:
    events = (
        db.execute(
            select(FinancialEvent).where(FinancialEvent.account_id == account_id).order_by(FinancialEvent.id.asc())
        )
        .scalars()
        .all()
    )
    payload = {
        'version': BACKUP_FORMAT_VERSION,
        'account_id': account_id,
        'exported_at': datetime.now(timezone.utc).isoformat(),
        'events': [_serialize_event(event) for event in events],
    }
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(payload, indent=2), encoding='utf-8')
    except OSError as exc:
        raise BackupError(f'Could not write backup to {path}: {exc}') from exc
    LOGGER.info('Backed up %s financial events for %s to %s', len(events), account_id, path)
    return len(events)


def load_backup(path: Path) -> dict:
    try:
        payload = json.loads(path.read_text(encoding='utf-8'))
    except (OSError, json.JSONDecodeError) as exc:
        raise BackupError(f'Could not read backup {path}: {exc}') from exc
    if payload.get('version') != BACKUP_FORMAT_VERSION or not isinstance(payload.get('events'), list):
        raise BackupError(f'{path} is not a financial event backup')
    return payload


def restore_financial_events(db: Session, path: Path, *, dry_run: bool = True) -> BatchReport:
    payload = load_backup(path)
    account_id = payload['account_id']
    report = BatchReport(operation='restore-financial-events', dry_run=dry_run)

    events = [_deserialize_event(row) for row in payload['events']]
    existing_ids = set(
        db.execute(select(FinancialEvent.id).where(FinancialEvent.account_id == account_id)).scalars()
    )
    for event in events:
        if event.account_id != account_id:
            raise BackupError(f'Event {event.id} belongs to {event.account_id}, backup is for {account_id}')
        if event.id in existing_ids:
            report.skipped(event.id, 'already present')
            continue
        if not dry_run:
            db.add(event)
        report.applied(event.id)

    if dry_run:
        db.rollback()
    else:
        db.commit()
    LOGGER.info(report.summary_line())
    return report
