from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from seller_ledger.config import settings
from seller_ledger.models import FinancialEvent, FinancialEventType, SourceGeneration
from seller_ledger.services.outcomes import BatchReport

LOGGER = logging.getLogger(__name__)

GenerationKey = tuple[str, str, str, str]
LifecycleKey = tuple[str, str | None, str | None, str | None, str]

# Event types whose rows differ between the Legacy and Current API formats.
GENERATION_TRACKED_TYPES = (
    FinancialEventType.ORDER_REVENUE,
    FinancialEventType.FEE,
    FinancialEventType.SERVICE_FEE,
)


class ScanLimitExceeded(RuntimeError):
    pass


class ConfirmationRequired(RuntimeError):
    pass


class DedupApplyError(RuntimeError):
    def __init__(self, message: str, *, report: BatchReport) -> None:
        super().__init__(message)
        self.report = report


class DedupHeuristic(str, Enum):
    CROSS_GENERATION = 'CROSS_GENERATION'
    DEFERRED_RELEASED = 'DEFERRED_RELEASED'


@dataclass(frozen=True)
class EventCandidate:
    id: int
    account_id: str
    amazon_order_id: str | None
    sku: str | None
    fee_type: str | None
    event_type: FinancialEventType
    posted_date: datetime
    amount: Decimal
    financial_event_id: str | None = None
    description: str = ''
    source_generation: SourceGeneration | None = None


@dataclass(frozen=True)
class DuplicateGroup:
    heuristic: DedupHeuristic
    account_id: str
    amazon_order_id: str
    sku: str | None
    fee_type: str | None
    event_type: FinancialEventType
    keep: tuple[EventCandidate, ...]
    remove: tuple[EventCandidate, ...]


@dataclass(frozen=True)
class AmbiguousGroup:
    account_id: str
    amazon_order_id: str | None
    sku: str | None
    fee_type: str | None
    event_type: FinancialEventType
    events: tuple[EventCandidate, ...]
    reason: str


@dataclass(frozen=True)
class DedupPlan:
    total_events: int
    groups: tuple[DuplicateGroup, ...]
    ambiguous: tuple[AmbiguousGroup, ...]

    @property
    def remove_ids(self) -> tuple[int, ...]:
        return tuple(sorted(event.id for group in self.groups for event in group.remove))

    @property
    def keep_count(self) -> int:
        return self.total_events - len(self.remove_ids)

    def partition(self, candidates: Iterable[EventCandidate]) -> tuple[list[EventCandidate], list[EventCandidate]]:
        remove_ids = set(self.remove_ids)
        keep: list[EventCandidate] = []
        remove: list[EventCandidate] = []
        for candidate in sorted(candidates, key=lambda event: event.id):
            (remove if candidate.id in remove_ids else keep).append(candidate)
        return keep, remove


@dataclass(frozen=True)
class DedupRunResult:
    account_id: str
    plan: DedupPlan
    report: BatchReport
    events_before: int
    events_after: int


def _sort_text(value: str | None) -> str:
    return value or ''


def _lifecycle_sort_key(key: LifecycleKey) -> tuple[str, ...]:
    return tuple(_sort_text(part) for part in key)


def _generation_groups(candidates: Sequence[EventCandidate]) -> dict[GenerationKey, list[EventCandidate]]:
    groups: dict[GenerationKey, list[EventCandidate]] = {}
    for event in candidates:
        if not event.amazon_order_id or event.event_type not in GENERATION_TRACKED_TYPES:
            continue
        key = (event.account_id, event.amazon_order_id, event.event_type.value, _sort_text(event.fee_type))
        groups.setdefault(key, []).append(event)
    return groups


def _lifecycle_groups(candidates: Sequence[EventCandidate]) -> dict[LifecycleKey, list[EventCandidate]]:
    groups: dict[LifecycleKey, list[EventCandidate]] = {}
    for event in candidates:
        key = (event.account_id, event.amazon_order_id, event.sku, event.fee_type, event.event_type.value)
        groups.setdefault(key, []).append(event)
    return groups


def plan_deduplication(candidates: Iterable[EventCandidate]) -> DedupPlan:
    """Partition candidate events into keep/remove without touching storage.

    Cross-generation pairs are resolved first (the Current-tagged events win over
    Legacy ones for the same order, event type and fee type). Whatever survives is
    grouped by (account, order, SKU, fee type, event type) and each group keeps
    only its most recently posted event, lowest id on equal timestamps. Groups
    with no order id have no transaction to pair against, and repeated revenue
    or fee rows missing a generation tag cannot be told apart from a
    Legacy/Current pair. Both are reported as ambiguous instead of being resolved.
    """
    ordered = sorted(candidates, key=lambda event: event.id)
    groups: list[DuplicateGroup] = []
    ambiguous: list[AmbiguousGroup] = []
    removed: set[int] = set()
    held: set[int] = set()

    generation_groups = _generation_groups(ordered)
    for key in sorted(generation_groups):
        events = generation_groups[key]
        first = events[0]
        if len(events) > 1 and any(e.source_generation is None for e in events):
            ambiguous.append(
                AmbiguousGroup(
                    account_id=first.account_id,
                    amazon_order_id=first.amazon_order_id,
                    sku=first.sku if all(e.sku == first.sku for e in events) else None,
                    fee_type=first.fee_type,
                    event_type=first.event_type,
                    events=tuple(events),
                    reason='untagged generation',
                )
            )
            held.update(e.id for e in events)
            continue
        current = tuple(e for e in events if e.source_generation == SourceGeneration.CURRENT)
        legacy = tuple(e for e in events if e.source_generation == SourceGeneration.LEGACY)
        if not current or not legacy:
            continue
        groups.append(
            DuplicateGroup(
                heuristic=DedupHeuristic.CROSS_GENERATION,
                account_id=first.account_id,
                amazon_order_id=first.amazon_order_id or '',
                sku=first.sku if all(e.sku == first.sku for e in events) else None,
                fee_type=first.fee_type,
                event_type=first.event_type,
                keep=current,
                remove=legacy,
            )
        )
        removed.update(e.id for e in legacy)

    survivors = [event for event in ordered if event.id not in removed and event.id not in held]
    lifecycle_groups = _lifecycle_groups(survivors)
    for key in sorted(lifecycle_groups, key=_lifecycle_sort_key):
        events = lifecycle_groups[key]
        if len(events) < 2:
            continue
        first = events[0]
        if not first.amazon_order_id:
            ambiguous.append(
                AmbiguousGroup(
                    account_id=first.account_id,
                    amazon_order_id=None,
                    sku=first.sku,
                    fee_type=first.fee_type,
                    event_type=first.event_type,
                    events=tuple(events),
                    reason='no order linkage',
                )
            )
            continue

        latest = max(event.posted_date for event in events)
        keeper = min((event for event in events if event.posted_date == latest), key=lambda event: event.id)
        to_remove = tuple(event for event in events if event.id != keeper.id)
        groups.append(
            DuplicateGroup(
                heuristic=DedupHeuristic.DEFERRED_RELEASED,
                account_id=first.account_id,
                amazon_order_id=first.amazon_order_id,
                sku=first.sku,
                fee_type=first.fee_type,
                event_type=first.event_type,
                keep=(keeper,),
                remove=to_remove,
            )
        )

    return DedupPlan(total_events=len(ordered), groups=tuple(groups), ambiguous=tuple(ambiguous))


def _candidate_from_row(row: FinancialEvent) -> EventCandidate:
    return EventCandidate(
        id=row.id,
        account_id=row.account_id,
        amazon_order_id=row.amazon_order_id or None,
        sku=row.sku or None,
        fee_type=row.fee_type or None,
        event_type=row.event_type,
        posted_date=row.posted_date,
        amount=row.amount,
        financial_event_id=row.financial_event_id,
        description=row.description or '',
        source_generation=row.source_generation,
    )


def load_event_candidates(
    db: Session,
    account_id: str,
    *,
    page_size: int | None = None,
    max_rows: int | None = None,
) -> list[EventCandidate]:
    page_size = page_size or settings.scan_page_size
    max_rows = max_rows or settings.max_scan_rows
    if page_size < 1:
        raise ValueError('Page size must be at least 1')

    candidates: list[EventCandidate] = []
    last_id = 0
    while True:
        rows = (
            db.execute(
                select(FinancialEvent)
                .where(FinancialEvent.account_id == account_id, FinancialEvent.id > last_id)
                .order_by(FinancialEvent.id.asc())
                .limit(page_size)
            )
            .scalars()
            .all()
        )
        if not rows:
            break
        candidates.extend(_candidate_from_row(row) for row in rows)
        if len(candidates) > max_rows:
            raise ScanLimitExceeded(f'Account {account_id} has more than {max_rows} financial events; raise MAX_SCAN_ROWS')
        last_id = rows[-1].id
    return candidates


def count_account_events(db: Session, account_id: str) -> int:
    return int(
        db.execute(select(func.count(FinancialEvent.id)).where(FinancialEvent.account_id == account_id)).scalar_one()
    )


def _chunks(values: Sequence[int], size: int) -> Iterable[Sequence[int]]:
    for start in range(0, len(values), size):
        yield values[start : start + size]


def _report_for_plan(plan: DedupPlan, *, dry_run: bool) -> BatchReport:
    report = BatchReport(operation='dedup-financial-events', dry_run=dry_run)
    for group in plan.ambiguous:
        for event in group.events:
            report.skipped(event.id, 'ambiguous', detail=group.reason)
    return report


def remove_events(
    db: Session,
    account_id: str,
    event_ids: Sequence[int],
    *,
    report: BatchReport,
    batch_size: int | None = None,
) -> BatchReport:
    batch_size = batch_size or settings.dedup_batch_size
    if batch_size < 1:
        raise ValueError('Batch size must be at least 1')

    deleted_total = 0
    for batch_number, batch in enumerate(_chunks(list(event_ids), batch_size), start=1):
        try:
            present = set(
                db.execute(
                    select(FinancialEvent.id).where(
                        FinancialEvent.account_id == account_id,
                        FinancialEvent.id.in_(list(batch)),
                    )
                ).scalars()
            )
            if present:
                result = db.execute(
                    delete(FinancialEvent)
                    .where(FinancialEvent.account_id == account_id, FinancialEvent.id.in_(sorted(present)))
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != len(present):
                    db.rollback()
                    raise DedupApplyError(
                        f'Batch {batch_number} deleted {result.rowcount} of {len(present)} rows; rolled back',
                        report=report,
                    )
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            raise DedupApplyError(f'Batch {batch_number} failed and was rolled back: {exc}', report=report) from exc

        for event_id in batch:
            if event_id in present:
                report.applied(event_id)
            else:
                report.skipped(event_id, 'already removed')
        deleted_total += len(present)
        LOGGER.info('Dedup batch %s committed: deleted=%s total=%s', batch_number, len(present), deleted_total)

    return report


def run_deduplication(
    db: Session,
    account_id: str,
    *,
    dry_run: bool = True,
    confirm: bool = False,
    batch_size: int | None = None,
) -> DedupRunResult:
    if not dry_run and not confirm:
        raise ConfirmationRequired('Live deduplication deletes rows; pass confirm=True (--yes) to proceed')

    events_before = count_account_events(db, account_id)
    candidates = load_event_candidates(db, account_id)
    plan = plan_deduplication(candidates)
    LOGGER.info(
        'Dedup plan for %s: events=%s groups=%s remove=%s ambiguous=%s',
        account_id,
        plan.total_events,
        len(plan.groups),
        len(plan.remove_ids),
        len(plan.ambiguous),
    )

    report = _report_for_plan(plan, dry_run=dry_run)
    if dry_run:
        for event_id in plan.remove_ids:
            report.applied(event_id)
        # End the read transaction so dry-runs hold no locks.
        db.rollback()
        return DedupRunResult(
            account_id=account_id,
            plan=plan,
            report=report,
            events_before=events_before,
            events_after=events_before,
        )

    remove_events(db, account_id, plan.remove_ids, report=report, batch_size=batch_size)
    events_after = count_account_events(db, account_id)
    return DedupRunResult(
        account_id=account_id,
        plan=plan,
        report=report,
        events_before=events_before,
        events_after=events_after,
    )
