from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from seller_ledger.config import settings
from seller_ledger.models import FEE_EVENT_TYPES, FinancialEvent, Order
from seller_ledger.services.fee_category_service import FeeCategoryLookup
from seller_ledger.services.money_utils import ZERO, decimal_or_zero, iso_day, money, percent_of
from seller_ledger.services.reconciliation_service import effective_order_total

LOGGER = logging.getLogger(__name__)

DUPLICATE_FEES = 'duplicate_fees'
VAT_SANITY = 'vat_sanity'
FEE_TOTALS = 'fee_totals'
CROSS_REFERENCE = 'cross_reference'


@dataclass(frozen=True)
class CheckResult:
    name: str
    passed: bool
    details: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()
    metrics: dict[str, object] = field(default_factory=dict)


@dataclass(frozen=True)
class VerificationReport:
    account_id: str
    generated_at: datetime
    checks: tuple[CheckResult, ...]
    event_overview: tuple[tuple[str, int, Decimal], ...] = ()

    @property
    def passed(self) -> bool:
        return all(check.passed for check in self.checks)

    def check(self, name: str) -> CheckResult:
        for check in self.checks:
            if check.name == name:
                return check
        raise KeyError(name)

    def to_dict(self) -> dict:
        return {
            'account_id': self.account_id,
            'generated_at': self.generated_at.isoformat(),
            'passed': self.passed,
            'checks': [_jsonable(asdict(check)) for check in self.checks],
            'event_overview': [
                {'event_type': event_type, 'count': count, 'amount': str(amount)}
                for event_type, count, amount in self.event_overview
            ],
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, sort_keys=True)

    def render_text(self) -> str:
        lines = [f'Verification for {self.account_id} at {self.generated_at.isoformat()}']
        for check in self.checks:
            lines.append(f'[{"PASS" if check.passed else "FAIL"}] {check.name}')
            lines.extend(f'    {detail}' for detail in check.details)
            lines.extend(f'    warning: {warning}' for warning in check.warnings)
        if self.event_overview:
            lines.append('Event overview:')
            lines.extend(
                f'    {event_type}: count={count} amount={amount}' for event_type, count, amount in self.event_overview
            )
        lines.append(f'Overall: {"PASS" if self.passed else "FAIL"}')
        return '\n'.join(lines)


def _jsonable(value: object) -> object:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, dict):
        return {key: _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    return value


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def check_duplicate_fees(db: Session, account_id: str) -> CheckResult:
    group_columns = (
        FinancialEvent.amazon_order_id,
        FinancialEvent.sku,
        FinancialEvent.fee_type,
        FinancialEvent.event_type,
    )
    rows = db.execute(
        select(*group_columns, func.count(FinancialEvent.id).label('event_count'))
        .where(
            FinancialEvent.account_id == account_id,
            FinancialEvent.event_type.in_(FEE_EVENT_TYPES),
            FinancialEvent.amazon_order_id.is_not(None),
        )
        .group_by(*group_columns)
        .having(func.count(FinancialEvent.id) > 1)
        .order_by(FinancialEvent.amazon_order_id, FinancialEvent.sku, FinancialEvent.fee_type)
    ).all()

    amounts_by_group: dict[tuple, list[str]] = {}
    if rows:
        duplicate_keys = {tuple(row[: len(group_columns)]) for row in rows}
        amount_rows = db.execute(
            select(*group_columns, FinancialEvent.amount)
            .where(
                FinancialEvent.account_id == account_id,
                FinancialEvent.event_type.in_(FEE_EVENT_TYPES),
                FinancialEvent.amazon_order_id.in_(sorted({key[0] for key in duplicate_keys})),
            )
            .order_by(*group_columns, FinancialEvent.id)
        ).all()
        for amount_row in amount_rows:
            key = tuple(amount_row[: len(group_columns)])
            if key in duplicate_keys:
                amounts_by_group.setdefault(key, []).append(str(money(decimal_or_zero(amount_row.amount))))

    details: list[str] = []
    for row in rows:
        amounts = ', '.join(amounts_by_group.get(tuple(row[: len(group_columns)]), ()))
        details.append(
            f'order={row.amazon_order_id} sku={row.sku or "-"} fee_type={row.fee_type or "-"} '
            f'event_type={row.event_type.value} count={row.event_count} amounts=[{amounts}]'
        )
    return CheckResult(
        name=DUPLICATE_FEES,
        passed=not rows,
        details=tuple(details),
        metrics={'duplicate_groups': len(rows)},
    )


def check_vat_sanity(db: Session, account_id: str, *, as_of: datetime) -> CheckResult:
    since = as_of - timedelta(days=settings.vat_lookback_days)
    orders = (
        db.execute(
            select(Order)
            .options(selectinload(Order.items))
            .where(Order.account_id == account_id, Order.purchase_date >= since, Order.purchase_date <= as_of)
        )
        .scalars()
        .all()
    )

    days: dict[str, list[Decimal]] = {}
    for order in orders:
        bucket = days.setdefault(iso_day(_as_utc(order.purchase_date)), [ZERO, ZERO])
        bucket[0] += effective_order_total(order)
        bucket[1] += sum(
            (decimal_or_zero(item.item_tax) + decimal_or_zero(item.shipping_tax) for item in order.items),
            ZERO,
        )

    details: list[str] = []
    flagged = 0
    for day in sorted(days, reverse=True)[: settings.vat_sample_days]:
        revenue, vat = days[day]
        ratio = percent_of(vat, revenue)
        issue = ratio < 0 or ratio > settings.vat_max_percent
        if issue:
            flagged += 1
        details.append(
            f'{day}: revenue={money(revenue)} vat={money(vat)} ratio={ratio}%' + (' FLAGGED' if issue else '')
        )

    warnings = () if days else (f'no orders in the last {settings.vat_lookback_days} days',)
    return CheckResult(
        name=VAT_SANITY,
        passed=flagged == 0,
        details=tuple(details),
        warnings=warnings,
        metrics={'days_checked': min(len(days), settings.vat_sample_days), 'days_flagged': flagged},
    )


def check_fee_totals(db: Session, account_id: str, *, as_of: datetime, fee_categories: FeeCategoryLookup) -> CheckResult:
    since = as_of - timedelta(days=settings.fee_summary_days)
    rows = db.execute(
        select(FinancialEvent.fee_type, FinancialEvent.amount).where(
            FinancialEvent.account_id == account_id,
            FinancialEvent.event_type.in_(FEE_EVENT_TYPES),
            FinancialEvent.posted_date >= since,
            FinancialEvent.posted_date <= as_of,
        )
    ).all()

    totals: dict[str, Decimal] = {}
    for row in rows:
        category = fee_categories.category_for(row.fee_type)
        totals[category] = totals.get(category, ZERO) + abs(decimal_or_zero(row.amount))
    grand_total = money(sum(totals.values(), ZERO))

    details = tuple(f'{category}: {money(totals[category])}' for category in sorted(totals))
    warnings = () if grand_total else (f'no fees recorded in the last {settings.fee_summary_days} days',)
    return CheckResult(
        name=FEE_TOTALS,
        passed=True,
        details=details + (f'total: {grand_total}',),
        warnings=warnings,
        metrics={'total_fees': grand_total},
    )


def check_cross_reference(db: Session, account_id: str, *, as_of: datetime) -> CheckResult:
    since = as_of - timedelta(days=settings.order_event_lookback_days)

    has_events = (
        select(FinancialEvent.id)
        .where(
            FinancialEvent.account_id == account_id,
            FinancialEvent.amazon_order_id == Order.amazon_order_id,
        )
        .exists()
    )
    orders_without_events = int(
        db.execute(
            select(func.count(Order.id)).where(
                Order.account_id == account_id,
                Order.purchase_date >= since,
                ~has_events,
            )
        ).scalar_one()
    )

    order_exists = select(Order.id).where(Order.amazon_order_id == FinancialEvent.amazon_order_id).exists()
    orphaned_events = int(
        db.execute(
            select(func.count(FinancialEvent.id)).where(
                FinancialEvent.account_id == account_id,
                FinancialEvent.amazon_order_id.is_not(None),
                ~order_exists,
            )
        ).scalar_one()
    )

    duplicated_ids = (
        select(FinancialEvent.financial_event_id)
        .where(FinancialEvent.account_id == account_id, FinancialEvent.financial_event_id.is_not(None))
        .group_by(FinancialEvent.financial_event_id)
        .having(func.count(FinancialEvent.id) > 1)
        .subquery()
    )
    duplicated_event_ids = int(db.execute(select(func.count()).select_from(duplicated_ids)).scalar_one())

    details = (
        f'orders without events (last {settings.order_event_lookback_days} days): {orders_without_events}',
        f'orphaned events: {orphaned_events}',
        f'duplicated financial_event_id values: {duplicated_event_ids}',
    )
    warnings = ()
    if orders_without_events:
        warnings = (f'{orders_without_events} recent orders have no financial events (sync gap or deferred payout)',)
    return CheckResult(
        name=CROSS_REFERENCE,
        passed=orphaned_events == 0 and duplicated_event_ids == 0,
        details=details,
        warnings=warnings,
        metrics={
            'orders_without_events': orders_without_events,
            'orphaned_events': orphaned_events,
            'duplicated_event_ids': duplicated_event_ids,
        },
    )


def event_overview(db: Session, account_id: str) -> tuple[tuple[str, int, Decimal], ...]:
    rows = db.execute(
        select(FinancialEvent.event_type, func.count(FinancialEvent.id), func.sum(FinancialEvent.amount))
        .where(FinancialEvent.account_id == account_id)
        .group_by(FinancialEvent.event_type)
    ).all()
    overview = [(row[0].value, int(row[1]), money(decimal_or_zero(row[2]))) for row in rows]
    return tuple(sorted(overview))


def _run_check(db: Session, name: str, check: Callable[[], CheckResult]) -> CheckResult:
    try:
        return check()
    except SQLAlchemyError as exc:
        LOGGER.exception('Verification check %s failed', name)
        # A failed statement aborts the transaction on PostgreSQL.
        db.rollback()
        return CheckResult(name=name, passed=False, details=(f'check could not run: {exc.__class__.__name__}: {exc}',))


def run_verification(
    db: Session,
    account_id: str,
    *,
    fee_categories: FeeCategoryLookup,
    as_of: datetime | None = None,
) -> VerificationReport:
    """Run every consistency check for one account and collect the results.

    Nothing is written. A check that hits a database error is reported as failed
    instead of aborting the others.
    """
    as_of = as_of or datetime.now(timezone.utc)
    checks = (
        _run_check(db, DUPLICATE_FEES, lambda: check_duplicate_fees(db, account_id)),
        _run_check(db, VAT_SANITY, lambda: check_vat_sanity(db, account_id, as_of=as_of)),
        _run_check(
            db,
            FEE_TOTALS,
            lambda: check_fee_totals(db, account_id, as_of=as_of, fee_categories=fee_categories),
        ),
        _run_check(db, CROSS_REFERENCE, lambda: check_cross_reference(db, account_id, as_of=as_of)),
    )
    try:
        overview = event_overview(db, account_id)
    except SQLAlchemyError:
        LOGGER.exception('Event overview failed for %s', account_id)
        overview = ()
    finally:
        db.rollback()

    report = VerificationReport(account_id=account_id, generated_at=as_of, checks=checks, event_overview=overview)
    LOGGER.info('Verification for %s: %s', account_id, 'PASS' if report.passed else 'FAIL')
    return report
