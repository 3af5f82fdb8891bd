from __future__ import annotations

import logging

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session, selectinload

from seller_ledger.config import settings
from seller_ledger.models import AdMetric, FinancialEvent, Order, OrderItem, Product
from seller_ledger.services.event_store_service import infer_source_generation
from seller_ledger.services.money_utils import decimal_or_zero, money
from seller_ledger.services.outcomes import BatchReport
from seller_ledger.services.reconciliation_service import items_total, net_item_price, net_shipping_price

LOGGER = logging.getLogger(__name__)

LEGACY_MARKETPLACE_IDS: dict[str, str] = {
    'amazon.it': 'APJ6JRA9NG5V4',
    'amazon.de': 'A1PA6795UKMFR9',
    'amazon.fr': 'A13V1IB3VIYZZH',
    'amazon.es': 'A1RKKUPIHCS9HS',
    'amazon.co.uk': 'A1F83G8C2ARO7P',
    'amazon.nl': 'A1805IZSGTT6HS',
    # Belgium orders were booked on the NL marketplace.
    'amazon.com.be': 'A1805IZSGTT6HS',
    'amazon.pl': 'A1C3SOZRARQ6R3',
    'amazon.se': 'A2NODRKZP88ZB9',
    'amazon.com': 'ATVPDKIKX0DER',
}

MARKETPLACE_TABLES = (Order, FinancialEvent, Product, AdMetric)


def official_marketplace_id(marketplace_id: str | None) -> str | None:
    if not marketplace_id:
        return marketplace_id
    return LEGACY_MARKETPLACE_IDS.get(marketplace_id.strip().lower(), marketplace_id)


def _finish(db: Session, report: BatchReport) -> BatchReport:
    if report.dry_run:
        db.rollback()
    else:
        db.commit()
    LOGGER.info(report.summary_line())
    return report


def _account_orders(db: Session, account_id: str) -> list[Order]:
    return (
        db.execute(
            select(Order)
            .options(selectinload(Order.items))
            .where(Order.account_id == account_id)
            .order_by(Order.purchase_date.desc(), Order.id.desc())
        )
        .scalars()
        .all()
    )


def repair_net_prices(db: Session, account_id: str, *, dry_run: bool = True) -> BatchReport:
    """Rewrite gross item prices as net prices.

    B2C items lose their item and shipping tax (only where the tax is positive and
    smaller than the price, so half-repaired rows are left alone). B2B items are
    already net and are only marked as such.
    """
    report = BatchReport(operation='repair-net-prices', dry_run=dry_run)
    for order in _account_orders(db, account_id):
        for item in order.items:
            if item.price_is_net:
                continue
            new_price = net_item_price(item, is_business_order=order.is_business_order)
            new_shipping = net_shipping_price(item, is_business_order=order.is_business_order)
            detail = (
                f'order={order.amazon_order_id} sku={item.sku} '
                f'price {money(decimal_or_zero(item.item_price))} -> {money(new_price)} '
                f'shipping {money(decimal_or_zero(item.shipping_price))} -> {money(new_shipping)}'
            )
            item.item_price = new_price
            item.shipping_price = new_shipping
            item.price_is_net = True
            report.applied(item.id, detail=detail)
    return _finish(db, report)


def repair_order_totals(db: Session, account_id: str, *, dry_run: bool = True) -> BatchReport:
    report = BatchReport(operation='repair-order-totals', dry_run=dry_run)
    tolerance = settings.total_tolerance
    for order in _account_orders(db, account_id):
        if not order.items:
            report.skipped(order.amazon_order_id, 'no items')
            continue
        if any(not item.price_is_net for item in order.items):
            report.skipped(order.amazon_order_id, 'gross prices pending repair')
            continue
        stored = money(decimal_or_zero(order.total_amount))
        recomputed = items_total(order)
        if abs(recomputed - stored) <= tolerance:
            continue
        if recomputed <= 0:
            report.skipped(order.amazon_order_id, 'non-positive item total', detail=f'recomputed={recomputed}')
            continue
        order.total_amount = recomputed
        report.applied(order.amazon_order_id, detail=f'{stored} -> {recomputed}')
    return _finish(db, report)


def repair_product_prices(db: Session, account_id: str, *, dry_run: bool = True) -> BatchReport:
    report = BatchReport(operation='repair-product-prices', dry_run=dry_run)
    tolerance = settings.total_tolerance
    products = db.execute(select(Product).where(Product.account_id == account_id).order_by(Product.id)).scalars().all()
    for product in products:
        latest = db.execute(
            select(OrderItem.item_price)
            .join(Order, Order.id == OrderItem.order_id)
            .where(
                OrderItem.product_id == product.id,
                OrderItem.item_price > 0,
                OrderItem.price_is_net.is_(True),
            )
            .order_by(Order.purchase_date.desc(), OrderItem.id.desc())
            .limit(1)
        ).scalar_one_or_none()
        if latest is None:
            report.skipped(product.sku, 'no priced order items')
            continue
        current = money(decimal_or_zero(product.price))
        latest = money(decimal_or_zero(latest))
        if abs(current - latest) <= tolerance:
            continue
        product.price = latest
        report.applied(product.sku, detail=f'{current} -> {latest}')
    return _finish(db, report)


def normalize_marketplace_ids(db: Session, account_id: str, *, dry_run: bool = True) -> BatchReport:
    report = BatchReport(operation='normalize-marketplace-ids', dry_run=dry_run)
    for model in MARKETPLACE_TABLES:
        rows = db.execute(
            select(model.marketplace_id, func.count(model.id))
            .where(model.account_id == account_id, model.marketplace_id.is_not(None))
            .group_by(model.marketplace_id)
            .order_by(model.marketplace_id)
        ).all()
        for legacy, count in rows:
            official = official_marketplace_id(legacy)
            if official == legacy:
                continue
            if not dry_run:
                db.execute(
                    update(model)
                    .where(model.account_id == account_id, model.marketplace_id == legacy)
                    .values(marketplace_id=official)
                    .execution_options(synchronize_session=False)
                )
            report.applied(f'{model.__tablename__}:{legacy}', detail=f'-> {official} ({count} rows)')
    return _finish(db, report)


def backfill_source_generation(db: Session, account_id: str, *, dry_run: bool = True) -> BatchReport:
    report = BatchReport(operation='backfill-source-generation', dry_run=dry_run)
    last_id = 0
    while True:
        events = (
            db.execute(
                select(FinancialEvent)
                .where(
                    FinancialEvent.account_id == account_id,
                    FinancialEvent.source_generation.is_(None),
                    FinancialEvent.id > last_id,
                )
                .order_by(FinancialEvent.id.asc())
                .limit(settings.scan_page_size)
            )
            .scalars()
            .all()
        )
        if not events:
            break
        for event in events:
            generation = infer_source_generation(
                event_type=event.event_type,
                description=event.description,
                financial_event_id=event.financial_event_id,
                fee_type=event.fee_type,
            )
            if generation is None:
                report.skipped(event.id, 'undetermined', detail=event.event_type.value)
                continue
            if not dry_run:
                event.source_generation = generation
            report.applied(event.id, detail=generation.value)
        last_id = events[-1].id
        if not dry_run:
            db.flush()
    return _finish(db, report)
