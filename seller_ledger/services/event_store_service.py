from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from seller_ledger.models import (
    FinancialEvent,
    FinancialEventType,
    Order,
    OrderItem,
    OrderStatus,
    Product,
    SourceGeneration,
)
from seller_ledger.services.fee_category_service import FeeCategoryLookup
from seller_ledger.services.money_utils import CENT, ZERO
from seller_ledger.services.outcomes import BatchReport

LOGGER = logging.getLogger(__name__)

CURRENT_REVENUE_PREFIX = 'Revenue - '
POSTED_DATE_TOLERANCE = timedelta(seconds=1)


@dataclass(frozen=True)
class FinancialEventInput:
    account_id: str
    event_type: FinancialEventType
    posted_date: datetime
    amount: Decimal
    currency: str = 'EUR'
    marketplace_id: str | None = None
    amazon_order_id: str | None = None
    financial_event_id: str | None = None
    sku: str | None = None
    description: str = ''
    fee_type: str | None = None
    source_generation: SourceGeneration | None = None


@dataclass(frozen=True)
class OrderItemInput:
    sku: str
    quantity: int
    item_price: Decimal
    item_tax: Decimal = ZERO
    shipping_price: Decimal = ZERO
    shipping_tax: Decimal = ZERO
    promotion_discount: Decimal = ZERO
    price_is_net: bool = True
    asin: str | None = None
    title: str | None = None


@dataclass(frozen=True)
class OrderInput:
    account_id: str
    amazon_order_id: str
    purchase_date: datetime
    order_status: OrderStatus
    total_amount: Decimal
    marketplace_id: str | None = None
    currency: str = 'EUR'
    is_business_order: bool = False
    items: list[OrderItemInput] = field(default_factory=list)


def infer_source_generation(
    *,
    event_type: FinancialEventType,
    description: str | None,
    financial_event_id: str | None,
    fee_type: str | None,
) -> SourceGeneration | None:
    """Guess which Amazon API generation produced an untagged event.

    Only formatting conventions are available: current-format revenue rows are
    described as ``"Revenue - ..."`` and current-format fee rows carry an external
    id ending in ``-<feeType>``. These conventions can collide by accident, so the
    result is only used to backfill ``source_generation`` on old rows; ingestion
    tags new rows explicitly.
    """
    if event_type == FinancialEventType.ORDER_REVENUE:
        if description and description.startswith(CURRENT_REVENUE_PREFIX):
            return SourceGeneration.CURRENT
        return SourceGeneration.LEGACY
    if event_type in (FinancialEventType.FEE, FinancialEventType.SERVICE_FEE):
        if not fee_type:
            return None
        if financial_event_id and financial_event_id.endswith(f'-{fee_type}'):
            return SourceGeneration.CURRENT
        return SourceGeneration.LEGACY
    return None


def _validate_event(data: FinancialEventInput) -> None:
    if not data.account_id:
        raise ValueError('Financial event requires an account id')
    if data.posted_date is None:
        raise ValueError('Financial event requires a posted date')
    if not isinstance(data.amount, Decimal):
        raise ValueError(f'Financial event amount must be a Decimal, got {type(data.amount).__name__}')


def find_existing_event(db: Session, data: FinancialEventInput) -> FinancialEvent | None:
    if data.financial_event_id:
        existing = db.execute(
            select(FinancialEvent).where(
                FinancialEvent.account_id == data.account_id,
                FinancialEvent.financial_event_id == data.financial_event_id,
            )
        ).scalars().first()
        if existing:
            return existing

    # Composite fallback with slack for timestamp and rounding differences between API versions.
    stmt = select(FinancialEvent).where(
        FinancialEvent.account_id == data.account_id,
        FinancialEvent.event_type == data.event_type,
        FinancialEvent.posted_date >= data.posted_date - POSTED_DATE_TOLERANCE,
        FinancialEvent.posted_date <= data.posted_date + POSTED_DATE_TOLERANCE,
        FinancialEvent.amount >= data.amount - CENT,
        FinancialEvent.amount <= data.amount + CENT,
    )
    for column, value in (
        (FinancialEvent.amazon_order_id, data.amazon_order_id),
        (FinancialEvent.sku, data.sku),
        (FinancialEvent.fee_type, data.fee_type),
    ):
        stmt = stmt.where(column.is_(None) if value is None else column == value)
    return db.execute(stmt).scalars().first()


def record_financial_event(
    db: Session,
    data: FinancialEventInput,
    *,
    report: BatchReport,
    fee_categories: FeeCategoryLookup | None = None,
) -> FinancialEvent | None:
    _validate_event(data)
    record_key = data.financial_event_id or f'{data.event_type.value}:{data.amazon_order_id or "-"}:{data.sku or "-"}'

    existing = find_existing_event(db, data)
    if existing is not None:
        reason = 'duplicate financial_event_id' if (
            data.financial_event_id and existing.financial_event_id == data.financial_event_id
        ) else 'duplicate composite key'
        report.skipped(record_key, reason)
        LOGGER.debug('Skipped %s: %s', record_key, reason)
        return None

    generation = data.source_generation or infer_source_generation(
        event_type=data.event_type,
        description=data.description,
        financial_event_id=data.financial_event_id,
        fee_type=data.fee_type,
    )
    event = FinancialEvent(
        account_id=data.account_id,
        marketplace_id=data.marketplace_id,
        event_type=data.event_type,
        posted_date=data.posted_date,
        amazon_order_id=data.amazon_order_id,
        financial_event_id=data.financial_event_id,
        sku=data.sku,
        description=data.description,
        amount=data.amount,
        currency=data.currency,
        fee_type=data.fee_type,
        fee_category=fee_categories.category_for(data.fee_type) if fee_categories and data.fee_type else None,
        source_generation=generation,
    )
    db.add(event)
    db.flush()
    report.applied(record_key)
    return event


def _product_for_sku(db: Session, account_id: str, item: OrderItemInput, marketplace_id: str | None) -> Product:
    product = db.execute(
        select(Product).where(Product.account_id == account_id, Product.sku == item.sku)
    ).scalar_one_or_none()
    if product is None:
        product = Product(
            account_id=account_id,
            sku=item.sku,
            asin=item.asin,
            title=item.title,
            marketplace_id=marketplace_id,
            price=item.item_price if item.price_is_net else ZERO,
            cost=ZERO,
        )
        db.add(product)
        db.flush()
    return product


def upsert_order(db: Session, data: OrderInput) -> tuple[Order, bool]:
    if not data.amazon_order_id:
        raise ValueError('Order requires an Amazon order id')

    order = db.execute(select(Order).where(Order.amazon_order_id == data.amazon_order_id)).scalar_one_or_none()
    created = order is None
    if order is None:
        order = Order(
            account_id=data.account_id,
            amazon_order_id=data.amazon_order_id,
            purchase_date=data.purchase_date,
            marketplace_id=data.marketplace_id,
            currency=data.currency,
        )
        db.add(order)
    elif order.account_id != data.account_id:
        raise ValueError(f'Order {data.amazon_order_id} belongs to another account')

    order.order_status = data.order_status
    order.total_amount = data.total_amount
    order.is_business_order = data.is_business_order
    if data.marketplace_id:
        order.marketplace_id = data.marketplace_id

    if data.items:
        order.items.clear()
        for item in data.items:
            product = _product_for_sku(db, data.account_id, item, data.marketplace_id)
            order.items.append(
                OrderItem(
                    product_id=product.id,
                    sku=item.sku,
                    quantity=item.quantity,
                    item_price=item.item_price,
                    item_tax=item.item_tax,
                    shipping_price=item.shipping_price,
                    shipping_tax=item.shipping_tax,
                    promotion_discount=item.promotion_discount,
                    price_is_net=item.price_is_net,
                )
            )
        order.number_of_items = sum(item.quantity for item in data.items)

    db.flush()
    return order, created
