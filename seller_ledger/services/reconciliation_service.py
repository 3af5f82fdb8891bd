from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import asdict, dataclass
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload

from seller_ledger.models import (
    FEE_EVENT_TYPES,
    AdMetric,
    FinancialEvent,
    FinancialEventType,
    Order,
    OrderStatus,
    Product,
)
from seller_ledger.services.fee_category_service import FeeCategoryLookup
from seller_ledger.services.money_utils import ZERO, day_bounds, decimal_or_zero, money, normalize_filter_values, percent_of

STALE_TOTAL_STATUSES = (OrderStatus.PENDING, OrderStatus.UNSHIPPED)


@dataclass(frozen=True)
class FeeCategoryTotal:
    category: str
    event_count: int
    amount: Decimal


@dataclass(frozen=True)
class MarketplaceTotal:
    marketplace_id: str
    revenue: Decimal
    fees: Decimal
    refunds: Decimal
    order_count: int
    net_profit: Decimal
    margin: Decimal


@dataclass(frozen=True)
class ProfitSummary:
    account_id: str
    start_date: date
    end_date: date
    marketplace_ids: tuple[str, ...]
    skus: tuple[str, ...]
    revenue: Decimal
    fees: Decimal
    refunds: Decimal
    vat: Decimal
    cogs: Decimal
    ads: Decimal
    net_profit: Decimal
    margin: Decimal
    units: int
    shipping_costs: Decimal
    promotions: Decimal
    giftwrap: Decimal
    order_count: int
    order_revenue: Decimal
    fee_breakdown: tuple[FeeCategoryTotal, ...]
    marketplace_breakdown: tuple[MarketplaceTotal, ...]

    def as_dict(self) -> dict:
        return _jsonable(asdict(self))


@dataclass(frozen=True)
class BalanceLine:
    section: str
    category: str | None
    description: str
    posted_date: datetime
    amount: Decimal
    running_total: Decimal


@dataclass(frozen=True)
class OrderBalance:
    amazon_order_id: str
    purchase_date: datetime | None
    order_status: str | None
    stored_total: Decimal | None
    effective_total: Decimal | None
    currency: str | None
    lines: tuple[BalanceLine, ...]
    fee_subtotals: tuple[tuple[str, Decimal], ...]
    total_revenue: Decimal
    total_fees: Decimal
    total_refunds: Decimal
    net: Decimal

    def as_dict(self) -> dict:
        return _jsonable(asdict(self))


def _jsonable(value: object) -> object:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, OrderStatus):
        return value.value
    if isinstance(value, dict):
        return {key: _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    return value


def _status(order: object) -> OrderStatus:
    return OrderStatus(getattr(order, 'order_status'))


def net_item_price(item: object, *, is_business_order: bool) -> Decimal:
    price = decimal_or_zero(getattr(item, 'item_price', None))
    if getattr(item, 'price_is_net', True):
        return price
    if is_business_order:
        # Reverse charge: Amazon already reports B2B prices without VAT.
        return price
    tax = decimal_or_zero(getattr(item, 'item_tax', None))
    if tax > 0 and price > tax:
        return price - tax
    return price


def net_shipping_price(item: object, *, is_business_order: bool) -> Decimal:
    price = decimal_or_zero(getattr(item, 'shipping_price', None))
    if getattr(item, 'price_is_net', True) or is_business_order:
        return price
    tax = decimal_or_zero(getattr(item, 'shipping_tax', None))
    if tax > 0 and price > tax:
        return price - tax
    return price


def items_total(order: object) -> Decimal:
    is_business = bool(getattr(order, 'is_business_order', False))
    total = sum(
        (
            net_item_price(item, is_business_order=is_business) * int(item.quantity)
            + net_shipping_price(item, is_business_order=is_business)
            - decimal_or_zero(item.promotion_discount)
            for item in order.items
        ),
        ZERO,
    )
    return money(total)


def effective_order_total(order: object) -> Decimal:
    stored = decimal_or_zero(getattr(order, 'total_amount', None))
    status = _status(order)
    if status == OrderStatus.CANCELED:
        return money(stored)
    if stored == 0 or status in STALE_TOTAL_STATUSES:
        is_business = bool(getattr(order, 'is_business_order', False))
        recomputed = sum(
            (net_item_price(item, is_business_order=is_business) * int(item.quantity) for item in order.items),
            ZERO,
        )
        return money(recomputed)
    return money(stored)


def _is_giftwrap(event: object) -> bool:
    description = (getattr(event, 'description', None) or '').lower()
    fee_type = (getattr(event, 'fee_type', None) or '').lower()
    return 'giftwrap' in description or 'giftwrap' in fee_type


def _event_type(event: object) -> FinancialEventType:
    return FinancialEventType(getattr(event, 'event_type'))


def _marketplace_breakdown(
    events: Sequence[object],
    order_marketplaces: Mapping[str, str | None],
) -> tuple[MarketplaceTotal, ...]:
    buckets: dict[str, dict[str, object]] = {}
    for event in events:
        order_id = getattr(event, 'amazon_order_id', None)
        marketplace_id = (order_marketplaces.get(order_id) if order_id else None) or getattr(event, 'marketplace_id', None)
        if not marketplace_id:
            continue
        bucket = buckets.setdefault(
            marketplace_id,
            {'revenue': ZERO, 'fees': ZERO, 'refunds': ZERO, 'order_count': 0},
        )
        amount = decimal_or_zero(event.amount)
        event_type = _event_type(event)
        if event_type == FinancialEventType.ORDER_REVENUE:
            bucket['revenue'] += amount
            bucket['order_count'] += 1
        elif event_type in FEE_EVENT_TYPES:
            bucket['fees'] += abs(amount)
        elif event_type == FinancialEventType.REFUND:
            bucket['refunds'] += abs(amount)

    rows: list[MarketplaceTotal] = []
    for marketplace_id in sorted(buckets):
        bucket = buckets[marketplace_id]
        revenue = money(bucket['revenue'])
        fees = money(bucket['fees'])
        refunds = money(bucket['refunds'])
        net = revenue - fees - refunds
        rows.append(
            MarketplaceTotal(
                marketplace_id=marketplace_id,
                revenue=revenue,
                fees=fees,
                refunds=refunds,
                order_count=int(bucket['order_count']),
                net_profit=net,
                margin=percent_of(net, revenue),
            )
        )
    return tuple(rows)


def summarize_profit(
    *,
    account_id: str,
    start_date: date,
    end_date: date,
    events: Iterable[object],
    orders: Iterable[object],
    ad_spend: Iterable[Decimal],
    cost_by_sku: Mapping[str, Decimal],
    fee_categories: FeeCategoryLookup,
    order_marketplaces: Mapping[str, str | None] | None = None,
    marketplace_ids: Sequence[str] = (),
    skus: Sequence[str] = (),
) -> ProfitSummary:
    """Fold already-filtered rows into one profit summary.

    Revenue, fees and refunds come from financial events (posted date basis);
    VAT, COGS, units and shipping come from order items (purchase date basis).
    The two bases are not reconciled against each other.
    """
    events = list(events)
    orders = list(orders)
    sku_filter = set(skus)

    revenue = ZERO
    fees = ZERO
    refunds = ZERO
    giftwrap = ZERO
    fee_buckets: dict[str, list] = {}
    for event in events:
        amount = decimal_or_zero(event.amount)
        event_type = _event_type(event)
        if event_type == FinancialEventType.ORDER_REVENUE:
            revenue += amount
        elif event_type in FEE_EVENT_TYPES:
            fees += abs(amount)
            bucket = fee_buckets.setdefault(fee_categories.category_for(event.fee_type), [0, ZERO])
            bucket[0] += 1
            bucket[1] += abs(amount)
        elif event_type == FinancialEventType.REFUND:
            refunds += abs(amount)
        if _is_giftwrap(event):
            giftwrap += abs(amount)

    vat = ZERO
    cogs = ZERO
    units = 0
    shipping_costs = ZERO
    promotions = ZERO
    order_revenue = ZERO
    order_count = 0
    for order in orders:
        items = [item for item in order.items if not sku_filter or item.sku in sku_filter]
        if sku_filter:
            if not items:
                continue
            # Only the filtered SKUs count towards the order value.
            is_business = bool(getattr(order, 'is_business_order', False))
            order_revenue += sum(
                (net_item_price(item, is_business_order=is_business) * int(item.quantity) for item in items),
                ZERO,
            )
        else:
            order_revenue += effective_order_total(order)
        order_count += 1
        for item in items:
            quantity = int(item.quantity)
            units += quantity
            promotions += decimal_or_zero(item.promotion_discount)
            shipping_costs += decimal_or_zero(item.shipping_price)
            vat += decimal_or_zero(item.item_tax) + decimal_or_zero(item.shipping_tax)
            cogs += decimal_or_zero(cost_by_sku.get(item.sku)) * quantity

    ads = sum((decimal_or_zero(spend) for spend in ad_spend), ZERO)

    revenue = money(revenue)
    fees = money(fees)
    refunds = money(refunds)
    vat = money(vat)
    cogs = money(cogs)
    ads = money(ads)
    net_profit = revenue - fees - refunds - cogs - ads - vat

    fee_breakdown = tuple(
        FeeCategoryTotal(category=category, event_count=bucket[0], amount=money(bucket[1]))
        for category, bucket in sorted(fee_buckets.items(), key=lambda item: (-item[1][1], item[0]))
    )

    return ProfitSummary(
        account_id=account_id,
        start_date=start_date,
        end_date=end_date,
        marketplace_ids=tuple(marketplace_ids),
        skus=tuple(skus),
        revenue=revenue,
        fees=fees,
        refunds=refunds,
        vat=vat,
        cogs=cogs,
        ads=ads,
        net_profit=net_profit,
        margin=percent_of(net_profit, revenue),
        units=units,
        shipping_costs=money(shipping_costs),
        promotions=money(promotions),
        giftwrap=money(giftwrap),
        order_count=order_count,
        order_revenue=money(order_revenue),
        fee_breakdown=fee_breakdown,
        marketplace_breakdown=_marketplace_breakdown(events, order_marketplaces or {}),
    )


def _cost_by_sku(db: Session, account_id: str) -> dict[str, Decimal]:
    rows = db.execute(select(Product.sku, Product.cost).where(Product.account_id == account_id)).all()
    return {row.sku: decimal_or_zero(row.cost) for row in rows}


def compute_profit_summary(
    db: Session,
    account_id: str,
    *,
    start_date: date,
    end_date: date,
    fee_categories: FeeCategoryLookup,
    marketplace_ids: Sequence[str] | None = None,
    skus: Sequence[str] | None = None,
) -> ProfitSummary:
    start_at, end_at = day_bounds(start_date, end_date)
    marketplace_filter = normalize_filter_values(marketplace_ids)
    sku_filter = normalize_filter_values(skus)

    event_stmt = (
        select(FinancialEvent, Order.marketplace_id)
        .outerjoin(Order, Order.amazon_order_id == FinancialEvent.amazon_order_id)
        .where(
            FinancialEvent.account_id == account_id,
            FinancialEvent.posted_date >= start_at,
            FinancialEvent.posted_date < end_at,
        )
        .order_by(FinancialEvent.id.asc())
    )
    if marketplace_filter:
        event_stmt = event_stmt.where(
            func.coalesce(Order.marketplace_id, FinancialEvent.marketplace_id).in_(marketplace_filter)
        )
    if sku_filter:
        event_stmt = event_stmt.where(FinancialEvent.sku.in_(sku_filter))
    event_rows = db.execute(event_stmt).all()
    events = [row[0] for row in event_rows]
    order_marketplaces = {row[0].amazon_order_id: row[1] for row in event_rows if row[0].amazon_order_id}

    order_stmt = (
        select(Order)
        .options(selectinload(Order.items))
        .where(
            Order.account_id == account_id,
            Order.purchase_date >= start_at,
            Order.purchase_date < end_at,
        )
        .order_by(Order.id.asc())
    )
    if marketplace_filter:
        order_stmt = order_stmt.where(Order.marketplace_id.in_(marketplace_filter))
    orders = db.execute(order_stmt).scalars().all()

    ad_stmt = select(AdMetric.spend).where(
        AdMetric.account_id == account_id,
        AdMetric.metric_date >= start_date,
        AdMetric.metric_date <= end_date,
    )
    if marketplace_filter:
        ad_stmt = ad_stmt.where(AdMetric.marketplace_id.in_(marketplace_filter))
    if sku_filter:
        ad_stmt = ad_stmt.where(AdMetric.sku.in_(sku_filter))
    ad_spend = db.execute(ad_stmt).scalars().all()

    return summarize_profit(
        account_id=account_id,
        start_date=start_date,
        end_date=end_date,
        events=events,
        orders=orders,
        ad_spend=ad_spend,
        cost_by_sku=_cost_by_sku(db, account_id),
        fee_categories=fee_categories,
        order_marketplaces=order_marketplaces,
        marketplace_ids=marketplace_filter,
        skus=sku_filter,
    )


def build_order_balance(
    amazon_order_id: str,
    events: Iterable[object],
    fee_categories: FeeCategoryLookup,
    *,
    order: object | None = None,
) -> OrderBalance:
    """Rebuild what the seller receives for a single order.

    Amounts are taken as stored (fees and refunds negative), so the final running
    total is the net payout for the order.
    """
    ordered = sorted(events, key=lambda event: (event.posted_date, event.id))
    revenue_events = [e for e in ordered if _event_type(e) == FinancialEventType.ORDER_REVENUE]
    fee_events = [e for e in ordered if _event_type(e) in FEE_EVENT_TYPES]
    refund_events = [e for e in ordered if _event_type(e) == FinancialEventType.REFUND]

    fees_by_category: dict[str, list] = {}
    for event in fee_events:
        category = fee_categories.category_for(event.fee_type)
        fees_by_category.setdefault(category, []).append(event)

    lines: list[BalanceLine] = []
    running = ZERO

    def _append(section: str, category: str | None, event: object) -> None:
        nonlocal running
        amount = decimal_or_zero(event.amount)
        running += amount
        if section == 'fees':
            description = event.description or fee_categories.display_name_for(getattr(event, 'fee_type', None))
        else:
            description = event.description or ('Order revenue' if section == 'revenue' else 'Refund')
        lines.append(
            BalanceLine(
                section=section,
                category=category,
                description=description,
                posted_date=event.posted_date,
                amount=money(amount),
                running_total=money(running),
            )
        )

    for event in revenue_events:
        _append('revenue', None, event)
    fee_subtotals: list[tuple[str, Decimal]] = []
    for category in sorted(fees_by_category):
        subtotal = ZERO
        for event in fees_by_category[category]:
            _append('fees', category, event)
            subtotal += decimal_or_zero(event.amount)
        fee_subtotals.append((category, money(subtotal)))
    for event in refund_events:
        _append('refunds', None, event)

    total_revenue = money(sum((decimal_or_zero(e.amount) for e in revenue_events), ZERO))
    total_fees = money(sum((decimal_or_zero(e.amount) for e in fee_events), ZERO))
    total_refunds = money(sum((decimal_or_zero(e.amount) for e in refund_events), ZERO))

    return OrderBalance(
        amazon_order_id=amazon_order_id,
        purchase_date=getattr(order, 'purchase_date', None),
        order_status=_status(order).value if order is not None else None,
        stored_total=money(decimal_or_zero(order.total_amount)) if order is not None else None,
        effective_total=effective_order_total(order) if order is not None else None,
        currency=getattr(order, 'currency', None),
        lines=tuple(lines),
        fee_subtotals=tuple(fee_subtotals),
        total_revenue=total_revenue,
        total_fees=total_fees,
        total_refunds=total_refunds,
        net=total_revenue + total_fees + total_refunds,
    )


def load_order_balance(
    db: Session,
    amazon_order_id: str,
    *,
    fee_categories: FeeCategoryLookup,
    account_id: str | None = None,
) -> OrderBalance:
    order_stmt = select(Order).options(selectinload(Order.items)).where(Order.amazon_order_id == amazon_order_id)
    event_stmt = select(FinancialEvent).where(FinancialEvent.amazon_order_id == amazon_order_id)
    if account_id:
        order_stmt = order_stmt.where(Order.account_id == account_id)
        event_stmt = event_stmt.where(FinancialEvent.account_id == account_id)

    order = db.execute(order_stmt).scalar_one_or_none()
    events = db.execute(event_stmt).scalars().all()
    if order is None and not events:
        raise LookupError(f'Order {amazon_order_id} not found')
    return build_order_balance(amazon_order_id, events, fee_categories, order=order)
