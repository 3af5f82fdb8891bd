from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import (
    BigInteger,
    Boolean,
    Date,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

# SQLite only autoincrements plain INTEGER primary keys.
PrimaryKey = BigInteger().with_variant(Integer(), 'sqlite')


class Base(DeclarativeBase):
    pass


class OrderStatus(str, Enum):
    PENDING = 'Pending'
    UNSHIPPED = 'Unshipped'
    PARTIALLY_SHIPPED = 'PartiallyShipped'
    SHIPPED = 'Shipped'
    CANCELED = 'Canceled'
    UNFULFILLABLE = 'Unfulfillable'
    INVOICE_UNCONFIRMED = 'InvoiceUnconfirmed'
    PENDING_AVAILABILITY = 'PendingAvailability'


class FinancialEventType(str, Enum):
    ORDER_REVENUE = 'OrderRevenue'
    FEE = 'Fee'
    SERVICE_FEE = 'ServiceFee'
    REFUND = 'Refund'
    DEFERRED_TRANSACTION = 'DeferredTransaction'
    ADJUSTMENT = 'Adjustment'


class SourceGeneration(str, Enum):
    LEGACY = 'Legacy'
    CURRENT = 'Current'


class FeeCategory(str, Enum):
    REFERRAL = 'referral'
    FBA_FULFILLMENT = 'fba_fulfillment'
    STORAGE = 'storage'
    REMOVAL = 'removal'
    SHIPPING = 'shipping'
    SERVICE = 'service'
    ADVERTISING = 'advertising'
    OTHER = 'other'


FEE_EVENT_TYPES = (FinancialEventType.FEE, FinancialEventType.SERVICE_FEE)


class Product(Base):
    __tablename__ = 'products'
    __table_args__ = (UniqueConstraint('account_id', 'sku', name='products_account_sku_uq'),)

    id: Mapped[int] = mapped_column(PrimaryKey, primary_key=True)
    account_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    sku: Mapped[str] = mapped_column(Text, nullable=False)
    asin: Mapped[str | None] = mapped_column(Text)
    title: Mapped[str | None] = mapped_column(Text)
    marketplace_id: Mapped[str | None] = mapped_column(Text)
    price: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal('0.00'), server_default='0')
    cost: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal('0.00'), server_default='0')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Order(Base):
    __tablename__ = 'orders'

    id: Mapped[int] = mapped_column(PrimaryKey, primary_key=True)
    account_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    amazon_order_id: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    purchase_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    marketplace_id: Mapped[str | None] = mapped_column(Text)
    currency: Mapped[str] = mapped_column(Text, nullable=False, default='EUR', server_default='EUR')
    order_status: Mapped[OrderStatus] = mapped_column(
        SQLEnum(OrderStatus, name='order_status', values_callable=lambda enum: [item.value for item in enum]),
        nullable=False,
        default=OrderStatus.PENDING,
    )
    total_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal('0.00'), server_default='0')
    is_business_order: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default='false')
    number_of_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

    items: Mapped[list[OrderItem]] = relationship(
        back_populates='order',
        cascade='all, delete-orphan',
        order_by='OrderItem.id',
    )


class OrderItem(Base):
    __tablename__ = 'order_items'

    id: Mapped[int] = mapped_column(PrimaryKey, primary_key=True)
    order_id: Mapped[int] = mapped_column(PrimaryKey, ForeignKey('orders.id', ondelete='CASCADE'), nullable=False, index=True)
    product_id: Mapped[int | None] = mapped_column(PrimaryKey, ForeignKey('products.id'))
    sku: Mapped[str] = mapped_column(Text, nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default='1')
    item_price: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal('0.00'), server_default='0')
    item_tax: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal('0.00'), server_default='0')
    shipping_price: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal('0.00'), server_default='0')
    shipping_tax: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal('0.00'), server_default='0')
    promotion_discount: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), nullable=False, default=Decimal('0.00'), server_default='0'
    )
    # False while prices are still gross as reported by Amazon.
    price_is_net: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

    order: Mapped[Order] = relationship(back_populates='items')
    product: Mapped[Product | None] = relationship()


class FinancialEvent(Base):
    __tablename__ = 'financial_events'
    __table_args__ = (
        Index('financial_events_account_posted_ix', 'account_id', 'posted_date'),
        Index('financial_events_account_order_ix', 'account_id', 'amazon_order_id'),
        # Not unique: legacy rows may violate it and verification has to be able to see them.
        Index('financial_events_account_event_id_ix', 'account_id', 'financial_event_id'),
    )

    id: Mapped[int] = mapped_column(PrimaryKey, primary_key=True)
    account_id: Mapped[str] = mapped_column(Text, nullable=False)
    marketplace_id: Mapped[str | None] = mapped_column(Text)
    event_type: Mapped[FinancialEventType] = mapped_column(
        SQLEnum(
            FinancialEventType,
            name='financial_event_type',
            values_callable=lambda enum: [item.value for item in enum],
        ),
        nullable=False,
    )
    posted_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    amazon_order_id: Mapped[str | None] = mapped_column(Text)
    financial_event_id: Mapped[str | None] = mapped_column(Text)
    sku: Mapped[str | None] = mapped_column(Text)
    description: Mapped[str] = mapped_column(Text, nullable=False, default='', server_default='')
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    currency: Mapped[str] = mapped_column(Text, nullable=False, default='EUR', server_default='EUR')
    fee_type: Mapped[str | None] = mapped_column(Text)
    fee_category: Mapped[str | None] = mapped_column(Text)
    source_generation: Mapped[SourceGeneration | None] = mapped_column(
        SQLEnum(
            SourceGeneration,
            name='source_generation',
            values_callable=lambda enum: [item.value for item in enum],
        )
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class FeeCategoryMapping(Base):
    __tablename__ = 'fee_category_mappings'

    fee_type: Mapped[str] = mapped_column(Text, primary_key=True)
    category: Mapped[str] = mapped_column(Text, nullable=False)
    display_name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text)


class AdMetric(Base):
    __tablename__ = 'ad_metrics'
    __table_args__ = (Index('ad_metrics_account_date_ix', 'account_id', 'metric_date'),)

    id: Mapped[int] = mapped_column(PrimaryKey, primary_key=True)
    account_id: Mapped[str] = mapped_column(Text, nullable=False)
    metric_date: Mapped[date] = mapped_column(Date, nullable=False)
    marketplace_id: Mapped[str | None] = mapped_column(Text)
    campaign_id: Mapped[str | None] = mapped_column(Text)
    sku: Mapped[str | None] = mapped_column(Text)
    impressions: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    clicks: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    spend: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal('0.00'), server_default='0')
    attributed_sales: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), nullable=False, default=Decimal('0.00'), server_default='0'
    )
