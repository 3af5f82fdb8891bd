from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.orm import Session

from seller_ledger.models import FeeCategory, FeeCategoryMapping


@dataclass(frozen=True)
class FeeCategoryEntry:
    fee_type: str
    category: str
    display_name: str
    description: str | None = None


DEFAULT_FEE_CATEGORIES: tuple[FeeCategoryEntry, ...] = (
    FeeCategoryEntry('Commission', 'referral', 'Referral Fee', 'Amazon commission on product sales'),
    FeeCategoryEntry('RefundCommission', 'referral', 'Refund Commission', 'Referral fee charged on refunds'),
    FeeCategoryEntry('FBAPerUnitFulfillmentFee', 'fba_fulfillment', 'FBA Pick & Pack Fee', 'Pick, pack and ship by FBA'),
    FeeCategoryEntry('FBAWeightBasedFee', 'fba_fulfillment', 'FBA Weight Handling Fee', 'Weight-based fulfillment fee'),
    FeeCategoryEntry('FBAPerOrderFulfillmentFee', 'fba_fulfillment', 'FBA Order Handling Fee', 'Per-order fulfillment fee'),
    FeeCategoryEntry('StorageFee', 'storage', 'Monthly Storage Fee', 'Monthly fee per cubic foot stored'),
    FeeCategoryEntry('LongTermStorageFee', 'storage', 'Long-term Storage Fee', 'Inventory stored more than 365 days'),
    FeeCategoryEntry('StorageRenewalBilling', 'storage', 'Storage Renewal', 'Monthly storage fee billing'),
    FeeCategoryEntry('RemovalFee', 'removal', 'Removal Fee', 'Removing inventory from the warehouse'),
    FeeCategoryEntry('DisposalFee', 'removal', 'Disposal Fee', 'Disposing of inventory at the warehouse'),
    FeeCategoryEntry('ShippingChargeback', 'shipping', 'Shipping Chargeback', 'Shipping fee adjustments or chargebacks'),
    FeeCategoryEntry('ShippingHoldback', 'shipping', 'Shipping Holdback', 'Temporary hold on shipping fees'),
    FeeCategoryEntry('SubscriptionFee', 'service', 'Subscription Fee', 'Professional seller subscription'),
    FeeCategoryEntry('ServiceFee', 'service', 'Service Fee', 'General Amazon service fees'),
    FeeCategoryEntry('AdvertisingFee', 'advertising', 'Advertising Fee', 'Sponsored product advertising costs'),
    FeeCategoryEntry('CostPerClick', 'advertising', 'PPC Cost Per Click', 'Pay-per-click advertising costs'),
    FeeCategoryEntry('VariableClosingFee', 'other', 'Variable Closing Fee', 'Variable fee for media items'),
    FeeCategoryEntry('GiftWrapChargeback', 'other', 'Gift Wrap Fee', 'Gift wrap service fees'),
    FeeCategoryEntry('RestockingFee', 'other', 'Restocking Fee', 'Restocking returned items'),
    FeeCategoryEntry('ReverseShipmentFee', 'other', 'Reverse Shipment Fee', 'Shipping returned items back'),
)


class FeeCategoryLookup:
    """Read-only fee type -> category table.

    Built once by the caller and handed to the reconciliation functions, so a
    report never depends on what some earlier call happened to load.
    """

    def __init__(self, entries: Iterable[FeeCategoryEntry] = ()) -> None:
        self._by_fee_type: Mapping[str, FeeCategoryEntry] = {entry.fee_type: entry for entry in entries}

    def __len__(self) -> int:
        return len(self._by_fee_type)

    def __contains__(self, fee_type: object) -> bool:
        return fee_type in self._by_fee_type

    def category_for(self, fee_type: str | None) -> str:
        if not fee_type:
            return FeeCategory.OTHER.value
        entry = self._by_fee_type.get(fee_type)
        return entry.category if entry else FeeCategory.OTHER.value

    def display_name_for(self, fee_type: str | None) -> str:
        if not fee_type:
            return 'Other Fee'
        entry = self._by_fee_type.get(fee_type)
        return entry.display_name if entry else fee_type


def default_fee_category_lookup() -> FeeCategoryLookup:
    return FeeCategoryLookup(DEFAULT_FEE_CATEGORIES)


def load_fee_category_lookup(db: Session) -> FeeCategoryLookup:
    rows = db.execute(select(FeeCategoryMapping)).scalars().all()
    return FeeCategoryLookup(
        FeeCategoryEntry(
            fee_type=row.fee_type,
            category=row.category,
            display_name=row.display_name,
            description=row.description,
        )
        for row in rows
    )


def seed_fee_categories(db: Session, entries: Iterable[FeeCategoryEntry] = DEFAULT_FEE_CATEGORIES) -> tuple[int, int]:
    existing = {row.fee_type: row for row in db.execute(select(FeeCategoryMapping)).scalars().all()}
    created = 0
    updated = 0
    for entry in entries:
        row = existing.get(entry.fee_type)
        if row is None:
            db.add(
                FeeCategoryMapping(
                    fee_type=entry.fee_type,
                    category=entry.category,
                    display_name=entry.display_name,
                    description=entry.description,
                )
            )
            created += 1
            continue

        changed = False
        if row.category != entry.category:
            row.category = entry.category
            changed = True
        if row.display_name != entry.display_name:
            row.display_name = entry.display_name
            changed = True
        if row.description != entry.description:
            row.description = entry.description
            changed = True
        if changed:
            updated += 1

    db.flush()
    return created, updated
