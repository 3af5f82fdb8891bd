from __future__ import annotations

import unittest
from decimal import Decimal

from sqlalchemy import select

from ledger_fixtures import ACCOUNT_ID, add_event, add_order, add_product, make_session_factory, utc
from seller_ledger.models import FinancialEvent, FinancialEventType, Order, OrderItem, Product, SourceGeneration
from seller_ledger.services.order_repair_service import (
    backfill_source_generation,
    normalize_marketplace_ids,
    official_marketplace_id,
    repair_net_prices,
    repair_order_totals,
    repair_product_prices,
)


class RepairNetPricesTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_session_factory()()
        gross_item = {
            'sku': 'SKU-1',
            'quantity': 1,
            'item_price': '24.40',
            'item_tax': '4.40',
            'shipping_price': '6.10',
            'shipping_tax': '1.10',
            'price_is_net': False,
        }
        add_order(self.db, 'B2C-1', purchase_date=utc(2024, 3, 1), items=[dict(gross_item)])
        add_order(self.db, 'B2B-1', purchase_date=utc(2024, 3, 2), is_business_order=True, items=[dict(gross_item)])
        self.db.commit()

    def tearDown(self) -> None:
        self.db.close()

    def _item(self, amazon_order_id: str) -> OrderItem:
        return self.db.execute(
            select(OrderItem).join(Order).where(Order.amazon_order_id == amazon_order_id)
        ).scalar_one()

    def test_b2c_loses_tax_and_b2b_is_only_marked_net(self) -> None:
        report = repair_net_prices(self.db, ACCOUNT_ID, dry_run=False)

        self.assertEqual(report.changed_count, 2)
        b2c = self._item('B2C-1')
        b2b = self._item('B2B-1')
        self.assertEqual((b2c.item_price, b2c.shipping_price), (Decimal('20.00'), Decimal('5.00')))
        self.assertEqual((b2b.item_price, b2b.shipping_price), (Decimal('24.40'), Decimal('6.10')))
        self.assertTrue(b2c.price_is_net and b2b.price_is_net)

    def test_repair_is_idempotent(self) -> None:
        repair_net_prices(self.db, ACCOUNT_ID, dry_run=False)
        self.assertEqual(repair_net_prices(self.db, ACCOUNT_ID, dry_run=False).changed_count, 0)

    def test_dry_run_leaves_prices_untouched(self) -> None:
        report = repair_net_prices(self.db, ACCOUNT_ID, dry_run=True)

        self.assertEqual(report.changed_count, 2)
        self.db.expire_all()
        self.assertEqual(self._item('B2C-1').item_price, Decimal('24.40'))
        self.assertFalse(self._item('B2C-1').price_is_net)


class RepairTotalsAndPricesTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_session_factory()()
        product = add_product(self.db, 'SKU-1', price='0')
        add_order(
            self.db,
            'STALE-1',
            purchase_date=utc(2024, 3, 1),
            total_amount='0',
            items=[{'sku': 'SKU-1', 'product_id': product.id, 'quantity': 2, 'item_price': '20.00', 'shipping_price': '4.00', 'promotion_discount': '1.00'}],
        )
        add_order(
            self.db,
            'FINE-1',
            purchase_date=utc(2024, 3, 5),
            total_amount='22.00',
            items=[{'sku': 'SKU-1', 'product_id': product.id, 'quantity': 1, 'item_price': '22.00'}],
        )
        add_order(self.db, 'EMPTY-1', purchase_date=utc(2024, 3, 6), total_amount='5.00')
        self.db.commit()

    def tearDown(self) -> None:
        self.db.close()

    def test_only_diverging_totals_are_rewritten(self) -> None:
        report = repair_order_totals(self.db, ACCOUNT_ID, dry_run=False)

        self.assertEqual([o.record_id for o in report.outcomes if o.reason is None], ['STALE-1'])
        self.assertEqual(report.skip_reasons(), {'no items': 1})
        stale = self.db.execute(select(Order).where(Order.amazon_order_id == 'STALE-1')).scalar_one()
        self.assertEqual(stale.total_amount, Decimal('43.00'))

    def test_product_price_follows_latest_order(self) -> None:
        report = repair_product_prices(self.db, ACCOUNT_ID, dry_run=False)

        self.assertEqual(report.changed_count, 1)
        product = self.db.execute(select(Product).where(Product.sku == 'SKU-1')).scalar_one()
        self.assertEqual(product.price, Decimal('22.00'))


class MarketplaceAndGenerationTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_session_factory()()

    def tearDown(self) -> None:
        self.db.close()

    def test_official_ids_are_case_insensitive(self) -> None:
        self.assertEqual(official_marketplace_id('Amazon.it'), 'APJ6JRA9NG5V4')
        self.assertEqual(official_marketplace_id('amazon.com.be'), 'A1805IZSGTT6HS')
        self.assertEqual(official_marketplace_id('A1PA6795UKMFR9'), 'A1PA6795UKMFR9')

    def test_legacy_marketplaces_are_rewritten_across_tables(self) -> None:
        add_order(self.db, 'IT-1', purchase_date=utc(2024, 3, 1), marketplace_id='Amazon.it')
        add_event(
            self.db,
            event_type=FinancialEventType.ORDER_REVENUE,
            amount='10.00',
            posted_date=utc(2024, 3, 1),
            amazon_order_id='IT-1',
            marketplace_id='amazon.it',
        )
        self.db.commit()

        dry = normalize_marketplace_ids(self.db, ACCOUNT_ID, dry_run=True)
        live = normalize_marketplace_ids(self.db, ACCOUNT_ID, dry_run=False)

        self.assertEqual(dry.changed_count, 2)
        self.assertEqual([o.record_id for o in live.outcomes], ['orders:Amazon.it', 'financial_events:amazon.it'])
        self.db.expire_all()
        self.assertEqual(self.db.execute(select(Order.marketplace_id)).scalar_one(), 'APJ6JRA9NG5V4')
        self.assertEqual(self.db.execute(select(FinancialEvent.marketplace_id)).scalar_one(), 'APJ6JRA9NG5V4')

    def test_backfill_tags_untagged_events(self) -> None:
        add_event(
            self.db,
            event_type=FinancialEventType.FEE,
            amount='-6.75',
            posted_date=utc(2024, 3, 1),
            amazon_order_id='IT-1',
            fee_type='Commission',
            financial_event_id='IT-1-Commission',
        )
        add_event(self.db, event_type=FinancialEventType.REFUND, amount='-1.00', posted_date=utc(2024, 3, 1))
        self.db.commit()

        report = backfill_source_generation(self.db, ACCOUNT_ID, dry_run=False)

        self.assertEqual(report.changed_count, 1)
        self.assertEqual(report.skip_reasons(), {'undetermined': 1})
        generations = self.db.execute(
            select(FinancialEvent.source_generation).order_by(FinancialEvent.id)
        ).scalars().all()
        self.assertEqual(generations, [SourceGeneration.CURRENT, None])


if __name__ == '__main__':
    unittest.main()
