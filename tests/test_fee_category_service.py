from __future__ import annotations

import unittest

from ledger_fixtures import make_session_factory
from seller_ledger.services.fee_category_service import (
    DEFAULT_FEE_CATEGORIES,
    FeeCategoryEntry,
    FeeCategoryLookup,
    load_fee_category_lookup,
    seed_fee_categories,
)


class FeeCategoryLookupTests(unittest.TestCase):
    def test_unmapped_and_missing_fee_types_fall_back_to_other(self) -> None:
        lookup = FeeCategoryLookup([FeeCategoryEntry('Commission', 'referral', 'Referral Fee')])

        self.assertEqual(lookup.category_for('Commission'), 'referral')
        self.assertEqual(lookup.category_for('BrandNewFee'), 'other')
        self.assertEqual(lookup.category_for(None), 'other')
        self.assertEqual(lookup.display_name_for('BrandNewFee'), 'BrandNewFee')


class SeedFeeCategoriesTests(unittest.TestCase):
    def test_seed_is_repeatable_and_loads_back(self) -> None:
        with make_session_factory()() as db:
            self.assertEqual(seed_fee_categories(db), (len(DEFAULT_FEE_CATEGORIES), 0))
            db.commit()
            self.assertEqual(seed_fee_categories(db), (0, 0))

            changed = [FeeCategoryEntry('Commission', 'other', 'Referral Fee', 'Amazon commission on product sales')]
            self.assertEqual(seed_fee_categories(db, changed), (0, 1))
            db.commit()

            lookup = load_fee_category_lookup(db)
            self.assertEqual(len(lookup), 20)
            self.assertIn('StorageFee', lookup)
            self.assertEqual(lookup.category_for('Commission'), 'other')


if __name__ == '__main__':
    unittest.main()
