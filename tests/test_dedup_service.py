from __future__ import annotations

import unittest
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import MagicMock

from sqlalchemy.exc import OperationalError

from ledger_fixtures import ACCOUNT_ID, add_event, make_session_factory, utc
from seller_ledger.models import FinancialEventType, SourceGeneration
from seller_ledger.services.dedup_service import (
    ConfirmationRequired,
    DedupApplyError,
    DedupHeuristic,
    EventCandidate,
    ScanLimitExceeded,
    count_account_events,
    load_event_candidates,
    plan_deduplication,
    remove_events,
    run_deduplication,
)
from seller_ledger.services.order_repair_service import backfill_source_generation
from seller_ledger.services.outcomes import BatchReport, OutcomeStatus
from seller_ledger.services.verification_service import check_cross_reference


def _candidate(event_id: int, **overrides) -> EventCandidate:
    values = {
        'id': event_id,
        'account_id': ACCOUNT_ID,
        'amazon_order_id': '403-8857824-3703548',
        'sku': 'SG-UBRH-8BTH',
        'fee_type': 'Commission',
        'event_type': FinancialEventType.FEE,
        'posted_date': datetime(2024, 3, 1, tzinfo=timezone.utc),
        'amount': Decimal('-6.75'),
        'source_generation': SourceGeneration.CURRENT,
    }
    values.update(overrides)
    return EventCandidate(**values)


class PlanDeduplicationTests(unittest.TestCase):
    def test_current_generation_fee_wins_over_legacy(self) -> None:
        current = _candidate(
            1,
            description='Revenue - Commission',
            financial_event_id='403-8857824-3703548-Commission',
            source_generation=SourceGeneration.CURRENT,
        )
        legacy = _candidate(2, financial_event_id='FE-778', source_generation=SourceGeneration.LEGACY)

        plan = plan_deduplication([current, legacy])

        self.assertEqual(plan.remove_ids, (2,))
        self.assertEqual(len(plan.groups), 1)
        self.assertEqual(plan.groups[0].heuristic, DedupHeuristic.CROSS_GENERATION)
        self.assertEqual(plan.groups[0].keep, (current,))

    def test_deferred_then_released_keeps_latest_posting(self) -> None:
        deferred = _candidate(
            10,
            fee_type='StorageFee',
            event_type=FinancialEventType.DEFERRED_TRANSACTION,
            posted_date=datetime(2024, 3, 1, tzinfo=timezone.utc),
        )
        released = _candidate(
            11,
            fee_type='StorageFee',
            event_type=FinancialEventType.DEFERRED_TRANSACTION,
            posted_date=datetime(2024, 3, 15, tzinfo=timezone.utc),
        )

        plan = plan_deduplication([released, deferred])

        self.assertEqual(plan.remove_ids, (10,))
        self.assertEqual(plan.groups[0].heuristic, DedupHeuristic.DEFERRED_RELEASED)
        self.assertEqual(plan.groups[0].keep[0].id, 11)

    def test_equal_posted_dates_keep_lowest_id(self) -> None:
        plan = plan_deduplication([_candidate(7), _candidate(5), _candidate(9)])
        self.assertEqual(plan.remove_ids, (7, 9))

    def test_single_event_is_never_removed(self) -> None:
        plan = plan_deduplication([_candidate(1, source_generation=SourceGeneration.LEGACY)])
        self.assertEqual(plan.remove_ids, ())
        self.assertEqual(plan.keep_count, 1)

    def test_distinct_fee_types_are_not_duplicates(self) -> None:
        plan = plan_deduplication([_candidate(1), _candidate(2, fee_type='FBAPerUnitFulfillmentFee')])
        self.assertEqual(plan.remove_ids, ())

    def test_repeats_without_order_are_ambiguous(self) -> None:
        plan = plan_deduplication(
            [
                _candidate(1, amazon_order_id=None, sku=None, fee_type='SubscriptionFee'),
                _candidate(2, amazon_order_id=None, sku=None, fee_type='SubscriptionFee'),
            ]
        )
        self.assertEqual(plan.remove_ids, ())
        self.assertEqual(len(plan.ambiguous), 1)
        self.assertEqual(plan.ambiguous[0].reason, 'no order linkage')

    def test_untagged_generation_pair_is_ambiguous(self) -> None:
        current_format = _candidate(
            1,
            description='Revenue - Commission',
            financial_event_id='403-8857824-3703548-Commission',
            source_generation=None,
        )
        legacy_format = _candidate(
            2,
            financial_event_id='FE-1',
            posted_date=datetime(2024, 3, 2, tzinfo=timezone.utc),
            source_generation=None,
        )

        plan = plan_deduplication([current_format, legacy_format])

        self.assertEqual(plan.remove_ids, ())
        self.assertEqual(len(plan.ambiguous), 1)
        self.assertEqual(plan.ambiguous[0].reason, 'untagged generation')
        self.assertEqual([e.id for e in plan.ambiguous[0].events], [1, 2])

    def test_untagged_refunds_still_keep_latest_posting(self) -> None:
        plan = plan_deduplication(
            [
                _candidate(1, event_type=FinancialEventType.REFUND, fee_type=None, source_generation=None),
                _candidate(
                    2,
                    event_type=FinancialEventType.REFUND,
                    fee_type=None,
                    posted_date=datetime(2024, 3, 4, tzinfo=timezone.utc),
                    source_generation=None,
                ),
            ]
        )

        self.assertEqual(plan.remove_ids, (1,))
        self.assertEqual(plan.ambiguous, ())

    def test_plan_is_independent_of_input_order(self) -> None:
        events = [
            _candidate(3, posted_date=datetime(2024, 3, 2, tzinfo=timezone.utc)),
            _candidate(1, source_generation=SourceGeneration.CURRENT),
            _candidate(2, source_generation=SourceGeneration.LEGACY),
        ]
        self.assertEqual(plan_deduplication(events), plan_deduplication(list(reversed(events))))

    def test_partition_splits_keep_and_remove(self) -> None:
        events = [_candidate(1), _candidate(2)]
        keep, remove = plan_deduplication(events).partition(events)
        self.assertEqual([e.id for e in keep], [1])
        self.assertEqual([e.id for e in remove], [2])


class RunDeduplicationTests(unittest.TestCase):
    def setUp(self) -> None:
        self.session_factory = make_session_factory()
        self.db = self.session_factory()
        order_id = '403-8857824-3703548'
        add_event(
            self.db,
            event_type=FinancialEventType.FEE,
            amount='-6.75',
            posted_date=utc(2024, 3, 1),
            amazon_order_id=order_id,
            sku='SG-UBRH-8BTH',
            fee_type='Commission',
            financial_event_id=f'{order_id}-Commission',
            description='Revenue - Commission',
            source_generation=SourceGeneration.CURRENT,
        )
        add_event(
            self.db,
            event_type=FinancialEventType.FEE,
            amount='-6.75',
            posted_date=utc(2024, 3, 1),
            amazon_order_id=order_id,
            sku='SG-UBRH-8BTH',
            fee_type='Commission',
            financial_event_id='FE-DUP',
            source_generation=SourceGeneration.LEGACY,
        )
        add_event(
            self.db,
            event_type=FinancialEventType.ORDER_REVENUE,
            amount='45.00',
            posted_date=utc(2024, 3, 1),
            amazon_order_id=order_id,
            sku='SG-UBRH-8BTH',
            financial_event_id='FE-DUP',
            source_generation=SourceGeneration.LEGACY,
        )
        add_event(
            self.db,
            event_type=FinancialEventType.ORDER_REVENUE,
            amount='45.00',
            posted_date=utc(2024, 3, 2),
            amazon_order_id=order_id,
            sku='SG-UBRH-8BTH',
            financial_event_id='FE-DUP',
            source_generation=SourceGeneration.LEGACY,
        )
        self.db.commit()

    def tearDown(self) -> None:
        self.db.close()

    def test_dry_run_reports_without_deleting(self) -> None:
        result = run_deduplication(self.db, ACCOUNT_ID, dry_run=True)

        self.assertEqual(len(result.plan.remove_ids), 2)
        self.assertEqual(result.events_before, 4)
        self.assertEqual(result.events_after, 4)
        self.assertEqual(count_account_events(self.db, ACCOUNT_ID), 4)
        self.assertTrue(all(o.status == OutcomeStatus.WOULD_APPLY for o in result.report.outcomes))

    def test_live_run_requires_confirmation(self) -> None:
        with self.assertRaises(ConfirmationRequired):
            run_deduplication(self.db, ACCOUNT_ID, dry_run=False)
        self.assertEqual(count_account_events(self.db, ACCOUNT_ID), 4)

    def test_live_run_matches_dry_run_and_converges(self) -> None:
        dry = run_deduplication(self.db, ACCOUNT_ID, dry_run=True)
        live = run_deduplication(self.db, ACCOUNT_ID, dry_run=False, confirm=True, batch_size=1)
        again = run_deduplication(self.db, ACCOUNT_ID, dry_run=False, confirm=True)

        self.assertEqual(dry.plan, live.plan)
        self.assertEqual(live.events_after, 2)
        self.assertEqual(live.report.changed_count, 2)
        self.assertEqual(again.plan.remove_ids, ())
        self.assertEqual(again.events_after, 2)

    def test_external_ids_are_unique_after_dedup(self) -> None:
        self.assertEqual(check_cross_reference(self.db, ACCOUNT_ID, as_of=utc(2024, 3, 5)).metrics['duplicated_event_ids'], 1)
        run_deduplication(self.db, ACCOUNT_ID, dry_run=False, confirm=True)
        self.assertEqual(check_cross_reference(self.db, ACCOUNT_ID, as_of=utc(2024, 3, 5)).metrics['duplicated_event_ids'], 0)

    def test_scan_cap_aborts_before_deciding(self) -> None:
        with self.assertRaises(ScanLimitExceeded):
            load_event_candidates(self.db, ACCOUNT_ID, page_size=2, max_rows=3)

    def test_missing_rows_are_reported_as_already_removed(self) -> None:
        report = BatchReport(operation='dedup-financial-events', dry_run=False)
        remove_events(self.db, ACCOUNT_ID, [1, 999], report=report)

        self.assertEqual(report.changed_count, 1)
        self.assertEqual(report.skip_reasons(), {'already removed': 1})
        self.assertEqual(count_account_events(self.db, ACCOUNT_ID), 3)


class UntaggedEventsTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_session_factory()()
        order_id = '403-8857824-3703548'
        add_event(
            self.db,
            event_type=FinancialEventType.FEE,
            amount='-6.75',
            posted_date=utc(2024, 3, 1),
            amazon_order_id=order_id,
            sku='SG-UBRH-8BTH',
            fee_type='Commission',
            financial_event_id=f'{order_id}-Commission',
            description='Revenue - Commission',
        )
        add_event(
            self.db,
            event_type=FinancialEventType.FEE,
            amount='-6.75',
            posted_date=utc(2024, 3, 2),
            amazon_order_id=order_id,
            sku='SG-UBRH-8BTH',
            fee_type='Commission',
            financial_event_id='FE-1',
        )
        self.db.commit()

    def tearDown(self) -> None:
        self.db.close()

    def test_untagged_pair_is_left_alone_until_backfilled(self) -> None:
        result = run_deduplication(self.db, ACCOUNT_ID, dry_run=False, confirm=True)

        self.assertEqual(result.events_after, 2)
        self.assertEqual(result.report.skip_reasons(), {'ambiguous': 2})

        backfill_source_generation(self.db, ACCOUNT_ID, dry_run=False)
        result = run_deduplication(self.db, ACCOUNT_ID, dry_run=False, confirm=True)

        self.assertEqual(result.plan.remove_ids, (2,))
        self.assertEqual(result.events_after, 1)


class RemoveEventsFailureTests(unittest.TestCase):
    def test_failed_batch_rolls_back_and_carries_report(self) -> None:
        db = MagicMock()
        db.execute.side_effect = OperationalError('DELETE', {}, Exception('connection lost'))
        report = BatchReport(operation='dedup-financial-events', dry_run=False)

        with self.assertRaises(DedupApplyError) as ctx:
            remove_events(db, ACCOUNT_ID, [1, 2], report=report)

        db.rollback.assert_called_once()
        db.commit.assert_not_called()
        self.assertIs(ctx.exception.report, report)
        self.assertEqual(report.outcomes, [])

    def test_batch_size_must_be_positive(self) -> None:
        with self.assertRaises(ValueError):
            remove_events(MagicMock(), ACCOUNT_ID, [1], report=BatchReport('x', dry_run=False), batch_size=-1)


if __name__ == '__main__':
    unittest.main()
