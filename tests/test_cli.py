from __future__ import annotations

import io
import unittest
from contextlib import redirect_stderr, redirect_stdout
from unittest.mock import patch

from ledger_fixtures import ACCOUNT_ID, add_event, make_session_factory, utc
from seller_ledger import dedup_financial_events, verify_financial_data
from seller_ledger.models import FinancialEventType
from seller_ledger.services.dedup_service import count_account_events


class CliTests(unittest.TestCase):
    def setUp(self) -> None:
        self.session_factory = make_session_factory()
        with self.session_factory() as db:
            for day in (1, 15):
                add_event(
                    db,
                    event_type=FinancialEventType.DEFERRED_TRANSACTION,
                    amount='-3.00',
                    posted_date=utc(2024, 3, day),
                    amazon_order_id='999-0000000-0000000',
                    sku='SKU-1',
                    fee_type='StorageFee',
                )
            db.commit()

    def _run(self, module, argv: list[str]) -> tuple[int, str]:
        stdout = io.StringIO()
        code = 0
        with patch.object(module, 'SessionLocal', self.session_factory), patch('sys.argv', argv), patch.object(
            module, 'configure_logging'
        ), redirect_stdout(stdout), redirect_stderr(io.StringIO()):
            try:
                module.main()
            except SystemExit as exc:
                code = exc.code
        return code, stdout.getvalue()

    def test_verify_exits_non_zero_on_failure(self) -> None:
        code, output = self._run(verify_financial_data, ['verify', ACCOUNT_ID])

        self.assertEqual(code, 1)
        self.assertIn('orphaned events: 2', output)

    def test_dedup_refuses_live_run_without_yes(self) -> None:
        code, _ = self._run(dedup_financial_events, ['dedup', ACCOUNT_ID])

        self.assertEqual(code, 2)
        with self.session_factory() as db:
            self.assertEqual(count_account_events(db, ACCOUNT_ID), 2)

    def test_dedup_live_run_with_yes(self) -> None:
        code, output = self._run(dedup_financial_events, ['dedup', ACCOUNT_ID, '--yes'])

        self.assertEqual(code, 0)
        self.assertIn('Events before=2, after=1', output)


if __name__ == '__main__':
    unittest.main()
