from __future__ import annotations

import unittest
from datetime import timedelta
from unittest.mock import patch

from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from cpd_planner.models import ManifestLine, ProductionStatus
from cpd_planner.services.central_stock_service import increment_stock, set_stock
from cpd_planner.services.outcomes import Outcome
from cpd_planner.services.reconciliation_service import (
    find_undistributed_records,
    run_reconciliation_sweep,
    run_reconciliation_sweep_all,
)

from db_support import DAY, add_lot_item, add_org, add_record, add_store, new_session


class ReconciliationServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = new_session()
        self.org = add_org(self.db)
        self.store = add_store(self.db, self.org, 'Downtown')
        self.item = add_lot_item(self.db, self.org)
        self.record = add_record(
            self.db,
            self.org,
            self.item,
            breakdown=[{'store_id': self.store.id, 'store_name': 'Downtown', 'quantity': 100}],
            status=ProductionStatus.FINISHED,
        )
        set_stock(self.db, organization_id=self.org.id, item_id=self.item.id, quantity=80)

    def tearDown(self) -> None:
        self.db.close()

    def test_nothing_shipped_while_stock_is_short(self) -> None:
        result = run_reconciliation_sweep(self.db, organization_id=self.org.id, today=DAY)

        self.assertEqual(result.outcome, Outcome.DEFERRED)
        self.assertEqual(result.records_checked, 1)
        self.assertEqual(result.deferred_records, [self.record.id])
        self.assertEqual(self.db.execute(select(ManifestLine)).scalars().all(), [])

    def test_picks_up_record_once_stock_is_replenished(self) -> None:
        run_reconciliation_sweep(self.db, organization_id=self.org.id, today=DAY)
        increment_stock(self.db, organization_id=self.org.id, item_id=self.item.id, quantity=40)

        result = run_reconciliation_sweep(self.db, organization_id=self.org.id, today=DAY + timedelta(days=1))

        self.assertEqual(result.outcome, Outcome.SUCCESS)
        self.assertEqual(result.records_distributed, 1)
        self.assertEqual(result.manifests_created, 1)
        lines = self.db.execute(select(ManifestLine)).scalars().all()
        self.assertEqual([line.quantity for line in lines], [100])

    def test_repeated_sweeps_do_not_duplicate(self) -> None:
        set_stock(self.db, organization_id=self.org.id, item_id=self.item.id, quantity=200)

        first = run_reconciliation_sweep(self.db, organization_id=self.org.id, today=DAY)
        second = run_reconciliation_sweep(self.db, organization_id=self.org.id, today=DAY)

        self.assertEqual(first.manifests_created, 1)
        self.assertEqual(second.records_checked, 0)
        self.assertEqual(second.outcome, Outcome.DEFERRED)
        self.assertEqual(len(self.db.execute(select(ManifestLine)).scalars().all()), 1)

    def test_records_outside_window_are_ignored(self) -> None:
        pending = find_undistributed_records(self.db, organization_id=self.org.id, since=DAY + timedelta(days=1))
        self.assertEqual(pending, [])
        set_stock(self.db, organization_id=self.org.id, item_id=self.item.id, quantity=200)

        result = run_reconciliation_sweep(
            self.db, organization_id=self.org.id, today=DAY + timedelta(days=3), window_days=2
        )

        self.assertEqual(result.records_checked, 0)

    def test_unfinished_records_are_not_swept(self) -> None:
        self.record.status = ProductionStatus.IN_PORTIONING
        self.db.flush()
        set_stock(self.db, organization_id=self.org.id, item_id=self.item.id, quantity=200)

        result = run_reconciliation_sweep(self.db, organization_id=self.org.id, today=DAY)

        self.assertEqual(result.records_checked, 0)

    def test_settings_read_failure_is_failed(self) -> None:
        error = OperationalError('SELECT', {}, Exception('statement timeout'))
        with patch('cpd_planner.services.reconciliation_service.resolve_production_params', side_effect=error):
            result = run_reconciliation_sweep(self.db, organization_id=self.org.id, today=DAY)

        self.assertEqual(result.outcome, Outcome.FAILED)
        self.assertIsNone(result.since)
        self.assertEqual(result.records_checked, 0)

    def test_misconfigured_organization_does_not_block_the_sweep(self) -> None:
        broken = add_org(self.db, name='Broken', time_zone='Mars/Olympus')
        set_stock(self.db, organization_id=self.org.id, item_id=self.item.id, quantity=200)

        results = run_reconciliation_sweep_all(self.db, today=DAY)

        by_org = {result.organization_id: result for result in results}
        self.assertEqual(by_org[broken.id].outcome, Outcome.FAILED)
        self.assertIn('Mars/Olympus', by_org[broken.id].reason)
        self.assertEqual(by_org[self.org.id].outcome, Outcome.SUCCESS)
        self.assertEqual(by_org[self.org.id].manifests_created, 1)
        lines = self.db.execute(select(ManifestLine)).scalars().all()
        self.assertEqual([line.quantity for line in lines], [100])


if __name__ == '__main__':
    unittest.main()
