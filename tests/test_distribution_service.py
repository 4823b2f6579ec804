from __future__ import annotations

import unittest
from unittest.mock import patch

from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from cpd_planner.models import AuditLog, DistributionManifest, ManifestLine, ManifestStatus, ProductionStatus
from cpd_planner.services.central_stock_service import set_stock
from cpd_planner.services.distribution_service import (
    DistributionRequest,
    _append_store_line,
    list_manifests_awaiting_review,
    trigger_distribution,
)
from cpd_planner.services.outcomes import Outcome

from db_support import add_lot_item, add_org, add_record, add_store, new_session


class DistributionServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = new_session()
        self.org = add_org(self.db)
        self.downtown = add_store(self.db, self.org, 'Downtown')
        self.riverside = add_store(self.db, self.org, 'Riverside')
        self.item = add_lot_item(self.db, self.org)
        self.breakdown = [
            {'store_id': self.downtown.id, 'store_name': 'Downtown', 'quantity': 60},
            {'store_id': self.riverside.id, 'store_name': 'Riverside', 'quantity': 40},
        ]
        self.record = add_record(
            self.db, self.org, self.item, breakdown=self.breakdown, status=ProductionStatus.FINISHED
        )

    def tearDown(self) -> None:
        self.db.close()

    def _request(self, breakdown: list[dict] | None = None) -> DistributionRequest:
        return DistributionRequest(
            organization_id=self.org.id,
            production_record_id=self.record.id,
            item_id=self.item.id,
            item_name=self.item.name,
            store_breakdown=self.breakdown if breakdown is None else breakdown,
        )

    def _line_quantities(self) -> dict[int, int]:
        rows = self.db.execute(select(ManifestLine.store_id, ManifestLine.quantity)).all()
        return {row.store_id: row.quantity for row in rows}

    def test_insufficient_stock_creates_nothing(self) -> None:
        set_stock(self.db, organization_id=self.org.id, item_id=self.item.id, quantity=80)

        result = trigger_distribution(self.db, self._request())
        self.db.flush()

        self.assertEqual(result.outcome, Outcome.DEFERRED)
        self.assertEqual(result.manifests_created, 0)
        self.assertEqual(result.available_stock, 80)
        self.assertEqual(result.total_demand, 100)
        self.assertEqual(self._line_quantities(), {})
        actions = self.db.execute(select(AuditLog.action)).scalars().all()
        self.assertIn('ALERT_STOCK_INSUFFICIENT', actions)

    def test_sufficient_stock_ships_every_store_once(self) -> None:
        set_stock(self.db, organization_id=self.org.id, item_id=self.item.id, quantity=120)

        first = trigger_distribution(self.db, self._request())
        second = trigger_distribution(self.db, self._request())

        self.assertEqual(first.outcome, Outcome.SUCCESS)
        self.assertEqual(first.manifests_created, 2)
        self.assertEqual(first.units_allocated, 100)
        self.assertEqual(second.outcome, Outcome.DEFERRED)
        self.assertEqual(second.manifests_created, 0)
        self.assertEqual(self._line_quantities(), {self.downtown.id: 60, self.riverside.id: 40})

    def test_empty_breakdown_is_deferred(self) -> None:
        result = trigger_distribution(self.db, self._request(breakdown=[]))
        self.assertEqual(result.outcome, Outcome.DEFERRED)
        self.assertEqual(result.manifests_created, 0)

    def test_reuses_open_manifest_for_store(self) -> None:
        set_stock(self.db, organization_id=self.org.id, item_id=self.item.id, quantity=500)
        other_item = add_lot_item(self.db, self.org, name='Baguette')
        set_stock(self.db, organization_id=self.org.id, item_id=other_item.id, quantity=500)
        other_record = add_record(
            self.db, self.org, other_item, breakdown=self.breakdown, status=ProductionStatus.FINISHED
        )

        trigger_distribution(self.db, self._request())
        trigger_distribution(
            self.db,
            DistributionRequest(
                organization_id=self.org.id,
                production_record_id=other_record.id,
                item_id=other_item.id,
                item_name=other_item.name,
                store_breakdown=self.breakdown,
            ),
        )

        manifests = self.db.execute(select(func.count()).select_from(DistributionManifest)).scalar_one()
        self.assertEqual(manifests, 2)
        listed = list_manifests_awaiting_review(self.db, organization_id=self.org.id)
        self.assertEqual([len(m['lines']) for m in listed], [2, 2])
        self.assertTrue(all(m['status'] == ManifestStatus.AWAITING_REVIEW.value for m in listed))
        self.assertIsNone(listed[0]['lines'][0]['total_weight_kg'])

    def test_stock_read_failure_is_failed(self) -> None:
        error = OperationalError('SELECT', {}, Exception('connection reset'))
        with patch.object(self.db, 'execute', side_effect=error):
            result = trigger_distribution(self.db, self._request())
        self.assertEqual(result.outcome, Outcome.FAILED)
        self.assertEqual(result.manifests_created, 0)

    def test_one_store_failing_does_not_block_the_others(self) -> None:
        set_stock(self.db, organization_id=self.org.id, item_id=self.item.id, quantity=120)

        def append_failing_for_riverside(db, *, request, entry):
            if int(entry['store_id']) == self.riverside.id:
                raise OperationalError('INSERT', {}, Exception('deadlock detected'))
            _append_store_line(db, request=request, entry=entry)

        with patch(
            'cpd_planner.services.distribution_service._append_store_line',
            side_effect=append_failing_for_riverside,
        ):
            result = trigger_distribution(self.db, self._request())

        self.assertEqual(result.outcome, Outcome.PARTIAL)
        self.assertEqual(result.manifests_created, 1)
        self.assertEqual(result.units_allocated, 60)
        self.assertEqual(result.failed_stores, [self.riverside.id])
        self.assertEqual(self._line_quantities(), {self.downtown.id: 60})

    def test_concurrent_duplicate_line_is_skipped(self) -> None:
        set_stock(self.db, organization_id=self.org.id, item_id=self.item.id, quantity=120)
        trigger_distribution(self.db, self._request())

        # Another worker passed the existing-lines check before the first one wrote its lines.
        with patch('cpd_planner.services.distribution_service.has_manifest_lines', return_value=False):
            again = trigger_distribution(self.db, self._request())

        self.assertEqual(again.outcome, Outcome.DEFERRED)
        self.assertEqual(again.manifests_created, 0)
        self.assertEqual(again.failed_stores, [])
        self.assertEqual(self._line_quantities(), {self.downtown.id: 60, self.riverside.id: 40})

    def test_manifest_lookup_failure_is_failed(self) -> None:
        set_stock(self.db, organization_id=self.org.id, item_id=self.item.id, quantity=120)
        error = OperationalError('SELECT', {}, Exception('statement timeout'))

        with patch('cpd_planner.services.distribution_service.has_manifest_lines', side_effect=error):
            result = trigger_distribution(self.db, self._request())

        self.assertEqual(result.outcome, Outcome.FAILED)
        self.assertEqual(result.available_stock, 120)
        self.assertEqual(self._line_quantities(), {})


if __name__ == '__main__':
    unittest.main()
