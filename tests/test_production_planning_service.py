from __future__ import annotations

import unittest
from decimal import Decimal

from sqlalchemy import func, select

from cpd_planner.models import ProductionRecord, ProductionSetting
from cpd_planner.services.demand_freeze_service import freeze
from cpd_planner.services.demand_service import submit_store_count
from cpd_planner.services.outcomes import ConfigurationError, NotFoundError, Outcome
from cpd_planner.services.production_planning_service import plan_production_for_day, preview_lot_plan

from db_support import DAY, add_lot_item, add_org, add_store, add_unit_item, new_session


class ProductionPlanningServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = new_session()
        self.org = add_org(self.db)
        self.downtown = add_store(self.db, self.org, 'Downtown')
        self.riverside = add_store(self.db, self.org, 'Riverside')
        self.dough = add_lot_item(self.db, self.org)
        self.sauce = add_unit_item(self.db, self.org)

    def tearDown(self) -> None:
        self.db.close()

    def _count(self, store, item, ideal: int, leftover: int = 0) -> None:
        submit_store_count(
            self.db,
            organization_id=self.org.id,
            store_id=store.id,
            item_id=item.id,
            operational_day=DAY,
            final_leftover=leftover,
            ideal_quantity=ideal,
        )

    def test_unfrozen_day_is_deferred(self) -> None:
        self._count(self.downtown, self.dough, 100)

        result = plan_production_for_day(self.db, organization_id=self.org.id, operational_day=DAY)

        self.assertEqual(result.outcome, Outcome.DEFERRED)
        self.assertEqual(result.planned, [])

    def test_plans_lots_from_frozen_demand(self) -> None:
        self._count(self.downtown, self.dough, 300)
        self._count(self.riverside, self.dough, 150)
        self._count(self.riverside, self.sauce, 12, leftover=2)
        freeze(self.db, organization_id=self.org.id, operational_day=DAY)

        result = plan_production_for_day(self.db, organization_id=self.org.id, operational_day=DAY)

        self.assertEqual(result.outcome, Outcome.SUCCESS)
        by_item = {row.item_id: row for row in result.planned}
        dough = by_item[self.dough.id]
        self.assertEqual(dough.demand_units, 450)
        self.assertEqual(dough.lots_planned, 3)
        self.assertEqual(dough.expected_units, 600)
        self.assertEqual(dough.lot_plan.flour_needed_kg, Decimal('18'))
        sauce = by_item[self.sauce.id]
        self.assertEqual(sauce.lots_planned, 0)
        self.assertEqual(sauce.expected_units, 10)
        record = self.db.get(ProductionRecord, dough.record_id)
        self.assertEqual(
            sorted(entry['quantity'] for entry in record.store_breakdown),
            [150, 300],
        )

    def test_planning_twice_creates_no_duplicates(self) -> None:
        self._count(self.downtown, self.dough, 300)
        freeze(self.db, organization_id=self.org.id, operational_day=DAY)

        plan_production_for_day(self.db, organization_id=self.org.id, operational_day=DAY)
        again = plan_production_for_day(self.db, organization_id=self.org.id, operational_day=DAY)

        self.assertEqual(again.outcome, Outcome.DEFERRED)
        self.assertFalse(again.planned[0].created)
        total = self.db.execute(select(func.count()).select_from(ProductionRecord)).scalar_one()
        self.assertEqual(total, 1)

    def test_organization_margin_is_applied(self) -> None:
        setting = self.db.get(ProductionSetting, self.org.id)
        setting.lot_margin_percent = Decimal('15')
        self.db.flush()
        self._count(self.downtown, self.dough, 450)
        freeze(self.db, organization_id=self.org.id, operational_day=DAY)

        result = plan_production_for_day(self.db, organization_id=self.org.id, operational_day=DAY)

        self.assertEqual(result.planned[0].lots_planned, 2)

    def test_misconfigured_item_aborts_before_any_record(self) -> None:
        broken = add_lot_item(self.db, self.org, name='Focaccia', average_g=None)
        self._count(self.downtown, self.dough, 100)
        self._count(self.downtown, broken, 100)
        freeze(self.db, organization_id=self.org.id, operational_day=DAY)

        with self.assertRaises(ConfigurationError):
            plan_production_for_day(self.db, organization_id=self.org.id, operational_day=DAY)

        total = self.db.execute(select(func.count()).select_from(ProductionRecord)).scalar_one()
        self.assertEqual(total, 0)

    def test_preview_lot_plan(self) -> None:
        plan = preview_lot_plan(self.db, organization_id=self.org.id, item_id=self.dough.id, demand_units=450)
        self.assertEqual(plan.lots_needed, 3)
        with self.assertRaises(NotFoundError):
            preview_lot_plan(self.db, organization_id=self.org.id, item_id=9999, demand_units=1)
        with self.assertRaises(ConfigurationError):
            preview_lot_plan(self.db, organization_id=self.org.id, item_id=self.sauce.id, demand_units=1)


if __name__ == '__main__':
    unittest.main()
