from __future__ import annotations

import unittest
from decimal import Decimal

from cpd_planner.services.lot_sizing_service import LotSizingInput, compute_lot_plan, extra_lots_for_shortfall
from cpd_planner.services.outcomes import ConfigurationError, ValidationError


def _input(demand: int, *, margin: str = '0', average: str | None = '50') -> LotSizingInput:
    return LotSizingInput(
        demand_units=demand,
        mass_per_lot_kg=Decimal('10'),
        operational_average_weight_g=Decimal(average) if average is not None else None,
        flour_per_lot_kg=Decimal('6'),
        margin_percent=Decimal(margin),
    )


class LotSizingServiceTests(unittest.TestCase):
    def test_ten_kilo_lot_of_fifty_gram_portions_yields_two_hundred(self) -> None:
        plan = compute_lot_plan(_input(1))
        self.assertEqual(plan.units_per_lot, Decimal('200'))
        self.assertEqual(plan.lots_needed, 1)

    def test_demand_rounds_up_to_whole_lots(self) -> None:
        plan = compute_lot_plan(_input(450))
        self.assertEqual(plan.lots_needed, 3)
        self.assertEqual(plan.flour_needed_kg, Decimal('18'))
        self.assertEqual(plan.estimated_units, 600)
        self.assertEqual(plan.mass_total_kg, Decimal('30'))

    def test_margin_absorbs_small_overage(self) -> None:
        plan = compute_lot_plan(_input(450, margin='15'))
        self.assertEqual(plan.capacity_with_margin, Decimal('230'))
        self.assertEqual(plan.lots_needed, 2)
        # yield stays at the real 200 per lot
        self.assertEqual(plan.estimated_units, 400)

    def test_zero_demand_needs_no_lots(self) -> None:
        plan = compute_lot_plan(_input(0))
        self.assertEqual(plan.lots_needed, 0)
        self.assertEqual(plan.flour_needed_kg, Decimal('0'))
        self.assertEqual(plan.estimated_units, 0)

    def test_estimated_units_floor_fractional_yield(self) -> None:
        plan = compute_lot_plan(_input(100, average='30'))
        # 10 kg / 30 g = 333.33 per lot
        self.assertEqual(plan.lots_needed, 1)
        self.assertEqual(plan.estimated_units, 333)

    def test_missing_or_zero_average_is_configuration_error(self) -> None:
        with self.assertRaises(ConfigurationError):
            compute_lot_plan(_input(10, average='0'))
        with self.assertRaises(ConfigurationError):
            compute_lot_plan(_input(10, average=None))

    def test_missing_mass_per_lot_is_configuration_error(self) -> None:
        with self.assertRaises(ConfigurationError):
            compute_lot_plan(
                LotSizingInput(
                    demand_units=10,
                    mass_per_lot_kg=None,
                    operational_average_weight_g=Decimal('50'),
                    flour_per_lot_kg=Decimal('6'),
                )
            )

    def test_negative_demand_is_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            compute_lot_plan(_input(-1))

    def test_extra_lots_for_shortfall(self) -> None:
        plan = extra_lots_for_shortfall(
            250,
            mass_per_lot_kg=Decimal('10'),
            operational_average_weight_g=Decimal('50'),
            flour_per_lot_kg=Decimal('6'),
        )
        self.assertEqual(plan.lots_needed, 2)
        self.assertEqual(plan.estimated_units, 400)


if __name__ == '__main__':
    unittest.main()
