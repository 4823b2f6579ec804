from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_CEILING, ROUND_FLOOR, Decimal

from cpd_planner.services.outcomes import ConfigurationError, ValidationError


@dataclass(frozen=True)
class LotSizingInput:
    demand_units: int
    mass_per_lot_kg: Decimal | None
    operational_average_weight_g: Decimal | None
    flour_per_lot_kg: Decimal | None
    margin_percent: Decimal = Decimal('0')


@dataclass(frozen=True)
class LotPlan:
    lots_needed: int
    flour_needed_kg: Decimal
    estimated_units: int
    mass_total_kg: Decimal
    units_per_lot: Decimal
    capacity_with_margin: Decimal

    def as_dict(self) -> dict:
        return {
            'lots_needed': self.lots_needed,
            'flour_needed_kg': str(self.flour_needed_kg),
            'estimated_units': self.estimated_units,
            'mass_total_kg': str(self.mass_total_kg),
            'units_per_lot': str(self.units_per_lot),
            'capacity_with_margin': str(self.capacity_with_margin),
        }


def _as_decimal(value) -> Decimal | None:
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def _validate(params: LotSizingInput) -> tuple[Decimal, Decimal, Decimal, Decimal]:
    mass = _as_decimal(params.mass_per_lot_kg)
    avg = _as_decimal(params.operational_average_weight_g)
    flour = _as_decimal(params.flour_per_lot_kg)
    margin = _as_decimal(params.margin_percent) or Decimal('0')

    if avg is None or avg <= 0:
        raise ConfigurationError('Operational average weight must be configured and greater than zero')
    if mass is None or mass <= 0:
        raise ConfigurationError('Mass generated per lot must be configured and greater than zero')
    if flour is None or flour < 0:
        raise ConfigurationError('Flour per lot must be configured')
    if params.demand_units < 0:
        raise ValidationError('Demand cannot be negative')
    if margin < 0:
        raise ValidationError('Margin percent cannot be negative')
    return mass, avg, flour, margin


def units_per_lot(mass_per_lot_kg: Decimal, operational_average_weight_g: Decimal) -> Decimal:
    return mass_per_lot_kg / (operational_average_weight_g / Decimal('1000'))


def compute_lot_plan(params: LotSizingInput) -> LotPlan:
    mass, avg, flour, margin = _validate(params)

    per_lot = units_per_lot(mass, avg)
    # Margin absorbs calibration noise so a small overage does not force an extra lot.
    capacity = per_lot * (Decimal('1') + margin / Decimal('100'))

    if params.demand_units == 0:
        lots = 0
    else:
        lots = int((Decimal(params.demand_units) / capacity).to_integral_value(rounding=ROUND_CEILING))

    # Realistic yield, not the margin-adjusted capacity.
    estimated = int((Decimal(lots) * per_lot).to_integral_value(rounding=ROUND_FLOOR))

    return LotPlan(
        lots_needed=lots,
        flour_needed_kg=Decimal(lots) * flour,
        estimated_units=estimated,
        mass_total_kg=Decimal(lots) * mass,
        units_per_lot=per_lot,
        capacity_with_margin=capacity,
    )


def extra_lots_for_shortfall(
    shortfall_units: int,
    *,
    mass_per_lot_kg: Decimal | None,
    operational_average_weight_g: Decimal | None,
    flour_per_lot_kg: Decimal | None,
    margin_percent: Decimal = Decimal('0'),
) -> LotPlan:
    return compute_lot_plan(
        LotSizingInput(
            demand_units=max(shortfall_units, 0),
            mass_per_lot_kg=mass_per_lot_kg,
            operational_average_weight_g=operational_average_weight_g,
            flour_per_lot_kg=flour_per_lot_kg,
            margin_percent=margin_percent,
        )
    )
