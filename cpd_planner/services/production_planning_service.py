from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from cpd_planner.models import ItemUnitType, PortionedItem, ProductionRecord, ProductionStatus
from cpd_planner.services.audit_service import log_audit
from cpd_planner.services.demand_freeze_service import list_snapshot_rows
from cpd_planner.services.demand_service import is_day_frozen
from cpd_planner.services.lot_sizing_service import LotPlan, LotSizingInput, compute_lot_plan
from cpd_planner.services.outcomes import ConfigurationError, NotFoundError, Outcome
from cpd_planner.services.production_settings_service import resolve_production_params

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlannedProduction:
    record_id: int
    item_id: int
    item_name: str
    demand_units: int
    lots_planned: int
    expected_units: int
    lot_plan: LotPlan | None
    created: bool

    def as_dict(self) -> dict:
        return {
            'record_id': self.record_id,
            'item_id': self.item_id,
            'item_name': self.item_name,
            'demand_units': self.demand_units,
            'lots_planned': self.lots_planned,
            'expected_units': self.expected_units,
            'lot_plan': self.lot_plan.as_dict() if self.lot_plan else None,
            'created': self.created,
        }


@dataclass(frozen=True)
class PlanningResult:
    outcome: Outcome
    operational_day: date
    planned: list[PlannedProduction]
    reason: str | None = None


@dataclass(frozen=True)
class _ItemPlan:
    item: PortionedItem
    breakdown: list[dict]
    demand_units: int
    lots_planned: int
    expected_units: int
    lot_plan: LotPlan | None


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def planning_weight_g(item: PortionedItem) -> Decimal | None:
    # Before the first calibration sample exists, plan from the configured target weight.
    if item.operational_average_weight_g:
        return Decimal(item.operational_average_weight_g)
    if item.target_weight_g:
        return Decimal(item.target_weight_g)
    return None


def lot_plan_for_item(item: PortionedItem, *, demand_units: int, margin_percent: Decimal) -> LotPlan:
    if item.unit_type != ItemUnitType.LOT:
        raise ConfigurationError(f'Item {item.name} is not produced in lots')
    return compute_lot_plan(
        LotSizingInput(
            demand_units=demand_units,
            mass_per_lot_kg=item.mass_generated_per_lot_kg,
            operational_average_weight_g=planning_weight_g(item),
            flour_per_lot_kg=item.flour_per_lot_kg,
            margin_percent=margin_percent,
        )
    )


def preview_lot_plan(
    db: Session,
    *,
    organization_id: int,
    item_id: int,
    demand_units: int,
    margin_percent: Decimal | None = None,
) -> LotPlan:
    item = db.execute(
        select(PortionedItem).where(PortionedItem.id == item_id, PortionedItem.organization_id == organization_id)
    ).scalar_one_or_none()
    if not item:
        raise NotFoundError('Item not found')
    if margin_percent is None:
        margin_percent = resolve_production_params(db, organization_id=organization_id).lot_margin_percent
    return lot_plan_for_item(item, demand_units=demand_units, margin_percent=margin_percent)


def _snapshot_breakdown_by_item(db: Session, *, organization_id: int, operational_day: date) -> dict[int, list[dict]]:
    by_item: dict[int, list[dict]] = {}
    for row in list_snapshot_rows(db, organization_id=organization_id, operational_day=operational_day):
        by_item.setdefault(row.item_id, []).append(
            {'store_id': row.store_id, 'store_name': row.store_name, 'quantity': row.quantity}
        )
    return by_item


def _existing_record(db: Session, *, organization_id: int, item_id: int, operational_day: date) -> ProductionRecord | None:
    return db.execute(
        select(ProductionRecord).where(
            ProductionRecord.organization_id == organization_id,
            ProductionRecord.item_id == item_id,
            ProductionRecord.operational_day == operational_day,
        )
    ).scalar_one_or_none()


def plan_production_for_day(db: Session, *, organization_id: int, operational_day: date) -> PlanningResult:
    if not is_day_frozen(db, organization_id=organization_id, operational_day=operational_day):
        return PlanningResult(
            outcome=Outcome.DEFERRED,
            operational_day=operational_day,
            planned=[],
            reason='Demand is not frozen yet for this operational day',
        )

    params = resolve_production_params(db, organization_id=organization_id)
    by_item = _snapshot_breakdown_by_item(db, organization_id=organization_id, operational_day=operational_day)
    if not by_item:
        return PlanningResult(outcome=Outcome.DEFERRED, operational_day=operational_day, planned=[], reason='No frozen demand')

    items = {
        item.id: item
        for item in db.execute(select(PortionedItem).where(PortionedItem.id.in_(list(by_item.keys())))).scalars().all()
    }

    # Compute every plan before writing so a configuration error leaves nothing half-planned.
    item_plans: list[_ItemPlan] = []
    for item_id, breakdown in by_item.items():
        item = items.get(item_id)
        if item is None:
            raise NotFoundError(f'Item {item_id} not found')
        demand_units = sum(entry['quantity'] for entry in breakdown)
        if item.unit_type == ItemUnitType.LOT:
            plan = lot_plan_for_item(item, demand_units=demand_units, margin_percent=params.lot_margin_percent)
            lots_planned, expected_units = plan.lots_needed, plan.estimated_units
        else:
            plan = None
            lots_planned, expected_units = 0, demand_units
        item_plans.append(
            _ItemPlan(
                item=item,
                breakdown=breakdown,
                demand_units=demand_units,
                lots_planned=lots_planned,
                expected_units=expected_units,
                lot_plan=plan,
            )
        )

    planned: list[PlannedProduction] = []
    for item_plan in item_plans:
        item = item_plan.item
        record = _existing_record(db, organization_id=organization_id, item_id=item.id, operational_day=operational_day)
        created = False
        if record is None:
            try:
                with db.begin_nested():
                    record = ProductionRecord(
                        organization_id=organization_id,
                        item_id=item.id,
                        item_name=item.name,
                        operational_day=operational_day,
                        status=ProductionStatus.TO_PRODUCE,
                        lots_planned=item_plan.lots_planned,
                        demand_units=item_plan.demand_units,
                        expected_units=item_plan.expected_units,
                        store_breakdown=item_plan.breakdown,
                        created_at=_now(),
                        updated_at=_now(),
                    )
                    db.add(record)
                    db.flush()
                created = True
            except IntegrityError:
                logger.info('production record for item %s on %s created concurrently', item.id, operational_day)
                record = _existing_record(
                    db, organization_id=organization_id, item_id=item.id, operational_day=operational_day
                )
                if record is None:
                    raise

        planned.append(
            PlannedProduction(
                record_id=record.id,
                item_id=item.id,
                item_name=item.name,
                demand_units=record.demand_units,
                lots_planned=record.lots_planned,
                expected_units=record.expected_units,
                lot_plan=item_plan.lot_plan,
                created=created,
            )
        )

    created_count = sum(1 for row in planned if row.created)
    if created_count:
        log_audit(
            db,
            organization_id=organization_id,
            action='PRODUCTION_PLANNED',
            metadata={
                'operational_day': operational_day.isoformat(),
                'records_created': created_count,
                'items': [row.item_id for row in planned if row.created],
            },
        )
    return PlanningResult(
        outcome=Outcome.SUCCESS if created_count else Outcome.DEFERRED,
        operational_day=operational_day,
        planned=planned,
        reason=None if created_count else 'Production already planned for this operational day',
    )
