from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from cpd_planner.models import ItemUnitType, PortionedItem, ProductionRecord, ProductionStatus, Store
from cpd_planner.services.audit_service import log_audit
from cpd_planner.services.calibration_service import CalibrationResult, record_calibration, require_weight_band
from cpd_planner.services.central_stock_service import increment_stock
from cpd_planner.services.distribution_service import DistributionRequest, DistributionResult, trigger_distribution
from cpd_planner.services.lot_sizing_service import extra_lots_for_shortfall
from cpd_planner.services.notification_service import ALERT_PRODUCTION_SHORTFALL, emit_alert
from cpd_planner.services.outcomes import (
    NotFoundError,
    Outcome,
    TransientStoreError,
    ValidationError,
    translate_store_errors,
)
from cpd_planner.services.production_planning_service import planning_weight_g
from cpd_planner.services.production_settings_service import resolve_production_params

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransitionResult:
    outcome: Outcome
    record_id: int
    status: ProductionStatus

    def as_dict(self) -> dict:
        return {'outcome': self.outcome.value, 'record_id': self.record_id, 'status': self.status.value}


@dataclass(frozen=True)
class FinalizeResult:
    outcome: Outcome
    record_id: int
    actual_units: int | None = None
    central_stock: int | None = None
    calibration: CalibrationResult | None = None
    distribution: DistributionResult | None = None
    reason: str | None = None

    def as_dict(self) -> dict:
        return {
            'outcome': self.outcome.value,
            'record_id': self.record_id,
            'actual_units': self.actual_units,
            'central_stock': self.central_stock,
            'calibration': self.calibration.as_dict() if self.calibration else None,
            'distribution': self.distribution.as_dict() if self.distribution else None,
            'reason': self.reason,
        }


@dataclass(frozen=True)
class ExtraProductionResult:
    record_id: int
    demand_units: int
    expected_units: int
    covered: bool
    shortfall_units: int
    suggested_extra_lots: int
    lots_planned: int

    def as_dict(self) -> dict:
        return {
            'record_id': self.record_id,
            'demand_units': self.demand_units,
            'expected_units': self.expected_units,
            'covered': self.covered,
            'shortfall_units': self.shortfall_units,
            'suggested_extra_lots': self.suggested_extra_lots,
            'lots_planned': self.lots_planned,
        }


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _get_record(db: Session, *, record_id: int, organization_id: int | None = None) -> ProductionRecord:
    stmt = select(ProductionRecord).where(ProductionRecord.id == record_id)
    if organization_id is not None:
        stmt = stmt.where(ProductionRecord.organization_id == organization_id)
    record = db.execute(stmt).scalar_one_or_none()
    if not record:
        raise NotFoundError('Production record not found')
    return record


def _get_item(db: Session, *, item_id: int) -> PortionedItem:
    item = db.execute(select(PortionedItem).where(PortionedItem.id == item_id)).scalar_one_or_none()
    if not item:
        raise NotFoundError('Item not found')
    return item


def _transition(
    db: Session,
    *,
    record_id: int,
    from_status: ProductionStatus,
    to_status: ProductionStatus,
    values: dict,
    organization_id: int | None = None,
) -> bool:
    """Move a record between adjacent states. Returns False when another caller already did."""
    stmt = update(ProductionRecord).where(
        ProductionRecord.id == record_id,
        ProductionRecord.status == from_status,
    )
    if organization_id is not None:
        stmt = stmt.where(ProductionRecord.organization_id == organization_id)
    result = db.execute(
        stmt.values(status=to_status, updated_at=_now(), **values).execution_options(synchronize_session=False)
    )
    if result.rowcount == 1:
        return True

    current = _get_record(db, record_id=record_id, organization_id=organization_id)
    db.refresh(current)
    if current.status == to_status:
        return False
    raise ValidationError(f'Cannot move production from {current.status.value} to {to_status.value}')


def _advance(
    db: Session,
    *,
    record_id: int,
    organization_id: int | None,
    from_status: ProductionStatus,
    to_status: ProductionStatus,
    timestamp_field: str,
    actor_name: str | None,
) -> TransitionResult:
    moved = _transition(
        db,
        record_id=record_id,
        from_status=from_status,
        to_status=to_status,
        values={timestamp_field: _now()},
        organization_id=organization_id,
    )
    record = _get_record(db, record_id=record_id, organization_id=organization_id)
    db.refresh(record)
    if moved:
        log_audit(
            db,
            organization_id=record.organization_id,
            action=f'PRODUCTION_{to_status.value}',
            actor_name=actor_name,
            metadata={'production_record_id': record.id, 'item_id': record.item_id},
        )
    return TransitionResult(
        outcome=Outcome.SUCCESS if moved else Outcome.DEFERRED,
        record_id=record.id,
        status=record.status,
    )


def start_prep(
    db: Session, *, record_id: int, organization_id: int | None = None, actor_name: str | None = None
) -> TransitionResult:
    return _advance(
        db,
        record_id=record_id,
        organization_id=organization_id,
        from_status=ProductionStatus.TO_PRODUCE,
        to_status=ProductionStatus.IN_PREP,
        timestamp_field='prep_started_at',
        actor_name=actor_name,
    )


def start_portioning(
    db: Session, *, record_id: int, organization_id: int | None = None, actor_name: str | None = None
) -> TransitionResult:
    return _advance(
        db,
        record_id=record_id,
        organization_id=organization_id,
        from_status=ProductionStatus.IN_PREP,
        to_status=ProductionStatus.IN_PORTIONING,
        timestamp_field='portioning_started_at',
        actor_name=actor_name,
    )


def finalize_production(
    db: Session,
    *,
    record_id: int,
    actual_units: int,
    final_weight_g: Decimal,
    scrap_weight_g: Decimal,
    lots_produced: int | None = None,
    organization_id: int | None = None,
    actor_name: str | None = None,
) -> FinalizeResult:
    if actual_units <= 0:
        raise ValidationError('Actual units must be greater than zero')
    final_weight_g = Decimal(str(final_weight_g))
    scrap_weight_g = Decimal(str(scrap_weight_g))
    if final_weight_g < 0 or scrap_weight_g < 0:
        raise ValidationError('Weights cannot be negative')
    if lots_produced is not None and lots_produced < 0:
        raise ValidationError('Lots produced cannot be negative')

    record = _get_record(db, record_id=record_id, organization_id=organization_id)
    if record.status == ProductionStatus.FINISHED:
        return FinalizeResult(outcome=Outcome.DEFERRED, record_id=record.id, reason='Production already finished')

    item = _get_item(db, item_id=record.item_id)
    is_lot_item = item.unit_type == ItemUnitType.LOT
    params = resolve_production_params(db, organization_id=record.organization_id)
    if is_lot_item:
        require_weight_band(item)
    lots = lots_produced if lots_produced is not None else record.lots_planned

    calibration = None
    try:
        with translate_store_errors('Finalize production'):
            with db.begin_nested():
                moved = _transition(
                    db,
                    record_id=record.id,
                    from_status=ProductionStatus.IN_PORTIONING,
                    to_status=ProductionStatus.FINISHED,
                    values={
                        'actual_units': actual_units,
                        'lots_produced': lots,
                        'final_weight_kg': final_weight_g / Decimal('1000'),
                        'scrap_weight_kg': scrap_weight_g / Decimal('1000'),
                        'finished_at': _now(),
                    },
                )
                if moved:
                    db.refresh(record)
                    stock = increment_stock(
                        db, organization_id=record.organization_id, item_id=record.item_id, quantity=actual_units
                    )
                    if is_lot_item:
                        calibration = record_calibration(
                            db,
                            record=record,
                            item=item,
                            lots_produced=lots,
                            actual_units=actual_units,
                            final_weight_g=final_weight_g,
                            scrap_weight_g=scrap_weight_g,
                            params=params,
                        )
                        if item.flour_per_lot_kg is not None:
                            record.flour_consumed_kg = Decimal(lots) * Decimal(item.flour_per_lot_kg)
                        record.mass_generated_kg = calibration.mass_used_g / Decimal('1000')
                        record.avg_real_weight_g = calibration.avg_real_weight_g
                        record.band_status = calibration.band_status
                        db.flush()
    except TransientStoreError as exc:
        logger.warning('finalize failed for record %s: %s', record_id, exc)
        return FinalizeResult(outcome=Outcome.FAILED, record_id=record_id, reason=str(exc))

    if not moved:
        return FinalizeResult(outcome=Outcome.DEFERRED, record_id=record.id, reason='Production already finished')

    log_audit(
        db,
        organization_id=record.organization_id,
        action='PRODUCTION_FINISHED',
        actor_name=actor_name,
        metadata={
            'production_record_id': record.id,
            'item_id': record.item_id,
            'lots_produced': lots,
            'expected_units': record.expected_units,
            'actual_units': actual_units,
            'central_stock': stock,
        },
    )
    logger.info(
        'finished production record=%s item=%s actual=%s expected=%s',
        record.id,
        record.item_id,
        actual_units,
        record.expected_units,
    )

    distribution = trigger_distribution(
        db,
        DistributionRequest(
            organization_id=record.organization_id,
            production_record_id=record.id,
            item_id=record.item_id,
            item_name=record.item_name,
            store_breakdown=list(record.store_breakdown or []),
            actor_name=actor_name,
        ),
    )
    return FinalizeResult(
        outcome=Outcome.SUCCESS,
        record_id=record.id,
        actual_units=actual_units,
        central_stock=stock,
        calibration=calibration,
        distribution=distribution,
    )


def _shortfall_lots(db: Session, *, record: ProductionRecord, item: PortionedItem, shortfall: int):
    if shortfall <= 0 or item.unit_type != ItemUnitType.LOT:
        return None
    params = resolve_production_params(db, organization_id=record.organization_id)
    return extra_lots_for_shortfall(
        shortfall,
        mass_per_lot_kg=item.mass_generated_per_lot_kg,
        operational_average_weight_g=planning_weight_g(item),
        flour_per_lot_kg=item.flour_per_lot_kg,
        margin_percent=params.lot_margin_percent,
    )


def _extra_result(record: ProductionRecord) -> ExtraProductionResult:
    return ExtraProductionResult(
        record_id=record.id,
        demand_units=record.demand_units,
        expected_units=record.expected_units,
        covered=record.shortfall_units == 0,
        shortfall_units=record.shortfall_units,
        suggested_extra_lots=record.suggested_extra_lots,
        lots_planned=record.lots_planned,
    )


def request_extra_production(
    db: Session,
    *,
    record_id: int,
    extra_units: int,
    reason: str,
    store_id: int | None = None,
    organization_id: int | None = None,
    actor_name: str | None = None,
) -> ExtraProductionResult:
    """Add incremental demand to a planned production.

    When the planned yield no longer covers demand the shortfall and a suggested number of
    extra lots are recorded and an alert goes out. Lots are only added by confirm_extra_lots.
    """
    if extra_units <= 0:
        raise ValidationError('Extra units must be greater than zero')
    reason = (reason or '').strip()
    if not reason:
        raise ValidationError('A reason is required for extra production')

    record = _get_record(db, record_id=record_id, organization_id=organization_id)
    if record.status == ProductionStatus.FINISHED:
        raise ValidationError('Production already finished; extra demand needs a new record')
    item = _get_item(db, item_id=record.item_id)

    breakdown = [dict(entry) for entry in record.store_breakdown or []]
    if store_id is not None:
        store = db.execute(
            select(Store).where(Store.id == store_id, Store.organization_id == record.organization_id)
        ).scalar_one_or_none()
        if not store:
            raise NotFoundError('Store not found')
        if store.is_cpd:
            raise ValidationError('Extra production must be requested for a store')
        entry = next((row for row in breakdown if int(row['store_id']) == store_id), None)
        if entry is None:
            breakdown.append({'store_id': store.id, 'store_name': store.name, 'quantity': extra_units})
        else:
            entry['quantity'] = int(entry['quantity']) + extra_units

    new_demand = record.demand_units + extra_units
    shortfall = max(new_demand - record.expected_units, 0)
    extra_plan = _shortfall_lots(db, record=record, item=item, shortfall=shortfall)

    record.store_breakdown = breakdown
    record.demand_units = new_demand
    record.extra_units_requested = record.extra_units_requested + extra_units
    record.shortfall_units = shortfall
    record.suggested_extra_lots = extra_plan.lots_needed if extra_plan else 0
    record.updated_at = _now()
    db.flush()

    log_audit(
        db,
        organization_id=record.organization_id,
        action='EXTRA_PRODUCTION_REQUESTED',
        actor_name=actor_name,
        metadata={
            'production_record_id': record.id,
            'item_id': record.item_id,
            'store_id': store_id,
            'extra_units': extra_units,
            'reason': reason,
            'demand_units': new_demand,
            'expected_units': record.expected_units,
            'shortfall_units': shortfall,
        },
    )
    if shortfall > 0:
        emit_alert(
            db,
            organization_id=record.organization_id,
            kind=ALERT_PRODUCTION_SHORTFALL,
            message=(
                f'{record.item_name}: demand {new_demand} exceeds planned yield {record.expected_units} '
                f'by {shortfall} units; suggested extra lots: {record.suggested_extra_lots}'
            ),
            payload={
                'production_record_id': record.id,
                'shortfall_units': shortfall,
                'suggested_extra_lots': record.suggested_extra_lots,
            },
        )
    return _extra_result(record)


def confirm_extra_lots(
    db: Session, *, record_id: int, organization_id: int | None = None, actor_name: str | None = None
) -> ExtraProductionResult:
    record = _get_record(db, record_id=record_id, organization_id=organization_id)
    if record.status == ProductionStatus.FINISHED:
        raise ValidationError('Production already finished')
    if record.shortfall_units <= 0:
        raise ValidationError('No shortfall to confirm')
    item = _get_item(db, item_id=record.item_id)

    shortfall = record.shortfall_units
    extra_plan = _shortfall_lots(db, record=record, item=item, shortfall=shortfall)
    if extra_plan is not None:
        added_lots = extra_plan.lots_needed
        added_units = extra_plan.estimated_units
    else:
        added_lots = 0
        added_units = shortfall

    record.lots_planned = record.lots_planned + added_lots
    record.expected_units = record.expected_units + added_units
    record.shortfall_units = 0
    record.suggested_extra_lots = 0
    record.updated_at = _now()
    db.flush()

    log_audit(
        db,
        organization_id=record.organization_id,
        action='EXTRA_LOTS_CONFIRMED',
        actor_name=actor_name,
        metadata={
            'production_record_id': record.id,
            'lots_added': added_lots,
            'units_added': added_units,
            'lots_planned': record.lots_planned,
            'expected_units': record.expected_units,
        },
    )
    return _extra_result(record)
