from __future__ import annotations

from datetime import date
from decimal import Decimal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from cpd_planner.db import get_db
from cpd_planner.dependencies import http_error_for, raise_for_failed
from cpd_planner.services.production_planning_service import plan_production_for_day, preview_lot_plan
from cpd_planner.services.production_record_service import (
    confirm_extra_lots,
    finalize_production,
    request_extra_production,
    start_portioning,
    start_prep,
)

router = APIRouter(prefix='/organizations/{organization_id}', tags=['production'])


class LotPlanIn(BaseModel):
    item_id: int
    demand_units: int = Field(ge=0)
    margin_percent: Decimal | None = Field(default=None, ge=0)


class ActorIn(BaseModel):
    actor_name: str | None = None


class FinalizeIn(BaseModel):
    actual_units: int = Field(gt=0)
    final_weight_g: Decimal = Field(ge=0)
    scrap_weight_g: Decimal = Field(default=Decimal('0'), ge=0)
    lots_produced: int | None = Field(default=None, ge=0)
    actor_name: str | None = None


class ExtraProductionIn(BaseModel):
    extra_units: int = Field(gt=0)
    reason: str
    store_id: int | None = None
    actor_name: str | None = None


@router.post('/days/{day}/plan')
def post_plan(organization_id: int, day: date, db: Session = Depends(get_db)):
    try:
        result = plan_production_for_day(db, organization_id=organization_id, operational_day=day)
    except ValueError as exc:
        raise http_error_for(exc) from exc
    db.commit()
    return {
        'outcome': result.outcome.value,
        'operational_day': result.operational_day.isoformat(),
        'reason': result.reason,
        'planned': [row.as_dict() for row in result.planned],
    }


@router.post('/lot-plan')
def post_lot_plan(organization_id: int, payload: LotPlanIn, db: Session = Depends(get_db)):
    try:
        plan = preview_lot_plan(
            db,
            organization_id=organization_id,
            item_id=payload.item_id,
            demand_units=payload.demand_units,
            margin_percent=payload.margin_percent,
        )
    except ValueError as exc:
        raise http_error_for(exc) from exc
    return plan.as_dict()


@router.post('/production-records/{record_id}/start-prep')
def post_start_prep(
    organization_id: int, record_id: int, payload: ActorIn | None = None, db: Session = Depends(get_db)
):
    try:
        result = start_prep(
            db,
            record_id=record_id,
            organization_id=organization_id,
            actor_name=payload.actor_name if payload else None,
        )
    except ValueError as exc:
        raise http_error_for(exc) from exc
    db.commit()
    return result.as_dict()


@router.post('/production-records/{record_id}/start-portioning')
def post_start_portioning(
    organization_id: int, record_id: int, payload: ActorIn | None = None, db: Session = Depends(get_db)
):
    try:
        result = start_portioning(
            db,
            record_id=record_id,
            organization_id=organization_id,
            actor_name=payload.actor_name if payload else None,
        )
    except ValueError as exc:
        raise http_error_for(exc) from exc
    db.commit()
    return result.as_dict()


@router.post('/production-records/{record_id}/finalize')
def post_finalize(organization_id: int, record_id: int, payload: FinalizeIn, db: Session = Depends(get_db)):
    try:
        result = finalize_production(
            db,
            record_id=record_id,
            organization_id=organization_id,
            actual_units=payload.actual_units,
            final_weight_g=payload.final_weight_g,
            scrap_weight_g=payload.scrap_weight_g,
            lots_produced=payload.lots_produced,
            actor_name=payload.actor_name,
        )
    except ValueError as exc:
        raise http_error_for(exc) from exc
    raise_for_failed(result.outcome, result.reason)
    db.commit()
    return result.as_dict()


@router.post('/production-records/{record_id}/extra')
def post_extra_production(
    organization_id: int, record_id: int, payload: ExtraProductionIn, db: Session = Depends(get_db)
):
    try:
        result = request_extra_production(
            db,
            record_id=record_id,
            organization_id=organization_id,
            extra_units=payload.extra_units,
            reason=payload.reason,
            store_id=payload.store_id,
            actor_name=payload.actor_name,
        )
    except ValueError as exc:
        raise http_error_for(exc) from exc
    db.commit()
    return result.as_dict()


@router.post('/production-records/{record_id}/extra/confirm')
def post_confirm_extra(
    organization_id: int, record_id: int, payload: ActorIn | None = None, db: Session = Depends(get_db)
):
    try:
        result = confirm_extra_lots(
            db,
            record_id=record_id,
            organization_id=organization_id,
            actor_name=payload.actor_name if payload else None,
        )
    except ValueError as exc:
        raise http_error_for(exc) from exc
    db.commit()
    return result.as_dict()
