from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from cpd_planner.db import get_db
from cpd_planner.dependencies import get_client_ip, http_error_for, raise_for_failed
from cpd_planner.models import FreezeTrigger
from cpd_planner.services.demand_freeze_service import attempt_automatic_freeze, freeze, get_day_freeze_status
from cpd_planner.services.demand_service import submit_store_count

router = APIRouter(prefix='/organizations/{organization_id}', tags=['demand'])


class StoreCountIn(BaseModel):
    store_id: int
    item_id: int
    operational_day: date
    final_leftover: int = Field(ge=0)
    ideal_quantity: int = Field(ge=0)
    submitted_by: str | None = None


class FreezeIn(BaseModel):
    actor_name: str | None = None


@router.post('/counts')
def post_store_count(
    organization_id: int,
    payload: StoreCountIn,
    request: Request,
    db: Session = Depends(get_db),
):
    try:
        count = submit_store_count(
            db,
            organization_id=organization_id,
            store_id=payload.store_id,
            item_id=payload.item_id,
            operational_day=payload.operational_day,
            final_leftover=payload.final_leftover,
            ideal_quantity=payload.ideal_quantity,
            submitted_by=payload.submitted_by,
            ip=get_client_ip(request),
        )
    except ValueError as exc:
        raise http_error_for(exc) from exc
    db.commit()
    return {
        'id': count.id,
        'store_id': count.store_id,
        'item_id': count.item_id,
        'operational_day': count.operational_day.isoformat(),
        'final_leftover': count.final_leftover,
        'ideal_quantity': count.ideal_quantity,
        'to_produce': count.to_produce,
    }


@router.get('/days/{day}/freeze')
def get_freeze(organization_id: int, day: date, db: Session = Depends(get_db)):
    try:
        view = get_day_freeze_status(db, organization_id=organization_id, operational_day=day)
    except ValueError as exc:
        raise http_error_for(exc) from exc
    return {
        'organization_id': view.organization_id,
        'operational_day': view.operational_day.isoformat(),
        'local_time': view.local_time,
        'cutoff_time': view.cutoff_time,
        'status': view.status.value,
    }


@router.post('/days/{day}/freeze')
def post_freeze(
    organization_id: int,
    day: date,
    request: Request,
    payload: FreezeIn | None = None,
    db: Session = Depends(get_db),
):
    try:
        result = freeze(
            db,
            organization_id=organization_id,
            operational_day=day,
            trigger=FreezeTrigger.MANUAL,
            actor_name=payload.actor_name if payload else None,
            ip=get_client_ip(request),
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    raise_for_failed(result.outcome, result.reason)
    db.commit()
    return result.as_dict()


@router.post('/freeze/auto')
def post_auto_freeze(organization_id: int, db: Session = Depends(get_db)):
    try:
        result = attempt_automatic_freeze(db, organization_id=organization_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    raise_for_failed(result.outcome, result.reason)
    db.commit()
    return result.as_dict()
