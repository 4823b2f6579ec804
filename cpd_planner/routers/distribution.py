from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from cpd_planner.db import get_db
from cpd_planner.dependencies import raise_for_failed
from cpd_planner.services.distribution_service import list_manifests_awaiting_review
from cpd_planner.services.reconciliation_service import run_reconciliation_sweep

router = APIRouter(prefix='/organizations/{organization_id}', tags=['distribution'])


class ReconcileIn(BaseModel):
    today: date | None = None
    window_days: int | None = Field(default=None, ge=0)


@router.post('/distribution/reconcile')
def post_reconcile(organization_id: int, payload: ReconcileIn | None = None, db: Session = Depends(get_db)):
    try:
        result = run_reconciliation_sweep(
            db,
            organization_id=organization_id,
            today=payload.today if payload else None,
            window_days=payload.window_days if payload else None,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    raise_for_failed(result.outcome, result.reason)
    db.commit()
    return result.as_dict()


@router.get('/manifests')
def get_manifests(organization_id: int, db: Session = Depends(get_db)):
    return {'manifests': list_manifests_awaiting_review(db, organization_id=organization_id)}
