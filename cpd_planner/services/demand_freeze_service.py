from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from enum import Enum

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from cpd_planner.models import DemandFreeze, DemandSnapshot, FreezeTrigger, Organization
from cpd_planner.services.audit_service import log_audit
from cpd_planner.services.demand_service import is_day_frozen, list_outstanding_demand
from cpd_planner.services.operational_day_service import local_hhmm, operational_day_for
from cpd_planner.services.outcomes import Outcome, TransientStoreError, translate_store_errors
from cpd_planner.services.production_settings_service import resolve_production_params

logger = logging.getLogger(__name__)


class FreezeStatus(str, Enum):
    OPEN = 'OPEN'
    PAST_CUTOFF_PENDING = 'PAST_CUTOFF_PENDING'
    FROZEN = 'FROZEN'


@dataclass(frozen=True)
class FreezeResult:
    outcome: Outcome
    organization_id: int
    # None when the organization failed before its operational day could be resolved.
    operational_day: date | None
    items_frozen: int = 0
    rows_frozen: int = 0
    reason: str | None = None

    def as_dict(self) -> dict:
        return {
            'outcome': self.outcome.value,
            'organization_id': self.organization_id,
            'operational_day': self.operational_day.isoformat() if self.operational_day else None,
            'items_frozen': self.items_frozen,
            'rows_frozen': self.rows_frozen,
            'reason': self.reason,
        }


@dataclass(frozen=True)
class FreezeStatusView:
    organization_id: int
    operational_day: date
    local_time: str
    cutoff_time: str
    status: FreezeStatus


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def compute_status(now_local_hhmm: str, cutoff_hhmm: str, has_snapshot: bool) -> FreezeStatus:
    if has_snapshot:
        return FreezeStatus.FROZEN
    # Both values are zero-padded HH:MM, so string order is time order.
    if now_local_hhmm >= cutoff_hhmm:
        return FreezeStatus.PAST_CUTOFF_PENDING
    return FreezeStatus.OPEN


def get_freeze_status(db: Session, *, organization_id: int, now: datetime | None = None) -> FreezeStatusView:
    params = resolve_production_params(db, organization_id=organization_id)
    now = now or _now()
    day = operational_day_for(now, params.time_zone)
    hhmm = local_hhmm(now, params.time_zone)
    frozen = is_day_frozen(db, organization_id=organization_id, operational_day=day)
    return FreezeStatusView(
        organization_id=organization_id,
        operational_day=day,
        local_time=hhmm,
        cutoff_time=params.cutoff_time,
        status=compute_status(hhmm, params.cutoff_time, frozen),
    )


def get_day_freeze_status(
    db: Session, *, organization_id: int, operational_day: date, now: datetime | None = None
) -> FreezeStatusView:
    view = get_freeze_status(db, organization_id=organization_id, now=now)
    if operational_day == view.operational_day:
        return view
    if is_day_frozen(db, organization_id=organization_id, operational_day=operational_day):
        status = FreezeStatus.FROZEN
    elif operational_day < view.operational_day:
        status = FreezeStatus.PAST_CUTOFF_PENDING
    else:
        status = FreezeStatus.OPEN
    return FreezeStatusView(
        organization_id=organization_id,
        operational_day=operational_day,
        local_time=view.local_time,
        cutoff_time=view.cutoff_time,
        status=status,
    )


def _already_frozen(organization_id: int, operational_day: date) -> FreezeResult:
    return FreezeResult(
        outcome=Outcome.DEFERRED,
        organization_id=organization_id,
        operational_day=operational_day,
        reason='Demand already frozen for this operational day',
    )


def freeze(
    db: Session,
    *,
    organization_id: int,
    operational_day: date,
    trigger: FreezeTrigger = FreezeTrigger.MANUAL,
    actor_name: str | None = None,
    ip: str | None = None,
) -> FreezeResult:
    try:
        with translate_store_errors('Demand freeze'):
            if is_day_frozen(db, organization_id=organization_id, operational_day=operational_day):
                return _already_frozen(organization_id, operational_day)
            with db.begin_nested():
                demand = list_outstanding_demand(db, organization_id=organization_id, operational_day=operational_day)
                frozen_at = _now()
                items_frozen = len({row.item_id for row in demand})
                # The marker row carries the (organization, day) unique constraint; write it first.
                db.add(
                    DemandFreeze(
                        organization_id=organization_id,
                        operational_day=operational_day,
                        trigger=trigger,
                        items_frozen=items_frozen,
                        rows_frozen=len(demand),
                        frozen_at=frozen_at,
                    )
                )
                db.flush()
                db.add_all(
                    [
                        DemandSnapshot(
                            organization_id=organization_id,
                            operational_day=operational_day,
                            item_id=row.item_id,
                            store_id=row.store_id,
                            store_name=row.store_name,
                            quantity=row.quantity,
                            frozen_at=frozen_at,
                        )
                        for row in demand
                    ]
                )
                db.flush()
    except IntegrityError:
        logger.info('concurrent freeze won for org=%s day=%s', organization_id, operational_day)
        return _already_frozen(organization_id, operational_day)
    except TransientStoreError as exc:
        logger.warning('freeze aborted for org=%s day=%s: %s', organization_id, operational_day, exc)
        return FreezeResult(
            outcome=Outcome.FAILED,
            organization_id=organization_id,
            operational_day=operational_day,
            reason=str(exc),
        )

    log_audit(
        db,
        organization_id=organization_id,
        action='DEMAND_FROZEN',
        actor_name=actor_name,
        ip=ip,
        metadata={
            'operational_day': operational_day.isoformat(),
            'trigger': trigger.value,
            'items_frozen': items_frozen,
            'rows_frozen': len(demand),
        },
    )
    logger.info(
        'froze demand org=%s day=%s items=%s rows=%s trigger=%s',
        organization_id,
        operational_day,
        items_frozen,
        len(demand),
        trigger.value,
    )
    return FreezeResult(
        outcome=Outcome.SUCCESS,
        organization_id=organization_id,
        operational_day=operational_day,
        items_frozen=items_frozen,
        rows_frozen=len(demand),
    )


def attempt_automatic_freeze(db: Session, *, organization_id: int, now: datetime | None = None) -> FreezeResult:
    """Freeze the current operational day once the facility clock passes the cutoff.

    Safe to call on every poll: the freeze itself is idempotent, so no session latch is kept.
    """
    view = get_freeze_status(db, organization_id=organization_id, now=now)
    if view.status != FreezeStatus.PAST_CUTOFF_PENDING:
        return FreezeResult(
            outcome=Outcome.DEFERRED,
            organization_id=organization_id,
            operational_day=view.operational_day,
            reason=f'Freeze status is {view.status.value}',
        )
    return freeze(
        db,
        organization_id=organization_id,
        operational_day=view.operational_day,
        trigger=FreezeTrigger.AUTOMATIC,
    )


def attempt_automatic_freeze_all(db: Session, *, now: datetime | None = None) -> list[FreezeResult]:
    """Run the automatic freeze for every active organization.

    Each organization gets its own savepoint; a configuration or store error is reported as a
    FAILED result for that organization and the others still freeze.
    """
    organization_ids = db.execute(
        select(Organization.id).where(Organization.active.is_(True)).order_by(Organization.id.asc())
    ).scalars().all()
    results: list[FreezeResult] = []
    for org_id in organization_ids:
        try:
            with translate_store_errors('Automatic freeze'):
                with db.begin_nested():
                    result = attempt_automatic_freeze(db, organization_id=org_id, now=now)
        except (ValueError, TransientStoreError) as exc:
            logger.warning('automatic freeze failed for org=%s: %s', org_id, exc)
            result = FreezeResult(outcome=Outcome.FAILED, organization_id=org_id, operational_day=None, reason=str(exc))
        results.append(result)
    return results


def list_snapshot_rows(db: Session, *, organization_id: int, operational_day: date) -> list[DemandSnapshot]:
    return db.execute(
        select(DemandSnapshot)
        .where(
            DemandSnapshot.organization_id == organization_id,
            DemandSnapshot.operational_day == operational_day,
        )
        .order_by(DemandSnapshot.item_id.asc(), DemandSnapshot.store_name.asc())
    ).scalars().all()
