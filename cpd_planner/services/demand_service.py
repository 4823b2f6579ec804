from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from cpd_planner.models import DemandFreeze, PortionedItem, Store, StoreCount
from cpd_planner.services.audit_service import log_audit
from cpd_planner.services.outcomes import NotFoundError, ValidationError


@dataclass(frozen=True)
class OutstandingDemand:
    item_id: int
    store_id: int
    store_name: str
    quantity: int


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def is_day_frozen(db: Session, *, organization_id: int, operational_day: date) -> bool:
    return (
        db.execute(
            select(DemandFreeze.id).where(
                DemandFreeze.organization_id == organization_id,
                DemandFreeze.operational_day == operational_day,
            )
        ).scalar_one_or_none()
        is not None
    )


def submit_store_count(
    db: Session,
    *,
    organization_id: int,
    store_id: int,
    item_id: int,
    operational_day: date,
    final_leftover: int,
    ideal_quantity: int,
    submitted_by: str | None = None,
    ip: str | None = None,
) -> StoreCount:
    if final_leftover < 0:
        raise ValidationError('Final leftover cannot be negative')
    if ideal_quantity < 0:
        raise ValidationError('Ideal quantity cannot be negative')

    store = db.execute(
        select(Store).where(Store.id == store_id, Store.organization_id == organization_id, Store.active.is_(True))
    ).scalar_one_or_none()
    if not store:
        raise NotFoundError('Store not found')
    if store.is_cpd:
        raise ValidationError('The central facility does not submit store counts')
    item = db.execute(
        select(PortionedItem).where(
            PortionedItem.id == item_id,
            PortionedItem.organization_id == organization_id,
            PortionedItem.active.is_(True),
        )
    ).scalar_one_or_none()
    if not item:
        raise NotFoundError('Item not found')
    if is_day_frozen(db, organization_id=organization_id, operational_day=operational_day):
        raise ValidationError('Demand for this operational day is frozen')

    to_produce = max(ideal_quantity - final_leftover, 0)
    now = _now()
    count = db.execute(
        select(StoreCount).where(
            StoreCount.store_id == store_id,
            StoreCount.item_id == item_id,
            StoreCount.operational_day == operational_day,
        )
    ).scalar_one_or_none()
    if count is None:
        count = StoreCount(
            organization_id=organization_id,
            store_id=store_id,
            item_id=item_id,
            operational_day=operational_day,
            created_at=now,
        )
        db.add(count)

    count.final_leftover = final_leftover
    count.ideal_quantity = ideal_quantity
    count.to_produce = to_produce
    count.submitted_by = submitted_by
    count.updated_at = now
    db.flush()

    log_audit(
        db,
        organization_id=organization_id,
        action='STORE_COUNT_SUBMITTED',
        actor_name=submitted_by,
        ip=ip,
        metadata={
            'store_id': store_id,
            'item_id': item_id,
            'operational_day': operational_day.isoformat(),
            'final_leftover': final_leftover,
            'ideal_quantity': ideal_quantity,
            'to_produce': to_produce,
        },
    )
    return count


def list_outstanding_demand(db: Session, *, organization_id: int, operational_day: date) -> list[OutstandingDemand]:
    rows = db.execute(
        select(StoreCount.item_id, StoreCount.store_id, Store.name, StoreCount.to_produce)
        .join(Store, Store.id == StoreCount.store_id)
        .join(PortionedItem, PortionedItem.id == StoreCount.item_id)
        .where(
            StoreCount.organization_id == organization_id,
            StoreCount.operational_day == operational_day,
            StoreCount.to_produce > 0,
            Store.is_cpd.is_(False),
            PortionedItem.active.is_(True),
        )
        .order_by(StoreCount.item_id.asc(), Store.name.asc())
    ).all()
    return [
        OutstandingDemand(
            item_id=int(row.item_id),
            store_id=int(row.store_id),
            store_name=row.name,
            quantity=int(row.to_produce),
        )
        for row in rows
    ]
