from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from cpd_planner.models import CentralStock
from cpd_planner.services.outcomes import ValidationError, translate_store_errors


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def get_available_stock(db: Session, *, organization_id: int, item_id: int) -> int:
    with translate_store_errors('Central stock read'):
        quantity = db.execute(
            select(CentralStock.quantity).where(
                CentralStock.organization_id == organization_id,
                CentralStock.item_id == item_id,
            )
        ).scalar_one_or_none()
    return int(quantity or 0)


def increment_stock(db: Session, *, organization_id: int, item_id: int, quantity: int) -> int:
    if quantity < 0:
        raise ValidationError('Stock increment cannot be negative')

    # Increment in SQL so concurrent completions for one item do not overwrite each other.
    result = db.execute(
        update(CentralStock)
        .where(CentralStock.organization_id == organization_id, CentralStock.item_id == item_id)
        .values(quantity=CentralStock.quantity + quantity, updated_at=_now())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        db.add(CentralStock(organization_id=organization_id, item_id=item_id, quantity=quantity, updated_at=_now()))
        db.flush()
    return get_available_stock(db, organization_id=organization_id, item_id=item_id)


def set_stock(db: Session, *, organization_id: int, item_id: int, quantity: int) -> CentralStock:
    if quantity < 0:
        raise ValidationError('Stock cannot be negative')
    row = db.execute(
        select(CentralStock).where(
            CentralStock.organization_id == organization_id,
            CentralStock.item_id == item_id,
        )
    ).scalar_one_or_none()
    if row is None:
        row = CentralStock(organization_id=organization_id, item_id=item_id, quantity=quantity)
        db.add(row)
    else:
        row.quantity = quantity
    row.updated_at = _now()
    db.flush()
    return row
