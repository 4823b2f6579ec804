from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from cpd_planner.models import DistributionManifest, ManifestLine, ManifestStatus
from cpd_planner.services.audit_service import log_audit
from cpd_planner.services.central_stock_service import get_available_stock
from cpd_planner.services.notification_service import ALERT_MANIFESTS_CREATED, ALERT_STOCK_INSUFFICIENT, emit_alert
from cpd_planner.services.outcomes import Outcome, TransientStoreError, translate_store_errors

logger = logging.getLogger(__name__)

AUTO_MANIFEST_NOTE = 'Created automatically when production finished'


@dataclass(frozen=True)
class DistributionRequest:
    organization_id: int
    production_record_id: int
    item_id: int
    item_name: str
    store_breakdown: list[dict]
    actor_name: str | None = None


@dataclass(frozen=True)
class DistributionResult:
    outcome: Outcome
    manifests_created: int = 0
    units_allocated: int = 0
    available_stock: int | None = None
    total_demand: int = 0
    failed_stores: list[int] = field(default_factory=list)
    reason: str | None = None

    def as_dict(self) -> dict:
        return {
            'outcome': self.outcome.value,
            'manifests_created': self.manifests_created,
            'units_allocated': self.units_allocated,
            'available_stock': self.available_stock,
            'total_demand': self.total_demand,
            'failed_stores': list(self.failed_stores),
            'reason': self.reason,
        }


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def has_manifest_lines(db: Session, *, production_record_id: int, item_id: int) -> bool:
    return (
        db.execute(
            select(ManifestLine.id)
            .where(ManifestLine.production_record_id == production_record_id, ManifestLine.item_id == item_id)
            .limit(1)
        ).scalar_one_or_none()
        is not None
    )


def _open_manifest_for_store(db: Session, *, organization_id: int, store_id: int) -> DistributionManifest | None:
    return db.execute(
        select(DistributionManifest)
        .where(
            DistributionManifest.organization_id == organization_id,
            DistributionManifest.store_id == store_id,
            DistributionManifest.status == ManifestStatus.AWAITING_REVIEW,
        )
        .order_by(DistributionManifest.created_at.desc(), DistributionManifest.id.desc())
        .limit(1)
    ).scalar_one_or_none()


def _append_store_line(db: Session, *, request: DistributionRequest, entry: dict) -> None:
    store_id = int(entry['store_id'])
    manifest = _open_manifest_for_store(db, organization_id=request.organization_id, store_id=store_id)
    if manifest is None:
        manifest = DistributionManifest(
            organization_id=request.organization_id,
            store_id=store_id,
            store_name=entry.get('store_name') or '',
            status=ManifestStatus.AWAITING_REVIEW,
            note=AUTO_MANIFEST_NOTE,
            created_at=_now(),
        )
        db.add(manifest)
        db.flush()
    # Weight and volume count are entered by the operator during review.
    db.add(
        ManifestLine(
            manifest_id=manifest.id,
            organization_id=request.organization_id,
            store_id=store_id,
            item_id=request.item_id,
            item_name=request.item_name,
            quantity=int(entry['quantity']),
            production_record_id=request.production_record_id,
        )
    )
    db.flush()


def trigger_distribution(db: Session, request: DistributionRequest) -> DistributionResult:
    """Create store manifests for a finished production once central stock covers every store.

    Never ships partially: if stock is below total demand nothing is created and the record
    waits for the reconciliation sweep. Lines already present for the record and item make
    the call a no-op.
    """
    entries = [entry for entry in request.store_breakdown or [] if int(entry.get('quantity') or 0) > 0]
    if not entries:
        return DistributionResult(outcome=Outcome.DEFERRED, reason='No store demand to distribute')

    total_demand = sum(int(entry['quantity']) for entry in entries)
    try:
        available = get_available_stock(db, organization_id=request.organization_id, item_id=request.item_id)
    except TransientStoreError as exc:
        logger.warning('stock read failed for record %s: %s', request.production_record_id, exc)
        return DistributionResult(outcome=Outcome.FAILED, total_demand=total_demand, reason=str(exc))

    if available < total_demand:
        logger.info(
            'stock insufficient for record %s item %s: available=%s demand=%s',
            request.production_record_id,
            request.item_id,
            available,
            total_demand,
        )
        emit_alert(
            db,
            organization_id=request.organization_id,
            kind=ALERT_STOCK_INSUFFICIENT,
            message=(
                f'{request.item_name}: central stock {available} below store demand {total_demand}; '
                'distribution waits for stock'
            ),
            payload={
                'production_record_id': request.production_record_id,
                'item_id': request.item_id,
                'available_stock': available,
                'total_demand': total_demand,
            },
        )
        return DistributionResult(
            outcome=Outcome.DEFERRED,
            available_stock=available,
            total_demand=total_demand,
            reason='Central stock below total store demand',
        )

    try:
        with translate_store_errors('Manifest lookup'):
            already_distributed = has_manifest_lines(
                db, production_record_id=request.production_record_id, item_id=request.item_id
            )
    except TransientStoreError as exc:
        logger.warning('manifest lookup failed for record %s: %s', request.production_record_id, exc)
        return DistributionResult(
            outcome=Outcome.FAILED, available_stock=available, total_demand=total_demand, reason=str(exc)
        )
    if already_distributed:
        return DistributionResult(
            outcome=Outcome.DEFERRED,
            available_stock=available,
            total_demand=total_demand,
            reason='Manifests already exist for this production',
        )

    created = 0
    units = 0
    failed_stores: list[int] = []
    for entry in entries:
        store_id = int(entry['store_id'])
        try:
            with db.begin_nested():
                _append_store_line(db, request=request, entry=entry)
        except IntegrityError:
            logger.info('manifest line for record %s store %s already exists', request.production_record_id, store_id)
            continue
        except SQLAlchemyError:
            logger.exception('failed to create manifest line for record %s store %s', request.production_record_id, store_id)
            failed_stores.append(store_id)
            continue
        created += 1
        units += int(entry['quantity'])

    if created:
        log_audit(
            db,
            organization_id=request.organization_id,
            action='MANIFESTS_CREATED',
            actor_name=request.actor_name,
            metadata={
                'production_record_id': request.production_record_id,
                'item_id': request.item_id,
                'stores': created,
                'units': units,
            },
        )
        emit_alert(
            db,
            organization_id=request.organization_id,
            kind=ALERT_MANIFESTS_CREATED,
            message=f'Manifest created automatically for {created} store(s). Check weight and volumes before dispatch.',
            payload={'production_record_id': request.production_record_id, 'stores': created},
        )

    if failed_stores:
        outcome = Outcome.PARTIAL if created else Outcome.FAILED
    elif created:
        outcome = Outcome.SUCCESS
    else:
        outcome = Outcome.DEFERRED
    return DistributionResult(
        outcome=outcome,
        manifests_created=created,
        units_allocated=units,
        available_stock=available,
        total_demand=total_demand,
        failed_stores=failed_stores,
    )


def list_manifests_awaiting_review(db: Session, *, organization_id: int) -> list[dict]:
    manifests = db.execute(
        select(DistributionManifest)
        .where(
            DistributionManifest.organization_id == organization_id,
            DistributionManifest.status == ManifestStatus.AWAITING_REVIEW,
        )
        .order_by(DistributionManifest.created_at.asc(), DistributionManifest.id.asc())
    ).scalars().all()
    if not manifests:
        return []

    lines = db.execute(
        select(ManifestLine)
        .where(ManifestLine.manifest_id.in_([manifest.id for manifest in manifests]))
        .order_by(ManifestLine.item_name.asc(), ManifestLine.id.asc())
    ).scalars().all()
    lines_by_manifest: dict[int, list[ManifestLine]] = {}
    for line in lines:
        lines_by_manifest.setdefault(line.manifest_id, []).append(line)

    return [
        {
            'manifest_id': manifest.id,
            'store_id': manifest.store_id,
            'store_name': manifest.store_name,
            'status': manifest.status.value,
            'note': manifest.note,
            'created_at': manifest.created_at.isoformat() if manifest.created_at else None,
            'lines': [
                {
                    'line_id': line.id,
                    'item_id': line.item_id,
                    'item_name': line.item_name,
                    'quantity': line.quantity,
                    'production_record_id': line.production_record_id,
                    'total_weight_kg': str(line.total_weight_kg) if line.total_weight_kg is not None else None,
                    'volume_count': line.volume_count,
                }
                for line in lines_by_manifest.get(manifest.id, [])
            ],
        }
        for manifest in manifests
    ]
