from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone

from sqlalchemy import and_, exists, select
from sqlalchemy.orm import Session

from cpd_planner.models import ManifestLine, Organization, ProductionRecord, ProductionStatus
from cpd_planner.services.audit_service import log_audit
from cpd_planner.services.distribution_service import DistributionRequest, DistributionResult, trigger_distribution
from cpd_planner.services.operational_day_service import operational_day_for
from cpd_planner.services.outcomes import Outcome, TransientStoreError, translate_store_errors
from cpd_planner.services.production_settings_service import resolve_production_params

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SweepResult:
    outcome: Outcome
    organization_id: int
    since: date | None
    records_checked: int = 0
    records_distributed: int = 0
    manifests_created: int = 0
    deferred_records: list[int] = field(default_factory=list)
    failed_records: list[int] = field(default_factory=list)
    reason: str | None = None

    def as_dict(self) -> dict:
        return {
            'outcome': self.outcome.value,
            'organization_id': self.organization_id,
            'since': self.since.isoformat() if self.since else None,
            'records_checked': self.records_checked,
            'records_distributed': self.records_distributed,
            'manifests_created': self.manifests_created,
            'deferred_records': list(self.deferred_records),
            'failed_records': list(self.failed_records),
            'reason': self.reason,
        }


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def find_undistributed_records(db: Session, *, organization_id: int, since: date) -> list[ProductionRecord]:
    has_lines = exists().where(
        and_(
            ManifestLine.production_record_id == ProductionRecord.id,
            ManifestLine.item_id == ProductionRecord.item_id,
        )
    )
    rows = db.execute(
        select(ProductionRecord)
        .where(
            ProductionRecord.organization_id == organization_id,
            ProductionRecord.status == ProductionStatus.FINISHED,
            ProductionRecord.operational_day >= since,
            ~has_lines,
        )
        .order_by(ProductionRecord.finished_at.asc(), ProductionRecord.id.asc())
    ).scalars().all()
    return [row for row in rows if row.store_breakdown]


def run_reconciliation_sweep(
    db: Session,
    *,
    organization_id: int,
    today: date | None = None,
    window_days: int | None = None,
) -> SweepResult:
    """Retry distribution for finished productions that never got manifests.

    Covers productions deferred for stock that was replenished later. Relies on the
    distribution trigger's own de-duplication, so running it repeatedly is harmless.
    """
    since: date | None = None
    try:
        with translate_store_errors('Reconciliation scan'):
            params = resolve_production_params(db, organization_id=organization_id)
            if today is None:
                today = operational_day_for(_now(), params.time_zone)
            if window_days is None:
                window_days = params.reconciliation_window_days
            since = today - timedelta(days=window_days)
            pending = find_undistributed_records(db, organization_id=organization_id, since=since)
    except TransientStoreError as exc:
        logger.warning('reconciliation scan failed for org=%s: %s', organization_id, exc)
        return SweepResult(outcome=Outcome.FAILED, organization_id=organization_id, since=since, reason=str(exc))

    distributed = 0
    manifests = 0
    deferred: list[int] = []
    failed: list[int] = []
    for record in pending:
        result: DistributionResult = trigger_distribution(
            db,
            DistributionRequest(
                organization_id=record.organization_id,
                production_record_id=record.id,
                item_id=record.item_id,
                item_name=record.item_name,
                store_breakdown=list(record.store_breakdown or []),
            ),
        )
        if result.manifests_created:
            distributed += 1
            manifests += result.manifests_created
        if result.outcome == Outcome.DEFERRED:
            deferred.append(record.id)
        elif result.outcome in (Outcome.FAILED, Outcome.PARTIAL):
            failed.append(record.id)

    if distributed:
        log_audit(
            db,
            organization_id=organization_id,
            action='DISTRIBUTION_RECONCILED',
            metadata={
                'since': since.isoformat(),
                'records_distributed': distributed,
                'manifests_created': manifests,
            },
        )
    logger.info(
        'reconciliation org=%s since=%s checked=%s distributed=%s deferred=%s failed=%s',
        organization_id,
        since,
        len(pending),
        distributed,
        len(deferred),
        len(failed),
    )

    if failed:
        outcome = Outcome.PARTIAL if distributed else Outcome.FAILED
    elif distributed:
        outcome = Outcome.SUCCESS
    else:
        outcome = Outcome.DEFERRED
    return SweepResult(
        outcome=outcome,
        organization_id=organization_id,
        since=since,
        records_checked=len(pending),
        records_distributed=distributed,
        manifests_created=manifests,
        deferred_records=deferred,
        failed_records=failed,
    )


def run_reconciliation_sweep_all(
    db: Session, *, today: date | None = None, window_days: int | None = None
) -> list[SweepResult]:
    organization_ids = db.execute(
        select(Organization.id).where(Organization.active.is_(True)).order_by(Organization.id.asc())
    ).scalars().all()
    results: list[SweepResult] = []
    for org_id in organization_ids:
        try:
            with translate_store_errors('Reconciliation sweep'):
                with db.begin_nested():
                    result = run_reconciliation_sweep(db, organization_id=org_id, today=today, window_days=window_days)
        except (ValueError, TransientStoreError) as exc:
            logger.warning('reconciliation sweep failed for org=%s: %s', org_id, exc)
            result = SweepResult(outcome=Outcome.FAILED, organization_id=org_id, since=None, reason=str(exc))
        results.append(result)
    return results
