from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from cpd_planner.services.audit_service import log_audit

logger = logging.getLogger(__name__)

ALERT_CALIBRATION_OUT_OF_BAND = 'CALIBRATION_OUT_OF_BAND'
ALERT_STOCK_INSUFFICIENT = 'STOCK_INSUFFICIENT'
ALERT_MANIFESTS_CREATED = 'MANIFESTS_CREATED'
ALERT_PRODUCTION_SHORTFALL = 'PRODUCTION_SHORTFALL'


def emit_alert(
    db: Session,
    *,
    organization_id: int,
    kind: str,
    message: str,
    payload: dict | None = None,
) -> None:
    """Hand an alert to the notification channel.

    Delivery (email, toast) happens outside this service; the alert is logged and recorded
    in the audit trail as sent. Never raises for delivery reasons.
    """
    body = {
        'kind': kind,
        'message': message,
        'status': 'STUB_SENT',
        **(payload or {}),
    }
    logger.info('alert %s org=%s: %s', kind, organization_id, message)
    log_audit(
        db,
        organization_id=organization_id,
        action=f'ALERT_{kind}',
        metadata=body,
    )


def format_calibration_alert(
    *,
    item_name: str,
    avg_real_weight_g,
    band_min_g,
    band_max_g,
    direction: str,
    deviation_g,
) -> str:
    return (
        f'{item_name}: portioning out of band. '
        f'Average {avg_real_weight_g}g, band {band_min_g}g to {band_max_g}g, '
        f'{direction} by {deviation_g}g'
    )
