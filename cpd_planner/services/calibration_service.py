from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from cpd_planner.models import BandStatus, CalibrationSample, PortionedItem, ProductionRecord
from cpd_planner.services.audit_service import log_audit
from cpd_planner.services.notification_service import (
    ALERT_CALIBRATION_OUT_OF_BAND,
    emit_alert,
    format_calibration_alert,
)
from cpd_planner.services.outcomes import ConfigurationError
from cpd_planner.services.production_settings_service import ProductionParams

logger = logging.getLogger(__name__)

_CENTS = Decimal('0.01')


@dataclass(frozen=True)
class CalibrationMeasurement:
    mass_used_g: Decimal
    avg_real_weight_g: Decimal
    band_status: BandStatus
    deviation_g: Decimal


@dataclass(frozen=True)
class CalibrationResult:
    sample_id: int
    mass_used_g: Decimal
    avg_real_weight_g: Decimal
    band_status: BandStatus
    deviation_g: Decimal
    prior_operational_average_g: Decimal | None
    new_operational_average_g: Decimal | None

    def as_dict(self) -> dict:
        return {
            'sample_id': self.sample_id,
            'mass_used_g': str(self.mass_used_g),
            'avg_real_weight_g': str(self.avg_real_weight_g),
            'band_status': self.band_status.value,
            'deviation_g': str(self.deviation_g),
            'prior_operational_average_g': (
                str(self.prior_operational_average_g) if self.prior_operational_average_g is not None else None
            ),
            'new_operational_average_g': (
                str(self.new_operational_average_g) if self.new_operational_average_g is not None else None
            ),
        }


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _d(value) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


def compute_calibration(
    *,
    final_weight_g: Decimal,
    scrap_weight_g: Decimal,
    actual_units: int,
    band_min_g: Decimal,
    band_max_g: Decimal,
) -> CalibrationMeasurement:
    mass_used = _d(final_weight_g) + _d(scrap_weight_g)
    avg = mass_used / Decimal(actual_units) if actual_units > 0 else Decimal('0')

    band_min = _d(band_min_g)
    band_max = _d(band_max_g)
    if avg < band_min:
        status = BandStatus.BELOW
        deviation = band_min - avg
    elif avg > band_max:
        status = BandStatus.ABOVE
        deviation = avg - band_max
    else:
        status = BandStatus.WITHIN
        deviation = Decimal('0')

    return CalibrationMeasurement(
        mass_used_g=mass_used.quantize(_CENTS, rounding=ROUND_HALF_UP),
        avg_real_weight_g=avg.quantize(_CENTS, rounding=ROUND_HALF_UP),
        band_status=status,
        deviation_g=deviation.quantize(_CENTS, rounding=ROUND_HALF_UP),
    )


def compute_moving_average(
    recent_weights_g: Iterable[Decimal | None],
    *,
    sanity_min_g: Decimal,
    sanity_max_g: Decimal,
    window: int,
) -> Decimal | None:
    """Average the newest plausible samples.

    `recent_weights_g` is ordered newest first. Values outside the sanity range are
    discarded before the window is applied, so a glitch never displaces a valid sample.
    Returns None when nothing valid remains.
    """
    valid = [
        _d(weight)
        for weight in recent_weights_g
        if weight is not None and sanity_min_g <= _d(weight) <= sanity_max_g
    ]
    if not valid:
        return None
    selected = valid[:window]
    mean = sum(selected, Decimal('0')) / Decimal(len(selected))
    return mean.quantize(_CENTS, rounding=ROUND_HALF_UP)


def require_weight_band(item: PortionedItem) -> tuple[Decimal, Decimal]:
    if item.weight_band_min_g is None or item.weight_band_max_g is None:
        raise ConfigurationError(f'Weight band is not configured for item {item.name}')
    band_min = _d(item.weight_band_min_g)
    band_max = _d(item.weight_band_max_g)
    if band_min >= band_max:
        raise ConfigurationError(f'Weight band minimum must be below maximum for item {item.name}')
    return band_min, band_max


def _recent_sample_weights(db: Session, *, item_id: int, limit: int) -> list[Decimal]:
    return list(
        db.execute(
            select(CalibrationSample.avg_real_weight_g)
            .where(CalibrationSample.item_id == item_id)
            .order_by(CalibrationSample.created_at.desc(), CalibrationSample.id.desc())
            .limit(limit)
        ).scalars()
    )


def record_calibration(
    db: Session,
    *,
    record: ProductionRecord,
    item: PortionedItem,
    lots_produced: int,
    actual_units: int,
    final_weight_g: Decimal,
    scrap_weight_g: Decimal,
    params: ProductionParams,
) -> CalibrationResult:
    band_min, band_max = require_weight_band(item)
    measurement = compute_calibration(
        final_weight_g=final_weight_g,
        scrap_weight_g=scrap_weight_g,
        actual_units=actual_units,
        band_min_g=band_min,
        band_max_g=band_max,
    )
    prior_average = item.operational_average_weight_g

    sample = CalibrationSample(
        organization_id=record.organization_id,
        item_id=item.id,
        production_record_id=record.id,
        lots_produced=lots_produced,
        expected_units=record.expected_units,
        actual_units=actual_units,
        final_weight_g=_d(final_weight_g),
        scrap_weight_g=_d(scrap_weight_g),
        mass_used_g=measurement.mass_used_g,
        avg_real_weight_g=measurement.avg_real_weight_g,
        band_status=measurement.band_status,
        deviation_g=measurement.deviation_g,
        prior_operational_average_g=prior_average,
        created_at=_now(),
    )
    db.add(sample)
    db.flush()

    # Read-modify-write on the item average: concurrent finalizations of one item are last-writer-wins.
    new_average = compute_moving_average(
        _recent_sample_weights(db, item_id=item.id, limit=params.sample_fetch_limit),
        sanity_min_g=params.sanity_min_g,
        sanity_max_g=params.sanity_max_g,
        window=params.moving_average_window,
    )
    if new_average is not None:
        item.operational_average_weight_g = new_average
        item.updated_at = _now()
        sample.new_operational_average_g = new_average
    else:
        logger.warning('no plausible calibration samples for item %s; operational average unchanged', item.id)
    db.flush()

    log_audit(
        db,
        organization_id=record.organization_id,
        action='CALIBRATION_RECORDED',
        metadata={
            'item_id': item.id,
            'item_name': item.name,
            'production_record_id': record.id,
            'lots_produced': lots_produced,
            'expected_units': record.expected_units,
            'actual_units': actual_units,
            'avg_real_weight_g': str(measurement.avg_real_weight_g),
            'band_status': measurement.band_status.value,
            'prior_operational_average_g': str(prior_average) if prior_average is not None else None,
            'new_operational_average_g': str(new_average) if new_average is not None else None,
        },
    )

    if measurement.band_status != BandStatus.WITHIN:
        direction = 'below' if measurement.band_status == BandStatus.BELOW else 'above'
        emit_alert(
            db,
            organization_id=record.organization_id,
            kind=ALERT_CALIBRATION_OUT_OF_BAND,
            message=format_calibration_alert(
                item_name=item.name,
                avg_real_weight_g=measurement.avg_real_weight_g,
                band_min_g=band_min,
                band_max_g=band_max,
                direction=direction,
                deviation_g=measurement.deviation_g,
            ),
            payload={
                'item_id': item.id,
                'item_name': item.name,
                'avg_real_weight_g': str(measurement.avg_real_weight_g),
                'band_min_g': str(band_min),
                'band_max_g': str(band_max),
                'direction': direction,
                'deviation_g': str(measurement.deviation_g),
            },
        )

    return CalibrationResult(
        sample_id=sample.id,
        mass_used_g=measurement.mass_used_g,
        avg_real_weight_g=measurement.avg_real_weight_g,
        band_status=measurement.band_status,
        deviation_g=measurement.deviation_g,
        prior_operational_average_g=prior_average,
        new_operational_average_g=new_average,
    )
