from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import Decimal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import select
from sqlalchemy.orm import Session

from cpd_planner.config import settings
from cpd_planner.models import ProductionSetting
from cpd_planner.services.outcomes import ConfigurationError

_HHMM_RE = re.compile(r'^([01]\d|2[0-3]):[0-5]\d$')


@dataclass(frozen=True)
class ProductionParams:
    cutoff_time: str
    time_zone: str
    lot_margin_percent: Decimal
    sanity_min_g: Decimal
    sanity_max_g: Decimal
    moving_average_window: int
    sample_fetch_limit: int
    reconciliation_window_days: int


def default_production_params() -> ProductionParams:
    return ProductionParams(
        cutoff_time=settings.cutoff_time_default,
        time_zone=settings.time_zone_default,
        lot_margin_percent=settings.lot_margin_percent_default,
        sanity_min_g=settings.calibration_sanity_min_g,
        sanity_max_g=settings.calibration_sanity_max_g,
        moving_average_window=settings.calibration_window_size,
        sample_fetch_limit=settings.calibration_fetch_limit,
        reconciliation_window_days=settings.reconciliation_window_days,
    )


def validate_production_params(params: ProductionParams) -> None:
    if not _HHMM_RE.match(params.cutoff_time):
        raise ConfigurationError('Cutoff time must be a zero-padded HH:MM value')
    try:
        ZoneInfo(params.time_zone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigurationError(f'Unknown facility time zone: {params.time_zone}') from exc
    if params.lot_margin_percent < 0:
        raise ConfigurationError('Lot margin percent cannot be negative')
    if params.sanity_min_g <= 0 or params.sanity_min_g >= params.sanity_max_g:
        raise ConfigurationError('Calibration sanity range must satisfy 0 < min < max')
    if params.moving_average_window < 1:
        raise ConfigurationError('Moving average window must be at least 1')
    if params.sample_fetch_limit < params.moving_average_window:
        raise ConfigurationError('Sample fetch limit must be at least the moving average window')
    if params.reconciliation_window_days < 0:
        raise ConfigurationError('Reconciliation window cannot be negative')


def resolve_production_params(db: Session, *, organization_id: int) -> ProductionParams:
    row = db.execute(
        select(ProductionSetting).where(ProductionSetting.organization_id == organization_id)
    ).scalar_one_or_none()
    if row is None:
        params = default_production_params()
    else:
        params = ProductionParams(
            cutoff_time=row.cutoff_time,
            time_zone=row.time_zone,
            lot_margin_percent=Decimal(row.lot_margin_percent),
            sanity_min_g=Decimal(row.sanity_min_g),
            sanity_max_g=Decimal(row.sanity_max_g),
            moving_average_window=row.moving_average_window,
            sample_fetch_limit=row.sample_fetch_limit,
            reconciliation_window_days=row.reconciliation_window_days,
        )
    validate_production_params(params)
    return params


def get_or_create_production_settings(db: Session, *, organization_id: int) -> ProductionSetting:
    row = db.execute(
        select(ProductionSetting).where(ProductionSetting.organization_id == organization_id)
    ).scalar_one_or_none()
    if row:
        return row

    defaults = default_production_params()
    validate_production_params(defaults)
    row = ProductionSetting(
        organization_id=organization_id,
        cutoff_time=defaults.cutoff_time,
        time_zone=defaults.time_zone,
        lot_margin_percent=defaults.lot_margin_percent,
        sanity_min_g=defaults.sanity_min_g,
        sanity_max_g=defaults.sanity_max_g,
        moving_average_window=defaults.moving_average_window,
        sample_fetch_limit=defaults.sample_fetch_limit,
        reconciliation_window_days=defaults.reconciliation_window_days,
    )
    db.add(row)
    db.flush()
    return row
