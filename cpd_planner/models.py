from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# SQLite only autoincrements INTEGER primary keys.
BigIntPK = BigInteger().with_variant(Integer, 'sqlite')


class Base(DeclarativeBase):
    pass


class ItemUnitType(str, Enum):
    UNIT = 'UNIT'
    LOT = 'LOT'


class FreezeTrigger(str, Enum):
    AUTOMATIC = 'AUTOMATIC'
    MANUAL = 'MANUAL'


class ProductionStatus(str, Enum):
    TO_PRODUCE = 'TO_PRODUCE'
    IN_PREP = 'IN_PREP'
    IN_PORTIONING = 'IN_PORTIONING'
    FINISHED = 'FINISHED'


class BandStatus(str, Enum):
    WITHIN = 'WITHIN'
    BELOW = 'BELOW'
    ABOVE = 'ABOVE'


class ManifestStatus(str, Enum):
    AWAITING_REVIEW = 'AWAITING_REVIEW'
    DISPATCHED = 'DISPATCHED'


class Organization(Base):
    __tablename__ = 'organizations'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Store(Base):
    __tablename__ = 'stores'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    organization_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('organizations.id'), nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    is_cpd: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default='false')
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class ProductionSetting(Base):
    __tablename__ = 'production_settings'

    organization_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey('organizations.id', ondelete='CASCADE'), primary_key=True
    )
    cutoff_time: Mapped[str] = mapped_column(String(5), nullable=False, default='03:00', server_default='03:00')
    time_zone: Mapped[str] = mapped_column(Text, nullable=False)
    lot_margin_percent: Mapped[Decimal] = mapped_column(
        Numeric(5, 2), nullable=False, default=Decimal('0.00'), server_default='0'
    )
    sanity_min_g: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    sanity_max_g: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    moving_average_window: Mapped[int] = mapped_column(Integer, nullable=False, default=10, server_default='10')
    sample_fetch_limit: Mapped[int] = mapped_column(Integer, nullable=False, default=20, server_default='20')
    reconciliation_window_days: Mapped[int] = mapped_column(Integer, nullable=False, default=2, server_default='2')
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class PortionedItem(Base):
    __tablename__ = 'portioned_items'
    __table_args__ = (
        CheckConstraint(
            'weight_band_min_g IS NULL OR weight_band_max_g IS NULL OR weight_band_min_g < weight_band_max_g',
            name='portioned_items_weight_band_ck',
        ),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    organization_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('organizations.id'), nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    unit_type: Mapped[ItemUnitType] = mapped_column(
        SQLEnum(ItemUnitType, name='item_unit_type'), nullable=False, default=ItemUnitType.UNIT, server_default='UNIT'
    )
    weight_band_min_g: Mapped[Decimal | None] = mapped_column(Numeric(10, 2))
    weight_band_max_g: Mapped[Decimal | None] = mapped_column(Numeric(10, 2))
    target_weight_g: Mapped[Decimal | None] = mapped_column(Numeric(10, 2))
    operational_average_weight_g: Mapped[Decimal | None] = mapped_column(Numeric(10, 2))
    flour_per_lot_kg: Mapped[Decimal | None] = mapped_column(Numeric(10, 3))
    mass_generated_per_lot_kg: Mapped[Decimal | None] = mapped_column(Numeric(10, 3))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class StoreCount(Base):
    __tablename__ = 'store_counts'
    __table_args__ = (
        UniqueConstraint('store_id', 'item_id', 'operational_day', name='store_counts_store_item_day_uniq'),
        CheckConstraint('final_leftover >= 0', name='store_counts_leftover_non_negative_ck'),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    organization_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('organizations.id'), nullable=False)
    store_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('stores.id'), nullable=False)
    item_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('portioned_items.id'), nullable=False)
    operational_day: Mapped[date] = mapped_column(Date, nullable=False)
    final_leftover: Mapped[int] = mapped_column(Integer, nullable=False)
    ideal_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    to_produce: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    is_increment: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default='false')
    increment_reason: Mapped[str | None] = mapped_column(Text)
    submitted_by: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class DemandFreeze(Base):
    __tablename__ = 'demand_freezes'
    __table_args__ = (
        UniqueConstraint('organization_id', 'operational_day', name='demand_freezes_org_day_uniq'),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    organization_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('organizations.id'), nullable=False)
    operational_day: Mapped[date] = mapped_column(Date, nullable=False)
    trigger: Mapped[FreezeTrigger] = mapped_column(SQLEnum(FreezeTrigger, name='freeze_trigger'), nullable=False)
    items_frozen: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    rows_frozen: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    frozen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class DemandSnapshot(Base):
    __tablename__ = 'demand_snapshots'
    __table_args__ = (
        UniqueConstraint(
            'organization_id', 'operational_day', 'item_id', 'store_id', name='demand_snapshots_org_day_item_store_uniq'
        ),
        CheckConstraint('quantity > 0', name='demand_snapshots_quantity_positive_ck'),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    organization_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('organizations.id'), nullable=False)
    operational_day: Mapped[date] = mapped_column(Date, nullable=False)
    item_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('portioned_items.id'), nullable=False)
    store_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('stores.id'), nullable=False)
    store_name: Mapped[str] = mapped_column(Text, nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    frozen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class ProductionRecord(Base):
    __tablename__ = 'production_records'
    __table_args__ = (
        UniqueConstraint('organization_id', 'item_id', 'operational_day', name='production_records_org_item_day_uniq'),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    organization_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('organizations.id'), nullable=False)
    item_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('portioned_items.id'), nullable=False)
    item_name: Mapped[str] = mapped_column(Text, nullable=False)
    operational_day: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[ProductionStatus] = mapped_column(
        SQLEnum(ProductionStatus, name='production_status'),
        nullable=False,
        default=ProductionStatus.TO_PRODUCE,
        server_default='TO_PRODUCE',
    )
    lots_planned: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    lots_produced: Mapped[int | None] = mapped_column(Integer)
    demand_units: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    expected_units: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    actual_units: Mapped[int | None] = mapped_column(Integer)
    final_weight_kg: Mapped[Decimal | None] = mapped_column(Numeric(12, 3))
    scrap_weight_kg: Mapped[Decimal | None] = mapped_column(Numeric(12, 3))
    flour_consumed_kg: Mapped[Decimal | None] = mapped_column(Numeric(12, 3))
    mass_generated_kg: Mapped[Decimal | None] = mapped_column(Numeric(12, 3))
    avg_real_weight_g: Mapped[Decimal | None] = mapped_column(Numeric(10, 2))
    band_status: Mapped[BandStatus | None] = mapped_column(SQLEnum(BandStatus, name='band_status'))
    store_breakdown: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    extra_units_requested: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    shortfall_units: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    suggested_extra_lots: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    prep_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    portioning_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class CalibrationSample(Base):
    __tablename__ = 'calibration_samples'
    __table_args__ = (
        UniqueConstraint('production_record_id', name='calibration_samples_production_record_uniq'),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    organization_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('organizations.id'), nullable=False)
    item_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('portioned_items.id'), nullable=False)
    production_record_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('production_records.id'), nullable=False)
    lots_produced: Mapped[int] = mapped_column(Integer, nullable=False)
    expected_units: Mapped[int] = mapped_column(Integer, nullable=False)
    actual_units: Mapped[int] = mapped_column(Integer, nullable=False)
    final_weight_g: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    scrap_weight_g: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    mass_used_g: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    avg_real_weight_g: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    band_status: Mapped[BandStatus] = mapped_column(SQLEnum(BandStatus, name='band_status'), nullable=False)
    deviation_g: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal('0.00'))
    prior_operational_average_g: Mapped[Decimal | None] = mapped_column(Numeric(10, 2))
    new_operational_average_g: Mapped[Decimal | None] = mapped_column(Numeric(10, 2))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class CentralStock(Base):
    __tablename__ = 'central_stock'
    __table_args__ = (
        CheckConstraint('quantity >= 0', name='central_stock_non_negative_ck'),
    )

    organization_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('organizations.id'), primary_key=True)
    item_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('portioned_items.id'), primary_key=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class DistributionManifest(Base):
    __tablename__ = 'distribution_manifests'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    organization_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('organizations.id'), nullable=False)
    store_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('stores.id'), nullable=False)
    store_name: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[ManifestStatus] = mapped_column(
        SQLEnum(ManifestStatus, name='manifest_status'),
        nullable=False,
        default=ManifestStatus.AWAITING_REVIEW,
        server_default='AWAITING_REVIEW',
    )
    note: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class ManifestLine(Base):
    __tablename__ = 'manifest_lines'
    __table_args__ = (
        UniqueConstraint('production_record_id', 'item_id', 'store_id', name='manifest_lines_record_item_store_uniq'),
        CheckConstraint('quantity > 0', name='manifest_lines_quantity_positive_ck'),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    manifest_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey('distribution_manifests.id', ondelete='CASCADE'), nullable=False
    )
    organization_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('organizations.id'), nullable=False)
    store_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('stores.id'), nullable=False)
    item_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('portioned_items.id'), nullable=False)
    item_name: Mapped[str] = mapped_column(Text, nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    production_record_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('production_records.id'), nullable=False)
    total_weight_kg: Mapped[Decimal | None] = mapped_column(Numeric(12, 3))
    volume_count: Mapped[int | None] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class AuditLog(Base):
    __tablename__ = 'audit_log'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    organization_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('organizations.id'))
    actor_name: Mapped[str | None] = mapped_column(Text)
    action: Mapped[str] = mapped_column(Text, nullable=False)
    ip: Mapped[str | None] = mapped_column(Text)
    meta: Mapped[dict] = mapped_column('metadata', JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
