from decimal import Decimal

from sqlalchemy import select

from cpd_planner.db import SessionLocal, engine
from cpd_planner.models import Base, CentralStock, ItemUnitType, Organization, PortionedItem, Store
from cpd_planner.services.central_stock_service import set_stock
from cpd_planner.services.production_settings_service import get_or_create_production_settings


def seed() -> None:
    Base.metadata.create_all(engine)
    with SessionLocal() as db:
        org = db.execute(select(Organization).where(Organization.name == 'Demo Pizzeria')).scalar_one_or_none()
        if not org:
            org = Organization(name='Demo Pizzeria', active=True)
            db.add(org)
            db.flush()

        get_or_create_production_settings(db, organization_id=org.id)

        for name, is_cpd in (('CPD', True), ('Downtown', False), ('Riverside', False)):
            store = db.execute(
                select(Store).where(Store.organization_id == org.id, Store.name == name)
            ).scalar_one_or_none()
            if not store:
                db.add(Store(organization_id=org.id, name=name, is_cpd=is_cpd, active=True))
        db.flush()

        dough = db.execute(
            select(PortionedItem).where(PortionedItem.organization_id == org.id, PortionedItem.name == 'Pizza dough ball')
        ).scalar_one_or_none()
        if not dough:
            dough = PortionedItem(
                organization_id=org.id,
                name='Pizza dough ball',
                unit_type=ItemUnitType.LOT,
                weight_band_min_g=Decimal('230'),
                weight_band_max_g=Decimal('270'),
                target_weight_g=Decimal('250'),
                operational_average_weight_g=Decimal('250'),
                flour_per_lot_kg=Decimal('15'),
                mass_generated_per_lot_kg=Decimal('25'),
                active=True,
            )
            db.add(dough)
            db.flush()

        sauce = db.execute(
            select(PortionedItem).where(PortionedItem.organization_id == org.id, PortionedItem.name == 'Tomato sauce tub')
        ).scalar_one_or_none()
        if not sauce:
            sauce = PortionedItem(organization_id=org.id, name='Tomato sauce tub', unit_type=ItemUnitType.UNIT, active=True)
            db.add(sauce)
            db.flush()

        for item in (dough, sauce):
            existing = db.get(CentralStock, (org.id, item.id))
            if existing is None:
                set_stock(db, organization_id=org.id, item_id=item.id, quantity=0)

        db.commit()


if __name__ == '__main__':
    seed()
    print('Seed data inserted/verified.')
