import logging
from decimal import Decimal

from sqlalchemy.orm import Session

from pricing_api.models.product import Product
from pricing_api.models.tenant import Tenant
from pricing_api.models.user import User


logger = logging.getLogger(__name__)


def seed_demo(db: Session) -> Tenant:
    tenant = db.query(Tenant).filter(Tenant.slug == "demo").first()
    if tenant:
        return tenant
    tenant = Tenant(name="Demo", slug="demo", plan="pro")
    db.add(tenant)
    db.flush()
    db.add(User(email="owner@demo.com", name="Demo Owner", role="owner", tenant_id=tenant.id))
    db.add_all([
        Product(name="Farinha de trigo (kg)", stock=Decimal("25"), total_cost=Decimal("4.5000"), tenant_id=tenant.id),
        Product(name="Açúcar refinado (kg)", stock=Decimal("10"), total_cost=Decimal("3.9000"), tenant_id=tenant.id),
        Product(name="Ovos (un)", stock=Decimal("60"), tenant_id=tenant.id),
    ])
    db.commit()
    logger.info("seeded demo tenant %s", tenant.id)
    return tenant
