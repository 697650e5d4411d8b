import os

# Settings are read at import time
os.environ.setdefault("ENV", "test")
os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import date
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select

from pricing_api.core.database import build_engine, build_session_factory, get_db
from pricing_api.core.deps import get_movement_service
from pricing_api.core.security import create_token
from pricing_api.main import app
from pricing_api.models.product import Product
from pricing_api.models.stock_movement import StockMovement
from pricing_api.models.tenant import Base, Tenant
from pricing_api.models.user import User
from pricing_api.services.movement_service import MovementService


TODAY = date(2025, 3, 10)


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def make_tenant(session_factory):
    def _make(slug="padaria", plan="pro"):
        with session_factory() as db:
            tenant = Tenant(name=slug.capitalize(), slug=slug, plan=plan)
            db.add(tenant)
            db.commit()
            return tenant
    return _make


@pytest.fixture
def tenant(make_tenant):
    return make_tenant()


@pytest.fixture
def user(session_factory, tenant):
    with session_factory() as db:
        user = User(email="owner@padaria.com", name="Owner", role="owner", tenant_id=tenant.id)
        db.add(user)
        db.commit()
        return user


@pytest.fixture
def make_product(session_factory, tenant):
    def _make(stock="0", total_cost=None, tenant_id=None, name="Farinha"):
        with session_factory() as db:
            product = Product(
                name=name,
                stock=Decimal(str(stock)),
                total_cost=total_cost,
                tenant_id=tenant_id or tenant.id,
            )
            db.add(product)
            db.commit()
            return product
    return _make


@pytest.fixture
def product(make_product):
    return make_product(stock="100")


@pytest.fixture
def service(session_factory):
    return MovementService(session_factory, max_retries=3, retry_backoff=0.01, clock=lambda: TODAY)


@pytest.fixture
def stock_of(session_factory):
    def _stock(product_id):
        with session_factory() as db:
            return db.execute(select(Product.stock).where(Product.id == product_id)).scalar_one()
    return _stock


@pytest.fixture
def ledger_ids(session_factory):
    def _ids(product_id):
        with session_factory() as db:
            query = select(StockMovement.id).where(StockMovement.product_id == product_id).order_by(StockMovement.id)
            return list(db.scalars(query))
    return _ids


@pytest.fixture
def client(session_factory, service):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_movement_service] = lambda: service
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers(user, tenant):
    token = create_token(str(user.id), 30, token_type="access")
    return {"Authorization": f"Bearer {token}", "X-Tenant-ID": tenant.slug}
