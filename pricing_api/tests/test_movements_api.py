from decimal import Decimal

from pricing_api.core.deps import get_movement_service
from pricing_api.core.errors import ConflictRetryable, StorageUnavailable
from pricing_api.core.security import create_token
from pricing_api.main import app
from pricing_api.models.product import Product


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


def test_movements_require_a_token(client, tenant, product):
    r = client.get("/movements", headers={"X-Tenant-ID": tenant.slug})
    assert r.status_code == 401

    r = client.get("/movements", headers={"X-Tenant-ID": tenant.slug, "Authorization": "Bearer not-a-jwt"})
    assert r.status_code == 401


def test_refresh_tokens_are_not_accepted(client, tenant, user):
    token = create_token(str(user.id), 30, token_type="refresh")
    r = client.get("/movements", headers={"X-Tenant-ID": tenant.slug, "Authorization": f"Bearer {token}"})
    assert r.status_code == 401


def test_unknown_tenant(client, auth_headers):
    r = client.get("/movements", headers={**auth_headers, "X-Tenant-ID": "nope"})
    assert r.status_code == 404


def test_free_plan_is_blocked(client, session_factory, tenant, auth_headers, product, stock_of):
    from pricing_api.models.tenant import Tenant

    with session_factory() as db:
        db.get(Tenant, tenant.id).plan = "gratuito"
        db.commit()

    r = client.post("/movements/inbound", json={"product_id": product.id, "quantity": "5"}, headers=auth_headers)
    assert r.status_code == 403
    assert stock_of(product.id) == Decimal("100")

    with session_factory() as db:
        db.get(Tenant, tenant.id).plan = None
        db.commit()
    r = client.get("/movements", headers=auth_headers)
    assert r.status_code == 403


def test_inbound_outbound_and_delete_flow(client, auth_headers, product, user):
    r = client.post(
        "/movements/inbound",
        json={"productId": product.id, "quantity": 50, "lot": "L-7", "unitValue": "12.5", "occurredAt": "2025-02-01"},
        headers=auth_headers,
    )
    assert r.status_code == 201
    inbound = r.json()
    assert inbound["kind"] == "entrada"
    assert Decimal(inbound["quantity"]) == Decimal("50")
    assert Decimal(inbound["unit_value"]) == Decimal("12.5")
    assert inbound["lot"] == "L-7"
    assert inbound["occurred_at"] == "2025-02-01"
    assert inbound["recorded_by"] == user.id

    r = client.post("/movements/outbound", json={"product_id": product.id, "quantity": "30"}, headers=auth_headers)
    assert r.status_code == 201
    outbound = r.json()
    assert outbound["kind"] == "saida"

    r = client.get(f"/movements/products/{product.id}/balance", headers=auth_headers)
    assert r.status_code == 200
    balance = r.json()
    assert Decimal(balance["stock"]) == Decimal("120")
    assert Decimal(balance["total_cost"]) == Decimal("12.5")
    assert Decimal(balance["ledger_net"]) == Decimal("20")

    r = client.delete(f"/movements/inbound/{inbound['id']}", headers=auth_headers)
    assert r.status_code == 200
    assert r.json() == {"ok": True}

    r = client.delete(f"/movements/inbound/{inbound['id']}", headers=auth_headers)
    assert r.status_code == 404
    assert r.json()["code"] == "not_found"

    r = client.post("/movements/outbound", json={"product_id": product.id, "quantity": 80}, headers=auth_headers)
    assert r.status_code == 422
    assert r.json()["code"] == "insufficient_stock"

    r = client.get(f"/movements/products/{product.id}/balance", headers=auth_headers)
    assert Decimal(r.json()["stock"]) == Decimal("70")

    r = client.delete(f"/movements/outbound/{outbound['id']}", headers=auth_headers)
    assert r.status_code == 200
    r = client.get(f"/movements/products/{product.id}/balance", headers=auth_headers)
    assert Decimal(r.json()["stock"]) == Decimal("100")


def test_list_movements_endpoint(client, auth_headers, product, make_product):
    other = make_product(stock="5", name="Ovos")
    client.post("/movements/inbound", json={"product_id": product.id, "quantity": 1, "occurred_at": "2025-01-01"}, headers=auth_headers)
    client.post("/movements/outbound", json={"product_id": product.id, "quantity": 2}, headers=auth_headers)
    client.post("/movements/inbound", json={"product_id": other.id, "quantity": 3, "occurred_at": "2025-02-01"}, headers=auth_headers)

    r = client.get("/movements", headers=auth_headers)
    assert r.status_code == 200
    assert [(m["kind"], Decimal(m["quantity"])) for m in r.json()] == [
        ("saida", Decimal("2")),
        ("entrada", Decimal("3")),
        ("entrada", Decimal("1")),
    ]

    r = client.get("/movements", params={"product_id": product.id, "kind": "entrada"}, headers=auth_headers)
    assert [m["occurred_at"] for m in r.json()] == ["2025-01-01"]

    r = client.get("/movements", params={"kind": "transfer"}, headers=auth_headers)
    assert r.status_code == 400
    assert r.json()["code"] == "invalid_argument"


def test_invalid_payloads_are_rejected(client, auth_headers, product, stock_of):
    bad_bodies = [
        {"product_id": product.id, "quantity": 0},
        {"product_id": product.id, "quantity": "-2"},
        {"product_id": product.id, "quantity": "abc"},
        {"product_id": product.id, "quantity": "1.0001"},
        {"product_id": product.id},
        {"product_id": product.id, "quantity": 1, "occurred_at": "31/12/2024"},
    ]
    for body in bad_bodies:
        r = client.post("/movements/inbound", json=body, headers=auth_headers)
        assert r.status_code == 400, body
        assert r.json()["code"] == "invalid_argument"
    assert stock_of(product.id) == Decimal("100")


def test_products_of_other_tenants_are_invisible(client, auth_headers, make_tenant, make_product, stock_of):
    other_tenant = make_tenant(slug="confeitaria")
    foreign = make_product(stock="10", tenant_id=other_tenant.id)

    r = client.post("/movements/outbound", json={"product_id": foreign.id, "quantity": 1}, headers=auth_headers)
    assert r.status_code == 404
    r = client.get(f"/movements/products/{foreign.id}/balance", headers=auth_headers)
    assert r.status_code == 404
    assert stock_of(foreign.id) == Decimal("10")


def test_demo_seed_is_idempotent(session_factory, service):
    from pricing_api.services.seed import seed_demo

    with session_factory() as db:
        first = seed_demo(db)
    with session_factory() as db:
        again = seed_demo(db)
    assert again.id == first.id

    with session_factory() as db:
        products = db.query(Product).filter(Product.tenant_id == first.id).order_by(Product.id).all()
    assert len(products) == 3

    service.record_outbound(products[0].id, "2.5", tenant_id=first.id)
    assert service.stock_balance(products[0].id, tenant_id=first.id).stock == Decimal("22.5")


class _FailingService:
    def __init__(self, error):
        self.error = error

    def record_outbound(self, *args, **kwargs):
        raise self.error


def test_lock_conflicts_are_reported_as_retryable(client, auth_headers, product):
    app.dependency_overrides[get_movement_service] = lambda: _FailingService(ConflictRetryable())

    r = client.post("/movements/outbound", json={"product_id": product.id, "quantity": 1}, headers=auth_headers)

    assert r.status_code == 409
    assert r.json()["code"] == "conflict_retryable"
    assert r.headers["Retry-After"] == "1"


def test_storage_failures_are_reported_as_unavailable(client, auth_headers, product):
    app.dependency_overrides[get_movement_service] = lambda: _FailingService(StorageUnavailable("Storage error: OperationalError"))

    r = client.post("/movements/outbound", json={"product_id": product.id, "quantity": 1}, headers=auth_headers)

    assert r.status_code == 503
    assert r.json() == {"detail": "Storage error: OperationalError", "code": "storage_unavailable"}
    assert "Retry-After" not in r.headers


def test_list_movements_is_paged(client, auth_headers, service, product):
    for _ in range(101):
        service.record_inbound(product.id, 1, occurred_at="2025-01-01")

    r = client.get("/movements", headers=auth_headers)
    assert r.status_code == 200
    first_page = r.json()
    assert len(first_page) == 100

    r = client.get("/movements", params={"skip": 100}, headers=auth_headers)
    rest = r.json()
    assert len(rest) == 1
    assert rest[0]["id"] not in {m["id"] for m in first_page}

    r = client.get("/movements", params={"limit": 1001}, headers=auth_headers)
    assert r.status_code == 400
    assert r.json()["code"] == "invalid_argument"
