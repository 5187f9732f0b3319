import os
import sys
from datetime import datetime
from decimal import Decimal

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from jose import jwt

# Adjust path to import app and other modules
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from app.main import app
from app.database import get_db

from conftest import add_invoice

AUTH_SECRET_KEY = os.getenv("AUTH_SECRET_KEY", "a_very_secret_key_that_should_be_in_an_env_var")
AUTH_ALGORITHM = "HS256"
TEST_USER_ID = "test-user@example.com"


def get_auth_headers(user_id: str = TEST_USER_ID) -> dict[str, str]:
    token = jwt.encode({"sub": user_id}, AUTH_SECRET_KEY, algorithm=AUTH_ALGORITHM)
    return {"Authorization": f"Bearer {token}"}


@pytest_asyncio.fixture()
async def api_db(session_factory):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    yield
    app.dependency_overrides.clear()


# --- Tests ---
client = TestClient(app)


def invoice_payload(customer_id):
    return {
        "customer_id": customer_id,
        "invoice_date": "2024-01-15T09:00:00",
        "line_items": [
            {"service_type": "STAINLESS_INSERT", "description": "Insert", "quantity": 2, "unit_price": "450.00"},
            {"service_type": "STAINLESS_CLAMPS", "description": "Clamps", "quantity": 1, "unit_price": "25.00"},
        ],
    }


def test_health_check():
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


@pytest.mark.asyncio
async def test_requires_authentication(api_db):
    response = client.get("/invoices")
    assert response.status_code == 401

    response = client.get("/invoices", headers={"Authorization": "Bearer not-a-token"})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_create_and_get_invoice(api_db, customer):
    response = client.post("/invoices", headers=get_auth_headers(), json=invoice_payload(customer.id))
    assert response.status_code == 201
    created = response.json()
    assert created["invoice_number"] == 10001
    assert created["region_id"] == "BC"
    assert Decimal(created["subtotal"]) == Decimal("925.00")
    assert Decimal(created["total"]) == Decimal("1036.00")
    assert created["due_date"].startswith("2024-02-14")

    response = client.get(f"/invoices/{created['id']}", headers=get_auth_headers())
    assert response.status_code == 200
    assert response.json()["invoice_number"] == 10001

    response = client.post("/invoices?regionId=AB", headers=get_auth_headers(), json=invoice_payload(customer.id))
    assert response.json()["invoice_number"] == 10001
    assert response.json()["region_id"] == "AB"


@pytest.mark.asyncio
async def test_create_invoice_validation_and_missing_customer(api_db, customer):
    payload = invoice_payload(customer.id)
    payload["line_items"] = []
    response = client.post("/invoices", headers=get_auth_headers(), json=payload)
    assert response.status_code == 422

    payload = invoice_payload(customer.id)
    payload["line_items"][0]["quantity"] = -1
    response = client.post("/invoices", headers=get_auth_headers(), json=payload)
    assert response.status_code == 422

    response = client.post("/invoices", headers=get_auth_headers(), json=invoice_payload("missing"))
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_get_nonexistent_invoice(api_db):
    response = client.get("/invoices/does-not-exist", headers=get_auth_headers())
    assert response.status_code == 404
    assert "not found" in response.json()["detail"].lower()


@pytest.mark.asyncio
async def test_send_pay_and_delete_flow(api_db, customer):
    invoice_id = client.post("/invoices", headers=get_auth_headers(), json=invoice_payload(customer.id)).json()["id"]

    response = client.post(
        f"/invoices/{invoice_id}/send",
        headers=get_auth_headers(),
        json={"email_to": "accounts@granvillebistro.ca"},
    )
    assert response.status_code == 200
    assert response.json()["status"] == "SENT"
    assert response.json()["emailed_to"] == "accounts@granvillebistro.ca"

    response = client.post(f"/invoices/{invoice_id}/pay", headers=get_auth_headers(), json={})
    assert response.status_code == 422

    response = client.post(f"/invoices/{invoice_id}/pay", headers=get_auth_headers(), json={"payment_method": "CHEQUE"})
    assert response.status_code == 200
    assert response.json()["status"] == "PAID"
    assert response.json()["payment_method"] == "CHEQUE"

    response = client.delete(f"/invoices/{invoice_id}", headers=get_auth_headers())
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_send_without_body(api_db, customer):
    invoice_id = client.post("/invoices", headers=get_auth_headers(), json=invoice_payload(customer.id)).json()["id"]

    response = client.post(f"/invoices/{invoice_id}/send", headers=get_auth_headers())
    assert response.status_code == 200
    assert response.json()["status"] == "SENT"


@pytest.mark.asyncio
async def test_update_and_delete_invoice(api_db, customer):
    invoice_id = client.post("/invoices", headers=get_auth_headers(), json=invoice_payload(customer.id)).json()["id"]

    response = client.put(
        f"/invoices/{invoice_id}",
        headers=get_auth_headers(),
        json={"line_items": [{"service_type": "RESURFACING", "quantity": 1000, "unit_price": "0.065"}]},
    )
    assert response.status_code == 200
    assert Decimal(response.json()["subtotal"]) == Decimal("65.00")
    assert Decimal(response.json()["total"]) == Decimal("72.80")

    response = client.delete(f"/invoices/{invoice_id}", headers=get_auth_headers())
    assert response.status_code == 204

    response = client.get(f"/invoices/{invoice_id}", headers=get_auth_headers())
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_list_invoices_with_pagination(api_db, customer):
    for _ in range(3):
        client.post("/invoices", headers=get_auth_headers(), json=invoice_payload(customer.id))

    response = client.get("/invoices?page=1&limit=2", headers=get_auth_headers())
    assert response.status_code == 200
    body = response.json()
    assert len(body["data"]) == 2
    assert body["pagination"] == {"page": 1, "limit": 2, "total": 3, "pages": 2}

    response = client.get("/invoices?search=bistro", headers=get_auth_headers())
    assert response.json()["pagination"]["total"] == 3

    response = client.get("/invoices?status=PAID", headers=get_auth_headers())
    assert response.json()["pagination"]["total"] == 0

    response = client.get(f"/invoices/customer/{customer.id}", headers=get_auth_headers())
    assert len(response.json()) == 3


@pytest.mark.asyncio
async def test_update_overdue_and_bulk_status(api_db, db_session, customer):
    late = await add_invoice(db_session, customer, invoice_number=1, status="SENT", due_date=datetime(2020, 1, 1))
    draft = await add_invoice(db_session, customer, invoice_number=2, status="DRAFT", due_date=datetime(2020, 1, 1))

    response = client.post("/invoices/update-overdue", headers=get_auth_headers())
    assert response.status_code == 200
    assert response.json()["count"] == 1

    response = client.post("/invoices/update-overdue", headers=get_auth_headers())
    assert response.json()["count"] == 0

    response = client.post(
        "/invoices/bulk-status",
        headers=get_auth_headers(),
        json={"invoice_ids": [late.id, draft.id], "status": "CANCELLED"},
    )
    assert response.status_code == 200
    # OVERDUE can only be paid
    assert response.json()["count"] == 1


@pytest.mark.asyncio
async def test_invoice_stats(api_db, db_session, customer):
    await add_invoice(db_session, customer, invoice_number=1, status="PAID", total=Decimal("100.00"))
    await add_invoice(db_session, customer, invoice_number=2, status="SENT", total=Decimal("100.00"))

    response = client.get("/invoices/stats?regionId=BC", headers=get_auth_headers())
    assert response.status_code == 200
    stats = response.json()
    assert stats["total_invoices"] == 2
    assert Decimal(stats["total_revenue"]) == Decimal("100.00")
    assert Decimal(stats["average_invoice_value"]) == Decimal("50.00")
    assert stats["revenue_by_month"] == {"2024-03": "100.00"}


@pytest.mark.asyncio
async def test_settings_endpoints(api_db):
    response = client.get("/invoices/settings/tax-rates", headers=get_auth_headers())
    assert response.status_code == 200
    assert Decimal(response.json()["gst"]) == Decimal("0.05")

    response = client.put("/invoices/settings/tax-rates?regionId=BC", headers=get_auth_headers(), json={"pst": "0.08"})
    assert response.status_code == 200
    assert Decimal(response.json()["pst"]) == Decimal("0.08")

    response = client.put("/invoices/settings/tax-rates", headers=get_auth_headers(), json={"gst": "1.5"})
    assert response.status_code == 422

    response = client.put(
        "/invoices/settings/service-pricing/SPECIAL", headers=get_auth_headers(), json={"unit_price": "30.00"}
    )
    assert response.status_code == 200
    assert response.json()["description"] == "Special services"

    response = client.get("/invoices/settings/all?regionId=BC", headers=get_auth_headers())
    assert response.status_code == 200
    settings_body = response.json()
    assert Decimal(settings_body["tax_rates"]["pst"]) == Decimal("0.08")
    assert Decimal(settings_body["service_pricing"]["SPECIAL"]["unit_price"]) == Decimal("30.00")
    assert settings_body["invoice_defaults"]["payment_terms_days"] == 30
    assert settings_body["company_info"]["city"] == "Vancouver"


@pytest.mark.asyncio
async def test_raw_settings_endpoints(api_db):
    response = client.put(
        "/invoices/settings/raw/email/signature",
        headers=get_auth_headers(),
        json={"value": {"text": "Regards"}, "description": "Footer"},
    )
    assert response.status_code == 200
    assert response.json()["value"] == {"text": "Regards"}

    response = client.get("/invoices/settings/raw/email/signature", headers=get_auth_headers())
    assert response.json()["value"] == {"text": "Regards"}

    assert client.delete("/invoices/settings/raw/email/signature", headers=get_auth_headers()).status_code == 204
    assert client.get("/invoices/settings/raw/email/signature", headers=get_auth_headers()).status_code == 404

    client.put("/invoices/settings/tax-rates", headers=get_auth_headers(), json={"gst": "0.05"})
    response = client.delete("/invoices/settings/raw/invoice/tax_rates", headers=get_auth_headers())
    assert response.status_code == 409


@pytest.mark.asyncio
@pytest.mark.parametrize("invoice_status", ["PAID", "OVERDUE", "CANCELLED"])
async def test_create_invoice_only_as_draft_or_sent(api_db, customer, invoice_status):
    payload = invoice_payload(customer.id)
    payload["status"] = invoice_status
    response = client.post("/invoices", headers=get_auth_headers(), json=payload)
    assert response.status_code == 422

    response = client.get("/invoices", headers=get_auth_headers())
    assert response.json()["pagination"]["total"] == 0

    payload["status"] = "SENT"
    response = client.post("/invoices", headers=get_auth_headers(), json=payload)
    assert response.status_code == 201
    assert response.json()["status"] == "SENT"


@pytest.mark.asyncio
async def test_next_invoice_number_cannot_go_backwards(api_db, customer):
    first = client.post("/invoices", headers=get_auth_headers(), json=invoice_payload(customer.id)).json()
    second = client.post("/invoices", headers=get_auth_headers(), json=invoice_payload(customer.id)).json()
    assert client.delete(f"/invoices/{second['id']}", headers=get_auth_headers()).status_code == 204

    response = client.put(
        "/invoices/settings/defaults?regionId=BC",
        headers=get_auth_headers(),
        json={"next_invoice_number": first["invoice_number"] + 1, "payment_terms_days": 10},
    )
    assert response.status_code == 409

    # The rejected update changed nothing
    response = client.get("/invoices/settings/defaults?regionId=BC", headers=get_auth_headers())
    assert response.json()["payment_terms_days"] == 30

    response = client.post("/invoices", headers=get_auth_headers(), json=invoice_payload(customer.id))
    assert response.json()["invoice_number"] == 10003

    response = client.put(
        "/invoices/settings/defaults?regionId=BC", headers=get_auth_headers(), json={"next_invoice_number": 20000}
    )
    assert response.status_code == 200
    response = client.post("/invoices", headers=get_auth_headers(), json=invoice_payload(customer.id))
    assert response.json()["invoice_number"] == 20000


@pytest.mark.asyncio
async def test_malformed_stored_tax_rates_return_503(api_db, customer):
    response = client.put(
        "/invoices/settings/raw/invoice/tax_rates", headers=get_auth_headers(), json={"value": "five percent"}
    )
    assert response.status_code == 200

    response = client.get("/invoices/settings/tax-rates", headers=get_auth_headers())
    assert response.status_code == 503

    response = client.post("/invoices", headers=get_auth_headers(), json=invoice_payload(customer.id))
    assert response.status_code == 503
