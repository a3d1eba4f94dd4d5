# backend/tests/routers/test_transactions_api.py
"""
Integration tests for Transaction API endpoints.

These tests verify full HTTP request/response cycles for:
- POST /transactions (Create with automatic FX)
- POST /transactions/batch (Atomic batch with links)
- GET /transactions (List with filters and pagination)
- GET /transactions/{id} (Read)
- PATCH /transactions/{id} (Update with derived field recompute)
- DELETE /transactions/{id} and /transactions/{id}/group
- GET /transactions/{id}/links, POST /links

Tests validate:
- Correct status codes
- Response structure matches schemas
- Derived fields computed server-side
- Error responses (404, 400, 422)
"""

from decimal import Decimal

import pytest


def _posting(**overrides) -> dict:
    payload = {
        "date": "2024-03-01T09:30:00Z",
        "type": "buy",
        "asset": "btc",
        "account": "Binance Spot",
        "quantity": "0.5",
        "price_local": "60000",
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def created(client) -> dict:
    response = client.post("/transactions", json=_posting())
    assert response.status_code == 201
    return response.json()


# =============================================================================
# CREATE
# =============================================================================

class TestCreateTransaction:

    def test_create_derives_fields(self, created):
        assert created["asset"] == "BTC"
        assert Decimal(created["amount_local"]) == Decimal("30000")
        assert Decimal(created["amount_usd"]) == Decimal("30000")
        assert Decimal(created["delta_qty"]) == Decimal("0.5")
        assert Decimal(created["cashflow_usd"]) == Decimal("-30000")
        assert Decimal(created["fx_to_usd"]) == Decimal("1")

    def test_fiat_gets_fx_from_gateway(self, client):
        response = client.post("/transactions", json=_posting(
            type="income", asset="USD", account="Bank", quantity="100", price_local="1",
        ))

        assert response.status_code == 201
        data = response.json()
        assert Decimal(data["fx_to_vnd"]) == Decimal("25000")
        assert Decimal(data["amount_vnd"]) == Decimal("2500000")

    def test_invalid_posting_is_400(self, client):
        response = client.post("/transactions", json=_posting(quantity="0"))

        assert response.status_code == 400
        assert response.json()["details"] == {"field": "quantity"}

    def test_fx_unavailable_is_503(self, client):
        response = client.post("/transactions", json=_posting(
            type="income", asset="JPY", account="Bank", quantity="1000", price_local="1",
        ))

        assert response.status_code == 503
        assert response.json()["error"] == "FXRateNotFoundError"

    def test_unknown_type_is_422(self, client):
        response = client.post("/transactions", json=_posting(type="teleport"))

        assert response.status_code == 422
        fields = [error["field"] for error in response.json()["details"]["errors"]]
        assert "body.type" in fields


# =============================================================================
# BATCH
# =============================================================================

class TestBatch:

    def test_batch_links_first_to_rest(self, client):
        response = client.post("/transactions/batch", json={"transactions": [
            _posting(type="transfer_out", asset="USDT", quantity="100", price_local="1"),
            _posting(type="transfer_in", asset="USDT", account="Ledger", quantity="100", price_local="1"),
            _posting(type="fee", asset="USDT", quantity="1", price_local="1"),
        ]})

        assert response.status_code == 201
        first, second, third = (tx["id"] for tx in response.json())
        links = client.get(f"/transactions/{first}/links").json()
        assert {(link["from_tx"], link["to_tx"]) for link in links} == {(first, second), (first, third)}
        assert all(link["link_type"] == "action" for link in links)

    def test_invalid_leg_persists_nothing(self, client):
        response = client.post("/transactions/batch", json={"transactions": [
            _posting(),
            _posting(quantity="-1"),
        ]})

        assert response.status_code == 400
        assert client.get("/transactions").json()["pagination"]["total"] == 0

    def test_empty_batch_is_422(self, client):
        assert client.post("/transactions/batch", json={"transactions": []}).status_code == 422


# =============================================================================
# READ
# =============================================================================

class TestReadTransactions:

    def test_get_by_id(self, client, created):
        response = client.get(f"/transactions/{created['id']}")

        assert response.status_code == 200
        assert response.json()["id"] == created["id"]

    def test_get_missing(self, client):
        response = client.get("/transactions/missing")

        assert response.status_code == 404
        assert response.json()["details"] == {"resource_type": "Transaction", "resource_id": "missing"}

    def test_list_filters_and_pagination(self, client):
        for day in ("01", "02", "03"):
            client.post("/transactions", json=_posting(date=f"2024-03-{day}T00:00:00Z"))
        client.post("/transactions", json=_posting(asset="ETH", price_local="3000"))

        response = client.get("/transactions", params={"asset": "BTC", "limit": 2})

        data = response.json()
        assert data["pagination"]["total"] == 3
        assert data["pagination"]["pages"] == 2
        assert data["pagination"]["has_next"] is True
        assert [tx["date"][:10] for tx in data["items"]] == ["2024-03-03", "2024-03-02"]

    def test_list_limit_bounds(self, client):
        assert client.get("/transactions", params={"limit": 0}).status_code == 422


# =============================================================================
# UPDATE
# =============================================================================

class TestUpdateTransaction:

    def test_update_recomputes(self, client, created):
        response = client.patch(f"/transactions/{created['id']}", json={"quantity": "2"})

        assert response.status_code == 200
        data = response.json()
        assert Decimal(data["amount_usd"]) == Decimal("120000")
        assert Decimal(data["delta_qty"]) == Decimal("2")

    def test_explicit_null_clears_nullable_field(self, client):
        created = client.post(
            "/transactions", json=_posting(exit_date="2024-04-01T00:00:00Z", horizon="long-term")
        ).json()
        assert created["exit_date"] is not None

        response = client.patch(
            f"/transactions/{created['id']}", json={"exit_date": None, "horizon": None, "quantity": None}
        )

        assert response.status_code == 200
        data = response.json()
        assert data["exit_date"] is None
        assert data["horizon"] is None
        assert Decimal(data["quantity"]) == Decimal("0.5")

    def test_update_missing(self, client):
        assert client.patch("/transactions/missing", json={"note": "x"}).status_code == 404


# =============================================================================
# DELETE
# =============================================================================

class TestDeleteTransaction:

    def test_delete(self, client, created):
        response = client.delete(f"/transactions/{created['id']}")

        assert response.status_code == 204
        assert client.get(f"/transactions/{created['id']}").status_code == 404

    def test_delete_group(self, client):
        legs = client.post("/transactions/batch", json={"transactions": [
            _posting(type="transfer_out", asset="USDT", quantity="10", price_local="1"),
            _posting(type="transfer_in", asset="USDT", account="Ledger", quantity="10", price_local="1"),
        ]}).json()

        response = client.delete(f"/transactions/{legs[1]['id']}/group")

        assert response.status_code == 200
        assert set(response.json()["deleted_ids"]) == {leg["id"] for leg in legs}
        assert client.get("/transactions").json()["pagination"]["total"] == 0


# =============================================================================
# LINKS
# =============================================================================

class TestLinks:

    def test_create_link(self, client):
        borrow = client.post("/transactions", json=_posting(type="borrow", asset="USDT", price_local="1")).json()
        repay = client.post("/transactions", json=_posting(type="repay_borrow", asset="USDT", price_local="1")).json()

        response = client.post("/links", json={
            "link_type": "borrow_repay", "from_tx": borrow["id"], "to_tx": repay["id"],
        })

        assert response.status_code == 201
        assert response.json()["link_type"] == "borrow_repay"

    def test_self_link_is_400(self, client, created):
        response = client.post("/links", json={
            "link_type": "action", "from_tx": created["id"], "to_tx": created["id"],
        })

        assert response.status_code == 400

    def test_link_to_missing_posting_is_404(self, client, created):
        response = client.post("/links", json={
            "link_type": "action", "from_tx": created["id"], "to_tx": "missing",
        })

        assert response.status_code == 404

    def test_links_of_missing_posting(self, client):
        assert client.get("/transactions/missing/links").status_code == 404
