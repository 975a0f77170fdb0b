import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool

from auth import issue_access_token
from database import Base, build_engine, make_sessionmaker
from main import app, get_db
from services import category_tree_cache


@pytest.fixture()
def client():
    engine = build_engine("sqlite+pysqlite:///:memory:", poolclass=StaticPool)
    Base.metadata.create_all(engine)
    TestingSession = make_sessionmaker(engine)

    def override_get_db():
        db = TestingSession()
        try:
            yield db
        finally:
            db.close()

    category_tree_cache.clear()
    app.dependency_overrides[get_db] = override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def auth_headers(user_id: int = 1) -> dict[str, str]:
    return {"Authorization": f"Bearer {issue_access_token(user_id)}"}


def test_requests_without_valid_token_are_rejected(client) -> None:
    missing = client.get("/finance/accounts")
    garbage = client.get(
        "/finance/accounts", headers={"Authorization": "Bearer nonsense"}
    )
    wrong_scheme = client.get(
        "/finance/accounts",
        headers={"Authorization": f"Basic {issue_access_token(1)}"},
    )

    for response in (missing, garbage, wrong_scheme):
        assert response.status_code == 401
        assert response.json()["success"] is False
        assert response.json()["error"]["status"] == 401


def test_account_lifecycle_uses_envelope_and_camel_case(client) -> None:
    created = client.post(
        "/finance/accounts",
        json={"name": "Wallet", "type": "cash", "initialBalance": "100.00"},
        headers=auth_headers(),
    )
    assert created.status_code == 201
    body = created.json()
    assert body["success"] is True
    account = body["data"]
    assert account["initialBalance"] == "100.00"
    assert account["balance"] == "100.00"
    assert account["totals"]["transferNet"] == "0.00"

    listed = client.get("/finance/accounts", headers=auth_headers())
    assert [a["name"] for a in listed.json()["data"]] == ["Wallet"]

    deleted = client.delete(f"/finance/accounts/{account['id']}", headers=auth_headers())
    assert deleted.status_code == 200
    assert client.get(
        f"/finance/accounts/{account['id']}", headers=auth_headers()
    ).status_code == 404


def test_not_found_and_conflict_statuses(client) -> None:
    missing = client.get("/finance/accounts/999", headers=auth_headers())
    assert missing.status_code == 404
    assert missing.json() == {
        "success": False,
        "error": {"status": 404, "message": "Account not found"},
    }

    payload = {"name": "Wallet", "type": "cash"}
    client.post("/finance/accounts", json=payload, headers=auth_headers())
    duplicate = client.post("/finance/accounts", json=payload, headers=auth_headers())
    assert duplicate.status_code == 409
    assert "already exists" in duplicate.json()["error"]["message"]


def test_other_users_rows_are_not_found(client) -> None:
    created = client.post(
        "/finance/accounts",
        json={"name": "Wallet", "type": "cash"},
        headers=auth_headers(1),
    ).json()["data"]

    response = client.get(
        f"/finance/accounts/{created['id']}", headers=auth_headers(2)
    )

    assert response.status_code == 404


def test_transfer_flow_over_http(client) -> None:
    headers = auth_headers()
    source = client.post(
        "/finance/accounts",
        json={"name": "Checking", "type": "bank", "initialBalance": "500.00"},
        headers=headers,
    ).json()["data"]
    target = client.post(
        "/finance/accounts", json={"name": "Savings", "type": "bank"}, headers=headers
    ).json()["data"]

    created = client.post(
        "/finance/transactions",
        json={
            "type": "TRANSFER",
            "accountId": source["id"],
            "targetAccountId": target["id"],
            "amount": "120.00",
            "occurredAt": "2025-03-10T12:00:00Z",
            "tags": "savings, monthly",
        },
        headers=headers,
    )
    assert created.status_code == 201
    txn = created.json()["data"]
    assert txn["groupType"] == "TRANSFER"
    assert txn["transferDirection"] == "OUT"
    assert txn["tags"] == ["monthly", "savings"]

    rejected = client.patch(
        f"/finance/transactions/{txn['id']}", json={"amount": "1.00"}, headers=headers
    )
    assert rejected.status_code == 409

    patched = client.patch(
        f"/finance/transactions/{txn['id']}",
        json={"notes": "Monthly saving"},
        headers=headers,
    )
    assert patched.json()["data"]["notes"] == "Monthly saving"

    listed = client.get(
        "/finance/transactions",
        params={"accountId": target["id"], "pageSize": 5},
        headers=headers,
    ).json()
    assert listed["meta"] == {"page": 1, "pageSize": 5, "total": 1, "pageCount": 1}
    assert listed["data"][0]["transferDirection"] == "IN"
    assert listed["data"][0]["notes"] == "Monthly saving"

    balance = client.get(f"/finance/accounts/{target['id']}", headers=headers)
    assert balance.json()["data"]["balance"] == "120.00"

    client.delete(f"/finance/transactions/{txn['id']}", headers=headers)
    listed = client.get("/finance/transactions", headers=headers).json()
    assert listed["data"] == []


def test_invalid_amount_is_unprocessable(client) -> None:
    headers = auth_headers()
    account = client.post(
        "/finance/accounts", json={"name": "Wallet", "type": "cash"}, headers=headers
    ).json()["data"]

    response = client.post(
        "/finance/transactions",
        json={
            "type": "EXPENSE",
            "accountId": account["id"],
            "amount": "1.005",
            "occurredAt": "2025-03-10T12:00:00",
        },
        headers=headers,
    )

    assert response.status_code == 422


def test_budgets_and_category_tree_over_http(client) -> None:
    headers = auth_headers()
    account = client.post(
        "/finance/accounts", json={"name": "Wallet", "type": "cash"}, headers=headers
    ).json()["data"]
    food = client.post(
        "/finance/categories", json={"name": "Food"}, headers=headers
    ).json()["data"]
    client.post(
        "/finance/categories",
        json={"name": "Snacks", "parentId": food["id"]},
        headers=headers,
    )
    client.post(
        "/finance/transactions",
        json={
            "type": "EXPENSE",
            "accountId": account["id"],
            "categoryId": food["id"],
            "amount": "42.00",
            "occurredAt": "2025-03-10T12:00:00",
        },
        headers=headers,
    )

    tree = client.get("/finance/categories/tree", headers=headers).json()["data"]
    assert tree[0]["name"] == "Food"
    assert [c["name"] for c in tree[0]["children"]] == ["Snacks"]

    budget = client.post(
        "/finance/budgets",
        json={"categoryId": food["id"], "year": 2025, "month": 3, "plannedAmount": "50"},
        headers=headers,
    )
    assert budget.status_code == 201
    assert budget.json()["data"]["actualAmount"] == "42.00"

    listed = client.get(
        "/finance/budgets", params={"year": 2025, "month": 3}, headers=headers
    ).json()["data"]
    assert [b["plannedAmount"] for b in listed] == ["50.00"]
