import pytest
from fastapi.testclient import TestClient

import main
from cache import get_cache_backend
from database import make_sessionmaker
from models import PermissionName
from services import INSUFFICIENT_GRANT_MESSAGE, NOT_SIGNED_IN_MESSAGE
from sessions import issue_session_token


@pytest.fixture
def client(engine):
    SessionLocal = make_sessionmaker(engine)

    def override_get_db():
        db = SessionLocal()
        try:
            yield db
        finally:
            db.close()

    get_cache_backend.cache_clear()
    main.app.dependency_overrides[main.get_db] = override_get_db
    try:
        yield TestClient(main.app)
    finally:
        main.app.dependency_overrides.clear()
        get_cache_backend.cache_clear()


@pytest.fixture
def accounts(ledger):
    ledger.tag("root")
    a = ledger.entity("A", "root")
    b = ledger.entity("B", "root")
    ledger.transfer(a, b, 100)
    return a, b


def _auth(user_id: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {issue_session_token(user_id)}"}


def test_end_to_end_balances_for_both_sides(client, ledger, accounts) -> None:
    a, b = accounts
    ledger.permission("admin", PermissionName.admin)

    resp = client.get(
        "/api/movements/balances", params={"entity_id": a.id}, headers=_auth("admin")
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body[0]["entity_id"] == a.id
    assert body[0]["balances"][0]["currency"] == "USD"
    assert body[0]["balances"][0]["status"] is False
    assert float(body[0]["balances"][0]["amount"]) == 100
    assert body[0]["balances"][0]["date"] == "2025-01-05"

    resp = client.get(
        "/api/movements/balances", params={"entity_id": b.id}, headers=_auth("admin")
    )
    assert float(resp.json()[0]["balances"][0]["amount"]) == -100


def test_missing_session_is_unauthorized(client, accounts) -> None:
    a, _ = accounts

    resp = client.get("/api/movements/balances/card", params={"entity_id": a.id})

    assert resp.status_code == 401
    assert resp.json()["detail"] == NOT_SIGNED_IN_MESSAGE


def test_insufficient_grant_is_unauthorized_with_its_own_message(
    client, accounts
) -> None:
    a, _ = accounts

    resp = client.get(
        "/api/movements/balances", params={"entity_id": a.id}, headers=_auth("u1")
    )

    assert resp.status_code == 401
    assert resp.json()["detail"] == INSUFFICIENT_GRANT_MESSAGE


def test_link_holder_reads_card_and_movements(client, ledger, accounts) -> None:
    a, _ = accounts
    link = ledger.link(a, "pw")
    params = {"entity_id": a.id, "link_id": link.id, "link_token": "pw"}

    card = client.get("/api/movements/balances/card", params=params)
    assert card.status_code == 200
    assert float(card.json()[0]["balances"][0]["amount"]) == 100

    page = client.get(
        "/api/movements/current-accounts",
        params={**params, "page_size": 5, "page_number": 1},
    )
    assert page.status_code == 200
    assert page.json()["total_rows"] == 1
    movement = page.json()["movements"][0]
    assert movement["transaction"]["from_entity"]["name"] == "A"


def test_detailed_balance_requires_account_type(client, accounts) -> None:
    a, b = accounts
    headers = _auth("u1")

    resp = client.get(
        "/api/movements/balances/detailed", params={"entity_id": a.id}, headers=headers
    )
    assert resp.status_code == 400

    resp = client.get(
        "/api/movements/balances/detailed",
        params={"entity_id": a.id, "account_type": "false"},
        headers=headers,
    )
    assert resp.status_code == 200
    assert [(row["entity_id"], float(row["balance"])) for row in resp.json()] == [
        (b.id, 100.0)
    ]


def test_empty_scope_returns_empty_result(client) -> None:
    resp = client.get("/api/movements/balances/card")

    assert resp.status_code == 200
    assert resp.json() == []


def test_bad_query_parameter_is_rejected(client) -> None:
    resp = client.get("/api/movements/balances", params={"entity_id": "abc"})

    assert resp.status_code == 400


def test_tag_cycle_is_reported_as_integrity_failure(client, ledger, caplog) -> None:
    ledger.tag("ops", parent="sales")
    ledger.tag("sales", parent="ops")

    resp = client.get(
        "/api/movements/balances/card",
        params={"entity_tag": "ops"},
        headers=_auth("u1"),
    )

    assert resp.status_code == 500
    assert resp.json() == {
        "detail": "Tag hierarchy is inconsistent, contact an administrator"
    }
    assert "tag_hierarchy_corrupt" in caplog.text
