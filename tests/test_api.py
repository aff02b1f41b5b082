from contextlib import contextmanager

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from starlette.websockets import WebSocketDisconnect

from database import Base, enable_sqlite_foreign_keys, get_db, get_session_factory
from main import app
from models import User, UserRole


@pytest.fixture()
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    event.listen(engine, "connect", enable_sqlite_foreign_keys)
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@contextmanager
def serving(factory):
    def override_get_db():
        db = factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: factory
    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        app.dependency_overrides.clear()


@pytest.fixture()
def client(session_factory):
    with serving(session_factory) as test_client:
        yield test_client


def register(client, email="ana@example.com", name="Ana", password="secret123"):
    response = client.post(
        "/api/auth/register",
        json={"email": email, "password": password, "name": name},
    )
    assert response.status_code == 201, response.text
    return response.json()


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def add_txn(client, headers, description, type, amount, day):
    response = client.post(
        "/api/transactions",
        json={"description": description, "type": type, "amount": amount, "date": day},
        headers=headers,
    )
    assert response.status_code == 201, response.text
    return response.json()


def promote(session_factory, user_id: int) -> None:
    with session_factory() as session:
        user = session.get(User, user_id)
        user.role = UserRole.admin
        session.commit()


def test_health(client) -> None:
    response = client.get("/api/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_register_login_and_verify(client) -> None:
    body = register(client, email="Ana@Example.com")
    assert body["user"]["email"] == "ana@example.com"
    assert body["user"]["role"] == "user"
    assert "password_hash" not in body["user"]

    duplicate = client.post(
        "/api/auth/register",
        json={"email": "ana@example.com", "password": "secret123", "name": "Other"},
    )
    assert duplicate.status_code == 409

    short = client.post(
        "/api/auth/register",
        json={"email": "budi@example.com", "password": "123", "name": "Budi"},
    )
    assert short.status_code == 422

    bad = client.post(
        "/api/auth/login", json={"email": "ana@example.com", "password": "wrong-pass"}
    )
    assert bad.status_code == 401

    login = client.post(
        "/api/auth/login", json={"email": "ana@example.com", "password": "secret123"}
    )
    assert login.status_code == 200
    token = login.json()["token"]

    verified = client.get("/api/auth/verify", headers=bearer(token))
    assert verified.status_code == 200
    assert verified.json()["user"]["id"] == body["user"]["id"]

    assert client.get("/api/auth/verify").status_code == 401
    assert client.get("/api/auth/verify", headers=bearer("garbage")).status_code == 401


def test_profile_update_validates_timezone(client) -> None:
    headers = bearer(register(client)["token"])

    bad = client.put("/api/user/profile", json={"timezone": "Mars/Base"}, headers=headers)
    assert bad.status_code == 400

    ok = client.put(
        "/api/user/profile",
        json={"name": "Ana Maria", "timezone": "Asia/Makassar"},
        headers=headers,
    )
    assert ok.status_code == 200
    settings = client.get("/api/user/settings", headers=headers).json()
    assert settings["name"] == "Ana Maria"
    assert settings["timezone"] == "Asia/Makassar"


def test_transaction_crud_is_scoped_to_owner(client) -> None:
    ana = bearer(register(client)["token"])
    budi = bearer(register(client, email="budi@example.com", name="Budi")["token"])

    created = add_txn(client, ana, "Salary", "income", 100_000, "2024-01-05")
    assert created["amount"] == 100_000

    assert client.get("/api/transactions", headers=budi).json() == []
    foreign = client.put(
        f"/api/transactions/{created['id']}",
        json={"description": "Hack", "type": "expense", "amount": 1, "date": "2024-01-05"},
        headers=budi,
    )
    assert foreign.status_code == 404
    assert client.delete(f"/api/transactions/{created['id']}", headers=budi).status_code == 404

    updated = client.put(
        f"/api/transactions/{created['id']}",
        json={"description": "Bonus", "type": "income", "amount": 150_000, "date": "2024-01-06"},
        headers=ana,
    )
    assert updated.status_code == 200
    assert updated.json()["description"] == "Bonus"

    invalid = client.post(
        "/api/transactions",
        json={"description": "Bad", "type": "income", "amount": -5, "date": "2024-01-05"},
        headers=ana,
    )
    assert invalid.status_code == 422

    deleted = client.delete(f"/api/transactions/{created['id']}", headers=ana)
    assert deleted.status_code == 204
    assert client.get("/api/transactions", headers=ana).json() == []


def test_delete_all_transactions(client) -> None:
    headers = bearer(register(client)["token"])
    add_txn(client, headers, "Salary", "income", 100, "2024-01-05")
    add_txn(client, headers, "Rent", "expense", 40, "2024-01-06")

    response = client.delete("/api/transactions", headers=headers)

    assert response.status_code == 204
    assert client.get("/api/transactions", headers=headers).json() == []


def test_view_filters_and_paginates_with_running_balance(client) -> None:
    headers = bearer(register(client)["token"])
    add_txn(client, headers, "Salary", "income", 100, "2024-01-05")
    add_txn(client, headers, "Groceries", "expense", 40, "2024-01-10")
    add_txn(client, headers, "Freelance", "income", 50, "2024-02-01")

    page = client.get(
        "/api/transactions/view",
        params={"type": "income", "page_size": 1},
        headers=headers,
    ).json()

    assert page["total"] == 2
    assert page["total_pages"] == 2
    assert page["items"][0]["description"] == "Freelance"
    assert page["items"][0]["running_balance"] == 110

    searched = client.get(
        "/api/transactions/view", params={"search": "groc"}, headers=headers
    ).json()
    assert [item["description"] for item in searched["items"]] == ["Groceries"]
    assert searched["items"][0]["running_balance"] == 60

    bad = client.get("/api/transactions/view", params={"page": 0}, headers=headers)
    assert bad.status_code == 400


def test_stats_returns_dashboard(client) -> None:
    headers = bearer(register(client)["token"])
    add_txn(client, headers, "Salary", "income", 100, "2024-01-05")
    add_txn(client, headers, "Groceries", "expense", 40, "2024-01-10")
    add_txn(client, headers, "Freelance", "income", 50, "2024-02-01")

    stats = client.get(
        "/api/stats",
        params={"reference_date": "2024-02-15", "chart_granularity": "month"},
        headers=headers,
    ).json()

    assert stats["totals"] == {"income": 150, "expense": 40, "balance": 110}
    assert stats["totals_display"]["balance"] == "Rp 110"
    assert stats["balance_series"]["points"][-1] == {"period": "2024-02", "balance": 110}
    assert stats["insights"]["previous_month_expense"] == 40
    assert stats["insights"]["expense_change_percent"] == -100.0
    assert stats["expense_categories"] == [{"category": "Groceries", "total": 40}]
    assert stats["heatmap"] == {"2024-01-05": 1, "2024-01-10": 1, "2024-02-01": 1}


def test_pin_guard_requires_confirmation_token(client) -> None:
    headers = bearer(register(client)["token"])

    not_enabled = client.post("/api/user/verify-pin", json={"pin": "1234"}, headers=headers)
    assert not_enabled.status_code == 400

    enabled = client.put(
        "/api/user/pin", json={"pin": "1234", "pin_enabled": True}, headers=headers
    )
    assert enabled.status_code == 200
    assert enabled.json()["pin_enabled"] is True

    payload = {"description": "Salary", "type": "income", "amount": 100, "date": "2024-01-05"}
    blocked = client.post("/api/transactions", json=payload, headers=headers)
    assert blocked.status_code == 403

    wrong = client.post("/api/user/verify-pin", json={"pin": "9999"}, headers=headers)
    assert wrong.status_code == 400

    verified = client.post("/api/user/verify-pin", json={"pin": "1234"}, headers=headers)
    assert verified.status_code == 200
    pin_token = verified.json()["pin_token"]

    forged = client.post(
        "/api/transactions",
        json=payload,
        headers={**headers, "X-Pin-Token": pin_token + "x"},
    )
    assert forged.status_code == 403

    allowed = client.post(
        "/api/transactions", json=payload, headers={**headers, "X-Pin-Token": pin_token}
    )
    assert allowed.status_code == 201

    other = bearer(register(client, email="budi@example.com", name="Budi")["token"])
    client.put("/api/user/pin", json={"pin": "5678", "pin_enabled": True}, headers=other)
    stolen = client.post(
        "/api/transactions", json=payload, headers={**other, "X-Pin-Token": pin_token}
    )
    assert stolen.status_code == 403


def test_export_csv_and_xlsx(client) -> None:
    headers = bearer(register(client)["token"])

    empty = client.get("/api/transactions/export", params={"format": "csv"}, headers=headers)
    assert empty.status_code == 400

    add_txn(client, headers, "Salary", "income", 100_000, "2024-12-05")
    add_txn(client, headers, "Groceries", "expense", 40_000, "2024-12-10")

    csv_response = client.get(
        "/api/transactions/export", params={"format": "csv"}, headers=headers
    )
    assert csv_response.status_code == 200
    assert "cashflow-transactions-" in csv_response.headers["content-disposition"]
    assert csv_response.text.splitlines()[1:] == [
        "05 Des 2024,Salary,100000,0,100000",
        "10 Des 2024,Groceries,0,40000,60000",
    ]

    xlsx_response = client.get("/api/transactions/export", headers=headers)
    assert xlsx_response.status_code == 200
    assert xlsx_response.content[:2] == b"PK"

    unknown = client.get("/api/transactions/export", params={"format": "pdf"}, headers=headers)
    assert unknown.status_code == 422


def test_import_preview_and_commit(client) -> None:
    headers = bearer(register(client)["token"])
    content = (
        "Date,Description,Income,Expense,Balance\r\n"
        "05 Des 2024,Salary,100000,0,100000\r\n"
        "06 Des 2024,Coffee,0,25000,75000\r\n"
        "sometime,Broken,10,0,75010\r\n"
    ).encode("utf-8")
    files = {"file": ("cashflow.csv", content, "text/csv")}

    preview = client.post("/api/transactions/import/preview", files=files, headers=headers)
    assert preview.status_code == 200
    body = preview.json()
    assert body["rows"][0] == {
        "row": 2,
        "description": "Salary",
        "type": "income",
        "amount": 100000,
        "date": "2024-12-05",
    }
    assert body["errors"] == ["Row 4: invalid date 'sometime'"]
    assert client.get("/api/transactions", headers=headers).json() == []

    committed = client.post("/api/transactions/import", files=files, headers=headers)
    assert committed.status_code == 200
    assert committed.json()["imported"] == 2
    assert committed.json()["failed"] == 0
    assert len(client.get("/api/transactions", headers=headers).json()) == 2

    empty = client.post(
        "/api/transactions/import",
        files={"file": ("empty.csv", b"", "text/csv")},
        headers=headers,
    )
    assert empty.status_code == 400

    wrong_type = client.post(
        "/api/transactions/import/preview",
        files={"file": ("notes.txt", b"hello", "text/plain")},
        headers=headers,
    )
    assert wrong_type.status_code == 400


def test_admin_endpoints(client, session_factory) -> None:
    admin_body = register(client, email="admin@example.com", name="Admin")
    user_body = register(client)
    user = bearer(user_body["token"])
    admin = bearer(admin_body["token"])
    add_txn(client, user, "Salary", "income", 300, "2024-01-05")
    add_txn(client, user, "Rent", "expense", 120, "2024-01-06")

    assert client.get("/api/admin/stats", headers=user).status_code == 403

    promote(session_factory, admin_body["user"]["id"])

    stats = client.get("/api/admin/stats", headers=admin).json()
    assert stats["total_users"] == 2
    assert stats["total_transactions"] == 2
    assert stats["balance"] == 180

    users = client.get("/api/admin/users", headers=admin).json()
    counts = {row["email"]: row["transaction_count"] for row in users}
    assert counts == {"admin@example.com": 0, "ana@example.com": 2}

    everything = client.get("/api/admin/transactions", headers=admin).json()
    assert {row["user_email"] for row in everything} == {"ana@example.com"}

    created = client.post(
        "/api/admin/users",
        json={"email": "citra@example.com", "password": "secret123", "name": "Citra", "role": "admin"},
        headers=admin,
    )
    assert created.status_code == 201
    assert created.json()["role"] == "admin"

    renamed = client.put(
        f"/api/admin/users/{user_body['user']['id']}",
        json={"name": "Ana B"},
        headers=admin,
    )
    assert renamed.json()["name"] == "Ana B"

    self_role = client.put(
        f"/api/admin/users/{admin_body['user']['id']}/role",
        json={"role": "user"},
        headers=admin,
    )
    assert self_role.status_code == 400
    self_delete = client.delete(f"/api/admin/users/{admin_body['user']['id']}", headers=admin)
    assert self_delete.status_code == 400
    missing = client.delete("/api/admin/users/9999", headers=admin)
    assert missing.status_code == 404

    removed = client.delete(f"/api/admin/users/{user_body['user']['id']}", headers=admin)
    assert removed.status_code == 200
    assert removed.json()["email"] == "ana@example.com"
    assert client.get("/api/admin/transactions", headers=admin).json() == []
    assert client.get("/api/auth/verify", headers=user).status_code == 401


def test_websocket_pushes_transactions_after_mutation(client) -> None:
    token = register(client)["token"]
    headers = bearer(token)

    with client.websocket_connect(f"/ws?token={token}") as websocket:
        initial = websocket.receive_json()
        assert initial == {"event": "transactions:updated", "data": []}

        add_txn(client, headers, "Salary", "income", 100, "2024-01-05")

        pushed = websocket.receive_json()
        assert pushed["event"] == "transactions:updated"
        assert [txn["description"] for txn in pushed["data"]] == ["Salary"]


def test_websocket_rejects_invalid_token(client) -> None:
    with pytest.raises(WebSocketDisconnect) as excinfo:
        with client.websocket_connect("/ws?token=garbage") as websocket:
            websocket.receive_json()

    assert excinfo.value.code == 1008


def test_idle_websockets_do_not_hold_database_connections(tmp_path) -> None:
    engine = create_engine(
        f"sqlite:///{tmp_path / 'cashflow.db'}",
        connect_args={"check_same_thread": False},
    )
    event.listen(engine, "connect", enable_sqlite_foreign_keys)
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    with serving(factory) as client:
        token = register(client)["token"]
        with client.websocket_connect(f"/ws?token={token}") as first:
            with client.websocket_connect(f"/ws?token={token}") as second:
                assert first.receive_json()["data"] == []
                assert second.receive_json()["data"] == []

                assert engine.pool.checkedout() == 0

                add_txn(client, bearer(token), "Salary", "income", 100, "2024-01-05")
                assert len(first.receive_json()["data"]) == 1
                assert len(second.receive_json()["data"]) == 1

    engine.dispose()


def test_amount_must_fit_in_storage(client) -> None:
    headers = bearer(register(client)["token"])
    payload = {"description": "Huge", "type": "income", "date": "2024-01-05"}

    too_large = client.post(
        "/api/transactions", json={**payload, "amount": 1e20}, headers=headers
    )
    assert too_large.status_code == 422

    infinite = client.post(
        "/api/transactions",
        content='{"description": "Huge", "type": "income", "amount": Infinity, "date": "2024-01-05"}',
        headers={**headers, "Content-Type": "application/json"},
    )
    assert infinite.status_code == 422

    largest = add_txn(client, headers, "Huge", "income", 10**15, "2024-01-05")
    assert largest["amount"] == 10**15
    assert client.get("/api/transactions", headers=headers).json()[0]["amount"] == 10**15
