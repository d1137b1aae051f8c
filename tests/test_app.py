import datetime
import io

import jwt
import pytest
from openpyxl import load_workbook

import app as console
from fakes import FakeAssetService, make_asset
from spreadsheet import XLSX_MIMETYPE, build_import_template, workbook_stream

USERS = {
    "admin": {"_id": "admin-1", "password": "secret", "role": "admin", "name": "Admin"},
    "jdoe": {"_id": "user-1", "password": "secret", "role": "user", "name": "Jane Doe"},
}


@pytest.fixture
def service():
    assets = [
        make_asset(1, "user-1", device="Laptop"),
        make_asset(2, "user-1", device="Printer"),
        make_asset(3, "user-1", device="Desktop"),
        make_asset(4, "admin-1", device="Laptop"),
        make_asset(5, "someone-else", device="Laptop"),
    ]
    return FakeAssetService(assets, users=USERS)


@pytest.fixture
def client(monkeypatch, service):
    console.app.config.update(
        TESTING=True, BACKGROUND_REFRESH=False, SEARCH_DEBOUNCE_SECONDS=60, IDLE_TIMEOUT_SECONDS=600
    )
    monkeypatch.setattr(console, "make_api_client", lambda auth=None: service)
    with console.app.test_client() as test_client:
        yield test_client
    with console._VIEW_STORES_LOCK:
        stores = list(console._VIEW_STORES.values())
        console._VIEW_STORES.clear()
    for store in stores:
        store.close()


def _login(client, username="jdoe", password="secret"):
    return client.post("/login", json={"username": username, "password": password})


def test_dashboard_requires_login(client):
    response = client.get("/dashboard/state")

    assert response.status_code == 401
    assert response.get_json() == {"error": "Authentication required"}


def test_login_with_bad_password_is_rejected(client):
    response = _login(client, password="wrong")

    assert response.status_code == 401
    assert response.get_json()["error"] == "Invalid credentials"


def test_login_then_dashboard_shows_own_assets(client, service):
    response = _login(client)
    assert response.status_code == 200
    assert response.get_json()["user"] == {
        "_id": "user-1",
        "username": "jdoe",
        "name": "Jane Doe",
        "role": "user",
        "isAdmin": False,
    }

    state = client.get("/dashboard").get_json()["state"]

    assert service.token == "token-jdoe"
    assert state["viewMode"] == "mine"
    assert len(state["assets"]) == 3
    assert state["counts"] == {"total": 3, "laptops": 1, "desktops": 1, "printers": 1}
    assert state["mineCount"] == 3


def test_admin_view_mode_toggle(client, service):
    _login(client, "admin")
    assert len(client.get("/dashboard").get_json()["state"]["assets"]) == 5

    response = client.post("/dashboard/view-mode", json={"mode": "mine"})

    assert response.status_code == 200
    assert service.requests[-1]["createdBy"] == "admin-1"
    assert response.get_json()["showActions"] is True


def test_filter_and_page_routes_validate_input(client):
    _login(client)
    client.get("/dashboard")

    assert client.post("/dashboard/filter", json={"kind": "device", "value": "Tablet"}).status_code == 400
    assert client.post("/dashboard/page", json={"page": "next"}).status_code == 400
    filtered = client.post("/dashboard/filter", json={"kind": "device", "value": "Printer"}).get_json()
    assert [asset["device"] for asset in filtered["assets"]] == ["Printer"]


def test_search_is_deferred(client, service):
    _login(client)
    client.get("/dashboard")
    requests_before = len(service.requests)

    response = client.post("/dashboard/search", json={"term": "Dell"})

    assert response.status_code == 202
    assert response.get_json()["pendingSearch"] == "Dell"
    assert len(service.requests) == requests_before


def test_create_asset(client, service):
    _login(client)
    client.get("/dashboard")

    response = client.post(
        "/assets",
        json={"companyName": "Acme Corp", "device": "Laptop", "serialNumber": "auto-generated"},
    )

    assert response.status_code == 201
    body = response.get_json()
    assert body["asset"]["createdBy"] == "user-1"
    assert body["state"]["mineCount"] == 4
    assert "serialNumber" not in service.created[0]


def test_create_asset_validation(client, service):
    _login(client)

    response = client.post("/assets", json={"companyName": "", "device": "Laptop"})

    assert response.status_code == 400
    assert response.get_json()["error"] == "Company name is required."
    assert service.created == []


def test_update_missing_asset_returns_remote_status(client):
    _login(client)

    response = client.put("/assets/asset-404", json={"companyName": "Acme Corp", "device": "Laptop"})

    assert response.status_code == 404
    assert response.get_json()["error"] == "Asset not found"


def test_delete_asset(client, service):
    _login(client)
    client.get("/dashboard")

    response = client.delete("/assets/asset-2")

    assert response.status_code == 200
    assert service.deleted == ["asset-2"]
    assert response.get_json()["state"]["mineCount"] == 2


def test_export_is_admin_only(client):
    _login(client)

    assert client.get("/assets/export").status_code == 403


def test_admin_export_returns_workbook(client):
    _login(client, "admin")
    client.get("/dashboard")

    response = client.get("/assets/export")

    assert response.status_code == 200
    assert response.mimetype == XLSX_MIMETYPE
    assert "IT_Assets-" in response.headers["Content-Disposition"]
    sheet = load_workbook(io.BytesIO(response.data)).active
    assert sheet.max_row == 6
    assert sheet.cell(row=1, column=1).value == "S.No"


def test_export_with_no_rows(client, service):
    service.assets = []
    _login(client, "admin")

    response = client.get("/assets/export")

    assert response.status_code == 400
    assert response.get_json()["error"] == "No assets to export."


def test_template_download(client):
    _login(client)

    response = client.get("/assets/template")

    assert response.status_code == 200
    assert "IT_Assets_Template.xlsx" in response.headers["Content-Disposition"]


def test_import_uploads_file(client, service):
    _login(client)
    client.get("/dashboard")
    content = workbook_stream(build_import_template()).read()

    response = client.post(
        "/assets/import",
        data={"file": (io.BytesIO(content), "my assets.xlsx")},
        content_type="multipart/form-data",
    )

    assert response.status_code == 200
    assert response.get_json()["result"]["imported"] == 1
    assert service.uploads[0]["filename"] == "my_assets.xlsx"
    assert service.uploads[0]["createdBy"] == "user-1"


def test_import_without_file(client):
    _login(client)

    response = client.post("/assets/import", data={}, content_type="multipart/form-data")

    assert response.status_code == 400
    assert response.get_json()["error"] == "No file uploaded."


def test_reset_password_validation_skips_service(client, service):
    response = client.post(
        "/reset-password",
        json={"username": "jdoe", "oldPassword": "secret", "newPassword": "ab", "confirmPassword": "ab"},
    )

    assert response.status_code == 400
    assert response.get_json()["error"] == "Password must be at least 3 characters long"
    assert service.password_resets == []


def test_signup(client, service):
    response = client.post(
        "/signup",
        json={
            "username": "newbie",
            "name": "New Person",
            "role": "user",
            "password": "secret",
            "confirmPassword": "secret",
        },
    )

    assert response.status_code == 201
    assert service.signups == [("newbie", "New Person", "user")]


def test_branches(client):
    _login(client)
    assert client.get("/branches").get_json() == [{"_id": "b1", "name": "Head Office"}]
    assert client.post("/branches", json={"name": "North"}).status_code == 403

    client.post("/logout")
    _login(client, "admin")
    assert client.post("/branches", json={"name": " "}).status_code == 400
    assert client.post("/branches", json={"name": "North"}).get_json() == {"_id": "b2", "name": "North"}


def test_logout_discards_console(client):
    _login(client)
    client.get("/dashboard")
    client.post("/dashboard/search", json={"term": "Dell"})
    with console._VIEW_STORES_LOCK:
        store = next(iter(console._VIEW_STORES.values()))

    response = client.post("/logout")

    assert response.status_code == 200
    assert store.closed
    assert console._VIEW_STORES == {}
    assert client.get("/dashboard/state").status_code == 401


def test_expired_token_ends_session(client, service):
    expired = jwt.encode(
        {"sub": "user-1", "exp": datetime.datetime(2020, 1, 1, tzinfo=datetime.timezone.utc)},
        "console-test-signing-key-0123456789abcdef",
        algorithm="HS256",
    )
    service.login = lambda username, password: {
        "data": {"_id": "user-1", "username": username, "role": "user", "token": expired}
    }
    _login(client)

    assert client.get("/dashboard/state").status_code == 401


def test_partial_update_leaves_other_columns_alone(client, service):
    _login(client)

    response = client.put(
        "/assets/asset-1", json={"companyName": "Acme Corp", "device": "Laptop", "remark": "x"}
    )

    assert response.status_code == 200
    assert service.updated == [("asset-1", {"companyName": "Acme Corp", "device": "Laptop", "remark": "x"})]
    stored = next(asset for asset in service.assets if asset["_id"] == "asset-1")
    assert stored["branch"] == "Head Office"
    assert stored["department"] == "IT"


@pytest.mark.parametrize("value", [5, True, ["Acme Corp"]])
def test_filter_with_non_text_value_is_rejected(client, value):
    _login(client)
    client.get("/dashboard")

    response = client.post("/dashboard/filter", json={"kind": "company", "value": value})

    assert response.status_code == 400


def test_abandoned_dashboards_are_discarded(client, monkeypatch):
    monkeypatch.setitem(console.app.config, "IDLE_TIMEOUT_SECONDS", 0)
    monkeypatch.setitem(console.app.config, "BACKGROUND_REFRESH", True)
    abandoned = []
    for _ in range(3):
        other = console.app.test_client()
        _login(other)
        other.get("/dashboard")
        with console._VIEW_STORES_LOCK:
            abandoned.extend(console._VIEW_STORES.values())

    _login(client, "admin")
    client.get("/dashboard")

    assert len(set(abandoned)) == 3
    assert all(store.closed for store in abandoned)
    with console._VIEW_STORES_LOCK:
        remaining = list(console._VIEW_STORES.values())
    assert [store.auth.username for store in remaining] == ["admin"]
