from datetime import timedelta

from fastapi.testclient import TestClient

from tests.helpers.fake_browser import FakeRoute
from warden.crud import crud
from warden.models.enums import LoginStatus
from warden.utils.time import utc_now

LOGIN_PAYLOAD = {
    "name": "Example",
    "login_url": "https://site.com/login",
    "username": "alice@example.com",
    "password": "hunter2",
    "custom_config": {
        "steps": [
            {"type": "navigate"},
            {"type": "fill", "selector": "#user", "value": "{{username}}"},
            {"type": "fill", "selector": "#pass", "value": "{{password}}"},
            {"type": "click", "selector": "#submit"},
        ]
    },
}


def test_create_login_masks_secrets(client: TestClient):
    response = client.post("/api/logins", json=LOGIN_PAYLOAD)

    assert response.status_code == 201
    body = response.json()
    assert body["username"] == "alice@example.com"
    assert body["password"] != "hunter2"
    assert "hunter2" not in response.text
    assert body["status"] == "UNKNOWN"
    assert body["failure_count"] == 0
    assert body["health"] is None


def test_create_login_requires_a_secret(client: TestClient):
    payload = {k: v for k, v in LOGIN_PAYLOAD.items() if k != "password"}

    response = client.post("/api/logins", json=payload)

    assert response.status_code == 400


def test_create_login_with_immediate_check(client: TestClient, fake_browser):
    fake_browser.after_click = FakeRoute("https://site.com/dashboard")

    response = client.post("/api/logins", json={**LOGIN_PAYLOAD, "test_on_create": True})

    assert response.status_code == 201
    body = response.json()
    assert body["health"]["success"] is True
    assert body["health"]["status"] == "ACTIVE"
    assert body["status"] == "ACTIVE"


def test_list_and_get_logins(client: TestClient):
    created = client.post("/api/logins", json=LOGIN_PAYLOAD).json()

    listed = client.get("/api/logins").json()
    assert [login["id"] for login in listed] == [created["id"]]

    response = client.get(f"/api/logins/{created['id']}")
    assert response.status_code == 200
    assert response.json()["name"] == "Example"

    assert client.get("/api/logins/999").status_code == 404


def test_update_login_credentials_needs_testing(client: TestClient, db_session):
    created = client.post("/api/logins", json=LOGIN_PAYLOAD).json()
    crud.update_login_status(db_session, created["id"], status=LoginStatus.ACTIVE, success=True)

    response = client.put(f"/api/logins/{created['id']}", json={"password": "changed"})

    assert response.status_code == 200
    assert response.json()["status"] == "NEEDS_TESTING"


def test_check_login_failure_persists(client: TestClient, fake_browser):
    fake_browser.after_click = FakeRoute("https://site.com/login")
    created = client.post("/api/logins", json=LOGIN_PAYLOAD).json()

    response = client.post(f"/api/logins/{created['id']}/check")

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is False
    assert body["status"] == "BROKEN"
    assert body["error_message"] == "Login failed - still on login page"

    login = client.get(f"/api/logins/{created['id']}").json()
    assert login["status"] == "BROKEN"
    assert login["failure_count"] == 1


def test_check_all_logins(client: TestClient, fake_browser):
    fake_browser.after_click = FakeRoute("https://site.com/dashboard")
    client.post("/api/logins", json=LOGIN_PAYLOAD)
    client.post("/api/logins", json={**LOGIN_PAYLOAD, "name": "Other"})

    response = client.post("/api/logins/health")

    assert response.status_code == 200
    body = response.json()
    assert body["checked"] == 2
    assert body["healthy"] == 2


def test_status_endpoint_reports_expired_session(client: TestClient, db_session, with_session):
    created = client.post("/api/logins", json=LOGIN_PAYLOAD).json()
    login = crud.get_login(db_session, created["id"])
    with_session(login, expiry=utc_now() - timedelta(hours=1))

    response = client.get(f"/api/logins/{created['id']}/status")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ACTIVE"
    assert body["effective_status"] == "DISCONNECTED"
    assert body["needs_reconnect"] is True


def test_delete_login_in_use(client: TestClient):
    created = client.post("/api/logins", json=LOGIN_PAYLOAD).json()
    client.post("/api/agents", json={"name": "Agent", "login_ids": [created["id"]]})

    response = client.delete(f"/api/logins/{created['id']}")

    assert response.status_code == 400
    assert "used by agents" in response.json()["detail"]


def test_delete_login(client: TestClient):
    created = client.post("/api/logins", json=LOGIN_PAYLOAD).json()

    assert client.delete(f"/api/logins/{created['id']}").status_code == 204
    assert client.get(f"/api/logins/{created['id']}").status_code == 404


def test_reconnect_flow(client: TestClient, sample_snapshot):
    created = client.post("/api/logins", json=LOGIN_PAYLOAD).json()

    start = client.post(f"/api/logins/{created['id']}/reconnect/start")
    assert start.status_code == 200
    assert start.json()["prefill_selectors"] == ["#user", "#pass"]
    assert client.get(f"/api/logins/{created['id']}/status").json()["status"] == "NEEDS_RECONNECT"

    refused = client.post(
        f"/api/logins/{created['id']}/reconnect/complete",
        json={"session_data": sample_snapshot.model_dump(by_alias=True), "current_url": "https://site.com/login"},
    )
    assert refused.status_code == 400

    done = client.post(
        f"/api/logins/{created['id']}/reconnect/complete",
        json={"session_data": sample_snapshot.model_dump(by_alias=True), "current_url": "https://site.com/home"},
    )
    assert done.status_code == 200
    assert done.json()["status"] == "ACTIVE"

    login = client.get(f"/api/logins/{created['id']}").json()
    assert login["has_session"] is True
    assert login["status"] == "ACTIVE"


def test_reconnect_captures_session_from_server_page(client: TestClient, fake_browser):
    fake_browser.storage = {"localStorage": {}, "sessionStorage": {}, "userAgent": "Live/1.0"}
    created = client.post("/api/logins", json=LOGIN_PAYLOAD).json()

    start = client.post(f"/api/logins/{created['id']}/reconnect/start").json()
    assert start["browser_opened"] is True
    page = fake_browser.pages[-1]
    assert page.fills == [("#user", "alice@example.com"), ("#pass", "hunter2")]

    still_signing_in = client.post(f"/api/logins/{created['id']}/reconnect/complete", json={})
    assert still_signing_in.status_code == 400

    page.url, page.title = "https://site.com/home", "Home"
    page.context.cookies = [{"name": "sid", "value": "s", "domain": ".site.com", "path": "/"}]
    done = client.post(f"/api/logins/{created['id']}/reconnect/complete", json={})

    assert done.status_code == 200
    assert done.json()["status"] == "ACTIVE"
    assert page.closed


def test_reconnect_complete_with_millisecond_expiry(client: TestClient):
    created = client.post("/api/logins", json=LOGIN_PAYLOAD).json()
    session = {"cookies": [{"name": "sid", "value": "x", "domain": ".site.com", "expires": 1_900_000_000_000}]}

    response = client.post(
        f"/api/logins/{created['id']}/reconnect/complete",
        json={"session_data": session, "current_url": "https://site.com/home"},
    )

    assert response.status_code == 200
    assert response.json()["session_expiry"].startswith("2030-03-17T17:46:40")


def test_login_templates(client: TestClient):
    templates = client.get("/api/login-templates").json()
    assert {t["id"] for t in templates} >= {"google", "github", "custom"}

    github = client.get("/api/login-templates/github").json()
    assert github["login_url"] == "https://github.com/login"
    assert github["steps"][0]["type"] == "navigate"
    assert any(step.get("waitFor") == "navigation" for step in github["steps"])

    assert client.get("/api/login-templates/nope").status_code == 404
