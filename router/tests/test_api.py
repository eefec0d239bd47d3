"""Tests for the HTTP API."""

import asyncio
import base64
import threading
from datetime import timedelta
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from conftest import NOW, FakeController, make_child, make_session
from parenta_router.api import create_app
from parenta_router.config import Config, DnsmasqConfig, SessionConfig
from parenta_router.store import RecordStore

MAC = "aa:bb:cc:dd:ee:ff"


def make_config(tmp_path: Path) -> Config:
    return Config(
        dnsmasq=DnsmasqConfig(conf_dir=tmp_path / "dnsmasq.d", restart_cmd="true"),
        session=SessionConfig(jwt_secret="test-secret"),
    )


@pytest.fixture
def client(tmp_path: Path, store: RecordStore, controller: FakeController) -> TestClient:
    app = create_app(
        make_config(tmp_path),
        store,
        controller,
        clock=lambda: NOW,
        sleep=lambda seconds: None,
        neighbor_lookup=lambda ip: None,
        start_ticker=False,
    )
    app.state.services.auth.initialize_admin("admin", "admin123", force_change=False)
    return TestClient(app)


@pytest.fixture
def headers(client: TestClient) -> dict[str, str]:
    resp = client.post("/api/auth/login", json={"username": "admin", "password": "admin123"})
    assert resp.status_code == 200
    return {"Authorization": f"Bearer {resp.json()['token']}"}


def fas(text: str) -> str:
    return base64.b64encode(text.encode()).decode()


class TestFasEntry:
    def test_redirects_to_portal_with_params(self, client: TestClient) -> None:
        payload = fas("hid=h1, clientip=192.168.2.5, clientmac=AA:BB:CC:DD:EE:FF, gatewayhash=(null)")

        resp = client.get("/fas/", params={"fas": payload}, follow_redirects=False)

        assert resp.status_code == 302
        location = resp.headers["location"]
        assert location.startswith("/portal?")
        assert "mac=aa%3Abb%3Acc%3Add%3Aee%3Aff" in location
        assert "ip=192.168.2.5" in location
        assert "gatewayhash" not in location

    def test_missing_payload_goes_to_bare_portal(self, client: TestClient) -> None:
        resp = client.get("/fas/", follow_redirects=False)
        assert resp.status_code == 302
        assert resp.headers["location"] == "/portal"

    def test_undecodable_payload_goes_to_bare_portal(self, client: TestClient) -> None:
        resp = client.get("/fas/", params={"fas": "%%%"}, follow_redirects=False)
        assert resp.status_code == 302
        assert resp.headers["location"] == "/portal"

    def test_portal_page_escapes_values(self, client: TestClient) -> None:
        resp = client.get("/portal", params={"mac": MAC, "error": "<script>x</script>"})
        assert resp.status_code == 200
        assert f'value="{MAC}"' in resp.text
        assert "<script>x</script>" not in resp.text
        assert "&lt;script&gt;" in resp.text


class TestFasAuth:
    def test_child_json_login(self, client: TestClient, store: RecordStore, controller: FakeController) -> None:
        make_child(store, "alice", quota=90, used=20)

        resp = client.post(
            "/fas/auth",
            json={"username": "alice", "password": "secret", "mac": MAC, "originurl": "http://example.com/"},
        )

        assert resp.status_code == 200
        body = resp.json()
        assert body["type"] == "child"
        assert body["remaining_minutes"] == 70
        assert body["redirect_url"] == "http://example.com/"
        assert controller.authorized() == [("auth", MAC, 70)]

    def test_child_form_login_redirects_to_origin(self, client: TestClient, store: RecordStore) -> None:
        make_child(store, "alice")

        resp = client.post(
            "/fas/auth",
            data={"username": "alice", "password": "secret", "mac": MAC, "originurl": "http://example.com/"},
            follow_redirects=False,
        )

        assert resp.status_code == 302
        assert resp.headers["location"] == "http://example.com/"

    def test_child_form_login_without_origin_shows_success(self, client: TestClient, store: RecordStore) -> None:
        make_child(store, "alice")

        resp = client.post("/fas/auth", data={"username": "alice", "password": "secret", "mac": MAC})

        assert resp.status_code == 200
        assert "Welcome, Alice!" in resp.text
        assert "120 minutes remaining" in resp.text

    def test_form_failure_redirects_with_generic_error(self, client: TestClient, store: RecordStore) -> None:
        make_child(store, "alice")

        resp = client.post(
            "/fas/auth",
            data={"username": "alice", "password": "wrong", "mac": MAC, "hid": "h1"},
            follow_redirects=False,
        )

        assert resp.status_code == 302
        location = resp.headers["location"]
        assert location.startswith("/portal?")
        assert "hid=h1" in location
        assert "error=Invalid+username+or+password" in location

    def test_json_failures(self, client: TestClient, store: RecordStore) -> None:
        make_child(store, "alice", quota=10, used=10)

        assert client.post("/fas/auth", json={"username": "bob", "password": "x"}).status_code == 401
        resp = client.post("/fas/auth", json={"username": "alice", "password": "secret", "mac": MAC})
        assert resp.status_code == 403
        assert resp.json()["detail"] == "No time remaining for today"

    def test_admin_json_login(self, client: TestClient, controller: FakeController) -> None:
        resp = client.post("/fas/auth", json={"username": "admin", "password": "admin123", "mac": MAC})

        body = resp.json()
        assert body["type"] == "admin"
        assert body["token"]
        assert body["force_password_change"] is False
        assert controller.authorized() == [("auth", MAC, 0)]

    def test_admin_form_login_redirects_with_token(self, client: TestClient) -> None:
        resp = client.post(
            "/fas/auth",
            data={"username": "admin", "password": "admin123"},
            follow_redirects=False,
        )
        assert resp.status_code == 302
        assert "auth_type=admin" in resp.headers["location"]
        assert "force_password_change=false" in resp.headers["location"]

    def test_status(self, client: TestClient, store: RecordStore) -> None:
        child = make_child(store, "alice", quota=60, used=15)
        make_session(store, child)

        resp = client.get("/fas/status", params={"mac": "AA:BB:CC:DD:EE:FF"})

        assert resp.status_code == 200
        assert resp.json()["remaining_minutes"] == 45
        assert client.get("/fas/status", params={"mac": "aa:bb:cc:dd:ee:00"}).status_code == 404
        assert client.get("/fas/status").status_code == 400


def test_portal_login_runs_off_the_event_loop(tmp_path: Path, store: RecordStore, controller: FakeController) -> None:
    settling = threading.Event()
    release = threading.Event()
    settle_threads: list[bool] = []
    released: list[bool] = []

    def slow_settle(seconds: float) -> None:
        try:
            asyncio.get_running_loop()
            settle_threads.append(True)
        except RuntimeError:
            settle_threads.append(False)
        settling.set()
        released.append(release.wait(5))

    app = create_app(
        make_config(tmp_path),
        store,
        controller,
        clock=lambda: NOW,
        sleep=slow_settle,
        neighbor_lookup=lambda ip: None,
        start_ticker=False,
    )
    make_child(store, "alice")
    responses = []

    with TestClient(app) as client:
        login = threading.Thread(
            target=lambda: responses.append(
                client.post("/fas/auth", json={"username": "alice", "password": "secret", "mac": MAC})
            )
        )
        login.start()
        assert settling.wait(5)

        # Served while the login is still waiting on the gateway
        assert client.get("/fas/status", params={"mac": MAC}).status_code == 200
        release.set()
        login.join(5)

    assert settle_threads == [False]
    assert released == [True]
    assert responses[0].status_code == 200
    assert responses[0].json()["type"] == "child"


class TestAuthApi:
    def test_requires_token(self, client: TestClient) -> None:
        assert client.get("/api/children").status_code == 401
        assert client.get("/api/children", headers={"Authorization": "Bearer junk"}).status_code == 401

    def test_bad_login(self, client: TestClient) -> None:
        resp = client.post("/api/auth/login", json={"username": "admin", "password": "nope"})
        assert resp.status_code == 401

    def test_me_and_logout(self, client: TestClient, headers: dict[str, str]) -> None:
        me = client.get("/api/auth/me", headers=headers).json()
        assert me["username"] == "admin"
        assert me["role"] == "super"
        assert "password_hash" not in me

        assert client.post("/api/auth/logout", headers=headers).status_code == 200
        assert client.get("/api/auth/me", headers=headers).status_code == 401

    def test_change_password(self, client: TestClient, headers: dict[str, str]) -> None:
        bad = client.post("/api/auth/password", headers=headers, json={"old_password": "x", "new_password": "newpass1"})
        assert bad.status_code == 401
        short = client.post("/api/auth/password", headers=headers, json={"old_password": "admin123", "new_password": "123"})
        assert short.status_code == 400

        ok = client.post(
            "/api/auth/password", headers=headers, json={"old_password": "admin123", "new_password": "newpass1"}
        )
        assert ok.status_code == 200
        assert client.post("/api/auth/login", json={"username": "admin", "password": "newpass1"}).status_code == 200


class TestAdminsApi:
    def test_crud_and_last_admin_guard(self, client: TestClient, headers: dict[str, str]) -> None:
        resp = client.post(
            "/api/admins", headers=headers, json={"username": "dad", "password": "dadpass1", "display_name": "Dad"}
        )
        assert resp.status_code == 201
        dad = resp.json()
        assert dad["force_password_change"] is True

        assert client.post("/api/admins", headers=headers, json={"username": "dad", "password": "another1"}).status_code == 409
        assert len(client.get("/api/admins", headers=headers).json()) == 2

        renamed = client.put(f"/api/admins/{dad['id']}", headers=headers, json={"display_name": "Papa"})
        assert renamed.json()["display_name"] == "Papa"

        reset = client.post(f"/api/admins/{dad['id']}/reset-password", headers=headers, json={"new_password": "temp1234"})
        assert reset.status_code == 200

        me = client.get("/api/auth/me", headers=headers).json()
        assert client.delete(f"/api/admins/{me['id']}", headers=headers).status_code == 400
        assert client.delete(f"/api/admins/{dad['id']}", headers=headers).status_code == 200
        assert client.get(f"/api/admins/{dad['id']}", headers=headers).status_code == 404

    def test_regular_admin_cannot_manage_admins(self, client: TestClient, headers: dict[str, str]) -> None:
        client.post("/api/admins", headers=headers, json={"username": "dad", "password": "dadpass1"})
        login = client.post("/api/auth/login", json={"username": "dad", "password": "dadpass1"}).json()
        dad_headers = {"Authorization": f"Bearer {login['token']}"}

        assert login["force_password_change"] is True
        assert client.get("/api/admins", headers=dad_headers).status_code == 200
        resp = client.post("/api/admins", headers=dad_headers, json={"username": "x", "password": "xxxxxx1"})
        assert resp.status_code == 403


class TestChildrenApi:
    def test_create_defaults_and_hides_password(self, client: TestClient, headers: dict[str, str]) -> None:
        resp = client.post("/api/children", headers=headers, json={"username": "alice", "password": "pw", "name": "Alice"})

        assert resp.status_code == 201
        child = resp.json()
        assert child["daily_quota_minutes"] == 120
        assert child["remaining_minutes"] == 120
        assert child["last_reset_date"] == NOW.date().isoformat()
        assert "password_hash" not in child

        dup = client.post("/api/children", headers=headers, json={"username": "alice", "password": "pw", "name": "A"})
        assert dup.status_code == 409

    def test_missing_fields(self, client: TestClient, headers: dict[str, str]) -> None:
        resp = client.post("/api/children", headers=headers, json={"username": "alice"})
        assert resp.status_code == 400

    def test_update(self, client: TestClient, headers: dict[str, str], store: RecordStore) -> None:
        make_child(store, "alice")

        resp = client.put(
            "/api/children/child-alice", headers=headers, json={"daily_quota_minutes": 60, "is_active": False}
        )

        assert resp.status_code == 200
        assert resp.json()["daily_quota_minutes"] == 60
        assert resp.json()["is_active"] is False
        assert resp.json()["name"] == "Alice"
        assert client.put("/api/children/nobody", headers=headers, json={}).status_code == 404

    def test_adjust_quota_clamps(self, client: TestClient, headers: dict[str, str], store: RecordStore) -> None:
        make_child(store, "alice", quota=60, used=20)

        granted = client.post("/api/children/child-alice/adjust-quota", headers=headers, json={"minutes": 30})
        assert granted.json()["used_today_minutes"] == 0
        assert granted.json()["remaining_minutes"] == 60

        taken = client.post("/api/children/child-alice/adjust-quota", headers=headers, json={"minutes": -1000})
        assert taken.json()["used_today_minutes"] == 60 + 480

    def test_reset_quota(self, client: TestClient, headers: dict[str, str], store: RecordStore) -> None:
        make_child(store, "alice", used=100)
        resp = client.post("/api/children/child-alice/reset-quota", headers=headers)
        assert resp.json()["used_today_minutes"] == 0

    def test_devices(self, client: TestClient, headers: dict[str, str], store: RecordStore) -> None:
        make_child(store, "alice")
        make_child(store, "bob")

        added = client.post("/api/children/child-alice/devices", headers=headers, json={"mac": "AA-BB-CC-DD-EE-FF", "name": "Phone"})
        assert added.json()["devices"][0]["mac"] == MAC

        taken = client.post("/api/children/child-bob/devices", headers=headers, json={"mac": MAC})
        assert taken.status_code == 409
        bad = client.post("/api/children/child-bob/devices", headers=headers, json={"mac": "nope"})
        assert bad.status_code == 400

        removed = client.delete("/api/children/child-alice/devices", headers=headers, params={"mac": MAC})
        assert removed.json()["devices"] == []

    def test_delete_revokes_active_sessions(
        self, client: TestClient, headers: dict[str, str], store: RecordStore, controller: FakeController
    ) -> None:
        child = make_child(store, "alice")
        session = make_session(store, child)

        assert client.delete("/api/children/child-alice", headers=headers).status_code == 200

        assert store.get_child(child.id) is None
        assert store.get_session(session.id).is_active is False
        assert controller.deauthorized() == [MAC]
        assert client.get("/api/children/child-alice", headers=headers).status_code == 404


class TestSessionsApi:
    def test_list_and_kick(self, client: TestClient, headers: dict[str, str], store: RecordStore, controller) -> None:
        child = make_child(store, "alice")
        session = make_session(store, child, started_at=NOW - timedelta(minutes=7))

        listed = client.get("/api/sessions", headers=headers).json()
        assert [s["id"] for s in listed] == [session.id]
        assert listed[0]["duration_minutes"] == 7

        assert client.post(f"/api/sessions/{session.id}/kick", headers=headers).status_code == 200
        assert controller.deauthorized() == [MAC]
        assert client.get("/api/sessions", headers=headers).json() == []
        assert len(client.get("/api/sessions", headers=headers, params={"all": "true"}).json()) == 1

        assert client.post("/api/sessions/cleanup", headers=headers).json() == {"removed": 1}
        assert client.get(f"/api/sessions/{session.id}", headers=headers).status_code == 404

    def test_extend_grants_quota_and_reauthorizes(
        self, client: TestClient, headers: dict[str, str], store: RecordStore, controller: FakeController
    ) -> None:
        child = make_child(store, "alice", quota=60, used=50)
        session = make_session(store, child)

        resp = client.post(f"/api/sessions/{session.id}/extend", headers=headers, json={"minutes": 30})

        assert resp.status_code == 200
        assert resp.json()["child"]["daily_quota_minutes"] == 90
        assert controller.authorized() == [("auth", MAC, 40)]

    def test_extend_requires_positive_minutes(self, client: TestClient, headers: dict[str, str], store) -> None:
        child = make_child(store, "alice")
        session = make_session(store, child)
        resp = client.post(f"/api/sessions/{session.id}/extend", headers=headers, json={"minutes": 0})
        assert resp.status_code == 400


class TestSchedulesApi:
    def test_create_and_validate(self, client: TestClient, headers: dict[str, str]) -> None:
        good = {
            "name": "School nights",
            "time_blocks": [
                {"day_of_week": 1, "start_time": "16:00", "end_time": "18:00"},
                {"day_of_week": 1, "start_time": "18:00", "end_time": "20:00", "filter_mode": "study"},
            ],
        }
        resp = client.post("/api/schedules", headers=headers, json=good)
        assert resp.status_code == 201
        schedule_id = resp.json()["id"]

        overlapping = {
            "name": "Bad",
            "time_blocks": [
                {"day_of_week": 1, "start_time": "16:00", "end_time": "18:00"},
                {"day_of_week": 1, "start_time": "17:00", "end_time": "19:00"},
            ],
        }
        assert client.put(f"/api/schedules/{schedule_id}", headers=headers, json=overlapping).status_code == 400

        bad_day = {"name": "Bad", "time_blocks": [{"day_of_week": 7, "start_time": "16:00", "end_time": "18:00"}]}
        assert client.post("/api/schedules", headers=headers, json=bad_day).status_code == 400

        reversed_block = {"name": "Bad", "time_blocks": [{"day_of_week": 2, "start_time": "18:00", "end_time": "16:00"}]}
        assert client.post("/api/schedules", headers=headers, json=reversed_block).status_code == 400

        assert client.delete(f"/api/schedules/{schedule_id}", headers=headers).status_code == 200
        assert client.get(f"/api/schedules/{schedule_id}", headers=headers).status_code == 404

    def test_child_with_unknown_schedule_rejected(self, client: TestClient, headers: dict[str, str]) -> None:
        resp = client.post(
            "/api/children",
            headers=headers,
            json={"username": "alice", "password": "pw", "name": "Alice", "schedule_id": "missing"},
        )
        assert resp.status_code == 400


class TestFiltersApi:
    def test_create_writes_dnsmasq_config(self, client: TestClient, headers: dict[str, str], tmp_path: Path) -> None:
        resp = client.post("/api/filters", headers=headers, json={"domain": "Games.com", "rule_type": "blacklist"})
        assert resp.status_code == 201
        assert resp.json()["domain"] == "games.com"

        blocklist = (tmp_path / "dnsmasq.d" / "parenta-blocklist.conf").read_text()
        assert "address=/games.com/" in blocklist

        dup = client.post("/api/filters", headers=headers, json={"domain": "games.com", "rule_type": "blacklist"})
        assert dup.status_code == 409

        client.post("/api/filters", headers=headers, json={"domain": "wiki.org", "rule_type": "whitelist"})
        only_white = client.get("/api/filters", headers=headers, params={"type": "whitelist"}).json()
        assert [r["domain"] for r in only_white] == ["wiki.org"]

        rule_id = resp.json()["id"]
        assert client.delete(f"/api/filters/{rule_id}", headers=headers).status_code == 200
        assert "games.com" not in (tmp_path / "dnsmasq.d" / "parenta-blocklist.conf").read_text()

    def test_study_mode(self, client: TestClient, headers: dict[str, str], tmp_path: Path) -> None:
        assert client.post("/api/filters/study-mode", headers=headers, json={"enabled": True}).json() == {"enabled": True}
        assert (tmp_path / "dnsmasq.d" / "parenta-studymode.conf").exists()
        assert client.get("/api/filters/study-mode", headers=headers).json() == {"enabled": True}


class TestSystemApi:
    def test_status(self, client: TestClient, headers: dict[str, str], store: RecordStore) -> None:
        make_child(store, "alice")
        body = client.get("/api/system/status", headers=headers).json()
        assert body["version"] == "1.0.0"
        assert body["opennds_running"] is True
        assert body["total_children"] == 1

    def test_health_degraded_when_opennds_down(
        self, client: TestClient, headers: dict[str, str], controller: FakeController
    ) -> None:
        controller.running = False
        body = client.get("/api/system/health", headers=headers).json()
        assert body["status"] == "degraded"
        assert "OpenNDS is not running" in body["errors"]

    def test_dashboard_low_quota_alerts(self, client: TestClient, headers: dict[str, str], store: RecordStore) -> None:
        make_child(store, "alice", quota=60, used=50)
        make_child(store, "bob", quota=60, used=10)

        body = client.get("/api/system/dashboard", headers=headers).json()

        assert [a["child_name"] for a in body["low_quota_alerts"]] == ["Alice"]
        assert body["children"] == 2
        assert "memory_percent" in body["system"]
