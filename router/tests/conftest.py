"""Shared fixtures: a temp-dir store and a recording gateway controller."""

from datetime import datetime
from pathlib import Path

import pytest

from parenta_router.auth import hash_password
from parenta_router.ndsctl import ClientInfo, ControllerError
from parenta_router.store import RecordStore
from parenta_shared import Child, Session

# A Wednesday
NOW = datetime(2025, 3, 12, 10, 0, 0)
TODAY = NOW.date().isoformat()


class FakeController:
    """Records ndsctl calls instead of running them."""

    def __init__(self) -> None:
        self.calls: list[tuple] = []
        self.fail_authorize = False
        self.fail_deauthorize = False
        self.running = True
        self.clients: list[ClientInfo] = []

    def authorize(self, mac: str, session_minutes: int, upload_kbps: int = 0, download_kbps: int = 0) -> None:
        self.calls.append(("auth", mac, session_minutes))
        if self.fail_authorize:
            raise ControllerError("auth", "refused")

    def deauthorize(self, mac_or_ip: str) -> None:
        self.calls.append(("deauth", mac_or_ip))
        if self.fail_deauthorize:
            raise ControllerError("deauth", "client not found")

    def status(self) -> str:
        if not self.running:
            raise ControllerError("status", "not running")
        return "==================\nopenNDS Status\n===="

    def list_clients(self) -> list[ClientInfo]:
        return list(self.clients)

    def authorized(self) -> list[tuple]:
        return [c for c in self.calls if c[0] == "auth"]

    def deauthorized(self) -> list[str]:
        return [c[1] for c in self.calls if c[0] == "deauth"]


@pytest.fixture
def store(tmp_path: Path) -> RecordStore:
    return RecordStore(tmp_path / "data")


@pytest.fixture
def controller() -> FakeController:
    return FakeController()


def make_child(
    store: RecordStore,
    username: str = "alice",
    password: str = "secret",
    quota: int = 120,
    used: int = 0,
    **kwargs,
) -> Child:
    child = Child(
        id=f"child-{username}",
        username=username,
        password_hash=hash_password(password),
        name=username.capitalize(),
        daily_quota_minutes=quota,
        used_today_minutes=used,
        last_reset_date=kwargs.pop("last_reset_date", TODAY),
        **kwargs,
    )
    return store.save_child(child)


def make_session(
    store: RecordStore,
    child: Child,
    mac: str = "aa:bb:cc:dd:ee:ff",
    started_at: datetime = NOW,
    **kwargs,
) -> Session:
    session = Session(
        id=kwargs.pop("id", f"sess-{mac[-2:]}-{child.username}"),
        child_id=child.id,
        child_name=child.name,
        mac=mac,
        started_at=started_at,
        **kwargs,
    )
    store.start_session(session)
    return session
