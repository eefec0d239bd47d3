"""Captive-portal (FAS) handshake.

openNDS redirects an unauthenticated client to us with a ``fas`` query
parameter: base64 of ``key=value`` pairs joined by ``", "``. Query transport
can turn ``+`` into spaces and drop padding, and openNDS writes the literal
text ``(null)`` for unset fields, so decoding is deliberately forgiving.

Everything taken from that payload is attacker controlled and is reduced
to printable ASCII before it is echoed into a URL or header.
"""

import base64
import binascii
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from urllib.parse import unquote

from pydantic import BaseModel

from parenta_shared import Admin, Child, Session, normalize_mac

from .auth import AccountDisabled, AuthError, AuthService, UnknownUser, generate_id
from .ndsctl import AccessController, ControllerError
from .network import lookup_mac
from .schedule import is_allowed_at
from .store import RecordStore

logger = logging.getLogger(__name__)

NULL_ARTIFACT = "(null)"
RECOGNIZED_KEYS = ("hid", "clientip", "clientmac", "gatewayname", "gatewayhash", "authdir", "originurl")

MSG_INVALID_CREDENTIALS = "Invalid username or password"
MSG_ACCOUNT_DISABLED = "This account is disabled"
MSG_NO_TIME = "No time remaining for today"
MSG_NOT_ALLOWED = "Internet access not allowed at this time"


class PortalDecodeError(ValueError):
    """The fas payload could not be decoded."""


class PortalDenied(Exception):
    """A login attempt ended in a user-facing refusal."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


def _b64_strict(text: str, altchars: bytes | None = None) -> bytes:
    return base64.b64decode(text.encode("ascii"), altchars=altchars, validate=True)


def _pad(text: str) -> str:
    return text + "=" * (-len(text) % 4)


def decode_fas_payload(raw: str) -> bytes:
    """Decode the fas parameter, trying progressively looser base64 readings."""
    if not raw.strip():
        raise PortalDecodeError("empty payload")
    plus = raw.strip("\r\n\t").replace(" ", "+")
    attempts: list[Callable[[], bytes]] = [
        lambda: _b64_strict(plus),
        lambda: _b64_strict(_pad(plus)),
        lambda: _b64_strict(_pad(plus), altchars=b"-_"),
        lambda: _b64_strict(_pad(plus.rstrip("="))),
    ]
    for attempt in attempts:
        try:
            return attempt()
        except (binascii.Error, ValueError):
            continue
    raise PortalDecodeError("payload is not base64")


def clean_fas_text(data: bytes) -> str:
    """Drop non-printable bytes and the ``(null)`` artifacts openNDS leaves behind."""
    text = bytes(b for b in data if 0x20 <= b < 0x7F).decode("ascii")
    previous = None
    while previous != text:
        previous = text
        text = text.replace(NULL_ARTIFACT, "")
        text = text.rstrip(", ")
    return text


def parse_fas_text(text: str) -> dict[str, str]:
    """Split ``key=value, key=value`` into recognized, non-empty fields."""
    fields: dict[str, str] = {}
    for pair in text.split(", "):
        key, sep, value = pair.partition("=")
        if not sep:
            continue
        key = key.strip().lower()
        value = value.strip()
        if key not in RECOGNIZED_KEYS or value in ("", NULL_ARTIFACT):
            continue
        fields[key] = value
    return fields


def sanitize(value: str | None) -> str | None:
    """Undo nested percent-encoding and keep only printable ASCII.

    Returns None for values that end up empty or are the null artifact.
    """
    if value is None:
        return None
    for _ in range(3):
        decoded = unquote(value)
        if decoded == value:
            break
        value = decoded
    value = "".join(ch for ch in value if " " <= ch <= "~").strip()
    if not value or value == NULL_ARTIFACT:
        return None
    return value


@dataclass
class FASParams:
    """Canonical handshake parameters."""

    hid: str | None = None
    client_ip: str | None = None
    client_mac: str | None = None
    gateway_name: str | None = None
    gateway_hash: str | None = None
    auth_dir: str | None = None
    origin_url: str | None = None

    @classmethod
    def from_fields(cls, fields: dict[str, str]) -> "FASParams":
        raw_mac = sanitize(fields.get("clientmac"))
        return cls(
            hid=sanitize(fields.get("hid")),
            client_ip=sanitize(fields.get("clientip")),
            client_mac=normalize_mac(raw_mac) if raw_mac else None,
            gateway_name=sanitize(fields.get("gatewayname")),
            gateway_hash=sanitize(fields.get("gatewayhash")),
            auth_dir=sanitize(fields.get("authdir")),
            origin_url=sanitize(fields.get("originurl")),
        )

    def portal_query(self) -> dict[str, str]:
        """Parameters carried to the login page."""
        query = {
            "hid": self.hid,
            "mac": self.client_mac,
            "ip": self.client_ip,
            "gatewayname": self.gateway_name,
            "authdir": self.auth_dir,
            "originurl": self.origin_url,
        }
        return {k: v for k, v in query.items() if v}


class PortalLogin(BaseModel):
    """Credential submission from the portal page."""

    username: str = ""
    password: str = ""
    hid: str = ""
    mac: str = ""
    ip: str = ""
    authdir: str = ""
    originurl: str = ""

    def carried_query(self) -> dict[str, str]:
        """The handshake parameters to send back to the login page on failure."""
        query = {
            "hid": sanitize(self.hid),
            "mac": normalize_mac(sanitize(self.mac)),
            "ip": sanitize(self.ip),
            "authdir": sanitize(self.authdir),
            "originurl": sanitize(self.originurl),
        }
        return {k: v for k, v in query.items() if v}


@dataclass
class AdminLoginResult:
    admin: Admin
    token: str
    mac: str | None

    @property
    def force_password_change(self) -> bool:
        return self.admin.force_password_change


@dataclass
class ChildLoginResult:
    child: Child
    session: Session
    remaining_minutes: int
    redirect_url: str | None


class PortalService:
    """Turns handshakes and credential submissions into authorized sessions."""

    def __init__(
        self,
        store: RecordStore,
        controller: AccessController,
        auth: AuthService,
        settle_seconds: float = 0.5,
        clock: Callable[[], datetime] = datetime.now,
        sleep: Callable[[float], None] = time.sleep,
        neighbor_lookup: Callable[[str], str | None] = lookup_mac,
    ):
        self._store = store
        self._controller = controller
        self._auth = auth
        self._settle_seconds = settle_seconds
        self._clock = clock
        self._sleep = sleep
        self._neighbor_lookup = neighbor_lookup

    def handshake(self, raw: str, requester_ip: str | None = None) -> FASParams:
        """Decode a fas payload into sanitized parameters.

        Raises PortalDecodeError when the payload is not decodable.
        """
        text = clean_fas_text(decode_fas_payload(raw))
        params = FASParams.from_fields(parse_fas_text(text))
        if not params.client_ip and requester_ip:
            params.client_ip = sanitize(requester_ip)
        if not params.client_mac and params.client_ip:
            params.client_mac = self._resolve_mac(params.client_ip)
        return params

    def _resolve_mac(self, ip: str) -> str | None:
        mac = self._neighbor_lookup(ip)
        if mac is None:
            logger.info("No MAC found for %s; access will not be enforced at the gateway", ip)
        return mac

    def login(self, request: PortalLogin, requester_ip: str | None = None) -> AdminLoginResult | ChildLoginResult:
        """Authenticate a portal login as an admin or a child.

        Raises PortalDenied for every refusal the user should see.
        """
        ip = sanitize(request.ip) or sanitize(requester_ip) or ""
        mac = normalize_mac(sanitize(request.mac))
        if mac is None and ip:
            mac = self._resolve_mac(ip)

        try:
            admin = self._auth.authenticate_admin(request.username, request.password)
        except AuthError:
            pass
        else:
            return self._admin_login(admin, mac)

        try:
            child = self._auth.authenticate_child(request.username, request.password)
        except AccountDisabled:
            logger.info("Portal login refused for %r: account disabled", request.username)
            raise PortalDenied(MSG_ACCOUNT_DISABLED)
        except UnknownUser:
            logger.info("Portal login refused for %r: unknown user", request.username)
            raise PortalDenied(MSG_INVALID_CREDENTIALS)
        except AuthError:
            logger.info("Portal login refused for %r: wrong password", request.username)
            raise PortalDenied(MSG_INVALID_CREDENTIALS)

        return self._child_login(child, mac, ip, sanitize(request.originurl))

    def _admin_login(self, admin: Admin, mac: str | None) -> AdminLoginResult:
        token = self._auth.tokens.issue(admin.id, admin.username, is_admin=True, now=self._clock())
        if mac:
            previous = self._store.get_active_session_by_mac(mac)
            if previous is not None:
                self._store.deactivate_session(previous.id)
            # Admins are not metered: 0 is unlimited to openNDS
            self.reauthorize(mac, 0)
        logger.info("Admin %s logged in via portal (mac=%s)", admin.username, mac or "-")
        return AdminLoginResult(admin=admin, token=token, mac=mac)

    def _child_login(self, child: Child, mac: str | None, ip: str, origin_url: str | None) -> ChildLoginResult:
        now = self._clock()
        today = now.date().isoformat()

        remaining = child.remaining_minutes(today)
        if remaining <= 0:
            logger.info("Portal login refused for %s: quota used up", child.username)
            raise PortalDenied(MSG_NO_TIME)

        if child.schedule_id:
            schedule = self._store.get_schedule(child.schedule_id)
            if schedule is not None and not is_allowed_at(schedule, now):
                logger.info("Portal login refused for %s: outside schedule", child.username)
                raise PortalDenied(MSG_NOT_ALLOWED)

        if mac and not child.has_device(mac):
            device_name = f"Auto-discovered device ({mac[-5:]})"

            def register(c: Child) -> None:
                if c.add_device(mac, device_name, now):
                    c.updated_at = now

            self._store.update_child(child.id, register)
            logger.info("Registered new device %s for %s", mac, child.username)

        session = Session(
            id=generate_id(),
            child_id=child.id,
            child_name=child.name,
            mac=mac or "",
            ip=ip,
            started_at=now,
            is_active=True,
        )
        replaced = self._store.start_session(session)
        for old in replaced:
            logger.info("Replaced session %s for %s (child: %s)", old.id, old.mac, old.child_name)

        if mac:
            self.reauthorize(mac, remaining)
        else:
            logger.warning("Session %s for %s has no MAC; gateway enforcement skipped", session.id, child.username)

        logger.info("Child %s logged in (mac=%s, remaining=%d min)", child.username, mac or "-", remaining)
        redirect_url = origin_url if origin_url and origin_url.startswith(("http://", "https://")) else None
        return ChildLoginResult(child=child, session=session, remaining_minutes=remaining, redirect_url=redirect_url)

    def reauthorize(self, mac: str, minutes: int) -> None:
        """Clear any stale authorization for ``mac``, then authorize it.

        ndsctl refuses to authorize a MAC it still considers authorized, so
        the deauthorize goes first and is given a moment to settle.
        """
        try:
            self._controller.deauthorize(mac)
        except ControllerError as e:
            logger.debug("Pre-auth deauthorize for %s: %s", mac, e)
        if self._settle_seconds > 0:
            self._sleep(self._settle_seconds)
        try:
            self._controller.authorize(mac, minutes)
        except ControllerError as e:
            logger.warning("Authorize failed for %s: %s", mac, e)

    def status(self, mac: str) -> dict | None:
        """Time summary for the child holding the active session on ``mac``."""
        wanted = normalize_mac(sanitize(mac))
        if wanted is None:
            return None
        session = self._store.get_active_session_by_mac(wanted)
        if session is None:
            return None
        child = self._store.get_child(session.child_id)
        if child is None:
            return None
        today = self._clock().date().isoformat()
        return {
            "child_name": child.name,
            "remaining_minutes": child.remaining_minutes(today),
            "used_today": child.effective_used_minutes(today),
            "daily_quota": child.daily_quota_minutes,
            "session_start": session.started_at,
        }
