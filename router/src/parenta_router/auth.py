"""Password hashing, access tokens and credential checks."""

import base64
import hashlib
import hmac
import json
import logging
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta

from parenta_shared import Admin, AdminRole, Child

from .store import RecordStore

logger = logging.getLogger(__name__)

PBKDF2_ITERATIONS = 120000


class AuthError(Exception):
    """Base class for authentication failures."""


class InvalidCredentials(AuthError):
    """Wrong username or password."""


class UnknownUser(InvalidCredentials):
    """No account with this username."""


class AccountDisabled(AuthError):
    """The account exists but is switched off."""


def generate_id() -> str:
    """Random 16-character hex id."""
    return secrets.token_hex(8)


def hash_password(password: str) -> str:
    salt = secrets.token_hex(16)
    derived = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt.encode("utf-8"), PBKDF2_ITERATIONS)
    return f"pbkdf2_sha256${PBKDF2_ITERATIONS}${salt}${derived.hex()}"


def verify_password(password: str, password_hash: str) -> bool:
    try:
        algo, iter_raw, salt, digest_hex = password_hash.split("$", 3)
        if algo != "pbkdf2_sha256":
            return False
        iterations = int(iter_raw)
    except ValueError:
        return False
    derived = hashlib.pbkdf2_hmac(
        "sha256", (password or "").encode("utf-8"), salt.encode("utf-8"), iterations
    ).hex()
    return hmac.compare_digest(derived, digest_hex)


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _b64url_decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode((value + padding).encode("ascii"))


@dataclass
class TokenClaims:
    user_id: str
    username: str
    is_admin: bool
    exp: int


class TokenIssuer:
    """HS256 JWTs for the admin API."""

    def __init__(self, secret: str, expiry_hours: int = 24):
        self._secret = secret.encode("utf-8")
        self._expiry = timedelta(hours=expiry_hours)
        self._revoked: set[str] = set()
        self._lock = threading.Lock()

    @property
    def expires_in_seconds(self) -> int:
        return int(self._expiry.total_seconds())

    def issue(self, user_id: str, username: str, is_admin: bool = True, now: datetime | None = None) -> str:
        now = now or datetime.now()
        payload = {
            "user_id": user_id,
            "username": username,
            "is_admin": is_admin,
            "exp": int((now + self._expiry).timestamp()),
        }
        header_part = _b64url_encode(json.dumps({"alg": "HS256", "typ": "JWT"}, separators=(",", ":")).encode())
        payload_part = _b64url_encode(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_part}.{payload_part}".encode("ascii")
        signature = hmac.new(self._secret, signing_input, hashlib.sha256).digest()
        return f"{header_part}.{payload_part}.{_b64url_encode(signature)}"

    def validate(self, token: str, now: datetime | None = None) -> TokenClaims | None:
        """Return the claims of a valid, unexpired, unrevoked token, else None."""
        with self._lock:
            if token in self._revoked:
                return None
        try:
            header_part, payload_part, signature_part = token.split(".")
            signing_input = f"{header_part}.{payload_part}".encode("ascii")
            provided = _b64url_decode(signature_part)
        except (ValueError, UnicodeEncodeError):
            return None
        expected = hmac.new(self._secret, signing_input, hashlib.sha256).digest()
        if not hmac.compare_digest(provided, expected):
            return None
        try:
            payload = json.loads(_b64url_decode(payload_part))
            claims = TokenClaims(
                user_id=str(payload["user_id"]),
                username=str(payload["username"]),
                is_admin=bool(payload.get("is_admin", False)),
                exp=int(payload["exp"]),
            )
        except (ValueError, KeyError, TypeError):
            return None
        now = now or datetime.now()
        if claims.exp < int(now.timestamp()):
            return None
        return claims

    def revoke(self, token: str) -> None:
        with self._lock:
            self._revoked.add(token)


class AuthService:
    """Credential checks against the admin and child records."""

    def __init__(self, store: RecordStore, tokens: TokenIssuer):
        self._store = store
        self.tokens = tokens

    def initialize_admin(self, username: str, password: str, force_change: bool) -> Admin | None:
        """Create the first (super) admin if there is none. Returns it if created."""
        if self._store.admin_count() > 0:
            return None
        now = datetime.now()
        admin = Admin(
            id=generate_id(),
            username=username,
            password_hash=hash_password(password),
            display_name="Administrator",
            role=AdminRole.SUPER,
            force_password_change=force_change,
            created_at=now,
            updated_at=now,
        )
        self._store.save_admin(admin)
        logger.info("Created default admin %r", username)
        return admin

    def authenticate_admin(self, username: str, password: str) -> Admin:
        admin = self._store.get_admin_by_username(username)
        if admin is None:
            raise UnknownUser(username)
        if not verify_password(password, admin.password_hash):
            raise InvalidCredentials(username)
        return admin

    def authenticate_child(self, username: str, password: str) -> Child:
        """Check a child's credentials. Disabled accounts raise AccountDisabled."""
        child = self._store.get_child_by_username(username)
        if child is None:
            raise UnknownUser(username)
        if not verify_password(password, child.password_hash):
            raise InvalidCredentials(username)
        if not child.is_active:
            raise AccountDisabled(username)
        return child

    def change_admin_password(self, admin_id: str, old_password: str, new_password: str) -> Admin:
        admin = self._store.get_admin(admin_id)
        if admin is None:
            raise UnknownUser(admin_id)
        if not verify_password(old_password, admin.password_hash):
            raise InvalidCredentials(admin.username)
        new_hash = hash_password(new_password)

        def apply(a: Admin) -> None:
            a.password_hash = new_hash
            a.force_password_change = False
            a.updated_at = datetime.now()

        updated = self._store.update_admin(admin_id, apply)
        if updated is None:
            raise UnknownUser(admin_id)
        return updated

    def reset_admin_password(self, admin_id: str, new_password: str) -> Admin:
        """Set a new password and force a change at next login."""
        new_hash = hash_password(new_password)

        def apply(a: Admin) -> None:
            a.password_hash = new_hash
            a.force_password_change = True
            a.updated_at = datetime.now()

        updated = self._store.update_admin(admin_id, apply)
        if updated is None:
            raise UnknownUser(admin_id)
        return updated
