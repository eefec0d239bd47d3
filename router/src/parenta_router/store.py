"""JSON-file record store.

Every record kind lives in its own file and behind its own lock. Callers
always receive copies; mutations go back through the store, which rewrites
the whole file for that kind before returning.
"""

import json
import logging
import threading
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import Generic, TypeVar

from pydantic import BaseModel, ValidationError

from parenta_shared import (
    Admin,
    AdminRole,
    Child,
    FilterRule,
    RuleType,
    Schedule,
    Session,
    normalize_mac,
)
from parenta_shared.jsonfile import atomic_write, dump_records, load_records

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


class StoreError(Exception):
    """A record file could not be read or written."""


class _Collection(Generic[M]):
    """One record kind: an ordered id -> record map mirrored to a file."""

    def __init__(self, model: type[M], path: Path):
        self._model = model
        self._path = path
        self._records: dict[str, M] = {}
        self.lock = threading.RLock()

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> bool:
        """Load records from disk. Returns True if the file held a single object."""
        if not self._path.exists():
            return False
        try:
            text = self._path.read_text(encoding="utf-8")
            legacy = isinstance(json.loads(text), dict)
            records = load_records(self._model, text)
        except (OSError, ValueError, ValidationError) as e:
            raise StoreError(f"Failed to load {self._path}: {e}") from e
        with self.lock:
            self._records = {r.id: r for r in records}  # type: ignore[attr-defined]
        logger.debug("Loaded %d records from %s", len(records), self._path.name)
        return legacy

    def get(self, record_id: str) -> M | None:
        with self.lock:
            record = self._records.get(record_id)
            return record.model_copy(deep=True) if record is not None else None

    def values(self) -> list[M]:
        with self.lock:
            return [r.model_copy(deep=True) for r in self._records.values()]

    def find(self, predicate: Callable[[M], bool]) -> M | None:
        with self.lock:
            for record in self._records.values():
                if predicate(record):
                    return record.model_copy(deep=True)
        return None

    def count(self) -> int:
        with self.lock:
            return len(self._records)

    def upsert(self, record: M) -> M:
        with self.lock:
            snapshot = dict(self._records)
            self._records[record.id] = record.model_copy(deep=True)  # type: ignore[attr-defined]
            self._commit(snapshot)
        return record

    def delete(self, record_id: str) -> bool:
        with self.lock:
            if record_id not in self._records:
                return False
            snapshot = dict(self._records)
            del self._records[record_id]
            self._commit(snapshot)
        return True

    def update(self, record_id: str, mutate: Callable[[M], None]) -> M | None:
        """Read-modify-write one record while holding the lock."""
        with self.lock:
            current = self._records.get(record_id)
            if current is None:
                return None
            updated = current.model_copy(deep=True)
            mutate(updated)
            snapshot = dict(self._records)
            self._records[record_id] = updated
            self._commit(snapshot)
            return updated.model_copy(deep=True)

    def replace_all(self, records: Iterable[M]) -> None:
        with self.lock:
            snapshot = dict(self._records)
            self._records = {r.id: r.model_copy(deep=True) for r in records}  # type: ignore[attr-defined]
            self._commit(snapshot)

    def _commit(self, snapshot: dict[str, M]) -> None:
        # Caller holds the lock. On failure memory is rolled back to match disk.
        try:
            atomic_write(self._path, dump_records(list(self._records.values())))
        except OSError as e:
            self._records = snapshot
            raise StoreError(f"Failed to write {self._path}: {e}") from e


class RecordStore:
    """Single source of truth for admins, children, sessions, schedules and filters."""

    def __init__(self, data_dir: Path):
        self._data_dir = data_dir
        self._data_dir.mkdir(parents=True, exist_ok=True)

        self._admins = _Collection(Admin, data_dir / "admin.json")
        self._children = _Collection(Child, data_dir / "children.json")
        self._sessions = _Collection(Session, data_dir / "sessions.json")
        self._schedules = _Collection(Schedule, data_dir / "schedules.json")
        self._filters = _Collection(FilterRule, data_dir / "filters.json")

        self._load_all()

    @property
    def data_dir(self) -> Path:
        return self._data_dir

    def _load_all(self) -> None:
        if self._admins.load():
            # Older installs kept one admin object; it becomes the super admin.
            admins = self._admins.values()
            raw = json.loads(self._admins.path.read_text(encoding="utf-8"))
            if "role" not in raw:
                for admin in admins:
                    admin.role = AdminRole.SUPER
            self._admins.replace_all(admins)
            logger.info("Converted legacy admin.json to list format")
        self._children.load()
        self._sessions.load()
        self._schedules.load()
        self._filters.load()

    # Admins

    def list_admins(self) -> list[Admin]:
        return self._admins.values()

    def get_admin(self, admin_id: str) -> Admin | None:
        return self._admins.get(admin_id)

    def get_admin_by_username(self, username: str) -> Admin | None:
        return self._admins.find(lambda a: a.username == username)

    def save_admin(self, admin: Admin) -> Admin:
        return self._admins.upsert(admin)

    def update_admin(self, admin_id: str, mutate: Callable[[Admin], None]) -> Admin | None:
        return self._admins.update(admin_id, mutate)

    def delete_admin(self, admin_id: str) -> bool:
        """Delete an admin. The last remaining admin is never deleted."""
        with self._admins.lock:
            if self._admins.count() <= 1:
                return False
            return self._admins.delete(admin_id)

    def admin_count(self) -> int:
        return self._admins.count()

    # Children

    def list_children(self) -> list[Child]:
        return self._children.values()

    def get_child(self, child_id: str) -> Child | None:
        return self._children.get(child_id)

    def get_child_by_username(self, username: str) -> Child | None:
        return self._children.find(lambda c: c.username == username)

    def get_child_by_mac(self, mac: str) -> Child | None:
        return self._children.find(lambda c: c.has_device(mac))

    def save_child(self, child: Child) -> Child:
        return self._children.upsert(child)

    def update_child(self, child_id: str, mutate: Callable[[Child], None]) -> Child | None:
        return self._children.update(child_id, mutate)

    def delete_child(self, child_id: str) -> bool:
        return self._children.delete(child_id)

    def reset_daily_usage(self, today: str) -> bool:
        """Zero every child's usage if any child's reset date is stale.

        Returns True if a reset was written.
        """
        with self._children.lock:
            children = self._children.values()
            if all(c.last_reset_date == today for c in children):
                return False
            for child in children:
                child.used_today_minutes = 0
                child.last_reset_date = today
            self._children.replace_all(children)
        return True

    # Sessions

    def list_sessions(self, active_only: bool = True) -> list[Session]:
        sessions = self._sessions.values()
        if active_only:
            return [s for s in sessions if s.is_active]
        return sessions

    def get_session(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def get_active_session_by_mac(self, mac: str) -> Session | None:
        wanted = normalize_mac(mac) or mac
        return self._sessions.find(lambda s: s.is_active and (normalize_mac(s.mac) or s.mac) == wanted)

    def update_session(self, session_id: str, mutate: Callable[[Session], None]) -> Session | None:
        return self._sessions.update(session_id, mutate)

    def start_session(self, session: Session) -> list[Session]:
        """Insert an active session, deactivating any other active one for its MAC.

        Both changes land in a single write. Returns the sessions that were
        deactivated.
        """
        wanted = normalize_mac(session.mac) or session.mac
        with self._sessions.lock:
            sessions = self._sessions.values()
            replaced = []
            for existing in sessions:
                if existing.is_active and wanted and (normalize_mac(existing.mac) or existing.mac) == wanted:
                    existing.is_active = False
                    replaced.append(existing)
            sessions.append(session)
            self._sessions.replace_all(sessions)
        return replaced

    def deactivate_session(self, session_id: str) -> Session | None:
        """Mark an active session inactive.

        Returns the updated session, or None if it was missing or already
        inactive.
        """
        with self._sessions.lock:
            current = self._sessions.get(session_id)
            if current is None or not current.is_active:
                return None

            def mark_inactive(s: Session) -> None:
                s.is_active = False

            return self._sessions.update(session_id, mark_inactive)

    def clear_inactive_sessions(self) -> int:
        """Drop inactive session rows. Returns how many were removed."""
        with self._sessions.lock:
            sessions = self._sessions.values()
            active = [s for s in sessions if s.is_active]
            removed = len(sessions) - len(active)
            if removed:
                self._sessions.replace_all(active)
        return removed

    # Schedules

    def list_schedules(self) -> list[Schedule]:
        return self._schedules.values()

    def get_schedule(self, schedule_id: str) -> Schedule | None:
        return self._schedules.get(schedule_id)

    def save_schedule(self, schedule: Schedule) -> Schedule:
        return self._schedules.upsert(schedule)

    def delete_schedule(self, schedule_id: str) -> bool:
        return self._schedules.delete(schedule_id)

    # Filters

    def list_filters(self, rule_type: RuleType | None = None) -> list[FilterRule]:
        rules = self._filters.values()
        if rule_type is None:
            return rules
        return [r for r in rules if r.rule_type == rule_type]

    def get_filter(self, filter_id: str) -> FilterRule | None:
        return self._filters.get(filter_id)

    def save_filter(self, rule: FilterRule) -> FilterRule:
        return self._filters.upsert(rule)

    def delete_filter(self, filter_id: str) -> bool:
        return self._filters.delete(filter_id)
