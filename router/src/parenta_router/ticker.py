"""Reconciliation loop that meters sessions against quotas and schedules."""

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum

from parenta_shared import Child, Session

from .ndsctl import AccessController, ControllerError
from .schedule import is_allowed_at
from .store import RecordStore

logger = logging.getLogger(__name__)


class RevokeReason(StrEnum):
    QUOTA_EXCEEDED = "quota_exceeded"
    SCHEDULE_ENDED = "schedule_ended"
    CHILD_DELETED = "child_deleted"
    KICKED = "kicked"


@dataclass
class TickResult:
    """What one tick did, for logging and tests."""

    reset: bool = False
    accrued: dict[str, int] = field(default_factory=dict)  # session id -> minutes
    revoked: dict[str, RevokeReason] = field(default_factory=dict)  # session id -> reason
    failed: list[str] = field(default_factory=list)


def revoke_session(
    store: RecordStore,
    controller: AccessController,
    session: Session,
    reason: RevokeReason,
) -> bool:
    """Mark a session inactive and deauthorize its MAC.

    Returns False if the session was already gone or inactive. The MAC is
    left authorized when another session has become active on it. The
    deauthorize call is best effort; the store is updated even when it fails.
    """
    if store.deactivate_session(session.id) is None:
        logger.debug("Session %s already ended, not revoking", session.id)
        return False

    logger.warning("Deauthorizing %s (child: %s): %s", session.mac, session.child_name, reason)
    if not session.mac:
        return True
    current = store.get_active_session_by_mac(session.mac)
    if current is not None:
        logger.info("Leaving %s authorized for newer session %s", session.mac, current.id)
        return True
    try:
        controller.deauthorize(session.mac)
    except ControllerError as e:
        logger.warning("Deauthorize failed for %s: %s", session.mac, e)
    return True


def elapsed_minutes(session: Session, now: datetime) -> int:
    """Whole minutes since the session was last metered. Partial minutes are not counted."""
    since = session.last_tick_at or session.started_at
    seconds = (now - since).total_seconds()
    if seconds <= 0:
        return 0
    return int(seconds // 60)


class SessionTicker:
    """Periodically accrues usage and revokes out-of-compliance sessions."""

    def __init__(
        self,
        store: RecordStore,
        controller: AccessController,
        interval_seconds: float = 30,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._store = store
        self._controller = controller
        self._interval = interval_seconds
        self._clock = clock
        self._stop_event = threading.Event()
        self._tick_lock = threading.Lock()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="session-ticker", daemon=True)
        self._thread.start()
        logger.info("Session ticker started (interval: %gs)", self._interval)

    def stop(self, timeout: float | None = None) -> None:
        """Stop the loop and wait for any in-progress tick to finish."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            if self._thread.is_alive():
                logger.warning("Session ticker still running after %gs", timeout)
                return
            self._thread = None
        logger.info("Session ticker stopped")

    def _run(self) -> None:
        while not self._stop_event.wait(self._interval):
            try:
                self.tick()
            except Exception:
                logger.exception("Error in session ticker tick")

    def tick(self, now: datetime | None = None) -> TickResult:
        """Run one reconciliation pass."""
        with self._tick_lock:
            now = now or self._clock()
            result = TickResult()

            try:
                result.reset = self._check_daily_reset(now)
            except Exception:
                logger.exception("Daily reset failed")

            for session in self._store.list_sessions(active_only=True):
                try:
                    self._process_session(session, now, result)
                except Exception:
                    logger.exception("Failed to process session %s (%s)", session.id, session.mac)
                    result.failed.append(session.id)

            if result.accrued or result.revoked:
                logger.debug(
                    "Tick: accrued=%d revoked=%d failed=%d",
                    len(result.accrued),
                    len(result.revoked),
                    len(result.failed),
                )
            return result

    def _check_daily_reset(self, now: datetime) -> bool:
        today = now.date().isoformat()
        if self._store.reset_daily_usage(today):
            logger.info("Resetting daily quotas for %s", today)
            return True
        return False

    def _process_session(self, session: Session, now: datetime, result: TickResult) -> None:
        # The listing may be stale: a kick or a new login on the MAC can end it
        current = self._store.get_session(session.id)
        if current is None or not current.is_active:
            return
        session = current

        child = self._store.get_child(session.child_id)
        if child is None:
            self._revoke(session, RevokeReason.CHILD_DELETED, result)
            return

        minutes = elapsed_minutes(session, now)
        if minutes > 0:
            updated = self._accrue(child.id, minutes, now)
            if updated is None:
                # Deleted between the read above and the write
                self._revoke(session, RevokeReason.CHILD_DELETED, result)
                return
            child = updated

            def advance(s: Session) -> None:
                s.last_tick_at = now

            self._store.update_session(session.id, advance)
            result.accrued[session.id] = minutes

        if child.used_today_minutes >= child.daily_quota_minutes:
            self._revoke(session, RevokeReason.QUOTA_EXCEEDED, result)
            return

        if child.schedule_id:
            schedule = self._store.get_schedule(child.schedule_id)
            if schedule is None:
                logger.debug("Child %s references missing schedule %s", child.id, child.schedule_id)
            elif not is_allowed_at(schedule, now):
                self._revoke(session, RevokeReason.SCHEDULE_ENDED, result)

    def _accrue(self, child_id: str, minutes: int, now: datetime) -> Child | None:
        def add_usage(c: Child) -> None:
            c.used_today_minutes += minutes
            c.updated_at = now

        return self._store.update_child(child_id, add_usage)

    def _revoke(self, session: Session, reason: RevokeReason, result: TickResult) -> None:
        if revoke_session(self._store, self._controller, session, reason):
            result.revoked[session.id] = reason
