"""Record schema for Parenta.

These models define the layout of every JSON data file the router keeps.
The record store, the reconciliation loop and the HTTP API all exchange
these types.
"""

import re
from datetime import datetime
from enum import StrEnum
from typing import Annotated

from pydantic import BaseModel, Field

_MAC_OCTETS = re.compile(r"^[0-9a-f]{2}(:[0-9a-f]{2}){5}$")


def normalize_mac(value: str | None) -> str | None:
    """Canonicalize a MAC address to lowercase colon-delimited octets.

    Accepts ``-`` or ``:`` separators and bare 12-digit hex. Returns None
    for anything that is not a MAC address.
    """
    if not value:
        return None
    mac = value.strip().lower().replace("-", ":")
    if ":" not in mac and len(mac) == 12:
        mac = ":".join(mac[i : i + 2] for i in range(0, 12, 2))
    if not _MAC_OCTETS.match(mac):
        return None
    return mac


class FilterMode(StrEnum):
    NORMAL = "normal"  # blacklist blocked
    STUDY = "study"  # whitelist only


class RuleType(StrEnum):
    WHITELIST = "whitelist"
    BLACKLIST = "blacklist"


class AdminRole(StrEnum):
    SUPER = "super"  # can manage other admins
    ADMIN = "admin"


class Device(BaseModel):
    """A MAC-bound device owned by a child."""

    mac: str
    name: str
    first_seen: datetime


class Child(BaseModel):
    """children.json entry.

    ``used_today_minutes`` only means something relative to
    ``last_reset_date``; use :meth:`effective_used_minutes` for quota reads.
    """

    id: str
    username: str
    password_hash: str
    name: str
    daily_quota_minutes: Annotated[int, Field(ge=0)] = 120
    used_today_minutes: Annotated[int, Field(ge=0)] = 0
    filter_mode: FilterMode = FilterMode.NORMAL
    schedule_id: str | None = None
    devices: list[Device] = Field(default_factory=list)
    is_active: bool = True
    last_reset_date: str = ""  # YYYY-MM-DD
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def effective_used_minutes(self, today: str) -> int:
        if self.last_reset_date != today:
            return 0
        return self.used_today_minutes

    def remaining_minutes(self, today: str | None = None) -> int:
        """Minutes left today, floored at zero.

        When ``today`` is given, stale usage from an earlier day counts as zero.
        """
        used = self.used_today_minutes if today is None else self.effective_used_minutes(today)
        return max(0, self.daily_quota_minutes - used)

    def has_device(self, mac: str) -> bool:
        wanted = normalize_mac(mac) or mac
        return any((normalize_mac(d.mac) or d.mac) == wanted for d in self.devices)

    def add_device(self, mac: str, name: str, now: datetime) -> bool:
        """Bind a device to this child. Returns False if it was already bound."""
        if self.has_device(mac):
            return False
        self.devices.append(Device(mac=normalize_mac(mac) or mac, name=name, first_seen=now))
        return True

    def remove_device(self, mac: str) -> bool:
        wanted = normalize_mac(mac) or mac
        kept = [d for d in self.devices if (normalize_mac(d.mac) or d.mac) != wanted]
        removed = len(kept) != len(self.devices)
        self.devices = kept
        return removed


class Session(BaseModel):
    """sessions.json entry.

    At most one active session may exist per MAC.
    """

    id: str
    child_id: str
    child_name: str
    mac: str
    ip: str = ""
    started_at: datetime
    last_tick_at: datetime | None = None
    is_active: bool = True

    def duration_minutes(self, now: datetime) -> int:
        return max(0, int((now - self.started_at).total_seconds() // 60))


class TimeBlock(BaseModel):
    """An allowed window within a weekly schedule."""

    day_of_week: Annotated[int, Field(ge=0, le=6)]  # 0=Sunday, 6=Saturday
    start_time: str  # HH:MM
    end_time: str  # HH:MM
    filter_mode: FilterMode = FilterMode.NORMAL


class Schedule(BaseModel):
    """schedules.json entry."""

    id: str
    name: str
    time_blocks: list[TimeBlock] = Field(default_factory=list)
    is_default: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None


class FilterRule(BaseModel):
    """filters.json entry."""

    id: str
    domain: str  # "youtube.com" or "*.youtube.com"
    rule_type: RuleType
    category: str = ""
    created_at: datetime | None = None


class Admin(BaseModel):
    """admin.json entry (a parent account)."""

    id: str
    username: str
    password_hash: str
    display_name: str = ""
    role: AdminRole = AdminRole.ADMIN
    force_password_change: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_super(self) -> bool:
        return self.role == AdminRole.SUPER

    def label(self) -> str:
        return self.display_name or self.username
