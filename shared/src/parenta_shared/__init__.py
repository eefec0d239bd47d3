from .models import (
    Admin,
    AdminRole,
    Child,
    Device,
    FilterMode,
    FilterRule,
    RuleType,
    Schedule,
    Session,
    TimeBlock,
    normalize_mac,
)

__all__ = [
    "Admin",
    "AdminRole",
    "Child",
    "Device",
    "FilterMode",
    "FilterRule",
    "RuleType",
    "Schedule",
    "Session",
    "TimeBlock",
    "normalize_mac",
]
