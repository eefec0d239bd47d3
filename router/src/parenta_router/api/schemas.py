"""Request bodies and response shaping for the admin API."""

from typing import Annotated, Any

from pydantic import BaseModel, Field

from parenta_shared import Admin, AdminRole, Child, FilterMode, RuleType, Session, TimeBlock

MIN_PASSWORD_LENGTH = 6

Password = Annotated[str, Field(min_length=MIN_PASSWORD_LENGTH)]


class LoginRequest(BaseModel):
    username: str
    password: str


class ChangePasswordRequest(BaseModel):
    old_password: str
    new_password: Password


class ResetPasswordRequest(BaseModel):
    new_password: Password


class AdminCreate(BaseModel):
    username: Annotated[str, Field(min_length=1)]
    password: Password
    display_name: str = ""
    role: AdminRole = AdminRole.ADMIN


class AdminUpdate(BaseModel):
    display_name: str | None = None
    role: AdminRole | None = None


class ChildCreate(BaseModel):
    username: Annotated[str, Field(min_length=1)]
    password: Annotated[str, Field(min_length=1)]
    name: Annotated[str, Field(min_length=1)]
    daily_quota_minutes: Annotated[int, Field(ge=0)] | None = None
    filter_mode: FilterMode = FilterMode.NORMAL
    schedule_id: str | None = None


class ChildUpdate(BaseModel):
    """Partial update; omitted fields are left alone."""

    username: str | None = None
    password: str | None = None
    name: str | None = None
    daily_quota_minutes: Annotated[int, Field(ge=0)] | None = None
    filter_mode: FilterMode | None = None
    schedule_id: str | None = None
    is_active: bool | None = None


class AdjustQuotaRequest(BaseModel):
    minutes: int  # positive grants time, negative takes it away


class DeviceCreate(BaseModel):
    mac: str
    name: str = ""


class ExtendRequest(BaseModel):
    minutes: Annotated[int, Field(gt=0)]


class ScheduleBody(BaseModel):
    name: Annotated[str, Field(min_length=1)]
    time_blocks: list[TimeBlock] = Field(default_factory=list)
    is_default: bool = False


class FilterCreate(BaseModel):
    domain: Annotated[str, Field(min_length=1)]
    rule_type: RuleType
    category: str = ""


class StudyModeRequest(BaseModel):
    enabled: bool


def admin_out(admin: Admin) -> dict[str, Any]:
    data = admin.model_dump(mode="json", exclude={"password_hash"})
    data["display_name"] = admin.label()
    return data


def child_out(child: Child, today: str) -> dict[str, Any]:
    data = child.model_dump(mode="json", exclude={"password_hash"})
    data["used_today_minutes"] = child.effective_used_minutes(today)
    data["remaining_minutes"] = child.remaining_minutes(today)
    return data


def session_out(session: Session, now) -> dict[str, Any]:
    data = session.model_dump(mode="json")
    data["duration_minutes"] = session.duration_minutes(now)
    return data
