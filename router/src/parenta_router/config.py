"""Configuration for the router service."""

from pathlib import Path

from pydantic import BaseModel, Field


class ServerConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8080


class StorageConfig(BaseModel):
    data_dir: Path = Path("./data")


class OpenNDSConfig(BaseModel):
    """How to reach the openNDS control tool."""

    ndsctl_path: str = "ndsctl"
    gateway_ip: str = ""
    command_timeout_seconds: float = 10.0
    reauth_settle_seconds: float = 0.5


class DnsmasqConfig(BaseModel):
    conf_dir: Path = Path("/tmp/dnsmasq.d")
    restart_cmd: str = "/etc/init.d/dnsmasq restart"
    upstream_dns: str = "8.8.8.8"


class DefaultsConfig(BaseModel):
    daily_quota_minutes: int = 120
    admin_username: str = "admin"
    admin_password: str = "admin"
    force_password_change: bool = True


class SessionConfig(BaseModel):
    tick_interval_seconds: int = Field(default=30, gt=0)
    jwt_secret: str = "change-me"
    jwt_expiry_hours: int = 24


class Config(BaseModel):
    """Local configuration for this router."""

    server: ServerConfig = Field(default_factory=ServerConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    opennds: OpenNDSConfig = Field(default_factory=OpenNDSConfig)
    dnsmasq: DnsmasqConfig = Field(default_factory=DnsmasqConfig)
    defaults: DefaultsConfig = Field(default_factory=DefaultsConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)


def load_config(path: Path) -> Config:
    """Load configuration from a JSON file."""
    return Config.model_validate_json(path.read_text())
