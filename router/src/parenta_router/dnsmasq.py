"""dnsmasq filter file generation."""

import logging
import shlex
import subprocess
from pathlib import Path

from parenta_shared import FilterRule, RuleType
from parenta_shared.jsonfile import atomic_write

from .store import RecordStore

logger = logging.getLogger(__name__)

BLOCKLIST_FILE = "parenta-blocklist.conf"
WHITELIST_FILE = "parenta-whitelist.conf"
STUDY_MODE_FILE = "parenta-studymode.conf"

_NOTICE = "# Do not edit manually - changes will be overwritten\n\n"


class DnsmasqError(Exception):
    """Writing filter files or restarting dnsmasq failed."""


def _bare_domain(domain: str) -> str:
    domain = domain.strip().lower()
    if domain.startswith("*."):
        domain = domain[2:]
    return domain


def render_blocklist(rules: list[FilterRule]) -> str:
    lines = ["# Parenta Blocklist - Auto-generated\n", _NOTICE]
    for rule in rules:
        # NXDOMAIN for the domain and its subdomains
        lines.append(f"address=/{_bare_domain(rule.domain)}/\n")
    return "".join(lines)


def render_whitelist(rules: list[FilterRule], upstream: str) -> str:
    lines = ["# Parenta Whitelist - Auto-generated\n", _NOTICE]
    for rule in rules:
        lines.append(f"server=/{_bare_domain(rule.domain)}/{upstream}\n")
    return "".join(lines)


STUDY_MODE_CONF = (
    "# Parenta Study Mode - Block all non-whitelisted\n"
    "# This blocks ALL domains by default\n\n"
    "address=/#/\n"
)


class DnsmasqConfigurator:
    """Writes filter rules into dnsmasq's conf dir and restarts it."""

    def __init__(
        self,
        store: RecordStore,
        conf_dir: Path,
        restart_cmd: str,
        upstream_dns: str = "8.8.8.8",
        timeout_seconds: float = 30.0,
    ):
        self._store = store
        self._conf_dir = Path(conf_dir)
        self._restart_cmd = restart_cmd
        self._upstream_dns = upstream_dns
        self._timeout = timeout_seconds

    @property
    def conf_dir(self) -> Path:
        return self._conf_dir

    def regenerate(self) -> None:
        """Rebuild the blocklist and whitelist files from the stored rules."""
        try:
            self._conf_dir.mkdir(parents=True, exist_ok=True)
            blacklist = self._store.list_filters(RuleType.BLACKLIST)
            whitelist = self._store.list_filters(RuleType.WHITELIST)
            atomic_write(self._conf_dir / BLOCKLIST_FILE, render_blocklist(blacklist))
            atomic_write(self._conf_dir / WHITELIST_FILE, render_whitelist(whitelist, self._upstream_dns))
        except OSError as e:
            raise DnsmasqError(f"write filter configs: {e}") from e
        logger.info("Regenerated dnsmasq configs (%d blocked, %d allowed)", len(blacklist), len(whitelist))

    def reload(self) -> None:
        args = shlex.split(self._restart_cmd)
        if not args:
            raise DnsmasqError("invalid restart command")
        try:
            result = subprocess.run(args, capture_output=True, text=True, timeout=self._timeout, check=False)
        except subprocess.TimeoutExpired as e:
            raise DnsmasqError(f"dnsmasq restart timed out after {self._timeout:g}s") from e
        except OSError as e:
            raise DnsmasqError(f"dnsmasq restart: {e}") from e
        if result.returncode != 0:
            message = result.stderr.strip() or f"exit code {result.returncode}"
            raise DnsmasqError(f"dnsmasq restart: {message}")
        logger.info("dnsmasq restarted")

    def apply(self) -> None:
        self.regenerate()
        self.reload()

    def enable_study_mode(self) -> None:
        try:
            self._conf_dir.mkdir(parents=True, exist_ok=True)
            atomic_write(self._conf_dir / STUDY_MODE_FILE, STUDY_MODE_CONF)
        except OSError as e:
            raise DnsmasqError(f"write study mode config: {e}") from e
        self.reload()

    def disable_study_mode(self) -> None:
        (self._conf_dir / STUDY_MODE_FILE).unlink(missing_ok=True)
        self.reload()

    @property
    def study_mode_enabled(self) -> bool:
        return (self._conf_dir / STUDY_MODE_FILE).exists()
