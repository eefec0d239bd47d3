"""Client for the openNDS control tool (ndsctl)."""

import json
import logging
import subprocess
from typing import Protocol

from pydantic import BaseModel, ConfigDict, ValidationError

logger = logging.getLogger(__name__)


class ControllerError(Exception):
    """An ndsctl invocation failed."""

    def __init__(self, command: str, message: str):
        super().__init__(f"ndsctl {command}: {message}")
        self.command = command


class ClientInfo(BaseModel):
    """One client entry from ``ndsctl json``."""

    model_config = ConfigDict(extra="allow")

    mac: str = ""
    ip: str = ""
    state: str = ""
    client_type: str = ""
    token: str = ""
    upload: int = 0
    download: int = 0
    duration: int = 0


class AccessController(Protocol):
    """What the portal and the reconciliation loop need from the gateway."""

    def authorize(
        self,
        mac: str,
        session_minutes: int,
        upload_kbps: int = 0,
        download_kbps: int = 0,
    ) -> None: ...

    def deauthorize(self, mac_or_ip: str) -> None: ...

    def status(self) -> str: ...

    def list_clients(self) -> list[ClientInfo]: ...


class NDSCtl:
    """Runs ndsctl sub-commands with a bounded timeout."""

    def __init__(self, binary_path: str = "ndsctl", timeout_seconds: float = 10.0):
        self._binary_path = binary_path
        self._timeout = timeout_seconds

    def authorize(
        self,
        mac: str,
        session_minutes: int,
        upload_kbps: int = 0,
        download_kbps: int = 0,
    ) -> None:
        """Authorize a client.

        ``session_minutes`` of 0 means unlimited to openNDS, as do zero
        bandwidth limits.
        """
        # ndsctl auth mac sessiontimeout uploadrate downloadrate uploadquota downloadquota customstring
        self._run(
            "auth",
            mac,
            str(session_minutes),
            str(upload_kbps),
            str(download_kbps),
            "0",
            "0",
            "",
        )
        logger.debug("Authorized %s for %d minutes", mac, session_minutes)

    def deauthorize(self, mac_or_ip: str) -> None:
        self._run("deauth", mac_or_ip)
        logger.debug("Deauthorized %s", mac_or_ip)

    def status(self) -> str:
        return self._run("status")

    def list_clients(self) -> list[ClientInfo]:
        """Return all clients openNDS knows about."""
        output = self._run("json")
        try:
            data = json.loads(output) if output else []
        except json.JSONDecodeError as e:
            raise ControllerError("json", f"unparsable output: {e}") from e

        if isinstance(data, dict):
            data = data.get("clients", data)
        if isinstance(data, dict):
            # Keyed by MAC
            entries = [{"mac": mac, **(info or {})} for mac, info in data.items()]
        elif isinstance(data, list):
            entries = data
        else:
            raise ControllerError("json", "unexpected output shape")

        try:
            return [ClientInfo.model_validate(entry) for entry in entries]
        except ValidationError as e:
            raise ControllerError("json", f"unexpected client entry: {e}") from e

    def is_running(self) -> bool:
        try:
            self.status()
        except ControllerError:
            return False
        return True

    def _run(self, *args: str) -> str:
        command = args[0]
        try:
            result = subprocess.run(
                [self._binary_path, *args],
                capture_output=True,
                text=True,
                timeout=self._timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise ControllerError(command, f"timed out after {self._timeout:g}s") from e
        except OSError as e:
            raise ControllerError(command, str(e)) from e

        if result.returncode != 0:
            message = result.stderr.strip() or f"exit status {result.returncode}"
            raise ControllerError(command, message)
        return result.stdout.strip()
