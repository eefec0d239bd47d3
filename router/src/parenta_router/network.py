"""Neighbor table lookups."""

import logging
import subprocess
from pathlib import Path

from parenta_shared import normalize_mac

logger = logging.getLogger(__name__)

ARP_TABLE = Path("/proc/net/arp")


def lookup_mac(ip: str, timeout_seconds: float = 2.0, arp_table: Path = ARP_TABLE) -> str | None:
    """Get the MAC address for an IP from the neighbor table.

    Tries ``ip neigh`` first, then the kernel ARP table. Returns None when
    the address is unknown.
    """
    if not ip:
        return None

    try:
        result = subprocess.run(
            ["ip", "neigh", "show", ip],
            capture_output=True,
            text=True,
            timeout=timeout_seconds,
            check=False,
        )
        # 192.168.2.10 dev br-guest lladdr aa:bb:cc:dd:ee:ff REACHABLE
        parts = result.stdout.split()
        if "lladdr" in parts:
            mac = normalize_mac(parts[parts.index("lladdr") + 1])
            if mac:
                return mac
    except (OSError, subprocess.TimeoutExpired, IndexError):
        logger.debug("ip neigh lookup failed for %s", ip)

    try:
        with open(arp_table, encoding="utf-8") as f:
            next(f, None)  # header
            for line in f:
                parts = line.split()
                if len(parts) >= 4 and parts[0] == ip:
                    mac = normalize_mac(parts[3])
                    if mac and mac != "00:00:00:00:00:00":
                        return mac
    except OSError:
        logger.debug("ARP table not readable at %s", arp_table)

    return None
