"""Network option strings and DHCP lease discovery for kvm-install."""

from __future__ import annotations

import json
import time
from pathlib import Path
from typing import Callable, List, Optional
from xml.etree.ElementTree import ParseError, fromstring

from kvminstall import constants
from kvminstall.exceptions import ValidationError
from kvminstall.models import VMConfig
from kvminstall.utils import join_params, log


def build_network_params(cfg: VMConfig) -> str:
    """Render the ``--network`` value for virt-install."""
    return join_params(
        ",",
        [
            ("bridge", cfg.bridge),
            ("model", cfg.network_model),
            ("mac", cfg.mac_address),
        ],
    )


def lease_file_for(bridge: str) -> Path:
    return constants.LEASE_DIR / f"{bridge}.status"


def parse_domain_macs(xml: str) -> List[str]:
    """Return the MAC addresses of every interface in a domain definition."""
    try:
        root = fromstring(xml)
    except ParseError as exc:
        raise ValidationError(f"Could not parse domain XML: {exc}")
    macs = []
    for mac_el in root.findall("./devices/interface/mac"):
        address = mac_el.get("address")
        if address:
            macs.append(address.lower())
    return macs


def lookup_lease(mac: str, lease_file: Path) -> Optional[str]:
    """Return the newest IPv4 lease for ``mac`` from a dnsmasq status file."""
    try:
        raw = lease_file.read_text()
    except OSError:
        return None
    if not raw.strip():
        return None
    try:
        leases = json.loads(raw)
    except json.JSONDecodeError:
        # dnsmasq rewrites the file in place; a torn read just means "not yet".
        log("DEBUG", f"Lease file {lease_file} is not valid JSON yet")
        return None
    if not isinstance(leases, list):
        log("DEBUG", f"Lease file {lease_file} does not hold a lease list")
        return None
    matches = [
        entry
        for entry in leases
        if isinstance(entry, dict) and str(entry.get("mac-address", "")).lower() == mac.lower()
    ]
    if not matches:
        return None
    newest = max(matches, key=lambda entry: entry.get("expiry-time", 0))
    return newest.get("ip-address")


def wait_for_ip(
    mac: str,
    lease_file: Path,
    timeout: float,
    interval: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> Optional[str]:
    """Poll the lease table until ``mac`` shows up or ``timeout`` seconds pass."""
    deadline = clock() + timeout
    while True:
        ip = lookup_lease(mac, lease_file)
        if ip:
            return ip
        if clock() >= deadline:
            return None
        sleep(interval)
