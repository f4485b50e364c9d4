"""libvirt access for kvm-install.

Everything the workflows need from the hypervisor goes through
:class:`Hypervisor`: existence checks, pools, domain creation and teardown,
disk attachment and domain queries. Domain creation is delegated to
virt-install so that osinfo-db picks the device models.
"""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional

try:
    import libvirt  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit(f"libvirt python bindings not available: {exc}")

from kvminstall.constants import DOMAIN_STATES, LIBVIRT_URI
from kvminstall.devices import find_cdrom, render_disk_xml, render_ejected_cdrom_xml, render_pool_xml
from kvminstall.exceptions import ExternalToolError, ManagerError
from kvminstall.models import DomainInfo
from kvminstall.network import parse_domain_macs
from kvminstall.utils import log, run


def _error_message(exc: "libvirt.libvirtError") -> str:
    return exc.get_error_message() if hasattr(exc, "get_error_message") else str(exc)


class Hypervisor:
    """Thin wrapper around a libvirt connection."""

    def __init__(self, uri: str = LIBVIRT_URI) -> None:
        self.uri = uri
        self.conn: Optional[libvirt.virConnect] = None

    def connect(self) -> None:
        try:
            self.conn = libvirt.open(self.uri)
        except libvirt.libvirtError as exc:
            raise ExternalToolError("Hypervisor connection", f"{self.uri}: {_error_message(exc)}") from exc
        if self.conn is None:
            raise ExternalToolError("Hypervisor connection", f"Failed to open libvirt connection to {self.uri}")

    def close(self) -> None:
        if self.conn is not None:
            self.conn.close()
            self.conn = None

    def __enter__(self) -> "Hypervisor":
        self.connect()
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _connection(self) -> "libvirt.virConnect":
        if self.conn is None:
            raise ManagerError("libvirt connection not established")
        return self.conn

    def _lookup_domain(self, name: str) -> Optional["libvirt.virDomain"]:
        try:
            return self._connection().lookupByName(name)
        except libvirt.libvirtError as exc:
            if exc.get_error_code() == libvirt.VIR_ERR_NO_DOMAIN:
                return None
            raise ExternalToolError("Domain lookup", f"{name}: {_error_message(exc)}") from exc

    def _require_domain(self, name: str) -> "libvirt.virDomain":
        domain = self._lookup_domain(name)
        if domain is None:
            raise ExternalToolError("Domain lookup", f"domain '{name}' does not exist")
        return domain

    def _lookup_pool(self, name: str) -> Optional["libvirt.virStoragePool"]:
        try:
            return self._connection().storagePoolLookupByName(name)
        except libvirt.libvirtError as exc:
            if exc.get_error_code() == libvirt.VIR_ERR_NO_STORAGE_POOL:
                return None
            raise ExternalToolError("Storage pool lookup", f"{name}: {_error_message(exc)}") from exc

    def domain_exists(self, name: str) -> bool:
        return self._lookup_domain(name) is not None

    def pool_exists(self, name: str) -> bool:
        return self._lookup_pool(name) is not None

    def create_pool(self, name: str, target: Path) -> None:
        """Start a transient directory pool; it vanishes with the next pool destroy."""
        try:
            self._connection().storagePoolCreateXML(render_pool_xml(name, target), 0)
        except libvirt.libvirtError as exc:
            raise ExternalToolError("Storage pool creation", f"{name}: {_error_message(exc)}") from exc
        log("SUCCESS", f"Created storage pool {name} at {target}")

    def destroy_pool(self, name: str) -> bool:
        pool = self._lookup_pool(name)
        if pool is None:
            return False
        try:
            if pool.isActive():
                pool.destroy()
            if pool.isPersistent():
                pool.undefine()
        except libvirt.libvirtError as exc:
            raise ExternalToolError("Storage pool removal", f"{name}: {_error_message(exc)}") from exc
        return True

    def create_domain(self, cmd: List[str]) -> None:
        run(cmd, step="Domain creation")

    def destroy_domain(self, name: str) -> bool:
        """Stop and undefine ``name``. Returns False when there was nothing to remove."""
        domain = self._lookup_domain(name)
        if domain is None:
            return False
        if domain.isActive():
            try:
                domain.destroyFlags(libvirt.VIR_DOMAIN_DESTROY_GRACEFUL)
            except libvirt.libvirtError:
                log("DEBUG", f"Graceful stop of {name} failed; forcing it off")
                try:
                    domain.destroy()
                except libvirt.libvirtError as exc:
                    raise ExternalToolError("Domain stop", f"{name}: {_error_message(exc)}") from exc
        flags = (
            libvirt.VIR_DOMAIN_UNDEFINE_MANAGED_SAVE
            | libvirt.VIR_DOMAIN_UNDEFINE_SNAPSHOTS_METADATA
            | libvirt.VIR_DOMAIN_UNDEFINE_NVRAM
        )
        try:
            domain.undefineFlags(flags)
        except libvirt.libvirtError as exc:
            raise ExternalToolError("Domain undefine", f"{name}: {_error_message(exc)}") from exc
        return True

    def set_autostart(self, name: str) -> None:
        try:
            self._require_domain(name).setAutostart(1)
        except libvirt.libvirtError as exc:
            raise ExternalToolError("Autostart", f"{name}: {_error_message(exc)}") from exc

    def domain_xml(self, name: str, inactive: bool = False) -> str:
        flags = libvirt.VIR_DOMAIN_XML_INACTIVE if inactive else 0
        try:
            return self._require_domain(name).XMLDesc(flags)
        except libvirt.libvirtError as exc:
            raise ExternalToolError("Domain query", f"{name}: {_error_message(exc)}") from exc

    def domain_mac(self, name: str) -> Optional[str]:
        macs = parse_domain_macs(self.domain_xml(name))
        return macs[0] if macs else None

    def eject_media(self, name: str, source: Path) -> bool:
        """Remove ``source`` from the domain's persistent CD-ROM drive."""
        cdrom = find_cdrom(self.domain_xml(name, inactive=True), source)
        if cdrom is None:
            return False
        try:
            self._require_domain(name).updateDeviceFlags(
                render_ejected_cdrom_xml(cdrom), libvirt.VIR_DOMAIN_AFFECT_CONFIG
            )
        except libvirt.libvirtError as exc:
            raise ExternalToolError("Seed ISO eject", f"{name}: {_error_message(exc)}") from exc
        return True

    def attach_disk(self, name: str, source: Path, target: str, disk_format: str) -> None:
        domain = self._require_domain(name)
        flags = libvirt.VIR_DOMAIN_AFFECT_CONFIG
        try:
            if domain.isActive():
                flags |= libvirt.VIR_DOMAIN_AFFECT_LIVE
            domain.attachDeviceFlags(render_disk_xml(source, target, disk_format), flags)
        except libvirt.libvirtError as exc:
            raise ExternalToolError("Disk attach", f"{name}: {_error_message(exc)}") from exc

    def list_domains(self) -> List[DomainInfo]:
        try:
            domains = self._connection().listAllDomains(0)
        except libvirt.libvirtError as exc:
            raise ExternalToolError("Domain listing", _error_message(exc)) from exc
        result = []
        for domain in domains:
            state_code = domain.state()[0]
            dom_id = domain.ID() if domain.isActive() else None
            result.append(DomainInfo(id=dom_id, name=domain.name(), state=DOMAIN_STATES.get(state_code, "unknown")))
        return sorted(result, key=lambda info: (info.id is None, info.id or 0, info.name))
