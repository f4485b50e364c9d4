"""Data models for kvm-install."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, NamedTuple, Optional

from kvminstall.exceptions import UsageError


class OverwritePolicy(Enum):
    """What to do when the requested domain already exists."""

    PROMPT = "prompt"
    ASSUME_YES = "yes"
    ASSUME_NO = "no"

    @classmethod
    def from_flags(cls, assume_yes: bool, assume_no: bool) -> "OverwritePolicy":
        if assume_yes and assume_no:
            raise UsageError("-y and -n are mutually exclusive")
        if assume_yes:
            return cls.ASSUME_YES
        if assume_no:
            return cls.ASSUME_NO
        return cls.PROMPT


@dataclass(frozen=True)
class DistroSpec:
    id: str
    name: str
    image_filename: str
    os_type: str
    os_variant: str
    image_base_url: str
    disk_format: str
    default_login_user: str
    family: str = "generic"

    @property
    def image_url(self) -> str:
        if not self.image_base_url:
            return ""
        return f"{self.image_base_url.rstrip('/')}/{self.image_filename}"


class DomainInfo(NamedTuple):
    id: Optional[int]
    name: str
    state: str


@dataclass
class VMConfig:
    name: str
    cpus: int
    memory_mb: int
    disk_size_gb: int
    bridge: str
    ssh_public_key_path: Path
    distro: str
    dns_domain: str
    image_dir: Path
    vm_dir: Path
    autostart: bool = False
    mac_address: Optional[str] = None
    custom_image_path: Optional[Path] = None
    custom_script_path: Optional[Path] = None
    login_user: Optional[str] = None
    password: Optional[str] = None
    timezone: str = "US/Eastern"
    cpu_model: str = "host-passthrough"
    graphics: str = "spice"
    graphics_port: int = -1
    network_model: str = "virtio"
    ip_timeout: int = 120
    overwrite: OverwritePolicy = OverwritePolicy.PROMPT
    verbose: bool = False
    extra_args: List[str] = field(default_factory=list)
    # False when disk_size_gb is only the built-in default.
    disk_size_explicit: bool = True

    @property
    def work_dir(self) -> Path:
        return self.vm_dir / self.name

    @property
    def disk_path(self) -> Path:
        return self.work_dir / f"{self.name}.qcow2"

    @property
    def seed_iso_path(self) -> Path:
        return self.work_dir / f"{self.name}-cidata.iso"

    @property
    def user_data_path(self) -> Path:
        return self.work_dir / "user-data"

    @property
    def meta_data_path(self) -> Path:
        return self.work_dir / "meta-data"

    @property
    def log_path(self) -> Path:
        return self.work_dir / f"{self.name}.log"

    @property
    def fqdn(self) -> str:
        if self.dns_domain:
            return f"{self.name}.{self.dns_domain}"
        return self.name


@dataclass
class AttachDiskConfig:
    vm_name: str
    target: str
    disk_size_gb: int
    vm_dir: Path
    disk_format: str = "qcow2"
    source: Optional[Path] = None
    verbose: bool = False

    @property
    def disk_path(self) -> Path:
        if self.source is not None:
            return self.source
        filename = f"{self.vm_name}-{self.target}-{self.disk_size_gb}G.{self.disk_format}"
        return self.vm_dir / self.vm_name / filename
