"""Shared test fixtures for kvm-install."""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional

import pytest

from kvminstall.models import DistroSpec, DomainInfo, OverwritePolicy, VMConfig
from kvminstall.utils import configure_logging


class FakeHypervisor:
    """In-memory stand-in for kvminstall.hypervisor.Hypervisor."""

    uri = "qemu:///system"

    def __init__(self, domains: Optional[Dict[str, str]] = None, pools: Optional[List[str]] = None) -> None:
        # name -> MAC address
        self.domains: Dict[str, str] = dict(domains or {})
        self.pools = set(pools or [])
        self.calls: List[tuple] = []
        self.attached: List[tuple] = []
        self.autostart: set = set()
        self.attach_error: Optional[Exception] = None

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return None

    def domain_exists(self, name):
        return name in self.domains

    def pool_exists(self, name):
        return name in self.pools

    def create_pool(self, name, target):
        self.calls.append(("create_pool", name, Path(target)))
        self.pools.add(name)

    def destroy_pool(self, name):
        self.calls.append(("destroy_pool", name))
        if name not in self.pools:
            return False
        self.pools.discard(name)
        return True

    def create_domain(self, cmd):
        self.calls.append(("create_domain", list(cmd)))
        name = cmd[cmd.index("--name") + 1]
        self.domains[name] = "52:54:00:12:34:56"

    def destroy_domain(self, name):
        self.calls.append(("destroy_domain", name))
        return self.domains.pop(name, None) is not None

    def set_autostart(self, name):
        self.autostart.add(name)

    def eject_media(self, name, source):
        self.calls.append(("eject_media", name, Path(source)))
        return True

    def domain_mac(self, name):
        return self.domains.get(name)

    def attach_disk(self, name, source, target, disk_format):
        if self.attach_error is not None:
            raise self.attach_error
        self.attached.append((name, Path(source), target, disk_format))

    def list_domains(self):
        return [DomainInfo(id=None, name=name, state="shut off") for name in sorted(self.domains)]

    def call_names(self):
        return [call[0] for call in self.calls]


@pytest.fixture(autouse=True)
def reset_logging():
    configure_logging(verbose=False, log_file=None)
    yield
    configure_logging(verbose=False, log_file=None)


@pytest.fixture
def fake_hv() -> FakeHypervisor:
    return FakeHypervisor()


@pytest.fixture
def ssh_key_file(tmp_path) -> Path:
    key = tmp_path / "id_rsa.pub"
    key.write_text("ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAITEST user@host\n")
    return key


@pytest.fixture
def debian_spec() -> DistroSpec:
    return DistroSpec(
        id="debian10",
        name="Debian 10 (buster)",
        image_filename="debian-10-generic-amd64.qcow2",
        os_type="linux",
        os_variant="debian10",
        image_base_url="https://example.com/images",
        disk_format="qcow2",
        default_login_user="debian",
        family="debian",
    )


@pytest.fixture
def default_vm_config(tmp_path, ssh_key_file) -> VMConfig:
    """Return a VMConfig with the stock defaults rooted in tmp_path."""
    return VMConfig(
        name="myvm",
        cpus=1,
        memory_mb=1024,
        disk_size_gb=10,
        bridge="virbr0",
        ssh_public_key_path=ssh_key_file,
        distro="debian10",
        dns_domain="example.local",
        image_dir=tmp_path / "images",
        vm_dir=tmp_path / "vms",
        overwrite=OverwritePolicy.PROMPT,
        disk_size_explicit=False,
    )


@pytest.fixture(autouse=True)
def user_config(tmp_path, monkeypatch):
    """Point the ~/.kivrc lookup at a file under tmp_path (absent until written)."""
    import kvminstall.constants as constants

    path = tmp_path / "kivrc"
    monkeypatch.setattr(constants, "USER_CONFIG_PATH", path)
    return path
