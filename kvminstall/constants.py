"""Global constants and path configuration for kvm-install."""

from __future__ import annotations

import os
import re
from pathlib import Path

DISTROS_CATALOG_PATH = Path(__file__).with_name("distros.yaml")
USER_CONFIG_PATH = Path(os.environ.get("KIV_CONFIG", "~/.kivrc")).expanduser()

LIBVIRT_URI = os.environ.get("LIBVIRT_URI", "qemu:///system")
LEASE_DIR = Path("/var/lib/libvirt/dnsmasq")
TRUTHY = {"1", "true", "yes", "on"}
MAC_ADDRESS_RE = re.compile(r"^[0-9a-f]{2}(:[0-9a-f]{2}){5}$")
VM_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
DISK_TARGET_RE = re.compile(r"^(vd|sd|hd|xvd)[a-z]{1,2}$")

# Hardcoded defaults; ~/.kivrc and flags override these.
DEFAULTS = {
    "autostart": False,
    "bridge": "virbr0",
    "cpus": 1,
    "disk_size_gb": 10,
    "dns_domain": "example.local",
    "cpu_model": "host-passthrough",
    "graphics": "spice",
    "graphics_port": -1,
    "image_dir": "~/virt/images",
    "vm_dir": "~/virt/vms",
    "memory_mb": 1024,
    "mac_address": None,
    "network_model": "virtio",
    "ssh_public_key_path": "~/.ssh/id_rsa.pub",
    "distro": "debian10",
    "timezone": "US/Eastern",
    "login_user": None,
    "password": None,
    "ip_timeout": 120,
    "extra_args": [],
    "verbose": False,
}

AUTO_OS_VARIANT = "auto"
SUPPORTED_DISK_FORMATS = {"qcow2", "raw"}
SUPPORTED_NETWORK_MODELS = {"virtio", "e1000", "e1000e", "rtl8139"}
SUPPORTED_GRAPHICS = {"spice", "vnc", "none"}
SEED_ISO_TOOLS = ("genisoimage", "mkisofs")

SUDO_GROUPS = {
    "redhat": "wheel",
    "suse": "wheel",
    "arch": "wheel",
    "debian": "sudo",
    "generic": "wheel",
}

_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in TRUTHY

EXIT_OK = 0
EXIT_USAGE = 1
EXIT_FAILURE = 2

# virDomainState values, as printed by `virsh list`.
DOMAIN_STATES = {
    0: "no state",
    1: "running",
    2: "idle",
    3: "paused",
    4: "in shutdown",
    5: "shut off",
    6: "crashed",
    7: "pmsuspended",
}
