"""kvm-install package."""

__all__ = [
    "cli",
    "cloudinit",
    "config",
    "constants",
    "devices",
    "exceptions",
    "hypervisor",
    "images",
    "install",
    "models",
    "network",
    "utils",
    "vm",
]
