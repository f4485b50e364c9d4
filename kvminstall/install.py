"""virt-install command assembly for kvm-install."""

from __future__ import annotations

import shlex
from typing import List

from kvminstall.constants import AUTO_OS_VARIANT
from kvminstall.models import DistroSpec, VMConfig
from kvminstall.network import build_network_params
from kvminstall.utils import join_params


def build_disk_params(cfg: VMConfig) -> str:
    return join_params(",", [("path", cfg.disk_path), ("format", "qcow2"), ("bus", "virtio")])


def build_seed_disk_params(cfg: VMConfig) -> str:
    return join_params(",", [("path", cfg.seed_iso_path), ("device", "cdrom")])


def build_graphics_params(cfg: VMConfig) -> str:
    if cfg.graphics == "none":
        return "none"
    port = cfg.graphics_port if cfg.graphics_port != -1 else None
    return join_params(",", [cfg.graphics, ("port", port)])


def build_os_variant_param(spec: DistroSpec) -> str:
    if spec.os_variant == AUTO_OS_VARIANT:
        return "detect=on,require=off"
    return spec.os_variant


def build_install_command(cfg: VMConfig, spec: DistroSpec, uri: str) -> List[str]:
    cmd = [
        "virt-install",
        "--connect",
        uri,
        "--import",
        "--name",
        cfg.name,
        "--memory",
        str(cfg.memory_mb),
        "--vcpus",
        str(cfg.cpus),
        "--cpu",
        cfg.cpu_model,
    ]
    options = [
        ("--disk", build_disk_params(cfg)),
        ("--disk", build_seed_disk_params(cfg)),
        ("--network", build_network_params(cfg)),
        ("--graphics", build_graphics_params(cfg)),
        ("--os-variant", build_os_variant_param(spec)),
    ]
    for flag, value in options:
        if value:
            cmd.extend([flag, value])
    cmd.append("--noautoconsole")
    for extra in cfg.extra_args:
        cmd.extend(shlex.split(extra))
    return cmd
