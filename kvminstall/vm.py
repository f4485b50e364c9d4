"""VM provisioning and lifecycle management for kvm-install."""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Tuple

from kvminstall.cloudinit import create_seed_iso, login_user_for, write_seed_files
from kvminstall.config import custom_image_spec, resolve_distro
from kvminstall.constants import AUTO_OS_VARIANT
from kvminstall.exceptions import ValidationError
from kvminstall.images import create_blank_disk, create_overlay_disk, ensure_image, image_format, resize_disk
from kvminstall.install import build_install_command
from kvminstall.models import AttachDiskConfig, DistroSpec, OverwritePolicy, VMConfig
from kvminstall.network import lease_file_for, wait_for_ip
from kvminstall.utils import confirm, configure_logging, ensure_directory, log, remove_path, run, which


class VMManager:
    """Create, remove and extend domains through a :class:`~kvminstall.hypervisor.Hypervisor`."""

    def __init__(self, hypervisor, catalog_path: Optional[Path] = None) -> None:
        self.hv = hypervisor
        self.catalog_path = catalog_path

    # -- create ---------------------------------------------------------

    def create(self, cfg: VMConfig) -> Optional[str]:
        """Provision ``cfg.name`` and return its IP address if one was found."""
        ssh_key = self._read_ssh_key(cfg)
        spec = self._resolve_image_spec(cfg)
        self._check_os_variant(spec)
        self._resolve_conflict(cfg)

        ensure_directory(cfg.work_dir)
        configure_logging(cfg.verbose, cfg.log_path)
        log("INFO", f"Creating {cfg.name} from {spec.name} | Memory: {cfg.memory_mb} MiB | CPUs: {cfg.cpus}")

        if cfg.custom_image_path is not None:
            base_image = cfg.custom_image_path
        else:
            base_image = ensure_image(spec, cfg.image_dir)

        write_seed_files(cfg, spec, ssh_key)
        create_overlay_disk(base_image, cfg.disk_path, spec.disk_format)
        resize_disk(cfg.disk_path, cfg.disk_size_gb, strict=cfg.disk_size_explicit)
        create_seed_iso(cfg)

        self.hv.create_pool(cfg.name, cfg.work_dir)
        log("INFO", f"Installing domain {cfg.name}")
        self.hv.create_domain(build_install_command(cfg, spec, self.hv.uri))
        log("SUCCESS", f"Defined domain {cfg.name}")

        if cfg.autostart:
            self.hv.set_autostart(cfg.name)
            log("INFO", f"Enabled autostart for {cfg.name}")
        self._cleanup_seed(cfg)

        mac, ip = self.discover_ip(cfg)
        self._report(cfg, spec, mac, ip)
        return ip

    def _read_ssh_key(self, cfg: VMConfig) -> str:
        path = cfg.ssh_public_key_path
        try:
            key = path.read_text(encoding="utf-8").strip()
        except OSError as exc:
            raise ValidationError(f"SSH public key {path} is not readable: {exc.strerror or exc}")
        if not key:
            raise ValidationError(f"SSH public key {path} is empty")
        return key

    def _resolve_image_spec(self, cfg: VMConfig) -> DistroSpec:
        if cfg.custom_image_path is None:
            return resolve_distro(cfg.distro, self.catalog_path)
        if not cfg.custom_image_path.is_file():
            raise ValidationError(f"Custom image not found: {cfg.custom_image_path}")
        return custom_image_spec(cfg.custom_image_path, image_format(cfg.custom_image_path))

    def _check_os_variant(self, spec: DistroSpec) -> None:
        if spec.os_variant == AUTO_OS_VARIANT:
            return
        result = run(
            ["osinfo-query", "os", f"short-id={spec.os_variant}"],
            step="OS variant check",
            capture=True,
        )
        known = {line.split("|", 1)[0].strip() for line in result.stdout.splitlines() if "|" in line}
        if spec.os_variant not in known:
            raise ValidationError(
                f"OS variant '{spec.os_variant}' is unknown to osinfo-query; update osinfo-db or pick another distro"
            )

    def _resolve_conflict(self, cfg: VMConfig) -> None:
        if not self.hv.domain_exists(cfg.name):
            return
        if cfg.overwrite is OverwritePolicy.ASSUME_NO:
            raise ValidationError(f"{cfg.name} already exists; not overwriting it (-n)")
        if cfg.overwrite is OverwritePolicy.PROMPT:
            log("WARN", f"{cfg.name} already exists.")
            if not confirm(f"Do you want to overwrite {cfg.name}"):
                raise ValidationError(f"{cfg.name} already exists; not overwriting it")
        self.remove(cfg.name, cfg.vm_dir)

    def _cleanup_seed(self, cfg: VMConfig) -> None:
        if self.hv.eject_media(cfg.name, cfg.seed_iso_path):
            log("INFO", "Ejected seed ISO from the persistent configuration")
        else:
            log("WARN", f"Seed ISO not attached to {cfg.name}; nothing to eject")
        for path in (cfg.user_data_path, cfg.meta_data_path, cfg.seed_iso_path):
            path.unlink(missing_ok=True)
        log("DEBUG", "Removed cloud-init seed files")

    def discover_ip(self, cfg: VMConfig) -> Tuple[Optional[str], Optional[str]]:
        mac = self.hv.domain_mac(cfg.name)
        if not mac:
            log("WARN", f"{cfg.name} has no network interface")
            return None, None
        lease_file = lease_file_for(cfg.bridge)
        if not lease_file.exists():
            log("DEBUG", f"No lease table at {lease_file}; {cfg.bridge} is not managed by libvirt")
            return mac, None
        log("INFO", f"Waiting up to {cfg.ip_timeout}s for {cfg.name} ({mac}) to get an address...")
        ip = wait_for_ip(mac, lease_file, cfg.ip_timeout)
        if ip:
            self._forget_known_host(ip)
        return mac, ip

    def _forget_known_host(self, ip: str) -> None:
        known_hosts = Path("~/.ssh/known_hosts").expanduser()
        if not known_hosts.exists() or not which("ssh-keygen"):
            return
        result = run(["ssh-keygen", "-R", ip], step="known_hosts cleanup", check=False, capture=True)
        if result.returncode != 0:
            log("WARN", f"Could not remove {ip} from {known_hosts}")

    def _report(self, cfg: VMConfig, spec: DistroSpec, mac: Optional[str], ip: Optional[str]) -> None:
        user = login_user_for(cfg, spec)
        if ip:
            log("SUCCESS", f"{cfg.name} is up at {ip}")
            log("INFO", f"SSH to {cfg.name}: 'ssh {user}@{ip}' or 'ssh {user}@{cfg.fqdn}'")
            return
        log("WARN", f"Could not determine the IP address of {cfg.name}")
        log(
            "INFO",
            f"Consult your DHCP server for the lease of MAC {mac or 'unknown'} "
            f"on bridge {cfg.bridge}, then 'ssh {user}@<ip>'",
        )

    # -- remove ---------------------------------------------------------

    def remove(self, name: str, vm_dir: Path) -> None:
        if self.hv.destroy_domain(name):
            log("SUCCESS", f"Destroyed and undefined domain {name}")
        else:
            log("INFO", f"Domain {name} does not exist")

        work_dir = vm_dir / name
        if remove_path(work_dir):
            log("INFO", f"Deleted VM files in {work_dir}")
        else:
            log("INFO", f"No VM files at {work_dir}")

        if self.hv.destroy_pool(name):
            log("INFO", f"Destroyed storage pool {name}")
        else:
            log("INFO", f"Storage pool {name} does not exist")

    # -- attach-disk ----------------------------------------------------

    def attach_disk(self, acfg: AttachDiskConfig) -> Path:
        if not self.hv.domain_exists(acfg.vm_name):
            raise ValidationError(f"Domain {acfg.vm_name} does not exist")
        disk_path = acfg.disk_path
        if disk_path.exists():
            raise ValidationError(f"{disk_path} already exists; refusing to overwrite it")

        work_dir = acfg.vm_dir / acfg.vm_name
        if work_dir.is_dir():
            configure_logging(acfg.verbose, work_dir / f"{acfg.vm_name}.log")
        ensure_directory(disk_path.parent)
        create_blank_disk(disk_path, acfg.disk_size_gb, acfg.disk_format)
        try:
            self.hv.attach_disk(acfg.vm_name, disk_path, acfg.target, acfg.disk_format)
        except Exception:
            disk_path.unlink(missing_ok=True)
            raise
        log("SUCCESS", f"Attached {disk_path} to {acfg.vm_name} as {acfg.target}")
        return disk_path

    # -- list -----------------------------------------------------------

    def list_domains(self):
        return self.hv.list_domains()
