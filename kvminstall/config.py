"""Distribution catalog and configuration loading for kvm-install."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Mapping, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from kvminstall import constants
from kvminstall.constants import (
    AUTO_OS_VARIANT,
    DEFAULTS,
    DISK_TARGET_RE,
    MAC_ADDRESS_RE,
    SUPPORTED_DISK_FORMATS,
    SUPPORTED_GRAPHICS,
    SUPPORTED_NETWORK_MODELS,
    VM_NAME_RE,
)
from kvminstall.exceptions import UsageError, ValidationError
from kvminstall.models import AttachDiskConfig, DistroSpec, OverwritePolicy, VMConfig
from kvminstall.utils import log

_REQUIRED_DISTRO_FIELDS = ("base_url", "image", "os_variant", "user")


def load_distro_catalog(config_path: Optional[Path] = None) -> Dict[str, DistroSpec]:
    if config_path is None:
        config_path = constants.DISTROS_CATALOG_PATH
    if not config_path.exists():
        raise ValidationError(f"Distribution catalog missing: {config_path}")
    data = yaml.safe_load(config_path.read_text()) or {}
    catalog: Dict[str, DistroSpec] = {}
    for key, info in (data.get("distributions") or {}).items():
        missing = [name for name in _REQUIRED_DISTRO_FIELDS if not info.get(name)]
        if missing:
            raise ValidationError(f"Distribution '{key}' is missing {', '.join(missing)} in {config_path}")
        catalog[key] = DistroSpec(
            id=key,
            name=info.get("name", key),
            image_filename=info["image"],
            os_type=info.get("os_type", "linux"),
            os_variant=info["os_variant"],
            image_base_url=info["base_url"],
            disk_format=info.get("format", "qcow2"),
            default_login_user=info["user"],
            family=info.get("family", "generic"),
        )
    return catalog


def resolve_distro(distro: str, config_path: Optional[Path] = None) -> DistroSpec:
    catalog = load_distro_catalog(config_path)
    if distro not in catalog:
        available_list = "\n    ".join(sorted(catalog))
        raise ValidationError(
            f"Unknown distro '{distro}'.\n"
            f"  Available distributions:\n"
            f"    {available_list}\n"
            f"  Use 'kvm-install distros' to see details."
        )
    return catalog[distro]


def custom_image_spec(image_path: Path, disk_format: str = "qcow2") -> DistroSpec:
    """Describe a user-supplied image so it can stand in for a catalog entry.

    ``disk_format`` is what `qemu-img info` reports for the file.
    """
    return DistroSpec(
        id="custom",
        name=f"Custom image {image_path.name}",
        image_filename=image_path.name,
        os_type="linux",
        os_variant=AUTO_OS_VARIANT,
        image_base_url="",
        disk_format=disk_format,
        default_login_user="cloud-user",
        family="generic",
    )


def load_user_defaults(config_path: Optional[Path] = None) -> Dict[str, Any]:
    """Read the optional ~/.kivrc override file (a YAML mapping)."""
    if config_path is None:
        config_path = constants.USER_CONFIG_PATH
    if not config_path.exists():
        return {}
    try:
        data = yaml.safe_load(config_path.read_text())
    except yaml.YAMLError as exc:
        raise UsageError(f"{config_path} contains invalid YAML: {exc}")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise UsageError(f"{config_path} must contain a mapping, got {type(data).__name__}")
    unknown = sorted(set(data) - set(DEFAULTS))
    if unknown:
        raise UsageError(f"Unknown settings in {config_path}: {', '.join(unknown)}")
    log("DEBUG", f"Loaded defaults from {config_path}")
    return data


def merge_settings(flags: Mapping[str, Any], config_path: Optional[Path] = None) -> Dict[str, Any]:
    """Hardcoded defaults, then the user file, then flags that were actually given.

    The returned mapping carries an ``_overridden`` set naming every key that
    did not come from the hardcoded defaults.
    """
    settings = dict(DEFAULTS)
    user_defaults = load_user_defaults(config_path)
    given_flags = {key: value for key, value in flags.items() if value is not None}
    settings.update(user_defaults)
    settings.update(given_flags)
    settings["_overridden"] = set(user_defaults) | set(given_flags)
    return settings


def _positive_int(settings: Mapping[str, Any], key: str, label: str, min_val: int = 1) -> int:
    raw = settings.get(key)
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise UsageError(f"{label} must be an integer (got '{raw}')")
    if value < min_val:
        raise UsageError(f"{label} must be >= {min_val} (got {value})")
    return value


def validate_vm_name(name: Optional[str]) -> str:
    if not name:
        raise UsageError("A VM name is required")
    if not VM_NAME_RE.match(name):
        raise UsageError(f"Invalid VM name '{name}'. Use letters, digits, '.', '_' and '-'")
    return name


def _optional_path(raw: Any) -> Optional[Path]:
    if raw is None or raw == "":
        return None
    return Path(str(raw)).expanduser()


def build_vm_config(
    name: Optional[str],
    flags: Mapping[str, Any],
    config_path: Optional[Path] = None,
) -> VMConfig:
    settings = merge_settings(flags, config_path)
    vm_name = validate_vm_name(name)

    mac_raw = settings.get("mac_address")
    if mac_raw is not None and not isinstance(mac_raw, str):
        # YAML 1.1 reads an unquoted 52:54:00:... as a base-60 integer.
        raise UsageError(
            f"mac_address must be a string; quote it in {constants.USER_CONFIG_PATH}, "
            f"e.g. mac_address: \"52:54:00:12:34:56\""
        )
    mac_address = str(mac_raw).strip().lower() if mac_raw else None
    if mac_address and not MAC_ADDRESS_RE.match(mac_address):
        raise UsageError(f"Invalid MAC address '{mac_raw}'. Use format aa:bb:cc:dd:ee:ff")

    graphics = str(settings["graphics"]).strip().lower()
    if graphics not in SUPPORTED_GRAPHICS:
        raise UsageError(f"Unsupported graphics '{graphics}'. Supported: {', '.join(sorted(SUPPORTED_GRAPHICS))}")

    network_model = str(settings["network_model"]).strip().lower()
    if network_model not in SUPPORTED_NETWORK_MODELS:
        supported_models = ", ".join(sorted(SUPPORTED_NETWORK_MODELS))
        raise UsageError(f"Unsupported network model '{network_model}'. Supported: {supported_models}")

    try:
        graphics_port = int(settings["graphics_port"])
    except (TypeError, ValueError):
        raise UsageError(f"Graphics port must be an integer (got '{settings['graphics_port']}')")
    if graphics_port != -1 and not (1 <= graphics_port <= 65535):
        raise UsageError(f"Graphics port must be -1 or 1-65535 (got {graphics_port})")

    extra_args = settings.get("extra_args") or []
    if isinstance(extra_args, str):
        extra_args = [extra_args]

    return VMConfig(
        name=vm_name,
        cpus=_positive_int(settings, "cpus", "vCPU count"),
        memory_mb=_positive_int(settings, "memory_mb", "Memory (MB)"),
        disk_size_gb=_positive_int(settings, "disk_size_gb", "Disk size (GB)"),
        bridge=str(settings["bridge"]),
        ssh_public_key_path=Path(str(settings["ssh_public_key_path"])).expanduser(),
        distro=str(settings["distro"]),
        dns_domain=str(settings["dns_domain"] or ""),
        image_dir=Path(str(settings["image_dir"])).expanduser(),
        vm_dir=Path(str(settings["vm_dir"])).expanduser(),
        autostart=bool(settings["autostart"]),
        mac_address=mac_address,
        custom_image_path=_optional_path(settings.get("custom_image_path")),
        custom_script_path=_optional_path(settings.get("custom_script_path")),
        login_user=settings.get("login_user") or None,
        password=settings.get("password") or None,
        timezone=str(settings["timezone"]),
        cpu_model=str(settings["cpu_model"]),
        graphics=graphics,
        graphics_port=graphics_port,
        network_model=network_model,
        ip_timeout=_positive_int(settings, "ip_timeout", "IP wait timeout", min_val=0),
        overwrite=OverwritePolicy.from_flags(
            bool(settings.get("assume_yes")), bool(settings.get("assume_no"))
        ),
        verbose=bool(settings["verbose"]),
        extra_args=[str(arg) for arg in extra_args],
        disk_size_explicit="disk_size_gb" in settings["_overridden"],
    )


def build_attach_config(
    name: Optional[str],
    flags: Mapping[str, Any],
    config_path: Optional[Path] = None,
) -> AttachDiskConfig:
    settings = merge_settings(flags, config_path)
    vm_name = validate_vm_name(name)

    target = settings.get("target")
    if not target:
        raise UsageError("attach-disk requires a target device (-t), e.g. vdb")
    if not DISK_TARGET_RE.match(target):
        raise UsageError(f"Invalid target device '{target}'. Expected something like vdb or sdc")
    if settings.get("disk_size") is None:
        raise UsageError("attach-disk requires a disk size in GB (-d)")
    disk_size = _positive_int(settings, "disk_size", "Disk size (GB)")

    disk_format = str(settings.get("disk_format") or "qcow2").lower()
    if disk_format not in SUPPORTED_DISK_FORMATS:
        raise UsageError(f"Unsupported disk format '{disk_format}'. Supported: {', '.join(sorted(SUPPORTED_DISK_FORMATS))}")

    return AttachDiskConfig(
        vm_name=vm_name,
        target=target,
        disk_size_gb=disk_size,
        vm_dir=Path(str(settings["vm_dir"])).expanduser(),
        disk_format=disk_format,
        source=_optional_path(settings.get("source")),
        verbose=bool(settings["verbose"]),
    )
