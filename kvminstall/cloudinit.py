"""cloud-init seed documents and seed ISO creation for kvm-install."""

from __future__ import annotations

import textwrap
from email.charset import QP, Charset
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from pathlib import Path
from typing import Dict, List, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from kvminstall.constants import SEED_ISO_TOOLS, SUDO_GROUPS
from kvminstall.exceptions import ValidationError
from kvminstall.models import DistroSpec, VMConfig
from kvminstall.utils import hash_password, log, run, which

NETWORK_RESTART = {
    "debian": "systemctl restart networking || systemctl restart systemd-networkd",
    "redhat": "systemctl restart NetworkManager || systemctl restart network",
    "suse": "systemctl restart wicked || systemctl restart NetworkManager",
    "arch": "systemctl restart systemd-networkd",
    "generic": "systemctl restart NetworkManager || systemctl restart systemd-networkd || true",
}

CLOUD_INIT_DISABLE = {
    "redhat": "yum -y remove cloud-init || dnf -y remove cloud-init",
    "generic": "touch /etc/cloud/cloud-init.disabled",
}


def _charset_for(content: str):
    """Keep seed parts human-readable: plain 7bit for ASCII, quoted-printable otherwise."""
    if content.isascii():
        return "us-ascii"
    charset = Charset("utf-8")
    charset.body_encoding = QP
    return charset


def login_user_for(cfg: VMConfig, spec: DistroSpec) -> str:
    return cfg.login_user or spec.default_login_user


def build_cloud_config(cfg: VMConfig, spec: DistroSpec, ssh_key: str) -> Dict[str, object]:
    family = spec.family if spec.family in NETWORK_RESTART else "generic"
    user: Dict[str, object] = {
        "name": login_user_for(cfg, spec),
        "groups": [SUDO_GROUPS.get(family, "wheel")],
        "shell": "/bin/bash",
        "sudo": "ALL=(ALL) NOPASSWD:ALL",
        "ssh_authorized_keys": [ssh_key],
    }
    if cfg.password:
        user["lock_passwd"] = False
        user["passwd"] = hash_password(cfg.password)

    cloud_cfg: Dict[str, object] = {
        "preserve_hostname": False,
        "hostname": cfg.name,
        "fqdn": cfg.fqdn,
        "users": ["default", user],
        "output": {"all": ">> /var/log/cloud-init.log"},
        "ssh_genkeytypes": ["ed25519", "rsa"],
        "ssh_authorized_keys": [ssh_key],
        "timezone": cfg.timezone,
        "runcmd": [
            ["sh", "-c", NETWORK_RESTART[family]],
            ["sh", "-c", CLOUD_INIT_DISABLE.get(family, CLOUD_INIT_DISABLE["generic"])],
        ],
    }
    if cfg.password:
        cloud_cfg["ssh_pwauth"] = True
        cloud_cfg["chpasswd"] = {"expire": False}
    return cloud_cfg


def _read_script(path: Path) -> str:
    try:
        script = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ValidationError(f"Cannot read custom script {path}: {exc}")
    if not script.startswith("#!"):
        script = "#!/bin/bash\n" + script
    return script


def render_user_data(cfg: VMConfig, spec: DistroSpec, ssh_key: str) -> str:
    """Build the multipart user-data: cloud-config first, then the optional script."""
    cloud_cfg = build_cloud_config(cfg, spec, ssh_key)
    parts = [
        (
            "cloud-config",
            "cloud-config.yaml",
            "#cloud-config\n" + yaml.safe_dump(cloud_cfg, sort_keys=False, default_flow_style=False),
        )
    ]
    if cfg.custom_script_path is not None:
        log("INFO", f"Embedding custom script {cfg.custom_script_path}")
        parts.append(("x-shellscript", cfg.custom_script_path.name, _read_script(cfg.custom_script_path)))

    message = MIMEMultipart()
    for subtype, filename, content in parts:
        sub_message = MIMEText(content, subtype, _charset_for(content))
        sub_message.add_header("Content-Disposition", "attachment", filename=filename)
        message.attach(sub_message)
    return message.as_string()


def render_meta_data(cfg: VMConfig) -> str:
    return (
        textwrap.dedent(
            f"""
        instance-id: {cfg.name}
        local-hostname: {cfg.name}
        """
        ).strip()
        + "\n"
    )


def write_seed_files(cfg: VMConfig, spec: DistroSpec, ssh_key: str) -> List[Path]:
    log("INFO", "Generating cloud-init seed data")
    cfg.user_data_path.write_text(render_user_data(cfg, spec, ssh_key), encoding="utf-8")
    cfg.meta_data_path.write_text(render_meta_data(cfg), encoding="utf-8")
    return [cfg.user_data_path, cfg.meta_data_path]


def find_iso_tool() -> Optional[str]:
    for tool in SEED_ISO_TOOLS:
        if which(tool):
            return tool
    return None


def create_seed_iso(cfg: VMConfig) -> Path:
    tool = find_iso_tool()
    if tool is None:
        raise ValidationError(f"None of {', '.join(SEED_ISO_TOOLS)} is installed; cannot build the seed ISO")
    log("INFO", f"Creating seed ISO {cfg.seed_iso_path} with {tool}")
    cmd = [
        tool,
        "-output",
        str(cfg.seed_iso_path),
        "-volid",
        "cidata",
        "-joliet",
        "-rock",
        str(cfg.user_data_path),
        str(cfg.meta_data_path),
    ]
    run(cmd, step="Seed ISO creation")
    return cfg.seed_iso_path
