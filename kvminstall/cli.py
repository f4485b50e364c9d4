"""CLI entry points for kvm-install."""

from __future__ import annotations

import argparse
import sys
import textwrap
from pathlib import Path
from typing import Dict, List, Optional

from kvminstall.config import (
    build_attach_config,
    build_vm_config,
    load_distro_catalog,
    merge_settings,
    validate_vm_name,
)
from kvminstall.constants import DEFAULTS, EXIT_FAILURE, EXIT_OK, LIBVIRT_URI
from kvminstall.exceptions import ManagerError, UsageError
from kvminstall.models import DomainInfo
from kvminstall.utils import configure_logging, log
from kvminstall.vm import VMManager

CREATE_SETTINGS = (
    "autostart",
    "bridge",
    "cpus",
    "disk_size_gb",
    "dns_domain",
    "cpu_model",
    "graphics",
    "custom_image_path",
    "ssh_public_key_path",
    "image_dir",
    "vm_dir",
    "memory_mb",
    "mac_address",
    "graphics_port",
    "password",
    "custom_script_path",
    "distro",
    "timezone",
    "login_user",
    "ip_timeout",
    "extra_args",
    "network_model",
    "assume_yes",
    "assume_no",
    "verbose",
)

ATTACH_SETTINGS = ("disk_size", "disk_format", "source", "target", "vm_dir", "verbose")

EPILOG = textwrap.dedent(
    """
    Defaults can be overridden in ~/.kivrc (YAML), e.g.

        cpus: 2
        memory_mb: 2048
        distro: ubuntu2204

    Run 'kvm-install help <command>' for the options of a command.
    """
)


class _ArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that reports usage errors as :class:`UsageError` (exit 1)."""

    def error(self, message):
        self.print_usage(sys.stderr)
        raise UsageError(message)


def _open_hypervisor():
    from kvminstall.hypervisor import Hypervisor

    return Hypervisor(LIBVIRT_URI)


def _flags(args: argparse.Namespace, names) -> Dict[str, object]:
    return {name: getattr(args, name, None) for name in names}


def cmd_create(args: argparse.Namespace) -> int:
    cfg = build_vm_config(args.name, _flags(args, CREATE_SETTINGS))
    configure_logging(verbose=cfg.verbose)
    with _open_hypervisor() as hv:
        VMManager(hv).create(cfg)
    return EXIT_OK


def cmd_remove(args: argparse.Namespace) -> int:
    name = validate_vm_name(args.name)
    settings = merge_settings(_flags(args, ("vm_dir", "verbose")))
    configure_logging(verbose=bool(settings["verbose"]))
    with _open_hypervisor() as hv:
        VMManager(hv).remove(name, Path(str(settings["vm_dir"])).expanduser())
    return EXIT_OK


def cmd_attach_disk(args: argparse.Namespace) -> int:
    acfg = build_attach_config(args.name, _flags(args, ATTACH_SETTINGS))
    configure_logging(verbose=acfg.verbose)
    with _open_hypervisor() as hv:
        VMManager(hv).attach_disk(acfg)
    return EXIT_OK


def print_domains(domains: List[DomainInfo]) -> None:
    """Print domains the way `virsh list --all` does."""
    name_width = max([len("Name")] + [len(d.name) for d in domains])
    print(f" {'Id':<4} {'Name':<{name_width}}   State")
    print("-" * (name_width + 20))
    for domain in domains:
        dom_id = str(domain.id) if domain.id is not None else "-"
        print(f" {dom_id:<4} {domain.name:<{name_width}}   {domain.state}")


def cmd_list(args: argparse.Namespace) -> int:
    with _open_hypervisor() as hv:
        print_domains(VMManager(hv).list_domains())
    return EXIT_OK


def list_distros(config_path: Optional[Path] = None) -> None:
    """Print available distributions."""
    catalog = load_distro_catalog(config_path)
    if not catalog:
        log("WARN", "No distributions found")
        return
    max_key = max(len(k) for k in catalog)
    for key in sorted(catalog):
        spec = catalog[key]
        print(
            f"  {key:<{max_key}}  {spec.name}  "
            f"(os-type={spec.os_type}, os-variant={spec.os_variant}, user={spec.default_login_user})"
        )


def cmd_distros(args: argparse.Namespace) -> int:
    list_distros()
    return EXIT_OK


def _add_create_parser(subparsers) -> argparse.ArgumentParser:
    p = subparsers.add_parser(
        "create",
        help="Create a new VM from a cloud image",
        description="Create a new VM NAME from a cloud image seeded with cloud-init.",
        epilog=EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    p.add_argument("name", nargs="?", help="Name of the VM (also its hostname)")
    p.add_argument("-a", dest="autostart", action="store_true", default=None, help="Start the VM on host boot")
    p.add_argument("-b", dest="bridge", metavar="BRIDGE", help=f"Bridge to attach to (default: {DEFAULTS['bridge']})")
    p.add_argument("-c", dest="cpus", type=int, metavar="VCPUS", help=f"Number of vCPUs (default: {DEFAULTS['cpus']})")
    p.add_argument(
        "-d", dest="disk_size_gb", type=int, metavar="SIZE",
        help=f"Disk size in GB (default: {DEFAULTS['disk_size_gb']})",
    )
    p.add_argument("-D", dest="dns_domain", metavar="DOMAIN", help=f"DNS domain (default: {DEFAULTS['dns_domain']})")
    p.add_argument("-f", dest="cpu_model", metavar="CPU", help=f"CPU model (default: {DEFAULTS['cpu_model']})")
    p.add_argument("-g", dest="graphics", metavar="GRAPHICS", help=f"spice, vnc or none (default: {DEFAULTS['graphics']})")
    p.add_argument("-i", dest="custom_image_path", metavar="IMAGE", help="Use a local image instead of a distro")
    p.add_argument(
        "-k", dest="ssh_public_key_path", metavar="KEY",
        help=f"SSH public key to inject (default: {DEFAULTS['ssh_public_key_path']})",
    )
    p.add_argument("-l", dest="image_dir", metavar="DIR", help=f"Image cache directory (default: {DEFAULTS['image_dir']})")
    p.add_argument("-L", dest="vm_dir", metavar="DIR", help=f"VM directory (default: {DEFAULTS['vm_dir']})")
    p.add_argument("-m", dest="memory_mb", type=int, metavar="MB", help=f"Memory in MB (default: {DEFAULTS['memory_mb']})")
    p.add_argument("-M", dest="mac_address", metavar="MAC", help="MAC address (default: generated)")
    p.add_argument("-N", dest="network_model", metavar="MODEL", help=f"NIC model (default: {DEFAULTS['network_model']})")
    p.add_argument("-p", dest="graphics_port", type=int, metavar="PORT", help="Console port (default: -1, auto)")
    p.add_argument("-P", dest="password", metavar="PASSWORD", help="Console password for the login user")
    p.add_argument("-s", dest="custom_script_path", metavar="SCRIPT", help="Shell script to run on first boot")
    p.add_argument("-t", dest="distro", metavar="DISTRO", help=f"Distribution (default: {DEFAULTS['distro']})")
    p.add_argument("-T", dest="timezone", metavar="TZ", help=f"Timezone (default: {DEFAULTS['timezone']})")
    p.add_argument("-u", dest="login_user", metavar="USER", help="Login user (default: the distro's user)")
    p.add_argument(
        "-w", dest="ip_timeout", type=int, metavar="SECONDS",
        help=f"How long to wait for an IP address (default: {DEFAULTS['ip_timeout']})",
    )
    p.add_argument(
        "-x", dest="extra_args", action="append", metavar="OPTION",
        help="Extra virt-install option, e.g. -x='--machine q35' (repeatable)",
    )
    p.add_argument("-y", dest="assume_yes", action="store_true", default=None, help="Overwrite an existing VM")
    p.add_argument("-n", dest="assume_no", action="store_true", default=None, help="Never overwrite an existing VM")
    p.add_argument("-v", dest="verbose", action="store_true", default=None, help="Show command output")
    p.set_defaults(handler=cmd_create)
    return p


def build_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(
        prog="kvm-install",
        description="Create, extend, list and remove KVM guests built from cloud images.",
        epilog=EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")
    commands = {"create": _add_create_parser(subparsers)}

    p = subparsers.add_parser("remove", help="Delete a VM, its files and its storage pool")
    p.add_argument("name", nargs="?", help="Name of the VM")
    p.add_argument("-L", dest="vm_dir", metavar="DIR", help=f"VM directory (default: {DEFAULTS['vm_dir']})")
    p.add_argument("-v", dest="verbose", action="store_true", default=None, help="Show command output")
    p.set_defaults(handler=cmd_remove)
    commands["remove"] = p

    p = subparsers.add_parser("attach-disk", help="Create a new disk and attach it to a VM")
    p.add_argument("name", nargs="?", help="Name of the VM")
    p.add_argument("-d", dest="disk_size", type=int, metavar="SIZE", help="Disk size in GB (required)")
    p.add_argument("-f", dest="disk_format", metavar="FORMAT", help="Disk format (default: qcow2)")
    p.add_argument("-s", dest="source", metavar="PATH", help="Disk image path (default: inside the VM directory)")
    p.add_argument("-t", dest="target", metavar="TARGET", help="Target device, e.g. vdb (required)")
    p.add_argument("-L", dest="vm_dir", metavar="DIR", help=f"VM directory (default: {DEFAULTS['vm_dir']})")
    p.add_argument("-v", dest="verbose", action="store_true", default=None, help="Show command output")
    p.set_defaults(handler=cmd_attach_disk)
    commands["attach-disk"] = p

    p = subparsers.add_parser("list", help="List all VMs, running or not")
    p.set_defaults(handler=cmd_list)
    commands["list"] = p

    p = subparsers.add_parser("distros", help="List the distributions that can be installed")
    p.set_defaults(handler=cmd_distros)
    commands["distros"] = p

    p = subparsers.add_parser("help", help="Show help for a command")
    p.add_argument("topic", nargs="?", help="Command to describe")
    commands["help"] = p

    parser.set_defaults(commands=commands)
    return parser


def print_help(parser: argparse.ArgumentParser, topic: Optional[str]) -> int:
    commands = parser.get_default("commands")
    if topic is None:
        parser.print_help()
        return EXIT_OK
    if topic not in commands:
        raise UsageError(f"Unknown command '{topic}'. Choose from: {', '.join(commands)}")
    commands[topic].print_help()
    return EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    try:
        args = parser.parse_args(argv)
        if args.command is None:
            parser.print_help()
            return EXIT_OK
        if args.command == "help":
            return print_help(parser, args.topic)
        return args.handler(args)
    except ManagerError as exc:
        log("ERROR", str(exc))
        return exc.exit_code
    except KeyboardInterrupt:
        log("WARN", "Interrupted")
        return 130
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        log("ERROR", "This is likely a bug. Please report it with the VM log file attached.")
        import traceback

        traceback.print_exc()
        return EXIT_FAILURE
