"""libvirt device and storage pool XML for kvm-install."""

from __future__ import annotations

from pathlib import Path
from typing import Optional
from xml.etree.ElementTree import Element, ParseError, SubElement, fromstring, tostring

from kvminstall.exceptions import ValidationError


def _element_to_str(root: Element) -> str:
    """Serialize an ElementTree element to a pretty-printed XML string without declaration."""
    from xml.dom.minidom import parseString

    raw = tostring(root, encoding="unicode")
    return parseString(raw).documentElement.toprettyxml(indent="  ").strip()


def render_pool_xml(name: str, target: Path) -> str:
    """Directory-backed storage pool rooted at the VM's working directory."""
    pool = Element("pool", type="dir")
    SubElement(pool, "name").text = name
    target_el = SubElement(pool, "target")
    SubElement(target_el, "path").text = str(target)
    return _element_to_str(pool)


def _bus_for_target(target: str) -> str:
    if target.startswith("vd"):
        return "virtio"
    if target.startswith("hd"):
        return "ide"
    if target.startswith("xvd"):
        return "xen"
    return "scsi"


def render_disk_xml(source: Path, target: str, disk_format: str) -> str:
    """File-backed disk with host caching disabled."""
    disk = Element("disk", type="file", device="disk")
    SubElement(disk, "driver", name="qemu", type=disk_format, cache="none")
    SubElement(disk, "source", file=str(source))
    SubElement(disk, "target", dev=target, bus=_bus_for_target(target))
    return _element_to_str(disk)


def find_cdrom(domain_xml: str, source: Optional[Path] = None) -> Optional[Element]:
    """Return the CD-ROM ``<disk>`` carrying ``source`` (or the first CD-ROM)."""
    try:
        root = fromstring(domain_xml)
    except ParseError as exc:
        raise ValidationError(f"Could not parse domain XML: {exc}")
    for disk in root.findall("./devices/disk[@device='cdrom']"):
        if source is None:
            return disk
        source_el = disk.find("source")
        if source_el is not None and source_el.get("file") == str(source):
            return disk
    return None


def render_ejected_cdrom_xml(cdrom: Element) -> str:
    """Copy of a CD-ROM device with its medium removed."""
    target_el = cdrom.find("target")
    if target_el is None or not target_el.get("dev"):
        raise ValidationError("CD-ROM device has no target")
    disk = Element("disk", type=cdrom.get("type", "file"), device="cdrom")
    driver_el = cdrom.find("driver")
    if driver_el is not None:
        SubElement(disk, "driver", dict(driver_el.attrib))
    SubElement(disk, "target", dict(target_el.attrib))
    SubElement(disk, "readonly")
    return _element_to_str(disk)
