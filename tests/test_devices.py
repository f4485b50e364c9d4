"""Tests for kvminstall.devices module."""

from __future__ import annotations

from pathlib import Path
from xml.etree.ElementTree import fromstring

import pytest

from kvminstall.devices import find_cdrom, render_disk_xml, render_ejected_cdrom_xml, render_pool_xml
from kvminstall.exceptions import ValidationError

DOMAIN_XML = """
<domain type='kvm'>
  <name>myvm</name>
  <devices>
    <disk type='file' device='disk'>
      <driver name='qemu' type='qcow2'/>
      <source file='/vms/myvm/myvm.qcow2'/>
      <target dev='vda' bus='virtio'/>
    </disk>
    <disk type='file' device='cdrom'>
      <driver name='qemu' type='raw'/>
      <source file='/vms/myvm/myvm-cidata.iso'/>
      <target dev='sda' bus='sata'/>
      <readonly/>
    </disk>
  </devices>
</domain>
"""


class TestPoolXml:
    def test_dir_pool(self):
        root = fromstring(render_pool_xml("myvm", Path("/vms/myvm")))
        assert root.tag == "pool"
        assert root.get("type") == "dir"
        assert root.findtext("name") == "myvm"
        assert root.findtext("target/path") == "/vms/myvm"


class TestDiskXml:
    @pytest.mark.parametrize(
        "target, bus",
        [("vdb", "virtio"), ("sdc", "scsi"), ("hdb", "ide"), ("xvdb", "xen")],
    )
    def test_bus_follows_target(self, target, bus):
        root = fromstring(render_disk_xml(Path("/vms/myvm/data.qcow2"), target, "qcow2"))
        assert root.find("target").attrib == {"dev": target, "bus": bus}

    def test_disk_layout(self):
        root = fromstring(render_disk_xml(Path("/vms/myvm/data.raw"), "vdb", "raw"))
        assert root.get("type") == "file"
        assert root.get("device") == "disk"
        assert root.find("driver").attrib == {"name": "qemu", "type": "raw", "cache": "none"}
        assert root.find("source").get("file") == "/vms/myvm/data.raw"


class TestCdrom:
    def test_find_by_source(self):
        cdrom = find_cdrom(DOMAIN_XML, Path("/vms/myvm/myvm-cidata.iso"))
        assert cdrom is not None
        assert cdrom.find("target").get("dev") == "sda"

    def test_find_first(self):
        assert find_cdrom(DOMAIN_XML) is not None

    def test_other_source(self):
        assert find_cdrom(DOMAIN_XML, Path("/isos/other.iso")) is None

    def test_invalid_xml(self):
        with pytest.raises(ValidationError):
            find_cdrom("<domain>")

    def test_ejected_xml_drops_source(self):
        cdrom = find_cdrom(DOMAIN_XML, Path("/vms/myvm/myvm-cidata.iso"))
        root = fromstring(render_ejected_cdrom_xml(cdrom))
        assert root.get("device") == "cdrom"
        assert root.find("source") is None
        assert root.find("target").attrib == {"dev": "sda", "bus": "sata"}
        assert root.find("driver").get("type") == "raw"
        assert root.find("readonly") is not None

    def test_ejected_xml_requires_target(self):
        cdrom = fromstring("<disk type='file' device='cdrom'><source file='/x.iso'/></disk>")
        with pytest.raises(ValidationError, match="no target"):
            render_ejected_cdrom_xml(cdrom)
