"""Tests for kvminstall.images module."""

from __future__ import annotations

import subprocess
from unittest.mock import MagicMock, patch

import pytest
import requests

from kvminstall.exceptions import ExternalToolError, ValidationError
from kvminstall.images import (
    GIB,
    create_blank_disk,
    create_overlay_disk,
    download_file,
    ensure_image,
    image_format,
    image_virtual_size,
    resize_disk,
)


def _response(status_code=200, chunks=(b"",), headers=None):
    response = MagicMock()
    response.status_code = status_code
    response.headers = headers or {}
    response.iter_content.return_value = list(chunks)
    if status_code >= 400 and status_code != 416:
        response.raise_for_status.side_effect = requests.HTTPError(f"{status_code} Client Error")
    response.__enter__.return_value = response
    response.__exit__.return_value = False
    return response


def _qemu_info(virtual_size):
    return subprocess.CompletedProcess(
        ["qemu-img", "info"], 0, stdout=f'{{"virtual-size": {virtual_size}, "format": "qcow2"}}', stderr=""
    )


class TestDownloadFile:
    def test_fresh_download(self, tmp_path):
        dest = tmp_path / "image.qcow2"
        response = _response(chunks=[b"abc", b"def"], headers={"Content-Length": "6"})
        with patch("kvminstall.images.requests.get", return_value=response) as mock_get:
            download_file("https://example.com/image.qcow2", dest)
        assert dest.read_bytes() == b"abcdef"
        assert not (tmp_path / "image.qcow2.part").exists()
        assert "Range" not in mock_get.call_args.kwargs["headers"]

    def test_resumes_partial_download(self, tmp_path):
        dest = tmp_path / "image.qcow2"
        (tmp_path / "image.qcow2.part").write_bytes(b"abc")
        response = _response(status_code=206, chunks=[b"def"], headers={"Content-Length": "3"})
        with patch("kvminstall.images.requests.get", return_value=response) as mock_get:
            download_file("https://example.com/image.qcow2", dest)
        assert mock_get.call_args.kwargs["headers"]["Range"] == "bytes=3-"
        assert dest.read_bytes() == b"abcdef"

    def test_restarts_when_range_ignored(self, tmp_path):
        dest = tmp_path / "image.qcow2"
        (tmp_path / "image.qcow2.part").write_bytes(b"stale")
        response = _response(status_code=200, chunks=[b"abcdef"], headers={"Content-Length": "6"})
        with patch("kvminstall.images.requests.get", return_value=response):
            download_file("https://example.com/image.qcow2", dest)
        assert dest.read_bytes() == b"abcdef"

    def test_range_not_satisfiable_means_complete(self, tmp_path):
        dest = tmp_path / "image.qcow2"
        (tmp_path / "image.qcow2.part").write_bytes(b"abcdef")
        response = _response(status_code=416)
        with patch("kvminstall.images.requests.get", return_value=response):
            download_file("https://example.com/image.qcow2", dest)
        assert dest.read_bytes() == b"abcdef"
        response.iter_content.assert_not_called()

    def test_http_error_keeps_partial(self, tmp_path):
        dest = tmp_path / "image.qcow2"
        response = _response(status_code=404)
        with patch("kvminstall.images.requests.get", return_value=response):
            with pytest.raises(ExternalToolError, match="Image download failed: .*404"):
                download_file("https://example.com/image.qcow2", dest)
        assert not dest.exists()

    def test_connection_error(self, tmp_path):
        dest = tmp_path / "image.qcow2"
        with patch("kvminstall.images.requests.get", side_effect=requests.ConnectionError("reset")):
            with pytest.raises(ExternalToolError, match="Re-run the command to resume"):
                download_file("https://example.com/image.qcow2", dest)

    def test_short_read_leaves_part_file(self, tmp_path):
        dest = tmp_path / "image.qcow2"
        response = _response(chunks=[b"abc"], headers={"Content-Length": "10"})
        with patch("kvminstall.images.requests.get", return_value=response):
            with pytest.raises(ExternalToolError, match="connection closed after 3 of 10 bytes"):
                download_file("https://example.com/image.qcow2", dest)
        assert not dest.exists()
        assert (tmp_path / "image.qcow2.part").read_bytes() == b"abc"


class TestEnsureImage:
    def test_cached_image_reused(self, tmp_path, debian_spec):
        (tmp_path / debian_spec.image_filename).write_bytes(b"img")
        with patch("kvminstall.images.download_file") as mock_download:
            path = ensure_image(debian_spec, tmp_path)
        assert path == tmp_path / debian_spec.image_filename
        mock_download.assert_not_called()

    def test_downloads_missing_image(self, tmp_path, debian_spec):
        image_dir = tmp_path / "images"
        with patch("kvminstall.images.download_file") as mock_download:
            path = ensure_image(debian_spec, image_dir)
        assert image_dir.is_dir()
        mock_download.assert_called_once()
        assert mock_download.call_args[0][:2] == (debian_spec.image_url, path)

    def test_second_call_uses_cache(self, tmp_path, debian_spec):
        def fake_download(url, destination, label):
            destination.write_bytes(b"img")

        with patch("kvminstall.images.download_file", side_effect=fake_download) as mock_download:
            first = ensure_image(debian_spec, tmp_path)
            second = ensure_image(debian_spec, tmp_path)
        assert first == second
        assert mock_download.call_count == 1

    def test_no_url(self, tmp_path, debian_spec):
        from dataclasses import replace

        spec = replace(debian_spec, image_base_url="")
        with pytest.raises(ValidationError, match="No download URL"):
            ensure_image(spec, tmp_path)


class TestDiskImages:
    def test_virtual_size(self, tmp_path):
        with patch("kvminstall.images.run", return_value=_qemu_info(2 * GIB)):
            assert image_virtual_size(tmp_path / "disk.qcow2") == 2 * GIB

    def test_virtual_size_bad_output(self, tmp_path):
        bad = subprocess.CompletedProcess(["qemu-img"], 0, stdout="not json", stderr="")
        with patch("kvminstall.images.run", return_value=bad):
            with pytest.raises(ExternalToolError, match="unexpected qemu-img output"):
                image_virtual_size(tmp_path / "disk.qcow2")

    def test_format_from_qemu_img(self, tmp_path):
        with patch("kvminstall.images.run", return_value=_qemu_info(GIB)) as mock_run:
            assert image_format(tmp_path / "golden.raw") == "qcow2"
        assert mock_run.call_args[0][0] == ["qemu-img", "info", "--output=json", str(tmp_path / "golden.raw")]

    def test_raw_format(self, tmp_path):
        info = subprocess.CompletedProcess(["qemu-img"], 0, stdout='{"virtual-size": 1024, "format": "raw"}', stderr="")
        with patch("kvminstall.images.run", return_value=info):
            assert image_format(tmp_path / "golden.img") == "raw"

    def test_format_missing(self, tmp_path):
        info = subprocess.CompletedProcess(["qemu-img"], 0, stdout='{"virtual-size": 1024}', stderr="")
        with patch("kvminstall.images.run", return_value=info):
            with pytest.raises(ExternalToolError, match="reported no format"):
                image_format(tmp_path / "golden.img")

    def test_overlay_uses_backing_file(self, tmp_path):
        with patch("kvminstall.images.run") as mock_run:
            create_overlay_disk(tmp_path / "base.raw", tmp_path / "vm.qcow2", "raw")
        cmd = mock_run.call_args[0][0]
        assert cmd == [
            "qemu-img", "create", "-q", "-f", "qcow2", "-F", "raw",
            "-b", str(tmp_path / "base.raw"), str(tmp_path / "vm.qcow2"),
        ]

    def test_resize_grows(self, tmp_path):
        disk = tmp_path / "vm.qcow2"
        with patch("kvminstall.images.run", return_value=_qemu_info(2 * GIB)) as mock_run:
            resize_disk(disk, 10)
        assert mock_run.call_args[0][0] == ["qemu-img", "resize", "-q", str(disk), "10G"]

    def test_resize_same_size_skipped(self, tmp_path):
        with patch("kvminstall.images.run", return_value=_qemu_info(10 * GIB)) as mock_run:
            resize_disk(tmp_path / "vm.qcow2", 10)
        assert mock_run.call_count == 1

    def test_explicit_shrink_rejected(self, tmp_path):
        with patch("kvminstall.images.run", return_value=_qemu_info(20 * GIB)) as mock_run:
            with pytest.raises(ValidationError, match="shrinking is not supported"):
                resize_disk(tmp_path / "vm.qcow2", 10, strict=True)
        assert mock_run.call_count == 1

    def test_default_size_smaller_than_image_skipped(self, tmp_path):
        with patch("kvminstall.images.run", return_value=_qemu_info(20 * GIB)) as mock_run:
            resize_disk(tmp_path / "vm.qcow2", 10, strict=False)
        assert mock_run.call_count == 1

    def test_blank_qcow2_disk(self, tmp_path):
        disk = tmp_path / "data.qcow2"
        with patch("kvminstall.images.run") as mock_run:
            create_blank_disk(disk, 20, "qcow2")
        assert mock_run.call_args[0][0] == [
            "qemu-img", "create", "-q", "-f", "qcow2", "-o", "size=20G,preallocation=metadata", str(disk),
        ]

    def test_blank_raw_disk(self, tmp_path):
        disk = tmp_path / "data.raw"
        with patch("kvminstall.images.run") as mock_run:
            create_blank_disk(disk, 5, "raw")
        assert mock_run.call_args[0][0] == ["qemu-img", "create", "-q", "-f", "raw", "-o", "size=5G", str(disk)]
