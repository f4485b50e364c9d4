"""Base image download and disk image handling for kvm-install."""

from __future__ import annotations

import json
import time
from pathlib import Path

try:
    import requests  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("requests is required but not installed") from exc

from kvminstall.exceptions import ExternalToolError, ValidationError
from kvminstall.models import DistroSpec
from kvminstall.utils import ensure_directory, log, run

USER_AGENT = "kvm-install/1.0"
REQUEST_TIMEOUT = 60
CHUNK_SIZE = 1024 * 256  # 256 KiB
GIB = 1024**3
MIB = 1024**2


def _print_progress(downloaded: int, total_bytes: int, start_time: float, resumed_from: int) -> None:
    elapsed = time.time() - start_time
    speed = (downloaded - resumed_from) / elapsed if elapsed > 0 else 0
    downloaded_mb = downloaded / MIB
    if total_bytes:
        total_mb = total_bytes / MIB
        pct = downloaded * 100 / total_bytes
        remaining = (total_bytes - downloaded) / speed if speed > 0 else 0
        eta_str = time.strftime("%M:%S", time.gmtime(remaining))
        bar_len = 30
        filled = int(bar_len * downloaded / total_bytes)
        bar = "#" * filled + "-" * (bar_len - filled)
        print(
            f"\r  [{bar}] {pct:5.1f}% {downloaded_mb:.1f}/{total_mb:.1f} MiB "
            f"({speed / MIB:.1f} MiB/s, ETA {eta_str})",
            end="", flush=True,
        )
    else:
        print(f"\r  {downloaded_mb:.1f} MiB downloaded ({speed / MIB:.1f} MiB/s)", end="", flush=True)


def download_file(url: str, destination: Path, label: str = "Downloading") -> None:
    """Download ``url`` to ``destination`` through a ``.part`` file, resuming it if present."""
    partial = destination.with_name(destination.name + ".part")
    offset = partial.stat().st_size if partial.exists() else 0
    headers = {"User-Agent": USER_AGENT}
    if offset:
        headers["Range"] = f"bytes={offset}-"
        log("INFO", f"Resuming partial download of {destination.name} at {offset / MIB:.1f} MiB")
    log("INFO", f"{label}: {url}")

    start_time = time.time()
    try:
        with requests.get(url, headers=headers, stream=True, timeout=REQUEST_TIMEOUT) as response:
            if offset and response.status_code == 416:
                # Nothing left past our offset: the part file is already complete.
                partial.replace(destination)
                log("SUCCESS", f"Download of {destination.name} already complete")
                return
            response.raise_for_status()
            if offset and response.status_code != 206:
                log("WARN", "Server does not support resuming; restarting download")
                offset = 0
            length = response.headers.get("Content-Length")
            total_bytes = int(length) + offset if length else 0
            downloaded = offset
            with open(partial, "ab" if offset else "wb") as f:
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    if not chunk:
                        continue
                    f.write(chunk)
                    downloaded += len(chunk)
                    _print_progress(downloaded, total_bytes, start_time, offset)
            print(flush=True)  # newline after progress
    except requests.RequestException as exc:
        raise ExternalToolError(
            "Image download",
            f"{url}: {exc}. Re-run the command to resume from {partial}",
        ) from exc

    if total_bytes and downloaded < total_bytes:
        raise ExternalToolError(
            "Image download",
            f"{url}: connection closed after {downloaded} of {total_bytes} bytes. "
            f"Re-run the command to resume from {partial}",
        )
    partial.replace(destination)
    elapsed = time.time() - start_time
    log("SUCCESS", f"Downloaded {downloaded / MIB:.1f} MiB in {elapsed:.1f}s")


def ensure_image(spec: DistroSpec, image_dir: Path) -> Path:
    """Make sure the base cloud image for ``spec`` is in ``image_dir``."""
    ensure_directory(image_dir)
    image_path = image_dir / spec.image_filename
    if image_path.exists():
        log("INFO", f"Using cached image: {image_path}")
        return image_path
    if not spec.image_url:
        raise ValidationError(f"No download URL known for {spec.name}")
    download_file(spec.image_url, image_path, label=f"Downloading {spec.name} image")
    return image_path


def image_info(path: Path) -> dict:
    """Return `qemu-img info --output=json` for ``path`` as a dict."""
    result = run(["qemu-img", "info", "--output=json", str(path)], step="Disk inspection", capture=True)
    try:
        info = json.loads(result.stdout)
    except ValueError as exc:
        raise ExternalToolError("Disk inspection", f"unexpected qemu-img output for {path}") from exc
    if not isinstance(info, dict):
        raise ExternalToolError("Disk inspection", f"unexpected qemu-img output for {path}")
    return info


def image_virtual_size(path: Path) -> int:
    try:
        return int(image_info(path).get("virtual-size", 0))
    except (ValueError, TypeError) as exc:
        raise ExternalToolError("Disk inspection", f"unexpected qemu-img output for {path}") from exc


def image_format(path: Path) -> str:
    fmt = image_info(path).get("format")
    if not fmt:
        raise ExternalToolError("Disk inspection", f"qemu-img reported no format for {path}")
    return str(fmt)


def create_overlay_disk(base_image: Path, disk_path: Path, base_format: str) -> None:
    """Create a copy-on-write qcow2 disk backed by ``base_image``."""
    log("INFO", f"Creating working disk {disk_path}")
    run(
        [
            "qemu-img",
            "create",
            "-q",
            "-f",
            "qcow2",
            "-F",
            base_format,
            "-b",
            str(base_image),
            str(disk_path),
        ],
        step="Disk creation",
    )


def resize_disk(disk_path: Path, size_gb: int, strict: bool = True) -> None:
    """Grow ``disk_path`` to ``size_gb``, never shrink it.

    A smaller size is an error when ``strict`` (the user asked for it) and
    is skipped otherwise (it is only the default).
    """
    requested_bytes = size_gb * GIB
    current_vsize = image_virtual_size(disk_path)
    if requested_bytes < current_vsize:
        cur_gb = current_vsize / GIB
        if not strict:
            log("INFO", f"Base image already {cur_gb:.1f}G (>= {size_gb}G); skip resize")
            return
        raise ValidationError(
            f"Requested disk size {size_gb}G is smaller than the base image ({cur_gb:.1f}G); shrinking is not supported"
        )
    if requested_bytes == current_vsize:
        log("INFO", f"Disk already {size_gb}G; skip resize")
        return
    log("INFO", f"Resizing disk to {size_gb}G...")
    run(["qemu-img", "resize", "-q", str(disk_path), f"{size_gb}G"], step="Disk resize")


def create_blank_disk(disk_path: Path, size_gb: int, disk_format: str) -> None:
    options = f"size={size_gb}G"
    if disk_format == "qcow2":
        options += ",preallocation=metadata"
    log("INFO", f"Creating {size_gb}G {disk_format} disk {disk_path}")
    run(["qemu-img", "create", "-q", "-f", disk_format, "-o", options, str(disk_path)], step="Disk creation")
