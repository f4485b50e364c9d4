"""Utility functions for kvm-install."""

from __future__ import annotations

import shlex
import shutil
import subprocess
import time
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple, Union

try:
    import bcrypt  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("bcrypt is required but not installed") from exc

from kvminstall.constants import _LOG_VERBOSE
from kvminstall.exceptions import ExternalToolError

ParamItem = Union[str, Tuple[str, object], None]

_verbose = _LOG_VERBOSE
_log_file: Optional[Path] = None


def configure_logging(verbose: Optional[bool] = None, log_file: Optional[Path] = None) -> None:
    """Set terminal verbosity and the per-VM log file that mirrors every message."""
    global _verbose, _log_file
    if verbose is not None:
        _verbose = verbose or _LOG_VERBOSE
    _log_file = log_file


def _append_log(text: str) -> None:
    # Never recreate a working directory that a removal just deleted.
    if _log_file is None or not _log_file.parent.is_dir():
        return
    with open(_log_file, "a", encoding="utf-8") as f:
        f.write(text if text.endswith("\n") else text + "\n")


def log(level: str, message: str) -> None:
    """Lightweight structured logging compatible with existing colour expectation."""
    stamp = time.strftime("%Y-%m-%d %H:%M:%S")
    _append_log(f"{stamp} [{level}] {message}")
    if level == "DEBUG" and not _verbose:
        return
    colours = {
        "INFO": "\033[0;34m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "SUCCESS": "\033[0;32m",
        "DEBUG": "\033[0;90m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    print(f"{colour}[{level}]{reset} {message}", flush=True)


def shell_join(cmd: Sequence[str]) -> str:
    return " ".join(shlex.quote(str(c)) for c in cmd)


def run(
    cmd: List[str],
    step: Optional[str] = None,
    check: bool = True,
    capture: bool = False,
    **kwargs,
) -> subprocess.CompletedProcess:
    """Run command with logging.

    Output goes to the terminal in verbose mode and to the log file
    otherwise. ``capture`` always captures so the caller can parse stdout.
    """
    step = step or cmd[0]
    log("DEBUG", f"Running: {shell_join(cmd)}")
    quiet = capture or not _verbose
    try:
        result = subprocess.run(cmd, text=True, capture_output=quiet, **kwargs)
    except FileNotFoundError as exc:
        raise ExternalToolError(step, f"{cmd[0]} is not installed", cmd) from exc
    if quiet:
        for stream in (result.stdout, result.stderr):
            if stream and stream.strip():
                _append_log(stream)
    if check and result.returncode != 0:
        detail = ((result.stderr or "") or (result.stdout or "")).strip() if quiet else ""
        message = f"'{shell_join(cmd)}' exited with status {result.returncode}"
        if detail:
            message += f": {detail.splitlines()[-1]}"
        raise ExternalToolError(step, message, cmd, result.returncode)
    return result


def which(cmd: str) -> Optional[str]:
    return shutil.which(cmd)


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def join_params(separator: str, items: Iterable[ParamItem]) -> str:
    """Join ``key=value`` pairs and bare words, dropping anything empty.

    >>> join_params(",", [("bridge", "br0"), ("mac", ""), "virtio"])
    'bridge=br0,virtio'
    """
    parts: List[str] = []
    for item in items:
        if isinstance(item, tuple):
            key, value = item
            if value is None or value == "":
                continue
            parts.append(f"{key}={value}")
        elif item:
            parts.append(str(item))
    return separator.join(parts)


def confirm(question: str) -> bool:
    """Ask a yes/no question on the terminal; anything but yes is no."""
    try:
        answer = input(f"{question} [y/N]? ")
    except EOFError:
        return False
    return answer.strip().lower() in {"y", "yes"}


def hash_password(password: str) -> str:
    """Generate a bcrypt hash for cloud-init."""
    hashed = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt())
    return hashed.decode("utf-8")


def remove_path(path: Path) -> bool:
    """Delete a file or directory tree; return False if nothing was there."""
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
        return True
    if path.exists() or path.is_symlink():
        path.unlink()
        return True
    return False
