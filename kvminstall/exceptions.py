"""Custom exceptions for kvm-install."""

from __future__ import annotations

from typing import Optional, Sequence


class ManagerError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""

    exit_code = 2


class UsageError(ManagerError):
    """Bad or missing flags; nothing has been touched yet."""

    exit_code = 1


class ValidationError(ManagerError):
    """Input that parses but cannot be acted on (missing key, unknown distro, ...)."""


class ExternalToolError(ManagerError):
    """An external command or libvirt call failed."""

    def __init__(
        self,
        step: str,
        message: str,
        cmd: Optional[Sequence[str]] = None,
        returncode: Optional[int] = None,
    ) -> None:
        self.step = step
        self.cmd = list(cmd) if cmd is not None else None
        self.returncode = returncode
        super().__init__(f"{step} failed: {message}")
