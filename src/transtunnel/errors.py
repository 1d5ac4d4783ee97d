"""Exception hierarchy — each fatal error carries the CLI exit status it maps to."""

from __future__ import annotations


class TransTunnelError(Exception):
    """Base class for all transtunnel errors."""

    exit_code: int = 1


class ValidationError(TransTunnelError):
    """Malformed or contradictory configuration. Raised before any mutation."""

    exit_code = 3


class EnvironmentCheckError(TransTunnelError):
    """Missing privilege, kernel setting or external tool. Raised before any mutation."""

    exit_code = 4


class InputError(TransTunnelError):
    """An IP-list file could not be read. Callers skip the file and warn."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"cannot read {path}: {reason}")
        self.path = path
        self.reason = reason


class BackendError(TransTunnelError):
    """An external command (ipset, iptables, ip) failed."""

    exit_code = 1

    def __init__(self, command: list[str], detail: str = "") -> None:
        self.command = list(command)
        self.detail = detail.strip()
        message = f"command failed: {' '.join(self.command)}"
        if self.detail:
            message = f"{message}: {self.detail}"
        super().__init__(message)
