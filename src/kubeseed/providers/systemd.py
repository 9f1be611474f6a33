"""Systemd provider for the container runtime and kubelet services."""
from __future__ import annotations

import subprocess
from dataclasses import dataclass, field

from .command import CommandError, CommandRunner


class SystemdError(RuntimeError):
    """Raised when systemd operations fail."""


@dataclass(slots=True)
class SystemdProvider:
    """Query and manage systemd units via ``systemctl``."""

    runner: CommandRunner = field(default_factory=CommandRunner)
    systemctl_bin: str = "systemctl"

    def unit_name(self, service: str) -> str:
        """Return the systemd unit name for *service*."""
        return service if "." in service else f"{service}.service"

    def is_active(self, service: str) -> bool:
        """Return ``True`` when the unit is running."""
        result = self._systemctl("is-active", service, check=False)
        return result.returncode == 0 and (result.stdout or "").strip() == "active"

    def is_enabled(self, service: str) -> bool:
        """Return ``True`` when the unit starts at boot."""
        result = self._systemctl("is-enabled", service, check=False)
        return result.returncode == 0 and (result.stdout or "").strip() in {
            "enabled",
            "enabled-runtime",
            "static",
        }

    def enable(self, service: str, *, now: bool = False) -> subprocess.CompletedProcess[str]:
        """Enable the unit, optionally starting it immediately."""
        if now:
            return self._systemctl("enable", service, "--now")
        return self._systemctl("enable", service)

    def disable(self, service: str, *, now: bool = False) -> subprocess.CompletedProcess[str]:
        """Disable the unit, optionally stopping it immediately."""
        if now:
            return self._systemctl("disable", service, "--now")
        return self._systemctl("disable", service)

    def restart(self, service: str) -> subprocess.CompletedProcess[str]:
        """Restart the unit."""
        return self._systemctl("restart", service)

    # ------------------------------------------------------------------
    def _systemctl(
        self,
        command: str,
        service: str,
        *extra: str,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        args = [self.systemctl_bin, command, self.unit_name(service), *extra]
        try:
            return self.runner.run(args, check=check)
        except CommandError as exc:
            raise SystemdError(f"{self.systemctl_bin} {command} failed: {exc}") from exc


__all__ = ["SystemdProvider", "SystemdError"]
