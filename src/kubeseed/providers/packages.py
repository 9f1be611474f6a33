"""APT/dpkg provider for pinned package installation."""
from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field

from .command import CommandError, CommandRunner

LOGGER = logging.getLogger(__name__)

_NONINTERACTIVE = ("-y", "-q", "-o", "Dpkg::Options::=--force-confdef")


class PackageError(RuntimeError):
    """Raised when package queries or transactions fail."""


def version_matches(installed: str | None, pinned: str) -> bool:
    """Return ``True`` when *installed* satisfies the *pinned* version.

    A pin matches either the exact Debian version or any Debian revision of
    it, so ``1.30.2`` matches ``1.30.2-1.1`` but not ``1.30.20-1.1``.
    """
    if not installed:
        return False
    installed = installed.split(":", 1)[-1]
    pinned = pinned.split(":", 1)[-1]
    return installed == pinned or installed.startswith(f"{pinned}-")


def pin_spec(package: str, pinned: str) -> str:
    """Return the ``apt-get install`` argument selecting *pinned*."""
    if "-" in pinned:
        return f"{package}={pinned}"
    return f"{package}={pinned}-*"


@dataclass(slots=True)
class PackageProvider:
    """Inspect and change dpkg/apt package state."""

    runner: CommandRunner = field(default_factory=CommandRunner)
    apt_get_bin: str = "apt-get"
    apt_mark_bin: str = "apt-mark"
    dpkg_query_bin: str = "dpkg-query"

    def installed_version(self, package: str) -> str | None:
        """Return the installed version of *package*, or ``None`` when absent."""
        try:
            result = self.runner.run(
                [self.dpkg_query_bin, "-W", "-f", "${Status}\t${Version}", package],
                check=False,
            )
        except CommandError as exc:
            raise PackageError(f"Unable to query package {package}: {exc}") from exc
        if result.returncode != 0:
            return None
        status, _, version = (result.stdout or "").strip().partition("\t")
        if not status.endswith("installed") or status.endswith("not-installed"):
            return None
        return version.strip() or None

    def held_packages(self) -> set[str]:
        """Return the set of packages currently on hold."""
        try:
            result = self.runner.run([self.apt_mark_bin, "showhold"])
        except CommandError as exc:
            raise PackageError(f"Unable to list held packages: {exc}") from exc
        return {line.strip() for line in (result.stdout or "").splitlines() if line.strip()}

    def update(self) -> None:
        """Refresh package indexes."""
        self._apt(["update", "-q"])

    def install(self, packages: Sequence[tuple[str, str]]) -> None:
        """Install ``(name, pinned_version)`` pairs in one transaction."""
        if not packages:
            return
        specs = [pin_spec(name, version) for name, version in packages]
        LOGGER.debug("Installing pinned packages: %s", ", ".join(specs))
        self._apt(
            [
                "install",
                *_NONINTERACTIVE,
                "--allow-downgrades",
                "--allow-change-held-packages",
                *specs,
            ]
        )

    def purge(self, packages: Sequence[str]) -> None:
        """Purge *packages*; names that are not installed are skipped."""
        installed = [name for name in packages if self.installed_version(name) is not None]
        if not installed:
            return
        self._apt(["purge", *_NONINTERACTIVE, "--allow-change-held-packages", *installed])

    def hold(self, packages: Sequence[str]) -> None:
        """Prevent *packages* from being upgraded."""
        self._mark("hold", packages)

    def unhold(self, packages: Sequence[str]) -> None:
        """Release holds on *packages*."""
        self._mark("unhold", packages)

    # ------------------------------------------------------------------
    def _apt(self, args: Sequence[str]) -> None:
        command = [self.apt_get_bin, *args]
        try:
            self.runner.run(command)
        except CommandError as exc:
            raise PackageError(f"apt-get {args[0]} failed: {exc}") from exc

    def _mark(self, action: str, packages: Sequence[str]) -> None:
        if not packages:
            return
        try:
            self.runner.run([self.apt_mark_bin, action, *packages])
        except CommandError as exc:
            raise PackageError(f"apt-mark {action} failed: {exc}") from exc


__all__ = ["PackageError", "PackageProvider", "pin_spec", "version_matches"]
