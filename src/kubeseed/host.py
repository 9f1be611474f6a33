"""Helpers for reading and rewriting host state files.

Everything here operates on explicit paths (``/proc/swaps``, ``/etc/fstab``,
``/proc/sys`` and friends are taken from :class:`~kubeseed.config.PathsConfig`)
so the same code drives a real host and a tmp-rooted test fixture. Writes are
atomic: content goes to a temporary file in the target directory which is then
renamed into place.
"""
from __future__ import annotations

import os
import shutil
import stat
import tempfile
from collections.abc import Iterable, Mapping
from pathlib import Path

SWAP_MARKER = "# kubeseed-swap: "


def read_lines(path: Path) -> list[str]:
    """Return the lines of *path*, or an empty list when it does not exist."""
    try:
        return path.read_text(encoding="utf-8").splitlines()
    except FileNotFoundError:
        return []


def write_if_changed(path: Path, content: str, *, mode: int = 0o644) -> bool:
    """Atomically write *content* to *path* unless it already matches.

    Returns ``True`` when the file was (re)written.
    """
    try:
        if path.read_text(encoding="utf-8") == content:
            return False
    except FileNotFoundError:
        pass
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
            handle.write(content)
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    finally:
        tmp_path.unlink(missing_ok=True)
    return True


def remove_path(path: Path) -> bool:
    """Delete a file or directory tree; return ``True`` if something was removed."""
    if path.is_symlink() or path.is_file():
        path.unlink()
        return True
    if path.is_dir():
        shutil.rmtree(path)
        return True
    return False


def file_mode(path: Path) -> int | None:
    """Return the permission bits of *path*, or ``None`` when missing."""
    try:
        return stat.S_IMODE(path.stat().st_mode)
    except FileNotFoundError:
        return None


# ---------------------------------------------------------------------------
# Swap
# ---------------------------------------------------------------------------


def active_swaps(proc_swaps: Path) -> list[str]:
    """Return the devices listed as active swap in ``/proc/swaps``."""
    lines = read_lines(proc_swaps)
    devices: list[str] = []
    for line in lines[1:]:
        fields = line.split()
        if fields:
            devices.append(fields[0])
    return devices


def _is_swap_entry(line: str) -> bool:
    stripped = line.strip()
    if not stripped or stripped.startswith("#"):
        return False
    fields = stripped.split()
    return len(fields) >= 3 and fields[2] == "swap"


def fstab_swap_entries(fstab: Path) -> list[str]:
    """Return uncommented swap entries from *fstab*."""
    return [line for line in read_lines(fstab) if _is_swap_entry(line)]


def disable_fstab_swap(fstab: Path) -> int:
    """Comment out active swap entries with :data:`SWAP_MARKER`; return how many."""
    lines = read_lines(fstab)
    changed = 0
    rewritten: list[str] = []
    for line in lines:
        if _is_swap_entry(line):
            rewritten.append(f"{SWAP_MARKER}{line}")
            changed += 1
        else:
            rewritten.append(line)
    if changed:
        write_if_changed(fstab, "\n".join(rewritten) + "\n", mode=_mode_or_default(fstab))
    return changed


def restore_fstab_swap(fstab: Path) -> int:
    """Uncomment swap entries previously disabled by kubeseed; return how many."""
    lines = read_lines(fstab)
    restored = 0
    rewritten: list[str] = []
    for line in lines:
        if line.startswith(SWAP_MARKER):
            rewritten.append(line[len(SWAP_MARKER) :])
            restored += 1
        else:
            rewritten.append(line)
    if restored:
        write_if_changed(fstab, "\n".join(rewritten) + "\n", mode=_mode_or_default(fstab))
    return restored


def _mode_or_default(path: Path) -> int:
    mode = file_mode(path)
    return mode if mode is not None else 0o644


# ---------------------------------------------------------------------------
# Kernel modules and sysctl
# ---------------------------------------------------------------------------


def loaded_modules(proc_modules: Path) -> set[str]:
    """Return the names of loaded kernel modules."""
    modules: set[str] = set()
    for line in read_lines(proc_modules):
        fields = line.split()
        if fields:
            modules.add(fields[0])
    return modules


def read_sysctl(proc_sys: Path, key: str) -> str | None:
    """Return the live value of sysctl *key*, or ``None`` when it does not exist."""
    path = proc_sys.joinpath(*key.split("."))
    try:
        return path.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return None


def render_modules_load(modules: Iterable[str]) -> str:
    """Return ``modules-load.d`` content listing *modules*."""
    return "".join(f"{module}\n" for module in modules)


def render_sysctl(values: Mapping[str, str]) -> str:
    """Return ``sysctl.d`` content persisting *values*."""
    return "".join(f"{key} = {value}\n" for key, value in values.items())


def parse_key_values(path: Path) -> dict[str, str]:
    """Parse a ``key = value`` file, ignoring comments and blank lines."""
    values: dict[str, str] = {}
    for line in read_lines(path):
        stripped = line.strip()
        if not stripped or stripped.startswith(("#", ";")) or "=" not in stripped:
            continue
        key, _, value = stripped.partition("=")
        values[key.strip()] = value.strip()
    return values


def listed_modules(path: Path) -> set[str]:
    """Return module names listed in a ``modules-load.d`` file."""
    names: set[str] = set()
    for line in read_lines(path):
        stripped = line.strip()
        if stripped and not stripped.startswith(("#", ";")):
            names.add(stripped)
    return names


__all__ = [
    "SWAP_MARKER",
    "active_swaps",
    "disable_fstab_swap",
    "file_mode",
    "fstab_swap_entries",
    "listed_modules",
    "loaded_modules",
    "parse_key_values",
    "read_lines",
    "read_sysctl",
    "remove_path",
    "render_modules_load",
    "render_sysctl",
    "restore_fstab_swap",
    "write_if_changed",
]
