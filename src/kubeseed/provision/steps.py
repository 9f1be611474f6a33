"""Convergent actions for the host-level concerns.

Each step performs the minimum needed to move its concern to Satisfied and is
safe to repeat: files are only rewritten when their content differs, packages
are only installed when the pinned version is missing, and services are only
restarted when their configuration changed. Verification is left to the
caller, which re-probes the concern afterwards.
"""
from __future__ import annotations

import logging
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field

from .. import host
from ..errors import ApplyError
from ..providers.command import CommandError
from ..providers.packages import PackageError, version_matches
from ..providers.systemd import SystemdError
from .models import Concern, ProvisionContext
from .probes import systemd_cgroup_enabled

LOGGER = logging.getLogger(__name__)

STEP_ERRORS: tuple[type[BaseException], ...] = (
    OSError,
    CommandError,
    SystemdError,
    PackageError,
)

_CGROUP_LINE_RE = re.compile(r"^([ \t]*)SystemdCgroup[ \t]*=[ \t]*\w+[ \t]*$", re.MULTILINE)
_RUNC_OPTIONS_RE = re.compile(
    r"^([ \t]*)\[plugins\.[^\]]*runtimes\.runc\.options\][ \t]*$",
    re.MULTILINE,
)


@dataclass(slots=True)
class StepOutcome:
    """Actions a step actually performed (empty when nothing was needed)."""

    concern: Concern
    actions: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        """Return ``True`` when the step modified the host."""
        return bool(self.actions)

    def summary(self) -> str:
        """Return a one-line description of the actions taken."""
        return "; ".join(self.actions) if self.actions else "no changes needed"


def apply(concern: Concern, context: ProvisionContext) -> StepOutcome:
    """Converge host-level *concern*; raise :class:`ApplyError` on failure."""
    handler = _STEPS.get(concern)
    if handler is None:
        raise ApplyError("no host step is defined for this concern", concern=concern)
    outcome = StepOutcome(concern)
    try:
        handler(context, outcome)
    except ApplyError:
        raise
    except STEP_ERRORS as exc:
        raise ApplyError(str(exc), concern=concern) from exc
    LOGGER.debug("%s: %s", concern.value, outcome.summary())
    return outcome


def enable_systemd_cgroup(runtime_config: str) -> str:
    """Return *runtime_config* with ``SystemdCgroup = true`` for the runc runtime."""
    if _CGROUP_LINE_RE.search(runtime_config):
        return _CGROUP_LINE_RE.sub(r"\1SystemdCgroup = true", runtime_config)
    match = _RUNC_OPTIONS_RE.search(runtime_config)
    if match is None:
        raise ApplyError(
            "runc options section not found in the default containerd configuration",
            concern=Concern.CONTAINER_RUNTIME_INSTALLED,
        )
    indent = match.group(1) + "  "
    insert_at = match.end()
    return (
        runtime_config[:insert_at]
        + f"\n{indent}SystemdCgroup = true"
        + runtime_config[insert_at:]
    )


def kubernetes_repository_line(context: ProvisionContext) -> str:
    """Return the apt sources entry for the pinned Kubernetes minor release."""
    config = context.config
    packages = config.packages
    return (
        f"deb [signed-by={config.paths.apt_keyring}] "
        f"{packages.repository_url}/v{config.kubernetes_minor}/deb/ /\n"
    )


# ---------------------------------------------------------------------------
# Step handlers
# ---------------------------------------------------------------------------


def _step_swap(context: ProvisionContext, outcome: StepOutcome) -> None:
    config = context.config
    paths = config.paths
    if host.active_swaps(paths.proc_swaps):
        context.runner.run([config.binaries.swapoff, "-a"])
        outcome.actions.append("swapoff -a")
    disabled = host.disable_fstab_swap(paths.fstab)
    if disabled:
        outcome.actions.append(f"commented {disabled} swap entries in {paths.fstab}")


def _step_kernel(context: ProvisionContext, outcome: StepOutcome) -> None:
    config = context.config
    paths = config.paths
    kernel = config.kernel

    if host.write_if_changed(paths.modules_load_file, host.render_modules_load(kernel.modules)):
        outcome.actions.append(f"wrote {paths.modules_load_file}")
    loaded = host.loaded_modules(paths.proc_modules)
    for module in kernel.modules:
        if module not in loaded:
            context.runner.run([config.binaries.modprobe, module])
            outcome.actions.append(f"modprobe {module}")

    persisted = host.write_if_changed(paths.sysctl_file, host.render_sysctl(kernel.sysctl))
    if persisted:
        outcome.actions.append(f"wrote {paths.sysctl_file}")
    stale = [
        key for key, value in kernel.sysctl.items()
        if host.read_sysctl(paths.proc_sys, key) != value
    ]
    if persisted or stale:
        context.runner.run([config.binaries.sysctl, "--system"])
        outcome.actions.append("sysctl --system")


def _step_runtime(context: ProvisionContext, outcome: StepOutcome) -> None:
    config = context.config
    runtime = config.runtime
    pinned = config.container_runtime_version

    installed = context.packages.installed_version(runtime.package)
    if not version_matches(installed, pinned):
        context.packages.update()
        context.packages.install([(runtime.package, pinned)])
        outcome.actions.append(f"installed {runtime.package} {pinned}")

    try:
        current = runtime.config_file.read_text(encoding="utf-8")
    except FileNotFoundError:
        current = ""
    config_changed = False
    if not systemd_cgroup_enabled(current):
        result = context.runner.run([config.binaries.containerd, "config", "default"])
        rendered = enable_systemd_cgroup(result.stdout)
        config_changed = host.write_if_changed(runtime.config_file, rendered)
        if config_changed:
            outcome.actions.append(f"wrote {runtime.config_file} with SystemdCgroup = true")

    was_active = context.systemd.is_active(runtime.service)
    if not was_active or not context.systemd.is_enabled(runtime.service):
        context.systemd.enable(runtime.service, now=True)
        outcome.actions.append(f"enabled {runtime.service}")
    if config_changed and was_active:
        context.systemd.restart(runtime.service)
        outcome.actions.append(f"restarted {runtime.service}")


def _step_packages(context: ProvisionContext, outcome: StepOutcome) -> None:
    config = context.config
    packages = config.packages
    pinned = config.kubernetes_version

    if packages.manage_repository:
        _ensure_kubernetes_repository(context, outcome)

    stale = [
        name for name in packages.kubernetes
        if not version_matches(context.packages.installed_version(name), pinned)
    ]
    if stale:
        context.packages.update()
        context.packages.install([(name, pinned) for name in stale])
        outcome.actions.append(f"installed {', '.join(stale)} {pinned}")

    held = context.packages.held_packages()
    unheld = [name for name in packages.kubernetes if name not in held]
    if unheld:
        context.packages.hold(unheld)
        outcome.actions.append(f"held {', '.join(unheld)}")

    if not context.systemd.is_enabled(packages.kubelet_service):
        context.systemd.enable(packages.kubelet_service)
        outcome.actions.append(f"enabled {packages.kubelet_service}")


def _ensure_kubernetes_repository(context: ProvisionContext, outcome: StepOutcome) -> None:
    config = context.config
    paths = config.paths
    if not paths.apt_keyring.exists():
        paths.apt_keyring.parent.mkdir(parents=True, exist_ok=True)
        key_url = f"{config.packages.repository_url}/v{config.kubernetes_minor}/deb/Release.key"
        context.runner.run(
            [config.binaries.curl, "-fsSL", "--retry", "3", "-o", str(paths.apt_keyring), key_url]
        )
        outcome.actions.append(f"fetched {paths.apt_keyring}")
    if host.write_if_changed(paths.apt_sources_file, kubernetes_repository_line(context)):
        outcome.actions.append(f"wrote {paths.apt_sources_file}")


_STEPS: Mapping[Concern, Callable[[ProvisionContext, StepOutcome], None]] = {
    Concern.SWAP_DISABLED: _step_swap,
    Concern.KERNEL_MODULES_LOADED: _step_kernel,
    Concern.CONTAINER_RUNTIME_INSTALLED: _step_runtime,
    Concern.CONTROL_PLANE_PACKAGES_INSTALLED: _step_packages,
}

HOST_CONCERNS: tuple[Concern, ...] = tuple(_STEPS)


__all__ = [
    "HOST_CONCERNS",
    "STEP_ERRORS",
    "StepOutcome",
    "apply",
    "enable_systemd_cgroup",
    "kubernetes_repository_line",
]
