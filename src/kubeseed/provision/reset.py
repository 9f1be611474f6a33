"""Tear a provisioned host back down to its pre-kubeseed state.

Reset is best effort: every action is attempted in order even when an earlier
one fails, and failures are aggregated into a single :class:`ResetError` at
the end. It is only ever reached through an explicit operator request.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path

from .. import host
from ..errors import ResetError
from ..providers.command import CommandError
from ..providers.kubeadm import KubeadmError
from ..providers.packages import PackageError
from ..providers.systemd import SystemdError
from .models import ProvisionContext, ResetAction, ResetReport

LOGGER = logging.getLogger(__name__)

RESET_ERRORS: tuple[type[BaseException], ...] = (
    OSError,
    CommandError,
    KubeadmError,
    PackageError,
    SystemdError,
)

ResetStep = Callable[[], str]


def plan_reset(context: ProvisionContext) -> list[tuple[str, ResetStep]]:
    """Return the ordered ``(action, callable)`` pairs that make up a reset."""
    config = context.config
    paths = config.paths
    steps: list[tuple[str, ResetStep]] = [
        ("kubeadm-reset", lambda: _kubeadm_reset(context)),
    ]
    for label, path in (
        ("remove-credential", paths.credential),
        ("remove-kubernetes-dir", paths.kubernetes_dir),
        ("remove-etcd-data", paths.etcd_dir),
        ("remove-cni-config", paths.cni_dir),
        ("remove-kubeadm-config", paths.kubeadm_config),
    ):
        steps.append((label, _remover(path)))
    steps.extend(
        [
            (
                "disable-kubelet",
                lambda: _disable_service(context, config.packages.kubelet_service, "kubelet"),
            ),
            ("purge-kubernetes-packages", lambda: _purge(context, config.packages.kubernetes)),
            ("remove-kubernetes-repository", _remover(paths.apt_sources_file)),
            ("remove-kubernetes-keyring", _remover(paths.apt_keyring)),
            (
                "disable-container-runtime",
                lambda: _disable_service(context, config.runtime.service, config.runtime.package),
            ),
            ("purge-container-runtime", lambda: _purge(context, (config.runtime.package,))),
            ("remove-runtime-config", _remover(config.runtime.config_file)),
            ("remove-modules-load-file", _remover(paths.modules_load_file)),
            ("remove-sysctl-file", _remover(paths.sysctl_file)),
            ("restore-swap", lambda: _restore_swap(context)),
        ]
    )
    return steps


def reset(context: ProvisionContext) -> ResetReport:
    """Run every reset action; raise :class:`ResetError` if any failed."""
    report = ResetReport()
    for action, step in plan_reset(context):
        try:
            detail = step()
        except RESET_ERRORS as exc:
            LOGGER.warning("Reset action %s failed: %s", action, exc)
            report.actions.append(ResetAction(action, False, str(exc)))
            continue
        report.actions.append(ResetAction(action, True, detail))
    if report.failures:
        raise ResetError(report.failures, report=report)
    return report


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------


def _kubeadm_reset(context: ProvisionContext) -> str:
    config = context.config
    kubeadm = Path(config.binaries.kubeadm).name
    managed = kubeadm in config.packages.kubernetes
    if managed and context.packages.installed_version(kubeadm) is None:
        return f"{kubeadm} not installed; skipped"
    context.kubeadm.reset(config.runtime.cri_socket)
    return f"{kubeadm} reset completed"


def _remover(path: Path) -> ResetStep:
    def _remove() -> str:
        if host.remove_path(path):
            return f"removed {path}"
        return f"{path} already absent"

    return _remove


def _disable_service(context: ProvisionContext, service: str, package: str) -> str:
    if context.packages.installed_version(package) is None:
        return f"{package} not installed; skipped"
    context.systemd.disable(service, now=True)
    return f"stopped and disabled {service}"


def _purge(context: ProvisionContext, packages: tuple[str, ...]) -> str:
    installed = [name for name in packages if context.packages.installed_version(name)]
    if not installed:
        return "nothing installed"
    held = context.packages.held_packages()
    context.packages.unhold([name for name in installed if name in held])
    context.packages.purge(installed)
    return f"purged {', '.join(installed)}"


def _restore_swap(context: ProvisionContext) -> str:
    config = context.config
    restored = host.restore_fstab_swap(config.paths.fstab)
    if not restored:
        return "no swap entries to restore"
    context.runner.run([config.binaries.swapon, "-a"])
    return f"restored {restored} swap entries and ran swapon -a"


__all__ = ["RESET_ERRORS", "plan_reset", "reset"]
