"""Live inspection of every provisioning concern.

Probes look at ground truth only (``/proc``, package databases, systemd and the
API server) and never at a record of what kubeseed ran before. Inspection
errors are reported as :attr:`Status.FAILED`, which is distinct from a concern
that is simply not yet satisfied.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass

from .. import host
from ..providers.cluster import ClusterError
from ..providers.command import CommandError
from ..providers.packages import PackageError, version_matches
from ..providers.systemd import SystemdError
from .models import Concern, ConcernState, ProvisionContext, default_order

PROBE_ERRORS: tuple[type[BaseException], ...] = (
    OSError,
    CommandError,
    SystemdError,
    PackageError,
    ClusterError,
)

_SYSTEMD_CGROUP_RE = re.compile(r"^[ \t]*SystemdCgroup[ \t]*=[ \t]*true[ \t]*$", re.MULTILINE)


@dataclass(slots=True, frozen=True)
class ProbeDefinition:
    """Concern + callable that inspects it."""

    concern: Concern
    run: Callable[[ProvisionContext], ConcernState]


def probe(concern: Concern, context: ProvisionContext) -> ConcernState:
    """Inspect *concern* on the live host."""
    definition = _PROBES[concern]
    try:
        return definition.run(context)
    except PROBE_ERRORS as exc:
        return ConcernState.failed(concern, f"inspection failed: {exc}")


def probe_all(
    context: ProvisionContext,
    order: Iterable[Concern] | None = None,
) -> list[ConcernState]:
    """Inspect every concern (in *order*, default declaration order)."""
    return [probe(concern, context) for concern in (order or default_order())]


def systemd_cgroup_enabled(runtime_config: str) -> bool:
    """Return ``True`` when a containerd config selects the systemd cgroup driver."""
    return bool(_SYSTEMD_CGROUP_RE.search(runtime_config))


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_probe(
    concern: Concern,
    handler: Callable[[ProvisionContext], ConcernState],
) -> ProbeDefinition:
    def _runner(context: ProvisionContext) -> ConcernState:
        return handler(context)

    return ProbeDefinition(concern=concern, run=_runner)


def _package_problems(
    context: ProvisionContext,
    packages: Iterable[str],
    pinned: str,
) -> list[str]:
    problems: list[str] = []
    for package in packages:
        installed = context.packages.installed_version(package)
        if installed is None:
            problems.append(f"{package} is not installed")
        elif not version_matches(installed, pinned):
            problems.append(f"{package} is {installed}, expected {pinned}")
    return problems


def _credential_current(context: ProvisionContext) -> bool:
    paths = context.config.paths
    credential = paths.credential
    if not credential.is_file() or host.file_mode(credential) != 0o600:
        return False
    return credential.read_bytes() == paths.admin_conf.read_bytes()


# ---------------------------------------------------------------------------
# Host concerns
# ---------------------------------------------------------------------------


def _probe_swap(context: ProvisionContext) -> ConcernState:
    paths = context.config.paths
    active = host.active_swaps(paths.proc_swaps)
    entries = host.fstab_swap_entries(paths.fstab)
    if not active and not entries:
        return ConcernState.satisfied(Concern.SWAP_DISABLED, "no active or persistent swap")
    problems: list[str] = []
    if active:
        problems.append(f"active swap: {', '.join(active)}")
    if entries:
        problems.append(f"{len(entries)} swap entries in {paths.fstab}")
    return ConcernState.unsatisfied(
        Concern.SWAP_DISABLED,
        "; ".join(problems),
        data={"active": active, "fstab_entries": entries},
    )


def _probe_kernel(context: ProvisionContext) -> ConcernState:
    config = context.config
    paths = config.paths
    problems: list[str] = []

    loaded = host.loaded_modules(paths.proc_modules)
    missing = [module for module in config.kernel.modules if module not in loaded]
    if missing:
        problems.append(f"modules not loaded: {', '.join(missing)}")

    listed = host.listed_modules(paths.modules_load_file)
    unlisted = [module for module in config.kernel.modules if module not in listed]
    if unlisted:
        problems.append(f"modules not persisted: {', '.join(unlisted)}")

    live_mismatch = _sysctl_mismatches(
        config.kernel.sysctl,
        {key: host.read_sysctl(paths.proc_sys, key) for key in config.kernel.sysctl},
    )
    if live_mismatch:
        problems.append(f"sysctl not applied: {', '.join(live_mismatch)}")

    persisted = host.parse_key_values(paths.sysctl_file)
    persisted_mismatch = _sysctl_mismatches(config.kernel.sysctl, persisted)
    if persisted_mismatch:
        problems.append(f"sysctl not persisted: {', '.join(persisted_mismatch)}")

    if problems:
        return ConcernState.unsatisfied(Concern.KERNEL_MODULES_LOADED, "; ".join(problems))
    return ConcernState.satisfied(
        Concern.KERNEL_MODULES_LOADED,
        f"{len(config.kernel.modules)} modules and {len(config.kernel.sysctl)} sysctls in place",
    )


def _sysctl_mismatches(
    expected: Mapping[str, str],
    observed: Mapping[str, str | None],
) -> list[str]:
    return [key for key, value in expected.items() if observed.get(key) != value]


def _probe_runtime(context: ProvisionContext) -> ConcernState:
    config = context.config
    runtime = config.runtime
    problems = _package_problems(context, [runtime.package], config.container_runtime_version)
    if problems:
        return ConcernState.unsatisfied(Concern.CONTAINER_RUNTIME_INSTALLED, "; ".join(problems))

    try:
        runtime_config = runtime.config_file.read_text(encoding="utf-8")
    except FileNotFoundError:
        runtime_config = ""
    if not systemd_cgroup_enabled(runtime_config):
        problems.append(f"{runtime.config_file} does not enable SystemdCgroup")
    if not context.systemd.is_active(runtime.service):
        problems.append(f"{runtime.service} is not running")
    if not context.systemd.is_enabled(runtime.service):
        problems.append(f"{runtime.service} is not enabled")
    if not runtime.socket.exists():
        problems.append(f"socket {runtime.socket} is missing")

    if problems:
        return ConcernState.unsatisfied(Concern.CONTAINER_RUNTIME_INSTALLED, "; ".join(problems))
    return ConcernState.satisfied(
        Concern.CONTAINER_RUNTIME_INSTALLED,
        f"{runtime.package} {config.container_runtime_version} running",
    )


def _probe_packages(context: ProvisionContext) -> ConcernState:
    config = context.config
    packages = config.packages
    problems = _package_problems(context, packages.kubernetes, config.kubernetes_version)
    held = context.packages.held_packages()
    unheld = [name for name in packages.kubernetes if name not in held]
    if unheld:
        problems.append(f"not held: {', '.join(unheld)}")
    if not context.systemd.is_enabled(packages.kubelet_service):
        problems.append(f"{packages.kubelet_service} is not enabled")
    if problems:
        return ConcernState.unsatisfied(
            Concern.CONTROL_PLANE_PACKAGES_INSTALLED, "; ".join(problems)
        )
    return ConcernState.satisfied(
        Concern.CONTROL_PLANE_PACKAGES_INSTALLED,
        f"{', '.join(packages.kubernetes)} {config.kubernetes_version} installed and held",
    )


# ---------------------------------------------------------------------------
# Cluster concerns
# ---------------------------------------------------------------------------


def _probe_initialized(context: ProvisionContext) -> ConcernState:
    paths = context.config.paths
    artifacts = [paths.admin_conf, paths.ca_cert, paths.apiserver_manifest]
    present = [str(path) for path in artifacts if path.exists()]
    if not present:
        return ConcernState.unsatisfied(
            Concern.CONTROL_PLANE_INITIALIZED, "no control-plane artifacts found"
        )

    healthy = paths.admin_conf.exists() and context.cluster(paths.admin_conf).is_healthy()
    if not healthy:
        return ConcernState.failed(
            Concern.CONTROL_PLANE_INITIALIZED,
            f"control-plane artifacts exist ({', '.join(present)}) but the API server is not "
            "healthy; run 'kubeseed reset' before initialising again",
            inconsistent=True,
            data={"artifacts": present},
        )

    if not _credential_current(context):
        return ConcernState.unsatisfied(
            Concern.CONTROL_PLANE_INITIALIZED,
            f"control plane is running but {paths.credential} is missing or stale",
            data={"live": True},
        )
    return ConcernState.satisfied(
        Concern.CONTROL_PLANE_INITIALIZED,
        f"API server healthy, credential exported to {paths.credential}",
    )


def _probe_network(context: ProvisionContext) -> ConcernState:
    config = context.config
    if not config.paths.credential.exists():
        return ConcernState.unsatisfied(
            Concern.POD_NETWORK_INSTALLED, "admin credential not exported yet"
        )
    cluster = context.cluster()
    if not cluster.is_healthy():
        return ConcernState.failed(Concern.POD_NETWORK_INSTALLED, "API server unreachable")
    network = config.network
    count = cluster.count_daemonsets(network.daemonset_selector, network.namespace, network.exclude)
    if count < 1:
        return ConcernState.unsatisfied(
            Concern.POD_NETWORK_INSTALLED, "no pod-network DaemonSet found"
        )
    return ConcernState.satisfied(
        Concern.POD_NETWORK_INSTALLED,
        f"{count} pod-network DaemonSet(s) present",
        data={"daemonsets": count},
    )


def _probe_node_ready(context: ProvisionContext) -> ConcernState:
    config = context.config
    if not config.paths.credential.exists():
        return ConcernState.unsatisfied(Concern.NODE_READY, "admin credential not exported yet")
    cluster = context.cluster()
    if not cluster.is_healthy():
        return ConcernState.failed(Concern.NODE_READY, "API server unreachable")
    record = cluster.node_readiness(config.node_name)
    if record is None:
        return ConcernState.unsatisfied(
            Concern.NODE_READY, f"node '{config.node_name}' has not registered"
        )
    if record.is_ready:
        return ConcernState.satisfied(
            Concern.NODE_READY, f"node '{config.node_name}' is Ready", data=record.to_dict()
        )
    return ConcernState.unsatisfied(
        Concern.NODE_READY,
        f"node '{config.node_name}' is {record.condition.value}: {record.reason or 'no reason'}",
        data=record.to_dict(),
    )


_PROBES: Mapping[Concern, ProbeDefinition] = {
    definition.concern: definition
    for definition in (
        _make_probe(Concern.SWAP_DISABLED, _probe_swap),
        _make_probe(Concern.KERNEL_MODULES_LOADED, _probe_kernel),
        _make_probe(Concern.CONTAINER_RUNTIME_INSTALLED, _probe_runtime),
        _make_probe(Concern.CONTROL_PLANE_PACKAGES_INSTALLED, _probe_packages),
        _make_probe(Concern.CONTROL_PLANE_INITIALIZED, _probe_initialized),
        _make_probe(Concern.POD_NETWORK_INSTALLED, _probe_network),
        _make_probe(Concern.NODE_READY, _probe_node_ready),
    )
}


__all__ = [
    "PROBE_ERRORS",
    "ProbeDefinition",
    "probe",
    "probe_all",
    "systemd_cgroup_enabled",
]
