"""Pytest configuration helpers for the test suite.

Most provisioning tests run against :class:`SimulatedHost`, a tmp-rooted fake
machine. It stands in for the command runner (answering ``systemctl``,
``apt-get``, ``kubeadm`` and friends by mutating its own state) and for the
cluster API, so probes and steps exercise their real code paths end to end.
"""

from __future__ import annotations

import os
import shlex
import subprocess
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest

from kubeseed import host as host_files
from kubeseed.config import AppConfig, load_config
from kubeseed.providers.cluster import ClusterError
from kubeseed.providers.command import error_from_result
from kubeseed.providers.kubeadm import KubeadmProvider
from kubeseed.providers.packages import PackageProvider
from kubeseed.providers.systemd import SystemdProvider
from kubeseed.provision.engine import Orchestrator
from kubeseed.provision.models import NodeCondition, NodeReadinessRecord, ProvisionContext

PROC_SWAPS_HEADER = "Filename\t\t\t\tType\t\tSize\t\tUsed\t\tPriority"

DEFAULT_CONTAINERD_CONFIG = """version = 2

[plugins]
  [plugins."io.containerd.grpc.v1.cri"]
    [plugins."io.containerd.grpc.v1.cri".containerd]
      [plugins."io.containerd.grpc.v1.cri".containerd.runtimes]
        [plugins."io.containerd.grpc.v1.cri".containerd.runtimes.runc]
          runtime_type = "io.containerd.runc.v2"
          [plugins."io.containerd.grpc.v1.cri".containerd.runtimes.runc.options]
            SystemdCgroup = false
"""


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


def _merge(base: dict[str, object], extra: Mapping[str, object]) -> dict[str, object]:
    for key, value in extra.items():
        current = base.get(key)
        if isinstance(current, dict) and isinstance(value, Mapping):
            _merge(current, value)
        else:
            base[key] = value
    return base


def config_values(root: Path) -> dict[str, object]:
    """Return complete configuration overrides rooted under *root*."""
    return {
        "kubernetes_version": "1.30.2",
        "container_runtime_version": "1.7.12",
        "pod_network_cidr": "192.168.0.0/16",
        "api_advertise_address": "10.0.0.10",
        "node_name": "cp-1",
        "cni_manifest_source": "https://example.test/calico.yaml",
        "readiness": {"timeout": 5, "interval": 0.01, "max_interval": 0.05},
        "runtime": {
            "socket": str(root / "run" / "containerd" / "containerd.sock"),
            "config_file": str(root / "etc" / "containerd" / "config.toml"),
        },
        "paths": {
            "proc_swaps": str(root / "proc" / "swaps"),
            "proc_modules": str(root / "proc" / "modules"),
            "proc_sys": str(root / "proc" / "sys"),
            "fstab": str(root / "etc" / "fstab"),
            "modules_load_file": str(root / "etc" / "modules-load.d" / "kubeseed.conf"),
            "sysctl_file": str(root / "etc" / "sysctl.d" / "99-kubeseed.conf"),
            "kubernetes_dir": str(root / "etc" / "kubernetes"),
            "etcd_dir": str(root / "var" / "lib" / "etcd"),
            "cni_dir": str(root / "etc" / "cni" / "net.d"),
            "kubeadm_config": str(root / "etc" / "kubeseed" / "kubeadm.yaml"),
            "credential": str(root / "root" / ".kube" / "config"),
            "apt_sources_file": str(root / "etc" / "apt" / "sources.list.d" / "kubernetes.list"),
            "apt_keyring": str(root / "etc" / "apt" / "keyrings" / "kubernetes.asc"),
            "logs_dir": str(root / "var" / "log" / "kubeseed"),
        },
    }


def make_config(root: Path, **overrides: object) -> AppConfig:
    """Build an :class:`AppConfig` whose host paths all live under *root*."""
    values = _merge(config_values(root), overrides)
    return load_config(root / "etc" / "kubeseed" / "config.yml", env={}, overrides=values)


@dataclass
class FakeClusterState:
    """Mutable API-server state shared by every :class:`FakeCluster` handle."""

    healthy: bool = False
    unreachable: bool = False
    nodes: set[str] = field(default_factory=set)
    daemonsets: list[str] = field(default_factory=list)
    network_applied: bool = False
    ready_after: int | None = 2
    polls: int = 0
    not_ready_reason: str = "KubeletNotReady"
    not_ready_message: str = "container runtime network not ready: cni plugin not initialized"

    def clear(self) -> None:
        self.healthy = False
        self.nodes.clear()
        self.daemonsets.clear()
        self.network_applied = False
        self.polls = 0


class FakeCluster:
    """Implements the cluster queries used by probes against :class:`FakeClusterState`."""

    def __init__(self, state: FakeClusterState, kubeconfig: Path) -> None:
        self.state = state
        self.kubeconfig = kubeconfig

    def is_healthy(self) -> bool:
        if self.state.unreachable:
            return False
        return self.state.healthy and self.kubeconfig.exists()

    def node_readiness(self, node_name: str) -> NodeReadinessRecord | None:
        if self.state.unreachable:
            raise ClusterError("API server unreachable: connection refused")
        if node_name not in self.state.nodes:
            return None
        if self.state.network_applied:
            self.state.polls += 1
        ready = (
            self.state.network_applied
            and self.state.ready_after is not None
            and self.state.polls >= self.state.ready_after
        )
        if ready:
            return NodeReadinessRecord(node_name, NodeCondition.READY, reason="KubeletReady")
        return NodeReadinessRecord(
            node_name,
            NodeCondition.NOT_READY,
            reason=self.state.not_ready_reason,
            message=self.state.not_ready_message,
        )

    def count_daemonsets(
        self,
        selector: str,
        namespace: str | None,
        exclude: Sequence[str],
    ) -> int:
        if self.state.unreachable:
            raise ClusterError("API server unreachable: connection refused")
        return sum(1 for name in self.state.daemonsets if name not in exclude)


@dataclass
class _Failure:
    prefix: tuple[str, ...]
    returncode: int
    stderr: str
    times: int | None


class SimulatedHost:
    """A fake single-node machine answering the commands kubeseed runs."""

    INIT_TOKEN = "abcdef.0123456789abcdef"
    MINTED_TOKEN = "zyxwvu.fedcba9876543210"
    CA_HASH = "sha256:" + "ab" * 32

    def __init__(self, root: Path, config: AppConfig) -> None:
        self.root = root
        self.config = config
        self.installed: dict[str, str] = {}
        self.held: set[str] = set()
        self.active: set[str] = set()
        self.enabled: set[str] = set()
        self.restarts: list[str] = []
        self.calls: list[list[str]] = []
        self.cluster = FakeClusterState()
        self.containerd_default = DEFAULT_CONTAINERD_CONFIG
        self.print_join_on_init = True
        self.print_ca_hash = True
        self.ca_pem = "-----BEGIN CERTIFICATE-----\n"
        self._failures: list[_Failure] = []

    # ------------------------------------------------------------------
    # Setup helpers
    # ------------------------------------------------------------------
    def fresh(self, *, swap: bool = True) -> SimulatedHost:
        """Populate the state of an untouched machine."""
        paths = self.config.paths
        swaps = [PROC_SWAPS_HEADER]
        fstab = ["UUID=0a1b2c / ext4 errors=remount-ro 0 1"]
        if swap:
            swaps.append("/swapfile\tfile\t\t2097148\t\t0\t\t-2")
            fstab.append("/swapfile none swap sw 0 0")
        self._write(paths.proc_swaps, "\n".join(swaps) + "\n")
        self._write(paths.fstab, "\n".join(fstab) + "\n")
        self._write(paths.proc_modules, "ext4 1003520 1 - Live 0x0000000000000000\n")
        for key in self.config.kernel.sysctl:
            self._write(paths.proc_sys.joinpath(*key.split(".")), "0\n")
        return self

    def fail(
        self,
        *prefix: str,
        returncode: int = 1,
        stderr: str = "simulated failure",
        times: int | None = None,
    ) -> None:
        """Make commands starting with *prefix* fail (``times`` limits how often)."""
        self._failures.append(_Failure(tuple(prefix), returncode, stderr, times))

    def context(self, **kwargs: object) -> ProvisionContext:
        """Return a provisioning context wired to this host."""
        runner: Any = self
        binaries = self.config.binaries
        return ProvisionContext(
            config=self.config,
            runner=runner,
            systemd=SystemdProvider(runner=runner, systemctl_bin=binaries.systemctl),
            packages=PackageProvider(
                runner=runner,
                apt_get_bin=binaries.apt_get,
                apt_mark_bin=binaries.apt_mark,
                dpkg_query_bin=binaries.dpkg_query,
            ),
            kubeadm=KubeadmProvider(runner=runner, kubeadm_bin=binaries.kubeadm),
            cluster_factory=self.cluster_client,
            **kwargs,  # type: ignore[arg-type]
        )

    def cluster_client(self, kubeconfig: Path) -> FakeCluster:
        return FakeCluster(self.cluster, kubeconfig)

    def commands(self, *prefix: str) -> list[list[str]]:
        """Return recorded invocations starting with *prefix*."""
        return [call for call in self.calls if tuple(call[: len(prefix)]) == prefix]

    # ------------------------------------------------------------------
    # Runner protocol
    # ------------------------------------------------------------------
    def run(
        self,
        args: Sequence[str],
        *,
        check: bool = True,
        timeout: float | None = None,
    ) -> subprocess.CompletedProcess[str]:
        command = [str(item) for item in args]
        self.calls.append(command)
        failure = self._match_failure(command)
        if failure is not None:
            returncode, stdout, stderr = failure.returncode, "", failure.stderr
        else:
            returncode, stdout, stderr = self._dispatch(command)
        result = subprocess.CompletedProcess(command, returncode, stdout, stderr)
        if check and returncode != 0:
            raise error_from_result(result)
        return result

    def _match_failure(self, command: list[str]) -> _Failure | None:
        for failure in self._failures:
            if tuple(command[: len(failure.prefix)]) != failure.prefix:
                continue
            if failure.times is not None:
                if failure.times <= 0:
                    continue
                failure.times -= 1
            return failure
        return None

    def _dispatch(self, command: list[str]) -> tuple[int, str, str]:
        name = Path(command[0]).name.replace("-", "_")
        handler = getattr(self, f"_cmd_{name}", None)
        if handler is None:
            raise AssertionError(f"unexpected command: {shlex.join(command)}")
        return handler(command[1:])

    # ------------------------------------------------------------------
    # Command handlers
    # ------------------------------------------------------------------
    def _cmd_swapoff(self, args: list[str]) -> tuple[int, str, str]:
        self._write(self.config.paths.proc_swaps, PROC_SWAPS_HEADER + "\n")
        return 0, "", ""

    def _cmd_swapon(self, args: list[str]) -> tuple[int, str, str]:
        lines = [PROC_SWAPS_HEADER]
        for entry in host_files.fstab_swap_entries(self.config.paths.fstab):
            lines.append(f"{entry.split()[0]}\tfile\t\t2097148\t\t0\t\t-2")
        self._write(self.config.paths.proc_swaps, "\n".join(lines) + "\n")
        return 0, "", ""

    def _cmd_modprobe(self, args: list[str]) -> tuple[int, str, str]:
        path = self.config.paths.proc_modules
        content = path.read_text(encoding="utf-8")
        path.write_text(content + f"{args[-1]} 32768 0 - Live 0x0000000000000000\n", "utf-8")
        return 0, "", ""

    def _cmd_sysctl(self, args: list[str]) -> tuple[int, str, str]:
        assert args == ["--system"]
        paths = self.config.paths
        for key, value in host_files.parse_key_values(paths.sysctl_file).items():
            self._write(paths.proc_sys.joinpath(*key.split(".")), f"{value}\n")
        return 0, "* Applying /etc/sysctl.d/99-kubeseed.conf ...\n", ""

    def _cmd_dpkg_query(self, args: list[str]) -> tuple[int, str, str]:
        package = args[-1]
        if package in self.installed:
            return 0, f"install ok installed\t{self.installed[package]}", ""
        return 1, "", f"dpkg-query: no packages found matching {package}"

    def _cmd_apt_mark(self, args: list[str]) -> tuple[int, str, str]:
        action, names = args[0], args[1:]
        if action == "showhold":
            return 0, "".join(f"{name}\n" for name in sorted(self.held)), ""
        if action == "hold":
            self.held.update(names)
        elif action == "unhold":
            self.held.difference_update(names)
        return 0, "", ""

    def _cmd_apt_get(self, args: list[str]) -> tuple[int, str, str]:
        action = args[0]
        operands = [item for item in args[1:] if not item.startswith("-") and "::" not in item]
        if action == "install":
            for spec in operands:
                name, _, version = spec.partition("=")
                if version.endswith("-*"):
                    version = version[:-2] + "-1.1"
                self.installed[name] = version
        elif action == "purge":
            for name in operands:
                self.installed.pop(name, None)
        return 0, "", ""

    def _cmd_systemctl(self, args: list[str]) -> tuple[int, str, str]:
        action = args[0]
        service = args[1].removesuffix(".service") if len(args) > 1 else ""
        if action == "is-active":
            if service in self.active:
                return 0, "active\n", ""
            return 3, "inactive\n", ""
        if action == "is-enabled":
            if service in self.enabled:
                return 0, "enabled\n", ""
            return 1, "disabled\n", ""
        if action == "enable":
            self.enabled.add(service)
            if "--now" in args:
                self._start(service)
        elif action == "disable":
            self.enabled.discard(service)
            if "--now" in args:
                self._stop(service)
        elif action == "restart":
            self.restarts.append(service)
            self._start(service)
        return 0, "", ""

    def _cmd_containerd(self, args: list[str]) -> tuple[int, str, str]:
        assert args == ["config", "default"]
        return 0, self.containerd_default, ""

    def _cmd_curl(self, args: list[str]) -> tuple[int, str, str]:
        self._write(Path(args[args.index("-o") + 1]), "-----BEGIN PGP PUBLIC KEY BLOCK-----\n")
        return 0, "", ""

    def _cmd_kubeadm(self, args: list[str]) -> tuple[int, str, str]:
        paths = self.config.paths
        endpoint = self.config.api_endpoint
        if args[0] == "init":
            self._write(paths.admin_conf, f"apiVersion: v1\nkind: Config\n# {endpoint}\n")
            self._write(paths.ca_cert, self.ca_pem)
            self._write(paths.apiserver_manifest, "apiVersion: v1\nkind: Pod\n")
            paths.etcd_dir.mkdir(parents=True, exist_ok=True)
            self.cluster.clear()
            self.cluster.healthy = True
            self.cluster.nodes.add(self.config.node_name)
            output = "Your Kubernetes control-plane has initialized successfully!\n"
            if self.print_join_on_init:
                output += f"kubeadm join {endpoint} --token {self.INIT_TOKEN}" + self._pin()
            return 0, output, ""
        if args[:2] == ["token", "create"]:
            return 0, f"kubeadm join {endpoint} --token {self.MINTED_TOKEN}" + self._pin(), ""
        if args[0] == "reset":
            for path in (paths.admin_conf, paths.ca_cert.parent, paths.apiserver_manifest.parent):
                host_files.remove_path(path)
            self.cluster.clear()
            return 0, "[reset] Stopping the kubelet service\n", ""
        raise AssertionError(f"unexpected kubeadm call: {args}")

    def _cmd_kubectl(self, args: list[str]) -> tuple[int, str, str]:
        assert "apply" in args
        if not self.cluster.healthy:
            return (
                1,
                "",
                "The connection to the server 10.0.0.10:6443 was refused - "
                "did you specify the right host or port?",
            )
        self.cluster.daemonsets.append("calico-node")
        self.cluster.network_applied = True
        self.cluster.polls = 0
        self._write(self.config.paths.cni_dir / "10-calico.conflist", "{}\n")
        return 0, "daemonset.apps/calico-node created\n", ""

    def _pin(self) -> str:
        if not self.print_ca_hash:
            return "\n"
        return f" \\\n\t--discovery-token-ca-cert-hash {self.CA_HASH}\n"

    # ------------------------------------------------------------------
    def _start(self, service: str) -> None:
        self.active.add(service)
        if service == self.config.runtime.service:
            self._write(self.config.runtime.socket, "")

    def _stop(self, service: str) -> None:
        self.active.discard(service)
        if service == self.config.runtime.service:
            self.config.runtime.socket.unlink(missing_ok=True)

    @staticmethod
    def _write(path: Path, content: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")


@pytest.fixture
def sim_host(tmp_path: Path) -> SimulatedHost:
    """Return a fresh simulated machine with swap enabled."""
    return SimulatedHost(tmp_path, make_config(tmp_path)).fresh()


@pytest.fixture
def provisioned_host(sim_host: SimulatedHost) -> SimulatedHost:
    """Return a simulated machine on which every concern is satisfied."""
    Orchestrator(sim_host.context()).run()
    sim_host.calls.clear()
    return sim_host


@pytest.fixture
def host_factory(tmp_path: Path) -> Callable[..., SimulatedHost]:
    """Return a builder for simulated machines with configuration overrides."""

    def _build(*, swap: bool = True, **overrides: object) -> SimulatedHost:
        return SimulatedHost(tmp_path, make_config(tmp_path, **overrides)).fresh(swap=swap)

    return _build


@pytest.fixture
def config_factory(tmp_path: Path) -> Callable[..., AppConfig]:
    """Return a builder for tmp-rooted configurations."""

    def _build(**overrides: object) -> AppConfig:
        return make_config(tmp_path, **overrides)

    return _build
