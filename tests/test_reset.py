"""Tests for tearing a provisioned host back down."""
from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING

import pytest

from kubeseed import host as host_files
from kubeseed.errors import ResetError
from kubeseed.exit_codes import ExitCode
from kubeseed.provision.engine import Orchestrator
from kubeseed.provision.reset import plan_reset, reset

if TYPE_CHECKING:
    from conftest import SimulatedHost

EXPECTED_ACTIONS = [
    "kubeadm-reset",
    "remove-credential",
    "remove-kubernetes-dir",
    "remove-etcd-data",
    "remove-cni-config",
    "remove-kubeadm-config",
    "disable-kubelet",
    "purge-kubernetes-packages",
    "remove-kubernetes-repository",
    "remove-kubernetes-keyring",
    "disable-container-runtime",
    "purge-container-runtime",
    "remove-runtime-config",
    "remove-modules-load-file",
    "remove-sysctl-file",
    "restore-swap",
]


def test_plan_reset_order(sim_host: SimulatedHost) -> None:
    """Cluster state goes first and host preparation is undone last."""
    assert [label for label, _ in plan_reset(sim_host.context())] == EXPECTED_ACTIONS


def test_reset_removes_everything(provisioned_host: SimulatedHost) -> None:
    """Every artifact kubeseed created is removed and swap comes back."""
    paths = provisioned_host.config.paths

    report = reset(provisioned_host.context())

    assert [item.action for item in report.actions] == EXPECTED_ACTIONS
    assert all(item.ok for item in report.actions)
    assert provisioned_host.commands("kubeadm", "reset")
    for path in (
        paths.credential,
        paths.kubernetes_dir,
        paths.etcd_dir,
        paths.cni_dir,
        paths.kubeadm_config,
        paths.apt_sources_file,
        paths.modules_load_file,
        paths.sysctl_file,
        provisioned_host.config.runtime.config_file,
    ):
        assert not path.exists(), path
    assert provisioned_host.installed == {}
    assert provisioned_host.held == set()
    assert provisioned_host.active == set()
    assert host_files.fstab_swap_entries(paths.fstab) == ["/swapfile none swap sw 0 0"]
    assert host_files.active_swaps(paths.proc_swaps) == ["/swapfile"]
    assert report.to_dict()["failed"] == 0


def test_reset_on_fresh_host_skips_work(sim_host: SimulatedHost) -> None:
    """Nothing installed means nothing to stop or purge."""
    report = reset(sim_host.context())

    details = {item.action: item.detail for item in report.actions}
    assert details["kubeadm-reset"] == "kubeadm not installed; skipped"
    assert details["purge-kubernetes-packages"] == "nothing installed"
    assert details["restore-swap"] == "no swap entries to restore"
    assert details["remove-credential"].endswith("already absent")
    assert not sim_host.commands("kubeadm")
    assert not sim_host.commands("apt-get")
    assert not sim_host.commands("swapon")


def test_swapless_host_stays_swapless(host_factory: Callable[..., SimulatedHost]) -> None:
    """Reset only restores swap entries kubeseed itself disabled."""
    host = host_factory(swap=False)
    Orchestrator(host.context()).run()

    reset(host.context())

    assert host_files.fstab_swap_entries(host.config.paths.fstab) == []
    assert not host.commands("swapon")


def test_failures_are_aggregated(provisioned_host: SimulatedHost) -> None:
    """Failing actions do not stop later ones; all failures are reported together."""
    provisioned_host.fail("kubeadm", "reset", stderr="etcd member removal failed")
    provisioned_host.fail("apt-get", "purge", stderr="dpkg lock held")

    with pytest.raises(ResetError) as excinfo:
        reset(provisioned_host.context())

    error = excinfo.value
    assert error.exit_code is ExitCode.RESET
    assert [action for action, _ in error.failures] == [
        "kubeadm-reset",
        "purge-kubernetes-packages",
        "purge-container-runtime",
    ]
    assert "etcd member removal failed" in error.failures[0][1]
    assert error.report is not None
    assert [item.action for item in error.report.actions] == EXPECTED_ACTIONS
    assert not provisioned_host.config.paths.kubernetes_dir.exists()
    assert provisioned_host.commands("swapon")
    payload = error.to_dict()
    assert payload["exit_code"] == 8
    assert len(payload["failures"]) == 3


def test_kubeadm_reset_uses_configured_binary(host_factory: Callable[..., SimulatedHost]) -> None:
    """A relocated kubeadm binary is the one that tears the cluster down."""
    host = host_factory(binaries={"kubeadm": "/opt/k8s/bin/kubeadm"})
    Orchestrator(host.context()).run()

    report = reset(host.context())

    assert host.commands("/opt/k8s/bin/kubeadm", "reset")
    assert report.actions[0].detail == "kubeadm reset completed"


def test_unmanaged_kubeadm_is_always_reset(host_factory: Callable[..., SimulatedHost]) -> None:
    """kubeadm installed outside the managed package list is still run."""
    host = host_factory(packages={"kubernetes": ["kubelet", "kubectl"]})

    report = reset(host.context())

    assert host.commands("kubeadm", "reset")
    assert not host.commands("dpkg-query", "-W", "-f", "${Status}\t${Version}", "kubeadm")
    assert report.actions[0].ok
