"""Tests for the host-level convergence steps."""
from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING

import pytest

from kubeseed.errors import ApplyError
from kubeseed.provision import steps
from kubeseed.provision.models import Concern
from kubeseed.provision.probes import probe

if TYPE_CHECKING:
    from conftest import SimulatedHost


def test_swap_step_disables_live_and_persistent_swap(sim_host: SimulatedHost) -> None:
    """Swap is turned off now and commented out of fstab."""
    context = sim_host.context()

    outcome = steps.apply(Concern.SWAP_DISABLED, context)

    assert outcome.changed
    assert sim_host.commands("swapoff", "-a")
    assert probe(Concern.SWAP_DISABLED, context).is_satisfied

    sim_host.calls.clear()
    again = steps.apply(Concern.SWAP_DISABLED, context)
    assert again.summary() == "no changes needed"
    assert sim_host.calls == []


def test_kernel_step_loads_and_persists(sim_host: SimulatedHost) -> None:
    """Modules are loaded and persisted, sysctls written and applied."""
    context = sim_host.context()
    paths = sim_host.config.paths

    outcome = steps.apply(Concern.KERNEL_MODULES_LOADED, context)

    assert sim_host.calls == [
        ["modprobe", "overlay"],
        ["modprobe", "br_netfilter"],
        ["sysctl", "--system"],
    ]
    assert paths.modules_load_file.read_text(encoding="utf-8") == "overlay\nbr_netfilter\n"
    assert "net.ipv4.ip_forward = 1\n" in paths.sysctl_file.read_text(encoding="utf-8")
    assert "modprobe br_netfilter" in outcome.summary()
    assert probe(Concern.KERNEL_MODULES_LOADED, context).is_satisfied

    sim_host.calls.clear()
    assert not steps.apply(Concern.KERNEL_MODULES_LOADED, context).changed
    assert sim_host.calls == []


def test_kernel_step_reapplies_drifted_sysctl(sim_host: SimulatedHost) -> None:
    """A live value reset behind our back triggers ``sysctl --system`` only."""
    context = sim_host.context()
    steps.apply(Concern.KERNEL_MODULES_LOADED, context)
    forward = sim_host.config.paths.proc_sys / "net" / "ipv4" / "ip_forward"
    forward.write_text("0\n", encoding="utf-8")
    sim_host.calls.clear()

    outcome = steps.apply(Concern.KERNEL_MODULES_LOADED, context)

    assert outcome.actions == ["sysctl --system"]
    assert forward.read_text(encoding="utf-8") == "1\n"


def test_runtime_step_installs_configures_and_starts(sim_host: SimulatedHost) -> None:
    """A fresh runtime install uses the systemd cgroup driver and is enabled."""
    context = sim_host.context()
    runtime = sim_host.config.runtime

    steps.apply(Concern.CONTAINER_RUNTIME_INSTALLED, context)

    assert sim_host.installed["containerd"] == "1.7.12-1.1"
    assert sim_host.commands("apt-get", "update")
    assert "SystemdCgroup = true" in runtime.config_file.read_text(encoding="utf-8")
    assert sim_host.commands("systemctl", "enable", "containerd.service", "--now")
    assert sim_host.restarts == []
    assert probe(Concern.CONTAINER_RUNTIME_INSTALLED, context).is_satisfied

    sim_host.calls.clear()
    assert steps.apply(Concern.CONTAINER_RUNTIME_INSTALLED, context).summary() == (
        "no changes needed"
    )
    assert not sim_host.commands("apt-get")


def test_runtime_config_change_restarts_running_service(provisioned_host: SimulatedHost) -> None:
    """Rewriting the config of a running runtime restarts it exactly once."""
    config_file = provisioned_host.config.runtime.config_file
    config_file.write_text("version = 2\n", encoding="utf-8")

    outcome = steps.apply(Concern.CONTAINER_RUNTIME_INSTALLED, provisioned_host.context())

    assert provisioned_host.restarts == ["containerd"]
    assert "restarted containerd" in outcome.actions
    assert not provisioned_host.commands("apt-get", "install")


def test_enable_systemd_cgroup_variants() -> None:
    """Existing settings are flipped and missing ones inserted under runc options."""
    flipped = steps.enable_systemd_cgroup("    SystemdCgroup = false\n")
    assert flipped == "    SystemdCgroup = true\n"

    inserted = steps.enable_systemd_cgroup(
        "[plugins]\n"
        '  [plugins."io.containerd.grpc.v1.cri".containerd.runtimes.runc.options]\n'
        "    BinaryName = ''\n"
    )
    assert (
        '  [plugins."io.containerd.grpc.v1.cri".containerd.runtimes.runc.options]\n'
        "    SystemdCgroup = true\n"
    ) in inserted

    with pytest.raises(ApplyError, match="runc options section not found"):
        steps.enable_systemd_cgroup("version = 2\n")


def test_unusable_default_runtime_config_is_an_apply_error(sim_host: SimulatedHost) -> None:
    """A containerd build without a runc section cannot be configured."""
    sim_host.containerd_default = "version = 2\n"

    with pytest.raises(ApplyError) as excinfo:
        steps.apply(Concern.CONTAINER_RUNTIME_INSTALLED, sim_host.context())

    assert excinfo.value.concern is Concern.CONTAINER_RUNTIME_INSTALLED


def test_packages_step_configures_repository_and_pins(sim_host: SimulatedHost) -> None:
    """Kubernetes packages come from the pinned minor repository and are held."""
    context = sim_host.context()
    paths = sim_host.config.paths
    steps.apply(Concern.CONTAINER_RUNTIME_INSTALLED, context)
    sim_host.calls.clear()

    steps.apply(Concern.CONTROL_PLANE_PACKAGES_INSTALLED, context)

    (curl,) = sim_host.commands("curl")
    assert curl[-1] == "https://pkgs.k8s.io/core:/stable:/v1.30/deb/Release.key"
    assert paths.apt_sources_file.read_text(encoding="utf-8") == (
        f"deb [signed-by={paths.apt_keyring}] https://pkgs.k8s.io/core:/stable:/v1.30/deb/ /\n"
    )
    (install,) = sim_host.commands("apt-get", "install")
    assert install[-3:] == ["kubeadm=1.30.2-*", "kubelet=1.30.2-*", "kubectl=1.30.2-*"]
    assert sim_host.held == {"kubeadm", "kubelet", "kubectl"}
    assert "kubelet" in sim_host.enabled
    assert probe(Concern.CONTROL_PLANE_PACKAGES_INSTALLED, context).is_satisfied


def test_packages_step_only_installs_stale_packages(provisioned_host: SimulatedHost) -> None:
    """A single drifted package is reinstalled without touching the others."""
    provisioned_host.installed["kubectl"] = "1.29.6-1.1"

    steps.apply(Concern.CONTROL_PLANE_PACKAGES_INSTALLED, provisioned_host.context())

    (install,) = provisioned_host.commands("apt-get", "install")
    assert install[-1] == "kubectl=1.30.2-*"
    assert not provisioned_host.commands("curl")


def test_unmanaged_repository_is_left_alone(host_factory: Callable[..., SimulatedHost]) -> None:
    """Operators can supply their own package sources."""
    sim = host_factory(packages={"manage_repository": False})

    steps.apply(Concern.CONTROL_PLANE_PACKAGES_INSTALLED, sim.context())

    assert not sim.commands("curl")
    assert not sim.config.paths.apt_sources_file.exists()


def test_command_failures_become_apply_errors(sim_host: SimulatedHost) -> None:
    """Provider errors are reported against the concern being applied."""
    sim_host.fail("apt-get", "install", returncode=100, stderr="E: Failed to fetch containerd")

    with pytest.raises(ApplyError) as excinfo:
        steps.apply(Concern.CONTAINER_RUNTIME_INSTALLED, sim_host.context())

    error = excinfo.value
    assert error.concern is Concern.CONTAINER_RUNTIME_INSTALLED
    assert "Failed to fetch containerd" in str(error)


def test_cluster_concerns_have_no_host_step(sim_host: SimulatedHost) -> None:
    """Cluster concerns are handled by their dedicated modules."""
    assert Concern.CONTROL_PLANE_INITIALIZED not in steps.HOST_CONCERNS

    with pytest.raises(ApplyError, match="no host step"):
        steps.apply(Concern.NODE_READY, sim_host.context())
