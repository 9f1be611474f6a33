"""Tests for the systemd provider."""
from __future__ import annotations

import subprocess
from collections.abc import Sequence

import pytest

from kubeseed.providers.command import CommandError, error_from_result
from kubeseed.providers.systemd import SystemdError, SystemdProvider


class RecordingRunner:
    """Runner returning canned results keyed by systemctl sub-command."""

    def __init__(self, results: dict[str, tuple[int, str]] | None = None) -> None:
        self.results = results or {}
        self.calls: list[list[str]] = []

    def run(
        self,
        args: Sequence[str],
        *,
        check: bool = True,
        **_: object,
    ) -> subprocess.CompletedProcess[str]:
        command = list(args)
        self.calls.append(command)
        returncode, stdout = self.results.get(command[1], (0, ""))
        result = subprocess.CompletedProcess(command, returncode, stdout, "")
        if check and returncode != 0:
            raise error_from_result(result)
        return result


def _provider(runner: RecordingRunner) -> SystemdProvider:
    return SystemdProvider(runner=runner)  # type: ignore[arg-type]


def test_is_active_requires_active_state() -> None:
    """Only an ``active`` answer with exit 0 counts as running."""
    runner = RecordingRunner({"is-active": (0, "active\n")})
    assert _provider(runner).is_active("containerd") is True
    assert runner.calls == [["systemctl", "is-active", "containerd.service"]]

    runner = RecordingRunner({"is-active": (3, "activating\n")})
    assert _provider(runner).is_active("containerd") is False


@pytest.mark.parametrize(
    ("answer", "expected"),
    [
        ((0, "enabled\n"), True),
        ((0, "static\n"), True),
        ((1, "disabled\n"), False),
        ((4, ""), False),
    ],
)
def test_is_enabled_states(answer: tuple[int, str], expected: bool) -> None:
    """Enabled, enabled-runtime and static units start at boot."""
    runner = RecordingRunner({"is-enabled": answer})

    assert _provider(runner).is_enabled("kubelet") is expected


def test_unit_names_keep_explicit_suffixes() -> None:
    """Services given with a unit suffix are passed through unchanged."""
    provider = _provider(RecordingRunner())

    assert provider.unit_name("kubelet") == "kubelet.service"
    assert provider.unit_name("containerd.socket") == "containerd.socket"


def test_enable_and_disable_with_now() -> None:
    """``now=True`` appends ``--now`` so the unit starts or stops immediately."""
    runner = RecordingRunner()
    provider = _provider(runner)

    provider.enable("containerd", now=True)
    provider.enable("kubelet")
    provider.disable("kubelet", now=True)
    provider.restart("containerd")

    assert runner.calls == [
        ["systemctl", "enable", "containerd.service", "--now"],
        ["systemctl", "enable", "kubelet.service"],
        ["systemctl", "disable", "kubelet.service", "--now"],
        ["systemctl", "restart", "containerd.service"],
    ]
    assert not hasattr(provider, "start")
    assert not hasattr(provider, "daemon_reload")


def test_failures_are_wrapped_in_systemd_error() -> None:
    """Command failures surface as SystemdError with the original cause."""
    runner = RecordingRunner({"restart": (1, "Job for containerd.service failed")})

    with pytest.raises(SystemdError, match="systemctl restart failed") as excinfo:
        _provider(runner).restart("containerd")

    assert isinstance(excinfo.value.__cause__, CommandError)
