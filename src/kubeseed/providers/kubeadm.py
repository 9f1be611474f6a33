"""Wrapper around the ``kubeadm`` binary."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from .command import CommandError, CommandRunner


class KubeadmError(RuntimeError):
    """Raised when a kubeadm invocation fails."""

    def __init__(self, message: str, *, output: str = "") -> None:
        """Keep the combined kubeadm output for diagnostics."""
        super().__init__(message)
        self.output = output


@dataclass(slots=True)
class KubeadmProvider:
    """Run kubeadm phases needed by the control-plane lifecycle."""

    runner: CommandRunner = field(default_factory=CommandRunner)
    kubeadm_bin: str = "kubeadm"
    init_timeout: float = 900.0

    def init(self, config_path: Path) -> str:
        """Run ``kubeadm init`` with *config_path* and return its output."""
        args = [self.kubeadm_bin, "init", "--config", str(config_path)]
        try:
            result = self.runner.run(args, timeout=self.init_timeout)
        except CommandError as exc:
            raise KubeadmError(f"kubeadm init failed: {exc}", output=exc.output) from exc
        return "\n".join(part for part in (result.stdout, result.stderr) if part)

    def create_token(self, ttl_seconds: int, kubeconfig: Path) -> str:
        """Mint a bootstrap token and return the printed join command."""
        args = [
            self.kubeadm_bin,
            "token",
            "create",
            "--ttl",
            f"{ttl_seconds}s",
            "--print-join-command",
            "--kubeconfig",
            str(kubeconfig),
        ]
        try:
            result = self.runner.run(args)
        except CommandError as exc:
            raise KubeadmError(f"kubeadm token create failed: {exc}", output=exc.output) from exc
        return (result.stdout or "").strip()

    def reset(self, cri_socket: str) -> None:
        """Run ``kubeadm reset`` non-interactively."""
        args = [self.kubeadm_bin, "reset", "--force", "--cri-socket", cri_socket]
        try:
            self.runner.run(args, timeout=self.init_timeout)
        except CommandError as exc:
            raise KubeadmError(f"kubeadm reset failed: {exc}", output=exc.output) from exc


__all__ = ["KubeadmError", "KubeadmProvider"]
