"""Provider interfaces for kubeseed."""
from __future__ import annotations

from .cluster import ClusterClient, ClusterError
from .command import CommandError, CommandRunner
from .kubeadm import KubeadmError, KubeadmProvider
from .packages import PackageError, PackageProvider
from .systemd import SystemdError, SystemdProvider

__all__ = [
    "ClusterClient",
    "ClusterError",
    "CommandError",
    "CommandRunner",
    "KubeadmError",
    "KubeadmProvider",
    "PackageError",
    "PackageProvider",
    "SystemdError",
    "SystemdProvider",
]
