"""Data models shared by the provisioning probes, steps and orchestrator."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

from ..errors import ConfigurationError

if TYPE_CHECKING:
    from ..config import AppConfig
    from ..providers.command import CommandRunner
    from ..providers.kubeadm import KubeadmProvider
    from ..providers.packages import PackageProvider
    from ..providers.systemd import SystemdProvider


class Concern(str, Enum):
    """Discrete host or cluster state transitions, in default execution order."""

    SWAP_DISABLED = "swap-disabled"
    KERNEL_MODULES_LOADED = "kernel-modules-loaded"
    CONTAINER_RUNTIME_INSTALLED = "container-runtime-installed"
    CONTROL_PLANE_PACKAGES_INSTALLED = "control-plane-packages-installed"
    CONTROL_PLANE_INITIALIZED = "control-plane-initialized"
    POD_NETWORK_INSTALLED = "pod-network-installed"
    NODE_READY = "node-ready"

    @property
    def predecessors(self) -> tuple[Concern, ...]:
        """Return the concerns that must be satisfied before this one."""
        return PREDECESSORS[self]


PREDECESSORS: Mapping[Concern, tuple[Concern, ...]] = {
    Concern.SWAP_DISABLED: (),
    Concern.KERNEL_MODULES_LOADED: (),
    Concern.CONTAINER_RUNTIME_INSTALLED: (Concern.KERNEL_MODULES_LOADED,),
    Concern.CONTROL_PLANE_PACKAGES_INSTALLED: (Concern.CONTAINER_RUNTIME_INSTALLED,),
    Concern.CONTROL_PLANE_INITIALIZED: (
        Concern.SWAP_DISABLED,
        Concern.CONTROL_PLANE_PACKAGES_INSTALLED,
    ),
    Concern.POD_NETWORK_INSTALLED: (Concern.CONTROL_PLANE_INITIALIZED,),
    Concern.NODE_READY: (Concern.POD_NETWORK_INSTALLED,),
}


def default_order() -> tuple[Concern, ...]:
    """Return the declaration order, which is a valid topological order."""
    return tuple(Concern)


def validate_order(order: Iterable[Concern | str]) -> tuple[Concern, ...]:
    """Return *order* as concerns, rejecting anything that breaks predecessor order.

    Subsets are allowed as long as every concern's predecessors appear earlier.
    """
    resolved: list[Concern] = []
    seen: set[Concern] = set()
    for item in order:
        try:
            concern = Concern(item)
        except ValueError as exc:
            raise ConfigurationError(f"Unknown provisioning concern '{item}'.") from exc
        if concern in seen:
            raise ConfigurationError(f"Concern '{concern.value}' appears more than once.")
        missing = [pred.value for pred in concern.predecessors if pred not in seen]
        if missing:
            raise ConfigurationError(
                f"Concern '{concern.value}' is ordered before its predecessors: "
                f"{', '.join(missing)}."
            )
        seen.add(concern)
        resolved.append(concern)
    if not resolved:
        raise ConfigurationError("Provisioning order must name at least one concern.")
    return tuple(resolved)


class Status(str, Enum):
    """Result of inspecting a concern."""

    UNSATISFIED = "unsatisfied"
    SATISFIED = "satisfied"
    FAILED = "failed"


@dataclass(slots=True, frozen=True)
class ConcernState:
    """Live-inspected state of one concern. Never persisted."""

    concern: Concern
    status: Status
    reason: str = ""
    inconsistent: bool = False
    data: Mapping[str, Any] | None = None

    @classmethod
    def satisfied(
        cls,
        concern: Concern,
        reason: str = "",
        *,
        data: Mapping[str, Any] | None = None,
    ) -> ConcernState:
        """Build a satisfied state."""
        return cls(concern, Status.SATISFIED, reason, data=data)

    @classmethod
    def unsatisfied(
        cls,
        concern: Concern,
        reason: str,
        *,
        data: Mapping[str, Any] | None = None,
    ) -> ConcernState:
        """Build an unsatisfied state explaining what is missing."""
        return cls(concern, Status.UNSATISFIED, reason, data=data)

    @classmethod
    def failed(
        cls,
        concern: Concern,
        reason: str,
        *,
        inconsistent: bool = False,
        data: Mapping[str, Any] | None = None,
    ) -> ConcernState:
        """Build a failed state; *inconsistent* marks state that needs a reset."""
        return cls(concern, Status.FAILED, reason, inconsistent=inconsistent, data=data)

    @property
    def is_satisfied(self) -> bool:
        """Return ``True`` when the concern holds."""
        return self.status is Status.SATISFIED

    @property
    def is_failed(self) -> bool:
        """Return ``True`` when inspection could not decide the state."""
        return self.status is Status.FAILED

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        payload: dict[str, object] = {
            "concern": self.concern.value,
            "status": self.status.value,
            "reason": self.reason,
        }
        if self.inconsistent:
            payload["inconsistent"] = True
        if self.data:
            payload["data"] = dict(self.data)
        return payload


class NodeCondition(str, Enum):
    """Value of a node's ``Ready`` condition."""

    READY = "Ready"
    NOT_READY = "NotReady"
    UNKNOWN = "Unknown"


@dataclass(slots=True, frozen=True)
class NodeReadinessRecord:
    """Single observation of a node's readiness."""

    node_name: str
    condition: NodeCondition
    reason: str = ""
    message: str = ""
    observed_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_ready(self) -> bool:
        """Return ``True`` when the node reports ``Ready=True``."""
        return self.condition is NodeCondition.READY

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "node_name": self.node_name,
            "condition": self.condition.value,
            "reason": self.reason,
            "message": self.message,
            "observed_at": self.observed_at.isoformat(),
        }


@dataclass(slots=True, frozen=True)
class ClusterBootstrapToken:
    """Join material produced when the control plane is initialised."""

    token: str
    ca_cert_hash: str
    api_endpoint: str
    expires_at: datetime | None = None

    def join_command(self) -> str:
        """Render the ``kubeadm join`` command for worker nodes."""
        return (
            f"kubeadm join {self.api_endpoint} --token {self.token} "
            f"--discovery-token-ca-cert-hash {self.ca_cert_hash}"
        )

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "token": self.token,
            "ca_cert_hash": self.ca_cert_hash,
            "api_endpoint": self.api_endpoint,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "join_command": self.join_command(),
        }


class StepAction(str, Enum):
    """What the orchestrator did with a concern during a run."""

    SKIPPED = "skipped"
    APPLIED = "applied"
    FAILED = "failed"
    PLANNED = "planned"


@dataclass(slots=True, frozen=True)
class StepRecord:
    """Outcome of one concern within a run."""

    concern: Concern
    action: StepAction
    before: ConcernState | None = None
    after: ConcernState | None = None
    detail: str = ""
    duration_ms: int | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        payload: dict[str, object] = {
            "concern": self.concern.value,
            "action": self.action.value,
        }
        if self.before is not None:
            payload["before"] = self.before.to_dict()
        if self.after is not None:
            payload["after"] = self.after.to_dict()
        if self.detail:
            payload["detail"] = self.detail
        if self.duration_ms is not None:
            payload["duration_ms"] = self.duration_ms
        return payload


@dataclass(slots=True)
class RunReport:
    """Accumulated outcome of an orchestrator run."""

    order: tuple[Concern, ...]
    records: list[StepRecord] = field(default_factory=list)
    token: ClusterBootstrapToken | None = None
    readiness: NodeReadinessRecord | None = None

    @property
    def applied(self) -> list[Concern]:
        """Return concerns that were acted on."""
        return [record.concern for record in self.records if record.action is StepAction.APPLIED]

    @property
    def skipped(self) -> list[Concern]:
        """Return concerns that were already satisfied."""
        return [record.concern for record in self.records if record.action is StepAction.SKIPPED]

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "order": [concern.value for concern in self.order],
            "records": [record.to_dict() for record in self.records],
            "token": self.token.to_dict() if self.token else None,
            "readiness": self.readiness.to_dict() if self.readiness else None,
        }


@dataclass(slots=True, frozen=True)
class ResetAction:
    """Single reset action and whether it succeeded."""

    action: str
    ok: bool
    detail: str = ""


@dataclass(slots=True)
class ResetReport:
    """Outcome of every attempted reset action."""

    actions: list[ResetAction] = field(default_factory=list)

    @property
    def failures(self) -> list[tuple[str, str]]:
        """Return ``(action, reason)`` pairs for failed actions."""
        return [(item.action, item.detail) for item in self.actions if not item.ok]

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "actions": [
                {"action": item.action, "ok": item.ok, "detail": item.detail}
                for item in self.actions
            ],
            "failed": len(self.failures),
        }


class ClusterApi(Protocol):
    """Subset of cluster queries the provisioning logic depends on."""

    def is_healthy(self) -> bool:
        """Return ``True`` when the API server answers."""

    def node_readiness(self, node_name: str) -> NodeReadinessRecord | None:
        """Return the node's readiness, or ``None`` when it is not registered."""

    def count_daemonsets(
        self,
        selector: str,
        namespace: str | None,
        exclude: Sequence[str],
    ) -> int:
        """Return how many DaemonSets match *selector*, ignoring *exclude*."""


@dataclass(slots=True, frozen=True)
class ProvisionContext:
    """Everything probes, steps and the orchestrator need to touch the host."""

    config: AppConfig
    runner: CommandRunner
    systemd: SystemdProvider
    packages: PackageProvider
    kubeadm: KubeadmProvider
    cluster_factory: Callable[[Path], ClusterApi]
    clock: Callable[[], float] = time.monotonic
    cancel_event: threading.Event = field(default_factory=threading.Event)

    def cluster(self, kubeconfig: Path | None = None) -> ClusterApi:
        """Return a cluster client authenticated with *kubeconfig* (default: credential)."""
        return self.cluster_factory(kubeconfig or self.config.paths.credential)


__all__ = [
    "PREDECESSORS",
    "ClusterApi",
    "ClusterBootstrapToken",
    "Concern",
    "ConcernState",
    "NodeCondition",
    "NodeReadinessRecord",
    "ProvisionContext",
    "ResetAction",
    "ResetReport",
    "RunReport",
    "Status",
    "StepAction",
    "StepRecord",
    "default_order",
    "validate_order",
]
