"""Error taxonomy for provisioning runs.

Every error carries the concern it relates to (when there is one), a human
readable reason, and the CLI exit code it maps to. Provider-level failures
(:class:`~kubeseed.providers.command.CommandError` and friends) are translated
into these types at the probe/step boundary so operators always see which
concern failed and why.
"""
from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING

from .exit_codes import ExitCode

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .provision.models import Concern, NodeReadinessRecord, ResetReport


class KubeseedError(RuntimeError):
    """Base class for all user-facing provisioning errors."""

    exit_code: ExitCode = ExitCode.APPLY
    kind: str = "error"

    def __init__(self, reason: str, *, concern: Concern | None = None) -> None:
        """Store the failing *concern* (if any) alongside the *reason*."""
        self.reason = reason
        self.concern = concern
        super().__init__(self._format())

    def _format(self) -> str:
        if self.concern is None:
            return self.reason
        return f"{self.concern.value}: {type(self).__name__}({self.reason})"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "error": type(self).__name__,
            "kind": self.kind,
            "concern": self.concern.value if self.concern is not None else None,
            "reason": self.reason,
            "exit_code": int(self.exit_code),
        }


class ConfigurationError(KubeseedError):
    """Missing or invalid configuration; raised before any host mutation."""

    exit_code = ExitCode.CONFIG
    kind = "configuration"


class ProbeError(KubeseedError):
    """Inspecting a concern failed, so its state is ambiguous."""

    exit_code = ExitCode.PROBE
    kind = "probe"


class ApplyError(KubeseedError):
    """An action was attempted for a concern and did not converge."""

    exit_code = ExitCode.APPLY
    kind = "apply"


class InitializationInconsistencyError(KubeseedError):
    """Partial control-plane artifacts exist without a functioning control plane."""

    exit_code = ExitCode.INCONSISTENT
    kind = "inconsistent"


class NetworkApplyError(KubeseedError):
    """Applying the pod-network manifests failed."""

    exit_code = ExitCode.NETWORK
    kind = "network"


class ApiUnreachableError(NetworkApplyError):
    """The Kubernetes API could not be reached while applying manifests."""

    kind = "network-api-unreachable"


class ManifestRejectedError(NetworkApplyError):
    """The API server (or kubectl) rejected the pod-network manifests."""

    kind = "network-manifest-rejected"


class ReadinessTimeoutError(KubeseedError):
    """The node did not report Ready within the allotted time."""

    exit_code = ExitCode.READINESS
    kind = "readiness-timeout"

    def __init__(
        self,
        node_name: str,
        timeout: float,
        last_record: NodeReadinessRecord | None,
        *,
        concern: Concern | None = None,
    ) -> None:
        """Describe the timeout using the last observed readiness record."""
        self.node_name = node_name
        self.timeout = timeout
        self.last_record = last_record
        if last_record is None:
            reason = f"node '{node_name}' never reported a status within {timeout:g}s"
        else:
            detail = last_record.reason or "no reason reported"
            reason = (
                f"node '{node_name}' still {last_record.condition.value} after "
                f"{timeout:g}s (reason: {detail})"
            )
            if last_record.message:
                reason += f": {last_record.message}"
        super().__init__(reason, concern=concern)

    @property
    def never_reported(self) -> bool:
        """Return ``True`` when the node was never observed by the API."""
        return self.last_record is None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation including the last record."""
        payload = super().to_dict()
        payload["node_name"] = self.node_name
        payload["timeout"] = self.timeout
        payload["last_record"] = (
            self.last_record.to_dict() if self.last_record is not None else None
        )
        return payload


class RunCancelledError(KubeseedError):
    """The operator interrupted a run while a concern was being converged."""

    exit_code = ExitCode.CANCELLED
    kind = "cancelled"


class ReadinessCancelledError(RunCancelledError):
    """The readiness wait was aborted by the caller."""

    kind = "readiness-cancelled"


class ResetError(KubeseedError):
    """One or more reset actions failed; all actions were still attempted."""

    exit_code = ExitCode.RESET
    kind = "reset"

    def __init__(
        self,
        failures: Sequence[tuple[str, str]],
        *,
        report: ResetReport | None = None,
    ) -> None:
        """Aggregate ``(action, reason)`` pairs into a single error."""
        self.failures = tuple(failures)
        self.report = report
        joined = "; ".join(f"{action}: {reason}" for action, reason in self.failures)
        super().__init__(f"{len(self.failures)} reset action(s) failed: {joined}")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation including each failure."""
        payload = super().to_dict()
        payload["failures"] = [
            {"action": action, "reason": reason} for action, reason in self.failures
        ]
        return payload


__all__ = [
    "ApiUnreachableError",
    "ApplyError",
    "ConfigurationError",
    "InitializationInconsistencyError",
    "KubeseedError",
    "ManifestRejectedError",
    "NetworkApplyError",
    "ProbeError",
    "ReadinessCancelledError",
    "ReadinessTimeoutError",
    "ResetError",
    "RunCancelledError",
]
