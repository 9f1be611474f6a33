"""Probe/apply orchestration across the ordered provisioning concerns."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable

from ..config import AppConfig
from ..errors import (
    ApplyError,
    InitializationInconsistencyError,
    KubeseedError,
    ProbeError,
)
from ..providers.cluster import ClusterClient
from ..providers.command import CommandRunner
from ..providers.kubeadm import KubeadmProvider
from ..providers.packages import PackageProvider
from ..providers.systemd import SystemdProvider
from . import steps
from .initializer import initialize
from .models import (
    Concern,
    ConcernState,
    ProvisionContext,
    ResetReport,
    RunReport,
    StepAction,
    StepRecord,
    validate_order,
)
from .network import install_network
from .probes import probe
from .readiness import ReadinessWaiter
from .reset import reset as reset_host

LOGGER = logging.getLogger(__name__)

RecordCallback = Callable[[StepRecord], None]


def _duration_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def create_provision_context(config: AppConfig) -> ProvisionContext:
    """Build a ProvisionContext wired to the real host tooling."""
    binaries = config.binaries
    runner = CommandRunner(env={"DEBIAN_FRONTEND": "noninteractive"})
    return ProvisionContext(
        config=config,
        runner=runner,
        systemd=SystemdProvider(runner=runner, systemctl_bin=binaries.systemctl),
        packages=PackageProvider(
            runner=runner,
            apt_get_bin=binaries.apt_get,
            apt_mark_bin=binaries.apt_mark,
            dpkg_query_bin=binaries.dpkg_query,
        ),
        kubeadm=KubeadmProvider(runner=runner, kubeadm_bin=binaries.kubeadm),
        cluster_factory=ClusterClient,
    )


class Orchestrator:
    """Drive every concern from Unsatisfied to Satisfied, in predecessor order.

    Each concern is probed first and skipped when already satisfied. Otherwise
    the matching action runs and the concern is probed exactly once more; a
    concern that is still unsatisfied halts the run with :class:`ApplyError`,
    while a failed inspection raises the same error the first probe would.
    Nothing is rolled back on failure, so a later run resumes at the failing
    concern. ``current_concern`` names the concern a stopped run was working on.
    """

    def __init__(
        self,
        context: ProvisionContext,
        *,
        on_record: RecordCallback | None = None,
        waiter: ReadinessWaiter | None = None,
    ) -> None:
        """Store the provisioning context and optional progress callback."""
        self._context = context
        self._on_record = on_record
        self._waiter = waiter
        self.last_report: RunReport | None = None
        self.current_concern: Concern | None = None

    @property
    def context(self) -> ProvisionContext:
        """Return the provisioning context."""
        return self._context

    def plan(self, order: Iterable[Concern | str] | None = None) -> RunReport:
        """Validate configuration and *order* without touching the host."""
        resolved = self._resolve_order(order)
        self._context.config.require_complete()
        report = RunReport(order=resolved)
        for concern in resolved:
            predecessors = ", ".join(pred.value for pred in concern.predecessors)
            report.records.append(
                StepRecord(
                    concern=concern,
                    action=StepAction.PLANNED,
                    detail=f"after {predecessors}" if predecessors else "no predecessors",
                )
            )
        return report

    def run(
        self,
        order: Iterable[Concern | str] | None = None,
        *,
        timeout: float | None = None,
    ) -> RunReport:
        """Provision every concern in *order*; raise on the first failure."""
        resolved = self._resolve_order(order)
        self._context.config.require_complete()
        report = RunReport(order=resolved)
        self.last_report = report
        satisfied: set[Concern] = set()

        for concern in resolved:
            pending = [pred for pred in concern.predecessors if pred not in satisfied]
            if pending:
                raise ApplyError(
                    "predecessors not satisfied: " + ", ".join(pred.value for pred in pending),
                    concern=concern,
                )
            self.current_concern = concern
            start = time.perf_counter()
            before = probe(concern, self._context)
            if before.is_satisfied:
                self._record(report, StepAction.SKIPPED, before, start, detail=before.reason)
                satisfied.add(concern)
                continue
            if before.is_failed:
                self._record(report, StepAction.FAILED, before, start, detail=before.reason)
                raise self._failed_state_error(before)

            try:
                detail = self._dispatch(concern, before, report, timeout)
            except KubeseedError as exc:
                self._record(report, StepAction.FAILED, before, start, detail=exc.reason)
                raise
            except KeyboardInterrupt:
                self._record(report, StepAction.FAILED, before, start, detail="interrupted")
                raise

            after = probe(concern, self._context)
            if not after.is_satisfied:
                self._record(
                    report, StepAction.FAILED, before, start, after=after, detail=after.reason
                )
                if after.is_failed:
                    raise self._failed_state_error(after)
                raise ApplyError(
                    f"still {after.status.value} after apply: {after.reason}",
                    concern=concern,
                )
            self._record(report, StepAction.APPLIED, before, start, after=after, detail=detail)
            satisfied.add(concern)
        self.current_concern = None
        return report

    def reset(self) -> ResetReport:
        """Tear the host back down; never invoked implicitly by :meth:`run`."""
        return reset_host(self._context)

    # ------------------------------------------------------------------
    @staticmethod
    def _failed_state_error(state: ConcernState) -> KubeseedError:
        if state.inconsistent:
            return InitializationInconsistencyError(state.reason, concern=state.concern)
        return ProbeError(state.reason, concern=state.concern)

    def _resolve_order(self, order: Iterable[Concern | str] | None) -> tuple[Concern, ...]:
        return validate_order(order if order is not None else tuple(Concern))

    def _dispatch(
        self,
        concern: Concern,
        state: ConcernState,
        report: RunReport,
        timeout: float | None,
    ) -> str:
        context = self._context
        config = context.config
        if concern in steps.HOST_CONCERNS:
            return steps.apply(concern, context).summary()
        if concern is Concern.CONTROL_PLANE_INITIALIZED:
            token = initialize(context, state)
            report.token = token
            return f"control plane initialised; join token valid for {config.token_ttl}s"
        if concern is Concern.POD_NETWORK_INSTALLED:
            install_network(config.cni_manifest_source, context)
            return f"applied {config.cni_manifest_source}"
        if concern is Concern.NODE_READY:
            waiter = self._waiter or ReadinessWaiter.from_config(
                context.cluster(),
                config.readiness,
                clock=context.clock,
                cancel_event=context.cancel_event,
            )
            record = waiter.wait_ready(
                config.node_name,
                timeout if timeout is not None else config.readiness.timeout,
            )
            report.readiness = record
            return f"node '{record.node_name}' is Ready"
        raise ApplyError("no action is defined for this concern", concern=concern)

    def _record(
        self,
        report: RunReport,
        action: StepAction,
        before: ConcernState,
        start: float,
        *,
        after: ConcernState | None = None,
        detail: str = "",
    ) -> None:
        concern = before.concern
        record = StepRecord(
            concern=concern,
            action=action,
            before=before,
            after=after,
            detail=detail,
            duration_ms=_duration_ms(start),
        )
        report.records.append(record)
        LOGGER.debug("%s: %s (%s)", concern.value, action.value, detail)
        if self._on_record is not None:
            self._on_record(record)


__all__ = ["Orchestrator", "create_provision_context"]
