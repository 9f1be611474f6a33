"""Bounded, cancellable wait for the node's ``Ready`` condition."""
from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from ..config import ReadinessConfig
from ..errors import ReadinessCancelledError, ReadinessTimeoutError
from ..providers.cluster import ClusterError
from .models import ClusterApi, Concern, NodeReadinessRecord

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class ReadinessWaiter:
    """Poll a node until it reports Ready, the deadline passes, or the caller cancels.

    The delay between polls starts at ``interval`` and is multiplied by
    ``backoff`` after every poll, capped at ``max_interval``. ``wait`` receives
    the delay and returns ``True`` when the wait was interrupted by
    cancellation; it defaults to :meth:`threading.Event.wait` on
    ``cancel_event``.
    """

    cluster: ClusterApi
    interval: float = 5.0
    backoff: float = 1.0
    max_interval: float = 30.0
    clock: Callable[[], float] = time.monotonic
    cancel_event: threading.Event = field(default_factory=threading.Event)
    wait: Callable[[float], bool] | None = None

    @classmethod
    def from_config(
        cls,
        cluster: ClusterApi,
        settings: ReadinessConfig,
        *,
        clock: Callable[[], float] = time.monotonic,
        cancel_event: threading.Event | None = None,
        wait: Callable[[float], bool] | None = None,
    ) -> ReadinessWaiter:
        """Build a waiter using the polling values from *settings*."""
        return cls(
            cluster,
            interval=settings.interval,
            backoff=settings.backoff,
            max_interval=settings.max_interval,
            clock=clock,
            cancel_event=cancel_event or threading.Event(),
            wait=wait,
        )

    def cancel(self) -> None:
        """Abort an in-progress :meth:`wait_ready`."""
        self.cancel_event.set()

    def wait_ready(self, node_name: str, timeout: float) -> NodeReadinessRecord:
        """Return the first Ready record for *node_name* observed within *timeout*."""
        deadline = self.clock() + timeout
        delay = self.interval
        last: NodeReadinessRecord | None = None
        pause = self.wait or self.cancel_event.wait
        while True:
            if self.cancel_event.is_set():
                raise self._cancelled(node_name)
            try:
                record = self.cluster.node_readiness(node_name)
            except ClusterError as exc:
                LOGGER.debug("Readiness poll for %s failed: %s", node_name, exc)
                record = None
            if record is not None:
                last = record
                if record.is_ready:
                    return record
                LOGGER.debug(
                    "Node %s is %s (%s)", node_name, record.condition.value, record.reason
                )

            remaining = deadline - self.clock()
            if remaining <= 0:
                raise ReadinessTimeoutError(node_name, timeout, last, concern=Concern.NODE_READY)
            if pause(min(delay, remaining)):
                raise self._cancelled(node_name)
            delay = min(delay * self.backoff, self.max_interval)

    def _cancelled(self, node_name: str) -> ReadinessCancelledError:
        return ReadinessCancelledError(
            f"wait for node '{node_name}' was cancelled", concern=Concern.NODE_READY
        )


__all__ = ["ReadinessWaiter"]
