"""Kubernetes API queries backed by the official ``kubernetes`` client."""
from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException
from urllib3.exceptions import HTTPError

from ..provision.models import NodeCondition, NodeReadinessRecord

LOGGER = logging.getLogger(__name__)

_TRANSPORT_ERRORS = (HTTPError, OSError)


class ClusterError(RuntimeError):
    """Raised when the API server cannot be reached or answers with an error."""


@dataclass(slots=True)
class ClusterClient:
    """Read-only cluster queries authenticated with a kubeconfig file."""

    kubeconfig: Path
    request_timeout: float = 5.0

    def _api_client(self) -> client.ApiClient:
        if not self.kubeconfig.exists():
            raise ClusterError(f"kubeconfig {self.kubeconfig} does not exist")
        try:
            return config.new_client_from_config(config_file=str(self.kubeconfig))
        except (ConfigException, OSError, ValueError) as exc:
            raise ClusterError(f"Unable to load kubeconfig {self.kubeconfig}: {exc}") from exc

    def server_version(self) -> str:
        """Return the API server's ``gitVersion``."""
        with self._api_client() as api:
            try:
                info = client.VersionApi(api).get_code(_request_timeout=self.request_timeout)
            except ApiException as exc:
                raise ClusterError(f"API server returned {exc.status}: {exc.reason}") from exc
            except _TRANSPORT_ERRORS as exc:
                raise ClusterError(f"API server unreachable: {exc}") from exc
        return str(info.git_version)

    def is_healthy(self) -> bool:
        """Return ``True`` when the API server answers a version request."""
        try:
            version = self.server_version()
        except ClusterError as exc:
            LOGGER.debug("API health check failed: %s", exc)
            return False
        LOGGER.debug("API server %s is healthy", version)
        return True

    def node_readiness(self, node_name: str) -> NodeReadinessRecord | None:
        """Return the node's ``Ready`` condition, or ``None`` when not registered."""
        with self._api_client() as api:
            try:
                node = client.CoreV1Api(api).read_node(
                    node_name, _request_timeout=self.request_timeout
                )
            except ApiException as exc:
                if exc.status == 404:
                    return None
                raise ClusterError(f"Reading node {node_name} failed: {exc.reason}") from exc
            except _TRANSPORT_ERRORS as exc:
                raise ClusterError(f"API server unreachable: {exc}") from exc
        conditions = (node.status.conditions if node.status else None) or []
        for condition in conditions:
            if condition.type != "Ready":
                continue
            if condition.status == "True":
                state = NodeCondition.READY
            elif condition.status == "False":
                state = NodeCondition.NOT_READY
            else:
                state = NodeCondition.UNKNOWN
            return NodeReadinessRecord(
                node_name=node_name,
                condition=state,
                reason=condition.reason or "",
                message=condition.message or "",
                observed_at=datetime.now(UTC),
            )
        return NodeReadinessRecord(
            node_name=node_name,
            condition=NodeCondition.UNKNOWN,
            reason="NoReadyCondition",
        )

    def count_daemonsets(
        self,
        selector: str,
        namespace: str | None,
        exclude: Sequence[str],
    ) -> int:
        """Return how many DaemonSets match *selector*, ignoring names in *exclude*."""
        with self._api_client() as api:
            apps = client.AppsV1Api(api)
            try:
                if namespace:
                    result = apps.list_namespaced_daemon_set(
                        namespace,
                        label_selector=selector or None,
                        _request_timeout=self.request_timeout,
                    )
                else:
                    result = apps.list_daemon_set_for_all_namespaces(
                        label_selector=selector or None,
                        _request_timeout=self.request_timeout,
                    )
            except ApiException as exc:
                raise ClusterError(f"Listing DaemonSets failed: {exc.reason}") from exc
            except _TRANSPORT_ERRORS as exc:
                raise ClusterError(f"API server unreachable: {exc}") from exc
        skipped = set(exclude)
        return sum(1 for item in result.items if item.metadata.name not in skipped)


__all__ = ["ClusterClient", "ClusterError"]
