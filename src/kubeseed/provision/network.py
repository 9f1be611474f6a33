"""Pod-network manifest application."""
from __future__ import annotations

import logging
from pathlib import Path
from urllib.parse import urlparse

from ..errors import ApiUnreachableError, ManifestRejectedError
from ..providers.cluster import ClusterError
from ..providers.command import CommandError
from .models import Concern, ProvisionContext

LOGGER = logging.getLogger(__name__)

_UNREACHABLE_MARKERS = (
    "connection refused",
    "the connection to the server",
    "unable to connect to the server",
    "i/o timeout",
    "no such host",
    "connection reset by peer",
    "tls handshake timeout",
    "the server is currently unable to handle the request",
)

APPLY_TIMEOUT = "120s"


def manifest_argument(source: str) -> str:
    """Return *source* in the form ``kubectl apply -f`` expects."""
    parsed = urlparse(source)
    if parsed.scheme == "file":
        return parsed.path
    if parsed.scheme in {"http", "https"}:
        return source
    return str(Path(source).expanduser())


def is_unreachable(output: str) -> bool:
    """Return ``True`` when kubectl output indicates the API could not be reached."""
    lowered = output.lower()
    return any(marker in lowered for marker in _UNREACHABLE_MARKERS)


def install_network(manifest_source: str, context: ProvisionContext) -> str:
    """Apply the pod-network manifests at *manifest_source*; return kubectl's output."""
    concern = Concern.POD_NETWORK_INSTALLED
    config = context.config
    credential = config.paths.credential
    if not credential.exists():
        raise ApiUnreachableError(f"admin credential {credential} does not exist", concern=concern)
    try:
        healthy = context.cluster(credential).is_healthy()
    except ClusterError as exc:
        raise ApiUnreachableError(str(exc), concern=concern) from exc
    if not healthy:
        raise ApiUnreachableError(
            f"API server at {config.api_endpoint} is not responding", concern=concern
        )

    args = [
        config.binaries.kubectl,
        "--kubeconfig",
        str(credential),
        f"--request-timeout={APPLY_TIMEOUT}",
        "apply",
        "-f",
        manifest_argument(manifest_source),
    ]
    try:
        result = context.runner.run(args)
    except CommandError as exc:
        output = exc.output or str(exc)
        if is_unreachable(output):
            raise ApiUnreachableError(output, concern=concern) from exc
        raise ManifestRejectedError(output, concern=concern) from exc
    LOGGER.debug("kubectl apply: %s", (result.stdout or "").strip())
    return (result.stdout or "").strip()


__all__ = ["install_network", "is_unreachable", "manifest_argument"]
