"""Control-plane initialisation via ``kubeadm init``.

The initializer renders a kubeadm configuration from the resolved settings,
runs ``kubeadm init`` once, extracts the bootstrap token and CA hash needed by
joining workers, and exports ``admin.conf`` to the credential path with mode
0600. Existing cluster PKI is never overwritten: leftover artifacts without a
healthy API server raise :class:`InitializationInconsistencyError` and must be
cleared with ``kubeseed reset`` first.
"""
from __future__ import annotations

import hashlib
import logging
import re
from datetime import UTC, datetime, timedelta

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from packaging.version import Version

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to render kubeadm configuration. Install with "
        "`pip install kubeseed` or ensure PyYAML>=6.0 is available."
    ) from exc

from .. import host
from ..config import AppConfig
from ..errors import ApplyError, InitializationInconsistencyError
from ..providers.kubeadm import KubeadmError
from .models import ClusterBootstrapToken, Concern, ConcernState, ProvisionContext
from .probes import probe

LOGGER = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"--token\s+([a-z0-9]{6}\.[a-z0-9]{16})\b")
_CA_HASH_RE = re.compile(r"--discovery-token-ca-cert-hash\s+(sha256:[a-f0-9]{64})\b")

KUBEADM_V1BETA4_SINCE = Version("1.31.0")


def kubeadm_api_version(kubernetes_version: str) -> str:
    """Return the kubeadm config API version understood by *kubernetes_version*."""
    if Version(kubernetes_version) >= KUBEADM_V1BETA4_SINCE:
        return "kubeadm.k8s.io/v1beta4"
    return "kubeadm.k8s.io/v1beta3"


def render_kubeadm_config(config: AppConfig) -> str:
    """Render the multi-document kubeadm configuration for ``kubeadm init``."""
    api_version = kubeadm_api_version(config.kubernetes_version)
    init_configuration = {
        "apiVersion": api_version,
        "kind": "InitConfiguration",
        "bootstrapTokens": [
            {
                "groups": ["system:bootstrappers:kubeadm:default-node-token"],
                "ttl": f"{config.token_ttl}s",
                "usages": ["signing", "authentication"],
            }
        ],
        "localAPIEndpoint": {
            "advertiseAddress": config.api_advertise_address,
            "bindPort": 6443,
        },
        "nodeRegistration": {
            "name": config.node_name,
            "criSocket": config.runtime.cri_socket,
        },
    }
    cluster_configuration = {
        "apiVersion": api_version,
        "kind": "ClusterConfiguration",
        "kubernetesVersion": f"v{config.kubernetes_version}",
        "controlPlaneEndpoint": config.api_endpoint,
        "networking": {"podSubnet": config.pod_network_cidr},
    }
    kubelet_configuration = {
        "apiVersion": "kubelet.config.k8s.io/v1beta1",
        "kind": "KubeletConfiguration",
        "cgroupDriver": "systemd",
    }
    return yaml.safe_dump_all(
        [init_configuration, cluster_configuration, kubelet_configuration],
        sort_keys=False,
    )


def parse_join_output(output: str) -> tuple[str | None, str | None]:
    """Return ``(token, ca_cert_hash)`` found in kubeadm output, if any."""
    token_match = _TOKEN_RE.search(output)
    hash_match = _CA_HASH_RE.search(output)
    return (
        token_match.group(1) if token_match else None,
        hash_match.group(1) if hash_match else None,
    )


def compute_ca_cert_hash(ca_pem: bytes) -> str:
    """Return ``sha256:<hex>`` of the CA certificate's SubjectPublicKeyInfo."""
    certificate = x509.load_pem_x509_certificate(ca_pem)
    spki = certificate.public_key().public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return f"sha256:{hashlib.sha256(spki).hexdigest()}"


def export_credential(context: ProvisionContext) -> bool:
    """Copy ``admin.conf`` to the credential path with mode 0600."""
    paths = context.config.paths
    content = paths.admin_conf.read_text(encoding="utf-8")
    paths.credential.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
    written = host.write_if_changed(paths.credential, content, mode=0o600)
    if not written and host.file_mode(paths.credential) != 0o600:
        paths.credential.chmod(0o600)
        written = True
    return written


def initialize(
    context: ProvisionContext,
    state: ConcernState | None = None,
) -> ClusterBootstrapToken:
    """Bring the control plane up (or re-export access to a live one)."""
    concern = Concern.CONTROL_PLANE_INITIALIZED
    current = state or probe(concern, context)
    if current.is_satisfied:
        raise ApplyError("control plane is already initialised", concern=concern)
    if current.is_failed:
        if current.inconsistent:
            raise InitializationInconsistencyError(current.reason, concern=concern)
        raise ApplyError(current.reason, concern=concern)

    config = context.config
    try:
        if current.data and current.data.get("live"):
            LOGGER.info("Control plane already running; re-exporting credential")
            export_credential(context)
            return mint_token(context)
        return _run_init(context)
    except KubeadmError as exc:
        raise ApplyError(f"{exc}{_output_tail(exc.output)}", concern=concern) from exc
    except (OSError, ValueError) as exc:
        raise ApplyError(
            f"unable to read or write files under {config.paths.kubernetes_dir}: {exc}",
            concern=concern,
        ) from exc


def mint_token(context: ProvisionContext) -> ClusterBootstrapToken:
    """Create a fresh bootstrap token against the running control plane."""
    config = context.config
    output = context.kubeadm.create_token(config.token_ttl, config.paths.admin_conf)
    token, ca_hash = parse_join_output(output)
    if token is None:
        raise KubeadmError("kubeadm token create printed no token", output=output)
    return _build_token(context, token, ca_hash)


def _run_init(context: ProvisionContext) -> ClusterBootstrapToken:
    config = context.config
    paths = config.paths
    leftovers = [
        str(path)
        for path in (paths.admin_conf, paths.ca_cert, paths.apiserver_manifest)
        if path.exists()
    ]
    if leftovers:
        raise InitializationInconsistencyError(
            f"refusing to overwrite existing control-plane artifacts: {', '.join(leftovers)}",
            concern=Concern.CONTROL_PLANE_INITIALIZED,
        )

    host.write_if_changed(paths.kubeadm_config, render_kubeadm_config(config), mode=0o600)
    LOGGER.info("Running kubeadm init for node %s", config.node_name)
    output = context.kubeadm.init(paths.kubeadm_config)
    export_credential(context)

    token, ca_hash = parse_join_output(output)
    if token is None:
        return mint_token(context)
    return _build_token(context, token, ca_hash)


def _build_token(
    context: ProvisionContext,
    token: str,
    ca_hash: str | None,
) -> ClusterBootstrapToken:
    config = context.config
    if ca_hash is None:
        ca_hash = compute_ca_cert_hash(config.paths.ca_cert.read_bytes())
    return ClusterBootstrapToken(
        token=token,
        ca_cert_hash=ca_hash,
        api_endpoint=config.api_endpoint,
        expires_at=datetime.now(UTC) + timedelta(seconds=config.token_ttl),
    )


def _output_tail(output: str, lines: int = 10) -> str:
    if not output:
        return ""
    tail = output.strip().splitlines()[-lines:]
    return "\n" + "\n".join(tail)


__all__ = [
    "compute_ca_cert_hash",
    "export_credential",
    "initialize",
    "kubeadm_api_version",
    "mint_token",
    "parse_join_output",
    "render_kubeadm_config",
]
