"""Configuration loader for kubeseed.

This module centralises the logic for reading configuration values from
multiple sources, lowest precedence first:

1. Built-in defaults.
2. ``/etc/kubeseed/config.yml`` (or an override path).
3. Environment variables prefixed with ``KUBESEED_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export KUBESEED_NODE_NAME=cp-1
    export KUBESEED_READINESS__TIMEOUT=600

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.

The six cluster options (``kubernetes_version``, ``container_runtime_version``,
``pod_network_cidr``, ``api_advertise_address``, ``node_name`` and
``cni_manifest_source``) are required. Their camelCase spellings
(``kubernetesVersion`` and friends) are accepted in YAML files as aliases.
Everything is validated before any host mutation happens.
"""
from __future__ import annotations

import ipaddress
import os
import re
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import cast
from urllib.parse import urlparse

from packaging.version import InvalidVersion, Version

from .errors import ConfigurationError

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load kubeseed configuration. Install with "
        "`pip install kubeseed` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "KUBESEED_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

REQUIRED_KEYS: tuple[str, ...] = (
    "kubernetes_version",
    "container_runtime_version",
    "pod_network_cidr",
    "api_advertise_address",
    "node_name",
    "cni_manifest_source",
)

KEY_ALIASES: dict[str, str] = {
    "kubernetesVersion": "kubernetes_version",
    "containerRuntimeVersion": "container_runtime_version",
    "podNetworkCIDR": "pod_network_cidr",
    "apiAdvertiseAddress": "api_advertise_address",
    "nodeName": "node_name",
    "cniManifestSource": "cni_manifest_source",
}

LOCAL_TARGETS = frozenset({"local", "localhost"})

_NODE_NAME_RE = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*$")
_DEB_VERSION_RE = re.compile(r"^[0-9][A-Za-z0-9.+~:-]*$")
_MODULE_RE = re.compile(r"^[A-Za-z0-9_-]+$")


@dataclass(frozen=True)
class ReadinessConfig:
    """Polling parameters for the node readiness wait."""

    timeout: float = 300.0
    interval: float = 5.0
    backoff: float = 1.0
    max_interval: float = 30.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "timeout": self.timeout,
            "interval": self.interval,
            "backoff": self.backoff,
            "max_interval": self.max_interval,
        }


@dataclass(frozen=True)
class RuntimeConfig:
    """Container runtime package and service details."""

    package: str = "containerd"
    service: str = "containerd"
    socket: Path = Path("/run/containerd/containerd.sock")
    config_file: Path = Path("/etc/containerd/config.toml")

    @property
    def cri_socket(self) -> str:
        """Return the CRI endpoint URL understood by kubeadm."""
        return f"unix://{self.socket}"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "package": self.package,
            "service": self.service,
            "socket": str(self.socket),
            "config_file": str(self.config_file),
        }


@dataclass(frozen=True)
class KernelConfig:
    """Kernel modules and sysctl parameters required by Kubernetes networking."""

    modules: tuple[str, ...] = ("overlay", "br_netfilter")
    sysctl: Mapping[str, str] = field(
        default_factory=lambda: {
            "net.bridge.bridge-nf-call-iptables": "1",
            "net.bridge.bridge-nf-call-ip6tables": "1",
            "net.ipv4.ip_forward": "1",
        }
    )

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"modules": list(self.modules), "sysctl": dict(self.sysctl)}


@dataclass(frozen=True)
class PackagesConfig:
    """Control-plane package names and repository settings."""

    kubernetes: tuple[str, ...] = ("kubeadm", "kubelet", "kubectl")
    kubelet_service: str = "kubelet"
    manage_repository: bool = True
    repository_url: str = "https://pkgs.k8s.io/core:/stable:"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "kubernetes": list(self.kubernetes),
            "kubelet_service": self.kubelet_service,
            "manage_repository": self.manage_repository,
            "repository_url": self.repository_url,
        }


@dataclass(frozen=True)
class NetworkConfig:
    """How the pod-network layer is recognised once applied."""

    daemonset_selector: str = ""
    namespace: str | None = None
    exclude: tuple[str, ...] = ("kube-proxy",)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "daemonset_selector": self.daemonset_selector,
            "namespace": self.namespace,
            "exclude": list(self.exclude),
        }


@dataclass(frozen=True)
class PathsConfig:
    """Host paths inspected and managed during provisioning."""

    proc_swaps: Path = Path("/proc/swaps")
    proc_modules: Path = Path("/proc/modules")
    proc_sys: Path = Path("/proc/sys")
    fstab: Path = Path("/etc/fstab")
    modules_load_file: Path = Path("/etc/modules-load.d/kubeseed.conf")
    sysctl_file: Path = Path("/etc/sysctl.d/99-kubeseed.conf")
    kubernetes_dir: Path = Path("/etc/kubernetes")
    etcd_dir: Path = Path("/var/lib/etcd")
    cni_dir: Path = Path("/etc/cni/net.d")
    kubeadm_config: Path = Path("/etc/kubeseed/kubeadm.yaml")
    credential: Path = Path("/root/.kube/config")
    apt_sources_file: Path = Path("/etc/apt/sources.list.d/kubernetes.list")
    apt_keyring: Path = Path("/etc/apt/keyrings/kubernetes-apt-keyring.asc")
    logs_dir: Path = Path("/var/log/kubeseed")

    @property
    def admin_conf(self) -> Path:
        """Return the kubeadm-generated admin kubeconfig path."""
        return self.kubernetes_dir / "admin.conf"

    @property
    def ca_cert(self) -> Path:
        """Return the cluster CA certificate path."""
        return self.kubernetes_dir / "pki" / "ca.crt"

    @property
    def apiserver_manifest(self) -> Path:
        """Return the kube-apiserver static pod manifest path."""
        return self.kubernetes_dir / "manifests" / "kube-apiserver.yaml"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {name: str(getattr(self, name)) for name in _PATH_KEYS}


_PATH_KEYS: tuple[str, ...] = (
    "proc_swaps",
    "proc_modules",
    "proc_sys",
    "fstab",
    "modules_load_file",
    "sysctl_file",
    "kubernetes_dir",
    "etcd_dir",
    "cni_dir",
    "kubeadm_config",
    "credential",
    "apt_sources_file",
    "apt_keyring",
    "logs_dir",
)


@dataclass(frozen=True)
class BinariesConfig:
    """Executable names (or absolute paths) for host tooling."""

    systemctl: str = "systemctl"
    apt_get: str = "apt-get"
    apt_mark: str = "apt-mark"
    dpkg_query: str = "dpkg-query"
    kubeadm: str = "kubeadm"
    kubectl: str = "kubectl"
    modprobe: str = "modprobe"
    sysctl: str = "sysctl"
    swapoff: str = "swapoff"
    swapon: str = "swapon"
    containerd: str = "containerd"
    curl: str = "curl"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {name: getattr(self, name) for name in _BINARY_KEYS}


_BINARY_KEYS: tuple[str, ...] = (
    "systemctl",
    "apt_get",
    "apt_mark",
    "dpkg_query",
    "kubeadm",
    "kubectl",
    "modprobe",
    "sysctl",
    "swapoff",
    "swapon",
    "containerd",
    "curl",
)


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for kubeseed."""

    config_file: Path
    target: str
    kubernetes_version: str
    container_runtime_version: str
    pod_network_cidr: str
    api_advertise_address: str
    node_name: str
    cni_manifest_source: str
    token_ttl: int
    readiness: ReadinessConfig
    runtime: RuntimeConfig
    kernel: KernelConfig
    packages: PackagesConfig
    network: NetworkConfig
    paths: PathsConfig
    binaries: BinariesConfig

    @property
    def kubernetes_release(self) -> Version:
        """Return the parsed Kubernetes version."""
        return Version(self.kubernetes_version)

    @property
    def kubernetes_minor(self) -> str:
        """Return ``major.minor`` of the pinned Kubernetes version (e.g. ``1.30``)."""
        release = self.kubernetes_release
        return f"{release.major}.{release.minor}"

    @property
    def api_endpoint(self) -> str:
        """Return the advertised API endpoint as ``host:port``."""
        address = ipaddress.ip_address(self.api_advertise_address)
        if address.version == 6:
            return f"[{address}]:6443"
        return f"{address}:6443"

    def missing_required(self) -> list[str]:
        """Return the names of required options that are unset."""
        return [key for key in REQUIRED_KEYS if not str(getattr(self, key)).strip()]

    def require_complete(self) -> None:
        """Raise :class:`ConfigurationError` when any required option is absent."""
        missing = self.missing_required()
        if missing:
            raise ConfigurationError(
                f"Missing required configuration options: {', '.join(missing)}."
            )

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "target": self.target,
            "kubernetes_version": self.kubernetes_version,
            "container_runtime_version": self.container_runtime_version,
            "pod_network_cidr": self.pod_network_cidr,
            "api_advertise_address": self.api_advertise_address,
            "node_name": self.node_name,
            "cni_manifest_source": self.cni_manifest_source,
            "token_ttl": self.token_ttl,
            "readiness": self.readiness.to_dict(),
            "runtime": self.runtime.to_dict(),
            "kernel": self.kernel.to_dict(),
            "packages": self.packages.to_dict(),
            "network": self.network.to_dict(),
            "paths": self.paths.to_dict(),
            "binaries": self.binaries.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/kubeseed/config.yml",
    "target": "localhost",
    "kubernetes_version": None,
    "container_runtime_version": None,
    "pod_network_cidr": None,
    "api_advertise_address": None,
    "node_name": None,
    "cni_manifest_source": None,
    "token_ttl": 86400,
    "readiness": ReadinessConfig().to_dict(),
    "runtime": RuntimeConfig().to_dict(),
    "kernel": KernelConfig().to_dict(),
    "packages": PackagesConfig().to_dict(),
    "network": NetworkConfig().to_dict(),
    "paths": PathsConfig().to_dict(),
    "binaries": BinariesConfig().to_dict(),
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_SECTION_KEYS: dict[str, set[str]] = {
    "readiness": {"timeout", "interval", "backoff", "max_interval"},
    "runtime": {"package", "service", "socket", "config_file"},
    "kernel": {"modules", "sysctl"},
    "packages": {"kubernetes", "kubelet_service", "manage_repository", "repository_url"},
    "network": {"daemonset_selector", "namespace", "exclude"},
    "paths": set(_PATH_KEYS),
    "binaries": set(_BINARY_KEYS),
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
    require_complete: bool = True,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, _apply_aliases(file_values))

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, _apply_aliases(dict(overrides)))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    config = _build_app_config(merged)
    if require_complete:
        config.require_complete()
    return config


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigurationError(f"Failed to parse config file {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigurationError(f"Unable to read config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigurationError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _apply_aliases(values: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in values.items():
        canonical = KEY_ALIASES.get(key, key)
        if canonical in result:
            raise ConfigurationError(
                f"Configuration option '{canonical}' is set under both its name and its alias."
            )
        result[canonical] = value
    return result


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigurationError(f"Unknown configuration keys: {joined}.")

    for section, allowed in ALLOWED_SECTION_KEYS.items():
        mapping = _as_dict(raw.get(section), section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigurationError(f"Unknown {section} configuration keys: {joined}.")

    target = str(raw.get("target") or "").strip().lower()
    if target not in LOCAL_TARGETS:
        raise ConfigurationError(
            f"Unsupported target host '{raw.get('target')}'. Only the local host is supported."
        )

    version = _optional_str(raw.get("kubernetes_version"), "kubernetes_version")
    if version:
        _parse_kubernetes_version(version)

    runtime_version = _optional_str(
        raw.get("container_runtime_version"), "container_runtime_version"
    )
    if runtime_version and not _DEB_VERSION_RE.match(runtime_version):
        raise ConfigurationError(
            f"container_runtime_version '{runtime_version}' is not a valid package version."
        )

    cidr = _optional_str(raw.get("pod_network_cidr"), "pod_network_cidr")
    if cidr:
        try:
            ipaddress.ip_network(cidr, strict=True)
        except ValueError as exc:
            raise ConfigurationError(
                f"pod_network_cidr '{cidr}' is not a valid CIDR: {exc}"
            ) from exc

    address = _optional_str(raw.get("api_advertise_address"), "api_advertise_address")
    if address:
        try:
            ipaddress.ip_address(address)
        except ValueError as exc:
            raise ConfigurationError(
                f"api_advertise_address '{address}' is not a valid IP address."
            ) from exc

    node_name = _optional_str(raw.get("node_name"), "node_name")
    if node_name and (len(node_name) > 253 or not _NODE_NAME_RE.match(node_name)):
        raise ConfigurationError(
            f"node_name '{node_name}' must be a lowercase RFC 1123 subdomain."
        )

    source = _optional_str(raw.get("cni_manifest_source"), "cni_manifest_source")
    if source:
        _validate_manifest_source(source)

    ttl = _expect_int(raw.get("token_ttl"), "token_ttl", default=86400)
    if ttl <= 0:
        raise ConfigurationError("token_ttl must be greater than zero seconds.")

    readiness = _as_dict(raw.get("readiness"), "readiness")
    for key in ("timeout", "interval", "max_interval"):
        _expect_positive_float(readiness.get(key), f"readiness.{key}", default=1.0)
    backoff = _expect_positive_float(readiness.get("backoff"), "readiness.backoff", default=1.0)
    if backoff < 1.0:
        raise ConfigurationError("readiness.backoff must be at least 1.0.")

    kernel = _as_dict(raw.get("kernel"), "kernel")
    modules = kernel.get("modules")
    if modules is not None:
        for index, module in enumerate(_as_sequence(modules, "kernel.modules")):
            if not isinstance(module, str) or not _MODULE_RE.match(module):
                raise ConfigurationError(f"kernel.modules[{index}] is not a valid module name.")


def _parse_kubernetes_version(value: str) -> Version:
    text = value.strip().lstrip("v")
    try:
        parsed = Version(text)
    except InvalidVersion as exc:
        raise ConfigurationError(f"kubernetes_version '{value}' is not a valid version.") from exc
    if len(parsed.release) != 3 or parsed.is_prerelease or parsed.local:
        raise ConfigurationError(
            f"kubernetes_version '{value}' must be a pinned MAJOR.MINOR.PATCH release."
        )
    return parsed


def _validate_manifest_source(source: str) -> None:
    parsed = urlparse(source)
    if parsed.scheme in {"http", "https"}:
        if not parsed.netloc:
            raise ConfigurationError(f"cni_manifest_source URL '{source}' has no host.")
        return
    if parsed.scheme not in {"", "file"}:
        raise ConfigurationError(
            f"cni_manifest_source '{source}' must be an http(s) URL or a local path."
        )
    path = Path(parsed.path if parsed.scheme == "file" else source).expanduser()
    if not path.exists():
        raise ConfigurationError(f"cni_manifest_source path {path} does not exist.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    readiness_map = _as_dict(raw.get("readiness"), "readiness")
    readiness_defaults = ReadinessConfig()
    readiness = ReadinessConfig(
        timeout=_expect_positive_float(
            readiness_map.get("timeout"), "readiness.timeout", default=readiness_defaults.timeout
        ),
        interval=_expect_positive_float(
            readiness_map.get("interval"), "readiness.interval", default=readiness_defaults.interval
        ),
        backoff=_expect_positive_float(
            readiness_map.get("backoff"), "readiness.backoff", default=readiness_defaults.backoff
        ),
        max_interval=_expect_positive_float(
            readiness_map.get("max_interval"),
            "readiness.max_interval",
            default=readiness_defaults.max_interval,
        ),
    )

    runtime_map = _as_dict(raw.get("runtime"), "runtime")
    runtime = RuntimeConfig(
        package=str(runtime_map.get("package", "containerd")),
        service=str(runtime_map.get("service", "containerd")),
        socket=_to_path(runtime_map.get("socket", "/run/containerd/containerd.sock")),
        config_file=_to_path(runtime_map.get("config_file", "/etc/containerd/config.toml")),
    )

    kernel_map = _as_dict(raw.get("kernel"), "kernel")
    kernel_defaults = KernelConfig()
    modules_raw = kernel_map.get("modules")
    modules = (
        tuple(str(item) for item in _as_sequence(modules_raw, "kernel.modules"))
        if modules_raw is not None
        else kernel_defaults.modules
    )
    sysctl_raw = kernel_map.get("sysctl")
    sysctl = (
        {
            str(key): _sysctl_value(value)
            for key, value in _as_dict(sysctl_raw, "kernel.sysctl").items()
        }
        if sysctl_raw is not None
        else dict(kernel_defaults.sysctl)
    )
    kernel = KernelConfig(modules=modules, sysctl=sysctl)

    packages_map = _as_dict(raw.get("packages"), "packages")
    packages_defaults = PackagesConfig()
    kube_packages_raw = packages_map.get("kubernetes")
    packages = PackagesConfig(
        kubernetes=(
            tuple(str(item) for item in _as_sequence(kube_packages_raw, "packages.kubernetes"))
            if kube_packages_raw is not None
            else packages_defaults.kubernetes
        ),
        kubelet_service=str(packages_map.get("kubelet_service", packages_defaults.kubelet_service)),
        manage_repository=bool(
            packages_map.get("manage_repository", packages_defaults.manage_repository)
        ),
        repository_url=str(
            packages_map.get("repository_url", packages_defaults.repository_url)
        ).rstrip("/"),
    )

    network_map = _as_dict(raw.get("network"), "network")
    namespace_value = network_map.get("namespace")
    exclude_raw = network_map.get("exclude")
    network = NetworkConfig(
        daemonset_selector=str(network_map.get("daemonset_selector") or ""),
        namespace=str(namespace_value) if namespace_value else None,
        exclude=(
            tuple(str(item) for item in _as_sequence(exclude_raw, "network.exclude"))
            if exclude_raw is not None
            else NetworkConfig().exclude
        ),
    )

    paths_map = _as_dict(raw.get("paths"), "paths")
    default_paths = PathsConfig()
    paths = PathsConfig(
        **{
            name: _to_path(paths_map.get(name, getattr(default_paths, name)))
            for name in _PATH_KEYS
        }
    )

    binaries_map = _as_dict(raw.get("binaries"), "binaries")
    default_binaries = BinariesConfig()
    binaries = BinariesConfig(
        **{
            name: str(binaries_map.get(name) or getattr(default_binaries, name))
            for name in _BINARY_KEYS
        }
    )

    kubernetes_version = _optional_str(raw.get("kubernetes_version"), "kubernetes_version")
    if kubernetes_version:
        kubernetes_version = str(_parse_kubernetes_version(kubernetes_version))

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        target=str(raw.get("target") or "localhost").strip().lower(),
        kubernetes_version=kubernetes_version,
        container_runtime_version=_optional_str(
            raw.get("container_runtime_version"), "container_runtime_version"
        ),
        pod_network_cidr=_optional_str(raw.get("pod_network_cidr"), "pod_network_cidr"),
        api_advertise_address=_optional_str(
            raw.get("api_advertise_address"), "api_advertise_address"
        ),
        node_name=_optional_str(raw.get("node_name"), "node_name"),
        cni_manifest_source=_optional_str(raw.get("cni_manifest_source"), "cni_manifest_source"),
        token_ttl=_expect_int(raw.get("token_ttl"), "token_ttl", default=86400),
        readiness=readiness,
        runtime=runtime,
        kernel=kernel,
        packages=packages,
        network=network,
        paths=paths,
        binaries=binaries,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigurationError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)):
        raise ConfigurationError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    if not isinstance(value, Sequence):
        raise ConfigurationError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _sysctl_value(value: object) -> str:
    if isinstance(value, bool):
        return "1" if value else "0"
    return str(value).strip()


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigurationError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigurationError(f"Cannot convert value {value!r} to Path.")


def _optional_str(value: object, label: str) -> str:
    if value is None:
        return ""
    if isinstance(value, bool) or isinstance(value, (Mapping, list)):
        raise ConfigurationError(f"Expected {label} to be a string. Got {type(value).__name__}.")
    return str(value).strip()


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigurationError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigurationError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigurationError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigurationError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigurationError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigurationError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigurationError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigurationError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigurationError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigurationError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "BinariesConfig",
    "ConfigurationError",
    "KernelConfig",
    "NetworkConfig",
    "PackagesConfig",
    "PathsConfig",
    "ReadinessConfig",
    "RuntimeConfig",
    "load_config",
]
