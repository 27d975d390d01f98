"""Configuration loading and environment variable parsing for capi-image-builder."""

from __future__ import annotations

from pathlib import Path
from typing import Dict, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from capi_builder.constants import (
    DEFAULT_BUILD_DIR,
    DEFAULT_CNI_MIN_PLUGINS,
    DEFAULT_CNI_VERSION,
    DEFAULT_CONTAINERD_VERSION,
    DEFAULT_CRICTL_VERSION,
    DEFAULT_K8S_VERSION,
    DEFAULT_OUTPUT_DIR,
    DEFAULT_PACKER_TEMPLATE,
    DEFAULT_RUNC_VERSION,
    DEFAULT_SSH_PORT_RANGE,
    HOST_RESERVED_THREADS,
    MAX_QEMU_CPUS,
    MEMORY_PER_CPU_MB,
    MIN_QEMU_CPUS,
    MIN_QEMU_MEMORY_MB,
    VERSION_RE,
)
from capi_builder.exceptions import BuildError
from capi_builder.models import BuildConfig
from capi_builder.utils import get_env, host_thread_count, log, parse_int_env, parse_port_range

# Build file key -> environment variable
_FILE_KEYS = {
    "kubernetes": "K8S_VERSION",
    "containerd": "CONTAINERD_VERSION",
    "cni": "CNI_VERSION",
    "crictl": "CRICTL_VERSION",
    "runc": "RUNC_VERSION",
    "output_dir": "OUTPUT_DIR",
    "build_dir": "BUILD_DIR",
    "cpus": "QEMU_CPUS",
    "memory_mb": "QEMU_MEMORY",
}


def load_build_file(path: Path) -> Dict[str, str]:
    """Read a YAML build file and map its keys onto environment variable names."""
    if not path.exists():
        raise BuildError(f"Build config missing: {path}")
    try:
        data = yaml.safe_load(path.read_text()) or {}
    except yaml.YAMLError as exc:
        raise BuildError(f"Build config {path} contains invalid YAML: {exc}")
    if not isinstance(data, dict):
        raise BuildError(f"Build config {path} must contain a YAML mapping, got {type(data).__name__}")
    unknown = sorted(set(data) - set(_FILE_KEYS))
    if unknown:
        raise BuildError(f"Unknown keys in build config {path}: {', '.join(unknown)}")
    return {_FILE_KEYS[key]: str(value) for key, value in data.items() if value is not None}


def normalize_version(name: str, raw: str, leading_v: bool) -> str:
    value = raw.strip()
    if not VERSION_RE.match(value):
        raise BuildError(f"{name} must be a semantic version like 1.2.3 (got '{raw}')")
    bare = value.lstrip("v")
    return f"v{bare}" if leading_v else bare


def calculate_resources(threads: Optional[int] = None) -> Dict[str, int]:
    """Size the emulated machine from host threads: cores clamped, 1 GiB per core."""
    if threads is None:
        threads = host_thread_count()
    cpus = max(MIN_QEMU_CPUS, min(MAX_QEMU_CPUS, threads - HOST_RESERVED_THREADS))
    memory_mb = max(MIN_QEMU_MEMORY_MB, cpus * MEMORY_PER_CPU_MB)
    return {"cpus": cpus, "memory_mb": memory_mb}


def parse_env(overrides: Optional[Dict[str, str]] = None) -> BuildConfig:
    """Resolve a BuildConfig from defaults, an optional build file, env and explicit overrides."""
    layered: Dict[str, str] = {}
    build_file = get_env("BUILD_CONFIG")
    if build_file:
        layered.update(load_build_file(Path(build_file)))
        log("INFO", f"Loaded build config from {build_file}")

    def value(name: str, default: str) -> str:
        if overrides and overrides.get(name) is not None:
            return overrides[name]
        env_value = get_env(name)
        if env_value is not None and env_value.strip():
            return env_value
        return layered.get(name, default)

    k8s_version = normalize_version("K8S_VERSION", value("K8S_VERSION", DEFAULT_K8S_VERSION), leading_v=True)
    containerd_version = normalize_version(
        "CONTAINERD_VERSION", value("CONTAINERD_VERSION", DEFAULT_CONTAINERD_VERSION), leading_v=False
    )
    cni_version = normalize_version("CNI_VERSION", value("CNI_VERSION", DEFAULT_CNI_VERSION), leading_v=False)
    crictl_version = normalize_version(
        "CRICTL_VERSION", value("CRICTL_VERSION", DEFAULT_CRICTL_VERSION), leading_v=False
    )
    runc_version = normalize_version("RUNC_VERSION", value("RUNC_VERSION", DEFAULT_RUNC_VERSION), leading_v=False)

    output_dir = Path(value("OUTPUT_DIR", str(DEFAULT_OUTPUT_DIR))).expanduser()
    build_dir = Path(value("BUILD_DIR", str(DEFAULT_BUILD_DIR))).expanduser()
    packer_template = Path(value("PACKER_TEMPLATE", str(DEFAULT_PACKER_TEMPLATE))).expanduser()

    sizing = calculate_resources()
    # parse_int_env reads the environment; fold build-file values in as its default
    cpus = parse_int_env("QEMU_CPUS", layered.get("QEMU_CPUS", str(sizing["cpus"])), min_val=1)
    memory_default = layered.get("QEMU_MEMORY", str(max(MIN_QEMU_MEMORY_MB, cpus * MEMORY_PER_CPU_MB)))
    memory_mb = parse_int_env("QEMU_MEMORY", memory_default, min_val=512)

    low, high = DEFAULT_SSH_PORT_RANGE
    ssh_port_range = parse_port_range("SSH_PORT_RANGE", value("SSH_PORT_RANGE", f"{low}-{high}"))
    cni_min_plugins = parse_int_env("CNI_MIN_PLUGINS", str(DEFAULT_CNI_MIN_PLUGINS), min_val=0)

    return BuildConfig(
        kubernetes_version=k8s_version,
        containerd_version=containerd_version,
        cni_version=cni_version,
        crictl_version=crictl_version,
        runc_version=runc_version,
        output_dir=output_dir,
        build_dir=build_dir,
        cpus=cpus,
        memory_mb=memory_mb,
        ssh_port_range=ssh_port_range,
        cni_min_plugins=cni_min_plugins,
        packer_template=packer_template,
    )
