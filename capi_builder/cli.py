"""CLI entry point for capi-image-builder."""

from __future__ import annotations

import argparse
import dataclasses
from typing import Dict, List, Optional

from capi_builder.config import parse_env
from capi_builder.exceptions import BuildError
from capi_builder.models import BuildConfig
from capi_builder.pipeline import MODE_DOCKER, MODE_LOCAL, BuildPipeline
from capi_builder.utils import host_arch, host_thread_count, kvm_available, log


def show_config(cfg: BuildConfig) -> None:
    """Print the resolved build configuration."""
    for field in dataclasses.fields(cfg):
        print(f"  {field.name}: {getattr(cfg, field.name)}")
    print(f"  kubernetes_series: {cfg.kubernetes_series}")
    print(f"  image_name: {cfg.image_name}")


def print_banner(cfg: BuildConfig, mode: str) -> None:
    if mode == MODE_DOCKER:
        title = "ARM64 CAPI Image Builder - Docker Container Build"
        detail = "  Build environment: Docker (isolated, reproducible)"
    else:
        title = "ARM64 CAPI Image Builder - Local QEMU Emulation"
        detail = f"  Host threads: {host_thread_count()}   Emulated ARM64 cores: {cfg.cpus}   Memory: {cfg.memory_mb} MiB"
    lines = [
        f"  {title}",
        detail,
        f"  Kubernetes: {cfg.kubernetes_version}   containerd: {cfg.containerd_version}   CNI: {cfg.cni_version}",
        f"  Host: {host_arch()} | KVM: {'available' if kvm_available() else 'not available'}",
    ]
    border = "=" * (max(len(line) for line in lines) + 2)
    colour = "\033[0;36m"
    reset = "\033[0m"
    print(f"{colour}{border}{reset}", flush=True)
    for line in lines:
        print(f"{colour}{line}{reset}", flush=True)
    print(f"{colour}{border}{reset}", flush=True)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Build, convert and validate ARM64 Cluster API images")
    modes = parser.add_mutually_exclusive_group()
    modes.add_argument("--local", action="store_true", help="Build on this host using QEMU emulation")
    modes.add_argument("--local-docker", action="store_true", help="Build inside a Docker container")
    parser.add_argument("--skip-build", action="store_true", help="Skip the image build and use the existing image")
    parser.add_argument("--skip-test", action="store_true", help="Skip validation")
    parser.add_argument("--k8s-version", metavar="VERSION", help="Kubernetes version (default: v1.32.4)")
    parser.add_argument("--output-dir", metavar="DIR", help="Directory for produced images")
    parser.add_argument("--show-config", action="store_true", help="Show resolved build configuration and exit")
    args = parser.parse_args(argv)

    overrides: Dict[str, str] = {}
    if args.k8s_version:
        overrides["K8S_VERSION"] = args.k8s_version
    if args.output_dir:
        overrides["OUTPUT_DIR"] = args.output_dir

    try:
        cfg = parse_env(overrides)
    except BuildError as exc:
        log("ERROR", str(exc))
        return 1

    if args.show_config:
        show_config(cfg)
        return 0

    if not (args.local or args.local_docker):
        log("ERROR", "Must specify a build mode: --local or --local-docker")
        return 1
    mode = MODE_DOCKER if args.local_docker else MODE_LOCAL

    print_banner(cfg, mode)
    try:
        result = BuildPipeline(cfg, mode=mode).run(skip_build=args.skip_build, skip_test=args.skip_test)
    except BuildError as exc:
        log("ERROR", str(exc))
        return 1
    except KeyboardInterrupt:
        log("WARN", "Interrupted")
        return 130
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        import traceback

        traceback.print_exc()
        return 1
    return 0 if result.succeeded else 1
