"""Build -> convert -> extract -> validate orchestration."""

from __future__ import annotations

import time
from typing import List, Optional

from capi_builder.builder import DockerBuildRunner, PackerBuild, check_prerequisites
from capi_builder.constants import (
    ARCHIVE_SUFFIX,
    INITRD_OUTPUT_NAME,
    KERNEL_CONFIG_OUTPUT_NAME,
    KERNEL_OUTPUT_NAME,
    RAW_SUFFIX,
    STREAM_SUFFIX,
)
from capi_builder.converter import FormatConverter
from capi_builder.exceptions import BuildError, ConversionFailure, ExtractionFailure
from capi_builder.extractor import DeviceMountExtractor
from capi_builder.firmware import FirmwareResolver
from capi_builder.leases import ResourceLeaseManager
from capi_builder.models import Artifact, ArtifactFormat, BuildConfig, BuildResult, FirmwarePair
from capi_builder.supervisor import VMSupervisor
from capi_builder.utils import format_duration, generate_password, human_size, log, section
from capi_builder.validation import ValidationEngine, can_boot_natively, print_summary

MODE_LOCAL = "local"
MODE_DOCKER = "docker"


def collect_artifacts(config: BuildConfig) -> List[Artifact]:
    """Every known output currently present in the output directory."""
    base = config.base_image_path
    stem = base.with_suffix("")
    candidates = [
        (base, ArtifactFormat.BASE_IMAGE),
        (stem.with_name(stem.name + RAW_SUFFIX), ArtifactFormat.RAW),
        (stem.with_name(stem.name + STREAM_SUFFIX), ArtifactFormat.STREAM),
        (stem.with_name(stem.name + ARCHIVE_SUFFIX), ArtifactFormat.ARCHIVE),
    ]
    boot_dir = config.boot_artifact_dir
    candidates += [
        (boot_dir / KERNEL_OUTPUT_NAME, ArtifactFormat.BOOT_KERNEL),
        (boot_dir / INITRD_OUTPUT_NAME, ArtifactFormat.BOOT_INITRD),
        (boot_dir / KERNEL_CONFIG_OUTPUT_NAME, ArtifactFormat.KERNEL_CONFIG),
    ]
    return [Artifact(path, fmt) for path, fmt in candidates if path.is_file()]


class BuildPipeline:
    """One build invocation.

    Firmware and host-resource errors propagate and end the run. Conversion
    and extraction failures are recorded in the result and the run moves on
    to validation. Every lease and VM is released before ``run`` returns or
    raises.
    """

    def __init__(
        self,
        config: BuildConfig,
        mode: str = MODE_LOCAL,
        lease_manager: Optional[ResourceLeaseManager] = None,
        resolver: Optional[FirmwareResolver] = None,
        native: Optional[bool] = None,
    ) -> None:
        self.config = config
        self.mode = mode
        self.lease_manager = lease_manager or ResourceLeaseManager(port_range=config.ssh_port_range)
        self.resolver = resolver or FirmwareResolver(config.build_dir)
        self.native = can_boot_natively() if native is None else native
        self.password = generate_password()
        self.supervisor = VMSupervisor(
            self.lease_manager, config.build_dir / "vms", config.cpus, config.memory_mb, use_kvm=self.native
        )

    def needs_firmware(self, skip_build: bool, skip_test: bool) -> bool:
        return (self.mode == MODE_LOCAL and not skip_build) or (not skip_test and self.native)

    def run(self, skip_build: bool = False, skip_test: bool = False) -> BuildResult:
        started = time.monotonic()
        result = BuildResult()
        try:
            firmware: Optional[FirmwarePair] = None
            if self.needs_firmware(skip_build, skip_test):
                firmware = self.resolver.resolve()

            if skip_build:
                log("WARN", "Skipping image build")
            elif self.mode == MODE_DOCKER:
                DockerBuildRunner(self.config).run()
            else:
                if firmware is None:
                    raise BuildError("A local build needs resolved boot firmware")
                self.build_local(firmware, result)

            result.artifacts = collect_artifacts(self.config)

            if skip_test:
                log("WARN", "Skipping validation")
            else:
                engine = ValidationEngine(
                    self.config, self.supervisor, firmware=firmware, password=self.password, native=self.native
                )
                result.report = engine.run()
                print_summary(result.report)
        finally:
            self.supervisor.terminate_all()
            self.lease_manager.release_all()

        self.print_build_summary(result, time.monotonic() - started)
        return result

    def build_local(self, firmware: FirmwarePair, result: BuildResult) -> None:
        check_prerequisites(self.resolver)
        base = PackerBuild(self.config, firmware, self.password).run()

        try:
            FormatConverter(self.config.cpus, self.config.memory_mb).convert(base.path)
        except ConversionFailure as exc:
            log("ERROR", str(exc))
            result.errors.append(str(exc))

        extractor = DeviceMountExtractor(self.lease_manager)
        try:
            extractor.extract(base.path, self.config.boot_artifact_dir)
        except ExtractionFailure as exc:
            log("ERROR", str(exc))
            result.errors.append(str(exc))

    def print_build_summary(self, result: BuildResult, elapsed: float) -> None:
        section("BUILD COMPLETE" if result.succeeded else "BUILD FINISHED WITH ERRORS")
        print(f"  Duration: {format_duration(elapsed)}", flush=True)
        print(f"  Output directory: {self.config.output_dir}", flush=True)
        for artifact in result.artifacts:
            print(f"    {artifact.name:<48} {human_size(artifact.size):>8}", flush=True)
        for error in result.errors:
            log("ERROR", error)
