"""Data models for capi-image-builder."""

from __future__ import annotations

import subprocess
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, NamedTuple, Optional, Tuple, Union

from capi_builder.constants import (
    BOOT_ARTIFACT_DIR_NAME,
    CHECKSUM_ALGORITHM,
    DEV_ROOT,
    IMAGE_NAME_TEMPLATE,
)
from capi_builder.exceptions import BuildError
from capi_builder.utils import sha256_file


class FirmwarePair(NamedTuple):
    code: Path
    vars: Path


class CommandResult(NamedTuple):
    stdout: str
    exit_code: int


@dataclass(frozen=True)
class BuildConfig:
    kubernetes_version: str
    containerd_version: str
    cni_version: str
    crictl_version: str
    runc_version: str
    output_dir: Path
    build_dir: Path
    cpus: int
    memory_mb: int
    ssh_port_range: Tuple[int, int] = (2200, 2299)
    cni_min_plugins: int = 6
    packer_template: Optional[Path] = None

    @property
    def kubernetes_series(self) -> str:
        return self.kubernetes_version.rsplit(".", 1)[0]

    @property
    def image_name(self) -> str:
        return IMAGE_NAME_TEMPLATE.format(version=self.kubernetes_version.lstrip("v"))

    @property
    def base_image_path(self) -> Path:
        return self.output_dir / f"{self.image_name}.qcow2"

    @property
    def boot_artifact_dir(self) -> Path:
        return self.output_dir / BOOT_ARTIFACT_DIR_NAME


class LeaseState(str, Enum):
    FREE = "free"
    ATTACHED = "attached"
    MOUNTED = "mounted"


@dataclass(eq=False)
class DeviceLease:
    slot: int
    acquired_at: float = field(default_factory=time.time)
    backing_file: Optional[Path] = None
    mount_point: Optional[Path] = None
    state: LeaseState = LeaseState.FREE
    released: bool = False

    @property
    def device(self) -> Path:
        return DEV_ROOT / f"nbd{self.slot}"


@dataclass(eq=False)
class PortLease:
    port: int
    acquired_at: float = field(default_factory=time.time)
    released: bool = False


Lease = Union[DeviceLease, PortLease]


class BootState(str, Enum):
    STARTING = "starting"
    READY = "ready"
    FAILED = "failed"
    TERMINATED = "terminated"


@dataclass(eq=False)
class VMInstance:
    name: str
    process: subprocess.Popen
    ssh_port: int
    firmware: FirmwarePair
    log_path: Path
    login_user: str
    password: str
    state: BootState = BootState.STARTING
    leases: List[Lease] = field(default_factory=list)


class ArtifactFormat(str, Enum):
    BASE_IMAGE = "qcow2"
    RAW = "raw"
    STREAM = "vmdk"
    ARCHIVE = "ova"
    DESCRIPTOR = "ovf"
    BOOT_KERNEL = "kernel"
    BOOT_INITRD = "initrd"
    KERNEL_CONFIG = "kernel-config"


@dataclass(eq=False)
class Artifact:
    """A produced file.

    The checksum is computed on first request and cached; once set it never
    changes, so the file must be complete before ``compute_checksum`` runs.
    """

    path: Path
    format: ArtifactFormat
    _checksum: Optional[str] = field(default=None, repr=False)

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def size(self) -> int:
        return self.path.stat().st_size

    @property
    def checksum(self) -> Optional[str]:
        return self._checksum

    def compute_checksum(self) -> str:
        if self._checksum is None:
            self._checksum = sha256_file(self.path)
        return self._checksum


class ConversionManifest:
    """Ordered checksum listing bundled into an archive. Write-once."""

    def __init__(self, algorithm: str = CHECKSUM_ALGORITHM) -> None:
        self.algorithm = algorithm
        self._entries: List[Tuple[Artifact, str]] = []
        self.path: Optional[Path] = None

    @property
    def entries(self) -> List[Tuple[Artifact, str]]:
        return list(self._entries)

    @property
    def written(self) -> bool:
        return self.path is not None

    def add(self, artifact: Artifact) -> None:
        if self.written:
            raise BuildError(f"Manifest already written to {self.path}; cannot add {artifact.name}")
        self._entries.append((artifact, artifact.compute_checksum()))

    def render(self) -> str:
        return "".join(f"{self.algorithm}({artifact.name})= {digest}\n" for artifact, digest in self._entries)

    def write(self, path: Path) -> Path:
        if self.written:
            raise BuildError(f"Manifest already written to {self.path}")
        with open(path, "w", encoding="utf-8") as handle:
            handle.write(self.render())
        self.path = path
        return path


@dataclass
class ConversionResult:
    raw: Artifact
    stream: Artifact
    archive: Artifact
    manifest: ConversionManifest

    @property
    def artifacts(self) -> List[Artifact]:
        return [self.raw, self.stream, self.archive]


@dataclass
class BootArtifacts:
    kernel: Artifact
    initrd: Artifact
    config: Optional[Artifact] = None


class TestStatus(str, Enum):
    __test__ = False

    PASS = "PASS"
    FAIL = "FAIL"
    SKIP = "SKIP"
    INFO = "INFO"


@dataclass(frozen=True)
class TestResult:
    __test__ = False

    name: str
    status: TestStatus
    detail: Optional[str] = None


@dataclass(frozen=True)
class ValidationReport:
    results: Tuple[TestResult, ...]

    def count(self, status: TestStatus) -> int:
        return sum(1 for result in self.results if result.status == status)

    @property
    def passed(self) -> int:
        return self.count(TestStatus.PASS)

    @property
    def failed(self) -> int:
        return self.count(TestStatus.FAIL)

    @property
    def skipped(self) -> int:
        return self.count(TestStatus.SKIP)

    @property
    def failed_names(self) -> List[str]:
        return [result.name for result in self.results if result.status == TestStatus.FAIL]

    @property
    def status(self) -> TestStatus:
        return TestStatus.FAIL if self.failed else TestStatus.PASS

    @property
    def ok(self) -> bool:
        return self.status == TestStatus.PASS


@dataclass
class BuildResult:
    artifacts: List[Artifact] = field(default_factory=list)
    report: Optional[ValidationReport] = None
    errors: List[str] = field(default_factory=list)

    @property
    def passed(self) -> int:
        return self.report.passed if self.report else 0

    @property
    def failed(self) -> int:
        return self.report.failed if self.report else 0

    @property
    def succeeded(self) -> bool:
        return not self.errors and (self.report is None or self.report.ok)
