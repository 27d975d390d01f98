"""Static and in-guest validation of a built image."""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Tuple

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from capi_builder.cloudinit import build_seed_iso, write_seed_files
from capi_builder.constants import (
    ARCHIVE_SUFFIX,
    BASE_IMAGE_FORMAT,
    CNI_PLUGIN_DIR,
    DRY_RUN_ERROR_RE,
    DRY_RUN_SUCCESS_PHRASE,
    INITRD_OUTPUT_NAME,
    KERNEL_OUTPUT_NAME,
    KUBE_BINARIES,
    RAW_SUFFIX,
    REQUIRED_CNI_PLUGINS,
    STREAM_SUFFIX,
    TARGET_ARCH,
    TARGET_DPKG_ARCH,
    TARGET_FILE_SIGNATURE,
    TEST_USER,
)
from capi_builder.converter import verify_archive
from capi_builder.exceptions import BootTimeout, BuildError, ValidationFailure
from capi_builder.models import BuildConfig, FirmwarePair, TestResult, TestStatus, ValidationReport, VMInstance
from capi_builder.remote import RemoteExecutor
from capi_builder.supervisor import VMSupervisor
from capi_builder.utils import (
    first_line,
    generate_password,
    host_arch,
    human_size,
    kvm_available,
    log,
    qemu_img_info,
    section,
)

Outcome = Tuple[TestStatus, Optional[str]]
DRY_RUN_TIMEOUT = 600.0


class DryRunOutcome(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    INCONCLUSIVE = "inconclusive"


def classify_dry_run(output: str) -> DryRunOutcome:
    if DRY_RUN_SUCCESS_PHRASE in output:
        return DryRunOutcome.SUCCESS
    if DRY_RUN_ERROR_RE.search(output):
        return DryRunOutcome.ERROR
    return DryRunOutcome.INCONCLUSIVE


def can_boot_natively() -> bool:
    return host_arch() == TARGET_ARCH and kvm_available()


class ReportBuilder:
    """Collects results in order and prints each one as it is recorded."""

    def __init__(self) -> None:
        self._results: List[TestResult] = []

    def add(self, name: str, status: TestStatus, detail: Optional[str] = None) -> TestResult:
        result = TestResult(name=name, status=status, detail=detail)
        self._results.append(result)
        log(status.value, f"{name}: {detail}" if detail else name)
        return result

    def build(self) -> ValidationReport:
        return ValidationReport(results=tuple(self._results))


class ValidationEngine:
    """Runs the static battery and, when the host can, the in-guest battery.

    Every check produces exactly one result; guest probes never stop the
    battery, so a report always covers every check.
    """

    def __init__(
        self,
        config: BuildConfig,
        supervisor: VMSupervisor,
        firmware: Optional[FirmwarePair] = None,
        executor: Optional[RemoteExecutor] = None,
        password: Optional[str] = None,
        native: Optional[bool] = None,
    ) -> None:
        self.config = config
        self.supervisor = supervisor
        self.firmware = firmware
        self.executor = executor or RemoteExecutor()
        self.password = password or generate_password()
        self.native = native

    def run(self) -> ValidationReport:
        report = ReportBuilder()
        section("Static validation")
        self.static_checks(report)
        section("Dynamic validation")
        self.dynamic_checks(report)
        return report.build()

    # ------------------------------------------------------------------
    # Static phase
    # ------------------------------------------------------------------
    def static_checks(self, report: ReportBuilder) -> None:
        image = self.config.base_image_path
        if image.is_file():
            report.add("Base image exists", TestStatus.PASS, image.name)
            self._check_format(report, image)
        else:
            report.add("Base image exists", TestStatus.FAIL, f"{image} not found")

        stem = image.with_suffix("")
        for label, suffix in (("Raw", RAW_SUFFIX), ("VMDK", STREAM_SUFFIX), ("OVA", ARCHIVE_SUFFIX)):
            path = stem.with_name(stem.name + suffix)
            if path.is_file():
                report.add(f"{label} image present", TestStatus.PASS, human_size(path.stat().st_size))
            else:
                report.add(f"{label} image present", TestStatus.INFO, "not present (optional)")

        archive = stem.with_name(stem.name + ARCHIVE_SUFFIX)
        if archive.is_file():
            problems = verify_archive(archive)
            if problems:
                report.add("OVA manifest integrity", TestStatus.FAIL, "; ".join(problems))
            else:
                report.add("OVA manifest integrity", TestStatus.PASS)

        self._check_boot_artifacts(report)

    def _check_format(self, report: ReportBuilder, image: Path) -> None:
        try:
            info = qemu_img_info(image)
        except BuildError as exc:
            report.add("Base image format", TestStatus.FAIL, str(exc))
            return
        fmt = info.get("format")
        if fmt == BASE_IMAGE_FORMAT:
            report.add("Base image format", TestStatus.PASS, BASE_IMAGE_FORMAT)
        else:
            report.add("Base image format", TestStatus.FAIL, f"expected {BASE_IMAGE_FORMAT}, found {fmt}")
        size = info.get("virtual-size")
        if isinstance(size, int):
            report.add("Virtual size", TestStatus.INFO, human_size(size))

    def _check_boot_artifacts(self, report: ReportBuilder) -> None:
        boot_dir = self.config.boot_artifact_dir
        if not boot_dir.is_dir():
            report.add("Boot artifacts", TestStatus.INFO, f"{boot_dir} not found (not extracted yet)")
            return
        for label, name in (("Kernel", KERNEL_OUTPUT_NAME), ("Initrd", INITRD_OUTPUT_NAME)):
            if (boot_dir / name).is_file():
                report.add(f"{label} extracted", TestStatus.PASS, name)
            else:
                report.add(f"{label} extracted", TestStatus.FAIL, f"{name} missing from {boot_dir}")

    # ------------------------------------------------------------------
    # Dynamic phase
    # ------------------------------------------------------------------
    def dynamic_checks(self, report: ReportBuilder) -> None:
        native = can_boot_natively() if self.native is None else self.native
        if not native:
            report.add(
                "Dynamic validation",
                TestStatus.SKIP,
                f"requires an {TARGET_ARCH} host with /dev/kvm (host is {host_arch()})",
            )
            return
        image = self.config.base_image_path
        if not image.is_file():
            report.add("Dynamic validation", TestStatus.SKIP, "base image missing")
            return
        if self.firmware is None:
            report.add("Dynamic validation", TestStatus.SKIP, "no boot firmware resolved")
            return

        try:
            seed_dir = self.supervisor.work_dir / "capi-test-seed"
            write_seed_files(seed_dir, TEST_USER, self.password, "capi-test", "capi-test")
            seed_iso = build_seed_iso(seed_dir, self.supervisor.work_dir / "capi-test-seed.iso")
        except (BuildError, OSError) as exc:
            report.add("VM boot", TestStatus.FAIL, f"could not build cloud-init seed: {exc}")
            return

        booted = False
        try:
            with self.supervisor.running(
                image, self.firmware, TEST_USER, self.password, seed_iso=seed_iso, name="capi-test-vm"
            ) as instance:
                try:
                    self.supervisor.await_ready(instance)
                except BootTimeout as exc:
                    report.add("VM boot", TestStatus.FAIL, str(exc))
                    report.add("Guest probes", TestStatus.SKIP, "VM did not become reachable")
                    return
                booted = True
                report.add("VM boot", TestStatus.PASS, f"SSH on port {instance.ssh_port}")
                self.probe_checks(report, instance)
        except (BuildError, OSError) as exc:
            if booted:
                report.add("Guest probes", TestStatus.FAIL, str(exc))
                return
            report.add("VM boot", TestStatus.FAIL, str(exc))
            report.add("Guest probes", TestStatus.SKIP, "VM could not be started")

    def probe_checks(self, report: ReportBuilder, instance: VMInstance) -> None:
        probes: List[Tuple[str, Callable[[], Outcome]]] = [
            ("Architecture", lambda: self.check_architecture(instance)),
            ("dpkg architecture", lambda: self.check_dpkg_architecture(instance)),
        ]
        for binary in KUBE_BINARIES:
            probes.append((f"{binary} installed", lambda b=binary: self.check_binary(instance, b)))
        probes += [
            ("kubeadm version", lambda: self.check_kubeadm_version(instance)),
            ("kubeadm binary is ARM64", lambda: self.check_binary_arch(instance, "kubeadm")),
            ("containerd service", lambda: self.check_containerd_active(instance)),
            ("containerd version", lambda: self.check_containerd_version(instance)),
            ("crictl installed", lambda: self.check_binary(instance, "crictl")),
        ]
        for name, probe in probes:
            self._guarded(report, name, probe)

        self.check_cni_plugins(report, instance)
        self._guarded(report, "kubeadm init dry-run", lambda: self.check_dry_run(instance))
        self._guarded(report, "Nested virtualization", lambda: self.check_nested_virt(instance))

    def _guarded(self, report: ReportBuilder, name: str, probe: Callable[[], Outcome]) -> None:
        try:
            status, detail = probe()
        except (BuildError, OSError) as exc:
            report.add(name, TestStatus.FAIL, str(exc))
            return
        report.add(name, status, detail)

    def _expect_output(self, instance: VMInstance, command: str, expected: str) -> Outcome:
        actual = self.executor.check_output(instance, command)
        if actual != expected:
            raise ValidationFailure(f"expected {expected}, got {actual or '<empty>'}")
        return TestStatus.PASS, actual

    def check_architecture(self, instance: VMInstance) -> Outcome:
        return self._expect_output(instance, "uname -m", TARGET_ARCH)

    def check_dpkg_architecture(self, instance: VMInstance) -> Outcome:
        return self._expect_output(instance, "dpkg --print-architecture", TARGET_DPKG_ARCH)

    def check_binary(self, instance: VMInstance, binary: str) -> Outcome:
        result = self.executor.run(instance, f"command -v {binary}")
        if result.exit_code != 0:
            raise ValidationFailure(f"{binary} not found on PATH")
        version = self.binary_version(instance, binary)
        return TestStatus.PASS, version or first_line(result.stdout)

    def binary_version(self, instance: VMInstance, binary: str) -> str:
        if binary == "kubeadm":
            return self.executor.check_output(instance, "kubeadm version -o short")
        if binary == "kubectl":
            raw = self.executor.check_output(instance, "kubectl version --client -o yaml")
            try:
                data = yaml.safe_load(raw) or {}
            except yaml.YAMLError:
                return ""
            client = data.get("clientVersion") if isinstance(data, dict) else None
            return str(client.get("gitVersion", "")) if isinstance(client, dict) else ""
        if binary == "kubelet":
            return self.executor.check_output(instance, "kubelet --version").rpartition(" ")[2]
        return ""

    def check_kubeadm_version(self, instance: VMInstance) -> Outcome:
        found = self.executor.check_output(instance, "kubeadm version -o short")
        expected = self.config.kubernetes_version
        if found != expected:
            raise ValidationFailure(f"expected {expected}, found {found or '<none>'}")
        return TestStatus.PASS, found

    def check_binary_arch(self, instance: VMInstance, binary: str) -> Outcome:
        description = self.executor.check_output(instance, f'file -L "$(command -v {binary})"')
        if TARGET_FILE_SIGNATURE not in description:
            raise ValidationFailure(description or f"could not inspect {binary}")
        return TestStatus.PASS, TARGET_FILE_SIGNATURE

    def check_containerd_active(self, instance: VMInstance) -> Outcome:
        # is-active exits non-zero for anything but "active"; read stdout either way.
        state = self.executor.run(instance, "systemctl is-active containerd").stdout.strip()
        if state != "active":
            raise ValidationFailure(f"containerd is {state or 'unknown'}")
        return TestStatus.PASS, state

    def check_containerd_version(self, instance: VMInstance) -> Outcome:
        output = self.executor.check_output(instance, "containerd --version")
        parts = output.split()
        if len(parts) < 3:
            raise ValidationFailure("could not determine containerd version")
        return TestStatus.PASS, parts[2]

    def check_cni_plugins(self, report: ReportBuilder, instance: VMInstance) -> None:
        try:
            listing = self.executor.run(instance, f"ls -1 {CNI_PLUGIN_DIR}")
        except (BuildError, OSError) as exc:
            report.add("CNI plugin count", TestStatus.FAIL, str(exc))
            for plugin in REQUIRED_CNI_PLUGINS:
                report.add(f"CNI plugin '{plugin}'", TestStatus.FAIL, str(exc))
            return

        entries = [line.strip() for line in listing.stdout.splitlines() if line.strip()]
        if listing.exit_code != 0:
            entries = []
        minimum = self.config.cni_min_plugins
        if len(entries) >= minimum:
            report.add("CNI plugin count", TestStatus.PASS, f"{len(entries)} plugins")
        else:
            report.add("CNI plugin count", TestStatus.FAIL, f"{len(entries)} plugins, need at least {minimum}")
        for plugin in REQUIRED_CNI_PLUGINS:
            if plugin in entries:
                report.add(f"CNI plugin '{plugin}'", TestStatus.PASS)
            else:
                report.add(f"CNI plugin '{plugin}'", TestStatus.FAIL, f"missing from {CNI_PLUGIN_DIR}")

    def check_dry_run(self, instance: VMInstance) -> Outcome:
        result = self.executor.run(instance, "sudo kubeadm init --dry-run 2>&1", timeout=DRY_RUN_TIMEOUT)
        outcome = classify_dry_run(result.stdout)
        if outcome == DryRunOutcome.SUCCESS:
            return TestStatus.PASS, "control-plane dry-run completed"
        if outcome == DryRunOutcome.ERROR:
            tail = "\n".join(result.stdout.strip().splitlines()[-20:])
            log("INFO", f"kubeadm dry-run output:\n{tail}")
            raise ValidationFailure("dry-run reported errors")
        return TestStatus.INFO, "output matched neither success nor error pattern"

    def check_nested_virt(self, instance: VMInstance) -> Outcome:
        try:
            result = self.executor.run(instance, "test -e /dev/kvm")
        except (BuildError, OSError) as exc:
            return TestStatus.INFO, f"could not determine: {exc}"
        if result.exit_code == 0:
            return TestStatus.INFO, "/dev/kvm present (nested virtualization available)"
        return TestStatus.INFO, "/dev/kvm not present (depends on host configuration)"


def print_summary(report: ValidationReport) -> None:
    section("Validation summary")
    print(f"  Passed:  {report.passed}", flush=True)
    print(f"  Failed:  {report.failed}", flush=True)
    print(f"  Skipped: {report.skipped}", flush=True)
    print(f"  Info:    {report.count(TestStatus.INFO)}", flush=True)
    if report.failed:
        print("", flush=True)
        print("  Failed checks:", flush=True)
        for name in report.failed_names:
            print(f"    - {name}", flush=True)
        log("ERROR", "Validation failed")
    else:
        log("SUCCESS", "All validation checks passed")
