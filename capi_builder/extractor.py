"""Boot artifact extraction from a disk image through a network block device."""

from __future__ import annotations

import os
import subprocess
import time
from pathlib import Path
from typing import List, Optional, Sequence

from capi_builder.constants import (
    BOOT_MOUNT_POINT,
    BOOT_PARTITION_CANDIDATES,
    DEV_ROOT,
    INITRD_OUTPUT_NAME,
    KERNEL_CONFIG_OUTPUT_NAME,
    KERNEL_OUTPUT_NAME,
    LEASE_DEVICE,
    PARTITION_POLL_ATTEMPTS,
    PARTITION_POLL_INTERVAL,
    PARTITION_RESCAN_ATTEMPT,
)
from capi_builder.exceptions import ExtractionFailure
from capi_builder.leases import ResourceLeaseManager
from capi_builder.models import Artifact, ArtifactFormat, BootArtifacts, DeviceLease
from capi_builder.utils import ensure_directory, human_size, log, privileged, run, section, select_latest

# glob pattern inside the boot directory -> (output name, format)
_BOOT_FILES = (
    ("vmlinuz-*", KERNEL_OUTPUT_NAME, ArtifactFormat.BOOT_KERNEL),
    ("initrd.img-*", INITRD_OUTPUT_NAME, ArtifactFormat.BOOT_INITRD),
    ("config-*", KERNEL_CONFIG_OUTPUT_NAME, ArtifactFormat.KERNEL_CONFIG),
)


class DeviceMountExtractor:
    """Copy the newest kernel, initrd and kernel config out of a disk image.

    The image is attached to a leased NBD slot, partitions are tried in
    order, and each mount is undone before the next is attempted. The lease
    is released on every exit path.
    """

    def __init__(
        self,
        lease_manager: ResourceLeaseManager,
        mount_point: Path = BOOT_MOUNT_POINT,
        dev_root: Path = DEV_ROOT,
        candidates: Sequence[str] = BOOT_PARTITION_CANDIDATES,
    ) -> None:
        self.lease_manager = lease_manager
        self.mount_point = mount_point
        self.dev_root = dev_root
        self.candidates = tuple(candidates)

    def partition_path(self, lease: DeviceLease, suffix: str) -> Path:
        return self.dev_root / f"nbd{lease.slot}{suffix}"

    def present_partitions(self, lease: DeviceLease) -> List[Path]:
        return [path for path in (self.partition_path(lease, s) for s in self.candidates) if path.exists()]

    def _rescan(self, lease: DeviceLease) -> None:
        result = run(privileged(["partprobe", str(lease.device)]), check=False, capture_output=True)
        if result.returncode != 0:
            log("DEBUG", f"partprobe {lease.device} failed: {(result.stderr or '').strip()}")

    def wait_for_partitions(self, lease: DeviceLease) -> List[Path]:
        """Poll for partition nodes, nudging the kernel to rescan once midway and once at the end."""
        for attempt in range(1, PARTITION_POLL_ATTEMPTS + 1):
            found = self.present_partitions(lease)
            if found:
                return found
            if attempt == PARTITION_RESCAN_ATTEMPT:
                self._rescan(lease)
            time.sleep(PARTITION_POLL_INTERVAL)
        self._rescan(lease)
        found = self.present_partitions(lease)
        if not found:
            raise ExtractionFailure(
                f"No partitions appeared on {lease.device} after {PARTITION_POLL_ATTEMPTS} attempts"
            )
        return found

    def prepare_mount_point(self) -> None:
        if self.mount_point.is_dir():
            return
        try:
            run(privileged(["mkdir", "-p", str(self.mount_point)]), capture_output=True)
        except (subprocess.CalledProcessError, FileNotFoundError) as exc:
            raise ExtractionFailure(f"Could not create mount point {self.mount_point}: {exc}") from exc

    def extract(self, image: Path, dest: Path) -> BootArtifacts:
        section("Boot artifact extraction")
        if not image.is_file():
            raise ExtractionFailure(f"Base image not found: {image}")
        self.lease_manager.ensure_module()
        with self.lease_manager.lease(LEASE_DEVICE) as lease:
            if not isinstance(lease, DeviceLease):
                raise ExtractionFailure(f"Expected a block device lease, got {lease!r}")
            self.lease_manager.attach(lease, image)
            try:
                partitions = self.wait_for_partitions(lease)
                self.prepare_mount_point()
                for partition in partitions:
                    if not self.lease_manager.mount(lease, partition, self.mount_point):
                        continue
                    try:
                        log("INFO", f"Mounted {partition} at {self.mount_point}")
                        boot_dir = self.find_boot_dir(self.mount_point)
                        if boot_dir is None:
                            log("DEBUG", f"No kernel on {partition}")
                            continue
                        return self.copy_boot_files(boot_dir, dest)
                    finally:
                        self.lease_manager.unmount(lease)
            except OSError as exc:
                raise ExtractionFailure(f"Extraction from {image.name} failed: {exc}") from exc
        raise ExtractionFailure(f"No kernel image found on any of {', '.join(self.candidates)} in {image.name}")

    def find_boot_dir(self, root: Path) -> Optional[Path]:
        """A root filesystem keeps kernels in ``boot/``; a separate boot partition keeps them at its top."""
        for candidate in (root / "boot", root):
            if candidate.is_dir() and any(candidate.glob("vmlinuz-*")):
                return candidate
        return None

    def _copy_out(self, source: Path, target: Path) -> None:
        # Kernels are often root-only readable inside the image.
        run(privileged(["cp", str(source), str(target)]), capture_output=True)
        if os.geteuid() != 0:
            run(privileged(["chown", f"{os.getuid()}:{os.getgid()}", str(target)]), capture_output=True)

    def copy_boot_files(self, boot_dir: Path, dest: Path) -> BootArtifacts:
        ensure_directory(dest)
        copied = {}
        for pattern, output_name, fmt in _BOOT_FILES:
            source = select_latest(p for p in boot_dir.glob(pattern) if p.is_file())
            if source is None:
                continue
            target = dest / output_name
            try:
                self._copy_out(source, target)
            except (subprocess.CalledProcessError, OSError) as exc:
                raise ExtractionFailure(f"Copying {source.name} failed: {exc}") from exc
            copied[fmt] = Artifact(target, fmt)
            log("INFO", f"{source.name} -> {target.name} ({human_size(copied[fmt].size)})")

        if ArtifactFormat.BOOT_KERNEL not in copied:
            raise ExtractionFailure(f"Kernel not found in {boot_dir}")
        if ArtifactFormat.BOOT_INITRD not in copied:
            raise ExtractionFailure(f"Initrd not found in {boot_dir}")
        log("SUCCESS", f"Boot artifacts written to {dest}")
        return BootArtifacts(
            kernel=copied[ArtifactFormat.BOOT_KERNEL],
            initrd=copied[ArtifactFormat.BOOT_INITRD],
            config=copied.get(ArtifactFormat.KERNEL_CONFIG),
        )
