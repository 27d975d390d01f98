"""Scarce host resource leasing (block device slots, forwarded ports)."""

from __future__ import annotations

import random
import subprocess
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

from capi_builder.constants import (
    DEFAULT_SSH_PORT_RANGE,
    LEASE_DEVICE,
    LEASE_PORT,
    NBD_MAX_PARTITIONS,
    NBD_SLOT_COUNT,
    SYSFS_BLOCK_ROOT,
    SYSFS_NBD_MODULE,
)
from capi_builder.exceptions import BuildError, ResourceUnavailable
from capi_builder.models import DeviceLease, Lease, LeaseState, PortLease
from capi_builder.utils import log, privileged, run


class ResourceLeaseManager:
    """Hands out exclusive leases on NBD slots and SSH forwarding ports.

    Slot selection is optimistic: the kernel's view of a slot is read when
    scanning and read again right before the image is attached, since
    another process may grab the device in between. Nothing blocks waiting
    for a slot; an empty scan raises ``ResourceUnavailable`` at once.

    Callers should use :meth:`lease` so release happens on every exit path.
    ``release`` is idempotent.
    """

    def __init__(
        self,
        slot_count: int = NBD_SLOT_COUNT,
        sysfs_root: Path = SYSFS_BLOCK_ROOT,
        port_range: Tuple[int, int] = DEFAULT_SSH_PORT_RANGE,
        rng: Optional[random.Random] = None,
        module_path: Path = SYSFS_NBD_MODULE,
    ) -> None:
        self.slot_count = slot_count
        self.sysfs_root = sysfs_root
        self.module_path = module_path
        self.port_range = port_range
        self._rng = rng or random.Random()
        self._held_slots: Dict[int, DeviceLease] = {}
        self._held_ports: Dict[int, PortLease] = {}
        self._order: List[Lease] = []

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------
    @property
    def outstanding(self) -> int:
        return len(self._order)

    def held(self) -> List[Lease]:
        return list(self._order)

    def acquire(self, kind: str) -> Lease:
        if kind == LEASE_DEVICE:
            return self.acquire_device()
        if kind == LEASE_PORT:
            return self.acquire_port()
        raise BuildError(f"Unknown lease kind '{kind}'")

    @contextmanager
    def lease(self, kind: str) -> Iterator[Lease]:
        acquired = self.acquire(kind)
        try:
            yield acquired
        finally:
            self.release(acquired)

    def release(self, lease: Lease) -> None:
        if lease.released:
            return
        if isinstance(lease, DeviceLease):
            self._release_device(lease)
        else:
            self._held_ports.pop(lease.port, None)
            log("DEBUG", f"Released port {lease.port}")
        lease.released = True
        if lease in self._order:
            self._order.remove(lease)

    def release_all(self) -> None:
        """Release every outstanding lease, newest first."""
        for held in reversed(self.held()):
            self.release(held)

    # ------------------------------------------------------------------
    # Block devices
    # ------------------------------------------------------------------
    def ensure_module(self) -> None:
        """Load the nbd kernel module with partition support if it is missing."""
        if self.module_path.exists():
            return
        log("INFO", "Loading nbd kernel module...")
        try:
            run(privileged(["modprobe", "nbd", f"max_part={NBD_MAX_PARTITIONS}"]))
        except (subprocess.CalledProcessError, FileNotFoundError) as exc:
            raise ResourceUnavailable(f"Could not load nbd kernel module: {exc}") from exc

    def slot_in_use(self, slot: int) -> bool:
        """True when the kernel reports a consumer for ``/dev/nbd<slot>`` or it does not exist."""
        slot_dir = self.sysfs_root / f"nbd{slot}"
        if not slot_dir.exists():
            return True
        try:
            return bool((slot_dir / "pid").read_text().strip())
        except FileNotFoundError:
            return False
        except OSError:
            return True

    def acquire_device(self) -> DeviceLease:
        for slot in range(self.slot_count):
            if slot in self._held_slots or self.slot_in_use(slot):
                continue
            lease = DeviceLease(slot=slot)
            self._held_slots[slot] = lease
            self._order.append(lease)
            log("DEBUG", f"Leased {lease.device}")
            return lease
        raise ResourceUnavailable(f"No free NBD device among nbd0-nbd{self.slot_count - 1}")

    def attach(self, lease: DeviceLease, image: Path) -> None:
        if lease.released:
            raise BuildError(f"Lease on {lease.device} was already released")
        if lease.state != LeaseState.FREE:
            raise BuildError(f"{lease.device} is already {lease.state.value}")
        if self.slot_in_use(lease.slot):
            raise ResourceUnavailable(f"{lease.device} was taken by another process before attach")
        log("INFO", f"Attaching {image.name} to {lease.device}")
        try:
            run(privileged(["qemu-nbd", f"--connect={lease.device}", str(image)]))
        except (subprocess.CalledProcessError, FileNotFoundError) as exc:
            raise BuildError(f"qemu-nbd could not attach {image} to {lease.device}: {exc}") from exc
        lease.backing_file = image
        lease.state = LeaseState.ATTACHED

    def mount(self, lease: DeviceLease, partition: Path, mount_point: Path) -> bool:
        """Mount ``partition`` of an attached lease. Returns False if mount refused."""
        if lease.state != LeaseState.ATTACHED:
            raise BuildError(f"{lease.device} must be attached before mounting (state {lease.state.value})")
        result = run(privileged(["mount", str(partition), str(mount_point)]), check=False, capture_output=True)
        if result.returncode != 0:
            log("DEBUG", f"mount {partition} failed: {(result.stderr or '').strip()}")
            return False
        lease.mount_point = mount_point
        lease.state = LeaseState.MOUNTED
        return True

    def unmount(self, lease: DeviceLease) -> None:
        if lease.state != LeaseState.MOUNTED or lease.mount_point is None:
            return
        result = run(privileged(["umount", str(lease.mount_point)]), check=False, capture_output=True)
        if result.returncode != 0:
            log("WARN", f"Failed to unmount {lease.mount_point}: {(result.stderr or '').strip()}")
        lease.mount_point = None
        lease.state = LeaseState.ATTACHED

    def _release_device(self, lease: DeviceLease) -> None:
        try:
            if lease.state == LeaseState.MOUNTED:
                self.unmount(lease)
            if lease.state == LeaseState.ATTACHED:
                result = run(
                    privileged(["qemu-nbd", "--disconnect", str(lease.device)]),
                    check=False,
                    capture_output=True,
                )
                if result.returncode != 0:
                    log("WARN", f"Failed to disconnect {lease.device}: {(result.stderr or '').strip()}")
        except OSError as exc:
            log("WARN", f"Error while releasing {lease.device}: {exc}")
        lease.state = LeaseState.FREE
        self._held_slots.pop(lease.slot, None)
        log("DEBUG", f"Released {lease.device}")

    # ------------------------------------------------------------------
    # Ports
    # ------------------------------------------------------------------
    def acquire_port(self) -> PortLease:
        low, high = self.port_range
        free = [port for port in range(low, high + 1) if port not in self._held_ports]
        if not free:
            raise ResourceUnavailable(f"No free port in range {low}-{high}")
        lease = PortLease(port=self._rng.choice(free))
        self._held_ports[lease.port] = lease
        self._order.append(lease)
        log("DEBUG", f"Leased port {lease.port}")
        return lease
