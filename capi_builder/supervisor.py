"""Emulated machine lifecycle: launch, readiness polling, teardown."""

from __future__ import annotations

import shutil
import subprocess
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Sequence

from capi_builder.constants import (
    BOOT_POLL_INTERVAL,
    BOOT_WAIT_SECONDS,
    FIRMWARE_VARS_COPY_NAME,
    LEASE_PORT,
    LOG_TAIL_LINES,
    PROBE_CONNECT_TIMEOUT,
    QEMU_MACHINE,
    QEMU_SYSTEM_BINARY,
    QEMU_TCG_CPU,
    SSH_GUEST_PORT,
    TERMINATE_GRACE_SECONDS,
)
from capi_builder.exceptions import BootTimeout, BuildError
from capi_builder.leases import ResourceLeaseManager
from capi_builder.models import BootState, FirmwarePair, Lease, VMInstance
from capi_builder.remote import ssh_command, ssh_env
from capi_builder.utils import ensure_directory, kvm_available, log, tail_file

Probe = Callable[[VMInstance], bool]


def ssh_probe(instance: VMInstance) -> bool:
    """One non-interactive login attempt; True when the guest accepted it."""
    cmd = ssh_command(instance.ssh_port, instance.login_user, "true", PROBE_CONNECT_TIMEOUT)
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            stdin=subprocess.DEVNULL,
            timeout=PROBE_CONNECT_TIMEOUT * 2,
            env=ssh_env(instance.password),
        )
    except subprocess.TimeoutExpired:
        return False
    except FileNotFoundError as exc:
        raise BuildError("sshpass/ssh not found. Install with: apt install sshpass openssh-client") from exc
    return result.returncode == 0


class VMSupervisor:
    """Owns emulator processes started for a build.

    ``launch`` returns as soon as the process is spawned; readiness is a
    separate, bounded wait (``await_ready``). ``terminate`` may be called any
    number of times and always hands the instance's leases back.
    """

    def __init__(
        self,
        lease_manager: ResourceLeaseManager,
        work_dir: Path,
        cpus: int,
        memory_mb: int,
        probe: Optional[Probe] = None,
        use_kvm: Optional[bool] = None,
    ) -> None:
        self.lease_manager = lease_manager
        self.work_dir = work_dir
        self.cpus = cpus
        self.memory_mb = memory_mb
        self.probe = probe or ssh_probe
        self.use_kvm = kvm_available() if use_kvm is None else use_kvm
        self._instances: List[VMInstance] = []

    @property
    def instances(self) -> List[VMInstance]:
        return list(self._instances)

    def _accel_args(self) -> List[str]:
        if self.use_kvm:
            return ["-machine", f"{QEMU_MACHINE},accel=kvm", "-cpu", "host"]
        return ["-machine", QEMU_MACHINE, "-accel", "tcg,thread=multi", "-cpu", QEMU_TCG_CPU]

    def build_command(
        self,
        name: str,
        image: Path,
        firmware: FirmwarePair,
        port: int,
        seed_iso: Optional[Path] = None,
        snapshot: bool = True,
    ) -> List[str]:
        disk = f"if=virtio,format=qcow2,file={image}"
        if snapshot:
            disk += ",snapshot=on"
        cmd = [
            QEMU_SYSTEM_BINARY,
            "-name",
            name,
            *self._accel_args(),
            "-smp",
            str(self.cpus),
            "-m",
            str(self.memory_mb),
            "-nographic",
            "-drive",
            f"if=pflash,format=raw,readonly=on,file={firmware.code}",
            "-drive",
            f"if=pflash,format=raw,file={firmware.vars}",
            "-drive",
            disk,
            "-netdev",
            f"user,id=net0,hostfwd=tcp::{port}-:{SSH_GUEST_PORT}",
            "-device",
            "virtio-net-pci,netdev=net0",
        ]
        if seed_iso is not None:
            cmd += ["-drive", f"if=virtio,format=raw,readonly=on,file={seed_iso}"]
        return cmd

    def launch(
        self,
        image: Path,
        firmware: FirmwarePair,
        port: int,
        login_user: str,
        password: str,
        seed_iso: Optional[Path] = None,
        name: str = "capi-validate",
        snapshot: bool = True,
        leases: Sequence[Lease] = (),
    ) -> VMInstance:
        if not image.exists():
            raise BuildError(f"Disk image not found: {image}")
        instance_dir = self.work_dir / name
        ensure_directory(instance_dir)

        # Each instance writes its own variables store; the template stays pristine.
        vars_copy = instance_dir / FIRMWARE_VARS_COPY_NAME
        shutil.copyfile(firmware.vars, vars_copy)
        vars_copy.chmod(0o644)
        pair = FirmwarePair(code=firmware.code, vars=vars_copy)

        log_path = instance_dir / "vm.log"
        cmd = self.build_command(name, image, pair, port, seed_iso=seed_iso, snapshot=snapshot)
        log("INFO", f"Starting {name} ({'KVM' if self.use_kvm else 'TCG'}, SSH on localhost:{port})")
        log("DEBUG", f"Running: {' '.join(cmd)}")
        with open(log_path, "wb") as log_handle:
            try:
                process = subprocess.Popen(
                    cmd,
                    stdin=subprocess.DEVNULL,
                    stdout=log_handle,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
            except FileNotFoundError as exc:
                raise BuildError(f"{QEMU_SYSTEM_BINARY} not found. Install with: apt install qemu-system-arm") from exc

        instance = VMInstance(
            name=name,
            process=process,
            ssh_port=port,
            firmware=pair,
            log_path=log_path,
            login_user=login_user,
            password=password,
            leases=list(leases),
        )
        self._instances.append(instance)
        return instance

    def await_ready(
        self,
        instance: VMInstance,
        max_wait: float = BOOT_WAIT_SECONDS,
        interval: float = BOOT_POLL_INTERVAL,
    ) -> VMInstance:
        if instance.state == BootState.READY:
            return instance
        if instance.state != BootState.STARTING:
            raise BuildError(f"{instance.name} cannot become ready from state {instance.state.value}")

        log("INFO", f"Waiting up to {max_wait:.0f}s for SSH on port {instance.ssh_port}...")
        started = time.monotonic()
        deadline = started + max_wait
        while True:
            code = instance.process.poll()
            if code is not None:
                instance.state = BootState.FAILED
                tail = tail_file(instance.log_path, LOG_TAIL_LINES)
                self._report_tail(instance, tail)
                raise BootTimeout(f"{instance.name} exited with code {code} before SSH came up", log_tail=tail)
            if self.probe(instance):
                instance.state = BootState.READY
                log("SUCCESS", f"{instance.name} reachable after {time.monotonic() - started:.0f}s")
                return instance
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            log("DEBUG", f"{instance.name} not reachable yet ({remaining:.0f}s left)")
            time.sleep(min(interval, remaining))

        instance.state = BootState.FAILED
        tail = tail_file(instance.log_path, LOG_TAIL_LINES)
        self._report_tail(instance, tail)
        raise BootTimeout(f"{instance.name} not reachable over SSH within {max_wait:.0f}s", log_tail=tail)

    def _report_tail(self, instance: VMInstance, tail: str) -> None:
        if not tail:
            log("ERROR", f"{instance.name} console log is empty ({instance.log_path})")
            return
        log("ERROR", f"Last {LOG_TAIL_LINES} lines of {instance.log_path}:")
        for line in tail.splitlines():
            print(f"    {line}", flush=True)

    def terminate(self, instance: VMInstance) -> None:
        if instance.state != BootState.TERMINATED:
            proc = instance.process
            try:
                if proc.poll() is None:
                    proc.terminate()
                    try:
                        proc.wait(timeout=TERMINATE_GRACE_SECONDS)
                    except subprocess.TimeoutExpired:
                        log("WARN", f"{instance.name} ignored SIGTERM; killing")
                        proc.kill()
                        proc.wait(timeout=TERMINATE_GRACE_SECONDS)
            except (OSError, subprocess.SubprocessError) as exc:
                log("WARN", f"Failed to stop {instance.name}: {exc}")
            instance.state = BootState.TERMINATED
            log("INFO", f"{instance.name} stopped")

        for lease in instance.leases:
            try:
                self.lease_manager.release(lease)
            except (BuildError, OSError) as exc:
                log("WARN", f"Failed to release lease held by {instance.name}: {exc}")

    def terminate_all(self) -> None:
        for instance in reversed(self._instances):
            self.terminate(instance)

    @contextmanager
    def running(
        self,
        image: Path,
        firmware: FirmwarePair,
        login_user: str,
        password: str,
        seed_iso: Optional[Path] = None,
        name: str = "capi-validate",
        snapshot: bool = True,
    ) -> Iterator[VMInstance]:
        """Lease a forwarding port, launch, and terminate on the way out."""
        port_lease = self.lease_manager.acquire(LEASE_PORT)
        try:
            instance = self.launch(
                image,
                firmware,
                port_lease.port,
                login_user,
                password,
                seed_iso=seed_iso,
                name=name,
                snapshot=snapshot,
                leases=[port_lease],
            )
        except BaseException:
            self.lease_manager.release(port_lease)
            raise
        try:
            yield instance
        finally:
            self.terminate(instance)
