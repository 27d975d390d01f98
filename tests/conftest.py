"""Shared test fixtures."""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import List, Optional
from unittest.mock import MagicMock

import pytest

from capi_builder.models import BuildConfig, CommandResult, FirmwarePair, VMInstance


@pytest.fixture
def build_config(tmp_path) -> BuildConfig:
    """Return a BuildConfig rooted in a temporary directory."""
    return BuildConfig(
        kubernetes_version="v1.32.4",
        containerd_version="2.0.4",
        cni_version="1.6.0",
        crictl_version="1.32.0",
        runc_version="1.2.8",
        output_dir=tmp_path / "output",
        build_dir=tmp_path / "build",
        cpus=4,
        memory_mb=4096,
        ssh_port_range=(2200, 2299),
        cni_min_plugins=6,
        packer_template=tmp_path / "packer" / "capi-arm64-local.pkr.hcl",
    )


@pytest.fixture
def mock_env(monkeypatch):
    """Helper to set environment variables for tests."""

    def _set(**kwargs):
        for key, value in kwargs.items():
            if value is None:
                monkeypatch.delenv(key, raising=False)
            else:
                monkeypatch.setenv(key, str(value))

    return _set


# Every environment variable parse_env() reads.
_PARSE_ENV_VARS = [
    "BUILD_CONFIG",
    "K8S_VERSION",
    "CONTAINERD_VERSION",
    "CNI_VERSION",
    "CRICTL_VERSION",
    "RUNC_VERSION",
    "OUTPUT_DIR",
    "BUILD_DIR",
    "PACKER_TEMPLATE",
    "QEMU_CPUS",
    "QEMU_MEMORY",
    "SSH_PORT_RANGE",
    "CNI_MIN_PLUGINS",
]


@pytest.fixture
def clean_env(monkeypatch):
    """Clear all environment variables that parse_env() reads."""
    for key in _PARSE_ENV_VARS:
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def firmware_pair(tmp_path) -> FirmwarePair:
    fw_dir = tmp_path / "fw"
    fw_dir.mkdir()
    code = fw_dir / "AAVMF_CODE.fd"
    vars_file = fw_dir / "AAVMF_VARS.fd"
    code.write_bytes(b"code")
    vars_file.write_bytes(b"vars")
    return FirmwarePair(code=code, vars=vars_file)


@pytest.fixture
def vm_instance(tmp_path, firmware_pair) -> VMInstance:
    """A VMInstance backed by a mock process that is still running."""
    process = MagicMock(spec=subprocess.Popen)
    process.poll.return_value = None
    return VMInstance(
        name="capi-test-vm",
        process=process,
        ssh_port=2222,
        firmware=firmware_pair,
        log_path=tmp_path / "vm.log",
        login_user="ubuntu",
        password="s3cret",
    )


class FakeExecutor:
    """Scripted stand-in for RemoteExecutor keyed on command substrings."""

    def __init__(self, responses: Optional[dict] = None, default: CommandResult = CommandResult("", 0)):
        self.responses = dict(responses or {})
        self.default = default
        self.commands: List[str] = []

    def run(self, instance, command, timeout=None) -> CommandResult:
        self.commands.append(command)
        for needle, response in self.responses.items():
            if needle in command:
                if isinstance(response, Exception):
                    raise response
                return response
        return self.default

    def check_output(self, instance, command, timeout=None) -> str:
        result = self.run(instance, command, timeout=timeout)
        return result.stdout.strip() if result.exit_code == 0 else ""


@pytest.fixture
def fake_executor_cls():
    return FakeExecutor


def make_sysfs(root: Path, busy: List[int], slots: int = 16) -> Path:
    """Lay out /sys/block/nbdN/pid files; ``busy`` slots get a pid."""
    for slot in range(slots):
        slot_dir = root / f"nbd{slot}"
        slot_dir.mkdir(parents=True, exist_ok=True)
        if slot in busy:
            (slot_dir / "pid").write_text("4242\n")
    return root


@pytest.fixture
def sysfs_factory(tmp_path):
    def _make(busy: List[int], slots: int = 16) -> Path:
        return make_sysfs(tmp_path / "sys" / "block", busy, slots)

    return _make
