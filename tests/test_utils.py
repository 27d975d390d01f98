"""Tests for capi_builder.utils module."""

from __future__ import annotations

import hashlib
import subprocess
from pathlib import Path
from unittest.mock import MagicMock, patch

import bcrypt
import pytest

from capi_builder.exceptions import BuildError
from capi_builder.utils import (
    first_line,
    format_duration,
    generate_password,
    get_env,
    hash_password,
    human_size,
    log,
    missing_tools,
    parse_int_env,
    parse_port_range,
    privileged,
    qemu_img_info,
    select_latest,
    sha256_file,
    tail_file,
    version_key,
)


class TestLog:
    def test_info_level(self, capsys):
        log("INFO", "test message")
        captured = capsys.readouterr()
        assert "[INFO]" in captured.out
        assert "test message" in captured.out

    def test_result_levels_are_tagged(self, capsys):
        log("FAIL", "CNI plugin count")
        assert "[FAIL]" in capsys.readouterr().out

    def test_debug_suppressed_by_default(self, capsys):
        log("DEBUG", "should not appear")
        captured = capsys.readouterr()
        assert captured.out == ""


class TestGetEnv:
    def test_returns_value(self, monkeypatch):
        monkeypatch.setenv("TEST_VAR", "hello")
        assert get_env("TEST_VAR") == "hello"

    def test_returns_default(self, monkeypatch):
        monkeypatch.delenv("TEST_VAR", raising=False)
        assert get_env("TEST_VAR", "fallback") == "fallback"


class TestParseIntEnv:
    def test_valid_value(self, monkeypatch):
        monkeypatch.setenv("MY_INT", "42")
        assert parse_int_env("MY_INT", "10") == 42

    def test_non_integer_raises(self, monkeypatch):
        monkeypatch.setenv("MY_INT", "abc")
        with pytest.raises(BuildError, match="must be an integer"):
            parse_int_env("MY_INT", "10")

    def test_below_minimum_raises(self, monkeypatch):
        monkeypatch.setenv("MY_INT", "0")
        with pytest.raises(BuildError, match=">= 1"):
            parse_int_env("MY_INT", "10")


class TestParsePortRange:
    def test_valid_range(self):
        assert parse_port_range("SSH_PORT_RANGE", "2200-2299") == (2200, 2299)

    def test_single_port_range(self):
        assert parse_port_range("SSH_PORT_RANGE", "2222-2222") == (2222, 2222)

    @pytest.mark.parametrize("raw", ["2200", "a-b", "2300-2200", "0-10", "1-70000"])
    def test_invalid_ranges(self, raw):
        with pytest.raises(BuildError):
            parse_port_range("SSH_PORT_RANGE", raw)


class TestPrivileged:
    def test_root_runs_directly(self):
        with patch("capi_builder.utils.os.geteuid", return_value=0):
            assert privileged(["mount", "a", "b"]) == ["mount", "a", "b"]

    def test_non_root_uses_sudo(self):
        with patch("capi_builder.utils.os.geteuid", return_value=1000):
            assert privileged(["mount", "a", "b"]) == ["sudo", "mount", "a", "b"]


class TestMissingTools:
    def test_reports_packages_for_missing_binaries(self):
        present = {"qemu-img": "/usr/bin/qemu-img"}
        with patch("capi_builder.utils.shutil.which", side_effect=present.get):
            missing = missing_tools({"qemu-img": "qemu-utils", "packer": "packer", "sshpass": "sshpass"})
        assert missing == ["packer", "sshpass"]


class TestPasswords:
    def test_generated_password_is_alphanumeric(self):
        password = generate_password()
        assert len(password) == 16
        assert password.isalnum()

    def test_generated_passwords_differ(self):
        assert generate_password() != generate_password()

    def test_hash_password_verifies(self):
        hashed = hash_password("secret")
        assert hashed.startswith("$2")
        assert bcrypt.checkpw(b"secret", hashed.encode("utf-8"))


class TestSha256File:
    def test_matches_hashlib(self, tmp_path):
        path = tmp_path / "blob"
        path.write_bytes(b"x" * 3000)
        assert sha256_file(path, chunk_size=1024) == hashlib.sha256(b"x" * 3000).hexdigest()


class TestVersionSelection:
    def test_numeric_ordering(self):
        assert version_key("vmlinuz-5.15.0-100-generic") > version_key("vmlinuz-5.15.0-91-generic")

    def test_select_latest_picks_highest_version(self):
        paths = [
            Path("/boot/vmlinuz-5.15.0-91-generic"),
            Path("/boot/vmlinuz-5.15.0-105-generic"),
            Path("/boot/vmlinuz-5.15.0-100-generic"),
        ]
        assert select_latest(paths) == Path("/boot/vmlinuz-5.15.0-105-generic")

    def test_select_latest_empty(self):
        assert select_latest([]) is None


class TestTailFile:
    def test_returns_last_lines(self, tmp_path):
        path = tmp_path / "vm.log"
        path.write_text("".join(f"line {i}\n" for i in range(100)))
        tail = tail_file(path, 30)
        lines = tail.splitlines()
        assert len(lines) == 30
        assert lines[0] == "line 70"
        assert lines[-1] == "line 99"

    def test_missing_file_is_empty(self, tmp_path):
        assert tail_file(tmp_path / "absent.log") == ""


class TestQemuImgInfo:
    def test_parses_json(self, tmp_path):
        completed = subprocess.CompletedProcess(
            args=[], returncode=0, stdout='{"format": "qcow2", "virtual-size": 21474836480}', stderr=""
        )
        with patch("capi_builder.utils.subprocess.run", return_value=completed) as mock_run:
            info = qemu_img_info(tmp_path / "disk.qcow2")
        assert info["format"] == "qcow2"
        assert info["virtual-size"] == 21474836480
        assert mock_run.call_args[0][0][:3] == ["qemu-img", "info", "--output=json"]

    def test_failure_raises(self, tmp_path):
        completed = subprocess.CompletedProcess(args=[], returncode=1, stdout="", stderr="Could not open")
        with patch("capi_builder.utils.subprocess.run", return_value=completed):
            with pytest.raises(BuildError, match="Could not open"):
                qemu_img_info(tmp_path / "disk.qcow2")

    def test_garbage_output_raises(self, tmp_path):
        completed = MagicMock(returncode=0, stdout="not json", stderr="")
        with patch("capi_builder.utils.subprocess.run", return_value=completed):
            with pytest.raises(BuildError, match="Unparseable"):
                qemu_img_info(tmp_path / "disk.qcow2")

    def test_missing_tool_raises_build_error(self, tmp_path):
        with patch("capi_builder.utils.subprocess.run", side_effect=FileNotFoundError("qemu-img")):
            with pytest.raises(BuildError, match="apt install qemu-utils"):
                qemu_img_info(tmp_path / "disk.qcow2")


class TestFormatting:
    def test_human_size(self):
        assert human_size(512) == "512B"
        assert human_size(2048) == "2.0K"
        assert human_size(3 * 1024**3) == "3.0G"

    def test_format_duration(self):
        assert format_duration(125.9) == "2m 5s"

    def test_first_line_skips_blank(self):
        assert first_line("\n\n  /usr/bin/kubeadm \nnext") == "/usr/bin/kubeadm"
