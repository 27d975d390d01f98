"""Tests for capi_builder.converter module."""

from __future__ import annotations

import hashlib
import io
import subprocess
import tarfile
import xml.etree.ElementTree as ET
from pathlib import Path
from unittest.mock import patch

import pytest

from capi_builder.converter import (
    OVF_NS,
    FormatConverter,
    parse_manifest,
    render_descriptor,
    verify_archive,
)
from capi_builder.exceptions import BuildError, ConversionFailure

VIRTUAL_SIZE = 20 * 1024**3


def fake_qemu_img(fail_on=None):
    """Stand-in for ``run`` that writes the conversion target."""

    def _run(cmd, check=True, **kwargs):
        fmt = cmd[cmd.index("-O") + 1]
        if fail_on == fmt:
            raise subprocess.CalledProcessError(1, cmd, output="", stderr="qemu-img: write failed")
        Path(cmd[-1]).write_bytes(f"{fmt}-data".encode())
        return subprocess.CompletedProcess(cmd, 0, "", "")

    return _run


@pytest.fixture
def base_image(tmp_path):
    out = tmp_path / "output"
    out.mkdir()
    base = out / "ubuntu-2204-arm64-kube-1.32.4.qcow2"
    base.write_bytes(b"qcow2-data")
    return base


@pytest.fixture
def patched_tools():
    with patch("capi_builder.converter.require_tool") as require, patch(
        "capi_builder.converter.qemu_img_info", return_value={"virtual-size": VIRTUAL_SIZE}
    ) as info:
        yield require, info


def _add_member(archive, name, data):
    info = tarfile.TarInfo(name)
    info.size = len(data)
    archive.addfile(info, io.BytesIO(data))


def _write_archive(path, members):
    with tarfile.open(path, "w", format=tarfile.USTAR_FORMAT) as archive:
        for name, data in members:
            _add_member(archive, name, data)
    return path


def _sha(data):
    return hashlib.sha256(data).hexdigest()


class TestConvert:
    def test_produces_all_outputs(self, base_image, patched_tools):
        with patch("capi_builder.converter.run", side_effect=fake_qemu_img()):
            result = FormatConverter(cpus=4, memory_mb=4096).convert(base_image)
        stem = base_image.with_suffix("")
        assert result.raw.path == stem.with_name(stem.name + ".raw")
        assert result.stream.path == stem.with_name(stem.name + ".vmdk")
        assert result.archive.path == stem.with_name(stem.name + ".ova")
        assert all(artifact.path.exists() for artifact in result.artifacts)

    def test_qemu_img_invocations(self, base_image, patched_tools):
        with patch("capi_builder.converter.run", side_effect=fake_qemu_img()) as mock_run:
            FormatConverter(cpus=4, memory_mb=4096).convert(base_image)
        raw_cmd, stream_cmd = (call[0][0] for call in mock_run.call_args_list)
        assert raw_cmd[:6] == ["qemu-img", "convert", "-f", "qcow2", "-O", "raw"]
        assert stream_cmd[stream_cmd.index("-o") + 1] == "subformat=streamOptimized"

    def test_archive_layout(self, base_image, patched_tools):
        with patch("capi_builder.converter.run", side_effect=fake_qemu_img()):
            result = FormatConverter(cpus=4, memory_mb=4096).convert(base_image)
        with tarfile.open(result.archive.path) as archive:
            names = archive.getnames()
            manifest = archive.extractfile(names[-1]).read().decode()
        stem = base_image.stem
        assert names == [f"{stem}.ovf", f"{stem}.vmdk", f"{stem}.mf"]
        entries = parse_manifest(manifest)
        assert [name for _, name, _ in entries] == [f"{stem}.ovf", f"{stem}.vmdk"]
        assert entries[1][2] == _sha(b"vmdk-data")
        assert len(result.manifest.entries) == 2

    def test_archive_verifies(self, base_image, patched_tools):
        with patch("capi_builder.converter.run", side_effect=fake_qemu_img()):
            result = FormatConverter(cpus=4, memory_mb=4096).convert(base_image)
        assert verify_archive(result.archive.path) == []

    def test_intermediates_removed(self, base_image, patched_tools):
        with patch("capi_builder.converter.run", side_effect=fake_qemu_img()):
            FormatConverter(cpus=4, memory_mb=4096).convert(base_image)
        leftovers = sorted(p.name for p in base_image.parent.iterdir())
        stem = base_image.stem
        assert leftovers == sorted([base_image.name, f"{stem}.raw", f"{stem}.vmdk", f"{stem}.ova"])

    def test_checksums_logged(self, base_image, patched_tools, capsys):
        with patch("capi_builder.converter.run", side_effect=fake_qemu_img()):
            FormatConverter(cpus=4, memory_mb=4096).convert(base_image)
        out = capsys.readouterr().out
        assert f"{_sha(b'qcow2-data')}  {base_image.name}" in out
        assert f"{_sha(b'raw-data')}  {base_image.stem}.raw" in out

    def test_stream_failure_stops_pipeline(self, base_image, patched_tools):
        _, info = patched_tools
        with patch("capi_builder.converter.run", side_effect=fake_qemu_img(fail_on="vmdk")):
            with pytest.raises(ConversionFailure) as excinfo:
                FormatConverter(cpus=4, memory_mb=4096).convert(base_image)
        assert excinfo.value.step == "stream"
        assert "write failed" in str(excinfo.value)
        info.assert_not_called()
        names = {p.name for p in base_image.parent.iterdir()}
        assert not any(name.endswith((".vmdk", ".ovf", ".mf", ".ova", ".partial")) for name in names)

    def test_missing_virtual_size_fails_descriptor_step(self, base_image, patched_tools):
        _, info = patched_tools
        info.return_value = {"format": "vmdk"}
        with patch("capi_builder.converter.run", side_effect=fake_qemu_img()):
            with pytest.raises(ConversionFailure) as excinfo:
                FormatConverter(cpus=4, memory_mb=4096).convert(base_image)
        assert excinfo.value.step == "descriptor"
        assert not base_image.with_suffix(".ovf").exists()
        assert not base_image.with_suffix(".ova").exists()

    def test_missing_base_image(self, tmp_path, patched_tools):
        with pytest.raises(ConversionFailure) as excinfo:
            FormatConverter(cpus=4, memory_mb=4096).convert(tmp_path / "absent.qcow2")
        assert excinfo.value.step == "prepare"

    def test_missing_qemu_img(self, base_image):
        with patch("capi_builder.converter.require_tool", side_effect=BuildError("qemu-img not found")):
            with pytest.raises(ConversionFailure, match="qemu-img not found"):
                FormatConverter(cpus=4, memory_mb=4096).convert(base_image)


class TestRenderDescriptor:
    def test_parseable_envelope(self):
        document = render_descriptor("capi-node", "capi-node.vmdk", 1234, VIRTUAL_SIZE, 4, 4096)
        root = ET.fromstring(document)
        ns = {"ovf": OVF_NS}
        assert root.tag == f"{{{OVF_NS}}}Envelope"
        file_ref = root.find("ovf:References/ovf:File", ns)
        assert file_ref.get(f"{{{OVF_NS}}}href") == "capi-node.vmdk"
        assert file_ref.get(f"{{{OVF_NS}}}size") == "1234"
        disk = root.find("ovf:DiskSection/ovf:Disk", ns)
        assert disk.get(f"{{{OVF_NS}}}capacity") == str(VIRTUAL_SIZE)
        assert disk.get(f"{{{OVF_NS}}}format").endswith("#streamOptimized")
        items = root.findall("ovf:VirtualSystem/ovf:VirtualHardwareSection/ovf:Item", ns)
        assert len(items) == 5


class TestParseManifest:
    def test_parses_lines(self):
        text = f"SHA256(a.ovf)= {_sha(b'a')}\n\nSHA256(a.vmdk)= {_sha(b'b')}\n"
        assert parse_manifest(text) == [("SHA256", "a.ovf", _sha(b"a")), ("SHA256", "a.vmdk", _sha(b"b"))]

    def test_malformed_line(self):
        with pytest.raises(BuildError, match="line 1"):
            parse_manifest("a.ovf deadbeef\n")


class TestVerifyArchive:
    def test_checksum_mismatch(self, tmp_path):
        manifest = f"SHA256(x.ovf)= {_sha(b'<xml/>')}\nSHA256(x.vmdk)= {_sha(b'original')}\n".encode()
        path = _write_archive(
            tmp_path / "x.ova", [("x.ovf", b"<xml/>"), ("x.vmdk", b"tampered"), ("x.mf", manifest)]
        )
        assert verify_archive(path) == ["x.vmdk: checksum mismatch"]

    def test_member_ordering(self, tmp_path):
        manifest = f"SHA256(x.ovf)= {_sha(b'<xml/>')}\n".encode()
        path = _write_archive(tmp_path / "x.ova", [("x.mf", manifest), ("x.ovf", b"<xml/>")])
        problems = verify_archive(path)
        assert "descriptor is not the first archive member" in problems
        assert "manifest is not the last archive member" in problems

    def test_unlisted_and_missing_members(self, tmp_path):
        manifest = f"SHA256(x.ovf)= {_sha(b'<xml/>')}\nSHA256(gone.vmdk)= {_sha(b'')}\n".encode()
        path = _write_archive(
            tmp_path / "x.ova", [("x.ovf", b"<xml/>"), ("x.vmdk", b"disk"), ("x.mf", manifest)]
        )
        problems = verify_archive(path)
        assert "x.vmdk is not listed in the manifest" in problems
        assert "gone.vmdk is listed in the manifest but missing from the archive" in problems

    def test_no_manifest(self, tmp_path):
        path = _write_archive(tmp_path / "x.ova", [("x.ovf", b"<xml/>")])
        assert verify_archive(path) == ["expected exactly one manifest member, found 0"]

    def test_unreadable_archive(self, tmp_path):
        path = tmp_path / "x.ova"
        path.write_bytes(b"not a tar file at all")
        problems = verify_archive(path)
        assert len(problems) == 1
        assert problems[0].startswith("cannot read archive")
