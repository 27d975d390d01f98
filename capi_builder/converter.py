"""Derived disk formats and OVA packaging."""

from __future__ import annotations

import hashlib
import subprocess
import tarfile
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple
from xml.etree.ElementTree import Element, SubElement, register_namespace, tostring

from capi_builder.constants import (
    ARCHIVE_SUFFIX,
    BASE_IMAGE_FORMAT,
    CHECKSUM_ALGORITHM,
    DESCRIPTOR_SUFFIX,
    MANIFEST_LINE_RE,
    MANIFEST_SUFFIX,
    RAW_SUFFIX,
    STREAM_SUBFORMAT,
    STREAM_SUFFIX,
)
from capi_builder.exceptions import BuildError, ConversionFailure
from capi_builder.models import Artifact, ArtifactFormat, ConversionManifest, ConversionResult
from capi_builder.utils import human_size, log, qemu_img_info, require_tool, run, section

OVF_NS = "http://schemas.dmtf.org/ovf/envelope/1"
RASD_NS = "http://schemas.dmtf.org/wbem/wscim/1/cim-schema/2/CIM_ResourceAllocationSettingData"
VSSD_NS = "http://schemas.dmtf.org/wbem/wscim/1/cim-schema/2/CIM_VirtualSystemSettingData"
VMW_NS = "http://www.vmware.com/schema/ovf"
STREAM_FORMAT_URI = "http://www.vmware.com/interfaces/specifications/vmdk.html#streamOptimized"

for _prefix, _uri in (("ovf", OVF_NS), ("rasd", RASD_NS), ("vssd", VSSD_NS), ("vmw", VMW_NS)):
    register_namespace(_prefix, _uri)


def _ovf(name: str) -> str:
    return f"{{{OVF_NS}}}{name}"


def _text(parent: Element, tag: str, value: object) -> Element:
    node = SubElement(parent, tag)
    node.text = str(value)
    return node


def _rasd_item(parent: Element, fields: List[Tuple[str, object]]) -> Element:
    item = SubElement(parent, _ovf("Item"))
    for name, value in fields:
        _text(item, f"{{{RASD_NS}}}{name}", value)
    return item


def render_descriptor(
    system_name: str,
    disk_file: str,
    disk_file_size: int,
    capacity: int,
    cpus: int,
    memory_mb: int,
) -> str:
    """Render the OVF envelope describing one VM with a single streamOptimized disk."""
    envelope = Element(_ovf("Envelope"))

    refs = SubElement(envelope, _ovf("References"))
    SubElement(refs, _ovf("File"), {_ovf("href"): disk_file, _ovf("id"): "file1", _ovf("size"): str(disk_file_size)})

    disks = SubElement(envelope, _ovf("DiskSection"))
    _text(disks, _ovf("Info"), "Virtual disk information")
    SubElement(
        disks,
        _ovf("Disk"),
        {
            _ovf("capacity"): str(capacity),
            _ovf("capacityAllocationUnits"): "byte",
            _ovf("diskId"): "vmdisk1",
            _ovf("fileRef"): "file1",
            _ovf("format"): STREAM_FORMAT_URI,
        },
    )

    networks = SubElement(envelope, _ovf("NetworkSection"))
    _text(networks, _ovf("Info"), "Network information")
    network = SubElement(networks, _ovf("Network"), {_ovf("name"): "VM Network"})
    _text(network, _ovf("Description"), "VM Network")

    system = SubElement(envelope, _ovf("VirtualSystem"), {_ovf("id"): system_name})
    _text(system, _ovf("Info"), f"{system_name} ARM64 Cluster API image")
    _text(system, _ovf("Name"), system_name)
    os_section = SubElement(
        system, _ovf("OperatingSystemSection"), {_ovf("id"): "100", f"{{{VMW_NS}}}osType": "ubuntu64Guest"}
    )
    _text(os_section, _ovf("Info"), "Ubuntu 22.04 ARM64")

    hardware = SubElement(system, _ovf("VirtualHardwareSection"))
    _text(hardware, _ovf("Info"), "Virtual hardware requirements")
    hw_system = SubElement(hardware, _ovf("System"))
    for name, value in (
        ("ElementName", "Virtual Hardware Family"),
        ("InstanceID", 0),
        ("VirtualSystemIdentifier", system_name),
        ("VirtualSystemType", "vmx-19"),
    ):
        _text(hw_system, f"{{{VSSD_NS}}}{name}", value)

    _rasd_item(
        hardware,
        [
            ("AllocationUnits", "hertz * 10^6"),
            ("Description", "Number of Virtual CPUs"),
            ("ElementName", f"{cpus} virtual CPU(s)"),
            ("InstanceID", 1),
            ("ResourceType", 3),
            ("VirtualQuantity", cpus),
        ],
    )
    _rasd_item(
        hardware,
        [
            ("AllocationUnits", "byte * 2^20"),
            ("Description", "Memory Size"),
            ("ElementName", f"{memory_mb}MB of memory"),
            ("InstanceID", 2),
            ("ResourceType", 4),
            ("VirtualQuantity", memory_mb),
        ],
    )
    _rasd_item(
        hardware,
        [
            ("AddressOnParent", 0),
            ("ElementName", "Hard disk 1"),
            ("HostResource", "ovf:/disk/vmdisk1"),
            ("InstanceID", 3),
            ("Parent", 4),
            ("ResourceType", 17),
        ],
    )
    _rasd_item(
        hardware,
        [
            ("Address", 0),
            ("Description", "SCSI Controller"),
            ("ElementName", "SCSI Controller 0"),
            ("InstanceID", 4),
            ("ResourceSubType", "VirtualSCSI"),
            ("ResourceType", 6),
        ],
    )
    _rasd_item(
        hardware,
        [
            ("AddressOnParent", 0),
            ("AutomaticAllocation", "true"),
            ("Connection", "VM Network"),
            ("Description", "Network adapter"),
            ("ElementName", "Network adapter 1"),
            ("InstanceID", 5),
            ("ResourceSubType", "VmxNet3"),
            ("ResourceType", 10),
        ],
    )

    from xml.dom.minidom import parseString

    raw = tostring(envelope, encoding="unicode")
    return parseString(raw).toprettyxml(indent="  ")


def parse_manifest(text: str) -> List[Tuple[str, str, str]]:
    """Parse ``ALGO(name)= digest`` lines into ``(algo, name, digest)`` tuples."""
    entries = []
    for number, line in enumerate(text.splitlines(), start=1):
        if not line.strip():
            continue
        match = MANIFEST_LINE_RE.match(line.strip())
        if match is None:
            raise BuildError(f"Malformed manifest line {number}: {line!r}")
        entries.append((match.group("algo"), match.group("name"), match.group("digest")))
    return entries


def verify_archive(path: Path) -> List[str]:
    """Recompute member digests of an OVA and compare them with its manifest.

    Returns a list of problems; an empty list means the archive is intact.
    """
    problems: List[str] = []
    try:
        with tarfile.open(path, "r:") as archive:
            members = [m for m in archive.getmembers() if m.isfile()]
            names = [m.name for m in members]
            manifests = [m for m in members if m.name.endswith(MANIFEST_SUFFIX)]
            if not names or not names[0].endswith(DESCRIPTOR_SUFFIX):
                problems.append("descriptor is not the first archive member")
            if len(manifests) != 1:
                return problems + [f"expected exactly one manifest member, found {len(manifests)}"]
            if names[-1] != manifests[0].name:
                problems.append("manifest is not the last archive member")

            handle = archive.extractfile(manifests[0])
            if handle is None:
                return problems + ["manifest member cannot be read"]
            entries = parse_manifest(handle.read().decode("utf-8"))
            listed = {name for _, name, _ in entries}
            for name in names:
                if name != manifests[0].name and name not in listed:
                    problems.append(f"{name} is not listed in the manifest")

            for algo, name, expected in entries:
                if algo != CHECKSUM_ALGORITHM:
                    problems.append(f"{name}: unsupported digest algorithm {algo}")
                    continue
                if name not in names:
                    problems.append(f"{name} is listed in the manifest but missing from the archive")
                    continue
                member = archive.extractfile(name)
                if member is None:
                    problems.append(f"{name} is not a regular file")
                    continue
                digest = hashlib.sha256()
                for chunk in iter(lambda: member.read(1024 * 1024), b""):
                    digest.update(chunk)
                if digest.hexdigest() != expected:
                    problems.append(f"{name}: checksum mismatch")
    except (tarfile.TarError, OSError, BuildError) as exc:
        problems.append(f"cannot read archive: {exc}")
    return problems


def log_checksums(artifacts: List[Artifact]) -> None:
    section(f"File checksums ({CHECKSUM_ALGORITHM})")
    for artifact in artifacts:
        if artifact.path.exists():
            print(f"{artifact.compute_checksum()}  {artifact.name}", flush=True)


def _remove(path: Optional[Path]) -> None:
    if path is None:
        return
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as exc:
        log("WARN", f"Could not remove {path}: {exc}")


class FormatConverter:
    """Derive raw, streamOptimized VMDK and OVA outputs from a qcow2 base image.

    Steps run strictly in order and the first failure stops the rest. The
    descriptor and manifest only live on disk long enough to be archived.
    """

    def __init__(self, cpus: int, memory_mb: int) -> None:
        self.cpus = cpus
        self.memory_mb = memory_mb
        self._intermediates: List[Path] = []

    def paths_for(self, base: Path) -> Dict[str, Path]:
        stem = base.with_suffix("")
        return {
            "raw": stem.with_name(stem.name + RAW_SUFFIX),
            "stream": stem.with_name(stem.name + STREAM_SUFFIX),
            "descriptor": stem.with_name(stem.name + DESCRIPTOR_SUFFIX),
            "manifest": stem.with_name(stem.name + MANIFEST_SUFFIX),
            "archive": stem.with_name(stem.name + ARCHIVE_SUFFIX),
        }

    @contextmanager
    def _step(self, name: str, *outputs: Path) -> Iterator[None]:
        log("INFO", f"[{name}] starting")
        try:
            yield
        except ConversionFailure:
            self._discard(*outputs)
            raise
        except subprocess.CalledProcessError as exc:
            self._discard(*outputs)
            detail = (exc.stderr or "").strip() or f"exit status {exc.returncode}"
            raise ConversionFailure(name, detail) from exc
        except (BuildError, OSError, ValueError, tarfile.TarError) as exc:
            self._discard(*outputs)
            raise ConversionFailure(name, str(exc)) from exc

    def _discard(self, *outputs: Path) -> None:
        for path in (*outputs, *self._intermediates):
            _remove(path)
        self._intermediates.clear()

    def _transcode(self, base: Path, target: Path, fmt: str, options: Optional[str] = None) -> None:
        cmd = ["qemu-img", "convert", "-f", BASE_IMAGE_FORMAT, "-O", fmt]
        if options:
            cmd += ["-o", options]
        cmd += [str(base), str(target)]
        run(cmd, capture_output=True)

    def convert(self, base: Path) -> ConversionResult:
        section("Format conversion")
        paths = self.paths_for(base)
        self._intermediates = []

        with self._step("prepare"):
            require_tool("qemu-img", "qemu-utils")
            if not base.is_file():
                raise BuildError(f"Base image not found: {base}")

        with self._step("raw", paths["raw"]):
            self._transcode(base, paths["raw"], "raw")
            raw = Artifact(paths["raw"], ArtifactFormat.RAW)
            log("INFO", f"Raw image: {raw.name} ({human_size(raw.size)})")

        with self._step("stream", paths["stream"]):
            self._transcode(base, paths["stream"], "vmdk", f"subformat={STREAM_SUBFORMAT}")
            stream = Artifact(paths["stream"], ArtifactFormat.STREAM)
            log("INFO", f"Stream image: {stream.name} ({human_size(stream.size)})")

        with self._step("descriptor"):
            self._intermediates.append(paths["descriptor"])
            info = qemu_img_info(stream.path)
            capacity = info.get("virtual-size")
            if not isinstance(capacity, int):
                raise BuildError(f"qemu-img reported no virtual size for {stream.name}")
            document = render_descriptor(
                base.stem, stream.name, stream.size, capacity, self.cpus, self.memory_mb
            )
            with open(paths["descriptor"], "w", encoding="utf-8") as handle:
                handle.write(document)
            descriptor = Artifact(paths["descriptor"], ArtifactFormat.DESCRIPTOR)

        with self._step("manifest"):
            self._intermediates.append(paths["manifest"])
            # Both files are closed here; digests are taken from final content.
            manifest = ConversionManifest()
            manifest.add(descriptor)
            manifest.add(stream)
            manifest.write(paths["manifest"])

        partial = paths["archive"].with_name(paths["archive"].name + ".partial")
        with self._step("archive", partial, paths["archive"]):
            with tarfile.open(partial, "w", format=tarfile.USTAR_FORMAT) as archive:
                for member in (descriptor.path, stream.path, paths["manifest"]):
                    archive.add(str(member), arcname=member.name)
            partial.replace(paths["archive"])
            archive_artifact = Artifact(paths["archive"], ArtifactFormat.ARCHIVE)
            log("INFO", f"Archive: {archive_artifact.name} ({human_size(archive_artifact.size)})")

        for path in self._intermediates:
            _remove(path)
        self._intermediates = []

        result = ConversionResult(raw=raw, stream=stream, archive=archive_artifact, manifest=manifest)
        log_checksums([Artifact(base, ArtifactFormat.BASE_IMAGE), *result.artifacts])
        log("SUCCESS", "All formats generated")
        return result
