"""Global constants and path configuration for capi-image-builder."""

from __future__ import annotations

import os
import re
from pathlib import Path

PROJECT_DIR = Path(os.environ.get("PROJECT_DIR", Path.cwd()))
DEFAULT_OUTPUT_DIR = PROJECT_DIR / "output"
DEFAULT_BUILD_DIR = PROJECT_DIR / "local-build"
PACKER_TEMPLATE_NAME = "capi-arm64-local.pkr.hcl"
DEFAULT_PACKER_TEMPLATE = PROJECT_DIR / "packer" / PACKER_TEMPLATE_NAME
# Relative to the project directory
DOCKER_COMPOSE_FILE = Path("docker") / "docker-compose.yml"
DOCKERFILE = Path("docker") / "Dockerfile"
DOCKER_PACKER_VERSION = "1.10.0"
IMAGE_BUILDER_REPO = "https://github.com/kubernetes-sigs/image-builder.git"
IMAGE_BUILDER_DIR_NAME = "image-builder"
IMAGE_BUILDER_ANSIBLE_DIR = Path("images") / "capi" / "ansible"
PATCH_FILES_DIR_NAME = "files"
PAUSE_IMAGE = "registry.k8s.io/pause:3.10"
DOCKER_IMAGE_TAG = "capi-arm64-builder"

TRUTHY = {"1", "true", "yes", "on"}
_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in TRUTHY

# Component versions
DEFAULT_K8S_VERSION = "v1.32.4"
DEFAULT_CONTAINERD_VERSION = "2.0.4"
DEFAULT_CNI_VERSION = "1.6.0"
DEFAULT_CRICTL_VERSION = "1.32.0"
DEFAULT_RUNC_VERSION = "1.2.8"
VERSION_RE = re.compile(r"^v?\d+\.\d+\.\d+([.+-][0-9A-Za-z.+-]+)?$")
IMAGE_NAME_TEMPLATE = "ubuntu-2204-arm64-kube-{version}"

# Resource sizing
MIN_QEMU_CPUS = 4
MAX_QEMU_CPUS = 8  # virt machine limit under TCG
MEMORY_PER_CPU_MB = 1024
MIN_QEMU_MEMORY_MB = 4096
HOST_RESERVED_THREADS = 2

# Target architecture
TARGET_ARCH = "aarch64"
TARGET_DPKG_ARCH = "arm64"
TARGET_FILE_SIGNATURE = "ARM aarch64"
QEMU_SYSTEM_BINARY = "qemu-system-aarch64"
QEMU_MACHINE = "virt"
QEMU_TCG_CPU = "cortex-a72"

# Boot firmware, searched in order; first match wins
FIRMWARE_CODE_CANDIDATES = (
    Path("/usr/share/AAVMF/AAVMF_CODE.fd"),
    Path("/usr/share/qemu-efi-aarch64/QEMU_EFI.fd"),
    Path("/usr/share/edk2/aarch64/QEMU_EFI.fd"),
    Path("/usr/share/OVMF/AAVMF_CODE.fd"),
)
FIRMWARE_VARS_SUFFIX = "_VARS.fd"
FIRMWARE_GENERIC_VARS_NAME = "QEMU_VARS.fd"
FIRMWARE_VARS_COPY_NAME = "efivars.fd"

# Block device slots (network block devices)
NBD_SLOT_COUNT = 16
NBD_MAX_PARTITIONS = 8
SYSFS_BLOCK_ROOT = Path("/sys/block")
DEV_ROOT = Path("/dev")
PARTITION_POLL_ATTEMPTS = 10
PARTITION_POLL_INTERVAL = 1.0
PARTITION_RESCAN_ATTEMPT = 5
BOOT_PARTITION_CANDIDATES = ("p1", "p2", "p15")
BOOT_MOUNT_POINT = Path("/mnt/capi-boot")

# SSH forwarding ports
DEFAULT_SSH_PORT_RANGE = (2200, 2299)
SSH_GUEST_PORT = 22

# Readiness and remote execution
BOOT_WAIT_SECONDS = 120.0
BOOT_POLL_INTERVAL = 5.0
PROBE_CONNECT_TIMEOUT = 5
REMOTE_CONNECT_TIMEOUT = 10
REMOTE_COMMAND_TIMEOUT = 300.0
LOG_TAIL_LINES = 30
TERMINATE_GRACE_SECONDS = 5.0

# Build-scoped credential
BUILDER_USER = "builder"
TEST_USER = "ubuntu"
PASSWORD_LENGTH = 16

# Artifact layout
BASE_IMAGE_FORMAT = "qcow2"
RAW_SUFFIX = ".raw"
STREAM_SUFFIX = ".vmdk"
ARCHIVE_SUFFIX = ".ova"
DESCRIPTOR_SUFFIX = ".ovf"
MANIFEST_SUFFIX = ".mf"
STREAM_SUBFORMAT = "streamOptimized"
CHECKSUM_ALGORITHM = "SHA256"
MANIFEST_LINE_RE = re.compile(r"^(?P<algo>[A-Z0-9]+)\((?P<name>[^)]+)\)= (?P<digest>[0-9a-f]+)$")
BOOT_ARTIFACT_DIR_NAME = "pxe"
KERNEL_OUTPUT_NAME = "vmlinuz-arm64"
INITRD_OUTPUT_NAME = "initrd-arm64.img"
KERNEL_CONFIG_OUTPUT_NAME = "config-arm64"

# Validation
DEFAULT_CNI_MIN_PLUGINS = 6
CNI_PLUGIN_DIR = "/opt/cni/bin"
REQUIRED_CNI_PLUGINS = ("bridge", "loopback", "host-local")
KUBE_BINARIES = ("kubeadm", "kubectl", "kubelet")
DRY_RUN_SUCCESS_PHRASE = "Your Kubernetes control-plane has initialized"
DRY_RUN_ERROR_RE = re.compile(r"error", re.IGNORECASE)

# Host prerequisites for a local build: binary -> package providing it
LOCAL_BUILD_TOOLS = {
    QEMU_SYSTEM_BINARY: "qemu-system-arm",
    "qemu-img": "qemu-utils",
    "packer": "packer",
    "ansible": "ansible",
    "sshpass": "sshpass",
    "genisoimage": "genisoimage",
}

# Lease kinds
LEASE_DEVICE = "device"
LEASE_PORT = "port"
SYSFS_NBD_MODULE = Path("/sys/module/nbd")
