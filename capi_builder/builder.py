"""Base image production: Packer on the host, or the same build inside a container."""

from __future__ import annotations

import json
import os
import shutil
import subprocess
import time
from pathlib import Path
from typing import Dict, List, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from capi_builder.cloudinit import write_seed_files
from capi_builder.constants import (
    BUILDER_USER,
    DOCKER_COMPOSE_FILE,
    DOCKER_IMAGE_TAG,
    DOCKER_PACKER_VERSION,
    DOCKERFILE,
    IMAGE_BUILDER_ANSIBLE_DIR,
    IMAGE_BUILDER_DIR_NAME,
    IMAGE_BUILDER_REPO,
    LOCAL_BUILD_TOOLS,
    PATCH_FILES_DIR_NAME,
    PAUSE_IMAGE,
    PROJECT_DIR,
)
from capi_builder.exceptions import BuildError
from capi_builder.firmware import FirmwareResolver
from capi_builder.models import Artifact, ArtifactFormat, BuildConfig, FirmwarePair
from capi_builder.utils import ensure_directory, format_duration, log, missing_tools, require_tool, run, section


def check_prerequisites(resolver: FirmwareResolver, tools: Optional[Dict[str, str]] = None) -> None:
    """Report every missing host tool (and firmware) in one error."""
    log("INFO", "Checking local build prerequisites...")
    missing = missing_tools(LOCAL_BUILD_TOOLS if tools is None else tools)
    if resolver.find_code() is None:
        missing.append("qemu-efi-aarch64")
    if missing:
        raise BuildError(f"Missing local build dependencies: {' '.join(missing)}. Install with: apt install {' '.join(missing)}")
    log("SUCCESS", "All local prerequisites met")


def arm64_overrides(config: BuildConfig) -> Dict[str, object]:
    """Variables overriding image-builder defaults that only make sense on x86."""
    crictl = config.crictl_version
    return {
        "common_virt_debs": [],
        "common_virt_rpms": [],
        "enable_hv_kvp_daemon": False,
        "auditd_enabled": False,
        "qemu_debs": ["cloud-init", "cloud-guest-utils", "cloud-initramfs-growroot"],
        "containerd_wasm_shims_runtimes": "",
        "sysusr_prefix": "/usr/local",
        "sysusrlocal_prefix": "/usr/local",
        "systemd_prefix": "/usr/lib/systemd",
        "pause_image": PAUSE_IMAGE,
        "crictl_version": crictl,
        "crictl_source_type": "http",
        "crictl_url": (
            f"https://github.com/kubernetes-sigs/cri-tools/releases/download/"
            f"v{crictl}/crictl-v{crictl}-linux-arm64.tar.gz"
        ),
        "load_additional_components": False,
    }


QEMU_PROVIDER_TASKS: List[Dict[str, object]] = [
    {
        "name": "Install cloud-init packages",
        "ansible.builtin.apt": {"name": "{{ qemu_debs }}", "state": "present"},
        "when": 'ansible_os_family == "Debian"',
    },
    {
        "name": "Enable hv-kvp-daemon",
        "ansible.builtin.systemd": {"name": "hv-kvp-daemon", "enabled": True, "state": "started"},
        "when": ['ansible_os_family == "Debian"', "enable_hv_kvp_daemon | default(false)"],
        "ignore_errors": True,
    },
]
BASH_COMPLETION_TASK: Dict[str, object] = {
    "name": "Create bash-completion directory",
    "ansible.builtin.file": {
        "path": "{{ sysusr_prefix }}/share/bash-completion/completions",
        "state": "directory",
        "mode": "0755",
    },
}
KUBECTL_COMPLETION_TASK = "Generate kubectl bash completion"


def patch_provider_tasks(path: Path) -> bool:
    """Replace the QEMU provider tasks with a version that tolerates a missing hyper-v daemon."""
    if not path.is_file() or "ignore_errors: true" in path.read_text(encoding="utf-8"):
        return False
    path.write_text(yaml.safe_dump(QEMU_PROVIDER_TASKS, sort_keys=False), encoding="utf-8")
    return True


def insert_bash_completion_task(path: Path) -> bool:
    """Insert the completion directory task ahead of the kubectl completion task."""
    if not path.is_file():
        return False
    text = path.read_text(encoding="utf-8")
    if BASH_COMPLETION_TASK["name"] in text:
        return False
    lines = text.splitlines(keepends=True)
    for index, line in enumerate(lines):
        if line.strip() == f"- name: {KUBECTL_COMPLETION_TASK}":
            indent = line[: len(line) - len(line.lstrip())]
            block = yaml.safe_dump([BASH_COMPLETION_TASK], sort_keys=False).splitlines(keepends=True)
            lines[index:index] = [indent + part for part in block] + ["\n"]
            path.write_text("".join(lines), encoding="utf-8")
            return True
    return False


class PackerBuild:
    """Drive ``packer build`` to produce the qcow2 base image under TCG emulation."""

    def __init__(
        self, config: BuildConfig, firmware: FirmwarePair, password: str, project_dir: Path = PROJECT_DIR
    ) -> None:
        self.config = config
        self.firmware = firmware
        self.password = password
        self.project_dir = project_dir
        self.image_builder_dir = config.build_dir / IMAGE_BUILDER_DIR_NAME

    def packer_vars(self) -> Dict[str, str]:
        cfg = self.config
        return {
            "kubernetes_semver": cfg.kubernetes_version,
            "kubernetes_series": cfg.kubernetes_series,
            "containerd_version": cfg.containerd_version,
            "cni_version": cfg.cni_version,
            "crictl_version": cfg.crictl_version,
            "runc_version": cfg.runc_version,
            "output_directory": str(cfg.output_dir),
            "image_name": cfg.image_name,
            "qemu_cpus": str(cfg.cpus),
            "qemu_memory": str(cfg.memory_mb),
            "efi_firmware_code": str(self.firmware.code),
            "efi_firmware_vars": str(self.firmware.vars),
            "image_builder_dir": str(self.image_builder_dir),
            "build_dir": str(cfg.build_dir),
        }

    def ensure_image_builder(self) -> None:
        if (self.image_builder_dir / IMAGE_BUILDER_ANSIBLE_DIR / "node.yml").exists():
            return
        log("INFO", f"Cloning image-builder into {self.image_builder_dir}...")
        try:
            run(["git", "clone", "--depth", "1", IMAGE_BUILDER_REPO, str(self.image_builder_dir)])
        except (subprocess.CalledProcessError, FileNotFoundError) as exc:
            raise BuildError(f"Could not fetch image-builder: {exc}") from exc

    def patch_image_builder(self) -> None:
        log("INFO", "Patching image-builder for ARM64 compatibility...")
        ansible = self.image_builder_dir / IMAGE_BUILDER_ANSIBLE_DIR
        if patch_provider_tasks(ansible / "roles" / "providers" / "tasks" / "qemu.yml"):
            log("INFO", "Patched qemu.yml provider tasks")
        if insert_bash_completion_task(ansible / "roles" / "kubernetes" / "tasks" / "main.yml"):
            log("INFO", "Patched kubernetes tasks")

        sysprep = ansible / "roles" / "sysprep"
        patches = self.project_dir / PATCH_FILES_DIR_NAME
        for source, target in (
            (patches / "sysprep-main.yml", sysprep / "tasks" / "main.yml"),
            (patches / "sysprep-handlers.yml", sysprep / "handlers" / "main.yml"),
        ):
            if source.is_file():
                ensure_directory(target.parent)
                shutil.copyfile(source, target)
                log("INFO", f"Installed patched {target.parent.name}/{target.name} from {source.name}")

    def write_build_files(self) -> None:
        build_dir = self.config.build_dir
        ensure_directory(build_dir)
        write_seed_files(build_dir / "cloud-init", BUILDER_USER, self.password, "capi-builder", "capi-build")
        with open(build_dir / "arm64-vars.json", "w", encoding="utf-8") as handle:
            json.dump(arm64_overrides(self.config), handle, indent=2)
        self.patch_image_builder()
        log("INFO", "Build configuration files written")

    def finalize_image(self) -> Artifact:
        target = self.config.base_image_path
        produced = self.config.output_dir / self.config.image_name
        if produced.is_file() and not target.exists():
            produced.rename(target)
        if not target.is_file():
            raise BuildError(f"Packer finished but {target} was not produced")
        return Artifact(target, ArtifactFormat.BASE_IMAGE)

    def run(self) -> Artifact:
        section("Building ARM64 CAPI image (QEMU TCG emulation)")
        template = self.config.packer_template
        if template is None or not template.is_file():
            raise BuildError(f"Packer template not found: {template}")
        self.ensure_image_builder()
        self.write_build_files()
        ensure_directory(self.config.output_dir)
        local_template = self.config.build_dir / template.name
        shutil.copyfile(template, local_template)

        args: List[str] = []
        for key, value in self.packer_vars().items():
            args += ["-var", f"{key}={value}"]
        env = os.environ.copy()
        env["PACKER_LOG"] = "1"
        # Never in argv.
        env["PKR_VAR_builder_password"] = self.password

        log("WARN", "This will take 30-60 minutes due to software emulation")
        started = time.monotonic()
        try:
            run(["packer", "init", local_template.name], cwd=self.config.build_dir)
            run(["packer", "build", "-force", *args, local_template.name], cwd=self.config.build_dir, env=env)
        except FileNotFoundError as exc:
            raise BuildError("packer not found. Install with: apt install packer") from exc
        except subprocess.CalledProcessError as exc:
            raise BuildError(f"Packer build failed with exit code {exc.returncode}") from exc
        log("SUCCESS", f"Packer build completed in {format_duration(time.monotonic() - started)}")
        return self.finalize_image()


class DockerBuildRunner:
    """Run the whole local build inside a privileged container."""

    def __init__(self, config: BuildConfig, project_dir: Path = PROJECT_DIR) -> None:
        self.config = config
        self.project_dir = project_dir

    def check_prerequisites(self) -> None:
        require_tool("docker", "docker.io")
        result = run(["docker", "info"], check=False, capture_output=True)
        if result.returncode != 0:
            raise BuildError(
                "Docker daemon is not running or user lacks permissions. "
                "Try: sudo systemctl start docker, or add the user to the docker group"
            )
        log("SUCCESS", "Docker prerequisites met")

    def compose_command(self) -> Optional[List[str]]:
        if run(["docker", "compose", "version"], check=False, capture_output=True).returncode == 0:
            return ["docker", "compose"]
        if shutil.which("docker-compose"):
            return ["docker-compose"]
        return None

    def build_env(self) -> Dict[str, str]:
        env = os.environ.copy()
        env.update(
            {
                "K8S_VERSION": self.config.kubernetes_version,
                "CONTAINERD_VERSION": self.config.containerd_version,
                "CNI_VERSION": self.config.cni_version,
                "CRICTL_VERSION": self.config.crictl_version,
                "RUNC_VERSION": self.config.runc_version,
                "HOST_UID": str(os.getuid()),
                "HOST_GID": str(os.getgid()),
            }
        )
        return env

    def run(self) -> None:
        section("Building ARM64 CAPI image (Docker container)")
        self.check_prerequisites()
        ensure_directory(self.config.output_dir)
        ensure_directory(self.config.build_dir)
        env = self.build_env()
        compose = self.compose_command()
        try:
            if compose is not None:
                log("INFO", f"Using {' '.join(compose)}...")
                run(
                    [*compose, "-f", str(DOCKER_COMPOSE_FILE), "up", "--build", "--abort-on-container-exit"],
                    cwd=self.project_dir,
                    env=env,
                )
            else:
                log("INFO", "Using docker run directly...")
                run(
                    [
                        "docker",
                        "build",
                        "--build-arg",
                        f"UID={os.getuid()}",
                        "--build-arg",
                        f"GID={os.getgid()}",
                        "--build-arg",
                        f"PACKER_VERSION={DOCKER_PACKER_VERSION}",
                        "-t",
                        DOCKER_IMAGE_TAG,
                        "-f",
                        str(DOCKERFILE),
                        ".",
                    ],
                    cwd=self.project_dir,
                    env=env,
                )
                run(self.run_command(), cwd=self.project_dir, env=env)
        except subprocess.CalledProcessError as exc:
            raise BuildError(f"Docker build failed with exit code {exc.returncode}") from exc
        log("SUCCESS", "Docker build completed")

    def run_command(self) -> List[str]:
        cmd = [
            "docker",
            "run",
            "--rm",
            "--privileged",
            "-v",
            f"{self.config.output_dir}:/build/output",
            "-v",
            f"{self.config.build_dir}:/build/local-build",
        ]
        for name in ("K8S_VERSION", "CONTAINERD_VERSION", "CNI_VERSION", "CRICTL_VERSION", "RUNC_VERSION"):
            cmd += ["-e", name]
        cmd += ["--tmpfs", "/tmp:size=10G", "--shm-size=2g", DOCKER_IMAGE_TAG]
        return cmd
