"""Utility functions for capi-image-builder."""

from __future__ import annotations

import hashlib
import json
import os
import platform
import re
import secrets
import shutil
import string
import subprocess
from collections import deque
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

try:
    import bcrypt  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("bcrypt is required but not installed") from exc

from capi_builder.constants import _LOG_VERBOSE, PASSWORD_LENGTH
from capi_builder.exceptions import BuildError


def log(level: str, message: str) -> None:
    """Lightweight structured logging with coloured level tags."""
    if level == "DEBUG" and not _LOG_VERBOSE:
        return
    colours = {
        "INFO": "\033[0;34m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "SUCCESS": "\033[0;32m",
        "DEBUG": "\033[0;90m",
        "PASS": "\033[0;32m",
        "FAIL": "\033[0;31m",
        "SKIP": "\033[1;33m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    print(f"{colour}[{level}]{reset} {message}", flush=True)


def section(title: str) -> None:
    rule = "━" * 67
    print("", flush=True)
    print(rule, flush=True)
    print(f"  {title}", flush=True)
    print(rule, flush=True)


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def parse_int_env(name: str, default: str, min_val: int = 1, max_val: Optional[int] = None) -> int:
    raw = get_env(name, default)
    assert raw is not None
    try:
        value = int(raw)
    except ValueError:
        raise BuildError(f"{name} must be an integer (got '{raw}')")
    if value < min_val:
        raise BuildError(f"{name} must be >= {min_val} (got {value})")
    if max_val is not None and value > max_val:
        raise BuildError(f"{name} must be <= {max_val} (got {value})")
    return value


def parse_port_range(name: str, raw: str) -> Tuple[int, int]:
    """Parse ``low-high`` into an inclusive port range."""
    parts = raw.split("-")
    if len(parts) != 2:
        raise BuildError(f"{name} must look like 'low-high' (got '{raw}')")
    try:
        low, high = int(parts[0]), int(parts[1])
    except ValueError:
        raise BuildError(f"{name} bounds must be integers (got '{raw}')")
    if not (1 <= low <= high <= 65535):
        raise BuildError(f"{name} must satisfy 1 <= low <= high <= 65535 (got '{raw}')")
    return low, high


def run(cmd: List[str], check: bool = True, **kwargs) -> subprocess.CompletedProcess:
    """Run command with logging."""
    log("DEBUG", f"Running: {' '.join(cmd)}")
    result = subprocess.run(cmd, check=check, text=True, **kwargs)
    return result


def privileged(cmd: List[str]) -> List[str]:
    """Prefix ``cmd`` with sudo unless already running as root."""
    if os.geteuid() == 0:
        return list(cmd)
    return ["sudo", *cmd]


def missing_tools(tools: Dict[str, str]) -> List[str]:
    """Return the packages providing any binaries in ``tools`` not on PATH."""
    return [package for binary, package in tools.items() if shutil.which(binary) is None]


def require_tool(binary: str, package: str) -> None:
    if shutil.which(binary) is None:
        raise BuildError(f"{binary} not found. Install with: apt install {package}")


def kvm_available() -> bool:
    """Return True if /dev/kvm exists and can be opened."""
    kvm_path = Path("/dev/kvm")
    if not kvm_path.exists():
        return False
    try:
        fd = os.open(kvm_path, os.O_RDONLY)
    except OSError:
        return False
    else:
        os.close(fd)
        return True


def host_arch() -> str:
    return platform.machine()


def host_thread_count() -> int:
    return os.cpu_count() or 1


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def generate_password(length: int = PASSWORD_LENGTH) -> str:
    """Random alphanumeric credential, scoped to a single build."""
    alphabet = string.ascii_letters + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(length))


def hash_password(password: str) -> str:
    """Generate a bcrypt hash for cloud-init."""
    hashed = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt())
    return hashed.decode("utf-8")


def sha256_file(path: Path, chunk_size: int = 1024 * 1024) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(chunk_size), b""):
            digest.update(chunk)
    return digest.hexdigest()


def version_key(name: str) -> List[Tuple[int, object]]:
    """Sort key approximating ``sort -V``: digit runs compare numerically."""
    key: List[Tuple[int, object]] = []
    for token in re.split(r"(\d+)", name):
        if not token:
            continue
        if token.isdigit():
            key.append((1, int(token)))
        else:
            key.append((0, token))
    return key


def select_latest(paths: Iterable[Path]) -> Optional[Path]:
    """Return the highest-versioned path by file name, or None."""
    candidates = sorted(paths, key=lambda p: version_key(p.name))
    return candidates[-1] if candidates else None


def tail_file(path: Path, lines: int = 30) -> str:
    try:
        with open(path, "r", encoding="utf-8", errors="replace") as handle:
            return "".join(deque(handle, maxlen=lines))
    except OSError:
        return ""


def qemu_img_info(image: Path) -> Dict[str, object]:
    """Return ``qemu-img info`` output as a dict."""
    try:
        result = run(
            ["qemu-img", "info", "--output=json", str(image)],
            check=False,
            capture_output=True,
        )
    except FileNotFoundError as exc:
        raise BuildError("qemu-img not found. Install with: apt install qemu-utils") from exc
    if result.returncode != 0:
        raise BuildError(f"qemu-img info failed for {image}: {(result.stderr or '').strip()}")
    try:
        return json.loads(result.stdout)
    except json.JSONDecodeError as exc:
        raise BuildError(f"Unparseable qemu-img info output for {image}: {exc}")


def human_size(num_bytes: float) -> str:
    for unit in ("B", "K", "M", "G", "T"):
        if num_bytes < 1024 or unit == "T":
            return f"{num_bytes:.1f}{unit}" if unit != "B" else f"{int(num_bytes)}B"
        num_bytes /= 1024
    return f"{num_bytes:.1f}T"


def format_duration(seconds: float) -> str:
    total = int(seconds)
    return f"{total // 60}m {total % 60}s"


def first_line(text: Sequence[str] | str) -> str:
    if isinstance(text, str):
        text = text.splitlines()
    for line in text:
        if line.strip():
            return line.strip()
    return ""
