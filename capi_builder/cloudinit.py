"""NoCloud seed generation carrying the build-scoped login credential."""

from __future__ import annotations

import time
from pathlib import Path
from typing import Dict, Tuple

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from capi_builder.utils import ensure_directory, hash_password, require_tool, run


def render_user_data(user: str, password: str, hostname: str) -> str:
    user_cfg: Dict[str, object] = {
        "hostname": hostname,
        "users": [
            {
                "name": user,
                "sudo": "ALL=(ALL) NOPASSWD:ALL",
                "shell": "/bin/bash",
                "lock_passwd": False,
                "passwd": hash_password(password),
            }
        ],
        "chpasswd": {"expire": False},
        "ssh_pwauth": True,
        "runcmd": [
            ["sh", "-c", "sed -i 's/^#*PasswordAuthentication.*/PasswordAuthentication yes/' /etc/ssh/sshd_config"],
            ["sh", "-c", "systemctl restart ssh || systemctl restart sshd || true"],
        ],
    }
    return "#cloud-config\n" + yaml.safe_dump(user_cfg, sort_keys=False, default_flow_style=False)


def render_meta_data(instance_prefix: str, hostname: str) -> str:
    return f"instance-id: {instance_prefix}-{int(time.time())}\nlocal-hostname: {hostname}\n"


def write_seed_files(seed_dir: Path, user: str, password: str, hostname: str, instance_prefix: str) -> Tuple[Path, Path]:
    ensure_directory(seed_dir)
    user_data = seed_dir / "user-data"
    meta_data = seed_dir / "meta-data"
    user_data.write_text(render_user_data(user, password, hostname), encoding="utf-8")
    user_data.chmod(0o600)
    meta_data.write_text(render_meta_data(instance_prefix, hostname), encoding="utf-8")
    return user_data, meta_data


def build_seed_iso(seed_dir: Path, iso_path: Path) -> Path:
    """Pack ``user-data`` and ``meta-data`` into a ``cidata`` volume."""
    require_tool("genisoimage", "genisoimage")
    run(
        [
            "genisoimage",
            "-output",
            str(iso_path),
            "-volid",
            "cidata",
            "-joliet",
            "-rock",
            str(seed_dir / "user-data"),
            str(seed_dir / "meta-data"),
        ],
        capture_output=True,
    )
    return iso_path
