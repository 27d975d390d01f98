"""Command execution inside a running guest over SSH."""

from __future__ import annotations

import os
import re
import subprocess
from typing import Dict, List, Optional

from capi_builder.constants import REMOTE_COMMAND_TIMEOUT, REMOTE_CONNECT_TIMEOUT
from capi_builder.exceptions import BuildError, GuestConnectionError
from capi_builder.models import CommandResult, VMInstance
from capi_builder.utils import log

# Guest exit status travels in-band after this marker; output without it
# means the connection itself failed.
EXIT_MARKER = "__CAPI_EXIT__"
_EXIT_RE = re.compile(rf"\n?{EXIT_MARKER}=(\d+)\n?$")


def ssh_command(port: int, user: str, remote_command: str, connect_timeout: int) -> List[str]:
    return [
        "sshpass",
        "-e",
        "ssh",
        "-o",
        "StrictHostKeyChecking=no",
        "-o",
        "UserKnownHostsFile=/dev/null",
        "-o",
        "LogLevel=ERROR",
        "-o",
        f"ConnectTimeout={connect_timeout}",
        "-o",
        "NumberOfPasswordPrompts=1",
        "-o",
        "PreferredAuthentications=password,keyboard-interactive",
        "-p",
        str(port),
        f"{user}@localhost",
        remote_command,
    ]


def ssh_env(password: str) -> Dict[str, str]:
    """Environment carrying the password for ``sshpass -e`` (kept off the command line)."""
    env = os.environ.copy()
    env["SSHPASS"] = password
    return env


def wrap_command(command: str) -> str:
    return f"{command}\nprintf '\\n{EXIT_MARKER}=%s\\n' \"$?\""


def split_exit_status(stdout: str) -> Optional[CommandResult]:
    match = _EXIT_RE.search(stdout)
    if match is None:
        return None
    return CommandResult(stdout=stdout[: match.start()], exit_code=int(match.group(1)))


class RemoteExecutor:
    """Run commands in a guest, one fresh non-interactive connection per call.

    ``run`` raises ``GuestConnectionError`` only when the guest could not be
    reached; a command that ran and failed comes back as a non-zero
    ``exit_code``.
    """

    def __init__(
        self,
        connect_timeout: int = REMOTE_CONNECT_TIMEOUT,
        command_timeout: float = REMOTE_COMMAND_TIMEOUT,
    ) -> None:
        self.connect_timeout = connect_timeout
        self.command_timeout = command_timeout

    def run(self, instance: VMInstance, command: str, timeout: Optional[float] = None) -> CommandResult:
        cmd = ssh_command(instance.ssh_port, instance.login_user, wrap_command(command), self.connect_timeout)
        log("DEBUG", f"[{instance.name}] $ {command}")
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                stdin=subprocess.DEVNULL,
                timeout=timeout or self.command_timeout,
                env=ssh_env(instance.password),
            )
        except subprocess.TimeoutExpired as exc:
            raise GuestConnectionError(
                f"Command on {instance.name} did not finish within {exc.timeout:.0f}s: {command}"
            ) from exc
        except FileNotFoundError as exc:
            raise BuildError("sshpass/ssh not found. Install with: apt install sshpass openssh-client") from exc

        parsed = split_exit_status(result.stdout or "")
        if parsed is None:
            detail = (result.stderr or "").strip() or f"exit status {result.returncode}"
            raise GuestConnectionError(
                f"Could not reach {instance.name} on port {instance.ssh_port}: {detail}"
            )
        return parsed

    def check_output(self, instance: VMInstance, command: str, timeout: Optional[float] = None) -> str:
        """Return stripped stdout, or an empty string when the command failed in the guest."""
        result = self.run(instance, command, timeout=timeout)
        if result.exit_code != 0:
            return ""
        return result.stdout.strip()
