"""External command execution for block-device and filesystem tools."""

from __future__ import annotations

import shlex
import shutil
import subprocess
from typing import Mapping, Optional, Sequence

from bootstick.logging import LoggerFactory
from bootstick.storage.exceptions import CommandError


log = LoggerFactory.for_commands()
output_log = log.bind(tags=["command", "command-output"])


def format_command(command: Sequence[str]) -> str:
    return " ".join(shlex.quote(str(part)) for part in command)


def run_command(
    command: Sequence[str],
    check: bool = True,
    input_text: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    log_command: bool = True,
) -> subprocess.CompletedProcess:
    """Run a command and capture its output.

    Raises:
        CommandError: If check is True and the command exits non-zero.
    """
    argv = [str(part) for part in command]
    if log_command:
        log.debug(f"Running command: {format_command(argv)}")
    result = subprocess.run(
        argv,
        input=input_text,
        text=True,
        capture_output=True,
        env=dict(env) if env is not None else None,
    )
    if result.stdout:
        output_log.trace(f"stdout: {result.stdout.strip()}")
    if result.stderr:
        output_log.trace(f"stderr: {result.stderr.strip()}")
    if check and result.returncode != 0:
        stderr = (result.stderr or "").strip()
        log.debug(f"Command failed with return code {result.returncode}: {stderr}")
        raise CommandError(argv, result.returncode, stderr)
    return result


def run_output(command: Sequence[str]) -> str:
    """Run a command and return its stripped stdout."""
    return run_command(command).stdout.strip()


def command_available(name: str) -> bool:
    return shutil.which(name) is not None


def sync_filesystems() -> None:
    run_command(["sync"], log_command=False)


def settle_udev() -> None:
    """Wait for udev to settle."""
    if command_available("udevadm"):
        run_command(["udevadm", "settle"], check=False, log_command=False)
