"""Block-device queries and bounded device-node polling.

Device nodes for partition mappings and logical volumes are created
asynchronously by the kernel and udev after the command that requests them
returns. :func:`wait_for_device` polls for a node with a bounded timeout and
raises :class:`DeviceTimeoutError` instead of waiting forever.
"""

from __future__ import annotations

import math
import os
import time
from pathlib import Path
from typing import Union

from bootstick.logging import LoggerFactory
from bootstick.storage.commands import run_output, settle_udev
from bootstick.storage.exceptions import DeviceTimeoutError


PathLike = Union[str, Path]

log = LoggerFactory.for_system()
poll_log = log.bind(tags=["system", "poll"])


def wait_for_device(
    device_path: PathLike,
    *,
    timeout_seconds: float,
    poll_interval: float = 0.2,
) -> Path:
    """Wait until ``device_path`` exists.

    Raises:
        DeviceTimeoutError: If the node is still missing after
            ``timeout_seconds``.
    """
    device_path = Path(device_path)
    settle_udev()
    deadline = time.monotonic() + timeout_seconds
    attempt = 0
    while True:
        attempt += 1
        if device_path.exists():
            poll_log.debug(f"Device {device_path} present after {attempt} check(s)")
            return device_path
        if time.monotonic() >= deadline:
            log.error(f"Device {device_path} did not appear after {attempt} checks")
            raise DeviceTimeoutError(str(device_path), timeout_seconds)
        poll_log.trace(f"Waiting for {device_path} (attempt {attempt})")
        time.sleep(poll_interval)


def block_device_size_kb(device_path: PathLike) -> int:
    """Size of a block device in KiB, via blockdev."""
    size_bytes = int(run_output(["blockdev", "--getsize64", str(device_path)]))
    return size_bytes // 1024


def file_size_kb(path: PathLike) -> int:
    """Apparent size of a regular file in KiB, rounded up."""
    return math.ceil(os.path.getsize(str(path)) / 1024)


def measure_tree_kb(path: PathLike) -> int:
    """Disk usage of a directory tree in KiB, not crossing filesystems."""
    output = run_output(["du", "-s", "-x", "-k", str(path)])
    return int(output.split()[0])
