"""Loop devices and partition mappings.

Unwinding is layered: logical volumes sit on mapped partitions, which sit
on the loop device. :func:`deactivate_partition_mappings` therefore
deactivates the volume group built on the mappings before removing them,
and the loop device is detached last.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Optional, Union

from bootstick.logging import LoggerFactory
from bootstick.storage import lvm
from bootstick.storage.commands import run_command, run_output, settle_udev


PathLike = Union[str, Path]

log = LoggerFactory.for_system()

MAPPER_DIR = Path("/dev/mapper")

_KPARTX_ADD_RE = re.compile(r"^add map (\S+)")


def attach_loop(backing_file: PathLike) -> str:
    """Attach ``backing_file`` to the first free loop device and return it."""
    device = run_output(["losetup", "--find", "--show", str(backing_file)])
    log.debug(f"Attached {backing_file} to {device}")
    return device


def detach_loop(device: str) -> None:
    run_command(["losetup", "--detach", device])
    log.debug(f"Detached {device}")


def partition_mapping_path(loop_device: str, number: int) -> Path:
    """Mapped node of partition ``number`` (e.g. /dev/mapper/loop0p3)."""
    return MAPPER_DIR / f"{Path(loop_device).name}p{number}"


def activate_partition_mappings(loop_device: str) -> str:
    """Expose the partitions of ``loop_device`` under /dev/mapper.

    Returns the loop device, which identifies the mappings for removal.
    """
    output = run_command(["kpartx", "-a", "-s", "-v", loop_device]).stdout or ""
    names = [
        match.group(1)
        for match in (_KPARTX_ADD_RE.match(line.strip()) for line in output.splitlines())
        if match
    ]
    log.debug(f"Activated partition mappings for {loop_device}: {names}")
    return loop_device


def deactivate_partition_mappings(loop_device: str, vg_name: Optional[str] = None) -> None:
    """Remove the partition mappings of ``loop_device``.

    Volume group ``vg_name``, if it exists, is deactivated first since its
    logical volumes hold the mapped partition open.
    """
    if vg_name and lvm.volume_group_exists(vg_name):
        lvm.deactivate_volume_group(vg_name)
    settle_udev()
    run_command(["kpartx", "-d", "-v", loop_device])
    log.debug(f"Removed partition mappings for {loop_device}")
