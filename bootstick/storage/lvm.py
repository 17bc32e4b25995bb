"""Logical volume manager operations."""

from __future__ import annotations

from pathlib import Path
from typing import Union

from bootstick.logging import LoggerFactory
from bootstick.storage.commands import run_command


PathLike = Union[str, Path]

log = LoggerFactory.for_system()


def logical_volume_path(vg_name: str, lv_name: str) -> Path:
    return Path("/dev") / vg_name / lv_name


def create_physical_volume(device: PathLike) -> None:
    run_command(["pvcreate", "-ff", "-y", str(device)])


def create_volume_group(vg_name: str, device: PathLike) -> None:
    run_command(["vgcreate", vg_name, str(device)])
    log.debug(f"Created volume group {vg_name} on {device}")


def create_logical_volume(vg_name: str, lv_name: str) -> Path:
    """Create ``lv_name`` spanning all free space of ``vg_name``."""
    run_command(["lvcreate", "-y", "-n", lv_name, "-l", "100%FREE", vg_name])
    return logical_volume_path(vg_name, lv_name)


def volume_group_exists(vg_name: str) -> bool:
    result = run_command(
        ["vgs", "--noheadings", "-o", "vg_name", vg_name],
        check=False,
        log_command=False,
    )
    return result.returncode == 0


def deactivate_volume_group(vg_name: str) -> None:
    run_command(["vgchange", "-a", "n", vg_name])
    log.debug(f"Deactivated volume group {vg_name}")
