"""Backing-file allocation, GPT partitioning and filesystem creation.

Partition Layout (GPT):
    1: EFI system partition (ef00), requested size, FAT
    2: BIOS boot partition (ef02), small fixed size, no filesystem
    3: LVM physical volume (8e00), all remaining space

Implementation Details:
    - Uses sgdisk for partition management (1 MiB alignment)
    - The root filesystem is ext4 with an explicit reserved-block percentage
      and the "default" usage type, so mke2fs does not pick the small-device
      profile for a minimal image that is later grown onto larger media.
"""

from __future__ import annotations

from pathlib import Path
from typing import Union

from bootstick.logging import LoggerFactory
from bootstick.storage.commands import run_command


PathLike = Union[str, Path]

log = LoggerFactory.for_system()

EFI_PARTITION_TYPE = "ef00"
BIOS_BOOT_PARTITION_TYPE = "ef02"
LVM_PARTITION_TYPE = "8e00"

EFI_PARTITION_NUMBER = 1
BIOS_BOOT_PARTITION_NUMBER = 2
LVM_PARTITION_NUMBER = 3


def allocate_sparse_file(path: PathLike, size_kb: int) -> Path:
    """Create ``path`` with a size of ``size_kb`` without allocating blocks."""
    path = Path(path)
    with open(path, "wb") as f:
        f.seek(size_kb * 1024 - 1)
        f.write(b"\0")
    log.debug(f"Allocated sparse file {path} ({size_kb} KB)")
    return path


def create_partition_table(path: PathLike, efi_size_kb: int, bios_boot_size_kb: int) -> None:
    """Write the three-partition GPT layout onto ``path``."""
    run_command(["sgdisk", "--zap-all", str(path)])
    run_command(
        [
            "sgdisk",
            f"--new={EFI_PARTITION_NUMBER}:0:+{efi_size_kb}K",
            f"--typecode={EFI_PARTITION_NUMBER}:{EFI_PARTITION_TYPE}",
            f"--new={BIOS_BOOT_PARTITION_NUMBER}:0:+{bios_boot_size_kb}K",
            f"--typecode={BIOS_BOOT_PARTITION_NUMBER}:{BIOS_BOOT_PARTITION_TYPE}",
            f"--new={LVM_PARTITION_NUMBER}:0:0",
            f"--typecode={LVM_PARTITION_NUMBER}:{LVM_PARTITION_TYPE}",
            str(path),
        ]
    )
    log.debug(
        f"Partitioned {path}: EFI {efi_size_kb} KB, BIOS boot {bios_boot_size_kb} KB"
    )


def format_ext4(device: PathLike, label: str, reserved_percent: int) -> None:
    run_command(
        [
            "mkfs.ext4",
            "-F",
            "-q",
            "-T",
            "default",
            "-m",
            str(reserved_percent),
            "-L",
            label,
            str(device),
        ]
    )


def format_vfat(device: PathLike, label: str) -> None:
    run_command(["mkfs.vfat", "-n", label, str(device)])
