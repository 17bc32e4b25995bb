"""Overhead-corrected size projections for draft and final images.

All sizes are in kilobytes (KiB) and all functions are pure integer
arithmetic.

Sizing Model:
    draft total   = EFI + BIOS-boot + estimated tree size + safety margin
    final LVM     = inflate(inflate(measured draft content, fs%), lvm%)
    final total   = final LVM + (draft total - draft LVM partition)

The non-LVM part of the final image (partition table, EFI and BIOS-boot
partitions, alignment gaps) is copied from what the draft actually used
rather than recomputed.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Tuple


def overhead_inflate(size_kb: int, percent: int) -> int:
    """Return the capacity needed so that ``percent`` overhead leaves ``size_kb``.

    ``overhead_inflate(size, p) * (100 - p) // 100`` is ``size`` within
    integer rounding.
    """
    if not 0 <= percent < 100:
        raise ValueError(f"Overhead percent must be in [0, 100): {percent}")
    if size_kb < 0:
        raise ValueError(f"Size must not be negative: {size_kb}")
    return size_kb * 100 // (100 - percent)


def inflate_chain(size_kb: int, percents: Iterable[int]) -> int:
    """Apply overheads sequentially, each on the previous result."""
    result = size_kb
    for percent in percents:
        result = overhead_inflate(result, percent)
    return result


@dataclass(frozen=True)
class SizeEstimate:
    """A raw measured size and the overhead chain that inflates it."""

    raw_kb: int
    overheads: Tuple[int, ...] = ()

    @property
    def needed_kb(self) -> int:
        return inflate_chain(self.raw_kb, self.overheads)


def efi_partition_kb(stub_kb: int, efi_overhead_percent: int) -> int:
    """EFI partition size for a standalone loader of ``stub_kb``."""
    return max(overhead_inflate(stub_kb, efi_overhead_percent), stub_kb + 512)


def draft_capacity_kb(
    efi_kb: int,
    bios_boot_kb: int,
    tree_kb: int,
    extra_space_kb: int,
) -> int:
    """Total draft image size: both small partitions, the tree and a margin."""
    return efi_kb + bios_boot_kb + tree_kb + extra_space_kb


def final_lvm_estimate(
    measured_kb: int,
    fs_overhead_percent: int,
    lvm_overhead_percent: int,
) -> SizeEstimate:
    return SizeEstimate(
        raw_kb=measured_kb,
        overheads=(fs_overhead_percent, lvm_overhead_percent),
    )


def final_lvm_capacity_kb(
    measured_kb: int,
    fs_overhead_percent: int,
    lvm_overhead_percent: int,
) -> int:
    """LVM partition size needed to hold ``measured_kb`` of content."""
    return final_lvm_estimate(
        measured_kb, fs_overhead_percent, lvm_overhead_percent
    ).needed_kb


def final_total_capacity_kb(
    final_lvm_kb: int,
    draft_total_kb: int,
    draft_lvm_kb: int,
) -> int:
    """Final image size, keeping the draft's exact non-LVM overhead."""
    non_lvm_kb = draft_total_kb - draft_lvm_kb
    if non_lvm_kb < 0:
        raise ValueError(
            f"Draft LVM partition ({draft_lvm_kb} KB) larger than draft image "
            f"({draft_total_kb} KB)"
        )
    return final_lvm_kb + non_lvm_kb
