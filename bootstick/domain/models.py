"""Domain model for image builds.

Type-safe objects shared by the image builder, the build pipeline and the
command line.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional, Tuple

from bootstick.storage.ledger import LedgerHandle


# ==============================================================================
# Build Identity
# ==============================================================================


@dataclass(frozen=True)
class BuildIdentity:
    """Random token scoping the volume-group names of one build.

    Lets several builds run on the same host without name collisions and
    lets each build tear down exactly its own volume groups.
    """

    token: str
    prefix: str = "BSTK"

    @classmethod
    def generate(cls, prefix: str = "BSTK") -> BuildIdentity:
        return cls(token=secrets.token_hex(4), prefix=prefix)

    @property
    def draft_vg_name(self) -> str:
        return f"{self.prefix}_DRAFT_{self.token}"

    @property
    def final_vg_name(self) -> str:
        return f"{self.prefix}_{self.token}"

    @property
    def build_id(self) -> str:
        """Job id used in log records."""
        return f"build-{self.token}"

    def vg_name(self, phase: ImagePhase) -> str:
        return self.draft_vg_name if phase is ImagePhase.DRAFT else self.final_vg_name


# ==============================================================================
# Image Domain
# ==============================================================================


class ImagePhase(Enum):
    """Which of the two images of a build."""

    DRAFT = "draft"  # Oversized, hosts customization
    FINAL = "final"  # Minimal, replays the draft's content


@dataclass(frozen=True)
class ImageDescriptor:
    """A loop-backed, partitioned, LVM-formatted and mounted image.

    Produced by ImageBuilder.create_image(); released by
    ImageBuilder.release_image(), which undoes ``handles`` newest first.
    """

    phase: ImagePhase
    backing_file: Path
    size_kb: int
    loop_device: str
    efi_partition: Path  # e.g., /dev/mapper/loop0p1
    bios_boot_partition: Path  # e.g., /dev/mapper/loop0p2
    lvm_partition: Path  # e.g., /dev/mapper/loop0p3
    lvm_partition_kb: int  # Actual size after alignment
    vg_name: str
    lv_device: Path  # e.g., /dev/BSTK_1a2b3c4d/ROOT
    root_mountpoint: Path
    efi_mountpoint: Path
    handles: Tuple[LedgerHandle, ...] = field(default=(), compare=False, repr=False)

    @property
    def non_lvm_kb(self) -> int:
        """Space used by the partition table, EFI and BIOS-boot partitions."""
        return self.size_kb - self.lvm_partition_kb


# ==============================================================================
# Build Options
# ==============================================================================


class RootPasswordMode(Enum):
    """Root credential policy applied during customization."""

    UNCHANGED = "unchanged"  # Keep whatever the source tree has
    SET = "set"  # Set from --root-password-request
    DISABLED = "disabled"  # Lock the root password
    FIRST_BOOT = "first-boot"  # Prompt on first boot


@dataclass(frozen=True)
class BuildOptions:
    """A build request as given on the command line."""

    source_tree: Path
    output_image: Path
    root_password_mode: RootPasswordMode = RootPasswordMode.UNCHANGED
    root_password: Optional[str] = field(default=None, repr=False)
    config_kbd: bool = False
    hostname: Optional[str] = None
    kernel_bootargs: Optional[str] = None
    work_dir: Optional[Path] = None

    def validate(self) -> None:
        """Check option consistency.

        Raises:
            ValueError: If validation fails with a descriptive error message
        """
        if self.root_password_mode is RootPasswordMode.SET and not self.root_password:
            raise ValueError("A root password is required with --root-password-request")
        if self.root_password_mode is not RootPasswordMode.SET and self.root_password:
            raise ValueError("A root password was given but will not be applied")
        if self.hostname is not None and not self.hostname.strip():
            raise ValueError("Hostname must not be empty")
