"""Two-phase image construction pipeline.

The space a customized system needs is only known once customization has
run, so the build first creates an oversized writable *draft* image,
customizes it, measures what it actually holds, and then creates a minimally
sized *final* image and replays the measured content into it.

Stages (linear; any failure aborts to the caller's unwind):

    INIT -> UEFI_BINARY_BUILT -> DRAFT_SIZED -> DRAFT_CREATED -> TREE_COPIED
    -> CUSTOMIZED -> FINALIZED -> FINAL_SIZED -> FINAL_CREATED
    -> CONTENT_COPIED -> DRAFT_RELEASED -> BOOTLOADER_INSTALLED
    -> EFI_POPULATED -> DONE

Every host-side effect goes through the pipeline's ledger. The pipeline
never drains the ledger itself; see bootstick.build.runner for the
run-level lifecycle.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from pathlib import Path
from typing import Callable, Optional

from bootstick.build import bootloader, customize, uefi
from bootstick.build.exceptions import SourceTreeError
from bootstick.config.settings import BuildSettings
from bootstick.domain.models import (
    BuildIdentity,
    BuildOptions,
    ImageDescriptor,
    ImagePhase,
)
from bootstick.logging import LoggerFactory, operation_context
from bootstick.storage import devices, sizing
from bootstick.storage.commands import run_command
from bootstick.storage.image import ImageBuilder
from bootstick.storage.ledger import Ledger
from bootstick.storage.mount import make_temp_dir, remove_temp_dir


class BuildStage(Enum):
    INIT = "init"
    UEFI_BINARY_BUILT = "uefi-binary-built"
    DRAFT_SIZED = "draft-sized"
    DRAFT_CREATED = "draft-created"
    TREE_COPIED = "tree-copied"
    CUSTOMIZED = "customized"
    FINALIZED = "finalized"
    FINAL_SIZED = "final-sized"
    FINAL_CREATED = "final-created"
    CONTENT_COPIED = "content-copied"
    DRAFT_RELEASED = "draft-released"
    BOOTLOADER_INSTALLED = "bootloader-installed"
    EFI_POPULATED = "efi-populated"
    DONE = "done"


@dataclass(frozen=True)
class BuildSummary:
    """Sizes and names of a completed build."""

    output_image: Path
    final_size_kb: int
    final_lvm_kb: int
    measured_kb: int
    draft_size_kb: int
    vg_name: str


def copy_tree(source: Path, target: Path) -> None:
    """Copy a root filesystem tree preserving owners, modes, links and devices."""
    run_command(["cp", "-a", "--one-file-system", f"{source}/.", f"{target}/"])


def validate_inputs(options: BuildOptions) -> None:
    """Check the source tree and output path before touching the host.

    Raises:
        SourceTreeError: If an input is unusable.
    """
    source = options.source_tree
    if not source.is_dir():
        raise SourceTreeError(str(source), "not a directory")
    if customize.find_init(source) is None:
        raise SourceTreeError(str(source), "no sbin/init found, not a system tree")
    output = options.output_image
    if output.is_dir():
        raise SourceTreeError(str(output), "output path is a directory")
    if not output.parent.is_dir():
        raise SourceTreeError(str(output), "output directory does not exist")
    if output.resolve().is_relative_to(source.resolve()):
        raise SourceTreeError(str(output), "output image must not be inside the source tree")
    if os.geteuid() != 0:
        raise SourceTreeError(str(source), "building an image requires root privileges")


@dataclass
class BuildPipeline:
    """Drives one build from source tree to final image."""

    options: BuildOptions
    settings: BuildSettings
    ledger: Ledger
    identity: BuildIdentity

    stage: BuildStage = BuildStage.INIT
    work_dir: Optional[Path] = None
    builder: Optional[ImageBuilder] = None
    loader_path: Optional[Path] = None
    efi_size_kb: int = 0
    tree_kb: int = 0
    draft_size_kb: int = 0
    measured_kb: int = 0
    final_lvm_kb: int = 0
    final_size_kb: int = 0
    draft: Optional[ImageDescriptor] = None
    final: Optional[ImageDescriptor] = None
    output_created: bool = False
    history: list[BuildStage] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.log = LoggerFactory.for_build(self.identity.build_id)

    def stages(self) -> list[tuple[BuildStage, Callable[[], None]]]:
        return [
            (BuildStage.UEFI_BINARY_BUILT, self.build_uefi_binary),
            (BuildStage.DRAFT_SIZED, self.size_draft),
            (BuildStage.DRAFT_CREATED, self.create_draft),
            (BuildStage.TREE_COPIED, self.copy_source_tree),
            (BuildStage.CUSTOMIZED, self.customize_draft),
            (BuildStage.FINALIZED, self.finalize_draft),
            (BuildStage.FINAL_SIZED, self.size_final),
            (BuildStage.FINAL_CREATED, self.create_final),
            (BuildStage.CONTENT_COPIED, self.copy_content),
            (BuildStage.DRAFT_RELEASED, self.release_draft),
            (BuildStage.BOOTLOADER_INSTALLED, self.install_bootloader),
            (BuildStage.EFI_POPULATED, self.populate_efi),
        ]

    def run(self) -> BuildSummary:
        self.prepare()
        for next_stage, step in self.stages():
            with operation_context(next_stage.value, job_id=self.identity.build_id):
                step()
            self.advance(next_stage)
        self.advance(BuildStage.DONE)
        return self.summary()

    def advance(self, stage: BuildStage) -> None:
        self.log.info(f"Stage {self.stage.value} -> {stage.value}")
        self.history.append(stage)
        self.stage = stage

    # -- stages ---------------------------------------------------------------

    def prepare(self) -> None:
        validate_inputs(self.options)
        parent = self.options.work_dir or self.settings.work_dir
        self.work_dir = self.ledger.record(
            partial(make_temp_dir, parent),
            remove_temp_dir,
            "work directory",
        ).result
        self.builder = ImageBuilder(self.ledger, self.settings, self.work_dir)
        self.log.info(
            f"Building {self.options.output_image} from {self.options.source_tree} "
            f"(work dir {self.work_dir})"
        )

    def build_uefi_binary(self) -> None:
        self.loader_path = uefi.build_uefi_loader(self.work_dir, self.settings.root_label)

    def size_draft(self) -> None:
        loader_kb = devices.file_size_kb(self.loader_path)
        self.efi_size_kb = sizing.efi_partition_kb(
            loader_kb, self.settings.efi_overhead_percent
        )
        self.tree_kb = devices.measure_tree_kb(self.options.source_tree)
        self.draft_size_kb = sizing.draft_capacity_kb(
            self.efi_size_kb,
            self.settings.bios_boot_size_kb,
            self.tree_kb,
            self.settings.draft_extra_space_kb,
        )
        self.log.info(
            f"Draft size {self.draft_size_kb} KB (tree {self.tree_kb} KB, "
            f"EFI {self.efi_size_kb} KB)"
        )

    def create_draft(self) -> None:
        self.draft = self.builder.create_image(
            ImagePhase.DRAFT,
            self.draft_size_kb,
            self.efi_size_kb,
            self.identity.vg_name(ImagePhase.DRAFT),
        )

    def copy_source_tree(self) -> None:
        copy_tree(self.options.source_tree, self.draft.root_mountpoint)

    def customize_draft(self) -> None:
        customize.customize(self.ledger, self.draft.root_mountpoint, self.options)

    def finalize_draft(self) -> None:
        customize.finalize(
            self.draft.root_mountpoint,
            self.identity.vg_name(ImagePhase.FINAL),
            self.options,
            self.settings,
        )

    def size_final(self) -> None:
        self.measured_kb = devices.measure_tree_kb(self.draft.root_mountpoint)
        self.final_lvm_kb = sizing.final_lvm_capacity_kb(
            self.measured_kb,
            self.settings.fs_overhead_percent,
            self.settings.lvm_overhead_percent,
        )
        self.final_size_kb = sizing.final_total_capacity_kb(
            self.final_lvm_kb, self.draft.size_kb, self.draft.lvm_partition_kb
        )
        self.log.info(
            f"Final size {self.final_size_kb} KB (content {self.measured_kb} KB, "
            f"LVM partition {self.final_lvm_kb} KB, "
            f"non-LVM {self.draft.non_lvm_kb} KB as in the draft)"
        )

    def create_final(self) -> None:
        self.final = self.builder.create_image(
            ImagePhase.FINAL,
            self.final_size_kb,
            self.efi_size_kb,
            self.identity.vg_name(ImagePhase.FINAL),
            output_path=self.options.output_image,
            on_allocated=self._mark_output_created,
        )

    def _mark_output_created(self, path: Path) -> None:
        self.output_created = True

    def copy_content(self) -> None:
        copy_tree(self.draft.root_mountpoint, self.final.root_mountpoint)

    def release_draft(self) -> None:
        self.builder.release_image(self.draft)
        self.draft.backing_file.unlink()

    def install_bootloader(self) -> None:
        bootloader.install_bootloader(
            self.ledger, self.final.root_mountpoint, self.final.loop_device
        )

    def populate_efi(self) -> None:
        uefi.install_uefi_loader(self.loader_path, self.final.efi_mountpoint)

    def summary(self) -> BuildSummary:
        return BuildSummary(
            output_image=self.options.output_image,
            final_size_kb=self.final_size_kb,
            final_lvm_kb=self.final_lvm_kb,
            measured_kb=self.measured_kb,
            draft_size_kb=self.draft_size_kb,
            vg_name=self.identity.vg_name(ImagePhase.FINAL),
        )
