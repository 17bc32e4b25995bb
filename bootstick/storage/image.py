"""Loop-backed, partitioned, LVM-formatted image creation.

Operations:
    - ImageBuilder.create_image(): backing file -> GPT -> loop -> mappings ->
      PV/VG/LV -> ext4 + FAT -> mounts, returning an ImageDescriptor
    - ImageBuilder.release_image(): undo exactly one image's mounts,
      mappings and loop attachment, newest first

Every host-visible step goes through the ledger, so a failure partway
through creation leaves only the successful steps to unwind.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import Callable, Optional, Union

from bootstick.config.settings import BuildSettings
from bootstick.domain.models import ImageDescriptor, ImagePhase
from bootstick.logging import LoggerFactory
from bootstick.storage import devices, format as fmt, loop, lvm
from bootstick.storage.exceptions import ImageCreationError
from bootstick.storage.ledger import Ledger, LedgerHandle, signals_deferred
from bootstick.storage.mount import mount_device, unmount


PathLike = Union[str, Path]


@dataclass
class ImageBuilder:
    """Creates and releases images, tracking every step in ``ledger``."""

    ledger: Ledger
    settings: BuildSettings
    work_dir: Path

    def create_image(
        self,
        phase: ImagePhase,
        size_kb: int,
        efi_size_kb: int,
        vg_name: str,
        output_path: Optional[PathLike] = None,
        on_allocated: Optional[Callable[[Path], None]] = None,
    ) -> ImageDescriptor:
        """Build and mount an image of ``size_kb``.

        The backing file is ``output_path`` if given, otherwise
        ``<work_dir>/<phase>.img``. ``on_allocated`` is called with it as
        soon as it has been written.

        Raises:
            ImageCreationError: If the image is too small for its layout.
            CommandError: If an external tool fails.
            DeviceTimeoutError: If a mapped device never appears.
        """
        log = LoggerFactory.for_image(phase.value)
        min_size_kb = efi_size_kb + self.settings.bios_boot_size_kb + 2048
        if size_kb <= min_size_kb:
            raise ImageCreationError(
                phase.value, f"{size_kb} KB is too small (need > {min_size_kb} KB)"
            )

        backing_file = Path(output_path) if output_path else self.work_dir / f"{phase.value}.img"
        log.info(f"Creating {phase.value} image {backing_file} ({size_kb} KB)")

        with signals_deferred():
            fmt.allocate_sparse_file(backing_file, size_kb)
            if on_allocated is not None:
                on_allocated(backing_file)
        fmt.create_partition_table(backing_file, efi_size_kb, self.settings.bios_boot_size_kb)

        handles: list[LedgerHandle] = []
        loop_handle = self.ledger.record(
            partial(loop.attach_loop, backing_file),
            loop.detach_loop,
            f"{phase.value}: attach loop device",
        )
        handles.append(loop_handle)
        loop_device = loop_handle.result

        handles.append(
            self.ledger.record(
                partial(loop.activate_partition_mappings, loop_device),
                partial(loop.deactivate_partition_mappings, vg_name=vg_name),
                f"{phase.value}: partition mappings of {loop_device}",
            )
        )
        efi_partition = loop.partition_mapping_path(loop_device, fmt.EFI_PARTITION_NUMBER)
        bios_boot_partition = loop.partition_mapping_path(
            loop_device, fmt.BIOS_BOOT_PARTITION_NUMBER
        )
        lvm_partition = loop.partition_mapping_path(loop_device, fmt.LVM_PARTITION_NUMBER)

        devices.wait_for_device(
            lvm_partition,
            timeout_seconds=self.settings.device_wait_timeout_seconds,
            poll_interval=self.settings.device_wait_poll_interval,
        )
        lvm_partition_kb = devices.block_device_size_kb(lvm_partition)

        lvm.create_physical_volume(lvm_partition)
        lvm.create_volume_group(vg_name, lvm_partition)
        lv_device = lvm.create_logical_volume(vg_name, self.settings.root_lv_name)
        devices.wait_for_device(
            lv_device,
            timeout_seconds=self.settings.device_wait_timeout_seconds,
            poll_interval=self.settings.device_wait_poll_interval,
        )
        fmt.format_ext4(
            lv_device, self.settings.root_label, self.settings.ext4_reserved_percent
        )
        fmt.format_vfat(efi_partition, self.settings.efi_label)

        root_mountpoint = self.work_dir / phase.value / "root"
        efi_mountpoint = self.work_dir / phase.value / "efi"
        handles.append(
            self.ledger.record(
                partial(mount_device, lv_device, root_mountpoint),
                unmount,
                f"{phase.value}: mount root filesystem",
            )
        )
        handles.append(
            self.ledger.record(
                partial(mount_device, efi_partition, efi_mountpoint),
                unmount,
                f"{phase.value}: mount EFI partition",
            )
        )

        log.info(
            f"{phase.value.capitalize()} image ready: {loop_device}, VG {vg_name}, "
            f"LVM partition {lvm_partition_kb} KB"
        )
        return ImageDescriptor(
            phase=phase,
            backing_file=backing_file,
            size_kb=size_kb,
            loop_device=loop_device,
            efi_partition=efi_partition,
            bios_boot_partition=bios_boot_partition,
            lvm_partition=lvm_partition,
            lvm_partition_kb=lvm_partition_kb,
            vg_name=vg_name,
            lv_device=lv_device,
            root_mountpoint=root_mountpoint,
            efi_mountpoint=efi_mountpoint,
            handles=tuple(handles),
        )

    def release_image(self, image: ImageDescriptor) -> None:
        """Unmount and detach ``image`` ahead of the final ledger unwind.

        Only this image's entries are undone, newest first; entries already
        unwound are skipped.
        """
        log = LoggerFactory.for_image(image.phase.value)
        for handle in reversed(image.handles):
            self.ledger.undo_one(handle)
        log.info(f"Released {image.phase.value} image {image.loop_device}")

