"""Standalone UEFI loader generation.

The UEFI path is a thin shim: a standalone GRUB image whose embedded
configuration finds the filesystem labelled as root and hands over to the
grub.cfg maintained by the system's own bootloader installation. Kernel and
bootloader upgrades inside the image therefore apply to both boot paths.
"""

from __future__ import annotations

from pathlib import Path

from bootstick.build.exceptions import BootloaderError
from bootstick.logging import LoggerFactory
from bootstick.storage.commands import command_available, run_command
from bootstick.storage.devices import file_size_kb


log = LoggerFactory.for_build().bind(source="uefi")

LOADER_NAME = "BOOTX64.EFI"
EFI_BOOT_DIR = Path("EFI") / "BOOT"

EMBEDDED_CONFIG_TEMPLATE = """\
insmod part_gpt
insmod lvm
insmod ext2
search --no-floppy --label {root_label} --set=root
configfile ($root)/boot/grub/grub.cfg
"""


def render_embedded_config(root_label: str) -> str:
    return EMBEDDED_CONFIG_TEMPLATE.format(root_label=root_label)


def build_uefi_loader(output_dir: Path, root_label: str) -> Path:
    """Build ``BOOTX64.EFI`` in ``output_dir`` and return its path.

    Raises:
        BootloaderError: If grub-mkstandalone is missing or fails.
    """
    if not command_available("grub-mkstandalone"):
        raise BootloaderError("grub-mkstandalone not found (install grub-efi-amd64-bin)")
    config_path = output_dir / "grub-embedded.cfg"
    config_path.write_text(render_embedded_config(root_label), encoding="utf-8")
    loader_path = output_dir / LOADER_NAME
    run_command(
        [
            "grub-mkstandalone",
            "-O",
            "x86_64-efi",
            "--modules=part_gpt lvm ext2",
            "-o",
            str(loader_path),
            f"boot/grub/grub.cfg={config_path}",
        ]
    )
    log.info(f"Built UEFI loader {loader_path} ({file_size_kb(loader_path)} KB)")
    return loader_path


def install_uefi_loader(loader_path: Path, efi_mountpoint: Path) -> Path:
    """Copy the loader to the removable-media path of the EFI partition."""
    target_dir = efi_mountpoint / EFI_BOOT_DIR
    target_dir.mkdir(parents=True, exist_ok=True)
    target = target_dir / LOADER_NAME
    target.write_bytes(loader_path.read_bytes())
    log.debug(f"Installed UEFI loader to {target}")
    return target
