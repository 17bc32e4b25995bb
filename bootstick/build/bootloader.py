"""BIOS bootloader installation inside the final image."""

from __future__ import annotations

from pathlib import Path

from bootstick.build.chroot import chroot_command, system_binds
from bootstick.build.exceptions import BootloaderError
from bootstick.logging import LoggerFactory
from bootstick.storage.exceptions import CommandError
from bootstick.storage.ledger import Ledger
from bootstick.storage.mount import scoped_tmpfs


log = LoggerFactory.for_build().bind(source="bootloader")

GRUB_MODULES = "part_gpt lvm ext2"
DEVICE_MAP = Path("boot") / "grub" / "device.map"


def install_bootloader(ledger: Ledger, root: Path, loop_device: str) -> None:
    """Install GRUB for BIOS boot onto ``loop_device`` and generate grub.cfg.

    Runs inside ``root`` with a tmpfs on /tmp so temporary files do not use
    space in the minimized filesystem.

    Raises:
        BootloaderError: If grub-install or grub-mkconfig fails.
    """
    device_map = root / DEVICE_MAP
    device_map.parent.mkdir(parents=True, exist_ok=True)
    device_map.write_text(f"(hd0) {loop_device}\n", encoding="utf-8")
    try:
        with system_binds(ledger, root), scoped_tmpfs(ledger, root / "tmp"):
            chroot_command(
                root,
                [
                    "grub-install",
                    "--target=i386-pc",
                    "--boot-directory=/boot",
                    f"--modules={GRUB_MODULES}",
                    loop_device,
                ],
            )
            chroot_command(root, ["grub-mkconfig", "-o", "/boot/grub/grub.cfg"])
    except CommandError as error:
        raise BootloaderError(error.stderr or str(error)) from error
    finally:
        if device_map.exists():
            device_map.unlink()
    log.info(f"Installed BIOS bootloader on {loop_device}")
