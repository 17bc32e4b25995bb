"""Running commands inside an image's root filesystem."""

from __future__ import annotations

import subprocess
from contextlib import ExitStack, contextmanager
from pathlib import Path
from typing import Iterator, Mapping, Optional, Sequence

from bootstick.storage.commands import run_command
from bootstick.storage.ledger import Ledger
from bootstick.storage.mount import scoped_bind_mount


# Minimal bind mounts for apt, grub-install, initramfs tooling
SYSTEM_BINDS = ("/dev", "/proc", "/sys")

CHROOT_ENV = {
    "PATH": "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin",
    "LANG": "C",
    "DEBIAN_FRONTEND": "noninteractive",
}


def chroot_command(
    root: Path,
    argv: Sequence[str],
    *,
    check: bool = True,
    env: Optional[Mapping[str, str]] = None,
) -> subprocess.CompletedProcess:
    """Run a command inside ``root``."""
    return run_command(
        ["chroot", str(root), *argv],
        check=check,
        env={**CHROOT_ENV, **(env or {})},
    )


@contextmanager
def system_binds(ledger: Ledger, root: Path) -> Iterator[Path]:
    """Bind-mount /dev, /proc and /sys into ``root`` for the block.

    Released in reverse order on exit.
    """
    with ExitStack() as stack:
        for source in SYSTEM_BINDS:
            stack.enter_context(
                scoped_bind_mount(ledger, source, root / source.lstrip("/"))
            )
        yield root
