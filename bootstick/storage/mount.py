"""Mount, unmount and temporary-directory primitives.

Each acquire function returns the identity of what it created (a mountpoint
or directory path) so it can be passed straight to the matching release
function by the ledger:

    ledger.record(partial(mount_device, dev, mp), unmount, "mount root")

Functions:
    - make_temp_dir() / remove_temp_dir()
    - mount_device(): Mount a block device
    - bind_mount(): Bind-mount a file or directory
    - mount_tmpfs(): Mount a memory-backed filesystem
    - unmount(): Flush caches and unmount, from a neutral working directory
    - scoped_bind_mount() / scoped_tmpfs(): ledger-tracked scoped variants
"""

from __future__ import annotations

import os
import shutil
import tempfile
from contextlib import contextmanager
from functools import partial
from pathlib import Path
from typing import Iterator, Optional, Union

from bootstick.logging import LoggerFactory
from bootstick.storage.commands import run_command, sync_filesystems
from bootstick.storage.exceptions import CommandError, UnmountFailedError
from bootstick.storage.ledger import Ledger, scoped


PathLike = Union[str, Path]

# Module logger
log = LoggerFactory.for_system()

NEUTRAL_DIRECTORY = "/"


def make_temp_dir(parent: Optional[PathLike] = None, prefix: str = "bootstick-") -> Path:
    path = Path(tempfile.mkdtemp(prefix=prefix, dir=str(parent) if parent else None))
    log.debug(f"Created temporary directory {path}")
    return path


def remove_temp_dir(path: PathLike) -> None:
    """Remove a temporary directory tree.

    Refuses to descend through a mountpoint still attached below ``path``.
    """
    path = Path(path)
    if not path.exists():
        return
    for current, dirnames, _ in os.walk(path):
        for name in dirnames:
            candidate = os.path.join(current, name)
            if is_mounted(candidate):
                raise UnmountFailedError(candidate, "still mounted below " + str(path))
    shutil.rmtree(path)
    log.debug(f"Removed temporary directory {path}")


def mount_device(
    device: PathLike,
    mountpoint: PathLike,
    options: Optional[str] = None,
) -> Path:
    mountpoint = Path(mountpoint)
    mountpoint.mkdir(parents=True, exist_ok=True)
    command = ["mount"]
    if options:
        command.extend(["-o", options])
    command.extend([str(device), str(mountpoint)])
    run_command(command)
    return mountpoint


def bind_mount(source: PathLike, target: PathLike) -> Path:
    """Bind-mount ``source`` onto ``target``, creating the target if needed."""
    source = Path(source)
    target = Path(target)
    if source.is_dir():
        target.mkdir(parents=True, exist_ok=True)
    else:
        target.parent.mkdir(parents=True, exist_ok=True)
        if not target.exists() and not target.is_symlink():
            target.touch()
    run_command(["mount", "--bind", str(source), str(target)])
    return target


def mount_tmpfs(mountpoint: PathLike, size: Optional[str] = None) -> Path:
    mountpoint = Path(mountpoint)
    mountpoint.mkdir(parents=True, exist_ok=True)
    command = ["mount", "-t", "tmpfs"]
    if size:
        command.extend(["-o", f"size={size}"])
    command.extend(["tmpfs", str(mountpoint)])
    run_command(command)
    return mountpoint


def unmount(mountpoint: PathLike) -> None:
    """Unmount ``mountpoint``.

    The process first moves to a neutral working directory and flushes
    filesystem caches twice, so neither a lingering cwd nor pending writes
    keep the device busy.

    Raises:
        UnmountFailedError: If umount fails.
    """
    os.chdir(NEUTRAL_DIRECTORY)
    sync_filesystems()
    sync_filesystems()
    try:
        run_command(["umount", str(mountpoint)])
    except CommandError as error:
        raise UnmountFailedError(str(mountpoint), error.stderr) from error


def is_mounted(mountpoint: PathLike) -> bool:
    return os.path.ismount(str(mountpoint))


def unmount_and_remove(mountpoint: PathLike) -> None:
    """Unmount a file bind mount and delete the empty file it was mounted on."""
    unmount(mountpoint)
    Path(mountpoint).unlink(missing_ok=True)


@contextmanager
def scoped_bind_mount(ledger: Ledger, source: PathLike, target: PathLike) -> Iterator[Path]:
    """Bind ``source`` onto ``target`` for the block.

    A file placeholder created for the bind is removed again on release.
    """
    target = Path(target)
    undo = unmount
    if not Path(source).is_dir() and not target.exists() and not target.is_symlink():
        undo = unmount_and_remove
    with scoped(
        ledger, partial(bind_mount, source, target), undo, f"bind {source} -> {target}"
    ) as mountpoint:
        yield mountpoint


@contextmanager
def scoped_tmpfs(ledger: Ledger, mountpoint: PathLike, size: Optional[str] = None) -> Iterator[Path]:
    with scoped(
        ledger, partial(mount_tmpfs, mountpoint, size), unmount, f"tmpfs {mountpoint}"
    ) as path:
        yield path
