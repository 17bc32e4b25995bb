"""Custom exceptions for storage operations.

This module defines a hierarchy of exceptions for the block-device, volume
and filesystem operations performed while building an image.

Exception Hierarchy:
    StorageError (base)
        ├── CommandError
        ├── DeviceError
        │   └── DeviceTimeoutError
        ├── MountError
        │   └── UnmountFailedError
        ├── ImageError
        │   └── ImageCreationError
        └── LedgerError
            └── LedgerUnwindError

Usage:
    from bootstick.storage.exceptions import DeviceTimeoutError

    if not device_appeared:
        raise DeviceTimeoutError("/dev/mapper/loop0p3", 10.0)
"""

from __future__ import annotations

from typing import Optional, Sequence


class StorageError(Exception):
    """Base exception for all storage operations."""



class CommandError(StorageError):
    """An external tool exited with a non-zero status."""

    def __init__(
        self,
        command: Sequence[str],
        returncode: int,
        stderr: str = "",
    ):
        self.command = list(command)
        self.returncode = returncode
        self.stderr = stderr
        message = f"Command failed ({' '.join(self.command)}): rc={returncode}"
        if stderr:
            message += f": {stderr}"
        super().__init__(message)


class DeviceError(StorageError):
    """Base exception for device-related errors."""



class DeviceTimeoutError(DeviceError):
    """A device node did not appear within the polling timeout."""

    def __init__(self, device_path: str, timeout_seconds: float):
        self.device_path = device_path
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Device {device_path} did not appear after {timeout_seconds:g}s"
        )


class MountError(StorageError):
    """Base exception for mount-related errors."""



class UnmountFailedError(MountError):
    """Failed to unmount a mountpoint."""

    def __init__(self, mountpoint: str, reason: str = ""):
        self.mountpoint = mountpoint
        self.reason = reason
        msg = f"Failed to unmount {mountpoint}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class ImageError(StorageError):
    """Base exception for image creation errors."""



class ImageCreationError(ImageError):
    """Image creation failed for the given phase."""

    def __init__(self, phase: str, reason: str):
        self.phase = phase
        self.reason = reason
        super().__init__(f"Failed to create {phase} image: {reason}")


class LedgerError(StorageError):
    """Base exception for resource ledger errors."""


class LedgerUnwindError(LedgerError):
    """One or more undo actions failed while unwinding the ledger."""

    def __init__(self, failures: Sequence[tuple[str, BaseException]]):
        self.failures = list(failures)
        details = "; ".join(f"{desc}: {err}" for desc, err in self.failures)
        super().__init__(
            f"{len(self.failures)} undo action(s) failed during unwind: {details}"
        )

    @property
    def first_error(self) -> Optional[BaseException]:
        return self.failures[0][1] if self.failures else None
