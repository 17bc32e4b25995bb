"""Exceptions raised by the build pipeline.

Exception Hierarchy:
    BuildError (base)
        ├── SourceTreeError
        ├── CustomizationError
        ├── BootloaderError
        └── BuildInterrupted
"""

from __future__ import annotations

import signal


class BuildError(Exception):
    """Base exception for build pipeline failures."""



class SourceTreeError(BuildError):
    """The source tree or output path is not usable."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Invalid build input {path}: {reason}")


class CustomizationError(BuildError):
    """The customization script failed inside the draft root."""

    def __init__(self, returncode: int, stderr: str = ""):
        self.returncode = returncode
        self.stderr = stderr
        msg = f"Customization failed with exit code {returncode}"
        if stderr:
            msg += f": {stderr}"
        super().__init__(msg)


class BootloaderError(BuildError):
    """Bootloader generation or installation failed."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Bootloader setup failed: {reason}")


class BuildInterrupted(BuildError):
    """The build received SIGINT or SIGTERM."""

    def __init__(self, signum: int):
        self.signum = signum
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        self.signal_name = name
        super().__init__(f"Build interrupted by {name}")
