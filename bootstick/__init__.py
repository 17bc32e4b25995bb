"""Build bootable BIOS/UEFI disk images from a root filesystem tree."""

from .__version__ import __version__


__all__ = ["__version__"]
