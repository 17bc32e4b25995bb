"""Domain models for image builds."""

from __future__ import annotations

from .models import (
    BuildIdentity,
    BuildOptions,
    ImageDescriptor,
    ImagePhase,
    RootPasswordMode,
)


__all__ = [
    "BuildIdentity",
    "BuildOptions",
    "ImageDescriptor",
    "ImagePhase",
    "RootPasswordMode",
]
