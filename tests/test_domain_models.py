"""Tests for domain models.

This module provides test coverage for the domain model layer: build identity
naming, image descriptors and build option validation.
"""
from __future__ import annotations

import re
from pathlib import Path

import pytest

from bootstick.domain import (
    BuildIdentity,
    BuildOptions,
    ImageDescriptor,
    ImagePhase,
    RootPasswordMode,
)


# ==============================================================================
# BuildIdentity Tests
# ==============================================================================


class TestBuildIdentity:
    """Test BuildIdentity volume-group naming."""

    def test_names(self):
        """Test draft and final names share the token."""
        identity = BuildIdentity(token="1a2b3c4d")

        assert identity.draft_vg_name == "BSTK_DRAFT_1a2b3c4d"
        assert identity.final_vg_name == "BSTK_1a2b3c4d"
        assert identity.build_id == "build-1a2b3c4d"
        assert identity.vg_name(ImagePhase.DRAFT) == identity.draft_vg_name
        assert identity.vg_name(ImagePhase.FINAL) == identity.final_vg_name

    def test_generate_is_random(self):
        """Test generated tokens are hex and differ between builds."""
        first = BuildIdentity.generate()
        second = BuildIdentity.generate()

        assert re.fullmatch(r"[0-9a-f]{8}", first.token)
        assert first.token != second.token

    def test_custom_prefix(self):
        """Test a configured prefix is used."""
        identity = BuildIdentity.generate(prefix="LAB")
        assert identity.final_vg_name.startswith("LAB_")
        assert identity.draft_vg_name.startswith("LAB_DRAFT_")


# ==============================================================================
# ImageDescriptor Tests
# ==============================================================================


class TestImageDescriptor:
    """Test ImageDescriptor."""

    def _descriptor(self, **overrides) -> ImageDescriptor:
        values = dict(
            phase=ImagePhase.DRAFT,
            backing_file=Path("/tmp/w/draft.img"),
            size_kb=1551600,
            loop_device="/dev/loop0",
            efi_partition=Path("/dev/mapper/loop0p1"),
            bios_boot_partition=Path("/dev/mapper/loop0p2"),
            lvm_partition=Path("/dev/mapper/loop0p3"),
            lvm_partition_kb=1546528,
            vg_name="BSTK_DRAFT_ab",
            lv_device=Path("/dev/BSTK_DRAFT_ab/ROOT"),
            root_mountpoint=Path("/tmp/w/draft/root"),
            efi_mountpoint=Path("/tmp/w/draft/efi"),
        )
        values.update(overrides)
        return ImageDescriptor(**values)

    def test_non_lvm_kb(self):
        """Test the non-LVM part is total minus the LVM partition."""
        assert self._descriptor().non_lvm_kb == 5072

    def test_handles_do_not_affect_equality(self):
        """Test ledger handles are excluded from comparison."""
        assert self._descriptor(handles=(object(),)) == self._descriptor()

    def test_immutable(self):
        """Test descriptors are frozen."""
        descriptor = self._descriptor()
        with pytest.raises(AttributeError):
            descriptor.size_kb = 1


# ==============================================================================
# BuildOptions Tests
# ==============================================================================


class TestBuildOptions:
    """Test BuildOptions validation."""

    def test_defaults(self):
        """Test a bare request keeps the tree's own settings."""
        options = BuildOptions(source_tree=Path("/srv/tree"), output_image=Path("out.img"))

        assert options.root_password_mode is RootPasswordMode.UNCHANGED
        assert options.config_kbd is False
        options.validate()

    def test_password_required_for_set(self):
        """Test SET without a password is rejected."""
        options = BuildOptions(
            source_tree=Path("/srv/tree"),
            output_image=Path("out.img"),
            root_password_mode=RootPasswordMode.SET,
        )
        with pytest.raises(ValueError, match="root password is required"):
            options.validate()

    def test_password_without_set_mode(self):
        """Test a stray password is rejected."""
        options = BuildOptions(
            source_tree=Path("/srv/tree"),
            output_image=Path("out.img"),
            root_password_mode=RootPasswordMode.DISABLED,
            root_password="secret",
        )
        with pytest.raises(ValueError, match="will not be applied"):
            options.validate()

    def test_empty_hostname(self):
        """Test a blank hostname is rejected."""
        options = BuildOptions(
            source_tree=Path("/srv/tree"), output_image=Path("out.img"), hostname="  "
        )
        with pytest.raises(ValueError, match="Hostname"):
            options.validate()

    def test_password_hidden_from_repr(self):
        """Test the password never appears in repr (and so in logs)."""
        options = BuildOptions(
            source_tree=Path("/srv/tree"),
            output_image=Path("out.img"),
            root_password_mode=RootPasswordMode.SET,
            root_password="hunter2",
        )
        assert "hunter2" not in repr(options)
