"""
Pytest configuration and shared fixtures for bootstick tests.

This module provides common fixtures and utilities used across all test modules,
most importantly :class:`FakeHost`, an in-memory stand-in for the loop, device
mapper, LVM, mount and chroot tooling of a Linux host.
"""

import re
import shutil
import subprocess
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional
from unittest.mock import Mock

import pytest

from bootstick.build.exceptions import BuildInterrupted
from bootstick.config import settings as settings_module
from bootstick.config.settings import BuildSettings
from bootstick.domain.models import BuildOptions
from bootstick.storage.exceptions import CommandError


# Modules that bind run_command at import time
RUN_COMMAND_TARGETS = (
    "bootstick.storage.commands.run_command",
    "bootstick.storage.mount.run_command",
    "bootstick.storage.loop.run_command",
    "bootstick.storage.lvm.run_command",
    "bootstick.storage.format.run_command",
    "bootstick.build.pipeline.run_command",
    "bootstick.build.uefi.run_command",
    "bootstick.build.chroot.run_command",
)

_NEW_PARTITION_RE = re.compile(r"^--new=(\d+):0:\+(\d+)K$")

# GPT headers plus 1 MiB alignment at the start of the disk
GPT_OVERHEAD_KB = 2048


class FakeHost:
    """Emulates host storage tools by argv and tracks what they leave behind.

    Ordering rules of the real tools are enforced: a loop device with active
    partition mappings cannot be detached, mappings held open by an active
    volume group cannot be removed, and a mountpoint with mounts below it
    cannot be unmounted.
    """

    def __init__(self, loader_kb: int = 2400):
        self.loader_kb = loader_kb
        self.loops: Dict[str, Path] = {}
        self.mappings: set = set()
        self.volume_groups: Dict[str, Dict[str, Any]] = {}
        self.mounts: List[str] = []
        self.partitions: Dict[str, Dict[int, int]] = {}
        self.tree_sizes: Dict[str, int] = {}
        self.commands: List[List[str]] = []
        self.fail: Dict[str, subprocess.CompletedProcess] = {}
        self.on_customize: Optional[Callable[[Path], int]] = None
        self._next_loop = 0

    # -- inspection -----------------------------------------------------------

    def is_clean(self) -> bool:
        return not (
            self.loops
            or self.mappings
            or self.mounts
            or any(vg["active"] for vg in self.volume_groups.values())
        )

    def ran(self, program: str) -> List[List[str]]:
        return [argv for argv in self.commands if argv[0] == program]

    def set_tree_size(self, path, size_kb: int) -> None:
        self.tree_sizes[str(Path(path))] = size_kb

    def fail_command(self, program: str, returncode: int = 1, stderr: str = "failed") -> None:
        self.fail[program] = subprocess.CompletedProcess([program], returncode, "", stderr)

    # -- dispatch -------------------------------------------------------------

    def run_command(
        self,
        command,
        check=True,
        input_text=None,
        env=None,
        log_command=True,
    ) -> subprocess.CompletedProcess:
        argv = [str(part) for part in command]
        self.commands.append(argv)
        program = argv[0]
        if program in self.fail:
            result = self.fail[program]
        else:
            handler = getattr(self, "_" + re.sub(r"[^a-z0-9]", "_", program), None)
            result = handler(argv) if handler else None
            if result is None:
                result = subprocess.CompletedProcess(argv, 0, "", "")
        if check and result.returncode != 0:
            raise CommandError(argv, result.returncode, result.stderr)
        return result

    @staticmethod
    def _ok(argv, stdout: str = "") -> subprocess.CompletedProcess:
        return subprocess.CompletedProcess(argv, 0, stdout, "")

    @staticmethod
    def _error(argv, stderr: str) -> subprocess.CompletedProcess:
        return subprocess.CompletedProcess(argv, 1, "", stderr)

    def _loop_of_mapping(self, mapped: str) -> str:
        name = Path(mapped).name
        return "/dev/" + name.rsplit("p", 1)[0]

    def _losetup(self, argv):
        if "--detach" in argv:
            device = argv[-1]
            if device not in self.loops:
                return self._error(argv, f"{device}: No such device")
            if device in self.mappings:
                return self._error(argv, f"{device}: device is busy")
            del self.loops[device]
            return self._ok(argv)
        device = f"/dev/loop{self._next_loop}"
        self._next_loop += 1
        self.loops[device] = Path(argv[-1])
        return self._ok(argv, device + "\n")

    def _kpartx(self, argv):
        device = argv[-1]
        if "-a" in argv:
            self.mappings.add(device)
            name = Path(device).name
            lines = [f"add map {name}p{n} (253:{n}): 0 2048 linear 7:0 2048" for n in (1, 2, 3)]
            return self._ok(argv, "\n".join(lines) + "\n")
        if any(vg["active"] and vg["loop"] == device for vg in self.volume_groups.values()):
            return self._error(argv, "device-mapper: remove ioctl failed: Device or resource busy")
        self.mappings.discard(device)
        return self._ok(argv)

    def _sgdisk(self, argv):
        if "--zap-all" in argv:
            return None
        sizes = {}
        for arg in argv:
            match = _NEW_PARTITION_RE.match(arg)
            if match:
                sizes[int(match.group(1))] = int(match.group(2))
        self.partitions[argv[-1]] = sizes
        return None

    def _blockdev(self, argv):
        loop = self._loop_of_mapping(argv[-1])
        backing = self.loops[loop]
        total_kb = backing.stat().st_size // 1024
        sizes = self.partitions.get(str(backing), {})
        lvm_kb = total_kb - sum(sizes.values()) - GPT_OVERHEAD_KB
        return self._ok(argv, f"{lvm_kb * 1024}\n")

    def _vgcreate(self, argv):
        self.volume_groups[argv[1]] = {
            "active": True,
            "loop": self._loop_of_mapping(argv[2]),
        }

    def _vgs(self, argv):
        vg = self.volume_groups.get(argv[-1])
        if vg is None or vg["loop"] not in self.mappings:
            return self._error(argv, f'Volume group "{argv[-1]}" not found')
        return self._ok(argv, f"  {argv[-1]}\n")

    def _vgchange(self, argv):
        self.volume_groups[argv[-1]]["active"] = False

    def _mount(self, argv):
        self.mounts.append(argv[-1])

    def _umount(self, argv):
        target = argv[-1]
        if target not in self.mounts:
            return self._error(argv, f"umount: {target}: not mounted")
        if any(m != target and m.startswith(target.rstrip("/") + "/") for m in self.mounts):
            return self._error(argv, f"umount: {target}: target is busy")
        self.mounts.remove(target)

    def _du(self, argv):
        path = str(Path(argv[-1]))
        return self._ok(argv, f"{self.tree_sizes.get(path, 1000)}\t{path}\n")

    def _cp(self, argv):
        # pathlib drops the trailing "/." of "src/."
        shutil.copytree(Path(argv[-2]), Path(argv[-1]), symlinks=True, dirs_exist_ok=True)

    def _grub_mkstandalone(self, argv):
        output = Path(argv[argv.index("-o") + 1])
        output.write_bytes(b"\0" * (self.loader_kb * 1024))

    def _chroot(self, argv):
        root = Path(argv[1])
        inner = argv[2:]
        if inner[0] == "/bin/sh":
            returncode = self.on_customize(root) if self.on_customize else 0
            if returncode:
                return subprocess.CompletedProcess(argv, returncode, "", "E: Unable to locate package\n")
            return None
        if inner[0] in self.fail:
            return self.fail[inner[0]]
        if inner[0] == "grub-mkconfig":
            cfg = root / "boot" / "grub" / "grub.cfg"
            cfg.parent.mkdir(parents=True, exist_ok=True)
            cfg.write_text("# grub.cfg\n")
        return None


# ==============================================================================
# Host Fixtures
# ==============================================================================


@pytest.fixture
def fake_host(mocker, monkeypatch, tmp_path) -> FakeHost:
    """
    Fixture routing every external command through a FakeHost.

    Also makes tool lookups succeed, skips real device-node polling and keeps
    unmount from changing the test process's working directory.
    """
    host = FakeHost()
    for target in RUN_COMMAND_TARGETS:
        mocker.patch(target, side_effect=host.run_command)
    mocker.patch("bootstick.storage.commands.command_available", return_value=True)
    mocker.patch("bootstick.build.uefi.command_available", return_value=True)
    mocker.patch(
        "bootstick.storage.devices.wait_for_device",
        side_effect=lambda path, **kwargs: Path(path),
    )
    monkeypatch.setattr("bootstick.storage.mount.NEUTRAL_DIRECTORY", str(tmp_path))
    resolv = tmp_path / "host-resolv.conf"
    resolv.write_text("nameserver 192.0.2.53\n")
    monkeypatch.setattr("bootstick.build.customize.HOST_RESOLV_CONF", resolv)
    return host


@pytest.fixture
def mock_subprocess_run(mocker):
    """
    Fixture providing a mock for subprocess.run.

    Returns:
        Mock object for subprocess.run
    """
    return mocker.patch("subprocess.run")


@pytest.fixture
def mock_run_command(mocker) -> Mock:
    """
    Fixture providing a mock run_command that always succeeds.

    Returns:
        Mock patched over bootstick.storage.commands.run_command.
    """
    return mocker.patch(
        "bootstick.storage.commands.run_command",
        return_value=subprocess.CompletedProcess([], 0, "", ""),
    )


# ==============================================================================
# Build Fixtures
# ==============================================================================


@pytest.fixture
def build_settings() -> BuildSettings:
    """Build settings with a small draft margin so sparse files stay small."""
    return BuildSettings(draft_extra_space_kb=8192, device_wait_timeout_seconds=0.5)


@pytest.fixture
def source_tree(tmp_path) -> Path:
    """
    Fixture providing a minimal system tree as produced by debootstrap.

    Args:
        tmp_path: pytest's built-in temporary directory fixture.

    Returns:
        Path to the tree.
    """
    root = tmp_path / "tree"
    for directory in ("sbin", "etc", "tmp", "var/tmp", "boot", "root"):
        (root / directory).mkdir(parents=True)
    (root / "sbin" / "init").write_text("#!/bin/sh\n")
    (root / "etc" / "fstab").write_text("# UNCONFIGURED FSTAB FOR BASE SYSTEM\n")
    (root / "etc" / "hosts").write_text("127.0.0.1\tlocalhost\n")
    (root / "etc" / "resolv.conf").write_text("")
    (root / "tmp" / "leftover").write_text("x")
    return root


@pytest.fixture
def build_options(source_tree, tmp_path) -> BuildOptions:
    work_dir = tmp_path / "work"
    work_dir.mkdir()
    return BuildOptions(
        source_tree=source_tree,
        output_image=tmp_path / "out.img",
        hostname="stick",
        work_dir=work_dir,
    )


@pytest.fixture
def as_root(mocker) -> Mock:
    """Fixture pretending the tests run with an effective uid of 0."""
    return mocker.patch("bootstick.build.pipeline.os.geteuid", return_value=0)


@pytest.fixture
def interrupt_customization(fake_host) -> Callable[[int], None]:
    """
    Fixture making the customization script raise BuildInterrupted.

    Returns:
        Function taking the signal number to simulate.
    """

    def arm(signum: int) -> None:
        def interrupted(root):
            raise BuildInterrupted(signum)

        fake_host.on_customize = interrupted

    return arm


# ==============================================================================
# Settings Fixtures
# ==============================================================================


@pytest.fixture(autouse=True)
def reset_global_state():
    """
    Auto-use fixture that resets the settings store around each test.

    This keeps tests isolated when they change settings through the module API.
    """
    settings_module.settings_store.values = dict(settings_module.DEFAULT_SETTINGS)
    yield
    settings_module.settings_store.values = dict(settings_module.DEFAULT_SETTINGS)


@pytest.fixture
def temp_settings_file(tmp_path) -> Path:
    """
    Fixture providing a temporary settings file path.

    Args:
        tmp_path: pytest's built-in temporary directory fixture.

    Returns:
        Path to a temporary settings.json file.
    """
    settings_dir = tmp_path / "config"
    settings_dir.mkdir()
    return settings_dir / "settings.json"


@pytest.fixture
def sample_settings_data() -> Dict[str, Any]:
    """
    Fixture providing sample settings data.

    Returns:
        Dict containing typical settings values.
    """
    return {
        "fs_overhead_percent": 20,
        "draft_extra_space_kb": 2097152,
        "root_label": "MY_ROOT",
    }
