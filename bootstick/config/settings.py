"""Settings storage for build tunables."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional


SETTINGS_PATH = Path(
    os.environ.get(
        "BOOTSTICK_SETTINGS_PATH",
        Path.home() / ".config" / "bootstick" / "settings.json",
    )
)

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_FS_OVERHEAD_PERCENT = 15
DEFAULT_LVM_OVERHEAD_PERCENT = 2
DEFAULT_EFI_OVERHEAD_PERCENT = 20
DEFAULT_BIOS_BOOT_SIZE_KB = 1024
DEFAULT_DRAFT_EXTRA_SPACE_KB = 1024 * 1024

DEFAULT_SETTINGS: dict[str, Any] = {
    "fs_overhead_percent": DEFAULT_FS_OVERHEAD_PERCENT,
    "lvm_overhead_percent": DEFAULT_LVM_OVERHEAD_PERCENT,
    "efi_overhead_percent": DEFAULT_EFI_OVERHEAD_PERCENT,
    "bios_boot_size_kb": DEFAULT_BIOS_BOOT_SIZE_KB,
    "draft_extra_space_kb": DEFAULT_DRAFT_EXTRA_SPACE_KB,
    "ext4_reserved_percent": 1,
    "device_wait_timeout_seconds": 10.0,
    "device_wait_poll_interval": 0.2,
    "efi_label": "BSTK_EFI",
    "root_label": "BSTK_ROOT",
    "root_lv_name": "ROOT",
    "vg_prefix": "BSTK",
    "work_dir": None,
}


@dataclass
class SettingsStore:
    values: dict[str, Any] = field(default_factory=dict)


settings_store = SettingsStore()


def load_settings() -> None:
    settings_store.values = dict(DEFAULT_SETTINGS)
    if not SETTINGS_PATH.exists():
        return
    try:
        data = json.loads(SETTINGS_PATH.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return
    if isinstance(data, dict):
        settings_store.values.update(data)


def save_settings() -> None:
    SETTINGS_PATH.parent.mkdir(parents=True, exist_ok=True)
    SETTINGS_PATH.write_text(
        json.dumps(settings_store.values, indent=2, sort_keys=True),
        encoding="utf-8",
    )


def get_setting(key: str, default: Any | None = None) -> Any:
    return settings_store.values.get(key, default)


def set_setting(key: str, value: Any) -> None:
    settings_store.values[key] = value
    save_settings()


def get_int(key: str, default: int = 0) -> int:
    value = get_setting(key, default)
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def get_float(key: str, default: float = 0.0) -> float:
    value = get_setting(key, default)
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


@dataclass(frozen=True)
class BuildSettings:
    """Immutable snapshot of the tunables used by one build run."""

    fs_overhead_percent: int = DEFAULT_FS_OVERHEAD_PERCENT
    lvm_overhead_percent: int = DEFAULT_LVM_OVERHEAD_PERCENT
    efi_overhead_percent: int = DEFAULT_EFI_OVERHEAD_PERCENT
    bios_boot_size_kb: int = DEFAULT_BIOS_BOOT_SIZE_KB
    draft_extra_space_kb: int = DEFAULT_DRAFT_EXTRA_SPACE_KB
    ext4_reserved_percent: int = 1
    device_wait_timeout_seconds: float = 10.0
    device_wait_poll_interval: float = 0.2
    efi_label: str = "BSTK_EFI"
    root_label: str = "BSTK_ROOT"
    root_lv_name: str = "ROOT"
    vg_prefix: str = "BSTK"
    work_dir: Optional[str] = None

    @classmethod
    def from_settings(cls) -> BuildSettings:
        return cls(
            fs_overhead_percent=get_int(
                "fs_overhead_percent", DEFAULT_FS_OVERHEAD_PERCENT
            ),
            lvm_overhead_percent=get_int(
                "lvm_overhead_percent", DEFAULT_LVM_OVERHEAD_PERCENT
            ),
            efi_overhead_percent=get_int(
                "efi_overhead_percent", DEFAULT_EFI_OVERHEAD_PERCENT
            ),
            bios_boot_size_kb=get_int("bios_boot_size_kb", DEFAULT_BIOS_BOOT_SIZE_KB),
            draft_extra_space_kb=get_int(
                "draft_extra_space_kb", DEFAULT_DRAFT_EXTRA_SPACE_KB
            ),
            ext4_reserved_percent=get_int("ext4_reserved_percent", 1),
            device_wait_timeout_seconds=get_float("device_wait_timeout_seconds", 10.0),
            device_wait_poll_interval=get_float("device_wait_poll_interval", 0.2),
            efi_label=str(get_setting("efi_label", "BSTK_EFI")),
            root_label=str(get_setting("root_label", "BSTK_ROOT")),
            root_lv_name=str(get_setting("root_lv_name", "ROOT")),
            vg_prefix=str(get_setting("vg_prefix", "BSTK")),
            work_dir=get_setting("work_dir"),
        )


load_settings()
