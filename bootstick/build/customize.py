"""Draft customization and finalization.

Customization runs a generated shell script inside the draft root with the
host's name-resolution configuration bind-mounted, so package management can
reach the network. Finalization strips transient runtime files and installs
the first-boot init shim that adapts the system to the media it was copied
onto before handing over to the original init.

Root password policy, console configuration and hostname come from
BuildOptions. Package selection is Debian/Ubuntu flavoured (apt).
"""

from __future__ import annotations

import os
import shutil
from contextlib import ExitStack
from functools import partial
from pathlib import Path
from typing import Iterable, Optional

from bootstick.build.chroot import chroot_command, system_binds
from bootstick.build.exceptions import CustomizationError, SourceTreeError
from bootstick.config.settings import BuildSettings
from bootstick.domain.models import BuildOptions, RootPasswordMode
from bootstick.logging import LoggerFactory
from bootstick.storage.ledger import Ledger, scoped
from bootstick.storage.mount import scoped_bind_mount


log = LoggerFactory.for_build().bind(source="customize")

HOST_RESOLV_CONF = Path("/etc/resolv.conf")
HOST_CONSOLE_FILES = (Path("/etc/default/keyboard"), Path("/etc/default/console-setup"))

SCRIPT_DIR = Path("root") / ".bootstick"
SCRIPT_NAME = "customize.sh"
CONFIG_DIR = Path("etc") / "bootstick"
LAYOUT_FILE = CONFIG_DIR / "layout.conf"
ASK_PASSWORD_MARKER = CONFIG_DIR / "ask-root-password"
# First existing entry is the init that gets replaced.
INIT_CANDIDATES = (Path("sbin") / "init", Path("usr") / "sbin" / "init")
ORIGINAL_INIT_SUFFIX = ".bootstick-orig"

TRANSIENT_PATTERNS = (
    "tmp/*",
    "var/tmp/*",
    "var/cache/apt/archives/*.deb",
    "var/cache/apt/*.bin",
    "var/lib/apt/lists/*_*",
    "var/lib/apt/lists/lock",
    "var/lib/dpkg/lock",
    "var/lib/dpkg/lock-frontend",
    "var/cache/apt/archives/lock",
    "var/cache/debconf/*-old",
    "run/*.pid",
)

CUSTOMIZE_SCRIPT = """\
#!/bin/sh
set -e
export DEBIAN_FRONTEND=noninteractive

. /etc/os-release
case "$ID" in
    ubuntu) KERNEL_PACKAGE=linux-image-generic ;;
    *) KERNEL_PACKAGE=linux-image-amd64 ;;
esac

apt-get update
apt-get install -y --no-install-recommends \\
    $KERNEL_PACKAGE grub-pc-bin grub-efi-amd64-bin grub2-common \\
    lvm2 gdisk cloud-guest-utils e2fsprogs {extra_packages}

{password_step}
{bootargs_step}
apt-get clean
rm -f "$0"
"""

BOOTARGS_STEP = """\
sed -i -e 's|^GRUB_CMDLINE_LINUX=.*|GRUB_CMDLINE_LINUX="{bootargs}"|' /etc/default/grub
grep -q '^GRUB_CMDLINE_LINUX=' /etc/default/grub || \\
    echo 'GRUB_CMDLINE_LINUX="{bootargs}"' >> /etc/default/grub
"""

PASSWORD_STEPS = {
    RootPasswordMode.UNCHANGED: "",
    RootPasswordMode.SET: 'echo "root:$BOOTSTICK_ROOT_PASSWORD" | chpasswd',
    RootPasswordMode.DISABLED: "passwd -l root",
    RootPasswordMode.FIRST_BOOT: "passwd -d root",
}

FIRST_BOOT_INIT = """\
#!/bin/sh
# First-boot setup: grow the root volume onto the whole disk, then hand
# over to the original init.
. /{layout_file}

mount -t proc proc /proc 2>/dev/null
mount -t sysfs sysfs /sys 2>/dev/null
mount -o remount,rw /

vgchange -a y "$VG_NAME" >/dev/null 2>&1
PV_DEV=$(pvs --noheadings -o pv_name -S vg_name="$VG_NAME" | tr -d ' ')
DISK=/dev/$(lsblk -no pkname "$PV_DEV" | head -n 1)
PART_NUM=$(cat /sys/class/block/$(basename $(readlink -f "$PV_DEV"))/partition 2>/dev/null)

if [ -n "$PV_DEV" ] && [ -b "$DISK" ]; then
    sgdisk -e "$DISK" >/dev/null 2>&1
    growpart "$DISK" "${{PART_NUM:-3}}" >/dev/null 2>&1
    partprobe "$DISK" >/dev/null 2>&1
    pvresize "$PV_DEV" >/dev/null 2>&1
    lvextend -r -l +100%FREE "/dev/$VG_NAME/$ROOT_LV" >/dev/null 2>&1
fi

if [ -f /{ask_password_marker} ]; then
    echo "Please choose a root password."
    while ! passwd root; do :; done
    rm -f /{ask_password_marker}
fi

mv /{original_init} /{init}
sync
mount -o remount,ro / 2>/dev/null
exec /{init} "$@"
"""

FSTAB_HEADER = "# <file system> <mount point> <type> <options> <dump> <pass>\n"


def render_customize_script(options: BuildOptions) -> str:
    extra_packages = "keyboard-configuration console-setup" if options.config_kbd else ""
    bootargs_step = ""
    if options.kernel_bootargs:
        bootargs_step = BOOTARGS_STEP.format(bootargs=options.kernel_bootargs)
    return CUSTOMIZE_SCRIPT.format(
        extra_packages=extra_packages,
        password_step=PASSWORD_STEPS[options.root_password_mode],
        bootargs_step=bootargs_step,
    )


def original_init_path(init: Path) -> Path:
    return init.with_name(init.name + ORIGINAL_INIT_SUFFIX)


def find_init(root: Path) -> Optional[Path]:
    """Return the init of ``root`` relative to it, or None if there is none."""
    for candidate in INIT_CANDIDATES:
        path = root / candidate
        if path.exists() or path.is_symlink():
            return candidate
    return None


def render_first_boot_init(init: Path = INIT_CANDIDATES[0]) -> str:
    return FIRST_BOOT_INIT.format(
        layout_file=LAYOUT_FILE,
        ask_password_marker=ASK_PASSWORD_MARKER,
        original_init=original_init_path(init),
        init=init,
    )


def render_layout(vg_name: str, settings: BuildSettings) -> str:
    return (
        f"VG_NAME={vg_name}\n"
        f"ROOT_LV={settings.root_lv_name}\n"
        f"ROOT_LABEL={settings.root_label}\n"
        f"EFI_LABEL={settings.efi_label}\n"
    )


def render_fstab(existing: str, settings: BuildSettings) -> str:
    """Replace the / and /boot/efi entries of ``existing`` with label-based ones."""
    kept = []
    for line in existing.splitlines():
        fields = line.split()
        if fields and not fields[0].startswith("#") and len(fields) > 1:
            if fields[1] in ("/", "/boot/efi"):
                continue
        if line.strip() == FSTAB_HEADER.strip():
            continue
        kept.append(line)
    lines = [
        FSTAB_HEADER.rstrip("\n"),
        f"LABEL={settings.root_label} / ext4 errors=remount-ro 0 1",
        f"LABEL={settings.efi_label} /boot/efi vfat umask=0077 0 1",
    ]
    lines.extend(line for line in kept if line.strip())
    return "\n".join(lines) + "\n"


def write_hostname(root: Path, hostname: str) -> None:
    (root / "etc" / "hostname").write_text(hostname + "\n", encoding="utf-8")
    hosts = root / "etc" / "hosts"
    existing = hosts.read_text(encoding="utf-8") if hosts.exists() else "127.0.0.1\tlocalhost\n"
    lines = [line for line in existing.splitlines() if not line.startswith("127.0.1.1")]
    lines.append(f"127.0.1.1\t{hostname}")
    hosts.write_text("\n".join(lines) + "\n", encoding="utf-8")


def _copy_console_config(root: Path, sources: Iterable[Path] = HOST_CONSOLE_FILES) -> None:
    for source in sources:
        if source.exists():
            target = root / source.relative_to("/")
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, target)
            log.debug(f"Copied {source} into the image")


def _displace_link(link: Path) -> Path:
    """Move symlink ``link`` aside so a bind mount cannot follow it to the host."""
    aside = link.with_name(link.name + ".bootstick-orig")
    os.rename(link, aside)
    link.touch()
    return link


def _restore_link(link: Path) -> None:
    link.unlink()
    os.rename(link.with_name(link.name + ".bootstick-orig"), link)


def customize(ledger: Ledger, root: Path, options: BuildOptions) -> None:
    """Run the customization script inside ``root``.

    /etc/resolv.conf and the system pseudo-filesystems are bind-mounted for
    the duration of the script and released whatever its outcome.

    Raises:
        CustomizationError: If the script exits non-zero.
    """
    if options.hostname:
        write_hostname(root, options.hostname)
    if options.config_kbd:
        _copy_console_config(root)

    script_dir = root / SCRIPT_DIR
    script_dir.mkdir(parents=True, exist_ok=True)
    script_path = script_dir / SCRIPT_NAME
    script_path.write_text(render_customize_script(options), encoding="utf-8")
    script_path.chmod(0o700)

    env = {}
    if options.root_password_mode is RootPasswordMode.SET and options.root_password:
        env["BOOTSTICK_ROOT_PASSWORD"] = options.root_password

    with ExitStack() as stack:
        stack.enter_context(system_binds(ledger, root))
        if HOST_RESOLV_CONF.exists():
            target = root / "etc" / "resolv.conf"
            if target.is_symlink():
                stack.enter_context(
                    scoped(
                        ledger,
                        partial(_displace_link, target),
                        _restore_link,
                        f"displace {target}",
                    )
                )
            stack.enter_context(
                scoped_bind_mount(ledger, HOST_RESOLV_CONF.resolve(), target)
            )
        log.info("Running customization script in the draft image")
        result = chroot_command(
            root,
            ["/bin/sh", "/" + str(SCRIPT_DIR / SCRIPT_NAME)],
            check=False,
            env=env,
        )
    if result.returncode != 0:
        stderr_tail = "\n".join((result.stderr or "").strip().splitlines()[-5:])
        raise CustomizationError(result.returncode, stderr_tail)
    if script_dir.exists() and not any(script_dir.iterdir()):
        script_dir.rmdir()


def strip_transient_files(root: Path, patterns: Iterable[str] = TRANSIENT_PATTERNS) -> int:
    """Delete temp/cache contents and stale lock files; return entries removed."""
    removed = 0
    for pattern in patterns:
        for path in root.glob(pattern):
            if path.is_dir() and not path.is_symlink():
                shutil.rmtree(path)
            else:
                path.unlink()
            removed += 1
    log.debug(f"Removed {removed} transient entries")
    return removed


def install_first_boot_init(root: Path) -> Path:
    """Move the original init aside and install the first-boot shim in its place.

    Returns:
        The replaced init, relative to ``root``.

    Raises:
        SourceTreeError: If ``root`` has no init.
    """
    relative = find_init(root)
    if relative is None:
        raise SourceTreeError(str(root), "no sbin/init found, not a system tree")
    init = root / relative
    original = root / original_init_path(relative)
    if not original.exists() and not original.is_symlink():
        os.rename(init, original)
    elif init.is_symlink():
        init.unlink()
    init.write_text(render_first_boot_init(relative), encoding="utf-8")
    init.chmod(0o755)
    log.debug(f"Installed first-boot init at /{relative}")
    return relative


def finalize(root: Path, vg_name: str, options: BuildOptions, settings: BuildSettings) -> None:
    """Prepare the customized draft root for replay into the final image."""
    strip_transient_files(root)

    config_dir = root / CONFIG_DIR
    config_dir.mkdir(parents=True, exist_ok=True)
    (root / LAYOUT_FILE).write_text(render_layout(vg_name, settings), encoding="utf-8")
    if options.root_password_mode is RootPasswordMode.FIRST_BOOT:
        (root / ASK_PASSWORD_MARKER).touch()

    fstab = root / "etc" / "fstab"
    existing = fstab.read_text(encoding="utf-8") if fstab.exists() else ""
    fstab.write_text(render_fstab(existing, settings), encoding="utf-8")

    install_first_boot_init(root)
    log.info(f"Finalized draft root (volume group {vg_name})")
