import argparse
import json
import sys
from pathlib import Path

from bootstick.__version__ import __version__
from bootstick.build.exceptions import BuildError
from bootstick.build.runner import run_build
from bootstick.config import settings
from bootstick.config.settings import BuildSettings
from bootstick.domain.models import BuildOptions, RootPasswordMode
from bootstick.logging import LoggerFactory, setup_logging
from bootstick.storage.exceptions import StorageError


EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2

OS_SUPPORT = """\
Supported source trees:
  Debian and Ubuntu root filesystems for amd64, using apt.

The generated image boots on BIOS and UEFI (x86_64) machines and grows its
root volume to fill the target disk on first boot.
"""


def build_parser():
    parser = argparse.ArgumentParser(
        prog="bootstick",
        description="Turn a root filesystem tree into a bootable disk image",
    )
    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")
    subparsers.required = True

    build = subparsers.add_parser(
        "build",
        help="Build a disk image from a root filesystem tree",
        description="Build a bootable disk image from a root filesystem tree",
    )
    build.add_argument("source_tree", type=Path, help="Root filesystem tree (e.g. from debootstrap)")
    build.add_argument("output_image", type=Path, help="Disk image file to write")
    password = build.add_mutually_exclusive_group()
    password.add_argument(
        "--root-password-request",
        metavar="PASSWORD",
        dest="root_password",
        help="Set the root password of the image",
    )
    password.add_argument(
        "--disable-root-password",
        action="store_true",
        help="Lock the root account password",
    )
    password.add_argument(
        "--root-password-on-first-boot",
        action="store_true",
        help="Ask for a root password on the first boot",
    )
    build.add_argument(
        "--config-kbd",
        action="store_true",
        help="Copy the host keyboard and console configuration into the image",
    )
    build.add_argument("--config-hostname", metavar="NAME", help="Hostname of the image")
    build.add_argument("--kernel-bootargs", metavar="ARGS", help="Extra kernel command-line arguments")
    build.add_argument("--work-dir", type=Path, metavar="DIR", help="Directory for temporary files")
    build.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    build.add_argument("--trace", action="store_true", help="Also log raw command output")
    build.add_argument("--log-dir", type=Path, metavar="DIR", help="Directory for log files")

    config = subparsers.add_parser(
        "config",
        help="Show or change build settings",
        description=f"Show or change build settings stored in {settings.SETTINGS_PATH}",
    )
    config.add_argument("key", nargs="?", help="Setting name (all settings when omitted)")
    config.add_argument("value", nargs="?", help="New value, parsed as JSON when possible")

    subparsers.add_parser("version", help="Print the version")
    subparsers.add_parser("os-support", help="Print the supported target systems")
    return parser


def parse_setting_value(text):
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return text


def run_config(parser, args):
    if args.key is None:
        for key, value in sorted(settings.settings_store.values.items()):
            print(f"{key} = {json.dumps(value)}")
        return EXIT_OK
    if args.key not in settings.DEFAULT_SETTINGS:
        parser.error(f"unknown setting: {args.key}")
    if args.value is None:
        print(json.dumps(settings.get_setting(args.key)))
        return EXIT_OK
    try:
        settings.set_setting(args.key, parse_setting_value(args.value))
    except OSError as error:
        print(f"bootstick: cannot save settings: {error}", file=sys.stderr)
        return EXIT_FAILURE
    return EXIT_OK


def options_from_args(args):
    if args.root_password is not None:
        mode = RootPasswordMode.SET
    elif args.disable_root_password:
        mode = RootPasswordMode.DISABLED
    elif args.root_password_on_first_boot:
        mode = RootPasswordMode.FIRST_BOOT
    else:
        mode = RootPasswordMode.UNCHANGED
    return BuildOptions(
        source_tree=args.source_tree,
        output_image=args.output_image,
        root_password_mode=mode,
        root_password=args.root_password,
        config_kbd=args.config_kbd,
        hostname=args.config_hostname,
        kernel_bootargs=args.kernel_bootargs,
        work_dir=args.work_dir,
    )


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "version":
        print(f"bootstick {__version__}")
        return EXIT_OK
    if args.command == "os-support":
        print(OS_SUPPORT, end="")
        return EXIT_OK
    if args.command == "config":
        return run_config(parser, args)

    options = options_from_args(args)
    try:
        options.validate()
    except ValueError as error:
        parser.error(str(error))

    setup_logging(debug=args.debug, trace=args.trace, log_dir=args.log_dir)
    log = LoggerFactory.for_system()
    log.info(f"bootstick {__version__}")

    try:
        run_build(options, BuildSettings.from_settings())
    except (BuildError, StorageError) as error:
        print(f"bootstick: {error}", file=sys.stderr)
        return EXIT_FAILURE
    except Exception:
        print("bootstick: unexpected internal error, see the debug log", file=sys.stderr)
        return EXIT_FAILURE
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
