"""Tests for the command-line entry point."""

import json
from pathlib import Path

import pytest

from bootstick import main
from bootstick.__version__ import __version__
from bootstick.build.exceptions import CustomizationError
from bootstick.config import settings
from bootstick.config.settings import BuildSettings
from bootstick.domain.models import RootPasswordMode
from bootstick.storage.exceptions import DeviceTimeoutError


@pytest.fixture
def mock_run_build(mocker):
    return mocker.patch("bootstick.main.run_build")


@pytest.fixture(autouse=True)
def mock_setup_logging(mocker):
    return mocker.patch("bootstick.main.setup_logging")


class TestParser:
    """Tests for argument parsing."""

    def test_build_options(self):
        """Test build options map onto BuildOptions."""
        args = main.build_parser().parse_args(
            [
                "build",
                "--root-password-on-first-boot",
                "--config-kbd",
                "--config-hostname",
                "stick",
                "--kernel-bootargs",
                "quiet splash",
                "--work-dir",
                "/var/tmp",
                "/srv/tree",
                "out.img",
            ]
        )
        options = main.options_from_args(args)

        assert options.source_tree == Path("/srv/tree")
        assert options.output_image == Path("out.img")
        assert options.root_password_mode is RootPasswordMode.FIRST_BOOT
        assert options.config_kbd is True
        assert options.hostname == "stick"
        assert options.kernel_bootargs == "quiet splash"
        assert options.work_dir == Path("/var/tmp")

    @pytest.mark.parametrize(
        "flags, mode",
        [
            ([], RootPasswordMode.UNCHANGED),
            (["--root-password-request", "pw"], RootPasswordMode.SET),
            (["--disable-root-password"], RootPasswordMode.DISABLED),
        ],
    )
    def test_password_modes(self, flags, mode):
        """Test each password flag selects its policy."""
        args = main.build_parser().parse_args(["build", *flags, "/srv/tree", "out.img"])
        assert main.options_from_args(args).root_password_mode is mode

    def test_password_flags_are_exclusive(self):
        """Test conflicting password flags are rejected."""
        with pytest.raises(SystemExit) as exc_info:
            main.build_parser().parse_args(
                ["build", "--disable-root-password", "--root-password-on-first-boot", "t", "o"]
            )
        assert exc_info.value.code == 2

    def test_command_required(self):
        """Test running without a subcommand is a usage error."""
        with pytest.raises(SystemExit) as exc_info:
            main.main([])
        assert exc_info.value.code == 2


class TestMain:
    """Tests for main() exit codes."""

    def test_version(self, capsys, mock_run_build):
        """Test the version subcommand."""
        assert main.main(["version"]) == 0
        assert capsys.readouterr().out.strip() == f"bootstick {__version__}"
        mock_run_build.assert_not_called()

    def test_os_support(self, capsys):
        """Test the os-support subcommand."""
        assert main.main(["os-support"]) == 0
        assert "Debian and Ubuntu" in capsys.readouterr().out

    def test_build_success(self, mock_run_build, mock_setup_logging):
        """Test a successful build exits 0."""
        assert main.main(["build", "--debug", "/srv/tree", "out.img"]) == 0

        mock_setup_logging.assert_called_once_with(debug=True, trace=False, log_dir=None)
        options = mock_run_build.call_args[0][0]
        assert options.source_tree == Path("/srv/tree")

    def test_build_failure(self, mock_run_build, capsys):
        """Test a build error exits 1 with a message."""
        mock_run_build.side_effect = CustomizationError(100, "E: broken packages")

        assert main.main(["build", "/srv/tree", "out.img"]) == 1
        assert "Customization failed" in capsys.readouterr().err

    def test_storage_failure(self, mock_run_build):
        """Test a storage error exits 1."""
        mock_run_build.side_effect = DeviceTimeoutError("/dev/mapper/loop0p3", 10)
        assert main.main(["build", "/srv/tree", "out.img"]) == 1

    def test_unexpected_failure(self, mock_run_build, capsys):
        """Test an internal error exits 1."""
        mock_run_build.side_effect = RuntimeError("bug")

        assert main.main(["build", "/srv/tree", "out.img"]) == 1
        assert "unexpected internal error" in capsys.readouterr().err

    def test_build_uses_stored_settings(self, mock_run_build):
        """Test the build receives a snapshot of the settings store."""
        settings.settings_store.values["fs_overhead_percent"] = 25

        main.main(["build", "/srv/tree", "out.img"])

        build_settings = mock_run_build.call_args[0][1]
        assert build_settings.fs_overhead_percent == 25

    def test_empty_hostname_is_usage_error(self, mock_run_build):
        """Test option validation errors exit 2 before building."""
        with pytest.raises(SystemExit) as exc_info:
            main.main(["build", "--config-hostname", " ", "/srv/tree", "out.img"])

        assert exc_info.value.code == 2
        mock_run_build.assert_not_called()


class TestConfigCommand:
    """Tests for the config subcommand."""

    @pytest.fixture
    def settings_file(self, tmp_path, monkeypatch):
        path = tmp_path / "settings.json"
        monkeypatch.setattr("bootstick.config.settings.SETTINGS_PATH", path)
        return path

    def test_list(self, capsys):
        """Test all settings are listed as JSON values."""
        assert main.main(["config"]) == 0

        out = capsys.readouterr().out
        assert "fs_overhead_percent = 15" in out
        assert 'root_label = "BSTK_ROOT"' in out
        assert "work_dir = null" in out

    def test_show_one(self, capsys):
        """Test a single setting is printed."""
        assert main.main(["config", "lvm_overhead_percent"]) == 0
        assert capsys.readouterr().out.strip() == "2"

    def test_set_number(self, settings_file):
        """Test a numeric value is stored as a number and persisted."""
        assert main.main(["config", "draft_extra_space_kb", "2097152"]) == 0

        assert settings.get_setting("draft_extra_space_kb") == 2097152
        assert json.loads(settings_file.read_text())["draft_extra_space_kb"] == 2097152
        assert BuildSettings.from_settings().draft_extra_space_kb == 2097152

    def test_set_plain_string(self, settings_file):
        """Test a value that is not JSON is stored as a string."""
        assert main.main(["config", "work_dir", "/var/tmp"]) == 0
        assert settings.get_setting("work_dir") == "/var/tmp"

    def test_unknown_key(self, settings_file):
        """Test an unknown setting is a usage error and nothing is written."""
        with pytest.raises(SystemExit) as exc_info:
            main.main(["config", "no_such_key", "1"])

        assert exc_info.value.code == 2
        assert not settings_file.exists()

    def test_save_failure(self, mocker, capsys):
        """Test an unwritable settings file exits 1."""
        mocker.patch(
            "bootstick.main.settings.set_setting",
            side_effect=PermissionError("read-only file system"),
        )

        assert main.main(["config", "efi_label", "BOOT"]) == 1
        assert "cannot save settings" in capsys.readouterr().err
