"""Tests for configuration loading."""

from pathlib import Path

import pytest

from mountsweep.config import (
    DEFAULT_TIER_PRIORITY,
    SweepSettings,
    find_project_dir,
    load_config,
    settings_from_mapping,
)
from mountsweep.errors import ConfigError


class TestSweepSettings:
    """Tests for SweepSettings."""

    def test_defaults(self):
        settings = SweepSettings()

        assert settings.export_path == "/mnt/data-tank/docker"
        assert settings.tier_priority == DEFAULT_TIER_PRIORITY
        assert settings.max_depth is None
        assert settings.server_host

    def test_credentials_path(self):
        assert SweepSettings(remote_user="root").credentials_path == "/root/.smbcredentials-test"
        assert SweepSettings(remote_user="jo").credentials_path == "/home/jo/.smbcredentials-test"
        assert SweepSettings(smb_credentials_path="/etc/creds").credentials_path == "/etc/creds"

    def test_overrides_skip_none(self):
        settings = SweepSettings(remote_host="a").with_overrides(remote_host=None, remote_user="u")

        assert settings.remote_host == "a"
        assert settings.remote_user == "u"

    def test_unknown_override(self):
        with pytest.raises(ConfigError, match="Unknown setting"):
            _ = SweepSettings().with_overrides(nope=1)


class TestSettingsFromMapping:
    """Tests for settings_from_mapping()."""

    def test_types_coerced(self):
        settings = settings_from_mapping(
            {
                "settle_timeout": 5,
                "connect_timeout": 3,
                "test_dirs": ["a", "b"],
                "results_dir": "out",
                "max_depth": 4,
            }
        )

        assert settings.settle_timeout == 5.0
        assert isinstance(settings.settle_timeout, float)
        assert settings.connect_timeout == 3
        assert settings.test_dirs == ("a", "b")
        assert settings.results_dir == Path("out")
        assert settings.max_depth == 4

    def test_invalid_value(self):
        with pytest.raises(ConfigError, match="settle_timeout"):
            _ = settings_from_mapping({"settle_timeout": "soon"})

    def test_unknown_key_ignored(self):
        settings = settings_from_mapping({"colour": "blue"})

        assert settings == SweepSettings()


class TestLoadConfig:
    """Tests for load_config()."""

    def test_project_config(self, mountsweep_project):
        settings = load_config(mountsweep_project / ".mountsweep")

        assert settings.remote_host == "client.example"
        assert settings.server_host == "server.example"
        assert settings.results_dir == mountsweep_project / ".mountsweep" / "results"
        assert settings.backup_dir == mountsweep_project / ".mountsweep" / "backups"

    def test_found_from_subdirectory(self, mountsweep_project):
        sub = mountsweep_project / "a" / "b"
        sub.mkdir(parents=True)

        assert find_project_dir(sub) == (mountsweep_project / ".mountsweep").resolve()

    def test_missing_file_gives_defaults(self, temp_dir):
        project = temp_dir / ".mountsweep"
        project.mkdir()

        settings = load_config(project)

        assert settings.remote_host == ""
        assert settings.results_dir == project / "results"

    def test_invalid_yaml(self, temp_dir):
        project = temp_dir / ".mountsweep"
        project.mkdir()
        (project / "config.yaml").write_text("remote_host: [unclosed")

        with pytest.raises(ConfigError, match="Cannot parse"):
            _ = load_config(project)

    def test_not_a_mapping(self, temp_dir):
        project = temp_dir / ".mountsweep"
        project.mkdir()
        (project / "config.yaml").write_text("- a\n")

        with pytest.raises(ConfigError, match="mapping"):
            _ = load_config(project)
