"""Tests for configuration resolution."""

import json
from pathlib import Path

import pytest

from vault_guard.config import SETTINGS, ConfigResolver, ConfigSource, ResolvedConfig, coerce_value
from vault_guard.safety.models import ConfigMissing


@pytest.fixture
def project_file(tmp_path: Path) -> Path:
    path = tmp_path / ".obsidian-vault.env"
    path.write_text("HOST=project-host\nPORT=28000\nALLOW_DELETE=true\n")
    return path


@pytest.fixture
def user_file(tmp_path: Path) -> Path:
    path = tmp_path / "config.json"
    path.write_text(
        json.dumps({"HOST": "user-host", "PORT": 29000, "API_KEY": "user-key", "PROTOCOL": "http"})
    )
    return path


class TestCoerceValue:
    """Test value coercion."""

    def test_booleans(self):
        """Test true/false strings become booleans."""
        assert coerce_value("true") is True
        assert coerce_value("FALSE") is False

    def test_digits(self):
        """Test all-digit strings become integers."""
        assert coerce_value("27124") == 27124

    def test_other_strings(self):
        """Test anything else stays a string."""
        assert coerce_value("127.0.0.1") == "127.0.0.1"
        assert coerce_value("-5") == "-5"

    def test_unicode_digits_stay_strings(self):
        """Test only ASCII digits are read as integers."""
        assert coerce_value("²") == "²"
        assert coerce_value("٣") == "٣"

    def test_native_values_pass_through(self):
        """Test values from JSON keep their type."""
        assert coerce_value(False) is False
        assert coerce_value(7) == 7
        assert coerce_value(None) is None


class TestConfigResolver:
    """Test precedence across sources."""

    def test_environment_wins(self, project_file, user_file):
        """Test environment beats both files."""
        resolver = ConfigResolver(
            project_file=project_file,
            user_file=user_file,
            environ={"OBSIDIAN_HOST": "env-host"},
        )

        resolved = resolver.resolve("HOST", "default-host")

        assert resolved.value == "env-host"
        assert resolved.source == ConfigSource.ENVIRONMENT

    def test_project_file_beats_user_file(self, project_file, user_file):
        """Test project file beats the user file."""
        resolver = ConfigResolver(project_file=project_file, user_file=user_file, environ={})

        resolved = resolver.resolve("PORT", 27124)

        assert resolved.value == 28000
        assert resolved.source == ConfigSource.PROJECT_FILE

    def test_user_file_beats_default(self, project_file, user_file):
        """Test the user file beats the default."""
        resolver = ConfigResolver(project_file=project_file, user_file=user_file, environ={})

        resolved = resolver.resolve("PROTOCOL", "https")

        assert resolved.value == "http"
        assert resolved.source == ConfigSource.USER_FILE

    def test_default_used_last(self, tmp_path):
        """Test the default applies when no source defines a key."""
        resolver = ConfigResolver(
            project_file=tmp_path / "none.env", user_file=tmp_path / "none.json", environ={}
        )

        resolved = resolver.resolve("BACKUP_KEEP_LAST_N", 5)

        assert resolved.value == 5
        assert resolved.source == ConfigSource.DEFAULT

    def test_empty_environment_value_is_undefined(self, project_file, user_file):
        """Test an empty variable falls through to the next source."""
        resolver = ConfigResolver(
            project_file=project_file, user_file=user_file, environ={"OBSIDIAN_HOST": ""}
        )

        assert resolver.resolve("HOST").value == "project-host"

    def test_keys_are_case_insensitive(self, project_file, user_file):
        """Test lookups normalize key case."""
        resolver = ConfigResolver(project_file=project_file, user_file=user_file, environ={})

        assert resolver.resolve("allow_delete").value is True

    def test_require_raises_config_missing(self, tmp_path):
        """Test required keys must come from some source."""
        resolver = ConfigResolver(
            project_file=tmp_path / "none.env", user_file=tmp_path / "none.json", environ={}
        )

        with pytest.raises(ConfigMissing) as exc_info:
            resolver.require("API_KEY")

        assert exc_info.value.error_code == "CONFIG_MISSING"
        assert exc_info.value.details["key"] == "API_KEY"
        assert "OBSIDIAN_API_KEY" in exc_info.value.details["sources_checked"]

    def test_malformed_user_file_is_ignored(self, tmp_path):
        """Test broken JSON does not prevent resolution."""
        broken = tmp_path / "config.json"
        broken.write_text("{not json")
        resolver = ConfigResolver(
            project_file=tmp_path / "none.env", user_file=broken, environ={}
        )

        assert resolver.resolve("HOST", "127.0.0.1").source == ConfigSource.DEFAULT


class TestSnapshot:
    """Test immutable settings snapshots."""

    def test_snapshot_combines_sources(self, project_file, user_file):
        """Test each key resolves independently."""
        resolver = ConfigResolver(
            project_file=project_file,
            user_file=user_file,
            environ={"OBSIDIAN_DANGEROUSLY_SKIP_CONFIRMATIONS": "true"},
        )

        config = resolver.snapshot()

        assert config.api_key == "user-key"
        assert config.host == "project-host"
        assert config.port == 28000
        assert config.protocol == "http"
        assert config.allow_delete is True
        assert config.skip_confirmations is True
        assert config.backup_enabled is True
        assert config.backup_keep_last_n == 5
        assert config.base_url == "http://project-host:28000"
        assert config.sources["HOST"].source == ConfigSource.PROJECT_FILE
        assert config.sources["DANGEROUSLY_SKIP_CONFIRMATIONS"].source == ConfigSource.ENVIRONMENT

    def test_numeric_api_key_stays_a_string(self, tmp_path):
        """Test string settings keep their text after coercion."""
        resolver = ConfigResolver(
            project_file=tmp_path / "none.env",
            user_file=tmp_path / "none.json",
            environ={"OBSIDIAN_API_KEY": "12345"},
        )

        assert resolver.snapshot().api_key == "12345"

    def test_snapshot_requires_api_key(self, tmp_path):
        """Test a missing API key fails the snapshot."""
        resolver = ConfigResolver(
            project_file=tmp_path / "none.env", user_file=tmp_path / "none.json", environ={}
        )

        with pytest.raises(ConfigMissing):
            resolver.snapshot()

    def test_snapshot_is_frozen(self, test_config: ResolvedConfig):
        """Test snapshots cannot change mid-operation."""
        with pytest.raises(Exception):
            test_config.allow_delete = False

    def test_backup_path_expands_user(self, make_config):
        """Test the backup directory expands ~."""
        config = make_config(backup_dir="~/vault-backups")

        assert config.backup_path == Path("~/vault-backups").expanduser()


def _precedence_values(default):
    """Return (winning raw, winning coerced, losing raw) for a setting's type."""
    if isinstance(default, bool):
        return str(not default).lower(), not default, str(default).lower()
    if isinstance(default, int):
        return "41", 41, "42"
    return "winner-value", "winner-value", "loser-value"


def _resolver_for(tmp_path: Path, key: str, env=None, project=None, user=None) -> ConfigResolver:
    environ = {} if key == "API_KEY" else {"OBSIDIAN_API_KEY": "test-key"}
    if env is not None:
        environ[f"OBSIDIAN_{key}"] = env

    project_file = tmp_path / ".obsidian-vault.env"
    project_file.write_text(f"{key}={project}\n" if project is not None else "")
    user_file = tmp_path / "config.json"
    user_file.write_text(json.dumps({key: user} if user is not None else {}))

    return ConfigResolver(project_file=project_file, user_file=user_file, environ=environ)


@pytest.mark.parametrize("key", sorted(SETTINGS))
class TestPrecedencePerSetting:
    """Test every known setting follows the same source order."""

    def test_environment_beats_both_files(self, tmp_path, key):
        """Test the environment wins over conflicting project and user values."""
        field_name, default = SETTINGS[key]
        winner, expected, loser = _precedence_values(default)
        resolver = _resolver_for(tmp_path, key, env=winner, project=loser, user=loser)

        config = resolver.snapshot()

        assert getattr(config, field_name) == expected
        assert config.sources[key].source == ConfigSource.ENVIRONMENT

    def test_project_file_beats_user_file(self, tmp_path, key):
        """Test the project file wins over a conflicting user value."""
        field_name, default = SETTINGS[key]
        winner, expected, loser = _precedence_values(default)
        resolver = _resolver_for(tmp_path, key, project=winner, user=loser)

        config = resolver.snapshot()

        assert getattr(config, field_name) == expected
        assert config.sources[key].source == ConfigSource.PROJECT_FILE

    def test_user_file_beats_default(self, tmp_path, key):
        """Test the user file wins over the built-in default."""
        field_name, default = SETTINGS[key]
        winner, expected, _ = _precedence_values(default)
        resolver = _resolver_for(tmp_path, key, user=winner)

        config = resolver.snapshot()

        assert getattr(config, field_name) == expected
        assert config.sources[key].source == ConfigSource.USER_FILE
