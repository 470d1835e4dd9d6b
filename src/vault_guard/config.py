"""Configuration resolution for Vault Guard.

Settings are looked up in a fixed order and the first source that defines a
key wins outright:

1. environment variable ``OBSIDIAN_<KEY>``
2. ``KEY=value`` entry in the project file (``./.obsidian-vault.env``)
3. entry in the user JSON file (``~/.config/obsidian-vault/config.json``)
4. the caller-supplied default

Values are coerced the same way regardless of source: ``true``/``false``
become booleans, ASCII digit strings become integers, anything else stays a
string.
"""

import json
import os
import re
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

import structlog
from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field

from .safety.models import ConfigMissing

logger = structlog.get_logger(__name__)

ENV_PREFIX = "OBSIDIAN_"
PROJECT_CONFIG_FILE = Path(".obsidian-vault.env")
USER_CONFIG_FILE = Path("~/.config/obsidian-vault/config.json")

ConfigScalar = Union[bool, int, str]


class ConfigSource(str, Enum):
    """Where a resolved value came from, in priority order."""

    ENVIRONMENT = "environment"
    PROJECT_FILE = "project_file"
    USER_FILE = "user_file"
    DEFAULT = "default"


class ConfigValue(BaseModel):
    """A resolved setting tagged with its source."""

    model_config = ConfigDict(frozen=True)

    key: str
    value: Optional[ConfigScalar] = None
    source: ConfigSource

    @property
    def is_set(self) -> bool:
        return self.value is not None


def coerce_value(raw: Any) -> Optional[ConfigScalar]:
    """Coerce a raw setting into bool, int or str."""
    if raw is None:
        return None
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, int):
        return raw
    text = str(raw).strip()
    if text.lower() in ("true", "false"):
        return text.lower() == "true"
    if re.fullmatch(r"[0-9]+", text):
        return int(text)
    return text


class ResolvedConfig(BaseModel):
    """Immutable settings snapshot for one operation.

    Built once by ``ConfigResolver.snapshot()`` and passed by reference
    through the pipeline so no stage reads process-wide state on its own.
    """

    model_config = ConfigDict(frozen=True)

    api_key: str = Field(..., description="Bearer token for the vault REST API")
    host: str = Field("127.0.0.1", description="Vault service host")
    port: int = Field(27124, description="Vault service port")
    protocol: str = Field("https", description="http or https")
    verify_ssl: bool = Field(False, description="Verify the service certificate")
    timeout_seconds: int = Field(30, description="HTTP timeout")

    allow_delete: bool = Field(False, description="Permit DELETE operations")
    skip_confirmations: bool = Field(
        False,
        description="DANGEROUSLY_SKIP_CONFIRMATIONS: bypass bypassable prompts",
    )
    max_confirmation_attempts: int = Field(
        3, description="Prompts before a token mismatch is reported"
    )

    backup_enabled: bool = Field(True, description="Write safety copies")
    backup_dir: str = Field(
        "~/.obsidian-vault/backups", description="Flat backup directory"
    )
    backup_keep_last_n: int = Field(
        5, description="Backups kept per resource, 0 for unbounded"
    )

    sources: Dict[str, ConfigValue] = Field(
        default_factory=dict, description="Resolved value per key"
    )

    @property
    def base_url(self) -> str:
        return f"{self.protocol}://{self.host}:{self.port}"

    @property
    def backup_path(self) -> Path:
        return Path(self.backup_dir).expanduser()


# key -> (snapshot field, default); None marks a required key
SETTINGS: Dict[str, tuple] = {
    "API_KEY": ("api_key", None),
    "HOST": ("host", "127.0.0.1"),
    "PORT": ("port", 27124),
    "PROTOCOL": ("protocol", "https"),
    "VERIFY_SSL": ("verify_ssl", False),
    "TIMEOUT_SECONDS": ("timeout_seconds", 30),
    "ALLOW_DELETE": ("allow_delete", False),
    "DANGEROUSLY_SKIP_CONFIRMATIONS": ("skip_confirmations", False),
    "MAX_CONFIRMATION_ATTEMPTS": ("max_confirmation_attempts", 3),
    "BACKUP_ENABLED": ("backup_enabled", True),
    "BACKUP_DIR": ("backup_dir", "~/.obsidian-vault/backups"),
    "BACKUP_KEEP_LAST_N": ("backup_keep_last_n", 5),
}

REQUIRED_KEYS = frozenset(key for key, (_, default) in SETTINGS.items() if default is None)


class ConfigResolver:
    """Resolves settings from environment, project file, user file and defaults."""

    def __init__(
        self,
        project_file: Optional[Union[str, Path]] = None,
        user_file: Optional[Union[str, Path]] = None,
        environ: Optional[Mapping[str, str]] = None,
        env_prefix: str = ENV_PREFIX,
    ):
        """Initialize the resolver.

        Args:
            project_file: Project-local ``KEY=value`` file
            user_file: User-level JSON settings file
            environ: Environment mapping, defaults to ``os.environ``
            env_prefix: Namespace prefix for environment variables
        """
        self.project_file = Path(project_file) if project_file else PROJECT_CONFIG_FILE
        self.user_file = Path(user_file) if user_file else USER_CONFIG_FILE
        self.environ = environ if environ is not None else os.environ
        self.env_prefix = env_prefix
        self.logger = structlog.get_logger(self.__class__.__name__)

    def resolve(self, key: str, default: Any = None) -> ConfigValue:
        """Resolve a setting, falling back to ``default``.

        Args:
            key: Setting name without prefix (case-insensitive)
            default: Value used when no source defines the key

        Returns:
            ConfigValue tagged with the winning source
        """
        key = key.upper()

        env_value = self.environ.get(f"{self.env_prefix}{key}")
        if env_value not in (None, ""):
            return ConfigValue(
                key=key, value=coerce_value(env_value), source=ConfigSource.ENVIRONMENT
            )

        project_value = self._read_project_file().get(key)
        if project_value not in (None, ""):
            return ConfigValue(
                key=key,
                value=coerce_value(project_value),
                source=ConfigSource.PROJECT_FILE,
            )

        user_value = self._read_user_file().get(key)
        if user_value not in (None, ""):
            return ConfigValue(
                key=key, value=coerce_value(user_value), source=ConfigSource.USER_FILE
            )

        return ConfigValue(key=key, value=coerce_value(default), source=ConfigSource.DEFAULT)

    def require(self, key: str) -> ConfigValue:
        """Resolve a setting that has no default.

        Raises:
            ConfigMissing: If no source defines the key
        """
        resolved = self.resolve(key)
        if not resolved.is_set:
            self.logger.error("Required setting missing", key=key.upper())
            raise ConfigMissing(
                key.upper(),
                sources=[
                    f"{self.env_prefix}{key.upper()}",
                    str(self.project_file),
                    str(self.user_file),
                ],
            )
        return resolved

    def snapshot(self) -> ResolvedConfig:
        """Resolve every known setting into an immutable snapshot.

        Raises:
            ConfigMissing: If a required setting is absent
        """
        values: Dict[str, Any] = {}
        sources: Dict[str, ConfigValue] = {}

        for key, (field_name, default) in SETTINGS.items():
            resolved = self.require(key) if key in REQUIRED_KEYS else self.resolve(key, default)
            sources[key] = resolved
            value = resolved.value
            if default is None or isinstance(default, str):
                # "12345" is coerced to int; string settings keep their text
                value = str(value)
            values[field_name] = value

        if values["skip_confirmations"] is True:
            self.logger.warning(
                "DANGEROUSLY_SKIP_CONFIRMATIONS is enabled",
                source=sources["DANGEROUSLY_SKIP_CONFIRMATIONS"].source.value,
            )

        return ResolvedConfig(**values, sources=sources)

    def _read_project_file(self) -> Dict[str, Optional[str]]:
        """Read the flat ``KEY=value`` project file."""
        path = self.project_file.expanduser()
        if not path.is_file():
            return {}
        return {key.upper(): value for key, value in dotenv_values(path).items()}

    def _read_user_file(self) -> Dict[str, Any]:
        """Read the flat JSON user settings file."""
        path = self.user_file.expanduser()
        if not path.is_file():
            return {}

        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            self.logger.warning(
                "Ignoring unreadable user config file", path=str(path), error=str(e)
            )
            return {}

        if not isinstance(data, dict):
            self.logger.warning("Ignoring non-object user config file", path=str(path))
            return {}

        return {str(key).upper(): value for key, value in data.items()}
