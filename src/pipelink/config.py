"""Configuration settings for the pipeline link.

Settings live in a YAML file (config.yml next to the executable by default,
PIPELINK_CONFIG env override). Keys mirror the webservice client settings:

    host: http://localhost
    port: 8181
    ws_path: ws
    app_path: DAISY Pipeline
    client_key: ""
    client_secret: ""
    debug: false
    starting: false

Values are type-checked when the file is loaded, so the rest of the code
never has to guess at types.
"""

from __future__ import annotations

import dataclasses
import logging
import os
import shutil
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Any

import yaml

from pipelink.errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_FILE = "config.yml"
CONFIG_ENV_VAR = "PIPELINK_CONFIG"

# Name of the desktop app, used when app_path is empty
DEFAULT_APP_NAME = "DAISY Pipeline"

# On Windows these extensions mark app_path as already runnable
WINDOWS_EXTENSIONS = (".exe", ".bat", ".cmd", ".ps1")

DESCRIPTIONS = {
    "host": "Pipeline's webservice host",
    "port": "Pipeline's webservice port",
    "ws_path": "Pipeline's webservice path, as in http://daisy.org:8181/path",
    "app_path": "DAISY Pipeline app executable path",
    "client_key": "Client key for authenticated requests",
    "client_secret": "Client secret for authenticated requests",
    "debug": "Print debug messages. true or false.",
    "starting": "Start the webservice in the local computer if it is not running. true or false",
    "launch_attempts": "Liveness checks made after launching the webservice",
    "launch_interval": "Seconds between liveness checks while launching",
    "message_interval": "Seconds between job message polls",
}


@dataclass(frozen=True)
class Settings:
    """Link settings."""

    # Webservice location
    host: str = "http://localhost"
    port: int = 8181
    ws_path: str = "ws"

    # Local launch
    app_path: str = DEFAULT_APP_NAME
    starting: bool = False
    launch_attempts: int = 10
    launch_interval: float = 1.0

    # Authentication
    client_key: str = ""
    client_secret: str = field(default="", repr=False)

    # Streaming
    message_interval: float = 1.0

    debug: bool = False

    def __post_init__(self) -> None:
        for f in dataclasses.fields(self):
            _check_type(f.name, getattr(self, f.name), f.type)
        if self.launch_attempts < 1:
            raise ConfigError("must be at least 1", key="launch_attempts")

    @property
    def url(self) -> str:
        """Webservice URL composed as HOST:PORT/PATH/."""
        return f"{self.host}:{self.port}/{self.ws_path}/"

    @property
    def has_credentials(self) -> bool:
        return bool(self.client_key) and bool(self.client_secret)

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> "Settings":
        """Build settings from a plain mapping, rejecting unknown keys."""
        known = {f.name for f in dataclasses.fields(cls)}
        for key in data:
            if key not in known:
                raise ConfigError("unknown setting", key=str(key))
        return cls(**data)

    @classmethod
    def from_yaml(cls, source: IO[str] | str | Path) -> "Settings":
        """Load settings from a YAML stream or file path."""
        try:
            if isinstance(source, (str, Path)):
                with open(source, encoding="utf-8") as f:
                    raw = yaml.safe_load(f)
            else:
                raw = yaml.safe_load(source)
        except OSError as e:
            raise ConfigError(f"cannot read {source}: {e}") from e
        except yaml.YAMLError as e:
            raise ConfigError(str(e)) from e

        if raw is None:
            raw = {}
        if not isinstance(raw, dict):
            raise ConfigError("top level must be a mapping")
        return cls.from_mapping(raw)

    def with_overrides(self, **overrides: Any) -> "Settings":
        """Return a validated copy with the given (non-None) values replaced."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        return self.from_mapping({**dataclasses.asdict(self), **changes})

    def describe(self) -> dict[str, tuple[Any, str]]:
        """Map each key to (current value, description). Secrets are masked."""
        result = {}
        for f in dataclasses.fields(self):
            value = getattr(self, f.name)
            if f.name == "client_secret" and value:
                value = "****"
            result[f.name] = (value, DESCRIPTIONS.get(f.name, ""))
        return result

    def exec_path(self, base: Path | None = None) -> Path:
        """Resolve app_path to the executable that should be launched.

        Lookup order: PATH, then absolute path as given, then relative to
        base (the folder holding the running executable by default).
        """
        if base is None:
            base = executable_folder()
        return resolve_executable_path(self.app_path, base, platform=sys.platform)


def _check_type(key: str, value: Any, annotation: str) -> None:
    # Annotations are strings under `from __future__ import annotations`
    if annotation == "bool":
        ok = isinstance(value, bool)
    elif annotation == "int":
        ok = isinstance(value, int) and not isinstance(value, bool)
    elif annotation == "float":
        ok = isinstance(value, (int, float)) and not isinstance(value, bool)
    else:
        ok = isinstance(value, str)
    if not ok:
        raise ConfigError(
            f"expected {annotation}, got {type(value).__name__} ({value!r})",
            key=key,
        )


def executable_folder() -> Path:
    """Folder holding the running program."""
    return Path(sys.argv[0]).resolve().parent


def resolve_executable_path(app_path: str, base: Path, platform: str) -> Path:
    """Resolve a configured app path into an executable location.

    Args:
        app_path: Configured path; empty means the desktop app on PATH
        base: Folder used to anchor relative paths
        platform: sys.platform value ("win32" enables the extension rule)

    Returns:
        Absolute path when found on PATH or anchored, the path as given
        when already absolute
    """
    execpath = app_path or DEFAULT_APP_NAME

    if platform.startswith("win"):
        # Add .exe unless the configured runner already is a script or binary
        if not execpath.lower().endswith(WINDOWS_EXTENSIONS):
            execpath += ".exe"

    found = shutil.which(execpath)
    if found:
        return Path(found)

    path = Path(execpath)
    if path.is_absolute():
        return path
    return base / path


def default_config_path() -> Path:
    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        return Path(env_path).expanduser()
    return executable_folder() / DEFAULT_FILE


def load_settings(path: str | Path | None = None) -> Settings:
    """Load settings.

    An explicit path must exist. Without one, the default location is tried
    and a missing file falls back to the built-in defaults.
    """
    if path is not None:
        return Settings.from_yaml(Path(path).expanduser())

    default = default_config_path()
    if not default.exists():
        logger.warning(f"No default configuration file found at {default}")
        return Settings()
    return Settings.from_yaml(default)
