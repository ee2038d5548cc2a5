"""Configuration loading and resolution for tempdb."""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Mapping

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

from tempdb.errors import ConfigurationError

DEFAULT_TEMPLATE = "tmp_%U_%X_%H%i"
DEFAULT_MAX_NUMBER_OF_TRIES = 20
DEFAULT_DOUBLE_FORK_INTERVAL = 2.0

_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class DropFromChild(str, Enum):
    """How (and whether) a child process removes the database on exit."""

    OFF = "off"
    PIPE = "pipe"
    DOUBLE_FORK = "double_fork"

    @classmethod
    def parse(cls, value: Any) -> DropFromChild:
        """Accept an enum member, a mode name, or a truthy flag.

        ``True`` and ``1`` select :attr:`PIPE`, ``2`` selects
        :attr:`DOUBLE_FORK`, and falsy values select :attr:`OFF`.
        """
        if isinstance(value, cls):
            return value
        if value is None or value is False:
            return cls.OFF
        if value is True:
            return cls.PIPE
        if isinstance(value, int):
            return {0: cls.OFF, 1: cls.PIPE, 2: cls.DOUBLE_FORK}.get(value, cls.PIPE)

        text = str(value).strip().lower().replace("-", "_")
        if text in ("", "0", "off", "no", "false"):
            return cls.OFF
        if text in ("1", "pipe", "yes", "true"):
            return cls.PIPE
        if text in ("2", "double_fork", "fork"):
            return cls.DOUBLE_FORK
        raise ConfigurationError(f"Unknown drop_from_child mode: {value!r}")


@dataclass
class TempDBConfig:
    """Options for a single temporary database handle."""

    auto_create: bool = True
    drop_from_child: DropFromChild = DropFromChild.OFF
    template: str = DEFAULT_TEMPLATE
    schema_database: str | None = None
    tmpdir: Path | None = None
    keep_too_long: bool = False

    def replace(self, **overrides: Any) -> TempDBConfig:
        """Return a copy with *overrides* applied (``None`` values are ignored)."""
        config = TempDBConfig(**self.__dict__)
        _merge_config_from_dict(config, {k: v for k, v in overrides.items() if v is not None})
        return config


@dataclass(frozen=True)
class EnvSettings:
    """Process-wide switches read from ``TEMPDB_*`` environment variables."""

    debug: bool = False
    keep_database: bool = False
    silent: bool = False
    max_number_of_tries: int = DEFAULT_MAX_NUMBER_OF_TRIES
    double_fork_interval: float = DEFAULT_DOUBLE_FORK_INTERVAL

    @classmethod
    def from_environ(cls, environ: Mapping[str, str] | None = None) -> EnvSettings:
        env = os.environ if environ is None else environ
        return cls(
            debug=_env_flag(env, "TEMPDB_DEBUG"),
            keep_database=_env_flag(env, "TEMPDB_KEEP_DATABASE"),
            silent=_env_flag(env, "TEMPDB_SILENT"),
            max_number_of_tries=int(
                env.get("TEMPDB_MAX_NUMBER_OF_TRIES") or DEFAULT_MAX_NUMBER_OF_TRIES
            ),
            double_fork_interval=float(
                env.get("TEMPDB_DOUBLE_FORK_INTERVAL") or DEFAULT_DOUBLE_FORK_INTERVAL
            ),
        )


def load_config(
    project_path: Path | None = None, overrides: dict[str, Any] | None = None
) -> TempDBConfig:
    """
    Load configuration with priority order (highest to lowest):
    1. Explicit overrides (constructor keywords, CLI args)
    2. .tempdb.toml in the project root
    3. ~/.config/tempdb/config.toml (user-global)
    4. Built-in defaults

    Args:
        project_path: Directory holding an optional .tempdb.toml
        overrides: Option values that win over every file

    Returns:
        Fully resolved TempDBConfig
    """
    config = TempDBConfig()

    user_config_path = Path.home() / ".config" / "tempdb" / "config.toml"
    if user_config_path.exists():
        _merge_config_from_file(config, user_config_path)

    if project_path:
        project_config_path = project_path / ".tempdb.toml"
        if project_config_path.exists():
            _merge_config_from_file(config, project_config_path)

    if overrides:
        _merge_config_from_dict(config, overrides)

    return config


def setup_debug_logging() -> None:
    """Send tempdb's DEBUG records to stderr (used when TEMPDB_DEBUG is set)."""
    package_logger = logging.getLogger("tempdb")
    if any(getattr(h, "_tempdb_debug", False) for h in package_logger.handlers):
        return

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    handler._tempdb_debug = True  # type: ignore[attr-defined]
    package_logger.addHandler(handler)
    package_logger.setLevel(logging.DEBUG)


def _merge_config_from_file(config: TempDBConfig, path: Path) -> None:
    """Load TOML file and merge into existing config."""
    with path.open("rb") as f:
        data = tomllib.load(f)
    _merge_config_from_dict(config, data.get("tempdb", data))


def _merge_config_from_dict(config: TempDBConfig, data: Mapping[str, Any]) -> None:
    """Merge dictionary data into config object."""
    unknown = set(data) - set(TempDBConfig.__dataclass_fields__)
    if unknown:
        raise ConfigurationError(f"Unknown tempdb option(s): {', '.join(sorted(unknown))}")

    if "auto_create" in data:
        config.auto_create = bool(data["auto_create"])
    if "drop_from_child" in data:
        config.drop_from_child = DropFromChild.parse(data["drop_from_child"])
    if "template" in data:
        config.template = data["template"]
    if "schema_database" in data:
        config.schema_database = data["schema_database"]
    if "tmpdir" in data:
        config.tmpdir = Path(data["tmpdir"]).expanduser()
    if "keep_too_long" in data:
        config.keep_too_long = bool(data["keep_too_long"])


def _env_flag(env: Mapping[str, str], key: str) -> bool:
    return env.get(key, "").strip().lower() not in ("", "0", "false", "no")
