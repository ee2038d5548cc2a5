"""Tests for config loading and resolution."""

from __future__ import annotations

import logging
import tempfile
from pathlib import Path

import pytest

from tempdb.config import (
    DEFAULT_TEMPLATE,
    DropFromChild,
    EnvSettings,
    TempDBConfig,
    load_config,
    setup_debug_logging,
)
from tempdb.errors import ConfigurationError


@pytest.fixture(autouse=True)
def isolated_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point HOME at an empty directory so user config never leaks in."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    return home


def test_default_config():
    """Test that default config loads correctly."""
    config = load_config()

    assert config.auto_create is True
    assert config.drop_from_child is DropFromChild.OFF
    assert config.template == DEFAULT_TEMPLATE == "tmp_%U_%X_%H%i"
    assert config.schema_database is None
    assert config.tmpdir is None
    assert config.keep_too_long is False


def test_project_config_override():
    """Test that project-level .tempdb.toml overrides defaults."""
    with tempfile.TemporaryDirectory() as tmpdir:
        project_path = Path(tmpdir)
        (project_path / ".tempdb.toml").write_text("""
[tempdb]
template = "ci_%P%i"
drop_from_child = "double_fork"
schema_database = "template1"
tmpdir = "~/dbs"
""")

        config = load_config(project_path=project_path)

        assert config.template == "ci_%P%i"
        assert config.drop_from_child is DropFromChild.DOUBLE_FORK
        assert config.schema_database == "template1"
        assert config.tmpdir == Path("~/dbs").expanduser()
        assert config.auto_create is True


def test_top_level_keys_without_table():
    """Test that a project file may omit the [tempdb] table."""
    with tempfile.TemporaryDirectory() as tmpdir:
        project_path = Path(tmpdir)
        (project_path / ".tempdb.toml").write_text('keep_too_long = true\ndrop_from_child = 1\n')

        config = load_config(project_path=project_path)

        assert config.keep_too_long is True
        assert config.drop_from_child is DropFromChild.PIPE


def test_user_config_then_project_then_overrides(isolated_home: Path):
    """Test the layering order of the config sources."""
    user_dir = isolated_home / ".config" / "tempdb"
    user_dir.mkdir(parents=True)
    (user_dir / "config.toml").write_text(
        '[tempdb]\ntemplate = "user_%i"\nschema_database = "userdb"\n'
    )

    with tempfile.TemporaryDirectory() as tmpdir:
        project_path = Path(tmpdir)
        (project_path / ".tempdb.toml").write_text('[tempdb]\ntemplate = "project_%i"\n')

        config = load_config(project_path=project_path, overrides={"auto_create": False})

        assert config.template == "project_%i"
        assert config.schema_database == "userdb"
        assert config.auto_create is False


def test_unknown_option_rejected():
    """Test that typos in config files are reported."""
    with tempfile.TemporaryDirectory() as tmpdir:
        project_path = Path(tmpdir)
        (project_path / ".tempdb.toml").write_text('[tempdb]\ntemplte = "x"\n')

        with pytest.raises(ConfigurationError, match="templte"):
            load_config(project_path=project_path)


def test_replace_ignores_none():
    """Test that replace() only applies explicit values and copies."""
    base = TempDBConfig(template="base_%i")

    config = base.replace(template=None, tmpdir="/tmp/x", drop_from_child="pipe")

    assert config.template == "base_%i"
    assert config.tmpdir == Path("/tmp/x")
    assert config.drop_from_child is DropFromChild.PIPE
    assert base.tmpdir is None
    assert base.drop_from_child is DropFromChild.OFF


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        (None, DropFromChild.OFF),
        (False, DropFromChild.OFF),
        (0, DropFromChild.OFF),
        ("off", DropFromChild.OFF),
        ("", DropFromChild.OFF),
        (True, DropFromChild.PIPE),
        (1, DropFromChild.PIPE),
        ("pipe", DropFromChild.PIPE),
        (2, DropFromChild.DOUBLE_FORK),
        ("double-fork", DropFromChild.DOUBLE_FORK),
        ("DOUBLE_FORK", DropFromChild.DOUBLE_FORK),
        (DropFromChild.PIPE, DropFromChild.PIPE),
    ],
)
def test_drop_from_child_parse(value, expected):
    assert DropFromChild.parse(value) is expected


def test_drop_from_child_parse_unknown():
    with pytest.raises(ConfigurationError, match="sometimes"):
        DropFromChild.parse("sometimes")


def test_env_settings_defaults():
    settings = EnvSettings.from_environ({})

    assert settings == EnvSettings()
    assert settings.max_number_of_tries == 20
    assert settings.double_fork_interval == 2.0


def test_env_settings_from_environ():
    settings = EnvSettings.from_environ(
        {
            "TEMPDB_DEBUG": "1",
            "TEMPDB_KEEP_DATABASE": "yes",
            "TEMPDB_SILENT": "0",
            "TEMPDB_MAX_NUMBER_OF_TRIES": "3",
            "TEMPDB_DOUBLE_FORK_INTERVAL": "0.1",
        }
    )

    assert settings.debug is True
    assert settings.keep_database is True
    assert settings.silent is False
    assert settings.max_number_of_tries == 3
    assert settings.double_fork_interval == 0.1


def test_env_settings_reads_process_environment(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("TEMPDB_SILENT", "true")
    monkeypatch.delenv("TEMPDB_KEEP_DATABASE", raising=False)

    settings = EnvSettings.from_environ()

    assert settings.silent is True
    assert settings.keep_database is False


def test_setup_debug_logging_is_idempotent():
    package_logger = logging.getLogger("tempdb")
    before = list(package_logger.handlers)
    level = package_logger.level
    try:
        setup_debug_logging()
        setup_debug_logging()
        added = [h for h in package_logger.handlers if h not in before]
        assert len(added) <= 1
        assert package_logger.level == logging.DEBUG
    finally:
        for handler in package_logger.handlers[:]:
            if handler not in before:
                package_logger.removeHandler(handler)
        package_logger.setLevel(level)
