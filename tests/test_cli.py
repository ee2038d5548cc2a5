"""Tests for the tempdb command-line interface."""

from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

from tempdb import __version__
from tempdb.cli import main


@pytest.fixture(autouse=True)
def clean_environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Drop TEMPDB_* variables and point HOME at an empty directory."""
    for key in list(os.environ):
        if key.startswith("TEMPDB_"):
            monkeypatch.delenv(key)
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))


@pytest.fixture
def dbdir(tmp_path: Path) -> Path:
    path = tmp_path / "dbs"
    path.mkdir()
    return path


def test_no_command_prints_help(capsys: pytest.CaptureFixture[str]) -> None:
    with pytest.raises(SystemExit) as exc_info:
        main([])

    assert exc_info.value.code == 0
    assert "usage: tempdb" in capsys.readouterr().out


def test_version(capsys: pytest.CaptureFixture[str]) -> None:
    with pytest.raises(SystemExit) as exc_info:
        main(["--version"])

    assert exc_info.value.code == 0
    assert __version__ in capsys.readouterr().out


class TestDsnCommand:
    def test_mysql(self, capsys: pytest.CaptureFixture[str]) -> None:
        main(["dsn", "mysql://u:p@127.0.0.1:1234/yikes?AutoCommit=0"])

        out = capsys.readouterr().out.splitlines()
        assert out[:4] == [
            "connection_string: mysql:dbname=yikes;host=127.0.0.1;port=1234",
            "user: u",
            "password: ***",
            "options:",
        ]
        assert "  AutoCommit=0" in out
        assert "  mysql_enable_utf8=1" in out

    def test_without_credentials(self, capsys: pytest.CaptureFixture[str]) -> None:
        main(["dsn", "postgresql://localhost/app"])

        out = capsys.readouterr().out
        assert "connection_string: dbname=app host=localhost" in out
        assert "user: (none)" in out
        assert "password: (none)" in out

    def test_unsupported_url_exits_1(self) -> None:
        with pytest.raises(SystemExit) as exc_info:
            main(["dsn", "oracle://scott@localhost"])

        assert exc_info.value.code == 1


class TestRunCommand:
    def test_without_command_prints_url_and_keeps_database(
        self, dbdir: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        main(["run", "--tmpdir", str(dbdir), "--template", "cli%i", "sqlite://"])

        url = capsys.readouterr().out.strip()
        assert url.startswith("sqlite:///")
        path = Path(url[len("sqlite:///") :])
        assert path.parent == dbdir.resolve()
        assert path.exists()
        path.unlink()

    def test_runs_command_and_drops_database(self, dbdir: Path) -> None:
        script = (
            "import os, sys; "
            "url = os.environ['TEMPDB_URL']; "
            "sys.exit(0 if url.endswith('.sqlite') and os.path.exists(url[len('sqlite:///'):]) else 3)"
        )
        with pytest.raises(SystemExit) as exc_info:
            main(
                [
                    "run",
                    "--tmpdir",
                    str(dbdir),
                    "--template",
                    "cli%i",
                    "sqlite://",
                    "--",
                    sys.executable,
                    "-c",
                    script,
                ]
            )

        assert exc_info.value.code == 0
        assert list(dbdir.iterdir()) == []

    def test_exit_status_is_passed_through(self, dbdir: Path) -> None:
        with pytest.raises(SystemExit) as exc_info:
            main(
                [
                    "run",
                    "--tmpdir",
                    str(dbdir),
                    "sqlite://",
                    "--",
                    sys.executable,
                    "-c",
                    "raise SystemExit(7)",
                ]
            )

        assert exc_info.value.code == 7
        assert list(dbdir.iterdir()) == []


class TestDropCommand:
    def test_drop_by_name(self, dbdir: Path, capsys: pytest.CaptureFixture[str]) -> None:
        leftover = dbdir / "leftover.sqlite"
        leftover.touch()

        main(["drop", "--tmpdir", str(dbdir), "--name", "leftover", "sqlite://"])

        assert not leftover.exists()
        assert "Dropped leftover" in capsys.readouterr().out

    def test_drop_missing_name_exits_1(self, dbdir: Path) -> None:
        with pytest.raises(SystemExit) as exc_info:
            main(["drop", "--tmpdir", str(dbdir), "--name", "missing", "sqlite://"])

        assert exc_info.value.code == 1

    def test_sweep(self, dbdir: Path, capsys: pytest.CaptureFixture[str]) -> None:
        leftovers = [dbdir / "sweep.sqlite", dbdir / "sweep_2.sqlite"]
        beyond = dbdir / "sweep_3.sqlite"
        for path in [*leftovers, beyond]:
            path.touch()

        main(["drop", "--tmpdir", str(dbdir), "--template", "sweep%i", "--tries", "3", "sqlite://"])

        assert not any(path.exists() for path in leftovers)
        assert beyond.exists()
        assert "Swept 3 database name(s) for template sweep%i" in capsys.readouterr().out
