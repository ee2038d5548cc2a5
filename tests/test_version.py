"""Smoke tests for the package version."""

from tempdb import __version__


def test_version_string() -> None:
    assert isinstance(__version__, str)
    assert __version__.count(".") >= 1
