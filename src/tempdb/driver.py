"""Open DB-API connections from the DSN tuples built by :mod:`tempdb.backends`.

The options map uses the DBI-style attribute names found in the DSN
(``AutoCommit``, ``mysql_enable_utf8``, ``sqlite_unicode``, ...).  They are
translated to the keyword arguments of the matching Python driver here:

* PostgreSQL: ``psycopg``
* MySQL: ``mysql.connector`` (mysql-connector-python)
* SQLite: ``sqlite3``

``RaiseError`` and ``PrintError`` have no effect since every driver raises on
error.  ``AutoInactiveDestroy`` is accepted for the same reason: a forked
child of tempdb never touches connections opened by its parent.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import TYPE_CHECKING, Any, Mapping

import psycopg
import mysql.connector

if TYPE_CHECKING:
    from tempdb.backends import BackendKind, Dsn

logger = logging.getLogger(__name__)

# Errors a driver raises for a refused or failed statement/connection
DRIVER_ERRORS: tuple[type[BaseException], ...] = (
    psycopg.Error,
    mysql.connector.Error,
    sqlite3.Error,
)

# DSN attributes that only make sense for Perl DBI-like drivers
_IGNORED_OPTIONS = frozenset({"AutoInactiveDestroy", "PrintError", "RaiseError"})


def connect(backend: BackendKind, dsn: Dsn) -> Any:
    """Open a connection to the database described by *dsn*.

    Args:
        backend: Which driver to use.
        dsn: Connection string, user, password and options.

    Returns:
        A DB-API 2.0 connection.  The caller is responsible for closing it.
    """
    from tempdb.backends import BackendKind

    logger.debug("Connecting to %s (%s)", dsn.connection_string, backend.value)
    if backend is BackendKind.POSTGRES:
        return _connect_postgres(dsn)
    if backend is BackendKind.MYSQL:
        return _connect_mysql(dsn)
    return _connect_sqlite(dsn)


def _connect_postgres(dsn: Dsn) -> Any:
    options = dict(dsn.options)
    autocommit = _as_bool(options.pop("AutoCommit", 1))
    kwargs = _driver_kwargs(options)
    if dsn.user is not None:
        kwargs["user"] = dsn.user
    if dsn.password is not None:
        kwargs["password"] = dsn.password
    return psycopg.connect(dsn.connection_string, autocommit=autocommit, **kwargs)


def _connect_mysql(dsn: Dsn) -> Any:
    options = dict(dsn.options)
    kwargs: dict[str, Any] = {
        "autocommit": _as_bool(options.pop("AutoCommit", 1)),
        # Row-returning statements must not block the next execute
        "consume_results": True,
    }
    if _as_bool(options.pop("mysql_enable_utf8", 0)):
        kwargs["charset"] = "utf8mb4"
    kwargs.update(_driver_kwargs(options))
    kwargs.update(parse_mysql_connection_string(dsn.connection_string))
    if dsn.user is not None:
        kwargs["user"] = dsn.user
    if dsn.password is not None:
        kwargs["password"] = dsn.password
    return mysql.connector.connect(**kwargs)


def _connect_sqlite(dsn: Dsn) -> Any:
    options = dict(dsn.options)
    autocommit = _as_bool(options.pop("AutoCommit", 1))
    unicode = _as_bool(options.pop("sqlite_unicode", 1))
    conn = sqlite3.connect(
        dsn.connection_string,
        isolation_level=None if autocommit else "DEFERRED",
        **_driver_kwargs(options),
    )
    if not unicode:
        conn.text_factory = bytes
    return conn


def parse_mysql_connection_string(connection_string: str) -> dict[str, Any]:
    """Turn ``mysql:dbname=x;host=y;port=z`` into mysql.connector keyword arguments."""
    _, _, body = connection_string.partition(":")
    kwargs: dict[str, Any] = {}
    for pair in filter(None, body.split(";")):
        key, _, value = pair.partition("=")
        if key == "dbname":
            kwargs["database"] = value
        elif key == "port":
            kwargs["port"] = int(value)
        else:
            kwargs[key] = value
    return kwargs


def _driver_kwargs(options: Mapping[str, Any]) -> dict[str, Any]:
    """Pass remaining options through, converting numeric strings to ints."""
    kwargs: dict[str, Any] = {}
    for key, value in options.items():
        if key in _IGNORED_OPTIONS or key.startswith(("mysql_", "sqlite_", "pg_")):
            continue
        if isinstance(value, str) and value.isdigit():
            value = int(value)
        kwargs[key] = value
    return kwargs


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() not in ("", "0", "false", "no", "off")
    return bool(value)
