"""Backend dispatch: DSN building plus CREATE/DROP per database engine.

Every supported engine is a :class:`Backend` registered in :data:`BACKENDS`
under its :class:`BackendKind`.  A backend knows how to

* build the DSN tuple for a database on the server (:meth:`Backend.build_dsn`)
* create a database under a candidate name (:meth:`Backend.create`)
* drop a database (:meth:`Backend.drop`)

PostgreSQL and MySQL issue ``CREATE DATABASE`` / ``DROP DATABASE`` through a
fresh connection to the administrative ("schema") database.  SQLite databases
are plain files, created exclusively and removed with ``unlink``.
"""

from __future__ import annotations

import logging
import os
from enum import Enum
from pathlib import Path
from typing import Any, NamedTuple

from sqlalchemy.engine import URL, make_url

from tempdb import driver
from tempdb.errors import UnsupportedBackendError
from tempdb.naming import resolve_sqlite_path

logger = logging.getLogger(__name__)

_DEFAULT_OPTIONS: dict[str, Any] = {
    "AutoCommit": 1,
    "AutoInactiveDestroy": 1,
    "PrintError": 0,
    "RaiseError": 1,
}


class BackendKind(str, Enum):
    """Database engines tempdb can provision."""

    POSTGRES = "postgres"
    MYSQL = "mysql"
    SQLITE = "sqlite"


_SCHEME_ALIASES = {
    "postgres": BackendKind.POSTGRES,
    "postgresql": BackendKind.POSTGRES,
    "pg": BackendKind.POSTGRES,
    "mysql": BackendKind.MYSQL,
    "mariadb": BackendKind.MYSQL,
    "sqlite": BackendKind.SQLITE,
    "sqlite3": BackendKind.SQLITE,
}


class Dsn(NamedTuple):
    """Arguments needed to open a connection with :func:`tempdb.driver.connect`."""

    connection_string: str
    user: str | None
    password: str | None
    options: dict[str, Any]


def parse_url(url: str | URL) -> URL:
    """Return *url* as a SQLAlchemy :class:`URL`."""
    if isinstance(url, URL):
        return url
    return make_url(url)


def resolve_backend_kind(name: BackendKind | str) -> BackendKind:
    """Map an engine name or alias such as ``pg`` or ``mariadb`` to its kind.

    Raises:
        UnsupportedBackendError: If the name is not a known engine.
    """
    if isinstance(name, BackendKind):
        return name
    try:
        return _SCHEME_ALIASES[name.lower()]
    except KeyError:
        raise UnsupportedBackendError(
            f"Cannot generate temp database for '{name}'. No backend is available."
        ) from None


def backend_kind_for(url: str | URL) -> BackendKind:
    """Resolve the backend from a URL scheme such as ``postgresql+psycopg``.

    Raises:
        UnsupportedBackendError: If the scheme names no known engine.
    """
    return resolve_backend_kind(parse_url(url).get_backend_name())


def get_backend(kind: BackendKind) -> Backend:
    """Return the backend registered for *kind*."""
    return BACKENDS[kind]


def build_dsn(
    url: str | URL,
    database_name: str | None = None,
    backend: BackendKind | None = None,
) -> Dsn:
    """Build the DSN tuple for *database_name* on the server in *url*.

    Args:
        url: Server URL; the query string becomes driver options.
        database_name: Database to connect to. Defaults to the URL's database.
        backend: Engine; resolved from the URL scheme when omitted.

    Returns:
        ``(connection_string, user, password, options)``

    Raises:
        UnsupportedBackendError: If no backend exists for the URL scheme.
    """
    url = parse_url(url)
    kind = backend or backend_kind_for(url)
    if database_name is None:
        database_name = url.database or ""
    return BACKENDS[kind].build_dsn(url, database_name)


def admin_dsn(url: str | URL, backend: BackendKind, schema_database: str | None) -> Dsn:
    """Build the DSN of the administrative database used for CREATE/DROP."""
    return build_dsn(url, schema_database or "", backend)


def _query_options(url: URL) -> dict[str, Any]:
    options: dict[str, Any] = {}
    for key, value in url.query.items():
        # Repeated keys arrive as tuples; the last one wins
        options[key] = value[-1] if isinstance(value, tuple) else value
    return options


def _apply_defaults(options: dict[str, Any], defaults: dict[str, Any]) -> dict[str, Any]:
    for key, value in defaults.items():
        options.setdefault(key, value)
    return options


class Backend:
    """Capabilities shared by every engine."""

    kind: BackendKind
    schema_database: str | None = None

    def build_dsn(self, url: URL, database_name: str) -> Dsn:
        raise NotImplementedError

    def resolve_name(self, name: str, tmpdir: Path | None = None) -> str:
        """Map a generated name to the identifier used by this engine."""
        return name

    def create(self, url: URL, schema_database: str | None, name: str) -> None:
        raise NotImplementedError

    def drop(
        self, url: URL, schema_database: str | None, name: str, if_exists: bool = False
    ) -> None:
        raise NotImplementedError


class ServerBackend(Backend):
    """Engine running as a server that accepts CREATE/DROP DATABASE."""

    def quote_identifier(self, name: str) -> str:
        raise NotImplementedError

    def create(self, url: URL, schema_database: str | None, name: str) -> None:
        self._run(url, schema_database, f"CREATE DATABASE {self.quote_identifier(name)}")

    def drop(
        self, url: URL, schema_database: str | None, name: str, if_exists: bool = False
    ) -> None:
        guard = "IF EXISTS " if if_exists else ""
        self._run(url, schema_database, f"DROP DATABASE {guard}{self.quote_identifier(name)}")

    def _run(self, url: URL, schema_database: str | None, statement: str) -> None:
        dsn = admin_dsn(url, self.kind, schema_database or self.schema_database)
        conn = driver.connect(self.kind, dsn)
        try:
            cursor = conn.cursor()
            try:
                logger.debug("%s", statement)
                cursor.execute(statement)
            finally:
                cursor.close()
        finally:
            conn.close()

    @staticmethod
    def _userinfo(url: URL) -> tuple[str | None, str | None]:
        user = url.username or None
        password = url.password
        if password is not None:
            password = str(password)
        return user, password


def _conninfo_value(value: object) -> str:
    """Render a libpq ``key=value`` value, quoting it when libpq requires."""
    text = str(value)
    if text and not any(c.isspace() or c in "'\\" for c in text):
        return text
    return "'" + text.replace("\\", "\\\\").replace("'", "\\'") + "'"


class PostgresBackend(ServerBackend):
    kind = BackendKind.POSTGRES
    schema_database = "postgres"

    def quote_identifier(self, name: str) -> str:
        return '"' + name.replace('"', '""') + '"'

    def build_dsn(self, url: URL, database_name: str) -> Dsn:
        options = _query_options(url)
        parts = [f"dbname={_conninfo_value(database_name)}"]
        if url.host:
            parts.append(f"host={_conninfo_value(url.host)}")
        if url.port:
            parts.append(f"port={url.port}")
        service = options.pop("service", None)
        if service:
            parts.append(f"service={_conninfo_value(service)}")

        user, password = self._userinfo(url)
        return Dsn(" ".join(parts), user, password, _apply_defaults(options, _DEFAULT_OPTIONS))


class MySQLBackend(ServerBackend):
    kind = BackendKind.MYSQL
    schema_database = "mysql"

    def quote_identifier(self, name: str) -> str:
        return "`" + name.replace("`", "``") + "`"

    def build_dsn(self, url: URL, database_name: str) -> Dsn:
        options = _query_options(url)
        connection_string = f"mysql:dbname={database_name}"
        if url.host:
            connection_string += f";host={url.host}"
        if url.port:
            connection_string += f";port={url.port}"

        user, password = self._userinfo(url)
        defaults = {**_DEFAULT_OPTIONS, "mysql_enable_utf8": 1}
        return Dsn(connection_string, user, password, _apply_defaults(options, defaults))


class SQLiteBackend(Backend):
    """File-backed engine: the "database name" is an absolute file path."""

    kind = BackendKind.SQLITE

    def build_dsn(self, url: URL, database_name: str) -> Dsn:
        defaults = {**_DEFAULT_OPTIONS, "sqlite_unicode": 1}
        return Dsn(database_name, None, None, _apply_defaults(_query_options(url), defaults))

    def resolve_name(self, name: str, tmpdir: Path | None = None) -> str:
        if Path(name).is_absolute():
            return name
        return str(resolve_sqlite_path(name, tmpdir))

    def create(self, url: URL, schema_database: str | None, name: str) -> None:
        path = Path(name)
        path.parent.mkdir(parents=True, exist_ok=True)
        # O_EXCL makes creation atomic: a second process gets FileExistsError
        fd = os.open(str(path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
        os.close(fd)

    def drop(
        self, url: URL, schema_database: str | None, name: str, if_exists: bool = False
    ) -> None:
        path = Path(name)
        logger.debug("unlink %s", path)
        path.unlink(missing_ok=if_exists)
        for suffix in ("-journal", "-wal", "-shm"):
            Path(f"{path}{suffix}").unlink(missing_ok=True)


BACKENDS: dict[BackendKind, Backend] = {
    BackendKind.POSTGRES: PostgresBackend(),
    BackendKind.MYSQL: MySQLBackend(),
    BackendKind.SQLITE: SQLiteBackend(),
}
