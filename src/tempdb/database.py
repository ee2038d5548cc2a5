"""Temporary database handles.

A :class:`TempDatabase` creates a uniquely named database on the server
given by a URL and removes it again when the handle is closed or the
process exits::

    with TempDatabase("postgresql://postgres@localhost") as tmpdb:
        tmpdb.execute("create table users (name text)")
        tmpdb.execute_file("fixtures/users.sql")
        conn = psycopg.connect(tmpdb.dsn().connection_string)

The full URL of the newest database is exported as ``TEMPDB_URL`` so tools
started from the test process can find it.
"""

from __future__ import annotations

import atexit
import logging
import os
import sys
import threading
from enum import Enum
from pathlib import Path
from typing import Any

from sqlalchemy.engine import URL

from tempdb import driver
from tempdb.backends import BackendKind, Dsn, backend_kind_for, build_dsn, get_backend, parse_url
from tempdb.config import DropFromChild, EnvSettings, TempDBConfig, load_config, setup_debug_logging
from tempdb.errors import (
    ConfigurationError,
    CreateDatabaseError,
    DropError,
    NotCreatedError,
    SqlFileError,
)
from tempdb.naming import generate_name
from tempdb.sqlsplit import split_sql
from tempdb.supervisor import CleanupSupervisor, ProcessControl

logger = logging.getLogger(__name__)

URL_ENV = "TEMPDB_URL"

_BACKEND_ERRORS = (OSError, *driver.DRIVER_ERRORS)


class DropMode(str, Enum):
    """Which databases :meth:`TempDatabase.drop_databases` removes."""

    INCLUDE = "include"  # this handle's database and every sibling
    EXCLUDE = "exclude"  # only the siblings
    ONLY = "only"  # only this handle's database


class ProvisioningContext:
    """Process-wide counter of database name attempts.

    Every handle created in a process continues counting where the previous
    one stopped, so two handles with the same template never try the same
    name.  The counter also bounds the sibling sweep in
    :meth:`TempDatabase.drop_databases`.
    """

    def __init__(self) -> None:
        self._attempts = 0
        self._lock = threading.Lock()

    @property
    def attempts(self) -> int:
        """Number of retry indices used so far."""
        return self._attempts

    def record_attempt(self, index: int) -> None:
        with self._lock:
            self._attempts = max(self._attempts, index + 1)

    def reset(self) -> None:
        with self._lock:
            self._attempts = 0


DEFAULT_CONTEXT = ProvisioningContext()


def script_dir() -> Path | None:
    """Directory of the running script, or None when it cannot be determined."""
    argv0 = sys.argv[0] if sys.argv else ""
    if not argv0 or argv0 == "-c":
        return None
    try:
        return Path(argv0).resolve().parent
    except OSError:
        return None


class TempDatabase:
    """A database that only lives as long as the current process.

    States: uninitialized -> created -> dropped.  A handle built with
    ``auto_create=False`` stays uninitialized until :meth:`create_database`
    is called.
    """

    def __init__(
        self,
        url: str | URL,
        *,
        config: TempDBConfig | None = None,
        context: ProvisioningContext | None = None,
        process_control: ProcessControl | None = None,
        env: EnvSettings | None = None,
        **overrides: Any,
    ) -> None:
        """Create a handle and, unless disabled, the database itself.

        Args:
            url: Server URL, e.g. ``mysql://root@127.0.0.1:3306`` or ``sqlite://``.
            config: Base options; loaded from the TOML config files if omitted.
            context: Attempt counter; the process-wide one by default.
            process_control: Process primitives for the cleanup supervisor.
            env: ``TEMPDB_*`` switches; read from the environment if omitted.
            **overrides: Option values overriding *config*
                (``auto_create``, ``drop_from_child``, ``template``,
                ``schema_database``, ``tmpdir``, ``keep_too_long``).

        Raises:
            UnsupportedBackendError: If the URL scheme is not supported.
            CreateDatabaseError: If auto-creation failed.
        """
        self._url = parse_url(url)
        self.backend: BackendKind = backend_kind_for(self._url)
        self._backend = get_backend(self.backend)
        self.config = (config or load_config()).replace(**overrides)
        self.env = env or EnvSettings.from_environ()
        self.context = context or DEFAULT_CONTEXT
        self.schema_database = self.config.schema_database or self._backend.schema_database

        self.database_name: str | None = None
        self.created = False
        self._supervisor: CleanupSupervisor | None = None
        self._process_control = process_control
        self._owner_pid = os.getpid()
        self._closed = False

        if self.env.debug:
            setup_debug_logging()
        logger.debug("schema_database=%s", self.schema_database)

        if self.config.auto_create:
            self.create_database()

    def __repr__(self) -> str:
        return f"<TempDatabase {self.backend.value} {self.database_name or '(not created)'}>"

    def __enter__(self) -> TempDatabase:
        return self.create_database()

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def template(self) -> str:
        return self.config.template

    @property
    def url(self) -> URL:
        """The input URL, with the database set to the temp database once created."""
        return self._url

    @property
    def url_string(self) -> str:
        """:attr:`url` rendered with the password, as exported in ``TEMPDB_URL``."""
        return self._url.render_as_string(hide_password=False)

    @property
    def supervisor(self) -> CleanupSupervisor | None:
        return self._supervisor

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_database(self) -> TempDatabase:
        """Create a uniquely named database for the current process.

        Calling this more than once does nothing, also after the database
        was dropped.  Each attempt uses the
        next retry index of the provisioning context, so a name taken by
        another process or handle is simply skipped.

        Raises:
            ConfigurationError: If the template cannot produce a short enough name.
            CreateDatabaseError: If no attempt succeeded.
        """
        if self.database_name is not None:
            return self

        base_index = self.context.attempts
        name: str | None = None
        cause: BaseException | None = None

        for offset in range(self.env.max_number_of_tries):
            index = base_index + offset
            self.context.record_attempt(index)
            name = self._resolve_name(index)
            try:
                self._backend.create(self._url, self.schema_database, name)
            except _BACKEND_ERRORS as exc:
                logger.debug("Could not create %s: %s", name, exc)
                cause = exc
                continue

            base_url = self._url
            previous_url = os.environ.get(URL_ENV)
            self.database_name = name
            self._url = self._url.set(database=name)
            os.environ[URL_ENV] = self.url_string
            logger.debug("Created temp database %s", name)
            try:
                self._start_supervisor()
            except OSError:
                self._abandon(name, base_url, previous_url)
                raise
            self.created = True
            self._closed = False
            atexit.register(self.close)
            return self

        raise CreateDatabaseError(name, cause)

    def _abandon(self, name: str, base_url: URL, previous_url: str | None) -> None:
        """Drop a database whose watcher could not be started and forget it."""
        try:
            self._backend.drop(base_url, self.schema_database, name, if_exists=True)
        except _BACKEND_ERRORS as exc:
            logger.warning("Unable to drop %s after failed watcher start: %s", name, exc)
        self.database_name = None
        self._url = base_url
        self._supervisor = None
        if previous_url is None:
            os.environ.pop(URL_ENV, None)
        else:
            os.environ[URL_ENV] = previous_url

    def _resolve_name(self, index: int) -> str:
        name = generate_name(self.template, index, keep_too_long=self.config.keep_too_long)
        return self._backend.resolve_name(name, self.config.tmpdir)

    def _start_supervisor(self) -> None:
        mode = self.config.drop_from_child
        if mode is DropFromChild.OFF:
            return
        if self.env.keep_database:
            logger.debug("TEMPDB_KEEP_DATABASE is set; not starting %s watcher", mode.value)
            return

        supervisor = CleanupSupervisor(
            self._drop_from_child,
            label=self.database_name or "",
            control=self._process_control,
            debug=self.env.debug,
        )
        if mode is DropFromChild.PIPE:
            supervisor.start_pipe_watch()
        else:
            supervisor.start_double_fork(self.env.double_fork_interval)
        self._supervisor = supervisor

    def _drop_from_child(self) -> None:
        if self.database_name is not None:
            self._backend.drop(self._url, self.schema_database, self.database_name, if_exists=True)

    # ------------------------------------------------------------------
    # Using the database
    # ------------------------------------------------------------------

    def dsn(self) -> Dsn:
        """Return ``(connection_string, user, password, options)`` for the temp database.

        Raises:
            NotCreatedError: If :meth:`create_database` has not succeeded yet.
        """
        if self.database_name is None:
            raise NotCreatedError("Cannot return DSN before create_database() is called.")
        return build_dsn(self._url, self.database_name, self.backend)

    def connect(self) -> Any:
        """Open a new DB-API connection to the temp database."""
        return driver.connect(self.backend, self.dsn())

    def execute(self, *statements: str) -> TempDatabase:
        """Execute SQL in the temp database.

        Each argument may hold several statements.  MySQL scripts are split
        into single statements first; SQLite runs them with ``executescript``.
        """
        conn = self.connect()
        try:
            if self.backend is BackendKind.SQLITE:
                for sql in statements:
                    conn.executescript(sql)
            else:
                cursor = conn.cursor()
                try:
                    for sql in statements:
                        for statement in split_sql(self.backend, sql):
                            cursor.execute(statement)
                finally:
                    cursor.close()
            conn.commit()
        finally:
            conn.close()
        return self

    def execute_file(self, path: str | Path) -> TempDatabase:
        """Read an SQL file and :meth:`execute` it.

        Relative paths are resolved against the directory of the running
        script (``sys.argv[0]``).

        Raises:
            ConfigurationError: If the path is relative and the script
                directory is unknown.
            SqlFileError: If the file cannot be read.
        """
        path = Path(path)
        if not path.is_absolute():
            base = script_dir()
            if base is None:
                raise ConfigurationError(
                    f"Cannot resolve absolute path to '{path}'. "
                    "The directory of the running script is unknown."
                )
            path = base / path

        try:
            sql = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise SqlFileError(str(path), exc) from exc

        logger.debug("Execute %s", path)
        return self.execute(sql)

    # ------------------------------------------------------------------
    # Dropping
    # ------------------------------------------------------------------

    def drop_databases(
        self, name: str | None = None, mode: DropMode | str = DropMode.INCLUDE
    ) -> TempDatabase:
        """Drop this handle's database, a named one, or every generated sibling.

        Args:
            name: Drop exactly this database. Errors are raised.
            mode: Without *name*: ``only`` drops this handle's database
                (errors are raised); ``include`` and ``exclude`` sweep every
                name the template produced for the retry indices used so far
                in this process, with or without this handle's own database.

        The sweep only fails if every single drop failed.  It is best effort:
        names from retry indices used by another process are not seen.
        """
        mode = DropMode(mode)

        if name is not None:
            self._drop_strict(self._backend.resolve_name(name, self.config.tmpdir))
            return self

        if mode is DropMode.ONLY:
            if self.database_name is None:
                raise NotCreatedError("Cannot drop the database before create_database() is called.")
            self._drop_strict(self.database_name)
            return self

        names = [self._resolve_name(index) for index in range(self.context.attempts)]
        if self.database_name is not None and self.database_name not in names:
            names.append(self.database_name)
        if mode is DropMode.EXCLUDE:
            names = [n for n in names if n != self.database_name]

        failures: list[tuple[str, BaseException]] = []
        for sibling in names:
            try:
                self._drop_one(sibling, if_exists=True)
            except _BACKEND_ERRORS as exc:
                logger.warning("Unable to drop %s: %s", sibling, exc)
                failures.append((sibling, exc))

        if names and len(failures) == len(names):
            raise DropError(*failures[-1])
        return self

    def _drop_strict(self, name: str) -> None:
        try:
            self._drop_one(name, if_exists=False)
        except _BACKEND_ERRORS as exc:
            raise DropError(name, exc) from exc

    def _drop_one(self, name: str, if_exists: bool) -> None:
        self._backend.drop(self._url, self.schema_database, name, if_exists=if_exists)
        logger.debug("Dropped %s", name)
        if name == self.database_name:
            self.created = False

    def close(self) -> None:
        """Release the handle, dropping the database unless something else owns that.

        * With a drop-from-child watcher running, only the watcher is released.
        * With ``TEMPDB_KEEP_DATABASE`` set, the database is kept.
        * Otherwise a created database is dropped now.  A database that is
          already gone, e.g. removed by a sibling sweep, is not an error.

        Raises:
            DropError: If the database could not be dropped.
        """
        if self._closed or os.getpid() != self._owner_pid:
            return
        self._closed = True
        atexit.unregister(self.close)

        if self._supervisor is not None:
            self._supervisor.release()
            return
        if not self.created or self.database_name is None:
            return
        if self.env.keep_database:
            if not self.env.silent:
                logger.warning("Keeping temp database %s", self.url_string)
            return

        try:
            self._drop_one(self.database_name, if_exists=True)
        except _BACKEND_ERRORS as exc:
            raise DropError(self.database_name, exc) from exc
