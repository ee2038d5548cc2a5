"""Entry point for the `tempdb` CLI."""

from __future__ import annotations

import argparse
import dataclasses
import logging
import os
import subprocess
import sys

from tempdb.backends import build_dsn
from tempdb.config import EnvSettings
from tempdb.database import URL_ENV, DropMode, ProvisioningContext, TempDatabase
from tempdb.errors import TempDBError

logger = logging.getLogger("tempdb.cli")


def main(argv: list[str] | None = None) -> None:
    """Parse CLI arguments and run the requested command."""
    parser = argparse.ArgumentParser(
        prog="tempdb",
        description="Create temporary databases that are removed when the process ends.",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {_get_version()}",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log debug output.")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # run
    run_parser = subparsers.add_parser(
        "run", help="Create a temp database, run a command against it, then drop it"
    )
    run_parser.add_argument("url", metavar="URL", help="Database server URL.")
    run_parser.add_argument("--template", help="Database name template.")
    run_parser.add_argument("--tmpdir", help="Directory for SQLite database files.")
    run_parser.add_argument(
        "--drop-from-child",
        choices=["off", "pipe", "double_fork"],
        default=None,
        help="Let a child process drop the database when tempdb exits.",
    )
    run_parser.add_argument(
        "--keep", action="store_true", help="Keep the database after the command ends."
    )
    run_parser.add_argument(
        "cmd",
        nargs=argparse.REMAINDER,
        metavar="COMMAND",
        help=f"Command to run with {URL_ENV} set. Without one, print the URL and keep the database.",
    )

    # drop
    drop_parser = subparsers.add_parser("drop", help="Drop temp databases left behind")
    drop_parser.add_argument("url", metavar="URL", help="Database server URL.")
    drop_parser.add_argument("--name", help="Drop exactly this database.")
    drop_parser.add_argument("--template", help="Database name template.")
    drop_parser.add_argument("--tmpdir", help="Directory for SQLite database files.")
    drop_parser.add_argument(
        "--mode",
        choices=[DropMode.INCLUDE.value, DropMode.EXCLUDE.value],
        default=DropMode.INCLUDE.value,
        help="Sweep mode when no --name is given.",
    )
    drop_parser.add_argument(
        "--tries",
        type=int,
        default=None,
        help="Number of retry indices to sweep (default: TEMPDB_MAX_NUMBER_OF_TRIES).",
    )

    # dsn
    dsn_parser = subparsers.add_parser("dsn", help="Print the DSN for a database URL")
    dsn_parser.add_argument("url", metavar="URL", help="Database URL.")

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    env = EnvSettings.from_environ()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose or env.debug else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )

    try:
        if args.command == "run":
            _run_command(args, env)
        elif args.command == "drop":
            _drop_command(args, env)
        elif args.command == "dsn":
            _dsn_command(args)
    except TempDBError as exc:
        logger.error("%s", exc)
        sys.exit(1)


def _run_command(args: argparse.Namespace, env: EnvSettings) -> None:
    """Create a database and run a command with TEMPDB_URL pointing at it.

    Args:
        args: Parsed command-line arguments
        env: Environment settings
    """
    cmd = list(args.cmd)
    if cmd and cmd[0] == "--":
        cmd = cmd[1:]

    if args.keep or not cmd:
        env = dataclasses.replace(env, keep_database=True, silent=True)

    tmpdb = TempDatabase(
        args.url,
        env=env,
        template=args.template,
        tmpdir=args.tmpdir,
        drop_from_child=args.drop_from_child,
    )

    if not cmd:
        print(tmpdb.url_string)
        return

    logger.info("Running %s with %s=%s", cmd[0], URL_ENV, tmpdb.url)
    try:
        returncode = subprocess.call(cmd, env={**os.environ, URL_ENV: tmpdb.url_string})
    finally:
        tmpdb.close()
    sys.exit(returncode)


def _drop_command(args: argparse.Namespace, env: EnvSettings) -> None:
    """Drop a named database or sweep every name the template can produce.

    Args:
        args: Parsed command-line arguments
        env: Environment settings
    """
    # A fresh process has no attempt history, so sweep a fixed range instead
    context = ProvisioningContext()
    tries = args.tries if args.tries is not None else env.max_number_of_tries
    if tries > 0:
        context.record_attempt(tries - 1)

    tmpdb = TempDatabase(
        args.url,
        env=env,
        context=context,
        auto_create=False,
        template=args.template,
        tmpdir=args.tmpdir,
    )

    if args.name:
        tmpdb.drop_databases(name=args.name)
        print(f"Dropped {args.name}")
    else:
        tmpdb.drop_databases(mode=args.mode)
        print(f"Swept {context.attempts} database name(s) for template {tmpdb.template}")


def _dsn_command(args: argparse.Namespace) -> None:
    """Print the DSN tuple for a URL.

    Args:
        args: Parsed command-line arguments
    """
    dsn = build_dsn(args.url)
    print(f"connection_string: {dsn.connection_string}")
    print(f"user: {dsn.user if dsn.user is not None else '(none)'}")
    print(f"password: {'***' if dsn.password is not None else '(none)'}")
    print("options:")
    for key, value in sorted(dsn.options.items()):
        print(f"  {key}={value}")


def _get_version() -> str:
    from tempdb import __version__

    return __version__


if __name__ == "__main__":
    main()
