"""Owner process helper for drop-from-child integration tests.

Usage:
    python -m tests.helpers.owner_process <tmpdir> <drop_from_child>

Creates an SQLite temp database in *tmpdir* with the given drop-from-child
mode, prints the database path to stdout, then blocks on
``sys.stdin.read()``.  The parent test kills this process to check that the
watcher removes the database.
"""

from __future__ import annotations

import sys


def main() -> None:
    if len(sys.argv) < 3:
        print("Usage: owner_process.py <tmpdir> <drop_from_child>", file=sys.stderr)
        sys.exit(1)

    # Import here so the module can be imported without side effects
    from tempdb import TempDatabase
    from tempdb.config import TempDBConfig

    tmpdb = TempDatabase(
        "sqlite://",
        config=TempDBConfig(),
        tmpdir=sys.argv[1],
        drop_from_child=sys.argv[2],
        template="owner_%P%i",
    )
    print(tmpdb.database_name, flush=True)
    sys.stdin.read()


if __name__ == "__main__":
    main()
