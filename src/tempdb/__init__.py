"""Create a temporary database that lives only as long as the current process."""

from tempdb.backends import BackendKind, Dsn, build_dsn
from tempdb.database import DEFAULT_CONTEXT, DropMode, ProvisioningContext, TempDatabase
from tempdb.sqlsplit import split_sql

__version__ = "0.4.0"

__all__ = [
    "DEFAULT_CONTEXT",
    "BackendKind",
    "DropMode",
    "Dsn",
    "ProvisioningContext",
    "TempDatabase",
    "build_dsn",
    "split_sql",
]
