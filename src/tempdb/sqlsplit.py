"""Split SQL scripts into single statements.

MySQL drivers refuse to run several statements in one call, so scripts meant
for MySQL are cut into individual statements here.  The scanner understands
the ``delimiter`` client command used in dumps and stored-procedure
definitions::

    delimiter //
    create procedure p() begin select 1; end//
    delimiter ;

Quoted strings, quoted identifiers and comments never end a statement.
Other engines take the script as-is: PostgreSQL accepts several statements
in one simple query and SQLite has ``executescript``.
"""

from __future__ import annotations

import re
from collections.abc import Iterator

from tempdb.backends import BackendKind, resolve_backend_kind

DEFAULT_DELIMITER = ";"

_DIRECTIVE_RE = re.compile(r"delimiter\s+(\S+)\s*(?:\n|\Z)", re.IGNORECASE)
_WHITESPACE_RE = re.compile(r"\s+")
_WORD_RE = re.compile(r"\w+")
_LITERAL_RES = (
    re.compile(r"--.*(?:\n|\Z)"),  # double-dash comment
    re.compile(r"#.*(?:\n|\Z)"),  # hash comment
    re.compile(r"/\*(?:[^*]|\*[^/])*(?:\*/|\*\Z|\Z)"),  # C-style comment
    re.compile(r"'(?:[^'\\]+|\\[\s\S]|'')*(?:'|\Z)"),  # single-quoted text
    re.compile(r'"(?:[^"\\]+|\\[\s\S]|"")*(?:"|\Z)'),  # double-quoted text
    re.compile(r"`(?:[^`]+|``)*(?:`|\Z)"),  # quoted identifier
)


def split_sql(backend: BackendKind | str, script: str) -> list[str]:
    """Return the statements in *script* that should be executed one by one.

    Args:
        backend: Engine the script is meant for.
        script: One or more SQL statements.

    Returns:
        ``[script]`` for engines that run batches natively, otherwise the
        individual statements with leading whitespace removed.

    Raises:
        UnsupportedBackendError: If *backend* names no known engine.
    """
    if resolve_backend_kind(backend) is not BackendKind.MYSQL:
        return [script]
    return list(iter_statements(script))


def iter_statements(script: str, delimiter: str = DEFAULT_DELIMITER) -> Iterator[str]:
    """Yield the statements of a MySQL script, honouring ``delimiter`` commands."""
    pos = 0
    end = len(script)
    current: list[str] = []

    while pos < end:
        boundary = False

        if script.startswith(delimiter, pos):
            boundary, token = True, delimiter
        elif match := _DIRECTIVE_RE.match(script, pos):
            boundary, token, delimiter = True, match.group(0), match.group(1)
        else:
            token = _next_token(script, pos)

        pos += len(token)

        if boundary:
            statement = "".join(current)
            if statement.strip():
                yield statement.lstrip()
            current = []
        else:
            current.append(token)

    statement = "".join(current)
    if statement.strip():
        yield statement.lstrip()


def _next_token(script: str, pos: int) -> str:
    for pattern in (_WHITESPACE_RE, _WORD_RE, *_LITERAL_RES):
        match = pattern.match(script, pos)
        if match and match.end() > pos:
            return match.group(0)
    return script[pos]
