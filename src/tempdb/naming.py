"""Database name generation.

A template such as ``tmp_%U_%X_%H%i`` is expanded with values taken from the
running process and normalized into an identifier every backend accepts::

    %i  retry suffix: "" for the first attempt, "_1", "_2", ... afterwards
    %H  hostname
    %P  process id
    %T  process start time (epoch seconds)
    %U  numeric user id
    %X  basename of the executable (sys.argv[0])
"""

from __future__ import annotations

import os
import re
import socket
import sys
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path

from tempdb.errors import ConfigurationError

MAX_NAME_LENGTH = 63
SQLITE_SUFFIX = ".sqlite"

# Placeholders removed from a template, in order, when the name is too long
SHORTEN_ORDER = ("%T", "%H", "%X")

_PROCESS_START_TIME = int(time.time())
_PLACEHOLDER_RE = re.compile(r"%([iHPTUX])")
_NON_WORD_RE = re.compile(r"\W", re.ASCII)


@dataclass(frozen=True)
class PlaceholderValues:
    """Runtime values substituted into a name template."""

    hostname: str = field(default_factory=socket.gethostname)
    pid: int = field(default_factory=os.getpid)
    start_time: int = _PROCESS_START_TIME
    uid: int = field(default_factory=os.getuid)
    executable: str = field(default_factory=lambda: os.path.basename(sys.argv[0] if sys.argv else ""))


def expand_template(template: str, retry_index: int, values: PlaceholderValues) -> str:
    """Replace every known placeholder in *template*, without normalizing."""

    def _replace(match: re.Match[str]) -> str:
        key = match.group(1)
        if key == "i":
            return f"_{retry_index}" if retry_index > 0 else ""
        if key == "H":
            return values.hostname
        if key == "P":
            return str(values.pid)
        if key == "T":
            return str(values.start_time)
        if key == "U":
            return str(values.uid)
        return values.executable

    return _PLACEHOLDER_RE.sub(_replace, template)


def normalize_name(name: str) -> str:
    """Turn an expanded template into a lowercase ``[a-z0-9_]`` identifier."""
    name = name.lstrip("/")
    return _NON_WORD_RE.sub("_", name).lower()


def generate_name(
    template: str,
    retry_index: int = 0,
    *,
    keep_too_long: bool = False,
    max_length: int = MAX_NAME_LENGTH,
    values: PlaceholderValues | None = None,
) -> str:
    """Generate a database name from *template* for the given attempt.

    Args:
        template: Name template with ``%``-placeholders.
        retry_index: Attempt number; expands ``%i``.
        keep_too_long: Return over-long names unchanged instead of shortening.
        max_length: Longest name the backend accepts.
        values: Placeholder values; read from the current process if omitted.

    Returns:
        The normalized database name.

    Raises:
        ConfigurationError: If the name is too long and no placeholder is left
            to strip from the template.
    """
    if retry_index < 0:
        raise ValueError(f"retry_index must be non-negative, got {retry_index}")

    values = values or PlaceholderValues()
    name = normalize_name(expand_template(template, retry_index, values))
    if keep_too_long or len(name) <= max_length:
        return name

    for placeholder in SHORTEN_ORDER:
        if placeholder in template:
            shorter = template.replace(placeholder, "", 1)
            return generate_name(shorter, retry_index, max_length=max_length, values=values)

    raise ConfigurationError(
        f"Database name '{name}' is longer than {max_length} characters and "
        f"template '{template}' cannot be shortened any further."
    )


def resolve_sqlite_path(name: str, tmpdir: Path | str | None = None) -> Path:
    """Return the absolute path of the SQLite file backing database *name*."""
    base = Path(tmpdir) if tmpdir else Path(tempfile.gettempdir())
    return base.expanduser().resolve() / f"{name}{SQLITE_SUFFIX}"
