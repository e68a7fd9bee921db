"""Named remote filesystem operations.

Each operation is a self-contained POSIX ``sh`` body.  All inputs arrive
as positional arguments (``$1``...) or on stdin; nothing is captured from
the caller's environment, so the same body can be sent verbatim over any
remote shell.  :func:`render_command` turns a body plus arguments into a
single command line for ``exec_command``.
"""

from __future__ import annotations

import shlex

# Resolves $1 against the remote working directory into $target.
_RESOLVE_TARGET = """\
target=$1
case "$target" in
  /*) ;;
  *) target="$PWD/$target" ;;
esac
"""

REMOVE_FILE = _RESOLVE_TARGET + """\
if [ -e "$target" ] || [ -L "$target" ]; then
  rm -f -- "$target" || exit 1
fi
"""

# Also leaves an empty file behind so that a zero-byte push still produces
# a destination.
MAKE_PARENT_DIRS = _RESOLVE_TARGET + """\
mkdir -p -- "$(dirname -- "$target")" || exit 1
: >> "$target" || exit 1
"""

APPEND_CHUNK = _RESOLVE_TARGET + """\
cat >> "$target" || exit 1
"""

STAT_FILE = _RESOLVE_TARGET + """\
if [ -f "$target" ]; then
  size=$(wc -c < "$target") || exit 1
  printf '%s\\t%s\\n' "$target" "$size"
else
  echo missing
fi
"""

OPERATIONS: dict[str, str] = {
    "remove_file": REMOVE_FILE,
    "make_parent_dirs": MAKE_PARENT_DIRS,
    "append_chunk": APPEND_CHUNK,
    "stat_file": STAT_FILE,
}

_STAT_MISSING = "missing"


def get_operation(name: str) -> str:
    """Return the script body registered under *name*.

    Raises:
        KeyError: If no such operation exists.
    """
    try:
        return OPERATIONS[name]
    except KeyError:
        raise KeyError(f"Unknown remote operation: {name!r}") from None


def render_command(script: str, *args: object, name: str = "tierdeploy") -> str:
    """Build a ``sh -c`` command line that runs *script* with *args*.

    *name* becomes ``$0`` inside the script, which shows up in remote
    error messages.
    """
    parts = ["sh", "-c", shlex.quote(script), shlex.quote(name)]
    parts.extend(shlex.quote(str(arg)) for arg in args)
    return " ".join(parts)


def parse_stat(stdout: str) -> tuple[str | None, int]:
    """Parse ``stat_file`` output into ``(absolute_path, size)``.

    Returns ``(None, 0)`` when the remote file does not exist.

    Raises:
        ValueError: If the output is not in the expected format.
    """
    line = stdout.strip()
    if line == _STAT_MISSING:
        return None, 0
    path, sep, size = line.rpartition("\t")
    if not sep or not path:
        raise ValueError(f"Unexpected stat output: {stdout!r}")
    try:
        return path, int(size.strip())
    except ValueError:
        raise ValueError(f"Unexpected stat output: {stdout!r}") from None
