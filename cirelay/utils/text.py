"""Small text helpers for log and status messages."""

from __future__ import annotations


def error_message(exc: BaseException) -> str:
    """Return a readable message for any exception.

    Exceptions raised with a non-string payload or with no arguments at all
    still produce something a human can act on.
    """
    if exc.args and isinstance(exc.args[0], str) and exc.args[0]:
        return str(exc)
    if exc.args:
        return repr(exc.args[0]) if len(exc.args) == 1 else repr(exc.args)
    text = str(exc)
    return text or type(exc).__name__


def truncate_string(text: str, max_length: int = 100, suffix: str = "...") -> str:
    """Cut *text* to *max_length* characters, *suffix* included."""
    if len(text) <= max_length:
        return text
    return text[: max_length - len(suffix)] + suffix


def slugify(value: str) -> str:
    """Lower-case *value* and collapse whitespace runs into dashes."""
    return "-".join(value.split()).lower()
