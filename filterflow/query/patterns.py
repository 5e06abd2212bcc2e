"""Regular expression helpers shared by validation and the string matching operators"""

import re
from functools import lru_cache

from .._errors import FilterValidationError

PATTERN_CACHE_SIZE = 500
_WILDCARDS = ("*", "?")


@lru_cache(maxsize=PATTERN_CACHE_SIZE)
def compile_pattern(pattern: str, flags: int = re.IGNORECASE) -> re.Pattern:
    """Compiles a regular expression, keeping the most recently used ones in memory

    Args:
        pattern: the regular expression
        flags: the re flags to compile with; default is case-insensitive

    Returns:
        the compiled pattern

    Raises:
        FilterValidationError: Invalid regex pattern
    """
    try:
        return re.compile(pattern, flags)
    except re.error as exp:
        raise FilterValidationError(
            f"Invalid regex pattern '{pattern}': {exp}",
            hint="check that brackets and escapes are balanced",
        ) from exp


def wildcard_to_regex(pattern: str) -> str:
    """Converts a LIKE pattern to an anchored regular expression

    ``**`` matches anything, ``*`` matches anything but a '/', ``?`` matches a single
    character and a backslash escapes the character after it.
    A pattern without any wildcards matches values containing it.

    Args:
        pattern: the LIKE pattern e.g. ``"jo*n"``

    Returns:
        the regular expression e.g. ``"^jo[^/]*n$"``
    """
    if not any(v in pattern for v in _WILDCARDS):
        return f"^.*{re.escape(pattern)}.*$"

    parts = ["^"]
    idx = 0
    while idx < len(pattern):
        char = pattern[idx]
        if char == "\\" and idx + 1 < len(pattern):
            parts.append(re.escape(pattern[idx + 1]))
            idx += 2
            continue

        if char == "*":
            if pattern[idx + 1 : idx + 2] == "*":
                parts.append(".*")
                idx += 2
                continue
            parts.append("[^/]*")
        elif char == "?":
            parts.append(".")
        else:
            parts.append(re.escape(char))
        idx += 1

    parts.append("$")
    return "".join(parts)
