"""
Module implementing the wildcard matching that hosts use for directory searches.

Besides the familiar * and ? wildcards, search patterns may contain the DOS wildcards
that hosts substitute when translating legacy 8.3 patterns:

* < matches any sequence up to the final dot of the name (DOS_STAR)
* > matches any single character, or nothing before a dot or the end (DOS_QM)
* " matches a dot, or nothing at the end of the name (DOS_DOT)

Unlike fnmatch, square brackets have no special meaning.
"""

import functools
import re
from typing import Pattern

MATCH_ALL = "*"

_WILDCARDS = {
    "*": ".*",
    "?": ".",
    "<": r"(?:[^.]*|.*(?=\.[^.]*$))",
    ">": r"(?:[^.]|(?=\.|$))",
    '"': r"(?:\.|$)",
}


@functools.lru_cache(maxsize=256)
def _compile(pattern: str, ignore_case: bool) -> Pattern[str]:
    regex = "".join(_WILDCARDS.get(c, re.escape(c)) for c in pattern)
    flags = re.DOTALL | (re.IGNORECASE if ignore_case else 0)

    return re.compile(regex, flags)


def is_match_all(pattern: str) -> bool:
    """Check if a pattern selects every entry."""
    return pattern in ("", MATCH_ALL)


def name_matches(pattern: str, name: str, ignore_case: bool = True) -> bool:
    """Check if a file name matches a host search pattern."""
    if is_match_all(pattern):
        return True

    return _compile(pattern, ignore_case).fullmatch(name) is not None
