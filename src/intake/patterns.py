"""Glob-style filename matching for show file patterns."""

import functools
import logging
import re
from typing import Iterable, Optional

from .exceptions import PatternError
from .models import FilePattern, PatternType

logger = logging.getLogger(__name__)

# Placeholder names are case-sensitive: {MM} is month, {mm} is minute.
PLACEHOLDERS = {
    "YYYY": r"\d{4}",
    "YY": r"\d{2}",
    "MM": r"\d{1,2}",
    "DD": r"\d{1,2}",
    "HH": r"\d{1,2}",
    "mm": r"\d{1,2}",
    "ss": r"\d{1,2}",
    "DOTW": r"[A-Za-z]+",
    "DOW": r"[A-Za-z]{3}",
    "MONTH": r"[A-Za-z]+",
    "MON": r"[A-Za-z]{3}",
}


def _translate(pattern: str) -> str:
    """
    Translate a show pattern into a regular expression body.

    `*` matches any run of characters, `?` exactly one, `{YYYY}` style
    placeholders match their date component, and `{a,b}` matches either
    alternative. Any other `{text}` group is matched literally.

    Raises:
        PatternError: On unbalanced or nested braces
    """
    out = []
    i = 0
    n = len(pattern)

    while i < n:
        c = pattern[i]
        if c == "*":
            out.append(".*")
        elif c == "?":
            out.append(".")
        elif c == "{":
            end = pattern.find("}", i + 1)
            if end == -1:
                raise PatternError(f"Unbalanced '{{' at position {i} in pattern {pattern!r}")
            body = pattern[i + 1:end]
            if "{" in body:
                raise PatternError(f"Nested '{{' at position {i} in pattern {pattern!r}")

            if body in PLACEHOLDERS:
                out.append(PLACEHOLDERS[body])
            elif "," in body:
                alternatives = "|".join(_translate(alt) for alt in body.split(","))
                out.append(f"(?:{alternatives})")
            else:
                out.append(re.escape("{" + body + "}"))
            i = end + 1
            continue
        elif c == "}":
            raise PatternError(f"Unbalanced '}}' at position {i} in pattern {pattern!r}")
        else:
            out.append(re.escape(c))
        i += 1

    return "".join(out)


@functools.lru_cache(maxsize=512)
def compile_pattern(pattern: str) -> "re.Pattern":
    """
    Compile a show pattern into an anchored, case-insensitive regex.

    Raises:
        PatternError: If the pattern is malformed
    """
    try:
        return re.compile(_translate(pattern), re.IGNORECASE | re.DOTALL)
    except re.error as e:
        raise PatternError(f"Invalid pattern {pattern!r}: {e}") from e


def matches(filename: str, pattern: str) -> bool:
    """
    Check whether a filename matches a show pattern.

    The whole filename must match. Malformed patterns never raise; they
    are logged and treated as no match.

    Args:
        filename: Basename to test
        pattern: Show file pattern

    Returns:
        True if the filename matches
    """
    try:
        regex = compile_pattern(pattern)
    except PatternError as e:
        logger.warning(f"Ignoring malformed pattern: {e}")
        return False

    result = regex.fullmatch(filename) is not None
    logger.debug(f"File {filename!r} {'matches' if result else 'does not match'} pattern {pattern!r}")
    return result


def find_matching_pattern(filename: str, patterns: Iterable[FilePattern]) -> Optional[FilePattern]:
    """
    Return the first watch pattern, in list order, that matches a filename.

    Args:
        filename: Basename to test
        patterns: Show patterns in configured order

    Returns:
        The matching pattern, or None
    """
    for pattern in patterns:
        if pattern.type == PatternType.WATCH and matches(filename, pattern.pattern):
            return pattern
    return None
