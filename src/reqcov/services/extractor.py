"""Requirement-code extraction from noisy step text.

Step text comes from a rich-text editor, so a single code can arrive with
each letter in its own bold tag, with spaces between its digits, or with
escaped markup. Extraction runs as a pipeline of small stages, each usable
on its own:

1. strip_tags        - remove markup, keeping block boundaries as spaces
2. decode_entities   - decode HTML entities, then strip any markup they revealed
3. collapse_codes    - rejoin codes split by whitespace ("S R 0 0 1" -> "SR001")
4. match_codes       - find SR codes with optional child suffix lists
5. version filtering - drop codes followed by a version or campaign tag

Codes are canonical uppercase `SR<digits>` or `SR<digits>-<digits>`; the
digit width is kept exactly as written.
"""

from __future__ import annotations

import html
import re
from collections.abc import Iterator

_BLOCK_TAG = re.compile(
    r"</?(?:br|p|div|li|ul|ol|tr|td|th|table|h[1-6])\b[^>]*>",
    re.IGNORECASE,
)
_ANY_TAG = re.compile(r"<[^<>]*>")
_WHITESPACE = re.compile(r"\s+")

# "S R 0 0 0 1" and "SR 0001" both collapse to "SR0001"; spaced digits are only
# joined when every digit group is a single character.
_SPLIT_CODE = re.compile(
    r"(?<![A-Za-z0-9])S\s*R\s*(\d(?:[ \t]+\d)+(?!\d)|\d+)",
    re.IGNORECASE,
)

_CODE = re.compile(
    r"(?<![A-Za-z0-9])SR(\d+)(-\d+(?:\s*,\s*\d+)*)?",
    re.IGNORECASE,
)

# A code immediately followed by one of these is a version stamp or a
# campaign tag, not a requirement reference.
_VERSION_TAIL = re.compile(
    r"\s*-?\s*V(?:\d+(?:\.\d+)*|VRM\d*)|[A-Za-z]",
    re.IGNORECASE,
)

_CODE_SHAPE = re.compile(r"^SR(\d+)(?:-(\d+))?$")


def strip_tags(text: str) -> str:
    """Remove markup; block-level tags become a space, inline tags vanish."""
    return _ANY_TAG.sub("", _BLOCK_TAG.sub(" ", text))


def decode_entities(text: str) -> str:
    """Decode HTML entities and strip any markup that decoding exposed."""
    return strip_tags(html.unescape(text))


def collapse_whitespace(text: str) -> str:
    return _WHITESPACE.sub(" ", text).strip()


def collapse_codes(text: str) -> str:
    """Rejoin requirement codes whose letters or digits are separated by spaces."""

    def _join(match: re.Match[str]) -> str:
        return "SR" + re.sub(r"\s+", "", match.group(1))

    return _SPLIT_CODE.sub(_join, text)


def normalize_text(text: str | None) -> str:
    """Run the text-cleaning stages and return the searchable text."""
    if not text:
        return ""
    return collapse_codes(collapse_whitespace(decode_entities(strip_tags(text))))


def _is_version_tagged(text: str, end: int) -> bool:
    return _VERSION_TAIL.match(text, end) is not None


def match_codes(text: str, *, expand_suffixes: bool = True) -> Iterator[str]:
    """Yield codes from already-normalized text, in order of appearance."""
    for match in _CODE.finditer(text):
        if _is_version_tagged(text, match.end()):
            continue
        base = f"SR{match.group(1)}"
        suffix = match.group(2)
        if not suffix:
            yield base
            continue
        children = [part.strip() for part in suffix[1:].split(",")]
        if not expand_suffixes:
            children = children[:1]
        for child in children:
            yield f"{base}-{child}"


def iter_codes(text: str | None, *, expand_suffixes: bool = True) -> Iterator[str]:
    """Yield each distinct code found in raw step text, first occurrence first."""
    seen: set[str] = set()
    for code in match_codes(normalize_text(text), expand_suffixes=expand_suffixes):
        if code not in seen:
            seen.add(code)
            yield code


def extract_codes(text: str | None, *, expand_suffixes: bool = True) -> set[str]:
    """Return the set of requirement codes mentioned in `text`.

    Args:
        text: Raw, possibly HTML-formatted step text.
        expand_suffixes: Expand `SR0095-2,3` into both child codes. When False,
            only the first child of a suffix list is kept.

    Returns:
        Deduplicated canonical codes.
    """
    return set(iter_codes(text, expand_suffixes=expand_suffixes))


def first_code(text: str | None) -> str:
    """Return the first code in `text`, or an empty string."""
    return next(iter_codes(text), "")


def base_key_of(code: str) -> str:
    """Family base key of a code: `SR0054-2` -> `SR0054`."""
    return code.split("-", 1)[0]


def is_child_code(code: str) -> bool:
    return "-" in code


def is_valid_code(code: str) -> bool:
    return _CODE_SHAPE.match(code) is not None


def code_sort_key(code: str) -> tuple[str, int, str]:
    """Order codes by base key, then numerically by child suffix (base first)."""
    base, _, child = code.partition("-")
    return (base, int(child) if child.isdigit() else -1, child)


def sort_codes(codes: set[str] | list[str]) -> list[str]:
    return sorted(codes, key=code_sort_key)
