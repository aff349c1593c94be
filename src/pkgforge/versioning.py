"""Version ordering used to pick the latest available specification.

Versions are split into components: maximal runs of digits or of other
characters, with ``.`` and ``-`` acting only as separators. Components are
compared pairwise, a missing component counting as the empty string:

* two numeric components compare as integers;
* the empty component sorts before a numeric one (``1.2 < 1.2.1``);
* ``pre`` sorts before everything else (``1.0pre1 < 1.0``);
* a numeric component sorts after a non-numeric one (``2.3a < 2.3.1``);
* otherwise components compare as strings.

Versions that compare equal component-wise but differ as strings
(``1.0`` and ``1.00``) fall back to a plain string comparison so the
ordering is total.
"""

from __future__ import annotations

import re
from functools import cmp_to_key

_COMPONENT_RE = re.compile(r"\d+|[^\d.\-]+")


def split_version(version: str) -> list[str]:
    return _COMPONENT_RE.findall(version)


def _component_lt(left: str, right: str) -> bool:
    left_num = left.isdigit()
    right_num = right.isdigit()
    if left_num and right_num:
        return int(left) < int(right)
    if left == "" and right_num:
        return True
    if left == "pre" and right != "pre":
        return True
    if right == "pre":
        return False
    if right_num:
        return True
    if left_num:
        return False
    return left < right


def compare_versions(left: str, right: str) -> int:
    """Return -1, 0 or 1 as ``left`` sorts before, equal to or after ``right``."""
    left_parts = split_version(left)
    right_parts = split_version(right)
    for idx in range(max(len(left_parts), len(right_parts))):
        a = left_parts[idx] if idx < len(left_parts) else ""
        b = right_parts[idx] if idx < len(right_parts) else ""
        if _component_lt(a, b):
            return -1
        if _component_lt(b, a):
            return 1
    if left == right:
        return 0
    return -1 if left < right else 1


version_key = cmp_to_key(compare_versions)


def latest(versions: list[str]) -> str:
    if not versions:
        raise ValueError("latest() requires at least one version")
    return max(versions, key=version_key)
