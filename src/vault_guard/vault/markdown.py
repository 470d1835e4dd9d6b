"""Markdown helpers for resolving PATCH targets."""

import re
from typing import List

_RE_HEADING = re.compile(r"^(#{1,6})\s+(.+?)\s*#*\s*$")
_RE_FENCE = re.compile(r"^\s*(```|~~~)")

HEADING_DELIMITER = "::"


def heading_paths(content: str) -> List[str]:
    """Return the full path of every heading, e.g. ``Projects::Done``.

    Headings inside fenced code blocks are ignored.
    """
    paths: List[str] = []
    stack: List[tuple] = []
    in_fence = False

    for line in content.splitlines():
        if _RE_FENCE.match(line):
            in_fence = not in_fence
            continue
        if in_fence:
            continue

        match = _RE_HEADING.match(line)
        if not match:
            continue

        level = len(match.group(1))
        title = match.group(2).strip()
        while stack and stack[-1][0] >= level:
            stack.pop()
        stack.append((level, title))
        paths.append(HEADING_DELIMITER.join(text for _, text in stack))

    return paths


def count_heading_matches(content: str, target: str) -> int:
    """Count headings a PATCH target resolves to.

    A target containing ``::`` must match a full heading path; a bare
    target matches any heading with that title.
    """
    target = target.strip()
    paths = heading_paths(content)

    if HEADING_DELIMITER in target:
        return sum(1 for path in paths if path == target)
    return sum(1 for path in paths if path.split(HEADING_DELIMITER)[-1] == target)
