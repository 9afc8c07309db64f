"""Parse selection expressions typed by the user.

Three forms are recognised, tried in this order:

* index expressions into the last listing, 1-based: ``3``, ``1-3``,
  ``1,4,6-7``
* patterns: ``/regex/`` or a glob containing ``*``, ``?`` or ``[``
* anything else is an exact object name
"""

from __future__ import annotations

import fnmatch
import re
from dataclasses import dataclass
from typing import List, Pattern, Tuple, Union

from kubenav.shared.errors import ResolveError

_INDEX_EXPR = re.compile(r"^\d+(-\d+)?(,\d+(-\d+)?)*$")
_GLOB_CHARS = set("*?[")


@dataclass(frozen=True)
class IndexSelector:
    indices: Tuple[int, ...]


@dataclass(frozen=True)
class PatternSelector:
    pattern: Pattern[str]
    source: str

    def matches(self, name: str) -> bool:
        return self.pattern.search(name) is not None


@dataclass(frozen=True)
class NameSelector:
    name: str


Selector = Union[IndexSelector, PatternSelector, NameSelector]


def _parse_indices(text: str) -> Tuple[int, ...]:
    indices: List[int] = []
    for part in text.split(","):
        if "-" in part:
            start_text, end_text = part.split("-", 1)
            start, end = int(start_text), int(end_text)
            if start > end:
                raise ResolveError(f"invalid range '{part}': start is after end")
            span = range(start, end + 1)
        else:
            span = range(int(part), int(part) + 1)
        for idx in span:
            if idx < 1:
                raise ResolveError("indices start at 1")
            if idx not in indices:
                indices.append(idx)
    return tuple(indices)


def parse_selector(text: str) -> Selector:
    text = text.strip()
    if not text:
        raise ResolveError("empty selector")
    if _INDEX_EXPR.match(text):
        return IndexSelector(_parse_indices(text))
    if len(text) >= 2 and text.startswith("/") and text.endswith("/"):
        try:
            return PatternSelector(re.compile(text[1:-1]), text)
        except re.error as exc:
            raise ResolveError(f"invalid regular expression '{text}': {exc}") from exc
    if _GLOB_CHARS & set(text):
        return PatternSelector(re.compile(r"\A" + fnmatch.translate(text)), text)
    return NameSelector(text)
