"""
Include/exclude filter expressions used for tool and context selection.

Syntax (comma or whitespace separated, case-insensitive):

- ``""`` or ``"*"``  -- include everything
- ``"-*"``           -- exclude everything (overrides any other token)
- ``"a, b"``         -- include only ``a`` and ``b``
- ``"*, -b"``/``"-b"`` -- include everything except ``b``
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

EXCLUDE_ALL = "-*"
INCLUDE_ALL = "*"


@dataclass(frozen=True)
class Filter:
    exclude_all: bool = False
    include_all: bool = True
    include: frozenset[str] = field(default_factory=frozenset)
    exclude: frozenset[str] = field(default_factory=frozenset)

    @classmethod
    def parse(cls, raw: str | None) -> Filter:
        if raw is None or not raw.strip():
            return cls()

        parts = [p.strip().lower() for p in re.split(r"[,\s]+", raw) if p.strip()]
        if EXCLUDE_ALL in parts:
            return cls(exclude_all=True, include_all=False)

        includes = [p for p in parts if not p.startswith("-")]
        excludes = [p[1:] for p in parts if p.startswith("-") and p != EXCLUDE_ALL]
        include_all = INCLUDE_ALL in includes or not includes
        return cls(
            exclude_all=False,
            include_all=include_all,
            include=frozenset(p for p in includes if p != INCLUDE_ALL),
            exclude=frozenset(excludes),
        )

    def allows(self, key: str) -> bool:
        if self.exclude_all:
            return False
        k = key.lower()
        if k in self.exclude:
            return False
        if self.include_all:
            return True
        return k in self.include


def allows(raw: str | None, key: str) -> bool:
    """Shortcut for ``Filter.parse(raw).allows(key)``."""
    return Filter.parse(raw).allows(key)
