"""Entity access control: glob patterns for hidden entities plus writable domains."""

from __future__ import annotations

import functools
import re
from collections.abc import Iterable


@functools.lru_cache(maxsize=512)
def _glob_to_regex(pattern: str) -> re.Pattern[str]:
    """Compile a ``*``-only glob (``"lock.front_*"``) to an anchored regex."""
    return re.compile("^" + ".*".join(re.escape(part) for part in pattern.split("*")) + "$")


def matches_any_pattern(value: str, patterns: Iterable[str]) -> bool:
    """Return whether *value* matches any glob in *patterns*.

    Only ``*`` is special. Matching is case-sensitive. An empty pattern list
    matches nothing; the lone pattern ``"*"`` matches everything.
    """
    for pattern in patterns:
        if pattern == "*" or _glob_to_regex(pattern).match(value):
            return True
    return False


def is_wildcard_only(patterns: list[str]) -> bool:
    """True when *patterns* is empty or just ``["*"]`` (i.e. no narrowing)."""
    return not patterns or patterns == ["*"]


def entity_domain(entity_id: str) -> str:
    return entity_id.split(".", 1)[0]


class EntityACL:
    """Blocked-entity globs and writable domains.

    Blocked entities are invisible for reads and refused for writes. Writes
    additionally require the entity's domain to be listed in
    ``writable_domains``; an empty list means read-only.
    """

    def __init__(
        self,
        blocked_entities: Iterable[str] = (),
        writable_domains: Iterable[str] = (),
    ) -> None:
        self.blocked_entities = list(blocked_entities)
        self.writable_domains = {domain.lower() for domain in writable_domains}

    def is_blocked(self, entity_id: str) -> bool:
        return matches_any_pattern(entity_id, self.blocked_entities)

    def is_writable(self, entity_id: str) -> bool:
        if self.is_blocked(entity_id):
            return False
        return entity_domain(entity_id).lower() in self.writable_domains
