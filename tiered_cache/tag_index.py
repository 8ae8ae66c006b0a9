"""In-process secondary index mapping tags to the keys that carry them."""

from __future__ import annotations

import builtins
from collections import defaultdict
from collections.abc import Iterable


class TagIndex:
    """Tag -> keys index.

    Not synchronized on its own; the owning store mutates it inside the same
    critical section as the entry it describes.
    """

    def __init__(self) -> None:
        self._keys_by_tag: defaultdict[str, builtins.set[str]] = defaultdict(set)

    def add(self, key: str, tags: Iterable[str]) -> None:
        for tag in tags:
            self._keys_by_tag[tag].add(key)

    def remove(self, key: str, tags: Iterable[str]) -> None:
        for tag in tags:
            keys = self._keys_by_tag.get(tag)
            if keys is None:
                continue
            keys.discard(key)
            if not keys:
                del self._keys_by_tag[tag]

    def keys_with_tag(self, tag: str) -> builtins.set[str]:
        return set(self._keys_by_tag.get(tag, ()))

    def tags(self) -> builtins.set[str]:
        return set(self._keys_by_tag)

    def clear(self) -> None:
        self._keys_by_tag.clear()

    def __len__(self) -> int:
        return len(self._keys_by_tag)


def tag_set(tags: Iterable[str] | str | None) -> frozenset[str]:
    """Normalize a tags argument; a bare string is one tag, not its characters."""
    if tags is None:
        return frozenset()
    if isinstance(tags, str):
        return frozenset((tags,))
    return frozenset(tags)
