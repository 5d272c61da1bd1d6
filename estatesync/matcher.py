from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Generic, Hashable, Iterable, Mapping, TypeVar

from estatesync.errors import RecordResolutionError

T = TypeVar("T")

KeyFn = Callable[[T], "Hashable | None"]


@dataclass
class MatchResult(Generic[T]):
    creates: list[T] = field(default_factory=list)
    matched_pairs: list[tuple[T, T]] = field(default_factory=list)


def match(
    current: Iterable[T],
    imported: Iterable[T],
    key_fn: KeyFn,
    current_key_fn: KeyFn | None = None,
) -> MatchResult[T]:
    """Pair imported records with live ones by natural key.

    ``matched_pairs`` holds ``(live, imported)`` tuples. A key of ``None`` means
    the record can never match (its parent is still pending) and it becomes a
    create. Imported order is preserved in both lists.
    """
    current_key_fn = current_key_fn or key_fn
    index: dict[Hashable, T] = {}
    for record in current:
        key = current_key_fn(record)
        if key is None:
            continue
        # First live record wins when keys collide.
        index.setdefault(key, record)

    result: MatchResult[T] = MatchResult()
    for record in imported:
        key = key_fn(record)
        live = index.get(key) if key is not None else None
        if live is None:
            result.creates.append(record)
        else:
            result.matched_pairs.append((live, record))
    return result


class PendingParent(Exception):
    """Raised while keying a record whose parent is created by the same import."""


class ReferenceResolver:
    """Maps snapshot ids onto live ids, kind by kind, as parents are matched."""

    def __init__(self, live_ids: Mapping[str, Iterable[str]] | None = None) -> None:
        self._live_ids: dict[str, set[str]] = {kind: set(ids) for kind, ids in (live_ids or {}).items()}
        self._remap: dict[str, dict[str, str]] = {}
        self._pending: dict[str, set[str]] = {}

    def register(self, kind: str, old_id: str, live_id: str) -> None:
        if not old_id:
            return
        self._remap.setdefault(kind, {})[old_id] = live_id

    def mark_pending(self, kind: str, old_id: str) -> None:
        if old_id:
            self._pending.setdefault(kind, set()).add(old_id)

    def add_live(self, kind: str, live_id: str) -> None:
        self._live_ids.setdefault(kind, set()).add(live_id)

    def mapped(self, kind: str, reference: str) -> str | None:
        return self._remap.get(kind, {}).get(reference)

    def translate(self, kind: str, reference: str) -> str:
        return self.mapped(kind, reference) or reference

    def resolve(self, kind: str, reference: str, *, child_kind: str, identifier: str) -> str:
        mapped = self.mapped(kind, reference)
        if mapped:
            return mapped
        if reference in self._pending.get(kind, ()):
            raise PendingParent(f"{kind}:{reference}")
        if reference in self._live_ids.get(kind, ()):
            return reference
        raise RecordResolutionError(child_kind, identifier, kind, reference)

    def remap_table(self) -> dict[str, dict[str, str]]:
        return {kind: dict(values) for kind, values in self._remap.items()}
