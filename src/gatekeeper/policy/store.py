"""
Concurrency-safe store of loaded policies.

Readers never block: the store publishes an immutable snapshot and every
write replaces that snapshot with a single reference assignment. A reader
that grabbed the previous snapshot keeps evaluating against it, so one
evaluation never sees a mix of old and new grants for the same source.

Writers (initial load, watcher reloads and removals) are serialized by a
lock so that concurrent updates of different sources cannot lose each
other.
"""

import threading
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Iterator, Mapping

from gatekeeper.schema import Policy


@dataclass(frozen=True)
class _Snapshot:
    by_source: Mapping[str, Policy] = field(default_factory=lambda: MappingProxyType({}))
    # Evaluation order: source id ascending
    ordered: tuple[Policy, ...] = ()


def _build_snapshot(entries: dict[str, Policy]) -> _Snapshot:
    return _Snapshot(
        by_source=MappingProxyType(entries),
        ordered=tuple(entries[key] for key in sorted(entries)),
    )


class PolicyStore:
    """
    Mapping from source id to the most recently published Policy.

    Usage:
        store = PolicyStore()
        store.put(policy)
        for policy in store.snapshot():
            ...
        store.remove(policy.source_id)
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._snapshot = _Snapshot()

    def put(self, policy: Policy) -> None:
        """Publish a policy, replacing any previous entry for its source."""
        if not policy.source_id:
            msg = "Cannot store a policy without a source_id"
            raise ValueError(msg)

        with self._lock:
            entries = dict(self._snapshot.by_source)
            entries[policy.source_id] = policy
            self._snapshot = _build_snapshot(entries)

    def remove(self, source_id: str) -> bool:
        """
        Delete the entry for a source.

        Returns:
            True if an entry was removed, False if the source was unknown
        """
        with self._lock:
            if source_id not in self._snapshot.by_source:
                return False
            entries = dict(self._snapshot.by_source)
            del entries[source_id]
            self._snapshot = _build_snapshot(entries)
            return True

    def clear(self) -> None:
        """Drop every entry."""
        with self._lock:
            self._snapshot = _Snapshot()

    def get(self, source_id: str) -> Policy | None:
        """Current policy for a source, if any."""
        return self._snapshot.by_source.get(source_id)

    def snapshot(self) -> tuple[Policy, ...]:
        """All current policies in evaluation order."""
        return self._snapshot.ordered

    def source_ids(self) -> list[str]:
        """Sorted ids of all stored sources."""
        return [policy.source_id for policy in self._snapshot.ordered]

    def __len__(self) -> int:
        return len(self._snapshot.ordered)

    def __contains__(self, source_id: object) -> bool:
        return source_id in self._snapshot.by_source

    def __iter__(self) -> Iterator[Policy]:
        return iter(self._snapshot.ordered)
