"""
Per-listener mailbox of pending key/value events.
"""

from __future__ import annotations

from collections import OrderedDict
import contextlib
import threading
from typing import Iterator, List, Optional

from .types import KeySegments, QueueEntry

__all__ = (
    'DispatchQueue',
)


class DispatchQueue:
    """
    Thread-safe coalescing queue shared between the watcher thread (producer)
    and one or more consumer threads (drainers).

    At most one entry per key tuple is pending at any time. Inserting a key
    that is already pending replaces the old entry, and the new entry moves to
    the tail, so a drain only ever sees the latest value of a key.

    Inserts happen in batches::

        was_empty = queue.begin()
        try:
            queue.insert(entry)
            ...
        finally:
            queue.commit(was_empty)

    Drainers are only woken when a batch moves the queue from empty to
    non-empty.
    """
    _cond: threading.Condition
    _entries: OrderedDict[KeySegments, QueueEntry]
    _closed: bool

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._entries = OrderedDict()
        self._closed = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._entries)

    def __repr__(self) -> str:
        return f'<DispatchQueue pending={len(self._entries)} closed={self._closed}>'

    @property
    def closed(self) -> bool:
        return self._closed

    def begin(self) -> bool:
        """
        Acquires exclusive access to the queue.

        Returns
        -------
        was_empty: bool
            Whether the queue had no pending entries. Must be passed to `commit()`.
        """
        self._cond.acquire()
        return not self._entries

    def insert(self, entry: QueueEntry) -> None:
        """
        Appends `entry` at the tail, dropping any pending entry with the same key.
        Only valid between `begin()` and `commit()`.
        """
        if self._closed:
            return
        self._entries.pop(entry.key, None)
        self._entries[entry.key] = entry

    def commit(self, was_empty: bool) -> None:
        """
        Releases exclusive access, waking blocked drainers if the batch
        started on an empty queue.
        """
        try:
            if was_empty and self._entries:
                self._cond.notify_all()
        finally:
            self._cond.release()

    @contextlib.contextmanager
    def batch(self) -> Iterator[DispatchQueue]:
        was_empty = self.begin()
        try:
            yield self
        finally:
            self.commit(was_empty)

    def put(self, entry: QueueEntry) -> None:
        with self.batch():
            self.insert(entry)

    def wait(self, timeout_ms: Optional[int]) -> List[QueueEntry]:
        """
        Blocks until at least one entry is pending or `timeout_ms` elapses,
        then detaches and returns every pending entry in queue order.

        Parameters
        ---------
        timeout_ms
            Maximum number of milliseconds to block.
            `None` blocks until an entry arrives or the queue is closed.

        Returns
        -------
        entries: List[QueueEntry]
            The pending entries, oldest position first.
            Empty on timeout or when the queue is closed.
        """
        timeout = timeout_ms / 1000 if timeout_ms is not None else None
        with self._cond:
            self._cond.wait_for(lambda: self._entries or self._closed, timeout=timeout)
            entries = list(self._entries.values())
            self._entries.clear()
        return entries

    def close(self) -> None:
        """
        Discards pending entries and wakes every drainer.
        Entries inserted afterwards are dropped.
        """
        with self._cond:
            self._closed = True
            self._entries.clear()
            self._cond.notify_all()
