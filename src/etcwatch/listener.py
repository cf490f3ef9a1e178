from __future__ import annotations

import logging
from typing import Dict, Optional, Sequence, Tuple
import warnings

from .errors import KeyTruncatedWarning
from .queue import DispatchQueue
from .types import KeySegments, QueueEntry

__all__ = (
    'MAX_KEY_SEGMENTS',
    'Listener',
)

log = logging.getLogger(__name__)

MAX_KEY_SEGMENTS = 16


class Listener:
    """
    A registration for keys under `path`, relative to the watch prefix.

    Keys delivered to the queue have `path` stripped and are split into
    segments. `remap[i]` names the output slot of the i-th segment; segments
    past the end of `remap` keep their natural position.
    """
    path: str
    remap: Tuple[int, ...]
    queue: DispatchQueue
    sending: int

    _was_empty: bool

    def __init__(self, path: str, remap: Optional[Sequence[int]] = None) -> None:
        self.path = path.strip('/')
        self.remap = tuple(remap or ())
        if len(self.remap) > MAX_KEY_SEGMENTS:
            raise ValueError(f'remap is longer than {MAX_KEY_SEGMENTS} segments: {self.remap!r}')
        if sorted(self.remap) != list(range(len(self.remap))):
            raise ValueError(f'remap must be a permutation of 0..{len(self.remap) - 1}: {self.remap!r}')
        self.queue = DispatchQueue()
        self.sending = 0
        self._was_empty = False

    def __repr__(self) -> str:
        return f'<Listener path={self.path!r} remap={self.remap!r}>'

    def matches(self, key: str) -> bool:
        if not self.path:
            return True
        if not key.startswith(self.path):
            return False
        return len(key) == len(self.path) or key[len(self.path)] == '/'

    def _slot(self, pos: int) -> int:
        if pos < len(self.remap):
            return self.remap[pos]
        return pos

    def build_key(self, key: str, extra: Optional[str] = None) -> KeySegments:
        """
        Splits `key` (already relative to this listener) into segments and
        reorders them. `extra` is appended after the last real segment.
        """
        segments = [s for s in key.split('/') if s]
        if len(segments) > MAX_KEY_SEGMENTS or (
            extra is not None and len(segments) == MAX_KEY_SEGMENTS
        ):
            log.error(
                "Key %r for listener %r exceeds %d segments, truncating",
                key, self.path, MAX_KEY_SEGMENTS)
            warnings.warn(
                f'key {key!r} exceeds {MAX_KEY_SEGMENTS} segments',
                KeyTruncatedWarning, stacklevel=2)
            segments = segments[:MAX_KEY_SEGMENTS]

        slots: Dict[int, str] = {}
        for pos, segment in enumerate(segments):
            slots[self._slot(pos)] = segment
        if extra is not None and len(segments) < MAX_KEY_SEGMENTS:
            pos = len(segments)
            # A lone marker such as flush stays in slot 0.
            slots[self._slot(pos) if pos > 0 else 0] = extra
        return tuple(slots[slot] for slot in sorted(slots))

    def deliver(self, key: str, extra: Optional[str], value: str, index: int, serial: int) -> None:
        """
        Queues an event for `key`, relative to this listener's path.

        The first delivery of a response (identified by `serial`) opens a
        batch on the queue; `finish()` commits it.
        """
        segments = self.build_key(key, extra)
        if not segments:
            return
        if self.sending != serial:
            self.sending = serial
            self._was_empty = self.queue.begin()
        self.queue.insert(QueueEntry(segments, value, index))

    def finish(self, serial: int) -> None:
        if self.sending == serial:
            self.queue.commit(self._was_empty)
            self.sending = 0
