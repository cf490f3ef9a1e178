"""
Translation of etcd's hierarchical node tree into flat key events.
"""

from __future__ import annotations

import logging
from typing import Optional, Protocol

from .types import EtcdNode, EtcdResponse

__all__ = (
    'DELETE_MARKER',
    'FLUSH_MARKER',
    'EventSink',
    'EventTreeWalker',
)

log = logging.getLogger(__name__)

DELETE_MARKER = 'delete'
FLUSH_MARKER = 'flush'


class EventSink(Protocol):
    def __call__(self, key: str, extra: Optional[str], value: str, index: int) -> None:
        ...


class EventTreeWalker:
    """
    Walks an etcd v2 response below `prefix`, passing every leaf to `sink`
    with its key relative to the prefix, and folds every visited node's
    `modifiedIndex + 1` into `wait_index`.

    For delete and expire actions the response node is passed as a tombstone
    (`extra` set to ``"delete"`` and an empty value) and its children are not
    walked.
    """
    prefix: str
    wait_index: int
    sink: EventSink

    def __init__(self, prefix: str, sink: EventSink, wait_index: int = 0) -> None:
        self.prefix = prefix
        self.sink = sink
        self.wait_index = wait_index

    def _update_index(self, node: EtcdNode) -> None:
        if node.modified_index >= self.wait_index:
            self.wait_index = node.modified_index + 1

    def _inside(self, node: EtcdNode) -> bool:
        return node.key is not None and node.key.startswith(self.prefix)

    def walk(self, response: EtcdResponse) -> int:
        """
        Returns
        -------
        wait_index: int
            The folded wait index after visiting the whole response.
        """
        if response.node is None:
            log.debug("Response %r carries no node", response.action)
        elif response.is_delete:
            self._walk_delete(response.node)
        else:
            self._walk_node(response.node)
        return self.wait_index

    def _walk_node(self, node: EtcdNode) -> None:
        inside = self._inside(node)
        self._update_index(node)

        if not node.dir:
            if not inside:
                return
            assert node.key is not None
            self.sink(node.key[len(self.prefix):], None, node.value or '', self.wait_index)

        if inside or node.key is None or self.prefix.startswith(node.key):
            for child in node.nodes:
                self._walk_node(child)

    def _walk_delete(self, node: EtcdNode) -> None:
        self._update_index(node)
        if not self._inside(node):
            return
        assert node.key is not None
        self.sink(node.key[len(self.prefix):], DELETE_MARKER, '', self.wait_index)
