"""
Service discovery on top of `EtcdWatcher`.

Services register under `{prefix}{service}/{host}/{key}`, for example
`/service/search/asearch/foo/config`. A connection listens on the service
path with the first two segments swapped, so every entry key reads
`(key, host)`, and decodes entries into `ServiceMessage`s.
"""

from __future__ import annotations

from dataclasses import dataclass
import enum
import logging
from typing import List, Optional

from .queue import DispatchQueue
from .types import QueueEntry
from .walker import DELETE_MARKER, FLUSH_MARKER
from .watcher import EtcdWatcher

__all__ = (
    'SERVICE_REMAP',
    'ServiceMessageType',
    'ServiceMessage',
    'ServiceConnection',
    'ServiceSource',
)

log = logging.getLogger(__name__)

SERVICE_REMAP = (1, 0)


class ServiceMessageType(enum.Enum):
    UPDATE = 0
    DELETE = 1
    FLUSH = 2


@dataclass(frozen=True)
class ServiceMessage:
    type: ServiceMessageType
    host: str = ''
    key: str = ''
    value: str = ''
    index: int = 0

    @classmethod
    def from_entry(cls, entry: QueueEntry) -> ServiceMessage:
        """
        Decodes an entry received with `SERVICE_REMAP`.

        A host directory deletion arrives as `("delete", host)` and decodes to
        a `DELETE` with an empty `key`. Deleting the service directory itself
        arrives as `("delete",)` and decodes to a `DELETE` with an empty `host`.
        """
        key = entry.key
        if key == (FLUSH_MARKER,):
            return cls(ServiceMessageType.FLUSH, index=entry.index)
        if key == (DELETE_MARKER,):
            return cls(ServiceMessageType.DELETE, index=entry.index)
        if len(key) == 1:
            return cls(ServiceMessageType.UPDATE, host=key[0], value=entry.value, index=entry.index)
        if key[0] == DELETE_MARKER and len(key) == 2:
            return cls(ServiceMessageType.DELETE, host=key[1], index=entry.index)
        host = key[1]
        rest = [key[0], *key[2:]]
        if len(key) > 2 and key[-1] == DELETE_MARKER:
            return cls(ServiceMessageType.DELETE, host=host, key='/'.join(rest[:-1]), index=entry.index)
        return cls(
            ServiceMessageType.UPDATE, host=host, key='/'.join(rest),
            value=entry.value, index=entry.index)


class ServiceConnection:
    service: str
    queue: DispatchQueue

    _source: Optional[ServiceSource]

    def __init__(self, source: ServiceSource, service: str, queue: DispatchQueue) -> None:
        self._source = source
        self.service = service
        self.queue = queue

    def __repr__(self) -> str:
        return f'<ServiceConnection {self.service!r}>'

    def __enter__(self) -> ServiceConnection:
        return self

    def __exit__(self, exc_type, exc, tb) -> Optional[bool]:
        self.close()
        return False

    def messages(self, timeout_ms: Optional[int]) -> List[ServiceMessage]:
        """
        Waits up to `timeout_ms` for changes to the service.
        Only the latest value of each key is returned.
        """
        return [ServiceMessage.from_entry(entry) for entry in self.queue.wait(timeout_ms)]

    def close(self) -> None:
        if self._source is None:
            return
        self._source.disconnect(self)
        self._source = None


class ServiceSource:
    """
    Hands out one `ServiceConnection` per service, all sharing `watcher`.
    """
    watcher: EtcdWatcher

    def __init__(self, watcher: EtcdWatcher) -> None:
        self.watcher = watcher

    def connect(self, service: str) -> ServiceConnection:
        queue = self.watcher.add_listener(service, SERVICE_REMAP)
        log.debug("Connected to service %r", service)
        return ServiceConnection(self, service, queue)

    def disconnect(self, conn: ServiceConnection) -> None:
        if not self.watcher.remove_listener(conn.queue):
            log.warning("Service %r was not connected", conn.service)
        else:
            log.debug("Disconnected from service %r", conn.service)
