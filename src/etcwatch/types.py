from __future__ import annotations

from dataclasses import dataclass, field
import enum
from typing import Any, List, Mapping, Optional, Tuple, TYPE_CHECKING
if TYPE_CHECKING:
    from typing_extensions import TypeAlias

from .errors import EtcdProtocolError

__all__ = (
    'FetchMode',
    'HostPortPair',
    'EtcdNode',
    'EtcdResponse',
    'EtcdResult',
    'QueueEntry',
    'KeySegments',
    'DrainedItem',
)

KeySegments: TypeAlias = Tuple[str, ...]
DrainedItem: TypeAlias = Tuple[KeySegments, str]


class FetchMode(enum.Enum):
    FULL_FETCH = 0
    LONG_POLL = 1
    CATCHUP_FETCH = 2


@dataclass
class HostPortPair:
    host: str
    port: int

    def __str__(self):
        return f'{self.host}:{self.port}'

    @property
    def url(self) -> str:
        return f'http://{self}'

    @classmethod
    def parse(cls, s: str) -> HostPortPair:
        if ':' in s:
            host, port_str = s.rsplit(':', 1)
            port = int(port_str)
        else:
            host = s
            port = 2379
        return cls(host, port)


def _get_int(data: Mapping[str, Any], name: str) -> int:
    value = data.get(name, 0)
    if isinstance(value, bool) or not isinstance(value, int):
        raise EtcdProtocolError(f'{name} is not an integer: {value!r}')
    return value


@dataclass
class EtcdNode:
    key: Optional[str] = None
    dir: bool = False
    value: Optional[str] = None
    modified_index: int = 0
    nodes: List[EtcdNode] = field(default_factory=list)

    @classmethod
    def parse(cls, data: Any) -> EtcdNode:
        if not isinstance(data, Mapping):
            raise EtcdProtocolError(f'node is not an object: {data!r}')
        key = data.get('key')
        if key is not None and not isinstance(key, str):
            raise EtcdProtocolError(f'key is not a string: {key!r}')
        value = data.get('value')
        if value is not None and not isinstance(value, str):
            raise EtcdProtocolError(f'value is not a string: {value!r}')
        children = data.get('nodes') or []
        if not isinstance(children, list):
            raise EtcdProtocolError(f'nodes is not an array: {children!r}')
        return cls(
            key=key,
            dir=data.get('dir') is True,
            value=value,
            modified_index=_get_int(data, 'modifiedIndex'),
            nodes=[cls.parse(child) for child in children],
        )


@dataclass
class EtcdResponse:
    """
    Decoded body of an etcd v2 keys API reply.
    """
    action: str
    node: Optional[EtcdNode] = None

    @property
    def is_delete(self) -> bool:
        return self.action in ('delete', 'expire', 'compareAndDelete')

    @classmethod
    def parse(cls, data: Any) -> EtcdResponse:
        if not isinstance(data, Mapping):
            raise EtcdProtocolError(f'response is not an object: {data!r}')
        action = data.get('action')
        if not isinstance(action, str):
            raise EtcdProtocolError(f'response has no action: {data!r}')
        node = data.get('node')
        return cls(
            action=action,
            node=EtcdNode.parse(node) if node is not None else None,
        )


@dataclass
class EtcdResult:
    response: EtcdResponse
    etcd_index: Optional[int]
    status_code: int


@dataclass(frozen=True)
class QueueEntry:
    key: KeySegments
    value: str
    index: int = 0

    def as_pair(self) -> DrainedItem:
        return (self.key, self.value)
