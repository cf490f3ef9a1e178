import asyncio
from collections import deque
import os
import threading
import time
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional

import httpx
import pytest

from etcwatch import DispatchQueue, EtcdWatcher, HostPortPair, QueueEntry

FAKE_ETCD_URL = 'http://etcd.test'


class FakeEtcd:
    """
    Serves the read side of the etcd v2 keys API through `httpx.MockTransport`.

    Plain GETs answer from `trees`; long polls block until an event is pushed.
    """
    index: int
    requests: List[httpx.Request]

    def __init__(self, index: int = 1) -> None:
        self.index = index
        self.requests = []
        self._lock = threading.Lock()
        self._trees: Dict[str, Mapping[str, Any]] = {}
        self._events: Deque[httpx.Response] = deque()
        self._replies: Deque[Callable[[httpx.Request], httpx.Response]] = deque()
        self.transport = httpx.MockTransport(self.handler)

    def set_tree(self, key: str, node: Mapping[str, Any]) -> None:
        with self._lock:
            self._trees[key] = {'action': 'get', 'node': node}

    def push_event(self, action: str, node: Mapping[str, Any]) -> None:
        self.push_reply(httpx.Response(200, json={'action': action, 'node': node}))

    def push_reply(self, response: httpx.Response) -> None:
        with self._lock:
            self._events.append(response)

    def fail_next(self, reply: Callable[[httpx.Request], httpx.Response], count: int = 1) -> None:
        """
        Answers the next `count` requests of any kind with `reply`.
        """
        with self._lock:
            self._replies.extend([reply] * count)

    def _headers(self) -> Dict[str, str]:
        return {'X-Etcd-Index': str(self.index)}

    async def handler(self, request: httpx.Request) -> httpx.Response:
        with self._lock:
            self.requests.append(request)
            reply = self._replies.popleft() if self._replies else None
        if reply is not None:
            return reply(request)
        if request.url.params.get('wait') == 'true':
            while True:
                with self._lock:
                    if self._events:
                        return self._events.popleft()
                await asyncio.sleep(0.01)
        key = request.url.path.removeprefix('/v2/keys')
        with self._lock:
            body = self._trees.get(key)
        if body is None:
            return httpx.Response(
                404, headers=self._headers(),
                json={'errorCode': 100, 'message': 'Key not found', 'cause': key, 'index': self.index})
        return httpx.Response(200, headers=self._headers(), json=body)

    def matching(self, predicate: Callable[[httpx.Request], bool]) -> List[httpx.Request]:
        with self._lock:
            return [r for r in self.requests if predicate(r)]

    def wait_for_requests(
        self, predicate: Callable[[httpx.Request], bool],
        count: int = 1, timeout: float = 5.0,
    ) -> List[httpx.Request]:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            found = self.matching(predicate)
            if len(found) >= count:
                return found
            time.sleep(0.01)
        raise AssertionError(f'expected {count} matching requests, got {self.requests!r}')


def is_watch(request: httpx.Request) -> bool:
    return request.url.params.get('wait') == 'true'


def is_fetch(request: httpx.Request) -> bool:
    return request.url.params.get('wait') is None


@pytest.fixture
def etcd_addr():
    env_addr = os.environ.get('BACKEND_ETCD_ADDR')
    if env_addr is not None:
        return HostPortPair.parse(env_addr)
    return None


@pytest.fixture
def fake_etcd():
    return FakeEtcd()


@pytest.fixture
def make_watcher(fake_etcd):
    watchers: List[EtcdWatcher] = []

    def _make(prefix: str = '/service/', **kwargs) -> EtcdWatcher:
        watcher = EtcdWatcher(prefix, FAKE_ETCD_URL, transport=fake_etcd.transport, **kwargs)
        watcher.multiwait = 0.05
        watcher.initial_backoff = 0.01
        watcher.max_backoff = 0.04
        watchers.append(watcher)
        return watcher

    try:
        yield _make
    finally:
        for watcher in watchers:
            watcher.close()


@pytest.fixture
def drain_until():
    def _drain(
        queue: DispatchQueue,
        predicate: Callable[[List[QueueEntry]], bool],
        timeout: float = 5.0,
    ) -> List[QueueEntry]:
        entries: List[QueueEntry] = []
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            entries.extend(queue.wait(50))
            if predicate(entries):
                return entries
        raise AssertionError(f'timed out waiting on queue, got {entries!r}')
    return _drain


def leaf(key: str, value: str, index: int) -> Dict[str, Any]:
    return {'key': key, 'value': value, 'modifiedIndex': index, 'createdIndex': index}


def directory(key: Optional[str], nodes: List[Dict[str, Any]], index: int = 1) -> Dict[str, Any]:
    node: Dict[str, Any] = {'dir': True, 'nodes': nodes, 'modifiedIndex': index, 'createdIndex': index}
    if key is not None:
        node['key'] = key
    return node
