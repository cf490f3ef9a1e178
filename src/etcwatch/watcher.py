"""
Background watcher of an etcd v2 subtree.

One `EtcdWatcher` owns one thread running its own asyncio event loop. The loop
long-polls etcd, walks every response into key events and fans them out to
the registered listeners' queues. Consumers drain those queues from their own
threads.
"""

from __future__ import annotations

import asyncio
import logging
import ssl
import threading
from typing import List, Optional, Sequence, Tuple, Union

import httpx

from .client import DEFAULT_REQUEST_TIMEOUT, EtcdV2Client
from .config import DEFAULT_POLL_TIMEOUT, WatcherConfig
from .errors import (
    EtcdEventIndexClearedError, EtcdKeyNotFoundError, EtcdReadTimeoutError,
    EtcwatchError, WatcherStartError,
)
from .listener import Listener
from .queue import DispatchQueue
from .types import DrainedItem, EtcdResponse, EtcdResult, FetchMode, HostPortPair
from .walker import FLUSH_MARKER, EventTreeWalker

__all__ = (
    'EtcdWatcher',
)

log = logging.getLogger(__name__)

# Longest time the watcher thread blocks before re-checking timers and stop.
MULTIWAIT = 2.0
INITIAL_BACKOFF = 0.5
MAX_BACKOFF = 8.0


class EtcdWatcher:
    """
    Watches every key below `prefix` on the etcd server at `server_url` and
    republishes changes to listeners.

    Listeners can be added and removed from any thread, before or after
    `start()`::

        watcher = EtcdWatcher('/service/', 'http://localhost:2379')
        queue = watcher.add_listener('search/asearch', (1, 0))
        watcher.start()
        for key, value in watcher.drain(queue, 1000):
            ...
        watcher.stop()
    """
    prefix: str
    server_url: str
    flush_period: float
    poll_timeout: float
    request_timeout: float
    wait_index: int
    running: bool

    multiwait: float
    initial_backoff: float
    max_backoff: float

    _transport: Optional[httpx.AsyncBaseTransport]
    _verify: Union[bool, ssl.SSLContext]
    _lock: threading.Lock
    _listeners: List[Listener]
    _pending: List[Listener]
    _serial: int
    _thread: Optional[threading.Thread]
    _loop: Optional[asyncio.AbstractEventLoop]
    _wakeup: Optional[asyncio.Event]

    def __init__(
        self,
        prefix: str,
        server_url: Union[str, HostPortPair],
        flush_period: float = 0,
        poll_timeout: float = DEFAULT_POLL_TIMEOUT,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        verify: Union[bool, ssl.SSLContext] = True,
    ) -> None:
        """
        Creates `EtcdWatcher` instance. Nothing is fetched until `start()`.

        Parameters
        ---------
        prefix
            Absolute key prefix to watch. Should start with `/`, and end with
            `/` when it names a directory.
        server_url
            Base URL of the etcd HTTP endpoint.
        flush_period
            Seconds between full resyncs. `0` disables them.
        poll_timeout
            Seconds before an idle long poll is reissued.
        request_timeout
            Seconds to wait for a full fetch.
        transport
            Optional `httpx` transport used by the watcher thread.
        verify
            TLS verification setting passed to `httpx`.
        """
        if isinstance(server_url, HostPortPair):
            server_url = server_url.url
        self.prefix = prefix
        self.server_url = server_url.rstrip('/')
        self.flush_period = flush_period
        self.poll_timeout = poll_timeout
        self.request_timeout = request_timeout
        self.wait_index = 0
        self.running = False

        self.multiwait = MULTIWAIT
        self.initial_backoff = INITIAL_BACKOFF
        self.max_backoff = MAX_BACKOFF

        self._transport = transport
        self._verify = verify
        self._lock = threading.Lock()
        self._listeners = []
        self._pending = []
        self._serial = 0
        self._thread = None
        self._loop = None
        self._wakeup = None

    @classmethod
    def from_config(
        cls,
        config: WatcherConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> EtcdWatcher:
        return cls(
            config.prefix, config.server_url,
            flush_period=config.flush_period,
            poll_timeout=config.poll_timeout,
            request_timeout=config.request_timeout,
            transport=transport,
            verify=config.verify,
        )

    def __repr__(self) -> str:
        return f'<EtcdWatcher {self.server_url}{self.prefix} running={self.running}>'

    def __enter__(self) -> EtcdWatcher:
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> Optional[bool]:
        self.stop()
        return False

    @property
    def listeners(self) -> Tuple[Listener, ...]:
        with self._lock:
            return tuple(self._listeners)

    @property
    def pending_listeners(self) -> Tuple[Listener, ...]:
        with self._lock:
            return tuple(self._pending)

    def set_flush_period(self, seconds: float) -> None:
        self.flush_period = seconds

    def start(self) -> bool:
        """
        Starts the watcher thread. Calling it on a running watcher is a no-op.

        Raises
        -------
        WatcherStartError
            When the thread could not be created.
        """
        if self.running:
            return True
        loop = asyncio.new_event_loop()
        thread = threading.Thread(
            target=self._thread_main, args=(loop,),
            name=f'etcwatch{self.prefix}', daemon=True)
        with self._lock:
            # Left over from registrations racing a previous stop().
            self._listeners.extend(self._pending)
            self._pending.clear()
            self._loop = loop
            self._wakeup = asyncio.Event()
            self._thread = thread
            self.running = True
        try:
            thread.start()
        except RuntimeError as e:
            with self._lock:
                self.running = False
                self._loop = None
                self._wakeup = None
                self._thread = None
            loop.close()
            log.critical("Failed to start watcher thread for %s: %s", self.prefix, e)
            raise WatcherStartError(str(e)) from e
        log.info("Started watching %s%s", self.server_url, self.prefix)
        return True

    def stop(self) -> None:
        """
        Stops the watcher thread and waits for it to exit.
        No listener queue is written to after this returns.
        """
        with self._lock:
            if not self.running:
                return
            self.running = False
            thread = self._thread
        self._notify()
        if thread is not None:
            thread.join()
        with self._lock:
            self._thread = None
            self._loop = None
            self._wakeup = None
        log.info("Stopped watching %s%s at index %d", self.server_url, self.prefix, self.wait_index)

    def close(self) -> None:
        """
        Stops the watcher and closes every listener queue.
        """
        self.stop()
        with self._lock:
            for listener in (*self._pending, *self._listeners):
                listener.queue.close()
            self._pending.clear()
            self._listeners.clear()

    def add_listener(self, path: str, remap: Optional[Sequence[int]] = None) -> DispatchQueue:
        """
        Registers interest in keys below `path`, relative to the watch prefix.

        If the watcher is running, the listener is adopted by the watcher
        thread, which first fetches the listener's whole subtree.

        Parameters
        ---------
        path
            Relative path to filter on. `""` receives every key.
        remap
            Optional segment reordering: `remap[i]` is the output position of
            the i-th key segment. Must be a permutation of `0..len(remap)-1`.

        Returns
        -------
        queue: DispatchQueue
            The queue events are delivered to. Pass it to `drain()` and
            `remove_listener()`.

        Raises
        -------
        ValueError
            When `remap` is not a valid permutation.
        """
        listener = Listener(path, remap)
        with self._lock:
            if not self.running:
                self._listeners.append(listener)
                return listener.queue
            self._pending.append(listener)
        if not self._notify():
            log.critical(
                "Listener %r stays pending until the watcher thread wakes up again",
                listener.path)
        return listener.queue

    def remove_listener(self, queue: DispatchQueue) -> bool:
        """
        Unregisters the listener owning `queue` and closes the queue.

        Returns
        -------
        removed: bool
            `False` if no listener owns `queue`.
        """
        with self._lock:
            for listeners in (self._pending, self._listeners):
                for idx, listener in enumerate(listeners):
                    if listener.queue is queue:
                        del listeners[idx]
                        queue.close()
                        return True
        return False

    @staticmethod
    def drain(queue: DispatchQueue, timeout_ms: Optional[int]) -> List[DrainedItem]:
        """
        Waits up to `timeout_ms` for events on `queue`.

        Returns
        -------
        items: List[DrainedItem]
            `(key_segments, value)` pairs, empty on timeout.
        """
        return [entry.as_pair() for entry in queue.wait(timeout_ms)]

    def _notify(self) -> bool:
        loop, wakeup = self._loop, self._wakeup
        if loop is None or wakeup is None:
            return False
        try:
            loop.call_soon_threadsafe(wakeup.set)
        except RuntimeError as e:
            log.critical("Failed to send event to watcher thread: %s", e)
            return False
        return True

    def _adopt_pending(self) -> Optional[Listener]:
        with self._lock:
            if not self._pending:
                return None
            listener = self._pending.pop(0)
            self._listeners.append(listener)
            return listener

    def _thread_main(self, loop: asyncio.AbstractEventLoop) -> None:
        asyncio.set_event_loop(loop)
        try:
            loop.run_until_complete(self._run())
        except Exception:
            log.exception("Watcher thread for %s exited abnormally", self.prefix)
            raise
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()

    async def _run(self) -> None:
        async with EtcdV2Client(
            self.server_url,
            request_timeout=self.request_timeout,
            transport=self._transport,
            verify=self._verify,
        ) as client:
            await self._poll(client)

    def _key_for(self, path: str) -> str:
        if path and not self.prefix.endswith('/'):
            return f'{self.prefix}/{path}'
        return self.prefix + path

    async def _fetch(self, client: EtcdV2Client, mode: FetchMode, path: str) -> EtcdResult:
        key = self._key_for(path)
        if mode is FetchMode.LONG_POLL:
            return await client.get(
                key, recursive=True, wait_index=self.wait_index, timeout=self.poll_timeout)
        return await client.get(key, recursive=True)

    @staticmethod
    async def _abandon(task: Optional[asyncio.Task]) -> None:
        if task is None:
            return
        task.cancel()
        await asyncio.wait((task,))
        if not task.cancelled() and task.exception() is not None:
            log.debug("Abandoned request failed: %r", task.exception())

    async def _sleep(self, delay: float) -> None:
        """
        Sleeps for `delay` seconds, returning early on `stop()`.
        """
        assert self._wakeup is not None
        loop = asyncio.get_running_loop()
        deadline = loop.time() + delay
        while (remaining := deadline - loop.time()) > 0:
            self._wakeup.clear()
            if not self.running:
                break
            try:
                await asyncio.wait_for(self._wakeup.wait(), remaining)
            except asyncio.TimeoutError:
                pass

    async def _poll(self, client: EtcdV2Client) -> None:
        assert self._wakeup is not None
        loop = asyncio.get_running_loop()
        wakeup = self._wakeup

        mode = FetchMode.FULL_FETCH
        path = ''
        # The initial fetch counts as an event, so nothing interrupts it.
        processing_event = True
        flush = False
        # Set after a cleared index until the next full fetch succeeds.
        resync = False
        preproc_index = 0
        backoff = self.initial_backoff
        next_flush: Optional[float] = None
        fetch: Optional[asyncio.Task] = None
        log.debug("Initial url %s", client.keys_url(self.prefix))

        try:
            while True:
                # stop() clears running before it sets the event.
                wakeup.clear()
                if not self.running:
                    break

                now = loop.time()
                if self.flush_period <= 0:
                    next_flush = None
                elif next_flush is None:
                    next_flush = now + self.flush_period

                if not processing_event and not flush and next_flush is not None and now >= next_flush:
                    await self._abandon(fetch)
                    fetch = None
                    mode, path, flush = FetchMode.FULL_FETCH, '', True
                    next_flush = now + self.flush_period
                    log.debug("Flush, url %s", client.keys_url(self.prefix))

                if not processing_event and not flush:
                    listener = self._adopt_pending()
                    if listener is not None:
                        await self._abandon(fetch)
                        fetch = None
                        mode, path = FetchMode.CATCHUP_FETCH, listener.path
                        processing_event = True
                        preproc_index = self.wait_index
                        log.debug(
                            "Processing new listener, url %s",
                            client.keys_url(self._key_for(path)))

                if fetch is None:
                    fetch = loop.create_task(self._fetch(client, mode, path))
                waker = loop.create_task(wakeup.wait())
                try:
                    await asyncio.wait(
                        (fetch, waker), timeout=self.multiwait,
                        return_when=asyncio.FIRST_COMPLETED)
                finally:
                    waker.cancel()
                    await asyncio.wait((waker,))
                if not fetch.done():
                    continue
                task, fetch = fetch, None

                try:
                    try:
                        result = task.result()
                    except EtcdKeyNotFoundError as e:
                        log.debug("%s not found in etcd", self._key_for(path))
                        result = EtcdResult(EtcdResponse('get'), e.index, 404)
                    self._process(result, flush, resync)
                except EtcdEventIndexClearedError:
                    log.warning(
                        "etcd index %d was cleared from history, resyncing %s",
                        self.wait_index, self.prefix)
                    mode, path, flush, resync = FetchMode.FULL_FETCH, '', True, True
                    continue
                except EtcdReadTimeoutError as e:
                    if mode is FetchMode.LONG_POLL:
                        log.debug("Watch timed out, restarting at index %d", self.wait_index)
                        continue
                    log.error("Failed to fetch %s: %s", self._key_for(path), e)
                except EtcwatchError as e:
                    log.error("Failed to fetch %s: %s", self._key_for(path), e)
                except Exception:
                    log.exception("Unexpected error handling reply for %s", self._key_for(path))
                else:
                    if processing_event:
                        processing_event = False
                        # A catch-up fetch never moves the cursor backwards.
                        with self._lock:
                            self.wait_index = max(preproc_index, self.wait_index)
                        preproc_index = 0
                    mode, path, flush, resync = FetchMode.LONG_POLL, '', False, False
                    backoff = self.initial_backoff
                    continue

                log.warning("Bad reply from etcd, sleeping for %.1f seconds", backoff)
                await self._sleep(backoff)
                backoff = min(backoff * 2, self.max_backoff)
        finally:
            await self._abandon(fetch)

    def _process(self, result: EtcdResult, flush: bool, resync: bool = False) -> None:
        with self._lock:
            if result.etcd_index is not None and (resync or self.wait_index == 0):
                self.wait_index = max(self.wait_index, result.etcd_index + 1)
            self._serial += 1
            serial = self._serial
            listeners = list(self._listeners)

            def route(key: str, extra: Optional[str], value: str, index: int) -> None:
                for listener in listeners:
                    if listener.matches(key):
                        listener.deliver(key[len(listener.path):], extra, value, index, serial)

            walker = EventTreeWalker(self.prefix, route, self.wait_index)
            try:
                if flush:
                    for listener in listeners:
                        listener.deliver('', FLUSH_MARKER, '', self.wait_index, serial)
                walker.walk(result.response)
            finally:
                self.wait_index = walker.wait_index
                for listener in listeners:
                    listener.finish(serial)
