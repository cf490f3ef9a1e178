"""
Minimal asyncio client for the read side of the etcd v2 keys API.
"""

from __future__ import annotations

import logging
import ssl
from typing import Any, Dict, Optional, Union

import httpx

from .errors import EtcdProtocolError, httpx_exception_handler, match_etcd_error
from .types import EtcdResponse, EtcdResult, HostPortPair

__all__ = (
    'EtcdV2Client',
    'DEFAULT_REQUEST_TIMEOUT',
)

log = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT = 5.0
ETCD_INDEX_HEADER = 'X-Etcd-Index'


class EtcdV2Client:
    """
    Issues `GET` requests against `{server_url}/v2/keys` and decodes the reply.

    Must be used from a single event loop, as an async context manager::

        async with EtcdV2Client('http://localhost:2379') as client:
            result = await client.get('/service/', recursive=True)
    """
    server_url: str
    request_timeout: float
    encoding: str

    _transport: Optional[httpx.AsyncBaseTransport]
    _verify: Union[bool, ssl.SSLContext]
    _http: Optional[httpx.AsyncClient]

    def __init__(
        self,
        server_url: Union[str, HostPortPair],
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        verify: Union[bool, ssl.SSLContext] = True,
        encoding: str = 'utf-8',
    ) -> None:
        """
        Creates `EtcdV2Client` instance.

        Parameters
        ---------
        server_url
            Base URL of the etcd HTTP endpoint, e.g. `http://localhost:2379`.
            A `HostPortPair` is turned into a plain `http` URL.
        request_timeout
            Seconds to wait for a reply to a request that is not a long poll.
        transport
            Optional `httpx` transport, mostly useful to plug in a mock server.
        verify
            TLS verification passed to `httpx`: `False`, `True` or an `ssl.SSLContext`.
        encoding
            Character encoding used when the server does not declare one.
            Defaults to `utf-8`.
        """
        if isinstance(server_url, HostPortPair):
            server_url = server_url.url
        self.server_url = server_url.rstrip('/')
        self.request_timeout = request_timeout
        self.encoding = encoding
        self._transport = transport
        self._verify = verify
        self._http = None

    async def __aenter__(self) -> EtcdV2Client:
        self._http = httpx.AsyncClient(
            transport=self._transport,
            verify=self._verify,
            default_encoding=self.encoding,
        )
        return self

    async def __aexit__(self, exc_type, exc, tb) -> Optional[bool]:
        assert self._http is not None
        await self._http.aclose()
        self._http = None
        return False

    def keys_url(self, key: str) -> str:
        if not key.startswith('/'):
            key = '/' + key
        return f'{self.server_url}/v2/keys{key}'

    @httpx_exception_handler
    async def get(
        self, key: str,
        recursive: bool = True,
        wait_index: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> EtcdResult:
        """
        Fetches `key` from the key space.

        Parameters
        ---------
        key
            Absolute key, e.g. `/service/search/`.
        recursive
            Fetch (or watch) the whole subtree. Defaults to `True`.
        wait_index
            If set, issues a long poll that returns the first change with an
            index at or above this value.
        timeout
            Read timeout in seconds. Defaults to `request_timeout`.
            Long polls usually want a much larger value.

        Returns
        -------
        result: EtcdResult
            Decoded response with the value of the `X-Etcd-Index` header, if sent.

        Raises
        -------
        EtcdTransportError
            When the request could not be completed.
        EtcdProtocolError
            When the reply is not an etcd v2 JSON document.
        EtcdResponseError
            When etcd replies with an `errorCode` body.
        """
        assert self._http is not None, 'EtcdV2Client must be used as an async context manager'
        params: Dict[str, Any] = {}
        if recursive:
            params['recursive'] = 'true'
        if wait_index is not None:
            params['wait'] = 'true'
            params['waitIndex'] = str(wait_index)
        if timeout is None:
            timeout = self.request_timeout
        url = self.keys_url(key)
        log.debug("GET %s %s", url, params)
        response = await self._http.get(
            url, params=params,
            timeout=httpx.Timeout(self.request_timeout, read=timeout),
        )
        etcd_index = self._parse_index(response.headers.get(ETCD_INDEX_HEADER))
        body = response.json()
        if isinstance(body, dict) and 'errorCode' in body:
            raise match_etcd_error(body)
        if not response.is_success:
            raise EtcdProtocolError(
                f'Unexpected status {response.status_code} for {url}',
                debug_map={'status_code': response.status_code})
        return EtcdResult(EtcdResponse.parse(body), etcd_index, response.status_code)

    @staticmethod
    def _parse_index(raw: Optional[str]) -> Optional[int]:
        if raw is None:
            return None
        try:
            return int(raw.strip())
        except ValueError:
            log.warning("Ignoring malformed %s header: %r", ETCD_INDEX_HEADER, raw)
            return None
