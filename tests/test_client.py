from typing import List

import httpx
import pytest

from etcwatch import EtcdV2Client, HostPortPair
from etcwatch.errors import (
    EtcdEventIndexClearedError, EtcdKeyNotFoundError, EtcdProtocolError,
    EtcdReadTimeoutError, EtcdTimeoutError, EtcdTransportError, EtcdUnknownError,
)

from conftest import FAKE_ETCD_URL, leaf


def _client(handler) -> EtcdV2Client:
    return EtcdV2Client(FAKE_ETCD_URL, transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_get_recursive():
    requests: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(
            200, headers={'X-Etcd-Index': '4431'},
            json={'action': 'get', 'node': leaf('/service/a', 'b', 4431)})

    async with _client(handler) as client:
        result = await client.get('/service/')

    assert str(requests[0].url) == f'{FAKE_ETCD_URL}/v2/keys/service/?recursive=true'
    assert result.etcd_index == 4431
    assert result.status_code == 200
    assert result.response.action == 'get'
    assert result.response.node is not None
    assert result.response.node.value == 'b'


@pytest.mark.asyncio
async def test_long_poll_params():
    requests: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={'action': 'set', 'node': leaf('/service/a', 'c', 12)})

    async with _client(handler) as client:
        result = await client.get('service/', wait_index=12, timeout=90)

    params = requests[0].url.params
    assert requests[0].url.path == '/v2/keys/service/'
    assert params['recursive'] == 'true'
    assert params['wait'] == 'true'
    assert params['waitIndex'] == '12'
    assert result.etcd_index is None


def test_keys_url_from_host_port_pair():
    client = EtcdV2Client(HostPortPair('etcd.local', 4001))
    assert client.keys_url('/service/') == 'http://etcd.local:4001/v2/keys/service/'


@pytest.mark.asyncio
async def test_key_not_found():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, headers={'X-Etcd-Index': '17'}, json={
            'errorCode': 100, 'message': 'Key not found', 'cause': '/service', 'index': 17,
        })

    async with _client(handler) as client:
        with pytest.raises(EtcdKeyNotFoundError) as excinfo:
            await client.get('/service/')

    assert excinfo.value.index == 17
    assert int(excinfo.value) == 100
    assert '/service' in str(excinfo.value)


@pytest.mark.asyncio
async def test_event_index_cleared():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={
            'errorCode': 401, 'message': 'The event in requested index is outdated and cleared',
            'cause': 'the requested history has been cleared [1008/4]', 'index': 2007,
        })

    async with _client(handler) as client:
        with pytest.raises(EtcdEventIndexClearedError):
            await client.get('/service/', wait_index=4)


@pytest.mark.asyncio
async def test_unknown_error_code():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(403, json={'errorCode': 110, 'message': 'The request requires user authentication'})

    async with _client(handler) as client:
        with pytest.raises(EtcdUnknownError) as excinfo:
            await client.get('/service/')

    assert excinfo.value.debug_map is not None
    assert excinfo.value.debug_map['errorCode'] == 110


@pytest.mark.asyncio
async def test_non_json_reply():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text='<html>proxy error</html>')

    async with _client(handler) as client:
        with pytest.raises(EtcdProtocolError):
            await client.get('/service/')


@pytest.mark.asyncio
async def test_unexpected_status():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502, json={'status': 'bad gateway'})

    async with _client(handler) as client:
        with pytest.raises(EtcdProtocolError) as excinfo:
            await client.get('/service/')

    assert excinfo.value.debug_map == {'status_code': 502}


@pytest.mark.asyncio
async def test_malformed_index_header_is_ignored():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, headers={'X-Etcd-Index': 'nope'}, json={'action': 'get'})

    async with _client(handler) as client:
        result = await client.get('/service/')

    assert result.etcd_index is None


@pytest.mark.asyncio
async def test_connect_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError('Connection refused', request=request)

    async with _client(handler) as client:
        with pytest.raises(EtcdTransportError) as excinfo:
            await client.get('/service/')

    assert not isinstance(excinfo.value, EtcdTimeoutError)
    assert excinfo.value.debug_map == {'url': f'{FAKE_ETCD_URL}/v2/keys/service/?recursive=true'}


@pytest.mark.asyncio
async def test_read_timeout():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout('timed out', request=request)

    async with _client(handler) as client:
        with pytest.raises(EtcdReadTimeoutError):
            await client.get('/service/', wait_index=3, timeout=0.1)


@pytest.mark.asyncio
async def test_connect_timeout_is_not_a_read_timeout():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout('timed out', request=request)

    async with _client(handler) as client:
        with pytest.raises(EtcdTimeoutError) as excinfo:
            await client.get('/service/', wait_index=3, timeout=90)

    assert not isinstance(excinfo.value, EtcdReadTimeoutError)


@pytest.mark.asyncio
async def test_undecodable_reply():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b'{"action": "get", "x": "\xff\xfe"}')

    async with _client(handler) as client:
        with pytest.raises(EtcdProtocolError):
            await client.get('/service/')
