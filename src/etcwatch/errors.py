import functools
from typing import Any, Callable, ClassVar, Mapping, Optional

import httpx


class EtcwatchError(Exception):
    code: ClassVar[int] = 0
    debug_map: Optional[Mapping[str, Any]]

    def __init__(self, message=None, debug_map=None):
        super().__init__(message)
        self.debug_map = debug_map

    def __int__(self):
        return self.code


class EtcdTransportError(EtcwatchError):
    """Connection refused, reset, or any other failure below HTTP."""


class EtcdTimeoutError(EtcdTransportError):
    pass


class EtcdReadTimeoutError(EtcdTimeoutError):
    """The server accepted the request but sent no reply in time."""


class EtcdProtocolError(EtcwatchError):
    """The reply was not a JSON document shaped like an etcd v2 response."""


class EtcdResponseError(EtcwatchError):
    index: Optional[int]

    def __init__(self, message=None, debug_map=None, index=None):
        super().__init__(message, debug_map=debug_map)
        self.index = index


class EtcdUnknownError(EtcdResponseError):
    code = -1


class EtcdKeyNotFoundError(EtcdResponseError):
    code = 100


class EtcdNotAFileError(EtcdResponseError):
    code = 102


class EtcdNotADirectoryError(EtcdResponseError):
    code = 104


class EtcdEventIndexClearedError(EtcdResponseError):
    code = 401


class EtcdRaftInternalError(EtcdResponseError):
    code = 300


class EtcdLeaderElectError(EtcdResponseError):
    code = 301


class WatcherStartError(EtcwatchError):
    pass


class KeyTruncatedWarning(UserWarning):
    """A key had more path segments than a queue entry can hold."""


def match_etcd_error(body: Mapping[str, Any]) -> EtcdResponseError:
    message = body.get('message')
    if cause := body.get('cause'):
        message = f'{message} ({cause})'
    index = body.get('index')
    if not isinstance(index, int):
        index = None
    match body.get('errorCode'):
        case 100:
            return EtcdKeyNotFoundError(message, debug_map=body, index=index)
        case 102:
            return EtcdNotAFileError(message, debug_map=body, index=index)
        case 104:
            return EtcdNotADirectoryError(message, debug_map=body, index=index)
        case 300:
            return EtcdRaftInternalError(message, debug_map=body, index=index)
        case 301:
            return EtcdLeaderElectError(message, debug_map=body, index=index)
        case 401:
            return EtcdEventIndexClearedError(message, debug_map=body, index=index)
    return EtcdUnknownError(message, debug_map=body, index=index)


def _request_url(e: httpx.RequestError) -> Optional[str]:
    try:
        return str(e.request.url)
    except RuntimeError:
        return None


def httpx_exception_handler(outer: Callable):
    @functools.wraps(outer)
    async def wrapper(*args, **kwargs):
        try:
            return await outer(*args, **kwargs)
        except httpx.ReadTimeout as e:
            raise EtcdReadTimeoutError(repr(e), debug_map={'url': _request_url(e)}) from e
        except httpx.TimeoutException as e:
            raise EtcdTimeoutError(repr(e), debug_map={'url': _request_url(e)}) from e
        except httpx.TransportError as e:
            raise EtcdTransportError(repr(e), debug_map={'url': _request_url(e)}) from e
        except ValueError as e:
            # JSONDecodeError, or UnicodeDecodeError on a body that is not valid text
            raise EtcdProtocolError(f'Not a json reply: {e}') from e
    return wrapper
