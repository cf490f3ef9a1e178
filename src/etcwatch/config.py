from __future__ import annotations

from dataclasses import dataclass
import os
from typing import Any, Mapping, Optional

from .client import DEFAULT_REQUEST_TIMEOUT
from .types import HostPortPair

__all__ = (
    'WatcherConfig',
    'DEFAULT_ETCD_URL',
    'DEFAULT_PREFIX',
    'DEFAULT_FLUSH_PERIOD',
    'DEFAULT_POLL_TIMEOUT',
)

DEFAULT_ETCD_URL = 'http://localhost:2379'
DEFAULT_PREFIX = '/service/'
DEFAULT_FLUSH_PERIOD = 600
DEFAULT_POLL_TIMEOUT = 90.0


def _to_float(name: str, raw: Any) -> float:
    try:
        return float(raw)
    except (TypeError, ValueError):
        raise ValueError(f'{name} must be a number, got {raw!r}') from None


@dataclass
class WatcherConfig:
    server_url: str = DEFAULT_ETCD_URL
    prefix: str = DEFAULT_PREFIX
    flush_period: float = DEFAULT_FLUSH_PERIOD
    poll_timeout: float = DEFAULT_POLL_TIMEOUT
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    verify: bool = True

    @classmethod
    def from_mapping(cls, conf: Mapping[str, Any]) -> WatcherConfig:
        """
        Builds a config from flat dotted keys::

            sd.etcd_url              base URL, or host:port
            sd.etcd.prefix           watch prefix
            sd.etcd.reload_s         flush period; 0 disables, absent means 600
            sd.etcd.poll_timeout_s   long poll read timeout
            sd.etcd.request_timeout_s
            sd.etcd.verify           "false" disables TLS verification
        """
        server_url = conf.get('sd.etcd_url') or DEFAULT_ETCD_URL
        if '://' not in server_url:
            server_url = HostPortPair.parse(server_url).url
        flush_period: float = DEFAULT_FLUSH_PERIOD
        if (reload_s := conf.get('sd.etcd.reload_s')) is not None:
            flush_period = _to_float('sd.etcd.reload_s', reload_s)
        verify = str(conf.get('sd.etcd.verify', 'true')).lower() not in ('0', 'false', 'no')
        return cls(
            server_url=server_url,
            prefix=conf.get('sd.etcd.prefix') or DEFAULT_PREFIX,
            flush_period=flush_period,
            poll_timeout=_to_float(
                'sd.etcd.poll_timeout_s', conf.get('sd.etcd.poll_timeout_s', DEFAULT_POLL_TIMEOUT)),
            request_timeout=_to_float(
                'sd.etcd.request_timeout_s',
                conf.get('sd.etcd.request_timeout_s', DEFAULT_REQUEST_TIMEOUT)),
            verify=verify,
        )

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> WatcherConfig:
        """
        Reads `ETCWATCH_ETCD_ADDR` (host:port or URL), `ETCWATCH_PREFIX`
        and `ETCWATCH_RELOAD_S`.
        """
        if environ is None:
            environ = os.environ
        conf = {}
        if addr := environ.get('ETCWATCH_ETCD_ADDR'):
            conf['sd.etcd_url'] = addr
        if prefix := environ.get('ETCWATCH_PREFIX'):
            conf['sd.etcd.prefix'] = prefix
        if (reload_s := environ.get('ETCWATCH_RELOAD_S')) is not None:
            conf['sd.etcd.reload_s'] = reload_s
        return cls.from_mapping(conf)
