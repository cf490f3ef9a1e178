from . import client as _client
from . import config as _config
from . import discovery as _discovery
from . import queue as _queue
from . import types as _types
from . import watcher as _watcher

__all__ = (
    *_client.__all__,
    *_config.__all__,
    *_discovery.__all__,
    *_queue.__all__,
    *_types.__all__,
    *_watcher.__all__,
)

from .client import *  # noqa
from .config import *  # noqa
from .discovery import *  # noqa
from .queue import *  # noqa
from .types import *  # noqa
from .watcher import *  # noqa

__version__ = '0.1.0'
