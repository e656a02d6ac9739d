from .cache import MISS, TtlCache
from .geometry import Viewport, apply_opacity
from .local_storage import LocalStorage
from .retry import RequestFailedError, RequestTimeoutError, RetryPolicy

__all__ = [
    'MISS',
    'TtlCache',
    'Viewport',
    'apply_opacity',
    'LocalStorage',
    'RequestFailedError',
    'RequestTimeoutError',
    'RetryPolicy',
]
