"""
Remote writers for toschat.
The queue and controller depend on RemoteWriter; XanoClient is the real one,
RetryingWriter adds the direct-write backoff loop on top of any writer.
"""
from toschat.backends.base import RemoteWriter, WriteResult
from toschat.backends.retry_wrapper import RetryingWriter
from toschat.backends.xano import XanoClient

__all__ = [
    "RemoteWriter",
    "WriteResult",
    "RetryingWriter",
    "XanoClient",
]
