"""
Storage backends.

Use :func:`create_transport` to build the backend matching a target::

    with create_transport(FtpTarget("ftp.example.com"), concurrency=4) as transport:
        transport.upload("a.txt", "a.txt")
"""

from __future__ import annotations

from ..config import FtpTarget, LocalTarget, ObjectStorageTarget, TransportTarget
from ..errors import ConfigError
from .base import RemoteEntry, Transport, join_remote, normalize_remote_path
from .ftp import FtpTransport
from .local import LocalTransport
from .s3 import ObjectStorageTransport

__all__ = [
    'RemoteEntry',
    'Transport',
    'LocalTransport',
    'FtpTransport',
    'ObjectStorageTransport',
    'create_transport',
    'join_remote',
    'normalize_remote_path',
]


def create_transport(target: TransportTarget, concurrency: int = 1) -> Transport:
    """
    Build the transport for ``target``.

    Network connections are opened lazily, on first use.

    Raises:
        ConfigError: If the target type is unknown
        TransportError: If the backend client cannot be created
    """
    if isinstance(target, LocalTarget):
        return LocalTransport(target.path)
    if isinstance(target, FtpTarget):
        return FtpTransport(target, pool_size=concurrency)
    if isinstance(target, ObjectStorageTarget):
        return ObjectStorageTransport(target, concurrency=concurrency)
    raise ConfigError(f"unsupported transport target: {target!r}")
