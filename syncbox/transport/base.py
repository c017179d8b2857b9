"""Transport interface shared by every storage backend."""

from __future__ import annotations

import os
import posixpath
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional, Union

from ..errors import TransportError, TransportErrorKind


@dataclass(frozen=True)
class RemoteEntry:
    """A file present on the target, relative to the target directory."""
    path: str
    size: Optional[int] = None


class Transport(ABC):
    """
    Storage backend capability interface.

    Paths passed to and returned from a transport are '/'-separated and
    relative to the target directory. Every method raises
    :class:`~syncbox.errors.TransportError` on failure, never a
    backend-specific exception.

    Implementations must be safe to call from ``concurrency`` worker threads
    at once.
    """

    name = "transport"

    @abstractmethod
    def list(self, prefix: str = "") -> List[RemoteEntry]:
        """Return all files under ``prefix``, sorted by path."""

    @abstractmethod
    def exists(self, path: str) -> bool:
        """Return True if a file exists at ``path``."""

    @abstractmethod
    def upload(self, local_path: Union[str, os.PathLike], remote_path: str) -> int:
        """Store the local file at ``remote_path``, replacing it; return bytes sent."""

    @abstractmethod
    def download(self, remote_path: str, local_path: Union[str, os.PathLike]) -> int:
        """Write the file at ``remote_path`` to ``local_path``; return bytes received."""

    @abstractmethod
    def delete(self, remote_path: str) -> None:
        """Remove the file at ``remote_path``."""

    def close(self) -> None:
        """Release connections. Safe to call more than once."""

    def __enter__(self) -> 'Transport':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}()"


def normalize_remote_path(path: str) -> str:
    """
    Validate and normalize a relative remote path.

    Raises:
        TransportError: (PERMISSION_DENIED) if the path escapes the target
            directory or is empty

    Example:
        >>> normalize_remote_path("docs//a.txt")
        'docs/a.txt'
    """
    normalized = posixpath.normpath(path).lstrip('/')
    if normalized in ('', '.') or normalized == '..' or normalized.startswith('../'):
        raise TransportError(TransportErrorKind.PERMISSION_DENIED,
                             "path is outside the target directory", path)
    return normalized


def join_remote(directory: str, path: str) -> str:
    """Join a target directory and a relative path with '/'."""
    directory = directory.rstrip('/')
    if not directory:
        return path
    return f"{directory}/{path}"
