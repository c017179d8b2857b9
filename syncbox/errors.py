"""
Exception hierarchy and exit codes for syncbox.

Every error raised by the library derives from :class:`SyncboxError`, which
carries a numeric ``code`` usable as a process exit status. Transport
backends never leak library-specific exceptions (``ftplib.error_perm``,
``botocore.exceptions.ClientError``, ``OSError``): they translate them into a
:class:`TransportError` whose :class:`TransportErrorKind` is shared by all
backends, so the executor can decide fatal vs. per-file handling uniformly.
"""

from __future__ import annotations

import errno
import socket
from enum import Enum
from typing import Optional

# ============================================================================
# EXIT CODES
# ============================================================================

EXIT_OK = 0               # Run completed, nothing failed
EXIT_FAILED = 1           # Run aborted (fatal error)
EXIT_SYNTAX = 2           # Invalid configuration / command line
EXIT_PARTIAL = 23         # Run completed but some files failed (rsync's RERR_PARTIAL)


# ============================================================================
# CUSTOM EXCEPTIONS
# ============================================================================

class SyncboxError(Exception):
    """
    Base exception for all syncbox errors.

    Attributes:
        message: Human-readable error description
        code: Numeric error code (process exit status when the error is fatal)

    Example:
        >>> raise SyncboxError("Operation failed", code=1)
    """
    def __init__(self, message: str, code: int = EXIT_FAILED) -> None:
        super().__init__(message)
        self.message = message
        self.code = code

    def __str__(self) -> str:
        return self.message


class ConfigError(SyncboxError):
    """
    Raised when the run configuration is invalid.

    This is detected before any scanning or transfer happens, e.g. a
    non-positive concurrency or ``checksum_only`` combined with ``dry_run``.
    """
    def __init__(self, message: str) -> None:
        super().__init__(message, code=EXIT_SYNTAX)


class FileIOError(SyncboxError):
    """
    Raised for local filesystem errors.

    This wraps OS-level errors with the path that caused them.
    """
    def __init__(self, message: str, path: Optional[str] = None) -> None:
        super().__init__(message, code=EXIT_FAILED)
        self.path = path


class CorruptManifestError(SyncboxError):
    """
    Raised when the manifest cannot be decompressed or decoded.

    A corrupted manifest must never be read as "nothing changed"; the run
    aborts unless ``force`` is set.
    """
    def __init__(self, message: str, path: Optional[str] = None) -> None:
        super().__init__(message, code=EXIT_FAILED)
        self.path = path


class ManifestVersionError(CorruptManifestError):
    """Raised when the manifest was written by a newer syncbox."""


class TransportErrorKind(Enum):
    """
    Backend-independent classification of transport failures.

    CONNECTION_FAILED and AUTH_FAILED are fatal: every further call would
    fail the same way. The others only concern the path at hand.
    """
    CONNECTION_FAILED = "connection_failed"
    AUTH_FAILED = "auth_failed"
    NOT_FOUND = "not_found"
    PERMISSION_DENIED = "permission_denied"
    TIMEOUT = "timeout"

    @property
    def is_fatal(self) -> bool:
        return self in (TransportErrorKind.CONNECTION_FAILED, TransportErrorKind.AUTH_FAILED)


class TransportError(SyncboxError):
    """
    Raised by every transport backend.

    Attributes:
        kind: Normalized failure class
        path: Remote path involved, if any
    """
    def __init__(self, kind: TransportErrorKind, message: str, path: Optional[str] = None) -> None:
        super().__init__(message, code=EXIT_FAILED)
        self.kind = kind
        self.path = path

    @property
    def is_fatal(self) -> bool:
        return self.kind.is_fatal

    def __str__(self) -> str:
        if self.path:
            return f"{self.kind.value}: {self.message} ({self.path})"
        return f"{self.kind.value}: {self.message}"


# errno values that mean the remote side went away rather than refused us
_CONNECTION_ERRNOS = {
    errno.ECONNREFUSED, errno.ECONNRESET, errno.ECONNABORTED,
    errno.EHOSTUNREACH, errno.ENETUNREACH, errno.ENETDOWN,
    errno.EPIPE, errno.ENOTCONN,
}


def translate_os_error(exc: OSError, path: Optional[str] = None) -> TransportError:
    """
    Map an ``OSError`` (or subclass) to a :class:`TransportError`.

    Used directly by the local backend and as the fallback for socket-level
    failures in the network backends.

    Example:
        >>> translate_os_error(FileNotFoundError(2, "missing")).kind
        <TransportErrorKind.NOT_FOUND: 'not_found'>
    """
    message = exc.strerror or str(exc)
    if isinstance(exc, (socket.timeout, TimeoutError)) or exc.errno == errno.ETIMEDOUT:
        return TransportError(TransportErrorKind.TIMEOUT, message or "operation timed out", path)
    if isinstance(exc, FileNotFoundError) or exc.errno == errno.ENOENT:
        return TransportError(TransportErrorKind.NOT_FOUND, message, path)
    if isinstance(exc, PermissionError) or exc.errno in (errno.EACCES, errno.EPERM, errno.EROFS):
        return TransportError(TransportErrorKind.PERMISSION_DENIED, message, path)
    if isinstance(exc, (ConnectionError, socket.gaierror)) or exc.errno in _CONNECTION_ERRNOS:
        return TransportError(TransportErrorKind.CONNECTION_FAILED, message, path)
    # Disk full, I/O errors, name too long...: specific to this path
    return TransportError(TransportErrorKind.PERMISSION_DENIED, message, path)
