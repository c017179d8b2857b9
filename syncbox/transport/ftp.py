"""
FTP backend, optionally over explicit TLS (FTPS).

An FTP control connection carries one command at a time, so the transport
keeps a small pool of logged-in connections, one per worker. Connections
are opened lazily and handed out through a queue; a connection that hit a
protocol or socket error is discarded instead of being returned to the
pool.
"""

from __future__ import annotations

import ftplib
import logging
import os
import posixpath
import queue
import socket
import ssl
import threading
from contextlib import contextmanager
from typing import Callable, Iterator, List, Optional, Set, Tuple, Union

from ..config import Config, FtpTarget
from ..errors import TransportError, TransportErrorKind, translate_os_error
from .base import RemoteEntry, Transport, normalize_remote_path

logger = logging.getLogger('syncbox.transport.ftp')

ConnectionFactory = Callable[[FtpTarget], ftplib.FTP]

# Replies meaning "the path is not there"
_NOT_FOUND_MARKERS = ('no such', 'not found', 'does not exist', "doesn't exist", "can't find", 'cannot find')


def translate_ftp_error(exc: BaseException, path: Optional[str] = None) -> TransportError:
    """
    Map ftplib/socket exceptions to a :class:`TransportError`.

    Example:
        >>> translate_ftp_error(ftplib.error_perm("530 Login incorrect.")).kind
        <TransportErrorKind.AUTH_FAILED: 'auth_failed'>
    """
    if isinstance(exc, TransportError):
        return exc
    message = str(exc).strip()
    code = message[:3]
    if isinstance(exc, ftplib.error_perm):
        if code in ('530', '532'):
            return TransportError(TransportErrorKind.AUTH_FAILED, message, path)
        if code == '550':
            lowered = message.lower()
            if any(marker in lowered for marker in _NOT_FOUND_MARKERS):
                return TransportError(TransportErrorKind.NOT_FOUND, message, path)
            return TransportError(TransportErrorKind.PERMISSION_DENIED, message, path)
        return TransportError(TransportErrorKind.PERMISSION_DENIED, message, path)
    if isinstance(exc, ftplib.error_temp):
        if code == '430':
            return TransportError(TransportErrorKind.AUTH_FAILED, message, path)
        if code in ('421', '425', '426'):
            return TransportError(TransportErrorKind.CONNECTION_FAILED, message, path)
        return TransportError(TransportErrorKind.PERMISSION_DENIED, message, path)
    if isinstance(exc, (ftplib.error_reply, ftplib.error_proto, EOFError)):
        return TransportError(TransportErrorKind.CONNECTION_FAILED,
                              message or "connection closed by server", path)
    if isinstance(exc, ssl.SSLError):
        return TransportError(TransportErrorKind.CONNECTION_FAILED, f"TLS error: {message}", path)
    if isinstance(exc, socket.timeout):
        return TransportError(TransportErrorKind.TIMEOUT, message or "operation timed out", path)
    if isinstance(exc, OSError):
        return translate_os_error(exc, path)
    return TransportError(TransportErrorKind.CONNECTION_FAILED, message or exc.__class__.__name__, path)


def open_connection(target: FtpTarget) -> ftplib.FTP:
    """
    Connect and log in, switching to binary mode and the target directory.

    With ``use_tls`` the control channel is secured before login and the
    data channel is protected (``PROT P``).
    """
    timeout = target.timeout or Config.TRANSPORT_TIMEOUT
    ftp: ftplib.FTP = ftplib.FTP_TLS(timeout=timeout) if target.use_tls else ftplib.FTP(timeout=timeout)
    try:
        ftp.connect(target.host, target.port, timeout=timeout)
        ftp.login(target.user, target.password)
        if target.use_tls:
            ftp.prot_p()  # type: ignore[attr-defined]
        ftp.voidcmd('TYPE I')
        if target.directory and target.directory != '/':
            _enter_directory(ftp, target.directory)
        elif target.directory == '/':
            ftp.cwd('/')
    except BaseException:
        ftp.close()
        raise
    return ftp


def _enter_directory(ftp: ftplib.FTP, directory: str) -> None:
    try:
        ftp.cwd(directory)
    except ftplib.error_perm:
        # First sync into this directory: create it
        _make_dirs(ftp, directory)
        ftp.cwd(directory)


def _make_dirs(ftp: ftplib.FTP, directory: str) -> None:
    """``MKD`` every component of ``directory``; existing ones are fine."""
    current = '/' if directory.startswith('/') else ''
    for part in directory.strip('/').split('/'):
        if not part:
            continue
        current = posixpath.join(current, part) if current else part
        try:
            ftp.mkd(current)
        except ftplib.error_perm as e:
            # 550/521 "File exists"; a real problem resurfaces on STOR
            logger.debug(f"MKD {current}: {e}")


class _StaleConnection(Exception):
    """Internal signal: retry the operation on a fresh connection."""


class FtpTransport(Transport):
    """
    Synchronize into a directory of an FTP server.

    Args:
        target: Connection parameters
        pool_size: Maximum simultaneous connections (the run's concurrency)
        connection_factory: Callable opening a logged-in connection
            (defaults to :func:`open_connection`)
    """

    name = "ftp"

    def __init__(
        self,
        target: FtpTarget,
        pool_size: int = 1,
        connection_factory: Optional[ConnectionFactory] = None,
    ) -> None:
        self.target = target
        self.pool_size = max(1, pool_size)
        self._factory: ConnectionFactory = connection_factory or open_connection
        self._idle: 'queue.LifoQueue[ftplib.FTP]' = queue.LifoQueue()
        self._opened = 0
        self._lock = threading.Lock()
        self._known_dirs: Set[str] = set()
        self._closed = False

    def __repr__(self) -> str:
        return f"FtpTransport({self.target!r}, pool_size={self.pool_size})"

    # ------------------------------------------------------------------
    # Connection pool
    # ------------------------------------------------------------------

    def _acquire(self) -> Tuple[ftplib.FTP, bool]:
        """Return ``(connection, reused)``, opening one if the pool allows it."""
        while True:
            try:
                return self._idle.get_nowait(), True
            except queue.Empty:
                pass
            with self._lock:
                if self._closed:
                    raise TransportError(TransportErrorKind.CONNECTION_FAILED, "transport is closed")
                if self._opened < self.pool_size:
                    self._opened += 1
                    break
            # Pool exhausted: wait for a release (or a discard freeing a slot)
            try:
                return self._idle.get(timeout=0.5), True
            except queue.Empty:
                continue
        try:
            ftp = self._factory(self.target)
        except BaseException as e:
            with self._lock:
                self._opened -= 1
            if not isinstance(e, Exception):
                raise
            error = translate_ftp_error(e)
            if error.kind != TransportErrorKind.AUTH_FAILED:
                # No usable session: every further call would fail the same way
                error = TransportError(TransportErrorKind.CONNECTION_FAILED,
                                       f"cannot connect to {self.target.host}:{self.target.port}: {e}")
            raise error
        logger.debug(f"Opened FTP connection to {self.target.host}:{self.target.port}")
        return ftp, False

    def _release(self, ftp: ftplib.FTP) -> None:
        self._idle.put(ftp)

    def _discard(self, ftp: ftplib.FTP) -> None:
        with self._lock:
            self._opened -= 1
        try:
            ftp.close()
        except OSError:
            pass

    @contextmanager
    def _connection(self) -> Iterator[Tuple[ftplib.FTP, bool]]:
        ftp, reused = self._acquire()
        try:
            yield ftp, reused
        except ftplib.error_perm:
            # A clean 5xx reply leaves the session usable
            self._release(ftp)
            raise
        except BaseException:
            self._discard(ftp)
            raise
        else:
            self._release(ftp)

    def _run(self, operation: Callable[[ftplib.FTP], object], path: Optional[str] = None) -> object:
        """
        Run ``operation`` on a pooled connection, translating errors.

        A pooled connection may have been dropped by the server while idle;
        connection-level failures on a reused connection are retried once
        on a fresh one.
        """
        for attempt in (1, 2):
            try:
                with self._connection() as (ftp, reused):
                    try:
                        return operation(ftp)
                    except (ftplib.Error, EOFError, OSError) as e:
                        error = translate_ftp_error(e, path)
                        if attempt == 1 and reused and error.kind == TransportErrorKind.CONNECTION_FAILED:
                            raise _StaleConnection() from e
                        raise
            except _StaleConnection:
                logger.debug("Pooled FTP connection went stale, reconnecting")
                continue
            except (ftplib.Error, EOFError, OSError) as e:
                raise translate_ftp_error(e, path)
        raise TransportError(TransportErrorKind.CONNECTION_FAILED, "could not re-establish connection", path)

    def close(self) -> None:
        with self._lock:
            self._closed = True
        while True:
            try:
                ftp = self._idle.get_nowait()
            except queue.Empty:
                break
            try:
                ftp.quit()
            except (ftplib.Error, EOFError, OSError):
                ftp.close()
            with self._lock:
                self._opened -= 1

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def list(self, prefix: str = "") -> List[RemoteEntry]:
        start = normalize_remote_path(prefix) if prefix else ''

        def walk(ftp: ftplib.FTP) -> List[RemoteEntry]:
            out: List[RemoteEntry] = []
            try:
                self._walk_mlsd(ftp, start, out)
                return out
            except ftplib.error_perm as e:
                code = str(e)[:3]
                if code == '550':
                    return []  # prefix does not exist
                if code not in ('500', '501', '502', '504'):
                    raise
                logger.debug(f"MLSD unsupported ({e}), falling back to NLST")
            out = []
            self._walk_nlst(ftp, start, out)
            return out

        entries = self._run(walk, prefix or None)
        return sorted(entries, key=lambda e: e.path)  # type: ignore[arg-type]

    def _walk_mlsd(self, ftp: ftplib.FTP, directory: str, out: List[RemoteEntry]) -> None:
        for name, facts in ftp.mlsd(directory or '.', facts=['type', 'size']):
            kind = facts.get('type', '').lower()
            if kind in ('cdir', 'pdir') or name in ('.', '..'):
                continue
            rel = posixpath.join(directory, name) if directory else name
            if kind == 'dir':
                self._walk_mlsd(ftp, rel, out)
            elif kind == 'file':
                size = facts.get('size')
                out.append(RemoteEntry(rel, int(size) if size is not None else None))

    def _walk_nlst(self, ftp: ftplib.FTP, directory: str, out: List[RemoteEntry]) -> None:
        try:
            names = ftp.nlst(directory or '.')
        except ftplib.error_perm:
            # Empty directories answer 550 on some servers
            return
        for raw in names:
            name = posixpath.basename(raw.rstrip('/'))
            if name in ('.', '..', ''):
                continue
            rel = posixpath.join(directory, name) if directory else name
            try:
                size = ftp.size(rel)
            except ftplib.error_perm:
                self._walk_nlst(ftp, rel, out)
                continue
            out.append(RemoteEntry(rel, size))

    def exists(self, path: str) -> bool:
        remote = normalize_remote_path(path)

        def check(ftp: ftplib.FTP) -> bool:
            try:
                return ftp.size(remote) is not None
            except ftplib.error_perm as e:
                if str(e)[:3] == '550':
                    return False
                raise

        return bool(self._run(check, path))

    def upload(self, local_path: Union[str, os.PathLike], remote_path: str) -> int:
        remote = normalize_remote_path(remote_path)
        parent = posixpath.dirname(remote)
        try:
            src = open(local_path, 'rb')
        except OSError as e:
            raise translate_os_error(e, remote_path)

        def store(ftp: ftplib.FTP) -> int:
            sent = 0

            def count(block: bytes) -> None:
                nonlocal sent
                sent += len(block)

            src.seek(0)
            if parent and parent not in self._known_dirs:
                _make_dirs(ftp, parent)
                with self._lock:
                    self._known_dirs.add(parent)
            try:
                ftp.storbinary(f'STOR {remote}', src, blocksize=Config.COPY_CHUNK_SIZE, callback=count)
            except ftplib.error_perm:
                if not parent:
                    raise
                # The parent may have been pruned by a concurrent delete
                _make_dirs(ftp, parent)
                src.seek(0)
                sent = 0
                ftp.storbinary(f'STOR {remote}', src, blocksize=Config.COPY_CHUNK_SIZE, callback=count)
            return sent

        with src:
            sent = self._run(store, remote_path)
        logger.debug(f"STOR {remote} ({sent} bytes)")
        return sent  # type: ignore[return-value]

    def download(self, remote_path: str, local_path: Union[str, os.PathLike]) -> int:
        remote = normalize_remote_path(remote_path)
        try:
            dst = open(local_path, 'wb')
        except OSError as e:
            raise translate_os_error(e, remote_path)

        def retrieve(ftp: ftplib.FTP) -> Optional[int]:
            dst.seek(0)
            dst.truncate()
            try:
                ftp.retrbinary(f'RETR {remote}', dst.write, blocksize=Config.COPY_CHUNK_SIZE)
            except ftplib.error_perm as e:
                # Servers word a missing file differently; any 550 means nothing to read
                if str(e)[:3] == '550':
                    return None
                raise
            return dst.tell()

        with dst:
            received = self._run(retrieve, remote_path)
        if received is None:
            raise TransportError(TransportErrorKind.NOT_FOUND, "no such file on the server", remote_path)
        logger.debug(f"RETR {remote} ({received} bytes)")
        return received  # type: ignore[return-value]

    def delete(self, remote_path: str) -> None:
        remote = normalize_remote_path(remote_path)

        def remove(ftp: ftplib.FTP) -> None:
            ftp.delete(remote)
            parent = posixpath.dirname(remote)
            while parent:
                try:
                    ftp.rmd(parent)
                except ftplib.error_perm:
                    break  # not empty
                with self._lock:
                    self._known_dirs.discard(parent)
                parent = posixpath.dirname(parent)

        self._run(remove, remote_path)