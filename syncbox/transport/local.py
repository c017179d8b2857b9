"""Local filesystem backend (mounted disks, network shares)."""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
import threading
from pathlib import Path
from typing import List, Optional, Union

from ..config import Config
from ..errors import TransportError, TransportErrorKind, translate_os_error
from .base import RemoteEntry, Transport, normalize_remote_path

logger = logging.getLogger('syncbox.transport.local')


class LocalTransport(Transport):
    """
    Copy files into a destination directory.

    Uploads are written to a temporary file beside the destination and then
    renamed over it, so readers of the destination never see a partial file.
    Deleting a file prunes directories it leaves empty.

    Example:
        >>> with LocalTransport("/mnt/backup") as t:
        ...     t.upload("photos/a.jpg", "a.jpg")
    """

    name = "local"

    def __init__(self, root: Union[str, os.PathLike]) -> None:
        self.root = Path(root)
        # Serializes directory creation against empty-directory pruning
        self._tree_lock = threading.Lock()

    def __repr__(self) -> str:
        return f"LocalTransport({str(self.root)!r})"

    def _resolve(self, remote_path: str) -> Path:
        return self.root.joinpath(*normalize_remote_path(remote_path).split('/'))

    def list(self, prefix: str = "") -> List[RemoteEntry]:
        base = self._resolve(prefix) if prefix else self.root
        if not base.is_dir():
            return []
        entries: List[RemoteEntry] = []

        def on_error(exc: OSError) -> None:
            raise translate_os_error(exc, getattr(exc, 'filename', None))

        for dirpath, _dirnames, filenames in os.walk(base, onerror=on_error):
            for name in filenames:
                full = Path(dirpath) / name
                rel = full.relative_to(self.root).as_posix()
                try:
                    size: Optional[int] = full.stat().st_size
                except OSError as e:
                    raise translate_os_error(e, rel)
                entries.append(RemoteEntry(rel, size))
        entries.sort(key=lambda e: e.path)
        return entries

    def exists(self, path: str) -> bool:
        try:
            return self._resolve(path).is_file()
        except OSError as e:
            raise translate_os_error(e, path)

    def upload(self, local_path: Union[str, os.PathLike], remote_path: str) -> int:
        dest = self._resolve(remote_path)
        tmp_name: Optional[str] = None
        try:
            with open(local_path, 'rb') as src:
                with self._tree_lock:
                    dest.parent.mkdir(parents=True, exist_ok=True)
                    fd, tmp_name = tempfile.mkstemp(dir=str(dest.parent), prefix=f".{dest.name}.", suffix='.tmp')
                with os.fdopen(fd, 'wb') as dst:
                    shutil.copyfileobj(src, dst, Config.COPY_CHUNK_SIZE)
                    copied = dst.tell()
            shutil.copystat(local_path, tmp_name)
            os.replace(tmp_name, dest)
            tmp_name = None
        except OSError as e:
            raise translate_os_error(e, remote_path)
        finally:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    pass
        logger.debug(f"Copied {local_path} -> {dest} ({copied} bytes)")
        return copied

    def download(self, remote_path: str, local_path: Union[str, os.PathLike]) -> int:
        source = self._resolve(remote_path)
        try:
            if source.is_dir():
                raise TransportError(TransportErrorKind.PERMISSION_DENIED, "is a directory", remote_path)
            with open(source, 'rb') as src, open(local_path, 'wb') as dst:
                shutil.copyfileobj(src, dst, Config.COPY_CHUNK_SIZE)
                return dst.tell()
        except OSError as e:
            raise translate_os_error(e, remote_path)

    def delete(self, remote_path: str) -> None:
        target = self._resolve(remote_path)
        try:
            if target.is_dir():
                raise TransportError(TransportErrorKind.PERMISSION_DENIED, "is a directory", remote_path)
            target.unlink()
        except OSError as e:
            raise translate_os_error(e, remote_path)
        self._prune(target.parent)

    def _prune(self, directory: Path) -> None:
        """Remove empty directories from ``directory`` up to (excluding) the root."""
        with self._tree_lock:
            while directory != self.root and self.root in directory.parents:
                try:
                    directory.rmdir()
                except OSError:
                    break
                logger.debug(f"Removed empty directory {directory}")
                directory = directory.parent
