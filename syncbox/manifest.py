"""
Checksum manifest model and codec.

The manifest records the last successfully synchronized state of the source
tree: one :class:`~syncbox.scanner.FileEntry` per path. On disk it is a JSON
document::

    {"version": 1, "algorithm": "xxh3_128",
     "entries": [{"path": "a.txt", "size": 8, "mtime": 1700000000000000000},
                 {"path": "big.iso", "size": 4096000, "mtime": ..., "hash": "9f2c..."}]}

compressed according to the file suffix (``.gz``, ``.zst``, ``.lz4``, or
plain JSON otherwise). Saving is atomic: the document is written to a
temporary file next to the destination and renamed over it, so a crash
leaves either the old or the new manifest, never a torn one.
"""

from __future__ import annotations

import gzip
import json
import logging
import os
import tempfile
import zlib
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Union, cast

import lz4.frame  # type: ignore[import]
import zstandard  # type: ignore[import]

from .config import DEFAULT_HASH_ALGORITHM
from .errors import CorruptManifestError, FileIOError, ManifestVersionError
from .scanner import FileEntry

logger = logging.getLogger('syncbox.manifest')

MANIFEST_VERSION = 1

_lz4_frame: Any = cast(Any, lz4.frame)
_zstandard: Any = cast(Any, zstandard)


# ============================================================================
# MANIFEST MODEL
# ============================================================================

@dataclass
class Manifest:
    """
    Last synchronized state of a target.

    Attributes:
        version: Document format version
        algorithm: Hash algorithm of every ``content_hash`` in ``entries``
        entries: Mapping of relative path to entry (paths are unique)
    """
    version: int = MANIFEST_VERSION
    algorithm: str = DEFAULT_HASH_ALGORITHM
    entries: Dict[str, FileEntry] = field(default_factory=dict)

    @classmethod
    def from_entries(cls, entries: List[FileEntry], algorithm: str = DEFAULT_HASH_ALGORITHM) -> 'Manifest':
        return cls(algorithm=algorithm, entries={e.relative_path: e for e in entries})

    def __len__(self) -> int:
        return len(self.entries)

    def __contains__(self, path: object) -> bool:
        return path in self.entries

    def __iter__(self) -> Iterator[FileEntry]:
        for path in sorted(self.entries):
            yield self.entries[path]

    def get(self, path: str) -> Optional[FileEntry]:
        return self.entries.get(path)

    def insert(self, entry: FileEntry) -> None:
        """Insert or replace the entry for ``entry.relative_path``."""
        self.entries[entry.relative_path] = entry

    def remove(self, path: str) -> None:
        self.entries.pop(path, None)

    def copy(self) -> 'Manifest':
        return Manifest(version=self.version, algorithm=self.algorithm, entries=dict(self.entries))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'version': self.version,
            'algorithm': self.algorithm,
            'entries': [entry.to_dict() for entry in self],
        }

    @classmethod
    def from_dict(cls, data: Any) -> 'Manifest':
        """
        Build a manifest from its decoded JSON form.

        Raises:
            CorruptManifestError: If the document does not have the expected shape
            ManifestVersionError: If the document was written by a newer format
        """
        if not isinstance(data, dict):
            raise CorruptManifestError("manifest root is not an object")
        version = data.get('version')
        if not isinstance(version, int) or isinstance(version, bool) or version < 1:
            raise CorruptManifestError(f"invalid manifest version: {version!r}")
        if version > MANIFEST_VERSION:
            raise ManifestVersionError(
                f"manifest format {version} is newer than supported format {MANIFEST_VERSION}; "
                f"please update syncbox"
            )
        algorithm = data.get('algorithm', DEFAULT_HASH_ALGORITHM)
        if not isinstance(algorithm, str):
            raise CorruptManifestError(f"invalid hash algorithm: {algorithm!r}")
        raw_entries = data.get('entries')
        if not isinstance(raw_entries, list):
            raise CorruptManifestError("manifest entries are not a list")

        entries: Dict[str, FileEntry] = {}
        for raw in raw_entries:
            if not isinstance(raw, dict):
                raise CorruptManifestError(f"manifest entry is not an object: {raw!r}")
            try:
                entry = FileEntry.from_dict(raw)
            except (KeyError, ValueError) as e:
                raise CorruptManifestError(f"invalid manifest entry: {e}")
            if entry.relative_path in entries:
                raise CorruptManifestError(f"duplicate manifest entry: {entry.relative_path}")
            entries[entry.relative_path] = entry
        return cls(version=MANIFEST_VERSION, algorithm=algorithm, entries=entries)


# ============================================================================
# COMPRESSION
# ============================================================================

class ManifestCompression(Enum):
    """Container format of the manifest file, chosen by file suffix."""
    NONE = "none"
    GZIP = "gzip"
    ZSTD = "zstd"
    LZ4 = "lz4"

    @classmethod
    def from_path(cls, path: Union[str, os.PathLike]) -> 'ManifestCompression':
        suffix = Path(path).suffix.lower()
        if suffix == '.gz':
            return cls.GZIP
        elif suffix in ('.zst', '.zstd'):
            return cls.ZSTD
        elif suffix == '.lz4':
            return cls.LZ4
        return cls.NONE


class ManifestCodec:
    """
    Encode/decode manifests to bytes.

    Example:
        >>> data = ManifestCodec.encode(manifest, ManifestCompression.GZIP)
        >>> ManifestCodec.decode(data, ManifestCompression.GZIP) == manifest
        True
    """

    @classmethod
    def encode(cls, manifest: Manifest, compression: ManifestCompression = ManifestCompression.GZIP) -> bytes:
        payload = json.dumps(manifest.to_dict(), separators=(',', ':'), sort_keys=True).encode('utf-8')
        return cls.compress(payload, compression)

    @classmethod
    def decode(cls, data: bytes, compression: ManifestCompression = ManifestCompression.GZIP) -> Manifest:
        """
        Raises:
            CorruptManifestError: On decompression, JSON or shape failure
        """
        try:
            payload = cls.decompress(data, compression)
        except (OSError, EOFError, zlib.error, RuntimeError, ValueError, _zstandard.ZstdError) as e:
            raise CorruptManifestError(f"cannot decompress manifest ({compression.value}): {e}")
        try:
            document = json.loads(payload.decode('utf-8'))
        except ValueError as e:
            # JSONDecodeError and UnicodeDecodeError are both ValueErrors
            raise CorruptManifestError(f"cannot parse manifest: {e}")
        return Manifest.from_dict(document)

    @staticmethod
    def compress(data: bytes, compression: ManifestCompression) -> bytes:
        if compression == ManifestCompression.NONE:
            return data
        elif compression == ManifestCompression.GZIP:
            return gzip.compress(data)
        elif compression == ManifestCompression.ZSTD:
            return cast(bytes, _zstandard.ZstdCompressor(level=3).compress(data))
        elif compression == ManifestCompression.LZ4:
            return cast(bytes, _lz4_frame.compress(data))
        else:
            raise ValueError(f"Unsupported compression type: {compression}")

    @staticmethod
    def decompress(data: bytes, compression: ManifestCompression) -> bytes:
        if compression == ManifestCompression.NONE:
            return data
        elif compression == ManifestCompression.GZIP:
            return gzip.decompress(data)
        elif compression == ManifestCompression.ZSTD:
            return cast(bytes, _zstandard.ZstdDecompressor().decompress(data))
        elif compression == ManifestCompression.LZ4:
            return cast(bytes, _lz4_frame.decompress(data))
        else:
            raise ValueError(f"Unsupported compression type: {compression}")


# ============================================================================
# PERSISTENCE
# ============================================================================

def load(path: Union[str, os.PathLike], force: bool = False) -> Manifest:
    """
    Read the manifest at ``path``.

    A missing file is a first run and yields an empty manifest. A corrupted
    file raises unless ``force`` is set, in which case an empty manifest is
    returned and every source file will be re-sent.

    Raises:
        CorruptManifestError: If the file cannot be decoded and ``force`` is False
        FileIOError: If the file exists but cannot be read
    """
    path = Path(path)
    try:
        data = path.read_bytes()
    except FileNotFoundError:
        logger.info(f"No manifest at {path}, starting from an empty one")
        return Manifest()
    except OSError as e:
        raise FileIOError(f"Cannot read manifest {path}: {e}", path=str(path))

    try:
        manifest = ManifestCodec.decode(data, ManifestCompression.from_path(path))
    except CorruptManifestError as e:
        e.path = str(path)
        if not force:
            raise
        logger.warning(f"Ignoring unreadable manifest {path} ({e}); performing a full resync")
        return Manifest()

    logger.info(f"Loaded manifest {path} with {len(manifest)} entr{'y' if len(manifest) == 1 else 'ies'}")
    return manifest


def save(manifest: Manifest, path: Union[str, os.PathLike]) -> None:
    """
    Atomically write ``manifest`` to ``path``.

    Raises:
        FileIOError: If the temporary file cannot be written or renamed
    """
    path = Path(path)
    data = ManifestCodec.encode(manifest, ManifestCompression.from_path(path))
    tmp_name: Optional[str] = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f"{path.name}.", suffix='.tmp')
        with os.fdopen(fd, 'wb') as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
        tmp_name = None
    except OSError as e:
        raise FileIOError(f"Cannot write manifest {path}: {e}", path=str(path))
    finally:
        if tmp_name is not None:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
    logger.info(f"Saved manifest {path} ({len(manifest)} entries, {len(data)} bytes)")
