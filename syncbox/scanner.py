"""
Local source tree scanning.

The scanner walks the source directory and produces one :class:`FileEntry`
per regular file, sorted by relative path. Size and modification time are
always recorded; a content hash is only computed for files at or above the
configured size threshold, trading CPU for fewer false "unchanged" verdicts
on large files.

Symbolic links are skipped, never followed. Problems with individual files
or sub-directories are collected as :class:`ScanError` and do not stop the
scan; an unreadable root directory raises :class:`FileIOError`.
"""

from __future__ import annotations

import fnmatch
import hashlib
import logging
import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple, Union

import xxhash

from .config import Config, DEFAULT_FILE_SIZE_THRESHOLD, DEFAULT_HASH_ALGORITHM
from .errors import FileIOError

logger = logging.getLogger('syncbox.scanner')

IGNORE_FILE = ".syncboxignore"
DEFAULT_IGNORED_NAMES = frozenset({".git", IGNORE_FILE})


# ============================================================================
# DATA STRUCTURES
# ============================================================================

@dataclass(frozen=True)
class FileEntry:
    """
    A file of the source tree, as scanned or as remembered in the manifest.

    Attributes:
        relative_path: '/'-separated path relative to the source root
        size: Size in bytes
        modified_time: Modification time in nanoseconds since the epoch
        content_hash: Hex digest, present only for files at/above the threshold
    """
    relative_path: str
    size: int
    modified_time: int
    content_hash: Optional[str] = None

    @property
    def is_hashed(self) -> bool:
        return self.content_hash is not None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the manifest entry shape ``{path, size, mtime, hash?}``."""
        data: Dict[str, Any] = {
            'path': self.relative_path,
            'size': self.size,
            'mtime': self.modified_time,
        }
        if self.content_hash is not None:
            data['hash'] = self.content_hash
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FileEntry':
        """
        Deserialize a manifest entry.

        Raises:
            ValueError: If a field is missing or has the wrong type
        """
        path = data['path']
        size = data['size']
        mtime = data['mtime']
        digest = data.get('hash')
        if not isinstance(path, str) or not path:
            raise ValueError(f"invalid path: {path!r}")
        # bool is an int subclass; reject it explicitly
        if not isinstance(size, int) or isinstance(size, bool) or size < 0:
            raise ValueError(f"invalid size for {path}: {size!r}")
        if not isinstance(mtime, int) or isinstance(mtime, bool):
            raise ValueError(f"invalid mtime for {path}: {mtime!r}")
        if digest is not None and not isinstance(digest, str):
            raise ValueError(f"invalid hash for {path}: {digest!r}")
        return cls(relative_path=path, size=size, modified_time=mtime, content_hash=digest)


@dataclass(frozen=True)
class ScanError:
    """A file or directory that could not be read during the scan."""
    path: str
    message: str


@dataclass
class ScanResult:
    entries: List[FileEntry] = field(default_factory=list)
    errors: List[ScanError] = field(default_factory=list)

    def by_path(self) -> Dict[str, FileEntry]:
        return {entry.relative_path: entry for entry in self.entries}


# ============================================================================
# CONTENT HASHING
# ============================================================================

def new_hasher(algorithm: str) -> Any:
    """
    Return an incremental hasher with ``update()``/``hexdigest()``.

    Supported: ``xxh3_128`` (default, fastest), ``xxh64`` and ``sha256``.

    Raises:
        ValueError: If the algorithm is unknown
    """
    if algorithm == 'xxh3_128':
        return xxhash.xxh3_128()
    elif algorithm == 'xxh64':
        return xxhash.xxh64()
    elif algorithm == 'sha256':
        return hashlib.sha256()
    else:
        raise ValueError(f"Unsupported hash algorithm: {algorithm}")


def hash_file(path: os.PathLike, algorithm: str = DEFAULT_HASH_ALGORITHM) -> str:
    """Hash a file's contents in ``Config.HASH_CHUNK_SIZE`` chunks."""
    hasher = new_hasher(algorithm)
    with open(path, 'rb') as f:
        while True:
            chunk = f.read(Config.HASH_CHUNK_SIZE)
            if not chunk:
                break
            hasher.update(chunk)
    return hasher.hexdigest()


# ============================================================================
# IGNORE RULES
# ============================================================================

@dataclass(frozen=True)
class IgnoreRule:
    base: str          # directory holding the rule ('' = source root)
    pattern: str
    negate: bool = False
    dir_only: bool = False
    anchored: bool = False

    def matches(self, rel_path: str, is_dir: bool) -> bool:
        if self.dir_only and not is_dir:
            return False
        if self.base:
            if not rel_path.startswith(self.base + '/'):
                return False
            rel_path = rel_path[len(self.base) + 1:]
        if self.anchored:
            return fnmatch.fnmatchcase(rel_path, self.pattern)
        return fnmatch.fnmatchcase(rel_path.rsplit('/', 1)[-1], self.pattern)


def parse_ignore_lines(lines: Iterable[str], base: str = '') -> List[IgnoreRule]:
    """
    Parse ``.syncboxignore`` content.

    Blank lines and ``#`` comments are skipped, ``!pattern`` re-includes,
    ``pattern/`` only matches directories. Patterns containing a ``/`` (or
    starting with one) are anchored to the directory holding the file;
    others match a file or directory name at any depth below it.
    """
    rules: List[IgnoreRule] = []
    for raw in lines:
        line = raw.strip()
        if not line or line.startswith('#'):
            continue
        negate = line.startswith('!')
        if negate:
            line = line[1:]
        dir_only = line.endswith('/')
        line = line.rstrip('/')
        anchored = '/' in line
        line = line.lstrip('/')
        if not line:
            continue
        rules.append(IgnoreRule(base=base, pattern=line, negate=negate,
                                dir_only=dir_only, anchored=anchored))
    return rules


class PatternMatcher:
    """Exclusion rules collected from ``.syncboxignore`` files while walking."""

    def __init__(self, rules: Optional[Sequence[IgnoreRule]] = None) -> None:
        self.rules: List[IgnoreRule] = list(rules) if rules is not None else []

    def add_rules(self, rules: Iterable[IgnoreRule]) -> None:
        self.rules.extend(rules)

    def should_exclude(self, rel_path: str, is_dir: bool = False) -> bool:
        """Check if a path should be excluded; the last matching rule wins."""
        excluded = False
        for rule in self.rules:
            if rule.matches(rel_path, is_dir):
                excluded = not rule.negate
        return excluded


# ============================================================================
# SCANNER
# ============================================================================

class Scanner:
    """
    Build the current state of a source tree.

    Args:
        threshold: Files of at least this many bytes get a content hash
        algorithm: Hash algorithm name (see :func:`new_hasher`)
        ignore_names: Exact file/directory names never synchronized
        ignore_patterns: Extra root-level ignore patterns
        hash_workers: Threads used to hash files in parallel

    Example:
        >>> result = Scanner(threshold=1024 * 1024).scan("photos")
        >>> [e.relative_path for e in result.entries]
        ['2024/img001.jpg', '2024/img002.jpg']
    """

    def __init__(
        self,
        threshold: int = DEFAULT_FILE_SIZE_THRESHOLD,
        algorithm: str = DEFAULT_HASH_ALGORITHM,
        ignore_names: Optional[Iterable[str]] = None,
        ignore_patterns: Optional[Iterable[str]] = None,
        hash_workers: int = 1,
    ) -> None:
        new_hasher(algorithm)  # fail early on unknown algorithms
        self.threshold = threshold
        self.algorithm = algorithm
        self.ignore_names: Set[str] = set(DEFAULT_IGNORED_NAMES)
        if ignore_names:
            self.ignore_names.update(ignore_names)
        self.ignore_patterns = list(ignore_patterns or [])
        self.hash_workers = max(1, hash_workers)

    def scan(self, root: Union[str, os.PathLike]) -> ScanResult:
        """
        Scan ``root`` recursively.

        Raises:
            FileIOError: If the root directory is missing or unreadable
        """
        root_path = Path(root)
        try:
            with os.scandir(root_path):
                pass
        except (FileNotFoundError, NotADirectoryError):
            raise FileIOError(f"Source directory does not exist: {root_path}", path=str(root_path))
        except OSError as e:
            raise FileIOError(f"Cannot read source directory {root_path}: {e}", path=str(root_path))

        result = ScanResult()
        matcher = PatternMatcher(parse_ignore_lines(self.ignore_patterns))
        stats: List[Tuple[str, Path, int, int]] = []
        self._walk(root_path, '', matcher, stats, result.errors)

        to_hash = [item for item in stats if item[2] >= self.threshold]
        hashes = self._hash_all(to_hash, result.errors)

        for rel, _path, size, mtime_ns in stats:
            if size >= self.threshold:
                digest = hashes.get(rel)
                if digest is None:
                    continue  # hashing failed, already reported
                result.entries.append(FileEntry(rel, size, mtime_ns, digest))
            else:
                result.entries.append(FileEntry(rel, size, mtime_ns))

        result.entries.sort(key=lambda e: e.relative_path)
        result.errors.sort(key=lambda e: e.path)
        logger.info(f"Scanned {len(result.entries)} file(s) in {root_path} "
                    f"({len(hashes)} hashed, {len(result.errors)} error(s))")
        return result

    def _walk(
        self,
        dirpath: Path,
        rel_dir: str,
        matcher: PatternMatcher,
        out: List[Tuple[str, Path, int, int]],
        errors: List[ScanError],
    ) -> None:
        """Recursively collect regular files below ``dirpath``."""
        try:
            with os.scandir(dirpath) as it:
                entries = sorted(it, key=lambda e: e.name)
        except OSError as e:
            errors.append(ScanError(rel_dir or '.', f"cannot list directory: {e}"))
            return

        if any(e.name == IGNORE_FILE for e in entries):
            try:
                with open(dirpath / IGNORE_FILE, 'r', encoding='utf-8') as f:
                    matcher.add_rules(parse_ignore_lines(f, base=rel_dir))
            except (OSError, UnicodeDecodeError) as e:
                errors.append(ScanError(self._join(rel_dir, IGNORE_FILE), f"cannot read ignore file: {e}"))

        for entry in entries:
            if entry.name in self.ignore_names:
                continue
            rel = self._join(rel_dir, entry.name)
            try:
                if entry.is_symlink():
                    logger.debug(f"Skipping symbolic link {rel}")
                    continue
                if entry.is_dir(follow_symlinks=False):
                    if matcher.should_exclude(rel, is_dir=True):
                        continue
                    self._walk(Path(entry.path), rel, matcher, out, errors)
                elif entry.is_file(follow_symlinks=False):
                    if matcher.should_exclude(rel, is_dir=False):
                        continue
                    st = entry.stat(follow_symlinks=False)
                    out.append((rel, Path(entry.path), st.st_size, st.st_mtime_ns))
                else:
                    logger.debug(f"Skipping special file {rel}")
            except OSError as e:
                errors.append(ScanError(rel, f"cannot stat: {e}"))

    def _hash_all(
        self,
        items: List[Tuple[str, Path, int, int]],
        errors: List[ScanError],
    ) -> Dict[str, str]:
        hashes: Dict[str, str] = {}
        if not items:
            return hashes
        with ThreadPoolExecutor(max_workers=min(self.hash_workers, len(items))) as pool:
            futures = {pool.submit(hash_file, path, self.algorithm): rel for rel, path, _s, _m in items}
            for future, rel in futures.items():
                try:
                    hashes[rel] = future.result()
                except OSError as e:
                    errors.append(ScanError(rel, f"cannot hash: {e}"))
        return hashes

    @staticmethod
    def _join(rel_dir: str, name: str) -> str:
        return f"{rel_dir}/{name}" if rel_dir else name
