"""
Run configuration and global tuning for syncbox.

:class:`SyncConfig` is what the command line (or any embedding program)
produces and what :func:`syncbox.runner.run` consumes. :class:`Config` holds
process-wide tuning knobs, modifiable at runtime like the class attributes of
a settings module.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import ClassVar, Dict, Optional, Union

from .errors import ConfigError

# ============================================================================
# DEFAULTS
# ============================================================================

DEFAULT_CHECKSUM_FILE = ".syncbox.json.gz"
DEFAULT_FILE_SIZE_THRESHOLD = 1024 * 1024  # 1 MB: files at/above are hashed
DEFAULT_HASH_ALGORITHM = "xxh3_128"
DEFAULT_STORAGE_CLASS = "STANDARD"
DEFAULT_FTP_PORT = 21

HASH_ALGORITHMS = ("xxh3_128", "xxh64", "sha256")


# ============================================================================
# GLOBAL CONFIGURATION - Performance and behavior tuning
# ============================================================================

class Config:
    """
    Global configuration for syncbox behavior.

    Attributes:
        HASH_CHUNK_SIZE (int): Read size when hashing file contents
        COPY_CHUNK_SIZE (int): Buffer size for local copies and FTP STOR
        MULTIPART_THRESHOLD (int): Object-storage uploads above this size use multipart
        MULTIPART_CHUNK_SIZE (int): Part size for multipart uploads
        MAX_MULTIPART_PARTS (int): Object-storage limit on parts per upload
        TRANSPORT_TIMEOUT (float): Default per-call network timeout in seconds
        S3_MAX_ATTEMPTS (int): botocore retry budget per request
        USE_COLORS (bool): Enable colored terminal output (auto-detected)
        VERBOSE_LOGGING (bool): Log at INFO level by default

    Example:
        >>> Config.MULTIPART_THRESHOLD = 8 * 1024 * 1024
        >>> Config.reset_defaults()
    """
    HASH_CHUNK_SIZE: ClassVar[int] = 1024 * 1024
    COPY_CHUNK_SIZE: ClassVar[int] = 64 * 1024

    MULTIPART_THRESHOLD: ClassVar[int] = 100 * 1024 * 1024
    MULTIPART_CHUNK_SIZE: ClassVar[int] = 100 * 1024 * 1024
    MAX_MULTIPART_PARTS: ClassVar[int] = 10000

    TRANSPORT_TIMEOUT: ClassVar[float] = 60.0
    S3_MAX_ATTEMPTS: ClassVar[int] = 3

    USE_COLORS: ClassVar[bool] = True
    VERBOSE_LOGGING: ClassVar[bool] = False

    @classmethod
    def reset_defaults(cls) -> None:
        """Reset all configuration to default values."""
        defaults: Dict[str, object] = {
            "HASH_CHUNK_SIZE": 1024 * 1024,
            "COPY_CHUNK_SIZE": 64 * 1024,
            "MULTIPART_THRESHOLD": 100 * 1024 * 1024,
            "MULTIPART_CHUNK_SIZE": 100 * 1024 * 1024,
            "MAX_MULTIPART_PARTS": 10000,
            "TRANSPORT_TIMEOUT": 60.0,
            "S3_MAX_ATTEMPTS": 3,
            "USE_COLORS": True,
            "VERBOSE_LOGGING": False,
        }
        for name, value in defaults.items():
            setattr(cls, name, value)


# ============================================================================
# TRANSPORT TARGETS
# ============================================================================

@dataclass
class LocalTarget:
    """Synchronize into a directory on a locally mounted filesystem."""
    path: str

    def validate(self) -> None:
        if not self.path:
            raise ConfigError("local target requires a destination path")


@dataclass
class FtpTarget:
    """Synchronize to an FTP server, optionally over explicit TLS."""
    host: str
    user: str = "anonymous"
    password: str = ""
    directory: str = "/"
    port: int = DEFAULT_FTP_PORT
    use_tls: bool = False
    timeout: Optional[float] = None

    def validate(self) -> None:
        if not self.host:
            raise ConfigError("FTP target requires a host")
        if not 0 < self.port < 65536:
            raise ConfigError(f"invalid FTP port: {self.port}")
        if self.timeout is not None and self.timeout <= 0:
            raise ConfigError("FTP timeout must be positive")

    def __repr__(self) -> str:
        # Keep credentials out of logs
        return (f"FtpTarget(host={self.host!r}, user={self.user!r}, directory={self.directory!r}, "
                f"port={self.port}, use_tls={self.use_tls})")


@dataclass
class ObjectStorageTarget:
    """Synchronize to an S3-compatible bucket under an optional key prefix."""
    bucket: str
    region: Optional[str] = None
    access_key: Optional[str] = None
    secret_key: Optional[str] = None
    storage_class: str = DEFAULT_STORAGE_CLASS
    directory: str = ""
    endpoint_url: Optional[str] = None
    timeout: Optional[float] = None

    def validate(self) -> None:
        if not self.bucket:
            raise ConfigError("object storage target requires a bucket")
        if bool(self.access_key) != bool(self.secret_key):
            raise ConfigError("access key and secret key must be given together")
        if self.timeout is not None and self.timeout <= 0:
            raise ConfigError("object storage timeout must be positive")

    def __repr__(self) -> str:
        return (f"ObjectStorageTarget(bucket={self.bucket!r}, region={self.region!r}, "
                f"directory={self.directory!r}, storage_class={self.storage_class!r})")


TransportTarget = Union[LocalTarget, FtpTarget, ObjectStorageTarget]


# ============================================================================
# RUN CONFIGURATION
# ============================================================================

@dataclass
class SyncConfig:
    """
    Options for a single synchronization run.

    ``file_size_threshold`` is in bytes; files of at least that size get a
    content hash, smaller ones are compared by size and modification time.
    """
    directory: str = "."
    target: Optional[TransportTarget] = None
    checksum_file: str = DEFAULT_CHECKSUM_FILE

    checksum_only: bool = False             # plan + persist, no transfer
    dry_run: bool = False                   # plan + report, no persist, no transfer
    force: bool = False                     # corrupt manifest -> full resync
    skip_removal: bool = False              # never delete remote files

    concurrency: int = 1
    file_size_threshold: int = DEFAULT_FILE_SIZE_THRESHOLD
    hash_algorithm: str = DEFAULT_HASH_ALGORITHM
    hash_workers: int = field(default_factory=lambda: os.cpu_count() or 1)
    upload_manifest: bool = True

    @property
    def manifest_path(self) -> Path:
        """Manifest location; relative names live inside the source directory."""
        path = Path(self.checksum_file)
        if path.is_absolute():
            return path
        return Path(self.directory) / path

    def validate(self, require_target: bool = True) -> None:
        """
        Check option combinations before a run.

        Args:
            require_target: False when the caller supplies its own transport

        Raises:
            ConfigError: If any option is out of range or inconsistent
        """
        if not self.directory:
            raise ConfigError("source directory is required")
        if not self.checksum_file:
            raise ConfigError("checksum file name is required")
        if self.concurrency < 1:
            raise ConfigError(f"concurrency must be a positive integer, got {self.concurrency}")
        if self.hash_workers < 1:
            raise ConfigError(f"hash workers must be a positive integer, got {self.hash_workers}")
        if self.file_size_threshold < 0:
            raise ConfigError("file size threshold cannot be negative")
        if self.hash_algorithm not in HASH_ALGORITHMS:
            raise ConfigError(
                f"unknown hash algorithm {self.hash_algorithm!r} "
                f"(choose from {', '.join(HASH_ALGORITHMS)})"
            )
        if self.checksum_only and self.dry_run:
            raise ConfigError("--checksum-only and --dry-run are mutually exclusive")
        if self.target is None:
            # Runs that never touch the transport can do without a target
            if require_target and not (self.checksum_only or self.dry_run):
                raise ConfigError("a transport target is required")
        else:
            self.target.validate()
