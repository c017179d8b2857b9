"""
syncbox: Fast one-way directory synchronization
===============================================

Mirrors a local directory to a local path, an FTP server or an S3 bucket,
remembering what was sent in a compressed checksum manifest so that each
run only transfers what changed.

Quick Start:
-----------
    >>> from syncbox import SyncConfig, LocalTarget, run
    >>>
    >>> report = run(SyncConfig(directory="photos", target=LocalTarget("/mnt/backup")))
    >>> report.created, report.exit_code
    (['2024/img001.jpg'], 0)

How it works:
------------
    1. Scan: walk the source tree; files at/above the size threshold are hashed
       (xxHash by default), smaller ones are fingerprinted by size and mtime
    2. Plan: compare with the manifest of the previous run -> create/update/delete/skip
    3. Execute: apply changes with N parallel workers through a transport
    4. Persist: atomically rewrite the manifest with what actually completed

CLI Usage:
---------
    $ syncbox photos --dest /mnt/backup
    $ syncbox photos --transport ftp --ftp-host ftp.example.com --use-tls
    $ syncbox photos --transport s3 --s3-bucket my-bucket --concurrency 8
    $ syncbox --help
"""

__version__ = "0.9.0"

from .config import (
    Config,
    FtpTarget,
    LocalTarget,
    ObjectStorageTarget,
    SyncConfig,
    TransportTarget,
)
from .errors import (
    ConfigError,
    CorruptManifestError,
    FileIOError,
    ManifestVersionError,
    SyncboxError,
    TransportError,
    TransportErrorKind,
)
from .executor import ExecutionResult, Executor, FileError
from .manifest import Manifest, ManifestCodec, ManifestCompression
from .planner import Action, ActionKind, Plan, fingerprints_match, plan
from .runner import RunOutcome, RunState, SyncReport, SyncRunner, run
from .scanner import FileEntry, ScanError, ScanResult, Scanner
from .transport import (
    FtpTransport,
    LocalTransport,
    ObjectStorageTransport,
    RemoteEntry,
    Transport,
    create_transport,
)

__all__ = [
    '__version__',
    # Configuration
    'Config',
    'SyncConfig',
    'LocalTarget',
    'FtpTarget',
    'ObjectStorageTarget',
    'TransportTarget',
    # Errors
    'SyncboxError',
    'ConfigError',
    'FileIOError',
    'CorruptManifestError',
    'ManifestVersionError',
    'TransportError',
    'TransportErrorKind',
    # Scanning and manifest
    'FileEntry',
    'ScanError',
    'ScanResult',
    'Scanner',
    'Manifest',
    'ManifestCodec',
    'ManifestCompression',
    # Planning and execution
    'Action',
    'ActionKind',
    'Plan',
    'plan',
    'fingerprints_match',
    'Executor',
    'ExecutionResult',
    'FileError',
    # Transports
    'Transport',
    'RemoteEntry',
    'LocalTransport',
    'FtpTransport',
    'ObjectStorageTransport',
    'create_transport',
    # Runs
    'run',
    'SyncRunner',
    'SyncReport',
    'RunOutcome',
    'RunState',
]
