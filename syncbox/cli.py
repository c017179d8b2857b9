"""
Command-line interface.

Usage::

    syncbox [DIRECTORY] --dest /mnt/backup
    syncbox photos --transport ftp --ftp-host ftp.example.com --ftp-user me --ftp-pass secret
    syncbox photos --transport s3 --s3-bucket my-bucket --s3-region eu-central-1 --concurrency 8

The process exit status is 0 on success, 23 when some files could not be
synchronized, 1 when the run was aborted and 2 for invalid options.
"""

from __future__ import annotations

import argparse
import sys
from typing import List, Optional, TextIO

from . import __version__
from .config import (
    Config,
    DEFAULT_CHECKSUM_FILE,
    DEFAULT_FTP_PORT,
    DEFAULT_STORAGE_CLASS,
    HASH_ALGORITHMS,
    FtpTarget,
    LocalTarget,
    ObjectStorageTarget,
    SyncConfig,
    TransportTarget,
)
from .errors import ConfigError
from .runner import SyncReport, run
from .utils import Colors, configure_logging, format_size, format_time

MB = 1024 * 1024

EPILOG = """\
exit status:
  0   all files synchronized
  1   run aborted (connection, authentication, corrupted manifest)
  2   invalid options
  23  completed, but some files could not be synchronized
"""


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='syncbox',
        description='Fast one-way sync of a directory to a local path, FTP server or S3 bucket.',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=EPILOG,
    )
    parser.add_argument('directory', nargs='?', default='.',
                        help='directory to synchronize (default: current directory)')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    parser.add_argument('--verbose', '-v', action='count', default=0,
                        help='increase verbosity (-vv for debug output)')
    parser.add_argument('--quiet', '-q', action='store_true',
                        help='only report errors')
    parser.add_argument('--no-color', action='store_true',
                        help='disable colored output')

    sync = parser.add_argument_group('synchronization')
    sync.add_argument('--checksum-file', default=DEFAULT_CHECKSUM_FILE, metavar='FILE',
                      help=f'manifest file, relative to DIRECTORY (default: {DEFAULT_CHECKSUM_FILE})')
    sync.add_argument('--checksum-only', action='store_true',
                      help='only write the manifest, transfer nothing')
    sync.add_argument('--dry-run', '-n', action='store_true',
                      help='show what would be done without changing anything')
    sync.add_argument('--force', action='store_true',
                      help='treat a corrupted manifest as empty and resend everything')
    sync.add_argument('--concurrency', '-j', type=int, default=1, metavar='N',
                      help='number of parallel transfers (default: 1)')
    sync.add_argument('--file-size-threshold', type=float, default=1.0, metavar='MB',
                      help='files of at least this size (in MB) are compared by content hash '
                           'instead of size and modification time (default: 1)')
    sync.add_argument('--skip-removal', action='store_true',
                      help='never delete files from the target')
    sync.add_argument('--hash-algorithm', choices=HASH_ALGORITHMS, default=HASH_ALGORITHMS[0],
                      help='content hash algorithm (default: %(default)s)')
    sync.add_argument('--no-upload-manifest', dest='upload_manifest', action='store_false',
                      help='do not copy the manifest to the target after a run')

    target = parser.add_argument_group('target')
    target.add_argument('--transport', choices=('local', 'ftp', 's3'),
                        help='backend (inferred from the other target options when omitted)')
    target.add_argument('--timeout', type=float, metavar='SECONDS',
                        help=f'network timeout (default: {Config.TRANSPORT_TIMEOUT:g})')
    target.add_argument('--dest', metavar='PATH', help='local destination directory')

    target.add_argument('--ftp-host', metavar='HOST')
    target.add_argument('--ftp-port', type=int, default=DEFAULT_FTP_PORT, metavar='PORT')
    target.add_argument('--ftp-user', default='anonymous', metavar='USER')
    target.add_argument('--ftp-pass', default='', metavar='PASSWORD')
    target.add_argument('--ftp-dir', default='/', metavar='DIR', help='remote directory (default: /)')
    target.add_argument('--use-tls', action='store_true', help='use explicit FTPS')

    target.add_argument('--s3-bucket', metavar='BUCKET')
    target.add_argument('--s3-region', metavar='REGION')
    target.add_argument('--s3-access-key', metavar='KEY')
    target.add_argument('--s3-secret-key', metavar='SECRET')
    target.add_argument('--s3-storage-class', default=DEFAULT_STORAGE_CLASS, metavar='CLASS')
    target.add_argument('--s3-dir', default='', metavar='PREFIX', help='key prefix inside the bucket')
    target.add_argument('--s3-endpoint-url', metavar='URL', help='S3-compatible service endpoint')
    return parser


def build_target(args: argparse.Namespace) -> Optional[TransportTarget]:
    """
    Build the transport target from parsed arguments.

    Raises:
        ConfigError: If the backend cannot be determined or lacks parameters
    """
    kind = args.transport
    if kind is None:
        inferred = [name for name, value in (('local', args.dest), ('ftp', args.ftp_host),
                                             ('s3', args.s3_bucket)) if value]
        if len(inferred) > 1:
            raise ConfigError("conflicting target options; choose one with --transport")
        kind = inferred[0] if inferred else None

    if kind is None:
        return None
    if kind == 'local':
        if not args.dest:
            raise ConfigError("--dest is required for the local transport")
        return LocalTarget(args.dest)
    if kind == 'ftp':
        return FtpTarget(
            host=args.ftp_host or '',
            user=args.ftp_user,
            password=args.ftp_pass,
            directory=args.ftp_dir,
            port=args.ftp_port,
            use_tls=args.use_tls,
            timeout=args.timeout,
        )
    return ObjectStorageTarget(
        bucket=args.s3_bucket or '',
        region=args.s3_region,
        access_key=args.s3_access_key,
        secret_key=args.s3_secret_key,
        storage_class=args.s3_storage_class,
        directory=args.s3_dir,
        endpoint_url=args.s3_endpoint_url,
        timeout=args.timeout,
    )


def build_config(args: argparse.Namespace) -> SyncConfig:
    if args.file_size_threshold < 0:
        raise ConfigError("--file-size-threshold cannot be negative")
    return SyncConfig(
        directory=args.directory,
        target=build_target(args),
        checksum_file=args.checksum_file,
        checksum_only=args.checksum_only,
        dry_run=args.dry_run,
        force=args.force,
        skip_removal=args.skip_removal,
        concurrency=args.concurrency,
        file_size_threshold=int(args.file_size_threshold * MB),
        hash_algorithm=args.hash_algorithm,
        upload_manifest=args.upload_manifest,
    )


def print_report(report: SyncReport, quiet: bool = False, out: Optional[TextIO] = None,
                 err: Optional[TextIO] = None) -> None:
    """Print a human-readable summary of ``report``."""
    out = out or sys.stdout
    err = err or sys.stderr
    for error in report.errored:
        print(Colors.error(f"{error.path}: {error.message}"), file=err)
    for warning in report.warnings:
        print(Colors.warning(warning), file=err)
    if report.failed:
        print(Colors.error(f"Sync failed: {report.error}"), file=err)
    if quiet:
        return

    if report.dry_run:
        for label, paths in (('create', report.created), ('update', report.updated),
                             ('delete', report.deleted)):
            for path in paths:
                print(f"  would {label} {path}", file=out)

    counts = report.counts
    summary = (f"{counts['created']} created, {counts['updated']} updated, "
               f"{counts['deleted']} deleted, {counts['skipped']} unchanged")
    if counts['errored']:
        summary += f", {counts['errored']} failed"
    timing = f"{format_size(report.bytes_transferred)} sent in {format_time(report.elapsed)}"

    if report.dry_run:
        print(Colors.info(f"Dry run: {summary}"), file=out)
    elif report.checksum_only:
        print(Colors.info(f"Manifest written: {summary}"), file=out)
    elif report.failed:
        print(Colors.dim(f"{summary}; {timing}"), file=out)
    elif report.errored:
        print(Colors.warning(f"Completed with errors: {summary}; {timing}"), file=out)
    else:
        print(Colors.success(f"{summary}; {timing}"), file=out)


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main CLI entry point.

    Returns:
        Exit code (see module docstring)
    """
    parser = create_parser()
    args = parser.parse_args(argv)
    if args.no_color:
        Config.USE_COLORS = False
    configure_logging(args.verbose, args.quiet)

    try:
        config = build_config(args)
        report = run(config)
    except ConfigError as e:
        print(Colors.error(f"syncbox: {e}"), file=sys.stderr)
        return e.code

    print_report(report, quiet=args.quiet)
    return report.exit_code


if __name__ == "__main__":
    sys.exit(main())
