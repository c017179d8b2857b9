"""
Run orchestration: ``run(config) -> SyncReport``.

A run moves through these states::

    INIT -> SCAN -> LOAD_MANIFEST -> PLAN
         -> (checksum_only) PERSIST_MANIFEST -> DONE
         -> (dry_run)       REPORT -> DONE
         -> EXECUTE -> PERSIST_MANIFEST -> DONE | FAILED

Failures before EXECUTE leave the manifest file untouched. Once execution
has started, the manifest is always persisted with the actions that
completed, even when the run fails, so the next run resumes from there.
"""

from __future__ import annotations

import glob
import logging
import os
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from tempfile import TemporaryDirectory
from typing import Dict, List, Optional

from . import manifest as manifest_codec
from .config import LocalTarget, SyncConfig
from .errors import EXIT_FAILED, EXIT_OK, EXIT_PARTIAL, SyncboxError, TransportError, TransportErrorKind
from .executor import ExecutionResult, Executor, FileError
from .manifest import MANIFEST_VERSION, Manifest
from .planner import Plan, plan
from .scanner import Scanner
from .transport import Transport, create_transport
from .utils import format_size, format_time

logger = logging.getLogger('syncbox.runner')


class RunState(Enum):
    INIT = "init"
    SCAN = "scan"
    LOAD_MANIFEST = "load_manifest"
    PLAN = "plan"
    EXECUTE = "execute"
    PERSIST_MANIFEST = "persist_manifest"
    REPORT = "report"
    DONE = "done"
    FAILED = "failed"


class RunOutcome(Enum):
    DONE = "done"
    FAILED = "failed"


@dataclass
class SyncReport:
    """
    Structured result of a run.

    In a dry run the created/updated/deleted lists hold what *would* have
    been done.

    Attributes:
        outcome: DONE, or FAILED when the run was aborted
        error: Description of the fatal error, if any
        exception: The fatal exception, if any
        state: State the run ended in
        plan: The action plan, once computed
        warnings: Non-fatal problems outside individual files
    """
    created: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    errored: List[FileError] = field(default_factory=list)
    outcome: RunOutcome = RunOutcome.DONE
    error: Optional[str] = None
    exception: Optional[BaseException] = field(default=None, repr=False)
    state: RunState = RunState.INIT
    plan: Optional[Plan] = field(default=None, repr=False)
    dry_run: bool = False
    checksum_only: bool = False
    bytes_transferred: int = 0
    elapsed: float = 0.0
    warnings: List[str] = field(default_factory=list)

    @property
    def counts(self) -> Dict[str, int]:
        return {
            'created': len(self.created),
            'updated': len(self.updated),
            'deleted': len(self.deleted),
            'skipped': len(self.skipped),
            'errored': len(self.errored),
        }

    @property
    def failed(self) -> bool:
        return self.outcome == RunOutcome.FAILED

    @property
    def exit_code(self) -> int:
        """0 on success, 23 when some files failed, 1 when the run was aborted."""
        if self.failed:
            return EXIT_FAILED
        if self.errored:
            return EXIT_PARTIAL
        return EXIT_OK

    def merge(self, result: ExecutionResult) -> None:
        self.created = result.created
        self.updated = result.updated
        self.deleted = result.deleted
        self.skipped = result.skipped
        self.errored = sorted(self.errored + result.errored, key=lambda e: e.path)
        self.bytes_transferred = result.bytes_transferred


class SyncRunner:
    """
    Drive one synchronization run.

    Args:
        config: Run configuration (validated by :meth:`run`)
        transport: Backend to use instead of one built from ``config.target``;
            it is not closed by the runner

    Example:
        >>> report = SyncRunner(SyncConfig("photos", LocalTarget("/mnt/backup"))).run()
        >>> report.exit_code
        0
    """

    def __init__(self, config: SyncConfig, transport: Optional[Transport] = None) -> None:
        self.config = config
        self.transport = transport
        self.state = RunState.INIT
        self.report = SyncReport(dry_run=config.dry_run, checksum_only=config.checksum_only)
        self._started = 0.0
        self._owned: Optional[Transport] = None

    def _enter(self, state: RunState) -> None:
        logger.debug(f"{self.state.value} -> {state.value}")
        self.state = state
        self.report.state = state

    def run(self) -> SyncReport:
        """
        Execute the run.

        Raises:
            ConfigError: If the configuration is invalid (nothing is touched)
        """
        self.config.validate(require_target=self.transport is None)
        self._started = time.monotonic()
        try:
            return self._run()
        finally:
            if self._owned is not None:
                self._owned.close()

    def _run(self) -> SyncReport:
        config = self.config
        manifest_path = config.manifest_path

        try:
            self._enter(RunState.SCAN)
            scan = self._scanner().scan(config.directory)
            self.report.errored.extend(FileError(e.path, e.message, "scan") for e in scan.errors)

            self._enter(RunState.LOAD_MANIFEST)
            previous = self._load_manifest(manifest_path)

            self._enter(RunState.PLAN)
            actions = plan(previous, scan.entries, skip_removal=config.skip_removal,
                           algorithm=config.hash_algorithm,
                           unreadable=[e.path for e in scan.errors])
            self.report.plan = actions
        except SyncboxError as e:
            return self._fail(e)
        except KeyboardInterrupt as e:
            return self._fail(e, "interrupted")

        working = previous.copy()
        working.version = MANIFEST_VERSION
        working.algorithm = config.hash_algorithm

        if config.checksum_only:
            result = Executor(None, working, config.directory, checksum_only=True).execute(actions)
            self.report.merge(result)
            if not self._persist(working, manifest_path):
                return self._finish()
            return self._done()

        if config.dry_run:
            self._enter(RunState.REPORT)
            result = Executor(None, working, config.directory, dry_run=True).execute(actions)
            self.report.merge(result)
            return self._done()

        try:
            transport = self._transport()
        except SyncboxError as e:
            return self._fail(e)
        self._enter(RunState.EXECUTE)
        result = Executor(transport, working, config.directory, concurrency=config.concurrency).execute(actions)
        self.report.merge(result)
        persisted = self._persist(working, manifest_path)
        if result.fatal_error is not None:
            return self._fail(result.fatal_error)
        if result.interrupted:
            return self._fail(KeyboardInterrupt(), "interrupted")
        if persisted and config.upload_manifest:
            self._upload_manifest(transport, manifest_path)
        if self.report.failed:
            return self._finish()
        return self._done()

    def _transport(self) -> Transport:
        """The injected transport, or one built from the target on first use."""
        if self.transport is not None:
            return self.transport
        if self._owned is None:
            self._owned = create_transport(self.config.target, self.config.concurrency)  # type: ignore[arg-type]
        return self._owned

    def _load_manifest(self, path: Path) -> Manifest:
        """
        Load the previous manifest.

        Without a local copy, a real run reads the one uploaded to the target
        by an earlier run (from another checkout or machine), so files already
        there are not sent again.
        """
        config = self.config
        if path.exists() or not config.upload_manifest or config.dry_run or config.checksum_only:
            return manifest_codec.load(path, force=config.force)

        transport = self._transport()
        with TemporaryDirectory(prefix='syncbox-') as tmp:
            fetched = Path(tmp) / path.name
            try:
                transport.download(path.name, fetched)
            except TransportError as e:
                if e.kind != TransportErrorKind.NOT_FOUND:
                    raise
                logger.info(f"No manifest at {path} or on the target, starting from an empty one")
                return Manifest()
            logger.info(f"Fetched manifest {path.name} from the target")
            return manifest_codec.load(fetched, force=config.force)

    def _scanner(self) -> Scanner:
        config = self.config
        ignore_names = [Path(config.checksum_file).name]
        ignore_patterns = []
        rel = self._source_relative(config.manifest_path)
        if rel is not None:
            # Temporary files left by an interrupted save
            ignore_patterns.append(f"/{glob.escape(rel)}.*.tmp")
        if isinstance(config.target, LocalTarget):
            rel = self._source_relative(config.target.path)
            if rel is not None:
                logger.info(f"Not scanning {rel}/: it is the destination directory")
                ignore_patterns.append(f"/{glob.escape(rel)}/")
        return Scanner(
            threshold=config.file_size_threshold,
            algorithm=config.hash_algorithm,
            ignore_names=ignore_names,
            ignore_patterns=ignore_patterns,
            hash_workers=config.hash_workers,
        )

    def _source_relative(self, path) -> Optional[str]:
        """'/'-separated path of ``path`` below the source directory, or None."""
        root = os.path.abspath(self.config.directory)
        try:
            rel = os.path.relpath(os.path.abspath(path), root)
        except ValueError:
            return None  # another drive
        if rel in (os.curdir, os.pardir) or rel.startswith(os.pardir + os.sep) or os.path.isabs(rel):
            return None
        return Path(rel).as_posix()

    def _persist(self, working: Manifest, path: Path) -> bool:
        self._enter(RunState.PERSIST_MANIFEST)
        try:
            manifest_codec.save(working, path)
        except SyncboxError as e:
            self._mark_failed(e)
            return False
        return True

    def _upload_manifest(self, transport: Transport, path: Path) -> None:
        remote_name = path.name
        try:
            transport.upload(path, remote_name)
        except TransportError as e:
            message = f"could not upload manifest to the target: {e}"
            logger.warning(message)
            self.report.warnings.append(message)
        else:
            logger.info(f"Uploaded manifest as {remote_name}")

    def _fail(self, error: BaseException, message: Optional[str] = None) -> SyncReport:
        self._mark_failed(error, message)
        return self._finish()

    def _mark_failed(self, error: BaseException, message: Optional[str] = None) -> None:
        report = self.report
        if report.outcome != RunOutcome.FAILED:
            report.outcome = RunOutcome.FAILED
            report.error = message or str(error)
            report.exception = error
            logger.error(f"Run failed during {self.state.value}: {report.error}")
        self._enter(RunState.FAILED)

    def _done(self) -> SyncReport:
        self._enter(RunState.DONE)
        return self._finish()

    def _finish(self) -> SyncReport:
        report = self.report
        report.elapsed = time.monotonic() - self._started if self._started else 0.0
        counts = report.counts
        logger.info(
            f"{'Dry run' if report.dry_run else 'Run'} {report.outcome.value}: "
            f"{counts['created']} created, {counts['updated']} updated, {counts['deleted']} deleted, "
            f"{counts['skipped']} unchanged, {counts['errored']} failed; "
            f"{format_size(report.bytes_transferred)} in {format_time(report.elapsed)}"
        )
        return report


def run(config: SyncConfig, transport: Optional[Transport] = None) -> SyncReport:
    """
    Synchronize ``config.directory`` to ``config.target``.

    Args:
        config: Run configuration
        transport: Optional pre-built backend (not closed by the run)

    Returns:
        SyncReport; ``report.exit_code`` is the process exit status

    Raises:
        ConfigError: If the configuration is invalid
    """
    return SyncRunner(config, transport).run()
