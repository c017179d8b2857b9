"""
Plan execution against a transport.

Changes are dispatched to a bounded thread pool. Each worker performs one
transport call and, when it succeeds, applies the matching manifest
mutation under a lock that is held only for that mutation. The manifest
therefore always describes exactly the actions that completed, whatever
happens to the rest of the run.

Error policy:

- NOT_FOUND, PERMISSION_DENIED, TIMEOUT and unexpected per-file failures are
  recorded against the path; the run continues.
- CONNECTION_FAILED and AUTH_FAILED stop the run: actions not yet started
  are cancelled, actions in flight are allowed to finish.
- Ctrl-C behaves like a fatal error.
"""

from __future__ import annotations

import logging
import os
import threading
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Union

from .errors import TransportError, TransportErrorKind
from .manifest import Manifest
from .planner import Action, ActionKind, Plan
from .transport.base import Transport
from .utils import format_size

logger = logging.getLogger('syncbox.executor')


@dataclass(frozen=True)
class FileError:
    """
    A path that could not be synchronized.

    Attributes:
        path: Relative path
        message: Error description
        kind: ``TransportErrorKind`` value, ``"scan"`` for scanner errors or
            ``"internal"`` for unexpected failures
    """
    path: str
    message: str
    kind: str = "internal"

    def __str__(self) -> str:
        return f"{self.path}: {self.message}"


@dataclass
class ExecutionResult:
    """Per-path outcome of :meth:`Executor.execute`."""
    created: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    errored: List[FileError] = field(default_factory=list)
    bytes_transferred: int = 0
    fatal_error: Optional[TransportError] = None
    interrupted: bool = False

    @property
    def aborted(self) -> bool:
        return self.fatal_error is not None or self.interrupted

    def sort(self) -> None:
        for paths in (self.created, self.updated, self.deleted, self.skipped):
            paths.sort()
        self.errored.sort(key=lambda e: e.path)


class Executor:
    """
    Apply a :class:`~syncbox.planner.Plan`.

    Args:
        transport: Backend to drive (may be None for dry runs and
            checksum-only runs, which never call it)
        manifest: In-memory manifest, mutated as actions succeed
        root: Local source directory
        concurrency: Worker threads
        dry_run: Record what would be done; no transport call, no mutation
        checksum_only: Apply every action to the manifest without transferring

    Example:
        >>> executor = Executor(transport, manifest, "photos", concurrency=4)
        >>> result = executor.execute(plan)
        >>> result.created
        ['2024/img001.jpg']
    """

    def __init__(
        self,
        transport: Optional[Transport],
        manifest: Manifest,
        root: Union[str, os.PathLike],
        concurrency: int = 1,
        dry_run: bool = False,
        checksum_only: bool = False,
    ) -> None:
        if dry_run and checksum_only:
            raise ValueError("dry_run and checksum_only are mutually exclusive")
        self.transport = transport
        self.manifest = manifest
        self.root = Path(root)
        self.concurrency = max(1, concurrency)
        self.dry_run = dry_run
        self.checksum_only = checksum_only
        self._lock = threading.Lock()
        self._abort = threading.Event()
        self._result = ExecutionResult()

    def execute(self, plan: Plan) -> ExecutionResult:
        self._result = result = ExecutionResult()
        self._abort.clear()

        for action in plan.of_kind(ActionKind.SKIP):
            result.skipped.append(action.path)
            if not self.dry_run and action.entry is not None:
                # New mtime or hash for an unchanged file
                self.manifest.insert(action.entry)

        changes = plan.changes
        if self.dry_run:
            for action in changes:
                logger.info(f"Would {action}")
                self._paths_for(action.kind).append(action.path)
        elif self.checksum_only:
            for action in changes:
                self._apply(action)
                self._paths_for(action.kind).append(action.path)
        elif changes:
            if self.transport is None:
                raise ValueError("a transport is required to execute changes")
            self._dispatch(changes)

        result.sort()
        return result

    def _dispatch(self, changes: List[Action]) -> None:
        pool = ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix='syncbox-worker')
        futures: Dict[Future, Action] = {}
        try:
            for action in changes:
                futures[pool.submit(self._run_action, action)] = action
            for _future in as_completed(futures):
                if self._abort.is_set():
                    self._cancel_pending(futures)
        except KeyboardInterrupt:
            logger.warning("Interrupted: waiting for transfers in progress to finish")
            self._result.interrupted = True
            self._abort.set()
            self._cancel_pending(futures)
        finally:
            pool.shutdown(wait=True)

    @staticmethod
    def _cancel_pending(futures: Dict[Future, Action]) -> None:
        for future in futures:
            future.cancel()

    def _run_action(self, action: Action) -> None:
        if self._abort.is_set():
            return
        assert self.transport is not None
        try:
            if action.kind == ActionKind.DELETE:
                self._delete(action.path)
                sent = 0
            else:
                sent = self.transport.upload(self._local_path(action.path), action.path)
        except TransportError as e:
            self._record_failure(action, e)
            return
        except Exception as e:
            logger.exception(f"Unexpected error while processing {action}")
            with self._lock:
                self._result.errored.append(FileError(action.path, f"unexpected error: {e}", "internal"))
            return

        with self._lock:
            self._apply(action)
            self._paths_for(action.kind).append(action.path)
            self._result.bytes_transferred += sent
        if action.kind == ActionKind.DELETE:
            logger.info(f"Deleted {action.path}")
        else:
            logger.info(f"{action.kind.value.capitalize()}d {action.path} ({format_size(sent)})")

    def _delete(self, path: str) -> None:
        assert self.transport is not None
        try:
            self.transport.delete(path)
        except TransportError as e:
            if e.kind != TransportErrorKind.NOT_FOUND:
                raise
            # Already gone on the target: the goal state is reached
            logger.info(f"{path} was already absent from the target")

    def _record_failure(self, action: Action, error: TransportError) -> None:
        with self._lock:
            if error.is_fatal:
                self._abort.set()
                if self._result.fatal_error is None:
                    self._result.fatal_error = error
                    logger.error(f"Aborting run: {error}")
                else:
                    logger.debug(f"Further fatal error on {action.path}: {error}")
                return
            self._result.errored.append(FileError(action.path, error.message, error.kind.value))
        logger.warning(f"Failed to {action.kind.value} {action.path}: {error}")

    def _apply(self, action: Action) -> None:
        """Reflect a completed action in the manifest."""
        if action.kind == ActionKind.DELETE:
            self.manifest.remove(action.path)
        elif action.entry is not None:
            self.manifest.insert(action.entry)

    def _paths_for(self, kind: ActionKind) -> List[str]:
        if kind == ActionKind.CREATE:
            return self._result.created
        elif kind == ActionKind.UPDATE:
            return self._result.updated
        elif kind == ActionKind.DELETE:
            return self._result.deleted
        return self._result.skipped

    def _local_path(self, relative_path: str) -> Path:
        return self.root.joinpath(*relative_path.split('/'))
