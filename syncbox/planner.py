"""
Diff planning: reconcile the previous manifest with the current scan.

The planner is pure: it reads the manifest and the scan and returns a
:class:`Plan` without touching the filesystem or the transport. Actions are
sorted by path, so two runs over the same state produce identical plans and
identical logs.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Set

from .manifest import Manifest
from .scanner import FileEntry

logger = logging.getLogger('syncbox.planner')


class ActionKind(Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    SKIP = "skip"


@dataclass(frozen=True)
class Action:
    """
    One reconciliation decision for a path.

    Attributes:
        kind: What to do with the path
        path: Relative path (unique within a plan)
        entry: Current scan entry for CREATE/UPDATE/SKIP, None for DELETE
    """
    kind: ActionKind
    path: str
    entry: Optional[FileEntry] = None

    def __str__(self) -> str:
        return f"{self.kind.value} {self.path}"


@dataclass
class Plan:
    """
    Ordered action list.

    ``actions`` includes SKIP decisions (the executor uses them to refresh
    manifest entries); ``changes`` is the list of actions that touch the
    target. A plan "is empty" when it has no changes.
    """
    actions: List[Action] = field(default_factory=list)

    @property
    def changes(self) -> List[Action]:
        return [a for a in self.actions if a.kind != ActionKind.SKIP]

    def of_kind(self, kind: ActionKind) -> List[Action]:
        return [a for a in self.actions if a.kind == kind]

    def counts(self) -> Dict[ActionKind, int]:
        counts = {kind: 0 for kind in ActionKind}
        for action in self.actions:
            counts[action.kind] += 1
        return counts

    @property
    def is_empty(self) -> bool:
        return not self.changes

    def __len__(self) -> int:
        return len(self.actions)

    def __iter__(self):
        return iter(self.actions)


def fingerprints_match(
    previous: FileEntry,
    current: FileEntry,
    same_algorithm: bool = True,
) -> bool:
    """
    Decide whether ``current`` is unchanged since ``previous`` was recorded.

    Both hashed: hashes decide (and only if computed with the same
    algorithm). Neither hashed: ``(size, modified_time)`` decides. One side
    hashed means the file crossed the size threshold; that always counts as
    a change so the freshly computed hash gets recorded.

    Example:
        >>> a = FileEntry("a.txt", 8, 1)
        >>> fingerprints_match(a, FileEntry("a.txt", 8, 1))
        True
        >>> fingerprints_match(a, FileEntry("a.txt", 8, 1, "ab12"))
        False
    """
    if previous.is_hashed and current.is_hashed:
        return same_algorithm and previous.content_hash == current.content_hash
    if previous.is_hashed or current.is_hashed:
        return False
    return (previous.size, previous.modified_time) == (current.size, current.modified_time)


def plan(
    previous: Manifest,
    current: Iterable[FileEntry],
    skip_removal: bool = False,
    algorithm: Optional[str] = None,
    unreadable: Iterable[str] = (),
) -> Plan:
    """
    Build the action plan turning ``previous`` into ``current``.

    Args:
        previous: Last synchronized state
        current: Entries of the current scan (paths must be unique)
        skip_removal: Never emit DELETE; vanished entries stay in the manifest
        algorithm: Hash algorithm of ``current``; defaults to the manifest's
        unreadable: Paths (files or directories) the scanner failed to read;
            manifest entries at or below them are kept instead of deleted

    Returns:
        Plan sorted by path

    Raises:
        ValueError: If ``current`` contains the same path twice
    """
    same_algorithm = algorithm is None or algorithm == previous.algorithm
    if not same_algorithm:
        logger.info(f"Hash algorithm changed from {previous.algorithm} to {algorithm}; "
                    f"hashed files will be re-sent")

    blocked = set(unreadable)
    actions: List[Action] = []
    seen = set()
    for entry in current:
        path = entry.relative_path
        if path in seen:
            raise ValueError(f"duplicate path in scan: {path}")
        seen.add(path)

        old = previous.get(path)
        if old is None:
            actions.append(Action(ActionKind.CREATE, path, entry))
        elif fingerprints_match(old, entry, same_algorithm):
            actions.append(Action(ActionKind.SKIP, path, entry))
        else:
            actions.append(Action(ActionKind.UPDATE, path, entry))

    for path in previous.entries:
        if path in seen:
            continue
        if skip_removal:
            logger.debug(f"Keeping {path} (removal disabled)")
            continue
        if _is_below(path, blocked):
            logger.warning(f"Keeping {path}: it could not be read during the scan")
            continue
        actions.append(Action(ActionKind.DELETE, path))

    actions.sort(key=lambda a: a.path)
    result = Plan(actions)
    counts = result.counts()
    logger.info(
        f"Plan: {counts[ActionKind.CREATE]} create, {counts[ActionKind.UPDATE]} update, "
        f"{counts[ActionKind.DELETE]} delete, {counts[ActionKind.SKIP]} unchanged"
    )
    return result


def _is_below(path: str, roots: Set[str]) -> bool:
    if not roots:
        return False
    if '.' in roots or path in roots:
        return True
    parent = path
    while '/' in parent:
        parent = parent.rsplit('/', 1)[0]
        if parent in roots:
            return True
    return False
