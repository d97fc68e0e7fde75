"""
Change planning.

Compares the current scan against the index state:
- new identifier              → to_embed
- fingerprint differs         → to_embed, old vector recorded as superseded
- fingerprint equal           → unchanged
- indexed but not scanned     → its vector goes to to_delete

Renames are not detected: a moved file is a deletion plus an insertion.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable

from .scanner import FileRecord
from .state import IndexEntry


class Change(str, Enum):
    """Classification of one scanned file."""
    NEW = "new"
    MODIFIED = "modified"
    UNCHANGED = "unchanged"


@dataclass
class ChangePlan:
    """
    The work for one run. Never persisted.

    Attributes:
        to_embed: Files needing a new embedding, in scan order
        to_delete: vector_id → identifier of entries that disappeared
        unchanged: Identifiers whose fingerprint matched
        superseded: identifier → vector_id replaced by a new version
    """
    to_embed: list[FileRecord] = field(default_factory=list)
    to_delete: dict[str, str] = field(default_factory=dict)
    unchanged: set[str] = field(default_factory=set)
    superseded: dict[str, str] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.to_embed and not self.to_delete


class ChangePlanner:
    """
    Incremental planner, fed one FileRecord at a time.

    Usage:
        planner = ChangePlanner(state.list_all())
        for record in scanner.scan():
            if planner.classify(record) is not Change.UNCHANGED:
                submit(record)
        plan = planner.finish(held=scanner.report.unreadable)
    """

    def __init__(
        self,
        entries: Iterable[IndexEntry],
        missing_vector_ids: Iterable[str] = (),
    ):
        """
        Args:
            entries: Current index state.
            missing_vector_ids: Vector ids known to be absent from the store.
                Their entries are treated as if they did not exist.
        """
        self._entries = {entry.identifier: entry for entry in entries}
        self._missing = set(missing_vector_ids)
        self._seen: set[str] = set()
        self.plan = ChangePlan()

    def classify(self, record: FileRecord) -> Change:
        """Classify one scanned file and add it to the plan."""
        self._seen.add(record.identifier)
        entry = self._entries.get(record.identifier)

        if entry is None or entry.vector_id in self._missing:
            self.plan.to_embed.append(record)
            return Change.NEW

        if entry.fingerprint == record.fingerprint.hex:
            self.plan.unchanged.add(record.identifier)
            return Change.UNCHANGED

        self.plan.to_embed.append(record)
        self.plan.superseded[record.identifier] = entry.vector_id
        return Change.MODIFIED

    def finish(self, held: Iterable[str] = ()) -> ChangePlan:
        """
        Complete the plan with deletions.

        Args:
            held: Identifiers (files or directories) that exist but could not
                be read; entries under them are kept.
        """
        held = set(held)
        for identifier, entry in self._entries.items():
            if identifier in self._seen or _is_held(identifier, held):
                continue
            self.plan.to_delete[entry.vector_id] = identifier
        return self.plan


def plan_changes(
    records: Iterable[FileRecord],
    entries: Iterable[IndexEntry],
    missing_vector_ids: Iterable[str] = (),
    held: Iterable[str] = (),
) -> ChangePlan:
    """Build a ChangePlan in one call."""
    planner = ChangePlanner(entries, missing_vector_ids)
    for record in records:
        planner.classify(record)
    return planner.finish(held)


def _is_held(identifier: str, held: set[str]) -> bool:
    if identifier in held:
        return True
    return any(identifier.startswith(prefix + "/") for prefix in held if prefix)
