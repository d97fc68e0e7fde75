"""
Repository scanner.

Walks a working tree in deterministic (sorted) order and yields one FileRecord
per indexable file, with its language, line metrics and content fingerprint.

Skipped, not fatal (recorded in the ScanReport):
- files above the configured size ceiling
- binary files (NUL byte in the first 8 KiB)
- symlinks that resolve outside the root
- unreadable files

Fatal: a root that does not exist or cannot be listed.
"""

from __future__ import annotations

import fnmatch
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Iterator, Optional

from loguru import logger

from .config import ScanConfig
from .hasher import Fingerprint
from .history import GitHistory
from .stats import FileMetrics, analyze
from .utils import ScanError

_BINARY_SNIFF_BYTES = 8192


@dataclass(frozen=True)
class FileRecord:
    """
    One file in the current scan.

    Attributes:
        identifier: Repo-relative POSIX path (stable key)
        content: Raw bytes
        language: Classified language, None if unknown
        metrics: Line counts and size
        fingerprint: SHA256 of content
    """
    identifier: str
    content: bytes
    language: Optional[str]
    metrics: FileMetrics
    fingerprint: Fingerprint

    @classmethod
    def build(
        cls,
        identifier: str,
        content: bytes,
        history: Optional[GitHistory] = None,
    ) -> "FileRecord":
        """Analyze and fingerprint raw content."""
        stats = analyze(identifier, content)
        metrics = stats.metrics
        if history is not None and history.available:
            metrics = FileMetrics(
                lines=metrics.lines,
                code=metrics.code,
                comments=metrics.comments,
                blanks=metrics.blanks,
                size_bytes=metrics.size_bytes,
                commits=history.commits_for(identifier),
                change_frequency=history.change_frequency(identifier),
            )
        return cls(
            identifier=identifier,
            content=content,
            language=stats.language,
            metrics=metrics,
            fingerprint=Fingerprint.of(content),
        )


class SkipReason(str, Enum):
    """Why a file was left out of the scan."""
    OVERSIZED = "oversized"
    BINARY = "binary"
    SYMLINK_OUTSIDE_ROOT = "symlink_outside_root"
    UNREADABLE = "unreadable"


@dataclass
class SkippedFile:
    identifier: str
    reason: SkipReason
    detail: str = ""


@dataclass
class ScanReport:
    """What one scan saw and skipped."""
    files_seen: int = 0
    files_yielded: int = 0
    skipped: list[SkippedFile] = field(default_factory=list)

    @property
    def unreadable(self) -> set[str]:
        """Identifiers that exist but could not be read this run."""
        return {s.identifier for s in self.skipped if s.reason == SkipReason.UNREADABLE}

    def count(self, reason: SkipReason) -> int:
        return sum(1 for s in self.skipped if s.reason == reason)


class RepositoryScanner:
    """
    Lazily enumerates indexable files under a root directory.

    Usage:
        scanner = RepositoryScanner(root, config.scan)
        scanner.check_root()
        for record in scanner.scan():
            ...
        print(scanner.report.skipped)
    """

    def __init__(
        self,
        root: str | Path,
        config: Optional[ScanConfig] = None,
        history: Optional[GitHistory] = None,
    ):
        self.root = Path(root)
        self.config = config or ScanConfig()
        self.history = history
        self.report = ScanReport()
        self._max_bytes = self.config.max_file_size_kb * 1024
        self._exclude_dirs = set(self.config.exclude_dirs)
        self._include_extensions = {
            ext.lower() if ext.startswith(".") else f".{ext.lower()}"
            for ext in self.config.include_extensions
        }

    def check_root(self) -> Path:
        """
        Validate the root directory.

        Returns:
            The resolved root.

        Raises:
            ScanError: root missing, not a directory, or not listable.
        """
        if not self.root.exists():
            raise ScanError(f"Repository root does not exist: {self.root}", str(self.root))
        if not self.root.is_dir():
            raise ScanError(f"Repository root is not a directory: {self.root}", str(self.root))
        try:
            with os.scandir(self.root):
                pass
        except OSError as e:
            raise ScanError(f"Repository root is unreadable: {e}", str(self.root)) from e
        return self.root.resolve()

    def scan(self) -> Iterator[FileRecord]:
        """
        Yield FileRecords for every indexable file.

        The report is reset on each call and complete once the iterator is exhausted.
        """
        root = self.check_root()
        self.report = ScanReport()

        for dirpath, dirnames, filenames in os.walk(root, followlinks=False, onerror=self._on_walk_error):
            rel_dir = Path(dirpath).relative_to(root).as_posix()
            rel_dir = "" if rel_dir == "." else rel_dir

            # Prune excluded and symlinked directories in place; sort for determinism
            dirnames[:] = sorted(
                d for d in dirnames
                if d not in self._exclude_dirs
                and not self._is_excluded(_join(rel_dir, d))
                and not os.path.islink(os.path.join(dirpath, d))
            )

            for filename in sorted(filenames):
                identifier = _join(rel_dir, filename)
                if self._is_excluded(identifier):
                    continue
                if self._include_extensions and Path(filename).suffix.lower() not in self._include_extensions:
                    continue

                self.report.files_seen += 1
                record = self._read(root, Path(dirpath) / filename, identifier)
                if record is not None:
                    self.report.files_yielded += 1
                    yield record

        logger.debug(
            f"Scan complete: {self.report.files_yielded} files, "
            f"{len(self.report.skipped)} skipped"
        )

    def _read(self, root: Path, path: Path, identifier: str) -> Optional[FileRecord]:
        """Read one candidate, or record why it was skipped."""
        try:
            if path.is_symlink():
                target = path.resolve()
                if not target.is_relative_to(root):
                    self._skip(identifier, SkipReason.SYMLINK_OUTSIDE_ROOT, str(target))
                    return None
            if not path.is_file():
                return None

            size = path.stat().st_size
            if size > self._max_bytes:
                self._skip(identifier, SkipReason.OVERSIZED, f"{size / 1024:.1f}KB")
                return None

            content = path.read_bytes()
        except OSError as e:
            self._skip(identifier, SkipReason.UNREADABLE, str(e))
            return None

        if b"\x00" in content[:_BINARY_SNIFF_BYTES]:
            self._skip(identifier, SkipReason.BINARY)
            return None

        return FileRecord.build(identifier, content, self.history)

    def _skip(self, identifier: str, reason: SkipReason, detail: str = "") -> None:
        self.report.skipped.append(SkippedFile(identifier, reason, detail))
        if reason == SkipReason.UNREADABLE:
            logger.warning(f"Cannot read {identifier}: {detail}")
        else:
            logger.debug(f"Skipping {identifier} ({reason.value}{': ' + detail if detail else ''})")

    def _is_excluded(self, identifier: str) -> bool:
        basename = identifier.rsplit("/", 1)[-1]
        for pattern in self.config.exclude_patterns:
            if fnmatch.fnmatch(identifier, pattern) or fnmatch.fnmatch(basename, pattern):
                return True
        return False

    def _on_walk_error(self, error: OSError) -> None:
        path = Path(error.filename) if error.filename else self.root
        try:
            identifier = path.resolve().relative_to(self.root.resolve()).as_posix()
        except ValueError:
            identifier = str(path)
        self._skip(identifier, SkipReason.UNREADABLE, str(error))


def _join(rel_dir: str, name: str) -> str:
    return f"{rel_dir}/{name}" if rel_dir else name
