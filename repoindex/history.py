"""
Git history statistics for a working tree.

Reads commit history once per run with ``git log`` and derives:
- the HEAD revision
- per-file commit counts and change frequency (file commits / total commits)
- contributors with their share of commits and last contribution time

A directory that is not a git repository, or a host without git, yields an
empty history. History never affects fingerprints, only payload metadata.
"""

from __future__ import annotations

import subprocess
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from loguru import logger

from .stats import Contributor

_COMMIT_MARKER = "\x1ecommit\x1f"


@dataclass
class GitHistory:
    """Commit statistics for one repository."""
    revision: Optional[str] = None
    total_commits: int = 0
    file_commits: dict[str, int] = field(default_factory=dict)
    contributors: list[Contributor] = field(default_factory=list)

    @property
    def available(self) -> bool:
        return self.total_commits > 0

    def commits_for(self, identifier: str) -> Optional[int]:
        if not self.available:
            return None
        return self.file_commits.get(identifier, 0)

    def change_frequency(self, identifier: str) -> Optional[float]:
        """Percentage of all commits that touched this file."""
        if not self.available:
            return None
        return self.file_commits.get(identifier, 0) / self.total_commits * 100

    @classmethod
    def load(cls, root: str | Path, timeout: int = 120) -> "GitHistory":
        """
        Collect history for the repository containing ``root``.

        Args:
            root: Working tree root.
            timeout: Seconds allowed for each git invocation.

        Returns:
            GitHistory, empty when git data is unavailable.
        """
        root = Path(root)
        revision = _run_git(root, ["rev-parse", "HEAD"], timeout)
        if revision is None:
            logger.debug(f"No git history available for {root}")
            return cls()

        # Paths relative to root even when root is a subdirectory of the repo
        log_output = _run_git(
            root,
            [
                "-c", "core.quotepath=off",
                "log", "--no-merges", "--no-renames", "--relative",
                f"--format={_COMMIT_MARKER}%an%x1f%at",
                "--name-only",
            ],
            timeout,
        )
        if log_output is None:
            return cls(revision=revision.strip())

        history = cls._parse_log(log_output)
        history.revision = revision.strip()
        logger.debug(
            f"Loaded git history: {history.total_commits} commits, "
            f"{len(history.file_commits)} files, {len(history.contributors)} contributors"
        )
        return history

    @classmethod
    def _parse_log(cls, output: str) -> "GitHistory":
        """Parse ``git log --name-only`` output in the marker format."""
        file_commits: Counter[str] = Counter()
        author_commits: Counter[str] = Counter()
        author_last: dict[str, datetime] = {}
        total = 0

        for block in output.split(_COMMIT_MARKER):
            if not block.strip():
                continue
            header, _, files = block.partition("\n")
            author, _, timestamp = header.partition("\x1f")
            total += 1

            when = datetime.fromtimestamp(int(timestamp or 0), tz=timezone.utc)
            author_commits[author] += 1
            if author not in author_last or when > author_last[author]:
                author_last[author] = when

            for path in {line.strip() for line in files.splitlines() if line.strip()}:
                file_commits[path] += 1

        contributors = [
            Contributor(
                name=name,
                last_contribution=author_last[name],
                commits=count,
                percentage=count / total * 100 if total else 0.0,
            )
            for name, count in author_commits.most_common()
        ]

        return cls(
            total_commits=total,
            file_commits=dict(file_commits),
            contributors=contributors,
        )


def _run_git(root: Path, args: list[str], timeout: int) -> Optional[str]:
    """Run a git command in ``root``; None on any failure."""
    try:
        result = subprocess.run(
            ["git", *args],
            cwd=root,
            capture_output=True,
            text=True,
            encoding="utf-8",
            errors="replace",
            timeout=timeout,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.debug(f"git {args[0]} failed: {e}")
        return None

    if result.returncode != 0:
        logger.debug(f"git {' '.join(args[:2])} exited {result.returncode}: {result.stderr.strip()}")
        return None
    return result.stdout
