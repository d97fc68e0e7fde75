"""
Per-file code statistics and repository summaries.

Classifies a file's language from its name and counts lines by category
(code, comment, blank) using each language's comment syntax. Files in an
unknown language still get metrics: every non-blank line counts as code.

The analyzer is a pure function of (identifier, content) and never raises.
"""

from __future__ import annotations

import math
import posixpath
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Iterable, Optional


@dataclass(frozen=True)
class LanguageSpec:
    """Comment syntax for one language."""
    name: str
    extensions: tuple[str, ...] = ()
    filenames: tuple[str, ...] = ()
    line_comments: tuple[str, ...] = ()
    block_comments: tuple[tuple[str, str], ...] = ()
    # Block delimiters only recognised at the start of a line (docstrings)
    docstrings: tuple[tuple[str, str], ...] = ()


_C_BLOCK = (("/*", "*/"),)
_C_LIKE = ("//",)

LANGUAGES: tuple[LanguageSpec, ...] = (
    LanguageSpec("Rust", (".rs",), line_comments=_C_LIKE, block_comments=_C_BLOCK),
    LanguageSpec(
        "Python", (".py", ".pyi", ".pyw"), line_comments=("#",),
        docstrings=(('"""', '"""'), ("'''", "'''")),
    ),
    LanguageSpec("JavaScript", (".js", ".mjs", ".cjs", ".jsx"), line_comments=_C_LIKE, block_comments=_C_BLOCK),
    LanguageSpec("TypeScript", (".ts", ".tsx", ".mts", ".cts"), line_comments=_C_LIKE, block_comments=_C_BLOCK),
    LanguageSpec("Go", (".go",), line_comments=_C_LIKE, block_comments=_C_BLOCK),
    LanguageSpec("Java", (".java",), line_comments=_C_LIKE, block_comments=_C_BLOCK),
    LanguageSpec("Kotlin", (".kt", ".kts"), line_comments=_C_LIKE, block_comments=_C_BLOCK),
    LanguageSpec("Scala", (".scala", ".sc"), line_comments=_C_LIKE, block_comments=_C_BLOCK),
    LanguageSpec("Swift", (".swift",), line_comments=_C_LIKE, block_comments=_C_BLOCK),
    LanguageSpec("C", (".c", ".h"), line_comments=_C_LIKE, block_comments=_C_BLOCK),
    LanguageSpec("C++", (".cc", ".cpp", ".cxx", ".hpp", ".hh", ".hxx"), line_comments=_C_LIKE, block_comments=_C_BLOCK),
    LanguageSpec("C#", (".cs",), line_comments=_C_LIKE, block_comments=_C_BLOCK),
    LanguageSpec("PHP", (".php",), line_comments=("//", "#"), block_comments=_C_BLOCK),
    LanguageSpec("Ruby", (".rb",), filenames=("Gemfile", "Rakefile"), line_comments=("#",),
                 docstrings=(("=begin", "=end"),)),
    LanguageSpec("Shell", (".sh", ".bash", ".zsh"), line_comments=("#",)),
    LanguageSpec("PowerShell", (".ps1", ".psm1"), line_comments=("#",), block_comments=(("<#", "#>"),)),
    LanguageSpec("Lua", (".lua",), line_comments=("--",), block_comments=(("--[[", "]]"),)),
    LanguageSpec("SQL", (".sql",), line_comments=("--",), block_comments=_C_BLOCK),
    LanguageSpec("Haskell", (".hs",), line_comments=("--",), block_comments=(("{-", "-}"),)),
    LanguageSpec("Elixir", (".ex", ".exs"), line_comments=("#",)),
    LanguageSpec("Dart", (".dart",), line_comments=_C_LIKE, block_comments=_C_BLOCK),
    LanguageSpec("HTML", (".html", ".htm"), block_comments=(("<!--", "-->"),)),
    LanguageSpec("XML", (".xml", ".xsd", ".svg"), block_comments=(("<!--", "-->"),)),
    LanguageSpec("CSS", (".css",), block_comments=_C_BLOCK),
    LanguageSpec("SCSS", (".scss", ".sass"), line_comments=_C_LIKE, block_comments=_C_BLOCK),
    LanguageSpec("Markdown", (".md", ".markdown")),
    LanguageSpec("reStructuredText", (".rst",)),
    LanguageSpec("JSON", (".json",)),
    LanguageSpec("YAML", (".yaml", ".yml"), line_comments=("#",)),
    LanguageSpec("TOML", (".toml",), filenames=("Cargo.lock",), line_comments=("#",)),
    LanguageSpec("INI", (".ini", ".cfg"), line_comments=(";", "#")),
    LanguageSpec("Makefile", (".mk",), filenames=("Makefile", "makefile", "GNUmakefile"), line_comments=("#",)),
    LanguageSpec("Dockerfile", (), filenames=("Dockerfile",), line_comments=("#",)),
    LanguageSpec("CMake", (".cmake",), filenames=("CMakeLists.txt",), line_comments=("#",)),
    LanguageSpec("Plain Text", (".txt",)),
)

_BY_FILENAME = {name: lang for lang in LANGUAGES for name in lang.filenames}
_BY_EXTENSION = {ext: lang for lang in LANGUAGES for ext in lang.extensions}

UNKNOWN_LANGUAGE = "unknown"


@dataclass(frozen=True)
class FileMetrics:
    """Line counts and size for one file."""
    lines: int = 0
    code: int = 0
    comments: int = 0
    blanks: int = 0
    size_bytes: int = 0
    # Git history, filled in when available
    commits: Optional[int] = None
    change_frequency: Optional[float] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FileMetrics":
        known = {k: data[k] for k in cls.__dataclass_fields__ if k in data}
        return cls(**known)


@dataclass(frozen=True)
class FileStats:
    """Result of analyzing one file."""
    language: Optional[str]
    metrics: FileMetrics


def detect_language(identifier: str) -> Optional[LanguageSpec]:
    """Classify a file by filename, then by (lowercased) extension."""
    basename = posixpath.basename(identifier.replace("\\", "/"))
    if basename in _BY_FILENAME:
        return _BY_FILENAME[basename]
    _, ext = posixpath.splitext(basename)
    return _BY_EXTENSION.get(ext.lower())


def analyze(identifier: str, content: bytes) -> FileStats:
    """
    Compute language and line metrics for a file.

    Args:
        identifier: Repo-relative path, used for classification.
        content: Raw file bytes.

    Returns:
        FileStats; language is None for unknown file types.
    """
    spec = detect_language(identifier)
    text = content.decode("utf-8", errors="replace")
    lines = text.splitlines()

    if spec is None:
        blanks = sum(1 for line in lines if not line.strip())
        metrics = FileMetrics(
            lines=len(lines),
            code=len(lines) - blanks,
            comments=0,
            blanks=blanks,
            size_bytes=len(content),
        )
        return FileStats(language=None, metrics=metrics)

    code, comments, blanks = _count_lines(lines, spec)
    metrics = FileMetrics(
        lines=len(lines),
        code=code,
        comments=comments,
        blanks=blanks,
        size_bytes=len(content),
    )
    return FileStats(language=spec.name, metrics=metrics)


def _count_lines(lines: list[str], spec: LanguageSpec) -> tuple[int, int, int]:
    """Count (code, comments, blanks) following the language's comment syntax."""
    code = comments = blanks = 0
    block_end: Optional[str] = None

    for raw in lines:
        line = raw.strip()

        if block_end is not None:
            if not line:
                blanks += 1
                continue
            if block_end in line:
                after = line[line.index(block_end) + len(block_end):].strip()
                block_end = None
                if after and not _starts_with_any(after, spec.line_comments):
                    code += 1
                    block_end = _opens_block(after, spec)
                    continue
            comments += 1
            continue

        if not line:
            blanks += 1
            continue

        # Block openers may begin with a line comment prefix (Lua "--[[")
        started = False
        for start, end in spec.block_comments + spec.docstrings:
            if line.startswith(start):
                rest = line[len(start):]
                if end in rest:
                    after = rest[rest.index(end) + len(end):].strip()
                    if after and not _starts_with_any(after, spec.line_comments):
                        code += 1
                        block_end = _opens_block(after, spec)
                    else:
                        comments += 1
                else:
                    comments += 1
                    block_end = end
                started = True
                break
        if started:
            continue

        if _starts_with_any(line, spec.line_comments):
            comments += 1
            continue

        code += 1
        block_end = _opens_block(line, spec)

    return code, comments, blanks


def _starts_with_any(line: str, prefixes: Iterable[str]) -> bool:
    return any(line.startswith(p) for p in prefixes)


def _opens_block(line: str, spec: LanguageSpec) -> Optional[str]:
    """Return the block terminator if a block comment opens mid-line and stays open."""
    for start, end in spec.block_comments:
        idx = line.find(start)
        if idx < 0:
            continue
        # A line comment before the block start hides it
        if any(0 <= line.find(lc) < idx for lc in spec.line_comments):
            continue
        if end not in line[idx + len(start):]:
            return end
    return None


# =============================================================================
# Sentiment
# =============================================================================

def negative_sentiment_for_int(num: int) -> float:
    """-floor(log10(num)): larger values give a more negative sentiment."""
    if num <= 0:
        return 0.0
    return -float(len(str(int(num))) - 1)


def negative_sentiment_for_float(num: Optional[float]) -> float:
    """-log10(num), used for commit frequency."""
    if not num or num <= 0:
        return 0.0
    return -math.log10(num)


def sentiments(metrics: FileMetrics) -> dict[str, float]:
    """Size, code-line and change-frequency sentiments for a payload."""
    return {
        "size_sentiment": negative_sentiment_for_int(metrics.size_bytes),
        "loc_sentiment": negative_sentiment_for_int(metrics.code),
        "frequency_sentiment": negative_sentiment_for_float(metrics.change_frequency),
    }


# =============================================================================
# Repository Summary
# =============================================================================

@dataclass
class LanguageBreakdown:
    """Totals for one language across the repository."""
    name: str
    files: int = 0
    code: int = 0
    comments: int = 0
    blanks: int = 0
    size_bytes: int = 0
    percentage: float = 0.0


@dataclass
class Contributor:
    """A commit author and their share of the history."""
    name: str
    last_contribution: datetime
    commits: int
    percentage: float


@dataclass
class RepositorySummary:
    """Aggregated statistics for a whole repository."""
    name: str
    revision: Optional[str] = None
    predominant_language: Optional[str] = None
    size_bytes: int = 0
    code_lines: int = 0
    num_files: int = 0
    num_commits: int = 0
    languages: list[LanguageBreakdown] = field(default_factory=list)
    contributors: list[Contributor] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        for contributor in data["contributors"]:
            contributor["last_contribution"] = contributor["last_contribution"].isoformat()
        return data


class SummaryBuilder:
    """Accumulates per-file statistics into a RepositorySummary."""

    def __init__(self, name: str):
        self.name = name
        self._languages: dict[str, LanguageBreakdown] = {}
        self._size = 0
        self._files = 0

    def add(self, language: Optional[str], metrics: FileMetrics) -> None:
        key = language or UNKNOWN_LANGUAGE
        entry = self._languages.setdefault(key, LanguageBreakdown(name=key))
        entry.files += 1
        entry.code += metrics.code
        entry.comments += metrics.comments
        entry.blanks += metrics.blanks
        entry.size_bytes += metrics.size_bytes
        self._size += metrics.size_bytes
        self._files += 1

    def build(
        self,
        revision: Optional[str] = None,
        num_commits: int = 0,
        contributors: Optional[list[Contributor]] = None,
    ) -> RepositorySummary:
        languages = sorted(
            self._languages.values(),
            key=lambda lang: (-lang.code, lang.name),
        )
        total_code = sum(lang.code for lang in languages)
        for lang in languages:
            lang.percentage = (lang.code / total_code * 100) if total_code else 0.0

        return RepositorySummary(
            name=self.name,
            revision=revision,
            predominant_language=predominant_language(languages),
            size_bytes=self._size,
            code_lines=total_code,
            num_files=self._files,
            num_commits=num_commits,
            languages=languages,
            contributors=contributors or [],
        )


def predominant_language(languages: list[LanguageBreakdown]) -> Optional[str]:
    """Highest share of code lines wins; ties go to the larger total size."""
    best: Optional[LanguageBreakdown] = None
    for lang in languages:
        if lang.name == UNKNOWN_LANGUAGE:
            continue
        if best is None or (lang.percentage, lang.size_bytes) > (best.percentage, best.size_bytes):
            best = lang
    return best.name if best else None
