""".gitignore / .hgignore handling for crawl roots.

Glob patterns follow git's wildmatch rules through ``pathspec``: ``*`` stops
at ``/``, a pattern containing ``/`` is anchored to the directory of its
ignore file and ``**`` spans directories.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path
import re
from typing import Any

import pathspec


logger = logging.getLogger(__name__)

VCS_DIRECTORIES = frozenset({".git", ".hg", ".svn"})
IGNORE_FILES = (".gitignore", ".hgignore")
GIT_SYNTAX = "gitwildmatch"


@dataclass(frozen=True)
class IgnorePattern:
    """One ignore rule relative to the directory holding its ignore file."""

    base: Path
    source: str
    negated: bool = False
    matcher: Any = None
    regex: re.Pattern[str] | None = None

    def matches(self, path: Path, is_dir: bool) -> bool:
        try:
            relative = path.relative_to(self.base).as_posix()
        except ValueError:
            return False
        if self.regex is not None:
            return self.regex.search(relative) is not None
        candidate = f"{relative}/" if is_dir else relative
        return self.matcher.match_file(candidate) is not None


def _wildmatch_patterns(lines: list[str], base: Path) -> list[IgnorePattern]:
    spec = pathspec.PathSpec.from_lines(GIT_SYNTAX, lines)
    return [
        IgnorePattern(base=base, source=pattern.pattern, negated=not pattern.include, matcher=pattern)
        for pattern in spec.patterns
        if pattern.include is not None
    ]


def parse_gitignore(text: str, base: Path) -> list[IgnorePattern]:
    """Parse .gitignore lines into patterns relative to ``base``."""
    return _wildmatch_patterns(text.splitlines(), base)


def parse_hgignore(text: str, base: Path) -> list[IgnorePattern]:
    """Parse .hgignore lines; the default syntax is ``regexp`` as in Mercurial."""
    patterns: list[IgnorePattern] = []
    syntax = "regexp"
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("syntax:"):
            syntax = line.split(":", 1)[1].strip()
            continue
        if syntax == "glob":
            patterns.extend(_wildmatch_patterns([line], base))
            continue
        try:
            patterns.append(IgnorePattern(base=base, source=line, regex=re.compile(line)))
        except re.error as exc:
            logger.warning("Skipping invalid .hgignore pattern %r in %s: %s", line, base, exc)
    return patterns


class IgnoreRules:
    """Accumulated ignore patterns for one directory and its parents.

    Later patterns win, so a deeper ``.gitignore`` or a ``!pattern`` can
    re-include what an earlier pattern excluded.
    """

    def __init__(self, patterns: tuple[IgnorePattern, ...] = ()) -> None:
        self.patterns = patterns

    def child(self, directory: Path) -> IgnoreRules:
        """Rules for ``directory``: these plus its own ignore files."""
        added: list[IgnorePattern] = []
        for name in IGNORE_FILES:
            ignore_file = directory / name
            if not ignore_file.is_file():
                continue
            try:
                text = ignore_file.read_text(encoding="utf-8", errors="replace")
            except OSError as exc:
                logger.warning("Cannot read %s: %s", ignore_file, exc)
                continue
            parser = parse_gitignore if name == ".gitignore" else parse_hgignore
            added.extend(parser(text, directory))
        if not added:
            return self
        return IgnoreRules(self.patterns + tuple(added))

    def is_ignored(self, path: Path, *, is_dir: bool = False) -> bool:
        if is_dir and path.name in VCS_DIRECTORIES:
            return True
        ignored = False
        for pattern in self.patterns:
            if pattern.matches(path, is_dir):
                ignored = not pattern.negated
        return ignored
