"""Candidate listing for filesystem, git and Mercurial roots.

Every lister yields ``Candidate`` values lazily and exposes ``complete``:
after the generator is exhausted it is ``True`` only when nothing under
the root was skipped because of an error. The crawler removes unseen
documents only under completely listed roots.
"""

from __future__ import annotations

from collections.abc import Iterator
import logging
import os
from pathlib import Path
import shutil
import subprocess

from intern.crawl.ignore import VCS_DIRECTORIES, IgnoreRules
from intern.domain.model import Candidate


logger = logging.getLogger(__name__)

VCS_COMMAND_TIMEOUT_SECONDS = 120


def filesystem_revision(stat_result: os.stat_result) -> str:
    return f"{stat_result.st_mtime_ns}:{stat_result.st_size}"


class FilesystemLister:
    """Walks a directory honouring ``.gitignore``/``.hgignore`` and skipping VCS metadata."""

    vcs = "none"

    def __init__(self, root: Path, *, recurse: bool = True) -> None:
        self.root = root
        self.recurse = recurse
        self.complete = True

    def __iter__(self) -> Iterator[Candidate]:
        self.complete = True
        if self.root.is_file():
            yield from self._file_candidate(self.root)
            return
        yield from self._walk(self.root, IgnoreRules().child(self.root))

    def _walk(self, directory: Path, rules: IgnoreRules) -> Iterator[Candidate]:
        try:
            entries = sorted(os.scandir(directory), key=lambda entry: entry.name)
        except OSError as exc:
            logger.warning("Cannot list %s: %s", directory, exc)
            self.complete = False
            return

        for entry in entries:
            path = Path(entry.path)
            try:
                is_dir = entry.is_dir(follow_symlinks=False)
                is_file = entry.is_file()
            except OSError as exc:
                logger.warning("Cannot stat %s: %s", path, exc)
                self.complete = False
                continue
            if is_dir:
                if not self.recurse or entry.name in VCS_DIRECTORIES or rules.is_ignored(path, is_dir=True):
                    continue
                yield from self._walk(path, rules.child(path))
            elif is_file and not rules.is_ignored(path):
                yield from self._file_candidate(path)

    def _file_candidate(self, path: Path) -> Iterator[Candidate]:
        try:
            stat_result = path.stat()
        except OSError as exc:
            logger.warning("Cannot stat %s: %s", path, exc)
            self.complete = False
            return
        yield Candidate(path=str(path), revision=filesystem_revision(stat_result), modified_time=stat_result.st_mtime)


class _VcsLister:
    """Shared plumbing for listers that ask a VCS for the tracked files."""

    vcs = "vcs"
    executable = ""

    def __init__(self, root: Path, *, recurse: bool = True) -> None:
        self.root = root
        self.recurse = recurse
        self.complete = True

    def __iter__(self) -> Iterator[Candidate]:
        self.complete = True
        if shutil.which(self.executable) is None:
            logger.warning("%s not found; listing %s as a plain directory", self.executable, self.root)
            yield from self._fallback()
            return
        try:
            tracked = self._tracked()
            untracked = self._untracked()
        except (OSError, subprocess.SubprocessError) as exc:
            logger.warning("%s listing failed for %s (%s); listing as a plain directory", self.vcs, self.root, exc)
            yield from self._fallback()
            return

        seen: set[str] = set()
        for relative, object_id in [*tracked, *((path, None) for path in untracked)]:
            if relative in seen or not self._in_scope(relative):
                continue
            seen.add(relative)
            path = self.root / relative
            try:
                stat_result = path.stat()
            except FileNotFoundError:
                # Tracked but deleted from the working copy.
                continue
            except OSError as exc:
                logger.warning("Cannot stat %s: %s", path, exc)
                self.complete = False
                continue
            revision = filesystem_revision(stat_result)
            if object_id:
                revision = f"{object_id}:{stat_result.st_mtime_ns}"
            yield Candidate(path=str(path), revision=revision, modified_time=stat_result.st_mtime)

    def _fallback(self) -> Iterator[Candidate]:
        lister = FilesystemLister(self.root, recurse=self.recurse)
        yield from lister
        self.complete = lister.complete

    def _in_scope(self, relative: str) -> bool:
        parts = relative.split("/")
        if any(part in VCS_DIRECTORIES for part in parts[:-1]):
            return False
        return self.recurse or len(parts) == 1

    def _run(self, *args: str) -> bytes:
        completed = subprocess.run(
            [self.executable, *args],
            cwd=self.root,
            capture_output=True,
            check=True,
            timeout=VCS_COMMAND_TIMEOUT_SECONDS,
        )
        return completed.stdout

    def _tracked(self) -> list[tuple[str, str | None]]:
        raise NotImplementedError

    def _untracked(self) -> list[str]:
        raise NotImplementedError


class GitLister(_VcsLister):
    """Tracked files with their index blob id, plus untracked files git does not ignore."""

    vcs = "git"
    executable = "git"

    def _tracked(self) -> list[tuple[str, str | None]]:
        entries = []
        for record in self._run("ls-files", "-s", "-z").split(b"\0"):
            if not record:
                continue
            # "<mode> <object> <stage>\t<path>"
            meta, _, raw_path = record.partition(b"\t")
            fields = meta.split()
            if len(fields) < 3 or fields[0] == b"160000":
                continue
            entries.append((os.fsdecode(raw_path), fields[1].decode("ascii")))
        return entries

    def _untracked(self) -> list[str]:
        output = self._run("ls-files", "-z", "--others", "--exclude-standard")
        return [os.fsdecode(item) for item in output.split(b"\0") if item]


class HgLister(_VcsLister):
    """Files in the Mercurial manifest with their file node, plus unknown files."""

    vcs = "hg"
    executable = "hg"

    def _tracked(self) -> list[tuple[str, str | None]]:
        entries = []
        for line in self._run("manifest", "--debug").splitlines():
            # "<node> <mode> [*@ ]<path>"
            parts = line.split(b" ", 2)
            if len(parts) != 3:
                continue
            node, _mode, raw_path = parts
            raw_path = raw_path.lstrip(b" *@")
            entries.append((os.fsdecode(raw_path), node.decode("ascii")))
        return entries

    def _untracked(self) -> list[str]:
        output = self._run("status", "--unknown", "--no-status", "--print0")
        return [os.fsdecode(item) for item in output.split(b"\0") if item]


def lister_for(root: Path, *, vcs: str = "auto", recurse: bool = True):
    """Pick the lister for a root: explicit ``vcs`` or, with ``auto``, whatever metadata the root carries."""
    if vcs == "auto":
        if (root / ".git").exists():
            vcs = "git"
        elif (root / ".hg").is_dir():
            vcs = "hg"
        else:
            vcs = "none"
    if vcs == "git":
        return GitLister(root, recurse=recurse)
    if vcs == "hg":
        return HgLister(root, recurse=recurse)
    return FilesystemLister(root, recurse=recurse)


class ListingStatus:
    """Completeness of one root's listing, filled in while its candidates are consumed."""

    def __init__(self) -> None:
        self.complete = True

    def absorb(self, lister: FilesystemLister | _VcsLister) -> None:
        self.complete = self.complete and lister.complete

    def mark_incomplete(self) -> None:
        self.complete = False
