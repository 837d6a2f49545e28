"""Unit tests for ignore rules and candidate listers."""

from pathlib import Path
import shutil
import subprocess

import pytest

from intern.crawl.ignore import IgnoreRules, parse_gitignore, parse_hgignore
from intern.crawl.listers import FilesystemLister, GitLister, HgLister, ListingStatus, lister_for


def _relative(candidates, root):
    return sorted(str(Path(candidate.path).relative_to(root)) for candidate in candidates)


@pytest.mark.unit
class TestIgnoreRules:
    def test_gitignore_name_and_directory_patterns(self, tmp_path):
        rules = IgnoreRules(tuple(parse_gitignore("*.log\nbuild/\n", tmp_path)))

        assert rules.is_ignored(tmp_path / "debug.log")
        assert rules.is_ignored(tmp_path / "sub" / "x.log")
        assert rules.is_ignored(tmp_path / "build", is_dir=True)
        assert not rules.is_ignored(tmp_path / "build")
        assert not rules.is_ignored(tmp_path / "notes.md")

    def test_negation_reincludes(self, tmp_path):
        rules = IgnoreRules(tuple(parse_gitignore("*.log\n!keep.log\n", tmp_path)))

        assert rules.is_ignored(tmp_path / "drop.log")
        assert not rules.is_ignored(tmp_path / "keep.log")

    def test_anchored_pattern(self, tmp_path):
        rules = IgnoreRules(tuple(parse_gitignore("/docs/tmp\n", tmp_path)))

        assert rules.is_ignored(tmp_path / "docs" / "tmp", is_dir=True)
        assert rules.is_ignored(tmp_path / "docs" / "tmp" / "a.txt")
        assert not rules.is_ignored(tmp_path / "other" / "docs" / "tmp", is_dir=True)

    def test_double_star_matches_whole_components(self, tmp_path):
        rules = IgnoreRules(tuple(parse_gitignore("**/build\n", tmp_path)))

        assert rules.is_ignored(tmp_path / "build", is_dir=True)
        assert rules.is_ignored(tmp_path / "a" / "b" / "build", is_dir=True)
        assert not rules.is_ignored(tmp_path / "rebuild.md")
        assert not rules.is_ignored(tmp_path / "notes" / "rebuild.md")

    def test_star_does_not_cross_directories(self, tmp_path):
        rules = IgnoreRules(tuple(parse_gitignore("docs/*.md\n", tmp_path)))

        assert rules.is_ignored(tmp_path / "docs" / "top.md")
        assert not rules.is_ignored(tmp_path / "docs" / "sub" / "deep.md")

    def test_nested_ignore_file_is_relative_to_its_directory(self, tmp_path, write_file):
        write_file("sub/.gitignore", "drafts/*.md\n")
        rules = IgnoreRules().child(tmp_path).child(tmp_path / "sub")

        assert rules.is_ignored(tmp_path / "sub" / "drafts" / "a.md")
        assert not rules.is_ignored(tmp_path / "drafts" / "a.md")

    def test_hgignore_syntax_switch(self, tmp_path):
        patterns = parse_hgignore("\\.orig$\nsyntax: glob\n*.pyc\n", tmp_path)
        rules = IgnoreRules(tuple(patterns))

        assert rules.is_ignored(tmp_path / "file.orig")
        assert rules.is_ignored(tmp_path / "mod.pyc")
        assert not rules.is_ignored(tmp_path / "mod.py")

    def test_vcs_directories_always_ignored(self, tmp_path):
        assert IgnoreRules().is_ignored(tmp_path / ".git", is_dir=True)

    def test_child_reads_ignore_files(self, tmp_path, write_file):
        write_file(".gitignore", "secret.txt\n")
        rules = IgnoreRules().child(tmp_path)
        assert rules.is_ignored(tmp_path / "secret.txt")


@pytest.mark.unit
class TestFilesystemLister:
    def test_lists_files_honouring_ignores(self, tmp_path, write_file):
        write_file("a.md", "# A")
        write_file("sub/b.txt", "b")
        write_file("sub/.gitignore", "*.tmp\n")
        write_file("sub/c.tmp", "c")
        write_file(".git/config", "[core]")
        write_file(".hg/store/x", "x")

        lister = FilesystemLister(tmp_path)
        paths = _relative(lister, tmp_path)

        assert paths == ["a.md", "sub/.gitignore", "sub/b.txt"]
        assert lister.complete is True

    def test_non_recursive(self, tmp_path, write_file):
        write_file("a.md", "a")
        write_file("sub/b.md", "b")

        assert _relative(FilesystemLister(tmp_path, recurse=False), tmp_path) == ["a.md"]

    def test_revision_tracks_mtime_and_size(self, tmp_path, write_file):
        path = write_file("a.md", "a")
        [first] = list(FilesystemLister(tmp_path))
        path.write_text("longer content", encoding="utf-8")
        [second] = list(FilesystemLister(tmp_path))

        assert first.revision != second.revision
        assert first.path == second.path

    def test_single_file_root(self, tmp_path, write_file):
        path = write_file("only.txt", "x")
        [candidate] = list(FilesystemLister(path))
        assert candidate.path == str(path)

    def test_listing_status_absorbs_completeness(self, tmp_path):
        lister = FilesystemLister(tmp_path / "missing")
        list(lister)
        status = ListingStatus()
        status.absorb(lister)
        assert status.complete is False


@pytest.mark.unit
class TestListerSelection:
    def test_auto_detects_vcs(self, tmp_path):
        assert isinstance(lister_for(tmp_path), FilesystemLister)
        (tmp_path / ".git").mkdir()
        assert isinstance(lister_for(tmp_path), GitLister)

    def test_hg_detection_and_explicit_choice(self, tmp_path):
        (tmp_path / ".hg").mkdir()
        assert isinstance(lister_for(tmp_path), HgLister)
        assert isinstance(lister_for(tmp_path, vcs="none"), FilesystemLister)

    def test_missing_executable_falls_back(self, tmp_path, write_file, monkeypatch):
        write_file("a.md", "a")
        monkeypatch.setattr("intern.crawl.listers.shutil.which", lambda name: None)

        lister = GitLister(tmp_path)
        assert _relative(lister, tmp_path) == ["a.md"]
        assert lister.complete is True


@pytest.mark.integration
@pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
def test_git_lister_uses_blob_ids(tmp_path, write_file):
    write_file("tracked.md", "tracked")
    write_file("untracked.md", "new")
    write_file("ignored.log", "noise")
    write_file(".gitignore", "*.log\n")
    subprocess.run(["git", "init", "-q"], cwd=tmp_path, check=True)
    subprocess.run(["git", "add", "tracked.md", ".gitignore"], cwd=tmp_path, check=True)

    candidates = {Path(candidate.path).name: candidate for candidate in GitLister(tmp_path)}

    assert set(candidates) == {"tracked.md", "untracked.md", ".gitignore"}
    blob = subprocess.run(
        ["git", "hash-object", "tracked.md"], cwd=tmp_path, check=True, capture_output=True, text=True
    ).stdout.strip()
    assert candidates["tracked.md"].revision.startswith(f"{blob}:")
