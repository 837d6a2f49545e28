"""Unit tests for the crawl root watcher."""

import asyncio
import threading

import pytest

from intern.config import RootConfig
from intern.crawl.crawler import CrawlReport, IncrementalCrawler
from intern.crawl.watcher import RootWatcher


class FakeCrawler:
    def __init__(self, roots=(), *, fail: bool = False) -> None:
        self.roots = list(roots)
        self.fail = fail
        self.batches: list[list[str]] = []

    def process_paths(self, paths, cancel=None):
        self.batches.append(list(paths))
        if self.fail:
            raise RuntimeError("disk on fire")
        return CrawlReport(pass_id=f"w{len(self.batches)}", listed=len(paths), indexed=len(paths))


async def _wait_for(predicate, timeout: float = 5.0) -> bool:
    deadline = asyncio.get_running_loop().time() + timeout
    while asyncio.get_running_loop().time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(0.05)
    return predicate()


@pytest.mark.unit
class TestRootWatcher:
    @pytest.mark.asyncio
    async def test_flush_hands_queued_paths_to_crawler(self):
        crawler = FakeCrawler()
        watcher = RootWatcher(crawler)
        watcher.enqueue("/notes/b.md")
        watcher.enqueue("/notes/a.md")
        watcher.enqueue("/notes/a.md")

        report = await watcher.flush()

        assert crawler.batches == [["/notes/a.md", "/notes/b.md"]]
        assert report.indexed == 2
        assert watcher.stats["batches"] == 1
        assert watcher.stats["pending"] == 0

    @pytest.mark.asyncio
    async def test_flush_without_changes_does_nothing(self):
        crawler = FakeCrawler()

        assert await RootWatcher(crawler).flush() is None
        assert crawler.batches == []

    @pytest.mark.asyncio
    async def test_ignored_prefixes_are_dropped(self):
        crawler = FakeCrawler()
        watcher = RootWatcher(crawler, ignore_prefixes=("/notes/.index/intern.sqlite3",))
        watcher.enqueue("/notes/.index/intern.sqlite3-wal")
        watcher.enqueue(b"/notes/a.md")

        await watcher.flush()

        assert crawler.batches == [["/notes/a.md"]]

    @pytest.mark.asyncio
    async def test_failed_batch_is_recorded(self):
        watcher = RootWatcher(FakeCrawler(fail=True))
        watcher.enqueue("/notes/a.md")

        assert await watcher.flush() is None
        assert watcher.stats["last_result"]["success"] is False
        assert "disk on fire" in watcher.stats["last_result"]["message"]

    @pytest.mark.asyncio
    async def test_start_without_existing_roots(self, tmp_path):
        watcher = RootWatcher(FakeCrawler([RootConfig(path=str(tmp_path / "missing"))]))

        assert await watcher.start() is False
        assert watcher.running is False

    @pytest.mark.asyncio
    async def test_bursts_are_debounced_into_one_batch(self, tmp_path):
        crawler = FakeCrawler([RootConfig(path=str(tmp_path))])
        watcher = RootWatcher(crawler, debounce_seconds=0.2)
        await watcher.start()
        try:
            watcher.enqueue(str(tmp_path / "a.md"))
            await asyncio.sleep(0.05)
            watcher.enqueue(str(tmp_path / "b.md"))

            assert await _wait_for(lambda: crawler.batches)
            await asyncio.sleep(0.3)
        finally:
            await watcher.stop()

        assert crawler.batches == [[str(tmp_path / "a.md"), str(tmp_path / "b.md")]]


@pytest.mark.unit
class TestWatchingRealFiles:
    @pytest.mark.asyncio
    async def test_new_file_becomes_searchable(self, store, normalizer, tmp_path):
        root = (tmp_path / "notes").resolve()
        root.mkdir()
        crawler = IncrementalCrawler(store, normalizer, [RootConfig(path=str(root), vcs="none")])
        watcher = RootWatcher(crawler, debounce_seconds=0.1)
        assert await watcher.start() is True
        try:
            await asyncio.sleep(0.2)
            (root / "fresh.md").write_text("# Quince\nJam recipe", encoding="utf-8")

            assert await _wait_for(lambda: bool(store.lookup("quince")))

            (root / "fresh.md").unlink()
            assert await _wait_for(lambda: store.lookup("quince") == [])
        finally:
            await watcher.stop()

    @pytest.mark.asyncio
    async def test_stop_cancels_running_batch(self, tmp_path):
        gate = threading.Event()
        seen_cancel = threading.Event()

        class BlockingCrawler(FakeCrawler):
            def process_paths(self, paths, cancel=None):
                while not gate.is_set() and not cancel.is_set():
                    gate.wait(0.01)
                if cancel.is_set():
                    seen_cancel.set()
                return CrawlReport(pass_id="w", cancelled=cancel.is_set())

        watcher = RootWatcher(BlockingCrawler([RootConfig(path=str(tmp_path))]), debounce_seconds=0.01)
        await watcher.start()
        watcher.enqueue(str(tmp_path / "a.md"))
        await asyncio.sleep(0.2)

        await watcher.stop()

        assert seen_cancel.wait(2)
        assert watcher.running is False
