"""Filesystem notifications that reindex changed paths between crawl passes."""

from __future__ import annotations

import asyncio
from concurrent.futures import Executor
from contextlib import suppress
import logging
import threading
from typing import Any

from watchdog.events import DirModifiedEvent, FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from intern.crawl.crawler import CrawlReport, IncrementalCrawler


logger = logging.getLogger(__name__)

IGNORED_EVENT_TYPES = frozenset({"opened", "closed_no_write"})
OBSERVER_JOIN_TIMEOUT_SECONDS = 5.0


class _ChangeHandler(FileSystemEventHandler):
    def __init__(self, watcher: RootWatcher) -> None:
        super().__init__()
        self._watcher = watcher

    def on_any_event(self, event: FileSystemEvent) -> None:
        # A directory's own mtime changes with every entry; the entries report themselves.
        if event.event_type in IGNORED_EVENT_TYPES or isinstance(event, DirModifiedEvent):
            return
        self._watcher.enqueue(event.src_path)
        dest_path = getattr(event, "dest_path", "")
        if dest_path:
            self._watcher.enqueue(dest_path)


class RootWatcher:
    """Watches the crawl roots and hands changed paths to ``IncrementalCrawler.process_paths``.

    Changes are collected until the roots have been quiet for
    ``debounce_seconds`` and then reindexed as one batch on the worker pool.
    The periodic crawl pass still runs and catches anything the platform did
    not report.
    """

    def __init__(
        self,
        crawler: IncrementalCrawler,
        executor: Executor | None = None,
        *,
        debounce_seconds: float = 1.0,
        ignore_prefixes: tuple[str, ...] = (),
    ) -> None:
        self.crawler = crawler
        self.executor = executor
        self.debounce_seconds = debounce_seconds
        self.ignore_prefixes = ignore_prefixes

        self._observer: Any = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._loop_task: asyncio.Task | None = None
        self._changed = asyncio.Event()
        self._pending: set[str] = set()
        self._pending_lock = threading.Lock()
        self._cancel = threading.Event()

        self._batches = 0
        self._last_result: dict[str, Any] | None = None

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    @property
    def stats(self) -> dict[str, Any]:
        with self._pending_lock:
            pending = len(self._pending)
        return {"batches": self._batches, "pending": pending, "last_result": self._last_result}

    async def start(self) -> bool:
        if self.running:
            return True
        watched = []
        for root in self.crawler.roots:
            root_path = root.resolved_path
            if root_path.is_dir():
                watched.append((str(root_path), root.recurse))
            elif root_path.is_file():
                watched.append((str(root_path.parent), False))
            else:
                logger.warning("Not watching %s: it does not exist", root_path)
        if not watched:
            logger.info("No crawl roots to watch")
            return False

        self._loop = asyncio.get_running_loop()
        self._cancel = threading.Event()
        self._changed = asyncio.Event()
        handler = _ChangeHandler(self)
        observer = Observer()
        for path, recursive in watched:
            observer.schedule(handler, path, recursive=recursive)
        observer.daemon = True
        observer.start()
        self._observer = observer
        self._loop_task = asyncio.create_task(self._run_loop(), name="intern-root-watcher")
        logger.info("Watching %d crawl roots for changes", len(watched))
        return True

    async def stop(self) -> None:
        self._cancel.set()
        if self._loop_task is not None:
            self._loop_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._loop_task
            self._loop_task = None
        if self._observer is not None:
            observer, self._observer = self._observer, None
            observer.stop()
            await asyncio.get_running_loop().run_in_executor(None, observer.join, OBSERVER_JOIN_TIMEOUT_SECONDS)

    def enqueue(self, path: str | bytes) -> None:
        """Record a changed path; safe to call from the observer thread."""
        if isinstance(path, bytes):
            path = path.decode("utf-8", errors="surrogateescape")
        if self.ignore_prefixes and path.startswith(self.ignore_prefixes):
            return
        with self._pending_lock:
            self._pending.add(path)
        if self._loop is not None and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._changed.set)

    async def flush(self) -> CrawlReport | None:
        """Reindex everything queued so far; ``None`` when nothing was queued or the batch failed."""
        with self._pending_lock:
            paths = sorted(self._pending)
            self._pending.clear()
        if not paths:
            return None

        loop = asyncio.get_running_loop()
        try:
            report: CrawlReport = await loop.run_in_executor(
                self.executor, self.crawler.process_paths, paths, self._cancel
            )
        except asyncio.CancelledError:
            self._cancel.set()
            raise
        except Exception as exc:
            logger.error("Reindexing %d changed paths failed: %s", len(paths), exc, exc_info=True)
            self._last_result = {"success": False, "message": f"Reindex error: {exc}"}
            return None
        self._batches += 1
        self._last_result = report.to_dict()
        return report

    async def _run_loop(self) -> None:
        while True:
            await self._changed.wait()
            await self._wait_until_quiet()
            await self.flush()

    async def _wait_until_quiet(self) -> None:
        while True:
            self._changed.clear()
            try:
                await asyncio.wait_for(self._changed.wait(), timeout=self.debounce_seconds)
            except asyncio.TimeoutError:
                return
