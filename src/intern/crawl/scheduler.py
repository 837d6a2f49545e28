"""Background scheduling of crawl passes (interval or cron) with failure back-off."""

from __future__ import annotations

import asyncio
from concurrent.futures import Executor
from contextlib import suppress
from datetime import datetime, timezone
import logging
import threading
from typing import Any

from cron_converter import Cron

from intern.crawl.crawler import CrawlReport, IncrementalCrawler


logger = logging.getLogger(__name__)


class CrawlScheduler:
    """Runs ``IncrementalCrawler.run_pass`` on the worker pool.

    Passes run every ``interval_seconds`` or, when ``schedule`` is set, on
    that cron schedule. After a failed pass the next attempt is delayed
    exponentially up to ``max_retry_delay`` seconds.
    """

    def __init__(
        self,
        crawler: IncrementalCrawler,
        executor: Executor | None = None,
        *,
        interval_seconds: float = 300,
        schedule: str | None = None,
        run_on_start: bool = True,
        base_retry_delay: float = 60,
        max_retry_delay: float = 3600,
    ) -> None:
        self.crawler = crawler
        self.executor = executor
        self.interval_seconds = interval_seconds
        self.schedule = schedule
        self.run_on_start = run_on_start
        self.base_retry_delay = base_retry_delay
        self.max_retry_delay = max_retry_delay
        self._cron = self._build_cron(schedule)

        self._loop_task: asyncio.Task | None = None
        self._active_pass: asyncio.Future | None = None
        self._pass_cancel = threading.Event()
        self._stop_event = asyncio.Event()

        self._total_passes = 0
        self._errors = 0
        self._consecutive_failures = 0
        self._last_pass_at: datetime | None = None
        self._next_pass_at: datetime | None = None
        self._last_result: dict[str, Any] | None = None

    @property
    def enabled(self) -> bool:
        return self._cron is not None or self.interval_seconds > 0

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "schedule": self.schedule,
            "interval_seconds": self.interval_seconds,
            "total_passes": self._total_passes,
            "errors": self._errors,
            "last_pass_at": _to_iso(self._last_pass_at),
            "next_pass_at": _to_iso(self._next_pass_at),
            "last_result": self._last_result,
        }

    async def start(self) -> bool:
        if self.running:
            return True
        if not self.enabled:
            logger.info("Crawl scheduling disabled; run `intern index` to crawl on demand")
            return False
        self._stop_event.clear()
        self._loop_task = asyncio.create_task(self._run_loop(), name="intern-crawl-scheduler")
        return True

    async def stop(self) -> None:
        self._stop_event.set()
        self._pass_cancel.set()
        if self._loop_task is not None:
            self._loop_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._loop_task
            self._loop_task = None
        if self._active_pass is not None:
            # The worker notices the cancel event between documents.
            with suppress(Exception):
                await self._active_pass
            self._active_pass = None

    async def run_once(self) -> dict[str, Any]:
        """Run one pass now and record its outcome."""
        if self._active_pass is not None and not self._active_pass.done():
            return {"success": False, "message": "Crawl pass already running"}

        loop = asyncio.get_running_loop()
        self._pass_cancel = threading.Event()
        self._active_pass = loop.run_in_executor(self.executor, self.crawler.run_pass, self._pass_cancel)
        try:
            report: CrawlReport = await self._active_pass
            result = report.to_dict()
        except asyncio.CancelledError:
            self._pass_cancel.set()
            raise
        except Exception as exc:
            logger.error("Crawl pass failed: %s", exc, exc_info=True)
            result = {"success": False, "message": f"Crawl pass error: {exc}"}
        finally:
            if self._active_pass is not None and self._active_pass.done():
                self._active_pass = None

        self._record_result(result)
        return result

    def _build_cron(self, schedule: str | None) -> Cron | None:
        if not schedule:
            return None
        try:
            return Cron(schedule)
        except ValueError as exc:
            logger.error("Invalid cron schedule '%s': %s", schedule, exc)
            raise

    def _seconds_until_next(self) -> float:
        now = datetime.now(timezone.utc)
        if self._cron is not None:
            next_run = self._cron.schedule(start_date=now).next()
            self._next_pass_at = next_run
            return max(0.0, (next_run - now).total_seconds())
        self._next_pass_at = datetime.fromtimestamp(now.timestamp() + self.interval_seconds, tz=timezone.utc)
        return float(self.interval_seconds)

    def _retry_delay(self) -> float:
        return min(self.base_retry_delay * (2 ** (self._consecutive_failures - 1)), self.max_retry_delay)

    async def _run_loop(self) -> None:
        try:
            if self.run_on_start:
                await self.run_once()
            while not self._stop_event.is_set():
                delay = self._retry_delay() if self._consecutive_failures else self._seconds_until_next()
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
                    break
                except asyncio.TimeoutError:
                    pass
                await self.run_once()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.error("Crawl scheduler loop failed", exc_info=True)

    def _record_result(self, result: dict[str, Any]) -> None:
        self._last_result = result
        if result.get("success"):
            self._total_passes += 1
            self._consecutive_failures = 0
            self._last_pass_at = datetime.now(timezone.utc)
        else:
            self._errors += 1
            self._consecutive_failures += 1


def _to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()
