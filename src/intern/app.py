"""Command line entry point and service wiring.

Usage:
    intern serve            # crawl in the background and answer queries over TCP
    intern index            # run one crawl pass and exit
    intern query "a AND b"  # query the index file directly
    intern ask "a AND b"    # query a running server
    intern status           # index statistics and recorded crawl errors

The configuration file defaults to ``~/.config/intern/intern.json`` and can be
moved with ``--config`` or ``INTERN_CONFIG``.
"""

from __future__ import annotations

import argparse
import asyncio
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass
import json
import logging
from pathlib import Path
import sys

from intern import __version__
from intern.client import QueryClient
from intern.config import InternConfig
from intern.crawl.crawler import IncrementalCrawler
from intern.crawl.scheduler import CrawlScheduler
from intern.crawl.watcher import RootWatcher
from intern.errors import ConfigError, IndexCorruption, QueryParseError, QueryTimeout
from intern.observability.logging import configure_logging
from intern.observability.metrics import init_metrics, start_metrics_server
from intern.observability.tracing import init_tracing
from intern.runtime.signals import install_shutdown_signals, remove_shutdown_signals
from intern.search.index_store import InvertedIndexStore
from intern.search.normalizer import DocumentNormalizer
from intern.search.query_engine import Deadline, QueryEngine
from intern.server.protocol import ErrorLine, format_hit
from intern.server.query_server import QueryServer
from intern.settings import InternSettings


logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_CONFIG = 1
EXIT_QUERY = 2
EXIT_UNAVAILABLE = 3


@dataclass
class InternService:
    """Components sharing one index store and worker pool."""

    config: InternConfig
    store: InvertedIndexStore
    normalizer: DocumentNormalizer
    engine: QueryEngine
    crawler: IncrementalCrawler
    executor: ThreadPoolExecutor

    def close(self) -> None:
        self.executor.shutdown(wait=True, cancel_futures=True)
        self.store.close()


def build_service(config: InternConfig) -> InternService:
    store = InvertedIndexStore(config.resolved_index_path).open()
    normalizer = DocumentNormalizer(config.analyzer_settings())
    engine = QueryEngine(
        store,
        normalizer,
        max_results=config.max_results,
        snippet_settings=config.snippet_settings(),
    )
    crawler = IncrementalCrawler(store, normalizer, config.roots)
    executor = ThreadPoolExecutor(max_workers=config.worker_threads, thread_name_prefix="intern-worker")
    return InternService(
        config=config,
        store=store,
        normalizer=normalizer,
        engine=engine,
        crawler=crawler,
        executor=executor,
    )


async def serve(service: InternService, shutdown_event: asyncio.Event | None = None) -> None:
    """Serve queries and keep the index current until shutdown is requested."""
    config = service.config
    shutdown_event = install_shutdown_signals(shutdown_event)
    scheduler = CrawlScheduler(
        service.crawler,
        service.executor,
        interval_seconds=config.crawl_interval_seconds,
        schedule=config.crawl_schedule,
    )
    watcher = RootWatcher(
        service.crawler,
        service.executor,
        debounce_seconds=config.watch_debounce_ms / 1000.0,
        ignore_prefixes=(str(config.resolved_index_path),),
    )
    server = QueryServer(
        service.engine,
        service.executor,
        host=config.query_host,
        port=config.query_port,
        timeout_ms=config.query_timeout_ms,
        keep_alive=config.keep_alive,
        max_results=config.max_results,
    )

    await server.start()
    await scheduler.start()
    if config.watch:
        await watcher.start()
    logger.info("INTERN %s serving %d roots", __version__, len(config.roots))
    try:
        await shutdown_event.wait()
    finally:
        logger.info("Shutting down")
        await server.stop()
        await watcher.stop()
        await scheduler.stop()
        remove_shutdown_signals()


def build_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="intern", description="Local document indexing and retrieval")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to intern.json (default: $INTERN_CONFIG or ~/.config/intern/intern.json)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("serve", help="Crawl periodically and answer queries over TCP")

    index_parser = subparsers.add_parser("index", help="Run one crawl pass and exit")
    index_parser.add_argument("--rebuild", action="store_true", help="Drop the index and re-index every source")

    query_parser = subparsers.add_parser("query", help="Query the index file directly")
    query_parser.add_argument("text", help="Query text, e.g. 'apple AND NOT banana'")
    query_parser.add_argument("--limit", type=int, default=None, help="Maximum number of results")
    query_parser.add_argument("--unranked", action="store_true", help="Order by recency instead of relevance")

    ask_parser = subparsers.add_parser("ask", help="Send a query to a running server")
    ask_parser.add_argument("text", help="Query text")
    ask_parser.add_argument("--host", default=None, help="Server host (default: query_host from the config)")
    ask_parser.add_argument("--port", type=int, default=None, help="Server port (default: query_port from the config)")

    subparsers.add_parser("status", help="Show index statistics and crawl errors")
    return parser


def _load_config(path: Path | None, *, allow_missing: bool) -> InternConfig:
    settings = InternSettings()
    return settings.load_config(path, allow_missing=allow_missing)


def _configure_logging(config: InternConfig, command: str) -> None:
    log = config.log
    configure_logging(
        level=log.level,
        json_output=log.json_output if command == "serve" else False,
        log_file=log.log_file,
        logger_levels=log.logger_levels,
    )


def _cmd_serve(config: InternConfig) -> int:
    init_tracing()
    init_metrics()
    if config.metrics_port:
        start_metrics_server(config.metrics_port)
    if not config.roots:
        logger.warning("No roots configured; the index will stay as it is")
    service = build_service(config)
    try:
        asyncio.run(serve(service))
    finally:
        service.close()
    return EXIT_OK


def _cmd_index(config: InternConfig, *, rebuild: bool) -> int:
    service = build_service(config)
    try:
        if rebuild:
            service.store.rebuild()
        report = service.crawler.run_pass()
    finally:
        service.close()
    sys.stdout.write(json.dumps(report.to_dict(), sort_keys=True) + "\n")
    return EXIT_OK


def _cmd_query(config: InternConfig, text: str, *, limit: int | None, ranked: bool) -> int:
    service = build_service(config)
    try:
        hits = service.engine.search(
            text,
            deadline=Deadline.after_ms(config.query_timeout_ms),
            limit=limit,
            ranked=ranked,
        )
    except (QueryParseError, QueryTimeout) as exc:
        sys.stderr.write(f"{exc.kind}: {exc}\n")
        return EXIT_QUERY
    except IndexCorruption as exc:
        sys.stderr.write(f"{exc.kind}: {exc}\nRun `intern index` to rebuild.\n")
        return EXIT_UNAVAILABLE
    finally:
        service.close()
    for hit in hits:
        sys.stdout.write(format_hit(hit) + "\n")
    return EXIT_OK


def _cmd_ask(config: InternConfig, text: str, *, host: str | None, port: int | None) -> int:
    client = QueryClient(host or config.query_host, port if port is not None else config.query_port)
    try:
        with client:
            response = client.ask(text)
    except OSError as exc:
        sys.stderr.write(f"Cannot reach the query server at {client.host}:{client.port}: {exc}\n")
        return EXIT_UNAVAILABLE
    if isinstance(response, ErrorLine):
        sys.stderr.write(f"{response.kind}: {response.message}\n")
        return EXIT_QUERY
    for result in response:
        sys.stdout.write(f"{result.score:.4f}\t{result.source_path}\t{result.snippet}\n")
    return EXIT_OK


def _cmd_status(config: InternConfig) -> int:
    store = InvertedIndexStore(config.resolved_index_path).open()
    try:
        payload = {
            "index_path": str(store.db_path),
            "needs_rebuild": store.needs_rebuild,
            "stats": asdict(store.stats()),
            "crawl_errors": [asdict(error) for error in store.crawl_errors()],
            "roots": [root.model_dump() for root in config.roots],
        }
    finally:
        store.close()
    sys.stdout.write(json.dumps(payload, indent=2, sort_keys=True) + "\n")
    return EXIT_OK


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_argument_parser()
    args = parser.parse_args(argv)

    try:
        config = _load_config(args.config, allow_missing=args.command in ("ask", "query", "status"))
    except ConfigError as exc:
        sys.stderr.write(f"{exc}\n")
        return EXIT_CONFIG

    _configure_logging(config, args.command)

    if args.command == "serve":
        return _cmd_serve(config)
    if args.command == "index":
        return _cmd_index(config, rebuild=args.rebuild)
    if args.command == "query":
        return _cmd_query(config, args.text, limit=args.limit, ranked=not args.unranked)
    if args.command == "ask":
        return _cmd_ask(config, args.text, host=args.host, port=args.port)
    return _cmd_status(config)


if __name__ == "__main__":
    sys.exit(main())
