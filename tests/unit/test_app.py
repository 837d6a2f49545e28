"""Unit tests for the command line entry point."""

import asyncio
import json

import pytest

from intern import __version__, app
from intern.config import InternConfig


@pytest.fixture(autouse=True)
def quiet_logging(monkeypatch):
    """Keep main() from replacing pytest's log handlers."""
    monkeypatch.setattr(app, "configure_logging", lambda **kwargs: None)


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    notes = tmp_path / "notes"
    notes.mkdir()
    (notes / "fruit.md").write_text("# Fruit\nApple and banana bread.", encoding="utf-8")
    (notes / "veg.txt").write_text("Carrot soup with ginger.", encoding="utf-8")
    path = tmp_path / "intern.json"
    path.write_text(
        json.dumps(
            {
                "roots": [{"path": str(notes), "vcs": "none"}],
                "index_path": str(tmp_path / "index.sqlite3"),
                "crawl_interval_seconds": 0,
            }
        ),
        encoding="utf-8",
    )
    return path


@pytest.mark.unit
class TestCommands:
    def test_version(self, capsys):
        with pytest.raises(SystemExit) as excinfo:
            app.main(["--version"])
        assert excinfo.value.code == 0
        assert __version__ in capsys.readouterr().out

    def test_missing_config_for_index(self, tmp_path, capsys):
        code = app.main(["--config", str(tmp_path / "absent.json"), "index"])

        assert code == app.EXIT_CONFIG
        assert "configuration file not found" in capsys.readouterr().err

    def test_index_then_query(self, config_file, capsys):
        assert app.main(["--config", str(config_file), "index"]) == app.EXIT_OK
        report = json.loads(capsys.readouterr().out)
        assert report["indexed"] == 2
        assert report["success"] is True

        assert app.main(["--config", str(config_file), "query", "apple AND bread"]) == app.EXIT_OK
        [line] = capsys.readouterr().out.splitlines()
        score, path, snippet = line.split("\t")
        assert float(score) > 0
        assert path.endswith("fruit.md")
        assert "Apple" in snippet

    def test_query_parse_error(self, config_file, capsys):
        code = app.main(["--config", str(config_file), "query", '"unclosed'])

        assert code == app.EXIT_QUERY
        assert capsys.readouterr().err.startswith("QueryParseError:")

    def test_status(self, config_file, capsys):
        app.main(["--config", str(config_file), "index"])
        capsys.readouterr()

        assert app.main(["--config", str(config_file), "status"]) == app.EXIT_OK
        payload = json.loads(capsys.readouterr().out)

        assert payload["stats"]["document_count"] == 2
        assert payload["crawl_errors"] == []
        assert payload["needs_rebuild"] is False

    def test_index_rebuild(self, config_file, capsys):
        app.main(["--config", str(config_file), "index"])
        capsys.readouterr()

        app.main(["--config", str(config_file), "index", "--rebuild"])
        report = json.loads(capsys.readouterr().out)

        assert report["indexed"] == 2

    def test_ask_without_server(self, config_file, capsys, unused_tcp_port):
        code = app.main(["--config", str(config_file), "ask", "apple", "--port", str(unused_tcp_port)])

        assert code == app.EXIT_UNAVAILABLE
        assert "Cannot reach the query server" in capsys.readouterr().err


@pytest.mark.unit
class TestServe:
    @pytest.mark.asyncio
    async def test_serve_stops_on_shutdown_event(self, tmp_path):
        config = InternConfig(index_path=str(tmp_path / "index.sqlite3"), query_port=0, crawl_interval_seconds=0)
        service = app.build_service(config)
        shutdown = asyncio.Event()
        try:
            task = asyncio.create_task(app.serve(service, shutdown))
            await asyncio.sleep(0.05)
            assert not task.done()
            shutdown.set()
            await asyncio.wait_for(task, timeout=5)
        finally:
            service.close()

    @pytest.mark.asyncio
    async def test_serve_reindexes_changed_files(self, tmp_path):
        notes = tmp_path / "notes"
        notes.mkdir()
        config = InternConfig(
            index_path=str(tmp_path / "index.sqlite3"),
            roots=[{"path": str(notes), "vcs": "none"}],
            query_port=0,
            crawl_interval_seconds=0,
            watch_debounce_ms=50,
        )
        service = app.build_service(config)
        shutdown = asyncio.Event()
        try:
            task = asyncio.create_task(app.serve(service, shutdown))
            await asyncio.sleep(0.3)
            (notes / "plum.md").write_text("# Plum\nCrumble", encoding="utf-8")

            for _ in range(100):
                if service.engine.search("crumble"):
                    break
                await asyncio.sleep(0.05)

            assert service.engine.search("crumble")
            shutdown.set()
            await asyncio.wait_for(task, timeout=5)
        finally:
            service.close()
