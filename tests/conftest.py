"""Shared test fixtures and configuration."""

from collections.abc import Callable, Iterator
import os
from pathlib import Path

import pytest

from intern.domain.model import RawDocument
from intern.search.index_store import InvertedIndexStore
from intern.search.normalizer import DocumentNormalizer


# Environment variables that would leak a developer's local setup into tests
INTERN_ENV_KEYS = ("INTERN_CONFIG", "INTERN_LOG_LEVEL", "INTERN_INDEX_PATH", "INTERN_QUERY_PORT")


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Clear INTERN_* overrides before each test."""
    for key in INTERN_ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    for key in list(os.environ):
        if key.startswith("INTERN_"):
            monkeypatch.delenv(key, raising=False)
    yield


@pytest.fixture
def normalizer() -> DocumentNormalizer:
    return DocumentNormalizer()


@pytest.fixture
def store(tmp_path: Path) -> Iterator[InvertedIndexStore]:
    """An opened index store backed by a real SQLite file."""
    index = InvertedIndexStore(tmp_path / "index" / "intern.sqlite3").open()
    yield index
    index.close()


@pytest.fixture
def index_text(store: InvertedIndexStore, normalizer: DocumentNormalizer) -> Callable[..., str]:
    """Index ``text`` under ``path`` and return its doc_id."""

    def _index(path: str, text: str, *, revision: str = "r1", modified_time: float = 0.0, title: str = "") -> str:
        raw = RawDocument(
            source_path=path,
            source_kind="text",
            extracted_text=text,
            revision=revision,
            extracted_metadata={"title": title} if title else {},
            modified_time=modified_time,
        )
        record = store.upsert(normalizer.normalize(raw))
        return record.doc_id

    return _index


@pytest.fixture
def write_file(tmp_path: Path) -> Callable[..., Path]:
    """Create a file (and its parents) under ``tmp_path``."""

    def _write(relative: str, content: str | bytes) -> Path:
        path = tmp_path / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, bytes):
            path.write_bytes(content)
        else:
            path.write_text(content, encoding="utf-8")
        return path

    return _write
