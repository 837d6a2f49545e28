"""Configuration file schema (``~/.config/intern/intern.json``) using Pydantic.

The file is validated at startup so a bad key fails fast with a
``ConfigError`` instead of surfacing later in the crawler or server.

Keys written by older INTERN versions (``folder``, ``period``,
``logLevel``) are still accepted and mapped onto the current schema.
"""

from __future__ import annotations

import json
from pathlib import Path
import re
from typing import Annotated, Any, Literal

from cron_converter import Cron
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from intern.errors import ConfigError
from intern.search.analyzers import DEFAULT_STOPWORDS, DEFAULT_TOKEN_PATTERN, AnalyzerSettings
from intern.search.snippet import SnippetSettings


CONFIG_DIR = Path("~/.config/intern")
DEFAULT_CONFIG_PATH = CONFIG_DIR / "intern.json"
DEFAULT_INDEX_PATH = CONFIG_DIR / "intern.sqlite3"
DEFAULT_QUERY_PORT = 48813

_LOG_LEVEL_PATTERN = r"^(debug|info|warning|error|critical)$"


class RootConfig(BaseModel):
    """A location to crawl."""

    model_config = {"extra": "forbid"}

    path: Annotated[str, Field(min_length=1, description="Directory or file to index; ~ is expanded")]

    kind: Annotated[
        Literal["auto", "markdown", "cson", "mbox", "text", "binary"],
        Field(description="Source adapter; auto picks one per file extension"),
    ] = "auto"

    recurse: Annotated[bool, Field(description="Descend into subdirectories")] = True

    vcs: Annotated[
        Literal["auto", "none", "git", "hg"],
        Field(description="How to list files: ask git/Mercurial for tracked files, or walk the directory"),
    ] = "auto"

    @property
    def resolved_path(self) -> Path:
        return Path(self.path).expanduser().resolve()


class SnippetConfig(BaseModel):
    """Result snippet preferences."""

    model_config = {"extra": "forbid"}

    max_chars: Annotated[int, Field(ge=40, le=2000, description="Maximum snippet length")] = 200

    surrounding_context: Annotated[
        int,
        Field(ge=0, le=800, description="Characters of context to keep around the first match"),
    ] = 80

    highlight: Annotated[bool, Field(description="Wrap matching words in [[...]]")] = False


class LogConfig(BaseModel):
    """Logging profile."""

    model_config = {"extra": "forbid"}

    level: Annotated[str, Field(pattern=_LOG_LEVEL_PATTERN, description="Root log level")] = "info"

    json_output: Annotated[bool, Field(description="Emit structured JSON logs")] = True

    log_file: Annotated[
        str | None,
        Field(description="Also write logs to this file; ~ is expanded"),
    ] = None

    logger_levels: Annotated[
        dict[str, str],
        Field(
            description="Per-logger level overrides (logger name -> level)",
            examples=[{"intern.crawl": "debug"}],
        ),
    ] = Field(default_factory=dict)

    @field_validator("level", mode="before")
    @classmethod
    def lower_level(cls, value: Any) -> Any:
        return value.lower() if isinstance(value, str) else value

    @field_validator("logger_levels")
    @classmethod
    def validate_logger_levels(cls, value: dict[str, str]) -> dict[str, str]:
        allowed_levels = {"debug", "info", "warning", "error", "critical"}
        invalid = {name: level for name, level in value.items() if level not in allowed_levels}
        if invalid:
            details = ", ".join(f"{name}={level}" for name, level in invalid.items())
            raise ValueError(
                f"Invalid log level(s) in logger_levels; allowed levels are {sorted(allowed_levels)}; got: {details}"
            )
        return value


class InternConfig(BaseModel):
    """Top-level configuration."""

    model_config = {"extra": "forbid"}

    roots: Annotated[list[RootConfig], Field(description="Locations to crawl")] = Field(default_factory=list)

    # Tokenization policy
    stop_words: Annotated[
        list[str] | None,
        Field(description="Words dropped from documents and queries; null uses the built-in English list"),
    ] = None
    min_token_length: Annotated[int, Field(ge=1, le=64, description="Shorter tokens are discarded")] = 2
    token_pattern: Annotated[str, Field(min_length=1, description="Regex matching one token")] = DEFAULT_TOKEN_PATTERN
    stemming: Annotated[bool, Field(description="Apply light English stemming")] = True
    fold_accents: Annotated[bool, Field(description="Strip diacritics (café matches cafe)")] = True

    # Query server
    query_host: Annotated[str, Field(description="Interface the query server binds to")] = "127.0.0.1"
    query_port: Annotated[int, Field(ge=0, le=65535)] = DEFAULT_QUERY_PORT
    query_timeout_ms: Annotated[int, Field(ge=1, description="Per-query evaluation budget")] = 2000
    keep_alive: Annotated[bool, Field(description="Serve several queries per connection")] = True
    max_results: Annotated[int, Field(ge=0, description="Results per query; 0 means unlimited")] = 20

    # Index and crawl
    index_path: Annotated[str, Field(min_length=1)] = str(DEFAULT_INDEX_PATH)
    worker_threads: Annotated[int, Field(ge=1, le=64)] = 4
    crawl_interval_seconds: Annotated[
        int,
        Field(ge=0, description="Seconds between crawl passes; 0 disables interval crawling"),
    ] = 300
    crawl_schedule: Annotated[
        str | None,
        Field(description="Cron expression for crawl passes; overrides crawl_interval_seconds"),
    ] = None
    watch: Annotated[bool, Field(description="Reindex changed files as soon as the filesystem reports them")] = True
    watch_debounce_ms: Annotated[
        int,
        Field(ge=0, le=60_000, description="Quiet period before a batch of file changes is reindexed"),
    ] = 1000

    snippet: SnippetConfig = Field(default_factory=SnippetConfig)
    log: LogConfig = Field(default_factory=LogConfig)
    metrics_port: Annotated[
        int | None,
        Field(ge=1, le=65535, description="Expose Prometheus metrics on this port"),
    ] = None

    @model_validator(mode="before")
    @classmethod
    def accept_legacy_keys(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        folders = data.pop("folder", None)
        if folders is not None:
            if isinstance(folders, str):
                folders = [folders]
            data.setdefault("roots", [{"path": folder} for folder in folders])
        period = data.pop("period", None)
        if period is not None:
            data.setdefault("crawl_interval_seconds", period)
        legacy_level = data.pop("logLevel", None)
        if legacy_level is not None:
            log = dict(data.get("log") or {})
            log.setdefault("level", legacy_level)
            data["log"] = log
        return data

    @field_validator("token_pattern")
    @classmethod
    def validate_token_pattern(cls, value: str) -> str:
        try:
            compiled = re.compile(value)
        except re.error as exc:
            raise ValueError(f"token_pattern is not a valid regular expression: {exc}") from exc
        if compiled.match(""):
            raise ValueError("token_pattern must not match the empty string")
        return value

    @field_validator("crawl_schedule")
    @classmethod
    def validate_crawl_schedule(cls, value: str | None) -> str | None:
        if not value:
            return None
        try:
            Cron(value)
        except ValueError as exc:
            raise ValueError(f"crawl_schedule is not a valid cron expression: {exc}") from exc
        return value

    @property
    def resolved_index_path(self) -> Path:
        return Path(self.index_path).expanduser()

    def analyzer_settings(self) -> AnalyzerSettings:
        stop_words = DEFAULT_STOPWORDS if self.stop_words is None else self.stop_words
        return AnalyzerSettings(
            token_pattern=self.token_pattern,
            min_token_length=self.min_token_length,
            stop_words=frozenset(word.casefold() for word in stop_words),
            stemming=self.stemming,
            fold_accents=self.fold_accents,
        )

    def snippet_settings(self) -> SnippetSettings:
        return SnippetSettings(
            max_chars=self.snippet.max_chars,
            surrounding_context=self.snippet.surrounding_context,
            highlight=self.snippet.highlight,
        )

    @classmethod
    def from_json_file(cls, path: Path) -> InternConfig:
        """Load configuration from a JSON file.

        Raises:
            ConfigError: If the file is missing, unreadable or invalid
        """
        path = Path(path).expanduser()
        if not path.exists():
            raise ConfigError("configuration file not found", source_path=str(path))
        try:
            with path.open(encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigError(f"cannot read configuration: {exc}", source_path=str(path)) from exc
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            raise ConfigError(f"invalid configuration: {exc}", source_path=str(path)) from exc
