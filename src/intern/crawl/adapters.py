"""Source adapters: list candidates under a root and extract them into ``RawDocument`` values.

Each adapter covers one source kind. The crawler only talks to the
``SourceAdapter`` interface and never branches on the kind itself.
"""

from __future__ import annotations

from collections.abc import Iterator
from email.message import Message
from email.utils import parsedate_to_datetime
import hashlib
import logging
import mailbox
from pathlib import Path
import re
import threading
from typing import Any, Protocol

from bs4 import BeautifulSoup
import yaml

from intern.crawl.listers import ListingStatus, lister_for
from intern.domain.model import Candidate, RawDocument
from intern.errors import ExtractionError


logger = logging.getLogger(__name__)

MARKDOWN_EXTENSIONS = frozenset({".md", ".markdown", ".mdown", ".mkd", ".mkdn", ".mdwn", ".mdtxt", ".mdtext"})
CSON_EXTENSIONS = frozenset({".cson"})
MBOX_EXTENSIONS = frozenset({".mbox", ".mbx"})
BINARY_EXTENSIONS = frozenset(
    {
        ".png", ".jpg", ".jpeg", ".gif", ".bmp", ".ico", ".webp", ".tiff",
        ".pdf", ".zip", ".gz", ".tgz", ".bz2", ".xz", ".7z", ".rar", ".jar",
        ".exe", ".dll", ".so", ".dylib", ".o", ".a", ".class", ".pyc",
        ".mp3", ".mp4", ".mov", ".avi", ".wav", ".flac", ".ogg",
        ".sqlite", ".sqlite3", ".db", ".woff", ".woff2", ".ttf", ".otf",
    }
)  # fmt: skip

MAX_FILE_BYTES = 32 * 1024 * 1024
MESSAGE_SEPARATOR = "#"
MESSAGE_SUFFIX = re.compile(r"#\d+$")

FRONT_MATTER_PATTERN = re.compile(r"^(-{3,})\s*\n(.*?)\n\1\s*(?:\n|$)", re.DOTALL)
HEADING_PATTERN = re.compile(r"^\s{0,3}#{1,6}\s+(.+?)\s*#*\s*$", re.MULTILINE)


class SourceAdapter(Protocol):
    """Capability set of one source kind."""

    kind: str

    def list_candidates(
        self, root: Path, *, recurse: bool = True, vcs: str = "auto", status: ListingStatus | None = None
    ) -> Iterator[Candidate]:
        """Yield candidates under ``root`` lazily; ``status`` learns whether the listing was complete."""
        ...

    def extract(self, path: str) -> RawDocument:
        """Extract one candidate; raises ``ExtractionError`` when it cannot be read."""
        ...


def parse_front_matter(content: str) -> tuple[dict[str, Any], str]:
    """Split YAML front matter (``---`` or ``-----`` delimited) from markdown content.

    Returns ``({}, content)`` when there is no front matter or it is not a YAML mapping.
    """
    match = FRONT_MATTER_PATTERN.match(content)
    if not match:
        return {}, content
    try:
        metadata = yaml.safe_load(match.group(2)) or {}
    except yaml.YAMLError:
        return {}, content
    if not isinstance(metadata, dict):
        return {}, content
    return metadata, content[match.end() :]


def _read_bytes(path: Path) -> bytes:
    try:
        size = path.stat().st_size
        if size > MAX_FILE_BYTES:
            raise ExtractionError(f"file is larger than {MAX_FILE_BYTES} bytes", source_path=str(path))
        return path.read_bytes()
    except OSError as exc:
        raise ExtractionError(f"cannot read file: {exc.strerror or exc}", source_path=str(path)) from exc


def _file_revision(path: Path) -> tuple[str, float]:
    try:
        stat_result = path.stat()
    except OSError as exc:
        raise ExtractionError(f"cannot stat file: {exc.strerror or exc}", source_path=str(path)) from exc
    return f"{stat_result.st_mtime_ns}:{stat_result.st_size}", stat_result.st_mtime


def _decode(payload: bytes) -> str | bytes:
    """UTF-8 text, or the raw bytes so the normalizer reports the encoding failure."""
    try:
        return payload.decode("utf-8")
    except UnicodeDecodeError:
        return payload


class FileAdapter:
    """Base for adapters that turn one file into one document."""

    kind = "file"
    extensions: frozenset[str] | None = None

    def accepts(self, path: str) -> bool:
        return self.extensions is None or Path(path).suffix.lower() in self.extensions

    def list_candidates(
        self, root: Path, *, recurse: bool = True, vcs: str = "auto", status: ListingStatus | None = None
    ) -> Iterator[Candidate]:
        lister = lister_for(root, vcs=vcs, recurse=recurse)
        for candidate in lister:
            if self.accepts(candidate.path):
                yield candidate
        if status is not None:
            status.absorb(lister)

    def extract(self, path: str) -> RawDocument:
        file_path = Path(path)
        revision, modified_time = _file_revision(file_path)
        payload = _read_bytes(file_path)
        text, metadata = self._convert(file_path, payload)
        return RawDocument(
            source_path=path,
            source_kind=self.kind,
            extracted_text=text,
            revision=revision,
            extracted_metadata=metadata,
            modified_time=modified_time,
        )

    def _convert(self, path: Path, payload: bytes) -> tuple[str | bytes, dict[str, Any]]:
        raise NotImplementedError


class TextAdapter(FileAdapter):
    """Plain text. Content with NUL bytes is binary and is not extracted."""

    kind = "text"

    def _convert(self, path: Path, payload: bytes) -> tuple[str | bytes, dict[str, Any]]:
        if b"\0" in payload[:8192]:
            raise ExtractionError("binary content", source_path=str(path))
        return _decode(payload), {"title": path.stem}


class MarkdownAdapter(FileAdapter):
    """Markdown with optional YAML front matter; the title comes from front matter or the first heading."""

    kind = "markdown"
    extensions = MARKDOWN_EXTENSIONS

    def _convert(self, path: Path, payload: bytes) -> tuple[str | bytes, dict[str, Any]]:
        if b"\0" in payload[:8192]:
            raise ExtractionError("binary content", source_path=str(path))
        text = _decode(payload)
        if isinstance(text, bytes):
            return text, {}
        front_matter, body = parse_front_matter(text)
        metadata: dict[str, Any] = {key: value for key, value in front_matter.items() if isinstance(key, str)}
        title = metadata.get("title")
        if not title:
            heading = HEADING_PATTERN.search(body)
            title = heading.group(1) if heading else path.stem
        metadata["title"] = str(title)
        return body, metadata


class CsonAdapter(FileAdapter):
    """Boostnote ``.cson`` notes: ``title`` plus markdown ``content`` blocks."""

    kind = "cson"
    extensions = CSON_EXTENSIONS

    _TITLE = re.compile(r'^title:\s*"((?:[^"\\]|\\.)*)"\s*$', re.MULTILINE)
    _BLOCK_CONTENT = re.compile(r"^\s*content:\s*'''\s*\n(.*?)\n\s*'''", re.MULTILINE | re.DOTALL)
    _INLINE_CONTENT = re.compile(r'^\s*content:\s*"((?:[^"\\]|\\.)*)"\s*$', re.MULTILINE)
    _TAGS = re.compile(r"^tags:\s*\[(.*?)\]", re.MULTILINE | re.DOTALL)
    _TYPE = re.compile(r'^type:\s*"(\w+)"', re.MULTILINE)

    def _convert(self, path: Path, payload: bytes) -> tuple[str | bytes, dict[str, Any]]:
        text = _decode(payload)
        if isinstance(text, bytes):
            return text, {}
        title_match = self._TITLE.search(text)
        title = _unescape(title_match.group(1)) if title_match else path.stem
        blocks = [match.group(1) for match in self._BLOCK_CONTENT.finditer(text)]
        blocks.extend(_unescape(match.group(1)) for match in self._INLINE_CONTENT.finditer(text))
        if not blocks and title_match is None:
            raise ExtractionError("not a Boostnote note (no title or content)", source_path=str(path))

        metadata: dict[str, Any] = {"title": title}
        tags_match = self._TAGS.search(text)
        if tags_match:
            metadata["tags"] = re.findall(r'"((?:[^"\\]|\\.)*)"', tags_match.group(1))
        type_match = self._TYPE.search(text)
        if type_match:
            metadata["note_type"] = type_match.group(1)
        body = "\n\n".join([title, *(_dedent(block) for block in blocks)])
        return body, metadata


class BinaryAdapter(FileAdapter):
    """Files known to hold no text. Every extraction fails so the file is recorded and skipped."""

    kind = "binary"
    extensions = BINARY_EXTENSIONS

    def extract(self, path: str) -> RawDocument:
        raise ExtractionError("binary file skipped", source_path=path)


class MboxAdapter:
    """One document per message; message paths are ``<file>#<index>``.

    The last parsed mailbox is cached because listing and extraction of one
    file walk the same messages.
    """

    kind = "mbox"
    extensions = MBOX_EXTENSIONS

    def __init__(self) -> None:
        self._cache_lock = threading.Lock()
        self._cache: tuple[str, str, list[Message]] | None = None

    def accepts(self, path: str) -> bool:
        file_path = Path(MESSAGE_SUFFIX.sub("", path))
        return file_path.suffix.lower() in self.extensions or file_path.name.lower() == "mbox"

    def list_candidates(
        self, root: Path, *, recurse: bool = True, vcs: str = "auto", status: ListingStatus | None = None
    ) -> Iterator[Candidate]:
        lister = lister_for(root, vcs=vcs, recurse=recurse)
        for file_candidate in lister:
            if not self.accepts(file_candidate.path):
                continue
            try:
                messages = self._messages(Path(file_candidate.path))
            except ExtractionError as exc:
                logger.warning("Skipping mailbox %s: %s", file_candidate.path, exc)
                if status is not None:
                    status.mark_incomplete()
                continue
            for index, message in enumerate(messages):
                yield Candidate(
                    path=f"{file_candidate.path}{MESSAGE_SEPARATOR}{index}",
                    revision=_message_revision(message),
                    modified_time=_message_time(message, file_candidate.modified_time),
                )
        if status is not None:
            status.absorb(lister)

    def extract(self, path: str) -> RawDocument:
        file_part, separator, index_part = path.rpartition(MESSAGE_SEPARATOR)
        if not separator or not index_part.isdigit():
            raise ExtractionError("mbox document path must end with #<message index>", source_path=path)
        file_path = Path(file_part)
        messages = self._messages(file_path)
        index = int(index_part)
        if index >= len(messages):
            raise ExtractionError(f"mailbox has no message {index}", source_path=path)
        message = messages[index]
        _, file_mtime = _file_revision(file_path)

        subject = _header(message, "subject")
        body = _message_body(message)
        metadata = {
            "title": subject or f"{file_path.name} message {index}",
            "from": _header(message, "from"),
            "to": _header(message, "to"),
            "date": _header(message, "date"),
            "message_id": _header(message, "message-id"),
        }
        return RawDocument(
            source_path=path,
            source_kind=self.kind,
            extracted_text=f"{subject}\n\n{body}" if subject else body,
            revision=_message_revision(message),
            extracted_metadata={key: value for key, value in metadata.items() if value},
            modified_time=_message_time(message, file_mtime),
        )

    def _messages(self, path: Path) -> list[Message]:
        revision, _ = _file_revision(path)
        key = str(path)
        with self._cache_lock:
            if self._cache is not None and self._cache[0] == key and self._cache[1] == revision:
                return self._cache[2]
        try:
            box = mailbox.mbox(path, create=False)
            try:
                messages: list[Message] = list(box)
            finally:
                box.close()
        except (OSError, mailbox.Error) as exc:
            raise ExtractionError(f"cannot read mailbox: {exc}", source_path=key) from exc
        with self._cache_lock:
            self._cache = (key, revision, messages)
        return messages


class AutoAdapter:
    """Chooses the adapter from the file extension; unknown extensions are read as text."""

    kind = "auto"

    def __init__(self) -> None:
        self.markdown = MarkdownAdapter()
        self.cson = CsonAdapter()
        self.mbox = MboxAdapter()
        self.binary = BinaryAdapter()
        self.text = TextAdapter()

    def adapter_for(self, path: str) -> SourceAdapter:
        if self.mbox.accepts(path):
            return self.mbox
        for adapter in (self.markdown, self.cson, self.binary):
            if adapter.accepts(path):
                return adapter
        return self.text

    def list_candidates(
        self, root: Path, *, recurse: bool = True, vcs: str = "auto", status: ListingStatus | None = None
    ) -> Iterator[Candidate]:
        mbox_files = []
        lister = lister_for(root, vcs=vcs, recurse=recurse)
        for candidate in lister:
            if self.mbox.accepts(candidate.path):
                mbox_files.append(candidate.path)
                continue
            yield candidate
        if status is not None:
            status.absorb(lister)
        for mbox_path in mbox_files:
            yield from self.mbox.list_candidates(Path(mbox_path), recurse=False, vcs="none", status=status)

    def extract(self, path: str) -> RawDocument:
        return self.adapter_for(path).extract(path)


ADAPTER_TYPES: dict[str, type] = {
    "auto": AutoAdapter,
    "markdown": MarkdownAdapter,
    "cson": CsonAdapter,
    "mbox": MboxAdapter,
    "text": TextAdapter,
    "binary": BinaryAdapter,
}


def create_adapter(kind: str) -> SourceAdapter:
    try:
        return ADAPTER_TYPES[kind]()
    except KeyError as exc:
        raise ValueError(f"Unknown source kind: {kind!r}") from exc


def _unescape(value: str) -> str:
    return value.replace('\\"', '"').replace("\\n", "\n").replace("\\\\", "\\")


def _dedent(block: str) -> str:
    lines = block.splitlines()
    indents = [len(line) - len(line.lstrip()) for line in lines if line.strip()]
    margin = min(indents) if indents else 0
    return "\n".join(line[margin:] for line in lines)


def _header(message: Message, name: str) -> str:
    value = message.get(name)
    return str(value).strip() if value is not None else ""


def _message_revision(message: Message) -> str:
    try:
        raw = message.as_bytes()
    except (UnicodeEncodeError, LookupError):
        raw = message.as_string().encode("utf-8", errors="replace")
    return hashlib.sha1(raw).hexdigest()[:20]


def _message_time(message: Message, fallback: float) -> float:
    raw_date = message.get("date")
    if not raw_date:
        return fallback
    try:
        return parsedate_to_datetime(str(raw_date)).timestamp()
    except (TypeError, ValueError, IndexError, OverflowError):
        return fallback


def _message_body(message: Message) -> str:
    plain: list[str] = []
    html: list[str] = []
    for part in message.walk():
        if part.is_multipart():
            continue
        content_type = part.get_content_type()
        if content_type not in ("text/plain", "text/html"):
            continue
        payload = part.get_payload(decode=True)
        if payload is None:
            continue
        charset = part.get_content_charset() or "utf-8"
        try:
            text = payload.decode(charset, errors="replace")
        except LookupError:
            text = payload.decode("utf-8", errors="replace")
        (plain if content_type == "text/plain" else html).append(text)
    if plain:
        return "\n\n".join(plain)
    return "\n\n".join(BeautifulSoup(text, "html.parser").get_text(" ") for text in html)
