"""Dataclasses representing editor buffers and their snapshots."""

from __future__ import annotations

import hashlib
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

from ..core.diff import join_lines, split_lines


def _utcnow() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""

    return datetime.now(timezone.utc)


def _hash_text(text: str) -> str:
    return hashlib.sha1(text.encode("utf-8")).hexdigest()


@dataclass(slots=True)
class DocumentInfo:
    """Host-facing description used to gate triggers.

    ``kind`` mirrors editor buffer types: an empty string is a regular file,
    anything else (``"terminal"``, ``"prompt"``, ``"nofile"``) is special.
    """

    path: Optional[Path] = None
    filetype: str = ""
    kind: str = ""
    readonly: bool = False
    modifiable: bool = True


@dataclass(slots=True)
class DocumentVersion:
    """Lightweight metadata describing a document snapshot."""

    document_id: str
    version_id: int
    content_hash: str


@dataclass(slots=True)
class Document:
    """Mutable text buffer stored as a list of lines."""

    lines: list[str] = field(default_factory=lambda: [""])
    info: DocumentInfo = field(default_factory=DocumentInfo)
    document_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    version_id: int = 1
    content_hash: str = field(default_factory=str)
    cursor: tuple[int, int] = (1, 0)
    dirty: bool = False
    updated_at: datetime = field(default_factory=_utcnow)

    def __post_init__(self) -> None:
        if not self.lines:
            self.lines = [""]
        if not self.content_hash:
            self.content_hash = _hash_text(self.text)

    @classmethod
    def from_text(cls, text: str, **kwargs: Any) -> "Document":
        return cls(lines=split_lines(text), **kwargs)

    @property
    def text(self) -> str:
        return join_lines(self.lines)

    def update_text(self, new_text: str) -> None:
        """Replace the full buffer and bump the version."""

        self.replace_lines(0, len(self.lines), split_lines(new_text))

    def replace_lines(self, start: int, end: int, replacement: Sequence[str]) -> None:
        """Replace ``lines[start:end]`` (0-based, end-exclusive) and bump the version."""

        total = len(self.lines)
        if start < 0 or end < start or end > total:
            raise IndexError(f"Line range {start}:{end} outside document of {total} lines")
        self.lines[start:end] = list(replacement)
        if not self.lines:
            self.lines = [""]
        self.dirty = True
        self.updated_at = _utcnow()
        self.version_id += 1
        self.content_hash = _hash_text(self.text)
        self._clamp_cursor()

    def set_cursor(self, line: int, column: int = 0) -> None:
        self.cursor = (line, column)
        self._clamp_cursor()

    def snapshot(self) -> Dict[str, Any]:
        """Return a serializable snapshot of the buffer."""

        payload: Dict[str, Any] = {
            "text": self.text,
            "cursor": self.cursor,
            "filetype": self.info.filetype,
            "dirty": self.dirty,
            "document_id": self.document_id,
            "version_id": self.version_id,
            "content_hash": self.content_hash,
        }
        if self.info.path:
            payload["path"] = str(self.info.path)
        return payload

    def version_info(self) -> DocumentVersion:
        return DocumentVersion(
            document_id=self.document_id,
            version_id=self.version_id,
            content_hash=self.content_hash,
        )

    def version_signature(self) -> str:
        info = self.version_info()
        return f"{info.document_id}:{info.version_id}:{info.content_hash}"

    def _clamp_cursor(self) -> None:
        line, column = self.cursor
        line = max(1, min(int(line), len(self.lines)))
        column = max(0, min(int(column), len(self.lines[line - 1])))
        self.cursor = (line, column)


__all__ = ["Document", "DocumentInfo", "DocumentVersion"]
