"""Document host boundary and an in-memory workspace implementing it."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, Dict, Iterator, Optional, Protocol, Sequence

from .document_model import Document, DocumentInfo

__all__ = ["DocumentHost", "InMemoryWorkspace", "ChangeListener", "resolve_path"]

LOGGER = logging.getLogger(__name__)


class DocumentHost(Protocol):
    """Operations the prediction engine needs from the host editor.

    Line ranges passed to :meth:`set_lines` are 0-based and end-exclusive;
    cursors are ``(line, column)`` with a 1-based line and 0-based column.
    """

    def get_lines(self, document_id: str) -> list[str]:  # pragma: no cover - protocol
        ...

    def set_lines(self, document_id: str, start: int, end: int, replacement: Sequence[str]) -> None:  # pragma: no cover - protocol
        ...

    def get_version(self, document_id: str) -> int:  # pragma: no cover - protocol
        ...

    def get_cursor(self, document_id: str) -> tuple[int, int]:  # pragma: no cover - protocol
        ...

    def describe(self, document_id: str) -> DocumentInfo:  # pragma: no cover - protocol
        ...


ChangeListener = Callable[[str], None]


class InMemoryWorkspace:
    """Headless :class:`DocumentHost` backed by :class:`Document` buffers.

    Listeners registered through :meth:`add_change_listener` fire after every
    mutation, the way editor change notifications do.
    """

    def __init__(self) -> None:
        self._documents: Dict[str, Document] = {}
        self._listeners: list[ChangeListener] = []

    # ------------------------------------------------------------------
    # Document management
    # ------------------------------------------------------------------
    def open(
        self,
        text: str = "",
        *,
        document_id: str | None = None,
        path: Path | str | None = None,
        filetype: str = "",
        kind: str = "",
        readonly: bool = False,
        modifiable: bool = True,
    ) -> Document:
        info = DocumentInfo(
            path=Path(path) if path is not None else None,
            filetype=filetype,
            kind=kind,
            readonly=readonly,
            modifiable=modifiable,
        )
        document = Document.from_text(text, info=info)
        if document_id:
            document.document_id = document_id
        if document.document_id in self._documents:
            raise ValueError(f"Document {document.document_id} is already open")
        self._documents[document.document_id] = document
        LOGGER.debug("Workspace opened document %s (%d lines)", document.document_id, len(document.lines))
        return document

    def open_file(self, path: Path | str, *, filetype: str | None = None) -> Document:
        resolved = Path(path).expanduser()
        text = resolved.read_text(encoding="utf-8")
        detected = filetype if filetype is not None else resolved.suffix.lstrip(".")
        return self.open(text, document_id=str(resolved), path=resolved, filetype=detected)

    def close(self, document_id: str) -> Document | None:
        return self._documents.pop(document_id, None)

    def document(self, document_id: str) -> Document:
        try:
            return self._documents[document_id]
        except KeyError as exc:
            raise KeyError(f"Unknown document: {document_id}") from exc

    def iter_documents(self) -> Iterator[Document]:
        return iter(list(self._documents.values()))

    def __contains__(self, document_id: object) -> bool:
        return document_id in self._documents

    def __len__(self) -> int:
        return len(self._documents)

    # ------------------------------------------------------------------
    # Editing helpers (simulate user typing)
    # ------------------------------------------------------------------
    def set_text(self, document_id: str, text: str, *, notify: bool = True) -> None:
        self.document(document_id).update_text(text)
        if notify:
            self._notify(document_id)

    def set_cursor(self, document_id: str, line: int, column: int = 0) -> None:
        self.document(document_id).set_cursor(line, column)

    def get_text(self, document_id: str) -> str:
        return self.document(document_id).text

    # ------------------------------------------------------------------
    # DocumentHost
    # ------------------------------------------------------------------
    def get_lines(self, document_id: str) -> list[str]:
        return list(self.document(document_id).lines)

    def set_lines(self, document_id: str, start: int, end: int, replacement: Sequence[str]) -> None:
        self.document(document_id).replace_lines(start, end, replacement)
        self._notify(document_id)

    def get_version(self, document_id: str) -> int:
        return self.document(document_id).version_id

    def get_cursor(self, document_id: str) -> tuple[int, int]:
        return self.document(document_id).cursor

    def describe(self, document_id: str) -> DocumentInfo:
        return self.document(document_id).info

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------
    def add_change_listener(self, listener: ChangeListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_change_listener(self, listener: ChangeListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self, document_id: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(document_id)
            except Exception:  # pragma: no cover - listeners must not break edits
                LOGGER.exception("Change listener %r failed for %s", listener, document_id)


def resolve_path(info: Optional[DocumentInfo]) -> str:
    """Return a display path for ``info`` (empty when the buffer has no file)."""

    if info is None or info.path is None:
        return ""
    return Path(info.path).as_posix()
