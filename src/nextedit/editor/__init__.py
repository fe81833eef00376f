"""Editor buffer models and the document host boundary."""

from .document_model import Document, DocumentInfo, DocumentVersion
from .workspace import DocumentHost, InMemoryWorkspace

__all__ = ["Document", "DocumentInfo", "DocumentVersion", "DocumentHost", "InMemoryWorkspace"]
