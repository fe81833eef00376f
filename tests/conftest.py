"""Shared pytest fixtures."""

from __future__ import annotations

import pytest
import pytest_asyncio

from nextedit.core.engine import PredictionEngine
from nextedit.editor.workspace import InMemoryWorkspace
from nextedit.services.settings import Settings

from tests.helpers import ScriptedTransport

DOC = "doc"


@pytest.fixture
def settings() -> Settings:
    return Settings(debounce_ms=10, idle_debounce_ms=10, in_flight_timeout_ms=1_000)


@pytest.fixture
def workspace() -> InMemoryWorkspace:
    space = InMemoryWorkspace()
    space.open("a\nb\nc\n", document_id=DOC, path="src/demo.py", filetype="py")
    return space


@pytest.fixture
def transport() -> ScriptedTransport:
    return ScriptedTransport()


@pytest_asyncio.fixture
async def engine(workspace: InMemoryWorkspace, transport: ScriptedTransport, settings: Settings):
    instance = PredictionEngine(workspace, transport, settings)
    instance.init()
    yield instance
    await instance.shutdown()
