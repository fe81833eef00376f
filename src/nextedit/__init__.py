"""nextedit: next-edit prediction engine for editor integrations."""

__version__ = "0.1.0"

from .core.engine import EngineStatus, PredictionEngine
from .editor.workspace import DocumentHost, InMemoryWorkspace
from .host.controller import ControllerStatus, PredictionController
from .services.settings import Settings, SettingsStore

__all__ = [
    "ControllerStatus",
    "DocumentHost",
    "EngineStatus",
    "InMemoryWorkspace",
    "PredictionController",
    "PredictionEngine",
    "Settings",
    "SettingsStore",
    "__version__",
]
