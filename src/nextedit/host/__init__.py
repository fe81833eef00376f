"""Host integration helpers: controller facade, render notifier and key intercepts."""

from .controller import ControllerStatus, PredictionController
from .intercepts import KeyBindingTable, KeyBindings, TransientIntercept
from .render import Renderer, RenderNotifier

__all__ = [
    "ControllerStatus",
    "KeyBindingTable",
    "KeyBindings",
    "PredictionController",
    "RenderNotifier",
    "Renderer",
    "TransientIntercept",
]
