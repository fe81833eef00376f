"""Transient key intercepts that shadow a host binding while a prediction is visible."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol

__all__ = ["Binding", "KeyBindings", "KeyBindingTable", "TransientIntercept"]

LOGGER = logging.getLogger(__name__)

Binding = Callable[[], None]


class KeyBindings(Protocol):
    """Per-document key binding storage offered by the host."""

    def get(self, document_id: str, key: str) -> Optional[Binding]:  # pragma: no cover - protocol
        ...

    def set(self, document_id: str, key: str, binding: Binding) -> None:  # pragma: no cover - protocol
        ...

    def delete(self, document_id: str, key: str) -> None:  # pragma: no cover - protocol
        ...


class KeyBindingTable:
    """Dictionary-backed :class:`KeyBindings` for headless hosts."""

    def __init__(self) -> None:
        self._bindings: Dict[tuple[str, str], Binding] = {}

    def get(self, document_id: str, key: str) -> Optional[Binding]:
        return self._bindings.get((document_id, key))

    def set(self, document_id: str, key: str, binding: Binding) -> None:
        self._bindings[(document_id, key)] = binding

    def delete(self, document_id: str, key: str) -> None:
        self._bindings.pop((document_id, key), None)

    def press(self, document_id: str, key: str) -> bool:
        """Invoke the binding for ``key``; returns ``False`` when nothing is bound."""

        binding = self._bindings.get((document_id, key))
        if binding is None:
            return False
        binding()
        return True


@dataclass(slots=True)
class _Installed:
    wrapper: Binding
    original: Optional[Binding]


class TransientIntercept:
    """Installs a one-shot wrapper for ``key`` and guarantees the prior binding comes back.

    The wrapper restores the original binding before running ``on_intercept``
    and then falls through to the original so the key keeps its usual meaning.
    :meth:`restore` is idempotent and is also called when the prediction is
    cleared, the document closes or the controller is disabled.
    """

    def __init__(
        self,
        bindings: KeyBindings,
        on_intercept: Callable[[str], None],
        *,
        key: str = "<Esc>",
    ) -> None:
        self._bindings = bindings
        self._on_intercept = on_intercept
        self._key = key
        self._installed: Dict[str, _Installed] = {}

    @property
    def key(self) -> str:
        return self._key

    def is_installed(self, document_id: str) -> bool:
        return document_id in self._installed

    def installed_documents(self) -> list[str]:
        return list(self._installed)

    def install(self, document_id: str) -> bool:
        if document_id in self._installed:
            return False
        original = self._bindings.get(document_id, self._key)

        def _wrapper() -> None:
            self.restore(document_id)
            try:
                self._on_intercept(document_id)
            finally:
                if original is not None:
                    original()

        self._installed[document_id] = _Installed(wrapper=_wrapper, original=original)
        self._bindings.set(document_id, self._key, _wrapper)
        LOGGER.debug("Intercept installed: %s %s", document_id, self._key)
        return True

    def restore(self, document_id: str) -> bool:
        entry = self._installed.pop(document_id, None)
        if entry is None:
            return False
        if self._bindings.get(document_id, self._key) is not entry.wrapper:
            # rebound by the host meanwhile; leave its binding alone
            LOGGER.debug("Intercept for %s was replaced; not restoring", document_id)
            return True
        self._bindings.delete(document_id, self._key)
        if entry.original is not None:
            self._bindings.set(document_id, self._key, entry.original)
        LOGGER.debug("Intercept restored: %s %s", document_id, self._key)
        return True

    def restore_all(self) -> int:
        restored = 0
        for document_id in list(self._installed):
            restored += int(self.restore(document_id))
        return restored
