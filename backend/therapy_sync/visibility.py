from __future__ import annotations

from typing import Callable

Listener = Callable[[bool], None]


class VisibilitySignal:
    """Boolean stream that only notifies on transitions."""

    def __init__(self, visible: bool = True) -> None:
        self._visible = visible
        self._listeners: list[Listener] = []

    @property
    def visible(self) -> bool:
        return self._visible

    def set(self, visible: bool) -> None:
        if visible == self._visible:
            return
        self._visible = visible
        for listener in list(self._listeners):
            listener(visible)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe
