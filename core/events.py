"""
Typed event channels

Each component exposes one Signal per event category instead of a
string-keyed emitter, so listeners are bound to a concrete payload shape.
"""
from typing import Callable, Generic, List, ParamSpec

P = ParamSpec("P")


class Signal(Generic[P]):
    """A named list of listeners for a single event category"""

    def __init__(self, name: str):
        self.name = name
        self._listeners: List[Callable[P, None]] = []

    def connect(self, listener: Callable[P, None]) -> Callable[[], None]:
        """Register a listener and return a callable that removes it again"""
        self._listeners.append(listener)

        def disconnect() -> None:
            self.disconnect(listener)

        return disconnect

    def disconnect(self, listener: Callable[P, None]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def emit(self, *args: P.args, **kwargs: P.kwargs) -> None:
        """Invoke every listener in connection order"""
        for listener in list(self._listeners):
            listener(*args, **kwargs)

    def clear(self) -> None:
        self._listeners.clear()

    def __len__(self) -> int:
        return len(self._listeners)

    def __repr__(self) -> str:
        return f"Signal({self.name!r}, listeners={len(self._listeners)})"
