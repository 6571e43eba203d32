import inspect
import logging
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)


class EventHandlerMixin:
    """
    Registro mínimo de manejadores de eventos.

    Los motores de voz y la sesión exponen sus eventos con la misma interfaz:

        @recognizer.event_handler("on_end")
        async def on_end():
            ...

    Los manejadores pueden ser funciones normales o corrutinas; se ejecutan
    en orden de registro sobre el mismo event loop.
    """

    _EVENTS: tuple = ()

    def _ensure_handlers(self) -> Dict[str, List[Callable[..., Any]]]:
        handlers = getattr(self, "_event_handlers", None)
        if handlers is None:
            handlers = {name: [] for name in self._EVENTS}
            self._event_handlers = handlers
        return handlers

    def add_event_handler(self, event_name: str, handler: Callable[..., Any]) -> None:
        handlers = self._ensure_handlers()
        if event_name not in handlers:
            raise ValueError(f"Evento desconocido para {type(self).__name__}: {event_name}")
        handlers[event_name].append(handler)

    def event_handler(self, event_name: str):
        def decorator(handler):
            self.add_event_handler(event_name, handler)
            return handler

        return decorator

    async def _call_event_handler(self, event_name: str, *args: Any) -> None:
        for handler in list(self._ensure_handlers().get(event_name, [])):
            result = handler(*args)
            if inspect.isawaitable(result):
                await result
