import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, List, Union

Handler = Callable[..., Union[None, Awaitable[None]]]


class EventHub:
    """Per-kind subscriber registry handed out by each component.

    Subscribing returns a callable that removes exactly that subscription, so a
    consumer can detach one listener without knowing about the others.
    """

    def __init__(self, kinds: List[str]):
        self.handlers: Dict[str, List[Handler]] = {kind: [] for kind in kinds}

    def subscribe(self, kind: str, handler: Handler) -> Callable[[], None]:
        """Register a handler for an event kind

        Args:
            kind (str): One of the kinds this hub was created with
            handler (Handler): Plain function or coroutine function

        Returns:
            Callable[[], None]: Unsubscribe handle, safe to call more than once
        """
        if kind not in self.handlers:
            raise ValueError(f"Unknown event kind: {kind}")
        self.handlers[kind].append(handler)

        def unsubscribe() -> None:
            if handler in self.handlers[kind]:
                self.handlers[kind].remove(handler)

        return unsubscribe

    def count(self, kind: str) -> int:
        return len(self.handlers.get(kind, []))

    async def emit(self, kind: str, *args: Any) -> None:
        """Deliver an event to every current subscriber of the kind

        A failing handler is logged and does not stop delivery to the rest.
        """
        for handler in list(self.handlers.get(kind, [])):
            try:
                result = handler(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logging.error(f"Handler for {kind} failed: {e}")
