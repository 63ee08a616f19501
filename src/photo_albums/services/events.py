"""Process-wide channel for authentication events."""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum

logger = logging.getLogger(__name__)


class AuthEventKind(StrEnum):
    """Kinds of authentication signals."""

    AUTH_EXPIRED = "authExpired"
    AUTH_ERROR = "authError"
    SESSION_EXPIRED = "sessionExpired"


@dataclass(frozen=True)
class AuthEvent:
    """A broadcast authentication signal."""

    kind: AuthEventKind
    message: str = ""


AuthEventHandler = Callable[[AuthEvent], None]


@dataclass
class EventChannel:
    """Typed publish/subscribe channel; handlers register independently."""

    _handlers: dict[AuthEventKind, list[AuthEventHandler]] = field(
        default_factory=dict
    )

    def subscribe(
        self, kind: AuthEventKind, handler: AuthEventHandler
    ) -> Callable[[], None]:
        """Register handler for kind and return an unsubscribe handle."""
        self._handlers.setdefault(kind, []).append(handler)

        def unsubscribe() -> None:
            handlers = self._handlers.get(kind, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def publish(self, event: AuthEvent) -> None:
        """Deliver event to every handler registered for its kind."""
        logger.info("Auth event %s: %s", event.kind, event.message)
        for handler in list(self._handlers.get(event.kind, [])):
            try:
                handler(event)
            except Exception:
                logger.exception("Auth event handler failed for %s", event.kind)
