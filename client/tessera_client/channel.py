"""Origin-scoped broadcast of renewal and logout events between tabs."""
from collections.abc import Callable
from enum import Enum
import logging
import time
from typing import Protocol
import uuid

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class AuthEventKind(str, Enum):
    RENEWED = "renewed"
    LOGOUT = "logout"


class AuthEvent(BaseModel):
    kind: AuthEventKind
    access: str | None = None
    session_id: str | None = None
    timestamp: float = Field(default_factory=time.time)


EventHandler = Callable[[AuthEvent], None]


class BroadcastChannel(Protocol):
    def publish(self, event: AuthEvent) -> None: ...

    def subscribe(self, handler: EventHandler) -> Callable[[], None]:
        """Register ``handler``; returns a callable that unsubscribes it."""
        ...


class LocalBroadcastHub:
    """In-process stand-in for a browser origin.

    Each tab takes its own channel from the hub. An event published on one
    channel is delivered to the subscribers of every other channel.
    """

    def __init__(self):
        self._subscribers: dict[str, list[EventHandler]] = {}

    def channel(self) -> "LocalChannel":
        return LocalChannel(self, uuid.uuid4().hex)

    def _subscribe(self, member_id: str, handler: EventHandler) -> Callable[[], None]:
        self._subscribers.setdefault(member_id, []).append(handler)

        def unsubscribe() -> None:
            handlers = self._subscribers.get(member_id, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def _deliver(self, sender_id: str, event: AuthEvent) -> None:
        for member_id, handlers in list(self._subscribers.items()):
            if member_id == sender_id:
                continue
            for handler in list(handlers):
                try:
                    handler(event)
                except Exception:
                    logger.exception(f"Broadcast handler failed for {event.kind.value} event")


class LocalChannel:
    def __init__(self, hub: LocalBroadcastHub, member_id: str):
        self._hub = hub
        self.member_id = member_id

    def publish(self, event: AuthEvent) -> None:
        self._hub._deliver(self.member_id, event)

    def subscribe(self, handler: EventHandler) -> Callable[[], None]:
        return self._hub._subscribe(self.member_id, handler)
