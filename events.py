"""Event publishing for connected clients.

Components that notify clients receive a publisher explicitly; the API wires
the default one through the `get_publisher` dependency.
"""
import logging
from typing import Any, Dict, Protocol

logger = logging.getLogger(__name__)

ADMIN_ROOM = "admin-room"


def user_room(user_id: str) -> str:
    return f"user:{user_id}"


class EventPublisher(Protocol):
    def publish(self, room: str, event: str, payload: Dict[str, Any]) -> None:
        ...


class LoggingPublisher:
    """Publisher used when no real-time transport is attached."""

    def publish(self, room: str, event: str, payload: Dict[str, Any]) -> None:
        logger.info("event %s -> %s: %s", event, room, payload)


_default_publisher = LoggingPublisher()


def get_publisher() -> EventPublisher:
    return _default_publisher
