"""EventBus and event types for audit and live-update consumers."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    Handler = Callable[["FileEvent"], Awaitable[Any]]

logger = logging.getLogger(__name__)


class EventType(Enum):
    """Tree mutations that are reported to the audit/event layer."""

    FOLDER_CREATED = "folder.create"
    FILE_UPLOADED = "file.upload"
    CONTENT_REPLACED = "file.replace"
    ENTRY_RENAMED = "file.rename"
    ENTRY_MOVED = "file.move"
    ENTRY_COPIED = "file.copy"
    ENTRY_TRASHED = "file.delete"
    ENTRY_RESTORED = "file.restore"
    ENTRY_PURGED = "file.delete_permanent"
    TRASH_EMPTIED = "trash.empty"
    STARRED_CHANGED = "file.star"
    SHARE_CREATED = "share.create"
    SHARE_REVOKED = "share.delete"


@dataclass(frozen=True, slots=True)
class FileEvent:
    """Immutable record of a tree mutation.

    Attributes:
        event_type: The kind of mutation that occurred.
        resource_id: Id of the affected entry (or share token).
        owner_id: User on whose behalf the mutation ran.
        status: ``"success"`` or ``"failure"``.
        metadata: Free-form details (names, parent ids, counts).
    """

    event_type: EventType
    resource_id: str | None
    owner_id: str | None = None
    status: str = "success"
    metadata: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(UTC))


class EventBus:
    """Dispatches tree events to registered handlers without blocking the caller.

    ``publish`` hands the event to a background task and returns
    immediately; the mutation that produced the event never waits on
    delivery. Handlers run sequentially in registration order and their
    exceptions are logged, never propagated.
    """

    def __init__(self) -> None:
        self._handlers: dict[EventType, list[Handler]] = {et: [] for et in EventType}
        self._pending: set[asyncio.Task[None]] = set()

    def register(self, event_type: EventType, handler: Handler) -> None:
        """Append *handler* to the list for *event_type*."""
        self._handlers[event_type].append(handler)

    def register_all(self, handler: Handler) -> None:
        """Register *handler* for every event type."""
        for event_type in EventType:
            self._handlers[event_type].append(handler)

    def unregister(self, event_type: EventType, handler: Handler) -> bool:
        """Remove first occurrence of *handler*. Return True if found."""
        handlers = self._handlers[event_type]
        try:
            handlers.remove(handler)
            return True
        except ValueError:
            return False

    def publish(self, event: FileEvent) -> None:
        """Schedule delivery of *event* on the running loop."""
        if not self._handlers[event.event_type]:
            return
        task = asyncio.get_running_loop().create_task(self._deliver(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, event: FileEvent) -> None:
        for handler in list(self._handlers[event.event_type]):
            try:
                await handler(event)
            except Exception:
                logger.warning(
                    "Handler %r failed for %s on %s",
                    handler,
                    event.event_type.value,
                    event.resource_id,
                    exc_info=True,
                )

    async def drain(self) -> None:
        """Wait until every published event has been delivered."""
        while self._pending:
            await asyncio.gather(*list(self._pending))

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def handler_count(self) -> int:
        """Total number of registered handlers across all event types."""
        return sum(len(h) for h in self._handlers.values())

    def clear(self) -> None:
        """Remove all registered handlers."""
        for handlers in self._handlers.values():
            handlers.clear()
