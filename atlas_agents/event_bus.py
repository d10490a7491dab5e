"""
Event Bus: durable event log, subscription routing and in-process handlers.

Publishing is a two-path operation:

1. Durable path. The event is committed to the store and returned to the
   publisher. Matching against subscriptions and inserting one
   ``EVENT_NOTIFICATION`` task per matching subscriber then runs as a
   detached asyncio task. The publisher never waits on it and never sees its
   failures; they are logged.
2. In-process path. Handlers registered with ``add_handler`` are called
   synchronously right after the commit, in the publisher's call stack.

Both paths use the same matching rule. A subscription (or handler) pattern
matches an event type when it is the exact type, the namespace wildcard
``<first segment>.*`` or the global wildcard ``*``. Only the first
dot-delimited segment forms the namespace, so ``agent.*`` matches
``agent.task.done`` but ``agent.task.*`` matches nothing except the literal
type ``agent.task.*``.

Delivery is at-least-once from the subscriber's point of view: re-running
``process_event`` for the same event queues the notifications again.
"""

import asyncio
import threading
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set
from uuid import UUID

from .config import Config
from .errors import NotFoundError, ValidationError, logged_operation
from .logging_utils import get_logger
from .persistence import DurableStore
from .schemas import (
    EVENT_NOTIFICATION,
    AgentTask,
    EventSubscription,
    SystemEvent,
    event_type_patterns,
    utc_now,
)

logger = get_logger(__name__)

EventHandler = Callable[[SystemEvent], Any]


def _same_value(expected: Any, actual: Any) -> bool:
    # JSON equality: booleans never equal numbers, at any depth
    if isinstance(expected, bool) or isinstance(actual, bool):
        return type(expected) is type(actual) and expected == actual
    if isinstance(expected, dict) and isinstance(actual, dict):
        return expected.keys() == actual.keys() and all(
            _same_value(value, actual[key]) for key, value in expected.items()
        )
    if isinstance(expected, (list, tuple)) and isinstance(actual, (list, tuple)):
        return len(expected) == len(actual) and all(
            _same_value(a, b) for a, b in zip(expected, actual)
        )
    return expected == actual


def matches_filter(filter: Optional[Dict[str, Any]], payload: Dict[str, Any]) -> bool:
    """True when every filter key is present in ``payload`` with an equal JSON value."""
    if not filter:
        return True
    return all(key in payload and _same_value(value, payload[key]) for key, value in filter.items())


class EventBus:
    """Publish/subscribe hub shared by every component of a runtime.

    One instance is created per process (see ``create_runtime``) and injected
    wherever events are published, so the in-process handler registry is
    shared.

    Args:
        store: Durable store for events, subscriptions and notification tasks
        now: Clock used for event and task timestamps
    """

    def __init__(self, store: DurableStore, now: Callable[[], datetime] = utc_now):
        self.store = store
        self.now = now
        self._handlers: Dict[str, List[EventHandler]] = {}
        self._handlers_lock = threading.Lock()
        # Strong references keep detached fan-out tasks alive until they finish
        self._pending: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    @logged_operation("publish event", context=("event_type", "source"), success_level=None)
    async def publish(
        self, event_type: str, source: str, payload: Optional[Dict[str, Any]] = None
    ) -> SystemEvent:
        """
        Commit an event and trigger both delivery paths.

        Args:
            event_type: Dot-namespaced type, e.g. ``agent.started``
            source: Publisher identifier
            payload: Event body (defaults to ``{}``)

        Returns:
            The committed event. Subscriber notification happens afterwards.

        Raises:
            ValidationError: Empty event type or source, or non-mapping payload
            DependencyError: The event could not be stored
        """
        if not event_type:
            raise ValidationError("event_type", event_type, "must be a non-empty string")
        if not source:
            raise ValidationError("source", source, "must be a non-empty string")
        if payload is not None and not isinstance(payload, dict):
            raise ValidationError("payload", payload, "must be a mapping")

        event = SystemEvent(
            event_type=event_type,
            source=source,
            payload=dict(payload or {}),
            created_at=self.now(),
        )
        stored = await self.store.insert_event(event)
        logger.info(
            "Event published",
            extra={
                "context": {
                    "event_id": str(stored.event_id),
                    "event_type": stored.event_type,
                    "source": stored.source,
                }
            },
        )

        task = asyncio.create_task(self._dispatch(stored.model_copy(deep=True)))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

        self.emit(stored)
        return stored.model_copy(deep=True)

    async def _dispatch(self, event: SystemEvent) -> None:
        try:
            await self.process_event(event)
        except Exception:
            # Already logged by process_event; the publisher must not see it
            logger.warning(
                "Event fan-out aborted",
                extra={"context": {"event_id": str(event.event_id)}},
            )

    async def wait_for_dispatch(self) -> None:
        """Wait until every scheduled fan-out (including ones scheduled meanwhile) has finished."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    @logged_operation("process event", success_level=None)
    async def process_event(self, event: SystemEvent) -> int:
        """
        Queue one notification task per matching, filter-passing subscription.

        A failure for one subscriber is logged and skipped; the rest still
        receive their task. Subscribers whose agent is TERMINATED or missing
        are skipped.

        Returns:
            Number of notification tasks queued
        """
        subscriptions = await self.store.find_subscriptions(event_type_patterns(event.event_type))
        queued = 0

        for subscription in subscriptions:
            if not matches_filter(subscription.filter, event.payload):
                continue
            context = {
                "event_id": str(event.event_id),
                "subscription_id": str(subscription.subscription_id),
                "agent_id": str(subscription.agent_id),
            }
            try:
                now = self.now()
                queued_task = await self.store.insert_task_for_live_agent(
                    AgentTask(
                        agent_id=subscription.agent_id,
                        type=EVENT_NOTIFICATION,
                        payload={
                            "event_id": str(event.event_id),
                            "event_type": event.event_type,
                            "source": event.source,
                            "payload": event.payload,
                            "subscription_id": str(subscription.subscription_id),
                        },
                        priority=Config.EVENT_NOTIFICATION_PRIORITY,
                        created_at=now,
                        updated_at=now,
                    )
                )
                if queued_task is None:
                    logger.debug("Skipping subscriber without a live agent", extra={"context": context})
                    continue
                queued += 1
            except Exception as exc:
                context["error"] = str(exc)
                logger.error("Failed to notify subscriber", extra={"context": context})

        logger.debug(
            "Event processed",
            extra={"context": {"event_id": str(event.event_id), "notifications": queued}},
        )
        return queued

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    @logged_operation("subscribe", context=("agent_id", "event_type"))
    async def subscribe(
        self,
        agent_id: UUID,
        event_type: str,
        filter: Optional[Dict[str, Any]] = None,
    ) -> EventSubscription:
        """
        Subscribe an agent to an event pattern.

        Subscribing again to the same ``(agent_id, event_type)`` reactivates
        the existing subscription and replaces its filter.
        """
        if not event_type:
            raise ValidationError("event_type", event_type, "must be a non-empty string")
        if filter is not None and not isinstance(filter, dict):
            raise ValidationError("filter", filter, "must be a mapping")
        await self._require_agent(agent_id)
        return await self.store.upsert_subscription(agent_id, event_type, filter, self.now())

    @logged_operation("unsubscribe", context=("subscription_id",))
    async def unsubscribe(self, subscription_id: UUID) -> None:
        """Deactivate a subscription (history is kept)."""
        if not await self.store.deactivate_subscription(subscription_id, self.now()):
            raise NotFoundError("subscription", subscription_id)

    @logged_operation("get subscriptions", context=("agent_id",))
    async def get_subscriptions(self, agent_id: UUID) -> List[EventSubscription]:
        await self._require_agent(agent_id)
        return await self.store.list_subscriptions(agent_id)

    async def _require_agent(self, agent_id: UUID) -> None:
        if await self.store.get_agent(agent_id) is None:
            raise NotFoundError("agent", agent_id)

    @logged_operation("get recent events", context=("event_type", "since", "limit"))
    async def get_recent_events(
        self,
        event_type: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[SystemEvent]:
        """Return stored events newest first (exact type filter, optional start time)."""
        if limit is None:
            limit = Config.RECENT_EVENTS_LIMIT
        if limit < 1:
            raise ValidationError("limit", limit, "must be at least 1")
        return await self.store.list_events(event_type=event_type, since=since, limit=limit)

    # ------------------------------------------------------------------
    # In-process handlers
    # ------------------------------------------------------------------

    def add_handler(self, event_type: str, handler: EventHandler) -> None:
        """Register a synchronous callback for an event pattern."""
        if not event_type:
            raise ValidationError("event_type", event_type, "must be a non-empty string")
        with self._handlers_lock:
            self._handlers.setdefault(event_type, []).append(handler)
        logger.debug("Handler registered", extra={"context": {"event_type": event_type}})

    def remove_handler(self, event_type: str, handler: EventHandler) -> bool:
        """Unregister one registration of ``handler``; False if it was not registered."""
        with self._handlers_lock:
            handlers = self._handlers.get(event_type)
            if not handlers or handler not in handlers:
                return False
            handlers.remove(handler)
            if not handlers:
                del self._handlers[event_type]
        return True

    def emit(self, event: SystemEvent) -> int:
        """
        Call in-process handlers for ``event``.

        Tiers run in order exact, namespace wildcard, global; handlers within a
        tier run in registration order. A failing handler is logged and the
        rest still run. Each handler gets its own copy of the event. Handlers
        may register or remove handlers while being called; changes apply from
        the next emission.

        Returns:
            Number of handlers that completed without raising
        """
        with self._handlers_lock:
            snapshot = [
                (pattern, list(self._handlers.get(pattern, ())))
                for pattern in event_type_patterns(event.event_type)
            ]

        succeeded = 0
        for pattern, handlers in snapshot:
            for handler in handlers:
                try:
                    handler(event.model_copy(deep=True))
                except Exception:
                    logger.exception(
                        "Event handler failed",
                        extra={
                            "context": {
                                "event_type": event.event_type,
                                "pattern": pattern,
                                "handler": getattr(handler, "__name__", repr(handler)),
                            }
                        },
                    )
                    continue
                succeeded += 1
        return succeeded
