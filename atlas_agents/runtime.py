"""Runtime wiring: one store, one event bus, one orchestrator, one graph."""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from .config import Config
from .event_bus import EventBus
from .knowledge_graph import KnowledgeGraph
from .logging_utils import get_logger, setup_logging
from .orchestrator import AgentOrchestrator
from .persistence import DurableStore, InMemoryStore
from .schemas import utc_now

logger = get_logger(__name__)


@dataclass
class AgentRuntime:
    """The shared coordination services of one process.

    Usage:
        async with create_runtime() as runtime:
            event = await runtime.event_bus.publish("agent.started", "host")
    """

    store: DurableStore
    event_bus: EventBus
    orchestrator: AgentOrchestrator
    knowledge_graph: KnowledgeGraph

    async def initialize(self) -> None:
        """Validate configuration and open the store."""
        Config.validate()
        await self.store.initialize()
        logger.info("Runtime initialized", extra={"context": {"store": type(self.store).__name__}})

    async def close(self) -> None:
        """Drain pending event fan-out, then close the store."""
        await self.event_bus.wait_for_dispatch()
        await self.store.close()
        logger.info("Runtime closed")

    async def __aenter__(self) -> "AgentRuntime":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


def create_runtime(
    store: Optional[DurableStore] = None,
    now: Optional[Callable[[], datetime]] = None,
    *,
    configure_logging: bool = False,
) -> AgentRuntime:
    """
    Build the services of one process around a single shared store and bus.

    Args:
        store: Durable store (defaults to a fresh InMemoryStore)
        now: Clock shared by every service (defaults to UTC wall time)
        configure_logging: Install the structured log handler as well

    Returns:
        An uninitialized AgentRuntime; call ``initialize()`` or use ``async with``
    """
    if configure_logging:
        setup_logging()

    store = store or InMemoryStore()
    clock = now or utc_now
    return AgentRuntime(
        store=store,
        event_bus=EventBus(store, now=clock),
        orchestrator=AgentOrchestrator(store, now=clock),
        knowledge_graph=KnowledgeGraph(store, now=clock),
    )
