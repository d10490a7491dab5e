"""Shared fixtures: in-memory store, manual clock, seeded agents."""

from datetime import datetime, timedelta, timezone

import pytest

from atlas_agents.event_bus import EventBus
from atlas_agents.knowledge_graph import KnowledgeGraph
from atlas_agents.orchestrator import AgentOrchestrator
from atlas_agents.persistence import InMemoryStore
from atlas_agents.schemas import Agent, AgentStatus


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float = 1.0) -> datetime:
        self.current = self.current + timedelta(seconds=seconds)
        return self.current


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def orchestrator(store, clock) -> AgentOrchestrator:
    return AgentOrchestrator(store, now=clock)


@pytest.fixture
def bus(store, clock) -> EventBus:
    return EventBus(store, now=clock)


@pytest.fixture
def graph(store, clock) -> KnowledgeGraph:
    return KnowledgeGraph(store, now=clock)


@pytest.fixture
def make_agent(store, clock):
    """Register an agent the way a host application would, then tick the clock."""

    async def _make(name="estimator", *, module=None, agent_type=None, status=AgentStatus.DORMANT):
        agent = Agent(
            name=name,
            module=module,
            type=agent_type,
            status=status,
            created_at=clock(),
            updated_at=clock(),
        )
        stored = await store.save_agent(agent)
        clock.advance()
        return stored

    return _make
