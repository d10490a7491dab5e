"""Tests for the durable store implementations."""

from uuid import uuid4

import pytest

from atlas_agents.errors import DependencyError
from atlas_agents.persistence import InMemoryStore, PostgresStore
from atlas_agents.schemas import (
    Agent,
    AgentStatus,
    AgentTask,
    KnowledgeEdge,
    KnowledgeNode,
    SystemEvent,
    TaskStatus,
)


class _RefusingAcquire:
    async def __aenter__(self):
        raise ConnectionRefusedError("connection refused")

    async def __aexit__(self, exc_type, exc, tb):
        return False


class _RefusingPool:
    def acquire(self):
        return _RefusingAcquire()

    async def close(self):
        pass


@pytest.mark.asyncio
async def test_in_memory_store_returns_copies(clock):
    store = InMemoryStore()
    await store.initialize()

    agent = await store.save_agent(Agent(name="scheduler", state={"queue": []}, created_at=clock()))
    agent.state["queue"].append("mutated")

    fetched = await store.get_agent(agent.agent_id)
    assert fetched.state == {"queue": []}

    await store.close()


@pytest.mark.asyncio
async def test_status_update_stamps_state_document(clock):
    store = InMemoryStore()
    agent = await store.save_agent(Agent(name="scheduler", state={"region": "west"}))

    updated = await store.update_agent_status(agent.agent_id, AgentStatus.ACTIVE, clock())
    assert updated.status == AgentStatus.ACTIVE
    assert updated.state == {"region": "west", "last_status_change": clock().isoformat()}
    assert updated.updated_at == clock()

    assert await store.update_agent_status(uuid4(), AgentStatus.ACTIVE, clock()) is None
    assert await store.record_heartbeat(uuid4(), clock()) is None


@pytest.mark.asyncio
async def test_terminate_agent_cancels_open_tasks_in_one_step(clock):
    store = InMemoryStore()
    agent = await store.save_agent(Agent(name="scheduler", status=AgentStatus.ACTIVE, created_at=clock()))
    agent_id = agent.agent_id
    pending = await store.insert_task(AgentTask(agent_id=agent_id, type="a"))
    running = await store.insert_task(AgentTask(agent_id=agent_id, type="b", status=TaskStatus.IN_PROGRESS))
    finished = await store.insert_task(AgentTask(agent_id=agent_id, type="c"))
    await store.complete_task(finished.task_id, None, clock())
    await store.insert_task(AgentTask(agent_id=uuid4(), type="other"))

    assert pending.sequence < running.sequence < finished.sequence
    clock.advance()
    terminated, cancelled = await store.terminate_agent(agent_id, clock())
    assert cancelled == 2
    assert terminated.status == AgentStatus.TERMINATED
    assert terminated.state["last_status_change"] == clock().isoformat()

    statuses = {t.type: t.status for t in await store.list_tasks(agent_id)}
    assert statuses == {"a": TaskStatus.CANCELLED, "b": TaskStatus.CANCELLED, "c": TaskStatus.COMPLETED}
    assert await store.terminate_agent(uuid4(), clock()) is None


@pytest.mark.asyncio
async def test_insert_task_for_live_agent_refuses_terminated_and_missing_agents(clock):
    store = InMemoryStore()
    live = await store.save_agent(Agent(name="live", created_at=clock()))
    retired = await store.save_agent(Agent(name="retired", created_at=clock()))
    await store.terminate_agent(retired.agent_id, clock())

    queued = await store.insert_task_for_live_agent(AgentTask(agent_id=live.agent_id, type="note"))
    assert queued is not None and queued.sequence >= 1
    assert await store.insert_task_for_live_agent(AgentTask(agent_id=retired.agent_id, type="note")) is None
    assert await store.insert_task_for_live_agent(AgentTask(agent_id=uuid4(), type="note")) is None
    assert await store.list_tasks(retired.agent_id) == []


@pytest.mark.asyncio
async def test_event_log_is_insulated_from_callers(clock):
    store = InMemoryStore()
    event = SystemEvent(event_type="a.one", source="s", payload={"items": [1]}, created_at=clock())
    returned = await store.insert_event(event)
    event.payload["items"].append(2)
    returned.payload["items"].append(3)
    (await store.list_events())[0].payload["items"].append(4)

    assert (await store.list_events())[0].payload == {"items": [1]}


@pytest.mark.asyncio
async def test_events_listed_newest_first(clock):
    store = InMemoryStore()
    first = await store.insert_event(SystemEvent(event_type="a.one", source="s", created_at=clock()))
    clock.advance()
    second = await store.insert_event(SystemEvent(event_type="a.two", source="s", created_at=clock()))

    assert [e.event_id for e in await store.list_events()] == [second.event_id, first.event_id]
    assert [e.event_id for e in await store.list_events(limit=1)] == [second.event_id]
    assert [e.event_id for e in await store.list_events(event_type="a.one")] == [first.event_id]


@pytest.mark.asyncio
async def test_adjacent_edges_directed_and_undirected():
    store = InMemoryStore()
    workspace = uuid4()
    a, b, c = [
        await store.insert_node(KnowledgeNode(workspace_id=workspace, node_type="t", label=label))
        for label in "ABC"
    ]
    ab = await store.insert_edge(
        KnowledgeEdge(source_node_id=a.node_id, target_node_id=b.node_id, relationship_type="r")
    )
    cb = await store.insert_edge(
        KnowledgeEdge(source_node_id=c.node_id, target_node_id=b.node_id, relationship_type="r")
    )

    directed = await store.list_adjacent_edges([b.node_id], directed=True)
    assert directed == []

    undirected = await store.list_adjacent_edges([b.node_id], directed=False)
    assert {e.edge_id for e in undirected} == {ab.edge_id, cb.edge_id}


@pytest.mark.asyncio
async def test_postgres_driver_failures_become_dependency_errors():
    store = PostgresStore("postgresql://localhost/atlas_test")
    store.pool = _RefusingPool()

    with pytest.raises(DependencyError) as exc_info:
        await store.get_agent(uuid4())

    assert exc_info.value.operation == "get_agent"
    assert isinstance(exc_info.value.__cause__, ConnectionRefusedError)

    await store.close()
    assert store.pool is None


@pytest.mark.asyncio
async def test_postgres_initialize_failure(monkeypatch):
    async def refuse(*args, **kwargs):
        raise OSError("no route to host")

    monkeypatch.setattr("atlas_agents.persistence.asyncpg.create_pool", refuse)
    store = PostgresStore("postgresql://unreachable/atlas")

    with pytest.raises(DependencyError):
        await store.initialize()
    assert store.pool is None
