"""End-to-end tests through the wired runtime."""

import pytest

from atlas_agents import AgentStatus, TaskRequest, create_runtime
from atlas_agents.persistence import InMemoryStore
from atlas_agents.schemas import EVENT_NOTIFICATION


@pytest.mark.asyncio
async def test_runtime_shares_one_store_and_bus(clock):
    store = InMemoryStore()
    async with create_runtime(store=store, now=clock) as runtime:
        assert runtime.event_bus.store is store
        assert runtime.orchestrator.store is store
        assert runtime.knowledge_graph.memory.store is store


@pytest.mark.asyncio
async def test_event_becomes_task_for_module_owner(clock, make_agent, store):
    owner = await make_agent("estimator", module="estimating")

    async with create_runtime(store=store, now=clock) as runtime:
        await runtime.orchestrator.start_agent(owner.agent_id)
        await runtime.event_bus.subscribe(owner.agent_id, "bid.*", {"region": "west"})

        await runtime.event_bus.publish("bid.received", "portal", {"region": "west", "bid": 17})
        await runtime.orchestrator.route_task(TaskRequest(type="estimate", module="estimating", priority=9))
        await runtime.event_bus.wait_for_dispatch()

        tasks = await runtime.orchestrator.get_agent_tasks(owner.agent_id)
        assert [t.type for t in tasks] == ["estimate", EVENT_NOTIFICATION]

        await runtime.knowledge_graph.store_memory(owner.agent_id, "episodic", "last_bid", 17)
        assert await runtime.knowledge_graph.retrieve_memory(owner.agent_id, "last_bid") == 17

        stopped = await runtime.orchestrator.stop_agent(owner.agent_id)
        assert stopped.status == AgentStatus.TERMINATED
        assert await runtime.orchestrator.get_agent_tasks(owner.agent_id, status="PENDING") == []
