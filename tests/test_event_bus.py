"""Tests for event publication, subscription matching and in-process handlers."""

import asyncio
from datetime import timedelta
from uuid import uuid4

import pytest

from atlas_agents.errors import NotFoundError, ValidationError
from atlas_agents.event_bus import EventBus, matches_filter
from atlas_agents.persistence import InMemoryStore
from atlas_agents.schemas import EVENT_NOTIFICATION, Agent, AgentStatus, event_type_patterns


class FlakyStore(InMemoryStore):
    """Fails notification inserts for one agent."""

    def __init__(self):
        super().__init__()
        self.failing_agent_id = None

    async def insert_task_for_live_agent(self, task):
        if task.agent_id == self.failing_agent_id:
            raise RuntimeError("insert failed")
        return await super().insert_task_for_live_agent(task)


class GatedStore(InMemoryStore):
    """Holds notification inserts until the gate opens."""

    def __init__(self):
        super().__init__()
        self.gate = asyncio.Event()

    async def insert_task_for_live_agent(self, task):
        await self.gate.wait()
        return await super().insert_task_for_live_agent(task)


def test_event_type_patterns():
    assert event_type_patterns("agent.task.done") == ("agent.task.done", "agent.*", "*")
    assert event_type_patterns("deploy") == ("deploy", "deploy.*", "*")
    assert event_type_patterns("*") == ("*", "*.*")


def test_matches_filter():
    assert matches_filter(None, {"region": "east"})
    assert matches_filter({}, {})
    assert matches_filter({"region": "west"}, {"region": "west", "amount": 10})
    assert not matches_filter({"region": "west"}, {"region": "east"})
    assert not matches_filter({"region": "west"}, {"amount": 10})


def test_matches_filter_keeps_booleans_and_numbers_apart():
    assert matches_filter({"urgent": True}, {"urgent": True})
    assert not matches_filter({"urgent": True}, {"urgent": 1})
    assert not matches_filter({"urgent": 1}, {"urgent": True})
    assert not matches_filter({"urgent": False}, {"urgent": 0})
    assert not matches_filter({"flags": {"rush": True}}, {"flags": {"rush": 1}})
    assert not matches_filter({"flags": [False]}, {"flags": [0]})
    assert matches_filter({"amount": 10}, {"amount": 10.0})


@pytest.mark.asyncio
async def test_publish_without_subscribers_returns_persisted_event(bus, clock):
    event = await bus.publish("bid.created", "estimating-service", {"bid": 42})
    await bus.wait_for_dispatch()

    assert event.event_id is not None
    assert event.created_at == clock()
    recent = await bus.get_recent_events()
    assert [e.event_id for e in recent] == [event.event_id]


@pytest.mark.asyncio
async def test_namespace_wildcard_subscription(bus, store, make_agent):
    agent = await make_agent()
    await bus.subscribe(agent.agent_id, "agent.*")

    await bus.publish("agent.started", "orchestrator", {"agent": "a1"})
    await bus.publish("billing.started", "billing")
    await bus.wait_for_dispatch()

    tasks = await store.list_tasks(agent.agent_id)
    assert len(tasks) == 1
    assert tasks[0].type == EVENT_NOTIFICATION
    assert tasks[0].payload["event_type"] == "agent.started"


@pytest.mark.asyncio
async def test_namespace_wildcard_uses_first_segment_only(bus, store, make_agent):
    agent = await make_agent()
    await bus.subscribe(agent.agent_id, "agent.task.*")
    await bus.subscribe(agent.agent_id, "agent.*")

    await bus.publish("agent.task.done", "worker")
    await bus.wait_for_dispatch()

    tasks = await store.list_tasks(agent.agent_id)
    assert len(tasks) == 1


@pytest.mark.asyncio
async def test_filter_requires_equal_values(bus, store, make_agent):
    agent = await make_agent()
    await bus.subscribe(agent.agent_id, "bid.submitted", {"region": "west"})

    await bus.publish("bid.submitted", "bids", {"region": "west", "amount": 10})
    await bus.publish("bid.submitted", "bids", {"region": "east"})
    await bus.wait_for_dispatch()

    tasks = await store.list_tasks(agent.agent_id)
    assert len(tasks) == 1
    assert tasks[0].payload["payload"] == {"region": "west", "amount": 10}


@pytest.mark.asyncio
async def test_notification_task_contents(bus, store, make_agent):
    agent = await make_agent()
    subscription = await bus.subscribe(agent.agent_id, "*")

    event = await bus.publish("risk.flagged", "risk-engine", {"level": "high"})
    queued = await bus.process_event(event)
    await bus.wait_for_dispatch()

    assert queued == 1
    tasks = await store.list_tasks(agent.agent_id)
    # process_event replayed by hand: at-least-once delivery yields a duplicate
    assert len(tasks) == 2
    task = tasks[0]
    assert task.priority == 3
    assert task.status.value == "PENDING"
    assert task.payload == {
        "event_id": str(event.event_id),
        "event_type": "risk.flagged",
        "source": "risk-engine",
        "payload": {"level": "high"},
        "subscription_id": str(subscription.subscription_id),
    }


@pytest.mark.asyncio
async def test_failing_subscriber_does_not_block_others(clock):
    store = FlakyStore()
    bus = EventBus(store, now=clock)
    bad = await store.save_agent(Agent(name="bad", created_at=clock(), updated_at=clock()))
    good = await store.save_agent(Agent(name="good", created_at=clock(), updated_at=clock()))
    store.failing_agent_id = bad.agent_id

    await bus.subscribe(bad.agent_id, "schedule.*")
    await bus.subscribe(good.agent_id, "schedule.*")

    event = await bus.publish("schedule.slipped", "scheduler")
    await bus.wait_for_dispatch()

    assert event.event_type == "schedule.slipped"
    assert len(await store.list_tasks(good.agent_id)) == 1
    assert await store.list_tasks(bad.agent_id) == []


@pytest.mark.asyncio
async def test_terminated_subscribers_are_skipped(bus, store, make_agent, clock):
    retired = await make_agent("retired", status=AgentStatus.TERMINATED)
    await bus.subscribe(retired.agent_id, "*")
    # Subscription row left behind by an agent that no longer exists
    await store.upsert_subscription(uuid4(), "*", None, clock())

    event = await bus.publish("project.closed", "projects")
    assert await bus.process_event(event) == 0
    await bus.wait_for_dispatch()
    assert await store.list_tasks(retired.agent_id) == []


@pytest.mark.asyncio
async def test_resubscribe_reactivates_and_replaces_filter(bus, make_agent, clock):
    agent = await make_agent()
    first = await bus.subscribe(agent.agent_id, "bid.*", {"region": "west"})
    await bus.unsubscribe(first.subscription_id)
    assert await bus.get_subscriptions(agent.agent_id) == []

    clock.advance()
    again = await bus.subscribe(agent.agent_id, "bid.*", {"region": "east"})
    assert again.subscription_id == first.subscription_id
    assert again.active is True
    assert again.filter == {"region": "east"}

    clock.advance()
    newest = await bus.subscribe(agent.agent_id, "*")
    subscriptions = await bus.get_subscriptions(agent.agent_id)
    assert [s.subscription_id for s in subscriptions] == [newest.subscription_id, first.subscription_id]


@pytest.mark.asyncio
async def test_unsubscribe_unknown_subscription(bus):
    with pytest.raises(NotFoundError):
        await bus.unsubscribe(uuid4())


@pytest.mark.asyncio
async def test_publish_and_subscribe_validation(bus, make_agent):
    agent = await make_agent()
    with pytest.raises(ValidationError):
        await bus.publish("", "source")
    with pytest.raises(ValidationError):
        await bus.subscribe(agent.agent_id, "")
    with pytest.raises(ValidationError):
        await bus.subscribe(agent.agent_id, "bid.*", filter=["region"])


@pytest.mark.asyncio
async def test_recent_events_filters_and_limit(bus, clock):
    start = clock()
    for index in range(3):
        await bus.publish("bid.created", "bids", {"index": index})
        clock.advance()
    await bus.publish("bid.won", "bids")
    await bus.wait_for_dispatch()

    recent = await bus.get_recent_events(limit=2)
    assert [e.event_type for e in recent] == ["bid.won", "bid.created"]
    assert recent[1].payload == {"index": 2}

    created = await bus.get_recent_events(event_type="bid.created")
    assert [e.payload["index"] for e in created] == [2, 1, 0]

    since = await bus.get_recent_events(since=start + timedelta(seconds=2))
    assert len(since) == 2

    with pytest.raises(ValidationError):
        await bus.get_recent_events(limit=0)


@pytest.mark.asyncio
async def test_handlers_run_in_tier_order_and_failures_are_isolated(bus):
    calls = []

    def exact(event):
        calls.append("exact")

    def broken(event):
        raise RuntimeError("handler bug")

    def namespace(event):
        calls.append("namespace")

    def everything(event):
        calls.append("global")

    bus.add_handler("*", everything)
    bus.add_handler("agent.*", namespace)
    bus.add_handler("agent.started", broken)
    bus.add_handler("agent.started", exact)

    await bus.publish("agent.started", "orchestrator")
    await bus.wait_for_dispatch()

    assert calls == ["exact", "namespace", "global"]


@pytest.mark.asyncio
async def test_handler_registration_during_emit_applies_next_time(bus):
    calls = []

    def late(event):
        calls.append("late")

    def registering(event):
        calls.append("registering")
        bus.add_handler("deploy.done", late)

    bus.add_handler("deploy.done", registering)
    await bus.publish("deploy.done", "ci")
    assert calls == ["registering"]

    assert bus.remove_handler("deploy.done", registering) is True
    assert bus.remove_handler("deploy.done", registering) is False

    await bus.publish("deploy.done", "ci")
    await bus.wait_for_dispatch()
    assert calls == ["registering", "late"]


@pytest.mark.asyncio
async def test_publish_returns_before_subscribers_are_notified(clock):
    store = GatedStore()
    bus = EventBus(store, now=clock)
    agent = await store.save_agent(Agent(name="watcher", created_at=clock(), updated_at=clock()))
    await bus.subscribe(agent.agent_id, "bid.*")

    event = await bus.publish("bid.created", "bids", {"bid": 7})

    assert [e.event_id for e in await store.list_events()] == [event.event_id]
    assert await store.list_tasks(agent.agent_id) == []

    store.gate.set()
    await bus.wait_for_dispatch()
    tasks = await store.list_tasks(agent.agent_id)
    assert [t.payload["event_id"] for t in tasks] == [str(event.event_id)]


@pytest.mark.asyncio
async def test_handlers_and_publisher_cannot_rewrite_stored_events(bus, store, make_agent):
    agent = await make_agent()
    await bus.subscribe(agent.agent_id, "bid.*", {"region": "west"})
    original = {"region": "west", "lines": {"items": [1]}}

    def tamper(event):
        event.payload["region"] = "east"
        event.payload["lines"]["items"].append(2)

    bus.add_handler("bid.*", tamper)
    event = await bus.publish("bid.created", "bids", original)
    event.payload["lines"]["items"].append(3)
    await bus.wait_for_dispatch()

    stored = await bus.get_recent_events()
    assert stored[0].payload == {"region": "west", "lines": {"items": [1]}}
    tasks = await store.list_tasks(agent.agent_id)
    assert len(tasks) == 1
    assert tasks[0].payload["payload"] == {"region": "west", "lines": {"items": [1]}}

    stored[0].payload["region"] = "north"
    assert (await bus.get_recent_events())[0].payload["region"] == "west"


@pytest.mark.asyncio
async def test_subscriptions_require_an_existing_agent(bus):
    with pytest.raises(NotFoundError):
        await bus.subscribe(uuid4(), "bid.*")
    with pytest.raises(NotFoundError):
        await bus.get_subscriptions(uuid4())
