"""
DurableStore interface for pluggable storage backends.

This module provides the abstract DurableStore interface and two concrete
implementations for the agent coordination core's tables (agents, tasks,
events, subscriptions, knowledge nodes/edges, agent memory).

Two included implementations:
1. InMemoryStore - Dict-based storage, data lost on exit (testing, prototyping)
2. PostgresStore - Database storage via asyncpg, JSONB document columns (production)

Key responsibilities:
- Every method is one unit of work: it either fully applies or leaves no trace
- Multi-statement mutations (status read-modify-write, terminate + cancel) run in a
  single transaction
- Ordering contracts live here (task queue order, time-descending event log)
- Timestamps are supplied by the caller so one injected clock drives the system

Usage pattern:
    store = InMemoryStore()  # or PostgresStore()
    await store.initialize()
    agent = await store.get_agent(agent_id)
    await store.close()
"""

import asyncio
import itertools
import json
import re
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from collections import Counter
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple
from uuid import UUID

import asyncpg

from .config import Config
from .errors import DependencyError
from .schemas import (
    OPEN_TASK_STATUSES,
    Agent,
    AgentStatus,
    AgentTask,
    EdgeView,
    EventSubscription,
    KnowledgeEdge,
    KnowledgeNode,
    MemoryEntry,
    SystemEvent,
    TaskStatus,
)

EDGE_DIRECTIONS = ("outgoing", "incoming", "both")


class DurableStore(ABC):
    """Abstract base class for the coordination core's durable state.

    DurableStore defines the interface every storage backend implements, so the
    orchestrator, event bus and knowledge graph never depend on a concrete
    database. Methods return fresh model instances; mutating a returned record
    does not change stored state.

    Method categories:
    1. Lifecycle: initialize(), close()
    2. Agents: save_agent(), get_agent(), list_agents(), update_agent_status(),
       record_heartbeat(), get_module_owner()
    3. Tasks: insert_task(), insert_task_for_live_agent(), get_task(),
       list_tasks(), complete_task(), terminate_agent()
    4. Events: insert_event(), list_events()
    5. Subscriptions: upsert_subscription(), deactivate_subscription(),
       list_subscriptions(), find_subscriptions()
    6. Graph: insert_node(), get_node(), get_nodes(), merge_node_properties(),
       soft_delete_node(), list_nodes_by_type(), search_nodes(), insert_edge(),
       delete_edge(), list_edges(), list_adjacent_edges()
    7. Memory: upsert_memory(), get_memory(), delete_expired_memory()

    Design pattern: Strategy pattern - the services depend on this interface,
    not on a particular backend.
    """

    @abstractmethod
    async def initialize(self) -> None:
        """
        Initialize the storage backend (open pools, verify connectivity).

        Raises:
            DependencyError: If the backend cannot be reached
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release connections and other backend resources."""
        pass

    # ------------------------------------------------------------------
    # Agents
    # ------------------------------------------------------------------

    @abstractmethod
    async def save_agent(self, agent: Agent) -> Agent:
        """
        Insert or replace an agent row.

        Agents are registered by the host application; the coordination core
        itself only transitions them.

        Args:
            agent: Agent record to store

        Returns:
            The stored agent
        """
        pass

    @abstractmethod
    async def get_agent(self, agent_id: UUID) -> Optional[Agent]:
        """Return the agent with ``agent_id`` or None."""
        pass

    @abstractmethod
    async def list_agents(
        self,
        *,
        status: Optional[AgentStatus] = None,
        module: Optional[str] = None,
        agent_type: Optional[str] = None,
    ) -> List[Agent]:
        """
        List agents matching every given filter, newest first.

        Args:
            status: Optional lifecycle status filter
            module: Optional module filter
            agent_type: Optional agent type filter
        """
        pass

    @abstractmethod
    async def update_agent_status(
        self, agent_id: UUID, status: AgentStatus, changed_at: datetime
    ) -> Optional[Agent]:
        """
        Set an agent's status and stamp ``state["last_status_change"]``.

        Runs as one transaction (read, modify state document, write).

        Args:
            agent_id: Agent identifier
            status: New status
            changed_at: Timestamp recorded as last_status_change/updated_at

        Returns:
            Updated agent, or None if the agent does not exist
        """
        pass

    @abstractmethod
    async def record_heartbeat(self, agent_id: UUID, at: datetime) -> Optional[Agent]:
        """Stamp ``last_heartbeat``; returns None if the agent does not exist."""
        pass

    @abstractmethod
    async def get_module_owner(self, module: str) -> Optional[Agent]:
        """Return the earliest-created ACTIVE agent bound to ``module``, or None."""
        pass

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    @abstractmethod
    async def insert_task(self, task: AgentTask) -> AgentTask:
        """
        Insert a task and assign its insertion ``sequence``.

        Returns:
            The stored task (with sequence populated)
        """
        pass

    @abstractmethod
    async def get_task(self, task_id: UUID) -> Optional[AgentTask]:
        """Return the task with ``task_id`` or None."""
        pass

    @abstractmethod
    async def list_tasks(
        self, agent_id: UUID, status: Optional[TaskStatus] = None
    ) -> List[AgentTask]:
        """
        List an agent's tasks in scheduling order.

        Order: priority descending, then created_at ascending, then insertion
        sequence ascending (FIFO within a priority band).
        """
        pass

    @abstractmethod
    async def complete_task(
        self, task_id: UUID, result: Any, completed_at: datetime
    ) -> Optional[AgentTask]:
        """
        Mark a task COMPLETED with its result in one transaction.

        Returns:
            Updated task, or None if the task does not exist
        """
        pass

    @abstractmethod
    async def insert_task_for_live_agent(self, task: AgentTask) -> Optional[AgentTask]:
        """
        Insert a task only if its agent exists and is not TERMINATED.

        The liveness check and the insert are one unit of work, so a task can
        never land on an agent terminated concurrently.

        Returns:
            The stored task, or None when the agent is missing or TERMINATED
        """
        pass

    @abstractmethod
    async def terminate_agent(self, agent_id: UUID, at: datetime) -> Optional[Tuple[Agent, int]]:
        """
        Cancel the agent's PENDING/IN_PROGRESS tasks and set it TERMINATED.

        Both changes run in one transaction and stamp
        ``state["last_status_change"]``.

        Returns:
            (terminated agent, number of cancelled tasks), or None if the agent
            does not exist
        """
        pass

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    @abstractmethod
    async def insert_event(self, event: SystemEvent) -> SystemEvent:
        """Append an event to the log; returns it once committed."""
        pass

    @abstractmethod
    async def list_events(
        self,
        event_type: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[SystemEvent]:
        """List events newest first, optionally filtered by exact type and start time."""
        pass

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    @abstractmethod
    async def upsert_subscription(
        self,
        agent_id: UUID,
        event_type: str,
        filter: Optional[Dict[str, Any]],
        at: datetime,
    ) -> EventSubscription:
        """
        Create a subscription or reactivate the existing ``(agent_id, event_type)`` row.

        On conflict the filter is replaced and ``active`` set to True; the
        subscription id and created_at are kept.
        """
        pass

    @abstractmethod
    async def deactivate_subscription(self, subscription_id: UUID, at: datetime) -> bool:
        """Set ``active=False``; returns False if the subscription does not exist."""
        pass

    @abstractmethod
    async def list_subscriptions(self, agent_id: UUID) -> List[EventSubscription]:
        """List an agent's active subscriptions, newest first."""
        pass

    @abstractmethod
    async def find_subscriptions(self, patterns: Sequence[str]) -> List[EventSubscription]:
        """Return active subscriptions whose event_type is one of ``patterns``."""
        pass

    # ------------------------------------------------------------------
    # Knowledge graph
    # ------------------------------------------------------------------

    @abstractmethod
    async def insert_node(self, node: KnowledgeNode) -> KnowledgeNode:
        """Insert a knowledge node."""
        pass

    @abstractmethod
    async def get_node(self, node_id: UUID) -> Optional[KnowledgeNode]:
        """Return a live (not soft-deleted) node or None."""
        pass

    @abstractmethod
    async def get_nodes(self, node_ids: Iterable[UUID]) -> Dict[UUID, KnowledgeNode]:
        """Return live nodes among ``node_ids`` keyed by id (missing ids omitted)."""
        pass

    @abstractmethod
    async def merge_node_properties(
        self, node_id: UUID, properties: Dict[str, Any], at: datetime
    ) -> Optional[KnowledgeNode]:
        """Shallow-merge ``properties`` into a live node; None if not found."""
        pass

    @abstractmethod
    async def soft_delete_node(self, node_id: UUID, at: datetime) -> bool:
        """Stamp ``deleted_at`` on a live node; False if not found or already deleted."""
        pass

    @abstractmethod
    async def list_nodes_by_type(self, workspace_id: UUID, node_type: str) -> List[KnowledgeNode]:
        """List live nodes of a type in a workspace, newest first."""
        pass

    @abstractmethod
    async def search_nodes(self, workspace_id: UUID, query: str, limit: int) -> List[KnowledgeNode]:
        """
        Search live nodes of a workspace by label and properties.

        A node matches when its label contains ``query`` (case-insensitive) or
        when its label+properties text matches the query terms. Results are
        ordered by relevance, then recency, and capped at ``limit``.
        """
        pass

    @abstractmethod
    async def insert_edge(self, edge: KnowledgeEdge) -> KnowledgeEdge:
        """Insert an edge (endpoint validation is the caller's job)."""
        pass

    @abstractmethod
    async def delete_edge(self, edge_id: UUID) -> bool:
        """Hard-delete an edge; False if it does not exist."""
        pass

    @abstractmethod
    async def list_edges(self, node_id: UUID, direction: str = "both") -> List[EdgeView]:
        """
        List edges touching a node joined with endpoint labels/types.

        Args:
            node_id: Node identifier
            direction: "outgoing", "incoming" or "both"

        Returns:
            Edges ordered by weight descending, then created_at descending
        """
        pass

    @abstractmethod
    async def list_adjacent_edges(
        self, node_ids: Iterable[UUID], *, directed: bool
    ) -> List[KnowledgeEdge]:
        """
        Return edges leaving (directed) or touching (undirected) any of ``node_ids``.

        Used by graph traversal to expand a whole BFS frontier per query.
        Ordered by created_at ascending so expansion order is stable.
        """
        pass

    # ------------------------------------------------------------------
    # Agent memory
    # ------------------------------------------------------------------

    @abstractmethod
    async def upsert_memory(self, entry: MemoryEntry) -> MemoryEntry:
        """
        Insert or update the ``(agent_id, key)`` memory row.

        On conflict value, memory_type, expires_at and updated_at are replaced;
        memory_id and created_at are kept.
        """
        pass

    @abstractmethod
    async def get_memory(self, agent_id: UUID, key: str) -> Optional[MemoryEntry]:
        """Return the memory row regardless of expiry (callers enforce TTL)."""
        pass

    @abstractmethod
    async def delete_expired_memory(self, now: datetime) -> int:
        """Delete rows with non-null ``expires_at <= now``; returns the count."""
        pass


def _search_terms(text: str) -> List[str]:
    return re.findall(r"\w+", text.lower())


def _with_status(agent: Agent, status: AgentStatus, changed_at: datetime) -> Agent:
    state = dict(agent.state)
    state["last_status_change"] = changed_at.isoformat()
    return agent.model_copy(
        update={"status": status, "state": state, "updated_at": changed_at},
        deep=True,
    )


class InMemoryStore(DurableStore):
    """In-memory store using Python dicts (no database).

    Storage structure:
    - agents: Dict[UUID, Agent]
    - tasks: Dict[UUID, AgentTask]
    - events: List[SystemEvent] (append-only, insertion order)
    - subscriptions: Dict[UUID, EventSubscription]
    - nodes / edges: Dict[UUID, KnowledgeNode] / Dict[UUID, KnowledgeEdge]
    - memories: Dict[(agent_id, key), MemoryEntry]

    Mutations are serialized by an asyncio.Lock. Each mutation builds the new
    record as a copy and swaps it in as its last step, so a failure part-way
    leaves the previous row untouched (the in-memory equivalent of a rollback).

    NOT suitable for multi-process hosts or persistence across restarts.
    """

    def __init__(self):
        """Initialize in-memory storage."""
        self.agents: Dict[UUID, Agent] = {}
        self.tasks: Dict[UUID, AgentTask] = {}
        self.events: List[SystemEvent] = []
        self.subscriptions: Dict[UUID, EventSubscription] = {}
        self.nodes: Dict[UUID, KnowledgeNode] = {}
        self.edges: Dict[UUID, KnowledgeEdge] = {}
        self.memories: Dict[tuple[UUID, str], MemoryEntry] = {}
        self._task_sequence = itertools.count(1)
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        """No-op for in-memory implementation."""
        pass

    async def close(self) -> None:
        """
        No-op: data is kept after close so callers can inspect it post-run.
        """
        pass

    # Agents ------------------------------------------------------------

    async def save_agent(self, agent: Agent) -> Agent:
        async with self._lock:
            self.agents[agent.agent_id] = agent.model_copy(deep=True)
        return agent.model_copy(deep=True)

    async def get_agent(self, agent_id: UUID) -> Optional[Agent]:
        agent = self.agents.get(agent_id)
        return agent.model_copy(deep=True) if agent else None

    async def list_agents(
        self,
        *,
        status: Optional[AgentStatus] = None,
        module: Optional[str] = None,
        agent_type: Optional[str] = None,
    ) -> List[Agent]:
        matches = [
            agent
            for agent in reversed(list(self.agents.values()))
            if (status is None or agent.status == status)
            and (module is None or agent.module == module)
            and (agent_type is None or agent.type == agent_type)
        ]
        matches.sort(key=lambda a: a.created_at, reverse=True)
        return [agent.model_copy(deep=True) for agent in matches]

    async def update_agent_status(
        self, agent_id: UUID, status: AgentStatus, changed_at: datetime
    ) -> Optional[Agent]:
        async with self._lock:
            current = self.agents.get(agent_id)
            if current is None:
                return None
            updated = _with_status(current, status, changed_at)
            self.agents[agent_id] = updated
        return updated.model_copy(deep=True)

    async def record_heartbeat(self, agent_id: UUID, at: datetime) -> Optional[Agent]:
        async with self._lock:
            current = self.agents.get(agent_id)
            if current is None:
                return None
            updated = current.model_copy(update={"last_heartbeat": at, "updated_at": at}, deep=True)
            self.agents[agent_id] = updated
        return updated.model_copy(deep=True)

    async def get_module_owner(self, module: str) -> Optional[Agent]:
        candidates = [
            agent
            for agent in self.agents.values()
            if agent.module == module and agent.status == AgentStatus.ACTIVE
        ]
        if not candidates:
            return None
        # min() keeps the first of equal keys, so insertion order breaks timestamp ties
        owner = min(candidates, key=lambda a: a.created_at)
        return owner.model_copy(deep=True)

    # Tasks -------------------------------------------------------------

    async def insert_task(self, task: AgentTask) -> AgentTask:
        async with self._lock:
            stored = task.model_copy(update={"sequence": next(self._task_sequence)}, deep=True)
            self.tasks[stored.task_id] = stored
        return stored.model_copy(deep=True)

    async def get_task(self, task_id: UUID) -> Optional[AgentTask]:
        task = self.tasks.get(task_id)
        return task.model_copy(deep=True) if task else None

    async def list_tasks(
        self, agent_id: UUID, status: Optional[TaskStatus] = None
    ) -> List[AgentTask]:
        tasks = [
            task
            for task in self.tasks.values()
            if task.agent_id == agent_id and (status is None or task.status == status)
        ]
        tasks.sort(key=lambda t: (-t.priority, t.created_at, t.sequence))
        return [task.model_copy(deep=True) for task in tasks]

    async def complete_task(
        self, task_id: UUID, result: Any, completed_at: datetime
    ) -> Optional[AgentTask]:
        async with self._lock:
            current = self.tasks.get(task_id)
            if current is None:
                return None
            updated = current.model_copy(
                update={
                    "status": TaskStatus.COMPLETED,
                    "result": result,
                    "completed_at": completed_at,
                    "updated_at": completed_at,
                },
                deep=True,
            )
            self.tasks[task_id] = updated
        return updated.model_copy(deep=True)

    async def insert_task_for_live_agent(self, task: AgentTask) -> Optional[AgentTask]:
        async with self._lock:
            agent = self.agents.get(task.agent_id)
            if agent is None or agent.status == AgentStatus.TERMINATED:
                return None
            stored = task.model_copy(update={"sequence": next(self._task_sequence)}, deep=True)
            self.tasks[stored.task_id] = stored
        return stored.model_copy(deep=True)

    async def terminate_agent(self, agent_id: UUID, at: datetime) -> Optional[Tuple[Agent, int]]:
        async with self._lock:
            current = self.agents.get(agent_id)
            if current is None:
                return None
            cancelled = {
                task_id: task.model_copy(update={"status": TaskStatus.CANCELLED, "updated_at": at})
                for task_id, task in self.tasks.items()
                if task.agent_id == agent_id and task.status in OPEN_TASK_STATUSES
            }
            terminated = _with_status(current, AgentStatus.TERMINATED, at)
            self.tasks.update(cancelled)
            self.agents[agent_id] = terminated
        return terminated.model_copy(deep=True), len(cancelled)

    # Events ------------------------------------------------------------

    async def insert_event(self, event: SystemEvent) -> SystemEvent:
        stored = event.model_copy(deep=True)
        async with self._lock:
            self.events.append(stored)
        return stored.model_copy(deep=True)

    async def list_events(
        self,
        event_type: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[SystemEvent]:
        # Walk newest-inserted first so equal timestamps still come out newest first
        matches = [
            event
            for event in reversed(self.events)
            if (event_type is None or event.event_type == event_type)
            and (since is None or event.created_at >= since)
        ]
        matches.sort(key=lambda e: e.created_at, reverse=True)
        return [event.model_copy(deep=True) for event in matches[:limit]]

    # Subscriptions -----------------------------------------------------

    async def upsert_subscription(
        self,
        agent_id: UUID,
        event_type: str,
        filter: Optional[Dict[str, Any]],
        at: datetime,
    ) -> EventSubscription:
        async with self._lock:
            existing = next(
                (
                    sub
                    for sub in self.subscriptions.values()
                    if sub.agent_id == agent_id and sub.event_type == event_type
                ),
                None,
            )
            if existing is None:
                stored = EventSubscription(
                    agent_id=agent_id,
                    event_type=event_type,
                    filter=dict(filter) if filter is not None else None,
                    created_at=at,
                    updated_at=at,
                )
            else:
                stored = existing.model_copy(
                    update={
                        "filter": dict(filter) if filter is not None else None,
                        "active": True,
                        "updated_at": at,
                    },
                    deep=True,
                )
            self.subscriptions[stored.subscription_id] = stored
        return stored.model_copy(deep=True)

    async def deactivate_subscription(self, subscription_id: UUID, at: datetime) -> bool:
        async with self._lock:
            current = self.subscriptions.get(subscription_id)
            if current is None:
                return False
            self.subscriptions[subscription_id] = current.model_copy(
                update={"active": False, "updated_at": at}
            )
        return True

    async def list_subscriptions(self, agent_id: UUID) -> List[EventSubscription]:
        matches = [
            sub
            for sub in reversed(list(self.subscriptions.values()))
            if sub.agent_id == agent_id and sub.active
        ]
        matches.sort(key=lambda s: s.created_at, reverse=True)
        return [sub.model_copy(deep=True) for sub in matches]

    async def find_subscriptions(self, patterns: Sequence[str]) -> List[EventSubscription]:
        wanted = set(patterns)
        return [
            sub.model_copy(deep=True)
            for sub in self.subscriptions.values()
            if sub.active and sub.event_type in wanted
        ]

    # Knowledge graph ---------------------------------------------------

    async def insert_node(self, node: KnowledgeNode) -> KnowledgeNode:
        async with self._lock:
            self.nodes[node.node_id] = node.model_copy(deep=True)
        return node.model_copy(deep=True)

    async def get_node(self, node_id: UUID) -> Optional[KnowledgeNode]:
        node = self.nodes.get(node_id)
        if node is None or node.is_deleted:
            return None
        return node.model_copy(deep=True)

    async def get_nodes(self, node_ids: Iterable[UUID]) -> Dict[UUID, KnowledgeNode]:
        found: Dict[UUID, KnowledgeNode] = {}
        for node_id in node_ids:
            node = self.nodes.get(node_id)
            if node is not None and not node.is_deleted:
                found[node_id] = node.model_copy(deep=True)
        return found

    async def merge_node_properties(
        self, node_id: UUID, properties: Dict[str, Any], at: datetime
    ) -> Optional[KnowledgeNode]:
        async with self._lock:
            current = self.nodes.get(node_id)
            if current is None or current.is_deleted:
                return None
            merged = {**current.properties, **properties}
            updated = current.model_copy(update={"properties": merged, "updated_at": at}, deep=True)
            self.nodes[node_id] = updated
        return updated.model_copy(deep=True)

    async def soft_delete_node(self, node_id: UUID, at: datetime) -> bool:
        async with self._lock:
            current = self.nodes.get(node_id)
            if current is None or current.is_deleted:
                return False
            self.nodes[node_id] = current.model_copy(update={"deleted_at": at})
        return True

    async def list_nodes_by_type(self, workspace_id: UUID, node_type: str) -> List[KnowledgeNode]:
        matches = [
            node
            for node in reversed(list(self.nodes.values()))
            if node.workspace_id == workspace_id
            and node.node_type == node_type
            and not node.is_deleted
        ]
        matches.sort(key=lambda n: n.created_at, reverse=True)
        return [node.model_copy(deep=True) for node in matches]

    async def search_nodes(self, workspace_id: UUID, query: str, limit: int) -> List[KnowledgeNode]:
        needle = query.lower()
        terms = _search_terms(query)
        scored: List[tuple[int, KnowledgeNode]] = []

        for node in reversed(list(self.nodes.values())):
            if node.workspace_id != workspace_id or node.is_deleted:
                continue
            document = f"{node.label} {json.dumps(node.properties, default=str)}"
            counts = Counter(_search_terms(document))
            # Full-text predicate: every query term appears in label+properties
            text_match = bool(terms) and all(counts[term] for term in terms)
            if not (needle in node.label.lower() or text_match):
                continue
            rank = sum(counts[term] for term in terms) if text_match else 0
            scored.append((rank, node))

        # Two stable passes: recency first, then relevance as the primary key
        scored.sort(key=lambda item: item[1].created_at, reverse=True)
        scored.sort(key=lambda item: item[0], reverse=True)
        return [node.model_copy(deep=True) for _, node in scored[:limit]]

    async def insert_edge(self, edge: KnowledgeEdge) -> KnowledgeEdge:
        async with self._lock:
            self.edges[edge.edge_id] = edge.model_copy(deep=True)
        return edge.model_copy(deep=True)

    async def delete_edge(self, edge_id: UUID) -> bool:
        async with self._lock:
            return self.edges.pop(edge_id, None) is not None

    async def list_edges(self, node_id: UUID, direction: str = "both") -> List[EdgeView]:
        views: List[EdgeView] = []
        for edge in reversed(list(self.edges.values())):
            outgoing = edge.source_node_id == node_id
            incoming = edge.target_node_id == node_id
            if direction == "outgoing" and not outgoing:
                continue
            if direction == "incoming" and not incoming:
                continue
            if direction == "both" and not (outgoing or incoming):
                continue
            source = self.nodes.get(edge.source_node_id)
            target = self.nodes.get(edge.target_node_id)
            if source is None or target is None:
                continue
            views.append(
                EdgeView(
                    **edge.model_dump(),
                    source_label=source.label,
                    source_type=source.node_type,
                    target_label=target.label,
                    target_type=target.node_type,
                )
            )
        views.sort(key=lambda e: e.created_at, reverse=True)
        views.sort(key=lambda e: e.weight, reverse=True)
        return views

    async def list_adjacent_edges(
        self, node_ids: Iterable[UUID], *, directed: bool
    ) -> List[KnowledgeEdge]:
        frontier = set(node_ids)
        edges = [
            edge
            for edge in self.edges.values()
            if edge.source_node_id in frontier
            or (not directed and edge.target_node_id in frontier)
        ]
        edges.sort(key=lambda e: e.created_at)
        return [edge.model_copy(deep=True) for edge in edges]

    # Agent memory ------------------------------------------------------

    async def upsert_memory(self, entry: MemoryEntry) -> MemoryEntry:
        key = (entry.agent_id, entry.key)
        async with self._lock:
            existing = self.memories.get(key)
            if existing is None:
                stored = entry.model_copy(deep=True)
            else:
                stored = existing.model_copy(
                    update={
                        "value": entry.value,
                        "memory_type": entry.memory_type,
                        "expires_at": entry.expires_at,
                        "updated_at": entry.updated_at,
                    },
                    deep=True,
                )
            self.memories[key] = stored
        return stored.model_copy(deep=True)

    async def get_memory(self, agent_id: UUID, key: str) -> Optional[MemoryEntry]:
        entry = self.memories.get((agent_id, key))
        return entry.model_copy(deep=True) if entry else None

    async def delete_expired_memory(self, now: datetime) -> int:
        async with self._lock:
            expired = [key for key, entry in self.memories.items() if entry.is_expired(now)]
            for key in expired:
                del self.memories[key]
        return len(expired)


async def _init_connection(conn) -> None:
    # Decode json/jsonb columns to Python objects and encode dicts on the way in
    for type_name in ("json", "jsonb"):
        await conn.set_type_codec(
            type_name, encoder=json.dumps, decoder=json.loads, schema="pg_catalog"
        )


class PostgresStore(DurableStore):
    """PostgreSQL-backed store for production hosts.

    Uses an asyncpg connection pool. Document columns (agents.state,
    agent_tasks.payload/result, system_events.payload,
    event_subscriptions.filter, knowledge_nodes.properties,
    knowledge_edges.properties, agent_memory.value) are JSONB.

    Expected tables (DDL is managed by the host's migrations):
    - agents(agent_id, name, type, module, status, state, last_heartbeat,
      created_at, updated_at)
    - agent_tasks(task_id, agent_id, type, payload, priority, status, result,
      sequence BIGSERIAL, created_at, updated_at, completed_at)
    - system_events(event_id, event_type, source, payload, created_at)
    - event_subscriptions(subscription_id, agent_id, event_type, filter,
      active, created_at, updated_at) UNIQUE (agent_id, event_type)
    - knowledge_nodes(node_id, workspace_id, node_type, label, properties,
      created_at, updated_at, deleted_at)
    - knowledge_edges(edge_id, source_node_id, target_node_id,
      relationship_type, properties, weight, created_at)
    - agent_memory(memory_id, agent_id, memory_type, key, value, expires_at,
      created_at, updated_at) UNIQUE (agent_id, key)

    Driver failures (connection loss, constraint violations, timeouts) are
    raised as DependencyError with the original exception chained.
    """

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url or Config.DATABASE_URL
        self.pool: Optional[asyncpg.Pool] = None

    async def initialize(self) -> None:
        if self.pool is None:
            try:
                self.pool = await asyncpg.create_pool(
                    self.database_url,
                    min_size=Config.POSTGRES_POOL_MIN_SIZE,
                    max_size=Config.POSTGRES_POOL_MAX_SIZE,
                    init=_init_connection,
                )
            except (asyncpg.PostgresError, OSError, asyncio.TimeoutError) as exc:
                raise DependencyError("initialize", exc) from exc

    async def close(self) -> None:
        if self.pool is not None:
            await self.pool.close()
            self.pool = None

    @asynccontextmanager
    async def _connection(self, operation: str):
        assert self.pool is not None, "Persistence not initialized"
        try:
            async with self.pool.acquire() as conn:
                yield conn
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError) as exc:
            raise DependencyError(operation, exc) from exc

    # Agents ------------------------------------------------------------

    async def save_agent(self, agent: Agent) -> Agent:
        query = """
            INSERT INTO agents (agent_id, name, type, module, status, state, last_heartbeat, created_at, updated_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            ON CONFLICT (agent_id) DO UPDATE
            SET name=$2, type=$3, module=$4, status=$5, state=$6, last_heartbeat=$7, updated_at=$9
            RETURNING *
        """
        async with self._connection("save_agent") as conn:
            row = await conn.fetchrow(
                query,
                agent.agent_id,
                agent.name,
                agent.type,
                agent.module,
                agent.status.value,
                agent.state,
                agent.last_heartbeat,
                agent.created_at,
                agent.updated_at,
            )
        return Agent.model_validate(dict(row))

    async def get_agent(self, agent_id: UUID) -> Optional[Agent]:
        async with self._connection("get_agent") as conn:
            row = await conn.fetchrow("SELECT * FROM agents WHERE agent_id = $1", agent_id)
        return Agent.model_validate(dict(row)) if row else None

    async def list_agents(
        self,
        *,
        status: Optional[AgentStatus] = None,
        module: Optional[str] = None,
        agent_type: Optional[str] = None,
    ) -> List[Agent]:
        clauses: List[str] = []
        params: List[Any] = []
        for column, value in (
            ("status", status.value if status else None),
            ("module", module),
            ("type", agent_type),
        ):
            if value is not None:
                params.append(value)
                clauses.append(f"{column} = ${len(params)}")

        query = "SELECT * FROM agents"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at DESC"

        async with self._connection("list_agents") as conn:
            rows = await conn.fetch(query, *params)
        return [Agent.model_validate(dict(row)) for row in rows]

    async def update_agent_status(
        self, agent_id: UUID, status: AgentStatus, changed_at: datetime
    ) -> Optional[Agent]:
        async with self._connection("update_agent_status") as conn:
            async with conn.transaction():
                current = await conn.fetchrow(
                    "SELECT state FROM agents WHERE agent_id = $1 FOR UPDATE", agent_id
                )
                if current is None:
                    return None
                state = dict(current["state"] or {})
                state["last_status_change"] = changed_at.isoformat()
                row = await conn.fetchrow(
                    """
                    UPDATE agents
                    SET status = $1, state = $2, updated_at = $3
                    WHERE agent_id = $4
                    RETURNING *
                    """,
                    status.value,
                    state,
                    changed_at,
                    agent_id,
                )
        return Agent.model_validate(dict(row))

    async def record_heartbeat(self, agent_id: UUID, at: datetime) -> Optional[Agent]:
        async with self._connection("record_heartbeat") as conn:
            row = await conn.fetchrow(
                """
                UPDATE agents
                SET last_heartbeat = $1, updated_at = $1
                WHERE agent_id = $2
                RETURNING *
                """,
                at,
                agent_id,
            )
        return Agent.model_validate(dict(row)) if row else None

    async def get_module_owner(self, module: str) -> Optional[Agent]:
        query = """
            SELECT * FROM agents
            WHERE module = $1 AND status = 'ACTIVE'
            ORDER BY created_at ASC
            LIMIT 1
        """
        async with self._connection("get_module_owner") as conn:
            row = await conn.fetchrow(query, module)
        return Agent.model_validate(dict(row)) if row else None

    # Tasks -------------------------------------------------------------

    async def insert_task(self, task: AgentTask) -> AgentTask:
        query = """
            INSERT INTO agent_tasks (task_id, agent_id, type, payload, priority, status, created_at, updated_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
            RETURNING *
        """
        async with self._connection("insert_task") as conn:
            row = await conn.fetchrow(
                query,
                task.task_id,
                task.agent_id,
                task.type,
                task.payload,
                task.priority,
                task.status.value,
                task.created_at,
                task.updated_at,
            )
        return AgentTask.model_validate(dict(row))

    async def get_task(self, task_id: UUID) -> Optional[AgentTask]:
        async with self._connection("get_task") as conn:
            row = await conn.fetchrow("SELECT * FROM agent_tasks WHERE task_id = $1", task_id)
        return AgentTask.model_validate(dict(row)) if row else None

    async def list_tasks(
        self, agent_id: UUID, status: Optional[TaskStatus] = None
    ) -> List[AgentTask]:
        query = "SELECT * FROM agent_tasks WHERE agent_id = $1"
        params: List[Any] = [agent_id]
        if status is not None:
            query += " AND status = $2"
            params.append(status.value)
        query += " ORDER BY priority DESC, created_at ASC, sequence ASC"

        async with self._connection("list_tasks") as conn:
            rows = await conn.fetch(query, *params)
        return [AgentTask.model_validate(dict(row)) for row in rows]

    async def complete_task(
        self, task_id: UUID, result: Any, completed_at: datetime
    ) -> Optional[AgentTask]:
        query = """
            UPDATE agent_tasks
            SET status = 'COMPLETED', result = $1, completed_at = $2, updated_at = $2
            WHERE task_id = $3
            RETURNING *
        """
        async with self._connection("complete_task") as conn:
            async with conn.transaction():
                row = await conn.fetchrow(query, result, completed_at, task_id)
        return AgentTask.model_validate(dict(row)) if row else None

    async def insert_task_for_live_agent(self, task: AgentTask) -> Optional[AgentTask]:
        query = """
            INSERT INTO agent_tasks (task_id, agent_id, type, payload, priority, status, created_at, updated_at)
            SELECT $1, $2, $3, $4, $5, $6, $7, $8
            FROM agents
            WHERE agent_id = $2 AND status <> 'TERMINATED'
            FOR SHARE
            RETURNING *
        """
        async with self._connection("insert_task_for_live_agent") as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    query,
                    task.task_id,
                    task.agent_id,
                    task.type,
                    task.payload,
                    task.priority,
                    task.status.value,
                    task.created_at,
                    task.updated_at,
                )
        return AgentTask.model_validate(dict(row)) if row else None

    async def terminate_agent(self, agent_id: UUID, at: datetime) -> Optional[Tuple[Agent, int]]:
        open_statuses = [status.value for status in OPEN_TASK_STATUSES]
        async with self._connection("terminate_agent") as conn:
            async with conn.transaction():
                current = await conn.fetchrow(
                    "SELECT state FROM agents WHERE agent_id = $1 FOR UPDATE", agent_id
                )
                if current is None:
                    return None
                cancelled = await conn.fetch(
                    """
                    UPDATE agent_tasks
                    SET status = 'CANCELLED', updated_at = $2
                    WHERE agent_id = $1 AND status = ANY($3::text[])
                    RETURNING task_id
                    """,
                    agent_id,
                    at,
                    open_statuses,
                )
                state = dict(current["state"] or {})
                state["last_status_change"] = at.isoformat()
                row = await conn.fetchrow(
                    """
                    UPDATE agents
                    SET status = 'TERMINATED', state = $2, updated_at = $3
                    WHERE agent_id = $1
                    RETURNING *
                    """,
                    agent_id,
                    state,
                    at,
                )
        return Agent.model_validate(dict(row)), len(cancelled)

    # Events ------------------------------------------------------------

    async def insert_event(self, event: SystemEvent) -> SystemEvent:
        query = """
            INSERT INTO system_events (event_id, event_type, source, payload, created_at)
            VALUES ($1, $2, $3, $4, $5)
            RETURNING *
        """
        async with self._connection("insert_event") as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    query,
                    event.event_id,
                    event.event_type,
                    event.source,
                    event.payload,
                    event.created_at,
                )
        return SystemEvent.model_validate(dict(row))

    async def list_events(
        self,
        event_type: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[SystemEvent]:
        clauses: List[str] = []
        params: List[Any] = []
        if event_type is not None:
            params.append(event_type)
            clauses.append(f"event_type = ${len(params)}")
        if since is not None:
            params.append(since)
            clauses.append(f"created_at >= ${len(params)}")

        query = "SELECT * FROM system_events"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        params.append(limit)
        query += f" ORDER BY created_at DESC LIMIT ${len(params)}"

        async with self._connection("list_events") as conn:
            rows = await conn.fetch(query, *params)
        return [SystemEvent.model_validate(dict(row)) for row in rows]

    # Subscriptions -----------------------------------------------------

    async def upsert_subscription(
        self,
        agent_id: UUID,
        event_type: str,
        filter: Optional[Dict[str, Any]],
        at: datetime,
    ) -> EventSubscription:
        query = """
            INSERT INTO event_subscriptions (agent_id, event_type, filter, active, created_at, updated_at)
            VALUES ($1, $2, $3, true, $4, $4)
            ON CONFLICT (agent_id, event_type)
            DO UPDATE SET filter = EXCLUDED.filter, active = true, updated_at = $4
            RETURNING *
        """
        async with self._connection("upsert_subscription") as conn:
            row = await conn.fetchrow(query, agent_id, event_type, filter, at)
        return EventSubscription.model_validate(dict(row))

    async def deactivate_subscription(self, subscription_id: UUID, at: datetime) -> bool:
        query = """
            UPDATE event_subscriptions
            SET active = false, updated_at = $2
            WHERE subscription_id = $1
            RETURNING subscription_id
        """
        async with self._connection("deactivate_subscription") as conn:
            row = await conn.fetchrow(query, subscription_id, at)
        return row is not None

    async def list_subscriptions(self, agent_id: UUID) -> List[EventSubscription]:
        query = """
            SELECT * FROM event_subscriptions
            WHERE agent_id = $1 AND active = true
            ORDER BY created_at DESC
        """
        async with self._connection("list_subscriptions") as conn:
            rows = await conn.fetch(query, agent_id)
        return [EventSubscription.model_validate(dict(row)) for row in rows]

    async def find_subscriptions(self, patterns: Sequence[str]) -> List[EventSubscription]:
        query = """
            SELECT * FROM event_subscriptions
            WHERE active = true AND event_type = ANY($1::text[])
            ORDER BY created_at ASC
        """
        async with self._connection("find_subscriptions") as conn:
            rows = await conn.fetch(query, list(patterns))
        return [EventSubscription.model_validate(dict(row)) for row in rows]

    # Knowledge graph ---------------------------------------------------

    async def insert_node(self, node: KnowledgeNode) -> KnowledgeNode:
        query = """
            INSERT INTO knowledge_nodes (node_id, workspace_id, node_type, label, properties, created_at, updated_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            RETURNING *
        """
        async with self._connection("insert_node") as conn:
            row = await conn.fetchrow(
                query,
                node.node_id,
                node.workspace_id,
                node.node_type,
                node.label,
                node.properties,
                node.created_at,
                node.updated_at,
            )
        return KnowledgeNode.model_validate(dict(row))

    async def get_node(self, node_id: UUID) -> Optional[KnowledgeNode]:
        query = "SELECT * FROM knowledge_nodes WHERE node_id = $1 AND deleted_at IS NULL"
        async with self._connection("get_node") as conn:
            row = await conn.fetchrow(query, node_id)
        return KnowledgeNode.model_validate(dict(row)) if row else None

    async def get_nodes(self, node_ids: Iterable[UUID]) -> Dict[UUID, KnowledgeNode]:
        ids = list(node_ids)
        if not ids:
            return {}
        query = "SELECT * FROM knowledge_nodes WHERE node_id = ANY($1::uuid[]) AND deleted_at IS NULL"
        async with self._connection("get_nodes") as conn:
            rows = await conn.fetch(query, ids)
        nodes = [KnowledgeNode.model_validate(dict(row)) for row in rows]
        return {node.node_id: node for node in nodes}

    async def merge_node_properties(
        self, node_id: UUID, properties: Dict[str, Any], at: datetime
    ) -> Optional[KnowledgeNode]:
        query = """
            UPDATE knowledge_nodes
            SET properties = properties || $1::jsonb, updated_at = $2
            WHERE node_id = $3 AND deleted_at IS NULL
            RETURNING *
        """
        async with self._connection("merge_node_properties") as conn:
            row = await conn.fetchrow(query, properties, at, node_id)
        return KnowledgeNode.model_validate(dict(row)) if row else None

    async def soft_delete_node(self, node_id: UUID, at: datetime) -> bool:
        query = """
            UPDATE knowledge_nodes
            SET deleted_at = $2
            WHERE node_id = $1 AND deleted_at IS NULL
            RETURNING node_id
        """
        async with self._connection("soft_delete_node") as conn:
            row = await conn.fetchrow(query, node_id, at)
        return row is not None

    async def list_nodes_by_type(self, workspace_id: UUID, node_type: str) -> List[KnowledgeNode]:
        query = """
            SELECT * FROM knowledge_nodes
            WHERE workspace_id = $1 AND node_type = $2 AND deleted_at IS NULL
            ORDER BY created_at DESC
        """
        async with self._connection("list_nodes_by_type") as conn:
            rows = await conn.fetch(query, workspace_id, node_type)
        return [KnowledgeNode.model_validate(dict(row)) for row in rows]

    async def search_nodes(self, workspace_id: UUID, query: str, limit: int) -> List[KnowledgeNode]:
        sql = """
            SELECT *,
                   ts_rank(to_tsvector('english', label || ' ' || COALESCE(properties::text, '')),
                           plainto_tsquery('english', $2)) AS rank
            FROM knowledge_nodes
            WHERE workspace_id = $1
              AND deleted_at IS NULL
              AND (
                label ILIKE $3
                OR to_tsvector('english', label || ' ' || COALESCE(properties::text, ''))
                   @@ plainto_tsquery('english', $2)
              )
            ORDER BY rank DESC, created_at DESC
            LIMIT $4
        """
        async with self._connection("search_nodes") as conn:
            rows = await conn.fetch(sql, workspace_id, query, f"%{query}%", limit)
        results = []
        for row in rows:
            record = dict(row)
            record.pop("rank", None)
            results.append(KnowledgeNode.model_validate(record))
        return results

    async def insert_edge(self, edge: KnowledgeEdge) -> KnowledgeEdge:
        query = """
            INSERT INTO knowledge_edges (edge_id, source_node_id, target_node_id, relationship_type, properties, weight, created_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            RETURNING *
        """
        async with self._connection("insert_edge") as conn:
            row = await conn.fetchrow(
                query,
                edge.edge_id,
                edge.source_node_id,
                edge.target_node_id,
                edge.relationship_type,
                edge.properties,
                edge.weight,
                edge.created_at,
            )
        return KnowledgeEdge.model_validate(dict(row))

    async def delete_edge(self, edge_id: UUID) -> bool:
        async with self._connection("delete_edge") as conn:
            row = await conn.fetchrow(
                "DELETE FROM knowledge_edges WHERE edge_id = $1 RETURNING edge_id", edge_id
            )
        return row is not None

    async def list_edges(self, node_id: UUID, direction: str = "both") -> List[EdgeView]:
        query = """
            SELECT e.*,
                   sn.label AS source_label, sn.node_type AS source_type,
                   tn.label AS target_label, tn.node_type AS target_type
            FROM knowledge_edges e
            JOIN knowledge_nodes sn ON e.source_node_id = sn.node_id
            JOIN knowledge_nodes tn ON e.target_node_id = tn.node_id
        """
        if direction == "outgoing":
            query += " WHERE e.source_node_id = $1"
        elif direction == "incoming":
            query += " WHERE e.target_node_id = $1"
        else:
            query += " WHERE (e.source_node_id = $1 OR e.target_node_id = $1)"
        query += " ORDER BY e.weight DESC, e.created_at DESC"

        async with self._connection("list_edges") as conn:
            rows = await conn.fetch(query, node_id)
        return [EdgeView.model_validate(dict(row)) for row in rows]

    async def list_adjacent_edges(
        self, node_ids: Iterable[UUID], *, directed: bool
    ) -> List[KnowledgeEdge]:
        ids = list(node_ids)
        if not ids:
            return []
        if directed:
            where = "source_node_id = ANY($1::uuid[])"
        else:
            where = "source_node_id = ANY($1::uuid[]) OR target_node_id = ANY($1::uuid[])"
        query = f"SELECT * FROM knowledge_edges WHERE {where} ORDER BY created_at ASC, edge_id ASC"

        async with self._connection("list_adjacent_edges") as conn:
            rows = await conn.fetch(query, ids)
        return [KnowledgeEdge.model_validate(dict(row)) for row in rows]

    # Agent memory ------------------------------------------------------

    async def upsert_memory(self, entry: MemoryEntry) -> MemoryEntry:
        query = """
            INSERT INTO agent_memory (memory_id, agent_id, memory_type, key, value, expires_at, created_at, updated_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
            ON CONFLICT (agent_id, key)
            DO UPDATE SET
              value = EXCLUDED.value,
              memory_type = EXCLUDED.memory_type,
              expires_at = EXCLUDED.expires_at,
              updated_at = EXCLUDED.updated_at
            RETURNING *
        """
        async with self._connection("upsert_memory") as conn:
            row = await conn.fetchrow(
                query,
                entry.memory_id,
                entry.agent_id,
                entry.memory_type.value,
                entry.key,
                entry.value,
                entry.expires_at,
                entry.created_at,
                entry.updated_at,
            )
        return MemoryEntry.model_validate(dict(row))

    async def get_memory(self, agent_id: UUID, key: str) -> Optional[MemoryEntry]:
        query = "SELECT * FROM agent_memory WHERE agent_id = $1 AND key = $2"
        async with self._connection("get_memory") as conn:
            row = await conn.fetchrow(query, agent_id, key)
        return MemoryEntry.model_validate(dict(row)) if row else None

    async def delete_expired_memory(self, now: datetime) -> int:
        query = """
            DELETE FROM agent_memory
            WHERE expires_at IS NOT NULL AND expires_at <= $1
            RETURNING memory_id
        """
        async with self._connection("delete_expired_memory") as conn:
            rows = await conn.fetch(query, now)
        return len(rows)
