"""
Pydantic schemas for the agent coordination core.

All records exchanged between the orchestrator, event bus, knowledge graph and
the durable store are defined here.

Design Philosophy:
- One model per stored row; document-like columns are plain dicts
- Status values are str-valued enums so they serialize as the bare names
- Timestamps are timezone-aware (UTC) and always set by the store's clock
- Events are frozen: the event log is append-only
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    """Default clock: timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


# ============================================================================
# Enumerations
# ============================================================================


class AgentStatus(str, Enum):
    """Lifecycle states of an agent.

    DORMANT -> INITIALIZING -> ACTIVE <-> PAUSED; any state -> ERROR;
    any state -> TERMINATED (final).
    """

    DORMANT = "DORMANT"
    INITIALIZING = "INITIALIZING"
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    ERROR = "ERROR"
    TERMINATED = "TERMINATED"


class TaskStatus(str, Enum):
    """Queue states of an agent task."""

    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class MemoryType(str, Enum):
    """Kinds of per-agent memory entries."""

    SHORT_TERM = "short_term"
    LONG_TERM = "long_term"
    EPISODIC = "episodic"
    SEMANTIC = "semantic"


# Tasks still waiting on (or held by) their agent; cancelled when the agent stops
OPEN_TASK_STATUSES = (TaskStatus.PENDING, TaskStatus.IN_PROGRESS)

EVENT_NOTIFICATION = "EVENT_NOTIFICATION"

GLOBAL_WILDCARD = "*"


def event_type_patterns(event_type: str) -> tuple:
    """Return the subscription patterns that match ``event_type``.

    Order is exact type, namespace wildcard (first segment only), global
    wildcard. ``agent.task.done`` yields ``("agent.task.done", "agent.*", "*")``.
    Duplicates collapse, so a pattern never matches the same event twice.
    """
    namespace = event_type.split(".", 1)[0]
    return tuple(dict.fromkeys((event_type, f"{namespace}.*", GLOBAL_WILDCARD)))


# ============================================================================
# Agent Schemas
# ============================================================================


class Agent(BaseModel):
    """An addressable unit of autonomous work.

    Agents are registered by the host application; this core only moves them
    through their lifecycle. ``module`` is the routing key used by
    ``AgentOrchestrator.route_task``; the oldest ACTIVE agent of a module owns it.
    """

    agent_id: UUID = Field(default_factory=uuid4, description="Unique agent identifier")
    name: str = Field(..., description="Human-readable agent name")
    type: Optional[str] = Field(None, description="Agent kind (orchestrator, specialist, ...)")
    module: Optional[str] = Field(None, description="Routing key for module ownership")
    status: AgentStatus = Field(AgentStatus.DORMANT, description="Current lifecycle status")
    # state holds last_status_change plus any runtime attributes the agent keeps
    state: Dict[str, Any] = Field(default_factory=dict, description="Free-form runtime state")
    last_heartbeat: Optional[datetime] = Field(None, description="Last liveness signal")
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class TaskRequest(BaseModel):
    """Caller-supplied description of work for assign_task/route_task."""

    type: str = Field(..., min_length=1, description="Task type")
    payload: Dict[str, Any] = Field(default_factory=dict, description="Task input")
    # None means "use Config.DEFAULT_TASK_PRIORITY"
    priority: Optional[int] = Field(None, description="Priority 1-10, higher runs first")
    module: Optional[str] = Field(None, description="Target module (required for routing)")


class AgentTask(BaseModel):
    """A unit of queued work owned by exactly one agent.

    Queue consumers read tasks ordered by priority (descending) then creation
    time (ascending). ``sequence`` is a store-assigned monotonic counter that
    breaks ties between tasks created within the same clock tick.
    """

    task_id: UUID = Field(default_factory=uuid4)
    agent_id: UUID
    type: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    priority: int = Field(5, ge=1, le=10)
    status: TaskStatus = TaskStatus.PENDING
    result: Optional[Any] = None
    sequence: int = Field(0, description="Insertion order assigned by the store")
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None


# ============================================================================
# Event Schemas
# ============================================================================


class SystemEvent(BaseModel):
    """An immutable fact appended to the event log."""

    model_config = ConfigDict(frozen=True)

    event_id: UUID = Field(default_factory=uuid4)
    event_type: str = Field(..., description="Dot-namespaced type, e.g. agent.started")
    source: str = Field(..., description="Publisher (agent id, service name, ...)")
    payload: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)

    @property
    def namespace(self) -> str:
        """First dot-delimited segment of the event type."""
        return self.event_type.split(".", 1)[0]


class EventSubscription(BaseModel):
    """A standing interest of one agent in an event-type pattern.

    ``event_type`` is an exact type, a namespace wildcard (``agent.*``) or the
    global wildcard ``*``. ``filter`` is a flat equality map checked against the
    event payload.
    """

    subscription_id: UUID = Field(default_factory=uuid4)
    agent_id: UUID
    event_type: str
    filter: Optional[Dict[str, Any]] = None
    active: bool = True
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


# ============================================================================
# Knowledge Graph Schemas
# ============================================================================


class KnowledgeNode(BaseModel):
    """A labeled entity in a workspace's property graph (soft-deleted)."""

    node_id: UUID = Field(default_factory=uuid4)
    workspace_id: UUID
    node_type: str
    label: str
    properties: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    deleted_at: Optional[datetime] = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


class KnowledgeEdge(BaseModel):
    """A directed, weighted, typed relation between two nodes (hard-deleted)."""

    edge_id: UUID = Field(default_factory=uuid4)
    source_node_id: UUID
    target_node_id: UUID
    relationship_type: str
    properties: Dict[str, Any] = Field(default_factory=dict)
    weight: float = 1.0
    created_at: datetime = Field(default_factory=utc_now)


class EdgeView(KnowledgeEdge):
    """An edge joined with labels and types of both endpoints."""

    source_label: str
    source_type: str
    target_label: str
    target_type: str


class NeighborNode(KnowledgeNode):
    """A node reached by neighbor expansion, annotated with its hop distance."""

    hop_distance: int = Field(..., ge=1)


# ============================================================================
# Agent Memory Schemas
# ============================================================================


class MemoryEntry(BaseModel):
    """A per-agent, optionally expiring key/value fact.

    Expiry is enforced at read time; rows past ``expires_at`` are physically
    removed only by the maintenance sweep.
    """

    memory_id: UUID = Field(default_factory=uuid4)
    agent_id: UUID
    memory_type: MemoryType
    key: str
    value: Any = None
    expires_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now
