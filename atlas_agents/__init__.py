"""
Atlas Agents - coordination core for autonomous agents.

Agent lifecycle and task queues, a durable publish/subscribe event bus with
wildcard routing, and a shared knowledge graph with per-agent memory.

Storage is pluggable (InMemoryStore for tests and prototyping, PostgresStore
for production). All services of a process share one store and one event bus;
``create_runtime`` wires them together.
"""

__version__ = "0.1.0"

# Services
from .orchestrator import AgentOrchestrator
from .event_bus import EventBus, matches_filter
from .knowledge_graph import KnowledgeGraph
from .memory import AgentMemoryStore
from .runtime import AgentRuntime, create_runtime

# Storage
from .persistence import DurableStore, InMemoryStore, PostgresStore

# Errors
from .errors import (
    AtlasError,
    NotFoundError,
    NoModuleOwnerError,
    InvalidStateError,
    ValidationError,
    DependencyError,
    logged_operation,
)

# Schemas
from .schemas import (
    Agent,
    AgentStatus,
    AgentTask,
    TaskRequest,
    TaskStatus,
    SystemEvent,
    EventSubscription,
    KnowledgeNode,
    KnowledgeEdge,
    EdgeView,
    NeighborNode,
    MemoryEntry,
    MemoryType,
    EVENT_NOTIFICATION,
    event_type_patterns,
)

from .config import Config
from .logging_utils import setup_logging, get_logger

__all__ = [
    # Services
    "AgentOrchestrator",
    "EventBus",
    "matches_filter",
    "KnowledgeGraph",
    "AgentMemoryStore",
    "AgentRuntime",
    "create_runtime",
    # Storage
    "DurableStore",
    "InMemoryStore",
    "PostgresStore",
    # Errors
    "AtlasError",
    "NotFoundError",
    "NoModuleOwnerError",
    "InvalidStateError",
    "ValidationError",
    "DependencyError",
    "logged_operation",
    # Schemas
    "Agent",
    "AgentStatus",
    "AgentTask",
    "TaskRequest",
    "TaskStatus",
    "SystemEvent",
    "EventSubscription",
    "KnowledgeNode",
    "KnowledgeEdge",
    "EdgeView",
    "NeighborNode",
    "MemoryEntry",
    "MemoryType",
    "EVENT_NOTIFICATION",
    "event_type_patterns",
    # Config / logging
    "Config",
    "setup_logging",
    "get_logger",
]
