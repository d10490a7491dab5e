"""
Knowledge Graph Store shared by all agents.

Agents record what they learn as typed, labeled nodes inside a workspace and
relate them with directed, weighted edges. Other agents query the graph by
search, by type, by bounded path finding or by neighborhood expansion.

Deletion is asymmetric:
- Nodes are soft-deleted (``deleted_at``); edges to them stay in storage but
  every read path here skips deleted nodes
- Edges are hard-deleted

The graph also fronts the per-agent memory store (``store_memory``,
``retrieve_memory``, ``clear_expired_memory``) so agents reach both kinds of
shared state through one object.
"""

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union
from uuid import UUID

from .config import Config
from .errors import NotFoundError, ValidationError, logged_operation
from .graph_search import neighbors_within, shortest_path
from .logging_utils import get_logger
from .memory import AgentMemoryStore
from .persistence import EDGE_DIRECTIONS, DurableStore
from .schemas import (
    EdgeView,
    KnowledgeEdge,
    KnowledgeNode,
    MemoryEntry,
    MemoryType,
    NeighborNode,
    utc_now,
)

logger = get_logger(__name__)


class KnowledgeGraph:
    """Workspace-scoped property graph plus agent memory facade.

    Args:
        store: Durable store holding nodes, edges and memory rows
        now: Clock used for timestamps and memory expiry
        memory: Optional pre-built memory store (defaults to one over ``store``)
    """

    def __init__(
        self,
        store: DurableStore,
        now: Callable[[], datetime] = utc_now,
        memory: Optional[AgentMemoryStore] = None,
    ):
        self.store = store
        self.now = now
        self.memory = memory or AgentMemoryStore(store, now=now)

    async def _require_node(self, node_id: UUID) -> KnowledgeNode:
        node = await self.store.get_node(node_id)
        if node is None:
            raise NotFoundError("node", node_id)
        return node

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    @logged_operation("create node", context=("workspace_id", "node_type", "label"))
    async def create_node(
        self,
        workspace_id: UUID,
        node_type: str,
        label: str,
        properties: Optional[Dict[str, Any]] = None,
    ) -> KnowledgeNode:
        """Create a live node in ``workspace_id``."""
        if not node_type:
            raise ValidationError("node_type", node_type, "must be a non-empty string")
        if not label:
            raise ValidationError("label", label, "must be a non-empty string")

        now = self.now()
        node = KnowledgeNode(
            workspace_id=workspace_id,
            node_type=node_type,
            label=label,
            properties=dict(properties or {}),
            created_at=now,
            updated_at=now,
        )
        return await self.store.insert_node(node)

    @logged_operation("get node", context=("node_id",))
    async def get_node(self, node_id: UUID) -> KnowledgeNode:
        """Return a live node; NotFoundError if missing or soft-deleted."""
        return await self._require_node(node_id)

    @logged_operation("update node", context=("node_id",))
    async def update_node(self, node_id: UUID, properties: Dict[str, Any]) -> KnowledgeNode:
        """
        Shallow-merge ``properties`` into the node's existing properties.

        Keys present in ``properties`` overwrite, all other keys are kept.

        Raises:
            NotFoundError: Node missing or soft-deleted
        """
        if not isinstance(properties, dict):
            raise ValidationError("properties", properties, "must be a mapping")
        updated = await self.store.merge_node_properties(node_id, properties, self.now())
        if updated is None:
            raise NotFoundError("node", node_id)
        return updated

    @logged_operation("delete node", context=("node_id",), success_level=None)
    async def delete_node(self, node_id: UUID) -> None:
        """Soft-delete a node. Edges touching it are kept but no longer traversed."""
        if not await self.store.soft_delete_node(node_id, self.now()):
            raise NotFoundError("node", node_id)
        logger.info("Node soft-deleted", extra={"context": {"node_id": str(node_id)}})

    @logged_operation("search nodes", context=("workspace_id", "query"))
    async def search_nodes(self, workspace_id: UUID, query: str) -> List[KnowledgeNode]:
        """Search live nodes by label substring or label/property terms, best match first."""
        if not query or not query.strip():
            raise ValidationError("query", query, "must be a non-empty string")
        return await self.store.search_nodes(workspace_id, query.strip(), Config.SEARCH_RESULT_LIMIT)

    @logged_operation("get nodes by type", context=("workspace_id", "node_type"))
    async def get_nodes_by_type(self, workspace_id: UUID, node_type: str) -> List[KnowledgeNode]:
        return await self.store.list_nodes_by_type(workspace_id, node_type)

    # ------------------------------------------------------------------
    # Edges
    # ------------------------------------------------------------------

    @logged_operation(
        "create edge", context=("source_id", "target_id", "relationship_type", "weight")
    )
    async def create_edge(
        self,
        source_id: UUID,
        target_id: UUID,
        relationship_type: str,
        properties: Optional[Dict[str, Any]] = None,
        weight: float = 1.0,
    ) -> KnowledgeEdge:
        """
        Create a directed edge ``source -> target``.

        Both endpoints are re-read first and must be live.

        Raises:
            NotFoundError: Either endpoint missing or soft-deleted
            ValidationError: Empty relationship type
        """
        if not relationship_type:
            raise ValidationError("relationship_type", relationship_type, "must be a non-empty string")

        await self._require_node(source_id)
        await self._require_node(target_id)

        edge = KnowledgeEdge(
            source_node_id=source_id,
            target_node_id=target_id,
            relationship_type=relationship_type,
            properties=dict(properties or {}),
            weight=weight,
            created_at=self.now(),
        )
        return await self.store.insert_edge(edge)

    @logged_operation("get edges", context=("node_id", "direction"))
    async def get_edges(self, node_id: UUID, direction: str = "both") -> List[EdgeView]:
        """List edges touching a node, heaviest first, with endpoint labels and types."""
        if direction not in EDGE_DIRECTIONS:
            raise ValidationError("direction", direction, f"expected one of {list(EDGE_DIRECTIONS)}")
        return await self.store.list_edges(node_id, direction)

    @logged_operation("delete edge", context=("edge_id",), success_level=None)
    async def delete_edge(self, edge_id: UUID) -> None:
        if not await self.store.delete_edge(edge_id):
            raise NotFoundError("edge", edge_id)
        logger.info("Edge deleted", extra={"context": {"edge_id": str(edge_id)}})

    # ------------------------------------------------------------------
    # Traversal
    # ------------------------------------------------------------------

    @logged_operation("find path", context=("from_id", "to_id", "max_depth"))
    async def find_path(
        self, from_id: UUID, to_id: UUID, max_depth: Optional[int] = None
    ) -> Optional[List[KnowledgeNode]]:
        """
        Find a shortest directed path between two live nodes.

        Args:
            from_id: Start node
            to_id: Goal node
            max_depth: Maximum number of edges (default Config.DEFAULT_PATH_DEPTH)

        Returns:
            Nodes from start to goal inclusive, or None when no path of at most
            ``max_depth`` edges exists. ``from_id == to_id`` yields ``[node]``.

        Raises:
            NotFoundError: Either endpoint missing or soft-deleted
            ValidationError: max_depth below 1
        """
        if max_depth is None:
            max_depth = Config.DEFAULT_PATH_DEPTH
        if max_depth < 1:
            raise ValidationError("max_depth", max_depth, "must be at least 1")

        start = await self._require_node(from_id)
        await self._require_node(to_id)

        path_ids = await shortest_path(self.store, from_id, to_id, max_depth)
        if path_ids is None:
            return None
        if len(path_ids) == 1:
            return [start]

        nodes = await self.store.get_nodes(path_ids)
        # A node deleted between traversal and this read breaks the path
        if len(nodes) != len(path_ids):
            return None
        return [nodes[node_id] for node_id in path_ids]

    @logged_operation("get neighbors", context=("node_id", "depth"))
    async def get_neighbors(self, node_id: UUID, depth: int = 1) -> List[NeighborNode]:
        """
        Return live nodes within ``depth`` hops, ignoring edge direction.

        Ordered by hop distance, then newest first, then node id.
        """
        if depth < 1:
            raise ValidationError("depth", depth, "must be at least 1")
        await self._require_node(node_id)

        found = await neighbors_within(self.store, node_id, depth)
        found.sort(key=lambda item: str(item[0].node_id))
        found.sort(key=lambda item: item[0].created_at, reverse=True)
        found.sort(key=lambda item: item[1])
        return [NeighborNode(**node.model_dump(), hop_distance=hop) for node, hop in found]

    # ------------------------------------------------------------------
    # Agent memory
    # ------------------------------------------------------------------

    async def store_memory(
        self,
        agent_id: UUID,
        memory_type: Union[MemoryType, str],
        key: str,
        value: Any,
        ttl_seconds: Optional[float] = None,
    ) -> MemoryEntry:
        return await self.memory.store_memory(agent_id, memory_type, key, value, ttl_seconds)

    async def retrieve_memory(self, agent_id: UUID, key: str) -> Any:
        return await self.memory.retrieve_memory(agent_id, key)

    async def clear_expired_memory(self) -> int:
        return await self.memory.clear_expired_memory()
