"""Bounded breadth-first search over the knowledge graph."""

from __future__ import annotations

from collections import defaultdict
from typing import Dict, List, Optional, Set, Tuple
from uuid import UUID

from .persistence import DurableStore
from .schemas import KnowledgeNode


async def shortest_path(
    store: DurableStore, start: UUID, goal: UUID, max_depth: int
) -> Optional[List[UUID]]:
    """Return node ids from start to goal following edge direction, or None.

    Breadth-first, so the first path that reaches ``goal`` is a shortest one.
    Each layer is expanded with a single store query. Paths longer than
    ``max_depth`` edges are never explored and soft-deleted nodes are never
    stepped onto. Path includes both start and goal.
    """
    if start == goal:
        return [start]

    visited: Set[UUID] = {start}
    # Layer of (node, path_to_node); expanded one hop per iteration
    frontier: List[Tuple[UUID, List[UUID]]] = [(start, [start])]

    for _ in range(max_depth):
        if not frontier:
            break

        edges = await store.list_adjacent_edges([node for node, _ in frontier], directed=True)
        outgoing: Dict[UUID, List[UUID]] = defaultdict(list)
        for edge in edges:
            outgoing[edge.source_node_id].append(edge.target_node_id)

        # Collect unseen targets in frontier order so tie-breaks are stable
        candidates: Dict[UUID, List[UUID]] = {}
        for node, path in frontier:
            for neighbor in outgoing.get(node, ()):
                if neighbor in visited or neighbor in candidates:
                    continue
                candidates[neighbor] = path + [neighbor]

        live = await store.get_nodes(candidates.keys())
        next_frontier: List[Tuple[UUID, List[UUID]]] = []
        for neighbor, path in candidates.items():
            visited.add(neighbor)
            if neighbor not in live:
                continue
            if neighbor == goal:
                return path
            next_frontier.append((neighbor, path))
        frontier = next_frontier

    return None


async def neighbors_within(
    store: DurableStore, origin: UUID, depth: int
) -> List[Tuple[KnowledgeNode, int]]:
    """Return live nodes within ``depth`` hops of origin, ignoring edge direction.

    Each node is reported once with its minimum hop distance. The origin is
    excluded. Soft-deleted nodes are neither reported nor traversed.
    """
    distances: Dict[UUID, int] = {origin: 0}
    frontier: List[UUID] = [origin]
    found: List[Tuple[KnowledgeNode, int]] = []

    for hop in range(1, depth + 1):
        if not frontier:
            break

        edges = await store.list_adjacent_edges(frontier, directed=False)
        discovered: List[UUID] = []
        for edge in edges:
            for node_id in (edge.source_node_id, edge.target_node_id):
                if node_id not in distances:
                    distances[node_id] = hop
                    discovered.append(node_id)

        live = await store.get_nodes(discovered)
        frontier = [node_id for node_id in discovered if node_id in live]
        found.extend((live[node_id], hop) for node_id in frontier)

    return found
