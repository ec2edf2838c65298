"""
Relation Graph - typed arrows between memories.

Relations live in the SQLite relations table (so they cascade with their
memories). For questions that need more than one hop ("what is connected
to this error, two steps out?") the table is loaded into a NetworkX
MultiDiGraph and walked breadth-first.

Relation types:
- causes        A causes B
- solves        A solves B
- replaces      A replaces B
- requires      A requires B
- related_to    A is related to B
- part_of       A is part of B
- contradicts   A contradicts B
"""

from dataclasses import dataclass, field
from typing import Optional

import networkx as nx

from cortex.errors import NotFoundError
from cortex.log import get_logger
from cortex.storage import MemoryStore
from cortex.types import Memory, Relation, RelationType
from cortex.util import generate_id, now

logger = get_logger("graph")


@dataclass
class RelatedMemory:
    """A memory reached by walking relations."""
    memory: Memory
    hops: int
    via: list = field(default_factory=list)   # edge labels along the path

    def to_dict(self) -> dict:
        return {"memory": self.memory.to_dict(), "hops": self.hops, "via": list(self.via)}


class RelationGraph:
    """Directed, typed edges over the memory store."""

    def __init__(self, store: MemoryStore):
        self.store = store

    def relate(
        self,
        from_id: str,
        to_id: str,
        relation_type,
        note: Optional[str] = None,
    ) -> Relation:
        """Create an edge from_id --type--> to_id.

        Endpoints are checked here, then the insert is guarded again by
        foreign keys.

        Raises:
            ValidationError: Unknown relation type (nothing written).
            NotFoundError: Either memory doesn't exist.
        """
        relation_type = RelationType.parse(relation_type)

        if self.store.get_memory(from_id) is None:
            raise NotFoundError("source memory", from_id)
        if self.store.get_memory(to_id) is None:
            raise NotFoundError("target memory", to_id)

        relation = Relation(
            id=generate_id(),
            from_id=from_id,
            to_id=to_id,
            type=relation_type,
            note=(note or "").strip() or None,
            created_at=now(),
        )
        self.store.save_relation(relation)
        logger.debug(f"Related {from_id} --{relation_type.value}--> {to_id}")
        return relation

    def get_relations(self, memory_id: str) -> list[Relation]:
        """Outgoing edges followed by incoming edges.

        A self-referencing edge appears in both halves.
        """
        return self.store.get_relations_from(memory_id) + self.store.get_relations_to(memory_id)

    def unrelate(self, relation_id: str) -> None:
        """Delete one edge.

        Raises:
            NotFoundError: No relation with this ID.
        """
        if not self.store.delete_relation(relation_id):
            raise NotFoundError("relation", relation_id)

    # =========================================================================
    # TRAVERSAL
    # =========================================================================

    def build(self, relation_types: Optional[list] = None) -> nx.MultiDiGraph:
        """Load relations into NetworkX (duplicates kept as parallel edges)."""
        allowed = {RelationType.parse(t) for t in relation_types} if relation_types else None

        graph = nx.MultiDiGraph()
        for relation in self.store.all_relations():
            if allowed and relation.type not in allowed:
                continue
            graph.add_edge(
                relation.from_id,
                relation.to_id,
                key=relation.id,
                edge_type=relation.type.value,
                note=relation.note,
            )
        return graph

    def related(
        self,
        memory_id: str,
        depth: int = 2,
        relation_types: Optional[list] = None,
    ) -> list[RelatedMemory]:
        """Memories reachable within `depth` hops, in either direction.

        Args:
            memory_id: Starting memory
            depth: How many hops to follow (1 = direct neighbours)
            relation_types: Only follow these edge types (None = all)

        Returns:
            Reached memories ordered by hop count. `via` lists the edge
            labels on the path; incoming edges are prefixed with '←'.

        Raises:
            NotFoundError: The starting memory doesn't exist.
        """
        if self.store.get_memory(memory_id) is None:
            raise NotFoundError("memory", memory_id)

        graph = self.build(relation_types)
        if memory_id not in graph or depth <= 0:
            return []

        # BFS on the undirected view, remembering how each node was reached
        paths = {memory_id: []}
        frontier = [memory_id]
        for _ in range(depth):
            next_frontier = []
            for node in frontier:
                for neighbor, label in _neighbors(graph, node):
                    if neighbor in paths:
                        continue
                    paths[neighbor] = paths[node] + [label]
                    next_frontier.append(neighbor)
            frontier = next_frontier
            if not frontier:
                break

        results = []
        for node, via in paths.items():
            if node == memory_id:
                continue
            memory = self.store.get_memory(node)
            if memory is not None:
                results.append(RelatedMemory(memory=memory, hops=len(via), via=via))

        results.sort(key=lambda r: r.hops)
        return results


def _neighbors(graph: nx.MultiDiGraph, node: str):
    """(neighbor, label) pairs for outgoing then incoming edges."""
    for _, target, data in graph.out_edges(node, data=True):
        yield target, data["edge_type"]
    for source, _, data in graph.in_edges(node, data=True):
        yield source, f"←{data['edge_type']}"
