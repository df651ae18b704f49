"""
adForge Object Registry
=======================

NetworkX-backed registry of every object and relationship in a run.

Design Decisions:
-----------------
1. Uses a NetworkX MultiDiGraph keyed by relationship kind, so a pair of
   objects can be linked by a membership and a delegation at once
2. Group nesting is tracked in a separate DiGraph of group -> group
   membership edges; cycle checks are reachability queries on it
3. Object status transitions go through mark_created / mark_failed only
4. Writers serialize per identifier through an asyncio.Lock; readers
   never take a lock

The registry is the only structure shared between workers besides the
ledger. All mutating methods are synchronous and never await, so each one
is atomic with respect to other coroutines on the event loop.
"""

import asyncio
from collections import defaultdict
from typing import Iterator, Optional

import networkx as nx

from .schemas import (
    DirectoryObject, Relationship, ObjectType, ObjectStatus, RelationshipKind
)
from ..errors import CycleRejected


class ObjectRegistry:
    """Run-wide registry of directory objects and relationships.

    Example Usage:
        registry = ObjectRegistry()
        registry.register(obj)
        async with registry.lock_for(obj.identifier):
            ...adapter call...
            registry.mark_created(obj.identifier)

        groups = registry.created(ObjectType.GROUP)
        registry.reserve_nesting(parent_id, child_id)  # may raise CycleRejected
    """

    def __init__(self):
        """Initialize an empty registry."""
        self._graph = nx.MultiDiGraph()
        self._nesting = nx.DiGraph()

        self._objects: dict[str, DirectoryObject] = {}
        self._by_type: dict[ObjectType, list[str]] = defaultdict(list)
        self._relationships: dict[tuple, Relationship] = {}
        self._key_locks: dict[str, asyncio.Lock] = {}

    @property
    def nx_graph(self) -> nx.MultiDiGraph:
        """Access the underlying graph of created relationships."""
        return self._graph

    # ------------------------------------------------------------------
    # Objects
    # ------------------------------------------------------------------

    def register(self, obj: DirectoryObject) -> DirectoryObject:
        """Add a planned object.

        Registering an identifier twice returns the existing object, so a
        re-enqueued plan item never produces a second entry.
        """
        existing = self._objects.get(obj.identifier)
        if existing is not None:
            return existing

        self._objects[obj.identifier] = obj
        self._by_type[obj.object_type].append(obj.identifier)
        self._graph.add_node(obj.identifier, object_type=obj.object_type)
        return obj

    def lock_for(self, identifier: str) -> asyncio.Lock:
        """Writer lock for one identifier (single writer per key)."""
        lock = self._key_locks.get(identifier)
        if lock is None:
            lock = asyncio.Lock()
            self._key_locks[identifier] = lock
        return lock

    def get(self, identifier: str) -> Optional[DirectoryObject]:
        return self._objects.get(identifier)

    def __contains__(self, identifier: str) -> bool:
        return identifier in self._objects

    def __len__(self) -> int:
        return len(self._objects)

    def is_created(self, identifier: str) -> bool:
        obj = self._objects.get(identifier)
        return obj is not None and obj.status == ObjectStatus.CREATED

    def mark_created(self, identifier: str, existed: bool = False) -> None:
        obj = self._objects[identifier]
        obj.status = ObjectStatus.CREATED
        obj.existed = existed
        obj.failure_reason = None

    def mark_failed(self, identifier: str, reason: str) -> None:
        obj = self._objects[identifier]
        obj.status = ObjectStatus.FAILED
        obj.failure_reason = reason

    def update_attributes(self, identifier: str, delta: dict) -> None:
        """Reflect a confirmed attribute write in the registry copy."""
        self._objects[identifier].attributes.update(delta)

    def objects(
        self,
        object_type: Optional[ObjectType] = None,
        status: Optional[ObjectStatus] = None
    ) -> list[DirectoryObject]:
        """Objects in registration order, optionally filtered."""
        if object_type is None:
            ids = list(self._objects)
        else:
            ids = self._by_type.get(object_type, [])
        result = [self._objects[i] for i in ids]
        if status is not None:
            result = [o for o in result if o.status == status]
        return result

    def created(self, object_type: ObjectType) -> list[DirectoryObject]:
        """Created objects of one type, in registration order."""
        return self.objects(object_type, ObjectStatus.CREATED)

    def count(self, object_type: ObjectType, status: Optional[ObjectStatus] = None) -> int:
        return len(self.objects(object_type, status))

    # ------------------------------------------------------------------
    # Relationships
    # ------------------------------------------------------------------

    def can_relate(self, source: str, target: str) -> bool:
        """Both endpoints must exist with status Created."""
        return self.is_created(source) and self.is_created(target)

    def has_relationship(self, kind: RelationshipKind, source: str, target: str) -> bool:
        rel = self._relationships.get((kind, source, target))
        return rel is not None and rel.status == ObjectStatus.CREATED

    def get_relationship(self, kind: RelationshipKind, source: str, target: str) -> Optional[Relationship]:
        return self._relationships.get((kind, source, target))

    def record_relationship(self, rel: Relationship) -> None:
        """Record the outcome of a relationship write.

        Created relationships are added to the graph. Raises ValueError if
        a Created relationship references an object that is not Created.

        Delegations are keyed by (principal, target): recording a second
        delegation for the same pair replaces the first one's rights.
        """
        if rel.status == ObjectStatus.CREATED:
            if not self.can_relate(rel.source, rel.target):
                raise ValueError(f"Relationship endpoints not created: {rel.description}")
            self._graph.add_edge(
                rel.source, rel.target,
                key=rel.kind.value,
                relationship=rel,
            )
        self._relationships[rel.key] = rel

    def relationships(
        self,
        kind: Optional[RelationshipKind] = None,
        status: Optional[ObjectStatus] = ObjectStatus.CREATED
    ) -> list[Relationship]:
        result = list(self._relationships.values())
        if kind is not None:
            result = [r for r in result if r.kind == kind]
        if status is not None:
            result = [r for r in result if r.status == status]
        return result

    def _edges(self, kind: RelationshipKind, source: Optional[str] = None,
               target: Optional[str] = None) -> Iterator[Relationship]:
        if source is not None:
            if not self._graph.has_node(source):
                return
            edges = self._graph.out_edges(source, keys=True, data=True)
        elif target is not None:
            if not self._graph.has_node(target):
                return
            edges = self._graph.in_edges(target, keys=True, data=True)
        else:
            edges = self._graph.edges(keys=True, data=True)
        for _, _, key, data in edges:
            if key == kind.value:
                yield data["relationship"]

    def members_of(self, group: str) -> list[str]:
        """Direct members of a group."""
        return [r.target for r in self._edges(RelationshipKind.MEMBERSHIP, source=group)]

    def groups_of(self, member: str) -> list[str]:
        """Groups a principal or group is directly a member of."""
        return [r.source for r in self._edges(RelationshipKind.MEMBERSHIP, target=member)]

    def gpos_linked_to(self, ou: str) -> list[str]:
        return [r.source for r in self._edges(RelationshipKind.GPO_LINK, target=ou)]

    def ous_linked_by(self, gpo: str) -> list[str]:
        return [r.target for r in self._edges(RelationshipKind.GPO_LINK, source=gpo)]

    def delegations_on(self, target: str) -> list[Relationship]:
        return list(self._edges(RelationshipKind.DELEGATION, target=target))

    # ------------------------------------------------------------------
    # Group nesting
    # ------------------------------------------------------------------

    def would_create_cycle(self, parent: str, child: str) -> bool:
        """True if nesting `child` into `parent` would close a cycle.

        A cycle exists iff `parent` is reachable from `child` through
        existing (or reserved) nesting edges.
        """
        if parent == child:
            return True
        if not self._nesting.has_node(child) or not self._nesting.has_node(parent):
            return False
        return nx.has_path(self._nesting, child, parent)

    def nesting_depth_with(self, parent: str, child: str) -> int:
        """Length of the longest nesting chain through a prospective edge.

        Counts edges: a lone group has depth 0, A contains B has depth 1.
        """
        return self._height_above(parent) + 1 + self._height_below(child)

    def _height_above(self, group: str) -> int:
        if not self._nesting.has_node(group):
            return 0
        best = 0
        stack = [(group, 0)]
        while stack:
            node, depth = stack.pop()
            best = max(best, depth)
            for parent in self._nesting.predecessors(node):
                stack.append((parent, depth + 1))
        return best

    def _height_below(self, group: str) -> int:
        if not self._nesting.has_node(group):
            return 0
        best = 0
        stack = [(group, 0)]
        while stack:
            node, depth = stack.pop()
            best = max(best, depth)
            for child in self._nesting.successors(node):
                stack.append((child, depth + 1))
        return best

    def reserve_nesting(self, parent: str, child: str) -> None:
        """Reserve a group nesting edge before it is written.

        The check and the insertion happen without awaiting, so two
        concurrent proposals cannot both pass the reachability test.

        Raises:
            CycleRejected: If the edge would close a cycle
        """
        if self.would_create_cycle(parent, child):
            raise CycleRejected(parent, child)
        self._nesting.add_edge(parent, child)

    def release_nesting(self, parent: str, child: str) -> None:
        """Drop a reserved nesting edge whose write failed."""
        if self._nesting.has_edge(parent, child):
            self._nesting.remove_edge(parent, child)

    def nesting_has_cycle(self) -> bool:
        return not nx.is_directed_acyclic_graph(self._nesting)

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> dict:
        """Dictionary with 'objects' and 'relationships' keys."""
        return {
            "objects": [o.to_dict() for o in self._objects.values()],
            "relationships": [r.to_dict() for r in self._relationships.values()],
        }
