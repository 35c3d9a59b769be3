"""Lineage tracker: the provenance graph over captured events.

Responsibilities:
- Record parent -> child edges in an in-memory adjacency index
- Materialize direct and transitive (indirect) lineage paths
- Answer ancestor / descendant / impact queries with bounded traversal
- Audit the graph for asymmetric links and cycles

The adjacency index is rebuilt from the persisted edge log at start-up.
Edges are added incrementally, so cycles are possible in the data; every
traversal is iterative and visited-set guarded.
"""

import sqlite3
import threading
import time
from collections import defaultdict, deque
from collections.abc import Callable

import structlog

from provtrack.config import (
    CRITICAL_CONFIDENCE,
    DEFAULT_TREE_DEPTH,
    HOP_DECAY,
    IMPACT_CACHE_TTL,
    MAX_DEPTH,
    PATHS_PER_TREE,
)
from provtrack.errors import IntegrityViolation, StorageWriteError, ValidationError
from provtrack.lineage.models import (
    Direction,
    ImpactRadius,
    IntegrityIssue,
    IntegrityReport,
    LineageEdge,
    LineageNode,
    LineagePath,
    LineageTree,
    clamp,
)
from provtrack.lineage.store import PathStore

logger = structlog.get_logger(__name__)


class LineageTracker:
    def __init__(
        self,
        store: PathStore,
        max_depth: int = MAX_DEPTH,
        hop_decay: float = HOP_DECAY,
        cache_ttl: float = IMPACT_CACHE_TTL,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            store: Edge and path persistence
            max_depth: Longest materialized path, in events
            hop_decay: Confidence multiplier applied per hop beyond the first
            cache_ttl: Seconds an impact calculation stays cached
            clock: Monotonic clock used for cache ages
        """
        self.store = store
        self.max_depth = max_depth
        self.hop_decay = hop_decay
        self.cache_ttl = cache_ttl
        self.clock = clock

        self._lock = threading.RLock()
        self._nodes: set[str] = set()
        self._parents: dict[str, set[str]] = defaultdict(set)
        self._children: dict[str, set[str]] = defaultdict(set)
        self._confidence: dict[tuple[str, str], float] = {}
        self._impact_cache: dict[str, tuple[float, ImpactRadius]] = {}

    # ------------------------------------------------------------------
    # Graph construction
    # ------------------------------------------------------------------

    def load(self) -> int:
        """Rebuild the adjacency index from the edge log. Returns edge count."""
        edges = self.store.load_edges()
        with self._lock:
            for edge in edges:
                self._index_edge(edge)
        logger.info("lineage_index_loaded", edges=len(edges), nodes=len(self._nodes))
        return len(edges)

    def _index_edge(self, edge: LineageEdge) -> None:
        self._nodes.update((edge.parent_id, edge.child_id))
        self._parents[edge.child_id].add(edge.parent_id)
        self._children[edge.parent_id].add(edge.child_id)
        self._confidence[(edge.parent_id, edge.child_id)] = edge.confidence

    def add_link(
        self, parent_id: str | None, child_id: str, confidence: float = 1.0
    ) -> list[LineagePath]:
        """Record ``parent_id -> child_id`` and derive the paths it creates.

        Idempotent: repeating a link adds nothing. With no parent the child is
        registered as a root. The edge and every path derived from it are
        written in one transaction, and the in-memory index is only updated
        once that transaction commits.

        Returns the paths newly materialized by this call.
        """
        if not 0.0 <= confidence <= 1.0:
            raise ValidationError(f"Confidence must be within [0, 1], got {confidence}")

        if parent_id is None:
            with self._lock:
                self._nodes.add(child_id)
            return []

        # The database transaction serializes writers; the index lock is only
        # held for the in-memory update so readers never wait on SQLite.
        edge = LineageEdge(parent_id, child_id, confidence)
        try:
            with self.store.db.transaction() as conn:
                inserted = self.store.insert_edge(conn, edge)
                created = self._materialize_paths(conn, edge)
        except sqlite3.Error as e:
            raise StorageWriteError(f"Failed to record link {parent_id} -> {child_id}: {e}") from e

        with self._lock:
            # First write wins; edges are never re-weighted.
            if inserted:
                self._index_edge(edge)
            self._invalidate_upstream(parent_id)

        logger.debug(
            "lineage_link_added",
            parent_id=parent_id,
            child_id=child_id,
            confidence=confidence,
            paths=len(created),
        )
        return created

    def _materialize_paths(self, conn: sqlite3.Connection, edge: LineageEdge) -> list[LineagePath]:
        parent, child = edge.parent_id, edge.child_id
        if self.store.direct_path_exists(conn, parent, child):
            return []

        # Read both sides before writing so the new direct path is not re-extended.
        to_parent = self.store.paths_ending_at(conn, parent)
        from_child = self.store.paths_starting_at(conn, child)

        candidates = [LineagePath(parent, child, (parent, child), clamp(edge.confidence), "direct")]
        for existing in to_parent:
            if child in existing.path:
                continue
            candidates.append(
                LineagePath(
                    existing.source_id,
                    child,
                    existing.path + (child,),
                    clamp(existing.confidence * edge.confidence * self.hop_decay),
                    "indirect",
                )
            )
        for existing in from_child:
            if parent in existing.path:
                continue
            candidates.append(
                LineagePath(
                    parent,
                    existing.target_id,
                    (parent,) + existing.path,
                    clamp(edge.confidence * existing.confidence * self.hop_decay),
                    "indirect",
                )
            )

        created = []
        for path in candidates:
            if path.length > self.max_depth:
                continue
            if self.store.insert_path(conn, path):
                created.append(path)
        return created

    def _invalidate_upstream(self, event_id: str) -> None:
        """Drop cached impact for an event and everything upstream of it."""
        self._impact_cache.pop(event_id, None)
        for node_id, _ in self._walk(event_id, self._parents, self.max_depth):
            self._impact_cache.pop(node_id, None)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_parents(self, event_id: str) -> list[str]:
        with self._lock:
            return sorted(self._parents.get(event_id, ()))

    def get_children(self, event_id: str) -> list[str]:
        """The derived child view of an event: every event citing it as parent."""
        with self._lock:
            return sorted(self._children.get(event_id, ()))

    def has_event(self, event_id: str) -> bool:
        with self._lock:
            return event_id in self._nodes

    @staticmethod
    def _walk(start: str, adjacency: dict[str, set[str]], max_depth: int) -> list[tuple[str, int]]:
        """Breadth-first walk returning (node, depth) pairs, never revisiting a node."""
        visited = {start}
        queue = deque([(start, 0)])
        found = []
        while queue:
            node_id, depth = queue.popleft()
            if depth >= max_depth:
                continue
            for next_id in sorted(adjacency.get(node_id, ())):
                if next_id in visited:
                    continue
                visited.add(next_id)
                found.append((next_id, depth + 1))
                queue.append((next_id, depth + 1))
        return found

    def _node(self, event_id: str, depth: int = 0) -> LineageNode:
        parents = sorted(self._parents.get(event_id, ()))
        incoming = [self._confidence.get((p, event_id), 1.0) for p in parents]
        return LineageNode(
            event_id=event_id,
            parent_ids=parents,
            child_ids=sorted(self._children.get(event_id, ())),
            confidence=min(incoming, default=1.0),
            depth=depth,
        )

    def get_lineage_tree(
        self,
        event_id: str,
        direction: Direction = "both",
        max_depth: int = DEFAULT_TREE_DEPTH,
    ) -> LineageTree:
        if direction not in ("ancestors", "descendants", "both"):
            raise ValidationError(f"Unknown direction: {direction}")
        if max_depth < 0:
            raise ValidationError("max_depth must not be negative")

        with self._lock:
            tree = LineageTree(event=self._node(event_id))
            if direction in ("ancestors", "both"):
                tree.ancestors = [
                    self._node(n, d) for n, d in self._walk(event_id, self._parents, max_depth)
                ]
            if direction in ("descendants", "both"):
                tree.descendants = [
                    self._node(n, d) for n, d in self._walk(event_id, self._children, max_depth)
                ]
        tree.paths = self.store.paths_touching(event_id, limit=PATHS_PER_TREE)
        return tree

    def calculate_impact_radius(self, event_id: str) -> ImpactRadius:
        """Downstream reach of an event, cached for ``cache_ttl`` seconds."""
        now = self.clock()
        with self._lock:
            cached = self._impact_cache.get(event_id)
        if cached and now - cached[0] < self.cache_ttl:
            return cached[1]

        tree = self.get_lineage_tree(event_id, "descendants", DEFAULT_TREE_DEPTH)
        direct = sum(1 for n in tree.descendants if n.depth == 1)
        impact = ImpactRadius(
            direct_impact=direct,
            indirect_impact=len(tree.descendants) - direct,
            total_reach=len(tree.descendants),
            critical_paths=[
                p.render()
                for p in tree.paths
                if p.source_id == event_id and p.confidence > CRITICAL_CONFIDENCE
            ],
        )
        with self._lock:
            self._impact_cache[event_id] = (now, impact)
        return impact

    def find_root_causes(self, event_id: str, max_depth: int = MAX_DEPTH) -> list[LineageNode]:
        """Ancestors that have no parents of their own, nearest first."""
        with self._lock:
            return [
                self._node(n, d)
                for n, d in self._walk(event_id, self._parents, max_depth)
                if not self._parents.get(n)
            ]

    # ------------------------------------------------------------------
    # Integrity
    # ------------------------------------------------------------------

    def verify_integrity(self, strict: bool = False) -> IntegrityReport:
        """Audit the whole graph. Reports every violation; repairs nothing.

        With ``strict`` a non-empty report is raised as IntegrityViolation.
        """
        with self._lock:
            parents = {k: set(v) for k, v in self._parents.items()}
            children = {k: set(v) for k, v in self._children.items()}

        issues: list[IntegrityIssue] = []

        for child_id in sorted(parents):
            for parent_id in sorted(parents[child_id]):
                if child_id not in children.get(parent_id, ()):
                    issues.append(
                        IntegrityIssue(
                            type="orphaned_parent",
                            event_id=child_id,
                            description=f"Parent {parent_id} does not have {child_id} as child",
                        )
                    )

        for component in _cycles(parents):
            chain = " -> ".join(component)
            for event_id in component:
                issues.append(
                    IntegrityIssue(
                        type="circular_dependency",
                        event_id=event_id,
                        description=f"Event is part of a circular dependency chain: {chain}",
                    )
                )

        if issues:
            logger.warning("lineage_integrity_issues", count=len(issues))
            if strict:
                raise IntegrityViolation(issues)
        return IntegrityReport(valid=not issues, issues=issues)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def cleanup(self) -> int:
        """Evict cached impact results older than the TTL. Persisted paths stay."""
        now = self.clock()
        with self._lock:
            stale = [k for k, (at, _) in self._impact_cache.items() if now - at > self.cache_ttl]
            for key in stale:
                del self._impact_cache[key]
        logger.debug("lineage_cache_cleaned", evicted=len(stale))
        return len(stale)

    def stats(self) -> dict:
        with self._lock:
            return {
                "nodes": len(self._nodes),
                "edges": len(self._confidence),
                "cached_impacts": len(self._impact_cache),
                "paths": self.store.count_paths(),
            }


def _cycles(graph: dict[str, set[str]]) -> list[list[str]]:
    """Strongly connected components that contain a cycle.

    Iterative Tarjan: a depth-first walk that keeps the current path on an
    explicit stack; a node closes a cycle when it is reached again while
    still on that stack. Self-loops count as cycles of one.
    """
    nodes = sorted(set(graph) | {n for targets in graph.values() for n in targets})
    index: dict[str, int] = {}
    low: dict[str, int] = {}
    stack: list[str] = []
    on_stack: set[str] = set()
    counter = 0
    found: list[list[str]] = []

    for root in nodes:
        if root in index:
            continue
        index[root] = low[root] = counter
        counter += 1
        stack.append(root)
        on_stack.add(root)
        work = [(root, iter(sorted(graph.get(root, ()))))]

        while work:
            node_id, neighbours = work[-1]
            descended = False
            for next_id in neighbours:
                if next_id not in index:
                    index[next_id] = low[next_id] = counter
                    counter += 1
                    stack.append(next_id)
                    on_stack.add(next_id)
                    work.append((next_id, iter(sorted(graph.get(next_id, ())))))
                    descended = True
                    break
                if next_id in on_stack:
                    low[node_id] = min(low[node_id], index[next_id])
            if descended:
                continue

            work.pop()
            if work:
                caller = work[-1][0]
                low[caller] = min(low[caller], low[node_id])
            if low[node_id] == index[node_id]:
                component = []
                while True:
                    member = stack.pop()
                    on_stack.discard(member)
                    component.append(member)
                    if member == node_id:
                        break
                if len(component) > 1 or node_id in graph.get(node_id, ()):
                    found.append(sorted(component))
    return found
