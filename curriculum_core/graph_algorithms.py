"""
Graph algorithms over the prerequisite subgraph.

- ``detect_cycle_dfs``     : DFS with an explicit recursion stack.
- ``topological_sort_kahn``: Kahn's algorithm, FIFO in encounter order.
- ``compute_metrics``: ``networkx.DiGraph`` based summary metrics.

Edges flow prerequisite -> dependent. Both hand-written algorithms run
over the same node set (``prerequisite_graph``) so they always agree on
whether a cycle exists.
"""

import logging
from collections import deque
from typing import Any, Dict, Iterable, List, Optional, Sequence

import networkx as nx

from curriculum_core.models import ConceptRelationship

logger = logging.getLogger(__name__)

Adjacency = Dict[str, List[str]]


# =========================================================================
# Graph construction
# =========================================================================


def prerequisite_graph(
    relationships: Iterable[ConceptRelationship],
    node_ids: Sequence[str] = (),
) -> Adjacency:
    """Build an adjacency list from the ``prerequisite`` relationships.

    Every id in *node_ids* and every edge endpoint becomes a key, in
    encounter order (nodes first, then endpoints). Duplicate edges are
    collapsed.
    """
    adjacency: Adjacency = {}
    for node in node_ids:
        adjacency.setdefault(node, [])

    for rel in relationships:
        if rel.relationship_type != "prerequisite":
            continue
        adjacency.setdefault(rel.from_concept_id, [])
        adjacency.setdefault(rel.to_concept_id, [])
        neighbors = adjacency[rel.from_concept_id]
        if rel.to_concept_id not in neighbors:
            neighbors.append(rel.to_concept_id)

    return adjacency


# =========================================================================
# Cycle detection
# =========================================================================


def detect_cycle_dfs(adjacency: Adjacency) -> bool:
    """Return ``True`` if the graph contains a directed cycle.

    Iterative DFS: a node stays in ``on_stack`` until all of its
    descendants are finished; reaching a node that is still on the stack
    is a back-edge.
    """
    visited = set()
    on_stack = set()

    for root in adjacency:
        if root in visited:
            continue

        visited.add(root)
        on_stack.add(root)
        stack = [(root, iter(adjacency.get(root, ())))]

        while stack:
            node, neighbors = stack[-1]
            advanced = False
            for neighbor in neighbors:
                if neighbor in on_stack:
                    logger.debug("Back-edge %s -> %s closes a cycle.", node, neighbor)
                    return True
                if neighbor not in visited:
                    visited.add(neighbor)
                    on_stack.add(neighbor)
                    stack.append((neighbor, iter(adjacency.get(neighbor, ()))))
                    advanced = True
                    break
            if not advanced:
                on_stack.discard(node)
                stack.pop()

    return False


# =========================================================================
# Topological ordering
# =========================================================================


def topological_sort_kahn(adjacency: Adjacency) -> Optional[List[str]]:
    """Order nodes so that every edge's source precedes its target.

    Returns ``None`` when some node never reaches in-degree zero, i.e. the
    graph contains a cycle. A partial order is never returned.
    """
    in_degree: Dict[str, int] = {node: 0 for node in adjacency}
    for neighbors in adjacency.values():
        for neighbor in neighbors:
            in_degree[neighbor] = in_degree.get(neighbor, 0) + 1

    queue = deque(node for node, degree in in_degree.items() if degree == 0)
    ordered: List[str] = []

    while queue:
        node = queue.popleft()
        ordered.append(node)
        for neighbor in adjacency.get(node, ()):
            in_degree[neighbor] -= 1
            if in_degree[neighbor] == 0:
                queue.append(neighbor)

    if len(ordered) != len(in_degree):
        logger.debug(
            "Kahn ordering stalled: %d of %d nodes placed.",
            len(ordered), len(in_degree),
        )
        return None
    return ordered


# =========================================================================
# networkx metrics
# =========================================================================


def to_digraph(adjacency: Adjacency) -> nx.DiGraph:
    G = nx.DiGraph()
    G.add_nodes_from(adjacency)
    for node, neighbors in adjacency.items():
        for neighbor in neighbors:
            G.add_edge(node, neighbor)
    return G


def compute_metrics(adjacency: Adjacency, n_concepts: int) -> Dict[str, Any]:
    """Compute graph summary metrics.

    Returns dict with: total_concepts, total_edges, avg_out_degree,
    max_depth, isolated_nodes_count, is_dag.
    """
    G = to_digraph(adjacency)
    G.remove_nodes_from([n for n in list(G.nodes) if G.degree(n) == 0])

    total_edges = G.number_of_edges()
    nodes_in_graph = G.number_of_nodes()
    is_dag = nx.is_directed_acyclic_graph(G)

    avg_out = total_edges / nodes_in_graph if nodes_in_graph > 0 else 0.0

    if total_edges > 0 and is_dag:
        max_depth = nx.dag_longest_path_length(G)
    else:
        max_depth = 0

    return {
        "total_concepts": n_concepts,
        "total_edges": total_edges,
        "avg_out_degree": round(avg_out, 4),
        "max_depth": max_depth,
        "isolated_nodes_count": max(0, n_concepts - nodes_in_graph),
        "is_dag": is_dag,
    }
