"""Pure graph analysis over a workflow's nodes and edges.

Nodes are dicts with at least ``id``; edges are dicts with ``source`` and
``target``. Nothing here touches storage or the queues.
"""

from collections import deque
from typing import Dict, Any, List, Sequence


class WorkflowContainsCyclesError(ValueError):
    """A workflow graph has at least one cycle (self-loops included)."""

    def __init__(self, message: str = "Workflow contains cycles"):
        super().__init__(message)


def _adjacency(nodes: Sequence[Dict[str, Any]], edges: Sequence[Dict[str, Any]]) -> Dict[str, List[str]]:
    adjacency: Dict[str, List[str]] = {node["id"]: [] for node in nodes}
    for edge in edges:
        source, target = edge["source"], edge["target"]
        adjacency.setdefault(source, []).append(target)
        adjacency.setdefault(target, [])
    return adjacency


def detect_cycles(nodes: Sequence[Dict[str, Any]], edges: Sequence[Dict[str, Any]]) -> bool:
    """True when the directed graph induced by ``edges`` has a cycle.

    Iterative three-colour DFS so deep linear graphs do not hit the
    recursion limit. A self-loop is found as a back edge to the node itself.
    """
    adjacency = _adjacency(nodes, edges)
    WHITE, GREY, BLACK = 0, 1, 2
    colour = {node_id: WHITE for node_id in adjacency}

    for start in adjacency:
        if colour[start] != WHITE:
            continue
        colour[start] = GREY
        stack = [(start, iter(adjacency[start]))]
        while stack:
            node_id, children = stack[-1]
            advanced = False
            for child in children:
                if colour[child] == GREY:
                    return True
                if colour[child] == WHITE:
                    colour[child] = GREY
                    stack.append((child, iter(adjacency[child])))
                    advanced = True
                    break
            if not advanced:
                colour[node_id] = BLACK
                stack.pop()

    return False


def build_dependency_map(nodes: Sequence[Dict[str, Any]],
                         edges: Sequence[Dict[str, Any]]) -> Dict[str, List[str]]:
    """Map each node id to the sources of its incoming edges, in edge order.

    Nodes without incoming edges have no entry. Duplicate edges between the
    same pair contribute the source once.
    """
    dependencies: Dict[str, List[str]] = {}
    for edge in edges:
        sources = dependencies.setdefault(edge["target"], [])
        if edge["source"] not in sources:
            sources.append(edge["source"])
    return dependencies


def topological_sort(nodes: Sequence[Dict[str, Any]], edges: Sequence[Dict[str, Any]]) -> List[str]:
    """Kahn's algorithm; ready nodes are released in node-array order.

    Callers must run :func:`detect_cycles` first. On a cyclic graph the nodes
    on the cycle are simply left out of the result.
    """
    order_index = {node["id"]: i for i, node in enumerate(nodes)}
    in_degree = {node["id"]: 0 for node in nodes}
    successors: Dict[str, List[str]] = {node["id"]: [] for node in nodes}

    for edge in edges:
        source, target = edge["source"], edge["target"]
        if source not in in_degree or target not in in_degree:
            continue
        successors[source].append(target)
        in_degree[target] += 1

    # Sorted insertion keeps the ready set ordered by original position
    ready = deque(node["id"] for node in nodes if in_degree[node["id"]] == 0)
    order: List[str] = []

    while ready:
        node_id = ready.popleft()
        order.append(node_id)
        released = []
        for target in successors[node_id]:
            in_degree[target] -= 1
            if in_degree[target] == 0:
                released.append(target)
        if released:
            merged = sorted(list(ready) + released, key=order_index.__getitem__)
            ready = deque(merged)

    return order


def validate_graph(nodes: Sequence[Dict[str, Any]], edges: Sequence[Dict[str, Any]]) -> None:
    """Raise ``ValueError`` for duplicate node ids or edges to unknown nodes."""
    seen = set()
    for node in nodes:
        if node.get("id") in seen:
            raise ValueError(f"Duplicate node id: {node.get('id')}")
        seen.add(node.get("id"))
    for edge in edges:
        for end in ("source", "target"):
            if edge.get(end) not in seen:
                raise ValueError(f"Edge {end} references unknown node: {edge.get(end)}")
