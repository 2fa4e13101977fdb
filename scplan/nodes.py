from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Tuple

from .schemas import ClusterVersion, Element, TargetState


def freeze(value: Any) -> Any:
    if isinstance(value, dict):
        return tuple(sorted((str(k), freeze(v)) for k, v in value.items()))
    if isinstance(value, (list, tuple)):
        return tuple(freeze(v) for v in value)
    if isinstance(value, (set, frozenset)):
        return tuple(sorted(freeze(v) for v in value))
    return value


def _thaw(value: Any) -> Any:
    if isinstance(value, tuple):
        return [_thaw(v) for v in value]
    return value


@dataclass(frozen=True)
class Node:
    """One (element, status) vertex, addressed by its arena index."""

    index: int
    element_id: str
    kind: str
    direction: str
    status: str
    phase: str = "STATEMENT"
    revertible: bool = True
    boundary: bool = False

    def describe(self) -> str:
        return f"{self.element_id}@{self.status}"


@dataclass(frozen=True, order=True)
class Edge:
    src: int
    dst: int
    kind: str


@dataclass(frozen=True)
class Op:
    name: str
    op_type: str
    element_id: str
    from_status: str
    to_status: str
    params: Tuple[Tuple[str, Any], ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "op_type": self.op_type,
            "element_id": self.element_id,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "params": {key: _thaw(value) for key, value in self.params},
        }


@dataclass(frozen=True)
class OpBinding:
    node: int
    op: Op


class GraphView:
    """Read-only view of the graph state handed to rule predicates."""

    def __init__(
        self,
        nodes: Sequence[Node],
        targets: Mapping[str, TargetState],
        edges: FrozenSet[Edge],
        ops: Mapping[int, Op],
        version: ClusterVersion,
    ) -> None:
        self.nodes: Tuple[Node, ...] = tuple(nodes)
        self.targets = targets
        self.edges = edges
        self.ops = ops
        self.version = version

    def element(self, element_id: str) -> Element:
        return self.targets[element_id].element

    def select(
        self,
        kind: Optional[str] = None,
        status: Optional[str] = None,
        direction: Optional[str] = None,
        include_boundary: bool = True,
    ) -> List[Node]:
        out: List[Node] = []
        for node in self.nodes:
            if kind is not None and node.kind != kind:
                continue
            if status is not None and node.status != status:
                continue
            if direction is not None and node.direction != direction:
                continue
            if node.boundary and not include_boundary:
                continue
            out.append(node)
        return out

    def edges_of_kind(self, kind: str) -> List[Edge]:
        return sorted(edge for edge in self.edges if edge.kind == kind)


def same_stage_groups(
    nodes: Sequence[Node], edges: Iterable[Edge], include_boundary: bool = True
) -> List[int]:
    """Union-find over SAME_STAGE edges; each group is named by its smallest node index."""
    parent = list(range(len(nodes)))

    def find(idx: int) -> int:
        while parent[idx] != idx:
            parent[idx] = parent[parent[idx]]
            idx = parent[idx]
        return idx

    for edge in edges:
        if edge.kind != "SAME_STAGE":
            continue
        if not include_boundary and (nodes[edge.src].boundary or nodes[edge.dst].boundary):
            continue
        a, b = find(edge.src), find(edge.dst)
        if a != b:
            parent[max(a, b)] = min(a, b)
    return [find(idx) for idx in range(len(nodes))]
