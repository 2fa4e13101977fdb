import logging
from typing import Dict, FrozenSet, List, Optional, Set, Tuple

from .errors import MalformedIntentError, PlanningError, RuleConflictError
from .explain import describe_graph
from .lifecycle import direction_for, effective_status, pending_statuses, pending_transitions
from .nodes import Edge, GraphView, Node, Op, OpBinding
from .rules import Fact, RuleSet
from .schemas import PlanningSnapshot, TargetState
from .validation import (
    check_acyclic,
    check_edge_endpoints,
    check_monotone_emission,
    check_monotonic_status,
    check_op_bindings,
)

logger = logging.getLogger("scplan.graph")

DEFAULT_MAX_PASSES = 64


class Graph:
    """Immutable dependency graph over (element, status) nodes."""

    def __init__(
        self,
        nodes: Tuple[Node, ...],
        edges: FrozenSet[Edge],
        ops: Dict[int, Op],
        snapshot: PlanningSnapshot,
        provenance: Dict[Edge, Tuple[str, ...]],
        passes: int = 0,
    ) -> None:
        self._nodes = nodes
        self._edges = tuple(sorted(edges))
        self._ops = dict(ops)
        self._snapshot = snapshot
        self._provenance = dict(provenance)
        self._passes = passes
        self._incoming: Dict[int, List[Edge]] = {node.index: [] for node in nodes}
        self._outgoing: Dict[int, List[Edge]] = {node.index: [] for node in nodes}
        for edge in self._edges:
            self._outgoing[edge.src].append(edge)
            self._incoming[edge.dst].append(edge)

    @property
    def nodes(self) -> Tuple[Node, ...]:
        return self._nodes

    @property
    def edges(self) -> Tuple[Edge, ...]:
        return self._edges

    @property
    def snapshot(self) -> PlanningSnapshot:
        return self._snapshot

    @property
    def passes(self) -> int:
        return self._passes

    def op(self, index: int) -> Optional[Op]:
        return self._ops.get(index)

    def incoming(self, index: int) -> List[Edge]:
        return list(self._incoming[index])

    def outgoing(self, index: int) -> List[Edge]:
        return list(self._outgoing[index])

    def provenance(self, edge: Edge) -> Tuple[str, ...]:
        return self._provenance.get(edge, ())

    def describe_edge(self, edge: Edge) -> str:
        src, dst = self._nodes[edge.src], self._nodes[edge.dst]
        rules = ", ".join(self.provenance(edge))
        return f"{src.describe()} -[{edge.kind}]-> {dst.describe()} ({rules})"

    def pending(self) -> List[Node]:
        return [node for node in self._nodes if not node.boundary]

    def __len__(self) -> int:
        return len(self._nodes)


def _check_unique_ids(snapshot: PlanningSnapshot) -> None:
    seen: Set[str] = set()
    dupes: List[str] = []
    for target in snapshot.targets:
        if target.element_id in seen:
            dupes.append(target.element_id)
        seen.add(target.element_id)
    if dupes:
        raise MalformedIntentError(
            f"element ids appear more than once: {', '.join(sorted(set(dupes)))}",
            trail=sorted(set(dupes)),
        )


def build_nodes(targets: List[TargetState]) -> Tuple[Tuple[Node, ...], Set[Edge]]:
    """Lay out the node arena: per element, a boundary node then one node per pending status."""
    nodes: List[Node] = []
    op_edges: Set[Edge] = set()
    for target in targets:
        statuses = pending_statuses(target)
        if not statuses:
            continue
        direction = direction_for(target)
        check_monotonic_status(target.element.kind, direction, statuses)
        kind = target.element.kind
        nodes.append(
            Node(
                index=len(nodes),
                element_id=target.element_id,
                kind=kind,
                direction=direction,
                status=effective_status(target),
                boundary=True,
            )
        )
        for transition in pending_transitions(target):
            index = len(nodes)
            nodes.append(
                Node(
                    index=index,
                    element_id=target.element_id,
                    kind=kind,
                    direction=direction,
                    status=transition.to_status,
                    phase=transition.phase,
                    revertible=transition.revertible,
                )
            )
            op_edges.add(Edge(index - 1, index, "OP"))
    return tuple(nodes), op_edges


class GraphBuilder:
    """Applies every active rule until no pass adds a fact, then validates the result."""

    def __init__(self, rule_set: RuleSet, *, max_passes: int = DEFAULT_MAX_PASSES) -> None:
        self.rule_set = rule_set
        self.max_passes = max(1, max_passes)

    def build(self, snapshot: PlanningSnapshot) -> Graph:
        _check_unique_ids(snapshot)
        targets = sorted(snapshot.targets, key=lambda t: t.element_id)
        by_id = {target.element_id: target for target in targets}
        nodes, op_edges = build_nodes(targets)
        rules = self.rule_set.active(snapshot.version)
        logger.debug(
            "Building graph: %d targets, %d nodes, %d active rules at version %s",
            len(targets),
            len(nodes),
            len(rules),
            snapshot.version,
        )

        edges: Set[Edge] = set(op_edges)
        bindings: Set[OpBinding] = set()
        provenance: Dict[Edge, Set[str]] = {edge: {"lifecycle"} for edge in op_edges}
        binding_provenance: Dict[OpBinding, Set[str]] = {}
        emitted: Dict[str, Set[Fact]] = {}
        passes = 0
        converged = not nodes
        while not converged:
            if passes >= self.max_passes:
                raise RuleConflictError(
                    f"rule set did not reach a fixpoint within {self.max_passes} passes",
                    trail=[rule.name for rule in rules],
                )
            passes += 1
            view = GraphView(
                nodes,
                by_id,
                frozenset(edges),
                {b.node: b.op for b in sorted(bindings, key=lambda b: (b.node, b.op.name))},
                snapshot.version,
            )
            added = 0
            for rule in rules:
                facts = set(self._derive(rule, view))
                check_monotone_emission(rule.name, emitted.get(rule.name, set()), facts)
                emitted[rule.name] = facts
                for fact in facts:
                    if isinstance(fact, Edge):
                        check_edge_endpoints(len(nodes), [fact], {fact: (rule.name,)})
                        provenance.setdefault(fact, set()).add(rule.name)
                        if fact not in edges:
                            edges.add(fact)
                            added += 1
                    elif isinstance(fact, OpBinding):
                        binding_provenance.setdefault(fact, set()).add(rule.name)
                        if fact not in bindings:
                            bindings.add(fact)
                            added += 1
                    else:
                        raise RuleConflictError(
                            f"rule {rule.name} emitted unsupported fact {fact!r}", rule=rule.name
                        )
            logger.debug("Fixpoint pass %d added %d fact(s)", passes, added)
            converged = added == 0

        frozen_provenance = {edge: tuple(sorted(names)) for edge, names in provenance.items()}
        ops = check_op_bindings(
            nodes,
            bindings,
            {binding: tuple(sorted(names)) for binding, names in binding_provenance.items()},
        )
        check_acyclic(nodes, edges, frozen_provenance)
        graph = Graph(nodes, frozenset(edges), ops, snapshot, frozen_provenance, passes)
        if logger.isEnabledFor(logging.DEBUG):
            for line in describe_graph(graph):
                logger.debug("  %s", line)
        return graph

    @staticmethod
    def _derive(rule, view: GraphView) -> List[Fact]:
        try:
            return rule.derive(view)
        except PlanningError:
            raise
        except Exception as exc:
            raise RuleConflictError(f"rule {rule.name} failed: {exc}", rule=rule.name) from exc


def build_graph(
    snapshot: PlanningSnapshot, rule_set: RuleSet, *, max_passes: int = DEFAULT_MAX_PASSES
) -> Graph:
    return GraphBuilder(rule_set, max_passes=max_passes).build(snapshot)
