"""Pure invariant checks shared by the graph builder and the stage planner.

None of these mutate their inputs; each failure raises a typed PlanningError.
"""
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from .errors import CyclicDependencyError, MalformedIntentError, RuleConflictError, UnplannableError
from .lifecycle import lifecycle
from .nodes import Edge, Node, Op, OpBinding, same_stage_groups
from .schemas import STRICT_EDGE_KINDS, phase_rank

if TYPE_CHECKING:
    from .planner import Plan

ORDERING_EDGE_KINDS = {"OP", "PRECEDES", "PRECEDES_STRICT"}


def check_monotonic_status(kind: str, direction: str, statuses: Sequence[str]) -> None:
    order = lifecycle(kind, direction)
    positions = []
    for status in statuses:
        if status not in order:
            raise MalformedIntentError(f"{kind} status {status} is not on the {direction} lifecycle")
        positions.append(order.index(status))
    for prev, nxt in zip(positions, positions[1:]):
        if nxt != prev + 1:
            raise MalformedIntentError(
                f"{kind} statuses {list(statuses)} do not follow the {direction} lifecycle",
                trail=[" -> ".join(order)],
            )


def check_edge_endpoints(node_count: int, edges: Iterable[Edge], provenance: Dict[Edge, Tuple[str, ...]]) -> None:
    for edge in edges:
        if not (0 <= edge.src < node_count and 0 <= edge.dst < node_count):
            rules = provenance.get(edge, ())
            raise RuleConflictError(
                f"edge {edge.src}->{edge.dst} references a node outside the graph",
                rule=rules[0] if rules else None,
            )


def check_monotone_emission(rule: str, previous: Set[object], current: Set[object]) -> None:
    """A rule fed a superset of facts must never drop a fact it already emitted."""
    retracted = previous - current
    if retracted:
        raise RuleConflictError(
            f"rule {rule} retracted {len(retracted)} previously emitted fact(s)",
            rule=rule,
            trail=sorted(repr(fact) for fact in retracted)[:20],
        )


def check_op_bindings(
    nodes: Sequence[Node],
    bindings: Iterable[OpBinding],
    provenance: Dict[OpBinding, Tuple[str, ...]],
) -> Dict[int, Op]:
    ops: Dict[int, Op] = {}
    owners: Dict[int, str] = {}
    for binding in sorted(bindings, key=lambda b: (b.node, b.op.name)):
        rule = (provenance.get(binding) or ("?",))[0]
        if not (0 <= binding.node < len(nodes)):
            raise RuleConflictError(f"op {binding.op.name} bound to unknown node {binding.node}", rule=rule)
        node = nodes[binding.node]
        if node.boundary:
            raise RuleConflictError(
                f"op {binding.op.name} bound to already reached node {node.describe()}", rule=rule
            )
        existing = ops.get(binding.node)
        if existing is not None and existing != binding.op:
            raise RuleConflictError(
                f"node {node.describe()} has contradictory op bindings",
                rule=rule,
                trail=[f"{owners[binding.node]}: {existing.name}", f"{rule}: {binding.op.name}"],
            )
        ops[binding.node] = binding.op
        owners[binding.node] = rule
    missing = [node.describe() for node in nodes if not node.boundary and node.index not in ops]
    if missing:
        raise RuleConflictError(f"{len(missing)} node(s) have no op binding", trail=missing)
    return ops


def _describe_edge(nodes: Sequence[Node], edge: Edge, provenance: Dict[Edge, Tuple[str, ...]]) -> str:
    rules = ", ".join(provenance.get(edge, ()))
    return f"{nodes[edge.src].describe()} -[{edge.kind}]-> {nodes[edge.dst].describe()} ({rules})"


def check_acyclic(
    nodes: Sequence[Node],
    edges: Iterable[Edge],
    provenance: Optional[Dict[Edge, Tuple[str, ...]]] = None,
) -> None:
    """Depth-first search over same-stage groups; raises naming the offending chain.

    The error trail lists one edge per hop of the cycle with the rules that
    emitted it.
    """
    edges = sorted(edges)
    provenance = provenance or {}
    groups = same_stage_groups(nodes, edges)
    adjacency: Dict[int, Set[int]] = {}
    witness: Dict[Tuple[int, int], Edge] = {}
    for edge in edges:
        if edge.kind not in ORDERING_EDGE_KINDS:
            continue
        src_group, dst_group = groups[edge.src], groups[edge.dst]
        if src_group == dst_group:
            if edge.kind in STRICT_EDGE_KINDS:
                chain = [nodes[edge.src].describe(), nodes[edge.dst].describe()]
                raise CyclicDependencyError(
                    f"{edge.kind} edge {chain[0]} -> {chain[1]} inside one same-stage group",
                    chain=chain + [chain[0]],
                    trail=[_describe_edge(nodes, edge, provenance)],
                )
            continue
        adjacency.setdefault(src_group, set()).add(dst_group)
        witness.setdefault((src_group, dst_group), edge)

    WHITE, GREY, BLACK = 0, 1, 2
    color = {group: WHITE for group in set(groups)}
    for root in sorted(color):
        if color[root] != WHITE:
            continue
        color[root] = GREY
        path = [root]
        stack = [iter(sorted(adjacency.get(root, ())))]
        while stack:
            nxt = next(stack[-1], None)
            if nxt is None:
                color[path.pop()] = BLACK
                stack.pop()
                continue
            if color[nxt] == GREY:
                cycle = path[path.index(nxt):] + [nxt]
                chain = [nodes[group].describe() for group in cycle]
                raise CyclicDependencyError(
                    f"dependency cycle: {' -> '.join(chain)}",
                    chain=chain,
                    trail=[
                        _describe_edge(nodes, witness[(a, b)], provenance)
                        for a, b in zip(cycle, cycle[1:])
                    ],
                )
            if color[nxt] == WHITE:
                color[nxt] = GREY
                path.append(nxt)
                stack.append(iter(sorted(adjacency.get(nxt, ()))))


def check_phase_ordering(plan: "Plan") -> None:
    previous: Optional[str] = None
    for stage in plan.stages:
        if previous is not None and phase_rank(stage.phase) < phase_rank(previous):
            raise UnplannableError(
                f"stage {stage.ordinal} in phase {stage.phase} follows a {previous} stage",
                remaining=[],
            )
        previous = stage.phase


def check_revertibility(plan: "Plan") -> None:
    seen_non_revertible = False
    for stage in plan.stages:
        if stage.revertible and seen_non_revertible:
            raise UnplannableError(
                f"stage {stage.ordinal} is revertible after a non-revertible stage",
                remaining=[],
            )
        seen_non_revertible = seen_non_revertible or not stage.revertible


def check_unique_ops(plan: "Plan") -> None:
    seen: Dict[Tuple[str, str], int] = {}
    for stage in plan.stages:
        elements: List[str] = []
        for op in stage.ops:
            key = (op.element_id, op.to_status)
            if key in seen:
                raise RuleConflictError(
                    f"op for {op.element_id}@{op.to_status} planned in stages {seen[key]} and {stage.ordinal}"
                )
            seen[key] = stage.ordinal
            elements.append(op.element_id)
        if len(elements) != len(set(elements)):
            raise RuleConflictError(f"stage {stage.ordinal} moves one element through two transitions")


def validate_plan(plan: "Plan") -> None:
    check_phase_ordering(plan)
    check_revertibility(plan)
    check_unique_ops(plan)
