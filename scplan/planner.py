import json
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple, Union

from .builtin_rules import default_rule_set
from .config import PlannerSettings
from .errors import PlanningError, UnplannableError
from .graph import Graph, GraphBuilder
from .lifecycle import executed_transitions
from .nodes import Node, Op, same_stage_groups
from .rules import RuleSet, validate_target_version
from .schemas import PHASE_ORDER, STRICT_EDGE_KINDS, PlanningSnapshot, op_type_rank, phase_rank
from .validation import validate_plan

logger = logging.getLogger("scplan.planner")

MergePolicy = Callable[[Node, Op], Any]


def merge_by_op_type(node: Node, op: Op) -> Any:
    return op_type_rank(op.op_type)


def merge_all(node: Node, op: Op) -> Any:
    return 0


MERGE_POLICIES: Dict[str, MergePolicy] = {
    "by_op_type": merge_by_op_type,
    "min_stages": merge_all,
}


@dataclass(frozen=True)
class Stage:
    ordinal: int
    phase: str
    revertible: bool
    ops: Tuple[Op, ...] = ()

    @property
    def op_types(self) -> List[str]:
        return sorted({op.op_type for op in self.ops}, key=op_type_rank)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ordinal": self.ordinal,
            "phase": self.phase,
            "revertible": self.revertible,
            "ops": [op.to_dict() for op in self.ops],
        }


@dataclass(frozen=True)
class Plan:
    stages: Tuple[Stage, ...] = field(default_factory=tuple)

    @property
    def is_empty(self) -> bool:
        return not self.stages

    @property
    def revertible(self) -> bool:
        return all(stage.revertible for stage in self.stages)

    @property
    def first_non_revertible(self) -> Optional[int]:
        for stage in self.stages:
            if not stage.revertible:
                return stage.ordinal
        return None

    def ops(self) -> List[Op]:
        return [op for stage in self.stages for op in stage.ops]

    def stage_of(self, element_id: str, status: str) -> Optional[int]:
        for stage in self.stages:
            for op in stage.ops:
                if op.element_id == element_id and op.to_status == status:
                    return stage.ordinal
        return None

    def without_first_stage(self) -> "Plan":
        return Plan(tuple(replace(stage, ordinal=idx) for idx, stage in enumerate(self.stages[1:])))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stages": [stage.to_dict() for stage in self.stages],
            "revertible": self.revertible,
            "first_non_revertible": self.first_non_revertible,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, ensure_ascii=True, separators=(",", ":"))


def _initial_state(snapshot: PlanningSnapshot) -> Tuple[int, bool]:
    """Phase floor and revertibility reported by the executor.

    Elements still mid-lifecycle add the history of their own executed
    transitions; elements already at their target take no part in planning.
    """
    floor = phase_rank(snapshot.phase)
    revertible = snapshot.revertible
    for target in snapshot.targets:
        if target.at_target:
            continue
        for transition in executed_transitions(target):
            floor = max(floor, phase_rank(transition.phase))
            revertible = revertible and transition.revertible
    return floor, revertible


class StagePlanner:
    """Constrained topological layering of a graph into phase-tagged stages."""

    def __init__(self, merge_policy: Union[str, MergePolicy] = "by_op_type") -> None:
        if isinstance(merge_policy, str):
            if merge_policy not in MERGE_POLICIES:
                raise ValueError(f"unknown merge policy {merge_policy}")
            merge_policy = MERGE_POLICIES[merge_policy]
        self.merge_policy = merge_policy

    def plan(self, graph: Graph) -> Plan:
        nodes = graph.nodes
        floor, revertible = _initial_state(graph.snapshot)
        groups = same_stage_groups(nodes, graph.edges, include_boundary=False)
        members: Dict[int, List[int]] = {}
        for node in nodes:
            if not node.boundary:
                members.setdefault(groups[node.index], []).append(node.index)

        blocked, markers = self._blocked_groups(graph, groups)
        placed: Set[int] = set()
        pending: Set[int] = set(members)
        stages: List[Stage] = []

        def satisfied(src: int) -> bool:
            return nodes[src].boundary or groups[src] in placed

        while pending:
            candidates = {
                gid
                for gid in pending
                if gid not in blocked
                and all(
                    satisfied(edge.src)
                    for idx in members[gid]
                    for edge in graph.incoming(idx)
                    if edge.kind in STRICT_EDGE_KINDS and groups[edge.src] != gid
                )
            }
            candidates = self._prune(graph, groups, members, candidates, satisfied)
            if not candidates:
                remaining = sorted(nodes[idx].describe() for gid in pending for idx in members[gid])
                raise UnplannableError(
                    f"{len(remaining)} node(s) cannot be placed in any stage",
                    remaining=remaining,
                    markers=markers,
                    trail=self._blocking_trail(graph, groups, pending, members, satisfied),
                )

            keys = {gid: self._key(graph, members[gid], floor) for gid in candidates}
            chosen: Set[int] = set()
            key: Tuple[Any, ...] = ()
            for key in sorted(set(keys.values())):
                chosen = self._prune(
                    graph, groups, members, {gid for gid in candidates if keys[gid] == key}, satisfied
                )
                if chosen:
                    break

            floor = key[0]
            revertible = revertible and not key[1]
            ops = sorted(
                (graph.op(idx) for gid in chosen for idx in members[gid]),
                key=lambda op: (op.element_id, op.to_status),
            )
            stage = Stage(len(stages), PHASE_ORDER[floor], revertible, tuple(ops))
            logger.debug(
                "Stage %d (%s, revertible=%s): %s",
                stage.ordinal,
                stage.phase,
                stage.revertible,
                ", ".join(f"{op.element_id}->{op.to_status}" for op in ops),
            )
            stages.append(stage)
            placed |= chosen
            pending -= chosen
        return Plan(tuple(stages))

    def _key(self, graph: Graph, indexes: List[int], floor: int) -> Tuple[Any, ...]:
        nodes = [graph.nodes[idx] for idx in indexes]
        phase = max([floor] + [phase_rank(node.phase) for node in nodes])
        irreversible = not all(node.revertible for node in nodes)
        merge = min(self.merge_policy(node, graph.op(node.index)) for node in nodes)
        return (phase, irreversible, merge)

    @staticmethod
    def _prune(
        graph: Graph,
        groups: List[int],
        members: Dict[int, List[int]],
        candidates: Set[int],
        satisfied: Callable[[int], bool],
    ) -> Set[int]:
        """Greatest subset whose non-strict predecessors are placed or inside the subset."""
        result = set(candidates)
        changed = True
        while changed:
            changed = False
            for gid in sorted(result):
                for idx in members[gid]:
                    if any(
                        edge.kind == "PRECEDES"
                        and groups[edge.src] != gid
                        and not satisfied(edge.src)
                        and groups[edge.src] not in result
                        for edge in graph.incoming(idx)
                    ):
                        result.discard(gid)
                        changed = True
                        break
        return result

    @staticmethod
    def _blocked_groups(graph: Graph, groups: List[int]) -> Tuple[Set[int], List[str]]:
        blocked: Set[int] = set()
        markers: List[str] = []
        for edge in graph.edges:
            if edge.kind != "UNSATISFIABLE":
                continue
            src, dst = graph.nodes[edge.src], graph.nodes[edge.dst]
            pending_ends = [node for node in (src, dst) if not node.boundary]
            if not pending_ends:
                continue
            rules = ", ".join(graph.provenance(edge)) or "?"
            markers.append(f"{src.describe()} x {dst.describe()} ({rules})")
            for node in pending_ends:
                blocked.add(groups[node.index])
        return blocked, markers

    @staticmethod
    def _blocking_trail(
        graph: Graph,
        groups: List[int],
        pending: Set[int],
        members: Dict[int, List[int]],
        satisfied: Callable[[int], bool],
    ) -> List[str]:
        trail: List[str] = []
        for gid in sorted(pending):
            for idx in members[gid]:
                for edge in graph.incoming(idx):
                    if edge.kind in ("OP", "PRECEDES", "PRECEDES_STRICT") and not satisfied(edge.src):
                        trail.append(graph.describe_edge(edge))
        return trail


def make_plan(
    snapshot: PlanningSnapshot,
    rule_set: Optional[RuleSet] = None,
    settings: Optional[PlannerSettings] = None,
) -> Plan:
    """Build the graph for a snapshot and lay it out into stages."""
    settings = settings or PlannerSettings()
    rule_set = rule_set if rule_set is not None else default_rule_set()
    try:
        validate_target_version(snapshot.version, settings.min_supported_version, settings.binary_version)
        graph = GraphBuilder(rule_set, max_passes=settings.max_fixpoint_passes).build(snapshot)
        plan = StagePlanner(settings.merge_policy).plan(graph)
        if settings.validate_plan:
            validate_plan(plan)
    except PlanningError as exc:
        logger.error("Planning failed (%s): %s", type(exc).__name__, exc.message)
        for line in exc.trail:
            logger.error("  %s", line)
        raise
    logger.info(
        "Planned %d stage(s), %d op(s) over %d target(s) after %d fixpoint pass(es); first non-revertible stage: %s",
        len(plan.stages),
        len(plan.ops()),
        len(snapshot.targets),
        graph.passes,
        plan.first_non_revertible,
    )
    return plan


def apply_stage(snapshot: PlanningSnapshot, stage: Stage) -> PlanningSnapshot:
    """Snapshot the executor would report after running one stage."""
    statuses = {op.element_id: op.to_status for op in stage.ops}
    return snapshot.with_statuses(statuses, phase=stage.phase, revertible=stage.revertible)


def snapshot_from_triples(
    triples: Iterable[Tuple[Any, str, str]],
    version: Optional[str] = None,
    phase: str = "STATEMENT",
    settings: Optional[PlannerSettings] = None,
) -> PlanningSnapshot:
    settings = settings or PlannerSettings()
    return PlanningSnapshot.model_validate(
        {
            "targets": [list(triple) for triple in triples],
            "version": version or settings.default_cluster_version,
            "phase": phase,
        }
    )
