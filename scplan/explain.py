from typing import TYPE_CHECKING, Any, Dict, List

if TYPE_CHECKING:
    from .graph import Graph
    from .planner import Plan


def plan_overview(plan: "Plan") -> Dict[str, Any]:
    stages_by_phase: Dict[str, int] = {}
    ops_by_type: Dict[str, int] = {}
    ops_by_element: Dict[str, int] = {}
    for stage in plan.stages:
        stages_by_phase[stage.phase] = stages_by_phase.get(stage.phase, 0) + 1
        for op in stage.ops:
            ops_by_type[op.op_type] = ops_by_type.get(op.op_type, 0) + 1
            ops_by_element[op.element_id] = ops_by_element.get(op.element_id, 0) + 1
    return {
        "stage_count": len(plan.stages),
        "op_count": sum(ops_by_type.values()),
        "stages_by_phase": stages_by_phase,
        "ops_by_type": ops_by_type,
        "ops_by_element": dict(sorted(ops_by_element.items())),
        "revertible": plan.revertible,
        "first_non_revertible": plan.first_non_revertible,
    }


def describe_plan(plan: "Plan") -> List[str]:
    lines: List[str] = []
    for stage in plan.stages:
        flag = "revertible" if stage.revertible else "non-revertible"
        lines.append(f"stage {stage.ordinal} [{stage.phase}, {flag}]")
        for op in stage.ops:
            lines.append(f"  {op.name} {op.element_id}: {op.from_status} -> {op.to_status}")
    return lines


def describe_graph(graph: "Graph") -> List[str]:
    return [graph.describe_edge(edge) for edge in graph.edges]
