import logging

import pytest

from scplan.builtin_rules import default_rule_set
from scplan.errors import CyclicDependencyError, MalformedIntentError, RuleConflictError
from scplan.explain import describe_graph
from scplan.graph import GraphBuilder, build_graph
from scplan.nodes import Edge, same_stage_groups
from scplan.rules import DepRule, DerivedRule, OpRule, RuleSet
from tests.fakes import adding, column, dropping, primary_index, snapshot


def index_of(graph, element_id, status):
    for node in graph.nodes:
        if node.element_id == element_id and node.status == status:
            return node.index
    raise KeyError((element_id, status))


def test_node_arena_layout(add_column_snapshot, rules):
    graph = build_graph(add_column_snapshot, rules)
    described = [node.describe() for node in graph.nodes]
    assert described == [
        "column-1-2@ABSENT",
        "column-1-2@DELETE_ONLY",
        "column-1-2@WRITE_ONLY",
        "column-1-2@PUBLIC",
        "pk-1-1@PUBLIC",
        "pk-1-1@WRITE_ONLY",
        "pk-1-1@DELETE_ONLY",
        "pk-1-1@ABSENT",
        "pk-1-2@ABSENT",
        "pk-1-2@DELETE_ONLY",
        "pk-1-2@WRITE_ONLY",
        "pk-1-2@BACKFILLED",
        "pk-1-2@VALIDATED",
        "pk-1-2@PUBLIC",
    ]
    assert [node.index for node in graph.pending() if node.boundary] == []
    assert graph.op(0) is None
    assert graph.op(11).op_type == "BACKFILL"
    assert graph.op(1).from_status == "ABSENT"
    assert Edge(0, 1, "OP") in graph.edges
    assert Edge(0, 1, "OP") in graph.outgoing(0)
    assert graph.incoming(0) == []


def test_same_stage_closure_reaches_fixpoint(add_column_snapshot, rules):
    graph = build_graph(add_column_snapshot, rules)
    col_public = index_of(graph, "column-1-2", "PUBLIC")
    old_pk = index_of(graph, "pk-1-1", "WRITE_ONLY")
    new_pk = index_of(graph, "pk-1-2", "PUBLIC")
    assert Edge(col_public, new_pk, "SAME_STAGE") in graph.edges
    assert Edge(old_pk, col_public, "SAME_STAGE") in graph.edges
    assert "column public with primary index" in graph.provenance(Edge(col_public, new_pk, "SAME_STAGE"))
    assert "same-stage closure" in graph.provenance(Edge(old_pk, col_public, "SAME_STAGE"))
    groups = same_stage_groups(graph.nodes, graph.edges)
    assert groups[col_public] == groups[old_pk] == groups[new_pk]
    assert graph.passes >= 3


def test_swap_is_strict_below_gate_version(rules):
    snap = snapshot(
        adding(column(1, 2)),
        adding(primary_index(1, 2, [1, 2])),
        dropping(primary_index(1, 1, [1])),
        version="20.2",
    )
    graph = build_graph(snap, rules)
    new_pk = index_of(graph, "pk-1-2", "PUBLIC")
    old_pk = index_of(graph, "pk-1-1", "WRITE_ONLY")
    assert Edge(new_pk, old_pk, "PRECEDES_STRICT") in graph.edges
    assert Edge(new_pk, old_pk, "SAME_STAGE") not in graph.edges


def test_describe_graph_names_rules(add_column_snapshot, rules):
    lines = describe_graph(build_graph(add_column_snapshot, rules))
    swap = [line for line in lines if line.startswith("pk-1-2@PUBLIC -[SAME_STAGE]-> pk-1-1@WRITE_ONLY")]
    assert len(swap) == 1 and "primary index swap" in swap[0]
    assert "column-1-2@ABSENT -[OP]-> column-1-2@DELETE_ONLY (lifecycle)" in lines


def test_targets_already_reached_build_empty_graph(rules):
    graph = build_graph(snapshot(adding(column(1, 2), current="PUBLIC")), rules)
    assert len(graph) == 0
    assert graph.edges == ()
    assert graph.passes == 0


def test_duplicate_element_ids_are_malformed(rules):
    snap = snapshot(adding(column(1, 2)), dropping(column(1, 2)))
    with pytest.raises(MalformedIntentError) as excinfo:
        build_graph(snap, rules)
    assert excinfo.value.trail == ["column-1-2"]


def test_missing_op_binding_reported():
    with pytest.raises(RuleConflictError) as excinfo:
        build_graph(snapshot(adding(column(1, 2))), RuleSet())
    assert "column-1-2@DELETE_ONLY" in excinfo.value.trail


def test_contradictory_op_bindings(rules):
    rival = RuleSet(
        [
            OpRule(
                "rival column op",
                kind="COLUMN",
                direction="ADD",
                to_status="DELETE_ONLY",
                op_name="SomethingElse",
            )
        ]
    )
    with pytest.raises(RuleConflictError) as excinfo:
        build_graph(snapshot(adding(column(1, 2))), rules.merged(rival))
    assert "contradictory" in excinfo.value.message
    assert len(excinfo.value.trail) == 2


def test_non_monotone_rule_rejected(rules):
    calls = []

    def flaky(view):
        calls.append(len(view.edges))
        if len(calls) == 1:
            return [Edge(1, 2, "PRECEDES")]
        return []

    with pytest.raises(RuleConflictError) as excinfo:
        build_graph(snapshot(adding(column(1, 2))), rules.merged(RuleSet([DerivedRule("flaky", flaky)])))
    assert excinfo.value.rule == "flaky"
    assert excinfo.value.to_dict()["rule"] == "flaky"


def test_failing_rule_is_wrapped(rules):
    def broken(view):
        return [Edge(0, 1, "PRECEDES")] if view.targets["missing"] else []

    with pytest.raises(RuleConflictError) as excinfo:
        build_graph(snapshot(adding(column(1, 2))), rules.merged(RuleSet([DerivedRule("broken", broken)])))
    assert excinfo.value.rule == "broken"
    assert isinstance(excinfo.value.__cause__, KeyError)


def test_out_of_range_edge_rejected(rules):
    stray = RuleSet([DerivedRule("stray", lambda view: [Edge(0, 99, "PRECEDES")])])
    with pytest.raises(RuleConflictError) as excinfo:
        build_graph(snapshot(adding(column(1, 2))), rules.merged(stray))
    assert excinfo.value.rule == "stray"


def test_pass_cap_reports_non_convergence(add_column_snapshot, rules):
    with pytest.raises(RuleConflictError) as excinfo:
        GraphBuilder(rules, max_passes=1).build(add_column_snapshot)
    assert "fixpoint" in excinfo.value.message


def test_contradictory_rule_pair_is_a_cycle(rules):
    contradiction = RuleSet(
        [
            DepRule(
                "a public before b write-only",
                from_kind="COLUMN",
                from_status="PUBLIC",
                to_kind="COLUMN",
                to_status="WRITE_ONLY",
                predicate=lambda a, b: a.element_id == "column-1-1",
            ),
            DepRule(
                "b public before a write-only",
                from_kind="COLUMN",
                from_status="PUBLIC",
                to_kind="COLUMN",
                to_status="WRITE_ONLY",
                predicate=lambda b, a: b.element_id == "column-1-2",
            ),
        ]
    )
    snap = snapshot(adding(column(1, 1)), adding(column(1, 2)))
    with pytest.raises(CyclicDependencyError) as excinfo:
        build_graph(snap, rules.merged(contradiction))
    chain = excinfo.value.chain
    assert chain[0] == chain[-1]
    assert len(chain) > 2
    assert excinfo.value.to_dict()["chain"] == chain
    trail = excinfo.value.trail
    assert len(trail) == len(chain) - 1
    assert "column-1-2@PUBLIC -[PRECEDES]-> column-1-1@WRITE_ONLY (b public before a write-only)" in trail
    assert excinfo.value.to_dict()["trail"] == trail


def test_strict_edge_inside_same_stage_group_is_a_cycle(rules):
    tangle = RuleSet(
        [
            DepRule(
                "columns public together",
                from_kind="COLUMN",
                from_status="PUBLIC",
                to_kind="COLUMN",
                to_status="PUBLIC",
                edge_kind="SAME_STAGE",
            ),
            DepRule(
                "columns public strictly ordered",
                from_kind="COLUMN",
                from_status="PUBLIC",
                to_kind="COLUMN",
                to_status="PUBLIC",
                edge_kind="PRECEDES_STRICT",
                predicate=lambda a, b: a.element_id < b.element_id,
            ),
        ]
    )
    snap = snapshot(adding(column(1, 1)), adding(column(1, 2)))
    with pytest.raises(CyclicDependencyError) as excinfo:
        build_graph(snap, rules.merged(tangle))
    assert excinfo.value.trail == [
        "column-1-1@PUBLIC -[PRECEDES_STRICT]-> column-1-2@PUBLIC (columns public strictly ordered)"
    ]


def test_build_is_deterministic_across_input_order(add_column_snapshot):
    reordered = snapshot(*reversed(add_column_snapshot.targets))
    first = build_graph(add_column_snapshot, default_rule_set())
    second = build_graph(reordered, default_rule_set())
    assert first.nodes == second.nodes
    assert first.edges == second.edges


def test_debug_log_lists_every_edge(add_column_snapshot, rules, caplog):
    with caplog.at_level(logging.DEBUG, logger="scplan.graph"):
        graph = build_graph(add_column_snapshot, rules)
    for line in describe_graph(graph):
        assert f"  {line}" in caplog.messages
