from typing import Iterable, List, Set, Tuple

from .lifecycle import lifecycle
from .nodes import Edge, GraphView
from .rules import Fact, RuleSet, at_least, below, references_column, same_table
from .schemas import Element

PRIMARY_INDEX_SWAP_VERSION = "21.1"

# (kind, direction, to_status, op_name, op_type, params)
_OP_TABLE: Tuple[Tuple[str, str, str, str, str, Tuple[str, ...]], ...] = (
    ("TABLE", "ADD", "PUBLIC", "CreateTableDescriptor", "MUTATION", ("table_id", "name")),
    ("TABLE", "DROP", "DROPPED", "MarkDescriptorAsDropped", "MUTATION", ("table_id",)),
    ("TABLE", "DROP", "ABSENT", "CreateGcJobForTable", "MUTATION", ("table_id",)),
    ("COLUMN", "ADD", "DELETE_ONLY", "MakeAddedColumnDeleteOnly", "MUTATION", ("table_id", "column_id", "name")),
    ("COLUMN", "ADD", "WRITE_ONLY", "MakeAddedColumnDeleteAndWriteOnly", "MUTATION", ("table_id", "column_id")),
    ("COLUMN", "ADD", "PUBLIC", "MakeColumnPublic", "MUTATION", ("table_id", "column_id")),
    ("COLUMN", "DROP", "WRITE_ONLY", "MakeDroppedColumnDeleteAndWriteOnly", "MUTATION", ("table_id", "column_id")),
    ("COLUMN", "DROP", "DELETE_ONLY", "MakeDroppedColumnDeleteOnly", "MUTATION", ("table_id", "column_id")),
    ("COLUMN", "DROP", "ABSENT", "MakeColumnAbsent", "MUTATION", ("table_id", "column_id")),
    ("CHECK_CONSTRAINT", "ADD", "WRITE_ONLY", "AddCheckConstraintWriteOnly", "MUTATION", ("table_id", "constraint_id")),
    ("CHECK_CONSTRAINT", "ADD", "VALIDATED", "ValidateCheckConstraint", "VALIDATION", ("table_id", "constraint_id")),
    ("CHECK_CONSTRAINT", "ADD", "PUBLIC", "MakeCheckConstraintPublic", "MUTATION", ("table_id", "constraint_id")),
    ("CHECK_CONSTRAINT", "DROP", "WRITE_ONLY", "MakeDroppedCheckConstraintWriteOnly", "MUTATION", ("table_id", "constraint_id")),
    ("CHECK_CONSTRAINT", "DROP", "ABSENT", "RemoveCheckConstraint", "MUTATION", ("table_id", "constraint_id")),
    ("SEQUENCE_DEPENDENCY", "ADD", "PUBLIC", "AddSequenceDependency", "MUTATION", ("table_id", "column_id", "sequence_id")),
    ("SEQUENCE_DEPENDENCY", "DROP", "ABSENT", "RemoveSequenceDependency", "MUTATION", ("table_id", "column_id", "sequence_id")),
)

# Ops reverting an interrupted drop: (kind, from_status, to_status, op_name, params).
# The forward op for the same transition is narrowed to the lifecycle start.
_REVERT_OPS: Tuple[Tuple[str, str, str, str, Tuple[str, ...]], ...] = (
    ("TABLE", "DROPPED", "PUBLIC", "MarkDescriptorAsPublic", ("table_id",)),
)

_INDEX_OPS: Tuple[Tuple[str, str, str, str], ...] = (
    ("ADD", "DELETE_ONLY", "MakeAddedIndexDeleteOnly", "MUTATION"),
    ("ADD", "WRITE_ONLY", "MakeAddedIndexDeleteAndWriteOnly", "MUTATION"),
    ("ADD", "BACKFILLED", "BackfillIndex", "BACKFILL"),
    ("ADD", "VALIDATED", "ValidateUniqueIndex", "VALIDATION"),
    ("DROP", "DELETE_ONLY", "MakeDroppedIndexDeleteOnly", "MUTATION"),
    ("DROP", "ABSENT", "MakeIndexAbsent", "MUTATION"),
)
_INDEX_PARAMS = ("table_id", "index_id", "column_ids", "unique")

# First status an added child element reaches.
_FIRST_ADDED_STATUS = {
    "COLUMN": "DELETE_ONLY",
    "PRIMARY_INDEX": "DELETE_ONLY",
    "SECONDARY_INDEX": "DELETE_ONLY",
    "CHECK_CONSTRAINT": "WRITE_ONLY",
    "SEQUENCE_DEPENDENCY": "PUBLIC",
}


def _register_ops(rules: RuleSet) -> None:
    reverted = {(kind, status) for kind, _, status, _, _ in _REVERT_OPS}
    for kind, direction, status, op_name, op_type, params in _OP_TABLE:
        from_status = None
        if direction == "ADD" and (kind, status) in reverted:
            from_status = lifecycle(kind, direction)[0]
        rules.op_rule(
            f"op:{kind.lower()}:{direction.lower()}:{status.lower()}",
            kind=kind,
            direction=direction,
            to_status=status,
            op_name=op_name,
            op_type=op_type,
            params=params,
            from_status=from_status,
        )
    for kind, from_status, status, op_name, params in _REVERT_OPS:
        rules.op_rule(
            f"op:{kind.lower()}:add:{status.lower()}:revert",
            kind=kind,
            direction="ADD",
            to_status=status,
            op_name=op_name,
            params=params,
            from_status=from_status,
        )
    for kind in ("PRIMARY_INDEX", "SECONDARY_INDEX"):
        prefix = "Primary" if kind == "PRIMARY_INDEX" else "Secondary"
        ops = _INDEX_OPS + (
            ("ADD", "PUBLIC", f"MakeAdded{prefix}IndexPublic", "MUTATION"),
            ("DROP", "WRITE_ONLY", f"MakeDropped{prefix}IndexDeleteAndWriteOnly", "MUTATION"),
        )
        for direction, status, op_name, op_type in ops:
            rules.op_rule(
                f"op:{kind.lower()}:{direction.lower()}:{status.lower()}",
                kind=kind,
                direction=direction,
                to_status=status,
                op_name=op_name,
                op_type=op_type,
                params=_INDEX_PARAMS,
            )


def _register_table_rules(rules: RuleSet) -> None:
    for kind, status in _FIRST_ADDED_STATUS.items():
        rules.dep_rule(
            f"table added before {kind.lower()}",
            from_kind="TABLE",
            from_status="PUBLIC",
            from_direction="ADD",
            to_kind=kind,
            to_status=status,
            to_direction="ADD",
            priority=10,
        )(same_table)
        rules.dep_rule(
            f"table dropped before {kind.lower()} removed",
            from_kind="TABLE",
            from_status="DROPPED",
            from_direction="DROP",
            to_kind=kind,
            to_status="ABSENT",
            to_direction="DROP",
            priority=10,
        )(same_table)


def _register_column_rules(rules: RuleSet) -> None:
    for index_kind in ("PRIMARY_INDEX", "SECONDARY_INDEX"):
        label = index_kind.lower().replace("_", " ")

        rules.dep_rule(
            f"column delete-only before {label} delete-only",
            from_kind="COLUMN",
            from_status="DELETE_ONLY",
            from_direction="ADD",
            to_kind=index_kind,
            to_status="DELETE_ONLY",
            to_direction="ADD",
        )(references_column)

        rules.dep_rule(
            f"column write-only before {label} backfill",
            from_kind="COLUMN",
            from_status="WRITE_ONLY",
            from_direction="ADD",
            to_kind=index_kind,
            to_status="BACKFILLED",
            to_direction="ADD",
            edge_kind="PRECEDES_STRICT",
        )(references_column)

    rules.dep_rule(
        "column public before secondary index public",
        from_kind="COLUMN",
        from_status="PUBLIC",
        from_direction="ADD",
        to_kind="SECONDARY_INDEX",
        to_status="PUBLIC",
        to_direction="ADD",
    )(references_column)

    rules.dep_rule(
        "column public with primary index",
        from_kind="COLUMN",
        from_status="PUBLIC",
        from_direction="ADD",
        to_kind="PRIMARY_INDEX",
        to_status="PUBLIC",
        to_direction="ADD",
        edge_kind="SAME_STAGE",
    )(references_column)

    rules.dep_rule(
        "column write-only before check validation",
        from_kind="COLUMN",
        from_status="WRITE_ONLY",
        from_direction="ADD",
        to_kind="CHECK_CONSTRAINT",
        to_status="VALIDATED",
        to_direction="ADD",
        edge_kind="PRECEDES_STRICT",
    )(references_column)

    rules.dep_rule(
        "sequence dependency before column public",
        from_kind="SEQUENCE_DEPENDENCY",
        from_status="PUBLIC",
        from_direction="ADD",
        to_kind="COLUMN",
        to_status="PUBLIC",
        to_direction="ADD",
    )(lambda seq, column: references_column(column, seq))


def _register_drop_rules(rules: RuleSet) -> None:
    rules.dep_rule(
        "secondary index delete-only before column delete-only",
        from_kind="SECONDARY_INDEX",
        from_status="DELETE_ONLY",
        from_direction="DROP",
        to_kind="COLUMN",
        to_status="DELETE_ONLY",
        to_direction="DROP",
    )(lambda index, column: references_column(column, index))

    rules.dep_rule(
        "check constraint write-only before column write-only",
        from_kind="CHECK_CONSTRAINT",
        from_status="WRITE_ONLY",
        from_direction="DROP",
        to_kind="COLUMN",
        to_status="WRITE_ONLY",
        to_direction="DROP",
    )(lambda check, column: references_column(column, check))

    rules.dep_rule(
        "column write-only before sequence dependency removed",
        from_kind="COLUMN",
        from_status="WRITE_ONLY",
        from_direction="DROP",
        to_kind="SEQUENCE_DEPENDENCY",
        to_status="ABSENT",
        to_direction="DROP",
    )(references_column)


def _register_primary_index_swap(rules: RuleSet) -> None:
    def _swapped(new_index: Element, old_index: Element) -> bool:
        return same_table(new_index, old_index)

    rules.dep_rule(
        "primary index swap",
        from_kind="PRIMARY_INDEX",
        from_status="PUBLIC",
        from_direction="ADD",
        to_kind="PRIMARY_INDEX",
        to_status="WRITE_ONLY",
        to_direction="DROP",
        edge_kind="SAME_STAGE",
        gate=at_least(PRIMARY_INDEX_SWAP_VERSION),
    )(_swapped)

    rules.dep_rule(
        "primary index public before old primary index dropped",
        from_kind="PRIMARY_INDEX",
        from_status="PUBLIC",
        from_direction="ADD",
        to_kind="PRIMARY_INDEX",
        to_status="WRITE_ONLY",
        to_direction="DROP",
        edge_kind="PRECEDES_STRICT",
        gate=below(PRIMARY_INDEX_SWAP_VERSION),
    )(_swapped)


def same_stage_closure(view: GraphView) -> Iterable[Fact]:
    """Symmetric and transitive closure of SAME_STAGE, one hop per pass."""
    pairs: Set[Tuple[int, int]] = {(e.src, e.dst) for e in view.edges_of_kind("SAME_STAGE")}
    out: List[Fact] = []
    for src, dst in sorted(pairs):
        out.append(Edge(dst, src, "SAME_STAGE"))
    by_src: dict = {}
    for src, dst in pairs:
        by_src.setdefault(src, []).append(dst)
    for src, dst in sorted(pairs):
        for nxt in sorted(by_src.get(dst, [])):
            if nxt != src:
                out.append(Edge(src, nxt, "SAME_STAGE"))
    return out


def default_rule_set() -> RuleSet:
    rules = RuleSet()
    _register_ops(rules)
    _register_table_rules(rules)
    _register_column_rules(rules)
    _register_drop_rules(rules)
    _register_primary_index_swap(rules)
    rules.derived_rule("same-stage closure", priority=-10)(same_stage_closure)
    return rules
