import logging
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Union

from .errors import RuleConflictError, VersionGateError
from .nodes import Edge, GraphView, Op, OpBinding, freeze
from .schemas import ELEMENT_KINDS, ClusterVersion, Element

logger = logging.getLogger("scplan.rules")

Fact = Union[Edge, OpBinding]
Gate = Callable[[ClusterVersion], bool]
PairPredicate = Callable[[Element, Element], bool]

EDGE_RULE_KINDS = {"PRECEDES", "PRECEDES_STRICT", "SAME_STAGE", "UNSATISFIABLE"}


def _as_version(value: Union[str, ClusterVersion]) -> ClusterVersion:
    if isinstance(value, ClusterVersion):
        return value
    return ClusterVersion.model_validate(value)


def at_least(version: Union[str, ClusterVersion]) -> Gate:
    threshold = _as_version(version)

    def gate(active: ClusterVersion) -> bool:
        return active >= threshold

    gate.__name__ = f"at_least_{threshold}"
    return gate


def below(version: Union[str, ClusterVersion]) -> Gate:
    threshold = _as_version(version)

    def gate(active: ClusterVersion) -> bool:
        return active < threshold

    gate.__name__ = f"below_{threshold}"
    return gate


def validate_target_version(
    target: Union[str, ClusterVersion],
    min_supported: Union[str, ClusterVersion],
    binary: Union[str, ClusterVersion],
) -> ClusterVersion:
    """Check min_supported <= target <= binary before the target is used as a rule gate."""
    target_v = _as_version(target)
    min_v = _as_version(min_supported)
    binary_v = _as_version(binary)
    if target_v < min_v:
        msg = f"target version {target_v} less than binary's min supported version {min_v}"
        logger.warning("%s", msg)
        raise VersionGateError(msg)
    if binary_v < target_v:
        msg = f"binary version {binary_v} less than target version {target_v}"
        logger.warning("%s", msg)
        raise VersionGateError(msg)
    return target_v


def same_table(a: Element, b: Element) -> bool:
    table_id = a.attr("table_id")
    return table_id is not None and table_id == b.attr("table_id")


def references_column(column: Element, other: Element) -> bool:
    column_id = column.attr("column_id")
    if column_id is None or not same_table(column, other):
        return False
    if column_id in other.attr_ids("column_ids"):
        return True
    return other.attr("column_id") == column_id


class Rule:
    """Named, pure fact generator. Subclasses implement derive()."""

    variant = "rule"

    def __init__(self, name: str, *, priority: int = 0, gate: Optional[Gate] = None) -> None:
        if not name:
            raise ValueError("rule name is required")
        self.name = name
        self.priority = priority
        self.gate = gate

    def active(self, version: ClusterVersion) -> bool:
        if self.gate is None:
            return True
        return bool(self.gate(version))

    def derive(self, view: GraphView) -> List[Fact]:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r})"


class DepRule(Rule):
    """Pairwise edge rule: from (kind, status) to (kind, status), filtered by a predicate."""

    variant = "dep"

    def __init__(
        self,
        name: str,
        *,
        from_kind: str,
        from_status: str,
        to_kind: str,
        to_status: str,
        edge_kind: str = "PRECEDES",
        from_direction: Optional[str] = None,
        to_direction: Optional[str] = None,
        predicate: Optional[PairPredicate] = None,
        priority: int = 0,
        gate: Optional[Gate] = None,
    ) -> None:
        super().__init__(name, priority=priority, gate=gate)
        if edge_kind not in EDGE_RULE_KINDS:
            raise ValueError(f"rule {name}: unsupported edge kind {edge_kind}")
        for kind in (from_kind, to_kind):
            if kind not in ELEMENT_KINDS:
                raise ValueError(f"rule {name}: unknown element kind {kind}")
        self.from_kind = from_kind
        self.from_status = from_status
        self.to_kind = to_kind
        self.to_status = to_status
        self.edge_kind = edge_kind
        self.from_direction = from_direction
        self.to_direction = to_direction
        self.predicate = predicate

    def derive(self, view: GraphView) -> List[Fact]:
        sources = view.select(self.from_kind, self.from_status, self.from_direction)
        if not sources:
            return []
        dests = view.select(self.to_kind, self.to_status, self.to_direction)
        facts: List[Fact] = []
        for src in sources:
            src_el = view.element(src.element_id)
            for dst in dests:
                if dst.element_id == src.element_id:
                    continue
                if self.predicate is not None and not self.predicate(src_el, view.element(dst.element_id)):
                    continue
                facts.append(Edge(src.index, dst.index, self.edge_kind))
        return facts


class OpRule(Rule):
    """Binds the op realizing one (kind, direction, to_status) transition.

    from_status narrows the binding to transitions leaving that status, so a
    revert out of the opposite lifecycle can bind a different op.
    """

    variant = "op"

    def __init__(
        self,
        name: str,
        *,
        kind: str,
        direction: str,
        to_status: str,
        op_name: str,
        op_type: str = "MUTATION",
        params: Sequence[str] = (),
        from_status: Optional[str] = None,
        priority: int = 0,
        gate: Optional[Gate] = None,
    ) -> None:
        super().__init__(name, priority=priority, gate=gate)
        self.kind = kind
        self.direction = direction
        self.to_status = to_status
        self.from_status = from_status
        self.op_name = op_name
        self.op_type = op_type
        self.params = tuple(params)

    def derive(self, view: GraphView) -> List[Fact]:
        facts: List[Fact] = []
        for node in view.select(self.kind, self.to_status, self.direction, include_boundary=False):
            target = view.targets[node.element_id]
            element = target.element
            prev = _previous_status(view, node.index)
            if self.from_status is not None and prev != self.from_status:
                continue
            params = tuple((key, freeze(element.attr(key))) for key in self.params if key in element.attributes)
            op = Op(
                name=self.op_name,
                op_type=self.op_type,
                element_id=node.element_id,
                from_status=prev,
                to_status=node.status,
                params=params,
            )
            facts.append(OpBinding(node.index, op))
        return facts


def _previous_status(view: GraphView, index: int) -> str:
    node = view.nodes[index]
    prev = view.nodes[index - 1] if index > 0 else None
    if prev is None or prev.element_id != node.element_id:
        raise RuleConflictError(f"node {node.describe()} has no predecessor status")
    if prev.boundary:
        return view.targets[node.element_id].current
    return prev.status


class DerivedRule(Rule):
    """Free-form rule over the whole view, e.g. closures over derived edges."""

    variant = "derived"

    def __init__(
        self,
        name: str,
        fn: Callable[[GraphView], Iterable[Fact]],
        *,
        priority: int = 0,
        gate: Optional[Gate] = None,
    ) -> None:
        super().__init__(name, priority=priority, gate=gate)
        self.fn = fn

    def derive(self, view: GraphView) -> List[Fact]:
        return list(self.fn(view))


class RuleSet:
    """An explicit, constructed collection of rules handed to the graph builder."""

    def __init__(self, rules: Optional[Iterable[Rule]] = None) -> None:
        self._rules: Dict[str, Rule] = {}
        for rule in rules or []:
            self.register(rule)

    def register(self, rule: Rule) -> Rule:
        if rule.name in self._rules:
            raise RuleConflictError(f"rule {rule.name} registered twice", rule=rule.name)
        self._rules[rule.name] = rule
        return rule

    def dep_rule(
        self,
        name: str,
        *,
        from_kind: str,
        from_status: str,
        to_kind: str,
        to_status: str,
        edge_kind: str = "PRECEDES",
        from_direction: Optional[str] = None,
        to_direction: Optional[str] = None,
        priority: int = 0,
        gate: Optional[Gate] = None,
    ) -> Callable[[PairPredicate], PairPredicate]:
        def decorator(predicate: PairPredicate) -> PairPredicate:
            self.register(
                DepRule(
                    name,
                    from_kind=from_kind,
                    from_status=from_status,
                    to_kind=to_kind,
                    to_status=to_status,
                    edge_kind=edge_kind,
                    from_direction=from_direction,
                    to_direction=to_direction,
                    predicate=predicate,
                    priority=priority,
                    gate=gate,
                )
            )
            return predicate

        return decorator

    def op_rule(
        self,
        name: str,
        *,
        kind: str,
        direction: str,
        to_status: str,
        op_name: str,
        op_type: str = "MUTATION",
        params: Sequence[str] = (),
        from_status: Optional[str] = None,
        priority: int = 0,
        gate: Optional[Gate] = None,
    ) -> Rule:
        return self.register(
            OpRule(
                name,
                kind=kind,
                direction=direction,
                to_status=to_status,
                op_name=op_name,
                op_type=op_type,
                params=params,
                from_status=from_status,
                priority=priority,
                gate=gate,
            )
        )

    def derived_rule(
        self, name: str, *, priority: int = 0, gate: Optional[Gate] = None
    ) -> Callable[[Callable[[GraphView], Iterable[Fact]]], Callable[[GraphView], Iterable[Fact]]]:
        def decorator(fn: Callable[[GraphView], Iterable[Fact]]) -> Callable[[GraphView], Iterable[Fact]]:
            self.register(DerivedRule(name, fn, priority=priority, gate=gate))
            return fn

        return decorator

    def active(self, version: ClusterVersion) -> List[Rule]:
        rules = [rule for rule in self._rules.values() if rule.active(version)]
        return sorted(rules, key=lambda rule: (-rule.priority, rule.name))

    def names(self) -> List[str]:
        return sorted(self._rules)

    def get(self, name: str) -> Optional[Rule]:
        return self._rules.get(name)

    def merged(self, other: "RuleSet") -> "RuleSet":
        return RuleSet([*self._rules.values(), *other])

    def __iter__(self) -> Iterator[Rule]:
        return iter(self._rules.values())

    def __len__(self) -> int:
        return len(self._rules)

    def __contains__(self, name: Any) -> bool:
        return name in self._rules
