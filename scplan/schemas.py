import re
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, Field, model_validator


ElementKind = Literal[
    "TABLE",
    "COLUMN",
    "PRIMARY_INDEX",
    "SECONDARY_INDEX",
    "CHECK_CONSTRAINT",
    "SEQUENCE_DEPENDENCY",
]
Status = Literal[
    "ABSENT",
    "DELETE_ONLY",
    "WRITE_ONLY",
    "BACKFILLED",
    "VALIDATED",
    "DROPPED",
    "PUBLIC",
]
Direction = Literal["ADD", "DROP"]
Phase = Literal["STATEMENT", "PRE_COMMIT", "POST_COMMIT"]
OpType = Literal["MUTATION", "BACKFILL", "VALIDATION"]
EdgeKind = Literal["OP", "PRECEDES", "PRECEDES_STRICT", "SAME_STAGE", "UNSATISFIABLE"]

ELEMENT_KINDS: Tuple[str, ...] = (
    "TABLE",
    "COLUMN",
    "PRIMARY_INDEX",
    "SECONDARY_INDEX",
    "CHECK_CONSTRAINT",
    "SEQUENCE_DEPENDENCY",
)
PHASE_ORDER: Tuple[str, ...] = ("STATEMENT", "PRE_COMMIT", "POST_COMMIT")
OP_TYPE_ORDER: Tuple[str, ...] = ("MUTATION", "BACKFILL", "VALIDATION")
STRICT_EDGE_KINDS = {"OP", "PRECEDES_STRICT"}

_VERSION_RE = re.compile(r"^\s*v?(\d+)\.(\d+)(?:-(\d+))?\s*$")


def phase_rank(phase: str) -> int:
    return PHASE_ORDER.index(phase)


def op_type_rank(op_type: str) -> int:
    return OP_TYPE_ORDER.index(op_type)


class ClusterVersion(BaseModel):
    """Totally ordered cluster version used to gate rules."""

    major: int = 0
    minor: int = 0
    internal: int = 0

    @model_validator(mode="before")
    @classmethod
    def parse_string(cls, data: Any) -> Any:
        if isinstance(data, str):
            match = _VERSION_RE.match(data)
            if not match:
                raise ValueError(f"invalid cluster version {data!r}")
            major, minor, internal = match.groups()
            return {"major": int(major), "minor": int(minor), "internal": int(internal or 0)}
        return data

    def key(self) -> Tuple[int, int, int]:
        return (self.major, self.minor, self.internal)

    def __lt__(self, other: "ClusterVersion") -> bool:
        return self.key() < other.key()

    def __le__(self, other: "ClusterVersion") -> bool:
        return self.key() <= other.key()

    def __gt__(self, other: "ClusterVersion") -> bool:
        return self.key() > other.key()

    def __ge__(self, other: "ClusterVersion") -> bool:
        return self.key() >= other.key()

    def __str__(self) -> str:
        if self.internal:
            return f"{self.major}.{self.minor}-{self.internal}"
        return f"{self.major}.{self.minor}"

    model_config = {"frozen": True}


class Element(BaseModel):
    element_id: str
    kind: ElementKind
    attributes: Dict[str, Any] = Field(default_factory=dict)

    def attr(self, key: str, default: Any = None) -> Any:
        return self.attributes.get(key, default)

    def attr_ids(self, key: str) -> List[Any]:
        value = self.attributes.get(key)
        if value is None:
            return []
        if isinstance(value, (list, tuple, set, frozenset)):
            return list(value)
        return [value]

    model_config = {"frozen": True, "extra": "forbid"}


class TargetState(BaseModel):
    element: Element
    current: Status
    target: Status

    @property
    def element_id(self) -> str:
        return self.element.element_id

    @property
    def at_target(self) -> bool:
        return self.current == self.target

    model_config = {"frozen": True}


class PlanningSnapshot(BaseModel):
    """One atomic planning input: every target of an intent plus the version gate."""

    targets: List[TargetState] = Field(default_factory=list)
    version: ClusterVersion = Field(default_factory=lambda: ClusterVersion(major=21, minor=1))
    phase: Phase = "STATEMENT"
    # False once the executor has run a non-revertible stage of this intent.
    revertible: bool = True

    @model_validator(mode="before")
    @classmethod
    def normalize_inputs(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        phase = data.get("phase")
        if isinstance(phase, str):
            data["phase"] = phase.upper()
        targets = data.get("targets")
        if isinstance(targets, list):
            normalized = []
            for item in targets:
                if isinstance(item, (list, tuple)) and len(item) == 3:
                    element, current, target = item
                    normalized.append({"element": element, "current": current, "target": target})
                else:
                    normalized.append(item)
            data["targets"] = normalized
        return data

    def with_statuses(
        self,
        statuses: Dict[str, str],
        phase: Optional[str] = None,
        revertible: Optional[bool] = None,
    ) -> "PlanningSnapshot":
        targets = [
            target.model_copy(update={"current": statuses[target.element_id]})
            if target.element_id in statuses
            else target
            for target in self.targets
        ]
        update: Dict[str, Any] = {"targets": targets}
        if phase is not None:
            update["phase"] = phase
        if revertible is not None:
            update["revertible"] = revertible
        return self.model_copy(update=update)

    model_config = {"frozen": True}
