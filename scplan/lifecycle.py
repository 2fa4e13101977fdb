from dataclasses import dataclass
from typing import Dict, List, Tuple

from .errors import MalformedIntentError
from .schemas import TargetState


@dataclass(frozen=True)
class Transition:
    kind: str
    direction: str
    from_status: str
    to_status: str
    phase: str
    revertible: bool = True


# (kind, direction) -> ordered (to_status, phase, revertible) steps after the start status.
_STEPS: Dict[Tuple[str, str], Tuple[str, Tuple[Tuple[str, str, bool], ...]]] = {
    ("TABLE", "ADD"): ("ABSENT", (("PUBLIC", "STATEMENT", True),)),
    ("TABLE", "DROP"): (
        "PUBLIC",
        (
            ("DROPPED", "STATEMENT", True),
            ("ABSENT", "POST_COMMIT", False),
        ),
    ),
    ("COLUMN", "ADD"): (
        "ABSENT",
        (
            ("DELETE_ONLY", "STATEMENT", True),
            ("WRITE_ONLY", "POST_COMMIT", True),
            ("PUBLIC", "POST_COMMIT", True),
        ),
    ),
    ("COLUMN", "DROP"): (
        "PUBLIC",
        (
            ("WRITE_ONLY", "STATEMENT", True),
            ("DELETE_ONLY", "POST_COMMIT", False),
            ("ABSENT", "POST_COMMIT", False),
        ),
    ),
    ("CHECK_CONSTRAINT", "ADD"): (
        "ABSENT",
        (
            ("WRITE_ONLY", "PRE_COMMIT", True),
            ("VALIDATED", "POST_COMMIT", True),
            ("PUBLIC", "POST_COMMIT", True),
        ),
    ),
    ("CHECK_CONSTRAINT", "DROP"): (
        "PUBLIC",
        (
            ("WRITE_ONLY", "STATEMENT", True),
            ("ABSENT", "POST_COMMIT", True),
        ),
    ),
    ("SEQUENCE_DEPENDENCY", "ADD"): ("ABSENT", (("PUBLIC", "PRE_COMMIT", True),)),
    ("SEQUENCE_DEPENDENCY", "DROP"): ("PUBLIC", (("ABSENT", "PRE_COMMIT", True),)),
}

_INDEX_ADD = (
    "ABSENT",
    (
        ("DELETE_ONLY", "STATEMENT", True),
        ("WRITE_ONLY", "POST_COMMIT", True),
        ("BACKFILLED", "POST_COMMIT", True),
        ("VALIDATED", "POST_COMMIT", True),
        ("PUBLIC", "POST_COMMIT", True),
    ),
)
_INDEX_DROP = (
    "PUBLIC",
    (
        ("WRITE_ONLY", "STATEMENT", True),
        ("DELETE_ONLY", "POST_COMMIT", False),
        ("ABSENT", "POST_COMMIT", False),
    ),
)
for _kind in ("PRIMARY_INDEX", "SECONDARY_INDEX"):
    _STEPS[(_kind, "ADD")] = _INDEX_ADD
    _STEPS[(_kind, "DROP")] = _INDEX_DROP

# Rollback positions a status from the opposite lifecycle on this one. A
# rolled-back add is dropped from wherever it stopped; add-only statuses still
# accept writes, so they behave as WRITE_ONLY. A reverted drop re-adds from
# ABSENT, the descriptor still exists but serves no reads or writes.
_ROLLBACK_EQUIVALENTS: Dict[str, Dict[str, str]] = {
    "DROP": {"BACKFILLED": "WRITE_ONLY", "VALIDATED": "WRITE_ONLY"},
    "ADD": {"DROPPED": "ABSENT"},
}
_OPPOSITE = {"ADD": "DROP", "DROP": "ADD"}


def direction_for(target: TargetState) -> str:
    if target.target == "PUBLIC":
        return "ADD"
    if target.target == "ABSENT":
        return "DROP"
    raise MalformedIntentError(
        f"element {target.element_id} has non-terminal target {target.target}",
        trail=[f"{target.element.kind} {target.element_id}: {target.current} -> {target.target}"],
    )


def lifecycle(kind: str, direction: str) -> Tuple[str, ...]:
    start, steps = _STEPS[(kind, direction)]
    return (start,) + tuple(step[0] for step in steps)


def transitions(kind: str, direction: str) -> List[Transition]:
    start, steps = _STEPS[(kind, direction)]
    out: List[Transition] = []
    previous = start
    for to_status, phase, revertible in steps:
        out.append(Transition(kind, direction, previous, to_status, phase, revertible))
        previous = to_status
    return out


def effective_status(target: TargetState) -> str:
    """Current status as positioned on the element's lifecycle."""
    direction = direction_for(target)
    kind = target.element.kind
    if target.current in lifecycle(kind, direction):
        return target.current
    if target.current in lifecycle(kind, _OPPOSITE[direction]):
        return _ROLLBACK_EQUIVALENTS[direction].get(target.current, target.current)
    return target.current


def _positions(target: TargetState) -> Tuple[str, int, int]:
    direction = direction_for(target)
    statuses = lifecycle(target.element.kind, direction)
    current = effective_status(target)
    trail = [
        f"{target.element.kind} {target.element_id}: {target.current} -> {target.target}",
        f"lifecycle {direction}: {' -> '.join(statuses)}",
    ]
    if current not in statuses:
        raise MalformedIntentError(
            f"element {target.element_id} status {target.current} is not on the {direction} lifecycle",
            trail=trail,
        )
    start = statuses.index(current)
    end = statuses.index(target.target)
    if start > end:
        raise MalformedIntentError(
            f"element {target.element_id} cannot move from {target.current} to {target.target}",
            trail=trail,
        )
    return direction, start, end


def pending_statuses(target: TargetState) -> List[str]:
    """Statuses from the current one (inclusive) to the target, or [] when already there."""
    direction, start, end = _positions(target)
    if start == end:
        return []
    return list(lifecycle(target.element.kind, direction)[start : end + 1])


def pending_transitions(target: TargetState) -> List[Transition]:
    direction, start, end = _positions(target)
    return transitions(target.element.kind, direction)[start:end]


def executed_transitions(target: TargetState) -> List[Transition]:
    direction, start, _ = _positions(target)
    return transitions(target.element.kind, direction)[:start]

