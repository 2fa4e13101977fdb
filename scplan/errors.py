from typing import Any, Dict, List, Optional


class PlanningError(Exception):
    """Base for every planning failure; deterministic for a given snapshot."""

    def __init__(self, message: str, trail: Optional[List[str]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.trail: List[str] = list(trail or [])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "trail": list(self.trail),
        }


class MalformedIntentError(PlanningError):
    """Raised when current and target statuses cannot be joined by a forward path."""


class VersionGateError(MalformedIntentError):
    """Raised when a target cluster version is outside the supported window."""


class CyclicDependencyError(PlanningError):
    """Raised when the derived dependency relation contains a cycle."""

    def __init__(self, message: str, chain: List[str], trail: Optional[List[str]] = None) -> None:
        super().__init__(message, trail)
        self.chain = list(chain)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["chain"] = list(self.chain)
        return data


class UnplannableError(PlanningError):
    """Raised when nodes remain that no stage can accept."""

    def __init__(
        self,
        message: str,
        remaining: List[str],
        markers: Optional[List[str]] = None,
        trail: Optional[List[str]] = None,
    ) -> None:
        super().__init__(message, trail)
        self.remaining = list(remaining)
        self.markers = list(markers or [])

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["remaining"] = list(self.remaining)
        data["markers"] = list(self.markers)
        return data


class RuleConflictError(PlanningError):
    """Raised when a rule misbehaves: non-monotone, contradictory, failing or non-convergent."""

    def __init__(self, message: str, rule: Optional[str] = None, trail: Optional[List[str]] = None) -> None:
        super().__init__(message, trail)
        self.rule = rule

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["rule"] = self.rule
        return data
