"""Lineage graph data model."""

from dataclasses import asdict, dataclass, field
from typing import Literal

PathType = Literal["direct", "indirect"]
Direction = Literal["ancestors", "descendants", "both"]


def clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


@dataclass(frozen=True)
class LineageEdge:
    """A confidence-weighted causal link from parent to child."""
    parent_id: str
    child_id: str
    confidence: float = 1.0


@dataclass(frozen=True)
class LineagePath:
    """A materialized chain of event ids from source to target."""
    source_id: str
    target_id: str
    path: tuple[str, ...]
    confidence: float
    path_type: PathType = "direct"

    @property
    def length(self) -> int:
        return len(self.path)

    def render(self) -> str:
        return " -> ".join(self.path)

    def to_dict(self) -> dict:
        return {
            "source_id": self.source_id,
            "target_id": self.target_id,
            "path": list(self.path),
            "length": self.length,
            "confidence": self.confidence,
            "path_type": self.path_type,
        }


@dataclass
class LineageNode:
    event_id: str
    parent_ids: list[str] = field(default_factory=list)
    child_ids: list[str] = field(default_factory=list)
    confidence: float = 1.0  # Weakest incoming edge
    depth: int = 0  # Distance from the traversal root


@dataclass
class LineageTree:
    event: LineageNode
    ancestors: list[LineageNode] = field(default_factory=list)
    descendants: list[LineageNode] = field(default_factory=list)
    paths: list[LineagePath] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "event": asdict(self.event),
            "ancestors": [asdict(n) for n in self.ancestors],
            "descendants": [asdict(n) for n in self.descendants],
            "paths": [p.to_dict() for p in self.paths],
        }


@dataclass
class ImpactRadius:
    direct_impact: int
    indirect_impact: int
    total_reach: int
    critical_paths: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class IntegrityIssue:
    type: Literal["orphaned_parent", "circular_dependency"]
    event_id: str
    description: str


@dataclass
class IntegrityReport:
    valid: bool
    issues: list[IntegrityIssue] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"valid": self.valid, "issues": [asdict(i) for i in self.issues]}
