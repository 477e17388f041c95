from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from .graph import WorldGraph


# ---------------------------------------------------------------------------
# Feedback factors: each maps (graph, current pressure values) -> float
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ConstantFactor:
    value: float

    def evaluate(self, graph: WorldGraph, pressures: Mapping[str, float]) -> float:
        return float(self.value)


@dataclass(frozen=True)
class EntityCountFactor:
    kind: str
    coefficient: float = 1.0
    subtype: Optional[str] = None
    status: Optional[str] = None
    cap: Optional[float] = None

    def evaluate(self, graph: WorldGraph, pressures: Mapping[str, float]) -> float:
        n = graph.count(self.kind, subtype=self.subtype, status=self.status)
        out = self.coefficient * n
        return out if self.cap is None else min(out, float(self.cap))


@dataclass(frozen=True)
class RelationshipCountFactor:
    kind: str
    coefficient: float = 1.0
    cap: Optional[float] = None

    def evaluate(self, graph: WorldGraph, pressures: Mapping[str, float]) -> float:
        out = self.coefficient * graph.relationship_count(self.kind)
        return out if self.cap is None else min(out, float(self.cap))


@dataclass(frozen=True)
class TagCountFactor:
    tag: str
    coefficient: float = 1.0
    kind: Optional[str] = None

    def evaluate(self, graph: WorldGraph, pressures: Mapping[str, float]) -> float:
        n = sum(1 for e in graph.entities(self.kind) if self.tag in e.tags)
        return self.coefficient * n


@dataclass(frozen=True)
class PressureFactor:
    pressure: str
    coefficient: float = 1.0

    def evaluate(self, graph: WorldGraph, pressures: Mapping[str, float]) -> float:
        return self.coefficient * float(pressures.get(self.pressure, 0.0))


@dataclass(frozen=True)
class RatioFactor:
    """coefficient * count(numerator) / max(1, count(denominator))"""

    numerator: str
    denominator: str
    coefficient: float = 1.0
    cap: Optional[float] = None

    def evaluate(self, graph: WorldGraph, pressures: Mapping[str, float]) -> float:
        ratio = graph.count(self.numerator) / max(1, graph.count(self.denominator))
        out = self.coefficient * ratio
        return out if self.cap is None else min(out, float(self.cap))


@dataclass(frozen=True)
class CallableFactor:
    """Escape hatch for programmatic worlds; `fn` must be a module-level function to pickle."""

    fn: Callable[[WorldGraph, Mapping[str, float]], float]

    def evaluate(self, graph: WorldGraph, pressures: Mapping[str, float]) -> float:
        return float(self.fn(graph, pressures))


FeedbackFactor = Union[
    ConstantFactor,
    EntityCountFactor,
    RelationshipCountFactor,
    TagCountFactor,
    PressureFactor,
    RatioFactor,
    CallableFactor,
]

_FACTOR_TYPES = {
    "constant": ConstantFactor,
    "entity_count": EntityCountFactor,
    "relationship_count": RelationshipCountFactor,
    "tag_count": TagCountFactor,
    "pressure": PressureFactor,
    "ratio": RatioFactor,
}


def parse_factor(doc: Mapping[str, Any]) -> FeedbackFactor:
    d = dict(doc)
    ftype = d.pop("type", None)
    if ftype not in _FACTOR_TYPES:
        raise ValueError(f"Unknown feedback factor type {ftype!r} (use one of {sorted(_FACTOR_TYPES)})")
    return _FACTOR_TYPES[ftype](**d)


# ---------------------------------------------------------------------------
# Pressures
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PressureSpec:
    id: str
    initial: float = 0.0
    bounds: Tuple[float, float] = (-100.0, 100.0)
    homeostasis: float = 0.0
    positive: Tuple[FeedbackFactor, ...] = ()
    negative: Tuple[FeedbackFactor, ...] = ()
    name: str = ""

    def clamp(self, value: float) -> float:
        lo, hi = self.bounds
        return float(min(hi, max(lo, float(value))))


def parse_pressure(doc: Mapping[str, Any]) -> PressureSpec:
    bounds = doc.get("bounds", (-100.0, 100.0))
    return PressureSpec(
        id=str(doc["id"]),
        name=str(doc.get("name", doc["id"])),
        initial=float(doc.get("initial", doc.get("value", 0.0))),
        bounds=(float(bounds[0]), float(bounds[1])),
        homeostasis=float(doc.get("homeostasis", 0.0)),
        positive=tuple(parse_factor(f) for f in doc.get("positive", []) or []),
        negative=tuple(parse_factor(f) for f in doc.get("negative", []) or []),
    )


class PressureModel:
    """Named bounded scalars updated once per tick in declaration order.

    tick(): value <- clamp(value + sum(positive) - sum(negative) - homeostasis * value)
    """

    def __init__(self, specs: Sequence[PressureSpec]):
        self.specs: Tuple[PressureSpec, ...] = tuple(specs)
        self._index: Dict[str, PressureSpec] = {s.id: s for s in self.specs}
        self._values: Dict[str, float] = {s.id: s.clamp(s.initial) for s in self.specs}

    @property
    def ids(self) -> List[str]:
        return [s.id for s in self.specs]

    def __contains__(self, pressure_id: str) -> bool:
        return pressure_id in self._index

    def value(self, pressure_id: str) -> float:
        return self._values[pressure_id]

    def values(self) -> Dict[str, float]:
        return dict(self._values)

    def set(self, pressure_id: str, value: float) -> float:
        self._values[pressure_id] = self._index[pressure_id].clamp(value)
        return self._values[pressure_id]

    def adjust(self, pressure_id: str, delta: float) -> float:
        return self.set(pressure_id, self._values[pressure_id] + float(delta))

    def tick(self, graph: WorldGraph) -> Dict[str, float]:
        """Advance every pressure one step; returns the applied (post-clamp) deltas."""
        applied: Dict[str, float] = {}
        for spec in self.specs:
            current = self._values[spec.id]
            growth = sum(f.evaluate(graph, self._values) for f in spec.positive)
            relief = sum(f.evaluate(graph, self._values) for f in spec.negative)
            pull = spec.homeostasis * current
            new = spec.clamp(current + growth - relief - pull)
            self._values[spec.id] = new
            applied[spec.id] = new - current
        return applied
