"""
Applicability predicate trees.

A predicate is either a leaf (one test against the current run state) or a Combinator
holding child predicates joined by "and"/"or". Trees nest arbitrarily; an optional
max_depth is enforced at parse time.

Numeric leaf fields accept either a literal or a parameter reference "$name", resolved
against the owning rule's effective parameter values at evaluation time.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple, Union

import numpy as np

from .graph import WorldGraph
from .pressures import PressureModel
from .rng import chance


Number = Union[int, float, str]


def is_param_ref(value: Any) -> bool:
    return isinstance(value, str) and value.startswith("$")


def resolve_number(value: Number, params: Mapping[str, float]) -> float:
    if is_param_ref(value):
        name = value[1:]
        if name not in params:
            raise KeyError(f"Unknown parameter reference {value!r}")
        return float(params[name])
    return float(value)


class UsageLedger:
    """Per-run bookkeeping for cooldown and per-phase use limits."""

    def __init__(self) -> None:
        self.last_used: Dict[str, int] = {}
        self.phase_uses: Dict[str, int] = {}
        self.total_uses: Dict[str, int] = {}

    def start_phase(self) -> None:
        self.phase_uses.clear()

    def mark(self, rule_id: str, tick: int) -> None:
        self.last_used[rule_id] = int(tick)
        self.phase_uses[rule_id] = self.phase_uses.get(rule_id, 0) + 1
        self.total_uses[rule_id] = self.total_uses.get(rule_id, 0) + 1


@dataclass
class PredicateContext:
    graph: WorldGraph
    pressures: PressureModel
    rng: np.random.Generator
    era: Optional[str] = None
    ticks_in_era: int = 0
    rule_id: str = ""
    params: Mapping[str, float] = field(default_factory=dict)
    usage: UsageLedger = field(default_factory=UsageLedger)
    # False while pre-filtering candidates: chance leaves pass instead of rolling
    roll_chance: bool = True

    @property
    def tick(self) -> int:
        return self.graph.tick

    def number(self, value: Number) -> float:
        return resolve_number(value, self.params)


def _within(x: float, lo: Optional[float], hi: Optional[float]) -> bool:
    if lo is not None and x < lo:
        return False
    if hi is not None and x > hi:
        return False
    return True


# ---------------------------------------------------------------------------
# leaves
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Always:
    value: bool = True

    def evaluate(self, ctx: PredicateContext) -> bool:
        return bool(self.value)


@dataclass(frozen=True)
class EntityCount:
    kind: Optional[str] = None
    subtype: Optional[str] = None
    status: Optional[str] = None
    min: Optional[Number] = None
    max: Optional[Number] = None

    def evaluate(self, ctx: PredicateContext) -> bool:
        n = ctx.graph.count(self.kind, subtype=self.subtype, status=self.status)
        lo = None if self.min is None else ctx.number(self.min)
        hi = None if self.max is None else ctx.number(self.max)
        return _within(n, lo, hi)


@dataclass(frozen=True)
class RelationshipCount:
    kind: Optional[str] = None
    min: Optional[Number] = None
    max: Optional[Number] = None

    def evaluate(self, ctx: PredicateContext) -> bool:
        n = ctx.graph.relationship_count(self.kind)
        lo = None if self.min is None else ctx.number(self.min)
        hi = None if self.max is None else ctx.number(self.max)
        return _within(n, lo, hi)


@dataclass(frozen=True)
class TagPresent:
    tag: str
    kind: Optional[str] = None
    min: Number = 1

    def evaluate(self, ctx: PredicateContext) -> bool:
        n = sum(1 for e in ctx.graph.entities(self.kind) if self.tag in e.tags)
        return n >= ctx.number(self.min)


@dataclass(frozen=True)
class PressureThreshold:
    pressure: str
    min: Optional[Number] = None
    max: Optional[Number] = None

    def evaluate(self, ctx: PredicateContext) -> bool:
        v = ctx.pressures.value(self.pressure)
        lo = None if self.min is None else ctx.number(self.min)
        hi = None if self.max is None else ctx.number(self.max)
        return _within(v, lo, hi)


@dataclass(frozen=True)
class PressureAnyAbove:
    pressures: Tuple[str, ...]
    threshold: Number

    def evaluate(self, ctx: PredicateContext) -> bool:
        thr = ctx.number(self.threshold)
        return any(ctx.pressures.value(p) >= thr for p in self.pressures)


_COMPARE = {
    ">": lambda a, b: a > b,
    ">=": lambda a, b: a >= b,
    "<": lambda a, b: a < b,
    "<=": lambda a, b: a <= b,
}


@dataclass(frozen=True)
class PressureCompare:
    """left <op> right + margin"""

    left: str
    right: str
    op: str = ">"
    margin: Number = 0.0

    def evaluate(self, ctx: PredicateContext) -> bool:
        a = ctx.pressures.value(self.left)
        b = ctx.pressures.value(self.right) + ctx.number(self.margin)
        return _COMPARE[self.op](a, b)


@dataclass(frozen=True)
class EraIs:
    eras: Tuple[str, ...]

    def evaluate(self, ctx: PredicateContext) -> bool:
        return ctx.era in self.eras


@dataclass(frozen=True)
class TicksInEra:
    min: Optional[Number] = None
    max: Optional[Number] = None

    def evaluate(self, ctx: PredicateContext) -> bool:
        lo = None if self.min is None else ctx.number(self.min)
        hi = None if self.max is None else ctx.number(self.max)
        return _within(ctx.ticks_in_era, lo, hi)


@dataclass(frozen=True)
class RandomChance:
    probability: Number

    def evaluate(self, ctx: PredicateContext) -> bool:
        if not ctx.roll_chance:
            return ctx.number(self.probability) > 0.0
        return chance(ctx.rng, ctx.number(self.probability))


@dataclass(frozen=True)
class CooldownElapsed:
    ticks: Number

    def evaluate(self, ctx: PredicateContext) -> bool:
        last = ctx.usage.last_used.get(ctx.rule_id)
        if last is None:
            return True
        return ctx.tick - last >= ctx.number(self.ticks)


@dataclass(frozen=True)
class MaxUsesPerPhase:
    limit: Number

    def evaluate(self, ctx: PredicateContext) -> bool:
        return ctx.usage.phase_uses.get(ctx.rule_id, 0) < ctx.number(self.limit)


Leaf = Union[
    Always,
    EntityCount,
    RelationshipCount,
    TagPresent,
    PressureThreshold,
    PressureAnyAbove,
    PressureCompare,
    EraIs,
    TicksInEra,
    RandomChance,
    CooldownElapsed,
    MaxUsesPerPhase,
]


@dataclass(frozen=True)
class Combinator:
    op: str  # "and" | "or"
    children: Tuple["Predicate", ...]

    def evaluate(self, ctx: PredicateContext) -> bool:
        if self.op == "and":
            return all(c.evaluate(ctx) for c in self.children)
        return any(c.evaluate(ctx) for c in self.children)


Predicate = Union[Leaf, Combinator]

ALWAYS = Always(True)


def all_of(*children: Predicate) -> Combinator:
    return Combinator("and", tuple(children))


def any_of(*children: Predicate) -> Combinator:
    return Combinator("or", tuple(children))


# ---------------------------------------------------------------------------
# parsing / traversal
# ---------------------------------------------------------------------------

_LEAF_TYPES = {
    "always": Always,
    "entity_count": EntityCount,
    "relationship_count": RelationshipCount,
    "tag_present": TagPresent,
    "pressure": PressureThreshold,
    "pressure_any_above": PressureAnyAbove,
    "pressure_compare": PressureCompare,
    "era": EraIs,
    "ticks_in_era": TicksInEra,
    "chance": RandomChance,
    "cooldown": CooldownElapsed,
    "max_uses_per_phase": MaxUsesPerPhase,
}

_TUPLE_FIELDS = {"pressures", "eras"}


def parse_predicate(doc: Any, *, max_depth: Optional[int] = None, _depth: int = 1) -> Predicate:
    """Parse a mapping/list document into a predicate tree.

    Forms: {"and": [...]}, {"or": [...]}, a bare list (implicit "and"), or a leaf
    {"type": <leaf type>, ...}. None parses to Always(True).
    """
    if doc is None:
        return ALWAYS
    if isinstance(doc, (list, tuple)):
        doc = {"and": list(doc)}
    if not isinstance(doc, Mapping):
        raise ValueError(f"Predicate must be a mapping or list, got {type(doc).__name__}")

    for op in ("and", "or"):
        if op in doc:
            if max_depth is not None and _depth > int(max_depth):
                raise ValueError(f"Predicate nesting exceeds max depth {max_depth}")
            children = tuple(parse_predicate(c, max_depth=max_depth, _depth=_depth + 1) for c in doc[op])
            if not children:
                raise ValueError(f"Empty {op!r} combinator")
            return Combinator(op, children)

    d = dict(doc)
    ptype = d.pop("type", None)
    if ptype not in _LEAF_TYPES:
        raise ValueError(f"Unknown predicate type {ptype!r} (use one of {sorted(_LEAF_TYPES)})")
    for k in _TUPLE_FIELDS & set(d):
        v = d[k]
        d[k] = (v,) if isinstance(v, str) else tuple(v)
    if ptype == "pressure_compare" and d.get("op", ">") not in _COMPARE:
        raise ValueError(f"Unknown comparison {d.get('op')!r}")
    return _LEAF_TYPES[ptype](**d)


def iter_leaves(pred: Predicate) -> Iterator[Leaf]:
    if isinstance(pred, Combinator):
        for child in pred.children:
            yield from iter_leaves(child)
    else:
        yield pred


def depth(pred: Predicate) -> int:
    """Combinator nesting depth (a bare leaf has depth 0)."""
    if isinstance(pred, Combinator):
        return 1 + max(depth(c) for c in pred.children)
    return 0


def param_refs(pred: Predicate) -> List[str]:
    out: List[str] = []
    for leaf in iter_leaves(pred):
        for value in vars(leaf).values():
            if is_param_ref(value):
                out.append(value[1:])
    return out
