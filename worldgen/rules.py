"""
Generative rules.

A generative rule is applied in two steps. `plan()` resolves every random choice
(variable bindings, entity counts, subtypes, relationship chances) against the current
graph without touching it; `commit()` then performs the mutations. A RuleSkipped raised
during planning therefore leaves the world unchanged.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from .errors import RuleSkipped
from .graph import Entity, Prominence
from .params import ParameterSpec, parse_parameters
from .predicates import ALWAYS, Number, Predicate, PredicateContext, parse_predicate
from .rng import chance


PICK_STRATEGIES = (
    "random",
    "first",
    "newest",
    "highest_prominence",
    "lowest_prominence",
    "most_connected",
    "least_connected",
)


@dataclass(frozen=True)
class Produces:
    """Declared output metadata consulted by the rule selector."""

    entity_kinds: Tuple[str, ...] = ()
    relationship_kinds: Tuple[str, ...] = ()
    prominence: Tuple[str, ...] = ()


@dataclass(frozen=True)
class VariableSpec:
    name: str
    kind: Optional[str] = None
    subtype: Optional[str] = None
    status: Optional[str] = "active"
    tag: Optional[str] = None
    related_to: Optional[str] = None  # name of an earlier variable
    via: Optional[str] = None  # relationship kind linking to `related_to`
    pick: str = "random"
    distinct: bool = True
    optional: bool = False


@dataclass(frozen=True)
class SubtypeOption:
    subtype: str
    weight: Number = 1.0
    pressure: Optional[str] = None
    coefficient: float = 0.0

    def resolve_weight(self, ctx: PredicateContext) -> float:
        w = ctx.number(self.weight)
        if self.pressure is not None:
            w += self.coefficient * ctx.pressures.value(self.pressure)
        return max(0.0, w)


@dataclass(frozen=True)
class CreateSpec:
    ref: str
    kind: str
    count: Number = 1
    subtype: Optional[str] = None
    subtype_options: Tuple[SubtypeOption, ...] = ()
    status: str = "active"
    prominence: str = "marginal"
    tags: Tuple[str, ...] = ()
    culture: Optional[str] = None
    culture_from: Optional[str] = None  # variable whose culture is inherited
    description: str = ""


@dataclass(frozen=True)
class RelationshipSpec:
    kind: str
    src: str
    dst: str
    strength: Optional[Number] = None
    probability: Number = 1.0
    bidirectional: bool = False


@dataclass(frozen=True)
class EntityUpdate:
    target: str
    add_tags: Tuple[str, ...] = ()
    remove_tags: Tuple[str, ...] = ()
    status: Optional[str] = None
    prominence_delta: int = 0


# Planned endpoint: ("bound", entity_id) or ("new", create_index)
Endpoint = Tuple[str, Union[str, int]]


@dataclass
class RulePlan:
    rule_id: str
    bindings: Dict[str, str] = field(default_factory=dict)
    creations: List[Tuple[CreateSpec, str, Optional[str]]] = field(default_factory=list)
    links: List[Tuple[str, Endpoint, Endpoint, Optional[float]]] = field(default_factory=list)
    pressure_deltas: Dict[str, float] = field(default_factory=dict)
    updates: List[Tuple[EntityUpdate, Tuple[Endpoint, ...]]] = field(default_factory=list)


@dataclass(frozen=True)
class RuleApplication:
    rule_id: str
    entities_created: Tuple[str, ...]
    relationships_created: Tuple[Tuple[str, str, str], ...]
    bindings: Dict[str, str]


def _pick(candidates: List[Entity], strategy: str, ctx: PredicateContext) -> Entity:
    if strategy == "random":
        return candidates[int(ctx.rng.integers(len(candidates)))]
    if strategy == "first":
        return candidates[0]
    if strategy == "newest":
        return max(candidates, key=lambda e: (e.created_at, e.id))
    if strategy == "highest_prominence":
        return max(candidates, key=lambda e: (int(e.prominence), e.id))
    if strategy == "lowest_prominence":
        return min(candidates, key=lambda e: (int(e.prominence), e.id))
    if strategy == "most_connected":
        return max(candidates, key=lambda e: (ctx.graph.degree(e.id), e.id))
    if strategy == "least_connected":
        return min(candidates, key=lambda e: (ctx.graph.degree(e.id), e.id))
    raise ValueError(f"Unknown pick strategy {strategy!r}")


@dataclass(frozen=True)
class GenerativeRule:
    id: str
    name: str = ""
    enabled: bool = True
    applicability: Predicate = ALWAYS
    variables: Tuple[VariableSpec, ...] = ()
    creates: Tuple[CreateSpec, ...] = ()
    relationships: Tuple[RelationshipSpec, ...] = ()
    pressure_deltas: Tuple[Tuple[str, Number], ...] = ()
    updates: Tuple[EntityUpdate, ...] = ()
    parameters: Dict[str, ParameterSpec] = field(default_factory=dict)
    produces: Produces = Produces()
    shape: Optional[str] = None  # "cluster" | "disperse" | None

    def applicable(self, ctx: PredicateContext) -> bool:
        return self.enabled and self.applicability.evaluate(ctx)

    # ------------------------------------------------------------------ plan

    def _bind(self, ctx: PredicateContext, plan: RulePlan) -> None:
        for var in self.variables:
            if var.related_to is not None:
                anchor = plan.bindings.get(var.related_to)
                if anchor is None:
                    pool = []
                else:
                    pool = ctx.graph.neighbors(anchor, var.via)
            else:
                pool = ctx.graph.entities(var.kind)
            candidates = [
                e
                for e in pool
                if (var.kind is None or e.kind == var.kind)
                and (var.subtype is None or e.subtype == var.subtype)
                and (var.status is None or e.status == var.status)
                and (var.tag is None or var.tag in e.tags)
                and not (var.distinct and e.id in plan.bindings.values())
            ]
            candidates.sort(key=lambda e: e.id)
            if not candidates:
                if var.optional:
                    continue
                raise RuleSkipped(self.id, f"no candidates for variable {var.name!r}")
            plan.bindings[var.name] = _pick(candidates, var.pick, ctx).id

    def _resolve_subtype(self, spec: CreateSpec, ctx: PredicateContext) -> str:
        if spec.subtype is not None:
            return spec.subtype
        if not spec.subtype_options:
            return spec.kind
        options = [(o.subtype, o.resolve_weight(ctx)) for o in spec.subtype_options]
        options = [(s, w) for s, w in options if w > 0 and ctx.graph.schema.has_subtype(spec.kind, s)]
        if not options:
            raise RuleSkipped(self.id, f"no subtype options for {spec.ref!r}")
        weights = [w for _, w in options]
        total = float(sum(weights))
        idx = int(ctx.rng.choice(len(options), p=[w / total for w in weights]))
        return options[idx][0]

    def _endpoints(self, name: str, plan: RulePlan, created_refs: Dict[str, List[int]]) -> List[Endpoint]:
        if name in plan.bindings:
            return [("bound", plan.bindings[name])]
        return [("new", i) for i in created_refs.get(name, [])]

    def plan(self, ctx: PredicateContext) -> RulePlan:
        plan = RulePlan(rule_id=self.id)
        self._bind(ctx, plan)

        created_refs: Dict[str, List[int]] = {}
        for spec in self.creates:
            n = max(0, int(round(ctx.number(spec.count))))
            for _ in range(n):
                culture = spec.culture
                if spec.culture_from is not None and spec.culture_from in plan.bindings:
                    culture = ctx.graph.get_entity(plan.bindings[spec.culture_from]).culture
                created_refs.setdefault(spec.ref, []).append(len(plan.creations))
                plan.creations.append((spec, self._resolve_subtype(spec, ctx), culture))

        for rel in self.relationships:
            strength = None if rel.strength is None else ctx.number(rel.strength)
            p = ctx.number(rel.probability)
            for src in self._endpoints(rel.src, plan, created_refs):
                for dst in self._endpoints(rel.dst, plan, created_refs):
                    if src == dst or not chance(ctx.rng, p):
                        continue
                    plan.links.append((rel.kind, src, dst, strength))
                    if rel.bidirectional:
                        plan.links.append((rel.kind, dst, src, strength))

        for pressure_id, delta in self.pressure_deltas:
            plan.pressure_deltas[pressure_id] = plan.pressure_deltas.get(pressure_id, 0.0) + ctx.number(delta)

        for upd in self.updates:
            targets = tuple(self._endpoints(upd.target, plan, created_refs))
            if targets:
                plan.updates.append((upd, targets))
        return plan

    # ---------------------------------------------------------------- commit

    def commit(self, plan: RulePlan, ctx: PredicateContext) -> RuleApplication:
        graph = ctx.graph
        new_ids: List[str] = []
        for spec, subtype, culture in plan.creations:
            e = graph.add_entity(
                spec.kind,
                subtype,
                status=spec.status,
                prominence=spec.prominence,
                tags=spec.tags,
                description=spec.description,
                culture=culture,
            )
            new_ids.append(e.id)

        def eid(ep: Endpoint) -> str:
            return ep[1] if ep[0] == "bound" else new_ids[int(ep[1])]

        rel_keys: List[Tuple[str, str, str]] = []
        for kind, src, dst, strength in plan.links:
            rel = graph.add_relationship(kind, eid(src), eid(dst), strength=strength)
            if rel is not None:
                rel_keys.append(rel.key)

        for pressure_id, delta in plan.pressure_deltas.items():
            ctx.pressures.adjust(pressure_id, delta)

        for upd, targets in plan.updates:
            for ep in targets:
                entity = graph.get_entity(eid(ep))
                for tag in upd.add_tags:
                    graph.add_tag(entity, tag)
                for tag in upd.remove_tags:
                    graph.remove_tag(entity, tag)
                if upd.status is not None:
                    graph.set_status(entity, upd.status)
                if upd.prominence_delta:
                    entity.prominence = entity.prominence.shifted(upd.prominence_delta)
                    graph.touch(entity)

        return RuleApplication(
            rule_id=self.id,
            entities_created=tuple(new_ids),
            relationships_created=tuple(rel_keys),
            bindings=dict(plan.bindings),
        )

    def apply(self, ctx: PredicateContext) -> RuleApplication:
        """Plan then commit; raises RuleSkipped without mutating anything."""
        return self.commit(self.plan(ctx), ctx)


# ---------------------------------------------------------------------------
# parsing
# ---------------------------------------------------------------------------


def _tuple(value: Any) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    return tuple(str(v) for v in value)


def _create_from_doc(doc: Mapping[str, Any]) -> CreateSpec:
    subtype = doc.get("subtype")
    options: Tuple[SubtypeOption, ...] = ()
    if isinstance(subtype, Mapping):
        # {"weighted": [{subtype, weight, pressure, coefficient}, ...]}
        options = tuple(SubtypeOption(**o) for o in subtype.get("weighted", []))
        subtype = None
    return CreateSpec(
        ref=str(doc.get("ref", doc["kind"])),
        kind=str(doc["kind"]),
        count=doc.get("count", 1),
        subtype=subtype,
        subtype_options=options,
        status=str(doc.get("status", "active")),
        prominence=str(doc.get("prominence", "marginal")),
        tags=_tuple(doc.get("tags")),
        culture=doc.get("culture"),
        culture_from=doc.get("culture_from"),
        description=str(doc.get("description", "")),
    )


def _update_from_doc(doc: Mapping[str, Any]) -> EntityUpdate:
    return EntityUpdate(
        target=str(doc["target"]),
        add_tags=_tuple(doc.get("add_tags")),
        remove_tags=_tuple(doc.get("remove_tags")),
        status=doc.get("status"),
        prominence_delta=int(doc.get("prominence_delta", 0)),
    )


def parse_generative_rule(doc: Mapping[str, Any], *, max_depth: Optional[int] = None) -> GenerativeRule:
    produces = doc.get("produces", {}) or {}
    prominence = tuple(Prominence.parse(p).label for p in _tuple(produces.get("prominence")))
    shape = doc.get("shape")
    if shape not in (None, "cluster", "disperse"):
        raise ValueError(f"rule {doc.get('id')!r}: unknown shape {shape!r}")
    for var in doc.get("variables", []) or []:
        if var.get("pick", "random") not in PICK_STRATEGIES:
            raise ValueError(f"rule {doc.get('id')!r}: unknown pick strategy {var.get('pick')!r}")
    return GenerativeRule(
        id=str(doc["id"]),
        name=str(doc.get("name", doc["id"])),
        enabled=bool(doc.get("enabled", True)),
        applicability=parse_predicate(doc.get("applicability"), max_depth=max_depth),
        variables=tuple(VariableSpec(**v) for v in doc.get("variables", []) or []),
        creates=tuple(_create_from_doc(c) for c in doc.get("creates", []) or []),
        relationships=tuple(RelationshipSpec(**r) for r in doc.get("relationships", []) or []),
        pressure_deltas=tuple((str(k), v) for k, v in (doc.get("pressure_deltas", {}) or {}).items()),
        updates=tuple(_update_from_doc(u) for u in doc.get("updates", []) or []),
        parameters=parse_parameters(doc.get("parameters")),
        produces=Produces(
            entity_kinds=_tuple(produces.get("entity_kinds")),
            relationship_kinds=_tuple(produces.get("relationship_kinds")),
            prominence=prominence,
        ),
        shape=shape,
    )
