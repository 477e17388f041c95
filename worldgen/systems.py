"""
Tick rules: per-tick mutators of pressures, relationships and entity state.

Every tick rule shares the same outer contract: it runs on ticks that are a multiple of
`frequency`, passes a `throttle` chance, and then mutates the world directly. The era's
tick modifier arrives as `ctx.intensity`; it scales each rule's rates, and an intensity of
0 disables the rule for that era.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from .graph import Entity, Prominence
from .params import ParameterSpec, parse_parameters
from .predicates import Number, PredicateContext
from .rng import chance


log = logging.getLogger(__name__)


@dataclass
class TickContext(PredicateContext):
    cluster_threshold: float = 0.0
    intensity: float = 1.0


@dataclass
class TickOutcome:
    rule_id: str
    entities_created: List[str] = field(default_factory=list)
    changed_entities: List[str] = field(default_factory=list)
    relationships_created: List[Tuple[str, str, str]] = field(default_factory=list)
    relationships_removed: List[Tuple[str, str, str]] = field(default_factory=list)
    pressure_deltas: Dict[str, float] = field(default_factory=dict)
    note: str = ""

    @property
    def changed(self) -> bool:
        return bool(
            self.entities_created
            or self.changed_entities
            or self.relationships_created
            or self.relationships_removed
            or self.pressure_deltas
        )

    def add_pressure(self, ctx: TickContext, pressure_id: str, delta: float) -> None:
        before = ctx.pressures.value(pressure_id)
        after = ctx.pressures.adjust(pressure_id, delta)
        self.pressure_deltas[pressure_id] = self.pressure_deltas.get(pressure_id, 0.0) + (after - before)


@dataclass(frozen=True)
class TickRuleBase:
    id: str
    enabled: bool = True
    frequency: int = 1
    throttle: Number = 1.0
    parameters: Dict[str, ParameterSpec] = field(default_factory=dict)

    def due(self, ctx: TickContext) -> bool:
        if not self.enabled or ctx.intensity <= 0.0:
            return False
        if self.frequency > 1 and ctx.tick % self.frequency != 0:
            return False
        return chance(ctx.rng, ctx.number(self.throttle))

    def run(self, ctx: TickContext) -> TickOutcome:
        raise NotImplementedError


def _filtered(ctx: TickContext, kind: Optional[str], status: Optional[str]) -> List[Entity]:
    return sorted(ctx.graph.entities(kind, status=status), key=lambda e: e.id)


# ---------------------------------------------------------------------------
# contagion (susceptible -> carrier -> recovered/immune)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ContagionRule(TickRuleBase):
    marker: str = "infected"
    immunity_tag: Optional[str] = "immune"
    entity_kind: Optional[str] = None
    vectors: Tuple[str, ...] = ()  # relationship kinds carrying the spread; empty = any
    min_strength: Number = 0.0
    base_rate: Number = 0.1
    contact_multiplier: Number = 0.05
    max_probability: Number = 0.9
    recovery_rate: Number = 0.0
    pressure_per_infection: Tuple[Tuple[str, Number], ...] = ()

    def _contacts(self, ctx: TickContext, entity: Entity, carriers: set) -> int:
        min_strength = ctx.number(self.min_strength)
        kinds = self.vectors or (None,)
        seen = set()
        for kind in kinds:
            for other in ctx.graph.neighbors(entity.id, kind, min_strength=min_strength):
                if other.id in carriers:
                    seen.add(other.id)
        return len(seen)

    def run(self, ctx: TickContext) -> TickOutcome:
        out = TickOutcome(self.id)
        population = _filtered(ctx, self.entity_kind, "active")
        carriers = {e.id for e in population if self.marker in e.tags}
        if not carriers:
            return out

        base = ctx.number(self.base_rate) * ctx.intensity
        per_contact = ctx.number(self.contact_multiplier) * ctx.intensity
        cap = ctx.number(self.max_probability)

        newly: List[Entity] = []
        for e in population:
            if e.id in carriers or (self.immunity_tag and self.immunity_tag in e.tags):
                continue
            contacts = self._contacts(ctx, e, carriers)
            if contacts and chance(ctx.rng, min(cap, base + per_contact * (contacts - 1))):
                newly.append(e)

        recovery = ctx.number(self.recovery_rate)
        for e in population:
            if e.id in carriers and recovery > 0 and chance(ctx.rng, recovery):
                ctx.graph.remove_tag(e, self.marker)
                if self.immunity_tag:
                    ctx.graph.add_tag(e, self.immunity_tag)
                out.changed_entities.append(e.id)

        for e in newly:
            ctx.graph.add_tag(e, self.marker)
            out.changed_entities.append(e.id)
            for pressure_id, delta in self.pressure_per_infection:
                out.add_pressure(ctx, pressure_id, ctx.number(delta))
        if newly:
            out.note = f"{len(newly)} new carrier(s) of {self.marker!r}"
        return out


# ---------------------------------------------------------------------------
# threshold trigger (entity filter + conditions -> actions)
# ---------------------------------------------------------------------------

CONDITION_TYPES = (
    "tag_present",
    "tag_absent",
    "relationship_count",
    "connection_count",
    "pressure_above",
    "pressure_below",
    "ticks_since_update",
)
ACTION_TYPES = ("set_tag", "remove_tag", "set_status", "modify_pressure", "connect")


@dataclass(frozen=True)
class TriggerCondition:
    type: str
    tag: Optional[str] = None
    relationship_kind: Optional[str] = None
    pressure: Optional[str] = None
    min: Optional[Number] = None
    max: Optional[Number] = None
    threshold: Number = 0.0

    def holds(self, ctx: TickContext, e: Entity) -> bool:
        if self.type == "tag_present":
            return self.tag in e.tags
        if self.type == "tag_absent":
            return self.tag not in e.tags
        if self.type in ("relationship_count", "connection_count"):
            if self.type == "relationship_count":
                n = len(ctx.graph.relationships_of(e.id, self.relationship_kind))
            else:
                n = len(ctx.graph.neighbors(e.id, self.relationship_kind))
            if self.min is not None and n < ctx.number(self.min):
                return False
            if self.max is not None and n > ctx.number(self.max):
                return False
            return True
        if self.type == "pressure_above":
            return ctx.pressures.value(self.pressure) > ctx.number(self.threshold)
        if self.type == "pressure_below":
            return ctx.pressures.value(self.pressure) < ctx.number(self.threshold)
        if self.type == "ticks_since_update":
            return ctx.tick - e.updated_at >= ctx.number(self.threshold)
        raise ValueError(f"Unknown trigger condition {self.type!r}")


@dataclass(frozen=True)
class TriggerAction:
    type: str
    tag: Optional[str] = None
    status: Optional[str] = None
    pressure: Optional[str] = None
    delta: Number = 0.0
    relationship_kind: Optional[str] = None
    target_kind: Optional[str] = None
    target_tag: Optional[str] = None
    strength: Optional[Number] = None


@dataclass(frozen=True)
class ThresholdTriggerRule(TickRuleBase):
    entity_kind: Optional[str] = None
    subtype: Optional[str] = None
    status: Optional[str] = "active"
    conditions: Tuple[TriggerCondition, ...] = ()
    actions: Tuple[TriggerAction, ...] = ()
    limit: Optional[int] = None  # max entities acted on per tick

    def _connect(self, ctx: TickContext, e: Entity, action: TriggerAction, out: TickOutcome) -> None:
        existing = {n.id for n in ctx.graph.neighbors(e.id, action.relationship_kind)}
        pool = [
            t
            for t in _filtered(ctx, action.target_kind, "active")
            if t.id != e.id and t.id not in existing and (action.target_tag is None or action.target_tag in t.tags)
        ]
        if not pool:
            return
        target = pool[int(ctx.rng.integers(len(pool)))]
        strength = None if action.strength is None else ctx.number(action.strength)
        rel = ctx.graph.add_relationship(action.relationship_kind, e.id, target.id, strength=strength)
        if rel is not None:
            out.relationships_created.append(rel.key)

    def run(self, ctx: TickContext) -> TickOutcome:
        out = TickOutcome(self.id)
        matched = [
            e
            for e in _filtered(ctx, self.entity_kind, self.status)
            if (self.subtype is None or e.subtype == self.subtype) and all(c.holds(ctx, e) for c in self.conditions)
        ]
        if self.limit is not None:
            matched = matched[: int(self.limit)]
        for e in matched:
            for action in self.actions:
                if action.type == "set_tag":
                    ctx.graph.add_tag(e, action.tag)
                elif action.type == "remove_tag":
                    ctx.graph.remove_tag(e, action.tag)
                elif action.type == "set_status":
                    ctx.graph.set_status(e, action.status)
                elif action.type == "modify_pressure":
                    out.add_pressure(ctx, action.pressure, ctx.number(action.delta) * ctx.intensity)
                elif action.type == "connect":
                    self._connect(ctx, e, action, out)
            out.changed_entities.append(e.id)
        return out


# ---------------------------------------------------------------------------
# relationship maintenance (decay, reinforcement, culling)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RelationshipMaintenanceRule(TickRuleBase):
    grace_period: Number = 5
    reinforcement: Number = 0.02
    reinforcing_kinds: Tuple[str, ...] = ()  # shared targets of these kinds reinforce a pair
    cull_threshold: Optional[Number] = None  # defaults to the clustering-strength threshold

    def _reinforced(self, ctx: TickContext, src: str, dst: str) -> bool:
        for kind in self.reinforcing_kinds:
            a = {r.dst for r in ctx.graph.relationships_of(src, kind, direction="src")}
            if a and a & {r.dst for r in ctx.graph.relationships_of(dst, kind, direction="src")}:
                return True
        return False

    def run(self, ctx: TickContext) -> TickOutcome:
        out = TickOutcome(self.id)
        schema = ctx.graph.schema
        grace = ctx.number(self.grace_period)
        boost = ctx.number(self.reinforcement)
        threshold = ctx.cluster_threshold if self.cull_threshold is None else ctx.number(self.cull_threshold)

        for rel in sorted(ctx.graph.relationships(), key=lambda r: r.key):
            if ctx.tick - rel.created_at < grace:
                continue
            if self._reinforced(ctx, rel.src, rel.dst):
                rel.strength = min(1.0, rel.strength + boost * ctx.intensity)
            else:
                rel.strength = max(0.0, rel.strength - schema.decay_amount(rel.kind) * ctx.intensity)
            if rel.strength < threshold and schema.is_cullable(rel.kind):
                ctx.graph.remove_relationship(*rel.key)
                out.relationships_removed.append(rel.key)
        if out.relationships_removed:
            out.note = f"culled {len(out.relationships_removed)} weak relationship(s)"
            log.debug("%s at tick %d: %s", self.id, ctx.tick, out.note)
        return out


# ---------------------------------------------------------------------------
# prominence evolution
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProminenceEvolutionRule(TickRuleBase):
    entity_kind: Optional[str] = None
    gain_connections: Number = 6
    fade_connections: Number = 1
    gain_probability: Number = 0.1
    fade_probability: Number = 0.05
    max_level: str = "mythic"

    def run(self, ctx: TickContext) -> TickOutcome:
        out = TickOutcome(self.id)
        gain_at = ctx.number(self.gain_connections)
        fade_at = ctx.number(self.fade_connections)
        p_gain = ctx.number(self.gain_probability) * ctx.intensity
        p_fade = ctx.number(self.fade_probability) * ctx.intensity
        ceiling = Prominence.parse(self.max_level)
        for e in _filtered(ctx, self.entity_kind, None):
            d = ctx.graph.degree(e.id)
            if d >= gain_at and e.prominence < ceiling and chance(ctx.rng, p_gain):
                step = 1
            elif d <= fade_at and e.prominence > Prominence.FORGOTTEN and chance(ctx.rng, p_fade):
                step = -1
            else:
                continue
            e.prominence = e.prominence.shifted(step)
            ctx.graph.touch(e)
            out.changed_entities.append(e.id)
        return out


# ---------------------------------------------------------------------------
# cluster formation (similar entities -> one meta-entity)
# ---------------------------------------------------------------------------

META_TAG = "meta-entity"
CRITERION_TYPES = ("shared_relationship", "shared_tags", "temporal_proximity", "same_subtype", "same_culture")


@dataclass(frozen=True)
class SimilarityCriterion:
    type: str
    weight: Number = 1.0
    threshold: Optional[Number] = None
    relationship_kind: Optional[str] = None
    direction: str = "src"

    def _related(self, ctx: TickContext, entity_id: str) -> set:
        rels = ctx.graph.relationships_of(entity_id, self.relationship_kind, direction=self.direction)
        return {r.dst if self.direction == "src" else r.src for r in rels}

    def matches(self, ctx: TickContext, a: Entity, b: Entity) -> bool:
        if self.type == "shared_relationship":
            if self.relationship_kind is None:
                return False
            return bool(self._related(ctx, a.id) & self._related(ctx, b.id))
        if self.type == "shared_tags":
            union = a.tags | b.tags
            if not union:
                return False
            limit = 0.3 if self.threshold is None else ctx.number(self.threshold)
            return len(a.tags & b.tags) / len(union) >= limit
        if self.type == "temporal_proximity":
            limit = 30 if self.threshold is None else ctx.number(self.threshold)
            return abs(a.created_at - b.created_at) <= limit
        if self.type == "same_subtype":
            return a.subtype == b.subtype
        if self.type == "same_culture":
            return a.culture == b.culture
        raise ValueError(f"Unknown similarity criterion {self.type!r}")


@dataclass
class Cluster:
    members: List[Entity]
    score: float


@dataclass(frozen=True)
class ClusterFormationRule(TickRuleBase):
    """Greedily groups similar entities and gives each large enough group a meta-entity.

    Entities are visited oldest first. One joins the first cluster whose members it
    resembles on average by at least `minimum_score * join_threshold`; otherwise it
    starts a new cluster. Clusters reaching `min_size` whose running score is still at
    least `minimum_score` become a meta-entity of `meta_kind`, and every member gets a
    `member_relationship` link to it. Members already linked that way, and meta-entities
    themselves, are never clustered again.
    """

    entity_kind: Optional[str] = None
    subtypes: Tuple[str, ...] = ()
    exclude_subtypes: Tuple[str, ...] = ()
    status: Optional[str] = "active"
    criteria: Tuple[SimilarityCriterion, ...] = ()
    min_size: Number = 3
    max_size: Optional[Number] = None
    minimum_score: Number = 2.0
    join_threshold: Number = 0.7
    meta_kind: Optional[str] = None
    meta_subtype: Optional[str] = None  # None: majority subtype of the members
    meta_status: str = "active"
    meta_tags: Tuple[str, ...] = ()
    recognized_size: Number = 5
    renowned_size: Number = 8
    description: str = "Formed from {count} related entities."
    member_relationship: Optional[str] = None
    archive_status: Optional[str] = None  # members move to this status once absorbed
    pressure_changes: Tuple[Tuple[str, Number], ...] = ()

    def clusterable(self, ctx: TickContext) -> List[Entity]:
        out = []
        for e in _filtered(ctx, self.entity_kind, self.status):
            if self.subtypes and e.subtype not in self.subtypes:
                continue
            if e.subtype in self.exclude_subtypes or META_TAG in e.tags:
                continue
            if self.member_relationship is not None and ctx.graph.relationships_of(
                e.id, self.member_relationship, direction="src"
            ):
                continue
            out.append(e)
        return sorted(out, key=lambda e: (e.created_at, e.id))

    def similarity(self, ctx: TickContext, a: Entity, b: Entity) -> float:
        return float(sum(ctx.number(c.weight) for c in self.criteria if c.matches(ctx, a, b)))

    def detect(self, ctx: TickContext, entities: List[Entity]) -> List[Cluster]:
        min_size = int(ctx.number(self.min_size))
        if len(entities) < min_size:
            return []
        floor = ctx.number(self.minimum_score)
        join_at = floor * ctx.number(self.join_threshold)
        clusters: List[Cluster] = []
        for e in entities:
            for cluster in clusters:
                scores = [s for s in (self.similarity(ctx, e, m) for m in cluster.members) if s > 0]
                avg = sum(scores) / len(scores) if scores else 0.0
                if avg >= join_at:
                    cluster.members.append(e)
                    cluster.score = (cluster.score + avg) / 2.0
                    break
            else:
                clusters.append(Cluster([e], floor))

        kept = [c for c in clusters if len(c.members) >= min_size]
        if self.max_size is not None:
            cap = int(ctx.number(self.max_size))
            for c in kept:
                del c.members[cap:]
        return kept

    def _prominence(self, ctx: TickContext, size: int) -> Prominence:
        if size >= ctx.number(self.renowned_size):
            return Prominence.RENOWNED
        if size >= ctx.number(self.recognized_size):
            return Prominence.RECOGNIZED
        return Prominence.MARGINAL

    def _form(self, ctx: TickContext, cluster: Cluster, out: TickOutcome) -> None:
        members = cluster.members
        subtype = self.meta_subtype or Counter(m.subtype for m in members).most_common(1)[0][0]
        culture = Counter(m.culture for m in members).most_common(1)[0][0]
        inherited = sorted({t for m in members for t in m.tags if t != META_TAG})[:4]
        meta = ctx.graph.add_entity(
            self.meta_kind,
            subtype,
            status=self.meta_status,
            prominence=self._prominence(ctx, len(members)),
            tags=(*inherited, META_TAG, *self.meta_tags),
            description=self.description.format(count=len(members)),
            culture=culture,
        )
        out.entities_created.append(meta.id)
        for m in members:
            rel = ctx.graph.add_relationship(self.member_relationship, m.id, meta.id)
            if rel is not None:
                out.relationships_created.append(rel.key)
            if self.archive_status is not None:
                ctx.graph.set_status(m, self.archive_status)
            out.changed_entities.append(m.id)

    def run(self, ctx: TickContext) -> TickOutcome:
        out = TickOutcome(self.id)
        floor = ctx.number(self.minimum_score)
        for cluster in self.detect(ctx, self.clusterable(ctx)):
            if cluster.score >= floor:
                self._form(ctx, cluster, out)
        if out.entities_created:
            for pressure_id, delta in self.pressure_changes:
                out.add_pressure(ctx, pressure_id, ctx.number(delta))
            out.note = f"{len(out.entities_created)} {self.meta_kind} formed from {len(out.changed_entities)} entities"
            log.debug("%s at tick %d: %s", self.id, ctx.tick, out.note)
        return out


TickRule = Union[
    ContagionRule,
    ThresholdTriggerRule,
    RelationshipMaintenanceRule,
    ProminenceEvolutionRule,
    ClusterFormationRule,
]

_TICK_TYPES = {
    "contagion": ContagionRule,
    "threshold_trigger": ThresholdTriggerRule,
    "relationship_maintenance": RelationshipMaintenanceRule,
    "prominence_evolution": ProminenceEvolutionRule,
    "cluster_formation": ClusterFormationRule,
}


def _tuple(value: Any) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    return tuple(str(v) for v in value)


def parse_tick_rule(doc: Mapping[str, Any]) -> TickRule:
    d = dict(doc)
    rtype = d.pop("type", None)
    if rtype not in _TICK_TYPES:
        raise ValueError(f"Unknown tick rule type {rtype!r} (use one of {sorted(_TICK_TYPES)})")
    d["parameters"] = parse_parameters(d.get("parameters"))
    if rtype == "contagion":
        d["vectors"] = _tuple(d.get("vectors"))
        d["pressure_per_infection"] = tuple((str(k), v) for k, v in (d.get("pressure_per_infection") or {}).items())
    elif rtype == "threshold_trigger":
        conds = tuple(TriggerCondition(**c) for c in d.get("conditions", []) or [])
        acts = tuple(TriggerAction(**a) for a in d.get("actions", []) or [])
        for c in conds:
            if c.type not in CONDITION_TYPES:
                raise ValueError(f"tick rule {d.get('id')!r}: unknown condition {c.type!r}")
        for a in acts:
            if a.type not in ACTION_TYPES:
                raise ValueError(f"tick rule {d.get('id')!r}: unknown action {a.type!r}")
        d["conditions"], d["actions"] = conds, acts
    elif rtype == "relationship_maintenance":
        d["reinforcing_kinds"] = _tuple(d.get("reinforcing_kinds"))
    elif rtype == "cluster_formation":
        crits = tuple(SimilarityCriterion(**c) for c in d.get("criteria", []) or [])
        for c in crits:
            if c.type not in CRITERION_TYPES:
                raise ValueError(f"tick rule {d.get('id')!r}: unknown similarity criterion {c.type!r}")
            if c.direction not in ("src", "dst"):
                raise ValueError(f"tick rule {d.get('id')!r}: criterion direction must be 'src' or 'dst'")
        d["criteria"] = crits
        for key in ("subtypes", "exclude_subtypes", "meta_tags"):
            d[key] = _tuple(d.get(key))
        d["pressure_changes"] = tuple((str(k), v) for k, v in (d.get("pressure_changes") or {}).items())
    return _TICK_TYPES[rtype](**d)
