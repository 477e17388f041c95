"""
World document loading and up-front validation.

Every reference problem found in a document is collected and raised together as one
ConfigValidationError before any run starts.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from .config import (
    EngineConfig,
    FitnessConfig,
    MutationConfig,
    SearchConfig,
    check_configs,
    engine_config_from_dict,
    fitness_config_from_dict,
    load_yaml,
    mutation_config_from_dict,
    search_config_from_dict,
)
from .distribution import DistributionTargets, parse_targets
from .eras import Era, parse_era
from .errors import ConfigValidationError
from .graph import Prominence
from .params import Overrides, ParameterSpace, check_parameters
from .predicates import (
    EntityCount,
    EraIs,
    PressureAnyAbove,
    PressureCompare,
    PressureThreshold,
    Predicate,
    RelationshipCount,
    TagPresent,
    is_param_ref,
    iter_leaves,
    param_refs,
)
from .pressures import (
    EntityCountFactor,
    PressureFactor,
    PressureSpec,
    RatioFactor,
    RelationshipCountFactor,
    TagCountFactor,
    parse_pressure,
)
from .rules import GenerativeRule, parse_generative_rule
from .schema import DomainSchema, parse_schema
from .systems import (
    ClusterFormationRule,
    ContagionRule,
    ProminenceEvolutionRule,
    RelationshipMaintenanceRule,
    ThresholdTriggerRule,
    TickRule,
    parse_tick_rule,
)


@dataclass(frozen=True)
class WorldDefinition:
    """Everything a run needs, loaded once and shared read-only by engine runs and search workers."""

    schema: DomainSchema
    pressures: Tuple[PressureSpec, ...]
    eras: Tuple[Era, ...]
    generative: Tuple[GenerativeRule, ...]
    tick: Tuple[TickRule, ...]
    targets: DistributionTargets
    engine: EngineConfig = field(default_factory=EngineConfig)
    fitness: FitnessConfig = field(default_factory=FitnessConfig)
    mutation: MutationConfig = field(default_factory=MutationConfig)
    search: SearchConfig = field(default_factory=SearchConfig)
    initial_entities: Tuple[Dict[str, Any], ...] = ()
    initial_relationships: Tuple[Dict[str, Any], ...] = ()

    def parameter_space(self) -> ParameterSpace:
        specs = {r.id: r.parameters for r in self.generative}
        specs.update({r.id: r.parameters for r in self.tick})
        return ParameterSpace(specs)

    def effective_params(self, overrides: Optional[Mapping[str, Mapping[str, Any]]] = None) -> Overrides:
        return self.parameter_space().effective(overrides)


# ---------------------------------------------------------------------------
# reference checks
# ---------------------------------------------------------------------------


class _Checker:
    def __init__(self, schema: DomainSchema, pressures: Iterable[str], eras: Iterable[str]):
        self.schema = schema
        self.pressures = set(pressures)
        self.eras = set(eras)
        self.issues: List[str] = []

    def kind(self, where: str, kind: Optional[str]) -> None:
        if kind is not None and not self.schema.has_entity_kind(kind):
            self.issues.append(f"{where}: undeclared entity kind {kind!r}")

    def subtype(self, where: str, kind: str, subtype: Optional[str]) -> None:
        if subtype is not None and self.schema.has_entity_kind(kind) and not self.schema.has_subtype(kind, subtype):
            self.issues.append(f"{where}: subtype {subtype!r} not declared for kind {kind!r}")

    def rel(self, where: str, kind: Optional[str]) -> None:
        if kind is not None and not self.schema.has_relationship_kind(kind):
            self.issues.append(f"{where}: undeclared relationship kind {kind!r}")

    def pressure(self, where: str, pid: Optional[str]) -> None:
        if pid is not None and pid not in self.pressures:
            self.issues.append(f"{where}: undeclared pressure {pid!r}")

    def era(self, where: str, era: str) -> None:
        if era not in self.eras:
            self.issues.append(f"{where}: undeclared era {era!r}")

    def params(self, where: str, values: Iterable[Any], declared: Mapping[str, Any]) -> None:
        for v in values:
            if is_param_ref(v) and v[1:] not in declared:
                self.issues.append(f"{where}: unknown parameter reference {v!r}")

    def predicate(self, where: str, pred: Predicate, declared: Mapping[str, Any]) -> None:
        for leaf in iter_leaves(pred):
            if isinstance(leaf, EntityCount):
                self.kind(where, leaf.kind)
                if leaf.kind is not None:
                    self.subtype(where, leaf.kind, leaf.subtype)
            elif isinstance(leaf, (RelationshipCount,)):
                self.rel(where, leaf.kind)
            elif isinstance(leaf, TagPresent):
                self.kind(where, leaf.kind)
            elif isinstance(leaf, PressureThreshold):
                self.pressure(where, leaf.pressure)
            elif isinstance(leaf, PressureAnyAbove):
                for p in leaf.pressures:
                    self.pressure(where, p)
            elif isinstance(leaf, PressureCompare):
                self.pressure(where, leaf.left)
                self.pressure(where, leaf.right)
            elif isinstance(leaf, EraIs):
                for e in leaf.eras:
                    self.era(where, e)
        for name in param_refs(pred):
            if name not in declared:
                self.issues.append(f"{where}: unknown parameter reference '${name}'")

    def generative(self, rule: GenerativeRule) -> None:
        where = f"rule {rule.id!r}"
        self.issues.extend(check_parameters(rule.id, rule.parameters))
        self.predicate(where, rule.applicability, rule.parameters)
        names = set()
        for var in rule.variables:
            self.kind(where, var.kind)
            self.rel(where, var.via)
            if var.related_to is not None and var.related_to not in names:
                self.issues.append(f"{where}: variable {var.name!r} relates to unbound variable {var.related_to!r}")
            names.add(var.name)
        for c in rule.creates:
            self.kind(where, c.kind)
            self.subtype(where, c.kind, c.subtype)
            for o in c.subtype_options:
                self.subtype(where, c.kind, o.subtype)
                self.pressure(where, o.pressure)
            try:
                Prominence.parse(c.prominence)
            except ValueError as exc:
                self.issues.append(f"{where}: {exc}")
            if c.culture is not None and self.schema.cultures and c.culture not in self.schema.cultures:
                self.issues.append(f"{where}: undeclared culture {c.culture!r}")
            self.params(where, [c.count] + [o.weight for o in c.subtype_options], rule.parameters)
            names.add(c.ref)
        for r in rule.relationships:
            self.rel(where, r.kind)
            for end in (r.src, r.dst):
                if end not in names:
                    self.issues.append(f"{where}: relationship endpoint {end!r} is neither a variable nor a created ref")
            self.params(where, [r.strength, r.probability], rule.parameters)
        for pid, delta in rule.pressure_deltas:
            self.pressure(where, pid)
            self.params(where, [delta], rule.parameters)
        for u in rule.updates:
            if u.target not in names:
                self.issues.append(f"{where}: update target {u.target!r} is neither a variable nor a created ref")
        for k in rule.produces.entity_kinds:
            self.kind(f"{where} produces", k)
        for k in rule.produces.relationship_kinds:
            self.rel(f"{where} produces", k)

    def tick_rule(self, rule: TickRule) -> None:
        where = f"tick rule {rule.id!r}"
        self.issues.extend(check_parameters(rule.id, rule.parameters))
        self.params(where, [v for v in vars(rule).values()], rule.parameters)
        if isinstance(rule, ContagionRule):
            self.kind(where, rule.entity_kind)
            for v in rule.vectors:
                self.rel(where, v)
            for pid, _ in rule.pressure_per_infection:
                self.pressure(where, pid)
        elif isinstance(rule, ThresholdTriggerRule):
            self.kind(where, rule.entity_kind)
            for c in rule.conditions:
                self.rel(where, c.relationship_kind)
                self.pressure(where, c.pressure)
                self.params(where, [c.min, c.max, c.threshold], rule.parameters)
            for a in rule.actions:
                self.pressure(where, a.pressure)
                self.rel(where, a.relationship_kind)
                self.kind(where, a.target_kind)
                if a.type == "connect" and a.relationship_kind is None:
                    self.issues.append(f"{where}: connect action needs a relationship_kind")
                self.params(where, [a.delta, a.strength], rule.parameters)
        elif isinstance(rule, RelationshipMaintenanceRule):
            for k in rule.reinforcing_kinds:
                self.rel(where, k)
        elif isinstance(rule, ProminenceEvolutionRule):
            self.kind(where, rule.entity_kind)
        elif isinstance(rule, ClusterFormationRule):
            self.cluster_rule(where, rule)

    def status(self, where: str, kind: Optional[str], status: Optional[str]) -> None:
        k = None if kind is None else self.schema.entity_kind(kind)
        if k is not None and status is not None and status not in k.statuses:
            self.issues.append(f"{where}: status {status!r} not declared for kind {kind!r}")

    def cluster_rule(self, where: str, rule: ClusterFormationRule) -> None:
        for name in ("entity_kind", "meta_kind", "member_relationship"):
            if getattr(rule, name) is None:
                self.issues.append(f"{where}: cluster formation needs {name}")
        self.kind(where, rule.entity_kind)
        self.kind(where, rule.meta_kind)
        self.rel(where, rule.member_relationship)
        if rule.entity_kind is not None:
            for s in rule.subtypes + rule.exclude_subtypes:
                self.subtype(where, rule.entity_kind, s)
            self.status(where, rule.entity_kind, rule.status)
            self.status(where, rule.entity_kind, rule.archive_status)
        if rule.meta_kind is not None:
            self.subtype(where, rule.meta_kind, rule.meta_subtype)
            self.status(where, rule.meta_kind, rule.meta_status)
        if not rule.criteria:
            self.issues.append(f"{where}: cluster formation needs at least one criterion")
        for c in rule.criteria:
            self.rel(where, c.relationship_kind)
            if c.type == "shared_relationship" and c.relationship_kind is None:
                self.issues.append(f"{where}: shared_relationship criterion needs a relationship_kind")
            self.params(where, [c.weight, c.threshold], rule.parameters)
        for pid, delta in rule.pressure_changes:
            self.pressure(where, pid)
            self.params(where, [delta], rule.parameters)

    def pressure_spec(self, spec: PressureSpec) -> None:
        where = f"pressure {spec.id!r}"
        lo, hi = spec.bounds
        if lo > hi:
            self.issues.append(f"{where}: bounds min exceeds max")
        for f in spec.positive + spec.negative:
            if isinstance(f, (EntityCountFactor, TagCountFactor)):
                self.kind(where, f.kind)
            elif isinstance(f, RelationshipCountFactor):
                self.rel(where, f.kind)
            elif isinstance(f, PressureFactor):
                self.pressure(where, f.pressure)
            elif isinstance(f, RatioFactor):
                self.kind(where, f.numerator)
                self.kind(where, f.denominator)


def _collect(issues: List[str], where: str, fn, *args, **kwargs):
    try:
        return fn(*args, **kwargs)
    except (KeyError, TypeError, ValueError) as exc:
        issues.append(f"{where}: {exc}")
        return None


def build_world(doc: Mapping[str, Any]) -> WorldDefinition:
    issues: List[str] = []

    schema = parse_schema(_get_section(doc, "schema"))
    engine = _collect(issues, "engine", engine_config_from_dict, doc.get("engine")) or EngineConfig()
    depth = engine.predicate_max_depth

    pressures = [p for p in (_collect(issues, f"pressure #{i}", parse_pressure, d) for i, d in enumerate(doc.get("pressures") or [])) if p]
    eras = [e for e in (_collect(issues, f"era #{i}", parse_era, d, max_depth=depth) for i, d in enumerate(doc.get("eras") or [])) if e]
    rules_doc = doc.get("rules") or {}
    generative = [
        r
        for r in (
            _collect(issues, f"generative rule #{i}", parse_generative_rule, d, max_depth=depth)
            for i, d in enumerate(rules_doc.get("generative") or [])
        )
        if r
    ]
    tick = [r for r in (_collect(issues, f"tick rule #{i}", parse_tick_rule, d) for i, d in enumerate(rules_doc.get("tick") or [])) if r]
    targets = _collect(issues, "targets", parse_targets, doc.get("targets") or {}) or DistributionTargets(entity_kinds={})
    fitness = _collect(issues, "fitness", fitness_config_from_dict, doc.get("fitness")) or FitnessConfig()
    mutation = _collect(issues, "mutation", mutation_config_from_dict, doc.get("mutation")) or MutationConfig()
    search = _collect(issues, "search", search_config_from_dict, doc.get("search")) or SearchConfig()

    pressure_ids = [p.id for p in pressures]
    era_ids = [e.id for e in eras]
    chk = _Checker(schema, pressure_ids, era_ids or ["default"])

    for label, ids in (("pressure", pressure_ids), ("era", era_ids), ("rule", [r.id for r in generative] + [r.id for r in tick])):
        dupes = sorted({i for i in ids if ids.count(i) > 1})
        if dupes:
            issues.append(f"duplicate {label} id(s): {dupes}")

    for p in pressures:
        chk.pressure_spec(p)
    for r in generative:
        chk.generative(r)
    for r in tick:
        chk.tick_rule(r)

    gen_ids = {r.id for r in generative}
    tick_ids = {r.id for r in tick}
    for era in eras:
        where = f"era {era.id!r}"
        chk.predicate(where, era.entry, {})
        chk.predicate(where, era.exit, {})
        for rid in list(era.rule_weights) + list(era.on_entry.rule_weights) + list(era.on_exit.rule_weights):
            if rid not in gen_ids:
                issues.append(f"{where}: rule weight for unknown generative rule {rid!r}")
        for rid in era.tick_modifiers:
            if rid not in tick_ids:
                issues.append(f"{where}: tick modifier for unknown tick rule {rid!r}")
        for pid in list(era.on_entry.pressure_deltas) + list(era.on_exit.pressure_deltas):
            chk.pressure(where, pid)
        for sec, vals in era.targets.items():
            if sec not in ("entity_kinds", "prominence"):
                issues.append(f"{where}: unknown target override section {sec!r}")

    issues.extend(targets.validate(schema))
    for era_id in targets.per_era:
        chk.era("targets.per_era", era_id)
    issues.extend(check_configs(engine, fitness, mutation, search))

    initial_entities = tuple(dict(e) for e in doc.get("initial_entities") or [])
    initial_relationships = tuple(dict(r) for r in doc.get("initial_relationships") or [])
    seeded = set()
    for i, e in enumerate(initial_entities):
        if "kind" not in e or "id" not in e:
            issues.append(f"initial entity #{i}: needs 'id' and 'kind'")
            continue
        chk.kind(f"initial entity {e['id']!r}", e["kind"])
        seeded.add(e["id"])
    for i, r in enumerate(initial_relationships):
        chk.rel(f"initial relationship #{i}", r.get("kind"))
        for end in (r.get("src"), r.get("dst")):
            if end not in seeded:
                issues.append(f"initial relationship #{i}: unknown endpoint {end!r}")

    issues.extend(chk.issues)
    if issues:
        raise ConfigValidationError(issues)

    # per-era target overrides declared on eras fold into the targets' per_era table
    per_era = dict(targets.per_era)
    for era in eras:
        if era.targets:
            per_era.setdefault(era.id, {}).update(era.targets)
    if per_era != targets.per_era:
        targets = DistributionTargets(
            entity_kinds=targets.entity_kinds,
            prominence=targets.prominence,
            relationship_diversity=targets.relationship_diversity,
            max_single_kind_ratio=targets.max_single_kind_ratio,
            connectivity=targets.connectivity,
            per_era=per_era,
        )
        late = targets.validate(schema)
        if late:
            raise ConfigValidationError(late)

    return WorldDefinition(
        schema=schema,
        pressures=tuple(pressures),
        eras=tuple(eras),
        generative=tuple(generative),
        tick=tuple(tick),
        targets=targets,
        engine=engine,
        fitness=fitness,
        mutation=mutation,
        search=search,
        initial_entities=initial_entities,
        initial_relationships=initial_relationships,
    )


def _get_section(doc: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    if key not in doc:
        raise ConfigValidationError([f"world document is missing the {key!r} section"])
    return doc[key] or {}


def load_world(path: str | Path) -> WorldDefinition:
    return build_world(load_yaml(path))


def load_overrides(path: Optional[str | Path]) -> Dict[str, Dict[str, float]]:
    if path is None:
        return {}
    return {str(r): {str(n): v for n, v in (p or {}).items()} for r, p in load_yaml(path).items()}
