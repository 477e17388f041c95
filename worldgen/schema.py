from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .errors import ConfigValidationError


# Strength lost per maintenance cycle for each declared decay rate.
DECAY_AMOUNTS: Dict[str, float] = {"none": 0.0, "slow": 0.01, "medium": 0.03, "fast": 0.06}


@dataclass(frozen=True)
class EntityKindDef:
    kind: str
    subtypes: Tuple[str, ...] = ()
    statuses: Tuple[str, ...] = ("active",)


@dataclass(frozen=True)
class RelationshipKindDef:
    kind: str
    protected: bool = False
    cullable: bool = True
    decay: str = "medium"  # key of DECAY_AMOUNTS

    @property
    def decay_amount(self) -> float:
        return DECAY_AMOUNTS[self.decay]


@dataclass(frozen=True)
class StructuralRequirement:
    """An entity of `entity_kind` in one of `statuses` must keep >=1 `relationship_kind` link."""

    entity_kind: str
    relationship_kind: str
    statuses: Tuple[str, ...] = ("active",)
    direction: str = "src"  # "src" | "dst" | "both"


@dataclass(frozen=True)
class DomainSchema:
    """Read-only description of the world's vocabulary, injected into every engine component."""

    entity_kinds: Tuple[EntityKindDef, ...]
    relationship_kinds: Tuple[RelationshipKindDef, ...]
    cultures: Tuple[str, ...] = ()
    requirements: Tuple[StructuralRequirement, ...] = ()
    _kind_index: Dict[str, EntityKindDef] = field(default_factory=dict, init=False, repr=False, compare=False)
    _rel_index: Dict[str, RelationshipKindDef] = field(default_factory=dict, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        self._kind_index.update({k.kind: k for k in self.entity_kinds})
        self._rel_index.update({r.kind: r for r in self.relationship_kinds})

    @property
    def kind_names(self) -> List[str]:
        return [k.kind for k in self.entity_kinds]

    @property
    def relationship_kind_names(self) -> List[str]:
        return [r.kind for r in self.relationship_kinds]

    def entity_kind(self, kind: str) -> Optional[EntityKindDef]:
        return self._kind_index.get(kind)

    def relationship_kind(self, kind: str) -> Optional[RelationshipKindDef]:
        return self._rel_index.get(kind)

    def has_entity_kind(self, kind: str) -> bool:
        return kind in self._kind_index

    def has_relationship_kind(self, kind: str) -> bool:
        return kind in self._rel_index

    def has_subtype(self, kind: str, subtype: str) -> bool:
        k = self._kind_index.get(kind)
        if k is None:
            return False
        # kinds that declare no subtypes accept any subtype label
        return (not k.subtypes) or subtype in k.subtypes

    def is_protected(self, relationship_kind: str) -> bool:
        r = self._rel_index.get(relationship_kind)
        return bool(r is not None and r.protected)

    def is_cullable(self, relationship_kind: str) -> bool:
        r = self._rel_index.get(relationship_kind)
        if r is None:
            return True
        return bool(r.cullable and not r.protected)

    def decay_amount(self, relationship_kind: str) -> float:
        r = self._rel_index.get(relationship_kind)
        return DECAY_AMOUNTS["medium"] if r is None else r.decay_amount

    def requirements_for(self, entity_kind: str) -> List[StructuralRequirement]:
        return [req for req in self.requirements if req.entity_kind == entity_kind]


def _tuple(value: Any) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    return tuple(str(v) for v in value)


def parse_schema(doc: Mapping[str, Any]) -> DomainSchema:
    """Build a DomainSchema from the `schema` section of a world document."""
    issues: List[str] = []

    entity_kinds: List[EntityKindDef] = []
    for item in doc.get("entity_kinds", []) or []:
        if isinstance(item, str):
            entity_kinds.append(EntityKindDef(kind=item))
            continue
        statuses = _tuple(item.get("statuses")) or ("active",)
        entity_kinds.append(EntityKindDef(kind=str(item["kind"]), subtypes=_tuple(item.get("subtypes")), statuses=statuses))

    rel_kinds: List[RelationshipKindDef] = []
    for item in doc.get("relationship_kinds", []) or []:
        if isinstance(item, str):
            rel_kinds.append(RelationshipKindDef(kind=item))
            continue
        decay = str(item.get("decay", "medium"))
        if decay not in DECAY_AMOUNTS:
            issues.append(f"relationship kind {item.get('kind')!r}: unknown decay rate {decay!r}")
            decay = "medium"
        rel_kinds.append(
            RelationshipKindDef(
                kind=str(item["kind"]),
                protected=bool(item.get("protected", False)),
                cullable=bool(item.get("cullable", True)),
                decay=decay,
            )
        )

    requirements: List[StructuralRequirement] = []
    for item in doc.get("requirements", []) or []:
        direction = str(item.get("direction", "src"))
        if direction not in ("src", "dst", "both"):
            issues.append(f"requirement on {item.get('entity_kind')!r}: unknown direction {direction!r}")
        requirements.append(
            StructuralRequirement(
                entity_kind=str(item["entity_kind"]),
                relationship_kind=str(item["relationship_kind"]),
                statuses=_tuple(item.get("statuses")) or ("active",),
                direction=direction,
            )
        )

    schema = DomainSchema(
        entity_kinds=tuple(entity_kinds),
        relationship_kinds=tuple(rel_kinds),
        cultures=_tuple(doc.get("cultures")),
        requirements=tuple(requirements),
    )

    seen: Dict[str, int] = {}
    for name in schema.kind_names + schema.relationship_kind_names:
        seen[name] = seen.get(name, 0) + 1
    for name, n in seen.items():
        if n > 1:
            issues.append(f"kind {name!r} declared {n} times")

    for req in schema.requirements:
        if not schema.has_entity_kind(req.entity_kind):
            issues.append(f"requirement references undeclared entity kind {req.entity_kind!r}")
        if not schema.has_relationship_kind(req.relationship_kind):
            issues.append(f"requirement references undeclared relationship kind {req.relationship_kind!r}")
        elif not schema.is_protected(req.relationship_kind):
            issues.append(f"required relationship kind {req.relationship_kind!r} must be declared protected")

    if issues:
        raise ConfigValidationError(issues)
    return schema
