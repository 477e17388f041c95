from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple, Union

import networkx as nx

from .errors import StructuralViolationError
from .schema import DomainSchema, StructuralRequirement


class Prominence(IntEnum):
    FORGOTTEN = 0
    MARGINAL = 1
    RECOGNIZED = 2
    RENOWNED = 3
    MYTHIC = 4

    @property
    def label(self) -> str:
        return self.name.lower()

    @classmethod
    def parse(cls, value: Union[int, str, "Prominence"]) -> "Prominence":
        if isinstance(value, Prominence):
            return value
        if isinstance(value, str):
            try:
                return cls[value.strip().upper()]
            except KeyError:
                raise ValueError(f"Unknown prominence level {value!r}") from None
        return cls(int(value))

    def shifted(self, steps: int) -> "Prominence":
        return Prominence(max(0, min(len(Prominence) - 1, int(self) + int(steps))))


PROMINENCE_LABELS: Tuple[str, ...] = tuple(p.label for p in Prominence)


@dataclass
class Entity:
    id: str
    kind: str
    subtype: str
    status: str = "active"
    prominence: Prominence = Prominence.MARGINAL
    tags: Set[str] = field(default_factory=set)
    description: str = ""
    culture: Optional[str] = None
    created_at: int = 0
    updated_at: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "subtype": self.subtype,
            "status": self.status,
            "prominence": self.prominence.label,
            "tags": sorted(self.tags),
            "description": self.description,
            "culture": self.culture,
            "created_at": int(self.created_at),
            "updated_at": int(self.updated_at),
        }


@dataclass
class Relationship:
    kind: str
    src: str
    dst: str
    strength: float
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: int = 0

    @property
    def key(self) -> Tuple[str, str, str]:
        return (self.kind, self.src, self.dst)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "src": self.src,
            "dst": self.dst,
            "strength": float(self.strength),
            "metadata": dict(self.metadata),
            "created_at": int(self.created_at),
        }


@dataclass(frozen=True)
class HistoryEvent:
    tick: int
    epoch: int
    era: Optional[str]
    event: str  # "initial" | "growth" | "simulation" | "era_transition"
    source: str
    description: str
    entities_created: Tuple[str, ...] = ()
    relationships_created: Tuple[Tuple[str, str, str], ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tick": self.tick,
            "epoch": self.epoch,
            "era": self.era,
            "event": self.event,
            "source": self.source,
            "description": self.description,
            "entities_created": list(self.entities_created),
            "relationships_created": [list(k) for k in self.relationships_created],
        }


def _clamp01(x: float) -> float:
    return float(min(1.0, max(0.0, float(x))))


class WorldGraph:
    """Mutable entity/relationship store for a single run.

    Entities are nodes of a networkx MultiDiGraph; each relationship is a directed edge
    keyed by its kind, so at most one relationship of a given kind joins an ordered pair.
    Entities are never removed, only status-transitioned. History is append-only.
    """

    def __init__(self, schema: DomainSchema, *, default_strength: float = 0.5):
        self.schema = schema
        self.default_strength = _clamp01(default_strength)
        self.tick = 0
        self.history: List[HistoryEvent] = []
        self._g = nx.MultiDiGraph()
        self._id_counters: Dict[str, int] = {}

    # ------------------------------------------------------------------ entities

    @property
    def graph(self) -> nx.MultiDiGraph:
        return self._g

    def _next_id(self, kind: str) -> str:
        n = self._id_counters.get(kind, 0)
        while True:
            n += 1
            candidate = f"{kind}_{n}"
            if candidate not in self._g:
                self._id_counters[kind] = n
                return candidate

    def add_entity(
        self,
        kind: str,
        subtype: str,
        *,
        status: str = "active",
        prominence: Union[int, str, Prominence] = Prominence.MARGINAL,
        tags: Iterable[str] = (),
        description: str = "",
        culture: Optional[str] = None,
        entity_id: Optional[str] = None,
    ) -> Entity:
        if not self.schema.has_entity_kind(kind):
            raise ValueError(f"Undeclared entity kind {kind!r}")
        eid = entity_id or self._next_id(kind)
        if eid in self._g:
            raise ValueError(f"Entity id {eid!r} already exists")
        entity = Entity(
            id=eid,
            kind=kind,
            subtype=subtype,
            status=status,
            prominence=Prominence.parse(prominence),
            tags=set(tags),
            description=description,
            culture=culture,
            created_at=self.tick,
            updated_at=self.tick,
        )
        self._g.add_node(eid, entity=entity)
        return entity

    def get_entity(self, entity_id: str) -> Optional[Entity]:
        if entity_id not in self._g:
            return None
        return self._g.nodes[entity_id]["entity"]

    def has_entity(self, entity_id: str) -> bool:
        return entity_id in self._g

    def entities(
        self,
        kind: Optional[str] = None,
        *,
        subtype: Optional[str] = None,
        status: Optional[str] = None,
    ) -> List[Entity]:
        out: List[Entity] = []
        for _, data in self._g.nodes(data=True):
            e: Entity = data["entity"]
            if kind is not None and e.kind != kind:
                continue
            if subtype is not None and e.subtype != subtype:
                continue
            if status is not None and e.status != status:
                continue
            out.append(e)
        return out

    def count(self, kind: Optional[str] = None, *, subtype: Optional[str] = None, status: Optional[str] = None) -> int:
        if kind is None and subtype is None and status is None:
            return self._g.number_of_nodes()
        return len(self.entities(kind, subtype=subtype, status=status))

    def touch(self, entity: Entity) -> None:
        entity.updated_at = self.tick

    def set_status(self, entity: Entity, status: str) -> None:
        if entity.status != status:
            entity.status = status
            self.touch(entity)

    def add_tag(self, entity: Entity, tag: str) -> None:
        if tag not in entity.tags:
            entity.tags.add(tag)
            self.touch(entity)

    def remove_tag(self, entity: Entity, tag: str) -> None:
        if tag in entity.tags:
            entity.tags.discard(tag)
            self.touch(entity)

    # ------------------------------------------------------------- relationships

    def add_relationship(
        self,
        kind: str,
        src: str,
        dst: str,
        *,
        strength: Optional[float] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[Relationship]:
        """Create a relationship; returns None when the same (kind, src, dst) already exists."""
        if not self.schema.has_relationship_kind(kind):
            raise ValueError(f"Undeclared relationship kind {kind!r}")
        missing = [eid for eid in (src, dst) if eid not in self._g]
        if missing:
            raise KeyError(f"Relationship {kind!r} endpoint(s) not in graph: {missing}")
        if self._g.has_edge(src, dst, key=kind):
            return None
        rel = Relationship(
            kind=kind,
            src=src,
            dst=dst,
            strength=self.default_strength if strength is None else _clamp01(strength),
            metadata=dict(metadata or {}),
            created_at=self.tick,
        )
        self._g.add_edge(src, dst, key=kind, rel=rel)
        return rel

    def get_relationship(self, kind: str, src: str, dst: str) -> Optional[Relationship]:
        if not self._g.has_edge(src, dst, key=kind):
            return None
        return self._g.edges[src, dst, kind]["rel"]

    def relationships(self, kind: Optional[str] = None) -> List[Relationship]:
        return [
            data["rel"]
            for _, _, k, data in self._g.edges(keys=True, data=True)
            if kind is None or k == kind
        ]

    def relationship_count(self, kind: Optional[str] = None) -> int:
        if kind is None:
            return self._g.number_of_edges()
        return len(self.relationships(kind))

    def relationships_of(self, entity_id: str, kind: Optional[str] = None, *, direction: str = "both") -> List[Relationship]:
        if entity_id not in self._g:
            return []
        out: List[Relationship] = []
        if direction in ("src", "both"):
            for _, _, k, data in self._g.out_edges(entity_id, keys=True, data=True):
                if kind is None or k == kind:
                    out.append(data["rel"])
        if direction in ("dst", "both"):
            for _, _, k, data in self._g.in_edges(entity_id, keys=True, data=True):
                if kind is None or k == kind:
                    rel = data["rel"]
                    if direction == "both" and rel.src == rel.dst:
                        continue  # self-loop already listed as outgoing
                    out.append(rel)
        return out

    def relationships_between(self, a: str, b: str) -> List[Relationship]:
        """All relationships joining a and b, in either direction."""
        out: List[Relationship] = []
        if self._g.has_edge(a, b):
            out.extend(d["rel"] for d in self._g.get_edge_data(a, b).values())
        if a != b and self._g.has_edge(b, a):
            out.extend(d["rel"] for d in self._g.get_edge_data(b, a).values())
        return out

    def neighbors(
        self,
        entity_id: str,
        kind: Optional[str] = None,
        *,
        direction: str = "both",
        min_strength: float = 0.0,
    ) -> List[Entity]:
        seen: Dict[str, Entity] = {}
        for rel in self.relationships_of(entity_id, kind, direction=direction):
            if rel.strength < min_strength:
                continue
            other = rel.dst if rel.src == entity_id else rel.src
            if other not in seen:
                seen[other] = self._g.nodes[other]["entity"]
        return list(seen.values())

    def degree(self, entity_id: str) -> int:
        if entity_id not in self._g:
            return 0
        return int(self._g.degree(entity_id))

    def _requirement_applies(self, req: StructuralRequirement, entity: Entity, role: str) -> bool:
        if entity.kind != req.entity_kind or entity.status not in req.statuses:
            return False
        return req.direction == "both" or req.direction == role

    def _remaining_links(self, entity_id: str, req: StructuralRequirement, excluding: Tuple[str, str, str]) -> int:
        rels = self.relationships_of(entity_id, req.relationship_kind, direction=req.direction)
        return sum(1 for r in rels if r.key != excluding)

    def would_violate(self, rel: Relationship) -> bool:
        """True if removing `rel` leaves an endpoint without a structurally required link."""
        if not self.schema.is_protected(rel.kind):
            return False
        for entity_id, role in ((rel.src, "src"), (rel.dst, "dst")):
            entity = self.get_entity(entity_id)
            if entity is None:
                continue
            for req in self.schema.requirements_for(entity.kind):
                if req.relationship_kind != rel.kind or not self._requirement_applies(req, entity, role):
                    continue
                if self._remaining_links(entity_id, req, rel.key) == 0:
                    return True
        return False

    def remove_relationship(self, kind: str, src: str, dst: str) -> Relationship:
        rel = self.get_relationship(kind, src, dst)
        if rel is None:
            raise KeyError(f"No relationship {kind!r} from {src!r} to {dst!r}")
        if self.would_violate(rel):
            raise StructuralViolationError(
                f"Removing protected {kind!r} {src!r}->{dst!r} breaks a structural requirement"
            )
        self._g.remove_edge(src, dst, key=kind)
        return rel

    def structural_violations(self) -> List[Tuple[str, StructuralRequirement]]:
        """Entities currently missing a required relationship."""
        out: List[Tuple[str, StructuralRequirement]] = []
        if not self.schema.requirements:
            return out
        for entity in self.entities():
            for req in self.schema.requirements_for(entity.kind):
                if entity.status not in req.statuses:
                    continue
                if not self.relationships_of(entity.id, req.relationship_kind, direction=req.direction):
                    out.append((entity.id, req))
        return out

    # ------------------------------------------------------------------- history

    def record(self, event: HistoryEvent) -> None:
        self.history.append(event)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "tick": int(self.tick),
            "entities": [e.to_dict() for e in self.entities()],
            "relationships": [r.to_dict() for r in self.relationships()],
            "history": [h.to_dict() for h in self.history],
        }

    def entity_ids(self) -> Sequence[str]:
        return list(self._g.nodes())
