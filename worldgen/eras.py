from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from .predicates import ALWAYS, Always, Predicate, PredicateContext, parse_predicate


log = logging.getLogger(__name__)

NEVER = Always(False)


@dataclass(frozen=True)
class EraEffects:
    pressure_deltas: Dict[str, float] = field(default_factory=dict)
    rule_weights: Dict[str, float] = field(default_factory=dict)  # multipliers on generative rule weights


@dataclass(frozen=True)
class Era:
    id: str
    name: str = ""
    entry: Predicate = ALWAYS
    exit: Predicate = NEVER
    rule_weights: Dict[str, float] = field(default_factory=dict)
    default_weight: float = 1.0
    tick_modifiers: Dict[str, float] = field(default_factory=dict)
    on_entry: EraEffects = field(default_factory=EraEffects)
    on_exit: EraEffects = field(default_factory=EraEffects)
    # per-era target overrides: {"entity_kinds": {...}, "prominence": {...}}
    targets: Dict[str, Dict[str, float]] = field(default_factory=dict)


DEFAULT_ERA = Era(id="default", name="Default")


@dataclass(frozen=True)
class EraTransition:
    tick: int
    from_era: str
    to_era: str


class EraController:
    """Tracks the single active era and evaluates transitions.

    A transition happens when the active era's exit tree holds and some not-yet-visited
    era (in declaration order) has an entry tree that holds. Exit rule-weight modifiers
    persist for the remainder of the run; entry modifiers apply while the era is active.
    """

    def __init__(self, eras: Sequence[Era]):
        self.eras: Tuple[Era, ...] = tuple(eras) or (DEFAULT_ERA,)
        self._active = 0
        self.visited = {self.eras[0].id}
        self.ticks_in_era = 0
        self.persistent: Dict[str, float] = {}
        self.transitions: List[EraTransition] = []

    @property
    def active(self) -> Era:
        return self.eras[self._active]

    def weight(self, rule_id: str) -> float:
        era = self.active
        w = float(era.rule_weights.get(rule_id, era.default_weight))
        w *= float(era.on_entry.rule_weights.get(rule_id, 1.0))
        return w * float(self.persistent.get(rule_id, 1.0))

    def tick_modifier(self, rule_id: str) -> float:
        return float(self.active.tick_modifiers.get(rule_id, 1.0))

    def enter_initial(self, pressures) -> None:
        for pid, delta in self.active.on_entry.pressure_deltas.items():
            pressures.adjust(pid, delta)

    def advance(self) -> None:
        self.ticks_in_era += 1

    def check(self, ctx: PredicateContext) -> Optional[EraTransition]:
        ctx.era = self.active.id
        ctx.ticks_in_era = self.ticks_in_era
        if not self.active.exit.evaluate(ctx):
            return None
        for idx, candidate in enumerate(self.eras):
            if candidate.id in self.visited:
                continue
            if candidate.entry.evaluate(ctx):
                return self._switch(idx, ctx)
        return None

    def _switch(self, idx: int, ctx: PredicateContext) -> EraTransition:
        old, new = self.active, self.eras[idx]
        for pid, delta in old.on_exit.pressure_deltas.items():
            ctx.pressures.adjust(pid, delta)
        for rule_id, mult in old.on_exit.rule_weights.items():
            self.persistent[rule_id] = self.persistent.get(rule_id, 1.0) * float(mult)
        self._active = idx
        self.visited.add(new.id)
        self.ticks_in_era = 0
        for pid, delta in new.on_entry.pressure_deltas.items():
            ctx.pressures.adjust(pid, delta)
        t = EraTransition(tick=ctx.tick, from_era=old.id, to_era=new.id)
        self.transitions.append(t)
        log.info("era transition %s -> %s at tick %d", old.id, new.id, ctx.tick)
        return t


def _effects(doc: Optional[Mapping[str, Any]]) -> EraEffects:
    doc = doc or {}
    return EraEffects(
        pressure_deltas={str(k): float(v) for k, v in (doc.get("pressure_deltas") or {}).items()},
        rule_weights={str(k): float(v) for k, v in (doc.get("rule_weights") or {}).items()},
    )


def parse_era(doc: Mapping[str, Any], *, max_depth: Optional[int] = None) -> Era:
    targets = doc.get("targets") or {}
    return Era(
        id=str(doc["id"]),
        name=str(doc.get("name", doc["id"])),
        entry=parse_predicate(doc.get("entry"), max_depth=max_depth),
        exit=NEVER if doc.get("exit") is None else parse_predicate(doc["exit"], max_depth=max_depth),
        rule_weights={str(k): float(v) for k, v in (doc.get("rule_weights") or {}).items()},
        default_weight=float(doc.get("default_weight", 1.0)),
        tick_modifiers={str(k): float(v) for k, v in (doc.get("tick_modifiers") or {}).items()},
        on_entry=_effects(doc.get("on_entry")),
        on_exit=_effects(doc.get("on_exit")),
        targets={str(sec): {str(k): float(v) for k, v in vals.items()} for sec, vals in targets.items()},
    )
