"""
WorldEngine: the epoch state machine for a single run.

INITIALIZING -> (GROWTH -> SIMULATION -> ERA_CHECK per tick)* -> TERMINATED

A run is single-threaded and fully determined by (world definition, parameter values,
seed): all randomness flows from one numpy Generator owned by the engine.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from .distribution import DeviationVector, DistributionTracker
from .eras import EraController
from .errors import RuleSkipped
from .graph import HistoryEvent, WorldGraph
from .loader import WorldDefinition
from .predicates import PredicateContext, UsageLedger
from .pressures import PressureModel
from .rng import make_rng
from .rules import GenerativeRule
from .selector import RuleSelector
from .systems import TickContext


log = logging.getLogger(__name__)


class EngineState(Enum):
    INITIALIZING = "initializing"
    GROWTH = "growth"
    SIMULATION = "simulation"
    ERA_CHECK = "era_check"
    TERMINATED = "terminated"


@dataclass
class RunStats:
    epochs: int = 0
    ticks: int = 0
    entities_created: int = 0
    relationships_created: int = 0
    applications: Dict[str, int] = field(default_factory=dict)
    skips: Dict[str, int] = field(default_factory=dict)
    violation_events: int = 0
    termination_reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "epochs": self.epochs,
            "ticks": self.ticks,
            "entities_created": self.entities_created,
            "relationships_created": self.relationships_created,
            "applications": dict(self.applications),
            "skips": dict(self.skips),
            "violation_events": self.violation_events,
            "termination_reason": self.termination_reason,
        }


@dataclass
class RunResult:
    seed: int
    graph: WorldGraph
    pressures: Dict[str, float]
    deviation: DeviationVector
    stats: RunStats
    era: str
    era_transitions: List[Dict[str, Any]]

    @property
    def violation_rate(self) -> float:
        """Structural violations observed per simulated tick."""
        return self.stats.violation_events / max(1, self.stats.ticks)

    def snapshot(self) -> Dict[str, Any]:
        snap = self.graph.snapshot()
        snap.update(
            {
                "seed": self.seed,
                "era": self.era,
                "pressures": dict(self.pressures),
                "era_transitions": list(self.era_transitions),
                "stats": self.stats.to_dict(),
                "distribution": self.deviation.stats.to_dict(),
                "deviation": self.deviation.to_dict(),
                "violation_rate": self.violation_rate,
            }
        )
        return snap


class WorldEngine:
    def __init__(
        self,
        world: WorldDefinition,
        *,
        seed: int = 0,
        overrides: Optional[Mapping[str, Mapping[str, Any]]] = None,
    ):
        self.world = world
        self.config = world.engine
        self.seed = int(seed)
        self.params = world.effective_params(overrides)
        self.rng = make_rng(self.seed)
        self.state = EngineState.INITIALIZING

        self.graph = WorldGraph(world.schema, default_strength=self.config.default_strength)
        self.pressures = PressureModel(world.pressures)
        self.eras = EraController(world.eras)
        self.tracker = DistributionTracker(world.schema, world.targets)
        self.selector = RuleSelector(self.config.selector)
        self.usage = UsageLedger()
        self.stats = RunStats()
        self.epoch = 0
        self._idle_epochs = 0

    # ------------------------------------------------------------- contexts

    def _ctx(self, rule_id: str = "", *, roll_chance: bool = True) -> PredicateContext:
        return PredicateContext(
            graph=self.graph,
            pressures=self.pressures,
            rng=self.rng,
            era=self.eras.active.id,
            ticks_in_era=self.eras.ticks_in_era,
            rule_id=rule_id,
            params=self.params.get(rule_id, {}),
            usage=self.usage,
            roll_chance=roll_chance,
        )

    def _tick_ctx(self, rule_id: str) -> TickContext:
        return TickContext(
            graph=self.graph,
            pressures=self.pressures,
            rng=self.rng,
            era=self.eras.active.id,
            ticks_in_era=self.eras.ticks_in_era,
            rule_id=rule_id,
            params=self.params.get(rule_id, {}),
            usage=self.usage,
            cluster_threshold=self.world.targets.connectivity.cluster_threshold,
            intensity=self.eras.tick_modifier(rule_id),
        )

    def _event(self, kind: str, source: str, description: str, entities=(), relationships=()) -> None:
        self.graph.record(
            HistoryEvent(
                tick=self.graph.tick,
                epoch=self.epoch,
                era=self.eras.active.id,
                event=kind,
                source=source,
                description=description,
                entities_created=tuple(entities),
                relationships_created=tuple(relationships),
            )
        )

    # ------------------------------------------------------------ lifecycle

    def initialize(self) -> None:
        for doc in self.world.initial_entities:
            self.graph.add_entity(
                doc["kind"],
                str(doc.get("subtype", doc["kind"])),
                status=str(doc.get("status", "active")),
                prominence=doc.get("prominence", "marginal"),
                tags=doc.get("tags", ()) or (),
                description=str(doc.get("description", "")),
                culture=doc.get("culture"),
                entity_id=str(doc["id"]),
            )
        keys = []
        for doc in self.world.initial_relationships:
            rel = self.graph.add_relationship(doc["kind"], doc["src"], doc["dst"], strength=doc.get("strength"))
            if rel is not None:
                keys.append(rel.key)
        if self.world.initial_entities:
            self._event(
                "initial",
                "world",
                f"seeded {len(self.world.initial_entities)} entities",
                [str(d["id"]) for d in self.world.initial_entities],
                keys,
            )
        self.eras.enter_initial(self.pressures)

    def growth_phase(self) -> int:
        """Select and apply generative rules; returns the number of entities created."""
        self.state = EngineState.GROWTH
        self.usage.start_phase()
        era = self.eras.active.id
        deviation = self.tracker.deviation(self.graph, era)

        # chance leaves roll once, at the per-attempt check below
        applicable: List[GenerativeRule] = [
            r for r in self.world.generative if r.applicable(self._ctx(r.id, roll_chance=False))
        ]
        weights = self.selector.weights(applicable, deviation, self.eras.weight)
        target = self.config.growth_per_epoch
        picks = self.selector.sample(weights, target * self.config.selection_budget_factor, self.rng)

        by_id = {r.id: r for r in self.world.generative}
        created = 0
        for rule_id in picks:
            if created >= target or self.graph.count() >= self.config.max_entities:
                break
            rule = by_id[rule_id]
            ctx = self._ctx(rule_id)
            if not rule.applicable(ctx):
                continue
            try:
                app = rule.apply(ctx)
            except RuleSkipped as skip:
                self.stats.skips[rule_id] = self.stats.skips.get(rule_id, 0) + 1
                log.debug("skipped %s at tick %d: %s", rule_id, self.graph.tick, skip.reason)
                continue
            self.usage.mark(rule_id, self.graph.tick)
            self.stats.applications[rule_id] = self.stats.applications.get(rule_id, 0) + 1
            created += len(app.entities_created)
            self.stats.entities_created += len(app.entities_created)
            self.stats.relationships_created += len(app.relationships_created)
            self._event("growth", rule_id, rule.name, app.entities_created, app.relationships_created)
        return created

    def simulation_tick(self) -> int:
        """Advance one tick; returns the number of relationships created by tick rules."""
        self.state = EngineState.SIMULATION
        self.graph.tick += 1
        self.stats.ticks += 1
        self.eras.advance()
        made = 0
        for rule in self.world.tick:
            ctx = self._tick_ctx(rule.id)
            if not rule.due(ctx):
                continue
            outcome = rule.run(ctx)
            if outcome.changed:
                made += len(outcome.relationships_created)
                self.stats.entities_created += len(outcome.entities_created)
                self.stats.relationships_created += len(outcome.relationships_created)
                self._event(
                    "simulation",
                    rule.id,
                    outcome.note or rule.id,
                    outcome.entities_created,
                    outcome.relationships_created,
                )
        self.pressures.tick(self.graph)
        self.stats.violation_events += len(self.graph.structural_violations())

        self.state = EngineState.ERA_CHECK
        transition = self.eras.check(self._ctx())
        if transition is not None:
            self._event("era_transition", transition.from_era, f"{transition.from_era} -> {transition.to_era}")
        return made

    def _termination_reason(self) -> Optional[str]:
        cfg = self.config
        if self.epoch >= cfg.max_epochs:
            return "max_epochs"
        if self.graph.tick >= cfg.max_ticks:
            return "max_ticks"
        if self.graph.count() >= cfg.max_entities:
            return "max_entities"
        if cfg.stagnation_epochs is not None and self._idle_epochs >= cfg.stagnation_epochs:
            return "stagnation"
        return None

    def run_epoch(self) -> None:
        before_rel = self.stats.relationships_created
        created = self.growth_phase()
        for _ in range(self.config.ticks_per_epoch):
            if self.graph.tick >= self.config.max_ticks:
                break
            self.simulation_tick()
        self.epoch += 1
        self.stats.epochs = self.epoch
        grew = created > 0 or self.stats.relationships_created > before_rel
        self._idle_epochs = 0 if grew else self._idle_epochs + 1
        log.info(
            "epoch %d era=%s tick=%d entities=%d relationships=%d",
            self.epoch,
            self.eras.active.id,
            self.graph.tick,
            self.graph.count(),
            self.graph.relationship_count(),
        )

    def run(self) -> RunResult:
        self.initialize()
        while True:
            reason = self._termination_reason()
            if reason is not None:
                break
            self.run_epoch()
        self.stats.termination_reason = reason
        self.state = EngineState.TERMINATED
        return RunResult(
            seed=self.seed,
            graph=self.graph,
            pressures=self.pressures.values(),
            deviation=self.tracker.deviation(self.graph, self.eras.active.id),
            stats=self.stats,
            era=self.eras.active.id,
            era_transitions=[asdict(t) for t in self.eras.transitions],
        )


def run_world(world: WorldDefinition, *, seed: int = 0, overrides: Optional[Mapping[str, Mapping[str, Any]]] = None) -> RunResult:
    return WorldEngine(world, seed=seed, overrides=overrides).run()
