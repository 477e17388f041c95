"""
Population statistics and their signed deviation from configured targets.

Sign convention everywhere: positive = deficit (below target), negative = surplus.

Connectivity policy:
- the strength of an entity pair is the MAX strength over all relationships joining the
  pair, in either direction;
- a pair is a cluster edge iff that strength >= cluster_threshold;
- clusters are connected components of size >= 2 in the cluster-edge graph;
- isolated entities have no relationship of any strength.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Dict, List, Mapping, Optional, Tuple

import networkx as nx
import numpy as np

from .graph import PROMINENCE_LABELS, Prominence, WorldGraph
from .schema import DomainSchema


PROPORTION_TOLERANCE = 1e-3


@dataclass(frozen=True)
class ConnectivityTargets:
    cluster_range: Tuple[float, float] = (1.0, 10.0)
    intra_density: float = 0.5
    inter_density: float = 0.05
    max_isolated_ratio: float = 0.2
    cluster_threshold: float = 0.5

    @property
    def cluster_midpoint(self) -> float:
        return 0.5 * (self.cluster_range[0] + self.cluster_range[1])


@dataclass(frozen=True)
class DistributionTargets:
    entity_kinds: Dict[str, float]
    prominence: Dict[str, float] = field(default_factory=dict)
    relationship_diversity: float = 0.6  # target normalized Shannon entropy in [0, 1]
    max_single_kind_ratio: float = 0.5
    connectivity: ConnectivityTargets = field(default_factory=ConnectivityTargets)
    per_era: Dict[str, Dict[str, Dict[str, float]]] = field(default_factory=dict)

    def for_era(self, era: Optional[str]) -> "DistributionTargets":
        over = self.per_era.get(era or "", {})
        if not over:
            return self
        return replace(
            self,
            entity_kinds=dict(over.get("entity_kinds", self.entity_kinds)),
            prominence=dict(over.get("prominence", self.prominence)),
        )

    def validate(self, schema: DomainSchema) -> List[str]:
        issues: List[str] = []
        checks = [("targets", self.entity_kinds, self.prominence)]
        checks += [(f"era {era!r} targets", o.get("entity_kinds", {}), o.get("prominence", {})) for era, o in self.per_era.items()]
        for label, kinds, prom in checks:
            if kinds:
                total = sum(kinds.values())
                if abs(total - 1.0) > PROPORTION_TOLERANCE:
                    issues.append(f"{label}: entity-kind proportions sum to {total:.4f}, expected 1.0")
            for k in kinds:
                if not schema.has_entity_kind(k):
                    issues.append(f"{label}: undeclared entity kind {k!r}")
            if prom:
                total = sum(prom.values())
                if abs(total - 1.0) > PROPORTION_TOLERANCE:
                    issues.append(f"{label}: prominence proportions sum to {total:.4f}, expected 1.0")
            for p in prom:
                if p not in PROMINENCE_LABELS:
                    issues.append(f"{label}: unknown prominence level {p!r}")
        lo, hi = self.connectivity.cluster_range
        if lo > hi:
            issues.append("targets: cluster_range min exceeds max")
        return issues


def parse_targets(doc: Mapping[str, Any]) -> DistributionTargets:
    conn = doc.get("connectivity", {}) or {}
    rng = conn.get("cluster_range", (1, 10))
    prom = {Prominence.parse(k).label: float(v) for k, v in (doc.get("prominence") or {}).items()}
    per_era: Dict[str, Dict[str, Dict[str, float]]] = {}
    for era, over in (doc.get("per_era") or {}).items():
        sec: Dict[str, Dict[str, float]] = {}
        if "entity_kinds" in over:
            sec["entity_kinds"] = {str(k): float(v) for k, v in over["entity_kinds"].items()}
        if "prominence" in over:
            sec["prominence"] = {Prominence.parse(k).label: float(v) for k, v in over["prominence"].items()}
        per_era[str(era)] = sec
    return DistributionTargets(
        entity_kinds={str(k): float(v) for k, v in (doc.get("entity_kinds") or {}).items()},
        prominence=prom,
        relationship_diversity=float(doc.get("relationship_diversity", 0.6)),
        max_single_kind_ratio=float(doc.get("max_single_kind_ratio", 0.5)),
        connectivity=ConnectivityTargets(
            cluster_range=(float(rng[0]), float(rng[1])),
            intra_density=float(conn.get("intra_density", 0.5)),
            inter_density=float(conn.get("inter_density", 0.05)),
            max_isolated_ratio=float(conn.get("max_isolated_ratio", 0.2)),
            cluster_threshold=float(conn.get("cluster_threshold", 0.5)),
        ),
        per_era=per_era,
    )


@dataclass(frozen=True)
class ConnectivityStats:
    clusters: int = 0
    mean_cluster_size: float = 0.0
    intra_density: float = 0.0
    inter_density: float = 0.0
    isolated_ratio: float = 0.0


@dataclass(frozen=True)
class DistributionStats:
    entity_count: int
    entity_kind_counts: Dict[str, int]
    entity_kind_ratios: Dict[str, float]
    prominence_ratios: Dict[str, float]
    relationship_count: int
    relationship_kind_ratios: Dict[str, float]
    relationship_entropy: float
    connectivity: ConnectivityStats

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_count": self.entity_count,
            "entity_kind_counts": dict(self.entity_kind_counts),
            "entity_kind_ratios": dict(self.entity_kind_ratios),
            "prominence_ratios": dict(self.prominence_ratios),
            "relationship_count": self.relationship_count,
            "relationship_kind_ratios": dict(self.relationship_kind_ratios),
            "relationship_entropy": self.relationship_entropy,
            "connectivity": asdict(self.connectivity),
        }


@dataclass(frozen=True)
class DeviationVector:
    entity_kinds: Dict[str, float]
    prominence: Dict[str, float]
    relationship_diversity: float
    relationship_kinds: Dict[str, float]  # max_single_kind_ratio - ratio; negative = over-represented
    clusters: float  # (midpoint - clusters) / max(midpoint, 1)
    intra_density: float
    inter_density: float
    isolated: float  # max_isolated_ratio - isolated_ratio
    stats: DistributionStats
    targets: DistributionTargets

    def as_array(self) -> np.ndarray:
        parts: List[float] = [self.entity_kinds[k] for k in sorted(self.entity_kinds)]
        parts += [self.prominence[k] for k in sorted(self.prominence)]
        parts += [self.relationship_diversity]
        parts += [self.relationship_kinds[k] for k in sorted(self.relationship_kinds)]
        parts += [self.clusters, self.intra_density, self.inter_density, self.isolated]
        return np.asarray(parts, dtype=float)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_kinds": dict(self.entity_kinds),
            "prominence": dict(self.prominence),
            "relationship_diversity": self.relationship_diversity,
            "relationship_kinds": dict(self.relationship_kinds),
            "clusters": self.clusters,
            "intra_density": self.intra_density,
            "inter_density": self.inter_density,
            "isolated": self.isolated,
        }


def _ratios(counts: Mapping[str, int], keys) -> Dict[str, float]:
    total = sum(counts.values())
    return {k: (counts.get(k, 0) / total if total else 0.0) for k in keys}


def normalized_entropy(ratios: Mapping[str, float], n_categories: int) -> float:
    if n_categories <= 1:
        return 1.0 if any(v > 0 for v in ratios.values()) else 0.0
    h = -sum(p * math.log(p) for p in ratios.values() if p > 0)
    return float(h / math.log(n_categories))


def pair_strength_graph(graph: WorldGraph) -> nx.Graph:
    """Undirected simple graph over all entities; edge attribute `strength` = max over relationships."""
    g = nx.Graph()
    g.add_nodes_from(graph.entity_ids())
    for rel in graph.relationships():
        if rel.src == rel.dst:
            continue
        if g.has_edge(rel.src, rel.dst):
            g[rel.src][rel.dst]["strength"] = max(g[rel.src][rel.dst]["strength"], rel.strength)
        else:
            g.add_edge(rel.src, rel.dst, strength=rel.strength)
    return g


def connectivity_stats(graph: WorldGraph, threshold: float) -> ConnectivityStats:
    g = pair_strength_graph(graph)
    n = g.number_of_nodes()
    if n == 0:
        return ConnectivityStats()

    cluster_graph = nx.Graph()
    cluster_graph.add_nodes_from(g.nodes())
    cluster_graph.add_edges_from((u, v) for u, v, s in g.edges(data="strength") if s >= threshold)
    clusters = [c for c in nx.connected_components(cluster_graph) if len(c) >= 2]

    group_of: Dict[str, int] = {}
    for i, comp in enumerate(clusters):
        for node in comp:
            group_of[node] = i
    next_group = len(clusters)
    for node in g.nodes():
        if node not in group_of:
            group_of[node] = next_group
            next_group += 1

    intra: List[float] = []
    for comp in clusters:
        possible = len(comp) * (len(comp) - 1) / 2
        intra.append(g.subgraph(comp).number_of_edges() / possible)

    sizes: Dict[int, int] = {}
    for grp in group_of.values():
        sizes[grp] = sizes.get(grp, 0) + 1
    cross_possible = n * (n - 1) / 2 - sum(s * (s - 1) / 2 for s in sizes.values())
    cross_edges = sum(1 for u, v in g.edges() if group_of[u] != group_of[v])

    isolated = sum(1 for _, d in g.degree() if d == 0)
    return ConnectivityStats(
        clusters=len(clusters),
        mean_cluster_size=float(np.mean([len(c) for c in clusters])) if clusters else 0.0,
        intra_density=float(np.mean(intra)) if intra else 0.0,
        inter_density=float(cross_edges / cross_possible) if cross_possible > 0 else 0.0,
        isolated_ratio=isolated / n,
    )


class DistributionTracker:
    """Measures a WorldGraph against DistributionTargets (per-era overrides honored)."""

    def __init__(self, schema: DomainSchema, targets: DistributionTargets):
        self.schema = schema
        self.targets = targets

    def measure(self, graph: WorldGraph) -> DistributionStats:
        kind_counts = {k: 0 for k in self.schema.kind_names}
        prom_counts = {p: 0 for p in PROMINENCE_LABELS}
        for e in graph.entities():
            kind_counts[e.kind] = kind_counts.get(e.kind, 0) + 1
            prom_counts[e.prominence.label] += 1

        rel_counts = {k: 0 for k in self.schema.relationship_kind_names}
        for r in graph.relationships():
            rel_counts[r.kind] = rel_counts.get(r.kind, 0) + 1
        rel_ratios = _ratios(rel_counts, rel_counts.keys())

        return DistributionStats(
            entity_count=sum(kind_counts.values()),
            entity_kind_counts=kind_counts,
            entity_kind_ratios=_ratios(kind_counts, kind_counts.keys()),
            prominence_ratios=_ratios(prom_counts, prom_counts.keys()),
            relationship_count=sum(rel_counts.values()),
            relationship_kind_ratios=rel_ratios,
            relationship_entropy=normalized_entropy(rel_ratios, len(rel_counts)),
            connectivity=connectivity_stats(graph, self.targets.connectivity.cluster_threshold),
        )

    def deviation(self, graph: WorldGraph, era: Optional[str] = None) -> DeviationVector:
        return self.deviation_from_stats(self.measure(graph), era)

    def deviation_from_stats(self, stats: DistributionStats, era: Optional[str] = None) -> DeviationVector:
        t = self.targets.for_era(era)
        conn = t.connectivity
        mid = conn.cluster_midpoint
        return DeviationVector(
            entity_kinds={k: p - stats.entity_kind_ratios.get(k, 0.0) for k, p in t.entity_kinds.items()},
            prominence={k: p - stats.prominence_ratios.get(k, 0.0) for k, p in t.prominence.items()},
            relationship_diversity=t.relationship_diversity - stats.relationship_entropy,
            relationship_kinds={k: t.max_single_kind_ratio - r for k, r in stats.relationship_kind_ratios.items()},
            clusters=(mid - stats.connectivity.clusters) / max(mid, 1.0),
            intra_density=conn.intra_density - stats.connectivity.intra_density,
            inter_density=conn.inter_density - stats.connectivity.inter_density,
            isolated=conn.max_isolated_ratio - stats.connectivity.isolated_ratio,
            stats=stats,
            targets=t,
        )
