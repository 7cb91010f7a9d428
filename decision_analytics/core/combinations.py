"""
Atom co-occurrence analysis.

Atoms that ran under the same (rule, campaign) pair are treated as a
combination. Combinations are scored for synergy, and the same relation is
used to build a symmetric affinity graph ("dependencies") between atoms.
"""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, Dict, List, Tuple

from decision_analytics.storage.repository import MetricStore

if TYPE_CHECKING:
    from .atoms import AtomPerformanceStats

StatsLookup = Callable[[str], "AtomPerformanceStats"]


@dataclass(frozen=True)
class AtomCombinationAnalysis:
    """Joint performance of a set of atoms that execute together."""
    combination_id: str
    atom_ids: Tuple[str, ...]
    frequency: int
    average_success_rate: float
    average_execution_time: float
    synergy_score: float
    optimization_opportunities: Tuple[str, ...] = ()


@dataclass
class AtomDependencyNode:
    """One atom in the co-occurrence graph.

    The relation is symmetric: if A co-occurs with B, B is in A's
    dependencies and A in B's dependents, and vice versa.
    """
    atom_id: str
    dependencies: List[str] = field(default_factory=list)
    dependents: List[str] = field(default_factory=list)
    criticality_score: float = 0.0
    bottleneck_risk: float = 0.0


def build_related_atoms_index(store: MetricStore) -> Dict[Tuple[str, str], List[str]]:
    """Map every (rule_id, campaign_id) pair to the sorted atoms that ran under it."""
    index: Dict[Tuple[str, str], set] = {}
    for atom_id, record in store.iter_atom_records():
        index.setdefault((record.rule_id, record.campaign_id), set()).add(atom_id)
    return {key: sorted(atoms) for key, atoms in index.items()}


def identify_optimization_opportunities(
    atom_ids: Tuple[str, ...],
    success_rate: float,
    execution_time: float,
) -> List[str]:
    """Textual hints for a combination."""
    opportunities = []

    if success_rate < 90:
        opportunities.append("Improve error handling between atoms")

    if execution_time > 2000:
        opportunities.append("Consider parallel execution of independent atoms")

    if len(atom_ids) > 5:
        opportunities.append("Evaluate if combination can be simplified")

    return opportunities


def compute_synergy_score(
    expected_success_rate: float,
    actual_success_rate: float,
    expected_time: float,
    actual_time: float,
) -> float:
    """Relative success gain plus relative time saving, both in percent.

    A term whose expected value is zero contributes nothing.
    """
    score = 0.0
    if expected_success_rate:
        score += (actual_success_rate - expected_success_rate) / expected_success_rate * 100
    if expected_time:
        score += (expected_time - actual_time) / expected_time * 100
    return score


def analyze_combinations(
    store: MetricStore,
    stats_for: StatsLookup,
    min_frequency: int = 5,
) -> List[AtomCombinationAnalysis]:
    """Score every atom combination observed at least ``min_frequency`` times.

    Every stored record contributes its executions to the combination formed
    by all atoms sharing its (rule, campaign). Expected values are the
    unweighted means of each member's own statistics; actual values are
    measured over the joint executions, weighted by execution count.

    Args:
        store: Metric store to scan
        stats_for: Callable returning AtomPerformanceStats for an atom id
        min_frequency: Minimum joint executions for a combination to be reported

    Returns:
        Combination analyses sorted by synergy score, best first
    """
    related_index = build_related_atoms_index(store)
    groups: Dict[str, List[float]] = {}
    members: Dict[str, Tuple[str, ...]] = {}

    for _, record in store.iter_atom_records():
        related = related_index[(record.rule_id, record.campaign_id)]
        if len(related) < 2:
            continue
        key = "|".join(related)
        members[key] = tuple(related)
        totals = groups.setdefault(key, [0, 0, 0.0])
        totals[0] += record.execution_count
        totals[1] += record.success_count
        totals[2] += record.average_execution_time * record.execution_count

    analyses = []
    for key, (executions, successes, total_time) in groups.items():
        if executions < min_frequency:
            continue

        atom_ids = members[key]
        individual = [stats_for(atom_id) for atom_id in atom_ids]
        expected_success_rate = sum(s.success_rate for s in individual) / len(individual)
        expected_time = sum(s.average_execution_time for s in individual) / len(individual)

        actual_success_rate = successes / executions * 100
        actual_time = total_time / executions

        analyses.append(AtomCombinationAnalysis(
            combination_id=key,
            atom_ids=atom_ids,
            frequency=int(executions),
            average_success_rate=actual_success_rate,
            average_execution_time=actual_time,
            synergy_score=compute_synergy_score(
                expected_success_rate, actual_success_rate, expected_time, actual_time
            ),
            optimization_opportunities=tuple(
                identify_optimization_opportunities(atom_ids, actual_success_rate, actual_time)
            ),
        ))

    return sorted(analyses, key=lambda a: a.synergy_score, reverse=True)


def build_dependency_graph(store: MetricStore, stats_for: StatsLookup) -> Dict[str, AtomDependencyNode]:
    """Build the co-occurrence graph over every known atom.

    criticality = 0.7 * usage frequency + 0.3 * dependent count;
    bottleneck risk = 0.6 * average time + 0.4 * error rate.
    """
    graph = {atom_id: AtomDependencyNode(atom_id=atom_id) for atom_id in store.atom_ids()}
    related_index = build_related_atoms_index(store)

    for atom_id, record in store.iter_atom_records():
        node = graph[atom_id]
        for related_id in related_index[(record.rule_id, record.campaign_id)]:
            if related_id == atom_id:
                continue
            if related_id not in node.dependencies:
                node.dependencies.append(related_id)
            related_node = graph[related_id]
            if atom_id not in related_node.dependents:
                related_node.dependents.append(atom_id)

    for atom_id, node in graph.items():
        stats = stats_for(atom_id)
        node.criticality_score = stats.usage_frequency * 0.7 + len(node.dependents) * 0.3
        node.bottleneck_risk = stats.average_execution_time * 0.6 + stats.error_rate * 0.4

    return graph
