"""
Optimization recommendations.

Threshold rules over atom statistics and combination scores that suggest
where to spend optimization effort.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List

from .combinations import AtomCombinationAnalysis

SLOW_ATOM_MS = 1000
VERY_SLOW_ATOM_MS = 5000
TARGET_TIME_MS = 500
HIGH_USAGE_PER_DAY = 100
RELIABILITY_TARGET = 95
RELIABILITY_CRITICAL = 90
RELIABILITY_MIN_EXECUTIONS = 50
LOW_USAGE_PER_DAY = 0.1
POOR_SYNERGY = -20
HIGH_COMBINATION_FREQUENCY = 100


class RecommendationType(Enum):
    PERFORMANCE = "performance"
    RELIABILITY = "reliability"
    USAGE = "usage"
    COMBINATION = "combination"


class Priority(Enum):
    """Recommendation priority; higher weight sorts first."""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def weight(self) -> int:
        return {"high": 3, "medium": 2, "low": 1}[self.value]


class Effort(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class OptimizationRecommendation:
    """A prioritized improvement suggestion."""
    type: RecommendationType
    atom_id: str
    priority: Priority
    recommendation: str
    expected_impact: str
    effort: Effort
    metrics: Dict[str, float] = field(default_factory=dict)


def recommend_for_atom(stats) -> List[OptimizationRecommendation]:
    """Apply the per-atom rules.

    Rules:
    - performance: average time > 1000ms (high priority above 100 runs/day,
      high effort above 5000ms)
    - reliability: success rate < 95% over more than 50 executions
      (high priority below 90%)
    - usage: fewer than 0.1 executions/day, suggest removal

    Args:
        stats: AtomPerformanceStats for one atom

    Returns:
        Recommendations in rule order (empty if none apply)
    """
    recommendations = []

    if stats.average_execution_time > SLOW_ATOM_MS:
        reduction = round((stats.average_execution_time - TARGET_TIME_MS) / stats.average_execution_time * 100)
        recommendations.append(OptimizationRecommendation(
            type=RecommendationType.PERFORMANCE,
            atom_id=stats.atom_id,
            priority=Priority.HIGH if stats.usage_frequency > HIGH_USAGE_PER_DAY else Priority.MEDIUM,
            recommendation=(
                f"Optimize execution time for atom {stats.atom_id}. "
                f"Current average: {stats.average_execution_time:.0f}ms"
            ),
            expected_impact=f"Potential {reduction}% time reduction",
            effort=Effort.HIGH if stats.average_execution_time > VERY_SLOW_ATOM_MS else Effort.MEDIUM,
            metrics={
                "current_time": stats.average_execution_time,
                "target_time": TARGET_TIME_MS,
                "usage_frequency": stats.usage_frequency,
            },
        ))

    if stats.success_rate < RELIABILITY_TARGET and stats.total_executions > RELIABILITY_MIN_EXECUTIONS:
        recommendations.append(OptimizationRecommendation(
            type=RecommendationType.RELIABILITY,
            atom_id=stats.atom_id,
            priority=Priority.HIGH if stats.success_rate < RELIABILITY_CRITICAL else Priority.MEDIUM,
            recommendation=(
                f"Improve reliability for atom {stats.atom_id}. "
                f"Current success rate: {stats.success_rate:.1f}%"
            ),
            expected_impact="Target 95%+ success rate could improve overall system reliability",
            effort=Effort.MEDIUM,
            metrics={
                "current_success_rate": stats.success_rate,
                "target_success_rate": RELIABILITY_TARGET,
                "total_executions": stats.total_executions,
            },
        ))

    if stats.usage_frequency < LOW_USAGE_PER_DAY:
        recommendations.append(OptimizationRecommendation(
            type=RecommendationType.USAGE,
            atom_id=stats.atom_id,
            priority=Priority.LOW,
            recommendation=(
                f"Consider removing unused atom {stats.atom_id} or find opportunities to utilize it"
            ),
            expected_impact="Reduced system complexity and maintenance overhead",
            effort=Effort.LOW,
            metrics={
                "usage_frequency": stats.usage_frequency,
                "total_executions": stats.total_executions,
            },
        ))

    return recommendations


def recommend_for_combination(combo: AtomCombinationAnalysis) -> List[OptimizationRecommendation]:
    """Flag combinations whose synergy score is below -20."""
    if combo.synergy_score >= POOR_SYNERGY:
        return []
    return [OptimizationRecommendation(
        type=RecommendationType.COMBINATION,
        atom_id="+".join(combo.atom_ids),
        priority=Priority.HIGH if combo.frequency > HIGH_COMBINATION_FREQUENCY else Priority.MEDIUM,
        recommendation=f"Optimize atom combination: {', '.join(combo.atom_ids)}. Poor synergy detected.",
        expected_impact="Potential improvement in combined execution efficiency",
        effort=Effort.MEDIUM,
        metrics={
            "synergy_score": combo.synergy_score,
            "frequency": combo.frequency,
            "success_rate": combo.average_success_rate,
        },
    )]


def generate_recommendations(
    ranked_stats: Iterable,
    combinations: Iterable[AtomCombinationAnalysis],
) -> List[OptimizationRecommendation]:
    """Collect atom and combination recommendations, highest priority first.

    Ties keep the order in which they were generated (atoms in ranking order,
    then combinations).
    """
    recommendations: List[OptimizationRecommendation] = []
    for stats in ranked_stats:
        recommendations.extend(recommend_for_atom(stats))
    for combo in combinations:
        recommendations.extend(recommend_for_combination(combo))
    return sorted(recommendations, key=lambda r: r.priority.weight, reverse=True)
