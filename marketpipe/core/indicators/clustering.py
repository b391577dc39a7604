"""
Performance clustering of swept SuperTrend factors.

Factors are grouped by their performance score with a three-centroid 1-D
k-means, the clusters are ranked Worst/Average/Best by mean performance, and
the mean factor of the requested cluster is snapped back onto the swept grid.
"""

from __future__ import annotations

import logging
import random
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Literal

from marketpipe.core.utils import mean, percentile, population_std

logger = logging.getLogger(__name__)

__all__ = [
    "ClusterLabel",
    "CLUSTER_LABELS",
    "ClusterDiagnostics",
    "FactorSelection",
    "FactorSelector",
    "kmeans_1d",
    "nearest_factor",
]

ClusterLabel = Literal["Worst", "Average", "Best"]
CLUSTER_LABELS: tuple[ClusterLabel, ...] = ("Worst", "Average", "Best")


def kmeans_1d(
    values: Sequence[float],
    seeds: Sequence[float],
    max_iter: int = 1000,
    rng: random.Random | None = None,
) -> tuple[list[float], list[int]]:
    """One-dimensional k-means.

    Alternates nearest-centroid assignment (ties go to the lower index) and
    centroid recomputation until labels stop changing or ``max_iter`` passes
    have run. A centroid left without members is reseeded at a uniformly
    random member, drawn from ``rng``, and forces another pass.

    Returns:
        ``(centroids, labels)``; labels index into centroids.
    """
    centroids = list(seeds)
    if not values:
        return centroids, []

    rng = rng or random.Random()
    labels = [0] * len(values)

    for _ in range(max_iter):
        changed = False
        sums = [0.0] * len(centroids)
        counts = [0] * len(centroids)

        for i, value in enumerate(values):
            best = min(range(len(centroids)), key=lambda j: (abs(value - centroids[j]), j))
            if labels[i] != best:
                labels[i] = best
                changed = True
            sums[best] += value
            counts[best] += 1

        for j in range(len(centroids)):
            if counts[j] > 0:
                centroids[j] = sums[j] / counts[j]
            else:
                centroids[j] = values[rng.randrange(len(values))]
                changed = True

        if not changed:
            break

    return centroids, labels


def nearest_factor(factors: Sequence[float], target: float) -> float:
    """Closest swept factor to ``target``; the first one wins on a tie."""
    best = factors[0]
    for factor in factors[1:]:
        if abs(factor - target) < abs(best - target):
            best = factor
    return best


@dataclass(frozen=True, slots=True)
class ClusterDiagnostics:
    """Per-cluster statistics exposed for transparency and testing."""

    size: int
    dispersion: float
    factors: tuple[float, ...]
    avg_performance: float
    min_performance: float
    max_performance: float

    @classmethod
    def from_members(
        cls, factors: Sequence[float], performances: Sequence[float]
    ) -> ClusterDiagnostics:
        return cls(
            size=len(factors),
            dispersion=population_std(factors),
            factors=tuple(factors),
            avg_performance=mean(performances),
            min_performance=min(performances) if performances else 0.0,
            max_performance=max(performances) if performances else 0.0,
        )


@dataclass(frozen=True)
class FactorSelection:
    """Outcome of one factor selection."""

    target_factor: float
    clusters: dict[int, list[float]]
    perf_clusters: dict[int, list[float]]
    mapping: dict[int, ClusterLabel]
    selected_cluster_id: int | None
    diagnostics: dict[str, ClusterDiagnostics]
    dispersions: dict[int, float]
    raw_performance: float
    clustered: bool = True
    centroids: list[float] = field(default_factory=list)

    @property
    def selected_label(self) -> ClusterLabel | None:
        if self.selected_cluster_id is None:
            return None
        return self.mapping.get(self.selected_cluster_id)

    @property
    def selected_dispersion(self) -> float:
        if self.selected_cluster_id is None:
            return 0.0
        return self.dispersions.get(self.selected_cluster_id, 0.0)


class FactorSelector:
    """Selects the ATR factor to trade from a performance sweep.

    Args:
        max_iter: Upper bound on k-means passes.
        rng: Random source for empty-cluster reseeding. Pass a seeded
            ``random.Random`` for reproducible results.

    Example:
        >>> selector = FactorSelector(rng=random.Random(7))
        >>> selection = selector.select([1.0, 1.5, 2.0], [0.1, 0.5, 0.9])
        >>> selection.target_factor
        2.0
    """

    def __init__(self, max_iter: int = 1000, rng: random.Random | None = None):
        if max_iter < 1:
            raise ValueError(f"max_iter must be positive, got {max_iter}")
        self.max_iter = max_iter
        self.rng = rng or random.Random()

    def select(
        self,
        factors: Sequence[float],
        performances: Sequence[float],
        from_cluster: ClusterLabel = "Best",
    ) -> FactorSelection:
        """Cluster the sweep and pick the factor of ``from_cluster``.

        Raises:
            ValueError: If the inputs are empty, of unequal length, or the
                label is unknown.
        """
        if len(factors) != len(performances):
            raise ValueError(
                f"factors and performances differ in length: "
                f"{len(factors)} != {len(performances)}"
            )
        if not factors:
            raise ValueError("at least one factor is required")
        if from_cluster not in CLUSTER_LABELS:
            raise ValueError(f"from_cluster must be one of {CLUSTER_LABELS}, got {from_cluster!r}")

        if len(factors) < 3:
            return self._select_best(factors, performances)

        seeds = [percentile(performances, q) for q in (0.25, 0.5, 0.75)]
        centroids, labels = kmeans_1d(list(performances), seeds, self.max_iter, self.rng)

        clusters: dict[int, list[float]] = {0: [], 1: [], 2: []}
        perf_clusters: dict[int, list[float]] = {0: [], 1: [], 2: []}
        for factor, performance, label in zip(factors, performances, labels):
            clusters[label].append(factor)
            perf_clusters[label].append(performance)

        ranked = sorted(
            perf_clusters,
            key=lambda cid: mean(perf_clusters[cid], default=float("-inf")),
        )
        mapping: dict[int, ClusterLabel] = {
            cid: label for cid, label in zip(ranked, CLUSTER_LABELS)
        }
        selected_id = next(cid for cid, label in mapping.items() if label == from_cluster)

        members = clusters[selected_id]
        target = mean(members) if members else factors[0]
        target_factor = nearest_factor(factors, target)

        logger.debug(
            f"Clustered {len(factors)} factors: centroids={centroids}, "
            f"selected {from_cluster} -> {target_factor}"
        )

        return FactorSelection(
            target_factor=target_factor,
            clusters=clusters,
            perf_clusters=perf_clusters,
            mapping=mapping,
            selected_cluster_id=selected_id,
            diagnostics={
                mapping[cid]: ClusterDiagnostics.from_members(clusters[cid], perf_clusters[cid])
                for cid in ranked
            },
            dispersions={cid: population_std(values) for cid, values in clusters.items()},
            raw_performance=mean(perf_clusters[selected_id]),
            centroids=centroids,
        )

    def _select_best(
        self, factors: Sequence[float], performances: Sequence[float]
    ) -> FactorSelection:
        best_index = max(range(len(factors)), key=lambda i: performances[i])
        members = list(factors)
        perfs = list(performances)
        return FactorSelection(
            target_factor=factors[best_index],
            clusters={0: members},
            perf_clusters={0: perfs},
            mapping={0: "Average"},
            selected_cluster_id=0,
            diagnostics={"Average": ClusterDiagnostics.from_members(members, perfs)},
            dispersions={0: population_std(members)},
            raw_performance=mean(perfs),
            clustered=False,
        )
