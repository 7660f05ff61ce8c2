"""
neighbors.py

Turns similarity scores into a bounded, weighted neighbor set for a
target user or recipe.

Strategies:
  top_k      first max_neighbors by similarity
  threshold  every candidate >= min_similarity (still capped at max_neighbors)
  hybrid     threshold, then cap at max_neighbors

Weight = similarity
         x (1 + 0.2 x min(log(common + 1) / log(100), 1))
         x (similarity / (2 x min_similarity)  when similarity < 2 x min_similarity)
"""
from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field, replace
from typing import Dict, Iterable, List, Mapping, Optional

from meal_recommender.collaborative.matrix import RatingMatrix
from meal_recommender.collaborative.similarity import ITEM, USER, SimilarityCalculator, SimilarityScore
from meal_recommender.logging_utils import get_logger

logger = get_logger("neighbors")

STRATEGIES = ("top_k", "threshold", "hybrid")
MIN_COVERAGE = 0.3


@dataclass(frozen=True)
class NeighborConfig:
    max_neighbors: int = 50
    min_similarity: float = 0.1
    min_common_items: int = 3
    similarity_metric: str = "cosine"
    selection_strategy: str = "top_k"


@dataclass(frozen=True)
class Neighbor:
    id: str
    similarity: float
    common_items: int
    weight: float


@dataclass
class NeighborValidation:
    is_valid: bool
    issues: List[str] = field(default_factory=list)
    avg_similarity: float = 0.0
    avg_common_items: float = 0.0
    coverage: float = 0.0


def neighbor_weight(score: SimilarityScore, config: NeighborConfig) -> float:
    weight = score.similarity
    common_bonus = min(math.log(score.common_count + 1) / math.log(100), 1.0)
    weight *= 1 + common_bonus * 0.2
    floor = config.min_similarity * 2
    if floor > 0 and score.similarity < floor:
        weight *= score.similarity / floor
    return weight


class NeighborSelector:
    def __init__(self, similarity: SimilarityCalculator, config: Optional[NeighborConfig] = None) -> None:
        self.similarity = similarity
        self.config = config or NeighborConfig()

    # ------------------------------------------------------------------
    # Config
    # ------------------------------------------------------------------
    def get_config(self) -> Dict[str, object]:
        return asdict(self.config)

    def update_config(self, **changes) -> NeighborConfig:
        if "selection_strategy" in changes and changes["selection_strategy"] not in STRATEGIES:
            raise ValueError(f"Unknown selection strategy: {changes['selection_strategy']}")
        self.config = replace(self.config, **changes)
        return self.config

    def _resolve(self, config: Optional[NeighborConfig], overrides: Mapping[str, object]) -> NeighborConfig:
        cfg = config or self.config
        return replace(cfg, **overrides) if overrides else cfg

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------
    def select_user_neighbors(
        self, matrix: RatingMatrix, user_id: str, config: Optional[NeighborConfig] = None, **overrides
    ) -> List[Neighbor]:
        cfg = self._resolve(config, overrides)
        scores = self.similarity.user_similarities(matrix, user_id, cfg.similarity_metric, cfg.min_common_items)
        return self.select(scores, cfg)

    def select_item_neighbors(
        self,
        matrix: RatingMatrix,
        item_id: str,
        config: Optional[NeighborConfig] = None,
        candidates: Optional[Iterable[str]] = None,
        **overrides,
    ) -> List[Neighbor]:
        cfg = self._resolve(config, overrides)
        scores = self.similarity.item_similarities(
            matrix, item_id, cfg.similarity_metric, cfg.min_common_items, candidates=candidates
        )
        return self.select(scores, cfg)

    def select_user_neighbors_batch(
        self, matrix: RatingMatrix, user_ids: Iterable[str], config: Optional[NeighborConfig] = None
    ) -> Dict[str, List[Neighbor]]:
        return {u: self.select_user_neighbors(matrix, u, config) for u in user_ids}

    def select_item_neighbors_batch(
        self, matrix: RatingMatrix, item_ids: Iterable[str], config: Optional[NeighborConfig] = None
    ) -> Dict[str, List[Neighbor]]:
        return {i: self.select_item_neighbors(matrix, i, config) for i in item_ids}

    @staticmethod
    def select(scores: List[SimilarityScore], config: NeighborConfig) -> List[Neighbor]:
        """Apply the configured strategy to similarity scores sorted best first."""
        cap = max(int(config.max_neighbors), 0)
        if config.selection_strategy == "top_k":
            chosen = scores[:cap]
        elif config.selection_strategy in ("threshold", "hybrid"):
            chosen = [s for s in scores if s.similarity >= config.min_similarity][:cap]
        else:
            raise ValueError(f"Unknown selection strategy: {config.selection_strategy}")
        return [Neighbor(s.id, s.similarity, s.common_count, neighbor_weight(s, config)) for s in chosen]

    # ------------------------------------------------------------------
    # Variants
    # ------------------------------------------------------------------
    def adapt_parameters(
        self,
        matrix: RatingMatrix,
        user_id: str,
        recent_ratings: Optional[Mapping[str, float]] = None,
    ) -> NeighborConfig:
        """
        Tune the floor and cap to the user's activity: newcomers (< 10 ratings)
        get a looser floor and more neighbors, heavy raters (> 100) a stricter
        floor and fewer. Generous recent raters loosen the floor by 10%, harsh
        ones tighten it by 10%.
        """
        base = self.config
        if not matrix.has_user(user_id):
            return base

        count = len(matrix.user_vector(user_id))
        cfg = base
        if count < 10:
            cfg = replace(
                cfg,
                min_similarity=max(0.05, base.min_similarity * 0.5),
                max_neighbors=min(100, base.max_neighbors * 2),
                min_common_items=max(1, base.min_common_items - 1),
            )
        elif count > 100:
            cfg = replace(
                cfg,
                min_similarity=min(0.3, base.min_similarity * 1.5),
                max_neighbors=max(20, int(base.max_neighbors * 0.7)),
            )

        if recent_ratings:
            avg = sum(recent_ratings.values()) / len(recent_ratings)
            if avg >= 4.5:
                cfg = replace(cfg, min_similarity=cfg.min_similarity * 0.9)
            elif avg <= 2.5:
                cfg = replace(cfg, min_similarity=cfg.min_similarity * 1.1)
        return cfg

    def select_time_decay_neighbors(
        self,
        matrix: RatingMatrix,
        user_id: str,
        decay_factor: float = 0.1,
        config: Optional[NeighborConfig] = None,
    ) -> List[Neighbor]:
        # Recency proxy: density of shared items, until rating timestamps reach the snapshot
        neighbors = self.select_user_neighbors(matrix, user_id, config)
        out = []
        for n in neighbors:
            shared = len(matrix.common_items(user_id, n.id))
            if shared == 0:
                out.append(n)
                continue
            bonus = min(shared / 10, 1.0)
            out.append(replace(n, weight=n.weight * (1 + bonus * decay_factor)))
        return out

    def select_diverse_neighbors(
        self,
        matrix: RatingMatrix,
        target_id: str,
        diversity_threshold: float = 0.8,
        config: Optional[NeighborConfig] = None,
        kind: str = USER,
    ) -> List[Neighbor]:
        """Greedy pass rejecting candidates too similar to a neighbor already chosen."""
        cfg = config or self.config
        if kind == USER:
            pool = self.select_user_neighbors(matrix, target_id, cfg)
            pair = self.similarity.user_similarity
        else:
            pool = self.select_item_neighbors(matrix, target_id, cfg)
            pair = self.similarity.item_similarity

        chosen: List[Neighbor] = []
        for candidate in pool:
            if len(chosen) >= cfg.max_neighbors:
                break
            if all(pair(matrix, candidate.id, c.id, cfg.similarity_metric) <= diversity_threshold for c in chosen):
                chosen.append(candidate)
        return chosen

    def select_cluster_neighbors(
        self,
        matrix: RatingMatrix,
        user_id: str,
        cluster_size: int = 20,
        config: Optional[NeighborConfig] = None,
    ) -> List[Neighbor]:
        """Group neighbors whose weights lie within 0.1 of a seed and keep the best of each group."""
        neighbors = self.select_user_neighbors(matrix, user_id, config)
        if len(neighbors) <= cluster_size:
            return neighbors

        ordered = sorted(neighbors, key=lambda n: n.weight, reverse=True)
        used = set()
        representatives = []
        for seed in ordered:
            if seed.id in used:
                continue
            cluster = [seed]
            used.add(seed.id)
            for other in ordered:
                if len(cluster) >= cluster_size:
                    break
                if other.id in used:
                    continue
                if abs(seed.weight - other.weight) < 0.1:
                    cluster.append(other)
                    used.add(other.id)
            representatives.append(max(cluster, key=lambda n: n.weight))
        return sorted(representatives, key=lambda n: n.weight, reverse=True)

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------
    def validate_neighbors(self, matrix: RatingMatrix, user_id: str, neighbors: List[Neighbor]) -> NeighborValidation:
        """Quality report for offline monitoring; never raises."""
        issues: List[str] = []
        if not neighbors:
            return NeighborValidation(is_valid=False, issues=["No neighbors found"])

        avg_similarity = sum(n.similarity for n in neighbors) / len(neighbors)
        avg_common = sum(n.common_items for n in neighbors) / len(neighbors)

        target = matrix.user_vector(user_id)
        coverage = 0.0
        if target:
            covered = set()
            for n in neighbors:
                covered.update(i for i in matrix.user_vector(n.id) if i in target)
            coverage = len(covered) / len(target)

        if avg_similarity < self.config.min_similarity:
            issues.append(f"Average similarity {avg_similarity:.3f} below threshold {self.config.min_similarity}")
        if avg_common < self.config.min_common_items:
            issues.append(f"Average common items {avg_common:.1f} below threshold {self.config.min_common_items}")
        if coverage < MIN_COVERAGE:
            issues.append(f"Coverage {coverage:.3f} too low")

        if issues:
            logger.debug(
                "Neighbor set for %s has %d issues",
                user_id,
                len(issues),
                extra={"invoking_func": "validate_neighbors", "resolution": "; ".join(issues)},
            )
        return NeighborValidation(
            is_valid=not issues,
            issues=issues,
            avg_similarity=avg_similarity,
            avg_common_items=avg_common,
            coverage=coverage,
        )
