"""
similarity.py

Purpose:
    Pairwise similarity between two users (over the recipes both rated) or
    two recipes (over the users who rated both).

Metrics:
    cosine           plain cosine over shared ratings, [-1, 1]
    pearson          correlation around each side's average, needs >= 2 shared
    jaccard          |shared| / |union| of rated sets, [0, 1]
    adjusted_cosine  ratings centred on each *user's* average, needs >= 2 shared
    euclidean        1 / (1 + RMS rating difference), (0, 1]

Caching:
    Results are memoised per (matrix version, kind, metric, sorted pair).
    Sorting the pair makes sim(a, b) and sim(b, a) the same cache entry and
    the same floating-point computation. When the matrix builder retires a
    snapshot, invalidate_version() drops that version's entries.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from meal_recommender.cache import TTLCache
from meal_recommender.config import RecommenderSettings, get_settings
from meal_recommender.logging_utils import get_logger
from meal_recommender.collaborative.matrix import RatingMatrix, RatingMatrixBuilder

logger = get_logger("similarity")

METRICS = ("cosine", "pearson", "jaccard", "adjusted_cosine", "euclidean")
USER = "user"
ITEM = "item"


@dataclass(frozen=True)
class SimilarityScore:
    id: str
    similarity: float
    common_count: int


def _clamp(value: float, low: float = -1.0, high: float = 1.0) -> float:
    if math.isnan(value):
        return 0.0
    return max(low, min(high, value))


def _shared_keys(a: Mapping[str, float], b: Mapping[str, float]) -> List[str]:
    small, large = (a, b) if len(a) <= len(b) else (b, a)
    return sorted(k for k in small if k in large)


def _centred_cosine(pairs: Iterable[Tuple[float, float]]) -> float:
    num = den_a = den_b = 0.0
    for x, y in pairs:
        num += x * y
        den_a += x * x
        den_b += y * y
    if den_a == 0 or den_b == 0:
        return 0.0
    return num / (math.sqrt(den_a) * math.sqrt(den_b))


def cosine(a: Mapping[str, float], b: Mapping[str, float]) -> float:
    shared = _shared_keys(a, b)
    if not shared:
        return 0.0
    return _clamp(_centred_cosine((a[k], b[k]) for k in shared))


def pearson(a: Mapping[str, float], b: Mapping[str, float], mean_a: float, mean_b: float) -> float:
    shared = _shared_keys(a, b)
    if len(shared) < 2:
        return 0.0
    return _clamp(_centred_cosine((a[k] - mean_a, b[k] - mean_b) for k in shared))


def jaccard(a: Mapping[str, float], b: Mapping[str, float]) -> float:
    union = len(set(a) | set(b))
    if union == 0:
        return 0.0
    return _clamp(len(_shared_keys(a, b)) / union, 0.0, 1.0)


def euclidean(a: Mapping[str, float], b: Mapping[str, float]) -> float:
    shared = _shared_keys(a, b)
    if not shared:
        return 0.0
    dist = sum((a[k] - b[k]) ** 2 for k in shared)
    return _clamp(1.0 / (1.0 + math.sqrt(dist / len(shared))), 0.0, 1.0)


class SimilarityCalculator:
    def __init__(
        self,
        *,
        settings: Optional[RecommenderSettings] = None,
        cache: Optional[TTLCache] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.cache: TTLCache = cache or TTLCache(
            self.settings.similarity_ttl_seconds, max_size=self.settings.cache_max_size
        )

    def attach(self, builder: RatingMatrixBuilder) -> "SimilarityCalculator":
        """Drop cached similarities whenever `builder` retires a snapshot."""
        builder.on_invalidate(self.invalidate_version)
        return self

    # ------------------------------------------------------------------
    # Pairwise
    # ------------------------------------------------------------------
    def user_similarity(self, matrix: RatingMatrix, user_a: str, user_b: str, metric: str = "cosine") -> float:
        return self._pair(matrix, USER, user_a, user_b, metric)

    def item_similarity(self, matrix: RatingMatrix, item_a: str, item_b: str, metric: str = "cosine") -> float:
        return self._pair(matrix, ITEM, item_a, item_b, metric)

    def _pair(self, matrix: RatingMatrix, kind: str, a: str, b: str, metric: str) -> float:
        if metric not in METRICS:
            raise ValueError(f"Unknown similarity metric: {metric}")
        lo, hi = (a, b) if a <= b else (b, a)
        key = (matrix.version, kind, metric, lo, hi)
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        value = self._compute(matrix, kind, lo, hi, metric)
        self.cache.set(key, value)
        return value

    @staticmethod
    def _compute(matrix: RatingMatrix, kind: str, a: str, b: str, metric: str) -> float:
        vec = matrix.user_vector if kind == USER else matrix.item_vector
        va, vb = vec(a), vec(b)
        if not va or not vb:
            return 0.0

        if metric == "cosine":
            return cosine(va, vb)
        if metric == "jaccard":
            return jaccard(va, vb)
        if metric == "euclidean":
            return euclidean(va, vb)
        if metric == "pearson":
            means = matrix.user_averages if kind == USER else matrix.item_averages
            return pearson(va, vb, means.get(a, 0.0), means.get(b, 0.0))

        # adjusted_cosine: always centre on the rating user's average
        shared = _shared_keys(va, vb)
        if len(shared) < 2:
            return 0.0
        if kind == USER:
            pairs = ((va[k] - matrix.user_averages[a], vb[k] - matrix.user_averages[b]) for k in shared)
        else:
            pairs = ((va[u] - matrix.user_averages[u], vb[u] - matrix.user_averages[u]) for u in shared)
        return _clamp(_centred_cosine(pairs))

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------
    def user_similarities(
        self,
        matrix: RatingMatrix,
        user_id: str,
        metric: str = "cosine",
        min_common: int = 3,
    ) -> List[SimilarityScore]:
        """Every other user with similarity > 0 and >= min_common shared recipes, best first."""
        if not matrix.has_user(user_id):
            return []
        target = matrix.user_vector(user_id)
        out = []
        for other in matrix.users:
            if other == user_id:
                continue
            common = len(_shared_keys(target, matrix.user_vector(other)))
            if common < min_common:
                continue
            sim = self.user_similarity(matrix, user_id, other, metric)
            if sim > 0:
                out.append(SimilarityScore(other, sim, common))
        out.sort(key=lambda s: (-s.similarity, s.id))
        return out

    def item_similarities(
        self,
        matrix: RatingMatrix,
        item_id: str,
        metric: str = "cosine",
        min_common: int = 3,
        candidates: Optional[Iterable[str]] = None,
    ) -> List[SimilarityScore]:
        """Other recipes (optionally restricted to `candidates`) similar to item_id, best first."""
        if not matrix.has_item(item_id):
            return []
        target = matrix.item_vector(item_id)
        pool = matrix.items if candidates is None else [c for c in candidates if matrix.has_item(c)]
        out = []
        for other in pool:
            if other == item_id:
                continue
            common = len(_shared_keys(target, matrix.item_vector(other)))
            if common < min_common:
                continue
            sim = self.item_similarity(matrix, item_id, other, metric)
            if sim > 0:
                out.append(SimilarityScore(other, sim, common))
        out.sort(key=lambda s: (-s.similarity, s.id))
        return out

    def similarity_matrix(
        self,
        matrix: RatingMatrix,
        kind: str = USER,
        metric: str = "cosine",
        min_common: int = 3,
    ) -> Dict[str, Dict[str, float]]:
        """Full symmetric map id -> id -> similarity for pairs with enough shared ratings."""
        ids = matrix.users if kind == USER else matrix.items
        vec = matrix.user_vector if kind == USER else matrix.item_vector
        result: Dict[str, Dict[str, float]] = {i: {} for i in ids}
        for n, a in enumerate(ids):
            for b in ids[n + 1 :]:
                if len(_shared_keys(vec(a), vec(b))) < min_common:
                    continue
                sim = self._pair(matrix, kind, a, b, metric)
                result[a][b] = sim
                result[b][a] = sim
        return result

    def precompute(
        self,
        matrix: RatingMatrix,
        kind: str = USER,
        metric: str = "cosine",
        top_k: int = 50,
        min_common: int = 3,
    ) -> Dict[str, List[SimilarityScore]]:
        """Warm the cache and return the top_k most similar ids for every user (or item)."""
        batch = self.user_similarities if kind == USER else self.item_similarities
        ids = matrix.users if kind == USER else matrix.items
        top = {i: batch(matrix, i, metric, min_common)[:top_k] for i in ids}
        logger.info(
            "Precomputed %s similarities (%s) for %d ids, top_k=%d",
            kind,
            metric,
            len(ids),
            top_k,
            extra={"invoking_func": "precompute", "next_step": "Serve neighbor selection from cache"},
        )
        return top

    # ------------------------------------------------------------------
    # Cache management
    # ------------------------------------------------------------------
    def invalidate_version(self, version: str) -> None:
        dropped = self.cache.invalidate_where(lambda key: isinstance(key, tuple) and key[0] == version)
        logger.debug(
            "Dropped %d similarity entries for matrix %s",
            dropped,
            version,
            extra={"invoking_func": "invalidate_version"},
        )

    def clear_cache(self) -> None:
        self.cache.clear()

    def cache_status(self) -> Dict[str, object]:
        return self.cache.stats()
