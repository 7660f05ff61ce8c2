"""
matrix.py

Purpose:
    Build the user x recipe rating matrix consumed by the similarity,
    neighbor and prediction stages.

Design:
    - Explicit ratings plus favorites (an implicit 5 when the member never
      rated that recipe) are loaded through the repository into a pandas
      frame, filtered two-pass: qualifying users first, then qualifying
      items among those users' ratings.
    - The result is a RatingMatrix snapshot: frozen, read-only mappings,
      tagged with a version id. Nothing mutates a snapshot; update() returns
      a new one and swaps it into the cache.
    - Snapshots are cached in a TTLCache keyed by the build parameters.
      Listeners registered with on_invalidate() are told which version
      went stale so dependent caches (similarity) can drop its entries.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Tuple

import numpy as np
import pandas as pd

from meal_recommender.cache import TTLCache
from meal_recommender.config import RecommenderSettings, get_settings
from meal_recommender.errors import EmptyMatrixError
from meal_recommender.logging_utils import get_logger
from meal_recommender.repository.base import RecommendationRepository
from meal_recommender.schema import Rating

logger = get_logger("matrix")

MIN_RATING = 1.0
MAX_RATING = 5.0
FAVORITE_IMPLICIT_RATING = 5.0

RatingMap = Mapping[str, Mapping[str, float]]


def _freeze(nested: Dict[str, Dict[str, float]]) -> RatingMap:
    return MappingProxyType({k: MappingProxyType(dict(v)) for k, v in nested.items()})


def _mean(values: Iterable[float]) -> float:
    vals = list(values)
    return float(sum(vals) / len(vals)) if vals else 0.0


@dataclass(frozen=True)
class RatingMatrix:
    """Immutable snapshot of the sparse rating matrix and its derived averages."""

    users: Tuple[str, ...]
    items: Tuple[str, ...]
    ratings: RatingMap                       # user -> item -> rating
    item_ratings: RatingMap                  # item -> user -> rating
    user_averages: Mapping[str, float]
    item_averages: Mapping[str, float]
    global_average: float
    sparsity: float
    version: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    cache_key: Optional[Tuple] = None

    @property
    def rating_count(self) -> int:
        return sum(len(v) for v in self.ratings.values())

    def has_user(self, user_id: str) -> bool:
        return user_id in self.ratings

    def has_item(self, item_id: str) -> bool:
        return item_id in self.item_ratings

    def get_rating(self, user_id: str, item_id: str) -> Optional[float]:
        return self.ratings.get(user_id, {}).get(item_id)

    def user_vector(self, user_id: str) -> Mapping[str, float]:
        return self.ratings.get(user_id, MappingProxyType({}))

    def item_vector(self, item_id: str) -> Mapping[str, float]:
        return self.item_ratings.get(item_id, MappingProxyType({}))

    def item_rating_count(self, item_id: str) -> int:
        return len(self.item_ratings.get(item_id, {}))

    def common_items(self, user_a: str, user_b: str) -> Dict[str, Tuple[float, float]]:
        """Items rated by both users -> (rating_a, rating_b)."""
        a, b = self.user_vector(user_a), self.user_vector(user_b)
        if len(a) > len(b):
            return {i: (a[i], b[i]) for i in b if i in a}
        return {i: (a[i], b[i]) for i in a if i in b}

    def common_users(self, item_a: str, item_b: str) -> Dict[str, Tuple[float, float]]:
        """Users who rated both items -> (rating_a, rating_b)."""
        a, b = self.item_vector(item_a), self.item_vector(item_b)
        if len(a) > len(b):
            return {u: (a[u], b[u]) for u in b if u in a}
        return {u: (a[u], b[u]) for u in a if u in b}

    def averages_dict(self) -> Dict[str, object]:
        """Derived averages in a JSON-serialisable shape."""
        return {
            "user_averages": dict(sorted(self.user_averages.items())),
            "item_averages": dict(sorted(self.item_averages.items())),
            "global_average": self.global_average,
            "sparsity": self.sparsity,
        }

    def to_frame(self) -> pd.DataFrame:
        rows = [(u, i, r) for u, items in self.ratings.items() for i, r in items.items()]
        return pd.DataFrame(rows, columns=["user_id", "item_id", "rating"])


@dataclass
class MatrixStatistics:
    total_users: int
    total_items: int
    total_ratings: int
    sparsity: float
    rating_distribution: Dict[int, int]
    user_activity: Dict[str, int]
    item_popularity: Dict[str, int]


def matrix_from_ratings(ratings: Dict[str, Dict[str, float]], *, cache_key: Optional[Tuple] = None) -> RatingMatrix:
    """Assemble a snapshot (averages, sparsity, item index) from user -> item -> rating."""
    item_index: Dict[str, Dict[str, float]] = {}
    for user_id, items in ratings.items():
        for item_id, value in items.items():
            item_index.setdefault(item_id, {})[user_id] = value

    user_averages = {u: _mean(items.values()) for u, items in ratings.items()}
    item_averages = {i: _mean(users.values()) for i, users in item_index.items()}
    return _snapshot(ratings, item_index, user_averages, item_averages, cache_key)


def _snapshot(
    ratings: Dict[str, Dict[str, float]],
    item_index: Dict[str, Dict[str, float]],
    user_averages: Dict[str, float],
    item_averages: Dict[str, float],
    cache_key: Optional[Tuple],
) -> RatingMatrix:
    total = sum(len(v) for v in ratings.values())
    rating_sum = sum(sum(v.values()) for v in ratings.values())
    possible = len(ratings) * len(item_index)
    return RatingMatrix(
        users=tuple(sorted(ratings)),
        items=tuple(sorted(item_index)),
        ratings=_freeze(ratings),
        item_ratings=_freeze(item_index),
        user_averages=MappingProxyType(dict(user_averages)),
        item_averages=MappingProxyType(dict(item_averages)),
        global_average=float(rating_sum / total) if total else 0.0,
        sparsity=1.0 - (total / possible) if possible else 1.0,
        cache_key=cache_key,
    )


class RatingMatrixBuilder:
    def __init__(
        self,
        repository: RecommendationRepository,
        *,
        settings: Optional[RecommenderSettings] = None,
        cache: Optional[TTLCache] = None,
    ) -> None:
        self.repository = repository
        self.settings = settings or get_settings()
        self.cache: TTLCache = cache or TTLCache(self.settings.matrix_ttl_seconds, max_size=32)
        self._listeners: List[Callable[[str], None]] = []

    # ------------------------------------------------------------------
    # Public APIs
    # ------------------------------------------------------------------
    def on_invalidate(self, listener: Callable[[str], None]) -> None:
        """Register a callback receiving the version id of a snapshot that went stale."""
        self._listeners.append(listener)

    def build(
        self,
        min_ratings_per_user: Optional[int] = None,
        min_ratings_per_item: Optional[int] = None,
        since: Optional[datetime] = None,
    ) -> RatingMatrix:
        """
        Return the cached snapshot for these parameters or build a fresh one.

        Raises:
            EmptyMatrixError: no rating survives the two-pass filter.
        """
        mu = self.settings.min_ratings_per_user if min_ratings_per_user is None else min_ratings_per_user
        mi = self.settings.min_ratings_per_item if min_ratings_per_item is None else min_ratings_per_item
        key = ("matrix", mu, mi, since.isoformat() if since else "all")

        cached = self.cache.get(key)
        if cached is not None:
            return cached

        frame = self._load_frame(since)
        frame = self._two_pass_filter(frame, mu, mi)
        if frame.empty:
            logger.warning(
                "No ratings satisfy min_per_user=%d min_per_item=%d",
                mu,
                mi,
                extra={
                    "invoking_func": "build",
                    "invoking_purpose": "Build rating matrix snapshot",
                    "next_step": "Raise EmptyMatrixError; collaborative lane returns no candidates",
                    "resolution": "Lower RECO_MIN_RATINGS_PER_USER / RECO_MIN_RATINGS_PER_ITEM or collect more ratings",
                },
            )
            raise EmptyMatrixError(f"No ratings found with min_per_user={mu} min_per_item={mi}")

        matrix = self._assemble(frame, key)
        self.cache.set(key, matrix)
        logger.info(
            "Built matrix %s: %d users x %d items, %d ratings, sparsity=%.4f",
            matrix.version,
            len(matrix.users),
            len(matrix.items),
            matrix.rating_count,
            matrix.sparsity,
            extra={"invoking_func": "build", "next_step": "Serve snapshot to similarity / predictor"},
        )
        return matrix

    def update(self, matrix: RatingMatrix, new_ratings: Iterable[Rating]) -> RatingMatrix:
        """
        Merge a batch of ratings into a new snapshot. Only the averages of
        touched users and items are recomputed; the old snapshot is untouched
        and its cached entry is replaced.
        """
        ratings = {u: dict(items) for u, items in matrix.ratings.items()}
        item_index = {i: dict(users) for i, users in matrix.item_ratings.items()}
        touched_users, touched_items = set(), set()
        skipped = 0
        for r in new_ratings:
            value = float(r.value)
            if not MIN_RATING <= value <= MAX_RATING:
                skipped += 1
                continue
            ratings.setdefault(r.user_id, {})[r.recipe_id] = value
            item_index.setdefault(r.recipe_id, {})[r.user_id] = value
            touched_users.add(r.user_id)
            touched_items.add(r.recipe_id)

        if skipped:
            logger.warning(
                "Skipped %d ratings outside [1, 5] during incremental update",
                skipped,
                extra={"invoking_func": "update", "resolution": "Validate rating values upstream"},
            )

        user_averages = dict(matrix.user_averages)
        item_averages = dict(matrix.item_averages)
        for u in touched_users:
            user_averages[u] = _mean(ratings[u].values())
        for i in touched_items:
            item_averages[i] = _mean(item_index[i].values())

        updated = _snapshot(ratings, item_index, user_averages, item_averages, matrix.cache_key)
        if matrix.cache_key is not None:
            self.cache.set(matrix.cache_key, updated)
        self._notify(matrix.version)
        logger.info(
            "Matrix %s -> %s: %d users and %d items touched",
            matrix.version,
            updated.version,
            len(touched_users),
            len(touched_items),
            extra={"invoking_func": "update", "next_step": "Invalidate similarity entries of old version"},
        )
        return updated

    def statistics(self, matrix: Optional[RatingMatrix] = None) -> MatrixStatistics:
        matrix = matrix or self.build()
        distribution = {i: 0 for i in range(1, 6)}
        for items in matrix.ratings.values():
            for value in items.values():
                bucket = int(round(value))
                distribution[bucket] = distribution.get(bucket, 0) + 1
        return MatrixStatistics(
            total_users=len(matrix.users),
            total_items=len(matrix.items),
            total_ratings=matrix.rating_count,
            sparsity=matrix.sparsity,
            rating_distribution=distribution,
            user_activity={u: len(items) for u, items in matrix.ratings.items()},
            item_popularity={i: len(users) for i, users in matrix.item_ratings.items()},
        )

    def clear_cache(self) -> None:
        stale = [m.version for m in self._cached_snapshots()]
        self.cache.clear()
        for version in stale:
            self._notify(version)

    def cache_status(self) -> Dict[str, object]:
        status = self.cache.stats()
        status["versions"] = [m.version for m in self._cached_snapshots()]
        return status

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _cached_snapshots(self) -> List[RatingMatrix]:
        return [m for m in self.cache.values() if isinstance(m, RatingMatrix)]

    def _notify(self, version: str) -> None:
        for listener in self._listeners:
            listener(version)

    def _load_frame(self, since: Optional[datetime]) -> pd.DataFrame:
        explicit = pd.DataFrame(
            [(r.user_id, r.recipe_id, float(r.value), r.rated_at) for r in self.repository.list_ratings(since=since)],
            columns=["user_id", "item_id", "rating", "ts"],
        )
        favorites = pd.DataFrame(
            [(f.user_id, f.recipe_id, FAVORITE_IMPLICIT_RATING, f.favorited_at) for f in self.repository.list_favorites(since=since)],
            columns=["user_id", "item_id", "rating", "ts"],
        )
        explicit["explicit"] = True
        favorites["explicit"] = False

        frame = pd.concat([explicit, favorites], ignore_index=True)
        if frame.empty:
            return frame
        frame = frame[(frame["rating"] >= MIN_RATING) & (frame["rating"] <= MAX_RATING)]
        # Explicit beats implicit for the same pair; newest explicit wins among duplicates
        frame = frame.sort_values(["explicit", "ts"], ascending=[False, False], kind="mergesort")
        return frame.drop_duplicates(subset=["user_id", "item_id"], keep="first")

    @staticmethod
    def _two_pass_filter(frame: pd.DataFrame, min_per_user: int, min_per_item: int) -> pd.DataFrame:
        if frame.empty:
            return frame
        user_counts = frame.groupby("user_id")["item_id"].transform("size")
        frame = frame[user_counts >= min_per_user]
        if frame.empty:
            return frame
        item_counts = frame.groupby("item_id")["user_id"].transform("size")
        return frame[item_counts >= min_per_item]

    @staticmethod
    def _assemble(frame: pd.DataFrame, key: Tuple) -> RatingMatrix:
        ratings: Dict[str, Dict[str, float]] = {}
        for user_id, item_id, value in frame[["user_id", "item_id", "rating"]].itertuples(index=False):
            ratings.setdefault(user_id, {})[item_id] = float(value)
        return matrix_from_ratings(ratings, cache_key=key)


# ---------------------------------------------------------------------------
# Latent factors (offline)
# ---------------------------------------------------------------------------
@dataclass
class FactorModel:
    user_index: Dict[str, int]
    item_index: Dict[str, int]
    user_factors: np.ndarray
    item_factors: np.ndarray
    global_average: float
    training_rmse: List[float] = field(default_factory=list)

    def predict(self, user_id: str, item_id: str) -> Optional[float]:
        u = self.user_index.get(user_id)
        i = self.item_index.get(item_id)
        if u is None or i is None:
            return None
        raw = self.global_average + float(self.user_factors[u] @ self.item_factors[i])
        return float(np.clip(raw, MIN_RATING, MAX_RATING))


def factorize(
    matrix: RatingMatrix,
    *,
    factors: int = 20,
    iterations: int = 50,
    learning_rate: float = 0.01,
    regularization: float = 0.1,
    seed: int = 42,
) -> FactorModel:
    """
    Train user/item latent factors by stochastic gradient descent on the
    residuals around the global average. Deterministic for a given seed.
    """
    rng = np.random.default_rng(seed)
    user_index = {u: n for n, u in enumerate(matrix.users)}
    item_index = {i: n for n, i in enumerate(matrix.items)}
    P = rng.uniform(-0.05, 0.05, size=(len(user_index), factors))
    Q = rng.uniform(-0.05, 0.05, size=(len(item_index), factors))

    triples = np.array(
        [(user_index[u], item_index[i], r) for u, items in matrix.ratings.items() for i, r in items.items()],
        dtype=float,
    ).reshape(-1, 3)
    mu = matrix.global_average
    history: List[float] = []

    for iteration in range(iterations):
        sq_error = 0.0
        for u_f, i_f, r in triples[rng.permutation(len(triples))]:
            u, i = int(u_f), int(i_f)
            err = r - (mu + P[u] @ Q[i])
            sq_error += err * err
            pu = P[u].copy()
            P[u] += learning_rate * (err * Q[i] - regularization * P[u])
            Q[i] += learning_rate * (err * pu - regularization * Q[i])
        rmse = float(np.sqrt(sq_error / max(len(triples), 1)))
        history.append(rmse)
        if iteration % 10 == 0:
            logger.debug("Factorization iteration %d rmse=%.4f", iteration, rmse, extra={"invoking_func": "factorize"})

    return FactorModel(user_index, item_index, P, Q, mu, history)
