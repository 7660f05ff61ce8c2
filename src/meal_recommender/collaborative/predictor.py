"""
predictor.py

Purpose:
    Predict how a member would rate a recipe they have not rated yet.

Methods:
    user_based            target user's mean + weighted neighbor deviations
    item_based            item mean + weighted deviations over similar recipes the user rated
    hybrid                blend of the two, each weighted by its own confidence
    matrix_factorization  user mean + 0.5 x (item mean - global mean); a coarse
                          stand-in, the trained model lives in matrix.factorize()

Confidence = 0.4 x (valid / selected neighbors) + 0.6 x min(valid / 20, 1).
Below `confidence_threshold` (or with fewer than `min_neighbors` contributing
neighbors) the item's average is returned with confidence 0.1 and the method
suffixed "_fallback". Every predicted rating is clamped to [1, 5].
"""
from __future__ import annotations

import math
from dataclasses import asdict, dataclass, replace
from typing import Dict, Iterable, List, Mapping, Optional

from sklearn.metrics import mean_absolute_error, mean_squared_error

from meal_recommender.collaborative.matrix import MAX_RATING, MIN_RATING, RatingMatrix, matrix_from_ratings
from meal_recommender.collaborative.neighbors import Neighbor, NeighborSelector
from meal_recommender.errors import InsufficientNeighborsError
from meal_recommender.logging_utils import get_logger

logger = get_logger("predictor")

METHODS = ("user_based", "item_based", "hybrid", "matrix_factorization")
FALLBACK_CONFIDENCE = 0.1
RELEVANT_RATING = 4.0
TOP_K_EVAL = 5


@dataclass(frozen=True)
class PredictorConfig:
    method: str = "hybrid"
    min_neighbors: int = 3
    max_neighbors: int = 50
    confidence_threshold: float = 0.3
    fallback_to_global: bool = True


@dataclass(frozen=True)
class Prediction:
    item_id: str
    predicted_rating: float
    confidence: float
    method: str
    neighbor_count: int = 0

    @property
    def is_fallback(self) -> bool:
        return self.method.endswith("_fallback")


@dataclass
class EvaluationReport:
    mae: float
    rmse: float
    coverage: float
    precision: float
    recall: float
    evaluated: int


def _clamp_rating(value: float) -> float:
    return max(MIN_RATING, min(MAX_RATING, value))


def prediction_confidence(valid: int, total: int) -> float:
    ratio = valid / max(total, 1)
    return min(1.0, ratio * 0.4 + min(valid / 20, 1.0) * 0.6)


class RatingPredictor:
    def __init__(self, neighbors: NeighborSelector, config: Optional[PredictorConfig] = None) -> None:
        self.neighbors = neighbors
        self.config = config or PredictorConfig()

    def get_config(self) -> Dict[str, object]:
        return asdict(self.config)

    def update_config(self, **changes) -> PredictorConfig:
        if "method" in changes and changes["method"] not in METHODS:
            raise ValueError(f"Unknown prediction method: {changes['method']}")
        self.config = replace(self.config, **changes)
        return self.config

    # ------------------------------------------------------------------
    # Public APIs
    # ------------------------------------------------------------------
    def predict(
        self,
        matrix: RatingMatrix,
        user_id: str,
        item_id: str,
        config: Optional[PredictorConfig] = None,
        *,
        user_neighbors: Optional[List[Neighbor]] = None,
    ) -> Prediction:
        """
        Raises:
            InsufficientNeighborsError: only when fallback_to_global is disabled
                and too few neighbors contributed.
        """
        cfg = config or self.config
        existing = matrix.get_rating(user_id, item_id)
        if existing is not None:
            return Prediction(item_id, existing, 1.0, "existing", 0)

        # Sub-predictions always fall back internally; the policy is applied below
        lenient = replace(cfg, fallback_to_global=True)
        if cfg.method == "user_based":
            result = self._user_based(matrix, user_id, item_id, lenient, user_neighbors)
        elif cfg.method == "item_based":
            result = self._item_based(matrix, user_id, item_id, lenient)
        elif cfg.method == "hybrid":
            result = self._hybrid(matrix, user_id, item_id, lenient, user_neighbors)
        elif cfg.method == "matrix_factorization":
            result = self._matrix_factorization(matrix, user_id, item_id)
        else:
            raise ValueError(f"Unknown prediction method: {cfg.method}")

        if result.is_fallback and not cfg.fallback_to_global:
            raise InsufficientNeighborsError(
                f"{cfg.method}: {result.neighbor_count} neighbors for {user_id}/{item_id}, need {cfg.min_neighbors}"
            )
        if not result.is_fallback and result.confidence < cfg.confidence_threshold and cfg.fallback_to_global:
            result = self._fallback(matrix, item_id, result.method, result.neighbor_count)
        return result

    def predict_batch(
        self,
        matrix: RatingMatrix,
        user_id: str,
        item_ids: Iterable[str],
        config: Optional[PredictorConfig] = None,
    ) -> List[Prediction]:
        """Predict many recipes for one user, selecting the user's neighbors only once."""
        cfg = config or self.config
        user_neighbors = None
        if cfg.method in ("user_based", "hybrid"):
            user_neighbors = self._select_user_neighbors(matrix, user_id, cfg)
        return [self.predict(matrix, user_id, item_id, cfg, user_neighbors=user_neighbors) for item_id in item_ids]

    def predict_top_n(
        self,
        matrix: RatingMatrix,
        user_id: str,
        candidate_ids: Iterable[str],
        n: int = 10,
        config: Optional[PredictorConfig] = None,
    ) -> List[Prediction]:
        predictions = self.predict_batch(matrix, user_id, candidate_ids, config)
        predictions.sort(key=lambda p: (-p.predicted_rating, -p.confidence, p.item_id))
        return predictions[:n]

    def evaluate(
        self,
        matrix: RatingMatrix,
        user_id: str,
        test_ratings: Mapping[str, float],
        config: Optional[PredictorConfig] = None,
    ) -> EvaluationReport:
        """
        Score predictions against held-out ratings of one user.

        The held-out ratings are removed from a copy of the matrix first, so
        the predictor never sees the answers. MAE / RMSE cover every
        prediction with confidence > 0; coverage is the share of test items
        predicted without falling back; precision / recall are computed over
        the top-5 predictions with "relevant" meaning an actual rating >= 4.
        """
        if not test_ratings:
            return EvaluationReport(0.0, 0.0, 0.0, 0.0, 0.0, 0)

        trimmed = {u: dict(items) for u, items in matrix.ratings.items()}
        for item_id in test_ratings:
            trimmed.get(user_id, {}).pop(item_id, None)
        trimmed = {u: items for u, items in trimmed.items() if items}
        train = matrix_from_ratings(trimmed)

        predictions = self.predict_batch(train, user_id, list(test_ratings), config)
        scored = [p for p in predictions if p.confidence > 0]
        actual = [float(test_ratings[p.item_id]) for p in scored]
        predicted = [p.predicted_rating for p in scored]

        mae = float(mean_absolute_error(actual, predicted)) if scored else 0.0
        rmse = float(math.sqrt(mean_squared_error(actual, predicted))) if scored else 0.0
        coverage = sum(1 for p in predictions if not p.is_fallback) / len(test_ratings)

        top = sorted(scored, key=lambda p: (-p.predicted_rating, p.item_id))[:TOP_K_EVAL]
        top_ids = {p.item_id for p in top}
        relevant = {i for i, r in test_ratings.items() if r >= RELEVANT_RATING}
        hits = len(top_ids & relevant)
        precision = hits / len(top_ids) if top_ids else 0.0
        recall = hits / len(relevant) if relevant else 0.0

        logger.info(
            "Evaluated %d held-out ratings for %s: mae=%.3f rmse=%.3f coverage=%.2f",
            len(test_ratings),
            user_id,
            mae,
            rmse,
            coverage,
            extra={"invoking_func": "evaluate", "next_step": "Compare against previous predictor run"},
        )
        return EvaluationReport(mae, rmse, coverage, precision, recall, len(scored))

    # ------------------------------------------------------------------
    # Methods
    # ------------------------------------------------------------------
    def _select_user_neighbors(self, matrix: RatingMatrix, user_id: str, cfg: PredictorConfig) -> List[Neighbor]:
        return self.neighbors.select_user_neighbors(matrix, user_id, max_neighbors=cfg.max_neighbors)

    def _user_based(
        self,
        matrix: RatingMatrix,
        user_id: str,
        item_id: str,
        cfg: PredictorConfig,
        neighbors: Optional[List[Neighbor]] = None,
    ) -> Prediction:
        if neighbors is None:
            neighbors = self._select_user_neighbors(matrix, user_id, cfg)
        if len(neighbors) < cfg.min_neighbors:
            return self._fallback(matrix, item_id, "user_based", len(neighbors))

        user_avg = matrix.user_averages.get(user_id) or matrix.global_average
        num = den = 0.0
        valid = 0
        for n in neighbors:
            rating = matrix.get_rating(n.id, item_id)
            if rating is None:
                continue
            neighbor_avg = matrix.user_averages.get(n.id) or matrix.global_average
            num += n.weight * (rating - neighbor_avg)
            den += abs(n.weight)
            valid += 1

        if den == 0 or valid < cfg.min_neighbors:
            return self._fallback(matrix, item_id, "user_based", valid)
        return Prediction(
            item_id,
            _clamp_rating(user_avg + num / den),
            prediction_confidence(valid, len(neighbors)),
            "user_based",
            valid,
        )

    def _item_based(self, matrix: RatingMatrix, user_id: str, item_id: str, cfg: PredictorConfig) -> Prediction:
        user_ratings = matrix.user_vector(user_id)
        if not user_ratings:
            return self._fallback(matrix, item_id, "item_based", 0)

        similar = self.neighbors.select_item_neighbors(matrix, item_id, max_neighbors=cfg.max_neighbors)
        if len(similar) < cfg.min_neighbors:
            return self._fallback(matrix, item_id, "item_based", len(similar))

        item_avg = matrix.item_averages.get(item_id) or matrix.global_average
        num = den = 0.0
        valid = 0
        for n in similar:
            rating = user_ratings.get(n.id)
            if rating is None:
                continue
            similar_avg = matrix.item_averages.get(n.id) or matrix.global_average
            num += n.weight * (rating - similar_avg)
            den += abs(n.weight)
            valid += 1

        if den == 0 or valid < cfg.min_neighbors:
            return self._fallback(matrix, item_id, "item_based", valid)
        return Prediction(
            item_id,
            _clamp_rating(item_avg + num / den),
            prediction_confidence(valid, len(similar)),
            "item_based",
            valid,
        )

    def _hybrid(
        self,
        matrix: RatingMatrix,
        user_id: str,
        item_id: str,
        cfg: PredictorConfig,
        user_neighbors: Optional[List[Neighbor]] = None,
    ) -> Prediction:
        ub = self._user_based(matrix, user_id, item_id, cfg, user_neighbors)
        ib = self._item_based(matrix, user_id, item_id, cfg)

        if ub.is_fallback and ib.is_fallback:
            return self._fallback(matrix, item_id, "hybrid", ub.neighbor_count + ib.neighbor_count)
        total = ub.confidence + ib.confidence
        if total == 0:
            return self._fallback(matrix, item_id, "hybrid", 0)

        rating = (ub.predicted_rating * ub.confidence + ib.predicted_rating * ib.confidence) / total
        return Prediction(
            item_id,
            _clamp_rating(rating),
            max(ub.confidence, ib.confidence),
            "hybrid",
            ub.neighbor_count + ib.neighbor_count,
        )

    @staticmethod
    def _matrix_factorization(matrix: RatingMatrix, user_id: str, item_id: str) -> Prediction:
        item_avg = matrix.item_averages.get(item_id) or matrix.global_average
        user_avg = matrix.user_averages.get(user_id) or matrix.global_average
        rating = user_avg + 0.5 * (item_avg - matrix.global_average)
        confidence = min(matrix.item_rating_count(item_id) / 50, 1.0)
        return Prediction(item_id, _clamp_rating(rating), confidence, "matrix_factorization", 0)

    @staticmethod
    def _fallback(matrix: RatingMatrix, item_id: str, method: str, neighbor_count: int) -> Prediction:
        item_avg = matrix.item_averages.get(item_id) or matrix.global_average or 3.0
        return Prediction(item_id, _clamp_rating(item_avg), FALLBACK_CONFIDENCE, f"{method}_fallback", neighbor_count)
