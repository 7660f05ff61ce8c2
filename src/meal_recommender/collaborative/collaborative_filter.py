"""
collaborative_filter.py

Purpose:
    The collaborative lane of the engine: predict ratings for published
    recipes the member has never touched and score them as rating x 20.

Design:
    - Reuses the builder's cached matrix snapshot; EmptyMatrixError or a
      member missing from the snapshot means "no collaborative signal" and
      the lane returns [].
    - Known recipes (rated, favorited, viewed) and the request exclusion
      list never become candidates.
"""
from __future__ import annotations

from typing import List, Optional

from meal_recommender.collaborative.matrix import RatingMatrixBuilder
from meal_recommender.collaborative.neighbors import NeighborSelector
from meal_recommender.collaborative.predictor import Prediction, RatingPredictor
from meal_recommender.collaborative.similarity import SimilarityCalculator
from meal_recommender.config import RecommenderSettings, get_settings
from meal_recommender.errors import EmptyMatrixError
from meal_recommender.logging_utils import get_logger
from meal_recommender.repository.base import RecommendationRepository
from meal_recommender.schema import Recommendation, RecommendationContext, RecommendationMetadata

logger = get_logger("collaborative_filter")


class CollaborativeFilter:
    def __init__(
        self,
        repository: RecommendationRepository,
        *,
        settings: Optional[RecommenderSettings] = None,
        builder: Optional[RatingMatrixBuilder] = None,
        predictor: Optional[RatingPredictor] = None,
    ) -> None:
        self.repository = repository
        self.settings = settings or get_settings()
        self.builder = builder or RatingMatrixBuilder(repository, settings=self.settings)
        if predictor is None:
            similarity = SimilarityCalculator(settings=self.settings).attach(self.builder)
            predictor = RatingPredictor(NeighborSelector(similarity))
        self.predictor = predictor

    def get_recommendations(self, context: RecommendationContext, limit: int = 10) -> List[Recommendation]:
        user_id = context.user_id
        try:
            matrix = self.builder.build()
        except EmptyMatrixError:
            return []
        if not matrix.has_user(user_id):
            logger.debug(
                "User %s not in matrix %s",
                user_id,
                matrix.version,
                extra={"invoking_func": "get_recommendations", "next_step": "Return no collaborative candidates"},
            )
            return []

        known = set(context.exclude_recipe_ids)
        known.update(r.recipe_id for r in self.repository.get_user_ratings(user_id))
        known.update(f.recipe_id for f in self.repository.get_user_favorites(user_id))
        known.update(v.recipe_id for v in self.repository.get_user_views(user_id))

        unseen = [item for item in matrix.items if item not in known]
        recipes = self.repository.get_recipes_by_ids(unseen)
        candidates = [item for item in unseen if item in recipes and recipes[item].is_published]
        if not candidates:
            return []

        predictions = self.predictor.predict_top_n(matrix, user_id, candidates, n=limit)
        recommendations = [self._to_recommendation(p) for p in predictions if p.confidence > 0]
        logger.info(
            "Collaborative lane produced %d candidates for %s from %d unseen recipes",
            len(recommendations),
            user_id,
            len(candidates),
            extra={
                "invoking_func": "get_recommendations",
                "invoking_purpose": "Score unseen recipes from similar members",
                "next_step": "Merge with rule-based and content lanes",
            },
        )
        return recommendations

    @staticmethod
    def _to_recommendation(prediction: Prediction) -> Recommendation:
        score = prediction.predicted_rating * 20
        if prediction.is_fallback:
            reasons = ["well_rated_by_members"]
            explanation = "Members rate this recipe highly."
        else:
            reasons = ["similar_users_liked"]
            explanation = "Members with similar taste enjoyed this recipe."
        return Recommendation(
            recipe_id=prediction.item_id,
            score=score,
            reasons=reasons,
            explanation=explanation,
            metadata=RecommendationMetadata(preference_match=score / 100),
        )
