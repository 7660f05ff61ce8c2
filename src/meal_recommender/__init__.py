"""Recipe recommendation pipeline."""
from meal_recommender.engine import RecommendationEngine
from meal_recommender.schema import Recommendation, RecommendationContext, RecommendationWeights

__all__ = [
    "Recommendation",
    "RecommendationContext",
    "RecommendationEngine",
    "RecommendationWeights",
]
