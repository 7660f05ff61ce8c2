from meal_recommender.repository.base import RecommendationRepository
from meal_recommender.repository.memory import InMemoryRepository

__all__ = ["InMemoryRepository", "RecommendationRepository"]
