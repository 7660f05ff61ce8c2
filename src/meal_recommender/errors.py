"""Exception hierarchy for the recommendation pipeline."""
from __future__ import annotations


class RecommendationError(Exception):
    """Base class for every error raised by meal_recommender."""


class EmptyMatrixError(RecommendationError):
    """No ratings satisfied the matrix criteria; there is no collaborative signal."""


class InsufficientNeighborsError(RecommendationError):
    """Too few neighbors contributed to a prediction and fallback is disabled."""


class RecipeNotFoundError(RecommendationError):
    def __init__(self, recipe_id: str) -> None:
        super().__init__(f"Recipe not found: {recipe_id}")
        self.recipe_id = recipe_id


class RepositoryError(RecommendationError):
    """A storage call failed (network, PostgREST error, malformed row)."""
