"""Repository port: every read and write the recommendation pipeline needs from storage."""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from meal_recommender.schema import (
    Favorite,
    HealthGoal,
    LearnedPreferences,
    MemberProfile,
    Rating,
    Recipe,
    RecipeFilter,
    RecipeView,
    UserPreference,
)


class RecommendationRepository(ABC):
    """
    Narrow storage contract. Implementations decode list-valued columns
    (tags, seasons, cuisines, allergies) once, here at the boundary.
    Methods are synchronous; the engine moves them off the event loop.
    """

    # -- behaviour ---------------------------------------------------------
    @abstractmethod
    def get_user_ratings(self, user_id: str, *, min_value: Optional[float] = None, limit: Optional[int] = None) -> List[Rating]:
        """Ratings of one user, newest first."""

    @abstractmethod
    def get_user_favorites(self, user_id: str, *, limit: Optional[int] = None) -> List[Favorite]:
        """Favorites of one user, newest first."""

    @abstractmethod
    def get_user_views(self, user_id: str, *, limit: Optional[int] = None) -> List[RecipeView]:
        """Views of one user, newest first."""

    @abstractmethod
    def list_ratings(self, *, since: Optional[datetime] = None, user_ids: Optional[Iterable[str]] = None) -> List[Rating]:
        """All explicit ratings, optionally restricted by recency or users."""

    @abstractmethod
    def list_favorites(self, *, since: Optional[datetime] = None, user_ids: Optional[Iterable[str]] = None) -> List[Favorite]:
        """All favorites, optionally restricted by recency or users."""

    # -- catalog -----------------------------------------------------------
    @abstractmethod
    def get_recipe(self, recipe_id: str) -> Optional[Recipe]:
        ...

    @abstractmethod
    def get_recipes_by_ids(self, recipe_ids: Iterable[str]) -> Dict[str, Recipe]:
        ...

    @abstractmethod
    def list_candidate_recipes(self, recipe_filter: RecipeFilter) -> List[Recipe]:
        """Published, public recipes matching the filter."""

    @abstractmethod
    def list_popular_recipes(
        self,
        limit: int,
        *,
        category: Optional[str] = None,
        min_rating: Optional[float] = None,
    ) -> List[Recipe]:
        """Published recipes ordered by (average_rating, rating_count, view_count) descending."""

    # -- user --------------------------------------------------------------
    @abstractmethod
    def get_user_preference(self, user_id: str) -> Optional[UserPreference]:
        ...

    @abstractmethod
    def get_active_health_goal(self, user_id: str) -> Optional[HealthGoal]:
        """Most recently created ACTIVE goal."""

    @abstractmethod
    def get_member_profile(self, user_id: str) -> Optional[MemberProfile]:
        ...

    @abstractmethod
    def get_inventory(self, user_id: str) -> List[str]:
        """Ingredient names the member currently has on hand."""

    @abstractmethod
    def upsert_learned_preferences(self, learned: LearnedPreferences) -> None:
        ...
