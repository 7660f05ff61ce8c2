"""
memory.py

In-memory RecommendationRepository. Backs the test-suite, the CLI's
--fixture mode and offline predictor evaluation.
"""
from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from meal_recommender.logging_utils import get_logger
from meal_recommender.repository.base import RecommendationRepository
from meal_recommender.schema import (
    Favorite,
    HealthGoal,
    Ingredient,
    LearnedPreferences,
    MemberProfile,
    NutritionProfile,
    Rating,
    Recipe,
    RecipeFilter,
    RecipeView,
    UserPreference,
)

logger = get_logger("memory")


def _nutrient(recipe: Recipe, name: str) -> Optional[float]:
    return getattr(recipe.nutrition, name, None)


def parse_timestamp(value: str) -> datetime:
    """ISO-8601 text to an aware datetime; naive values are taken as UTC."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def recipe_matches(recipe: Recipe, f: RecipeFilter) -> bool:
    """Python rendition of the candidate query, shared with the Supabase post-filter."""
    if not recipe.is_published:
        return False
    if recipe.id in f.exclude_ids:
        return False
    if f.meal_type and f.meal_type not in recipe.meal_types:
        return False
    if f.max_total_time is not None and recipe.total_time > f.max_total_time:
        return False
    if f.season and f.season not in recipe.seasons:
        return False
    if f.difficulty and recipe.difficulty != f.difficulty:
        return False
    if f.cuisines and recipe.cuisine not in f.cuisines:
        return False
    if f.min_average_rating is not None and recipe.average_rating < f.min_average_rating:
        return False
    for name, bound in f.min_nutrients.items():
        value = _nutrient(recipe, name)
        if value is None or value < bound:
            return False
    for name, bound in f.max_nutrients.items():
        value = _nutrient(recipe, name)
        if value is None or value > bound:
            return False
    if f.exclude_ingredient_categories:
        banned = {c.lower() for c in f.exclude_ingredient_categories}
        if any((ing.category or "").lower() in banned for ing in recipe.ingredients):
            return False
    return True


class InMemoryRepository(RecommendationRepository):
    def __init__(
        self,
        recipes: Iterable[Recipe] = (),
        ratings: Iterable[Rating] = (),
        favorites: Iterable[Favorite] = (),
        views: Iterable[RecipeView] = (),
        preferences: Iterable[UserPreference] = (),
        health_goals: Iterable[HealthGoal] = (),
        members: Iterable[MemberProfile] = (),
        inventory: Optional[Dict[str, List[str]]] = None,
    ) -> None:
        self.recipes: Dict[str, Recipe] = {r.id: r for r in recipes}
        self.ratings: List[Rating] = list(ratings)
        self.favorites: List[Favorite] = list(favorites)
        self.views: List[RecipeView] = list(views)
        self.preferences: Dict[str, UserPreference] = {p.member_id: p for p in preferences}
        self.health_goals: List[HealthGoal] = list(health_goals)
        self.members: Dict[str, MemberProfile] = {m.member_id: m for m in members}
        self.inventory: Dict[str, List[str]] = dict(inventory or {})
        self.learned: Dict[str, LearnedPreferences] = {}

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------
    @classmethod
    def from_json(cls, path: str | Path) -> "InMemoryRepository":
        """
        Load a fixture file shaped like:
            {"recipes": [...], "ratings": [...], "favorites": [...], "views": [...],
             "preferences": [...], "health_goals": [...], "members": [...],
             "inventory": {"<member>": ["egg", ...]}}
        Timestamps are ISO-8601 strings; naive ones are read as UTC.
        """
        raw: Dict[str, Any] = json.loads(Path(path).read_text(encoding="utf-8"))

        def ts(row: Dict[str, Any], key: str) -> Dict[str, Any]:
            if isinstance(row.get(key), str):
                row = {**row, key: parse_timestamp(row[key])}
            return row

        recipes = []
        for row in raw.get("recipes", []):
            row = ts(dict(row), "created_at")
            row["nutrition"] = NutritionProfile(**row.get("nutrition", {}))
            row["ingredients"] = [Ingredient(**ing) for ing in row.get("ingredients", [])]
            recipes.append(Recipe(**row))

        repo = cls(
            recipes=recipes,
            ratings=[Rating(**ts(r, "rated_at")) for r in raw.get("ratings", [])],
            favorites=[Favorite(**ts(r, "favorited_at")) for r in raw.get("favorites", [])],
            views=[RecipeView(**ts(r, "viewed_at")) for r in raw.get("views", [])],
            preferences=[UserPreference(**r) for r in raw.get("preferences", [])],
            health_goals=[HealthGoal(**ts(r, "created_at")) for r in raw.get("health_goals", [])],
            members=[MemberProfile(**r) for r in raw.get("members", [])],
            inventory=raw.get("inventory", {}),
        )
        logger.info(
            "Loaded fixture %s: %d recipes, %d ratings",
            path,
            len(repo.recipes),
            len(repo.ratings),
            extra={"invoking_func": "from_json", "next_step": "Serve repository calls from memory"},
        )
        return repo

    # ------------------------------------------------------------------
    # Behaviour
    # ------------------------------------------------------------------
    def get_user_ratings(self, user_id, *, min_value=None, limit=None):
        rows = [r for r in self.ratings if r.user_id == user_id and (min_value is None or r.value >= min_value)]
        rows.sort(key=lambda r: r.rated_at, reverse=True)
        return rows[:limit] if limit else rows

    def get_user_favorites(self, user_id, *, limit=None):
        rows = sorted((f for f in self.favorites if f.user_id == user_id), key=lambda f: f.favorited_at, reverse=True)
        return rows[:limit] if limit else rows

    def get_user_views(self, user_id, *, limit=None):
        rows = sorted((v for v in self.views if v.user_id == user_id), key=lambda v: v.viewed_at, reverse=True)
        return rows[:limit] if limit else rows

    def list_ratings(self, *, since=None, user_ids=None):
        wanted = set(user_ids) if user_ids is not None else None
        return [
            r for r in self.ratings
            if (since is None or r.rated_at >= since) and (wanted is None or r.user_id in wanted)
        ]

    def list_favorites(self, *, since=None, user_ids=None):
        wanted = set(user_ids) if user_ids is not None else None
        return [
            f for f in self.favorites
            if (since is None or f.favorited_at >= since) and (wanted is None or f.user_id in wanted)
        ]

    # ------------------------------------------------------------------
    # Catalog
    # ------------------------------------------------------------------
    def get_recipe(self, recipe_id):
        return self.recipes.get(recipe_id)

    def get_recipes_by_ids(self, recipe_ids):
        return {rid: self.recipes[rid] for rid in recipe_ids if rid in self.recipes}

    def list_candidate_recipes(self, recipe_filter):
        rows = [r for r in self.recipes.values() if recipe_matches(r, recipe_filter)]
        # Stable multi-key sort: apply keys from last to first
        for key in reversed(recipe_filter.order_by):
            rows.sort(key=lambda r, k=key: getattr(r, k) or 0, reverse=True)
        return rows[: recipe_filter.limit]

    def list_popular_recipes(self, limit, *, category=None, min_rating=None):
        rows = [
            r for r in self.recipes.values()
            if r.is_published
            and (category is None or r.category == category)
            and (min_rating is None or r.average_rating >= min_rating)
        ]
        rows.sort(key=lambda r: (r.average_rating, r.rating_count, r.view_count), reverse=True)
        return rows[:limit]

    # ------------------------------------------------------------------
    # User
    # ------------------------------------------------------------------
    def get_user_preference(self, user_id):
        return self.preferences.get(user_id)

    def get_active_health_goal(self, user_id):
        goals = [g for g in self.health_goals if g.member_id == user_id and g.status == "ACTIVE"]
        return max(goals, key=lambda g: g.created_at) if goals else None

    def get_member_profile(self, user_id):
        return self.members.get(user_id)

    def get_inventory(self, user_id):
        return list(self.inventory.get(user_id, []))

    def upsert_learned_preferences(self, learned):
        self.learned[learned.member_id] = learned
