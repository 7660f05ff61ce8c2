# src/meal_recommender/repository/supabase_repository.py
from __future__ import annotations

"""
Supabase implementation of RecommendationRepository.

Tables (snake_case columns):
  recipes, recipe_ingredients -> foods, recipe_ratings, recipe_favorites,
  recipe_views, user_preferences, health_goals, family_members,
  inventory_items, learned_preferences

Text columns holding JSON arrays (tags, seasons, meal_types,
preferred_cuisines, ...) are decoded here, once, into Python lists.
Filters PostgREST can evaluate are pushed down; list-membership filters
over those JSON text columns are applied in Python on an over-fetched page.
"""

import json
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from supabase import Client

from meal_recommender.errors import RepositoryError
from meal_recommender.logging_utils import get_logger
from meal_recommender.repository.base import RecommendationRepository
from meal_recommender.repository.memory import parse_timestamp, recipe_matches
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

logger = get_logger("supabase_repository")

RECIPE_SELECT = "*, recipe_ingredients(amount, unit, food_id, foods(name, category))"
PAGE_SIZE = 1000
NUTRIENT_COLUMNS = {"calories", "protein", "carbs", "fat", "fiber", "sodium"}


# ---------------------------------------------------------------------------
# Row decoding
# ---------------------------------------------------------------------------
def decode_list(value: Any) -> List[str]:
    """JSON array text, comma separated text, list or None -> list of strings."""
    if value is None or value == "":
        return []
    if isinstance(value, list):
        return [str(v) for v in value]
    if isinstance(value, str):
        text = value.strip()
        if text.startswith("["):
            try:
                parsed = json.loads(text)
            except json.JSONDecodeError:
                logger.warning(
                    "Malformed JSON list column %r",
                    text[:80],
                    extra={"invoking_func": "decode_list", "resolution": "Fix the stored value"},
                )
                return []
            return [str(v) for v in parsed] if isinstance(parsed, list) else []
        return [part.strip() for part in text.split(",") if part.strip()]
    return []


def _ts(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return parse_timestamp(str(value))


def recipe_from_row(row: Dict[str, Any]) -> Recipe:
    ingredients = []
    for ing in row.get("recipe_ingredients") or []:
        food = ing.get("foods") or {}
        ingredients.append(
            Ingredient(
                name=food.get("name") or "",
                amount=float(ing.get("amount") or 0),
                unit=ing.get("unit") or "",
                food_id=ing.get("food_id"),
                category=food.get("category"),
            )
        )
    return Recipe(
        id=row["id"],
        name=row.get("name") or "",
        category=row.get("category") or "OTHER",
        cuisine=row.get("cuisine"),
        difficulty=row.get("difficulty") or "MEDIUM",
        total_time=int(row.get("total_time") or 0),
        nutrition=NutritionProfile(
            calories=float(row.get("calories") or 0),
            protein=float(row.get("protein") or 0),
            carbs=float(row.get("carbs") or 0),
            fat=float(row.get("fat") or 0),
            fiber=row.get("fiber"),
            sodium=row.get("sodium"),
        ),
        ingredients=ingredients,
        tags=decode_list(row.get("tags")),
        meal_types=decode_list(row.get("meal_types")),
        seasons=decode_list(row.get("seasons")),
        cost_level=row.get("cost_level") or "MEDIUM",
        estimated_cost=row.get("estimated_cost"),
        average_rating=float(row.get("average_rating") or 0),
        rating_count=int(row.get("rating_count") or 0),
        view_count=int(row.get("view_count") or 0),
        status=row.get("status") or "PUBLISHED",
        is_public=bool(row.get("is_public", True)),
        created_at=_ts(row["created_at"]) if row.get("created_at") else datetime.now().astimezone(),
    )


def preference_from_row(row: Dict[str, Any]) -> UserPreference:
    weights = row.get("recommendation_weights")
    if isinstance(weights, str):
        weights = json.loads(weights) if weights else None
    return UserPreference(
        member_id=row["member_id"],
        diet_type=row.get("diet_type") or "OMNIVORE",
        is_vegetarian=bool(row.get("is_vegetarian")),
        is_vegan=bool(row.get("is_vegan")),
        is_low_carb=bool(row.get("is_low_carb")),
        is_low_fat=bool(row.get("is_low_fat")),
        is_high_protein=bool(row.get("is_high_protein")),
        is_gluten_free=bool(row.get("is_gluten_free")),
        is_dairy_free=bool(row.get("is_dairy_free")),
        allergies=decode_list(row.get("allergies")),
        preferred_cuisines=decode_list(row.get("preferred_cuisines")),
        preferred_ingredients=decode_list(row.get("preferred_ingredients")),
        avoided_ingredients=decode_list(row.get("avoided_ingredients")),
        spice_level=row.get("spice_level") or "MEDIUM",
        cooking_skill=row.get("cooking_skill"),
        max_cook_time=row.get("max_cook_time"),
        cost_level=row.get("cost_level") or "MEDIUM",
        max_estimated_cost=row.get("max_estimated_cost"),
        recommendation_weights=weights or None,
    )


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------
class SupabaseRecommendationRepository(RecommendationRepository):
    def __init__(self, client: Client) -> None:
        self.client = client

    def _execute(self, query, what: str) -> List[Dict[str, Any]]:
        try:
            return query.execute().data or []
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "Supabase query failed: %s",
                what,
                exc_info=exc,
                extra={
                    "invoking_func": "_execute",
                    "invoking_purpose": what,
                    "next_step": "Raise RepositoryError to the calling lane",
                    "resolution": "Check SUPABASE_URL / key and table permissions",
                },
            )
            raise RepositoryError(f"{what} failed") from exc

    def _paged(self, build, what: str) -> List[Dict[str, Any]]:
        rows: List[Dict[str, Any]] = []
        start = 0
        while True:
            page = self._execute(build().range(start, start + PAGE_SIZE - 1), what)
            rows.extend(page)
            if len(page) < PAGE_SIZE:
                return rows
            start += PAGE_SIZE

    # ------------------------------------------------------------------
    # Behaviour
    # ------------------------------------------------------------------
    def get_user_ratings(self, user_id, *, min_value=None, limit=None):
        q = self.client.table("recipe_ratings").select("member_id,recipe_id,rating,rated_at").eq("member_id", user_id)
        if min_value is not None:
            q = q.gte("rating", min_value)
        q = q.order("rated_at", desc=True)
        if limit:
            q = q.limit(limit)
        return [
            Rating(r["member_id"], r["recipe_id"], float(r["rating"]), _ts(r["rated_at"]))
            for r in self._execute(q, "get_user_ratings")
        ]

    def get_user_favorites(self, user_id, *, limit=None):
        q = (
            self.client.table("recipe_favorites")
            .select("member_id,recipe_id,favorited_at")
            .eq("member_id", user_id)
            .order("favorited_at", desc=True)
        )
        if limit:
            q = q.limit(limit)
        return [Favorite(r["member_id"], r["recipe_id"], _ts(r["favorited_at"])) for r in self._execute(q, "get_user_favorites")]

    def get_user_views(self, user_id, *, limit=None):
        q = (
            self.client.table("recipe_views")
            .select("member_id,recipe_id,viewed_at")
            .eq("member_id", user_id)
            .order("viewed_at", desc=True)
        )
        if limit:
            q = q.limit(limit)
        return [RecipeView(r["member_id"], r["recipe_id"], _ts(r["viewed_at"])) for r in self._execute(q, "get_user_views")]

    def list_ratings(self, *, since=None, user_ids=None):
        def build():
            q = self.client.table("recipe_ratings").select("member_id,recipe_id,rating,rated_at")
            if since is not None:
                q = q.gte("rated_at", since.isoformat())
            if user_ids is not None:
                q = q.in_("member_id", list(user_ids))
            return q

        return [
            Rating(r["member_id"], r["recipe_id"], float(r["rating"]), _ts(r["rated_at"]))
            for r in self._paged(build, "list_ratings")
        ]

    def list_favorites(self, *, since=None, user_ids=None):
        def build():
            q = self.client.table("recipe_favorites").select("member_id,recipe_id,favorited_at")
            if since is not None:
                q = q.gte("favorited_at", since.isoformat())
            if user_ids is not None:
                q = q.in_("member_id", list(user_ids))
            return q

        return [Favorite(r["member_id"], r["recipe_id"], _ts(r["favorited_at"])) for r in self._paged(build, "list_favorites")]

    # ------------------------------------------------------------------
    # Catalog
    # ------------------------------------------------------------------
    def get_recipe(self, recipe_id):
        rows = self._execute(
            self.client.table("recipes").select(RECIPE_SELECT).eq("id", recipe_id).limit(1),
            "get_recipe",
        )
        return recipe_from_row(rows[0]) if rows else None

    def get_recipes_by_ids(self, recipe_ids):
        ids = list(dict.fromkeys(recipe_ids))
        if not ids:
            return {}
        out: Dict[str, Recipe] = {}
        for i in range(0, len(ids), 200):
            chunk = ids[i : i + 200]
            for row in self._execute(self.client.table("recipes").select(RECIPE_SELECT).in_("id", chunk), "get_recipes_by_ids"):
                recipe = recipe_from_row(row)
                out[recipe.id] = recipe
        return out

    def list_candidate_recipes(self, recipe_filter: RecipeFilter):
        f = recipe_filter
        q = (
            self.client.table("recipes")
            .select(RECIPE_SELECT)
            .eq("status", "PUBLISHED")
            .eq("is_public", True)
            .is_("deleted_at", "null")
        )
        if f.max_total_time is not None:
            q = q.lte("total_time", f.max_total_time)
        if f.difficulty:
            q = q.eq("difficulty", f.difficulty)
        if f.cuisines:
            q = q.in_("cuisine", f.cuisines)
        if f.exclude_ids:
            q = q.not_.in_("id", f.exclude_ids)
        if f.min_average_rating is not None:
            q = q.gte("average_rating", f.min_average_rating)
        for name, bound in f.min_nutrients.items():
            if name in NUTRIENT_COLUMNS:
                q = q.gte(name, bound)
        for name, bound in f.max_nutrients.items():
            if name in NUTRIENT_COLUMNS:
                q = q.lte(name, bound)
        for column in f.order_by:
            q = q.order(column, desc=True)

        # JSON text columns and ingredient categories are filtered after decoding
        q = q.limit(max(f.limit * 3, f.limit))
        recipes = [recipe_from_row(row) for row in self._execute(q, "list_candidate_recipes")]
        matched = [r for r in recipes if recipe_matches(r, f)]
        logger.debug(
            "Candidate query returned %d rows, %d after post-filter",
            len(recipes),
            len(matched),
            extra={"invoking_func": "list_candidate_recipes"},
        )
        return matched[: f.limit]

    def list_popular_recipes(self, limit, *, category=None, min_rating=None):
        q = self.client.table("recipes").select(RECIPE_SELECT).eq("status", "PUBLISHED").eq("is_public", True)
        if category:
            q = q.eq("category", category)
        if min_rating is not None:
            q = q.gte("average_rating", min_rating)
        q = (
            q.order("average_rating", desc=True)
            .order("rating_count", desc=True)
            .order("view_count", desc=True)
            .limit(limit)
        )
        return [recipe_from_row(row) for row in self._execute(q, "list_popular_recipes")]

    # ------------------------------------------------------------------
    # User
    # ------------------------------------------------------------------
    def get_user_preference(self, user_id):
        rows = self._execute(
            self.client.table("user_preferences").select("*").eq("member_id", user_id).limit(1),
            "get_user_preference",
        )
        return preference_from_row(rows[0]) if rows else None

    def get_active_health_goal(self, user_id):
        rows = self._execute(
            self.client.table("health_goals")
            .select("*")
            .eq("member_id", user_id)
            .eq("status", "ACTIVE")
            .order("created_at", desc=True)
            .limit(1),
            "get_active_health_goal",
        )
        if not rows:
            return None
        row = rows[0]
        return HealthGoal(
            member_id=row["member_id"],
            goal_type=row["goal_type"],
            status=row.get("status") or "ACTIVE",
            target_weight=row.get("target_weight"),
            activity_level=row.get("activity_level"),
            created_at=_ts(row["created_at"]),
        )

    def get_member_profile(self, user_id):
        rows = self._execute(
            self.client.table("family_members").select("id,age,gender,region").eq("id", user_id).limit(1),
            "get_member_profile",
        )
        if not rows:
            return None
        row = rows[0]
        return MemberProfile(member_id=row["id"], age=row.get("age"), gender=row.get("gender"), region=row.get("region"))

    def get_inventory(self, user_id):
        rows = self._execute(
            self.client.table("inventory_items").select("foods(name)").eq("member_id", user_id).gt("quantity", 0),
            "get_inventory",
        )
        return [(row.get("foods") or {}).get("name") for row in rows if (row.get("foods") or {}).get("name")]

    def upsert_learned_preferences(self, learned: LearnedPreferences) -> None:
        self._execute(
            self.client.table("learned_preferences").upsert(learned.to_payload(), on_conflict="member_id"),
            "upsert_learned_preferences",
        )
        logger.info(
            "Upserted learned preferences for member %s (confidence=%.2f)",
            learned.member_id,
            learned.confidence,
            extra={"invoking_func": "upsert_learned_preferences", "next_step": "Return to engine"},
        )
