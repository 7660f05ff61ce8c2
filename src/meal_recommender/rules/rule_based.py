"""
rule_based.py

Purpose:
    Deterministic rule lane. Every candidate gets points from five fixed
    rules; nothing is learned.

    inventory   0-30  share of the recipe's ingredients already on hand
    price       0-20  tiered against the member's cost level; over an explicit budget -> 0
    nutrition   0-30  15 baseline plus goal-specific bonuses
    preference  0-15  cuisine / ingredient overlap, avoided penalty, diet bonus
    seasonal    0-5   5 in season, 3 no declared season, 1 out of season, 2 no season asked

Hard gates (recipe is dropped, not penalised):
    - member diet: vegetarian / vegan (meat-category ingredients),
      low-carb (carbs > 20), low-fat (fat > 15), high-protein (protein < 20)
    - request dietary_restrictions (same vocabulary, plus gluten_free / dairy_free)
    - request excluded_ingredients
"""
from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Set

from meal_recommender.logging_utils import get_logger
from meal_recommender.repository.base import RecommendationRepository
from meal_recommender.schema import (
    MEAT_CATEGORIES,
    HealthGoal,
    Recipe,
    RecipeFilter,
    Recommendation,
    RecommendationContext,
    RecommendationMetadata,
    UserPreference,
)

logger = get_logger("rule_based")

INVENTORY_MAX = 30
PRICE_MAX = 20
NUTRITION_MAX = 30
PREFERENCE_MAX = 15
SEASONAL_MAX = 5

COST_THRESHOLDS = {"LOW": 20.0, "MEDIUM": 50.0, "HIGH": 100.0}

REASON_TAGS = {
    "inventory_match": "ingredients_on_hand",
    "price_match": "budget_friendly",
    "nutrition_match": "nutrition_balanced",
    "preference_match": "matches_taste",
    "seasonal_match": "in_season",
}


def _categories(recipe: Recipe) -> Set[str]:
    return {(ing.category or "").lower() for ing in recipe.ingredients}


def _names(values: Iterable[str]) -> Set[str]:
    return {v.strip().lower() for v in values if v}


def matches_dietary_type(recipe: Recipe, preference: Optional[UserPreference]) -> bool:
    """Member diet gate."""
    if preference is None:
        return True
    if preference.is_meat_free and _categories(recipe) & MEAT_CATEGORIES:
        return False
    n = recipe.nutrition
    if preference.is_low_carb and n.carbs > 20:
        return False
    if preference.is_low_fat and n.fat > 15:
        return False
    if preference.is_high_protein and n.protein < 20:
        return False
    return True


def matches_restrictions(recipe: Recipe, restrictions: Iterable[str]) -> bool:
    """Request-level dietary restrictions, e.g. ["vegetarian", "gluten_free"]."""
    cats = _categories(recipe)
    n = recipe.nutrition
    for raw in restrictions:
        tag = raw.strip().lower().replace("-", "_")
        if tag in ("vegetarian", "vegan") and cats & MEAT_CATEGORIES:
            return False
        if tag == "vegan" and cats & {"dairy", "egg", "eggs", "honey"}:
            return False
        if tag == "gluten_free" and "gluten" in cats:
            return False
        if tag == "dairy_free" and "dairy" in cats:
            return False
        if tag == "low_carb" and n.carbs > 20:
            return False
        if tag == "low_fat" and n.fat > 15:
            return False
        if tag == "high_protein" and n.protein < 20:
            return False
    return True


class RuleBasedRecommender:
    def __init__(self, repository: RecommendationRepository) -> None:
        self.repository = repository

    def get_recommendations(self, context: RecommendationContext, limit: int = 10) -> List[Recommendation]:
        candidates = self.repository.list_candidate_recipes(
            RecipeFilter(
                meal_type=context.meal_type,
                max_total_time=context.max_cook_time,
                season=context.season,
                exclude_ids=list(context.exclude_recipe_ids),
                limit=limit * 3,
            )
        )
        preference = self.repository.get_user_preference(context.user_id)
        goal = self.repository.get_active_health_goal(context.user_id)
        inventory = _names(self.repository.get_inventory(context.user_id))
        excluded = _names(context.excluded_ingredients)

        scored = []
        gated = 0
        for recipe in candidates:
            if (
                not matches_dietary_type(recipe, preference)
                or not matches_restrictions(recipe, context.dietary_restrictions)
                or (excluded and _names(recipe.ingredient_names) & excluded)
            ):
                gated += 1
                continue
            scored.append(self.score_recipe(recipe, context, preference, goal, inventory))

        scored.sort(key=lambda r: -r.score)
        logger.debug(
            "Rule lane: %d candidates, %d gated out",
            len(candidates),
            gated,
            extra={"invoking_func": "get_recommendations", "next_step": "Return top candidates to engine"},
        )
        return scored[:limit]

    def score_recipe(
        self,
        recipe: Recipe,
        context: RecommendationContext,
        preference: Optional[UserPreference],
        goal: Optional[HealthGoal],
        inventory: Set[str],
    ) -> Recommendation:
        parts: Dict[str, float] = {
            "inventory_match": self.inventory_score(recipe, inventory),
            "price_match": self.price_score(recipe, context.budget_limit, preference),
            "nutrition_match": self.nutrition_score(recipe, goal),
            "preference_match": self.preference_score(recipe, preference),
            "seasonal_match": self.seasonal_score(recipe, context.season),
        }
        maxima = {
            "inventory_match": INVENTORY_MAX,
            "price_match": PRICE_MAX,
            "nutrition_match": NUTRITION_MAX,
            "preference_match": PREFERENCE_MAX,
            "seasonal_match": SEASONAL_MAX,
        }
        metadata = RecommendationMetadata(**{k: v / maxima[k] for k, v in parts.items()})
        return Recommendation(
            recipe_id=recipe.id,
            score=sum(parts.values()),
            reasons=self.reasons(metadata),
            metadata=metadata,
        )

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------
    @staticmethod
    def inventory_score(recipe: Recipe, inventory: Set[str]) -> int:
        names = [n.strip().lower() for n in recipe.ingredient_names]
        if not names:
            return 0
        have = sum(1 for n in names if n in inventory)
        return round(have / len(names) * INVENTORY_MAX)

    @staticmethod
    def price_score(recipe: Recipe, budget_limit: Optional[float], preference: Optional[UserPreference]) -> int:
        cost = recipe.estimated_cost
        if not cost:
            return 10
        if budget_limit and cost > budget_limit:
            return 0
        level = (preference.cost_level if preference else None) or "MEDIUM"
        threshold = COST_THRESHOLDS.get(level, COST_THRESHOLDS["MEDIUM"])
        if cost <= threshold * 0.5:
            return 20
        if cost <= threshold:
            return 15
        if cost <= threshold * 1.5:
            return 10
        return 5

    @staticmethod
    def nutrition_score(recipe: Recipe, goal: Optional[HealthGoal]) -> int:
        score = 15
        if goal is None:
            return score
        n = recipe.nutrition
        if goal.goal_type == "LOSE_WEIGHT":
            if n.calories <= 400:
                score += 10
            if n.carbs <= n.protein * 2:
                score += 5
        elif goal.goal_type == "GAIN_MUSCLE":
            if n.protein >= 25:
                score += 10
            if n.calories >= 500:
                score += 5
        elif goal.goal_type == "MAINTAIN":
            if 300 <= n.calories <= 600:
                score += 10
        elif goal.goal_type == "IMPROVE_HEALTH":
            if n.fiber is not None and n.fiber >= 5:
                score += 8
            if n.sodium is not None and n.sodium <= 600:
                score += 7
        return min(score, NUTRITION_MAX)

    @staticmethod
    def preference_score(recipe: Recipe, preference: Optional[UserPreference]) -> int:
        score = 7
        if preference is None:
            return score
        if recipe.cuisine and recipe.cuisine in preference.preferred_cuisines:
            score += 3

        names = _names(recipe.ingredient_names)
        liked = len(names & _names(preference.preferred_ingredients))
        if liked:
            score += min(liked * 2, 3)
        if names & _names(preference.avoided_ingredients):
            score = max(score - 5, 0)
        if matches_dietary_type(recipe, preference):
            score += 2
        return min(score, PREFERENCE_MAX)

    @staticmethod
    def seasonal_score(recipe: Recipe, season: Optional[str]) -> int:
        if not season:
            return 2
        if season in recipe.seasons:
            return 5
        if not recipe.seasons:
            return 3
        return 1

    @staticmethod
    def reasons(metadata: RecommendationMetadata) -> List[str]:
        tags = [tag for key, tag in REASON_TAGS.items() if getattr(metadata, key) > 0.7]
        return tags or ["basic_recommendation"]
