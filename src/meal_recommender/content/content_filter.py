# src/meal_recommender/content/content_filter.py
from __future__ import annotations

"""
content_filter.py

Purpose:
    Content lane: score recipes against what a member has told us
    (stored preferences, health goal) and what we can learn from what they
    liked (4+ star ratings and favorites).

    Also serves recipe-to-recipe similarity for "more like this".

Scoring (0..100):
    ingredient match 40%  preferred overlap x 50 - avoided overlap x 100, floored at 0
    nutrition match  25%  50 baseline, penalties for breaking goal bounds
    cooking match    20%  30 baseline, time budget fit + difficulty distance
    category match   15%  100 preferred / 30 other / 50 when no preference

Recipe similarity:
    0.7 x Jaccard(ingredient sets) + 0.3 x (1 - Euclidean distance of
    nutrition normalised by 1000 kcal / 50 g protein / 100 g carbs / 50 g fat)
"""

import math
from collections import Counter
from dataclasses import dataclass, field, replace
from typing import List, Optional

from meal_recommender.cache import TTLCache
from meal_recommender.config import RecommenderSettings, get_settings
from meal_recommender.logging_utils import get_logger
from meal_recommender.repository.base import RecommendationRepository
from meal_recommender.schema import (
    DIFFICULTY_ORDER,
    HealthGoal,
    Recipe,
    RecipeFilter,
    Recommendation,
    RecommendationContext,
    RecommendationMetadata,
    UserPreference,
    clamp,
)

logger = get_logger("content_filter")

LEARNING_SAMPLE = 20
TOP_INGREDIENTS = 15
TOP_CATEGORIES = 5
SIMILAR_POOL_MIN = 50

SPICE_TO_DIFFICULTY = {"NONE": "EASY", "LOW": "EASY", "MEDIUM": "MEDIUM", "HIGH": "MEDIUM", "EXTREME": "HARD"}
SKILL_TO_DIFFICULTY = {"beginner": "EASY", "intermediate": "MEDIUM", "advanced": "HARD", "expert": "HARD"}

# preferred cost level -> recipe cost level -> match (0..100)
COST_MATCH = {
    "LOW": {"LOW": 100, "MEDIUM": 60, "HIGH": 20},
    "MEDIUM": {"LOW": 80, "MEDIUM": 100, "HIGH": 60},
    "HIGH": {"LOW": 40, "MEDIUM": 70, "HIGH": 100},
}

NUTRITION_CAPS = {"calories": 1000.0, "protein": 50.0, "carbs": 100.0, "fat": 50.0}


@dataclass
class NutritionTargets:
    max_calories: Optional[float] = None
    min_calories: Optional[float] = None
    min_protein: Optional[float] = None
    max_carbs: Optional[float] = None
    max_fat: Optional[float] = None


@dataclass
class ContentProfile:
    member_id: str
    preferred_ingredients: List[str] = field(default_factory=list)
    avoided_ingredients: List[str] = field(default_factory=list)
    preferred_categories: List[str] = field(default_factory=list)
    nutrition: NutritionTargets = field(default_factory=NutritionTargets)
    max_time: Optional[int] = None
    preferred_difficulty: Optional[str] = None
    cost_preference: str = "MEDIUM"


def nutrition_targets(goal: Optional[HealthGoal], preference: Optional[UserPreference]) -> NutritionTargets:
    """Goal-derived bounds, tightened by the member's explicit diet flags."""
    targets = NutritionTargets()
    goal_type = goal.goal_type if goal else None
    if goal_type == "LOSE_WEIGHT":
        targets.max_calories, targets.max_carbs = 400, 30
    elif goal_type == "GAIN_MUSCLE":
        targets.min_protein, targets.min_calories = 25, 500
    elif goal_type == "MAINTAIN":
        targets.max_calories, targets.min_protein = 600, 15
    elif goal_type == "IMPROVE_HEALTH":
        targets.max_fat, targets.max_calories = 20, 500

    if preference is not None:
        if preference.is_low_carb:
            targets.max_carbs = min(15, targets.max_carbs) if targets.max_carbs is not None else 15
        if preference.is_low_fat:
            targets.max_fat = min(10, targets.max_fat) if targets.max_fat is not None else 10
        if preference.is_high_protein:
            targets.min_protein = max(20, targets.min_protein) if targets.min_protein is not None else 20
    return targets


def _norm(names) -> List[str]:
    return [n.strip().lower() for n in names if n and n.strip()]


def recipe_similarity(a: Recipe, b: Recipe) -> float:
    """Ingredient Jaccard blended with nutrition closeness, in [0, 1]."""
    set_a, set_b = set(_norm(a.ingredient_names)), set(_norm(b.ingredient_names))
    union = set_a | set_b
    jaccard = len(set_a & set_b) / len(union) if union else 0.0

    distance = math.sqrt(
        sum(
            (min(getattr(a.nutrition, k) / cap, 1.0) - min(getattr(b.nutrition, k) / cap, 1.0)) ** 2
            for k, cap in NUTRITION_CAPS.items()
        )
    )
    return jaccard * 0.7 + max(0.0, 1.0 - distance) * 0.3


class ContentFilter:
    def __init__(
        self,
        repository: RecommendationRepository,
        *,
        settings: Optional[RecommenderSettings] = None,
        profile_cache: Optional[TTLCache] = None,
    ) -> None:
        self.repository = repository
        self.settings = settings or get_settings()
        self.profile_cache: TTLCache = profile_cache or TTLCache(self.settings.profile_ttl_seconds, max_size=5_000)

    # ------------------------------------------------------------------
    # Public APIs
    # ------------------------------------------------------------------
    def get_recommendations(self, context: RecommendationContext, limit: int = 10) -> List[Recommendation]:
        profile = self.get_profile(context.user_id)
        if context.excluded_ingredients:
            profile = replace(profile, avoided_ingredients=profile.avoided_ingredients + _norm(context.excluded_ingredients))

        candidates = self.repository.list_candidate_recipes(
            RecipeFilter(
                meal_type=context.meal_type,
                max_total_time=context.max_cook_time,
                exclude_ids=list(context.exclude_recipe_ids),
                limit=limit * 3,
            )
        )

        recommendations = []
        for recipe in candidates:
            score = self.score(recipe, profile, context)
            recommendations.append(
                Recommendation(
                    recipe_id=recipe.id,
                    score=score,
                    reasons=self._reasons(recipe, profile, score),
                    explanation=self._explanation(recipe, profile),
                    metadata=RecommendationMetadata(
                        price_match=self.price_match(recipe, profile),
                        nutrition_match=self.nutrition_score(recipe, profile) / 100,
                        preference_match=score / 100,
                    ),
                )
            )
        recommendations.sort(key=lambda r: -r.score)

        logger.debug(
            "Content lane scored %d candidates for %s",
            len(recommendations),
            context.user_id,
            extra={"invoking_func": "get_recommendations", "next_step": "Return top candidates to engine"},
        )
        return recommendations[:limit]

    def similar_recipes(self, target: Recipe, limit: int = 5) -> List[Recommendation]:
        pool = self.repository.list_candidate_recipes(RecipeFilter(exclude_ids=[target.id], limit=max(limit * 10, SIMILAR_POOL_MIN)))
        out = []
        for recipe in pool:
            similarity = recipe_similarity(target, recipe)
            out.append(
                Recommendation(
                    recipe_id=recipe.id,
                    score=similarity * 100,
                    reasons=["similar_recipe"],
                    explanation=f"Shares ingredients and nutrition with {target.name}.",
                    metadata=RecommendationMetadata(preference_match=similarity),
                )
            )
        out.sort(key=lambda r: -r.score)
        return out[:limit]

    def get_profile(self, user_id: str) -> ContentProfile:
        cached = self.profile_cache.get(user_id)
        if cached is not None:
            return cached
        profile = self.build_profile(user_id)
        self.profile_cache.set(user_id, profile)
        return profile

    def invalidate_profile(self, user_id: str) -> None:
        self.profile_cache.invalidate(user_id)

    def build_profile(self, user_id: str) -> ContentProfile:
        preference = self.repository.get_user_preference(user_id)
        goal = self.repository.get_active_health_goal(user_id)
        liked_ids = [r.recipe_id for r in self.repository.get_user_ratings(user_id, min_value=4, limit=LEARNING_SAMPLE)]
        liked_ids += [f.recipe_id for f in self.repository.get_user_favorites(user_id, limit=LEARNING_SAMPLE)]
        liked = self.repository.get_recipes_by_ids(liked_ids)

        # Count per occurrence: a recipe both rated and favorited counts twice
        ingredients: Counter = Counter()
        categories: Counter = Counter()
        for rid in liked_ids:
            recipe = liked.get(rid)
            if recipe is None:
                continue
            ingredients.update(_norm(recipe.ingredient_names))
            if recipe.category:
                categories[recipe.category] += 1

        explicit = _norm(preference.preferred_ingredients) if preference else []
        learned = [name for name, _ in ingredients.most_common(TOP_INGREDIENTS)]

        difficulty = None
        if preference is not None:
            if preference.cooking_skill:
                difficulty = SKILL_TO_DIFFICULTY.get(preference.cooking_skill.lower())
            elif preference.spice_level:
                difficulty = SPICE_TO_DIFFICULTY.get(preference.spice_level.upper(), "MEDIUM")

        return ContentProfile(
            member_id=user_id,
            preferred_ingredients=list(dict.fromkeys(explicit + learned)),
            avoided_ingredients=_norm(preference.avoided_ingredients) if preference else [],
            preferred_categories=[name for name, _ in categories.most_common(TOP_CATEGORIES)],
            nutrition=nutrition_targets(goal, preference),
            max_time=preference.max_cook_time if preference else None,
            preferred_difficulty=difficulty,
            cost_preference=(preference.cost_level if preference else None) or "MEDIUM",
        )

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------
    def score(self, recipe: Recipe, profile: ContentProfile, context: RecommendationContext) -> int:
        total = (
            self.ingredient_score(recipe, profile) * 0.4
            + self.nutrition_score(recipe, profile) * 0.25
            + self.cooking_score(recipe, profile, context) * 0.2
            + self.category_score(recipe, profile) * 0.15
        )
        return round(total)

    @staticmethod
    def ingredient_score(recipe: Recipe, profile: ContentProfile) -> float:
        names = _norm(recipe.ingredient_names)
        if not names:
            return 0.0
        preferred = set(profile.preferred_ingredients)
        avoided = set(profile.avoided_ingredients)
        liked = sum(1 for n in names if n in preferred)
        disliked = sum(1 for n in names if n in avoided)
        return max(0.0, liked / len(names) * 50 - disliked / len(names) * 100)

    @staticmethod
    def nutrition_score(recipe: Recipe, profile: ContentProfile) -> float:
        n, t = recipe.nutrition, profile.nutrition
        score = 50.0
        if t.max_calories is not None and n.calories > t.max_calories:
            score -= 30
        if t.min_calories is not None and n.calories < t.min_calories:
            score -= 30
        if t.min_protein is not None and n.protein < t.min_protein:
            score -= 20
        if t.max_carbs is not None and n.carbs > t.max_carbs:
            score -= 15
        if t.max_fat is not None and n.fat > t.max_fat:
            score -= 15
        return clamp(score, 0.0, 100.0)

    @staticmethod
    def cooking_score(recipe: Recipe, profile: ContentProfile, context: RecommendationContext) -> float:
        score = 30.0
        if profile.max_time:
            if recipe.total_time <= profile.max_time:
                score += 30
            elif recipe.total_time <= profile.max_time * 1.5:
                score += 15
            else:
                score -= 20

        if profile.preferred_difficulty in DIFFICULTY_ORDER and recipe.difficulty in DIFFICULTY_ORDER:
            gap = abs(DIFFICULTY_ORDER.index(profile.preferred_difficulty) - DIFFICULTY_ORDER.index(recipe.difficulty))
            if gap == 0:
                score += 20
            elif gap == 1:
                score += 10

        if context.max_cook_time and recipe.total_time <= context.max_cook_time:
            score += 20
        return clamp(score, 0.0, 100.0)

    @staticmethod
    def category_score(recipe: Recipe, profile: ContentProfile) -> float:
        if not profile.preferred_categories:
            return 50.0
        return 100.0 if recipe.category in profile.preferred_categories else 30.0

    @staticmethod
    def price_match(recipe: Recipe, profile: ContentProfile) -> float:
        table = COST_MATCH.get(profile.cost_preference, COST_MATCH["MEDIUM"])
        return table.get(recipe.cost_level, 60) / 100

    # ------------------------------------------------------------------
    # Explanations
    # ------------------------------------------------------------------
    @staticmethod
    def _liked_ingredients(recipe: Recipe, profile: ContentProfile) -> List[str]:
        preferred = set(profile.preferred_ingredients)
        return [n for n in _norm(recipe.ingredient_names) if n in preferred]

    def _reasons(self, recipe: Recipe, profile: ContentProfile, score: float) -> List[str]:
        reasons = []
        if score >= 80:
            reasons.append("strong_match")
        elif score >= 60:
            reasons.append("good_match")
        liked = self._liked_ingredients(recipe, profile)
        if liked:
            reasons.append(f"liked_ingredients_{len(liked)}")
        if recipe.category in profile.preferred_categories:
            reasons.append("preferred_category")
        return reasons

    def _explanation(self, recipe: Recipe, profile: ContentProfile) -> str:
        parts = []
        liked = self._liked_ingredients(recipe, profile)
        if liked:
            parts.append(f"uses {', '.join(liked[:3])}, which you like")
        if recipe.total_time <= 30:
            parts.append("ready in 30 minutes or less")
        if recipe.difficulty == "EASY":
            parts.append("beginner-friendly")
        if not parts:
            return "Recommended from your taste profile."
        text = "; ".join(parts)
        return text[0].upper() + text[1:] + "."

