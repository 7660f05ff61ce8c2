"""
cold_start.py

Purpose:
    Recommend recipes to members with too little history for the
    collaborative and content lanes.

Design:
    - A registry of tagged strategies (name, priority, applicability
      predicate, generator). Selection is filter -> sort by priority ->
      run the best; if it returns fewer than `limit`, the runner-up is run
      too and merged keeping the first occurrence of each recipe. A list
      still short of `limit` is topped up with popularity_based.
    - Built-ins: health_goal_based (6), dietary_based (5), cooking_based (4),
      demographic_based (3), popularity_based (1, always applicable).
    - Scores are synthetic and deterministic: each strategy owns a band
      (e.g. 85-95) and candidates decay linearly through it by rank.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from meal_recommender.logging_utils import get_logger
from meal_recommender.repository.base import RecommendationRepository
from meal_recommender.schema import (
    MEAT_CATEGORIES,
    HealthGoal,
    MemberProfile,
    Recipe,
    RecipeFilter,
    Recommendation,
    RecommendationContext,
    RecommendationMetadata,
    UserPreference,
)

logger = get_logger("cold_start")

STRATEGY_POOL_SIZE = 20

# Cold-start when ALL of these are below threshold
MIN_RATINGS = 3
MIN_FAVORITES = 2
MIN_VIEWS = 10

POPULARITY = "popularity_based"

SKILL_TO_DIFFICULTY = {"beginner": "EASY", "intermediate": "MEDIUM", "advanced": "HARD", "expert": "HARD"}


@dataclass
class ColdStartProfile:
    member_id: str
    member: Optional[MemberProfile] = None
    preference: Optional[UserPreference] = None
    health_goal: Optional[HealthGoal] = None


Generator = Callable[[ColdStartProfile, RecommendationContext], List[Recommendation]]


@dataclass
class ColdStartStrategy:
    name: str
    description: str
    priority: int
    applicable: Callable[[ColdStartProfile], bool]
    generate: Generator


@dataclass
class _Band:
    base: float
    span: float
    reasons: List[str]
    explanation: str
    nutrition_match: float
    preference_match: float


def is_cold_start_counts(ratings: int, favorites: int, views: int) -> bool:
    return ratings < MIN_RATINGS and favorites < MIN_FAVORITES and views < MIN_VIEWS


class ColdStartHandler:
    def __init__(self, repository: RecommendationRepository) -> None:
        self.repository = repository
        self._strategies: Dict[str, ColdStartStrategy] = {}
        for strategy in self._builtin_strategies():
            self.add_strategy(strategy)

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------
    def add_strategy(self, strategy: ColdStartStrategy) -> None:
        self._strategies[strategy.name] = strategy

    def remove_strategy(self, name: str) -> None:
        self._strategies.pop(name, None)

    def available_strategies(self) -> List[ColdStartStrategy]:
        return sorted(self._strategies.values(), key=lambda s: -s.priority)

    # ------------------------------------------------------------------
    # Public APIs
    # ------------------------------------------------------------------
    def is_cold_start(self, user_id: str) -> bool:
        return is_cold_start_counts(
            len(self.repository.get_user_ratings(user_id, limit=MIN_RATINGS)),
            len(self.repository.get_user_favorites(user_id, limit=MIN_FAVORITES)),
            len(self.repository.get_user_views(user_id, limit=MIN_VIEWS)),
        )

    def build_profile(self, user_id: str) -> ColdStartProfile:
        return ColdStartProfile(
            member_id=user_id,
            member=self.repository.get_member_profile(user_id),
            preference=self.repository.get_user_preference(user_id),
            health_goal=self.repository.get_active_health_goal(user_id),
        )

    def recommend(self, context: RecommendationContext, limit: int = 10) -> List[Recommendation]:
        profile = self.build_profile(context.user_id)
        applicable = [s for s in self.available_strategies() if s.applicable(profile)]
        if not applicable:
            # popularity_based was removed from the registry; use it anyway
            return self._popularity(profile, context)[:limit]

        primary = applicable[0]
        results = primary.generate(profile, context)
        used = [primary.name]
        if len(results) < limit and len(applicable) > 1:
            secondary = applicable[1]
            results = self._merge(results, secondary.generate(profile, context))
            used.append(secondary.name)
        if len(results) < limit and POPULARITY not in used:
            results = self._merge(results, self._popularity(profile, context))
            used.append(POPULARITY)

        logger.info(
            "Cold start for %s via %s: %d candidates",
            context.user_id,
            "+".join(used),
            len(results),
            extra={
                "invoking_func": "recommend",
                "invoking_purpose": "Serve members without enough history",
                "next_step": "Rank cold-start candidates",
            },
        )
        return results[:limit]

    def popular(self, context: RecommendationContext, limit: int = 10) -> List[Recommendation]:
        """Popularity strategy on its own; the last resort for an empty cold-start answer."""
        return self._popularity(self.build_profile(context.user_id), context)[:limit]

    @staticmethod
    def _merge(primary: List[Recommendation], secondary: List[Recommendation]) -> List[Recommendation]:
        seen = {r.recipe_id for r in primary}
        merged = list(primary)
        for rec in secondary:
            if rec.recipe_id not in seen:
                seen.add(rec.recipe_id)
                merged.append(rec)
        merged.sort(key=lambda r: -r.score)
        return merged

    # ------------------------------------------------------------------
    # Built-in strategies
    # ------------------------------------------------------------------
    def _builtin_strategies(self) -> List[ColdStartStrategy]:
        return [
            ColdStartStrategy(
                "health_goal_based",
                "Recipes that fit the member's active health goal",
                6,
                lambda p: p.health_goal is not None,
                self._health_goal,
            ),
            ColdStartStrategy(
                "dietary_based",
                "Recipes compatible with the member's diet type and restrictions",
                5,
                lambda p: p.preference is not None,
                self._dietary,
            ),
            ColdStartStrategy(
                "cooking_based",
                "Recipes matching cooking skill, time budget and cuisines",
                4,
                lambda p: p.preference is not None,
                self._cooking,
            ),
            ColdStartStrategy(
                "demographic_based",
                "Recipes suited to the member's age group",
                3,
                lambda p: p.member is not None,
                self._demographic,
            ),
            ColdStartStrategy(
                POPULARITY,
                "Globally popular, well-reviewed recipes",
                1,
                lambda p: True,
                self._popularity,
            ),
        ]

    def _base_filter(self, context: RecommendationContext, order_by: List[str]) -> RecipeFilter:
        return RecipeFilter(
            exclude_ids=list(context.exclude_recipe_ids),
            order_by=order_by,
            limit=STRATEGY_POOL_SIZE,
        )

    @staticmethod
    def _score(recipes: List[Recipe], strategy: str, band: _Band) -> List[Recommendation]:
        out = []
        n = max(len(recipes), 1)
        for rank, recipe in enumerate(recipes):
            out.append(
                Recommendation(
                    recipe_id=recipe.id,
                    score=band.base + band.span * (1 - rank / n),
                    reasons=[strategy, *band.reasons],
                    explanation=band.explanation,
                    metadata=RecommendationMetadata(
                        nutrition_match=band.nutrition_match,
                        preference_match=band.preference_match,
                    ),
                )
            )
        return out

    def _health_goal(self, profile: ColdStartProfile, context: RecommendationContext) -> List[Recommendation]:
        f = self._base_filter(context, ["average_rating"])
        goal = profile.health_goal.goal_type if profile.health_goal else None
        if goal == "LOSE_WEIGHT":
            f.max_nutrients = {"calories": 400, "carbs": 30}
        elif goal == "GAIN_MUSCLE":
            f.min_nutrients = {"protein": 25, "calories": 500}
        elif goal == "IMPROVE_HEALTH":
            f.min_nutrients = {"fiber": 5}
            f.max_nutrients = {"sodium": 600}
        elif goal == "MAINTAIN":
            f.min_nutrients = {"calories": 300}
            f.max_nutrients = {"calories": 600}
        recipes = self.repository.list_candidate_recipes(f)
        band = _Band(85, 10, ["supports_health_goal", "balanced_nutrition"], f"Picked for your {goal} goal.", 0.9, 0.7)
        return self._score(recipes, "health_goal_based", band)

    def _dietary(self, profile: ColdStartProfile, context: RecommendationContext) -> List[Recommendation]:
        f = self._base_filter(context, ["average_rating"])
        pref = profile.preference
        banned: List[str] = []
        if pref is not None:
            if pref.is_meat_free:
                banned.extend(sorted(MEAT_CATEGORIES))
            if pref.is_gluten_free:
                banned.append("gluten")
            if pref.is_dairy_free:
                banned.append("dairy")
        f.exclude_ingredient_categories = banned
        recipes = self.repository.list_candidate_recipes(f)
        diet = pref.diet_type if pref else "OMNIVORE"
        band = _Band(75, 15, ["fits_your_diet", "highly_rated"], f"Matches your {diet} diet.", 0.8, 0.9)
        return self._score(recipes, "dietary_based", band)

    def _cooking(self, profile: ColdStartProfile, context: RecommendationContext) -> List[Recommendation]:
        f = self._base_filter(context, ["average_rating"])
        pref = profile.preference
        if pref is not None:
            if pref.cooking_skill:
                f.difficulty = SKILL_TO_DIFFICULTY.get(pref.cooking_skill.lower(), "MEDIUM")
            if pref.max_cook_time:
                f.max_total_time = pref.max_cook_time
            if pref.preferred_cuisines:
                f.cuisines = list(pref.preferred_cuisines)
        recipes = self.repository.list_candidate_recipes(f)
        band = _Band(80, 10, ["suits_your_skill", "fits_your_time"], "Matches your cooking skill and time.", 0.6, 0.8)
        return self._score(recipes, "cooking_based", band)

    def _demographic(self, profile: ColdStartProfile, context: RecommendationContext) -> List[Recommendation]:
        f = self._base_filter(context, ["view_count"])
        age = profile.member.age if profile.member else None
        if age is not None and age < 25:
            f.max_total_time = 45
            f.difficulty = "EASY"
        elif age is not None and age > 60:
            f.min_nutrients = {"fiber": 5}
            f.max_nutrients = {"sodium": 600}
        recipes = self.repository.list_candidate_recipes(f)
        band = _Band(70, 20, ["suits_your_age_group", "popular_choice"], "Popular with members like you.", 0.7, 0.6)
        return self._score(recipes, "demographic_based", band)

    def _popularity(self, profile: ColdStartProfile, context: RecommendationContext) -> List[Recommendation]:
        f = self._base_filter(context, ["rating_count", "average_rating", "view_count"])
        f.meal_type = context.meal_type
        f.min_average_rating = 4.0
        recipes = self.repository.list_candidate_recipes(f)

        if len(recipes) < STRATEGY_POOL_SIZE:
            # Young catalogs: top up with whatever is published so the list is never empty
            seen = {r.id for r in recipes} | set(context.exclude_recipe_ids)
            for recipe in self.repository.list_popular_recipes(STRATEGY_POOL_SIZE * 2):
                if len(recipes) >= STRATEGY_POOL_SIZE:
                    break
                if recipe.id not in seen:
                    seen.add(recipe.id)
                    recipes.append(recipe)

        band = _Band(60, 20, ["popular_choice", "well_reviewed"], "A favorite across our community.", 0.5, 0.4)
        return self._score(recipes, POPULARITY, band)
