"""
engine.py

Purpose:
    Orchestrates one recommendation request:

        weights = defaults <- stored member weights <- request override
        lanes   = rule-based | collaborative | content   (concurrent)
                  or cold start when the member has too little history
        merge   = max score per recipe id
        rank    -> truncate -> explain

Design:
    - Lanes are synchronous and call the repository; each runs in a worker
      thread via asyncio.to_thread, bounded by settings.lane_timeout_seconds.
    - A lane that raises or times out is logged and contributes [], the
      request still completes with the remaining lanes.
    - Every collaborator is injected; nothing here is a module singleton.

Usage:
    engine = RecommendationEngine(InMemoryRepository.from_json("fixture.json"))
    recs = asyncio.run(engine.get_recommendations(RecommendationContext(user_id="u1")))
"""
from __future__ import annotations

import asyncio
from collections import Counter
from dataclasses import replace
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from meal_recommender.collaborative.cold_start import ColdStartHandler
from meal_recommender.collaborative.collaborative_filter import CollaborativeFilter
from meal_recommender.config import RecommenderSettings, get_settings
from meal_recommender.content.content_filter import ContentFilter
from meal_recommender.errors import RecipeNotFoundError
from meal_recommender.logging_utils import get_logger
from meal_recommender.ranking.ranker import Ranker
from meal_recommender.repository.base import RecommendationRepository
from meal_recommender.rules.rule_based import RuleBasedRecommender
from meal_recommender.schema import (
    LearnedPreferences,
    Recommendation,
    RecommendationContext,
    RecommendationMetadata,
    RecommendationWeights,
)

logger = get_logger("engine")

HISTORY_SAMPLE = 100
TOP_LEARNED_CUISINES = 5
TOP_LEARNED_INGREDIENTS = 10

METADATA_PHRASES = {
    "inventory_match": "uses ingredients you already have",
    "price_match": "fits your budget",
    "nutrition_match": "supports your health goal",
    "preference_match": "matches your taste",
    "seasonal_match": "uses seasonal ingredients",
}

WEIGHT_PHRASES = {
    "inventory": "prioritising your pantry",
    "price": "with an eye on price",
    "nutrition": "with a focus on nutrition",
    "preference": "leaning on your preferences",
    "seasonal": "favouring the season",
}


class RecommendationEngine:
    def __init__(
        self,
        repository: RecommendationRepository,
        settings: Optional[RecommenderSettings] = None,
        *,
        rule_based: Optional[RuleBasedRecommender] = None,
        collaborative: Optional[CollaborativeFilter] = None,
        content: Optional[ContentFilter] = None,
        cold_start: Optional[ColdStartHandler] = None,
        ranker: Optional[Ranker] = None,
    ) -> None:
        self.repository = repository
        self.settings = settings or get_settings()
        self.rule_based = rule_based or RuleBasedRecommender(repository)
        self.collaborative = collaborative or CollaborativeFilter(repository, settings=self.settings)
        self.content = content or ContentFilter(repository, settings=self.settings)
        self.cold_start = cold_start or ColdStartHandler(repository)
        self.ranker = ranker or Ranker(repository)

    # ------------------------------------------------------------------
    # Public APIs
    # ------------------------------------------------------------------
    async def get_recommendations(
        self,
        context: RecommendationContext,
        limit: int = 10,
        weights: Optional[Dict[str, float]] = None,
        recent_recommendations: Optional[Sequence[Recommendation]] = None,
    ) -> List[Recommendation]:
        preference = await asyncio.to_thread(self.repository.get_user_preference, context.user_id)
        final_weights = RecommendationWeights.resolve(
            preference.recommendation_weights if preference else None, weights
        )

        is_cold = await asyncio.to_thread(self.cold_start.is_cold_start, context.user_id)
        if is_cold:
            candidates = await self._run_lane("cold_start", self.cold_start.recommend, context, limit * 2)
            if not candidates:
                logger.warning(
                    "Cold-start strategies empty for %s",
                    context.user_id,
                    extra={
                        "invoking_func": "get_recommendations",
                        "invoking_purpose": "Serve recommendations",
                        "next_step": "Fall back to popular recipes",
                    },
                )
                candidates = await self._run_lane("cold_start_popular", self.cold_start.popular, context, limit * 2)
        else:
            lane_results = await asyncio.gather(
                self._run_lane("rule_based", self.rule_based.get_recommendations, context, limit * 2),
                self._run_lane("collaborative", self.collaborative.get_recommendations, context, limit * 2),
                self._run_lane("content", self.content.get_recommendations, context, limit * 2),
            )
            candidates = list(self.merge_candidates(lane_results).values())
            if not candidates:
                logger.warning(
                    "All lanes empty for %s",
                    context.user_id,
                    extra={
                        "invoking_func": "get_recommendations",
                        "invoking_purpose": "Serve recommendations",
                        "next_step": "Fall back to cold-start strategies",
                    },
                )
                candidates = await self._run_lane("cold_start", self.cold_start.recommend, context, limit * 2)

        ranked = await asyncio.to_thread(
            self.ranker.rank, candidates, context, final_weights, recent_recommendations
        )
        excluded = set(context.exclude_recipe_ids)
        ranked = [r for r in ranked if r.recipe_id not in excluded][:limit]
        results = self.explain(ranked, final_weights)

        logger.info(
            "Served %d recommendations to %s (cold_start=%s, candidates=%d)",
            len(results),
            context.user_id,
            is_cold,
            len(candidates),
            extra={
                "invoking_func": "get_recommendations",
                "invoking_purpose": "Serve recommendations",
                "next_step": "Return to caller",
            },
        )
        return results

    async def refresh_recommendations(
        self,
        context: RecommendationContext,
        exclude_recipe_ids: Iterable[str],
        limit: int = 10,
    ) -> List[Recommendation]:
        merged_ids = list(dict.fromkeys([*context.exclude_recipe_ids, *exclude_recipe_ids]))
        return await self.get_recommendations(replace(context, exclude_recipe_ids=merged_ids), limit)

    async def get_similar_recipes(self, recipe_id: str, limit: int = 5) -> List[Recommendation]:
        """
        Raises:
            RecipeNotFoundError: recipe_id is not in the catalog.
        """
        recipe = await asyncio.to_thread(self.repository.get_recipe, recipe_id)
        if recipe is None:
            raise RecipeNotFoundError(recipe_id)
        return await asyncio.to_thread(self.content.similar_recipes, recipe, limit)

    async def get_popular_recipes(self, limit: int = 10, category: Optional[str] = None) -> List[Recommendation]:
        recipes = await asyncio.to_thread(self.repository.list_popular_recipes, limit, category=category)
        return [
            Recommendation(
                recipe_id=recipe.id,
                score=recipe.average_rating * 20,
                reasons=["popular", "highly_rated"],
                explanation=f"Rated {recipe.average_rating:.1f}/5 by {recipe.rating_count} members.",
                metadata=RecommendationMetadata(),
            )
            for recipe in recipes
        ]

    async def update_user_preferences(self, user_id: str) -> LearnedPreferences:
        learned = await asyncio.to_thread(self._learn_preferences, user_id)
        await asyncio.to_thread(self.repository.upsert_learned_preferences, learned)
        self.content.invalidate_profile(user_id)
        logger.info(
            "Learned preferences for %s (confidence=%.2f)",
            user_id,
            learned.confidence,
            extra={"invoking_func": "update_user_preferences", "next_step": "Persisted via repository"},
        )
        return learned

    # ------------------------------------------------------------------
    # Merge / explain
    # ------------------------------------------------------------------
    @staticmethod
    def merge_candidates(lists: Iterable[Iterable[Recommendation]]) -> Dict[str, Recommendation]:
        """Keep the highest-scoring instance per recipe id; earlier lists win ties."""
        merged: Dict[str, Recommendation] = {}
        for candidates in lists:
            for candidate in candidates:
                current = merged.get(candidate.recipe_id)
                if current is None or candidate.score > current.score:
                    merged[candidate.recipe_id] = candidate
        return merged

    @staticmethod
    def explain(recommendations: Iterable[Recommendation], weights: RecommendationWeights) -> List[Recommendation]:
        top_name, top_value = max(weights.as_dict().items(), key=lambda kv: kv[1])
        out = []
        for rec in recommendations:
            parts = [phrase for key, phrase in METADATA_PHRASES.items() if getattr(rec.metadata, key) > 0.7]
            if top_value >= 0.3:
                parts.append(WEIGHT_PHRASES[top_name])
            if parts:
                text = ", ".join(parts)
                explanation = text[0].upper() + text[1:] + "."
            else:
                explanation = rec.explanation or "Recommended for you."
            out.append(replace(rec, reasons=list(rec.reasons) or ["overall_recommendation"], explanation=explanation))
        return out

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _run_lane(
        self,
        name: str,
        lane: Callable[[RecommendationContext, int], List[Recommendation]],
        context: RecommendationContext,
        limit: int,
    ) -> List[Recommendation]:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(lane, context, limit), timeout=self.settings.lane_timeout_seconds
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Lane %s timed out after %.1fs",
                name,
                self.settings.lane_timeout_seconds,
                extra={
                    "invoking_func": "_run_lane",
                    "next_step": "Continue without this lane",
                    "resolution": "Raise RECO_LANE_TIMEOUT_SECONDS or check repository latency",
                },
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "Lane %s failed: %s",
                name,
                exc,
                exc_info=True,
                extra={"invoking_func": "_run_lane", "next_step": "Continue without this lane"},
            )
        return []

    def _learn_preferences(self, user_id: str) -> LearnedPreferences:
        ratings = self.repository.get_user_ratings(user_id, limit=HISTORY_SAMPLE)
        favorites = self.repository.get_user_favorites(user_id, limit=HISTORY_SAMPLE)
        sample_ids = [r.recipe_id for r in ratings if r.value >= 4] + [f.recipe_id for f in favorites]
        recipes = self.repository.get_recipes_by_ids(sample_ids)
        sample = [recipes[rid] for rid in sample_ids if rid in recipes]

        cuisines = Counter(r.cuisine for r in sample if r.cuisine)
        ingredients = Counter(name for r in sample for name in r.ingredient_names)
        avg = sum(r.value for r in ratings) / len(ratings) if ratings else 0.0

        return LearnedPreferences(
            member_id=user_id,
            preferred_cuisines=[c for c, _ in cuisines.most_common(TOP_LEARNED_CUISINES)],
            preferred_ingredients=[i for i, _ in ingredients.most_common(TOP_LEARNED_INGREDIENTS)],
            avg_rating=avg,
            favorite_count=len(favorites),
            confidence=min(len(sample), 100) / 100,
        )
