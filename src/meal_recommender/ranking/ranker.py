"""
ranker.py

Purpose:
    Re-rank merged lane candidates using catalog signals the lanes do not
    see: popularity, freshness and editorial quality, plus a diversity
    bonus over the list being built.

Design:
    final = 0.3 x lane score + 0.2 x popularity + 0.1 x freshness
            + 0.2 x personalization + 0.1 x quality
    scaled by 1.1 when the member weights inventory above 0.4, or 1.05
    when preference is weighted above 0.3.

    The diversity share enters as a post-hoc bonus: walking the list
    in score order, a new category adds 10, a new cuisine 8 and new tags
    2 each (at most 5). Scores are capped at 100 afterwards.

    Lane metadata and reasons survive ranking; ranking reasons are appended.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence

from meal_recommender.logging_utils import get_logger
from meal_recommender.repository.base import RecommendationRepository
from meal_recommender.schema import (
    Recipe,
    Recommendation,
    RecommendationContext,
    RecommendationWeights,
    utcnow,
)

logger = get_logger("ranker")

RANKING_WEIGHTS = {
    "base": 0.3,
    "popularity": 0.2,
    "freshness": 0.1,
    "personalization": 0.2,
    "quality": 0.1,
}

PERSONALIZATION_BASELINE = 50.0
RECENT_SIMILARITY_LIMIT = 0.7
RECENT_PENALTY = 20

WEIGHT_PHRASES = {
    "inventory": "makes the most of what you have at home",
    "price": "keeps to your budget",
    "nutrition": "puts your nutrition goals first",
    "preference": "closely follows your taste",
    "seasonal": "favours what is in season",
}


@dataclass
class RankingFeatures:
    recipe_id: str
    base_score: float
    popularity: float
    freshness: float
    quality: float
    personalization: float


def popularity_score(recipe: Recipe) -> float:
    rating = recipe.average_rating / 5 * 40
    reviews = min(recipe.rating_count / 100, 1.0) * 30
    views = min(math.log(recipe.view_count + 1) / math.log(10_000), 1.0) * 30
    return rating + reviews + views


def freshness_score(recipe: Recipe, now: Optional[datetime] = None) -> float:
    now = now or utcnow()
    created = recipe.created_at
    if created.tzinfo is None:
        created = created.replace(tzinfo=timezone.utc)
    days = (now - created).days
    if days <= 7:
        return 100.0
    if days <= 30:
        return 80.0
    if days <= 90:
        return 60.0
    if days <= 365:
        return 40.0
    return 20.0


def quality_score(recipe: Recipe) -> float:
    score = 0.0
    avg = recipe.average_rating
    if avg >= 4.5:
        score += 40
    elif avg >= 4.0:
        score += 30
    elif avg >= 3.5:
        score += 20
    elif avg >= 3.0:
        score += 10

    count = recipe.rating_count
    for floor, points in ((100, 30), (50, 25), (20, 20), (10, 15), (5, 10)):
        if count >= floor:
            score += points
            break

    if recipe.difficulty == "EASY":
        score += 10
    elif recipe.difficulty == "MEDIUM":
        score += 5

    if recipe.total_time <= 30:
        score += 10
    elif recipe.total_time <= 60:
        score += 5

    if recipe.estimated_cost and recipe.estimated_cost <= 30:
        score += 10
    return min(score, 100.0)


def weight_multiplier(weights: RecommendationWeights) -> float:
    if weights.inventory > 0.4:
        return 1.1
    if weights.preference > 0.3:
        return 1.05
    return 1.0


def recommendation_similarity(a: Recommendation, b: Recommendation) -> float:
    """Mean of reason-set Jaccard and score closeness."""
    ra, rb = set(a.reasons), set(b.reasons)
    union = ra | rb
    reasons = len(ra & rb) / len(union) if union else 0.0
    closeness = 1 - abs(a.score - b.score) / 100
    return (reasons + closeness) / 2


class Ranker:
    def __init__(
        self,
        repository: RecommendationRepository,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repository = repository
        self._clock = clock

    def rank(
        self,
        candidates: Sequence[Recommendation],
        context: RecommendationContext,
        weights: RecommendationWeights,
        recent_recommendations: Optional[Sequence[Recommendation]] = None,
    ) -> List[Recommendation]:
        if not candidates:
            return []
        recipes = self.repository.get_recipes_by_ids([c.recipe_id for c in candidates])
        now = self._clock()
        multiplier = weight_multiplier(weights)

        ranked: List[Recommendation] = []
        for candidate in candidates:
            recipe = recipes.get(candidate.recipe_id)
            if recipe is None:
                logger.debug(
                    "Dropping %s: not in catalog",
                    candidate.recipe_id,
                    extra={"invoking_func": "rank", "next_step": "Continue with remaining candidates"},
                )
                continue
            features = self.extract_features(candidate, recipe, context, now)
            ranked.append(
                replace(
                    candidate,
                    score=self.final_score(features, multiplier),
                    reasons=self._merge_reasons(candidate.reasons, self.ranking_reasons(features)),
                    explanation=candidate.explanation or self.ranking_explanation(features, weights),
                )
            )

        ranked = self.apply_diversity(ranked, recipes)
        if recent_recommendations:
            ranked = self.apply_temporal_diversity(ranked, recent_recommendations)
        ranked.sort(key=lambda r: (-r.score, r.recipe_id))
        return ranked

    # ------------------------------------------------------------------
    # Features
    # ------------------------------------------------------------------
    def extract_features(
        self,
        candidate: Recommendation,
        recipe: Recipe,
        context: RecommendationContext,
        now: Optional[datetime] = None,
    ) -> RankingFeatures:
        return RankingFeatures(
            recipe_id=candidate.recipe_id,
            base_score=candidate.score,
            popularity=popularity_score(recipe),
            freshness=freshness_score(recipe, now or self._clock()),
            quality=quality_score(recipe),
            personalization=self.personalization_score(recipe, context),
        )

    @staticmethod
    def personalization_score(recipe: Recipe, context: RecommendationContext) -> float:
        return PERSONALIZATION_BASELINE

    @staticmethod
    def final_score(features: RankingFeatures, multiplier: float = 1.0) -> float:
        w = RANKING_WEIGHTS
        weighted = (
            features.base_score * w["base"]
            + features.popularity * w["popularity"]
            + features.freshness * w["freshness"]
            + features.personalization * w["personalization"]
            + features.quality * w["quality"]
        )
        return round(weighted * multiplier)

    # ------------------------------------------------------------------
    # Diversity
    # ------------------------------------------------------------------
    @staticmethod
    def apply_diversity(
        ranked: List[Recommendation],
        recipes: Dict[str, Recipe],
    ) -> List[Recommendation]:
        seen_categories = set()
        seen_cuisines = set()
        seen_tags = set()
        out = []
        for rec in sorted(ranked, key=lambda r: (-r.score, r.recipe_id)):
            recipe = recipes.get(rec.recipe_id)
            if recipe is None:
                out.append(rec)
                continue
            bonus = 0
            if recipe.category not in seen_categories:
                bonus += 10
                seen_categories.add(recipe.category)
            if recipe.cuisine and recipe.cuisine not in seen_cuisines:
                bonus += 8
                seen_cuisines.add(recipe.cuisine)
            new_tags = [t for t in recipe.tags if t not in seen_tags]
            if new_tags:
                bonus += min(len(new_tags) * 2, 5)
                seen_tags.update(new_tags)
            out.append(rec.with_score(min(rec.score + bonus, 100)))
        out.sort(key=lambda r: (-r.score, r.recipe_id))
        return out

    @staticmethod
    def apply_diversity_penalty(
        recommendations: Sequence[Recommendation], similarity_threshold: float = 0.8
    ) -> List[Recommendation]:
        """Drop recommendations too similar to one already kept."""
        kept: List[Recommendation] = []
        for rec in recommendations:
            if all(recommendation_similarity(rec, k) <= similarity_threshold for k in kept):
                kept.append(rec)
        return kept

    @staticmethod
    def apply_temporal_diversity(
        recommendations: Sequence[Recommendation], recent: Sequence[Recommendation]
    ) -> List[Recommendation]:
        if not recent:
            return list(recommendations)
        out = []
        for rec in recommendations:
            closest = max(recommendation_similarity(rec, r) for r in recent)
            if closest > RECENT_SIMILARITY_LIMIT:
                rec = rec.with_score(max(rec.score - RECENT_PENALTY, 0))
            out.append(rec)
        return out

    # ------------------------------------------------------------------
    # Explanations
    # ------------------------------------------------------------------
    @staticmethod
    def ranking_reasons(features: RankingFeatures) -> List[str]:
        reasons = []
        if features.popularity >= 80:
            reasons.append("popular")
        if features.freshness >= 80:
            reasons.append("fresh")
        if features.quality >= 80:
            reasons.append("high_quality")
        if features.personalization >= 70:
            reasons.append("personalized")
        return reasons

    @staticmethod
    def _merge_reasons(lane: List[str], ranking: List[str]) -> List[str]:
        return list(dict.fromkeys([*lane, *ranking]))

    @staticmethod
    def ranking_explanation(features: RankingFeatures, weights: RecommendationWeights) -> str:
        parts = []
        if features.popularity >= 70:
            parts.append("a crowd favourite")
        if features.freshness >= 70:
            parts.append("newly added")
        if features.quality >= 70:
            parts.append("well reviewed by members")
        name, value = max(weights.as_dict().items(), key=lambda kv: kv[1])
        if value > 0.3:
            parts.append(WEIGHT_PHRASES[name])
        if not parts:
            return "Recommended after weighing several factors."
        text = "; ".join(parts)
        return text[0].upper() + text[1:] + "."
