from dataclasses import fields
from datetime import timedelta

import pytest

from meal_recommender.ranking.ranker import (
    Ranker,
    RankingFeatures,
    freshness_score,
    popularity_score,
    quality_score,
    recommendation_similarity,
    weight_multiplier,
)
from meal_recommender.schema import Recommendation, RecommendationContext, RecommendationMetadata, RecommendationWeights

from conftest import NOW, make_recipe


@pytest.mark.parametrize("days, expected", [(3, 100), (20, 80), (60, 60), (200, 40), (800, 20)])
def test_freshness_steps(days, expected):
    recipe = make_recipe("x", created_at=NOW - timedelta(days=days))
    assert freshness_score(recipe, NOW) == expected


def test_popularity_components():
    recipe = make_recipe("x", average_rating=5.0, rating_count=200, view_count=9999)
    assert popularity_score(recipe) == pytest.approx(100.0)
    assert popularity_score(make_recipe("y")) == 0.0


def test_quality_is_capped():
    recipe = make_recipe(
        "x", average_rating=4.9, rating_count=500, difficulty="EASY", total_time=10, estimated_cost=5
    )
    assert quality_score(recipe) == 100.0


def test_weight_multiplier():
    assert weight_multiplier(RecommendationWeights(inventory=0.5)) == 1.1
    assert weight_multiplier(RecommendationWeights(preference=0.35)) == 1.05
    assert weight_multiplier(RecommendationWeights()) == 1.0


def test_final_score_blend():
    features = RankingFeatures("x", base_score=80, popularity=50, freshness=60, quality=40, personalization=50)
    assert Ranker.final_score(features) == round(80 * 0.3 + 50 * 0.2 + 60 * 0.1 + 50 * 0.2 + 40 * 0.1)
    assert Ranker.final_score(features, 1.1) == round((24 + 10 + 6 + 10 + 4) * 1.1)


def test_rank_keeps_scores_in_range_and_lane_metadata(repo):
    ranker = Ranker(repo, clock=lambda: NOW)
    candidates = [
        Recommendation(rid, 100, ["matches_taste"], metadata=RecommendationMetadata(preference_match=0.9))
        for rid in ("r1", "r2", "r3", "r5", "r6")
    ]
    ranked = ranker.rank(candidates, RecommendationContext(user_id="alice"), RecommendationWeights(inventory=0.9))
    assert len(ranked) == 5
    assert all(0 <= r.score <= 100 for r in ranked)
    assert all(r.metadata.preference_match == pytest.approx(0.9) for r in ranked)
    assert all(r.reasons[0] == "matches_taste" for r in ranked)
    assert [r.score for r in ranked] == sorted((r.score for r in ranked), reverse=True)


def test_rank_drops_unknown_recipes(repo):
    ranked = Ranker(repo).rank(
        [Recommendation("ghost", 90), Recommendation("r1", 50)],
        RecommendationContext(user_id="alice"),
        RecommendationWeights(),
    )
    assert [r.recipe_id for r in ranked] == ["r1"]


def test_diversity_bonus_favours_new_categories(repo):
    recipes = repo.get_recipes_by_ids(["r1", "r3", "r2"])
    ranked = Ranker.apply_diversity(
        [Recommendation("r1", 60), Recommendation("r3", 59), Recommendation("r2", 58)], recipes
    )
    by_id = {r.recipe_id: r.score for r in ranked}
    assert by_id["r1"] == 60 + 10 + 8 + 2   # new category, cuisine, one tag
    assert by_id["r3"] == 59 + 8            # MAIN_DISH already seen
    assert by_id["r2"] == 58 + 10 + 8


def test_temporal_diversity_penalises_repeats():
    recent = [Recommendation("old", 70, ["popular"])]
    fresh = Ranker.apply_temporal_diversity(
        [Recommendation("a", 70, ["popular"]), Recommendation("b", 10, ["in_season"])], recent
    )
    assert fresh[0].score == 50
    assert fresh[1].score == 10


def test_diversity_penalty_drops_near_duplicates():
    recs = [Recommendation("a", 80, ["x"]), Recommendation("b", 79, ["x"]), Recommendation("c", 20, ["y"])]
    kept = Ranker.apply_diversity_penalty(recs)
    assert [r.recipe_id for r in kept] == ["a", "c"]
    assert recommendation_similarity(recs[0], recs[1]) > 0.8


def test_ranking_reasons_and_explanation():
    features = RankingFeatures("x", 50, popularity=85, freshness=100, quality=90, personalization=50)
    assert Ranker.ranking_reasons(features) == ["popular", "fresh", "high_quality"]
    text = Ranker.ranking_explanation(features, RecommendationWeights(nutrition=0.5))
    assert text.startswith("A crowd favourite")
    assert "nutrition" in text
    dull = RankingFeatures("y", 50, popularity=10, freshness=20, quality=10, personalization=50)
    assert Ranker.ranking_explanation(dull, RecommendationWeights()) == "Recommended after weighing several factors."


def test_single_candidate_score_is_blend_plus_first_seen_bonus(repo):
    ranker = Ranker(repo, clock=lambda: NOW)
    context = RecommendationContext(user_id="alice")
    weights = RecommendationWeights()
    candidate = Recommendation("r2", 10)
    features = ranker.extract_features(candidate, repo.get_recipe("r2"), context, NOW)

    [ranked] = ranker.rank([candidate], context, weights)
    # r2 is the first SALAD and first greek recipe, with no tags
    expected = min(Ranker.final_score(features, weight_multiplier(weights)) + 10 + 8, 100)
    assert ranked.score == expected
    assert "diversity" not in {f.name for f in fields(RankingFeatures)}
