import asyncio
import time
from dataclasses import replace

import pytest

from meal_recommender.collaborative.cold_start import ColdStartHandler
from meal_recommender.engine import RecommendationEngine
from meal_recommender.errors import RecipeNotFoundError
from meal_recommender.repository.memory import InMemoryRepository
from meal_recommender.schema import (
    HealthGoal,
    Recommendation,
    RecommendationContext,
    RecommendationMetadata,
    RecommendationWeights,
    UserPreference,
)

from conftest import make_recipe

COLD_START_STRATEGIES = {
    "health_goal_based",
    "dietary_based",
    "cooking_based",
    "demographic_based",
    "popularity_based",
}


class BrokenLane:
    def get_recommendations(self, context, limit):
        raise RuntimeError("lane exploded")


class SlowLane:
    def get_recommendations(self, context, limit):
        time.sleep(0.5)
        return [Recommendation("r1", 100, ["slow"])]


class SilentColdStart(ColdStartHandler):
    def recommend(self, context, limit=10):
        return []


def _run(coro):
    return asyncio.run(coro)


def test_recommendations_for_known_member(repo, settings):
    engine = RecommendationEngine(repo, settings)
    recs = _run(engine.get_recommendations(RecommendationContext(user_id="alice"), limit=4))
    assert 0 < len(recs) <= 4
    assert len({r.recipe_id for r in recs}) == len(recs)
    assert "r8" not in {r.recipe_id for r in recs}
    for r in recs:
        assert 0 <= r.score <= 100
        assert r.reasons
        assert r.explanation
    assert [r.score for r in recs] == sorted((r.score for r in recs), reverse=True)


def test_refresh_excludes_shown_recipes(repo, settings):
    engine = RecommendationEngine(repo, settings)
    recs = _run(engine.refresh_recommendations(RecommendationContext(user_id="alice"), ["r1", "r6"], limit=10))
    assert recs
    assert not {"r1", "r6"} & {r.recipe_id for r in recs}


def test_new_member_gets_cold_start_results(repo, settings):
    engine = RecommendationEngine(repo, settings)
    recs = _run(engine.get_recommendations(RecommendationContext(user_id="newbie"), limit=5))
    assert recs
    assert all(r.reasons[0] in COLD_START_STRATEGIES for r in recs)


def test_failing_lane_is_tolerated(repo, settings):
    engine = RecommendationEngine(repo, settings, collaborative=BrokenLane())
    recs = _run(engine.get_recommendations(RecommendationContext(user_id="alice"), limit=5))
    assert recs


def test_slow_lane_times_out(repo, settings):
    fast = replace(settings, lane_timeout_seconds=0.05)
    engine = RecommendationEngine(repo, fast, rule_based=SlowLane())
    recs = _run(engine.get_recommendations(RecommendationContext(user_id="alice"), limit=5))
    assert recs
    assert all("slow" not in r.reasons for r in recs)


def test_all_lanes_empty_falls_back_to_cold_start(repo, settings):
    broken = BrokenLane()
    engine = RecommendationEngine(repo, settings, rule_based=broken, collaborative=broken, content=broken)
    recs = _run(engine.get_recommendations(RecommendationContext(user_id="alice"), limit=5))
    assert recs
    assert recs[0].reasons[0] in COLD_START_STRATEGIES


def test_weight_override_shapes_explanation(repo, settings):
    engine = RecommendationEngine(repo, settings)
    recs = _run(
        engine.get_recommendations(RecommendationContext(user_id="alice"), limit=3, weights={"price": 0.9})
    )
    assert all("with an eye on price" in r.explanation for r in recs)


def test_merge_keeps_max_and_first_on_ties():
    a = [Recommendation("x", 40, ["rules"]), Recommendation("y", 70, ["rules"])]
    b = [Recommendation("x", 65, ["collab"]), Recommendation("y", 70, ["collab"])]
    merged = RecommendationEngine.merge_candidates([a, b])
    assert merged["x"].score == 65
    assert merged["y"].reasons == ["rules"]
    again = RecommendationEngine.merge_candidates([list(merged.values()), list(merged.values())])
    assert {k: v.score for k, v in again.items()} == {k: v.score for k, v in merged.items()}


def test_explain_uses_metadata_and_top_weight():
    rec = Recommendation("x", 80, [], metadata=RecommendationMetadata(inventory_match=0.9))
    out = RecommendationEngine.explain([rec], RecommendationWeights())[0]
    assert out.explanation == "Uses ingredients you already have, prioritising your pantry."
    assert out.reasons == ["overall_recommendation"]

    flat = RecommendationWeights(inventory=0.2, price=0.2, nutrition=0.2, preference=0.2, seasonal=0.2)
    plain = RecommendationEngine.explain([Recommendation("y", 50, ["popular"])], flat)[0]
    assert plain.explanation == "Recommended for you."
    assert plain.reasons == ["popular"]


def test_weights_resolve_layers():
    weights = RecommendationWeights.resolve({"price": 0.5, "bogus": 1.0}, {"price": 0.1, "seasonal": None})
    assert weights.price == 0.1
    assert weights.seasonal == 0.05
    assert weights.inventory == 0.30


def test_similar_recipes_unknown_recipe(repo, settings):
    engine = RecommendationEngine(repo, settings)
    with pytest.raises(RecipeNotFoundError):
        _run(engine.get_similar_recipes("nope"))
    similar = _run(engine.get_similar_recipes("r2", limit=2))
    assert len(similar) == 2
    assert "r2" not in {r.recipe_id for r in similar}


def test_popular_recipes_scored_from_average(repo, settings):
    engine = RecommendationEngine(repo, settings)
    popular = _run(engine.get_popular_recipes(limit=3))
    assert [r.recipe_id for r in popular] == ["r1", "r6", "r3"]
    assert popular[0].score == pytest.approx(96.0)
    assert popular[0].reasons == ["popular", "highly_rated"]
    salads = _run(engine.get_popular_recipes(limit=10, category="SALAD"))
    assert [r.recipe_id for r in salads] == ["r2"]


def test_update_user_preferences_persists(repo, settings):
    engine = RecommendationEngine(repo, settings)
    learned = _run(engine.update_user_preferences("alice"))
    assert repo.learned["alice"] is learned
    assert set(learned.preferred_cuisines) == {"italian", "greek", "american"}
    assert learned.preferred_ingredients[0] == "tomato"
    assert learned.avg_rating == pytest.approx(3.5)
    assert learned.favorite_count == 1
    assert learned.confidence == pytest.approx(0.03)


def _meat_only_catalog():
    beef = make_recipe("beef", ingredients=["beef"], ingredient_categories={"beef": "meat"}, nutrition={"calories": 600})
    return InMemoryRepository(
        recipes=[beef],
        preferences=[UserPreference("veg", is_vegetarian=True)],
        health_goals=[HealthGoal("veg", "LOSE_WEIGHT")],
    )


def test_cold_member_with_unmatched_profile_still_gets_recipes(settings):
    recs = _run(RecommendationEngine(_meat_only_catalog(), settings).get_recommendations(
        RecommendationContext(user_id="veg")
    ))
    assert [r.recipe_id for r in recs] == ["beef"]


def test_empty_cold_start_answer_falls_back_to_popular(repo, settings):
    engine = RecommendationEngine(repo, settings, cold_start=SilentColdStart(repo))
    recs = _run(engine.get_recommendations(RecommendationContext(user_id="newbie"), limit=3))
    assert len(recs) == 3
    assert all(r.reasons[0] == "popularity_based" for r in recs)
