from meal_recommender.collaborative.cold_start import ColdStartHandler, ColdStartStrategy, is_cold_start_counts
from meal_recommender.repository.memory import InMemoryRepository
from meal_recommender.schema import HealthGoal, MemberProfile, Recommendation, RecommendationContext, UserPreference

from conftest import make_recipe


def test_classification_requires_all_three_below_threshold():
    assert is_cold_start_counts(0, 0, 0)
    assert not is_cold_start_counts(5, 3, 20)
    assert not is_cold_start_counts(3, 0, 0)
    assert not is_cold_start_counts(0, 0, 10)


def test_is_cold_start_reads_repository(repo):
    handler = ColdStartHandler(repo)
    assert handler.is_cold_start("newbie")
    assert not handler.is_cold_start("alice")


def test_builtin_strategies_ordered_by_priority(repo):
    names = [s.name for s in ColdStartHandler(repo).available_strategies()]
    assert names == ["health_goal_based", "dietary_based", "cooking_based", "demographic_based", "popularity_based"]


def test_popularity_for_unknown_member(repo):
    recs = ColdStartHandler(repo).recommend(RecommendationContext(user_id="newbie"), limit=5)
    assert recs
    assert all(r.reasons[0] == "popularity_based" for r in recs)
    assert "r8" not in {r.recipe_id for r in recs}
    scores = [r.score for r in recs]
    assert scores == sorted(scores, reverse=True)
    assert all(60 <= s <= 80 for s in scores)


def test_popularity_tops_up_a_young_catalog(recipes):
    # Nothing rated >= 4.0 yet
    for r in recipes:
        r.average_rating = 2.0
    recs = ColdStartHandler(InMemoryRepository(recipes=recipes)).recommend(
        RecommendationContext(user_id="newbie"), limit=3
    )
    assert len(recs) == 3


def test_health_goal_strategy_wins_and_runner_up_fills(repo):
    repo.health_goals.append(HealthGoal("hank", "LOSE_WEIGHT"))
    repo.members["hank"] = MemberProfile("hank", age=30)
    recs = ColdStartHandler(repo).recommend(RecommendationContext(user_id="hank"), limit=5)
    strategies = [r.reasons[0] for r in recs]
    assert strategies[0] == "health_goal_based"
    assert set(strategies) <= {"health_goal_based", "demographic_based"}
    assert len({r.recipe_id for r in recs}) == len(recs)


def test_dietary_strategy_excludes_meat(repo):
    repo.preferences["vera"] = UserPreference("vera", is_vegetarian=True)
    recs = ColdStartHandler(repo).recommend(RecommendationContext(user_id="vera"), limit=10)
    ids = {r.recipe_id for r in recs if r.reasons[0] == "dietary_based"}
    assert ids
    assert "r3" not in ids


def test_registry_add_and_remove(repo):
    handler = ColdStartHandler(repo)
    handler.add_strategy(
        ColdStartStrategy(
            "chef_pick",
            "Editor's choice",
            10,
            lambda profile: True,
            lambda profile, context: [Recommendation("r6", 99, ["chef_pick"])],
        )
    )
    recs = handler.recommend(RecommendationContext(user_id="newbie"), limit=1)
    assert recs[0].recipe_id == "r6"
    handler.remove_strategy("chef_pick")
    assert "chef_pick" not in {s.name for s in handler.available_strategies()}


def _meat_only_catalog():
    beef = make_recipe("beef", ingredients=["beef"], ingredient_categories={"beef": "meat"}, nutrition={"calories": 600})
    return InMemoryRepository(
        recipes=[beef],
        preferences=[UserPreference("veg", is_vegetarian=True)],
        health_goals=[HealthGoal("veg", "LOSE_WEIGHT")],
    )


def test_popularity_tops_up_when_personal_strategies_find_nothing():
    recs = ColdStartHandler(_meat_only_catalog()).recommend(RecommendationContext(user_id="veg"), limit=5)
    assert [r.recipe_id for r in recs] == ["beef"]
    assert recs[0].reasons[0] == "popularity_based"


def test_popular_runs_popularity_alone(repo):
    recs = ColdStartHandler(repo).popular(RecommendationContext(user_id="newbie"), limit=3)
    assert len(recs) == 3
    assert all(r.reasons[0] == "popularity_based" for r in recs)


def test_cooking_skill_lookup_ignores_case(repo):
    repo.preferences["sam"] = UserPreference("sam", cooking_skill="Beginner")
    handler = ColdStartHandler(repo)
    recs = handler._cooking(handler.build_profile("sam"), RecommendationContext(user_id="sam"))
    assert {r.recipe_id for r in recs} == {"r2", "r5"}
