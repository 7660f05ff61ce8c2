import pytest

from meal_recommender.rules.rule_based import RuleBasedRecommender, matches_dietary_type, matches_restrictions
from meal_recommender.schema import HealthGoal, RecommendationContext, RecommendationMetadata, UserPreference

from conftest import make_recipe


def test_lose_weight_rewards_calories_and_carb_protein_ratio():
    recipe = make_recipe("x", nutrition={"calories": 350, "carbs": 20, "protein": 25})
    score = RuleBasedRecommender.nutrition_score(recipe, HealthGoal("u", "LOSE_WEIGHT"))
    assert score == 30  # 15 baseline + 10 calories + 5 carbs <= 2 x protein


@pytest.mark.parametrize(
    "goal, nutrition, expected",
    [
        ("GAIN_MUSCLE", {"protein": 30, "calories": 550}, 30),
        ("GAIN_MUSCLE", {"protein": 10, "calories": 550}, 20),
        ("MAINTAIN", {"calories": 450}, 25),
        ("MAINTAIN", {"calories": 900}, 15),
        ("IMPROVE_HEALTH", {"fiber": 6, "sodium": 400}, 30),
        ("IMPROVE_HEALTH", {"fiber": None, "sodium": None}, 15),
    ],
)
def test_goal_specific_nutrition_bonuses(goal, nutrition, expected):
    recipe = make_recipe("x", nutrition=nutrition)
    assert RuleBasedRecommender.nutrition_score(recipe, HealthGoal("u", goal)) == expected


def test_no_goal_is_neutral():
    assert RuleBasedRecommender.nutrition_score(make_recipe("x"), None) == 15


def test_price_tiers_and_budget():
    pref = UserPreference("u", cost_level="MEDIUM")
    cheap = make_recipe("a", estimated_cost=20)
    fair = make_recipe("b", estimated_cost=45)
    pricey = make_recipe("c", estimated_cost=70)
    luxury = make_recipe("d", estimated_cost=200)
    assert RuleBasedRecommender.price_score(cheap, None, pref) == 20
    assert RuleBasedRecommender.price_score(fair, None, pref) == 15
    assert RuleBasedRecommender.price_score(pricey, None, pref) == 10
    assert RuleBasedRecommender.price_score(luxury, None, pref) == 5
    assert RuleBasedRecommender.price_score(fair, 30, pref) == 0
    assert RuleBasedRecommender.price_score(make_recipe("e"), None, pref) == 10


def test_inventory_share():
    recipe = make_recipe("x", ingredients=["egg", "tomato", "basil"])
    assert RuleBasedRecommender.inventory_score(recipe, {"egg", "tomato"}) == 20
    assert RuleBasedRecommender.inventory_score(make_recipe("y", ingredients=[]), {"egg"}) == 0


def test_seasonal_score():
    winter = make_recipe("x", seasons=["WINTER"])
    any_season = make_recipe("y")
    assert RuleBasedRecommender.seasonal_score(winter, "WINTER") == 5
    assert RuleBasedRecommender.seasonal_score(any_season, "WINTER") == 3
    assert RuleBasedRecommender.seasonal_score(winter, "SUMMER") == 1
    assert RuleBasedRecommender.seasonal_score(winter, None) == 2


def test_preference_score_caps_and_penalties():
    pref = UserPreference(
        "u", preferred_cuisines=["italian"], preferred_ingredients=["tomato", "basil"], avoided_ingredients=["feta"]
    )
    liked = make_recipe("x", cuisine="italian", ingredients=["tomato", "basil"])
    assert RuleBasedRecommender.preference_score(liked, pref) == 15  # 7 + 3 + 3 + 2
    avoided = make_recipe("y", ingredients=["feta"])
    assert RuleBasedRecommender.preference_score(avoided, pref) == 4  # 7 - 5 + 2


def test_dietary_gate():
    chicken = make_recipe("x", ingredients=["chicken"], ingredient_categories={"chicken": "poultry"})
    assert not matches_dietary_type(chicken, UserPreference("u", is_vegetarian=True))
    assert not matches_dietary_type(chicken, UserPreference("u", diet_type="VEGAN"))
    assert matches_dietary_type(chicken, UserPreference("u"))
    carby = make_recipe("y", nutrition={"carbs": 60})
    assert not matches_dietary_type(carby, UserPreference("u", is_low_carb=True))
    assert not matches_restrictions(carby, ["low-carb"])
    bread = make_recipe("z", ingredients=["bread"], ingredient_categories={"bread": "gluten"})
    assert not matches_restrictions(bread, ["gluten_free"])
    assert matches_restrictions(bread, ["vegetarian"])


def test_reasons_from_metadata():
    assert RuleBasedRecommender.reasons(RecommendationMetadata()) == ["basic_recommendation"]
    tags = RuleBasedRecommender.reasons(RecommendationMetadata(inventory_match=0.9, seasonal_match=1.0))
    assert tags == ["ingredients_on_hand", "in_season"]


def test_recommendations_gate_and_score(repo):
    repo.preferences["alice"].is_vegetarian = True
    rules = RuleBasedRecommender(repo)
    context = RecommendationContext(user_id="alice", excluded_ingredients=["pasta"])
    recs = rules.get_recommendations(context, limit=10)
    ids = {r.recipe_id for r in recs}
    assert "r3" not in ids  # chicken
    assert "r1" not in ids  # excluded ingredient
    assert "r8" not in ids  # draft
    for r in recs:
        assert 0 <= r.score <= 100
        assert r.reasons
    assert [r.score for r in recs] == sorted((r.score for r in recs), reverse=True)
