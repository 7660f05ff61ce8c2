from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from meal_recommender.config import RecommenderSettings
from meal_recommender.repository.memory import InMemoryRepository
from meal_recommender.schema import (
    Favorite,
    HealthGoal,
    Ingredient,
    NutritionProfile,
    Rating,
    Recipe,
    RecipeView,
    UserPreference,
)

NOW = datetime(2026, 6, 1, tzinfo=timezone.utc)


def make_recipe(rid: str, **kwargs) -> Recipe:
    ingredients = kwargs.pop("ingredients", ["egg", "tomato"])
    categories = kwargs.pop("ingredient_categories", {})
    nutrition = kwargs.pop("nutrition", {})
    return Recipe(
        id=rid,
        name=kwargs.pop("name", f"Recipe {rid}"),
        ingredients=[Ingredient(name=n, category=categories.get(n, "vegetable")) for n in ingredients],
        nutrition=NutritionProfile(**{"calories": 450, "protein": 20, "carbs": 40, "fat": 15, **nutrition}),
        created_at=kwargs.pop("created_at", NOW - timedelta(days=60)),
        **kwargs,
    )


@pytest.fixture
def settings() -> RecommenderSettings:
    return RecommenderSettings(
        min_ratings_per_user=1,
        min_ratings_per_item=1,
        lane_timeout_seconds=2.0,
    )


@pytest.fixture
def recipes():
    return [
        make_recipe("r1", category="MAIN_DISH", cuisine="italian", ingredients=["pasta", "tomato", "basil"],
                    average_rating=4.8, rating_count=120, view_count=5000, tags=["quick"], meal_types=["DINNER"]),
        make_recipe("r2", category="SALAD", cuisine="greek", ingredients=["tomato", "cucumber", "feta"],
                    average_rating=4.2, rating_count=40, view_count=800, difficulty="EASY", total_time=15,
                    nutrition={"calories": 250, "protein": 8, "carbs": 12, "fat": 14}, meal_types=["LUNCH"]),
        make_recipe("r3", category="MAIN_DISH", cuisine="american", ingredients=["chicken", "rice"],
                    ingredient_categories={"chicken": "poultry"}, average_rating=4.5, rating_count=60,
                    nutrition={"calories": 600, "protein": 45, "carbs": 50, "fat": 18}, meal_types=["DINNER"]),
        make_recipe("r4", category="SOUP", cuisine="french", ingredients=["onion", "butter", "bread"],
                    ingredient_categories={"butter": "dairy", "bread": "gluten"}, average_rating=3.9,
                    rating_count=25, total_time=70, difficulty="HARD"),
        make_recipe("r5", category="BREAKFAST", cuisine="american", ingredients=["egg", "spinach"],
                    average_rating=4.1, rating_count=15, total_time=10, difficulty="EASY",
                    nutrition={"calories": 300, "protein": 22, "carbs": 5, "fat": 20}, meal_types=["BREAKFAST"]),
        make_recipe("r6", category="MAIN_DISH", cuisine="indian", ingredients=["lentil", "tomato", "onion"],
                    average_rating=4.6, rating_count=80, total_time=40, seasons=["WINTER"]),
        make_recipe("r7", category="DESSERT", ingredients=["sugar", "flour"], average_rating=2.5, rating_count=3),
        make_recipe("r8", category="MAIN_DISH", ingredients=["beef", "potato"], status="DRAFT",
                    ingredient_categories={"beef": "meat"}),
    ]


@pytest.fixture
def ratings():
    rows = {
        "alice": {"r1": 5, "r2": 4, "r3": 2, "r4": 3},
        "bob": {"r1": 5, "r2": 5, "r3": 1, "r4": 3, "r6": 5},
        "carol": {"r1": 4, "r2": 4, "r3": 2, "r6": 4, "r5": 3},
        "dave": {"r1": 2, "r2": 1, "r3": 5, "r4": 4, "r6": 1},
        "erin": {"r1": 5, "r2": 4, "r4": 2, "r6": 5, "r5": 4},
    }
    out = []
    for n, (user, items) in enumerate(rows.items()):
        for m, (item, value) in enumerate(items.items()):
            out.append(Rating(user, item, value, NOW - timedelta(days=n * 10 + m)))
    return out


@pytest.fixture
def repo(recipes, ratings) -> InMemoryRepository:
    return InMemoryRepository(
        recipes=recipes,
        ratings=ratings,
        favorites=[Favorite("alice", "r5", NOW)],
        views=[RecipeView("alice", "r7", NOW)],
        preferences=[
            UserPreference(
                member_id="alice",
                preferred_cuisines=["italian"],
                preferred_ingredients=["tomato"],
                avoided_ingredients=["feta"],
                max_cook_time=45,
            ),
        ],
        health_goals=[HealthGoal(member_id="alice", goal_type="LOSE_WEIGHT")],
        inventory={"alice": ["tomato", "onion", "egg"]},
    )
