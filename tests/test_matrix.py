import json
from datetime import timedelta

import pytest

from meal_recommender.collaborative.matrix import RatingMatrixBuilder, factorize, matrix_from_ratings
from meal_recommender.errors import EmptyMatrixError
from meal_recommender.repository.memory import InMemoryRepository
from meal_recommender.schema import Favorite, Rating

from conftest import NOW


def test_favorite_counts_as_five_only_without_explicit_rating(settings):
    repo = InMemoryRepository(
        ratings=[Rating("u1", "a", 2, NOW)],
        favorites=[Favorite("u1", "a", NOW), Favorite("u1", "b", NOW)],
    )
    matrix = RatingMatrixBuilder(repo, settings=settings).build()
    assert matrix.get_rating("u1", "a") == 2
    assert matrix.get_rating("u1", "b") == 5


def test_two_pass_filter_drops_light_users_then_rare_items(settings):
    ratings = [
        Rating("u1", "a", 4, NOW), Rating("u1", "b", 3, NOW),
        Rating("u2", "a", 5, NOW), Rating("u2", "b", 2, NOW),
        Rating("u3", "c", 5, NOW),                      # one rating: dropped in pass one
    ]
    repo = InMemoryRepository(ratings=ratings)
    matrix = RatingMatrixBuilder(repo, settings=settings).build(min_ratings_per_user=2, min_ratings_per_item=2)
    assert matrix.users == ("u1", "u2")
    assert matrix.items == ("a", "b")
    assert matrix.sparsity == 0.0


def test_empty_matrix_raises(settings):
    repo = InMemoryRepository(ratings=[Rating("u1", "a", 4, NOW)])
    with pytest.raises(EmptyMatrixError):
        RatingMatrixBuilder(repo, settings=settings).build(min_ratings_per_user=5)


def test_since_cutoff_limits_ratings(settings):
    repo = InMemoryRepository(
        ratings=[Rating("u1", "a", 4, NOW), Rating("u1", "b", 4, NOW - timedelta(days=30))]
    )
    matrix = RatingMatrixBuilder(repo, settings=settings).build(since=NOW - timedelta(days=1))
    assert matrix.items == ("a",)


def test_build_is_cached_per_parameters(repo, settings):
    builder = RatingMatrixBuilder(repo, settings=settings)
    assert builder.build() is builder.build()
    assert builder.build(min_ratings_per_user=2) is not builder.build()


def test_update_returns_new_snapshot_and_recomputes_touched_averages(repo, settings):
    builder = RatingMatrixBuilder(repo, settings=settings)
    stale = []
    builder.on_invalidate(stale.append)
    matrix = builder.build()
    before = dict(matrix.user_averages)

    updated = builder.update(matrix, [Rating("alice", "r6", 5, NOW), Rating("zoe", "r1", 9, NOW)])

    assert matrix.get_rating("alice", "r6") is None
    assert updated.get_rating("alice", "r6") == 5
    assert updated.user_averages["alice"] == pytest.approx((5 + 4 + 2 + 3 + 5 + 5) / 6)  # r5 is a favorite
    assert updated.user_averages["bob"] == before["bob"]
    assert not updated.has_user("zoe")
    assert stale == [matrix.version]
    assert builder.build() is updated


def test_averages_round_trip_through_json(repo, settings):
    first = RatingMatrixBuilder(repo, settings=settings).build()
    serialized = json.dumps(first.averages_dict())
    second = RatingMatrixBuilder(repo, settings=settings).build()
    assert json.loads(serialized) == json.loads(json.dumps(second.averages_dict()))


def test_statistics_distribution_and_activity(repo, settings):
    builder = RatingMatrixBuilder(repo, settings=settings)
    stats = builder.statistics()
    assert stats.total_users == 5
    assert sum(stats.rating_distribution.values()) == stats.total_ratings
    assert stats.user_activity["bob"] == 5


def test_clear_cache_notifies_listeners(repo, settings):
    builder = RatingMatrixBuilder(repo, settings=settings)
    stale = []
    builder.on_invalidate(stale.append)
    matrix = builder.build()
    builder.clear_cache()
    assert stale == [matrix.version]
    assert builder.cache_status()["size"] == 0


def test_vector_helpers():
    matrix = matrix_from_ratings({"a": {"x": 5, "y": 4}, "b": {"x": 5, "y": 5, "z": 3}})
    assert matrix.common_items("a", "b") == {"x": (5, 5), "y": (4, 5)}
    assert matrix.common_users("x", "z") == {"b": (5, 3)}
    assert dict(matrix.item_vector("z")) == {"b": 3}
    assert matrix.sparsity == pytest.approx(1 - 5 / 6)


def test_factorize_is_deterministic_and_bounded():
    matrix = matrix_from_ratings({"a": {"x": 5, "y": 1}, "b": {"x": 4, "y": 2}, "c": {"x": 5}})
    one = factorize(matrix, factors=4, iterations=20, seed=7)
    two = factorize(matrix, factors=4, iterations=20, seed=7)
    assert one.training_rmse == two.training_rmse
    value = one.predict("c", "y")
    assert 1.0 <= value <= 5.0
    assert one.predict("nobody", "x") is None
