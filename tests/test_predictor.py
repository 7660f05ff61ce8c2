import math

import pytest

from meal_recommender.collaborative.matrix import RatingMatrixBuilder, matrix_from_ratings
from meal_recommender.collaborative.neighbors import NeighborConfig, NeighborSelector
from meal_recommender.collaborative.predictor import PredictorConfig, RatingPredictor, prediction_confidence
from meal_recommender.collaborative.similarity import SimilarityCalculator
from meal_recommender.errors import InsufficientNeighborsError


def _predictor(settings, **config):
    selector = NeighborSelector(SimilarityCalculator(settings=settings), NeighborConfig(min_common_items=1))
    return RatingPredictor(selector, PredictorConfig(**config))


@pytest.fixture
def matrix(repo, settings):
    return RatingMatrixBuilder(repo, settings=settings).build()


def test_confidence_formula():
    assert prediction_confidence(20, 20) == pytest.approx(1.0)
    assert prediction_confidence(5, 10) == pytest.approx(0.5 * 0.4 + 0.25 * 0.6)
    assert prediction_confidence(0, 0) == 0.0


def test_existing_rating_returned_as_is(matrix, settings):
    p = _predictor(settings).predict(matrix, "alice", "r1")
    assert p.method == "existing"
    assert p.predicted_rating == 5
    assert p.confidence == 1.0


@pytest.mark.parametrize("method", ["user_based", "item_based", "hybrid", "matrix_factorization"])
def test_predictions_stay_in_bounds(matrix, settings, method):
    predictor = _predictor(settings, method=method, min_neighbors=1, confidence_threshold=0.0)
    for user in matrix.users:
        for item in matrix.items:
            p = predictor.predict(matrix, user, item)
            assert 1.0 <= p.predicted_rating <= 5.0
            assert 0.0 <= p.confidence <= 1.0


def test_too_few_neighbors_falls_back_to_item_average(settings):
    matrix = matrix_from_ratings({"a": {"x": 4}, "b": {"x": 2, "y": 5}})
    p = _predictor(settings, method="user_based", min_neighbors=3).predict(matrix, "a", "y")
    assert p.method == "user_based_fallback"
    assert p.confidence <= 0.1
    assert p.predicted_rating == 5.0


def test_fallback_disabled_raises(settings):
    matrix = matrix_from_ratings({"a": {"x": 4}, "b": {"x": 2, "y": 5}})
    predictor = _predictor(settings, method="user_based", min_neighbors=3, fallback_to_global=False)
    with pytest.raises(InsufficientNeighborsError):
        predictor.predict(matrix, "a", "y")


def test_low_confidence_prediction_is_replaced(matrix, settings):
    # Few neighbors -> confidence well under 0.9
    p = _predictor(settings, method="user_based", min_neighbors=1, confidence_threshold=0.9).predict(
        matrix, "alice", "r6"
    )
    assert p.method == "user_based_fallback"
    assert p.confidence == pytest.approx(0.1)


def test_predict_top_n_orders_by_rating_then_confidence(matrix, settings):
    predictor = _predictor(settings, min_neighbors=1, confidence_threshold=0.0)
    top = predictor.predict_top_n(matrix, "alice", ["r6", "r1", "r2"], n=2)
    assert len(top) == 2
    assert top[0].predicted_rating >= top[1].predicted_rating


def test_update_config_validates_method(settings):
    predictor = _predictor(settings)
    with pytest.raises(ValueError):
        predictor.update_config(method="svd")
    assert predictor.update_config(min_neighbors=2).min_neighbors == 2
    assert predictor.get_config()["min_neighbors"] == 2


def test_evaluate_hides_test_ratings(matrix, settings):
    predictor = _predictor(settings, min_neighbors=1, confidence_threshold=0.0)
    report = predictor.evaluate(matrix, "bob", {"r6": 5, "r3": 1})
    assert report.evaluated == 2
    assert report.mae >= 0.0
    assert report.rmse >= report.mae
    assert 0.0 <= report.coverage <= 1.0
    assert report.recall in (0.0, 1.0)


def test_evaluate_metrics_by_hand(settings):
    matrix = matrix_from_ratings({
        "u": {"a": 5, "b": 2, "c": 4},
        "v": {"a": 4, "b": 3, "c": 4},
        "w": {"a": 5, "b": 1},
    })
    predictor = _predictor(settings, method="matrix_factorization", confidence_threshold=0.0)
    # Without u's a/b ratings: global 3.5, u 4.0, a 4.5, b 2.0 -> a=4.5, b=3.25
    report = predictor.evaluate(matrix, "u", {"a": 5, "b": 2})
    assert report.evaluated == 2
    assert report.mae == pytest.approx(0.875)
    assert report.rmse == pytest.approx(math.sqrt(0.90625))
    assert report.coverage == pytest.approx(1.0)
    # top-5 is {a, b}; only a is relevant
    assert report.precision == pytest.approx(0.5)
    assert report.recall == pytest.approx(1.0)
