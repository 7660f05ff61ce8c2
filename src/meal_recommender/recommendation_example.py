"""
recommendation_example.py

Example usage of the RecommendationEngine.

Run:
  python -m meal_recommender.recommendation_example --user-id <uuid>
  python -m meal_recommender.recommendation_example --user-id m1 --fixture tests/fixtures/catalog.json --refresh

Requires (without --fixture):
  SUPABASE_URL
  SUPABASE_SERVICE_ROLE_KEY
"""
from __future__ import annotations

import argparse
import asyncio
from typing import List

from meal_recommender.config import get_settings, get_supabase_client
from meal_recommender.engine import RecommendationEngine
from meal_recommender.logging_utils import init_logging
from meal_recommender.repository.base import RecommendationRepository
from meal_recommender.repository.memory import InMemoryRepository
from meal_recommender.schema import Recommendation, RecommendationContext


def _print(title: str, recs: List[Recommendation]) -> None:
    print(title)
    for i, r in enumerate(recs, start=1):
        print(f"{i:02d}. {r.recipe_id}  score={r.score:.1f}")
        print("    -", r.explanation)
        for reason in r.reasons:
            print("    *", reason)


async def _run(args: argparse.Namespace) -> None:
    repo: RecommendationRepository
    if args.fixture:
        repo = InMemoryRepository.from_json(args.fixture)
    else:
        from meal_recommender.repository.supabase_repository import SupabaseRecommendationRepository

        repo = SupabaseRecommendationRepository(get_supabase_client())

    engine = RecommendationEngine(repo)
    context = RecommendationContext(user_id=args.user_id, meal_type=args.meal_type)

    first = await engine.get_recommendations(context, limit=args.limit)
    _print("Recommendations", first)

    if args.refresh:
        again = await engine.refresh_recommendations(context, [r.recipe_id for r in first], limit=args.limit)
        _print("\nRefreshed", again)


def main() -> None:
    ap = argparse.ArgumentParser()
    ap.add_argument("--user-id", required=True)
    ap.add_argument("--limit", type=int, default=10)
    ap.add_argument("--meal-type", default=None, help="BREAKFAST | LUNCH | DINNER | SNACK")
    ap.add_argument("--fixture", default=None, help="JSON fixture for the in-memory repository")
    ap.add_argument("--refresh", action="store_true", help="Ask again, excluding the first batch")
    args = ap.parse_args()

    init_logging(get_settings().log_level)
    asyncio.run(_run(args))


if __name__ == "__main__":
    main()
