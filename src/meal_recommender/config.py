"""
config.py

Purpose:
    - get_supabase_client(): Supabase Python client built from environment variables.
    - get_settings(): recommender tuning knobs (cache TTLs, matrix minimums,
      lane timeout) read once from the environment and memoised.

Usage:
    from meal_recommender.config import get_settings, get_supabase_client
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from functools import lru_cache

# Client connection details are never hardcoded; they come from the environment.
from supabase import Client, create_client

from dotenv import load_dotenv  # Load environment variables from .env file

from meal_recommender.logging_utils import log_warning

load_dotenv()  # loads .env

MODULE_PURPOSE = "Load recommender settings and create the Supabase client"


def get_supabase_client() -> Client:
    """Create a Supabase client using env vars."""
    url = os.environ["SUPABASE_URL"]
    key = os.environ["SUPABASE_SERVICE_ROLE_KEY"]  # service role: reads every member's ratings
    return create_client(url, key)


def _env_number(name: str, default: float, cast=float):
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return cast(default)
    try:
        return cast(raw)
    except ValueError:
        log_warning(
            f"Invalid value {raw!r} for {name}; using default {default}",
            module_purpose=MODULE_PURPOSE,
            invoking_function="get_settings",
            invoking_purpose="Read recommender settings from environment",
            next_step="Continue with default value",
            resolution=f"Set {name} to a number in .env",
        )
        return cast(default)


@dataclass(frozen=True)
class RecommenderSettings:
    matrix_ttl_seconds: float = 3600.0
    similarity_ttl_seconds: float = 3600.0
    cache_max_size: int = 50_000
    min_ratings_per_user: int = 5
    min_ratings_per_item: int = 5
    lane_timeout_seconds: float = 5.0
    profile_ttl_seconds: float = 300.0
    log_level: int = logging.INFO


@lru_cache(maxsize=1)
def get_settings() -> RecommenderSettings:
    level_name = os.getenv("RECO_LOG_LEVEL", "INFO").upper()
    return RecommenderSettings(
        matrix_ttl_seconds=_env_number("RECO_MATRIX_TTL_SECONDS", 3600.0),
        similarity_ttl_seconds=_env_number("RECO_SIMILARITY_TTL_SECONDS", 3600.0),
        cache_max_size=_env_number("RECO_CACHE_MAX_SIZE", 50_000, int),
        min_ratings_per_user=_env_number("RECO_MIN_RATINGS_PER_USER", 5, int),
        min_ratings_per_item=_env_number("RECO_MIN_RATINGS_PER_ITEM", 5, int),
        lane_timeout_seconds=_env_number("RECO_LANE_TIMEOUT_SECONDS", 5.0),
        profile_ttl_seconds=_env_number("RECO_PROFILE_TTL_SECONDS", 300.0),
        log_level=getattr(logging, level_name, logging.INFO),
    )
