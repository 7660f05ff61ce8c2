# src/meal_recommender/logging_utils.py
"""
Shared structured logging utilities for the recommendation pipeline.

One place to define:
  * Run / execution ID
  * Log line format
  * Module "purposes" in human language

Format (one line per log entry):
<RunId>|<Date>|<Time>|<Level>|<File:Line>|<Module.Func>|<ModulePurpose>|
<InvokingFunc>|<InvokingFuncPurpose>|<Detail>|<NextStep>|<Resolution>|<END>

Two interfaces are available:
  - get_logger(name) + logger.info(..., extra={...})   (preferred inside services)
  - log_info / log_warning / log_error                 (one-shot helpers for scripts)
"""

from __future__ import annotations

import datetime
import logging
import uuid
from typing import Dict, Optional

LOG_RUN_ID: str = uuid.uuid4().hex[:8]
# Alias for scripts that use RUN_ID
RUN_ID: str = LOG_RUN_ID

_BASE_LOGGER_NAME = "meal_recommender"


class StructuredFormatter(logging.Formatter):
    """
    Formatter that emits a single '|' separated line conforming to the
    structured log template above.
    """

    # High-level purposes by module name (record.module)
    MODULE_PURPOSES: Dict[str, str] = {
        "config": "Load recommender settings and create the Supabase client",
        "cache": "TTL cache shared by the matrix builder and similarity calculator",
        "memory": "In-memory repository used for tests, demos and offline evaluation",
        "supabase_repository": "Read ratings, recipes and preferences from Supabase tables",
        "matrix": "Build immutable user x recipe rating matrix snapshots",
        "similarity": "Pairwise user/item similarity with metric-aware caching",
        "neighbors": "Select bounded, weighted neighbor sets from similarity scores",
        "predictor": "Predict unseen ratings from neighbors with confidence and fallback",
        "cold_start": "Recommend recipes to users without enough interaction history",
        "collaborative_filter": "Collaborative lane: predicted ratings for unseen recipes",
        "content_filter": "Content lane: score recipes against a learned taste profile",
        "rule_based": "Rule lane: heuristic scoring from inventory, budget, goals and season",
        "ranker": "Blend lane scores with popularity, freshness and quality, then diversify",
        "engine": "Orchestrate lanes, merge candidates, rank and explain recommendations",
        "recommendation_example": "Command line demo of the recommendation engine",
    }

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        """Format log record into structured pipe-delimited format."""
        dt = datetime.datetime.fromtimestamp(record.created)
        date_str = dt.strftime("%Y-%m-%d")
        time_str = dt.strftime("%H:%M:%S")

        run_id = getattr(record, "run_id", RUN_ID)

        level = record.levelname
        code_location = f"{record.filename}:{record.lineno}"
        module_name = record.module
        module_purpose = getattr(record, "module_purpose", "") or self.MODULE_PURPOSES.get(module_name, "")

        # Optional extra context supplied via logger calls
        invoking_func = getattr(record, "invoking_func", "")
        invoking_purpose = getattr(record, "invoking_purpose", "")
        next_step = getattr(record, "next_step", "")
        resolution = getattr(record, "resolution", "")

        detail = record.getMessage()
        if record.exc_info:
            detail = f"{detail} EXC={record.exc_info[1]!r}"

        return (
            f"{run_id}|{date_str}|{time_str}|{level}|{code_location}|"
            f"{module_name}.{record.funcName}|{module_purpose}|"
            f"{invoking_func}|{invoking_purpose}|"
            f"{detail}|{next_step}|{resolution}|<END>"
        )


def init_logging(level: Optional[int] = None) -> None:
    """
    Initialize the root logger once with StructuredFormatter.

    Call get_logger() from modules instead of logging.basicConfig()
    so configuration stays central. An explicit level is applied even
    when a handler is already installed.
    """
    root = logging.getLogger()
    if root.handlers:
        # Already configured (REPL, notebooks, pytest caplog)
        if level is not None:
            root.setLevel(level)
        return

    handler = logging.StreamHandler()
    handler.setFormatter(StructuredFormatter())
    root.addHandler(handler)
    root.setLevel(logging.INFO if level is None else level)


def get_logger(name: str) -> logging.Logger:
    """
    Return a logger configured with structured formatting.

    Usage:
        logger = get_logger("engine")
        logger.info(
            "Lane finished",
            extra={
                "invoking_func": "get_recommendations",
                "invoking_purpose": "Fan out to scoring lanes",
                "next_step": "Merge candidates",
                "resolution": "",
            },
        )
    """
    init_logging()
    return logging.getLogger(f"{_BASE_LOGGER_NAME}.{name}")


def _log(
    level: int,
    message: str,
    *,
    module_purpose: str,
    invoking_function: str = "",
    invoking_purpose: str = "",
    next_step: str = "",
    resolution: str = "",
    exc: Optional[BaseException] = None,
) -> None:
    logger = get_logger("script")
    logger.log(
        level,
        message,
        exc_info=exc,
        stacklevel=3,
        extra={
            "module_purpose": module_purpose,
            "invoking_func": invoking_function,
            "invoking_purpose": invoking_purpose,
            "next_step": next_step,
            "resolution": resolution,
        },
    )


def log_info(message: str, *, module_purpose: str, **context: str) -> None:
    _log(logging.INFO, message, module_purpose=module_purpose, **context)


def log_warning(message: str, *, module_purpose: str, **context: str) -> None:
    _log(logging.WARNING, message, module_purpose=module_purpose, **context)


def log_error(
    message: str,
    *,
    module_purpose: str,
    exc: Optional[BaseException] = None,
    **context: str,
) -> None:
    _log(logging.ERROR, message, module_purpose=module_purpose, exc=exc, **context)
