# src/meal_recommender/schema.py
from __future__ import annotations

"""
schema.py

Purpose:
    Shared dataclasses for the recommendation pipeline.

    These are the "internal contracts" between:
      - the repository layer (Supabase rows, in-memory fixtures),
      - the scoring lanes (rule-based, collaborative, content),
      - the ranker / engine and its callers.

    Nothing in this module talks to storage directly. List-valued columns
    (tags, seasons, cuisines, allergies) arrive here already decoded into
    plain lists of strings.

Objects:
    - Recipe, Ingredient, NutritionProfile (catalog)
    - Rating, Favorite, RecipeView (behaviour)
    - UserPreference, HealthGoal, MemberProfile, LearnedPreferences (user)
    - RecommendationContext, RecommendationWeights, RecipeFilter (request)
    - Recommendation, RecommendationMetadata (output contract)
"""

from dataclasses import asdict, dataclass, field, fields, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

DIFFICULTY_ORDER = ["EASY", "MEDIUM", "HARD"]
COST_LEVELS = ["LOW", "MEDIUM", "HIGH"]

# Ingredient categories treated as meat for vegetarian / vegan gates
MEAT_CATEGORIES = frozenset({"meat", "poultry", "pork", "beef", "chicken", "fish", "seafood", "shrimp"})


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------
@dataclass
class Ingredient:
    name: str
    amount: float = 0.0
    unit: str = ""
    food_id: Optional[str] = None
    category: Optional[str] = None        # food category, e.g. "vegetable", "meat"


@dataclass
class NutritionProfile:
    """Per-serving nutrition; fiber and sodium are optional in the catalog."""

    calories: float = 0.0
    protein: float = 0.0
    carbs: float = 0.0
    fat: float = 0.0
    fiber: Optional[float] = None
    sodium: Optional[float] = None


@dataclass
class Recipe:
    id: str
    name: str
    category: str = "OTHER"               # MAIN_DISH, SOUP, SALAD, ...
    cuisine: Optional[str] = None
    difficulty: str = "MEDIUM"            # EASY | MEDIUM | HARD
    total_time: int = 0                   # minutes
    nutrition: NutritionProfile = field(default_factory=NutritionProfile)
    ingredients: List[Ingredient] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    meal_types: List[str] = field(default_factory=list)
    seasons: List[str] = field(default_factory=list)
    cost_level: str = "MEDIUM"
    estimated_cost: Optional[float] = None

    # Aggregates maintained by the catalog
    average_rating: float = 0.0
    rating_count: int = 0
    view_count: int = 0

    status: str = "PUBLISHED"
    is_public: bool = True
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_published(self) -> bool:
        return self.status == "PUBLISHED" and self.is_public

    @property
    def ingredient_names(self) -> List[str]:
        return [ing.name for ing in self.ingredients]


# ---------------------------------------------------------------------------
# Behaviour
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class Rating:
    user_id: str
    recipe_id: str
    value: float                           # 1..5
    rated_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class Favorite:
    user_id: str
    recipe_id: str
    favorited_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class RecipeView:
    user_id: str
    recipe_id: str
    viewed_at: datetime = field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# User
# ---------------------------------------------------------------------------
@dataclass
class UserPreference:
    member_id: str
    diet_type: str = "OMNIVORE"           # OMNIVORE | VEGETARIAN | VEGAN | ...
    is_vegetarian: bool = False
    is_vegan: bool = False
    is_low_carb: bool = False
    is_low_fat: bool = False
    is_high_protein: bool = False
    is_gluten_free: bool = False
    is_dairy_free: bool = False
    allergies: List[str] = field(default_factory=list)
    preferred_cuisines: List[str] = field(default_factory=list)
    preferred_ingredients: List[str] = field(default_factory=list)
    avoided_ingredients: List[str] = field(default_factory=list)
    spice_level: str = "MEDIUM"            # NONE | LOW | MEDIUM | HIGH | EXTREME
    cooking_skill: Optional[str] = None    # beginner | intermediate | advanced | expert
    max_cook_time: Optional[int] = None
    cost_level: str = "MEDIUM"
    max_estimated_cost: Optional[float] = None
    recommendation_weights: Optional[Dict[str, float]] = None

    @property
    def is_meat_free(self) -> bool:
        return self.is_vegetarian or self.is_vegan or self.diet_type in ("VEGETARIAN", "VEGAN")


@dataclass
class HealthGoal:
    member_id: str
    goal_type: str                         # LOSE_WEIGHT | GAIN_MUSCLE | MAINTAIN | IMPROVE_HEALTH
    status: str = "ACTIVE"
    target_weight: Optional[float] = None
    activity_level: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class MemberProfile:
    member_id: str
    age: Optional[int] = None
    gender: Optional[str] = None
    region: Optional[str] = None


@dataclass
class LearnedPreferences:
    member_id: str
    preferred_cuisines: List[str] = field(default_factory=list)
    preferred_ingredients: List[str] = field(default_factory=list)
    avg_rating: float = 0.0
    favorite_count: int = 0
    confidence: float = 0.0
    analyzed_at: datetime = field(default_factory=utcnow)

    def to_payload(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["analyzed_at"] = self.analyzed_at.isoformat()
        return payload


# ---------------------------------------------------------------------------
# Request
# ---------------------------------------------------------------------------
@dataclass
class RecommendationContext:
    user_id: str
    meal_type: Optional[str] = None        # BREAKFAST | LUNCH | DINNER | SNACK
    servings: Optional[int] = None
    max_cook_time: Optional[int] = None
    budget_limit: Optional[float] = None
    dietary_restrictions: List[str] = field(default_factory=list)
    excluded_ingredients: List[str] = field(default_factory=list)
    preferred_cuisines: List[str] = field(default_factory=list)
    season: Optional[str] = None           # SPRING | SUMMER | AUTUMN | WINTER
    exclude_recipe_ids: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class RecommendationWeights:
    inventory: float = 0.30
    price: float = 0.20
    nutrition: float = 0.30
    preference: float = 0.15
    seasonal: float = 0.05

    @classmethod
    def resolve(
        cls,
        stored: Optional[Dict[str, float]] = None,
        override: Optional[Dict[str, float]] = None,
    ) -> "RecommendationWeights":
        """Defaults, then stored per-user weights, then explicit request overrides."""
        names = {f.name for f in fields(cls)}
        merged = asdict(cls())
        for layer in (stored or {}, override or {}):
            for key, value in layer.items():
                if key in names and value is not None:
                    merged[key] = float(value)
        return cls(**merged)

    def as_dict(self) -> Dict[str, float]:
        return asdict(self)


@dataclass
class RecipeFilter:
    """Candidate query understood by every repository implementation."""

    meal_type: Optional[str] = None
    max_total_time: Optional[int] = None
    season: Optional[str] = None
    difficulty: Optional[str] = None
    cuisines: List[str] = field(default_factory=list)
    exclude_ids: List[str] = field(default_factory=list)
    exclude_ingredient_categories: List[str] = field(default_factory=list)
    min_nutrients: Dict[str, float] = field(default_factory=dict)   # e.g. {"protein": 25}
    max_nutrients: Dict[str, float] = field(default_factory=dict)   # e.g. {"calories": 400}
    min_average_rating: Optional[float] = None
    order_by: List[str] = field(default_factory=list)              # descending, e.g. ["rating_count"]
    limit: int = 30


# ---------------------------------------------------------------------------
# Output contract
# ---------------------------------------------------------------------------
METADATA_KEYS = ("inventory_match", "price_match", "nutrition_match", "preference_match", "seasonal_match")


@dataclass
class RecommendationMetadata:
    """Per-dimension match ratios, each clamped to [0, 1]."""

    inventory_match: float = 0.0
    price_match: float = 0.0
    nutrition_match: float = 0.0
    preference_match: float = 0.0
    seasonal_match: float = 0.0

    def __post_init__(self) -> None:
        for key in METADATA_KEYS:
            setattr(self, key, clamp(float(getattr(self, key)), 0.0, 1.0))


@dataclass
class Recommendation:
    recipe_id: str
    score: float                           # clamped to [0, 100]
    reasons: List[str] = field(default_factory=list)
    explanation: str = ""
    metadata: RecommendationMetadata = field(default_factory=RecommendationMetadata)

    def __post_init__(self) -> None:
        self.score = clamp(float(self.score), 0.0, 100.0)

    def with_score(self, score: float) -> "Recommendation":
        return replace(self, score=score)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
