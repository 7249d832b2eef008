"""
Built-in food vocabulary and lookup predicates.

All tables are process-wide constants (frozensets / compiled regexes /
read-only mappings). Nothing here keeps state between requests.
"""

import re
from types import MappingProxyType
from typing import Iterable

from .types import KIND_OBJECT, RawDetection


def _word_pattern(terms: Iterable[str]) -> "re.Pattern[str]":
    # Longest first so multi-word terms win over their prefixes
    alternation = "|".join(
        re.escape(t) for t in sorted(set(terms), key=len, reverse=True)
    )
    return re.compile(rf"\b(?:{alternation})(?:es|s)?\b", re.IGNORECASE)


# -----------------------------------
# Allowlist: always food, even if a junk word is present too
# -----------------------------------

PROTEIN_TERMS = frozenset({
    "salmon", "tuna", "cod", "trout", "tilapia", "halibut", "sardine", "fish",
    "shrimp", "prawn", "crab", "lobster", "scallop", "mussel", "squid",
    "chicken", "turkey", "duck", "beef", "steak", "pork", "ham", "bacon",
    "lamb", "sausage", "meatball", "egg", "tofu", "tempeh", "bean", "lentil",
    "chickpea", "edamame", "meat", "seafood",
})

VEGETABLE_TERMS = frozenset({
    "asparagus", "broccoli", "cauliflower", "spinach", "kale", "lettuce",
    "arugula", "cabbage", "carrot", "tomato", "cucumber", "pepper", "zucchini",
    "eggplant", "onion", "garlic", "mushroom", "pea", "corn", "celery", "beet",
    "radish", "brussels sprout", "green bean", "salad", "leek", "squash",
    "pumpkin", "olive",
})

GRAIN_TERMS = frozenset({
    "rice", "pasta", "noodle", "spaghetti", "macaroni", "bread", "toast",
    "bagel", "tortilla", "potato", "sweet potato", "quinoa", "oat", "oatmeal",
    "couscous", "barley", "cereal", "waffle", "pancake", "granola", "fries",
})

DAIRY_TERMS = frozenset({
    "cheese", "yogurt", "yoghurt", "milk", "cream", "feta", "mozzarella",
    "parmesan", "cottage cheese",
})

FAT_TERMS = frozenset({
    "butter", "olive oil", "oil", "avocado", "almond", "walnut", "peanut",
    "cashew", "nut", "seed",
})

FRUIT_TERMS = frozenset({
    "apple", "banana", "orange", "lemon", "lime", "berry", "berries",
    "strawberry", "blueberry", "raspberry", "blackberry", "grape", "mango",
    "pineapple", "melon", "watermelon", "peach", "pear", "plum", "kiwi",
    "cherry", "cherries", "grapefruit", "pomegranate", "fig", "apricot",
})

FOOD_ALLOWLIST_RE = _word_pattern(
    PROTEIN_TERMS | VEGETABLE_TERMS | GRAIN_TERMS | DAIRY_TERMS | FAT_TERMS | FRUIT_TERMS
)

# -----------------------------------
# Junk: tableware, cutlery, packaging, brand/logo, generic dish/recipe words
# -----------------------------------

JUNK_TERMS = frozenset({
    # tableware / serveware
    "plate", "platter", "bowl", "dish", "dishware", "tableware", "serveware",
    "tray", "placemat", "tablecloth", "table", "cup", "glass", "mug",
    "saucer", "napkin",
    # cutlery
    "cutlery", "silverware", "utensil", "fork", "knife", "knives", "spoon",
    "chopsticks",
    # packaging
    "container", "packaging", "package", "packet", "wrapper", "box", "bag",
    "jar", "bottle", "can", "lid",
    # brand / logo / text
    "brand", "logo", "label", "text", "font", "trademark",
    # generic dish / recipe / scene words
    "recipe", "cuisine", "food", "meal", "ingredient", "produce", "garnish",
    "breakfast", "lunch", "dinner", "brunch", "gastronomy", "culinary arts",
    "cooking", "staple food", "superfood", "natural foods", "fast food",
    "junk food", "comfort food", "finger food", "whole food", "vegan nutrition",
    "kitchen", "restaurant", "background", "surface", "still life",
    # plant / scene labels
    "plant", "leaf", "leaves", "flower", "houseplant",
})

JUNK_RE = _word_pattern(JUNK_TERMS)

# -----------------------------------
# Vegetable / fruit keywords (loose, bidirectional substring)
# -----------------------------------

VEG_KEYWORDS = frozenset({
    "asparagus", "broccoli", "cauliflower", "spinach", "kale", "lettuce",
    "arugula", "cabbage", "carrot", "tomato", "cucumber", "pepper", "zucchini",
    "eggplant", "onion", "garlic", "mushroom", "pea", "corn", "celery", "beet",
    "radish", "brussels sprout", "green bean", "salad", "leek", "squash",
    "pumpkin", "vegetable", "veggie", "greens",
})

FRUIT_KEYWORDS = frozenset({
    "apple", "banana", "orange", "lemon", "lime", "berry", "berries",
    "strawberry", "blueberry", "raspberry", "grape", "mango", "pineapple",
    "melon", "peach", "pear", "plum", "kiwi", "cherry", "cherries",
    "grapefruit", "pomegranate", "fig", "apricot", "fruit",
})

VEG_FRUIT_KEYWORDS = VEG_KEYWORDS | FRUIT_KEYWORDS

# -----------------------------------
# Gpt-first filtering
# -----------------------------------

HARD_REJECT = frozenset({
    "plate", "dish", "bowl", "table", "tableware", "cutlery", "silverware",
    "utensil", "fork", "knife", "spoon", "chopsticks", "napkin", "tray",
    "placemat", "glass", "cup", "container", "wrapper", "package",
})

CONDIMENT_TERMS = frozenset({
    "syrup", "maple syrup", "sauce", "soy sauce", "hot sauce", "ketchup",
    "mayo", "mayonnaise", "mustard", "dressing", "gravy", "relish", "salsa",
    "jam", "jelly", "honey", "vinegar", "aioli", "sriracha",
})

CONDIMENT_RE = _word_pattern(CONDIMENT_TERMS)

ALLOWED_CATEGORIES = frozenset({"protein", "vegetable", "fruit", "grain", "dairy", "fat"})

CATEGORY_ALIASES = MappingProxyType({
    "protein": "protein",
    "proteins": "protein",
    "meat": "protein",
    "fish": "protein",
    "seafood": "protein",
    "vegetable": "vegetable",
    "vegetables": "vegetable",
    "veg": "vegetable",
    "veggie": "vegetable",
    "fruit": "fruit",
    "fruits": "fruit",
    "grain": "grain",
    "grains": "grain",
    "starch": "grain",
    "carb": "grain",
    "carbs": "grain",
    "dairy": "dairy",
    "fat": "fat",
    "fats": "fat",
    "fat_oil": "fat",
    "oil": "fat",
    "nuts": "fat",
    "sauce": "condiment",
    "sauce_condiment": "condiment",
    "condiment": "condiment",
    "condiments": "condiment",
})

_PROTEIN_RE = _word_pattern(PROTEIN_TERMS)
_DAIRY_RE = _word_pattern(DAIRY_TERMS)
_GRAIN_RE = _word_pattern(GRAIN_TERMS)
_FAT_RE = _word_pattern(FAT_TERMS)
_VEG_RE = _word_pattern(VEG_KEYWORDS)
_FRUIT_RE = _word_pattern(FRUIT_KEYWORDS)


def _normalize(text: str) -> str:
    return " ".join((text or "").lower().split())


def is_foodish(text: str) -> bool:
    """Allowlist beats junk; anything neither allowlisted nor junk passes."""
    cleaned = (text or "").strip()
    if len(cleaned) <= 2:
        return False
    if FOOD_ALLOWLIST_RE.search(cleaned):
        return True
    if JUNK_RE.search(cleaned):
        return False
    return True


def is_vegetable_or_fruit(text: str) -> bool:
    normalized = _normalize(text)
    if not normalized:
        return False
    return any(kw in normalized or normalized in kw for kw in VEG_FRUIT_KEYWORDS)


def is_hard_rejected(text: str) -> bool:
    return _normalize(text) in HARD_REJECT


def is_condiment(text: str) -> bool:
    return bool(CONDIMENT_RE.search(text or ""))


def source_priority_key(detection: RawDetection):
    return (0 if detection.kind == KIND_OBJECT else 1, -(detection.confidence or 0.0))


def compare_source_priority(a: RawDetection, b: RawDetection) -> int:
    """
    Objects before labels, then higher confidence first.

    Ranks detections of one source only; cross-source order is decided by fusion.
    """
    ka, kb = source_priority_key(a), source_priority_key(b)
    return (ka > kb) - (ka < kb)


def normalize_category(raw) -> str:
    if not raw:
        return "other"
    return CATEGORY_ALIASES.get(_normalize(str(raw)), "other")


def infer_category(name: str) -> str:
    """Best-effort category for names that arrive without one (vision detections)."""
    if is_condiment(name):
        return "condiment"
    if _PROTEIN_RE.search(name or ""):
        return "protein"
    if _DAIRY_RE.search(name or ""):
        return "dairy"
    if _GRAIN_RE.search(name or ""):
        return "grain"
    if _FAT_RE.search(name or ""):
        return "fat"
    if _VEG_RE.search(name or ""):
        return "vegetable"
    if _FRUIT_RE.search(name or ""):
        return "fruit"
    if is_vegetable_or_fruit(name):
        # loose substring hit only, e.g. "veggies"
        return "vegetable"
    return "other"
