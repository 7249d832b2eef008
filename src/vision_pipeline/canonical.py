"""
Name canonicalization and fuzzy matching.

canonicalize() turns a free-text detector name into the key used for
deduplication; similarity() scores two such keys. Both are pure.
"""

import re
from types import MappingProxyType

PREPARATION_WORDS = ("cooked", "grilled", "baked", "fried", "raw", "fresh")

_PREPARATION_RE = re.compile(r"\b(?:%s)\b" % "|".join(PREPARATION_WORDS))
_WHITESPACE_RE = re.compile(r"\s+")

# Keys are what canonicalize() produces *before* the lookup: lowercased,
# preparation words removed, one trailing "s" dropped. That is why plural
# forms show up here as "tomatoe", "asparagu" and so on.
# Visually / nutritionally different foods stay separate ("cherry tomato"
# is not folded into "tomato", "brown rice" is not "rice").
SYNONYMS = MappingProxyType({
    # fish
    "salmon fillet": "salmon",
    "salmon filet": "salmon",
    "salmon steak": "salmon",
    "atlantic salmon": "salmon",
    "prawn": "shrimp",
    "jumbo shrimp": "shrimp",
    # poultry / eggs / legumes
    "chicken fillet": "chicken breast",
    "chicken filet": "chicken breast",
    "boiled egg": "egg",
    "hard boiled egg": "egg",
    "garbanzo bean": "chickpea",
    # vegetables
    "asparagu": "asparagus",
    "asparagus spear": "asparagus",
    "asparagus tip": "asparagus",
    "green asparagu": "asparagus",
    "tomatoe": "tomato",
    "cherry tomatoe": "cherry tomato",
    "grape tomato": "cherry tomato",
    "grape tomatoe": "cherry tomato",
    "potatoe": "potato",
    "sweet potatoe": "sweet potato",
    "broccoli floret": "broccoli",
    "cauliflower floret": "cauliflower",
    "brussel sprout": "brussels sprout",
    "lettuce leave": "lettuce",
    "scallion": "green onion",
    "spring onion": "green onion",
    "capsicum": "bell pepper",
    "courgette": "zucchini",
    "aubergine": "eggplant",
    "avocado slice": "avocado",
    "avocado half": "avocado",
    # fruit (citrus variants collapse to the plain fruit)
    "lemon slice": "lemon",
    "lemon wedge": "lemon",
    "meyer lemon": "lemon",
    "sweet lemon": "lemon",
    "lime slice": "lime",
    "lime wedge": "lime",
    "key lime": "lime",
    "persian lime": "lime",
    "strawberrie": "strawberry",
    "blueberrie": "blueberry",
    "raspberrie": "raspberry",
    "berrie": "berry",
    "cherrie": "cherry",
    # grains / starches
    "white rice": "rice",
    "steamed rice": "rice",
    "penne": "pasta",
    "fusilli": "pasta",
    "frie": "french fries",
    "french frie": "french fries",
    "couscou": "couscous",
    # dairy / spreads
    "yoghurt": "yogurt",
    "greek yoghurt": "greek yogurt",
    "hummu": "hummus",
})


def canonicalize(raw: str) -> str:
    """
    Map a raw detector name to its canonical head term.

    Steps: lowercase/trim → drop preparation adjectives → drop one trailing
    "s" from the phrase → collapse whitespace → synonym lookup.

    The trailing-"s" rule is intentionally blunt ("hummus" → "hummu") and
    the synonym table compensates for the cases that matter.
    """
    phrase = (raw or "").lower().strip()
    phrase = _PREPARATION_RE.sub(" ", phrase).strip()
    if phrase.endswith("s"):
        phrase = phrase[:-1]
    phrase = _WHITESPACE_RE.sub(" ", phrase).strip()
    return SYNONYMS.get(phrase, phrase)


def similarity(a: str, b: str) -> float:
    """
    Containment shortcut (0.9) or token-set Jaccard over whitespace tokens.
    """
    left = (a or "").lower()
    right = (b or "").lower()
    if not left.strip() or not right.strip():
        return 0.0

    if left in right or right in left:
        return 0.9

    left_tokens = set(left.split())
    right_tokens = set(right.split())
    union = left_tokens | right_tokens
    if not union:
        return 0.0
    return len(left_tokens & right_tokens) / len(union)
