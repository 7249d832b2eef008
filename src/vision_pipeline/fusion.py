import logging
from typing import Iterable, List, Sequence

from .canonical import canonicalize, similarity
from .lexicon import is_foodish, source_priority_key
from .types import (
    ORIGIN_PRIMARY,
    ORIGIN_SECONDARY,
    FusedFoodItem,
    RawDetection,
)

logger = logging.getLogger(__name__)

DEFAULT_SIMILARITY_THRESHOLD = 0.85
DEFAULT_FUSION_CAP = 8


def build_seed_list(detections: Iterable[RawDetection]) -> List[RawDetection]:
    """
    Drop non-food detections and rank the rest (objects first, then score).
    """
    kept = [d for d in detections if is_foodish(d.name)]
    return sorted(kept, key=source_priority_key)


def _rank_key(item: FusedFoodItem):
    return (0 if item.bounding_box is not None else 1, -(item.confidence or 0.0))


def fuse(
    primary_items: Sequence[RawDetection],
    secondary_names: Sequence[str],
    threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
    cap: int = DEFAULT_FUSION_CAP,
) -> List[FusedFoodItem]:
    """
    Merge boxed/scored vision detections with GPT free-text names.

    1. One item per primary detection (box and score carried verbatim).
    2. Each secondary name joins the first existing item it matches
       (exact name or similarity >= threshold); otherwise it is appended
       as a secondary-only item.
    3. Boxed items first, then by confidence (missing counts as 0).
    4. Keep the first `cap` items.

    First match wins; this is a greedy scan, not an optimal assignment.
    """
    items: List[FusedFoodItem] = []
    by_name = {}

    for det in primary_items or []:
        name = canonicalize(det.name)
        if not name or name in by_name:
            # exact canonical collision: first (best ranked) detection wins
            continue
        item = FusedFoodItem(
            canonical_name=name,
            origin_set=frozenset({ORIGIN_PRIMARY}),
            bounding_box=det.bounding_box,
            confidence=det.confidence,
        )
        by_name[name] = item
        items.append(item)

    for raw_name in secondary_names or []:
        name = canonicalize(raw_name)
        if not name:
            continue

        match = by_name.get(name)
        if match is None:
            for existing in items:
                if similarity(existing.canonical_name, name) >= threshold:
                    match = existing
                    break

        if match is not None:
            match.origin_set = match.origin_set | {ORIGIN_SECONDARY}
            logger.debug("[FUSION] %r merged into %r", raw_name, match.canonical_name)
            continue

        item = FusedFoodItem(
            canonical_name=name,
            origin_set=frozenset({ORIGIN_SECONDARY}),
        )
        by_name[name] = item
        items.append(item)

    ranked = sorted(items, key=_rank_key)
    if len(ranked) > cap:
        logger.info("[FUSION] Truncating %d items to cap=%d", len(ranked), cap)
    return ranked[: max(0, cap)]
