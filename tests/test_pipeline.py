import asyncio
import logging
import threading

import pytest

from src.config import DetectionConfig
from src.vision_pipeline.errors import PrimaryDetectorError, SecondaryDetectorError
from src.vision_pipeline.pipeline import (
    GATE_DISABLED,
    GATE_FEW_ITEMS,
    GATE_LOW_CONFIDENCE,
    GATE_SKIPPED,
    OUTCOME_EMPTY,
    OUTCOME_ERROR,
    OUTCOME_LOW_CONFIDENCE,
    OUTCOME_SUCCESS,
    OUTCOME_TIMEOUT,
    PATH_VISION_FIRST,
    PATH_VISION_ONLY,
    SOURCE_GPT,
    SOURCE_HYBRID,
    SOURCE_VISION,
    CompletionGuard,
    DetectionPipeline,
    classify_secondary,
    filter_items,
    split_by_confidence,
)
from src.vision_pipeline.types import (
    KIND_LABEL,
    KIND_OBJECT,
    ORIGIN_BOTH,
    ORIGIN_PRIMARY,
    ORIGIN_SECONDARY,
    BoundingBox,
    FusedFoodItem,
    PrimaryResult,
    RawDetection,
    SecondaryItem,
)

IMAGE = b"fake-image-bytes"


class FakePrimary:
    def __init__(self, result=None, error=None):
        self.result = result if result is not None else PrimaryResult()
        self.error = error
        self.calls = 0

    def detect(self, image_bytes):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.result


class FakeSecondary:
    def __init__(self, items=None, error=None, release=None):
        self.items = items or []
        self.error = error
        self.release = release
        self.calls = 0

    def detect(self, image_bytes, content_type="image/jpeg"):
        self.calls += 1
        if self.release is not None:
            self.release.wait(5)
        if self.error is not None:
            raise self.error
        return list(self.items)


def _obj(name, confidence):
    return RawDetection(
        name=name,
        kind=KIND_OBJECT,
        confidence=confidence,
        bounding_box=BoundingBox(0.1, 0.1, 0.3, 0.3),
    )


def _primary(*detections):
    return PrimaryResult(objects=list(detections), chosen_source="objects")


def _pipeline(primary, secondary, **overrides):
    return DetectionPipeline(primary, secondary, config=DetectionConfig(**overrides))


def _run(pipeline):
    return asyncio.run(pipeline.run(IMAGE, "image/jpeg"))


def _names(result):
    return [i.canonical_name for i in result.items]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def test_completion_guard_is_one_shot():
    guard = CompletionGuard()
    assert guard.settled_by is None
    assert guard.settle("timeout")
    assert not guard.settle("secondary")
    assert guard.settled_by == "timeout"


@pytest.mark.parametrize(
    "items, expected",
    [
        ([], OUTCOME_EMPTY),
        ([SecondaryItem("salmon", "protein", 0.9)], OUTCOME_SUCCESS),
        ([SecondaryItem("salmon", "protein", 0.2), SecondaryItem("rice", "grain", 0.3)], OUTCOME_LOW_CONFIDENCE),
        ([SecondaryItem("salmon", "protein", 0.2), SecondaryItem("rice")], OUTCOME_SUCCESS),
        ([SecondaryItem("salmon")], OUTCOME_SUCCESS),
        # protein needs 0.5 even though the default floor is 0.4
        ([SecondaryItem("salmon", "protein", 0.45)], OUTCOME_LOW_CONFIDENCE),
        ([SecondaryItem("salmon", "protein", 0.45), SecondaryItem("asparagus", "vegetable", 0.25)], OUTCOME_SUCCESS),
        ([SecondaryItem("mystery stew", None, 0.39)], OUTCOME_LOW_CONFIDENCE),
    ],
)
def test_classify_secondary(items, expected):
    assert classify_secondary(items, min_confidence=0.4) == expected


def test_split_by_confidence_uses_category_thresholds():
    items = [
        SecondaryItem("salmon", "protein", 0.9),
        SecondaryItem("rice", "grain", 0.05),
        SecondaryItem("lemon", "fruit", 0.2),
        SecondaryItem("ketchup", "sauce", 0.3),
        SecondaryItem("tofu"),
    ]

    confident, weak = split_by_confidence(items, default_threshold=0.4)

    assert [i.name for i in confident] == ["salmon", "lemon", "tofu"]
    assert [i.name for i in weak] == ["rice", "ketchup"]


def test_filter_items_drops_serveware_and_unknown_categories():
    items = [
        FusedFoodItem("salmon", frozenset({ORIGIN_SECONDARY}), category="protein"),
        FusedFoodItem("plate", frozenset({ORIGIN_SECONDARY}), category="other"),
        FusedFoodItem("mystery stew", frozenset({ORIGIN_SECONDARY}), category="other"),
        FusedFoodItem("broccoli", frozenset({ORIGIN_SECONDARY}), category=None),
    ]

    kept, dropped = filter_items(items)

    assert [i.canonical_name for i in kept] == ["salmon"]
    assert dropped == {"non_food": ["plate"], "category": ["mystery stew", "broccoli"]}


def test_config_defaults():
    config = DetectionConfig()
    assert config.gpt_timeout_ms == 8000
    assert config.similarity_threshold == 0.85
    assert config.fusion_cap == 8
    assert config.gate_min_items == 2
    assert config.gate_min_confidence == 0.6


# ---------------------------------------------------------------------------
# Vision-first
# ---------------------------------------------------------------------------


def test_vision_first_ensemble_disabled_never_calls_gpt():
    primary = FakePrimary(_primary(_obj("salmon", 0.3)))
    secondary = FakeSecondary([SecondaryItem("rice")])

    result = _run(_pipeline(primary, secondary, ensemble_enabled=False))

    assert secondary.calls == 0
    assert result.detection_path == PATH_VISION_ONLY
    assert result.diagnostics.branch == GATE_DISABLED
    assert _names(result) == ["salmon"]
    assert result.source is None


def test_vision_first_confident_primary_skips_gpt():
    primary = FakePrimary(_primary(_obj("salmon", 0.9), _obj("rice", 0.7), _obj("broccoli", 0.4)))
    secondary = FakeSecondary([SecondaryItem("lemon")])

    result = _run(_pipeline(primary, secondary))

    assert secondary.calls == 0
    assert result.diagnostics.branch == GATE_SKIPPED
    assert result.detection_path == PATH_VISION_ONLY
    assert _names(result) == ["salmon", "rice", "broccoli"]
    assert all(i.origin == ORIGIN_PRIMARY for i in result.items)
    assert set(result.portions) == {"salmon", "rice", "broccoli"}


def test_vision_first_single_item_calls_gpt_and_filters_junk():
    primary = FakePrimary(_primary(_obj("salmon", 0.92)))
    secondary = FakeSecondary([
        SecondaryItem("grilled salmon fillet"),
        SecondaryItem("asparagus spears"),
        SecondaryItem("recipe"),
        SecondaryItem("cooked dish"),
    ])

    result = _run(_pipeline(primary, secondary))

    assert secondary.calls == 1
    assert result.diagnostics.branch == GATE_FEW_ITEMS
    assert result.diagnostics.secondary_outcome == OUTCOME_SUCCESS
    assert result.detection_path == PATH_VISION_FIRST
    assert _names(result) == ["salmon", "asparagus"]
    assert result.items[0].origin == ORIGIN_BOTH
    assert result.items[1].origin == ORIGIN_SECONDARY
    assert result.diagnostics.dropped["non_food"] == ["recipe", "cooked dish"]
    assert len(result.secondary_raw) == 4


def test_vision_first_low_confidence_gate():
    primary = FakePrimary(_primary(_obj("salmon", 0.5), _obj("rice", 0.3)))
    secondary = FakeSecondary([SecondaryItem("lemon")])

    result = _run(_pipeline(primary, secondary))

    assert result.diagnostics.branch == GATE_LOW_CONFIDENCE
    assert result.detection_path == PATH_VISION_FIRST
    assert _names(result) == ["salmon", "rice", "lemon"]


def test_vision_first_gate_counts_only_food_detections():
    # Two detections, but one is serveware; the seed list has a single item
    primary = FakePrimary(_primary(_obj("salmon", 0.9), _obj("plate", 0.99)))
    secondary = FakeSecondary([SecondaryItem("rice")])

    result = _run(_pipeline(primary, secondary))

    assert result.diagnostics.branch == GATE_FEW_ITEMS
    assert _names(result) == ["salmon", "rice"]
    assert result.diagnostics.primary_count == 2
    assert result.diagnostics.pre_filter_count == 3
    assert result.diagnostics.post_filter_count == 2


def test_vision_first_salmon_plate():
    primary = FakePrimary(_primary(
        _obj("salmon", 0.92),
        _obj("asparagus", 0.88),
        _obj("cherry tomatoes", 0.76),
        _obj("lemon wedge", 0.68),
    ))
    secondary = FakeSecondary([
        SecondaryItem("grilled salmon fillet"),
        SecondaryItem("asparagus spears"),
        SecondaryItem("cherry tomato"),
        SecondaryItem("lemon slice"),
        SecondaryItem("recipe"),
    ])

    # four confident items would skip GPT; raise the item floor to force it
    result = _run(_pipeline(primary, secondary, gate_min_items=5))

    assert secondary.calls == 1
    assert result.diagnostics.branch == GATE_FEW_ITEMS
    assert _names(result) == ["salmon", "asparagus", "cherry tomato", "lemon"]
    assert all(i.bounding_box is not None for i in result.items)
    assert all(i.origin == ORIGIN_BOTH for i in result.items)
    assert "recipe" not in _names(result)
    assert result.diagnostics.dropped["non_food"] == ["recipe"]


def test_vision_first_primary_failure_propagates():
    primary = FakePrimary(error=RuntimeError("vision down"))
    secondary = FakeSecondary([SecondaryItem("rice")])

    with pytest.raises(PrimaryDetectorError):
        _run(_pipeline(primary, secondary))

    assert secondary.calls == 0


def test_vision_first_gpt_failure_degrades_to_vision():
    primary = FakePrimary(_primary(_obj("salmon", 0.5)))
    secondary = FakeSecondary(error=SecondaryDetectorError("quota"))

    result = _run(_pipeline(primary, secondary))

    assert result.diagnostics.secondary_outcome == OUTCOME_ERROR
    assert result.detection_path == PATH_VISION_FIRST
    assert _names(result) == ["salmon"]


def test_vision_first_gpt_timeout_degrades_to_vision():
    release = threading.Event()
    primary = FakePrimary(_primary(_obj("salmon", 0.5)))
    secondary = FakeSecondary([SecondaryItem("rice")], release=release)
    pipeline = _pipeline(primary, secondary, gpt_timeout_ms=50)

    async def scenario():
        try:
            return await pipeline.run(IMAGE)
        finally:
            release.set()
            await asyncio.sleep(0.05)

    result = asyncio.run(scenario())

    assert result.diagnostics.secondary_outcome == OUTCOME_TIMEOUT
    assert _names(result) == ["salmon"]


def test_vision_first_result_serializes():
    primary = FakePrimary(_primary(_obj("salmon", 0.5)))
    secondary = FakeSecondary([SecondaryItem("rice")])

    payload = _run(_pipeline(primary, secondary)).to_dict()

    assert payload["detection_path"] == PATH_VISION_FIRST
    assert payload["source"] is None
    assert [i["name"] for i in payload["items"]] == ["salmon", "rice"]
    assert payload["raw"]["primary"]["chosen_source"] == "objects"
    assert payload["raw"]["secondary"] == [{"name": "rice", "category": None, "confidence": None}]
    assert payload["diagnostics"]["mode"] == "vision_first"


# ---------------------------------------------------------------------------
# GPT-first
# ---------------------------------------------------------------------------


def test_gpt_first_success_uses_gpt_only():
    primary = FakePrimary(_primary(_obj("salmon", 0.9)))
    secondary = FakeSecondary([
        SecondaryItem("grilled salmon", "protein", 0.9),
        SecondaryItem("white rice", "grain", 0.8),
    ])

    result = _run(_pipeline(primary, secondary, gpt_first=True))

    assert primary.calls == 0
    assert result.source == SOURCE_GPT
    assert result.detection_path is None
    assert _names(result) == ["salmon", "rice"]
    assert [i.category for i in result.items] == ["protein", "grain"]
    assert result.primary_raw is None
    assert result.diagnostics.states == [
        "NotStarted",
        "SecondaryPending",
        "SecondarySucceeded",
        "Filtered",
        "Done",
    ]


def test_gpt_first_condiment_suppressed_with_other_foods():
    secondary = FakeSecondary([
        SecondaryItem("maple syrup", "fat", 0.8),
        SecondaryItem("waffle", "grain", 0.9),
    ])

    result = _run(_pipeline(FakePrimary(), secondary, gpt_first=True))

    assert _names(result) == ["waffle"]
    assert result.diagnostics.dropped["condiment"] == ["maple syrup"]


def test_gpt_first_lone_condiment_is_kept():
    secondary = FakeSecondary([SecondaryItem("maple syrup", "fat", 0.8)])

    result = _run(_pipeline(FakePrimary(), secondary, gpt_first=True))

    assert _names(result) == ["maple syrup"]
    assert "condiment" not in result.diagnostics.dropped


def test_gpt_first_drops_non_food_and_uncategorized():
    secondary = FakeSecondary([
        SecondaryItem("salmon", "protein", 0.9),
        SecondaryItem("plate", "other", 0.9),
        SecondaryItem("mystery stew"),
    ])

    result = _run(_pipeline(FakePrimary(), secondary, gpt_first=True))

    assert _names(result) == ["salmon"]
    assert result.diagnostics.dropped == {"non_food": ["plate"], "category": ["mystery stew"]}
    assert result.diagnostics.pre_filter_count == 3
    assert result.diagnostics.post_filter_count == 1


def test_gpt_first_caps_after_filtering():
    junk = ["water", "coffee", "napkin", "tray", "sauce", "ketchup", "mustard", "gravy"]
    secondary = FakeSecondary(
        [SecondaryItem(name, "other", 0.9) for name in junk]
        + [SecondaryItem("salmon", "protein", 0.9), SecondaryItem("rice", "grain", 0.9)]
    )

    result = _run(_pipeline(FakePrimary(), secondary, gpt_first=True))

    assert _names(result) == ["salmon", "rice"]
    assert result.diagnostics.pre_filter_count == 10
    assert result.diagnostics.post_filter_count == 2


def test_gpt_first_cap_applies_to_filtered_items():
    foods = ["salmon", "rice", "broccoli", "carrot", "egg", "tofu", "apple", "banana", "spinach", "quinoa"]
    secondary = FakeSecondary(
        [SecondaryItem("plate", "other", 0.9)] + [SecondaryItem(name, "protein", 0.9) for name in foods]
    )

    result = _run(_pipeline(FakePrimary(), secondary, gpt_first=True))

    assert _names(result) == foods[:8]
    assert result.diagnostics.dropped["non_food"] == ["plate"]


def test_gpt_first_drops_items_below_category_threshold():
    secondary = FakeSecondary([
        SecondaryItem("salmon", "protein", 0.9),
        SecondaryItem("rice", "grain", 0.05),
        SecondaryItem("asparagus", "vegetable", 0.25),
    ])

    result = _run(_pipeline(FakePrimary(), secondary, gpt_first=True))

    assert result.source == SOURCE_GPT
    assert _names(result) == ["salmon", "asparagus"]
    assert result.diagnostics.dropped["low_confidence"] == ["rice"]


def test_gpt_first_fallback_keeps_generic_meat_label():
    primary = FakePrimary(PrimaryResult(
        labels=[
            RawDetection("meat", KIND_LABEL, 0.9),
            RawDetection("plant", KIND_LABEL, 0.8),
            RawDetection("seafood", KIND_LABEL, 0.7),
        ],
        chosen_source="labels",
    ))

    result = _run(_pipeline(primary, FakeSecondary([]), gpt_first=True))

    assert result.source == SOURCE_VISION
    assert _names(result) == ["meat", "seafood"]
    assert [i.category for i in result.items] == ["protein", "protein"]


def test_gpt_first_empty_falls_back_to_vision():
    primary = FakePrimary(_primary(_obj("salmon", 0.9), _obj("lemon", 0.6)))
    secondary = FakeSecondary([])

    result = _run(_pipeline(primary, secondary, gpt_first=True))

    assert primary.calls == 1
    assert result.source == SOURCE_VISION
    assert result.diagnostics.secondary_outcome == OUTCOME_EMPTY
    assert result.diagnostics.fallback_used
    assert _names(result) == ["salmon", "lemon"]
    assert [i.category for i in result.items] == ["protein", "fruit"]
    assert result.diagnostics.states == [
        "NotStarted",
        "SecondaryPending",
        "SecondaryRejected(empty)",
        "PrimaryFallbackPending",
        "PrimaryFallbackDone",
        "Filtered",
        "Done",
    ]


def test_gpt_first_low_confidence_is_hybrid():
    primary = FakePrimary(_primary(_obj("salmon", 0.9), _obj("asparagus", 0.7)))
    secondary = FakeSecondary([
        SecondaryItem("asparagus", "vegetable", 0.1),
        SecondaryItem("lemon", "fruit", 0.1),
    ])

    result = _run(_pipeline(primary, secondary, gpt_first=True))

    assert result.source == SOURCE_HYBRID
    assert result.diagnostics.secondary_outcome == OUTCOME_LOW_CONFIDENCE
    assert _names(result) == ["salmon", "asparagus", "lemon"]
    assert [i.origin for i in result.items] == [ORIGIN_PRIMARY, ORIGIN_BOTH, ORIGIN_SECONDARY]
    assert [i.category for i in result.items] == ["protein", "vegetable", "fruit"]


def test_gpt_first_error_falls_back_to_vision():
    primary = FakePrimary(_primary(_obj("rice", 0.8)))
    secondary = FakeSecondary(error=SecondaryDetectorError("boom"))

    result = _run(_pipeline(primary, secondary, gpt_first=True))

    assert result.source == SOURCE_VISION
    assert result.diagnostics.secondary_outcome == OUTCOME_ERROR
    assert "SecondaryFailed" in result.diagnostics.states
    assert _names(result) == ["rice"]


def test_gpt_first_fallback_failure_is_neutralized():
    primary = FakePrimary(error=PrimaryDetectorError("vision down"))
    secondary = FakeSecondary(error=SecondaryDetectorError("gpt down"))

    result = _run(_pipeline(primary, secondary, gpt_first=True))

    assert result.items == []
    assert result.portions == {}
    assert result.source == SOURCE_VISION
    assert result.diagnostics.fallback_error == "vision down"
    assert result.primary_raw.chosen_source == "error"
    assert result.diagnostics.states[-1] == "Done"


def test_gpt_first_timeout_discards_late_result(caplog):
    caplog.set_level(logging.WARNING, logger="src.vision_pipeline.pipeline")
    release = threading.Event()
    primary = FakePrimary(_primary(_obj("salmon", 0.9)))
    secondary = FakeSecondary([SecondaryItem("pizza", "grain", 0.9)], release=release)
    pipeline = _pipeline(primary, secondary, gpt_first=True, gpt_timeout_ms=50)

    async def scenario():
        try:
            result = await pipeline.run(IMAGE)
            names_at_settle = _names(result)
        finally:
            release.set()
        # give the late GPT answer time to land
        await asyncio.sleep(0.2)
        return result, names_at_settle

    result, names_at_settle = asyncio.run(scenario())

    assert result.source == SOURCE_VISION
    assert result.diagnostics.secondary_outcome == OUTCOME_TIMEOUT
    assert "SecondaryTimedOut" in result.diagnostics.states
    assert names_at_settle == ["salmon"]
    assert _names(result) == ["salmon"]
    assert result.secondary_raw == []
    assert secondary.calls == 1
    assert "Late GPT result discarded" in caplog.text
