import asyncio
import logging
import time
from types import MappingProxyType
from typing import Any, Dict, List, Optional, Sequence, Tuple

from src.config import DetectionConfig

from .canonical import canonicalize
from .errors import PrimaryDetectorError
from .fusion import build_seed_list, fuse
from .lexicon import (
    ALLOWED_CATEGORIES,
    infer_category,
    is_condiment,
    is_foodish,
    is_hard_rejected,
    normalize_category,
)
from .portions import PortionEstimator, estimate_portions
from .types import (
    ORIGIN_PRIMARY,
    ORIGIN_SECONDARY,
    DetectionResult,
    Diagnostics,
    FusedFoodItem,
    PrimaryResult,
    RawDetection,
    SecondaryItem,
)

logger = logging.getLogger(__name__)

MODE_VISION_FIRST = "vision_first"
MODE_GPT_FIRST = "gpt_first"

PATH_VISION_ONLY = "vision-only"
PATH_VISION_FIRST = "vision-first"

SOURCE_GPT = "gpt"
SOURCE_VISION = "vision"
SOURCE_HYBRID = "hybrid"

OUTCOME_SUCCESS = "success"
OUTCOME_EMPTY = "empty"
OUTCOME_LOW_CONFIDENCE = "low-confidence"
OUTCOME_TIMEOUT = "timeout"
OUTCOME_ERROR = "error"

GATE_DISABLED = "ensemble_disabled"
GATE_FEW_ITEMS = "few_items"
GATE_LOW_CONFIDENCE = "low_confidence"
GATE_SKIPPED = "skipped"

_OUTCOME_STATES = {
    OUTCOME_SUCCESS: "SecondarySucceeded",
    OUTCOME_TIMEOUT: "SecondaryTimedOut",
    OUTCOME_EMPTY: "SecondaryRejected(empty)",
    OUTCOME_LOW_CONFIDENCE: "SecondaryRejected(low-confidence)",
    OUTCOME_ERROR: "SecondaryFailed",
}


def _ms(seconds: float) -> float:
    return round(seconds * 1000, 2)


class CompletionGuard:
    """One-shot latch: the first settle() wins, later ones are refused."""

    def __init__(self):
        self._settled_by: Optional[str] = None

    @property
    def settled_by(self) -> Optional[str]:
        return self._settled_by

    def settle(self, by: str) -> bool:
        if self._settled_by is not None:
            return False
        self._settled_by = by
        return True


# Per-category floor for GPT self-reported confidence; other categories
# use DetectionConfig.gpt_min_confidence.
CONFIDENCE_THRESHOLDS = MappingProxyType({
    "vegetable": 0.20,
    "fruit": 0.20,
    "protein": 0.50,
    "grain": 0.50,
    "dairy": 0.50,
    "condiment": 0.35,
})


def split_by_confidence(
    items: Sequence[SecondaryItem], default_threshold: float
) -> Tuple[List[SecondaryItem], List[SecondaryItem]]:
    """(confident, weak). Names without a score are taken at face value."""
    confident: List[SecondaryItem] = []
    weak: List[SecondaryItem] = []
    for item in items:
        threshold = CONFIDENCE_THRESHOLDS.get(normalize_category(item.category), default_threshold)
        if item.confidence is None or item.confidence >= threshold:
            confident.append(item)
        else:
            weak.append(item)
    return confident, weak


def classify_secondary(items: Sequence[SecondaryItem], min_confidence: float) -> str:
    """
    success / empty / low-confidence for a GPT answer that did arrive.

    Low-confidence means no item clears its category threshold.
    """
    if not items:
        return OUTCOME_EMPTY
    confident, _ = split_by_confidence(items, min_confidence)
    if not confident:
        return OUTCOME_LOW_CONFIDENCE
    return OUTCOME_SUCCESS


def filter_items(items: Sequence[FusedFoodItem]) -> Tuple[List[FusedFoodItem], Dict[str, List[str]]]:
    """
    Gpt-first filter chain.

    1. drop non-food and serveware names
    2. drop categories outside protein/vegetable/fruit/grain/dairy/fat
    3. condiments survive only when they are the single remaining item
    """
    dropped: Dict[str, List[str]] = {"non_food": [], "category": [], "condiment": []}

    kept: List[FusedFoodItem] = []
    for item in items:
        if not is_foodish(item.canonical_name) or is_hard_rejected(item.canonical_name):
            dropped["non_food"].append(item.canonical_name)
        elif (item.category or "other") not in ALLOWED_CATEGORIES:
            dropped["category"].append(item.canonical_name)
        else:
            kept.append(item)

    if len(kept) > 1 and any(is_condiment(i.canonical_name) for i in kept):
        dropped["condiment"] = [i.canonical_name for i in kept if is_condiment(i.canonical_name)]
        kept = [i for i in kept if not is_condiment(i.canonical_name)]

    return kept, {k: v for k, v in dropped.items() if v}


class DetectionPipeline:
    """
    Budget-gated fusion of a fast vision detector and a costly GPT detector.

    vision_first (legacy):
        vision → seed list → [budget gate] → GPT → fuse
    gpt_first:
        GPT (raced against timeout) → success: use GPT names
                                   → otherwise: vision fallback (errors neutralized)
        → filter (non-food, category, condiments) → cap

    Only a vision failure in vision_first mode propagates; every other
    failure degrades to an empty, well-formed result.
    """

    def __init__(
        self,
        primary,
        secondary,
        config: Optional[DetectionConfig] = None,
        portion_estimator: PortionEstimator = estimate_portions,
    ):
        self.primary = primary
        self.secondary = secondary
        self.config = config or DetectionConfig.from_env()
        self.portion_estimator = portion_estimator

    async def run(self, image_bytes: bytes, content_type: str = "image/jpeg") -> DetectionResult:
        if self.config.gpt_first:
            return await self._run_gpt_first(image_bytes, content_type)
        return await self._run_vision_first(image_bytes, content_type)

    # -------------------------------------------------------------------------
    # Detector calls
    # -------------------------------------------------------------------------
    async def _call_primary(self, image_bytes: bytes, diagnostics: Diagnostics) -> PrimaryResult:
        t_start = time.perf_counter()
        try:
            result = await asyncio.to_thread(self.primary.detect, image_bytes)
        except PrimaryDetectorError:
            raise
        except Exception as e:
            raise PrimaryDetectorError(f"Primary detector failed: {e}") from e
        finally:
            diagnostics.timings_ms["primary_ms"] = _ms(time.perf_counter() - t_start)

        diagnostics.primary_count = len(result.detections)
        logger.info(
            "[PIPELINE] Vision returned %d detections (source=%s) in %sms",
            diagnostics.primary_count,
            result.chosen_source,
            diagnostics.timings_ms["primary_ms"],
        )
        return result

    async def _call_secondary(
        self, image_bytes: bytes, content_type: str, diagnostics: Diagnostics
    ) -> Tuple[str, List[SecondaryItem]]:
        """
        Race GPT against the timeout. Never raises.

        The GPT call is not cancelled on timeout; the guard makes sure a late
        answer is dropped instead of replacing what the fallback produced.
        """
        guard = CompletionGuard()
        timeout_s = self.config.gpt_timeout_ms / 1000.0
        diagnostics.secondary_called = True

        t_start = time.perf_counter()
        task = asyncio.ensure_future(
            asyncio.to_thread(self.secondary.detect, image_bytes, content_type)
        )

        def _on_late_result(fut: "asyncio.Future[Any]") -> None:
            if fut.cancelled():
                return
            exc = fut.exception()
            if guard.settle("secondary"):
                return
            logger.warning(
                "[PIPELINE] Late GPT result discarded (settled_by=%s, error=%s)",
                guard.settled_by,
                exc,
            )

        done, _ = await asyncio.wait({task}, timeout=timeout_s)
        diagnostics.timings_ms["secondary_ms"] = _ms(time.perf_counter() - t_start)

        if task not in done:
            guard.settle(OUTCOME_TIMEOUT)
            task.add_done_callback(_on_late_result)
            logger.warning(
                "[PIPELINE] GPT timed out after %sms", self.config.gpt_timeout_ms
            )
            return OUTCOME_TIMEOUT, []

        guard.settle("secondary")
        try:
            items = list(task.result())
        except Exception as e:
            logger.error("[PIPELINE] GPT detector FAILED, error=%s", e)
            return OUTCOME_ERROR, []

        diagnostics.secondary_count = len(items)
        outcome = classify_secondary(items, self.config.gpt_min_confidence)
        logger.info(
            "[PIPELINE] GPT returned %d names in %sms (outcome=%s)",
            len(items),
            diagnostics.timings_ms["secondary_ms"],
            outcome,
        )
        return outcome, items

    async def _call_primary_fallback(self, image_bytes: bytes, diagnostics: Diagnostics) -> PrimaryResult:
        diagnostics.fallback_used = True
        try:
            return await self._call_primary(image_bytes, diagnostics)
        except PrimaryDetectorError as e:
            logger.error("[PIPELINE] Vision fallback FAILED, error=%s", e)
            diagnostics.fallback_error = str(e)
            return PrimaryResult(chosen_source="error")

    # -------------------------------------------------------------------------
    # Mode A: vision first
    # -------------------------------------------------------------------------
    def _budget_gate(self, seed: Sequence[RawDetection]) -> str:
        if len(seed) < self.config.gate_min_items:
            return GATE_FEW_ITEMS
        if all((d.confidence or 0.0) < self.config.gate_min_confidence for d in seed):
            return GATE_LOW_CONFIDENCE
        return GATE_SKIPPED

    async def _run_vision_first(self, image_bytes: bytes, content_type: str) -> DetectionResult:
        t0 = time.perf_counter()
        diagnostics = Diagnostics(mode=MODE_VISION_FIRST)

        primary_raw = await self._call_primary(image_bytes, diagnostics)
        seed = build_seed_list(primary_raw.detections)
        diagnostics.primary_seed_count = len(seed)

        secondary_raw: List[SecondaryItem] = []
        secondary_names: List[str] = []

        if not self.config.ensemble_enabled:
            diagnostics.branch = GATE_DISABLED
        else:
            diagnostics.branch = self._budget_gate(seed)
            logger.info(
                "[PIPELINE] Budget gate=%s (seed=%d)", diagnostics.branch, len(seed)
            )
            if diagnostics.branch != GATE_SKIPPED:
                outcome, secondary_raw = await self._call_secondary(
                    image_bytes, content_type, diagnostics
                )
                diagnostics.secondary_outcome = outcome
                secondary_names = [i.name for i in secondary_raw if is_foodish(i.name)]
                rejected = [i.name for i in secondary_raw if not is_foodish(i.name)]
                if rejected:
                    diagnostics.dropped["non_food"] = rejected

        diagnostics.secondary_kept_count = len(secondary_names)

        items = fuse(
            seed,
            secondary_names,
            threshold=self.config.similarity_threshold,
            cap=self.config.fusion_cap,
        )
        diagnostics.fused_count = len(items)
        diagnostics.pre_filter_count = diagnostics.primary_count + len(secondary_raw)
        diagnostics.post_filter_count = len(seed) + len(secondary_names)

        detection_path = PATH_VISION_FIRST if diagnostics.secondary_called else PATH_VISION_ONLY
        portions = self.portion_estimator(items)
        diagnostics.timings_ms["total_ms"] = _ms(time.perf_counter() - t0)

        logger.info(
            "[PIPELINE] vision_first done: path=%s, gate=%s, fused=%d, total_ms=%s",
            detection_path,
            diagnostics.branch,
            len(items),
            diagnostics.timings_ms["total_ms"],
        )
        return DetectionResult(
            items=items,
            portions=portions,
            primary_raw=primary_raw,
            secondary_raw=secondary_raw,
            diagnostics=diagnostics,
            detection_path=detection_path,
        )

    # -------------------------------------------------------------------------
    # Mode B: GPT first
    # -------------------------------------------------------------------------
    def _assign_categories(
        self, items: List[FusedFoodItem], secondary_raw: Sequence[SecondaryItem]
    ) -> None:
        hints: Dict[str, str] = {}
        for raw in secondary_raw:
            hints.setdefault(canonicalize(raw.name), normalize_category(raw.category))

        for item in items:
            hint = hints.get(item.canonical_name)
            if hint is not None and hint != "other":
                item.category = hint
            elif ORIGIN_PRIMARY in item.origin_set:
                item.category = infer_category(item.canonical_name)
            else:
                item.category = hint or "other"

    async def _run_gpt_first(self, image_bytes: bytes, content_type: str) -> DetectionResult:
        t0 = time.perf_counter()
        diagnostics = Diagnostics(mode=MODE_GPT_FIRST)
        states = diagnostics.states
        states.extend(["NotStarted", "SecondaryPending"])

        outcome, secondary_raw = await self._call_secondary(image_bytes, content_type, diagnostics)
        diagnostics.secondary_outcome = outcome
        states.append(_OUTCOME_STATES[outcome])

        primary_raw: Optional[PrimaryResult] = None
        gpt_names = [i.name for i in secondary_raw]

        if outcome == OUTCOME_SUCCESS:
            source = SOURCE_GPT
            diagnostics.branch = "gpt"
            confident, weak = split_by_confidence(secondary_raw, self.config.gpt_min_confidence)
            if weak:
                diagnostics.dropped["low_confidence"] = [i.name for i in weak]
            names = [i.name for i in confident]
            # Uncapped here: the cap applies after filtering
            candidates = fuse(
                [], names,
                threshold=self.config.similarity_threshold,
                cap=len(names),
            )
        else:
            logger.info("[PIPELINE] GPT outcome=%s → vision fallback", outcome)
            states.append("PrimaryFallbackPending")
            primary_raw = await self._call_primary_fallback(image_bytes, diagnostics)
            states.append("PrimaryFallbackDone")

            seed = build_seed_list(primary_raw.detections)
            diagnostics.primary_seed_count = len(seed)

            if outcome == OUTCOME_LOW_CONFIDENCE and seed:
                source = SOURCE_HYBRID
                diagnostics.branch = "hybrid"
                names = gpt_names
            else:
                source = SOURCE_VISION
                diagnostics.branch = "vision_fallback"
                names = []
            candidates = fuse(
                seed, names,
                threshold=self.config.similarity_threshold,
                cap=len(seed) + len(names),
            )

        self._assign_categories(candidates, secondary_raw)
        diagnostics.fused_count = len(candidates)
        diagnostics.pre_filter_count = len(candidates)

        items, dropped = filter_items(candidates)
        diagnostics.dropped.update(dropped)
        if len(items) > self.config.fusion_cap:
            logger.info("[PIPELINE] Truncating %d filtered items to cap=%d", len(items), self.config.fusion_cap)
            items = items[: self.config.fusion_cap]
        diagnostics.post_filter_count = len(items)
        diagnostics.secondary_kept_count = sum(
            1 for i in items if ORIGIN_SECONDARY in i.origin_set
        )
        states.append("Filtered")

        portions = self.portion_estimator(items)
        states.append("Done")
        diagnostics.timings_ms["total_ms"] = _ms(time.perf_counter() - t0)

        logger.info(
            "[PIPELINE] gpt_first done: source=%s, outcome=%s, pre=%d, post=%d, dropped=%s, total_ms=%s",
            source,
            outcome,
            diagnostics.pre_filter_count,
            diagnostics.post_filter_count,
            dropped,
            diagnostics.timings_ms["total_ms"],
        )
        return DetectionResult(
            items=items,
            portions=portions,
            primary_raw=primary_raw,
            secondary_raw=secondary_raw,
            diagnostics=diagnostics,
            source=source,
        )


# Singleton so detector clients / ONNX sessions are built once per process
_PIPELINE_SINGLETON: Optional[DetectionPipeline] = None


def get_pipeline_singleton() -> DetectionPipeline:
    """
    Lazily build the pipeline from env configuration.

    Raises whatever the detector constructors raise (missing API key,
    missing ONNX model) so the caller can report it.
    """
    global _PIPELINE_SINGLETON
    if _PIPELINE_SINGLETON is not None:
        return _PIPELINE_SINGLETON

    from src.gpt_vision import GPTFoodDetector

    from .detector import get_primary_detector

    _PIPELINE_SINGLETON = DetectionPipeline(
        primary=get_primary_detector(),
        secondary=GPTFoodDetector(),
        config=DetectionConfig.from_env(),
    )
    return _PIPELINE_SINGLETON
