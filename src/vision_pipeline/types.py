"""Data types shared by the detectors, the fusion engine and the pipeline."""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, FrozenSet, List, Optional

ORIGIN_PRIMARY = "primary"
ORIGIN_SECONDARY = "secondary"
ORIGIN_BOTH = "both"

KIND_OBJECT = "object"
KIND_LABEL = "label"


@dataclass(frozen=True)
class BoundingBox:
    """Axis-aligned box in normalized image coordinates (0..1)."""

    x_min: float
    y_min: float
    x_max: float
    y_max: float

    def area(self) -> float:
        return max(0.0, self.x_max - self.x_min) * max(0.0, self.y_max - self.y_min)

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)


@dataclass(frozen=True)
class RawDetection:
    """One candidate from the primary detector."""

    name: str
    kind: str = KIND_OBJECT
    confidence: float = 0.0
    bounding_box: Optional[BoundingBox] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "kind": self.kind,
            "confidence": self.confidence,
            "bounding_box": self.bounding_box.to_dict() if self.bounding_box else None,
        }


@dataclass(frozen=True)
class PrimaryResult:
    """Raw output of one primary detector call."""

    objects: List[RawDetection] = field(default_factory=list)
    labels: List[RawDetection] = field(default_factory=list)
    image_width: Optional[int] = None
    image_height: Optional[int] = None
    chosen_source: str = "none"

    @property
    def detections(self) -> List[RawDetection]:
        return list(self.objects) + list(self.labels)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "objects": [d.to_dict() for d in self.objects],
            "labels": [d.to_dict() for d in self.labels],
            "image_width": self.image_width,
            "image_height": self.image_height,
            "chosen_source": self.chosen_source,
        }


@dataclass(frozen=True)
class SecondaryItem:
    """
    One food name returned by the GPT detector.

    category / confidence are optional hints the model may attach; the name
    itself is the only field vision-first fusion relies on.
    """

    name: str
    category: Optional[str] = None
    confidence: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class FusedFoodItem:
    canonical_name: str
    origin_set: FrozenSet[str]
    bounding_box: Optional[BoundingBox] = None
    confidence: Optional[float] = None
    category: Optional[str] = None

    @property
    def origin(self) -> str:
        if ORIGIN_PRIMARY in self.origin_set and ORIGIN_SECONDARY in self.origin_set:
            return ORIGIN_BOTH
        if ORIGIN_PRIMARY in self.origin_set:
            return ORIGIN_PRIMARY
        return ORIGIN_SECONDARY

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.canonical_name,
            "origin": self.origin,
            "origin_set": sorted(self.origin_set),
            "bounding_box": self.bounding_box.to_dict() if self.bounding_box else None,
            "confidence": self.confidence,
            "category": self.category,
        }


@dataclass
class Diagnostics:
    """Per-request breadcrumbs. Not a stable contract."""

    mode: str = ""
    branch: str = ""
    secondary_called: bool = False
    secondary_outcome: Optional[str] = None
    fallback_used: bool = False
    fallback_error: Optional[str] = None
    primary_count: int = 0
    primary_seed_count: int = 0
    secondary_count: int = 0
    secondary_kept_count: int = 0
    fused_count: int = 0
    pre_filter_count: int = 0
    post_filter_count: int = 0
    dropped: Dict[str, List[str]] = field(default_factory=dict)
    states: List[str] = field(default_factory=list)
    timings_ms: Dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class DetectionResult:
    """Envelope returned by DetectionPipeline.run."""

    items: List[FusedFoodItem]
    portions: Dict[str, float]
    primary_raw: Optional[PrimaryResult]
    secondary_raw: List[SecondaryItem]
    diagnostics: Diagnostics
    detection_path: Optional[str] = None
    source: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "items": [item.to_dict() for item in self.items],
            "portions": dict(self.portions),
            "detection_path": self.detection_path,
            "source": self.source,
            "raw": {
                "primary": self.primary_raw.to_dict() if self.primary_raw else None,
                "secondary": [item.to_dict() for item in self.secondary_raw],
            },
            "diagnostics": self.diagnostics.to_dict(),
        }
