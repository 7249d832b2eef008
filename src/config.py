import os
from dataclasses import dataclass


def _parse_cors_origins(raw: str) -> list[str]:
    origins = [origin.strip() for origin in raw.split(",") if origin.strip()]
    return origins or ["*"]


OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
GOOGLE_VISION_API_KEY = os.getenv("GOOGLE_VISION_API_KEY")
CORS_ORIGINS = _parse_cors_origins(os.getenv("CORS_ORIGINS", "*"))
ALLOW_ALL_ORIGINS = CORS_ORIGINS == ["*"]

# -----------------------------------
# Primary detector
# -----------------------------------

# PRIMARY_BACKEND:
# - "google" (default): Google Cloud Vision objects + labels
# - "onnx":            local YOLO ONNX model (offline)
PRIMARY_BACKEND = os.getenv("PRIMARY_BACKEND", "google").lower()

# VISION_TIMEOUT_S: HTTP timeout for the Google Vision annotate call
VISION_TIMEOUT_S = float(os.getenv("VISION_TIMEOUT_S", "10"))

YOLO_MODEL_PATH = os.getenv("YOLO_MODEL_PATH", "models/yolo_food.onnx")
YOLO_LABELS_PATH = os.getenv("YOLO_LABELS_PATH", "models/yolo_food_labels.json")

# -----------------------------------
# Secondary detector (GPT vision)
# -----------------------------------

# GPT_MODEL: vision model used to list food names
# Expected values: "gpt-4o-mini" (default) or "gpt-4o"
GPT_MODEL = os.getenv("GPT_MODEL", "gpt-4o-mini")

# -----------------------------------
# Fusion / orchestration
# -----------------------------------

# ENSEMBLE_ENABLED: vision-first mode may call GPT when vision looks weak
ENSEMBLE_ENABLED = os.getenv("ENSEMBLE_ENABLED", "true").lower() == "true"

# GPT_FIRST: run GPT first and fall back to vision (mode selector)
GPT_FIRST = os.getenv("GPT_FIRST", "false").lower() == "true"

# GPT_TIMEOUT_MS: race budget for the GPT call before falling back
GPT_TIMEOUT_MS = int(os.getenv("GPT_TIMEOUT_MS", "8000"))

SIMILARITY_THRESHOLD = float(os.getenv("SIMILARITY_THRESHOLD", "0.85"))
FUSION_CAP = int(os.getenv("FUSION_CAP", "8"))

# Budget gate: GPT is called when vision returns fewer than GATE_MIN_ITEMS
# foods or every vision score is below GATE_MIN_CONFIDENCE.
GATE_MIN_ITEMS = int(os.getenv("GATE_MIN_ITEMS", "2"))
GATE_MIN_CONFIDENCE = float(os.getenv("GATE_MIN_CONFIDENCE", "0.6"))

# GPT_MIN_CONFIDENCE: GPT answers where every self-reported score is below
# this value are treated as low-confidence in gpt-first mode.
GPT_MIN_CONFIDENCE = float(os.getenv("GPT_MIN_CONFIDENCE", "0.4"))

# Grams per full-frame normalized area (1.0), used by the default portion estimator
PLATE_GRAMS = float(os.getenv("PLATE_GRAMS", "350"))


@dataclass(frozen=True)
class DetectionConfig:
    """Knobs consumed by DetectionPipeline. Defaults mirror the env settings."""

    ensemble_enabled: bool = True
    gpt_first: bool = False
    gpt_timeout_ms: int = 8000
    similarity_threshold: float = 0.85
    fusion_cap: int = 8
    gate_min_items: int = 2
    gate_min_confidence: float = 0.6
    gpt_min_confidence: float = 0.4

    @classmethod
    def from_env(cls) -> "DetectionConfig":
        return cls(
            ensemble_enabled=ENSEMBLE_ENABLED,
            gpt_first=GPT_FIRST,
            gpt_timeout_ms=GPT_TIMEOUT_MS,
            similarity_threshold=SIMILARITY_THRESHOLD,
            fusion_cap=FUSION_CAP,
            gate_min_items=GATE_MIN_ITEMS,
            gate_min_confidence=GATE_MIN_CONFIDENCE,
            gpt_min_confidence=GPT_MIN_CONFIDENCE,
        )
