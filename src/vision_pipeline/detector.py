import base64
import json
import logging
import os
from typing import Any, Dict, List, Optional, Sequence, Tuple

import cv2
import numpy as np
import requests

from src.config import (
    GOOGLE_VISION_API_KEY,
    PRIMARY_BACKEND,
    VISION_TIMEOUT_S,
    YOLO_LABELS_PATH,
    YOLO_MODEL_PATH,
)

from .errors import PrimaryDetectorError
from .types import KIND_LABEL, KIND_OBJECT, BoundingBox, PrimaryResult, RawDetection

logger = logging.getLogger(__name__)

VISION_URL = "https://vision.googleapis.com/v1/images:annotate"
MAX_OBJECTS = 20
MAX_LABELS = 15


def _image_size(image_bytes: bytes) -> Tuple[Optional[int], Optional[int]]:
    """(width, height) of an encoded image, or (None, None) if it cannot be decoded."""
    buf = np.frombuffer(image_bytes, dtype=np.uint8)
    if buf.size == 0:
        return None, None
    img = cv2.imdecode(buf, cv2.IMREAD_COLOR)
    if img is None:
        return None, None
    h, w = img.shape[:2]
    return int(w), int(h)


def _box_from_vertices(vertices: Sequence[Dict[str, Any]]) -> Optional[BoundingBox]:
    # Vision omits x / y when they are 0
    if not vertices:
        return None
    xs = [float(v.get("x", 0.0)) for v in vertices]
    ys = [float(v.get("y", 0.0)) for v in vertices]
    return BoundingBox(
        x_min=max(0.0, min(xs)),
        y_min=max(0.0, min(ys)),
        x_max=min(1.0, max(xs)),
        y_max=min(1.0, max(ys)),
    )


class GoogleVisionDetector:
    """
    Primary detector backed by Google Cloud Vision.

    One images:annotate request asks for both OBJECT_LOCALIZATION (boxed)
    and LABEL_DETECTION (unboxed). chosen_source is "objects" when any
    object came back, otherwise "labels".
    """

    def __init__(self, api_key: Optional[str] = GOOGLE_VISION_API_KEY, timeout: float = VISION_TIMEOUT_S):
        if not api_key:
            raise RuntimeError("GOOGLE_VISION_API_KEY is not set")
        self.api_key = api_key
        self.timeout = timeout

    def _annotate(self, content_b64: str) -> Dict[str, Any]:
        body = {
            "requests": [
                {
                    "image": {"content": content_b64},
                    "features": [
                        {"type": "OBJECT_LOCALIZATION", "maxResults": MAX_OBJECTS},
                        {"type": "LABEL_DETECTION", "maxResults": MAX_LABELS},
                    ],
                }
            ]
        }
        response = requests.post(
            VISION_URL,
            params={"key": self.api_key},
            json=body,
            timeout=self.timeout,
        )
        if not response.ok:
            raise PrimaryDetectorError(
                f"Vision annotate failed with {response.status_code}: {response.text[:200]}"
            )
        payload = response.json()
        first = (payload.get("responses") or [{}])[0]
        if first.get("error"):
            raise PrimaryDetectorError(f"Vision error: {first['error']}")
        return first

    def detect(self, image_bytes: bytes) -> PrimaryResult:
        content_b64 = base64.b64encode(image_bytes).decode("utf-8")
        logger.info("[VISION] Sending %.1fkb image to Google Vision", len(content_b64) / 1024)

        try:
            annotations = self._annotate(content_b64)
        except PrimaryDetectorError:
            raise
        except (requests.RequestException, ValueError) as e:
            raise PrimaryDetectorError(f"Vision request failed: {e}") from e

        objects = [
            RawDetection(
                name=(o.get("name") or "").lower(),
                kind=KIND_OBJECT,
                confidence=float(o.get("score") or 0.0),
                bounding_box=_box_from_vertices(
                    (o.get("boundingPoly") or {}).get("normalizedVertices") or []
                ),
            )
            for o in annotations.get("localizedObjectAnnotations") or []
        ]
        labels = [
            RawDetection(
                name=(lab.get("description") or "").lower(),
                kind=KIND_LABEL,
                confidence=float(lab.get("score") or 0.0),
            )
            for lab in annotations.get("labelAnnotations") or []
        ]

        width, height = _image_size(image_bytes)
        logger.info(
            "[VISION] Found %d objects, %d labels (image=%sx%s)",
            len(objects),
            len(labels),
            width,
            height,
        )
        return PrimaryResult(
            objects=objects,
            labels=labels,
            image_width=width,
            image_height=height,
            chosen_source="objects" if objects else "labels",
        )


def _load_labels(path: str) -> Dict[int, str]:
    with open(path, "r", encoding="utf-8") as f:
        raw = json.load(f)
    if isinstance(raw, list):
        return {i: str(name) for i, name in enumerate(raw)}
    return {int(k): str(v) for k, v in raw.items()}


class OnnxFoodDetector:
    """
    Offline primary detector: YOLOv8 food model exported to ONNX.

    Expects rows of [x1, y1, x2, y2, score, cls] in 640x640 model space and
    a JSON labels file mapping class ids to food names. Produces objects
    only (no labels); boxes are normalized to 0..1.
    """

    INPUT_SIZE = 640
    SCORE_THRESHOLD = 0.25

    def __init__(
        self,
        model_path: str = YOLO_MODEL_PATH,
        labels_path: str = YOLO_LABELS_PATH,
        session: Any = None,
        labels: Optional[Dict[int, str]] = None,
    ):
        if session is None:
            # Import onnxruntime lazily so the Google backend works without it
            import onnxruntime as ort  # type: ignore

            if not os.path.exists(model_path):
                raise FileNotFoundError(f"YOLO food model not found at {model_path}")
            logger.info("Initializing OnnxFoodDetector with model: %s", model_path)
            session = ort.InferenceSession(model_path, providers=["CPUExecutionProvider"])

        self.session = session
        self.input_name = self.session.get_inputs()[0].name
        self.output_name = self.session.get_outputs()[0].name
        self.labels = labels if labels is not None else _load_labels(labels_path)

    def _run(self, image: np.ndarray) -> List[RawDetection]:
        size = self.INPUT_SIZE
        img = cv2.resize(image, (size, size))
        img = img.astype(np.float32) / 255.0
        img = img.transpose(2, 0, 1)[None]  # (1, 3, 640, 640)

        outputs = self.session.run([self.output_name], {self.input_name: img})[0]
        if outputs.ndim == 3 and outputs.shape[0] == 1:
            outputs = outputs[0]

        detections: List[RawDetection] = []
        for det in outputs:
            if det.shape[0] < 6:
                continue

            x1, y1, x2, y2, score, cls_id = det[:6].tolist()
            if score < self.SCORE_THRESHOLD:
                continue

            name = self.labels.get(int(cls_id))
            if not name:
                continue

            detections.append(
                RawDetection(
                    name=name.lower(),
                    kind=KIND_OBJECT,
                    confidence=float(score),
                    bounding_box=BoundingBox(
                        x_min=max(0.0, min(1.0, x1 / size)),
                        y_min=max(0.0, min(1.0, y1 / size)),
                        x_max=max(0.0, min(1.0, x2 / size)),
                        y_max=max(0.0, min(1.0, y2 / size)),
                    ),
                )
            )
        return detections

    def detect(self, image_bytes: bytes) -> PrimaryResult:
        buf = np.frombuffer(image_bytes, dtype=np.uint8)
        img = cv2.imdecode(buf, cv2.IMREAD_COLOR) if buf.size else None
        if img is None:
            raise PrimaryDetectorError("Cannot decode image for ONNX detector")

        img = cv2.cvtColor(img, cv2.COLOR_BGR2RGB)
        h, w = img.shape[:2]

        try:
            objects = self._run(img)
        except Exception as e:
            raise PrimaryDetectorError(f"ONNX inference failed: {e}") from e

        logger.info("[VISION] YOLO-food detected %d objects", len(objects))
        return PrimaryResult(
            objects=objects,
            labels=[],
            image_width=int(w),
            image_height=int(h),
            chosen_source="onnx",
        )


def get_primary_detector(backend: str = PRIMARY_BACKEND):
    if backend == "onnx":
        return OnnxFoodDetector()
    if backend == "google":
        return GoogleVisionDetector()
    raise ValueError(f"Unknown PRIMARY_BACKEND: {backend}")
