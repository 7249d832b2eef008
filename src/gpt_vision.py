"""GPT vision detector: lists food names seen in a photo."""

import base64
import logging
from typing import Any, List, Optional

from src.config import GPT_MODEL
from src.openai_client import get_openai_client
from src.prompts import FOOD_NAMES_SYSTEM_PROMPT, FOOD_NAMES_USER_PROMPT
from src.utils import extract_items, parse_json_from_text
from src.vision_pipeline.errors import SecondaryDetectorError
from src.vision_pipeline.types import SecondaryItem

logger = logging.getLogger(__name__)


def _client():
    return get_openai_client()


def _get_vision_model_name() -> str:
    """
    Resolve which GPT vision model to use.

    Controlled via GPT_MODEL env:
    - "gpt-4o-mini" (default)
    - "gpt-4o"
    """
    model = (GPT_MODEL or "gpt-4o-mini").strip()
    return model or "gpt-4o-mini"


def _coerce_confidence(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return max(0.0, min(1.0, float(value)))
    except (TypeError, ValueError):
        return None


def _to_secondary_items(raw_items: List[Any]) -> List[SecondaryItem]:
    items: List[SecondaryItem] = []
    for raw in raw_items:
        # The model sometimes answers with bare strings
        if isinstance(raw, str):
            name = raw.strip().lower()
            if name:
                items.append(SecondaryItem(name=name))
            continue
        if not isinstance(raw, dict):
            continue
        name = str(raw.get("name") or raw.get("food") or "").strip().lower()
        if not name:
            continue
        items.append(
            SecondaryItem(
                name=name,
                category=raw.get("category") or raw.get("food_category"),
                confidence=_coerce_confidence(raw.get("confidence")),
            )
        )
    return items


class GPTFoodDetector:
    """
    Secondary detector: single GPT vision call returning free-text names.

    detect() raises SecondaryDetectorError on any failure; the pipeline is
    responsible for degrading that to an empty result.
    """

    def __init__(self, model: Optional[str] = None, max_tokens: int = 300):
        self.model = model or _get_vision_model_name()
        self.max_tokens = max_tokens

    def detect(self, image_bytes: bytes, content_type: str = "image/jpeg") -> List[SecondaryItem]:
        b64_img = base64.b64encode(image_bytes).decode("utf-8")
        messages = [
            {"role": "system", "content": FOOD_NAMES_SYSTEM_PROMPT},
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": FOOD_NAMES_USER_PROMPT},
                    {
                        "type": "image_url",
                        "image_url": {"url": f"data:{content_type};base64,{b64_img}"},
                    },
                ],
            },
        ]

        logger.info(
            "[GPT] Sending %.1fkb image to model=%s",
            len(b64_img) / 1024,
            self.model,
        )

        try:
            response = _client().chat.completions.create(
                model=self.model,
                messages=messages,
                max_tokens=self.max_tokens,
                temperature=0,
                response_format={"type": "json_object"},
            )
            result_text = response.choices[0].message.content or ""
        except Exception as e:
            raise SecondaryDetectorError(f"OpenAI call failed: {e}") from e

        logger.info("[GPT] Response received, length: %s", len(result_text))

        try:
            parsed = parse_json_from_text(result_text)
        except ValueError as e:
            raise SecondaryDetectorError(str(e)) from e

        items = _to_secondary_items(extract_items(parsed))
        logger.info("[GPT] Parsed %d food names: %s", len(items), [i.name for i in items])
        return items

