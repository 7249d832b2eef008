"""Main FastAPI application."""

import logging
import sys
import time

from fastapi import FastAPI, File, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware

from src.config import ALLOW_ALL_ORIGINS, CORS_ORIGINS
from src.vision_pipeline.errors import PrimaryDetectorError
from src.vision_pipeline.pipeline import get_pipeline_singleton

logging.basicConfig(
    level=logging.INFO,
    stream=sys.stdout,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

logger = logging.getLogger(__name__)

SUPPORTED_CONTENT_TYPES = ("image/jpeg", "image/png")

app = FastAPI()

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if ALLOW_ALL_ORIGINS else CORS_ORIGINS,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_pipeline():
    return get_pipeline_singleton()


@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/detect")
async def detect_foods(image: UploadFile = File(None)):
    """
    Detect food items on a meal photo: vision + GPT fusion.

    Returns the fused item list, portion estimates, raw detector output,
    the path/source discriminator and diagnostics.
    """
    if not image:
        raise HTTPException(422, "Image field is required")

    if image.content_type not in SUPPORTED_CONTENT_TYPES:
        raise HTTPException(422, "Unsupported format (use jpeg/png)")

    total_start = time.time()
    logger.info("[PIPELINE] Starting /detect for file: %s", image.filename)

    content = await image.read()
    if not content:
        raise HTTPException(422, "Empty image")

    try:
        pipeline = get_pipeline()
    except (RuntimeError, FileNotFoundError, ValueError) as e:
        logger.exception("Pipeline initialization failed")
        raise HTTPException(503, f"Detection unavailable: {e}")

    try:
        result = await pipeline.run(content, image.content_type)
    except PrimaryDetectorError as e:
        logger.exception("Error in /detect")
        raise HTTPException(502, f"Vision detector error: {e}")

    payload = result.to_dict()
    payload["processing_time_ms"] = round((time.time() - total_start) * 1000, 2)

    logger.info(
        "[PIPELINE] /detect completed: items=%d, path=%s, source=%s, total_ms=%s",
        len(result.items),
        result.detection_path,
        result.source,
        payload["processing_time_ms"],
    )
    return payload
