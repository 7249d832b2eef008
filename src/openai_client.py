import logging
from functools import lru_cache

from openai import OpenAI

from src.config import GPT_TIMEOUT_MS, OPENAI_API_KEY

logger = logging.getLogger(__name__)


@lru_cache
def get_openai_client() -> OpenAI:
    if not OPENAI_API_KEY:
        raise RuntimeError("OPENAI_API_KEY is not set")
    logger.info("Initializing OpenAI client (max_retries=0)")
    # No SDK retries: the pipeline does its own single fallback.
    return OpenAI(
        api_key=OPENAI_API_KEY,
        max_retries=0,
        timeout=max(GPT_TIMEOUT_MS / 1000.0 * 2, 10.0),
    )
