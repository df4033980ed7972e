"""
Gemini model manager - cached model instances per model name.

Supports two backends:
  1. Vertex AI SDK (production) - uses GOOGLE_CLOUD_PROJECT + service account
  2. google-generativeai (local dev) - uses GOOGLE_API_KEY
"""

from __future__ import annotations

import os
from functools import lru_cache

from autofeed.infrastructure.settings import GEMINI_LOCATION, GEMINI_MODEL, GOOGLE_CLOUD_PROJECT
from autofeed.observability.logging import get_logger

logger = get_logger(__name__)


class GeminiInitializationError(RuntimeError):
    """Raised when no Gemini backend is configured or importable."""


def _vertex_model(model_name: str):
    import vertexai
    from vertexai.generative_models import GenerativeModel

    # Read env fresh; settings may have loaded before dotenv
    project = os.getenv("GOOGLE_CLOUD_PROJECT") or GOOGLE_CLOUD_PROJECT
    location = os.getenv("GEMINI_LOCATION") or GEMINI_LOCATION or "us-central1"
    if not project:
        return None

    vertexai.init(project=project, location=location)
    logger.info(
        "Initialized Gemini model (Vertex AI): project=%s, location=%s, model=%s",
        project,
        location,
        model_name,
    )
    return GenerativeModel(model_name)


def _genai_model(model_name: str):
    import google.generativeai as genai

    api_key = os.getenv("GOOGLE_API_KEY")
    if not api_key:
        return None

    genai.configure(api_key=api_key)
    logger.info("Initialized Gemini model (google-generativeai): model=%s", model_name)
    return genai.GenerativeModel(model_name)


@lru_cache(maxsize=8)
def get_gemini_model(model_name: str = GEMINI_MODEL):
    """
    Get or create a shared Gemini model instance.

    Tries Vertex AI first (needs GOOGLE_CLOUD_PROJECT), then google-generativeai
    (needs GOOGLE_API_KEY).

    Raises:
        GeminiInitializationError: If neither backend is installed and configured
    """
    try:
        model = _vertex_model(model_name)
        if model is not None:
            return model
    except ImportError:
        logger.info("Vertex AI SDK not installed, trying google-generativeai fallback")

    try:
        model = _genai_model(model_name)
    except ImportError as e:
        raise GeminiInitializationError(
            "No Gemini SDK available. Install google-cloud-aiplatform or google-generativeai."
        ) from e

    if model is None:
        raise GeminiInitializationError(
            "Gemini is not configured. Set GOOGLE_CLOUD_PROJECT (Vertex AI) or GOOGLE_API_KEY."
        )
    return model
