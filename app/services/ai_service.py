import os
import re
import time
import unicodedata
from typing import List, Optional

import httpx

from app.logging_config import get_logger
from app.services.llm import OpenAIProvider, extract_json_object
from app.services.result import AI_ERROR, NOT_CONFIGURED, SCHEMA_ERROR, Result

logger = get_logger("ai_service")

OPENAI_API_KEY = os.environ.get("OPENAI_API_KEY")
LLM_MODEL = os.environ.get("LLM_MODEL", "gpt-4o-mini")
VISION_MODEL = os.environ.get("VISION_MODEL", "gpt-4o")
LLM_TIMEOUT_SECONDS = float(os.environ.get("LLM_TIMEOUT_SECONDS", "20"))
VISION_TIMEOUT_SECONDS = float(os.environ.get("VISION_TIMEOUT_SECONDS", "45"))
LLM_MAX_TOKENS = int(os.environ.get("LLM_MAX_TOKENS", "800"))

# Global LLM provider instance
_llm_provider = None


def is_ai_configured() -> bool:
    return bool(OPENAI_API_KEY)


def get_llm_provider() -> OpenAIProvider:
    """Get or create LLM provider instance."""
    global _llm_provider
    if _llm_provider is None:
        _llm_provider = OpenAIProvider(api_key=OPENAI_API_KEY, default_model=LLM_MODEL)
    return _llm_provider


def log_timing(stage: str, elapsed_ms: float, *, extra: dict | None = None) -> None:
    context: dict = {}
    if extra:
        context.update(extra)
    context["stage"] = stage
    context["elapsed_ms"] = round(elapsed_ms, 2)
    logger.info("Timing", extra={"context": context})


def generate_json(
    messages: List[dict],
    *,
    stage: str,
    model: Optional[str] = None,
    timeout_seconds: Optional[float] = None,
    max_tokens: int = LLM_MAX_TOKENS,
) -> Result[dict]:
    """Run a JSON-only completion and return the decoded object.

    Transport errors map to ``ai_error``; replies without a JSON object map to
    ``schema_error``. Callers validate the object's shape themselves.
    """
    if not is_ai_configured():
        return Result.failure("OPENAI_API_KEY missing", NOT_CONFIGURED)

    model = model or LLM_MODEL
    timeout = timeout_seconds if timeout_seconds is not None else LLM_TIMEOUT_SECONDS
    llm = get_llm_provider()
    llm_start = time.monotonic()
    try:
        response = llm.generate(
            messages,
            model=model,
            temperature=0.0,
            max_tokens=max_tokens,
            timeout_seconds=timeout,
            json_mode=True,
        )
    except httpx.TimeoutException as exc:
        log_timing(stage, (time.monotonic() - llm_start) * 1000, extra={"model_name": model, "timeout": True})
        logger.warning(f"{stage} timeout after {timeout}s: {exc}")
        return Result.from_exception(exc, AI_ERROR)
    except Exception as exc:
        logger.error(f"{stage} failed: {exc}")
        return Result.from_exception(exc, AI_ERROR)

    log_timing(stage, (time.monotonic() - llm_start) * 1000, extra={"model_name": model, "timeout": False})

    payload = extract_json_object(response.content)
    if payload is None:
        logger.warning(f"{stage}: reply is not a JSON object", extra={"context": {"preview": response.content[:200]}})
        return Result.failure("Reply is not a JSON object", SCHEMA_ERROR)
    return Result.success(payload)


def fold_accents(text: str) -> str:
    """Strip diacritics: "Pérez" -> "Perez", "Ñ" -> "N"."""
    decomposed = unicodedata.normalize("NFKD", text or "")
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def normalize_for_matching(text: str) -> str:
    """Normalize text for keyword matching (casefold, no accents, trimmed punctuation)."""
    if not text:
        return ""

    normalized = fold_accents(text).strip().casefold()
    normalized = re.sub(r"\s+", " ", normalized)
    normalized = re.sub(r"^[^\w]+|[^\w]+$", "", normalized)
    return normalized
