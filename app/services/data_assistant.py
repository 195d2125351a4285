from typing import Mapping, Optional

from pydantic import ValidationError

from app.logging_config import get_logger
from app.schemas.enrollment import AssistantReply, AssistantResult
from app.services.ai_service import generate_json
from app.services.enrollment_state import CANONICAL_FIELDS, CanonicalField
from app.services.result import SCHEMA_ERROR, Result

logger = get_logger("data_assistant")

FIELD_LIST = ", ".join(f.value for f in CANONICAL_FIELDS)

SYSTEM_PROMPT = (
    "Eres un asistente de inscripciones para ULAL. Tu única tarea es guiar al usuario a través del "
    "formulario. Si se te pide analizar datos, tu única salida debe ser un objeto JSON."
)

EXTRACTION_PROMPT = (
    "Analiza este bloque de texto y extrae los campos: {fields}. "
    "Incluye en \"data\" solo los campos que aparezcan explícitamente en el texto; nunca inventes ni "
    "completes valores. Las fechas van en formato DD/MM/AAAA. Cada contacto de emergencia es un texto "
    "con nombre y teléfono. "
    'Responde solo con un JSON: {{"action": "validate_data", "data": {{...}}, "missing": [...]}}. '
    'El texto es: "{text}"'
)


def render_collected(data: Mapping[str, str]) -> str:
    """Render collected canonical fields as ``campo: valor`` lines for re-analysis."""
    lines = []
    for field in CANONICAL_FIELDS:
        value = data.get(field.value)
        if value:
            lines.append(f"{field.value}: {value}")
    return "\n".join(lines)


def _clean_data(raw: Mapping[str, object]) -> dict[str, str]:
    allowed = {f.value for f in CANONICAL_FIELDS}
    cleaned = {}
    for key, value in raw.items():
        if key not in allowed or value is None or isinstance(value, (dict, list)):
            continue
        text = str(value).strip()
        if text and text.casefold() not in {"null", "none", "n/a"}:
            cleaned[key] = text
    return cleaned


def missing_fields(data: Mapping[str, str]) -> list[CanonicalField]:
    """Canonical fields still empty in ``data``, in canonical order."""
    return [f for f in CANONICAL_FIELDS if not (data.get(f.value) or "").strip()]


def extract_enrollment_data(text: str, collected: Optional[Mapping[str, str]] = None) -> Result[AssistantResult]:
    """Extract canonical fields from free text.

    ``data`` holds only what this text yields; ``missing`` is computed against
    ``collected`` merged with ``data``.
    """
    collected = collected or {}
    prompt = EXTRACTION_PROMPT.format(fields=FIELD_LIST, text=text.replace('"', "'"))
    messages = [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": prompt},
    ]

    result = generate_json(messages, stage="data_assistant_llm_ms")
    if not result.ok:
        return Result.failure(result.error, result.error_code)

    try:
        reply = AssistantReply.model_validate(result.value)
    except ValidationError as exc:
        logger.warning(f"Data assistant reply failed schema validation: {exc}")
        return Result.failure(str(exc), SCHEMA_ERROR)

    data = _clean_data(reply.data)
    merged = {**data, **{k: v for k, v in collected.items() if v}}
    missing = missing_fields(merged)
    logger.info(
        "Data assistant result",
        extra={"context": {"extracted": sorted(data), "missing": [f.value for f in missing]}},
    )
    return Result.success(AssistantResult(data=data, missing=missing))
