import base64
from typing import Optional

from pydantic import ValidationError

from app.logging_config import get_logger
from app.schemas.enrollment import ExtractionResult, IneBackFields, IneFrontFields, IneSide
from app.services.ai_service import VISION_MODEL, VISION_TIMEOUT_SECONDS, generate_json
from app.services.llm import image_message

logger = get_logger("extraction_service")

FRONT_PROMPT = (
    "Analiza el ANVERSO de esta credencial INE de México y extrae en formato JSON: "
    "nombre (solo el/los nombre/s), apellidoPaterno, apellidoMaterno, fechaNacimiento (DD/MM/YYYY), y curp. "
    "Si un campo es ilegible, ponle un valor nulo. Ejemplo de salida: "
    '{"type": "anverso", "data": {"nombre": "...", "apellidoPaterno": "...", '
    '"apellidoMaterno": "...", "fechaNacimiento": "...", "curp": "..."}}'
)

BACK_PROMPT = (
    "Analiza el REVERSO de esta credencial INE de México. Extrae en formato JSON únicamente la segunda "
    'y tercera línea de la zona de texto inferior (la que empieza con "IDMEX" es la primera línea, '
    "esta se ignora). Si una línea es ilegible, ponle un valor nulo. Ejemplo de salida: "
    '{"type": "reverso", "data": {"linea2": "...", "linea3": "..."}}'
)

_SIDE_TAGS = {"front": "anverso", "back": "reverso"}
_SIDE_MODELS = {"front": IneFrontFields, "back": IneBackFields}


def _blank_to_none(value):
    if isinstance(value, str) and not value.strip():
        return None
    return value


def parse_extraction_reply(payload: dict, side: IneSide) -> Optional[ExtractionResult]:
    """Validate the vision reply for ``side``. Returns None on any shape mismatch."""
    tag = payload.get("type")
    if tag is not None and tag not in (_SIDE_TAGS[side], side):
        logger.warning(f"INE extraction returned side {tag!r}, expected {_SIDE_TAGS[side]!r}")
        return None

    data = payload.get("data")
    if not isinstance(data, dict):
        return None

    try:
        fields = _SIDE_MODELS[side].model_validate({k: _blank_to_none(v) for k, v in data.items()})
    except ValidationError as exc:
        logger.warning(f"INE extraction reply failed schema validation: {exc}")
        return None
    return ExtractionResult(side=side, fields=fields)


def extract_ine_data(image: bytes, side: IneSide, mime_type: str = "image/jpeg") -> Optional[ExtractionResult]:
    """Read the ID card photo. Returns None when the photo could not be read."""
    if side not in _SIDE_MODELS:
        raise ValueError(f"Unknown INE side: {side}")
    if not image:
        return None

    prompt = FRONT_PROMPT if side == "front" else BACK_PROMPT
    image_base64 = base64.b64encode(image).decode("ascii")
    result = generate_json(
        [image_message(prompt, image_base64, mime_type or "image/jpeg")],
        stage=f"ine_{side}_extraction_ms",
        model=VISION_MODEL,
        timeout_seconds=VISION_TIMEOUT_SECONDS,
    )
    if not result.ok:
        logger.error(f"INE extraction ({side}) failed: {result.error}", extra={"context": {"code": result.error_code}})
        return None

    return parse_extraction_reply(result.value, side)
