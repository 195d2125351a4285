import json
import os
import time
from typing import List, Optional

from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import UserProfile
from app.schemas.message import IncomingMessage
from app.services.ai_service import (
    LLM_MODEL,
    LLM_TIMEOUT_SECONDS,
    get_llm_provider,
    is_ai_configured,
    log_timing,
    normalize_for_matching,
)
from app.services.alert_service import alert_error
from app.services.enrollment_service import start_enrollment
from app.services.enrollment_state import COMPLETED, EnrollmentState
from app.services.knowledge_service import format_knowledge_context, search_knowledge
from app.services.messaging_service import send_text
from app.services.profile_store import StoreUnavailableError, save_history
from app.services.web_search_service import SEARCH_WEB_TOOL, search_web

logger = get_logger("info_service")

INFO_HISTORY_MESSAGES = int(os.environ.get("INFO_HISTORY_MESSAGES", "20"))
INFO_MAX_TOOL_ROUNDS = int(os.environ.get("INFO_MAX_TOOL_ROUNDS", "3"))
INFO_MAX_TOKENS = int(os.environ.get("INFO_MAX_TOKENS", "500"))
# Stored history keeps more turns than the prompt window.
HISTORY_STORE_LIMIT = 100

ENROLLMENT_KEYWORDS = ("inscribirme", "inscripcion", "inscribir", "registro")

MSG_BUSY = "Nuestro sistema está ocupado, intenta de nuevo."
MSG_ERROR = "Lo siento, tuve un problema al procesar tu solicitud."
MSG_ALREADY_ENROLLED = (
    "¡Ya estás inscrito! 🎉 Tu registro está completo y nuestro equipo se pondrá en contacto contigo. "
    "Si tienes alguna otra duda, con gusto te ayudo."
)
MSG_SEARCHING = 'Un momento, estoy buscando información sobre "{query}"...'

SYSTEM_PROMPT = """Actúa como un asesor educativo virtual de la Universidad en Línea América Latina (ULAL). Tu personalidad es profesional, cálida, empática, motivadora y muy humana.

Reglas:
1. Si la respuesta está en la información de la universidad que se te proporciona, responde usando únicamente esa información.
2. Si la pregunta requiere datos externos o actuales (salarios, mercado laboral, comparativas), llama a la herramienta search_web con una consulta clara. No sugieras al usuario que busque por su cuenta.
3. Si usaste search_web, basa tu respuesta en el resultado y cita siempre la fuente.
4. Usa el historial para no repetir información y dosifica lo que compartes; usa viñetas cuando ayude.
5. Después de resolver la duda, invita amablemente a inscribirse: "Si te sientes listo, podemos comenzar tu proceso de inscripción cuando quieras. Solo dime 'quiero inscribirme'."

Restricciones:
- Nunca inventes datos. Si no lo sabes y no lo puedes buscar, sé honesto.
- Responde siempre en español mexicano, con un tono amigable y natural, con pocos emojis.
- Las respuestas no pueden superar los 800 caracteres."""


def is_enrollment_intent(text: Optional[str]) -> bool:
    """Accent-insensitive keyword match for "I want to enroll"."""
    normalized = normalize_for_matching(text or "")
    return any(keyword in normalized for keyword in ENROLLMENT_KEYWORDS)


def recent_history(history: Optional[list], limit: int = INFO_HISTORY_MESSAGES) -> List[dict]:
    turns = [
        {"role": turn["role"], "content": turn["content"]}
        for turn in (history or [])
        if isinstance(turn, dict) and turn.get("role") in ("user", "assistant") and turn.get("content")
    ]
    return turns[-limit:] if limit > 0 else []


def build_messages(text: str, history: Optional[list], knowledge_context: str) -> List[dict]:
    system = SYSTEM_PROMPT
    if knowledge_context:
        system = f"{system}\n\n{knowledge_context}"
    return [{"role": "system", "content": system}, *recent_history(history), {"role": "user", "content": text}]


def _tool_query(arguments: str) -> str:
    try:
        parsed = json.loads(arguments or "{}")
    except json.JSONDecodeError:
        return ""
    if not isinstance(parsed, dict):
        return ""
    return str(parsed.get("query") or "").strip()


def answer_question(platform: str, user_id: str, text: str, history: Optional[list]) -> str:
    """Run the chat model with the search_web tool and return the final answer."""
    knowledge_context = ""
    rag_start = time.monotonic()
    results = search_knowledge(text)
    log_timing("rag_ms", (time.monotonic() - rag_start) * 1000, extra={"results": len(results)})
    if results:
        knowledge_context = format_knowledge_context(results)

    messages = build_messages(text, history, knowledge_context)
    llm = get_llm_provider()

    for round_number in range(INFO_MAX_TOOL_ROUNDS + 1):
        # the last round runs without tools so the model must answer
        tools = [SEARCH_WEB_TOOL] if round_number < INFO_MAX_TOOL_ROUNDS else None
        llm_start = time.monotonic()
        response = llm.generate(
            messages,
            model=LLM_MODEL,
            temperature=0.7,
            max_tokens=INFO_MAX_TOKENS,
            timeout_seconds=LLM_TIMEOUT_SECONDS,
            tools=tools,
        )
        log_timing("info_llm_ms", (time.monotonic() - llm_start) * 1000, extra={"round": round_number})

        if not response.tool_calls:
            return response.content.strip()

        messages.append(
            {
                "role": "assistant",
                "content": response.content or None,
                "tool_calls": [
                    {"id": call.id, "type": "function", "function": {"name": call.name, "arguments": call.arguments}}
                    for call in response.tool_calls
                ],
            }
        )
        for call in response.tool_calls:
            if call.name != "search_web":
                logger.warning(f"Model requested unknown tool {call.name!r}")
                output = {"success": False, "result": f"Herramienta desconocida: {call.name}"}
            else:
                query = _tool_query(call.arguments) or text
                send_text(platform, user_id, MSG_SEARCHING.format(query=query))
                outcome = search_web(query)
                if outcome.success:
                    send_text(platform, user_id, outcome.result)
                output = {"success": outcome.success, "result": outcome.result}
            messages.append({"role": "tool", "tool_call_id": call.id, "content": json.dumps(output, ensure_ascii=False)})

    return ""


def handle_info_request(db: Session, profile: UserProfile, message: IncomingMessage) -> Optional[str]:
    """Answer a question, or hand off to enrollment on enrollment intent.

    Returns the status the profile ends in after a handoff, otherwise None.
    """
    if not message.has_text:
        logger.info(f"Info module ignoring message without text from {profile.id}")
        return None

    text = message.text.strip()
    if is_enrollment_intent(text):
        state = EnrollmentState.parse(profile.inscription_status)
        if state == COMPLETED:
            send_text(message.platform, profile.id, MSG_ALREADY_ENROLLED)
            return state.tag
        logger.info(f"Enrollment intent detected for {profile.id}")
        return start_enrollment(db, profile, message).tag

    if not is_ai_configured():
        send_text(message.platform, profile.id, MSG_BUSY)
        return None

    try:
        answer = answer_question(message.platform, profile.id, text, profile.history)
    except Exception as e:
        logger.error(f"Info request failed for {profile.id}: {e}", exc_info=True)
        send_text(message.platform, profile.id, MSG_ERROR)
        return None

    if not answer:
        send_text(message.platform, profile.id, MSG_ERROR)
        return None

    send_text(message.platform, profile.id, answer)

    history = list(profile.history or [])
    history.append({"role": "user", "content": text})
    history.append({"role": "assistant", "content": answer})
    try:
        save_history(db, profile.id, history[-HISTORY_STORE_LIMIT:])
    except StoreUnavailableError as e:
        # answer already delivered, only the transcript is lost
        logger.error(f"History not saved for {profile.id}: {e}")
        alert_error("Profile store unavailable", {"user_id": profile.id, "error": str(e)})
    return None
