import base64
import binascii
import time
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from app.logging_config import get_logger, get_user_logger
from app.schemas.message import IncomingMessage, MessageRequest
from app.services.ai_service import log_timing
from app.services.alert_service import alert_critical, alert_error
from app.services.enrollment_service import MSG_DB_ERROR, handle_enrollment
from app.services.enrollment_state import EnrollmentState
from app.services.info_service import handle_info_request
from app.services.messaging_service import download_image, send_text
from app.services.profile_store import StoreUnavailableError, get_or_create_profile, user_lock

logger = get_logger("message_router")

MSG_IMAGE_RECEIVED = "Recibí tu imagen, un momento mientras la proceso..."
MSG_IMAGE_DOWNLOAD_FAILED = "Tuve problemas para procesar la imagen. ¿Podrías intentar de nuevo?"
MSG_IMAGE_INVALID = "Lo siento, no pude procesar el contenido de la imagen."
MSG_GENERIC_ERROR = "Lo siento, ocurrió un error. Intenta de nuevo en unos minutos."

HANDLED_BY_ENROLLMENT = "enrollment"
HANDLED_BY_INFO = "info"
HANDLED_BY_NONE = "none"


@dataclass
class RouteResult:
    user_id: str
    status: Optional[str]
    handled_by: str
    detail: str


def resolve_image(request: MessageRequest) -> tuple[Optional[bytes], Optional[str]]:
    """Image bytes for the envelope, or an error reply to send instead."""
    image = request.image
    if image is None:
        return None, None
    if image.data:
        try:
            return base64.b64decode(image.data, validate=True), None
        except (binascii.Error, ValueError):
            logger.warning(f"Invalid base64 image from {request.sender_id}")
            return None, MSG_IMAGE_INVALID

    send_text(request.platform, request.sender_id, MSG_IMAGE_RECEIVED)
    content = download_image(image.url)
    if content is None:
        return None, MSG_IMAGE_DOWNLOAD_FAILED
    return content, None


def _route(db: Session, request: MessageRequest) -> RouteResult:
    user_id = request.sender_id
    user_logger = get_user_logger("message_router", user_id, request.platform)
    profile = get_or_create_profile(db, user_id, request.platform)
    state = EnrollmentState.parse(profile.inscription_status)

    image, image_error = resolve_image(request)
    if image_error:
        send_text(request.platform, user_id, image_error)
        return RouteResult(user_id, state.tag, HANDLED_BY_NONE, "image unavailable")

    message = IncomingMessage(
        platform=request.platform,
        sender_id=user_id,
        text=request.text,
        image=image,
        mime_type=request.image.mime_type if request.image else "image/jpeg",
    )
    if not message.has_text and not message.has_image:
        user_logger.info("Message without text or image ignored")
        return RouteResult(user_id, state.tag, HANDLED_BY_NONE, "empty message")

    if state.is_active:
        new_state = handle_enrollment(db, profile, message)
        return RouteResult(user_id, new_state.tag, HANDLED_BY_ENROLLMENT, f"{state.tag} -> {new_state.tag}")

    handoff_status = handle_info_request(db, profile, message)
    if handoff_status is not None and handoff_status != state.tag:
        return RouteResult(user_id, handoff_status, HANDLED_BY_ENROLLMENT, "enrollment started")
    return RouteResult(user_id, handoff_status or state.tag, HANDLED_BY_INFO, "info answered")


def process_message(db: Session, request: MessageRequest) -> RouteResult:
    """Process one inbound message to completion. Never raises."""
    user_id = request.sender_id
    start = time.monotonic()
    try:
        with user_lock(db, user_id):
            result = _route(db, request)
    except StoreUnavailableError as e:
        logger.error(f"Store unavailable for {user_id}: {e}", extra={"context": {"platform": request.platform}})
        alert_error("Profile store unavailable", {"user_id": user_id, "error": str(e)})
        send_text(request.platform, user_id, MSG_DB_ERROR)
        result = RouteResult(user_id, None, HANDLED_BY_NONE, "store unavailable")
    except Exception as e:
        logger.error(
            f"Unhandled error processing message for {user_id}: {e}",
            exc_info=True,
            extra={"context": {"platform": request.platform}},
        )
        alert_critical("Message processing failed", {"user_id": user_id, "error": str(e)})
        send_text(request.platform, user_id, MSG_GENERIC_ERROR)
        result = RouteResult(user_id, None, HANDLED_BY_NONE, "error")

    log_timing(
        "process_message_ms",
        (time.monotonic() - start) * 1000,
        extra={"user_id": user_id, "handled_by": result.handled_by},
    )
    return result
