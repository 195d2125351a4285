"""Enrollment flow: registration data, ID card verification, payment selection.

Each inbound message runs one transition. Handlers work on copies of the
profile's data and payment, return an ``Outcome``, and the outcome is
persisted in a single commit before the replies go out. A failed service call
keeps the current status and sends a retry prompt.
"""

import base64
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import UserProfile
from app.schemas.enrollment import FinalSnapshot, PaymentRecord
from app.schemas.message import IncomingMessage
from app.services import data_assistant, extraction_service, notification_service, scheduler_service
from app.services.ai_service import is_ai_configured, normalize_for_matching
from app.services.alert_service import alert_error
from app.services.enrollment_state import (
    ALLOWED_DATA_KEYS,
    AWAITING_ALL_DATA,
    AWAITING_CAJA_SCHEDULE,
    AWAITING_INE_BACK,
    AWAITING_PAYMENT_METHOD,
    AWAITING_PAYMENT_PROOF,
    CANONICAL_FIELDS,
    COMPLETED,
    FIELD_QUESTIONS,
    INE_BACK_IMAGE,
    INE_FRONT_IMAGE,
    NOT_STARTED,
    PENDING_IMPLEMENTATION,
    VALIDATING_DATA,
    EnrollmentState,
    EnrollmentStatus,
    state_after_collection,
    transition,
)
from app.services.messaging_service import send_text
from app.services.profile_store import StoreUnavailableError, complete_enrollment, upsert_profile
from app.services.validation_service import validate_back, validate_front

logger = get_logger("enrollment_service")

MSG_BUSY = "Sistema ocupado, intenta de nuevo."
MSG_DB_ERROR = "Lo siento, hay un problema con nuestra base de datos."

MSG_CHECKLIST = (
    "¡Excelente! Para realizar tu trámite de inscripción, por favor mándame tus siguientes datos. "
    "Puedes escribirlos en un solo mensaje, separados por comas o en diferentes líneas:\n"
    "▪️ Nombre completo\n"
    "▪️ Fecha de nacimiento (DD/MM/AAAA)\n"
    "▪️ CURP\n"
    "▪️ Correo electrónico\n"
    "▪️ Teléfono con WhatsApp\n"
    "▪️ Último grado de estudios terminado\n"
    "▪️ Escuela de procedencia\n"
    "▪️ 2 contactos de emergencia (nombre y teléfono)\n"
    "▪️ Nivel al que te inscribes (y horario si es presencial)"
)
MSG_PROCESSING_DATA = "Gracias, estoy procesando tu información..."
MSG_DATA_RETRY = "Hubo un problema procesando tu información. ¿Podrías intentar enviarla de nuevo?"
MSG_ALL_DATA = "¡Perfecto, tengo todos tus datos! Ahora, por favor, envíame una foto clara del FRENTE de tu INE."
MSG_ALL_DATA_AFTER_COLLECTING = "¡Perfecto, ahora sí tengo todo! Por favor, envíame la foto del FRENTE de tu INE."

MSG_FRONT_RECEIVED = "Recibí la foto del frente, validando la información... 🧐"
MSG_FRONT_UNREADABLE = "No pude leer la información de la imagen. ¿Podrías enviar una foto más clara?"
MSG_FRONT_OK = "¡Validación exitosa! 👍 Ahora, por favor, envíame la foto del REVERSO."
MSG_FRONT_MISMATCH = "Hubo una discrepancia: {reason}. Verifica tus datos o envía una foto más clara."

MSG_BACK_RECEIVED = "Recibí la foto del reverso, realizando la última comprobación..."
MSG_BACK_UNREADABLE = "No pude leer la información del reverso. ¿Podrías enviar una foto más clara?"
MSG_BACK_MISMATCH = "La información del reverso no coincide: {reason}. Por favor, envía una foto clara del reverso."

MSG_PAYMENT_MENU = (
    "¡Perfecto, todos tus documentos son correctos! Para finalizar, solo falta el pago. ¿Qué método prefieres?\n"
    "1. Depósito o Transferencia\n"
    "2. Pago con Tarjeta\n"
    "3. Pago en Caja"
)
MSG_PAYMENT_UNKNOWN = "No entendí tu selección. Por favor, elige 1, 2 o 3."
MSG_TRANSFER_DETAILS = (
    "Claro, aquí tienes los datos para tu pago:\n"
    "Banco: BANAMEX\n"
    "Beneficiario: UNIVERSIDAD DE MEXICO AMERICA LATINA EN LINEA SC\n"
    "CLABE: 0021 5070 1822 2027 09\n"
    "CUENTA: 7018-2220270\n\n"
    "Por favor, envíame una foto de tu comprobante de pago cuando lo hayas realizado."
)
MSG_CARD_PENDING = (
    "Actualmente estamos trabajando en la integración para pagos con tarjeta. "
    "Por ahora, ¿te gustaría elegir la opción de depósito/transferencia (1) o pago en caja (3)?"
)
MSG_CAJA_HOURS = (
    "¡Con gusto te esperamos! Nuestros horarios de atención son:\n"
    f"{scheduler_service.BUSINESS_HOURS_TEXT}\n\n"
    "¿Qué día y hora te gustaría pasar a realizar tu pago para agendar tu visita?"
)

MSG_PROOF_RECEIVED = (
    "¡He recibido tu comprobante! Gracias, en breve confirmaremos tu pago. ¡Tu inscripción está completa!"
)
MSG_SCHEDULE_UNCLEAR = "No pude entender la fecha y hora. ¿Podrías ser más específico?"
MSG_SCHEDULE_CLOSED = (
    "Ese horario está fuera de nuestro horario de atención:\n"
    f"{scheduler_service.BUSINESS_HOURS_TEXT}\n\n"
    "¿Qué otro día y hora te gustaría?"
)
MSG_SCHEDULED = "¡Perfecto! Hemos agendado tu visita para el {date_time}. ¡Tu inscripción está completa!"

PAYMENT_TRANSFER = "transferencia"
PAYMENT_CARD = "tarjeta"
PAYMENT_CAJA = "caja"

_PAYMENT_KEYWORDS = (
    (PAYMENT_TRANSFER, re.compile(r"\b(1|deposito|transferencia)\b")),
    (PAYMENT_CARD, re.compile(r"\b(2|tarjeta)\b")),
    (PAYMENT_CAJA, re.compile(r"\b(3|caja)\b")),
)


@dataclass
class EnrollmentContext:
    db: Session
    profile: UserProfile
    message: IncomingMessage
    state: EnrollmentState
    data: dict
    payment: Optional[dict]
    now: datetime

    @property
    def user_id(self) -> str:
        return self.profile.id

    def send(self, text: str) -> bool:
        return send_text(self.message.platform, self.user_id, text)


@dataclass
class Outcome:
    """Result of one transition. ``state`` equal to the current state means stay."""

    state: EnrollmentState
    replies: list[str] = field(default_factory=list)
    data: Optional[dict] = None
    payment: Optional[dict] = None
    completed: bool = False


def _stay(ctx: EnrollmentContext, *replies: str) -> Outcome:
    return Outcome(state=ctx.state, replies=list(replies))


def _encode_image(image: bytes) -> str:
    return base64.b64encode(image).decode("ascii")


def canonical_data(data: dict) -> dict[str, str]:
    """Collected canonical fields only, without the stored images."""
    return {f.value: data[f.value] for f in CANONICAL_FIELDS if data.get(f.value)}


def parse_payment_choice(text: str) -> Optional[str]:
    """Map "1"/"2"/"3" or a payment keyword to a method. Ambiguous input returns None."""
    normalized = normalize_for_matching(text)
    matches = {method for method, pattern in _PAYMENT_KEYWORDS if pattern.search(normalized)}
    if len(matches) != 1:
        return None
    return matches.pop()


def _collection_outcome(ctx: EnrollmentContext, text: str, *, after_collecting: bool) -> Outcome:
    collected = canonical_data(ctx.data)
    result = data_assistant.extract_enrollment_data(text, collected)
    if not result.ok:
        logger.warning(
            f"Data assistant failed for {ctx.user_id}: {result.error}",
            extra={"context": {"code": result.error_code, "status": ctx.state.tag}},
        )
        return _stay(ctx, MSG_DATA_RETRY)

    # Values already collected win over a re-read of the same text.
    merged = {**ctx.data, **result.value.data, **collected}
    next_state = state_after_collection(result.value.missing)
    if next_state.field is not None:
        reply = f"Gracias. {FIELD_QUESTIONS[next_state.field]}"
    else:
        reply = MSG_ALL_DATA_AFTER_COLLECTING if after_collecting else MSG_ALL_DATA
    return Outcome(state=next_state, replies=[reply], data=merged)


def _handle_awaiting_all_data(ctx: EnrollmentContext) -> Outcome:
    return Outcome(state=VALIDATING_DATA, replies=[MSG_CHECKLIST])


def _handle_validating_data(ctx: EnrollmentContext) -> Outcome:
    ctx.send(MSG_PROCESSING_DATA)
    return _collection_outcome(ctx, ctx.message.text.strip(), after_collecting=False)


def _handle_collecting(ctx: EnrollmentContext) -> Outcome:
    answer = ctx.message.text.strip()
    ctx.data[ctx.state.field.value] = answer
    text = data_assistant.render_collected(canonical_data(ctx.data))
    return _collection_outcome(ctx, text, after_collecting=True)


def _handle_ine_front(ctx: EnrollmentContext) -> Outcome:
    ctx.send(MSG_FRONT_RECEIVED)
    extracted = extraction_service.extract_ine_data(ctx.message.image, "front", ctx.message.mime_type)
    if extracted is None:
        return _stay(ctx, MSG_FRONT_UNREADABLE)

    verdict = validate_front(ctx.data, extracted.fields)
    logger.info(
        "Front validation verdict",
        extra={"context": {"user_id": ctx.user_id, "match": verdict.match, "reason": verdict.reason}},
    )
    if not verdict.match:
        return _stay(ctx, MSG_FRONT_MISMATCH.format(reason=verdict.reason))

    ctx.data[INE_FRONT_IMAGE] = _encode_image(ctx.message.image)
    return Outcome(state=AWAITING_INE_BACK, replies=[MSG_FRONT_OK], data=ctx.data)


def _handle_ine_back(ctx: EnrollmentContext) -> Outcome:
    ctx.send(MSG_BACK_RECEIVED)
    extracted = extraction_service.extract_ine_data(ctx.message.image, "back", ctx.message.mime_type)
    if extracted is None:
        return _stay(ctx, MSG_BACK_UNREADABLE)

    verdict = validate_back(ctx.data, extracted.fields)
    logger.info(
        "Back validation verdict",
        extra={"context": {"user_id": ctx.user_id, "match": verdict.match, "reason": verdict.reason}},
    )
    if not verdict.match:
        return _stay(ctx, MSG_BACK_MISMATCH.format(reason=verdict.reason))

    ctx.data[INE_BACK_IMAGE] = _encode_image(ctx.message.image)
    return Outcome(state=AWAITING_PAYMENT_METHOD, replies=[MSG_PAYMENT_MENU], data=ctx.data)


def _handle_payment_method(ctx: EnrollmentContext) -> Outcome:
    choice = parse_payment_choice(ctx.message.text)
    if choice == PAYMENT_TRANSFER:
        payment = {"method": PAYMENT_TRANSFER, "status": "pending"}
        return Outcome(state=AWAITING_PAYMENT_PROOF, replies=[MSG_TRANSFER_DETAILS], payment=payment)
    if choice == PAYMENT_CARD:
        payment = {"method": PAYMENT_CARD, "status": "pending_implementation"}
        return Outcome(state=PENDING_IMPLEMENTATION, replies=[MSG_CARD_PENDING], payment=payment)
    if choice == PAYMENT_CAJA:
        payment = {"method": PAYMENT_CAJA, "status": "pending_schedule"}
        return Outcome(state=AWAITING_CAJA_SCHEDULE, replies=[MSG_CAJA_HOURS], payment=payment)
    return _stay(ctx, MSG_PAYMENT_UNKNOWN)


def _handle_pending_implementation(ctx: EnrollmentContext) -> Outcome:
    if parse_payment_choice(ctx.message.text) == PAYMENT_CARD:
        return _stay(ctx, MSG_CARD_PENDING)
    return _handle_payment_method(ctx)


def _handle_payment_proof(ctx: EnrollmentContext) -> Outcome:
    payment = {
        **(ctx.payment or {}),
        "method": PAYMENT_TRANSFER,
        "status": "comprobante_recibido",
        "proofImage": _encode_image(ctx.message.image),
        "receivedAt": ctx.now.isoformat(),
    }
    return Outcome(state=COMPLETED, replies=[MSG_PROOF_RECEIVED], payment=payment, completed=True)


def _handle_caja_schedule(ctx: EnrollmentContext) -> Outcome:
    parsed = scheduler_service.parse_appointment(ctx.message.text, ctx.now)
    if parsed.dateTime is None:
        return _stay(ctx, MSG_SCHEDULE_UNCLEAR)
    if not scheduler_service.is_within_business_hours(parsed.dateTime):
        return _stay(ctx, MSG_SCHEDULE_CLOSED)

    payment = {
        **(ctx.payment or {"method": PAYMENT_CAJA}),
        "method": PAYMENT_CAJA,
        "status": "scheduled",
        "scheduledAt": parsed.dateTime,
    }
    reply = MSG_SCHEDULED.format(date_time=parsed.dateTime)
    return Outcome(state=COMPLETED, replies=[reply], payment=payment, completed=True)


# status -> (handler, accepts text, accepts image)
HANDLERS: dict[EnrollmentStatus, tuple[Callable[[EnrollmentContext], Outcome], bool, bool]] = {
    EnrollmentStatus.AWAITING_ALL_DATA: (_handle_awaiting_all_data, True, True),
    EnrollmentStatus.VALIDATING_DATA: (_handle_validating_data, True, False),
    EnrollmentStatus.COLLECTING: (_handle_collecting, True, False),
    EnrollmentStatus.AWAITING_INE_FRONT: (_handle_ine_front, False, True),
    EnrollmentStatus.AWAITING_INE_BACK: (_handle_ine_back, False, True),
    EnrollmentStatus.AWAITING_PAYMENT_METHOD: (_handle_payment_method, True, False),
    EnrollmentStatus.PENDING_IMPLEMENTATION: (_handle_pending_implementation, True, False),
    EnrollmentStatus.AWAITING_PAYMENT_PROOF: (_handle_payment_proof, False, True),
    EnrollmentStatus.AWAITING_CAJA_SCHEDULE: (_handle_caja_schedule, True, False),
}


def build_snapshot(ctx: EnrollmentContext, outcome: Outcome) -> FinalSnapshot:
    data = outcome.data if outcome.data is not None else ctx.data
    return FinalSnapshot(
        id=ctx.user_id,
        platform=ctx.message.platform,
        inscriptionData={k: v for k, v in data.items() if k in ALLOWED_DATA_KEYS},
        payment=PaymentRecord(**outcome.payment),
        createdAt=ctx.now,
    )


def _persist(ctx: EnrollmentContext, outcome: Outcome) -> Optional[FinalSnapshot]:
    """Write the outcome in one commit. Returns the snapshot when the flow completed."""
    changed = outcome.state != ctx.state or outcome.data is not None or outcome.payment is not None
    if not changed:
        return None

    next_state = outcome.state if outcome.state == ctx.state else transition(ctx.state, outcome.state)
    values = {"inscription_status": next_state.tag}
    if outcome.data is not None:
        values["inscription_data"] = {k: v for k, v in outcome.data.items() if k in ALLOWED_DATA_KEYS}
    if outcome.payment is not None:
        values["payment"] = outcome.payment

    if outcome.completed:
        snapshot = build_snapshot(ctx, outcome)
        complete_enrollment(ctx.db, ctx.user_id, values, snapshot)
        return snapshot

    upsert_profile(ctx.db, ctx.user_id, values)
    return None


def _report_store_failure(ctx: EnrollmentContext, exc: StoreUnavailableError) -> None:
    logger.error(
        f"Store unavailable during enrollment: {exc}",
        extra={"context": {"user_id": ctx.user_id, "status": ctx.state.tag}},
    )
    alert_error("Profile store unavailable", {"user_id": ctx.user_id, "status": ctx.state.tag, "error": str(exc)})
    ctx.send(MSG_DB_ERROR)


def _notify_operator(snapshot: FinalSnapshot) -> None:
    try:
        notification_service.notify_completion(snapshot)
    except Exception as exc:
        logger.exception(f"Operator notification raised for {snapshot.id}")
        alert_error("Operator notification failed", {"user_id": snapshot.id, "error": str(exc)})


def run_transition(
    db: Session,
    profile: UserProfile,
    message: IncomingMessage,
    state: EnrollmentState,
    now: Optional[datetime] = None,
) -> EnrollmentState:
    """Run one transition from ``state``. Returns the status the profile ends in."""
    entry = HANDLERS.get(state.status)
    if entry is None:
        logger.warning(f"Enrollment called in inactive status {state.tag} for {profile.id}")
        return state

    handler, accepts_text, accepts_image = entry
    if not ((accepts_text and message.has_text) or (accepts_image and message.has_image)):
        logger.info(
            "Ignoring message kind for status",
            extra={
                "context": {
                    "user_id": profile.id,
                    "status": state.tag,
                    "has_text": message.has_text,
                    "has_image": message.has_image,
                }
            },
        )
        return state

    if not is_ai_configured():
        send_text(message.platform, profile.id, MSG_BUSY)
        return state

    ctx = EnrollmentContext(
        db=db,
        profile=profile,
        message=message,
        state=state,
        data=dict(profile.inscription_data or {}),
        payment=dict(profile.payment) if profile.payment else None,
        now=now or scheduler_service.local_now(),
    )
    logger.info(f"Enrollment step {state.tag} for {profile.id}", extra={"context": {"platform": message.platform}})

    outcome = handler(ctx)
    try:
        snapshot = _persist(ctx, outcome)
    except StoreUnavailableError as exc:
        _report_store_failure(ctx, exc)
        return state

    for reply in outcome.replies:
        ctx.send(reply)

    if snapshot is not None:
        _notify_operator(snapshot)

    if outcome.state != state:
        logger.info(f"Enrollment {profile.id}: {state.tag} -> {outcome.state.tag}")
    return outcome.state


def handle_enrollment(
    db: Session,
    profile: UserProfile,
    message: IncomingMessage,
    now: Optional[datetime] = None,
) -> EnrollmentState:
    """Entry point for messages from users with an enrollment in progress."""
    state = EnrollmentState.parse(profile.inscription_status)
    return run_transition(db, profile, message, state, now)


def start_enrollment(
    db: Session,
    profile: UserProfile,
    message: IncomingMessage,
    now: Optional[datetime] = None,
) -> EnrollmentState:
    """Handoff from the information module: move to awaiting_all_data and run it."""
    if not is_ai_configured():
        send_text(message.platform, profile.id, MSG_BUSY)
        return EnrollmentState.parse(profile.inscription_status)

    current = EnrollmentState.parse(profile.inscription_status)
    if current != NOT_STARTED:
        logger.info(f"Enrollment already at {current.tag} for {profile.id}, resuming")
        return run_transition(db, profile, message, current, now)

    state = transition(NOT_STARTED, AWAITING_ALL_DATA)
    try:
        upsert_profile(db, profile.id, {"inscription_status": state.tag, "platform": message.platform})
    except StoreUnavailableError as exc:
        logger.error(f"Store unavailable on enrollment handoff: {exc}", extra={"context": {"user_id": profile.id}})
        alert_error("Profile store unavailable", {"user_id": profile.id, "status": current.tag, "error": str(exc)})
        send_text(message.platform, profile.id, MSG_DB_ERROR)
        return current

    logger.info(f"Enrollment started for {profile.id}", extra={"context": {"platform": message.platform}})
    return run_transition(db, profile, message, state, now)
