"""Operator notification for finalized enrollments.

The operator chat receives an HTML summary of the snapshot followed by the
ID card photos and payment proof when they were captured.
"""

import base64
import binascii
import os
from html import escape
from typing import Optional

from app.logging_config import get_logger
from app.schemas.enrollment import FinalSnapshot
from app.services.alert_service import alert_error
from app.services.enrollment_state import CANONICAL_FIELDS, INE_BACK_IMAGE, INE_FRONT_IMAGE, CanonicalField
from app.services.telegram_service import TelegramService

logger = get_logger("notification_service")

OPERATOR_BOT_TOKEN = os.environ.get("OPERATOR_BOT_TOKEN")
OPERATOR_CHAT_ID = os.environ.get("OPERATOR_CHAT_ID")

FIELD_LABELS = {
    CanonicalField.FULL_NAME: "Nombre",
    CanonicalField.BIRTH_DATE: "Fecha de nacimiento",
    CanonicalField.CURP: "CURP",
    CanonicalField.EMAIL: "Correo",
    CanonicalField.PHONE: "Teléfono",
    CanonicalField.EDUCATION_LEVEL: "Último grado de estudios",
    CanonicalField.PRIOR_SCHOOL: "Escuela de procedencia",
    CanonicalField.EMERGENCY_CONTACT_1: "Contacto de emergencia 1",
    CanonicalField.EMERGENCY_CONTACT_2: "Contacto de emergencia 2",
    CanonicalField.ENROLLMENT_LEVEL: "Nivel de inscripción",
}

METHOD_LABELS = {
    "transferencia": "Depósito / Transferencia",
    "tarjeta": "Tarjeta",
    "caja": "Pago en caja",
}


def format_completion_message(snapshot: FinalSnapshot) -> str:
    """Format the operator summary for a finalized enrollment."""
    data = snapshot.inscriptionData
    lines = ["🎓 <b>Nueva inscripción completada</b>", ""]
    for field in CANONICAL_FIELDS:
        value = data.get(field.value) or "—"
        lines.append(f"<b>{FIELD_LABELS[field]}:</b> {escape(value)}")

    payment = snapshot.payment
    lines.append("")
    lines.append(f"<b>Pago:</b> {METHOD_LABELS.get(payment.method, payment.method)} ({escape(payment.status)})")
    if payment.scheduledAt:
        lines.append(f"<b>Cita en caja:</b> {escape(payment.scheduledAt)}")
    if payment.receivedAt:
        lines.append(f"<b>Comprobante recibido:</b> {escape(payment.receivedAt)}")

    lines.append("")
    lines.append(f"<b>Plataforma:</b> {escape(snapshot.platform)}")
    lines.append(f"<b>Usuario:</b> <code>{escape(snapshot.id)}</code>")
    lines.append(f"<b>Fecha:</b> {snapshot.createdAt.strftime('%d/%m/%Y %H:%M')}")
    return "\n".join(lines)


def _decode(encoded: Optional[str]) -> Optional[bytes]:
    if not encoded:
        return None
    try:
        return base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError):
        logger.warning("Stored image is not valid base64, skipping")
        return None


def _attachments(snapshot: FinalSnapshot) -> list[tuple[str, bytes]]:
    candidates = [
        ("INE frente", snapshot.inscriptionData.get(INE_FRONT_IMAGE)),
        ("INE reverso", snapshot.inscriptionData.get(INE_BACK_IMAGE)),
        ("Comprobante de pago", snapshot.payment.proofImage),
    ]
    attachments = []
    for caption, encoded in candidates:
        decoded = _decode(encoded)
        if decoded:
            attachments.append((caption, decoded))
    return attachments


def notify_completion(snapshot: FinalSnapshot) -> bool:
    """Send the finalized snapshot to the operator chat. Never raises."""
    if not OPERATOR_BOT_TOKEN or not OPERATOR_CHAT_ID:
        logger.warning(f"Operator notification not configured, enrollment {snapshot.id} not announced")
        return False

    telegram = TelegramService(OPERATOR_BOT_TOKEN)
    result = telegram.send_message(chat_id=OPERATOR_CHAT_ID, text=format_completion_message(snapshot))
    if not result.get("ok"):
        logger.error(f"Operator notification failed: {result}", extra={"context": {"user_id": snapshot.id}})
        alert_error("Operator notification failed", {"user_id": snapshot.id, "error": result.get("error") or result})
        return False

    all_sent = True
    for caption, image in _attachments(snapshot):
        photo_result = telegram.send_photo(
            chat_id=OPERATOR_CHAT_ID,
            photo=image,
            caption=f"{caption} · {escape(snapshot.id)}",
            filename=f"{caption.lower().replace(' ', '_')}.jpg",
        )
        if not photo_result.get("ok"):
            all_sent = False
            logger.warning(f"Operator photo '{caption}' failed: {photo_result}")

    logger.info(f"Operator notified of enrollment {snapshot.id}", extra={"context": {"photos_ok": all_sent}})
    return True
