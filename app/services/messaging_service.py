import base64
import json
import os
from enum import Enum
from typing import Optional

import httpx

from app.logging_config import get_logger
from app.services.alert_service import alert_critical

logger = get_logger("messaging_service")

EVOLUTION_API_URL = os.environ.get("EVOLUTION_API_URL", "http://localhost:8080")
EVOLUTION_API_KEY = os.environ.get("EVOLUTION_API_KEY")
EVOLUTION_INSTANCE = os.environ.get("EVOLUTION_INSTANCE")
META_PAGE_ACCESS_TOKEN = os.environ.get("META_PAGE_ACCESS_TOKEN")
META_GRAPH_VERSION = os.environ.get("META_GRAPH_VERSION", "v19.0")
META_GRAPH_URL = os.environ.get("META_GRAPH_URL", "https://graph.facebook.com")
IMAGE_DOWNLOAD_MAX_BYTES = int(os.environ.get("IMAGE_DOWNLOAD_MAX_BYTES", str(10 * 1024 * 1024)))


class Platform(str, Enum):
    WHATSAPP = "whatsapp"
    FACEBOOK = "facebook"
    INSTAGRAM = "instagram"
    META_UNIFIED = "meta-unified"
    META = "meta"


META_PLATFORMS = frozenset({Platform.FACEBOOK, Platform.INSTAGRAM, Platform.META_UNIFIED, Platform.META})


def _evolution_url(action: str) -> str:
    return f"{EVOLUTION_API_URL.rstrip('/')}/message/{action}/{EVOLUTION_INSTANCE}"


def _graph_url() -> str:
    return f"{META_GRAPH_URL.rstrip('/')}/{META_GRAPH_VERSION}/me/messages"


def _evolution_configured(user_id: str) -> bool:
    if EVOLUTION_API_KEY and EVOLUTION_INSTANCE:
        return True
    logger.error("Evolution API is not configured (EVOLUTION_API_KEY / EVOLUTION_INSTANCE)")
    alert_critical("WhatsApp send failed", {"user_id": user_id, "error": "missing_evolution_config"})
    return False


def _meta_configured(user_id: str) -> bool:
    if META_PAGE_ACCESS_TOKEN:
        return True
    logger.error("Meta page token is missing (META_PAGE_ACCESS_TOKEN env var not set)")
    alert_critical("Meta send failed", {"user_id": user_id, "error": "missing_meta_token"})
    return False


def send_whatsapp_text(user_id: str, text: str) -> bool:
    """Send text via the Evolution API."""
    if not _evolution_configured(user_id):
        return False
    try:
        with httpx.Client(timeout=30.0) as client:
            response = client.post(
                _evolution_url("sendText"),
                json={"number": user_id, "text": text},
                headers={"apikey": EVOLUTION_API_KEY},
            )
            logger.info(f"Evolution response: status={response.status_code}, user={user_id}, body={response.text[:200]}")
            return response.status_code in (200, 201)
    except Exception as e:
        logger.error(f"Error sending WhatsApp message: {e}")
        alert_critical("WhatsApp send failed", {"user_id": user_id, "error": str(e)})
        return False


def send_whatsapp_image(user_id: str, caption: str, data: bytes, filename: str, mime_type: str) -> bool:
    """Send an image via the Evolution API as base64 media."""
    if not _evolution_configured(user_id):
        return False
    payload = {
        "number": user_id,
        "mediatype": "image",
        "mimetype": mime_type,
        "caption": caption or "",
        "media": base64.b64encode(data).decode("ascii"),
        "fileName": filename,
    }
    try:
        with httpx.Client(timeout=60.0) as client:
            response = client.post(_evolution_url("sendMedia"), json=payload, headers={"apikey": EVOLUTION_API_KEY})
            logger.info(f"Evolution media response: status={response.status_code}, user={user_id}")
            return response.status_code in (200, 201)
    except Exception as e:
        logger.error(f"Error sending WhatsApp media: {e}")
        alert_critical("WhatsApp media send failed", {"user_id": user_id, "error": str(e)})
        return False


def send_meta_text(user_id: str, text: str) -> bool:
    """Send text through the Graph API Send API (Messenger and Instagram)."""
    if not _meta_configured(user_id):
        return False
    try:
        with httpx.Client(timeout=30.0) as client:
            response = client.post(
                _graph_url(),
                params={"access_token": META_PAGE_ACCESS_TOKEN},
                json={"recipient": {"id": user_id}, "messaging_type": "RESPONSE", "message": {"text": text}},
            )
            logger.info(f"Graph response: status={response.status_code}, user={user_id}, body={response.text[:200]}")
            return response.status_code == 200
    except Exception as e:
        logger.error(f"Error sending Meta message: {e}")
        alert_critical("Meta send failed", {"user_id": user_id, "error": str(e)})
        return False


def send_meta_image(user_id: str, caption: str, data: bytes, filename: str, mime_type: str) -> bool:
    """Upload an image attachment, then send the caption as a follow-up text."""
    if not _meta_configured(user_id):
        return False
    form = {
        "recipient": json.dumps({"id": user_id}),
        "messaging_type": "RESPONSE",
        "message": json.dumps({"attachment": {"type": "image", "payload": {"is_reusable": False}}}),
    }
    try:
        with httpx.Client(timeout=60.0) as client:
            response = client.post(
                _graph_url(),
                params={"access_token": META_PAGE_ACCESS_TOKEN},
                data=form,
                files={"filedata": (filename, data, mime_type)},
            )
            logger.info(f"Graph media response: status={response.status_code}, user={user_id}")
            if response.status_code != 200:
                return False
    except Exception as e:
        logger.error(f"Error sending Meta media: {e}")
        alert_critical("Meta media send failed", {"user_id": user_id, "error": str(e)})
        return False
    if caption:
        return send_meta_text(user_id, caption)
    return True


def _resolve_platform(platform: str) -> Optional[Platform]:
    try:
        return Platform(platform)
    except ValueError:
        logger.warning(f"Unsupported platform: {platform}")
        return None


def send_text(platform: str, user_id: str, text: str) -> bool:
    """Send a text reply to ``user_id`` on ``platform``. Never raises."""
    if not user_id or not text:
        logger.warning(f"send_text: missing user_id={user_id!r} or text")
        return False
    resolved = _resolve_platform(platform)
    if resolved is None:
        return False
    if resolved is Platform.WHATSAPP:
        return send_whatsapp_text(user_id, text)
    return send_meta_text(user_id, text)


def send_image(
    platform: str,
    user_id: str,
    caption: str,
    data: bytes,
    filename: str = "imagen.jpg",
    mime_type: str = "image/jpeg",
) -> bool:
    """Send an image with caption to ``user_id`` on ``platform``. Never raises."""
    if not user_id or not data:
        logger.warning(f"send_image: missing user_id={user_id!r} or data")
        return False
    resolved = _resolve_platform(platform)
    if resolved is None:
        return False
    if resolved is Platform.WHATSAPP:
        return send_whatsapp_image(user_id, caption, data, filename, mime_type)
    return send_meta_image(user_id, caption, data, filename, mime_type)


def download_image(url: str) -> Optional[bytes]:
    """Fetch an image attachment delivered by URL. Returns None on any failure."""
    if not url:
        return None
    size_bytes = 0
    data = bytearray()
    try:
        with httpx.Client(timeout=30.0, follow_redirects=True) as client:
            with client.stream("GET", url) as response:
                if response.status_code != 200:
                    logger.warning(f"Image download failed: status={response.status_code}")
                    return None
                for chunk in response.iter_bytes():
                    if not chunk:
                        continue
                    size_bytes += len(chunk)
                    if size_bytes > IMAGE_DOWNLOAD_MAX_BYTES:
                        logger.warning(f"Image download rejected: over {IMAGE_DOWNLOAD_MAX_BYTES} bytes")
                        return None
                    data.extend(chunk)
    except Exception as e:
        logger.error(f"Error downloading image: {e}")
        return None
    if not data:
        logger.warning("Image download rejected: empty body")
        return None
    return bytes(data)
