from typing import Optional, Union

import httpx

from app.logging_config import get_logger

logger = get_logger("telegram_service")

# Telegram caps photo captions at 1024 characters.
CAPTION_LIMIT = 1024


class TelegramService:
    """Service for sending messages to Telegram."""

    BASE_URL = "https://api.telegram.org/bot{token}"

    def __init__(self, bot_token: str):
        self.bot_token = bot_token
        self.base_url = self.BASE_URL.format(token=bot_token)

    def _make_request(self, method: str, data: Optional[dict] = None, files: Optional[dict] = None) -> dict:
        """Make request to Telegram API."""
        url = f"{self.base_url}/{method}"
        try:
            with httpx.Client(timeout=30.0) as client:
                if files:
                    response = client.post(url, data=data or {}, files=files)
                else:
                    response = client.post(url, json=data or {})
                return response.json()
        except Exception as e:
            logger.error(f"Telegram API error ({method}): {e}")
            return {"ok": False, "error": str(e)}

    def send_message(self, chat_id: str, text: str, parse_mode: str = "HTML") -> dict:
        """Send message to Telegram chat."""
        data = {
            "chat_id": chat_id,
            "text": text,
            "parse_mode": parse_mode,
        }
        return self._make_request("sendMessage", data)

    def send_photo(
        self,
        chat_id: str,
        photo: Union[str, bytes],
        caption: Optional[str] = None,
        parse_mode: str = "HTML",
        filename: str = "photo.jpg",
        mime_type: str = "image/jpeg",
    ) -> dict:
        """Send a photo given as a public URL or as raw bytes."""
        data = {"chat_id": chat_id}
        if caption:
            data["caption"] = caption[:CAPTION_LIMIT]
            data["parse_mode"] = parse_mode

        if isinstance(photo, str):
            data["photo"] = photo
            return self._make_request("sendPhoto", data=data)

        return self._make_request("sendPhoto", data=data, files={"photo": (filename, photo, mime_type)})
