import base64
import json
from unittest.mock import MagicMock, Mock, patch

import pytest

from app.services.messaging_service import (
    download_image,
    send_image,
    send_meta_image,
    send_meta_text,
    send_text,
    send_whatsapp_image,
    send_whatsapp_text,
)

WA_USER = "5216141234567@s.whatsapp.net"
PSID = "6543210987654321"


def http_client(mock_client_class, status_code=200):
    mock_client = MagicMock()
    mock_client_class.return_value.__enter__.return_value = mock_client
    mock_response = Mock()
    mock_response.status_code = status_code
    mock_response.text = "{}"
    mock_client.post.return_value = mock_response
    return mock_client


@pytest.fixture
def evolution_env():
    with patch("app.services.messaging_service.EVOLUTION_API_URL", "http://evolution:8080/"), patch(
        "app.services.messaging_service.EVOLUTION_API_KEY", "evo-key"
    ), patch("app.services.messaging_service.EVOLUTION_INSTANCE", "ulal"):
        yield


@pytest.fixture
def meta_env():
    with patch("app.services.messaging_service.META_PAGE_ACCESS_TOKEN", "page-token"), patch(
        "app.services.messaging_service.META_GRAPH_URL", "https://graph.facebook.com"
    ), patch("app.services.messaging_service.META_GRAPH_VERSION", "v19.0"):
        yield


class TestWhatsAppSend:
    @patch("app.services.messaging_service.httpx.Client")
    def test_sends_text_to_evolution(self, mock_client_class, evolution_env):
        mock_client = http_client(mock_client_class, status_code=201)

        assert send_whatsapp_text(WA_USER, "Hola") is True

        call_args = mock_client.post.call_args
        assert call_args[0][0] == "http://evolution:8080/message/sendText/ulal"
        assert call_args[1]["json"] == {"number": WA_USER, "text": "Hola"}
        assert call_args[1]["headers"] == {"apikey": "evo-key"}

    @patch("app.services.messaging_service.alert_critical")
    @patch("app.services.messaging_service.EVOLUTION_API_KEY", None)
    def test_not_configured_alerts(self, mock_alert):
        assert send_whatsapp_text(WA_USER, "Hola") is False
        mock_alert.assert_called_once()

    @patch("app.services.messaging_service.httpx.Client")
    def test_rejected_send_returns_false(self, mock_client_class, evolution_env):
        http_client(mock_client_class, status_code=500)

        assert send_whatsapp_text(WA_USER, "Hola") is False

    @patch("app.services.messaging_service.alert_critical")
    @patch("app.services.messaging_service.httpx.Client")
    def test_network_error_alerts(self, mock_client_class, mock_alert, evolution_env):
        mock_client_class.return_value.__enter__.side_effect = Exception("timeout")

        assert send_whatsapp_text(WA_USER, "Hola") is False
        mock_alert.assert_called_once()

    @patch("app.services.messaging_service.httpx.Client")
    def test_sends_image_as_base64_media(self, mock_client_class, evolution_env):
        mock_client = http_client(mock_client_class)

        assert send_whatsapp_image(WA_USER, "INE frente", b"jpeg", "ine.jpg", "image/jpeg") is True

        call_args = mock_client.post.call_args
        assert call_args[0][0].endswith("/message/sendMedia/ulal")
        payload = call_args[1]["json"]
        assert payload["media"] == base64.b64encode(b"jpeg").decode("ascii")
        assert payload["mediatype"] == "image"
        assert payload["caption"] == "INE frente"


class TestMetaSend:
    @patch("app.services.messaging_service.httpx.Client")
    def test_sends_text_through_graph(self, mock_client_class, meta_env):
        mock_client = http_client(mock_client_class)

        assert send_meta_text(PSID, "Hola") is True

        call_args = mock_client.post.call_args
        assert call_args[0][0] == "https://graph.facebook.com/v19.0/me/messages"
        assert call_args[1]["params"] == {"access_token": "page-token"}
        assert call_args[1]["json"] == {
            "recipient": {"id": PSID},
            "messaging_type": "RESPONSE",
            "message": {"text": "Hola"},
        }

    @patch("app.services.messaging_service.alert_critical")
    @patch("app.services.messaging_service.META_PAGE_ACCESS_TOKEN", None)
    def test_missing_token_alerts(self, mock_alert):
        assert send_meta_text(PSID, "Hola") is False
        mock_alert.assert_called_once()

    @patch("app.services.messaging_service.httpx.Client")
    def test_image_uploads_then_sends_caption(self, mock_client_class, meta_env):
        mock_client = http_client(mock_client_class)

        assert send_meta_image(PSID, "Comprobante", b"png", "pago.png", "image/png") is True

        upload, caption = mock_client.post.call_args_list
        assert upload[1]["files"] == {"filedata": ("pago.png", b"png", "image/png")}
        assert json.loads(upload[1]["data"]["recipient"]) == {"id": PSID}
        assert caption[1]["json"]["message"] == {"text": "Comprobante"}

    @patch("app.services.messaging_service.httpx.Client")
    def test_failed_upload_skips_caption(self, mock_client_class, meta_env):
        mock_client = http_client(mock_client_class, status_code=400)

        assert send_meta_image(PSID, "Comprobante", b"png", "pago.png", "image/png") is False
        assert mock_client.post.call_count == 1


class TestPlatformDispatch:
    @pytest.mark.parametrize("platform", ["facebook", "instagram", "meta-unified", "meta"])
    @patch("app.services.messaging_service.send_whatsapp_text")
    @patch("app.services.messaging_service.send_meta_text")
    def test_meta_platforms_use_graph(self, mock_meta, mock_whatsapp, platform):
        mock_meta.return_value = True

        assert send_text(platform, PSID, "Hola") is True

        mock_meta.assert_called_once_with(PSID, "Hola")
        mock_whatsapp.assert_not_called()

    @patch("app.services.messaging_service.send_whatsapp_text")
    def test_whatsapp_uses_evolution(self, mock_whatsapp):
        mock_whatsapp.return_value = True

        assert send_text("whatsapp", WA_USER, "Hola") is True
        mock_whatsapp.assert_called_once_with(WA_USER, "Hola")

    def test_unknown_platform_is_rejected(self):
        assert send_text("telegram", WA_USER, "Hola") is False

    def test_empty_text_is_rejected(self):
        assert send_text("whatsapp", WA_USER, "") is False

    @patch("app.services.messaging_service.send_whatsapp_image")
    def test_image_defaults(self, mock_image):
        mock_image.return_value = True

        send_image("whatsapp", WA_USER, "INE", b"jpeg")

        mock_image.assert_called_once_with(WA_USER, "INE", b"jpeg", "imagen.jpg", "image/jpeg")

    def test_image_without_data_is_rejected(self):
        assert send_image("whatsapp", WA_USER, "INE", b"") is False


def streamed_download(mock_client_class, status_code=200, chunks=()):
    mock_client = MagicMock()
    mock_client_class.return_value.__enter__.return_value = mock_client
    mock_response = Mock()
    mock_response.status_code = status_code
    mock_response.iter_bytes.return_value = iter(chunks)
    mock_client.stream.return_value.__enter__.return_value = mock_response
    return mock_client


class TestDownloadImage:
    @patch("app.services.messaging_service.httpx.Client")
    def test_returns_content(self, mock_client_class):
        mock_client = streamed_download(mock_client_class, chunks=[b"jpeg-", b"", b"bytes"])

        assert download_image("https://cdn.example.com/a.jpg") == b"jpeg-bytes"
        assert mock_client_class.call_args[1]["follow_redirects"] is True
        mock_client.stream.assert_called_once_with("GET", "https://cdn.example.com/a.jpg")

    @patch("app.services.messaging_service.httpx.Client")
    def test_error_status_returns_none(self, mock_client_class):
        streamed_download(mock_client_class, status_code=404)

        assert download_image("https://cdn.example.com/a.jpg") is None

    @patch("app.services.messaging_service.IMAGE_DOWNLOAD_MAX_BYTES", 8)
    @patch("app.services.messaging_service.httpx.Client")
    def test_oversized_stream_is_cut_off(self, mock_client_class):
        read = []

        def endless_body():
            while True:
                read.append(1)
                yield b"12345"

        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_response = Mock(status_code=200)
        mock_response.iter_bytes.return_value = endless_body()
        mock_client.stream.return_value.__enter__.return_value = mock_response

        assert download_image("https://cdn.example.com/huge.jpg") is None
        assert len(read) == 2

    @patch("app.services.messaging_service.IMAGE_DOWNLOAD_MAX_BYTES", 10)
    @patch("app.services.messaging_service.httpx.Client")
    def test_image_at_the_limit_is_kept(self, mock_client_class):
        streamed_download(mock_client_class, chunks=[b"12345", b"67890"])

        assert download_image("https://cdn.example.com/a.jpg") == b"1234567890"

    @patch("app.services.messaging_service.httpx.Client")
    def test_empty_body_returns_none(self, mock_client_class):
        streamed_download(mock_client_class, chunks=[])

        assert download_image("https://cdn.example.com/a.jpg") is None

    @patch("app.services.messaging_service.httpx.Client")
    def test_network_error_returns_none(self, mock_client_class):
        mock_client_class.return_value.__enter__.side_effect = Exception("dns")

        assert download_image("https://cdn.example.com/a.jpg") is None

    def test_empty_url(self):
        assert download_image("") is None
