from unittest.mock import MagicMock, Mock, patch

import pytest

from app.services.web_search_service import (
    MSG_NOT_CONFIGURED,
    MSG_SEARCH_FAILED,
    SEARCH_WEB_TOOL,
    format_search_results,
    search_web,
)


def http_client(mock_client_class, status_code=200, payload=None):
    mock_client = MagicMock()
    mock_client_class.return_value.__enter__.return_value = mock_client
    mock_response = Mock()
    mock_response.status_code = status_code
    mock_response.json.return_value = payload or {}
    mock_response.text = "error"
    mock_client.get.return_value = mock_response
    return mock_client


@pytest.fixture
def google_env():
    with patch("app.services.web_search_service.GOOGLE_API_KEY", "g-key"), patch(
        "app.services.web_search_service.SEARCH_ENGINE_ID", "cx-id"
    ):
        yield


class TestToolDefinition:
    def test_requires_query(self):
        function = SEARCH_WEB_TOOL["function"]
        assert function["name"] == "search_web"
        assert function["parameters"]["required"] == ["query"]


class TestFormatSearchResults:
    def test_lists_snippets_with_sources(self):
        items = [{"snippet": "Salario\npromedio", "link": "https://a.mx"}]

        text = format_search_results("salario contador", items)

        assert text.startswith('Según una búsqueda en la web, esto es lo que encontré sobre "salario contador":')
        assert "- Salario promedio (Fuente: https://a.mx)" in text


class TestSearchWeb:
    @patch("app.services.web_search_service.GOOGLE_API_KEY", None)
    def test_not_configured(self):
        outcome = search_web("becas")

        assert outcome.success is False
        assert outcome.result == MSG_NOT_CONFIGURED

    @patch("app.services.web_search_service.httpx.Client")
    def test_returns_top_three(self, mock_client_class, google_env):
        items = [{"snippet": f"s{i}", "link": f"https://{i}.mx"} for i in range(5)]
        mock_client = http_client(mock_client_class, payload={"items": items})

        outcome = search_web("becas")

        assert outcome.success is True
        assert "s2" in outcome.result
        assert "s3" not in outcome.result
        params = mock_client.get.call_args[1]["params"]
        assert params == {"key": "g-key", "cx": "cx-id", "q": "becas", "num": 3}

    @patch("app.services.web_search_service.httpx.Client")
    def test_no_results_is_success(self, mock_client_class, google_env):
        http_client(mock_client_class, payload={})

        outcome = search_web("xyzzy")

        assert outcome.success is True
        assert outcome.result == 'No pude encontrar resultados en la web para "xyzzy".'

    @patch("app.services.web_search_service.httpx.Client")
    def test_error_status_is_failure(self, mock_client_class, google_env):
        http_client(mock_client_class, status_code=403)

        outcome = search_web("becas")

        assert outcome.success is False
        assert outcome.result == MSG_SEARCH_FAILED

    @patch("app.services.web_search_service.httpx.Client")
    def test_network_error_is_failure(self, mock_client_class, google_env):
        mock_client_class.return_value.__enter__.side_effect = Exception("timeout")

        assert search_web("becas").success is False
