import json
from types import SimpleNamespace
from unittest.mock import Mock, patch

import pytest

from app.schemas.message import IncomingMessage
from app.services import info_service
from app.services.enrollment_state import VALIDATING_DATA
from app.services.info_service import (
    HISTORY_STORE_LIMIT,
    MSG_ALREADY_ENROLLED,
    MSG_BUSY,
    MSG_ERROR,
    answer_question,
    build_messages,
    handle_info_request,
    is_enrollment_intent,
    recent_history,
)
from app.services.llm.base import LLMResponse, ToolCall
from app.services.profile_store import StoreUnavailableError
from app.services.web_search_service import SearchOutcome

PSID = "6543210987654321"


def make_profile(status="not_started", history=None):
    return SimpleNamespace(id=PSID, inscription_status=status, inscription_data={}, payment=None, history=history or [])


def message(text):
    return IncomingMessage(platform="facebook", sender_id=PSID, text=text)


def llm_reply(content="", tool_calls=None):
    return LLMResponse(content=content, model="gpt-4o-mini", tool_calls=tool_calls or [])


class TestEnrollmentIntent:
    @pytest.mark.parametrize(
        "text",
        ["Quiero inscribirme", "¿Cómo es la INSCRIPCIÓN?", "me quiero inscribir", "info del registro"],
    )
    def test_detects_keywords(self, text):
        assert is_enrollment_intent(text) is True

    @pytest.mark.parametrize("text", ["¿Cuánto cuesta la prepa?", "", None])
    def test_other_text(self, text):
        assert is_enrollment_intent(text) is False


class TestPromptBuilding:
    def test_recent_history_keeps_last_turns(self):
        history = [{"role": "user", "content": str(i)} for i in range(30)]
        assert [t["content"] for t in recent_history(history, 3)] == ["27", "28", "29"]

    def test_recent_history_drops_malformed_turns(self):
        history = [{"role": "system", "content": "x"}, {"role": "user"}, "texto", {"role": "assistant", "content": "ok"}]
        assert recent_history(history) == [{"role": "assistant", "content": "ok"}]

    def test_knowledge_goes_into_system_prompt(self):
        messages = build_messages("¿Horarios?", [], "Información relevante de la universidad:\n1. L-V")

        assert messages[0]["role"] == "system"
        assert messages[0]["content"].endswith("1. L-V")
        assert messages[-1] == {"role": "user", "content": "¿Horarios?"}


class TestAnswerQuestion:
    @patch("app.services.info_service.search_knowledge", return_value=[])
    @patch("app.services.info_service.get_llm_provider")
    def test_direct_answer(self, mock_provider, _mock_search):
        llm = mock_provider.return_value
        llm.generate.return_value = llm_reply("  La prepa dura 2 años.  ")

        assert answer_question("facebook", PSID, "¿Cuánto dura?", []) == "La prepa dura 2 años."
        assert llm.generate.call_args[1]["tools"][0]["function"]["name"] == "search_web"

    @patch("app.services.info_service.send_text")
    @patch("app.services.info_service.search_web")
    @patch("app.services.info_service.search_knowledge", return_value=[])
    @patch("app.services.info_service.get_llm_provider")
    def test_tool_call_runs_search_and_feeds_result(self, mock_provider, _mock_search, mock_web, mock_send):
        llm = mock_provider.return_value
        call = ToolCall(id="call_1", name="search_web", arguments=json.dumps({"query": "salario contador"}))
        llm.generate.side_effect = [llm_reply(tool_calls=[call]), llm_reply("Según INEGI... (Fuente: a.mx)")]
        mock_web.return_value = SearchOutcome(success=True, result="resultado")

        answer = answer_question("facebook", PSID, "¿Cuánto gana un contador?", [])

        assert answer == "Según INEGI... (Fuente: a.mx)"
        mock_web.assert_called_once_with("salario contador")
        sent = [c[0][2] for c in mock_send.call_args_list]
        assert sent == ['Un momento, estoy buscando información sobre "salario contador"...', "resultado"]
        second_messages = llm.generate.call_args_list[1][0][0]
        assert second_messages[-2]["tool_calls"][0]["id"] == "call_1"
        assert second_messages[-1]["role"] == "tool"
        assert json.loads(second_messages[-1]["content"]) == {"success": True, "result": "resultado"}

    @patch("app.services.info_service.send_text")
    @patch("app.services.info_service.search_web")
    @patch("app.services.info_service.search_knowledge", return_value=[])
    @patch("app.services.info_service.get_llm_provider")
    def test_failed_search_is_not_sent_to_user(self, mock_provider, _mock_search, mock_web, mock_send):
        llm = mock_provider.return_value
        call = ToolCall(id="call_1", name="search_web", arguments="{}")
        llm.generate.side_effect = [llm_reply(tool_calls=[call]), llm_reply("No tengo ese dato.")]
        mock_web.return_value = SearchOutcome(success=False, result="error")

        answer_question("facebook", PSID, "¿Salarios?", [])

        mock_web.assert_called_once_with("¿Salarios?")
        assert mock_send.call_count == 1

    @patch("app.services.info_service.INFO_MAX_TOOL_ROUNDS", 1)
    @patch("app.services.info_service.send_text")
    @patch("app.services.info_service.search_web")
    @patch("app.services.info_service.search_knowledge", return_value=[])
    @patch("app.services.info_service.get_llm_provider")
    def test_last_round_has_no_tools(self, mock_provider, _mock_search, mock_web, _mock_send):
        llm = mock_provider.return_value
        call = ToolCall(id="c", name="search_web", arguments='{"query": "x"}')
        llm.generate.side_effect = [llm_reply(tool_calls=[call]), llm_reply("final")]
        mock_web.return_value = SearchOutcome(success=True, result="r")

        assert answer_question("facebook", PSID, "x", []) == "final"
        assert llm.generate.call_args_list[1][1]["tools"] is None

    @patch("app.services.info_service.search_knowledge")
    @patch("app.services.info_service.get_llm_provider")
    def test_knowledge_results_reach_prompt(self, mock_provider, mock_search):
        mock_search.return_value = [{"text": "Colegiatura $1,200", "score": 0.9, "source": "costos.md"}]
        llm = mock_provider.return_value
        llm.generate.return_value = llm_reply("Cuesta $1,200.")

        answer_question("facebook", PSID, "¿Colegiatura?", [])

        system = llm.generate.call_args[0][0][0]["content"]
        assert "Colegiatura $1,200 (Documento: costos.md)" in system


@pytest.fixture
def info_mocks():
    with patch.object(info_service, "send_text") as send_text, patch.object(
        info_service, "save_history"
    ) as save_history, patch.object(info_service, "is_ai_configured", return_value=True), patch.object(
        info_service, "answer_question"
    ) as answer, patch.object(info_service, "start_enrollment") as start, patch.object(
        info_service, "alert_error"
    ) as alert:
        yield SimpleNamespace(send_text=send_text, save_history=save_history, answer=answer, start=start, alert=alert)


class TestHandleInfoRequest:
    def test_answers_and_saves_history(self, info_mocks):
        info_mocks.answer.return_value = "Tenemos Prepa y Licenciatura."
        profile = make_profile(history=[{"role": "user", "content": "hola"}, {"role": "assistant", "content": "¡Hola!"}])
        db = Mock()

        assert handle_info_request(db, profile, message("¿Qué ofrecen?")) is None

        info_mocks.send_text.assert_called_once_with("facebook", PSID, "Tenemos Prepa y Licenciatura.")
        saved = info_mocks.save_history.call_args[0][2]
        assert saved[-2:] == [
            {"role": "user", "content": "¿Qué ofrecen?"},
            {"role": "assistant", "content": "Tenemos Prepa y Licenciatura."},
        ]
        assert len(saved) == 4

    def test_history_is_capped(self, info_mocks):
        info_mocks.answer.return_value = "ok"
        history = [{"role": "user", "content": str(i)} for i in range(HISTORY_STORE_LIMIT)]

        handle_info_request(Mock(), make_profile(history=history), message("otra"))

        assert len(info_mocks.save_history.call_args[0][2]) == HISTORY_STORE_LIMIT

    def test_enrollment_keyword_hands_off(self, info_mocks):
        info_mocks.start.return_value = VALIDATING_DATA
        db = Mock()
        profile = make_profile()
        msg = message("Quiero inscribirme")

        assert handle_info_request(db, profile, msg) == "validating_data"

        info_mocks.start.assert_called_once_with(db, profile, msg)
        info_mocks.answer.assert_not_called()
        info_mocks.save_history.assert_not_called()

    def test_completed_user_is_told_already_enrolled(self, info_mocks):
        assert handle_info_request(Mock(), make_profile("completed"), message("inscripción")) == "completed"

        info_mocks.send_text.assert_called_once_with("facebook", PSID, MSG_ALREADY_ENROLLED)
        info_mocks.start.assert_not_called()

    def test_busy_when_not_configured(self, info_mocks):
        with patch.object(info_service, "is_ai_configured", return_value=False):
            handle_info_request(Mock(), make_profile(), message("¿Costos?"))

        info_mocks.send_text.assert_called_once_with("facebook", PSID, MSG_BUSY)
        info_mocks.answer.assert_not_called()

    def test_model_error_sends_apology(self, info_mocks):
        info_mocks.answer.side_effect = Exception("OpenAI API error: 500")

        handle_info_request(Mock(), make_profile(), message("¿Costos?"))

        info_mocks.send_text.assert_called_once_with("facebook", PSID, MSG_ERROR)
        info_mocks.save_history.assert_not_called()

    def test_history_store_failure_alerts_after_answer(self, info_mocks):
        info_mocks.answer.return_value = "ok"
        info_mocks.save_history.side_effect = StoreUnavailableError("down")

        handle_info_request(Mock(), make_profile(), message("¿Costos?"))

        info_mocks.send_text.assert_called_once_with("facebook", PSID, "ok")
        info_mocks.alert.assert_called_once()

    def test_image_without_text_is_ignored(self, info_mocks):
        msg = IncomingMessage(platform="facebook", sender_id=PSID, image=b"jpeg")

        assert handle_info_request(Mock(), make_profile(), msg) is None
        info_mocks.send_text.assert_not_called()
