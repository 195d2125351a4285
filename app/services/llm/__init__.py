from app.services.llm.base import LLMProvider, LLMResponse, ToolCall, image_message
from app.services.llm.openai_provider import OpenAIProvider
from app.services.llm.parsing import extract_json_object

__all__ = ["LLMProvider", "LLMResponse", "ToolCall", "OpenAIProvider", "extract_json_object", "image_message"]
