import os
from dataclasses import dataclass

import httpx

from app.logging_config import get_logger

logger = get_logger("web_search_service")

GOOGLE_API_KEY = os.environ.get("GOOGLE_API_KEY")
SEARCH_ENGINE_ID = os.environ.get("SEARCH_ENGINE_ID")
GOOGLE_SEARCH_URL = "https://www.googleapis.com/customsearch/v1"
SEARCH_RESULTS = 3

MSG_NOT_CONFIGURED = "Lo siento, la función de búsqueda no está configurada en este momento."
MSG_SEARCH_FAILED = "Lo siento, ocurrió un error al intentar buscar en la web."


@dataclass
class SearchOutcome:
    success: bool
    result: str


SEARCH_WEB_TOOL = {
    "type": "function",
    "function": {
        "name": "search_web",
        "description": (
            "Busca en la web información actualizada que no se encuentra en la base de conocimiento "
            "interna, como perspectivas laborales o comparativas."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "El término o pregunta a buscar en la web."},
            },
            "required": ["query"],
        },
    },
}


def format_search_results(query: str, items: list) -> str:
    snippets = [
        f"- {(item.get('snippet') or '').replace(chr(10), ' ')} (Fuente: {item.get('link', '')})"
        for item in items
    ]
    return f'Según una búsqueda en la web, esto es lo que encontré sobre "{query}":\n' + "\n".join(snippets)


def search_web(query: str) -> SearchOutcome:
    """Google Custom Search, top results with their sources."""
    if not GOOGLE_API_KEY or not SEARCH_ENGINE_ID:
        logger.error("GOOGLE_API_KEY or SEARCH_ENGINE_ID not configured")
        return SearchOutcome(success=False, result=MSG_NOT_CONFIGURED)

    logger.info(f"Web search: '{query[:60]}'")
    try:
        with httpx.Client(timeout=15.0) as client:
            response = client.get(
                GOOGLE_SEARCH_URL,
                params={"key": GOOGLE_API_KEY, "cx": SEARCH_ENGINE_ID, "q": query, "num": SEARCH_RESULTS},
            )
            if response.status_code != 200:
                logger.error(f"Google search error: {response.status_code} - {response.text[:200]}")
                return SearchOutcome(success=False, result=MSG_SEARCH_FAILED)
            items = response.json().get("items") or []
    except Exception as e:
        logger.error(f"Google search failed: {e}")
        return SearchOutcome(success=False, result=MSG_SEARCH_FAILED)

    if not items:
        return SearchOutcome(success=True, result=f'No pude encontrar resultados en la web para "{query}".')
    return SearchOutcome(success=True, result=format_search_results(query, items[:SEARCH_RESULTS]))
