import os
from typing import List

import httpx

from app.logging_config import get_logger
from app.services.alert_service import alert_warning

logger = get_logger("knowledge_service")

QDRANT_HOST = os.environ.get("QDRANT_HOST", "http://qdrant:6333")
QDRANT_API_KEY = os.environ.get("QDRANT_API_KEY")
QDRANT_COLLECTION = os.environ.get("QDRANT_COLLECTION", "ulal_knowledge")
EMBEDDINGS_URL = os.environ.get("EMBEDDINGS_URL", "http://embeddings:80/embed")
KNOWLEDGE_LIMIT = int(os.environ.get("KNOWLEDGE_LIMIT", "4"))
KNOWLEDGE_SCORE_THRESHOLD = float(os.environ.get("KNOWLEDGE_SCORE_THRESHOLD", "0.5"))


def get_embedding(text: str) -> List[float]:
    """Get embedding from the embeddings service."""
    with httpx.Client(timeout=30.0) as client:
        response = client.post(EMBEDDINGS_URL, json={"inputs": text})
        if response.status_code != 200:
            raise Exception(f"Embeddings error: {response.status_code} - {response.text}")

        data = response.json()
        # TEI returns [[...]], other servers {"embedding": [...]}
        if isinstance(data, list) and len(data) > 0:
            return data[0] if isinstance(data[0], list) else data
        return data.get("embedding") or data.get("embeddings") or data


def search_knowledge(
    query: str,
    limit: int = KNOWLEDGE_LIMIT,
    score_threshold: float = KNOWLEDGE_SCORE_THRESHOLD,
) -> List[dict]:
    """Search the university knowledge base in Qdrant. Returns [] when unavailable."""
    try:
        embedding = get_embedding(query)
    except Exception as e:
        logger.error(f"Embedding failed: {e}")
        alert_warning("Embeddings service failed", {"error": str(e), "query": query[:50]})
        return []

    headers = {"api-key": QDRANT_API_KEY} if QDRANT_API_KEY else {}
    try:
        with httpx.Client(timeout=30.0) as client:
            response = client.post(
                f"{QDRANT_HOST}/collections/{QDRANT_COLLECTION}/points/search",
                headers=headers,
                json={
                    "vector": embedding,
                    "limit": limit,
                    "score_threshold": score_threshold,
                    "with_payload": True,
                },
            )
    except Exception as e:
        logger.error(f"Qdrant request failed: {e}")
        alert_warning("Qdrant search failed", {"error": str(e), "query": query[:50]})
        return []

    if response.status_code != 200:
        logger.error(f"Qdrant search error: {response.status_code} - {response.text}")
        alert_warning("Qdrant search failed", {"status": response.status_code, "query": query[:50]})
        return []

    results = []
    for point in response.json().get("result", []):
        payload = point.get("payload", {})
        results.append(
            {
                "score": point.get("score"),
                "text": payload.get("content"),
                "source": payload.get("metadata", {}).get("doc_name"),
            }
        )

    logger.info(f"Knowledge search: found {len(results)} results for '{query[:30]}...'")
    return results


def format_knowledge_context(results: List[dict]) -> str:
    """Format knowledge search results for LLM context."""
    if not results:
        return ""

    context_parts = ["Información relevante de la universidad:"]
    for i, r in enumerate(results, 1):
        text = r.get("text", "")
        if text:
            source = f" (Documento: {r['source']})" if r.get("source") else ""
            context_parts.append(f"{i}. {text}{source}")

    return "\n".join(context_parts)
