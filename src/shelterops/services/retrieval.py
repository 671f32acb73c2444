import logging
from typing import Any, Dict

import httpx

from ..models import Session
from ..settings import Settings

logger = logging.getLogger(__name__)


class SemanticRetrievalClient:
    """Best-effort similarity search behind the workflow host.

    Both lookups return None instead of raising; callers treat None as
    "nothing to add".
    """

    def __init__(self, http: httpx.AsyncClient, settings: Settings) -> None:
        self._http = http
        self._settings = settings

    async def _post(self, webhook: str, body: Dict[str, Any]) -> Dict[str, Any] | None:
        url = self._settings.webhook_url(webhook)
        try:
            response = await self._http.post(
                url, json=body, timeout=self._settings.retrieval_timeout_seconds
            )
        except httpx.TimeoutException:
            logger.warning("Semantic retrieval timed out after %.0fs", self._settings.retrieval_timeout_seconds)
            return None
        except httpx.HTTPError as e:
            logger.warning("Semantic retrieval request failed: %s", e)
            return None

        if not response.is_success:
            logger.warning("Semantic retrieval returned HTTP %s", response.status_code)
            return None
        try:
            data = response.json()
        except ValueError as e:
            logger.warning("Semantic retrieval returned invalid JSON: %s", e)
            return None
        if not isinstance(data, dict):
            logger.warning("Semantic retrieval returned %s, expected an object", type(data).__name__)
            return None
        return data

    async def retrieve(self, message: str, session: Session) -> Any:
        """Look up stored knowledge relevant to the message and recent turns."""
        recent = session.history.recent(self._settings.history_window)
        data = await self._post(
            self._settings.semantic_webhook,
            {
                "userInput": message,
                "sessionId": session.session_id,
                "context": {
                    "searchOnly": True,
                    "vectorSearch": True,
                    "conversationHistory": [t.to_dict() for t in recent],
                },
            },
        )
        if data is None:
            return None
        found = data.get("semanticContext") or data.get("searchResults") or data.get("context")
        logger.debug("Semantic context %s", "found" if found else "empty")
        return found or None

    async def search(self, query: str, namespace: str = "entities", top_k: int = 5) -> Any:
        """Vector search used by the semanticSearch tool call."""
        data = await self._post(
            self._settings.vector_search_webhook,
            {
                "userInput": query,
                "context": {"vectorOnly": True, "namespace": namespace, "topK": top_k},
            },
        )
        if data is None:
            return None
        return data.get("results") or data.get("matches")
