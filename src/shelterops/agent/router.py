import json
import logging
from typing import Any, Dict

from openai import APIError, AsyncOpenAI
from pydantic import ValidationError

from ..errors import ClassifierError
from ..models import DataQueryCall, DataQueryParams, RoutingDecision, Session
from ..services.datastore import AVAILABLE_STATUS
from ..settings import Settings

logger = logging.getLogger(__name__)

CREATE_KEYWORDS = ("cadastrar", "criar", "registrar", "create", "register")
SEARCH_KEYWORDS = ("buscar", "procurar", "pesquisar", "search", "find")

SEARCH_AVAILABLE_QUERY = (
    "SELECT id, name, species, size, status FROM animals "
    "WHERE status = ? ORDER BY name LIMIT 10"
)


def heuristic_route(message: str) -> RoutingDecision:
    """Keyword routing used without a classifier or when it fails."""
    lowered = message.lower()

    if any(word in lowered for word in CREATE_KEYWORDS):
        return RoutingDecision(
            intent="CREATE_ENTITY",
            workflow="create-entity",
            agent="CREATE_AGENT",
            confidence=0.7,
            parameters={"action": "create"},
            reasoning="creation keyword",
        )

    if any(word in lowered for word in SEARCH_KEYWORDS):
        return RoutingDecision(
            intent="SEARCH_ENTITY",
            workflow="intelligent-chat",
            agent="SEARCH_AGENT",
            confidence=0.7,
            parameters={"action": "search", "query": message},
            tool_calls=[
                DataQueryCall(
                    parameters=DataQueryParams(
                        query=SEARCH_AVAILABLE_QUERY, params=[AVAILABLE_STATUS]
                    )
                )
            ],
            reasoning="search keyword",
        )

    return RoutingDecision(
        intent="GENERAL_QUERY",
        workflow="intelligent-chat",
        agent="GENERAL_AGENT",
        confidence=0.5,
        reasoning="no keyword matched",
    )


def router_context(
    session: Session,
    semantic_context: Any,
    extra: Dict[str, Any] | None,
    window: int = 5,
) -> Dict[str, Any]:
    """Context object handed to the classifier alongside the message."""
    return {
        "sessionId": session.session_id,
        "lastIntent": session.last_intent,
        "lastAgent": session.last_agent,
        "conversationHistory": [
            {"role": t.role, "content": t.content} for t in session.history.recent(window)
        ],
        "semanticContext": semantic_context,
        **(extra or {}),
    }


class IntentRouter:
    """Classifies a message into a RoutingDecision.

    The language-model classifier is the primary path; network errors,
    timeouts and replies that do not validate against RoutingDecision fall
    back to ``heuristic_route``. Without a client only the heuristic runs.
    """

    def __init__(self, settings: Settings, client: AsyncOpenAI | None = None) -> None:
        self._settings = settings
        self._client = client

    @property
    def uses_classifier(self) -> bool:
        return self._client is not None

    async def route(self, message: str, context: Dict[str, Any]) -> RoutingDecision:
        client = self._client
        if client is None:
            return heuristic_route(message)
        try:
            decision = await self._classify(client, message, context)
        except APIError as e:
            logger.warning("Classifier request failed, using keyword routing: %s", e)
            return heuristic_route(message)
        except ClassifierError as e:
            logger.warning("Classifier reply rejected, using keyword routing: %s", e)
            return heuristic_route(message)
        logger.info(
            "Routed intent=%s workflow=%s confidence=%.2f tool_calls=%d",
            decision.intent,
            decision.workflow,
            decision.confidence,
            len(decision.tool_calls),
        )
        return decision

    async def _classify(
        self, client: AsyncOpenAI, message: str, context: Dict[str, Any]
    ) -> RoutingDecision:
        response = await client.chat.completions.create(
            model=self._settings.model,
            messages=[
                {"role": "system", "content": self._settings.router_system_prompt},
                {
                    "role": "user",
                    "content": (
                        f"Message: {json.dumps(message, ensure_ascii=False)}\n\n"
                        "Conversation context:\n"
                        f"{json.dumps(context, ensure_ascii=False, indent=2, default=str)}"
                    ),
                },
            ],
            temperature=self._settings.temperature,
            max_tokens=self._settings.classifier_max_tokens,
            response_format={"type": "json_object"},
            timeout=self._settings.classifier_timeout_seconds,
        )
        try:
            content = response.choices[0].message.content or ""
        except (AttributeError, IndexError) as e:
            raise ClassifierError(f"unexpected completion shape: {e}") from e
        if not content.strip():
            raise ClassifierError("empty completion")
        try:
            return RoutingDecision.model_validate_json(content)
        except ValidationError as e:
            raise ClassifierError(f"schema validation failed: {e.error_count()} error(s)") from e
