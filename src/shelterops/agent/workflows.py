import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List

import httpx
from pydantic import ValidationError

from ..errors import UpstreamProtocolError, UpstreamTimeout
from ..models import Action, RoutingDecision, Session, WorkflowResponse, utcnow
from ..settings import Settings

logger = logging.getLogger(__name__)

DEFAULT_REPLY = "Sua solicitação foi processada."


@dataclass
class TurnContext:
    """Everything about the current turn a workflow endpoint may need."""

    message: str
    session: Session
    semantic_context: Any = None
    extra: Dict[str, Any] = field(default_factory=dict)
    municipality_id: str | None = None

    @property
    def session_id(self) -> str:
        return self.session.session_id

    @property
    def user_id(self) -> str | None:
        return self.session.user_id


class WorkflowExecutor:
    """Dispatches a routing decision to its downstream workflow endpoint."""

    def __init__(self, http: httpx.AsyncClient, settings: Settings) -> None:
        self._http = http
        self._settings = settings

    def webhook_for(self, workflow: str) -> str:
        """Physical webhook for a logical workflow name; unknown names go to the default."""
        return self._settings.workflow_routes.get(workflow, self._settings.default_webhook)

    def _payload(self, decision: RoutingDecision, turn: TurnContext) -> Dict[str, Any]:
        routing = decision.model_dump(mode="json", by_alias=False)
        recent = turn.session.history.recent(self._settings.history_window)
        return {
            "userInput": turn.message,
            "userMessage": turn.message,
            "sessionId": turn.session_id,
            "userId": turn.user_id,
            "context": {
                **turn.extra,
                "lastIntent": turn.session.last_intent,
                "lastAgent": turn.session.last_agent,
                "semanticContext": turn.semantic_context,
                "municipalityId": turn.municipality_id,
                "routing": routing,
                "timestamp": utcnow().isoformat(),
                "conversationHistory": [t.to_dict() for t in recent],
            },
            "routing": routing,
            "intent": decision.intent,
            "agent": decision.agent,
        }

    async def execute(self, decision: RoutingDecision, turn: TurnContext) -> WorkflowResponse:
        """Call the mapped endpoint and normalize its reply.

        Raises UpstreamTimeout or UpstreamProtocolError; the orchestrator turns
        either into a fallback reply.
        """
        webhook = self.webhook_for(decision.workflow)
        url = self._settings.webhook_url(webhook)
        logger.info("Executing workflow %s via %s (intent=%s)", decision.workflow, webhook, decision.intent)

        try:
            response = await self._http.post(
                url,
                json=self._payload(decision, turn),
                timeout=self._settings.workflow_timeout_seconds,
            )
        except httpx.TimeoutException as e:
            raise UpstreamTimeout(
                f"workflow {webhook} exceeded {self._settings.workflow_timeout_seconds:.0f}s"
            ) from e
        except httpx.HTTPError as e:
            raise UpstreamProtocolError(f"workflow {webhook} unreachable: {e}") from e

        if not response.is_success:
            logger.error("Workflow %s error response: %s", webhook, response.text[:500])
            raise UpstreamProtocolError(
                f"workflow {webhook} returned HTTP {response.status_code}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise UpstreamProtocolError(f"workflow {webhook} returned invalid JSON") from e
        if isinstance(data, list) and len(data) == 1:
            data = data[0]
        if not isinstance(data, dict):
            raise UpstreamProtocolError(
                f"workflow {webhook} returned {type(data).__name__}, expected an object"
            )

        return self._normalize(data, decision, webhook)

    def _normalize(
        self, data: Dict[str, Any], decision: RoutingDecision, webhook: str
    ) -> WorkflowResponse:
        message = next(
            (data[key] for key in ("message", "response", "text") if data.get(key)),
            DEFAULT_REPLY,
        )
        confidence = data.get("confidence")
        if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
            confidence = decision.confidence
        elif not 0.0 <= confidence <= 1.0:
            confidence = decision.confidence
        actions = self._actions(data.get("actions"), decision)

        return WorkflowResponse(
            message=str(message),
            agent=str(data.get("agent") or decision.agent),
            confidence=float(confidence),
            actions=actions,
            metadata={
                "workflow": decision.workflow,
                "webhook": webhook,
                "intent": decision.intent,
                "upstream": data,
                "timestamp": utcnow().isoformat(),
            },
            tool_calls=list(decision.tool_calls),
        )

    def _actions(self, raw: Any, decision: RoutingDecision) -> List[Action]:
        if raw is None:
            raw = decision.parameters.get("actions") or []
        if not isinstance(raw, list):
            return []
        actions: List[Action] = []
        for item in raw:
            try:
                actions.append(Action.model_validate(item))
            except ValidationError:
                logger.debug("Dropping malformed action from workflow reply: %r", item)
        return actions
