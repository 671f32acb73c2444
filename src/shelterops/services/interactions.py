import json
import logging
from typing import Any, Dict

from ..errors import DataStoreError
from ..models import WorkflowResponse, utcnow
from .datastore import BusinessDataStore

logger = logging.getLogger(__name__)


class InteractionRecorder:
    """Appends one analytics row per turn. Never raises."""

    def __init__(self, store: BusinessDataStore) -> None:
        self._store = store

    async def record(
        self,
        *,
        user_id: str | None,
        session_id: str,
        message: str,
        reply: WorkflowResponse,
        success: bool,
        response_time_ms: int,
        error: str | None = None,
    ) -> bool:
        metadata: Dict[str, Any] = {
            "intent": reply.metadata.get("intent"),
            "confidence": reply.confidence,
            "tool_calls": [call.kind for call in reply.tool_calls],
        }
        row = {
            "agent_name": reply.agent,
            "user_id": user_id,
            "session_id": session_id,
            "input_message": message,
            "output_message": reply.message,
            "success": success,
            "response_time_ms": response_time_ms,
            "error_message": error,
            "metadata": json.dumps(metadata, default=str),
            "created_at": utcnow().isoformat(),
        }
        try:
            await self._store.insert_interaction(row)
        except (DataStoreError, OSError) as e:
            logger.warning("Failed to record interaction for %s: %s", session_id, e)
            return False
        return True
