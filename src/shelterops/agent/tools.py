import logging
from typing import Any, Dict, List

import httpx

from ..errors import DataStoreError, ToolExecutionError
from ..models import (
    CreateEntityCall,
    DataQueryCall,
    SemanticSearchCall,
    ToolCall,
    UpdateEntityCall,
)
from ..services.datastore import BusinessDataStore
from ..services.retrieval import SemanticRetrievalClient
from ..settings import Settings

logger = logging.getLogger(__name__)

# Rejected before reaching storage; bound parameters remain the real protection.
DENIED_KEYWORDS = ("drop", "delete", "truncate")


def check_statement(query: str) -> None:
    """Raise ToolExecutionError if the statement contains a destructive keyword."""
    lowered = query.lower()
    for keyword in DENIED_KEYWORDS:
        if keyword in lowered:
            raise ToolExecutionError(f"statement rejected: contains '{keyword.upper()}'")


class ToolCallExecutor:
    """Runs the router's proposed tool calls one after another.

    Each call gets either ``result`` or ``error``; a failing call never stops
    the ones after it.
    """

    def __init__(
        self,
        store: BusinessDataStore,
        retrieval: SemanticRetrievalClient,
        http: httpx.AsyncClient,
        settings: Settings,
    ) -> None:
        self._store = store
        self._retrieval = retrieval
        self._http = http
        self._settings = settings

    async def execute_all(self, calls: List[ToolCall]) -> List[ToolCall]:
        for index, call in enumerate(calls, 1):
            logger.info("Executing tool call #%d: %s", index, call.kind)
            try:
                call.result = await self.execute(call)
                call.error = None
            except (ToolExecutionError, DataStoreError) as e:
                logger.warning("Tool call #%d (%s) failed: %s", index, call.kind, e)
                call.result = None
                call.error = str(e)
            except httpx.HTTPError as e:
                logger.warning("Tool call #%d (%s) request failed: %s", index, call.kind, e)
                call.result = None
                call.error = f"request failed: {e}"
            except Exception as e:
                logger.exception("Tool call #%d (%s) raised unexpectedly", index, call.kind)
                call.result = None
                call.error = f"{type(e).__name__}: {e}"
        return calls

    async def execute(self, call: ToolCall) -> Any:
        match call:
            case DataQueryCall(parameters=params):
                check_statement(params.query)
                return await self._store.execute(params.query, params.params)
            case SemanticSearchCall(parameters=params):
                found = await self._retrieval.search(params.query, params.namespace, params.top_k)
                if found is None:
                    raise ToolExecutionError("semantic search returned no results")
                return found
            case CreateEntityCall(parameters=params):
                return await self._post_entity(
                    self._settings.create_entity_webhook,
                    {
                        "entityType": params.entity_type,
                        "entityData": params.data,
                        "context": params.context,
                    },
                )
            case UpdateEntityCall(parameters=params):
                return await self._post_entity(
                    self._settings.update_entity_webhook,
                    {
                        "entityType": params.entity_type,
                        "entityId": params.entity_id,
                        "updateData": params.data,
                        "context": params.context,
                    },
                )
            case _:
                raise ToolExecutionError(f"unsupported tool call: {type(call).__name__}")

    async def _post_entity(self, webhook: str, body: Dict[str, Any]) -> Any:
        response = await self._http.post(
            self._settings.webhook_url(webhook),
            json=body,
            timeout=self._settings.entity_timeout_seconds,
        )
        if not response.is_success:
            raise ToolExecutionError(f"{webhook} returned HTTP {response.status_code}")
        try:
            return response.json()
        except ValueError as e:
            raise ToolExecutionError(f"{webhook} returned invalid JSON") from e
