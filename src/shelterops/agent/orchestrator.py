import logging
import time
from typing import Any, Dict
from uuid import uuid4

import httpx
from openai import AsyncOpenAI

from ..models import ChatResponse, Session, Turn, WorkflowResponse
from ..services.context_service import ContextService
from ..services.datastore import BusinessDataStore
from ..services.interactions import InteractionRecorder
from ..services.redis import open_key_value_store
from ..services.retrieval import SemanticRetrievalClient
from ..settings import Settings, get_settings
from .fallback import FALLBACK_INTENT, FallbackEngine
from .router import IntentRouter, router_context
from .tools import ToolCallExecutor
from .workflows import TurnContext, WorkflowExecutor

logger = logging.getLogger(__name__)


def new_session_id() -> str:
    return f"session_{uuid4().hex}"


class ChatOrchestrator:
    """Runs one conversational turn end to end.

    load context -> semantic retrieval -> route -> workflow -> tool calls ->
    persist -> record. A failure while routing, executing the workflow or
    running tool calls is answered by the fallback engine instead; either way
    the turn is persisted and recorded, and the caller always gets a
    ChatResponse.
    """

    def __init__(
        self,
        *,
        context: ContextService,
        router: IntentRouter,
        workflows: WorkflowExecutor,
        tools: ToolCallExecutor,
        fallback: FallbackEngine,
        recorder: InteractionRecorder,
        retrieval: SemanticRetrievalClient | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.context = context
        self.router = router
        self.workflows = workflows
        self.tools = tools
        self.fallback = fallback
        self.recorder = recorder
        self.retrieval = retrieval
        self.settings = settings or get_settings()

    async def process_message(
        self,
        message: str,
        session_id: str | None = None,
        user_id: str | None = None,
        context: Dict[str, Any] | None = None,
        municipality_id: str | None = None,
    ) -> ChatResponse:
        session_id = session_id or new_session_id()
        started = time.perf_counter()
        logger.info("Processing message session_id=%s user_id=%s", session_id, user_id)
        logger.debug("User message: %s", message[:200])

        async with self.context.session_lock(session_id):
            session = await self.context.load(session_id, user_id)
            semantic_context = await self._retrieve(message, session)

            intent = None
            try:
                decision = await self.router.route(
                    message,
                    router_context(session, semantic_context, context, self.settings.history_window),
                )
                intent = decision.intent
                turn = TurnContext(
                    message=message,
                    session=session,
                    semantic_context=semantic_context,
                    extra=dict(context or {}),
                    municipality_id=municipality_id,
                )
                reply = await self.workflows.execute(decision, turn)
                if reply.tool_calls:
                    await self.tools.execute_all(reply.tool_calls)
            except Exception as e:
                logger.warning(
                    "Turn for %s diverted to fallback (intent=%s): %s: %s",
                    session_id,
                    intent,
                    type(e).__name__,
                    e,
                )
                reply = await self.fallback.fallback(message, session, e)
                await self._persist(session, message, reply, FALLBACK_INTENT, error=e)
                await self._record(session, message, reply, started, error=e)
                return self._respond(reply, session_id)

            await self._persist(session, message, reply, intent)
            await self._record(session, message, reply, started)
            return self._respond(reply, session_id)

    async def _retrieve(self, message: str, session: Session) -> Any:
        if self.retrieval is None:
            return None
        return await self.retrieval.retrieve(message, session)

    async def _persist(
        self,
        session: Session,
        message: str,
        reply: WorkflowResponse,
        intent: str | None,
        error: BaseException | None = None,
    ) -> None:
        user_turn = Turn(role="user", content=message, metadata={"intent": intent})
        assistant_meta: Dict[str, Any] = {"agent": reply.agent}
        if error is not None:
            assistant_meta["error"] = str(error)
        else:
            assistant_meta["workflow"] = reply.metadata.get("workflow")
        assistant_turn = Turn(role="assistant", content=reply.message, metadata=assistant_meta)
        try:
            saved = await self.context.save(
                session.session_id,
                session.user_id,
                user_turn,
                assistant_turn,
                intent=intent,
                agent=reply.agent,
            )
        except Exception as e:
            logger.exception("Context persistence raised for %s: %s", session.session_id, e)
            return
        if not saved:
            logger.warning("Turn for %s was not persisted", session.session_id)

    async def _record(
        self,
        session: Session,
        message: str,
        reply: WorkflowResponse,
        started: float,
        error: BaseException | None = None,
    ) -> None:
        elapsed_ms = int((time.perf_counter() - started) * 1000)
        try:
            await self.recorder.record(
                user_id=session.user_id,
                session_id=session.session_id,
                message=message,
                reply=reply,
                success=error is None,
                response_time_ms=elapsed_ms,
                error=str(error) if error is not None else None,
            )
        except Exception as e:
            logger.exception("Interaction recording raised for %s: %s", session.session_id, e)

    def _respond(self, reply: WorkflowResponse, session_id: str) -> ChatResponse:
        response = ChatResponse.from_workflow(reply)
        response.metadata = {**response.metadata, "sessionId": session_id}
        return response

    async def history(self, session_id: str) -> Session:
        return await self.context.load(session_id)

    async def forget(self, session_id: str) -> bool:
        """Drop the stored context so the next turn starts a fresh session."""
        async with self.context.session_lock(session_id):
            return await self.context.delete(session_id)


class OrchestratorResources:
    """Owns the long-lived clients behind a ChatOrchestrator."""

    def __init__(
        self,
        orchestrator: ChatOrchestrator,
        http: httpx.AsyncClient,
        openai_client: AsyncOpenAI | None,
    ) -> None:
        self.orchestrator = orchestrator
        self._http = http
        self._openai = openai_client

    async def aclose(self) -> None:
        await self.orchestrator.context.close()
        await self._http.aclose()
        if self._openai is not None:
            await self._openai.close()


async def build_orchestrator(settings: Settings | None = None) -> OrchestratorResources:
    """Wire the production collaborators from settings."""
    settings = settings or get_settings()

    http = httpx.AsyncClient(headers={"Content-Type": "application/json"})
    openai_client = None
    if settings.openai_api_key:
        openai_client = AsyncOpenAI(
            api_key=settings.openai_api_key,
            base_url=settings.openai_base_url,
            max_retries=0,
        )
    else:
        logger.warning("OPENAI_API_KEY not configured; using keyword routing only")

    kv_store = await open_key_value_store()
    context = ContextService(
        kv_store,
        ttl_seconds=settings.context_ttl_seconds,
        max_turns=settings.max_history_turns,
    )

    store = BusinessDataStore(settings.db_sqlite_path)
    await store.init_schema()

    retrieval = SemanticRetrievalClient(http, settings)
    orchestrator = ChatOrchestrator(
        context=context,
        router=IntentRouter(settings, openai_client),
        workflows=WorkflowExecutor(http, settings),
        tools=ToolCallExecutor(store, retrieval, http, settings),
        fallback=FallbackEngine(store),
        recorder=InteractionRecorder(store),
        retrieval=retrieval,
        settings=settings,
    )
    return OrchestratorResources(orchestrator, http, openai_client)
