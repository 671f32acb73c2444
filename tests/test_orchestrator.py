import json
from pathlib import Path
from typing import Callable
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from shelterops.agent import (
    ChatOrchestrator,
    FallbackEngine,
    IntentRouter,
    ToolCallExecutor,
    WorkflowExecutor,
)
from shelterops.models import DataQueryCall, DataQueryParams, RoutingDecision
from shelterops.services.context_service import ContextService
from shelterops.services.datastore import BusinessDataStore
from shelterops.services.interactions import InteractionRecorder
from shelterops.services.redis import MemoryKeyValueStore
from shelterops.services.retrieval import SemanticRetrievalClient
from shelterops.settings import Settings

Handler = Callable[[httpx.Request], httpx.Response]


def _build(
    settings: Settings,
    handler: Handler,
    store: BusinessDataStore,
    router: IntentRouter | None = None,
) -> ChatOrchestrator:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    retrieval = SemanticRetrievalClient(http, settings)
    return ChatOrchestrator(
        context=ContextService(MemoryKeyValueStore(), max_turns=settings.max_history_turns),
        router=router or IntentRouter(settings, client=None),
        workflows=WorkflowExecutor(http, settings),
        tools=ToolCallExecutor(store, retrieval, http, settings),
        fallback=FallbackEngine(store),
        recorder=InteractionRecorder(store),
        retrieval=retrieval,
        settings=settings,
    )


def _workflow_handler(reply: httpx.Response, calls: list[httpx.Request] | None = None) -> Handler:
    """Semantic lookups find nothing; workflow endpoints answer with ``reply``."""

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        if body.get("context", {}).get("searchOnly"):
            return httpx.Response(200, json={})
        if calls is not None:
            calls.append(request)
        return reply

    return handler


async def _store(tmp_path: Path) -> BusinessDataStore:
    store = BusinessDataStore(tmp_path / "shelterops.db")
    await store.init_schema()
    return store


async def _interactions(store: BusinessDataStore) -> list[dict]:
    return await store.execute("SELECT * FROM agent_interactions ORDER BY id")


@pytest.mark.asyncio
async def test_creation_message_with_keyword_routing(settings, tmp_path) -> None:
    store = await _store(tmp_path)
    calls: list[httpx.Request] = []
    orchestrator = _build(
        settings, _workflow_handler(httpx.Response(200, json={"message": "Vamos cadastrar!"}), calls), store
    )

    response = await orchestrator.process_message("Quero cadastrar um novo cão", session_id="s-new")

    assert response.success is True
    assert response.response == "Vamos cadastrar!"
    assert response.confidence == 0.7
    assert response.agent == "CREATE_AGENT"
    assert response.metadata["sessionId"] == "s-new"
    assert calls[0].url.path == "/webhook/shelterops-agent"
    rows = await _interactions(store)
    assert rows[0]["success"] == 1
    assert rows[0]["agent_name"] == "CREATE_AGENT"


@pytest.mark.asyncio
async def test_workflow_500_yields_fallback_reply(settings, tmp_path) -> None:
    store = await _store(tmp_path)
    orchestrator = _build(settings, _workflow_handler(httpx.Response(500, text="boom")), store)

    response = await orchestrator.process_message("Quero cadastrar um novo cão", session_id="s2")

    assert response.success is True
    assert response.agent == "FALLBACK_AGENT"
    assert response.confidence <= 0.3
    assert response.response
    session = await orchestrator.context.load("s2")
    assert session.last_intent == "FALLBACK"
    assert len(session.history) == 2
    assert "500" in session.history.recent(1)[0].metadata["error"]
    rows = await _interactions(store)
    assert rows[0]["success"] == 0
    assert "500" in rows[0]["error_message"]


def _timeout(request: httpx.Request) -> httpx.Response:
    raise httpx.ReadTimeout("timed out", request=request)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "reply",
    [
        httpx.Response(502, text="bad gateway"),
        httpx.Response(200, text="{not json"),
        httpx.Response(200, json=["unexpected", "list"]),
        None,
    ],
)
async def test_every_workflow_failure_still_answers(settings, tmp_path, reply) -> None:
    store = await _store(tmp_path)
    if reply is None:
        handler = _timeout
    else:
        handler = _workflow_handler(reply)
    orchestrator = _build(settings, handler, store)

    response = await orchestrator.process_message("Qual o horário da feira de adoção?")

    assert response.success is True
    assert response.response.strip()
    assert response.agent == "FALLBACK_AGENT"


@pytest.mark.asyncio
async def test_unexpected_router_error_still_answers(settings, tmp_path) -> None:
    store = await _store(tmp_path)
    router = MagicMock(spec=IntentRouter)
    router.route = AsyncMock(side_effect=KeyError("intent"))
    orchestrator = _build(settings, _workflow_handler(httpx.Response(200, json={"message": "x"})), store, router)

    response = await orchestrator.process_message("olá")

    assert response.success is True
    assert response.agent == "FALLBACK_AGENT"
    assert response.response


@pytest.mark.asyncio
async def test_failing_fallback_returns_static_reply(settings, tmp_path) -> None:
    store = await _store(tmp_path)
    orchestrator = _build(settings, _workflow_handler(httpx.Response(500)), store)
    orchestrator.fallback._compose = AsyncMock(side_effect=RuntimeError("fallback broke"))

    response = await orchestrator.process_message("olá", session_id="s-static")

    assert response.success is True
    assert response.agent == "ERROR_AGENT"
    assert response.confidence == 0.1
    assert [a.type for a in response.actions] == ["retry", "contact_support"]


@pytest.mark.asyncio
async def test_sequential_turns_share_history(settings, tmp_path) -> None:
    store = await _store(tmp_path)
    orchestrator = _build(settings, _workflow_handler(httpx.Response(200, json={"text": "Certo."})), store)

    await orchestrator.process_message("primeira mensagem", session_id="s1")
    await orchestrator.process_message("segunda mensagem", session_id="s1")

    session = await orchestrator.context.load("s1")
    assert [(t.role, t.content) for t in session.history] == [
        ("user", "primeira mensagem"),
        ("assistant", "Certo."),
        ("user", "segunda mensagem"),
        ("assistant", "Certo."),
    ]
    assert session.last_intent == "GENERAL_QUERY"


@pytest.mark.asyncio
async def test_history_from_earlier_turns_reaches_workflow(settings, tmp_path) -> None:
    store = await _store(tmp_path)
    calls: list[httpx.Request] = []
    orchestrator = _build(
        settings, _workflow_handler(httpx.Response(200, json={"message": "ok"}), calls), store
    )

    await orchestrator.process_message("oi", session_id="s3", user_id="u3")
    await orchestrator.process_message("tudo bem?", session_id="s3")

    body = json.loads(calls[1].content)
    assert body["userId"] == "u3"
    assert [t["content"] for t in body["context"]["conversationHistory"]] == ["oi", "ok"]
    assert body["context"]["lastIntent"] == "GENERAL_QUERY"


@pytest.mark.asyncio
async def test_destructive_tool_call_fails_alone(settings, tmp_path) -> None:
    store = await _store(tmp_path)
    router = MagicMock(spec=IntentRouter)
    router.route = AsyncMock(
        return_value=RoutingDecision(
            intent="SEARCH_ENTITY",
            workflow="intelligent-chat",
            agent="SEARCH_AGENT",
            confidence=0.8,
            tool_calls=[
                DataQueryCall(parameters=DataQueryParams(query="TRUNCATE animals")),
                DataQueryCall(parameters=DataQueryParams(query="SELECT COUNT(*) AS total FROM animals")),
            ],
        )
    )
    orchestrator = _build(
        settings, _workflow_handler(httpx.Response(200, json={"message": "Resultados da busca"})), store, router
    )

    response = await orchestrator.process_message("buscar animais", session_id="s5")

    assert response.success is True
    assert response.response == "Resultados da busca"
    assert response.agent == "SEARCH_AGENT"
    blocked, counted = response.tool_calls
    assert blocked.error and "TRUNCATE" in blocked.error
    assert blocked.result is None
    assert counted.result == [{"total": 0}]
    assert counted.error is None


@pytest.mark.asyncio
async def test_keyword_search_runs_its_data_query(settings, tmp_path) -> None:
    store = await _store(tmp_path)
    await store.execute("INSERT INTO municipalities (id, name, state) VALUES ('m1', 'Curitiba', 'PR')")
    await store.execute(
        "INSERT INTO animals (id, name, species, size, status, municipality_id, created_at) "
        "VALUES ('a1', 'Paçoca', 'CANINO', 'MEDIO', 'DISPONIVEL', 'm1', '2025-03-01')"
    )
    orchestrator = _build(settings, _workflow_handler(httpx.Response(200, json={"message": "Achei!"})), store)

    response = await orchestrator.process_message("buscar animais disponíveis")

    assert len(response.tool_calls) == 1
    assert response.tool_calls[0].result[0]["name"] == "Paçoca"
    dumped = response.model_dump(by_alias=True)
    assert dumped["toolCalls"][0]["kind"] == "dataQuery"


@pytest.mark.asyncio
async def test_persistence_failure_does_not_lose_reply(settings, tmp_path) -> None:
    store = await _store(tmp_path)
    orchestrator = _build(settings, _workflow_handler(httpx.Response(200, json={"message": "ok"})), store)
    orchestrator.context._store.set = AsyncMock(return_value=False)

    response = await orchestrator.process_message("oi", session_id="s6")

    assert response.response == "ok"
    assert len((await orchestrator.context.load("s6")).history) == 0


@pytest.mark.asyncio
async def test_missing_session_id_is_generated(settings, tmp_path) -> None:
    store = await _store(tmp_path)
    orchestrator = _build(settings, _workflow_handler(httpx.Response(200, json={"message": "ok"})), store)

    response = await orchestrator.process_message("oi")

    session_id = response.metadata["sessionId"]
    assert session_id.startswith("session_")
    assert len((await orchestrator.context.load(session_id)).history) == 2


@pytest.mark.asyncio
async def test_malformed_stored_context_still_answers(settings, tmp_path) -> None:
    store = await _store(tmp_path)
    orchestrator = _build(settings, _workflow_handler(httpx.Response(200, json={"message": "ok"})), store)
    await orchestrator.context._store.set(
        "context:s7", json.dumps({"session_id": "s7", "context_data": {"history": ["oops"]}})
    )

    response = await orchestrator.process_message("oi", session_id="s7")

    assert response.success is True
    assert response.response == "ok"
    session = await orchestrator.context.load("s7")
    assert [t.content for t in session.history] == ["oi", "ok"]


@pytest.mark.asyncio
async def test_forget_clears_stored_context(settings, tmp_path) -> None:
    store = await _store(tmp_path)
    orchestrator = _build(settings, _workflow_handler(httpx.Response(200, json={"message": "ok"})), store)
    await orchestrator.process_message("oi", session_id="s8")

    assert await orchestrator.forget("s8") is True
    assert len((await orchestrator.history("s8")).history) == 0
