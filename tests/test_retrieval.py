import json

import httpx
import pytest

from shelterops.models import History, Session, Turn
from shelterops.services.retrieval import SemanticRetrievalClient


def _session() -> Session:
    history = History(maxlen=20)
    for i in range(6):
        history.append(Turn(role="user", content=f"m{i}"))
    return Session(session_id="s1", history=history)


@pytest.mark.asyncio
async def test_retrieve_sends_recent_turns_and_returns_context(settings, make_http) -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"semanticContext": {"docs": ["termo de adoção"]}})

    client = SemanticRetrievalClient(make_http(handler), settings)
    found = await client.retrieve("como adotar?", _session())

    assert found == {"docs": ["termo de adoção"]}
    body = json.loads(seen[0].content)
    assert body["sessionId"] == "s1"
    assert body["context"]["searchOnly"] is True
    assert [t["content"] for t in body["context"]["conversationHistory"]] == ["m1", "m2", "m3", "m4", "m5"]
    assert seen[0].url.path == f"/webhook/{settings.semantic_webhook}"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "handler",
    [
        lambda r: httpx.Response(503),
        lambda r: httpx.Response(200, text="not json"),
        lambda r: httpx.Response(200, json=[1, 2]),
        lambda r: httpx.Response(200, json={"unrelated": True}),
    ],
)
async def test_retrieve_failures_return_none(settings, make_http, handler) -> None:
    client = SemanticRetrievalClient(make_http(handler), settings)
    assert await client.retrieve("oi", _session()) is None


@pytest.mark.asyncio
async def test_retrieve_timeout_returns_none(settings, make_http) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    client = SemanticRetrievalClient(make_http(handler), settings)
    assert await client.retrieve("oi", _session()) is None


@pytest.mark.asyncio
async def test_search_posts_vector_query(settings, make_http) -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"matches": [{"id": "ani_003", "score": 0.91}]})

    client = SemanticRetrievalClient(make_http(handler), settings)
    found = await client.search("gato filhote", namespace="animals", top_k=2)

    assert found == [{"id": "ani_003", "score": 0.91}]
    body = json.loads(seen[0].content)
    assert body["context"] == {"vectorOnly": True, "namespace": "animals", "topK": 2}
