import logging
from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from fastapi import FastAPI, Header, Request
from fastapi.middleware.cors import CORSMiddleware

from .agent import ChatOrchestrator, build_orchestrator
from .models import ChatRequest, ChatResponse
from .settings import get_settings


def setup_server_logging(level: str = "INFO") -> logging.Logger:
    """Configure and return the package logger (console + rotating file)."""
    logs_dir = Path("logs")
    logs_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger("shelterops")
    if logger.handlers:
        return logger

    logger.setLevel(level)
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s")

    ch = logging.StreamHandler()
    ch.setFormatter(fmt)
    logger.addHandler(ch)

    fh = RotatingFileHandler(logs_dir / "server.log", maxBytes=5_000_000, backupCount=3)
    fh.setFormatter(fmt)
    logger.addHandler(fh)

    return logger


def _cors_origins_list(origins: str) -> list[str]:
    """Parse CORS_ORIGINS into a list."""
    if not origins or origins.strip() == "*":
        return ["*"]
    return [o.strip() for o in origins.split(",") if o.strip()]


settings = get_settings()
LOGGER = setup_server_logging(settings.log_level)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Wire the orchestrator and its clients at startup; close them on shutdown."""
    LOGGER.info("Starting conversational core...")
    resources = await build_orchestrator(settings)
    app.state.orchestrator = resources.orchestrator
    LOGGER.info(
        "Orchestrator ready (classifier=%s)",
        "llm" if resources.orchestrator.router.uses_classifier else "keywords",
    )

    yield

    LOGGER.info("Shutting down...")
    await resources.aclose()


app = FastAPI(
    title="ShelterOps Conversational Core",
    version="0.1.0",
    debug=settings.debug,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins_list(settings.cors_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _orchestrator(request: Request) -> ChatOrchestrator:
    return request.app.state.orchestrator


@app.get("/health")
async def health() -> dict[str, Any]:
    """Health check for load balancers and monitoring."""
    return {"status": "ok"}


@app.post("/chat", response_model=ChatResponse)
async def chat(
    body: ChatRequest,
    request: Request,
    x_municipality_id: str | None = Header(default=None),
) -> ChatResponse:
    """Handle one conversational turn.

    Callers reach this endpoint only after the upstream authorization gate;
    ``X-Municipality-Id`` (or ``municipalityId`` in the body) scopes the turn.
    An empty message is rejected with 422 before the core is involved.
    """
    return await _orchestrator(request).process_message(
        body.message,
        session_id=body.session_id,
        user_id=body.user_id,
        context=body.context,
        municipality_id=body.municipality_id or x_municipality_id,
    )


@app.get("/sessions/{session_id}")
async def session_history(session_id: str, request: Request) -> dict[str, Any]:
    """Stored conversation context for one session (back-office view)."""
    session = await _orchestrator(request).history(session_id)
    return {
        "sessionId": session.session_id,
        "userId": session.user_id,
        "lastIntent": session.last_intent,
        "lastAgent": session.last_agent,
        "updatedAt": session.updated_at.isoformat() if session.updated_at else None,
        "history": session.history.to_list(),
    }


@app.delete("/sessions/{session_id}")
async def forget_session(session_id: str, request: Request) -> dict[str, Any]:
    """Clear the stored conversation context for one session."""
    deleted = await _orchestrator(request).forget(session_id)
    return {"sessionId": session_id, "deleted": deleted}


def run() -> None:
    import uvicorn

    uvicorn.run("shelterops.main:app", host=settings.host, port=settings.port)
