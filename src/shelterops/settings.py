from pathlib import Path
from typing import Dict, Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration."""

    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    cors_origins: str = "*"

    # Intent classifier
    model: str = "gpt-4o-mini"
    temperature: float = 0.1
    openai_api_key: str | None = None
    openai_base_url: str | None = "https://api.openai.com/v1"
    classifier_timeout_seconds: float = 30.0
    classifier_max_tokens: int = 1000

    router_system_prompt: str = (
        "You are the message router of a municipal animal-welfare service "
        "(adoptions, rescued animals, tutors, campaigns). Users usually write in "
        "Portuguese.\n\n"
        "Analyse the message and the conversation context and decide:\n"
        " 1. intent: CREATE_ANIMAL, SEARCH_ANIMAL, UPDATE_ANIMAL, ADOPT_ANIMAL, "
        "CREATE_ENTITY, SEARCH_ENTITY, GENERAL_QUERY, ...\n"
        " 2. workflow: one of create-entity, update-entity, intelligent-chat, "
        "general-agent\n"
        " 3. agent: the persona that should answer (ANIMAL_AGENT, ADOPTION_AGENT, "
        "SEARCH_AGENT, CREATE_AGENT, GENERAL_AGENT, ...)\n"
        " 4. confidence: a number between 0.0 and 1.0\n"
        " 5. parameters: data extracted from the message\n"
        " 6. tool_calls: auxiliary operations needed, each one of\n"
        '    {"kind": "dataQuery", "parameters": {"query": "SELECT ... WHERE status = ?", '
        '"params": ["DISPONIVEL"]}}\n'
        '    {"kind": "semanticSearch", "parameters": {"query": "...", "namespace": '
        '"entities", "top_k": 5}}\n'
        '    {"kind": "createEntity", "parameters": {"entity_type": "animal", "data": {}}}\n'
        '    {"kind": "updateEntity", "parameters": {"entity_type": "animal", '
        '"entity_id": "...", "data": {}}}\n'
        " 7. reasoning: one short sentence\n\n"
        "Reply with a single JSON object with exactly these keys: intent, workflow, "
        "agent, confidence, parameters, tool_calls, reasoning."
    )

    # Downstream workflow host
    workflow_base_url: str = "http://localhost:5678"
    workflow_timeout_seconds: float = 60.0
    retrieval_timeout_seconds: float = 30.0
    entity_timeout_seconds: float = 30.0

    workflow_routes: Dict[str, str] = Field(
        default_factory=lambda: {
            "create-entity": "shelterops-agent",
            "update-entity": "shelterops-agent",
            "general-agent": "shelterops-agent",
            "intelligent-chat": "shelterops-master",
        }
    )
    default_webhook: str = "shelterops-master"
    semantic_webhook: str = "shelterops-master"
    vector_search_webhook: str = "shelterops-intelligent-chat"
    create_entity_webhook: str = "shelterops-create-entity"
    update_entity_webhook: str = "shelterops-update-entity"

    # Conversation context
    redis_url: str | None = None
    context_ttl_seconds: int = 0  # 0 = keep until an external cleanup job removes it
    max_history_turns: int = 20
    history_window: int = 5

    db_sqlite_path: Path = Path("data/shelterops.db")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        extra="ignore",
    )

    def webhook_url(self, webhook: str) -> str:
        return f"{self.workflow_base_url.rstrip('/')}/webhook/{webhook}"


def get_settings() -> Settings:
    """Return the application settings singleton (loaded from env / .env)."""
    global _SETTINGS
    try:
        return _SETTINGS
    except NameError:
        _SETTINGS = Settings()
        return _SETTINGS
