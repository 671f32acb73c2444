import logging
from typing import List, Tuple

from ..errors import DataStoreError
from ..models import Action, Session, WorkflowResponse, utcnow
from ..services.datastore import BusinessDataStore

logger = logging.getLogger(__name__)

FALLBACK_AGENT = "FALLBACK_AGENT"
FALLBACK_INTENT = "FALLBACK"
FALLBACK_CONFIDENCE = 0.3

ERROR_AGENT = "ERROR_AGENT"
ERROR_CONFIDENCE = 0.1

ANIMAL_KEYWORDS = ("animal", "animais", "cão", "cachorro", "gato")
ADOPTION_KEYWORDS = ("adoção", "adocao", "adotar")

STATIC_APOLOGY = (
    "Desculpe, estou com dificuldades técnicas no momento. Tente novamente em "
    "alguns instantes ou entre em contato com nossa equipe."
)

NO_ANIMALS_TEXT = (
    "No momento não temos animais disponíveis para adoção, mas nossa equipe "
    "está sempre trabalhando para resgatar e cuidar de novos animais."
)

ADOPTION_TEXT = (
    "Para adotar um animal, você precisa:\n\n"
    "1. Preencher o formulário de interesse\n"
    "2. Passar por uma avaliação de perfil\n"
    "3. Apresentar a documentação necessária\n"
    "4. Assinar o termo de adoção responsável\n\n"
    "Posso ajudar com qualquer uma dessas etapas!"
)

GENERIC_TEXT = (
    "Recebi sua mensagem: \"{message}\"\n\n"
    "Estou temporariamente com dificuldades técnicas, mas posso ajudar com:\n"
    "- Informações sobre animais para adoção\n"
    "- Processos de adoção\n"
    "- Contatos da prefeitura\n"
    "- Documentação necessária\n\n"
    "Tente reformular sua pergunta ou escolha uma das opções abaixo."
)


def classify_bucket(message: str) -> str:
    lowered = message.lower()
    if any(word in lowered for word in ANIMAL_KEYWORDS):
        return "animal"
    if any(word in lowered for word in ADOPTION_KEYWORDS):
        return "adoption"
    return "generic"


def static_reply(error: str | None = None) -> WorkflowResponse:
    """The reply of last resort; builds nothing that can fail."""
    return WorkflowResponse(
        message=STATIC_APOLOGY,
        agent=ERROR_AGENT,
        confidence=ERROR_CONFIDENCE,
        actions=[
            Action(type="retry", label="Tentar novamente"),
            Action(type="contact_support", label="Falar com suporte"),
        ],
        metadata={"error": True, "fallbackError": error},
    )


class FallbackEngine:
    """Builds a safe, context-flavoured reply when routing or a workflow fails."""

    def __init__(self, store: BusinessDataStore | None = None) -> None:
        self._store = store

    async def fallback(
        self, message: str, session: Session | None, cause: BaseException | None
    ) -> WorkflowResponse:
        try:
            return await self._compose(message, session, cause)
        except Exception as e:
            logger.exception("Fallback composition failed: %s", e)
            return static_reply(str(e))

    async def _compose(
        self, message: str, session: Session | None, cause: BaseException | None
    ) -> WorkflowResponse:
        bucket = classify_bucket(message)
        logger.info(
            "Fallback reply (bucket=%s, session=%s, cause=%s)",
            bucket,
            session.session_id if session else None,
            type(cause).__name__ if cause else None,
        )

        text, actions = None, []
        if bucket == "animal":
            text, actions = await self._animal_reply()
        elif bucket == "adoption":
            text, actions = ADOPTION_TEXT, [
                Action(type="start_adoption", label="Iniciar processo de adoção"),
                Action(type="view_requirements", label="Ver requisitos"),
            ]
        if text is None:
            text, actions = self._generic_reply(message)

        return WorkflowResponse(
            message=text,
            agent=FALLBACK_AGENT,
            confidence=FALLBACK_CONFIDENCE,
            actions=actions,
            metadata={
                "fallback": True,
                "bucket": bucket,
                "intent": FALLBACK_INTENT,
                "error": str(cause) if cause else None,
                "errorType": type(cause).__name__ if cause else None,
                "timestamp": utcnow().isoformat(),
            },
        )

    async def _animal_reply(self) -> Tuple[str | None, List[Action]]:
        """List a few available animals; None means use the generic text."""
        if self._store is None:
            return None, []
        try:
            animals = await self._store.list_available_animals(limit=3)
        except (DataStoreError, OSError) as e:
            logger.warning("Fallback enrichment read failed: %s", e)
            return None, []

        if not animals:
            return NO_ANIMALS_TEXT, [Action(type="adoption_info", label="Como adotar")]

        lines = [f"Encontrei {len(animals)} animais disponíveis para adoção:\n"]
        for animal in animals:
            lines.append(
                f"**{animal['name']}** ({animal['species']})\n"
                f"   Porte: {animal.get('size') or 'Não informado'}\n"
                f"   Local: {animal.get('municipality') or 'Não informado'}\n"
            )
        actions = [
            Action(type="view_animal", label=f"Ver {animal['name']}", data={"animalId": animal["id"]})
            for animal in animals
        ]
        return "\n".join(lines), actions

    def _generic_reply(self, message: str) -> Tuple[str, List[Action]]:
        return GENERIC_TEXT.format(message=message), [
            Action(type="view_animals", label="Ver animais disponíveis"),
            Action(type="adoption_info", label="Como adotar"),
            Action(type="contact_info", label="Falar com atendente"),
        ]
