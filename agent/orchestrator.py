"""
Orchestrator — Punto de entrada del pipeline de respuesta del chat.

Flujo:
1. Validar request (agentId y messages)
2. Verificar que el upstream esté configurado
3. Cargar agente + widget config y aplicar el Origin Guard
4. Lanzar captura de lead en segundo plano (sin esperarla)
5. Cargar persona y chunks de conocimiento (best effort)
6. Rankear chunks contra el último mensaje del usuario
7. Armar el system prompt
8. Abrir el stream del modelo y devolverlo para reenviarlo tal cual

Los pasos 1-3 terminan el request ante un error, sin efectos secundarios.
Las fallas de carga (3, 5) y de captura de lead (4) se loguean y el
pipeline continúa con contexto vacío.
"""

import asyncio
import logging
from typing import Callable, List, Optional, Sequence, TypeVar

from agent.background import BackgroundTaskRunner
from agent.db_service import ChatRepository
from agent.domain import Agent, ChatMessage, KnowledgeChunk, Persona
from agent.errors import ValidationError
from agent.lead_capture import LeadCapture
from agent.origin_guard import enforce_origin, resolve_request_hostname
from agent.prompt_builder import build_system_prompt
from rag.query.responder import UpstreamResponder, UpstreamStream
from rag.query.retriever import KeywordRetriever

logger = logging.getLogger(__name__)

T = TypeVar("T")


def latest_user_message(messages: Sequence[ChatMessage]) -> str:
    for message in reversed(messages):
        if message.role == "user":
            return message.content
    return ""


class ChatOrchestrator:
    """Orquestador del pipeline: guard → contexto → prompt → stream del modelo."""

    def __init__(
        self,
        repository: ChatRepository,
        responder: UpstreamResponder,
        background: BackgroundTaskRunner,
        retriever: Optional[KeywordRetriever] = None,
        lead_channel: str = "web",
    ):
        self._repo = repository
        self._responder = responder
        self._background = background
        self._retriever = retriever or KeywordRetriever()
        self._leads = LeadCapture(repository, channel=lead_channel)

    # Entry point

    async def respond(
        self,
        agent_id: Optional[str],
        messages: Sequence[ChatMessage],
        session_id: Optional[str] = None,
        origin: Optional[str] = None,
        referer: Optional[str] = None,
    ) -> UpstreamStream:
        """
        Procesa un turno de chat y devuelve el stream abierto del modelo.

        Args:
            agent_id: Agente que responde
            messages: Historial completo (user/assistant)
            session_id: Sesión del widget, habilita la captura de leads
            origin: Header Origin de la request
            referer: Header Referer (se usa si no hay Origin)

        Raises:
            ValidationError, ConfigurationMissing, AccessDenied, y los
            errores Upstream* del responder.
        """
        self._validate(agent_id, messages)
        self._responder.ensure_configured()

        # Agente y widget config; si fallan se sigue como "ausentes"
        logger.info(f"Cargando agente: {agent_id}")
        agent = await self._load(self._repo.get_agent, agent_id, "agente")
        if agent is None:
            logger.warning(f"Agente {agent_id} no encontrado, se usa prompt genérico")

        widget = await self._load(self._repo.get_widget_config, agent_id, "widget config")
        hostname = resolve_request_hostname(origin, referer)
        enforce_origin(hostname, widget.allowed_domains if widget else [])

        if session_id and agent is not None:
            self._schedule_lead_capture(agent, session_id, messages)

        system_prompt = await self.assemble_prompt(agent, messages)
        logger.info(f"System prompt armado ({len(system_prompt)} chars), enviando al modelo")

        history = [m.model_dump() for m in messages]
        return await self._responder.open_stream(system_prompt, history)

    async def assemble_prompt(
        self, agent: Optional[Agent], messages: Sequence[ChatMessage]
    ) -> str:
        """Carga persona + conocimiento relevante y arma el system prompt."""
        persona = await self._load_persona(agent)
        chunks = await self._retrieve(agent, latest_user_message(messages))
        return build_system_prompt(agent, persona, chunks)

    # Validación

    @staticmethod
    def _validate(agent_id: Optional[str], messages: Sequence[ChatMessage]) -> None:
        if not agent_id:
            raise ValidationError("agentId is required")
        if not messages:
            raise ValidationError("messages array is required")

    # Carga best-effort

    async def _load(self, fn: Callable[[str], T], key: str, what: str) -> Optional[T]:
        try:
            return await asyncio.to_thread(fn, key)
        except Exception as e:
            logger.error(f"Error cargando {what} {key}: {e}", exc_info=True)
            return None

    async def _load_persona(self, agent: Optional[Agent]) -> Optional[Persona]:
        if agent is None or not agent.persona_id:
            return None
        logger.info(f"Cargando persona: {agent.persona_id}")
        return await self._load(self._repo.get_persona, agent.persona_id, "persona")

    async def _retrieve(self, agent: Optional[Agent], query: str) -> List[KnowledgeChunk]:
        if agent is None or not agent.knowledge_source_ids:
            return []

        source_ids = agent.knowledge_source_ids
        logger.info(f"Cargando conocimiento de {len(source_ids)} fuentes")
        try:
            candidates = await asyncio.to_thread(self._repo.get_chunks, source_ids)
        except Exception as e:
            logger.error(f"Error cargando chunks de conocimiento: {e}", exc_info=True)
            return []

        return self._retriever.retrieve(query, candidates, source_ids=source_ids)

    # Lead capture (fire-and-forget)

    def _schedule_lead_capture(
        self, agent: Agent, session_id: str, messages: Sequence[ChatMessage]
    ) -> None:
        snapshot = list(messages)

        async def _capture() -> None:
            await asyncio.to_thread(
                self._leads.capture_from_messages,
                agent.workspace_id,
                agent.id,
                session_id,
                snapshot,
            )

        self._background.spawn(_capture, name=f"lead-capture:{session_id}")
