"""
FastAPI Application - API del pipeline de respuesta de agentes de chat.
- Settings centralizado (Pydantic BaseSettings via config.py)
- Dependency Injection con Depends()
- Errores del pipeline → JSON {"error": ...} con su HTTP status
- Respuesta del modelo reenviada como stream (text/event-stream)

Endpoints:
- GET     /               → Raíz informativa
- GET     /health         → Health check
- POST    /chat           → Turno de chat (stream del modelo)
- POST    /sessions/log   → Persistir historial de la sesión del widget
- GET     /widget-config  → Config pública del widget de un agente
- OPTIONS *               → Preflight CORS (sin body)
"""

import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

# Agregar directorio raíz al path para imports
project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root))

from api.config import Settings, get_settings
from api.models import (
    ChatRequest,
    ErrorResponse,
    HealthResponse,
    SessionLogRequest,
    SessionLogResponse,
    WidgetConfigResponse,
)
from agent.background import BackgroundTaskRunner
from agent.db_service import ChatRepository, build_repository
from agent.errors import AgentNotFound, ChatPipelineError, ConfigurationMissing, ValidationError
from agent.orchestrator import ChatOrchestrator
from rag.query.responder import UpstreamResponder
from rag.query.retriever import KeywordRetriever

# Logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
}


# Dependency Injection
# Singletons inyectables via Depends() para facilitar testing

_repository: ChatRepository | None = None
_responder: UpstreamResponder | None = None
_background: BackgroundTaskRunner | None = None


def get_repository(settings: Settings = Depends(get_settings)) -> ChatRepository:
    """
    Dependency que provee el repositorio (SQLite o memoria).

    Permite override en tests via app.dependency_overrides[get_repository].
    """
    global _repository
    if _repository is None:
        logger.info(f"Inicializando repositorio ({settings.STORAGE_BACKEND})...")
        _repository = build_repository(
            settings.STORAGE_BACKEND,
            db_path=settings.db_full_path,
            chunk_size=settings.CHUNK_SIZE,
        )
    return _repository


def get_responder(settings: Settings = Depends(get_settings)) -> UpstreamResponder:
    """Cliente del modelo upstream, con un httpx.AsyncClient compartido."""
    global _responder
    if _responder is None:
        _responder = UpstreamResponder(
            api_key=settings.UPSTREAM_API_KEY,
            url=settings.UPSTREAM_URL,
            model=settings.LLM_MODEL,
            timeout=settings.UPSTREAM_TIMEOUT_SECONDS,
        )
    return _responder


def get_background_runner() -> BackgroundTaskRunner:
    """Runner de tareas fire-and-forget (se drena en el shutdown)."""
    global _background
    if _background is None:
        _background = BackgroundTaskRunner()
    return _background


def get_orchestrator(
    settings: Settings = Depends(get_settings),
    repository: ChatRepository = Depends(get_repository),
    responder: UpstreamResponder = Depends(get_responder),
    background: BackgroundTaskRunner = Depends(get_background_runner),
) -> ChatOrchestrator:
    """Orchestrator por request (liviano: solo referencia los singletons)."""
    return ChatOrchestrator(
        repository=repository,
        responder=responder,
        background=background,
        retriever=KeywordRetriever(
            top_k=settings.RETRIEVAL_TOP_K,
            min_token_length=settings.RETRIEVAL_MIN_TOKEN_LENGTH,
        ),
        lead_channel=settings.LEAD_CHANNEL,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan: al cerrar, drena las tareas en segundo plano y cierra el cliente HTTP."""
    settings = get_settings()
    logging.getLogger().setLevel(settings.LOG_LEVEL.upper())
    logger.info("API de chat iniciando...")
    if not settings.UPSTREAM_API_KEY:
        logger.warning("UPSTREAM_API_KEY no configurada: /chat responderá 500")

    yield

    logger.info("API de chat cerrando...")
    await get_background_runner().drain(timeout=settings.BACKGROUND_DRAIN_TIMEOUT)
    if _responder is not None:
        await _responder.aclose()


# FastAPI App

app = FastAPI(
    title="Agent Chat API",
    description="Pipeline de respuesta para agentes de chat embebibles",
    version=API_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
    responses={
        400: {"model": ErrorResponse, "description": "Request inválido"},
        500: {"model": ErrorResponse, "description": "Error interno"},
    },
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["authorization", "x-client-info", "apikey", "content-type"],
)


class PreflightMiddleware:
    """Responde cualquier OPTIONS con headers CORS permisivos y sin body."""

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] == "http" and scope["method"] == "OPTIONS":
            response = Response(status_code=200, headers=CORS_HEADERS)
            await response(scope, receive, send)
            return
        await self.app(scope, receive, send)


# Se agrega último para quedar por fuera del CORSMiddleware
app.add_middleware(PreflightMiddleware)


def _error(status_code: int, message: str, headers: Optional[dict] = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=message).model_dump(),
        headers=headers,
    )


# Global Error Handlers


@app.exception_handler(ChatPipelineError)
async def pipeline_exception_handler(request: Request, exc: ChatPipelineError):
    """Errores de la taxonomía del pipeline → su status + {"error": mensaje}."""
    if isinstance(exc, ConfigurationMissing):
        logger.error(f"Configuración del servidor incompleta en {request.url.path}")
    else:
        logger.info(f"{request.url.path} → {exc.status_code}: {exc.message}")
    return _error(exc.status_code, exc.message)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Body inválido o incompleto → 400."""
    errors = exc.errors()
    if errors:
        first = errors[0]
        field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = f"{field}: {first.get('msg')}" if field else str(first.get("msg"))
    else:
        message = "Invalid request body"
    return _error(400, message)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """HTTPException de FastAPI y de Starlette (404, 405, ...) → {"error": detail}."""
    detail = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
    return _error(exc.status_code, detail, headers=exc.headers)


@app.exception_handler(404)
async def not_found_handler(request: Request, exc):
    return _error(404, f"Endpoint '{request.url.path}' not found")


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """
    Excepción no manejada → 500 genérico.

    Loguea el error real pero devuelve mensaje genérico al cliente
    para no filtrar detalles internos.
    """
    logger.error(f"Error no manejado en {request.url.path}: {exc}", exc_info=True)
    return _error(500, "Internal server error")


# Endpoints


@app.get("/", tags=["Root"])
async def root():
    """Endpoint raíz"""
    return {
        "message": "Agent Chat API",
        "version": API_VERSION,
        "docs": "/docs",
        "health": "/health",
    }


@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check(
    repository: ChatRepository = Depends(get_repository),
    responder: UpstreamResponder = Depends(get_responder),
):
    """
    Health check endpoint.

    Verifica el estado de:
    - Storage
    - Upstream (via API key)
    """
    components = {}
    overall_status = "healthy"

    try:
        await asyncio.to_thread(repository.ping)
        components["storage"] = "ok"
    except Exception:
        logger.warning("Health check: storage no disponible", exc_info=True)
        components["storage"] = "error"
        overall_status = "unhealthy"

    if responder.is_configured:
        components["upstream"] = "ok"
    else:
        components["upstream"] = "no_api_key"
        if overall_status == "healthy":
            overall_status = "degraded"

    return HealthResponse(status=overall_status, version=API_VERSION, components=components)


@app.post(
    "/chat",
    responses={
        200: {"content": {"text/event-stream": {}}, "description": "Stream del modelo"},
        402: {"model": ErrorResponse, "description": "Créditos del modelo agotados"},
        403: {"model": ErrorResponse, "description": "Dominio no permitido"},
        429: {"model": ErrorResponse, "description": "Rate limit del modelo"},
    },
    tags=["Chat"],
)
async def chat(
    payload: ChatRequest,
    request: Request,
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
):
    """
    Procesa un turno de chat y reenvía el stream del modelo sin buffering.

    **Errores posibles:**
    - 400: falta agentId o messages vacío
    - 403: origen fuera de la allow-list del agente
    - 402 / 429: créditos agotados / rate limit del modelo
    - 500: modelo no configurado o error del upstream
    """
    stream = await orchestrator.respond(
        agent_id=payload.agent_id,
        messages=payload.messages,
        session_id=payload.session_id,
        origin=request.headers.get("origin"),
        referer=request.headers.get("referer"),
    )
    return StreamingResponse(stream.iter_bytes(), media_type="text/event-stream")


@app.post("/sessions/log", response_model=SessionLogResponse, tags=["Sessions"])
async def log_chat_session(
    payload: SessionLogRequest,
    repository: ChatRepository = Depends(get_repository),
):
    """Crea o actualiza la sesión de chat (session_id, agent_id) con el historial."""
    agent = await asyncio.to_thread(repository.get_agent, payload.agent_id)
    if agent is None:
        raise AgentNotFound()

    session = await asyncio.to_thread(
        repository.save_session_messages,
        agent.workspace_id,
        agent.id,
        payload.session_id,
        payload.messages,
    )
    logger.info(f"Sesión de chat guardada: {session.session_id} ({len(session.messages)} mensajes)")
    return SessionLogResponse(success=True)


@app.get("/widget-config", response_model=WidgetConfigResponse, tags=["Widget"])
async def widget_config(
    agent_id: Optional[str] = Query(default=None, alias="agentId"),
    repository: ChatRepository = Depends(get_repository),
):
    """
    Config pública del widget.

    Sin config → deshabilitado, con posición, etiqueta y color por defecto.
    ``enabled`` solo es true si la config está habilitada y el agente está
    en estado "live".
    """
    if not agent_id:
        raise ValidationError("agentId is required")

    try:
        config = await asyncio.to_thread(repository.get_widget_config, agent_id)
        agent = await asyncio.to_thread(repository.get_agent, agent_id) if config else None
    except Exception as e:
        logger.error(f"Error obteniendo widget config de {agent_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to fetch config")

    if config is None:
        return WidgetConfigResponse(enabled=False, allowed_domains=[])

    enabled = config.enabled and agent is not None and agent.status == "live"
    return WidgetConfigResponse(
        enabled=enabled,
        allowed_domains=config.allowed_domains,
        position=config.position,
        launcher_label=config.launcher_label,
        primary_color=config.primary_color,
    )


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "main:app",
        host=settings.API_HOST,
        port=settings.API_PORT,
        reload=True,
        log_level="info",
    )
