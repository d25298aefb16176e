"""
Configuración compartida de fixtures para los tests del pipeline de chat.

Provee:
- Settings de prueba (sin necesidad de .env real)
- Repositorio en memoria con un agente demo (persona + conocimiento + widget)
- Upstream falso vía httpx.MockTransport (sin red)
- TestClient de FastAPI con dependency overrides
"""

import json
import sys
from pathlib import Path

import httpx
import pytest
from fastapi.testclient import TestClient

# Agregar raíz del proyecto al path
project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root))

from agent.db_service import InMemoryRepository
from agent.domain import Agent, Persona, WidgetConfig
from api.config import Settings, get_settings
from api.main import app, get_repository, get_responder
from rag.query.responder import UpstreamResponder

SSE_BODY = (
    b'data: {"choices":[{"delta":{"content":"Hello"}}]}\n\n'
    b'data: {"choices":[{"delta":{"content":" there"}}]}\n\n'
    b"data: [DONE]\n\n"
)

KNOWLEDGE_TEXT = (
    "Our clinic is open Monday to Friday from 8am to 6pm. "
    "Cleanings cost $120 and include x-rays. "
    "Free parking is available behind the building."
)


# Settings de prueba


@pytest.fixture
def test_settings() -> Settings:
    """Settings con valores seguros para testing (no necesita .env)."""
    return Settings(
        UPSTREAM_API_KEY="test-key-fake-12345",
        LLM_MODEL="llama-3.3-70b-versatile",
        STORAGE_BACKEND="memory",
        CHUNK_SIZE=60,
        RETRIEVAL_TOP_K=3,
        BACKGROUND_DRAIN_TIMEOUT=5.0,
    )


# Repositorio


@pytest.fixture
def repository() -> InMemoryRepository:
    """Repositorio en memoria con el agente demo cargado."""
    repo = InMemoryRepository(chunk_size=60)
    repo.save_persona(
        Persona(
            id="persona-1",
            workspace_id="ws-1",
            name="Sofia",
            role_title="Front Desk Coordinator",
            tone="friendly",
            fallback_policy="escalate",
        )
    )
    repo.save_knowledge_source("ks-1", "ws-1", KNOWLEDGE_TEXT, name="FAQ")
    repo.save_agent(
        Agent(
            id="agent-1",
            workspace_id="ws-1",
            name="Bright Smiles",
            persona_id="persona-1",
            knowledge_source_ids=["ks-1"],
            status="live",
        )
    )
    repo.save_widget_config(
        WidgetConfig(agent_id="agent-1", allowed_domains=["example.com"], enabled=True)
    )
    return repo


# Upstream falso


class FakeUpstream:
    """Handler de httpx.MockTransport que registra los requests recibidos."""

    def __init__(self, status_code: int = 200, body: bytes = SSE_BODY):
        self.status_code = status_code
        self.body = body
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.status_code >= 400:
            return httpx.Response(self.status_code, json={"error": {"message": "upstream"}})
        return httpx.Response(
            self.status_code,
            content=self.body,
            headers={"content-type": "text/event-stream"},
        )

    @property
    def last_payload(self) -> dict:
        return json.loads(self.requests[-1].content)


@pytest.fixture
def fake_upstream() -> FakeUpstream:
    return FakeUpstream()


def make_responder(handler, api_key: str = "test-key-fake-12345") -> UpstreamResponder:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return UpstreamResponder(api_key=api_key, client=client)


@pytest.fixture
def responder(fake_upstream) -> UpstreamResponder:
    return make_responder(fake_upstream)


# TestClient con DI overrides


@pytest.fixture
def api_overrides(test_settings, repository, responder):
    """
    Reemplaza las dependencias reales de la app:
    - get_settings → test_settings (sin .env)
    - get_repository → repositorio en memoria
    - get_responder → upstream falso (sin red)
    """
    app.dependency_overrides[get_settings] = lambda: test_settings
    app.dependency_overrides[get_repository] = lambda: repository
    app.dependency_overrides[get_responder] = lambda: responder

    yield app

    # Limpiar overrides después del test
    app.dependency_overrides.clear()


@pytest.fixture
def client(api_overrides) -> TestClient:
    """TestClient de FastAPI con las dependencias reemplazadas."""
    with TestClient(api_overrides, raise_server_exceptions=False) as c:
        yield c


@pytest.fixture
def responder_factory():
    """Crea responders contra un handler arbitrario (status de error, sin API key, etc.)."""
    return make_responder
