"""
Tipos del dominio: agentes, personas, conocimiento, sesiones y leads.

Los registros del storage se validan con Pydantic al cruzar el límite
del repositorio, de modo que el pipeline nunca maneja dicts sin tipo.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class PersonaTone(str, Enum):
    PROFESSIONAL = "professional"
    FRIENDLY = "friendly"
    CASUAL = "casual"
    FORMAL = "formal"


class FallbackPolicy(str, Enum):
    APOLOGIZE = "apologize"
    ESCALATE = "escalate"
    RETRY = "retry"
    TRANSFER = "transfer"


LEAD_SOURCE_AUTODETECT = "chat_autodetect"

# Apariencia por defecto del widget
DEFAULT_WIDGET_POSITION = "bottom-right"
DEFAULT_LAUNCHER_LABEL = "Chat with us"
DEFAULT_PRIMARY_COLOR = "#111827"


class _StoredModel(BaseModel):
    """Base para registros del storage (ignora columnas extra)."""

    model_config = {"extra": "ignore"}


class ChatMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class KnowledgeChunk(_StoredModel):
    id: str
    source_id: str
    index: int = Field(..., ge=0)
    content: str


class KnowledgeSource(_StoredModel):
    id: str
    workspace_id: str
    name: Optional[str] = None
    raw_text: str = ""
    chunks: List[KnowledgeChunk] = Field(default_factory=list)

    @field_validator("raw_text", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return "" if value is None else value


class Persona(_StoredModel):
    id: str
    workspace_id: Optional[str] = None
    name: str
    role_title: Optional[str] = None
    # Se guarda el valor crudo; los valores desconocidos se resuelven
    # a defaults al armar el prompt.
    tone: Optional[str] = PersonaTone.PROFESSIONAL.value
    style_notes: Optional[str] = None
    do_not_do: List[str] = Field(default_factory=list)
    greeting_script: Optional[str] = None
    fallback_policy: Optional[str] = FallbackPolicy.APOLOGIZE.value
    escalation_rules: Optional[str] = None

    @field_validator("do_not_do", mode="before")
    @classmethod
    def _none_to_list(cls, value: Any) -> Any:
        return [] if value is None else value


class Agent(_StoredModel):
    id: str
    workspace_id: str
    name: str
    persona_id: Optional[str] = None
    knowledge_source_ids: List[str] = Field(default_factory=list)
    goals: Optional[str] = None
    business_domain: str = "other"
    status: str = "draft"
    channels: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("knowledge_source_ids", mode="before")
    @classmethod
    def _none_to_list(cls, value: Any) -> Any:
        return [] if value is None else value

    @field_validator("channels", mode="before")
    @classmethod
    def _none_to_dict(cls, value: Any) -> Any:
        return {} if value is None else value


class WidgetConfig(_StoredModel):
    agent_id: str
    allowed_domains: List[str] = Field(default_factory=list)
    enabled: bool = True
    position: str = DEFAULT_WIDGET_POSITION
    launcher_label: str = DEFAULT_LAUNCHER_LABEL
    primary_color: str = DEFAULT_PRIMARY_COLOR

    @field_validator("allowed_domains", mode="before")
    @classmethod
    def _none_to_list(cls, value: Any) -> Any:
        return [] if value is None else value


class ChatSession(_StoredModel):
    session_id: str
    agent_id: str
    workspace_id: str
    channel: str = "web"
    messages: List[ChatMessage] = Field(default_factory=list)
    lead_captured: bool = False
    lead_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator("messages", mode="before")
    @classmethod
    def _none_to_list(cls, value: Any) -> Any:
        return [] if value is None else value


class Lead(_StoredModel):
    id: str
    workspace_id: str
    agent_id: str
    session_id: str
    email: Optional[str] = None
    phone: Optional[str] = None
    channel: str = "web"
    source: str = LEAD_SOURCE_AUTODETECT
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class ContactInfo(BaseModel):
    """Resultado del extractor de contacto."""

    email: Optional[str] = None
    phone: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not self.email and not self.phone
