"""
Pydantic models para validación de requests/responses.

Los nombres de campo del body siguen el contrato del widget (camelCase);
internamente se exponen en snake_case vía alias.
"""

from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from agent.domain import (
    DEFAULT_LAUNCHER_LABEL,
    DEFAULT_PRIMARY_COLOR,
    DEFAULT_WIDGET_POSITION,
    ChatMessage,
)


# Error Response


class ErrorResponse(BaseModel):
    """Formato único de error: {"error": "<mensaje>"}."""

    error: str = Field(..., description="Descripción legible del error")

    model_config = {
        "json_schema_extra": {
            "examples": [{"error": "Rate limit exceeded. Please try again later."}]
        }
    }


# Request Models


class ChatRequest(BaseModel):
    """Turno de chat enviado por el widget."""

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "examples": [
                {
                    "agentId": "agent-123",
                    "messages": [
                        {"role": "user", "content": "What are your opening hours?"}
                    ],
                    "sessionId": "sess-abc",
                }
            ]
        },
    )

    agent_id: str = Field(..., alias="agentId", min_length=1)
    messages: List[ChatMessage] = Field(..., min_length=1)
    session_id: Optional[str] = Field(default=None, alias="sessionId")


class SessionLogRequest(BaseModel):
    """Snapshot del historial que el widget persiste al terminar cada turno."""

    model_config = ConfigDict(populate_by_name=True)

    agent_id: str = Field(..., alias="agentId", min_length=1)
    session_id: str = Field(..., alias="sessionId", min_length=1)
    messages: List[ChatMessage]


# Response Models


class SessionLogResponse(BaseModel):
    success: bool = True


class WidgetConfigResponse(BaseModel):
    enabled: bool = Field(..., description="Config habilitada y agente en estado live")
    allowed_domains: List[str] = Field(default_factory=list)
    position: str = DEFAULT_WIDGET_POSITION
    launcher_label: str = DEFAULT_LAUNCHER_LABEL
    primary_color: str = DEFAULT_PRIMARY_COLOR


class HealthResponse(BaseModel):
    """Response del health check"""

    status: str = Field(..., description="Estado del servicio")
    version: str = Field(..., description="Versión de la API")
    components: Dict[str, str] = Field(..., description="Estado de componentes")
