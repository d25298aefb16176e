"""
Errores del pipeline de respuesta.

Cada error conoce su HTTP status y el mensaje público que ve el cliente.
La capa API los traduce a JSON {"error": ...} con un único exception handler.
"""


class ChatPipelineError(Exception):
    """Error base del pipeline de chat."""

    status_code: int = 500
    default_message: str = "Internal server error"

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(ChatPipelineError):
    """Request incompleto (falta agentId o messages vacío)."""

    status_code = 400
    default_message = "Invalid request"


class AccessDenied(ChatPipelineError):
    """Origen no incluido en la allow-list del agente."""

    status_code = 403
    default_message = "Domain not allowed"


class AgentNotFound(ChatPipelineError):
    status_code = 404
    default_message = "Agent not found"


class UpstreamRateLimited(ChatPipelineError):
    status_code = 429
    default_message = "Rate limit exceeded. Please try again later."


class UpstreamQuotaExhausted(ChatPipelineError):
    status_code = 402
    default_message = "AI credits exhausted. Please add credits."


class UpstreamFailure(ChatPipelineError):
    """Cualquier otro non-2xx del modelo o error de transporte."""

    status_code = 500
    default_message = "AI service error"


class ConfigurationMissing(ChatPipelineError):
    """
    Configuración del servidor incompleta (ej: sin API key del modelo).

    Se distingue de los errores de request: es un problema del deploy,
    no del cliente.
    """

    status_code = 500
    default_message = "AI service not configured"
