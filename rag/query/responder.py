"""
Responder - Cliente del endpoint de chat-completions del modelo (streaming).

Este módulo:
1. Envía {model, messages, stream: true} al endpoint compatible con OpenAI
2. Traduce los status de error del upstream a la taxonomía del pipeline
3. Expone la respuesta como un async iterator de bytes, sin buffering,
   que cierra la conexión upstream al terminar o al cancelarse
"""

import logging
from typing import AsyncIterator, Dict, List, Optional

import httpx

from agent.errors import (
    ConfigurationMissing,
    UpstreamFailure,
    UpstreamQuotaExhausted,
    UpstreamRateLimited,
)

logger = logging.getLogger(__name__)

DEFAULT_UPSTREAM_URL = "https://api.groq.com/openai/v1/chat/completions"
DEFAULT_MODEL = "llama-3.3-70b-versatile"


class UpstreamStream:
    """
    Respuesta en curso del modelo.

    ``iter_bytes()`` reenvía cada bloque apenas llega. Si el cliente se
    desconecta, la cancelación del generador cierra la lectura upstream.
    """

    def __init__(self, response: httpx.Response):
        self._response = response
        self._closed = False

    @property
    def status_code(self) -> int:
        return self._response.status_code

    @property
    def content_type(self) -> str:
        return self._response.headers.get("content-type", "text/event-stream")

    async def iter_bytes(self) -> AsyncIterator[bytes]:
        try:
            async for chunk in self._response.aiter_bytes():
                yield chunk
        except httpx.HTTPError as e:
            # Sin recuperación parcial: se corta el stream
            logger.warning(f"Stream del modelo interrumpido: {e}")
        finally:
            await self.aclose()

    async def aclose(self) -> None:
        if not self._closed:
            self._closed = True
            await self._response.aclose()


class UpstreamResponder:
    """Abre streams de respuesta contra el modelo upstream."""

    def __init__(
        self,
        api_key: Optional[str],
        url: str = None,
        model: str = None,
        timeout: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Args:
            api_key: API key del upstream. Puede ser None: el error se
                reporta por request (ConfigurationMissing), no al iniciar.
            url: Endpoint de chat-completions (default: Groq)
            model: Modelo a usar (default: llama-3.3-70b-versatile)
            timeout: Timeout de conexión/lectura en segundos
            client: httpx.AsyncClient a reutilizar (inyectable en tests)
        """
        self.api_key = api_key
        self.url = url or DEFAULT_UPSTREAM_URL
        self.model = model or DEFAULT_MODEL
        self._timeout = timeout
        self._client = client
        self._owns_client = client is None

        logger.info(f"Upstream Responder inicializado (modelo: {self.model})")

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    def ensure_configured(self) -> None:
        if not self.is_configured:
            logger.error("UPSTREAM_API_KEY no configurada: el servidor no puede llamar al modelo")
            raise ConfigurationMissing()

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    def build_payload(self, system_prompt: str, messages: List[Dict[str, str]]) -> Dict:
        return {
            "model": self.model,
            "messages": [{"role": "system", "content": system_prompt}, *messages],
            "stream": True,
        }

    async def open_stream(
        self, system_prompt: str, messages: List[Dict[str, str]]
    ) -> UpstreamStream:
        """
        Envía el prompt y devuelve el stream abierto (status 2xx ya verificado).

        Raises:
            ConfigurationMissing: sin API key
            UpstreamRateLimited: upstream respondió 429
            UpstreamQuotaExhausted: upstream respondió 402
            UpstreamFailure: cualquier otro non-2xx o error de transporte
        """
        self.ensure_configured()

        client = self._get_client()
        request = client.build_request(
            "POST",
            self.url,
            json=self.build_payload(system_prompt, messages),
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
        )

        try:
            response = await client.send(request, stream=True)
        except httpx.HTTPError as e:
            logger.error(f"Error de transporte llamando al modelo: {e}")
            raise UpstreamFailure() from e

        if response.is_success:
            return UpstreamStream(response)

        try:
            error_body = (await response.aread()).decode("utf-8", errors="replace")
        except httpx.HTTPError:
            error_body = ""
        finally:
            await response.aclose()

        status = response.status_code
        logger.error(f"Error del gateway de IA: {status} {error_body[:500]}")

        if status == 429:
            raise UpstreamRateLimited()
        if status == 402:
            raise UpstreamQuotaExhausted()
        raise UpstreamFailure()

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
