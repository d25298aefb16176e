"""
Configuración centralizada del servicio de chat.

Usa Pydantic BaseSettings para:
- Validar las variables de entorno al startup
- Proveer tipos seguros y defaults documentados
- Leer el .env de la raíz del proyecto sin load_dotenv() disperso

La API key del modelo es opcional a propósito: si falta, el servicio
arranca igual y cada request de chat responde 500 "AI service not
configured" (se loguea como error de configuración del servidor).
"""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Raíz del proyecto (donde vive .env)
PROJECT_ROOT = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    """Configuración tipada y validada del servicio."""

    model_config = SettingsConfigDict(
        env_file=str(PROJECT_ROOT / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",  # Ignorar env vars no declaradas
    )

    # Upstream (modelo)
    UPSTREAM_API_KEY: Optional[str] = None
    UPSTREAM_URL: str = "https://api.groq.com/openai/v1/chat/completions"
    LLM_MODEL: str = "llama-3.3-70b-versatile"
    UPSTREAM_TIMEOUT_SECONDS: float = 60.0

    # Storage
    STORAGE_BACKEND: str = "sqlite"  # "sqlite" | "memory"
    DATABASE_PATH: str = "database/sqlite/agents.db"

    # Conocimiento
    CHUNK_SIZE: int = Field(default=1000, gt=0)
    RETRIEVAL_TOP_K: int = Field(default=3, ge=0)
    RETRIEVAL_MIN_TOKEN_LENGTH: int = Field(default=3, ge=1)

    # Leads
    LEAD_CHANNEL: str = "web"
    BACKGROUND_DRAIN_TIMEOUT: float = 10.0

    # API
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8000
    LOG_LEVEL: str = "INFO"

    @property
    def db_full_path(self) -> Path:
        """Ruta absoluta a la base de datos."""
        db = Path(self.DATABASE_PATH)
        if db.is_absolute():
            return db
        return PROJECT_ROOT / db


@lru_cache
def get_settings() -> Settings:
    """Singleton de configuración (cacheado)."""
    return Settings()
