"""
Origin Guard — Valida el origen de la request contra la allow-list del agente.

Reglas:
- Lista vacía → se permite todo (comportamiento abierto por defecto)
- Hostname igual a una entrada, o subdominio de ella (*.entrada)
- Entrada "localhost" admite también 127.0.0.1
- Origen ausente o no parseable → se permite (caller no-browser o first-party)
"""

import logging
from typing import Optional, Sequence
from urllib.parse import urlsplit

from agent.errors import AccessDenied

logger = logging.getLogger(__name__)

_LOCALHOST_ALIASES = ("localhost", "127.0.0.1")


def resolve_request_hostname(origin: Optional[str], referer: Optional[str] = None) -> Optional[str]:
    """
    Hostname declarado por la request (Origin, o Referer si no hay Origin).

    Ejemplos:
        'https://app.example.com'        → 'app.example.com'
        'https://Example.com:8443/page'  → 'example.com'
        'not a url'                      → None
    """
    raw = origin or referer
    if not raw:
        return None

    try:
        hostname = urlsplit(raw.strip()).hostname
    except ValueError:
        logger.info(f"No se pudo parsear el origen: {raw!r}")
        return None

    return hostname or None


def _matches(hostname: str, entry: str) -> bool:
    if hostname == entry or hostname.endswith("." + entry):
        return True
    return entry == "localhost" and hostname in _LOCALHOST_ALIASES


def is_origin_allowed(hostname: Optional[str], allowed_domains: Sequence[str]) -> bool:
    """True si el hostname puede usar el agente."""
    entries = [d.strip().lower() for d in allowed_domains if d and d.strip()]
    if not entries:
        return True
    if not hostname:
        return True

    hostname = hostname.lower()
    return any(_matches(hostname, entry) for entry in entries)


def enforce_origin(hostname: Optional[str], allowed_domains: Sequence[str]) -> None:
    """Lanza AccessDenied si el hostname no está permitido."""
    if not is_origin_allowed(hostname, allowed_domains):
        logger.warning(
            f"Dominio no permitido: {hostname}. Permitidos: {', '.join(allowed_domains)}"
        )
        raise AccessDenied()
