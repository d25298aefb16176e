"""
Lead Capture — Detección de datos de contacto y alta/merge de leads.

- extract_contact_info(): función pura, busca email y teléfono en el texto
  del usuario y normaliza el teléfono a formato internacional (+1...)
- LeadCapture.upsert(): crea o completa el lead de una sesión. Es idempotente
  y nunca propaga excepciones: corre en segundo plano y no debe afectar
  la respuesta del chat.
"""

import logging
import re
import uuid
from typing import Iterable, Optional

from agent.db_service import ChatRepository
from agent.domain import (
    LEAD_SOURCE_AUTODETECT,
    ChatMessage,
    ContactInfo,
    Lead,
    utc_now,
)

logger = logging.getLogger(__name__)


EMAIL_RE = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")

# Formatos norteamericanos: 555-123-4567, (555) 123 4567, +1 555.123.4567, 123-4567
PHONE_RE = re.compile(r"(?:\+?1[-.\s]?)?(?:\(?\d{3}\)?[-.\s]?)?\d{3}[-.\s]?\d{4}")

_NON_DIGIT_RE = re.compile(r"\D")


def normalize_phone(raw: str) -> str:
    """
    Normaliza un teléfono al formato +1XXXXXXXXXX cuando es posible.

    Ejemplos:
        '(555) 123-4567'  → '+15551234567'
        '1-555-123-4567'  → '+15551234567'
        '123-4567'        → '123-4567' (no se puede normalizar, se deja igual)
    """
    digits = _NON_DIGIT_RE.sub("", raw)
    if len(digits) == 10:
        return f"+1{digits}"
    if len(digits) == 11 and digits.startswith("1"):
        return f"+{digits}"
    return raw


def extract_contact_info(text: str) -> ContactInfo:
    """Primer email y primer teléfono encontrados en el texto (o None)."""
    email_match = EMAIL_RE.search(text)
    phone_match = PHONE_RE.search(text)

    return ContactInfo(
        email=email_match.group(0) if email_match else None,
        phone=normalize_phone(phone_match.group(0)) if phone_match else None,
    )


def collect_user_text(messages: Iterable[ChatMessage]) -> str:
    """Concatena los turnos del usuario separados por espacio."""
    return " ".join(m.content for m in messages if m.role == "user")


def _is_blank(value: Optional[str]) -> bool:
    return value is None or not value.strip()


class LeadCapture:
    """Alta idempotente de leads por sesión."""

    def __init__(self, repository: ChatRepository, channel: str = "web"):
        self._repo = repository
        self._channel = channel

    def capture_from_messages(
        self,
        workspace_id: str,
        agent_id: str,
        session_id: str,
        messages: Iterable[ChatMessage],
    ) -> Optional[str]:
        """Extrae contacto de los turnos del usuario y hace upsert si hay algo."""
        contact = extract_contact_info(collect_user_text(messages))
        if contact.is_empty:
            return None

        logger.info(
            f"[{session_id}] Contacto detectado - email: {contact.email}, "
            f"teléfono: {contact.phone}"
        )
        return self.upsert(workspace_id, agent_id, session_id, contact)

    def upsert(
        self,
        workspace_id: str,
        agent_id: str,
        session_id: str,
        contact: ContactInfo,
    ) -> Optional[str]:
        """
        Crea o completa el lead de la sesión.

        - Si existe: solo completa email/phone que estén vacíos y actualiza
          updated_at. Si no hay nada nuevo, no escribe.
        - Si no existe: lo crea con source="chat_autodetect" y marca la
          sesión de chat como lead_captured.

        Returns:
            id del lead, o None si falló (el error queda logueado)
        """
        try:
            existing = self._repo.get_lead_by_session(session_id)
            if existing is not None:
                return self._merge(existing, contact)

            lead = Lead(
                id=str(uuid.uuid4()),
                workspace_id=workspace_id,
                agent_id=agent_id,
                session_id=session_id,
                email=contact.email,
                phone=contact.phone,
                channel=self._channel,
                source=LEAD_SOURCE_AUTODETECT,
            )
            created = self._repo.insert_lead(lead)
            if created is None:
                # Otra request creó el lead de esta sesión primero
                winner = self._repo.get_lead_by_session(session_id)
                if winner is None:
                    logger.error(f"[{session_id}] No se pudo crear ni leer el lead")
                    return None
                return self._merge(winner, contact)

            logger.info(f"[{session_id}] Lead creado: {created.id}")

            linked = self._repo.mark_session_lead(session_id, agent_id, created.id)
            if not linked:
                logger.debug(f"[{session_id}] Sin chat_session para vincular el lead")
            return created.id

        except Exception as e:
            logger.error(f"[{session_id}] Error en upsert de lead: {e}", exc_info=True)
            return None

    def _merge(self, existing: Lead, contact: ContactInfo) -> str:
        updates = {}
        if contact.email and _is_blank(existing.email):
            updates["email"] = contact.email
        if contact.phone and _is_blank(existing.phone):
            updates["phone"] = contact.phone

        if not updates:
            return existing.id

        updates["updated_at"] = utc_now()
        self._repo.update_lead(existing.id, updates)
        logger.info(f"[{existing.session_id}] Lead actualizado: {existing.id}")
        return existing.id
