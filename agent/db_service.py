"""
DB Service — Capa de acceso a datos del pipeline de chat.

Define el contrato ChatRepository y dos implementaciones:
- InMemoryRepository: dicts por instancia (tests y demo)
- SQLiteRepository: SQLite con el schema creado al iniciar

Todas las filas se validan como modelos del dominio al salir del
repositorio. Las referencias colgantes (persona o fuente borrada)
simplemente devuelven None / no aportan chunks.
"""

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Protocol, Sequence

from agent.domain import (
    Agent,
    ChatMessage,
    ChatSession,
    KnowledgeChunk,
    KnowledgeSource,
    Lead,
    Persona,
    WidgetConfig,
    utc_now,
)
from rag.ingest.chunker import DEFAULT_CHUNK_SIZE, build_chunks

logger = logging.getLogger(__name__)

# Campos de un lead que se pueden actualizar en un merge
_LEAD_UPDATABLE = {"email", "phone", "updated_at"}

# Campos de contacto: un merge nunca pisa un valor ya cargado
_LEAD_CONTACT_FIELDS = ("email", "phone")


def _is_blank(value: Optional[str]) -> bool:
    return value is None or not value.strip()


class ChatRepository(Protocol):
    """Operaciones de storage que usa el pipeline."""

    def get_agent(self, agent_id: str) -> Optional[Agent]: ...

    def get_persona(self, persona_id: str) -> Optional[Persona]: ...

    def get_chunks(self, source_ids: Sequence[str]) -> List[KnowledgeChunk]: ...

    def get_widget_config(self, agent_id: str) -> Optional[WidgetConfig]: ...

    def get_lead_by_session(self, session_id: str) -> Optional[Lead]: ...

    def insert_lead(self, lead: Lead) -> Optional[Lead]: ...

    def update_lead(self, lead_id: str, updates: Dict[str, Any]) -> None: ...

    def mark_session_lead(self, session_id: str, agent_id: str, lead_id: str) -> bool: ...

    def get_session(self, session_id: str, agent_id: str) -> Optional[ChatSession]: ...

    def save_session_messages(
        self,
        workspace_id: str,
        agent_id: str,
        session_id: str,
        messages: Sequence[ChatMessage],
    ) -> ChatSession: ...

    def save_agent(self, agent: Agent) -> Agent: ...

    def save_persona(self, persona: Persona) -> Persona: ...

    def save_widget_config(self, config: WidgetConfig) -> WidgetConfig: ...

    def save_knowledge_source(
        self, source_id: str, workspace_id: str, raw_text: str, name: str = None
    ) -> KnowledgeSource: ...

    def get_knowledge_source(self, source_id: str) -> Optional[KnowledgeSource]: ...

    def ping(self) -> bool: ...


def _order_by_source(
    chunks: List[KnowledgeChunk], source_ids: Sequence[str]
) -> List[KnowledgeChunk]:
    """Orden estable: primero por posición de la fuente en el agente, luego por índice."""
    position = {source_id: i for i, source_id in enumerate(dict.fromkeys(source_ids))}
    return sorted(chunks, key=lambda c: (position.get(c.source_id, len(position)), c.index))


# In-memory


class InMemoryRepository:
    """Repositorio en memoria. Cada instancia tiene su propio estado."""

    def __init__(self, chunk_size: int = DEFAULT_CHUNK_SIZE):
        self.chunk_size = chunk_size
        self._lock = threading.Lock()
        self._agents: Dict[str, Agent] = {}
        self._personas: Dict[str, Persona] = {}
        self._sources: Dict[str, KnowledgeSource] = {}
        self._widgets: Dict[str, WidgetConfig] = {}
        self._leads: Dict[str, Lead] = {}
        self._sessions: Dict[tuple, ChatSession] = {}

    def get_agent(self, agent_id: str) -> Optional[Agent]:
        return self._agents.get(agent_id)

    def get_persona(self, persona_id: str) -> Optional[Persona]:
        return self._personas.get(persona_id)

    def get_chunks(self, source_ids: Sequence[str]) -> List[KnowledgeChunk]:
        chunks: List[KnowledgeChunk] = []
        for source_id in dict.fromkeys(source_ids):
            source = self._sources.get(source_id)
            if source is not None:
                chunks.extend(source.chunks)
        return _order_by_source(chunks, source_ids)

    def get_widget_config(self, agent_id: str) -> Optional[WidgetConfig]:
        return self._widgets.get(agent_id)

    def get_lead_by_session(self, session_id: str) -> Optional[Lead]:
        with self._lock:
            for lead in self._leads.values():
                if lead.session_id == session_id:
                    return lead.model_copy()
        return None

    def insert_lead(self, lead: Lead) -> Optional[Lead]:
        with self._lock:
            if any(l.session_id == lead.session_id for l in self._leads.values()):
                return None
            self._leads[lead.id] = lead.model_copy()
        return lead

    def update_lead(self, lead_id: str, updates: Dict[str, Any]) -> None:
        """Completa email/phone solo si siguen vacíos al momento de escribir."""
        unknown = set(updates) - _LEAD_UPDATABLE
        if unknown:
            raise ValueError(f"Campos de lead no actualizables: {sorted(unknown)}")
        with self._lock:
            lead = self._leads.get(lead_id)
            if lead is None:
                return
            applied = {
                field: value
                for field, value in updates.items()
                if field not in _LEAD_CONTACT_FIELDS or _is_blank(getattr(lead, field))
            }
            self._leads[lead_id] = lead.model_copy(update=applied)

    def mark_session_lead(self, session_id: str, agent_id: str, lead_id: str) -> bool:
        with self._lock:
            session = self._sessions.get((session_id, agent_id))
            if session is None:
                return False
            self._sessions[(session_id, agent_id)] = session.model_copy(
                update={"lead_captured": True, "lead_id": lead_id, "updated_at": utc_now()}
            )
            return True

    def get_session(self, session_id: str, agent_id: str) -> Optional[ChatSession]:
        with self._lock:
            return self._sessions.get((session_id, agent_id))

    def save_session_messages(
        self,
        workspace_id: str,
        agent_id: str,
        session_id: str,
        messages: Sequence[ChatMessage],
    ) -> ChatSession:
        with self._lock:
            key = (session_id, agent_id)
            existing = self._sessions.get(key)
            if existing is None:
                session = ChatSession(
                    session_id=session_id,
                    agent_id=agent_id,
                    workspace_id=workspace_id,
                    messages=list(messages),
                )
            else:
                session = existing.model_copy(
                    update={"messages": list(messages), "updated_at": utc_now()}
                )
            self._sessions[key] = session
            return session

    def save_agent(self, agent: Agent) -> Agent:
        self._agents[agent.id] = agent
        return agent

    def save_persona(self, persona: Persona) -> Persona:
        self._personas[persona.id] = persona
        return persona

    def save_widget_config(self, config: WidgetConfig) -> WidgetConfig:
        self._widgets[config.agent_id] = config
        return config

    def save_knowledge_source(
        self, source_id: str, workspace_id: str, raw_text: str, name: str = None
    ) -> KnowledgeSource:
        source = KnowledgeSource(
            id=source_id,
            workspace_id=workspace_id,
            name=name,
            raw_text=raw_text or "",
            chunks=build_chunks(source_id, raw_text or "", self.chunk_size),
        )
        self._sources[source_id] = source
        return source

    def get_knowledge_source(self, source_id: str) -> Optional[KnowledgeSource]:
        return self._sources.get(source_id)

    def ping(self) -> bool:
        return True


# SQLite

_SCHEMA = """
CREATE TABLE IF NOT EXISTS personas (
    id TEXT PRIMARY KEY,
    workspace_id TEXT,
    name TEXT NOT NULL,
    role_title TEXT,
    tone TEXT,
    style_notes TEXT,
    do_not_do TEXT NOT NULL DEFAULT '[]',
    greeting_script TEXT,
    fallback_policy TEXT,
    escalation_rules TEXT
);

CREATE TABLE IF NOT EXISTS agents (
    id TEXT PRIMARY KEY,
    workspace_id TEXT NOT NULL,
    name TEXT NOT NULL,
    persona_id TEXT,
    knowledge_source_ids TEXT NOT NULL DEFAULT '[]',
    goals TEXT,
    business_domain TEXT NOT NULL DEFAULT 'other',
    status TEXT NOT NULL DEFAULT 'draft',
    channels TEXT NOT NULL DEFAULT '{}'
);

CREATE TABLE IF NOT EXISTS knowledge_sources (
    id TEXT PRIMARY KEY,
    workspace_id TEXT NOT NULL,
    name TEXT,
    raw_text TEXT NOT NULL DEFAULT '',
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS knowledge_chunks (
    id TEXT PRIMARY KEY,
    source_id TEXT NOT NULL REFERENCES knowledge_sources(id) ON DELETE CASCADE,
    chunk_index INTEGER NOT NULL,
    content TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_chunks_source ON knowledge_chunks (source_id, chunk_index);

CREATE TABLE IF NOT EXISTS widget_configs (
    agent_id TEXT PRIMARY KEY,
    allowed_domains TEXT NOT NULL DEFAULT '[]',
    enabled INTEGER NOT NULL DEFAULT 1,
    position TEXT NOT NULL DEFAULT 'bottom-right',
    launcher_label TEXT NOT NULL DEFAULT 'Chat with us',
    primary_color TEXT NOT NULL DEFAULT '#111827'
);

CREATE TABLE IF NOT EXISTS leads (
    id TEXT PRIMARY KEY,
    workspace_id TEXT NOT NULL,
    agent_id TEXT NOT NULL,
    session_id TEXT NOT NULL UNIQUE,
    email TEXT,
    phone TEXT,
    channel TEXT,
    source TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS chat_sessions (
    session_id TEXT NOT NULL,
    agent_id TEXT NOT NULL,
    workspace_id TEXT NOT NULL,
    channel TEXT NOT NULL DEFAULT 'web',
    messages TEXT NOT NULL DEFAULT '[]',
    lead_captured INTEGER NOT NULL DEFAULT 0,
    lead_id TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (session_id, agent_id)
);
"""


def _to_db(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


class SQLiteRepository:
    """Repositorio SQLite. Abre una conexión por operación."""

    def __init__(self, db_path: Path, chunk_size: int = DEFAULT_CHUNK_SIZE):
        self.db_path = Path(db_path)
        self.chunk_size = chunk_size
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._conn() as conn:
            conn.executescript(_SCHEMA)
        logger.info(f"SQLiteRepository listo en {self.db_path}")

    # helpers

    @contextmanager
    def _conn(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # Agents / personas / widget

    def get_agent(self, agent_id: str) -> Optional[Agent]:
        with self._conn() as conn:
            row = conn.execute("SELECT * FROM agents WHERE id = ?", (agent_id,)).fetchone()
        if row is None:
            return None
        data = dict(row)
        data["knowledge_source_ids"] = json.loads(data["knowledge_source_ids"] or "[]")
        data["channels"] = json.loads(data["channels"] or "{}")
        return Agent.model_validate(data)

    def save_agent(self, agent: Agent) -> Agent:
        with self._conn() as conn:
            conn.execute(
                """
                INSERT INTO agents
                    (id, workspace_id, name, persona_id, knowledge_source_ids,
                     goals, business_domain, status, channels)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    workspace_id = excluded.workspace_id,
                    name = excluded.name,
                    persona_id = excluded.persona_id,
                    knowledge_source_ids = excluded.knowledge_source_ids,
                    goals = excluded.goals,
                    business_domain = excluded.business_domain,
                    status = excluded.status,
                    channels = excluded.channels
                """,
                (
                    agent.id,
                    agent.workspace_id,
                    agent.name,
                    agent.persona_id,
                    json.dumps(agent.knowledge_source_ids),
                    agent.goals,
                    agent.business_domain,
                    agent.status,
                    json.dumps(agent.channels, ensure_ascii=False),
                ),
            )
        return agent

    def get_persona(self, persona_id: str) -> Optional[Persona]:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT * FROM personas WHERE id = ?", (persona_id,)
            ).fetchone()
        if row is None:
            return None
        data = dict(row)
        data["do_not_do"] = json.loads(data["do_not_do"] or "[]")
        return Persona.model_validate(data)

    def save_persona(self, persona: Persona) -> Persona:
        with self._conn() as conn:
            conn.execute(
                """
                INSERT INTO personas
                    (id, workspace_id, name, role_title, tone, style_notes,
                     do_not_do, greeting_script, fallback_policy, escalation_rules)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    workspace_id = excluded.workspace_id,
                    name = excluded.name,
                    role_title = excluded.role_title,
                    tone = excluded.tone,
                    style_notes = excluded.style_notes,
                    do_not_do = excluded.do_not_do,
                    greeting_script = excluded.greeting_script,
                    fallback_policy = excluded.fallback_policy,
                    escalation_rules = excluded.escalation_rules
                """,
                (
                    persona.id,
                    persona.workspace_id,
                    persona.name,
                    persona.role_title,
                    persona.tone,
                    persona.style_notes,
                    json.dumps(persona.do_not_do, ensure_ascii=False),
                    persona.greeting_script,
                    persona.fallback_policy,
                    persona.escalation_rules,
                ),
            )
        return persona

    def get_widget_config(self, agent_id: str) -> Optional[WidgetConfig]:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT * FROM widget_configs WHERE agent_id = ?", (agent_id,)
            ).fetchone()
        if row is None:
            return None
        data = dict(row)
        data["allowed_domains"] = json.loads(data["allowed_domains"] or "[]")
        data["enabled"] = bool(data["enabled"])
        return WidgetConfig.model_validate(data)

    def save_widget_config(self, config: WidgetConfig) -> WidgetConfig:
        with self._conn() as conn:
            conn.execute(
                """
                INSERT INTO widget_configs
                    (agent_id, allowed_domains, enabled, position, launcher_label, primary_color)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(agent_id) DO UPDATE SET
                    allowed_domains = excluded.allowed_domains,
                    enabled = excluded.enabled,
                    position = excluded.position,
                    launcher_label = excluded.launcher_label,
                    primary_color = excluded.primary_color
                """,
                (
                    config.agent_id,
                    json.dumps(config.allowed_domains),
                    int(config.enabled),
                    config.position,
                    config.launcher_label,
                    config.primary_color,
                ),
            )
        return config

    # Knowledge

    def save_knowledge_source(
        self, source_id: str, workspace_id: str, raw_text: str, name: str = None
    ) -> KnowledgeSource:
        """Guarda la fuente y regenera todos sus chunks."""
        raw_text = raw_text or ""
        chunks = build_chunks(source_id, raw_text, self.chunk_size)
        with self._conn() as conn:
            conn.execute(
                """
                INSERT INTO knowledge_sources (id, workspace_id, name, raw_text, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    workspace_id = excluded.workspace_id,
                    name = excluded.name,
                    raw_text = excluded.raw_text,
                    updated_at = excluded.updated_at
                """,
                (source_id, workspace_id, name, raw_text, utc_now().isoformat()),
            )
            conn.execute("DELETE FROM knowledge_chunks WHERE source_id = ?", (source_id,))
            conn.executemany(
                """
                INSERT INTO knowledge_chunks (id, source_id, chunk_index, content)
                VALUES (?, ?, ?, ?)
                """,
                [(c.id, c.source_id, c.index, c.content) for c in chunks],
            )
        logger.info(f"Fuente {source_id}: {len(chunks)} chunks generados")
        return KnowledgeSource(
            id=source_id,
            workspace_id=workspace_id,
            name=name,
            raw_text=raw_text,
            chunks=chunks,
        )

    def get_knowledge_source(self, source_id: str) -> Optional[KnowledgeSource]:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT * FROM knowledge_sources WHERE id = ?", (source_id,)
            ).fetchone()
        if row is None:
            return None
        data = dict(row)
        data["chunks"] = self.get_chunks([source_id])
        return KnowledgeSource.model_validate(data)

    def get_chunks(self, source_ids: Sequence[str]) -> List[KnowledgeChunk]:
        unique_ids = list(dict.fromkeys(source_ids))
        if not unique_ids:
            return []

        placeholders = ", ".join("?" for _ in unique_ids)
        with self._conn() as conn:
            rows = conn.execute(
                f"""
                SELECT id, source_id, chunk_index AS "index", content
                FROM knowledge_chunks
                WHERE source_id IN ({placeholders})
                """,
                unique_ids,
            ).fetchall()
        chunks = [KnowledgeChunk.model_validate(dict(r)) for r in rows]
        return _order_by_source(chunks, unique_ids)

    # Leads

    def get_lead_by_session(self, session_id: str) -> Optional[Lead]:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT * FROM leads WHERE session_id = ?", (session_id,)
            ).fetchone()
        return Lead.model_validate(dict(row)) if row else None

    def insert_lead(self, lead: Lead) -> Optional[Lead]:
        """Inserta el lead; None si ya existe uno para la sesión."""
        try:
            with self._conn() as conn:
                conn.execute(
                    """
                    INSERT INTO leads
                        (id, workspace_id, agent_id, session_id, email, phone,
                         channel, source, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        lead.id,
                        lead.workspace_id,
                        lead.agent_id,
                        lead.session_id,
                        lead.email,
                        lead.phone,
                        lead.channel,
                        lead.source,
                        lead.created_at.isoformat(),
                        lead.updated_at.isoformat(),
                    ),
                )
        except sqlite3.IntegrityError:
            logger.info(f"[{lead.session_id}] Lead ya existente para la sesión")
            return None
        return lead

    def update_lead(self, lead_id: str, updates: Dict[str, Any]) -> None:
        """
        Aplica un merge sobre el lead.

        email/phone solo se escriben si la columna sigue vacía en el momento
        del UPDATE, así dos merges concurrentes nunca pisan un valor cargado.
        """
        unknown = set(updates) - _LEAD_UPDATABLE
        if unknown:
            raise ValueError(f"Campos de lead no actualizables: {sorted(unknown)}")
        if not updates:
            return

        columns = sorted(updates)
        assignments = ", ".join(
            f"{col} = CASE WHEN TRIM({col}) <> '' THEN {col} ELSE ? END"
            if col in _LEAD_CONTACT_FIELDS
            else f"{col} = ?"
            for col in columns
        )
        values = [_to_db(updates[col]) for col in columns]
        with self._conn() as conn:
            conn.execute(
                f"UPDATE leads SET {assignments} WHERE id = ?", (*values, lead_id)
            )

    # Chat sessions

    def mark_session_lead(self, session_id: str, agent_id: str, lead_id: str) -> bool:
        with self._conn() as conn:
            cursor = conn.execute(
                """
                UPDATE chat_sessions
                SET lead_captured = 1, lead_id = ?, updated_at = ?
                WHERE session_id = ? AND agent_id = ?
                """,
                (lead_id, utc_now().isoformat(), session_id, agent_id),
            )
            return cursor.rowcount > 0

    def get_session(self, session_id: str, agent_id: str) -> Optional[ChatSession]:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT * FROM chat_sessions WHERE session_id = ? AND agent_id = ?",
                (session_id, agent_id),
            ).fetchone()
        if row is None:
            return None
        data = dict(row)
        data["messages"] = json.loads(data["messages"] or "[]")
        data["lead_captured"] = bool(data["lead_captured"])
        return ChatSession.model_validate(data)

    def save_session_messages(
        self,
        workspace_id: str,
        agent_id: str,
        session_id: str,
        messages: Sequence[ChatMessage],
    ) -> ChatSession:
        now = utc_now().isoformat()
        messages_json = json.dumps(
            [m.model_dump() for m in messages], ensure_ascii=False
        )
        with self._conn() as conn:
            conn.execute(
                """
                INSERT INTO chat_sessions
                    (session_id, agent_id, workspace_id, messages, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(session_id, agent_id) DO UPDATE SET
                    messages = excluded.messages,
                    updated_at = excluded.updated_at
                """,
                (session_id, agent_id, workspace_id, messages_json, now, now),
            )
        return self.get_session(session_id, agent_id)

    def ping(self) -> bool:
        with self._conn() as conn:
            conn.execute("SELECT 1").fetchone()
        return True


def build_repository(
    backend: str, db_path: Path = None, chunk_size: int = DEFAULT_CHUNK_SIZE
) -> ChatRepository:
    """Crea el repositorio según STORAGE_BACKEND ('sqlite' | 'memory')."""
    backend = backend.lower()
    if backend == "memory":
        logger.info("Usando repositorio en memoria")
        return InMemoryRepository(chunk_size=chunk_size)
    if backend == "sqlite":
        if db_path is None:
            raise ValueError("STORAGE_BACKEND=sqlite requiere DATABASE_PATH")
        return SQLiteRepository(db_path, chunk_size=chunk_size)
    raise ValueError(f"STORAGE_BACKEND desconocido: {backend}")
