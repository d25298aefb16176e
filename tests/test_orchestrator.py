"""
Tests para agent/orchestrator.py — Pipeline de respuesta.

Repositorio en memoria real + upstream falso (httpx.MockTransport).
Cada escenario corre en su propio event loop con asyncio.run().
"""

import asyncio
import threading
from unittest.mock import MagicMock

import pytest

from agent.background import BackgroundTaskRunner
from agent.domain import ChatMessage
from agent.errors import (
    AccessDenied,
    ConfigurationMissing,
    UpstreamQuotaExhausted,
    UpstreamRateLimited,
    ValidationError,
)
from agent.orchestrator import ChatOrchestrator, latest_user_message
from agent.prompt_builder import GENERIC_IDENTITY, KNOWLEDGE_HEADING, TONE_INSTRUCTIONS
from conftest import SSE_BODY, FakeUpstream
from rag.query.retriever import KeywordRetriever


def _user(content: str) -> ChatMessage:
    return ChatMessage(role="user", content=content)


def _run(orchestrator: ChatOrchestrator, background: BackgroundTaskRunner, **kwargs) -> bytes:
    """Ejecuta respond(), consume el stream y drena las tareas en segundo plano."""

    async def scenario():
        try:
            stream = await orchestrator.respond(**kwargs)
            return b"".join([chunk async for chunk in stream.iter_bytes()])
        finally:
            await background.drain(timeout=5.0)

    return asyncio.run(scenario())


@pytest.fixture
def background():
    return BackgroundTaskRunner()


@pytest.fixture
def orchestrator(repository, responder, background):
    return ChatOrchestrator(
        repository=repository,
        responder=responder,
        background=background,
        retriever=KeywordRetriever(top_k=3),
    )


class TestLatestUserMessage:
    def test_picks_last_user_turn(self):
        messages = [
            _user("first"),
            ChatMessage(role="assistant", content="reply"),
            _user("second"),
            ChatMessage(role="assistant", content="reply 2"),
        ]
        assert latest_user_message(messages) == "second"

    def test_no_user_turns(self):
        assert latest_user_message([ChatMessage(role="assistant", content="hi")]) == ""


class TestValidation:
    def test_missing_agent_id(self, orchestrator, background):
        with pytest.raises(ValidationError) as exc_info:
            _run(orchestrator, background, agent_id="", messages=[_user("hi")])
        assert exc_info.value.message == "agentId is required"

    def test_empty_messages(self, orchestrator, background):
        with pytest.raises(ValidationError) as exc_info:
            _run(orchestrator, background, agent_id="agent-1", messages=[])
        assert exc_info.value.message == "messages array is required"

    def test_missing_api_key(self, repository, background, responder_factory):
        upstream = FakeUpstream()
        orch = ChatOrchestrator(repository, responder_factory(upstream, api_key=None), background)

        with pytest.raises(ConfigurationMissing):
            _run(orch, background, agent_id="agent-1", messages=[_user("hi")])
        assert upstream.requests == []


class TestOriginGuard:
    def test_disallowed_origin_rejected_before_upstream(self, orchestrator, background, fake_upstream):
        with pytest.raises(AccessDenied):
            _run(
                orchestrator,
                background,
                agent_id="agent-1",
                messages=[_user("hi")],
                origin="https://evil.com",
            )
        assert fake_upstream.requests == []

    def test_subdomain_allowed(self, orchestrator, background):
        body = _run(
            orchestrator,
            background,
            agent_id="agent-1",
            messages=[_user("hi")],
            origin="https://shop.example.com",
        )
        assert body == SSE_BODY

    def test_referer_used_without_origin(self, orchestrator, background):
        with pytest.raises(AccessDenied):
            _run(
                orchestrator,
                background,
                agent_id="agent-1",
                messages=[_user("hi")],
                referer="https://evil.com/page",
            )

    def test_no_origin_is_allowed(self, orchestrator, background):
        assert _run(orchestrator, background, agent_id="agent-1", messages=[_user("hi")]) == SSE_BODY


class TestPromptAssembly:
    def test_persona_and_knowledge_sent_upstream(self, orchestrator, background, fake_upstream):
        _run(
            orchestrator,
            background,
            agent_id="agent-1",
            messages=[_user("Is there parking near the clinic?")],
        )

        payload = fake_upstream.last_payload
        system = payload["messages"][0]
        assert system["role"] == "system"
        assert system["content"].startswith("You are Sofia, Front Desk Coordinator.")
        assert TONE_INSTRUCTIONS["friendly"] in system["content"]
        assert KNOWLEDGE_HEADING in system["content"]
        assert payload["messages"][1:] == [
            {"role": "user", "content": "Is there parking near the clinic?"}
        ]

    def test_unknown_agent_uses_generic_prompt(self, orchestrator, background, fake_upstream):
        body = _run(orchestrator, background, agent_id="ghost", messages=[_user("hello")])

        assert body == SSE_BODY
        system = fake_upstream.last_payload["messages"][0]["content"]
        assert system.startswith(GENERIC_IDENTITY)
        assert KNOWLEDGE_HEADING not in system

    def test_no_relevant_chunks(self, orchestrator, background, fake_upstream):
        _run(orchestrator, background, agent_id="agent-1", messages=[_user("zzz qqq")])
        assert KNOWLEDGE_HEADING not in fake_upstream.last_payload["messages"][0]["content"]

    def test_storage_failures_degrade_to_generic(self, responder, background, fake_upstream):
        repo = MagicMock()
        repo.get_agent.side_effect = RuntimeError("db down")
        repo.get_widget_config.side_effect = RuntimeError("db down")
        orch = ChatOrchestrator(repo, responder, background)

        body = _run(orch, background, agent_id="agent-1", messages=[_user("hi")], session_id="s-1")

        assert body == SSE_BODY
        assert fake_upstream.last_payload["messages"][0]["content"].startswith(GENERIC_IDENTITY)
        repo.insert_lead.assert_not_called()

    def test_chunk_loading_failure_is_ignored(self, repository, responder, background, fake_upstream):
        repository.get_chunks = MagicMock(side_effect=RuntimeError("boom"))
        orch = ChatOrchestrator(repository, responder, background)

        _run(orch, background, agent_id="agent-1", messages=[_user("parking clinic")])
        assert KNOWLEDGE_HEADING not in fake_upstream.last_payload["messages"][0]["content"]


class TestUpstreamErrors:
    @pytest.mark.parametrize(
        "status,error", [(429, UpstreamRateLimited), (402, UpstreamQuotaExhausted)]
    )
    def test_status_mapping(self, orchestrator, background, fake_upstream, status, error):
        fake_upstream.status_code = status
        with pytest.raises(error):
            _run(orchestrator, background, agent_id="agent-1", messages=[_user("hi")])


class TestLeadCapture:
    def test_lead_created_in_background(self, orchestrator, background, repository):
        _run(
            orchestrator,
            background,
            agent_id="agent-1",
            session_id="sess-1",
            messages=[_user("Please call me at 555-123-4567")],
        )

        lead = repository.get_lead_by_session("sess-1")
        assert lead is not None
        assert lead.phone == "+15551234567"
        assert lead.workspace_id == "ws-1"
        assert lead.agent_id == "agent-1"

    def test_no_session_no_lead(self, orchestrator, background, repository):
        _run(
            orchestrator,
            background,
            agent_id="agent-1",
            messages=[_user("me@mail.com")],
        )
        assert repository._leads == {}

    def test_unknown_agent_no_lead(self, orchestrator, background, repository):
        _run(
            orchestrator,
            background,
            agent_id="ghost",
            session_id="sess-1",
            messages=[_user("me@mail.com")],
        )
        assert repository.get_lead_by_session("sess-1") is None

    def test_lead_failure_does_not_affect_response(self, repository, responder, background):
        repository.get_lead_by_session = MagicMock(side_effect=RuntimeError("db down"))
        orch = ChatOrchestrator(repository, responder, background)

        body = _run(
            orch,
            background,
            agent_id="agent-1",
            session_id="sess-1",
            messages=[_user("me@mail.com")],
        )
        assert body == SSE_BODY

    def test_lead_captured_even_if_upstream_fails(self, orchestrator, background, repository, fake_upstream):
        fake_upstream.status_code = 429
        with pytest.raises(UpstreamRateLimited):
            _run(
                orchestrator,
                background,
                agent_id="agent-1",
                session_id="sess-1",
                messages=[_user("me@mail.com")],
            )
        assert repository.get_lead_by_session("sess-1").email == "me@mail.com"

    def test_slow_lead_write_does_not_delay_response(self, repository, responder, background):
        """La respuesta completa sale mientras la escritura del lead sigue bloqueada."""
        release = threading.Event()
        original_lookup = repository.get_lead_by_session

        def blocked_lookup(session_id):
            release.wait(timeout=5.0)
            return original_lookup(session_id)

        repository.get_lead_by_session = blocked_lookup
        orch = ChatOrchestrator(repository, responder, background)

        async def scenario():
            stream = await orch.respond(
                agent_id="agent-1",
                session_id="sess-slow",
                messages=[_user("write me at slow@mail.com")],
            )
            body = b"".join([chunk async for chunk in stream.iter_bytes()])
            still_blocked = not release.is_set() and background.pending == 1

            release.set()
            await background.drain(timeout=5.0)
            return body, still_blocked

        body, still_blocked = asyncio.run(scenario())

        assert body == SSE_BODY
        assert still_blocked is True
        assert original_lookup("sess-slow").email == "slow@mail.com"
