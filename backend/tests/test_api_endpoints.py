# backend/tests/test_api_endpoints.py
"""
Integration tests for the HTTP surface.

Vendor services are replaced with mocks via app.dependency_overrides
(see conftest.py); the database is in-memory SQLite.
"""

import asyncio
import hashlib
import hmac
import json
import time
from unittest.mock import Mock, patch

from vasa.config import VERSION, settings
from vasa.models import ConversationTurn, StageTransition
from vasa.services.elevenlabs_service import ElevenLabsService
from vasa.dependencies import get_elevenlabs, get_resolver
from vasa.main import app
from vasa.services.memory_store import MemoryStore
from vasa.utils.rate_limit import limiter


def post_call_payload(conversation_id, transcript=None, summary=None):
    return {
        "type": "post_call_transcription",
        "data": {
            "conversation_id": conversation_id,
            "transcript": transcript if transcript is not None else [
                {"role": "agent", "message": "Can you hold the tension between both feelings?"},
                {"role": "user", "message": "I think so."},
            ],
            "analysis": {"transcript_summary": summary} if summary else {},
            "metadata": {"call_duration_secs": 42},
        },
    }


class TestStartConversation:
    def test_new_user_created(self, client, store):
        response = client.post("/api/start-conversation", json={"userUUID": "u1"})

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["userProfile"]["current_stage"] == "pointed_origin"
        assert data["userProfile"]["metrics"]["total_sessions"] == 1
        assert data["context"] == "This is a new session. The user is currently in the Pointed Origin stage."
        assert data["conversationId"].startswith("vasa__u1__")

        user = store.get_user("u1")
        assert user.current_stage == "pointed_origin"
        assert user.total_sessions == 1

    def test_returning_user_increments_sessions(self, client):
        client.post("/api/start-conversation", json={"userUUID": "u1"})
        data = client.post("/api/start-conversation", json={"userUUID": "u1"}).json()
        assert data["userProfile"]["metrics"]["total_sessions"] == 2
        assert "again" in data["agentConfig"]["overrides"]["agent"]["first_message"]

    def test_vendor_conversation_id_registered(self, client, store):
        data = client.post(
            "/api/start-conversation",
            json={"userUUID": "u1", "conversationData": {"conversation_id": "conv_el_1"}},
        ).json()
        assert data["conversationId"] == "conv_el_1"
        assert store.get_mapping("conv_el_1").user_id == "u1"

    def test_agent_config(self, client):
        data = client.post("/api/start-conversation", json={"userUUID": "u1"}).json()
        agent_config = data["agentConfig"]
        assert agent_config["agent_id"] == "agent_test"
        assert agent_config["dynamic_variables"]["user_id"] == "u1"
        assert agent_config["dynamic_variables"]["current_stage"] == "pointed_origin"
        assert agent_config["dynamic_variables"]["current_stage_description"] == "Revealing Fragmentation"

    def test_missing_user_uuid(self, client, store):
        response = client.post("/api/start-conversation", json={})
        assert response.status_code == 400
        assert response.json()["error"] == "userUUID is required"

    def test_malformed_body_is_400(self, client):
        response = client.post("/api/start-conversation", json={"userUUID": ["not", "a", "string"]})
        assert response.status_code == 400
        assert "userUUID" in response.json()["error"]


class TestEndConversation:
    def test_end(self, client, store):
        client.post("/api/start-conversation", json={"userUUID": "u1", "conversationData": {"conversation_id": "c1"}})
        response = client.post("/api/end-conversation", json={"conversationId": "c1", "reason": "timeout"})
        assert response.status_code == 200
        assert store.get_mapping("c1").status == "ended"

    def test_unknown(self, client):
        assert client.post("/api/end-conversation", json={"conversationId": "nope"}).status_code == 404

    def test_missing_id(self, client):
        assert client.post("/api/end-conversation", json={}).status_code == 400


class TestPostCallWebhook:
    def _start(self, client, conversation_id="conv_1", user_id="u1"):
        client.post(
            "/api/start-conversation",
            json={"userUUID": user_id, "conversationData": {"conversation_id": conversation_id}},
        )

    def test_unmapped_conversation(self, client, db_session, services):
        response = client.post("/api/webhook", json=post_call_payload("conv_unknown"))

        assert response.status_code == 200
        assert response.json()["success"] is False
        assert db_session.query(ConversationTurn).count() == 0
        services.mem0.add.assert_not_awaited()

    def test_mapped_conversation_stored(self, client, db_session, services, store):
        self._start(client)
        response = client.post("/api/webhook", json=post_call_payload("conv_1", summary="Talked about tension"))

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["user_uuid"] == "u1"
        assert data["stage"] == "suspension"

        turn = db_session.query(ConversationTurn).one()
        assert turn.source == "elevenlabs_post_call"
        assert turn.content.splitlines()[0].startswith("VASA: Can you hold")
        assert turn.content.splitlines()[1] == "User: I think so."

        assert store.get_user("u1").current_stage == "suspension"
        assert db_session.query(StageTransition).count() == 1
        assert store.get_mapping("conv_1").status == "ended"

        assert services.mem0.add.await_count == 2
        first = services.mem0.add.await_args_list[0]
        assert first.args[1] == "u1"
        assert first.args[2]["source"] == "elevenlabs_real_conversation"
        assert first.args[2]["type"] == "voice_conversation_real"
        assert services.mem0.add.await_args_list[1].args[0] == "Conversation summary: Talked about tension"

    def test_two_events_same_conversation(self, client, db_session):
        self._start(client)

        first = client.post("/api/webhook", json=post_call_payload("conv_1"))
        second = client.post("/api/webhook", json=post_call_payload("conv_1"))

        assert first.json()["user_uuid"] == second.json()["user_uuid"] == "u1"
        turns = db_session.query(ConversationTurn).filter(ConversationTurn.conversation_id == "conv_1").all()
        assert len(turns) == 2
        assert turns[0].id != turns[1].id

    def test_same_stage_twice_writes_one_transition(self, client, db_session):
        self._start(client)
        client.post("/api/webhook", json=post_call_payload("conv_1"))
        client.post("/api/webhook", json=post_call_payload("conv_1"))
        assert db_session.query(StageTransition).count() == 1

    def test_mem0_failure_still_200(self, client, services, db_session):
        self._start(client)
        services.mem0.add.side_effect = RuntimeError("mem0 down")
        response = client.post("/api/webhook", json=post_call_payload("conv_1"))
        assert response.status_code == 200
        assert response.json()["memory_queued"] is True
        assert db_session.query(ConversationTurn).count() == 1
        # background write: first attempt plus exactly one retry
        assert services.mem0.add.await_count == 2

    def test_mem0_unconfigured(self, client, services, db_session):
        self._start(client)
        services.mem0.configured = False
        response = client.post("/api/webhook", json=post_call_payload("conv_1"))
        assert response.status_code == 200
        assert response.json()["success"] is False
        assert db_session.query(ConversationTurn).count() == 1
        services.mem0.add.assert_not_awaited()

    def test_resolver_error_answers_200(self, client, db_session):
        resolver = Mock()
        resolver.resolve_user.side_effect = RuntimeError("db down")
        app.dependency_overrides[get_resolver] = lambda: resolver

        response = client.post("/api/webhook", json=post_call_payload("conv_1"))

        assert response.status_code == 200
        assert response.json() == {"success": False, "message": "Internal error processing webhook"}
        assert db_session.query(ConversationTurn).count() == 0

    def test_store_error_answers_200(self, client, store):
        self._start(client)
        with patch.object(MemoryStore, "current_stage", side_effect=RuntimeError("db down")):
            response = client.post("/api/webhook", json=post_call_payload("conv_1"))
        assert response.status_code == 200
        assert response.json()["success"] is False

    def test_not_rate_limited(self, client):
        limiter.reset()
        limiter.enabled = True
        codes = {client.post("/api/webhook", json=post_call_payload("conv_unknown")).status_code for _ in range(130)}
        assert codes == {200}

    def test_empty_transcript(self, client, db_session):
        self._start(client)
        response = client.post("/api/webhook", json=post_call_payload("conv_1", transcript=[]))
        assert response.status_code == 200
        assert response.json()["message"] == "No transcript provided"
        assert db_session.query(ConversationTurn).count() == 0

    def test_malformed_body(self, client):
        response = client.post("/api/webhook", content=b"not json", headers={"Content-Type": "application/json"})
        assert response.status_code == 200
        assert response.json()["success"] is False

    def test_missing_data_field(self, client):
        response = client.post("/api/webhook", json={"hello": "world"})
        assert response.status_code == 200
        assert response.json()["success"] is False

    def test_fallback_resolution_by_issued_id(self, client, store, db_session):
        data = client.post("/api/start-conversation", json={"userUUID": "u1"}).json()
        conversation_id = data["conversationId"]
        db_session.delete(store.get_mapping(conversation_id))
        db_session.commit()

        response = client.post("/api/webhook", json=post_call_payload(conversation_id))
        assert response.json()["user_uuid"] == "u1"


class TestWebhookSignature:
    SECRET = "whsec_test"

    def _signed(self, body: bytes, secret=SECRET, ts=None):
        ts = ts or int(time.time())
        mac = hmac.new(secret.encode(), f"{ts}.".encode() + body, hashlib.sha256).hexdigest()
        return f"t={ts},v0={mac}"

    def _use_real_verifier(self):
        service = ElevenLabsService(api_key="", agent_id="agent_test", webhook_secret=self.SECRET)
        app.dependency_overrides[get_elevenlabs] = lambda: service

    def test_bad_signature_rejected_with_200(self, client, db_session):
        self._use_real_verifier()
        client.post("/api/start-conversation", json={"userUUID": "u1", "conversationData": {"conversation_id": "c1"}})
        body = json.dumps(post_call_payload("c1")).encode()

        response = client.post(
            "/api/webhook",
            content=body,
            headers={"Content-Type": "application/json", "ElevenLabs-Signature": self._signed(body, "wrong")},
        )

        assert response.status_code == 200
        assert response.json() == {"success": False, "message": "Invalid signature"}
        assert db_session.query(ConversationTurn).count() == 0

    def test_valid_signature_accepted(self, client, db_session):
        self._use_real_verifier()
        client.post("/api/start-conversation", json={"userUUID": "u1", "conversationData": {"conversation_id": "c1"}})
        body = json.dumps(post_call_payload("c1")).encode()

        response = client.post(
            "/api/webhook",
            content=body,
            headers={"Content-Type": "application/json", "ElevenLabs-Signature": self._signed(body)},
        )

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert db_session.query(ConversationTurn).count() == 1


class TestMemoryChat:
    def test_chat(self, client, services):
        services.mem0.search.return_value = [{"memory": "Likes gardening"}]
        response = client.post("/api/memory/chat", json={"userId": "u1", "message": "What do I enjoy?"})

        assert response.status_code == 200
        data = response.json()
        assert data == {"success": True, "response": "I remember you mentioned your garden.", "memoriesUsed": 1}
        services.mem0.search.assert_awaited_once_with("u1", "What do I enjoy?", settings.CHAT_MEMORY_LIMIT)
        # background write of the exchange
        services.mem0.add.assert_awaited_once()
        messages = services.mem0.add.await_args.args[0]
        assert [m["role"] for m in messages] == ["user", "assistant"]

    def test_timeout_fallback(self, client, services):
        async def never_resolves(*args, **kwargs):
            await asyncio.sleep(30)

        services.mem0.search.side_effect = never_resolves
        with patch.object(settings, "CHAT_TIMEOUT_SECONDS", 0.05):
            response = client.post("/api/memory/chat", json={"userId": "u1", "message": "hello"})

        assert response.status_code == 200
        data = response.json()
        assert data["note"] == "Timeout occurred - using fallback response"
        assert data["memoriesUsed"] == 0
        assert data["success"] is True
        assert data["response"]
        services.openai.generate_contextual_response.assert_not_awaited()

    def test_missing_fields(self, client):
        response = client.post("/api/memory/chat", json={"userId": "u1"})
        assert response.status_code == 400

    def test_unconfigured_openai(self, client, services):
        services.openai.configured = False
        response = client.post("/api/memory/chat", json={"userId": "u1", "message": "hi"})
        assert response.status_code == 500
        assert response.json()["error"] == "OpenAI not configured"

    def test_upstream_error(self, client, services):
        services.openai.generate_contextual_response.side_effect = RuntimeError("boom")
        response = client.post("/api/memory/chat", json={"userId": "u1", "message": "hi"})
        assert response.status_code == 500

    def test_chat_turns_kept_for_known_user(self, client, db_session):
        client.post("/api/start-conversation", json={"userUUID": "u1"})
        client.post("/api/memory/chat", json={"userId": "u1", "message": "hi"})
        sources = {t.source for t in db_session.query(ConversationTurn).all()}
        assert sources == {"memory_chat"}

    def test_chat_stage_change_recorded(self, client, db_session, store):
        client.post("/api/start-conversation", json={"userUUID": "u1"})
        client.post("/api/memory/chat", json={"userId": "u1", "message": "I feel a contradiction"})

        transition = db_session.query(StageTransition).one()
        assert transition.from_stage == "pointed_origin"
        assert transition.to_stage == "suspension"
        assert store.get_user("u1").current_stage == "suspension"
        stages = {t.stage for t in db_session.query(ConversationTurn).all()}
        assert stages == {"suspension"}


class TestMemoryGetAndSearch:
    def test_get_both(self, client, services):
        services.mem0.get_all.return_value = [{"id": "m1", "memory": "Likes tea"}]
        client.post("/api/start-conversation", json={"userUUID": "u1"})
        data = client.get("/api/memory/get", params={"userId": "u1"}).json()
        assert data["memories"]["mem0"][0]["memory"] == "Likes tea"
        assert data["memories"]["store"]["profile"]["user_id"] == "u1"

    def test_firebase_alias(self, client, services):
        data = client.get("/api/memory/get", params={"userId": "u1", "source": "firebase"}).json()
        assert "store" in data["memories"]
        assert "mem0" not in data["memories"]
        services.mem0.get_all.assert_not_awaited()

    def test_invalid_source(self, client):
        assert client.get("/api/memory/get", params={"userId": "u1", "source": "disk"}).status_code == 400

    def test_missing_user(self, client):
        assert client.get("/api/memory/get").status_code == 400

    def test_search(self, client, services):
        services.mem0.search.return_value = [{"memory": "a"}, {"memory": "b"}]
        data = client.post("/api/memory/search", json={"userId": "u1", "query": "tea", "limit": 2}).json()
        assert data == {"success": True, "memories": [{"memory": "a"}, {"memory": "b"}], "total": 2}

    def test_search_requires_query(self, client):
        assert client.post("/api/memory/search", json={"userId": "u1"}).status_code == 400


class TestMemoryTurn:
    def test_turn_classified_and_transitioned(self, client, store, db_session):
        client.post("/api/start-conversation", json={"userUUID": "u1"})
        response = client.post(
            "/api/memory/turn",
            json={"userId": "u1", "role": "user", "content": "I feel whole now", "conversationId": "c1"},
        )
        data = response.json()
        assert data["stage"] == "completion"
        assert data["transitioned"] is True
        assert store.get_user("u1").current_stage == "completion"
        assert db_session.query(ConversationTurn).one().conversation_id == "c1"

    def test_explicit_stage(self, client):
        data = client.post(
            "/api/memory/turn",
            json={"userId": "u2", "role": "assistant", "content": "hello", "stage": "•"},
        ).json()
        assert data["stage"] == "focus_bind"

    def test_invalid_role(self, client, db_session):
        response = client.post("/api/memory/turn", json={"userId": "u1", "role": "narrator", "content": "x"})
        assert response.status_code == 400
        assert db_session.query(ConversationTurn).count() == 0

    def test_breakthrough_counted(self, client, store):
        client.post("/api/memory/turn", json={"userId": "u1", "role": "user", "content": "Everything clicked today"})
        assert store.get_user("u1").breakthrough_moments == 1


class TestConversationContext:
    def test_by_user(self, client):
        client.post("/api/start-conversation", json={"userUUID": "u1"})
        client.post("/api/memory/turn", json={"userId": "u1", "role": "user", "content": "hello"})
        data = client.post("/api/get-conversation-context", json={"user_id": "u1", "limit": 5}).json()
        assert data["success"] is True
        assert data["user_uuid"] == "u1"
        assert data["conversation_count"] == 1
        assert data["context"][0]["content"] == "hello"
        assert data["context_summary"].startswith("Previous conversation context: user: hello")

    def test_by_conversation_get(self, client):
        client.post("/api/start-conversation", json={"userUUID": "u1", "conversationData": {"conversation_id": "c9"}})
        data = client.get("/api/get-conversation-context", params={"conversation_id": "c9"}).json()
        assert data["user_uuid"] == "u1"
        assert data["context_summary"].startswith("This is a new session.")

    def test_unmapped_conversation(self, client):
        response = client.get("/api/get-conversation-context", params={"conversation_id": "nope"})
        assert response.status_code == 200
        assert response.json()["success"] is False

    def test_missing_identification(self, client):
        assert client.post("/api/get-conversation-context", json={}).status_code == 400


class TestInitiationWebhook:
    def test_known_user(self, client):
        client.post("/api/start-conversation", json={"userUUID": "u1"})
        client.post("/api/memory/turn", json={"userId": "u1", "role": "user", "content": "hello"})
        data = client.post(
            "/api/conversation-initiation-webhook",
            json={"caller_id": "+15550001", "conversation_initiation_client_data": {"dynamic_variables": {"user_id": "u1"}}},
        ).json()
        assert data["dynamic_variables"]["user_id"] == "u1"
        assert data["dynamic_variables"]["previous_conversations"].startswith("Previous conversation context")
        assert "first_message" in data["conversation_config_override"]["agent"]

    def test_unknown_caller(self, client):
        response = client.post("/api/conversation-initiation-webhook", json={"caller_id": "+15550001"})
        assert response.status_code == 200
        assert response.json()["dynamic_variables"]["user_id"] == "unknown"


class TestStatus:
    def test_all_configured(self, client, services):
        services.elevenlabs.webhook_security_enabled = True
        response = client.get("/api/status")
        assert response.status_code == 200
        assert response.json()["configuration"] == "complete"
        assert response.json()["version"] == VERSION == app.version

    def test_missing_key_is_206(self, client, services):
        services.elevenlabs.webhook_security_enabled = True
        services.mem0.configured = False
        response = client.get("/api/status")
        assert response.status_code == 206
        assert response.json()["services"]["mem0"] == "missing Mem0 API key"

    def test_missing_webhook_secret_is_206(self, client):
        assert client.get("/api/status").status_code == 206


class TestAdminCleanup:
    def test_cleanup_ended(self, client):
        response = client.post("/api/admin/cleanup-conversations", json={"days_old": 30})
        assert response.status_code == 200
        assert response.json()["deleted_count"] == 0

    def test_clear_user_data(self, client, services, store):
        client.post("/api/start-conversation", json={"userUUID": "u1"})
        response = client.post("/api/admin/cleanup-conversations", json={"action": "clear_user_data", "user_id": "u1"})
        data = response.json()
        assert data["deleted"]["users"] == 1
        assert data["mem0_cleared"] is True
        services.mem0.delete_all.assert_awaited_once_with("u1")

    def test_admin_key_enforced(self, client):
        with patch.object(settings, "ADMIN_API_KEY", "s3cret"):
            assert client.post("/api/admin/cleanup-conversations", json={}).status_code == 401
            ok = client.post("/api/admin/cleanup-conversations", json={}, headers={"X-Admin-Key": "s3cret"})
            assert ok.status_code == 200

    def test_unknown_action(self, client):
        assert client.post("/api/admin/cleanup-conversations", json={"action": "nuke"}).status_code == 400


class TestHealth:
    def test_health(self, client):
        data = client.get("/health").json()
        assert data["checks"]["database"] == "ok"
        assert "config" in data["checks"]

    def test_security_headers(self, client):
        response = client.get("/api/status")
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["Cache-Control"].startswith("no-store")
