# backend/tests/test_services.py
"""
Tests for the vendor clients (Mem0, OpenAI, ElevenLabs) and the shared
retry decorator. No network: httpx.MockTransport and AsyncMock only.
"""

import hashlib
import hmac
import json
import time
from unittest.mock import AsyncMock, Mock, patch

import httpx
import pytest

from vasa.services.elevenlabs_service import ElevenLabsService
from vasa.services.mem0_service import Mem0Error, Mem0Service
from vasa.services.openai_service import NO_MEMORIES_TEXT, OpenAIService, build_system_prompt
from vasa.services.turn_writer import TurnWriter
from vasa.utils.retry import RateLimitError, RetryError, async_retry, check_rate_limit_response


def mem0_with(handler) -> Mem0Service:
    service = Mem0Service(api_key="m0-test", base_url="https://mem0.test")
    service._http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return service


@pytest.fixture(autouse=True)
def no_sleep():
    with patch("vasa.utils.retry.asyncio.sleep", new=AsyncMock()):
        yield


class TestMem0Service:
    @pytest.mark.asyncio
    async def test_add_text(self):
        seen = {}

        def handler(request: httpx.Request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json=[{"id": "m1", "event": "ADD"}])

        service = mem0_with(handler)
        await service.add("User: hi", "u1", {"source": "test"})
        await service.aclose()

        assert seen["url"] == "https://mem0.test/v1/memories/"
        assert seen["auth"] == "Token m0-test"
        assert seen["body"] == {
            "messages": [{"role": "user", "content": "User: hi"}],
            "user_id": "u1",
            "metadata": {"source": "test"},
        }

    @pytest.mark.asyncio
    async def test_add_messages_passed_through(self):
        seen = {}

        def handler(request: httpx.Request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"results": []})

        service = mem0_with(handler)
        messages = [{"role": "user", "content": "a"}, {"role": "assistant", "content": "b"}]
        await service.add(messages, "u1")
        assert seen["body"]["messages"] == messages
        assert "metadata" not in seen["body"]

    @pytest.mark.asyncio
    async def test_search_normalises_results(self):
        def handler(request: httpx.Request):
            assert request.url.path == "/v1/memories/search/"
            return httpx.Response(200, json={"results": [{"memory": "x"}, {"memory": "y"}, {"memory": "z"}]})

        results = await mem0_with(handler).search("u1", "query", limit=2)
        assert results == [{"memory": "x"}, {"memory": "y"}]

    @pytest.mark.asyncio
    async def test_get_all(self):
        def handler(request: httpx.Request):
            assert request.method == "GET"
            assert request.url.params["user_id"] == "u1"
            return httpx.Response(200, json=[{"memory": "x"}])

        assert await mem0_with(handler).get_all("u1") == [{"memory": "x"}]

    @pytest.mark.asyncio
    async def test_server_error_retried(self):
        calls = []

        def handler(request: httpx.Request):
            calls.append(1)
            if len(calls) == 1:
                return httpx.Response(503)
            return httpx.Response(200, json=[])

        assert await mem0_with(handler).search("u1", "q") == []
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self):
        calls = []

        def handler(request: httpx.Request):
            calls.append(1)
            return httpx.Response(401, json={"detail": "bad token"})

        with pytest.raises(Mem0Error):
            await mem0_with(handler).search("u1", "q")
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_add_retried_once_through_writer(self):
        calls = []

        def handler(request: httpx.Request):
            calls.append(1)
            return httpx.Response(503)

        service = mem0_with(handler)
        ok = await TurnWriter(retry_delay=0).run(lambda: service.add("x", "u1"))

        assert ok is False
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_missing_key(self):
        service = Mem0Service(api_key="")
        assert service.configured is False
        with pytest.raises(Mem0Error):
            await service.add("x", "u1")


class TestOpenAIService:
    def test_system_prompt_lists_memories(self):
        prompt = build_system_prompt([{"memory": "Likes tea"}, {"memory": "Lives by the sea"}])
        assert "User Memories:\n- Likes tea\n- Lives by the sea" in prompt

    def test_system_prompt_without_memories(self):
        assert NO_MEMORIES_TEXT in build_system_prompt([])

    @pytest.mark.asyncio
    async def test_generate_contextual_response(self):
        service = OpenAIService(api_key="sk-test")
        completion = Mock()
        completion.choices = [Mock(message=Mock(content="  Hello again.  "))]
        service.client = Mock()
        service.client.chat.completions.create = AsyncMock(return_value=completion)

        reply = await service.generate_contextual_response("hi", [{"memory": "Likes tea"}])

        assert reply == "Hello again."
        kwargs = service.client.chat.completions.create.await_args.kwargs
        assert kwargs["messages"][0]["role"] == "system"
        assert "- Likes tea" in kwargs["messages"][0]["content"]
        assert kwargs["messages"][1] == {"role": "user", "content": "hi"}
        assert kwargs["temperature"] == 0.7

    @pytest.mark.asyncio
    async def test_unconfigured(self):
        service = OpenAIService(api_key="")
        assert service.configured is False
        with pytest.raises(RuntimeError):
            await service.generate_contextual_response("hi", [])


class TestElevenLabsSignature:
    SECRET = "whsec_test"

    def _header(self, body: bytes, ts: int, secret: str = SECRET) -> str:
        mac = hmac.new(secret.encode(), f"{ts}.".encode() + body, hashlib.sha256).hexdigest()
        return f"t={ts},v0={mac}"

    def _service(self, secret=SECRET):
        return ElevenLabsService(api_key="", agent_id="agent_test", webhook_secret=secret)

    def test_valid(self):
        body = b'{"data": {}}'
        assert self._service().verify_webhook_signature(
            raw_body=body, signature_header=self._header(body, int(time.time()))
        )

    def test_wrong_secret(self):
        body = b'{"data": {}}'
        assert not self._service().verify_webhook_signature(
            raw_body=body, signature_header=self._header(body, int(time.time()), "other")
        )

    def test_tampered_body(self):
        header = self._header(b'{"a": 1}', int(time.time()))
        assert not self._service().verify_webhook_signature(raw_body=b'{"a": 2}', signature_header=header)

    def test_expired_timestamp(self):
        body = b"{}"
        old = int(time.time()) - 3 * 60 * 60
        assert not self._service().verify_webhook_signature(raw_body=body, signature_header=self._header(body, old))

    @pytest.mark.parametrize("header", [None, "", "garbage", "t=abc,v0=123", "v0=abc"])
    def test_malformed_header(self, header):
        assert not self._service().verify_webhook_signature(raw_body=b"{}", signature_header=header)

    def test_no_secret(self):
        service = self._service(secret="")
        assert service.webhook_security_enabled is False
        assert not service.verify_webhook_signature(raw_body=b"{}", signature_header="t=1,v0=x")


class TestElevenLabsSignedUrl:
    @pytest.mark.asyncio
    async def test_signed_url(self):
        def handler(request: httpx.Request):
            assert request.headers["xi-api-key"] == "xi-test"
            assert request.url.params["agent_id"] == "agent_test"
            return httpx.Response(200, json={"signed_url": "wss://example/convai?token=abc"})

        service = ElevenLabsService(api_key="xi-test", agent_id="agent_test", webhook_secret="")
        service._http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        assert await service.get_signed_url() == "wss://example/convai?token=abc"
        await service.aclose()

    @pytest.mark.asyncio
    async def test_without_api_key(self):
        service = ElevenLabsService(api_key="", agent_id="agent_test", webhook_secret="")
        assert await service.get_signed_url() is None

    @pytest.mark.asyncio
    async def test_client_error(self):
        service = ElevenLabsService(api_key="xi-test", agent_id="agent_test", webhook_secret="")
        service._http = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(404)))
        assert await service.get_signed_url() is None


class TestRetry:
    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self):
        attempts = []

        @async_retry(max_attempts=3, initial_delay=0, jitter=False)
        async def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise httpx.ConnectError("down")
            return "ok"

        assert await flaky() == "ok"
        assert len(attempts) == 3

    @pytest.mark.asyncio
    async def test_exhausted(self):
        @async_retry(max_attempts=2, initial_delay=0)
        async def always_down():
            raise httpx.ReadTimeout("slow")

        with pytest.raises(RetryError) as exc:
            await always_down()
        assert exc.value.attempts == 2
        assert isinstance(exc.value.last_exception, httpx.ReadTimeout)

    @pytest.mark.asyncio
    async def test_non_retryable_raised_immediately(self):
        attempts = []

        @async_retry(max_attempts=3)
        async def broken():
            attempts.append(1)
            raise ValueError("bad input")

        with pytest.raises(ValueError):
            await broken()
        assert len(attempts) == 1

    def test_rate_limit_response(self):
        response = httpx.Response(429, headers={"Retry-After": "7"})
        with pytest.raises(RateLimitError) as exc:
            check_rate_limit_response(response)
        assert exc.value.retry_after == 7.0

    def test_ok_response_passes(self):
        check_rate_limit_response(httpx.Response(200))
