"""
Tests for SecureChannelClient against real and misbehaving servers.

Tests cover:
- End-to-end vocabulary fetches
- One-time, shared public key initialization
- Error mapping (404, 400, 5xx, timeouts, unreachable server)
- Rejection of tampered or malformed envelopes
"""
import asyncio
import base64

import orjson
import pytest
from aiohttp import web
from aiohttp.test_utils import unused_port

from wordmatch.channel.client import SecureChannelClient, unit_locator
from wordmatch.channel.config import ClientConfig
from wordmatch.channel.crypto import encrypt
from wordmatch.exceptions import (
    AuthenticationFailed,
    ChannelTimeout,
    IntegrityViolation,
    InvalidRequest,
    KeyAgreementUnavailable,
    ProtocolError,
    ResourceNotFound,
    TransportError,
)


def _envelope_server(key_service, mutate=None, status=200, delay=0.0):
    """App whose secure endpoint seals b'["ok"]' and lets a test corrupt it."""
    async def public_key(request):
        return web.json_response({"publicKey": key_service.public_key})

    async def secure(request):
        if delay:
            await asyncio.sleep(delay)
        body = await request.json()
        session_key = key_service.unwrap_session_key(body["encryptedAesKey"])
        wire = encrypt(b'["ok"]', session_key).to_wire()
        if mutate is not None:
            wire = mutate(wire)
        return web.json_response(wire, status=status)

    app = web.Application()
    app.router.add_get("/api/publicKey", public_key)
    app.router.add_post("/api/secure/{tail:.*}", secure)
    return app


async def _channel_for(aiohttp_client, app, **kwargs):
    client = await aiohttp_client(app)
    return SecureChannelClient(
        str(client.make_url("/api")), session=client.session, **kwargs
    )


class TestUnitLocator:
    """Tests for unit_locator."""

    def test_welcome_alias(self):
        assert unit_locator(1, "Welcome_Unit") == "vocabulary/1/welcome"

    def test_count(self):
        assert unit_locator(2, 3, count=10) == "vocabulary/2/3/count/10"


class TestFetchVocabulary:
    """End-to-end tests against the real application."""

    async def test_whole_unit(self, channel, welcome_unit):
        assert await channel.fetch_vocabulary(1, "Welcome_Unit") == welcome_unit

    async def test_sampled_unit(self, channel, unit_one):
        entries = await channel.fetch_vocabulary(1, 1, count=3)
        assert len(entries) == 3
        assert all(entry in unit_one for entry in entries)

    async def test_request_payload_bytes(self, channel):
        plaintext = await channel.request_payload("vocabulary/2/2")
        assert orjson.loads(plaintext) == [
            {"word": "word0", "explanation": [{"meaning": "词0"}]}
        ]

    async def test_not_found(self, channel):
        with pytest.raises(ResourceNotFound) as exc:
            await channel.fetch_vocabulary(7, 1)
        assert "Volume 7 Unit 1 not found" in str(exc.value)

    async def test_bad_count_is_client_error(self, channel):
        with pytest.raises(InvalidRequest):
            await channel.request_payload("vocabulary/1/1/count/abc")

    async def test_get_units(self, channel):
        assert await channel.get_units() == {"1": ["welcome", "1"], "2": ["2", "10"]}

    async def test_from_config(self, client):
        config = ClientConfig(api_base_url=str(client.make_url("/api")), timeout=5)
        channel = SecureChannelClient.from_config(config, session=client.session)
        assert await channel.fetch_vocabulary(2, 10, count=1)


class TestEnsureInitialized:
    """Tests for the one-time public key fetch."""

    async def test_concurrent_first_calls_fetch_once(self, aiohttp_client, key_service):
        """Test two concurrent first calls trigger exactly one fetch."""
        calls = []

        async def public_key(request):
            calls.append(request.path)
            await asyncio.sleep(0.05)
            return web.json_response({"publicKey": key_service.public_key})

        app = web.Application()
        app.router.add_get("/api/publicKey", public_key)
        channel = await _channel_for(aiohttp_client, app)

        await asyncio.gather(channel.ensure_initialized(), channel.ensure_initialized())
        assert len(calls) == 1
        assert channel.is_initialized

        await channel.ensure_initialized()
        assert len(calls) == 1

    async def test_cancelled_waiter_does_not_cancel_fetch(self, aiohttp_client, key_service):
        calls = []

        async def public_key(request):
            calls.append(request.path)
            await asyncio.sleep(0.1)
            return web.json_response({"publicKey": key_service.public_key})

        app = web.Application()
        app.router.add_get("/api/publicKey", public_key)
        channel = await _channel_for(aiohttp_client, app)

        first = asyncio.ensure_future(channel.ensure_initialized())
        second = asyncio.ensure_future(channel.ensure_initialized())
        await asyncio.sleep(0.02)
        first.cancel()
        await second
        with pytest.raises(asyncio.CancelledError):
            await first
        assert channel.is_initialized
        assert len(calls) == 1

    async def test_failure_propagates_and_next_call_retries(self, aiohttp_client, key_service):
        calls = []

        async def public_key(request):
            calls.append(request.path)
            if len(calls) == 1:
                return web.json_response({"error": "boom"}, status=500)
            return web.json_response({"publicKey": key_service.public_key})

        app = web.Application()
        app.router.add_get("/api/publicKey", public_key)
        channel = await _channel_for(aiohttp_client, app)

        with pytest.raises(KeyAgreementUnavailable):
            await channel.ensure_initialized()
        assert not channel.is_initialized
        await channel.ensure_initialized()
        assert channel.is_initialized
        assert len(calls) == 2

    @pytest.mark.parametrize("body", [
        {},
        {"publicKey": ""},
        {"publicKey": 42},
        {"publicKey": "-----BEGIN PUBLIC KEY-----\ngarbage\n-----END PUBLIC KEY-----\n"},
        ["publicKey"],
    ])
    async def test_unusable_key_response(self, aiohttp_client, body):
        async def public_key(request):
            return web.json_response(body)

        app = web.Application()
        app.router.add_get("/api/publicKey", public_key)
        channel = await _channel_for(aiohttp_client, app)
        with pytest.raises(KeyAgreementUnavailable):
            await channel.request_payload("vocabulary/1/1")

    async def test_unreachable_server(self):
        channel = SecureChannelClient(f"http://127.0.0.1:{unused_port()}/api", timeout=2)
        async with channel:
            with pytest.raises(KeyAgreementUnavailable):
                await channel.ensure_initialized()

    async def test_key_fetch_timeout(self, aiohttp_client, key_service):
        async def public_key(request):
            await asyncio.sleep(1)
            return web.json_response({"publicKey": key_service.public_key})

        app = web.Application()
        app.router.add_get("/api/publicKey", public_key)
        channel = await _channel_for(aiohttp_client, app, timeout=0.1)
        with pytest.raises(KeyAgreementUnavailable):
            await channel.ensure_initialized()

    async def test_joining_caller_keeps_its_own_timeout(self, aiohttp_client, key_service):
        """Test a caller joining an in-flight fetch gives up at its own timeout."""
        calls = []

        async def public_key(request):
            calls.append(request.path)
            await asyncio.sleep(0.5)
            return web.json_response({"publicKey": key_service.public_key})

        app = web.Application()
        app.router.add_get("/api/publicKey", public_key)
        channel = await _channel_for(aiohttp_client, app)

        first = asyncio.ensure_future(channel.ensure_initialized(timeout=5))
        await asyncio.sleep(0.02)
        loop = asyncio.get_running_loop()
        started = loop.time()
        with pytest.raises(KeyAgreementUnavailable):
            await channel.ensure_initialized(timeout=0.05)
        assert loop.time() - started < 0.4

        await first
        assert channel.is_initialized
        assert len(calls) == 1

    async def test_failure_after_all_waiters_cancelled(self, aiohttp_client, key_service):
        """Test a fetch that fails with nobody waiting is not reused."""
        calls = []

        async def public_key(request):
            calls.append(request.path)
            if len(calls) == 1:
                await asyncio.sleep(0.05)
                return web.json_response({"error": "boom"}, status=500)
            return web.json_response({"publicKey": key_service.public_key})

        app = web.Application()
        app.router.add_get("/api/publicKey", public_key)
        channel = await _channel_for(aiohttp_client, app)

        waiter = asyncio.ensure_future(channel.ensure_initialized())
        await asyncio.sleep(0.01)
        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter
        await asyncio.sleep(0.2)

        await channel.ensure_initialized()
        assert channel.is_initialized
        assert len(calls) == 2

    async def test_fetch_succeeding_with_nobody_waiting(self, aiohttp_client, key_service):
        async def public_key(request):
            await asyncio.sleep(0.05)
            return web.json_response({"publicKey": key_service.public_key})

        app = web.Application()
        app.router.add_get("/api/publicKey", public_key)
        channel = await _channel_for(aiohttp_client, app)

        waiter = asyncio.ensure_future(channel.ensure_initialized())
        await asyncio.sleep(0.01)
        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter
        await asyncio.sleep(0.2)
        assert channel.is_initialized

    @pytest.mark.parametrize("timeout", [0, -1])
    async def test_non_positive_timeout(self, channel, timeout):
        with pytest.raises(ValueError):
            await channel.ensure_initialized(timeout=timeout)
        with pytest.raises(ValueError):
            await channel.request_payload("vocabulary/1/1", timeout=timeout)
        assert not channel.is_initialized


class TestResponseValidation:
    """Tests that only verified plaintext reaches the caller."""

    async def test_untouched_envelope(self, aiohttp_client, key_service):
        channel = await _channel_for(aiohttp_client, _envelope_server(key_service))
        assert await channel.request_json("anything") == ["ok"]

    async def test_tampered_ciphertext(self, aiohttp_client, key_service):
        def mutate(wire):
            raw = bytearray(base64.b64decode(wire["encryptedData"]))
            raw[0] ^= 0x01
            wire["encryptedData"] = base64.b64encode(bytes(raw)).decode()
            return wire

        channel = await _channel_for(
            aiohttp_client, _envelope_server(key_service, mutate),
        )
        with pytest.raises(AuthenticationFailed):
            await channel.request_payload("anything")

    async def test_hash_mismatch(self, aiohttp_client, key_service):
        """Test a valid ciphertext with a foreign hash is rejected."""
        def mutate(wire):
            wire["hash"] = encrypt(b"other", b"\x00" * 32).digest
            return wire

        channel = await _channel_for(
            aiohttp_client, _envelope_server(key_service, mutate),
        )
        with pytest.raises(IntegrityViolation) as exc:
            await channel.request_payload("anything")
        assert not isinstance(exc.value, AuthenticationFailed)

    @pytest.mark.parametrize("field", ["encryptedData", "iv", "authTag", "hash"])
    async def test_missing_field(self, aiohttp_client, key_service, field):
        def mutate(wire):
            del wire[field]
            return wire

        channel = await _channel_for(
            aiohttp_client, _envelope_server(key_service, mutate),
        )
        with pytest.raises(ProtocolError):
            await channel.request_payload("anything")

    async def test_wrong_nonce_length(self, aiohttp_client, key_service):
        def mutate(wire):
            wire["iv"] = base64.b64encode(b"\x00" * 12).decode()
            return wire

        channel = await _channel_for(
            aiohttp_client, _envelope_server(key_service, mutate),
        )
        with pytest.raises(ProtocolError):
            await channel.request_payload("anything")

    async def test_server_error(self, aiohttp_client, key_service):
        def mutate(wire):
            return {"error": "Failed to get vocabulary data"}

        channel = await _channel_for(
            aiohttp_client, _envelope_server(key_service, mutate, status=500),
        )
        with pytest.raises(TransportError) as exc:
            await channel.request_payload("anything")
        assert exc.value.status == 500
        assert "Failed to get vocabulary data" in str(exc.value)

    async def test_request_timeout(self, aiohttp_client, key_service):
        channel = await _channel_for(
            aiohttp_client, _envelope_server(key_service, delay=1.0), timeout=5,
        )
        await channel.ensure_initialized()
        with pytest.raises(ChannelTimeout):
            await channel.request_payload("anything", timeout=0.1)

    async def test_non_json_payload(self, aiohttp_client, key_service):
        async def public_key(request):
            return web.json_response({"publicKey": key_service.public_key})

        async def secure(request):
            body = await request.json()
            session_key = key_service.unwrap_session_key(body["encryptedAesKey"])
            return web.json_response(encrypt(b"plain text", session_key).to_wire())

        app = web.Application()
        app.router.add_get("/api/publicKey", public_key)
        app.router.add_post("/api/secure/{tail:.*}", secure)
        channel = await _channel_for(aiohttp_client, app)
        assert await channel.request_payload("x") == b"plain text"
        with pytest.raises(ProtocolError):
            await channel.request_json("x")
