"""
WordMatch Server — aiohttp application serving vocabulary over the channel.

Routes (all below ``/api``):
- ``GET  /publicKey``                                    server RSA public key
- ``GET  /units``                                        volumes and units
- ``POST /secure/vocabulary/{volume}/{unit}``            whole unit, encrypted
- ``POST /secure/vocabulary/{volume}/{unit}/count/{n}``  random n entries

``create_app`` is the composition root: it builds the one
KeyAgreementService and VocabularyStore of the process and attaches them
to the application.
"""
import asyncio
import logging
from typing import Any, Optional

import orjson
from aiohttp import web

from .channel.config import ServerConfig
from .channel.crypto import encrypt
from .channel.key_agreement import KeyAgreementService
from .exceptions import ChannelError, InvalidRequest, InvalidWrappedKey
from .vocabulary import VocabularyStore, serialize

logger = logging.getLogger("wordmatch.server")

API_PREFIX = "/api"

KEY_SERVICE = web.AppKey("key_service", KeyAgreementService)
VOCABULARY = web.AppKey("vocabulary", VocabularyStore)


def _dumps(obj: Any) -> str:
    return orjson.dumps(obj).decode("utf-8")


def json_response(data: Any, status: int = 200) -> web.Response:
    return web.json_response(data, status=status, dumps=_dumps)


# ---------------------------------------------------------------------------
# Middlewares
# ---------------------------------------------------------------------------

_CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}


@web.middleware
async def cors_middleware(request: web.Request, handler) -> web.StreamResponse:
    """Allow browser clients from any origin."""
    if request.method == "OPTIONS":
        return web.Response(status=204, headers=_CORS_HEADERS)
    try:
        response = await handler(request)
    except web.HTTPException as exc:
        exc.headers.update(_CORS_HEADERS)
        raise
    response.headers.update(_CORS_HEADERS)
    return response


@web.middleware
async def error_middleware(request: web.Request, handler) -> web.StreamResponse:
    """Render every error response as ``{"error": ...}``."""
    try:
        return await handler(request)
    except web.HTTPException as exc:
        if exc.status < 400:
            raise
        response = json_response({"error": exc.reason}, status=exc.status)
        if "Allow" in exc.headers:
            response.headers["Allow"] = exc.headers["Allow"]
        return response
    except ChannelError as err:
        if err.http_status >= 500:
            logger.error("%s %s failed: %s", request.method, request.path, err)
        else:
            logger.warning(
                "%s %s rejected (%d): %s",
                request.method, request.path, err.http_status, err,
            )
        return json_response({"error": err.message}, status=err.http_status)
    except Exception:
        logger.exception("Unexpected error on %s %s", request.method, request.path)
        return json_response(
            {"error": "Failed to get vocabulary data"}, status=500,
        )


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------

async def get_public_key(request: web.Request) -> web.Response:
    return json_response({"publicKey": request.app[KEY_SERVICE].public_key})


async def get_units(request: web.Request) -> web.Response:
    try:
        units = await asyncio.to_thread(request.app[VOCABULARY].list_units)
    except OSError as err:
        logger.error("Error reading vocabulary directory: %s", err)
        return json_response(
            {"error": "Failed to get volumes and units"}, status=500,
        )
    return json_response(units)


async def _read_wrapped_key(request: web.Request) -> str:
    """Pull ``encryptedAesKey`` out of the JSON request body."""
    body = await request.read()
    try:
        data = orjson.loads(body) if body else {}
    except orjson.JSONDecodeError as err:
        raise InvalidRequest("Request body must be JSON") from err
    wrapped = data.get("encryptedAesKey") if isinstance(data, dict) else None
    if not wrapped or not isinstance(wrapped, str):
        raise InvalidWrappedKey("Missing encrypted AES key")
    return wrapped


def _sealed(entries: Any, session_key: bytes) -> web.Response:
    envelope = encrypt(serialize(entries), session_key)
    return json_response(envelope.to_wire())


async def secure_vocabulary(request: web.Request) -> web.Response:
    volume = request.match_info["volume"]
    unit = request.match_info["unit"]
    wrapped = await _read_wrapped_key(request)
    session_key = request.app[KEY_SERVICE].unwrap_session_key(wrapped)
    logger.debug("Session key unwrapped for volume=%s unit=%s", volume, unit)
    entries = await asyncio.to_thread(
        request.app[VOCABULARY].load, volume, unit,
    )
    return _sealed(entries, session_key)


async def secure_vocabulary_count(request: web.Request) -> web.Response:
    volume = request.match_info["volume"]
    unit = request.match_info["unit"]
    try:
        count = int(request.match_info["count"])
    except ValueError:
        raise InvalidRequest("Invalid count parameter") from None
    if count < 1:
        raise InvalidRequest("Invalid count parameter")
    wrapped = await _read_wrapped_key(request)
    session_key = request.app[KEY_SERVICE].unwrap_session_key(wrapped)
    logger.debug(
        "Session key unwrapped for volume=%s unit=%s count=%d",
        volume, unit, count,
    )
    entries = await asyncio.to_thread(
        request.app[VOCABULARY].sample, volume, unit, count,
    )
    return _sealed(entries, session_key)


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------

def create_app(
    config: Optional[ServerConfig] = None,
    key_service: Optional[KeyAgreementService] = None,
    store: Optional[VocabularyStore] = None,
) -> web.Application:
    """Build the aiohttp application.

    Args:
        config: Server settings; read from the environment when omitted.
        key_service: Prebuilt key service (tests); built from config otherwise.
        store: Prebuilt vocabulary store; built from config otherwise.

    Returns:
        Configured web.Application.
    """
    if key_service is None or store is None:
        config = config or ServerConfig.from_env()
    app = web.Application(middlewares=[cors_middleware, error_middleware])
    app[KEY_SERVICE] = key_service or KeyAgreementService.from_config(config)
    app[VOCABULARY] = store or VocabularyStore(config.vocabulary_path)
    app.router.add_get(f"{API_PREFIX}/publicKey", get_public_key)
    app.router.add_get(f"{API_PREFIX}/units", get_units)
    app.router.add_post(
        f"{API_PREFIX}/secure/vocabulary/{{volume}}/{{unit}}",
        secure_vocabulary,
    )
    app.router.add_post(
        f"{API_PREFIX}/secure/vocabulary/{{volume}}/{{unit}}/count/{{count}}",
        secure_vocabulary_count,
    )
    return app


def run(config: Optional[ServerConfig] = None) -> None:
    """Serve the application until interrupted."""
    config = config or ServerConfig.from_env()
    app = create_app(config)
    logger.info("Server running on %s:%d", config.host, config.port)
    web.run_app(app, host=config.host, port=config.port, print=None)
