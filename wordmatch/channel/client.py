"""
SecureChannelClient — client half of the secure vocabulary channel.

Request lifecycle:
- ``ensure_initialized()`` fetches the server public key once per client
- ``request_payload(resource)`` wraps a fresh session key, posts it,
  validates the envelope, decrypts, verifies the plaintext hash

Only verified plaintext is ever returned. There is no retry logic here;
callers decide whether and when to try again.

Security Note:
    Session keys live only for the duration of ``request_payload``.
    Never log plaintext, ciphertext or key material.
"""
import asyncio
import logging
from typing import Any, Optional, Union

import aiohttp
import orjson
from cryptography.hazmat.primitives.asymmetric import rsa

from ..exceptions import (
    ChannelTimeout,
    IntegrityViolation,
    InvalidRequest,
    KeyAgreementUnavailable,
    ProtocolError,
    ResourceNotFound,
    TransportError,
)
from .config import ClientConfig
from .crypto import EncryptedEnvelope, decrypt, generate_session_key, verify_integrity
from .key_agreement import load_public_key, wrap_session_key

logger = logging.getLogger("wordmatch.channel")


def _error_message(body: bytes, default: str) -> str:
    """Extract ``{"error": ...}`` from an error body, if present."""
    try:
        data = orjson.loads(body)
    except orjson.JSONDecodeError:
        return default
    if isinstance(data, dict) and isinstance(data.get("error"), str):
        return data["error"]
    return default


def unit_locator(volume: Union[int, str], unit: Union[int, str], count: Optional[int] = None) -> str:
    """Build the resource locator for a vocabulary unit.

    ``Welcome_Unit`` is sent as ``welcome``.
    """
    unit = str(unit)
    if unit.lower() in ("welcome_unit", "welcome"):
        unit = "welcome"
    locator = f"vocabulary/{volume}/{unit}"
    if count:
        locator = f"{locator}/count/{count}"
    return locator


class SecureChannelClient:
    """Fetches payloads from the server over the hybrid RSA/AES-GCM channel.

    The public key is fetched lazily and cached for the lifetime of the
    client. Concurrent first callers share one in-flight fetch.

    Args:
        base_url: API root, e.g. ``http://localhost:8080/api``.
        session: Optional aiohttp session; one is created (and closed by
            ``close()``) when omitted.
        timeout: Default per-operation timeout in seconds.
        padding_scheme: RSA padding for wrapping session keys.
    """

    def __init__(
        self,
        base_url: str,
        session: Optional[aiohttp.ClientSession] = None,
        timeout: float = 10.0,
        padding_scheme: str = "pkcs1v15",
    ):
        self.base_url = base_url.rstrip("/")
        self._session = session
        self._owns_session = session is None
        self._timeout = timeout
        self._padding_scheme = padding_scheme
        self._public_key: Optional[rsa.RSAPublicKey] = None
        self._init_task: Optional[asyncio.Task] = None

    @classmethod
    def from_config(
        cls,
        config: ClientConfig,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> "SecureChannelClient":
        return cls(
            config.api_base_url,
            session=session,
            timeout=config.timeout,
            padding_scheme=config.rsa_padding,
        )

    async def __aenter__(self) -> "SecureChannelClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        return self._session

    def _resolve_timeout(self, timeout: Optional[float]) -> float:
        if timeout is None:
            return self._timeout
        if timeout <= 0:
            raise ValueError(f"timeout must be positive, got {timeout}")
        return timeout

    def _client_timeout(self, timeout: Optional[float]) -> aiohttp.ClientTimeout:
        return aiohttp.ClientTimeout(total=self._resolve_timeout(timeout))

    @property
    def is_initialized(self) -> bool:
        return self._public_key is not None

    # ------------------------------------------------------------------
    # Key agreement
    # ------------------------------------------------------------------

    async def _fetch_public_key(self, timeout: Optional[float]) -> rsa.RSAPublicKey:
        url = f"{self.base_url}/publicKey"
        try:
            async with self._get_session().get(
                url, timeout=self._client_timeout(timeout),
            ) as resp:
                status = resp.status
                body = await resp.read()
        except asyncio.TimeoutError as err:
            raise KeyAgreementUnavailable(
                f"Timed out fetching server public key from {url}"
            ) from err
        except aiohttp.ClientError as err:
            raise KeyAgreementUnavailable(
                f"Server public key unreachable at {url}: {err}"
            ) from err

        if status != 200:
            raise KeyAgreementUnavailable(
                f"Public key endpoint returned HTTP {status}"
            )
        try:
            data = orjson.loads(body)
        except orjson.JSONDecodeError as err:
            raise KeyAgreementUnavailable(
                "Public key response is not valid JSON"
            ) from err
        pem = data.get("publicKey") if isinstance(data, dict) else None
        if not pem or not isinstance(pem, str):
            raise KeyAgreementUnavailable("Server returned no public key")
        try:
            public_key = load_public_key(pem)
        except ValueError as err:
            raise KeyAgreementUnavailable(
                "Server public key could not be parsed"
            ) from err
        logger.info("Server public key fetched (%d bits)", public_key.key_size)
        return public_key

    async def ensure_initialized(self, timeout: Optional[float] = None) -> None:
        """Fetch and cache the server public key on first use.

        Idempotent once it succeeds. Concurrent callers share one fetch,
        but each waits at most its own timeout. A failed fetch is not
        cached: the error propagates to every waiting caller and the next
        call starts a new fetch, even when no caller was left waiting.

        Raises:
            KeyAgreementUnavailable: If the key endpoint is unreachable,
                times out, or returns no usable key.
        """
        if self._public_key is not None:
            return
        timeout = self._resolve_timeout(timeout)
        if self._init_task is None:
            task = asyncio.ensure_future(self._fetch_public_key(timeout))
            task.add_done_callback(self._init_done)
            self._init_task = task
        try:
            # shield: a cancelled or timed out waiter must not cancel the shared fetch
            public_key = await asyncio.wait_for(
                asyncio.shield(self._init_task), timeout,
            )
        except asyncio.TimeoutError as err:
            raise KeyAgreementUnavailable(
                f"Timed out after {timeout}s waiting for server public key"
            ) from err
        self._public_key = public_key

    def _init_done(self, task: asyncio.Task) -> None:
        """Settle a finished key fetch whether or not anyone awaits it."""
        if self._init_task is task:
            self._init_task = None
        if task.cancelled():
            return
        err = task.exception()
        if err is None:
            self._public_key = task.result()
        else:
            logger.warning("Server public key fetch failed: %s", err)

    # ------------------------------------------------------------------
    # Payload requests
    # ------------------------------------------------------------------

    async def request_payload(self, resource: str, timeout: Optional[float] = None) -> bytes:
        """Fetch one resource through the secure channel.

        Args:
            resource: Locator below ``/secure/``, e.g. ``vocabulary/1/welcome``.
            timeout: Overrides the default timeout for this request.

        Returns:
            Plaintext bytes whose GCM tag and SHA-256 hash both verified.

        Raises:
            KeyAgreementUnavailable: If the public key cannot be obtained.
            ResourceNotFound: On HTTP 404.
            InvalidRequest: On HTTP 400 (rejected key or parameters).
            ChannelTimeout: If the request exceeds its timeout.
            TransportError: On connection failures or other HTTP errors.
            ProtocolError: If the response is not a well-formed envelope.
            IntegrityViolation: If the tag (``AuthenticationFailed``) or
                the hash does not verify.
            ValueError: If ``timeout`` is not positive.
        """
        await self.ensure_initialized(timeout)
        session_key = generate_session_key()
        wrapped = wrap_session_key(
            session_key, self._public_key, self._padding_scheme,
        )
        url = f"{self.base_url}/secure/{resource.lstrip('/')}"
        try:
            async with self._get_session().post(
                url,
                data=orjson.dumps({"encryptedAesKey": wrapped}),
                headers={"Content-Type": "application/json"},
                timeout=self._client_timeout(timeout),
            ) as resp:
                status = resp.status
                body = await resp.read()
        except asyncio.TimeoutError as err:
            raise ChannelTimeout(f"Request to {url} timed out") from err
        except aiohttp.ClientError as err:
            raise TransportError(f"Request to {url} failed: {err}") from err

        if status == 404:
            raise ResourceNotFound(_error_message(body, f"{resource} not found"))
        if status == 400:
            raise InvalidRequest(_error_message(body, "Request rejected"))
        if status != 200:
            raise TransportError(
                _error_message(body, f"Unexpected HTTP {status}"), status=status,
            )

        envelope = EncryptedEnvelope.parse(body)
        plaintext = decrypt(envelope, session_key)
        if not verify_integrity(plaintext, envelope.digest):
            logger.error("Data integrity check failed for %s", resource)
            raise IntegrityViolation("Data integrity check failed")
        return plaintext

    async def request_json(self, resource: str, timeout: Optional[float] = None) -> Any:
        """``request_payload`` followed by JSON decoding."""
        plaintext = await self.request_payload(resource, timeout)
        try:
            return orjson.loads(plaintext)
        except orjson.JSONDecodeError as err:
            raise ProtocolError("Decrypted payload is not valid JSON") from err

    async def fetch_vocabulary(
        self,
        volume: Union[int, str],
        unit: Union[int, str],
        count: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> list[Any]:
        """Fetch the entries of a vocabulary unit, optionally sampled.

        Raises:
            ProtocolError: If the decrypted payload is not a JSON array.
        """
        entries = await self.request_json(unit_locator(volume, unit, count), timeout)
        if not isinstance(entries, list):
            raise ProtocolError("Vocabulary payload is not a JSON array")
        return entries

    async def get_units(self, timeout: Optional[float] = None) -> dict[str, list[str]]:
        """List volumes and units. This endpoint is not encrypted."""
        url = f"{self.base_url}/units"
        try:
            async with self._get_session().get(
                url, timeout=self._client_timeout(timeout),
            ) as resp:
                status = resp.status
                body = await resp.read()
        except asyncio.TimeoutError as err:
            raise ChannelTimeout(f"Request to {url} timed out") from err
        except aiohttp.ClientError as err:
            raise TransportError(f"Request to {url} failed: {err}") from err
        if status != 200:
            raise TransportError(
                _error_message(body, "Unable to load available units"), status=status,
            )
        try:
            units = orjson.loads(body)
        except orjson.JSONDecodeError as err:
            raise ProtocolError("Units response is not valid JSON") from err
        if not isinstance(units, dict):
            raise ProtocolError("Units response is not a JSON object")
        return units
