"""
Payload Cipher — authenticated encryption of channel payloads.

Each payload is sealed with AES-256-GCM under a one-time session key:
- random 16-byte nonce per envelope
- 128-bit tag carried apart from the ciphertext (``authTag``)
- SHA-256 of the plaintext carried as ``hash`` for a second,
  cipher-independent integrity check after decryption

Security Note:
    Never log plaintext, ciphertext or session key values.
    A session key must never seal more than one request's payload.
"""
import base64
import binascii
import hashlib
import hmac
import os
import logging
from typing import Any, Union

import orjson
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictStr,
    ValidationError,
    field_validator,
)

from ..exceptions import AuthenticationFailed, ProtocolError

logger = logging.getLogger("wordmatch.channel")

NONCE_SIZE = 16  # 128-bit nonce, as sent by the browser client
TAG_SIZE = 16  # 128-bit GCM tag
KEY_LENGTH = 32  # AES-256
DIGEST_SIZE = 32  # SHA-256


def _b64decode(value: str, name: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as err:
        raise ValueError(f"{name} is not valid base64") from err


def _b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


class EncryptedEnvelope(BaseModel):
    """Wire envelope for one encrypted payload.

    Field names follow the JSON body (``encryptedData``, ``iv``,
    ``authTag``, ``hash``); Python attribute names are snake_case.
    Only the JSON names are accepted when validating.
    """

    model_config = ConfigDict(frozen=True)

    ciphertext: StrictStr = Field(alias="encryptedData")
    iv: StrictStr
    auth_tag: StrictStr = Field(alias="authTag")
    digest: StrictStr = Field(alias="hash")

    @field_validator("ciphertext")
    @classmethod
    def validate_ciphertext(cls, v: str) -> str:
        _b64decode(v, "encryptedData")
        return v

    @field_validator("iv")
    @classmethod
    def validate_iv(cls, v: str) -> str:
        raw = _b64decode(v, "iv")
        if len(raw) != NONCE_SIZE:
            raise ValueError(
                f"iv must decode to {NONCE_SIZE} bytes, got {len(raw)}"
            )
        return v

    @field_validator("auth_tag")
    @classmethod
    def validate_auth_tag(cls, v: str) -> str:
        raw = _b64decode(v, "authTag")
        if len(raw) != TAG_SIZE:
            raise ValueError(
                f"authTag must decode to {TAG_SIZE} bytes, got {len(raw)}"
            )
        return v

    @field_validator("digest")
    @classmethod
    def validate_digest(cls, v: str) -> str:
        raw = _b64decode(v, "hash")
        if len(raw) != DIGEST_SIZE:
            raise ValueError(
                f"hash must decode to {DIGEST_SIZE} bytes, got {len(raw)}"
            )
        return v

    @property
    def ciphertext_bytes(self) -> bytes:
        return base64.b64decode(self.ciphertext)

    @property
    def nonce(self) -> bytes:
        return base64.b64decode(self.iv)

    @property
    def tag(self) -> bytes:
        return base64.b64decode(self.auth_tag)

    def to_wire(self) -> dict[str, str]:
        """Return the JSON body sent to clients."""
        return self.model_dump(by_alias=True)

    @classmethod
    def parse(cls, raw: Union[bytes, str, dict[str, Any]]) -> "EncryptedEnvelope":
        """Validate a response body into an envelope.

        Args:
            raw: JSON text/bytes or an already decoded mapping.

        Returns:
            A fully validated EncryptedEnvelope.

        Raises:
            ProtocolError: If the body is not JSON, not an object, or any
                field is missing, mistyped, not base64, or of wrong length.
        """
        if isinstance(raw, (bytes, str)):
            try:
                raw = orjson.loads(raw)
            except orjson.JSONDecodeError as err:
                raise ProtocolError(f"Envelope is not valid JSON: {err}") from err
        if not isinstance(raw, dict):
            raise ProtocolError(
                f"Envelope must be a JSON object, got {type(raw).__name__}"
            )
        try:
            return cls.model_validate(raw)
        except ValidationError as err:
            fields = sorted({
                str(e["loc"][0]) for e in err.errors() if e.get("loc")
            })
            raise ProtocolError(
                f"Malformed envelope (fields: {', '.join(fields) or '?'})"
            ) from err


# ---------------------------------------------------------------------------
# Session keys
# ---------------------------------------------------------------------------

def generate_session_key() -> bytes:
    """Return a fresh random 32-byte AES-256 session key."""
    return os.urandom(KEY_LENGTH)


def _check_key(session_key: bytes) -> None:
    if len(session_key) != KEY_LENGTH:
        raise ValueError(
            f"session key must be exactly {KEY_LENGTH} bytes, "
            f"got {len(session_key)}"
        )


# ---------------------------------------------------------------------------
# Integrity hash
# ---------------------------------------------------------------------------

def content_hash(plaintext: bytes) -> str:
    """Base64-encoded SHA-256 digest of ``plaintext``."""
    return _b64encode(hashlib.sha256(plaintext).digest())


def verify_integrity(plaintext: bytes, expected_hash: str) -> bool:
    """Recompute the plaintext hash and compare it with ``expected_hash``.

    The comparison is constant-time.
    """
    return hmac.compare_digest(
        content_hash(plaintext).encode("ascii"),
        expected_hash.encode("utf-8"),
    )


# ---------------------------------------------------------------------------
# Encryption
# ---------------------------------------------------------------------------

def encrypt(plaintext: bytes, session_key: bytes) -> EncryptedEnvelope:
    """Seal ``plaintext`` under ``session_key``.

    Format: ciphertext and tag are split from the AESGCM output
    ``[ciphertext][tag 16B]`` and base64-encoded separately.

    Args:
        plaintext: Payload bytes.
        session_key: Raw 32-byte AES key.

    Returns:
        EncryptedEnvelope with a fresh nonce and the plaintext hash.
    """
    _check_key(session_key)
    nonce = os.urandom(NONCE_SIZE)
    sealed = AESGCM(session_key).encrypt(nonce, plaintext, None)
    ct, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]
    return EncryptedEnvelope(
        encryptedData=_b64encode(ct),
        iv=_b64encode(nonce),
        authTag=_b64encode(tag),
        hash=content_hash(plaintext),
    )


def decrypt(envelope: EncryptedEnvelope, session_key: bytes) -> bytes:
    """Open an envelope sealed with ``session_key``.

    Args:
        envelope: Validated envelope.
        session_key: Raw 32-byte AES key used by the sender.

    Returns:
        Decrypted plaintext bytes. The ``hash`` field is not checked here;
        see ``verify_integrity``.

    Raises:
        AuthenticationFailed: If the tag does not verify (tampered data,
            wrong key or wrong nonce).
    """
    _check_key(session_key)
    combined = envelope.ciphertext_bytes + envelope.tag
    try:
        return AESGCM(session_key).decrypt(envelope.nonce, combined, None)
    except InvalidTag as err:
        raise AuthenticationFailed(
            "Authentication tag did not verify"
        ) from err
