"""Secure Channel — hybrid RSA/AES-GCM protection of vocabulary payloads.

Security Note (Threat Model):
    Protects confidentiality and integrity of one payload per request
    between one client and one server. It does not authenticate the
    caller, rotate the server keypair, or provide forward secrecy; it is
    meant to run on top of transport security, not instead of it.
"""

from .crypto import (
    EncryptedEnvelope,
    decrypt,
    encrypt,
    generate_session_key,
    verify_integrity,
)
from .key_agreement import KeyAgreementService, wrap_session_key
from .config import ServerConfig, ClientConfig, generate_keypair_pem, write_env_keys
from .client import SecureChannelClient

__all__ = [
    "EncryptedEnvelope",
    "encrypt",
    "decrypt",
    "generate_session_key",
    "verify_integrity",
    "KeyAgreementService",
    "wrap_session_key",
    "ServerConfig",
    "ClientConfig",
    "generate_keypair_pem",
    "write_env_keys",
    "SecureChannelClient",
]
