"""
Channel Configuration — RSA key loading and validated settings.

Reads settings from environment variables:
    RSA_PRIVATE_KEY = <PEM, newlines may be escaped as \\n>
    RSA_PUBLIC_KEY = <PEM, optional, must match the private key>
    RSA_PADDING = pkcs1v15 | oaep
    HOST / PORT / VOCABULARY_PATH (server)
    API_BASE_URL / CHANNEL_TIMEOUT (client)

Security Note:
    Never log key material. Only log whether keys were configured.
"""
import os
import logging
from pathlib import Path
from typing import Optional, Union

from dotenv import set_key
from pydantic import BaseModel, Field, field_validator

from .key_agreement import (
    PADDING_SCHEMES,
    RSA_KEY_SIZE,
    generate_private_key,
    private_key_to_pem,
    public_key_to_pem,
)

logger = logging.getLogger("wordmatch.channel")


def _unescape_pem(value: Optional[str]) -> Optional[str]:
    """Turn a one-line ``.env`` PEM (``\\n`` escapes) back into PEM text."""
    if not value:
        return None
    return value.replace("\\n", "\n").strip() + "\n"


def _validate_padding(v: str) -> str:
    v = v.lower()
    if v not in PADDING_SCHEMES:
        raise ValueError(f"Unsupported RSA padding: {v}")
    return v


def generate_keypair_pem(key_size: int = RSA_KEY_SIZE) -> tuple[str, str]:
    """Generate an RSA keypair for operators.

    Returns:
        Tuple of (private_key_pem, public_key_pem).
    """
    private_key = generate_private_key(key_size)
    return (
        private_key_to_pem(private_key),
        public_key_to_pem(private_key.public_key()),
    )


def write_env_keys(
    env_file: Union[str, Path] = ".env",
    key_size: int = RSA_KEY_SIZE,
) -> Path:
    """Generate a keypair and store it as RSA_PUBLIC_KEY/RSA_PRIVATE_KEY.

    Existing variables in ``env_file`` are kept; the two key entries are
    replaced. PEM newlines are written as ``\\n`` escapes.

    Returns:
        Path of the written env file.
    """
    path = Path(env_file)
    path.touch(mode=0o600, exist_ok=True)
    private_pem, public_pem = generate_keypair_pem(key_size)
    set_key(path, "RSA_PUBLIC_KEY", public_pem.strip().replace("\n", "\\n"))
    set_key(path, "RSA_PRIVATE_KEY", private_pem.strip().replace("\n", "\\n"))
    logger.info("RSA keypair (%d bits) written to %s", key_size, path)
    return path


class ServerConfig(BaseModel):
    """Validated server configuration."""

    rsa_private_key: Optional[str] = None
    rsa_public_key: Optional[str] = None
    rsa_padding: str = Field(default="pkcs1v15")
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3000, ge=1, le=65535)
    vocabulary_path: Path = Field(default=Path("./vocabulary_json_array"))

    @field_validator("rsa_padding")
    @classmethod
    def validate_padding(cls, v: str) -> str:
        """Validate the RSA padding scheme is supported."""
        return _validate_padding(v)

    @field_validator("rsa_private_key", "rsa_public_key")
    @classmethod
    def normalize_pem(cls, v: Optional[str]) -> Optional[str]:
        return _unescape_pem(v)

    @classmethod
    def from_env(cls) -> "ServerConfig":
        """Create ServerConfig by loading values from environment.

        Returns:
            Populated ServerConfig instance.
        """
        return cls(
            rsa_private_key=os.environ.get("RSA_PRIVATE_KEY"),
            rsa_public_key=os.environ.get("RSA_PUBLIC_KEY"),
            rsa_padding=os.environ.get("RSA_PADDING", "pkcs1v15"),
            host=os.environ.get("HOST", "0.0.0.0"),
            port=int(os.environ.get("PORT", "3000")),
            vocabulary_path=Path(
                os.environ.get("VOCABULARY_PATH", "./vocabulary_json_array")
            ),
        )


class ClientConfig(BaseModel):
    """Validated client configuration."""

    api_base_url: str = Field(default="http://localhost:8080/api")
    timeout: float = Field(default=10.0, gt=0)
    rsa_padding: str = Field(default="pkcs1v15")

    @field_validator("api_base_url")
    @classmethod
    def strip_slash(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"API base URL must be http(s): {v}")
        return v.rstrip("/")

    @field_validator("rsa_padding")
    @classmethod
    def validate_padding(cls, v: str) -> str:
        return _validate_padding(v)

    @classmethod
    def from_env(cls) -> "ClientConfig":
        return cls(
            api_base_url=os.environ.get(
                "API_BASE_URL", "http://localhost:8080/api"
            ),
            timeout=float(os.environ.get("CHANNEL_TIMEOUT", "10")),
            rsa_padding=os.environ.get("RSA_PADDING", "pkcs1v15"),
        )
