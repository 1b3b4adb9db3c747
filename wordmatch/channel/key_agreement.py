"""
Key Agreement — server RSA keypair and session key (un)wrapping.

A session key travels as the RSA encryption of its 64-character hex
form, base64-encoded. The default padding is PKCS#1 v1.5 because the
browser RSA library on the other end does not speak OAEP; changing it
breaks the wire contract with that client.

Security Note:
    The private key never leaves this module's service instance.
    Never log key material; log only key sizes and padding names.
"""
import base64
import binascii
import logging
import re
from typing import TYPE_CHECKING, Optional, Union

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from ..exceptions import InvalidWrappedKey
from .crypto import KEY_LENGTH

if TYPE_CHECKING:
    from .config import ServerConfig

logger = logging.getLogger("wordmatch.channel")

RSA_KEY_SIZE = 2048
PUBLIC_EXPONENT = 65537
PADDING_SCHEMES = ("pkcs1v15", "oaep")

_HEX_KEY = re.compile(rb"[0-9a-fA-F]{%d}" % (KEY_LENGTH * 2))


def _padding(scheme: str) -> padding.AsymmetricPadding:
    """Return the RSA encryption padding for a scheme name."""
    if scheme == "pkcs1v15":
        return padding.PKCS1v15()
    if scheme == "oaep":
        return padding.OAEP(
            mgf=padding.MGF1(algorithm=hashes.SHA256()),
            algorithm=hashes.SHA256(),
            label=None,
        )
    raise ValueError(f"Unsupported RSA padding scheme: {scheme}")


def generate_private_key(key_size: int = RSA_KEY_SIZE) -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(
        public_exponent=PUBLIC_EXPONENT, key_size=key_size,
    )


def private_key_to_pem(private_key: rsa.RSAPrivateKey) -> str:
    """PKCS#1 ("BEGIN RSA PRIVATE KEY") PEM text."""
    return private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")


def public_key_to_pem(public_key: rsa.RSAPublicKey) -> str:
    """SubjectPublicKeyInfo ("BEGIN PUBLIC KEY") PEM text."""
    return public_key.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")


def load_public_key(public_key_pem: str) -> rsa.RSAPublicKey:
    """Parse an RSA public key from PEM text.

    Raises:
        ValueError: If the PEM is malformed or not an RSA key.
    """
    key = serialization.load_pem_public_key(public_key_pem.encode("ascii"))
    if not isinstance(key, rsa.RSAPublicKey):
        raise ValueError("Public key is not an RSA key")
    return key


def load_private_key(private_key_pem: str) -> rsa.RSAPrivateKey:
    key = serialization.load_pem_private_key(
        private_key_pem.encode("ascii"), password=None,
    )
    if not isinstance(key, rsa.RSAPrivateKey):
        raise ValueError("Private key is not an RSA key")
    return key


def wrap_session_key(
    session_key: bytes,
    public_key: Union[str, rsa.RSAPublicKey],
    padding_scheme: str = "pkcs1v15",
) -> str:
    """Encrypt a session key for the server (client side).

    Args:
        session_key: Raw 32-byte session key.
        public_key: Server public key, PEM text or loaded key.
        padding_scheme: ``pkcs1v15`` (wire default) or ``oaep``.

    Returns:
        Base64 text of RSA(hex(session_key)).
    """
    if len(session_key) != KEY_LENGTH:
        raise ValueError(
            f"session key must be exactly {KEY_LENGTH} bytes, "
            f"got {len(session_key)}"
        )
    if isinstance(public_key, str):
        public_key = load_public_key(public_key)
    wrapped = public_key.encrypt(
        session_key.hex().encode("ascii"), _padding(padding_scheme),
    )
    return base64.b64encode(wrapped).decode("ascii")


class KeyAgreementService:
    """Holds the server keypair and unwraps client session keys.

    Build one instance at process start (see ``initialize`` or
    ``from_config``) and hand it to whatever serves requests. The
    keypair is never mutated afterwards.
    """

    def __init__(
        self,
        private_key: rsa.RSAPrivateKey,
        public_key_pem: Optional[str] = None,
        padding_scheme: str = "pkcs1v15",
    ):
        self._padding = _padding(padding_scheme)
        self._padding_scheme = padding_scheme
        self._private_key = private_key
        if public_key_pem is not None:
            announced = load_public_key(public_key_pem)
            if announced.public_numbers() != private_key.public_key().public_numbers():
                raise ValueError(
                    "Configured public key does not match the private key"
                )
        else:
            public_key_pem = public_key_to_pem(private_key.public_key())
        self._public_key_pem = public_key_pem

    @classmethod
    def initialize(
        cls,
        private_key_pem: Optional[str] = None,
        public_key_pem: Optional[str] = None,
        padding_scheme: str = "pkcs1v15",
        key_size: int = RSA_KEY_SIZE,
    ) -> "KeyAgreementService":
        """Load the configured keypair, or generate an ephemeral one.

        A private key without a public key is loaded and its public half
        derived. Without a private key a fresh keypair is generated and a
        warning is logged: clients caching the old public key cannot talk
        to a restarted process.

        Args:
            private_key_pem: PEM private key from configuration.
            public_key_pem: PEM public key from configuration.
            padding_scheme: RSA padding used to unwrap session keys.
            key_size: Modulus size for a generated keypair.

        Returns:
            Ready KeyAgreementService.
        """
        if private_key_pem:
            service = cls(
                load_private_key(private_key_pem),
                public_key_pem or None,
                padding_scheme=padding_scheme,
            )
            logger.info(
                "RSA keypair loaded from configuration (%d bits, %s)",
                service.key_size, padding_scheme,
            )
            return service
        logger.warning(
            "RSA keys not found in configuration; generating a temporary "
            "%d-bit keypair. It will not survive a restart. Run "
            "'python -m wordmatch generate-keys' and configure the keys.",
            key_size,
        )
        return cls(
            generate_private_key(key_size), padding_scheme=padding_scheme,
        )

    @classmethod
    def from_config(cls, config: "ServerConfig") -> "KeyAgreementService":
        return cls.initialize(
            private_key_pem=config.rsa_private_key,
            public_key_pem=config.rsa_public_key,
            padding_scheme=config.rsa_padding,
        )

    @property
    def public_key(self) -> str:
        """PEM text of the public key."""
        return self._public_key_pem

    def get_public_key(self) -> str:
        return self._public_key_pem

    @property
    def key_size(self) -> int:
        return self._private_key.key_size

    @property
    def padding_scheme(self) -> str:
        return self._padding_scheme

    def unwrap_session_key(self, wrapped: Union[str, bytes]) -> bytes:
        """Recover the session key a client wrapped for this server.

        Args:
            wrapped: Base64 text from the request body, or the raw RSA
                ciphertext bytes.

        Returns:
            Raw 32-byte session key.

        Raises:
            InvalidWrappedKey: If the input is not base64, does not decrypt
                under this key, or does not hold a 64-character hex key.
        """
        if isinstance(wrapped, str):
            try:
                wrapped = base64.b64decode(wrapped, validate=True)
            except (binascii.Error, ValueError) as err:
                raise InvalidWrappedKey(
                    "Invalid encrypted AES key"
                ) from err
        if not wrapped:
            raise InvalidWrappedKey("Missing encrypted AES key")
        try:
            hex_key = self._private_key.decrypt(wrapped, self._padding)
        except ValueError as err:
            raise InvalidWrappedKey("Invalid encrypted AES key") from err
        # PKCS#1 v1.5 with implicit rejection yields random bytes on
        # failure instead of raising.
        if not _HEX_KEY.fullmatch(hex_key):
            raise InvalidWrappedKey("Invalid encrypted AES key")
        return bytes.fromhex(hex_key.decode("ascii"))
