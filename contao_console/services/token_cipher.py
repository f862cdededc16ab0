"""AES-256-GCM token encryption bound to a site identifier.

One master key (TOKEN_MASTER_KEY, 64 hex characters) is stretched into a
per-site key with PBKDF2-HMAC-SHA256, salted by the SHA-256 digest of the
site URL. The site URL is also passed as additional authenticated data, so a
token encrypted for one site cannot be relabeled and decrypted as another.

Stored shape (all base64):
    {"encrypted": "<ciphertext>", "iv": "<16 bytes>", "tag": "<16 bytes>"}
"""

import base64
import binascii
import hashlib
import logging
import os
import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

logger = logging.getLogger(__name__)

MASTER_KEY_ENV = "TOKEN_MASTER_KEY"
_KEY_LENGTH = 32
_IV_LENGTH = 16
_TAG_LENGTH = 16
_PBKDF2_ITERATIONS = 10_000
_HEX_KEY_PATTERN = re.compile(r"^[0-9a-fA-F]{64}$")
_SECRET_FIELDS = frozenset({"encrypted", "iv", "tag"})


class DecryptionError(Exception):
    """Raised when a token cannot be decrypted for any reason."""


@dataclass(frozen=True)
class EncryptedSecret:
    """Ciphertext, IV and GCM tag of one encrypted token, base64-encoded."""

    encrypted: str
    iv: str
    tag: str

    def to_dict(self) -> dict[str, str]:
        """Return the on-disk representation."""
        return {"encrypted": self.encrypted, "iv": self.iv, "tag": self.tag}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "EncryptedSecret":
        """Build from a stored mapping.

        Raises:
            DecryptionError: If the mapping is not a valid encrypted shape.
        """
        if not is_encrypted(data):
            raise DecryptionError("Invalid encrypted token format")
        return cls(encrypted=data["encrypted"], iv=data["iv"], tag=data["tag"])


@dataclass(frozen=True)
class PlaintextToken:
    """A token that has not been encrypted yet."""

    value: str


StoredToken = PlaintextToken | EncryptedSecret


def is_encrypted(value: Any) -> bool:
    """Return True iff value has exactly the three encrypted-token string fields."""
    if isinstance(value, EncryptedSecret):
        return True
    if not isinstance(value, Mapping):
        return False
    if set(value.keys()) != _SECRET_FIELDS:
        return False
    return all(isinstance(value[field], str) for field in _SECRET_FIELDS)


def parse_stored_token(raw: Any) -> StoredToken | None:
    """Classify a raw JSON token value once, at deserialization time.

    Args:
        raw: Token value read from the config document.

    Returns:
        PlaintextToken for non-empty strings, EncryptedSecret for the
        encrypted shape, None for anything else (missing or unusable).
    """
    if isinstance(raw, str):
        return PlaintextToken(raw) if raw else None
    if is_encrypted(raw):
        return EncryptedSecret.from_dict(raw)
    if raw is not None:
        logger.warning("Ignoring token with unrecognised shape (%s)", type(raw).__name__)
    return None


def generate_master_key() -> str:
    """Return a fresh random master key as 64 hex characters."""
    return os.urandom(_KEY_LENGTH).hex()


def load_master_key(value: str | None = None) -> bytes:
    """Parse the master key from the given value or TOKEN_MASTER_KEY.

    Args:
        value: Hex key string. Read from the environment when None.

    Returns:
        The 32-byte master key.

    Raises:
        ValueError: If the key is missing or not exactly 64 hex characters.
    """
    raw = value if value is not None else os.environ.get(MASTER_KEY_ENV, "")
    raw = raw.strip()
    if not raw:
        raise ValueError(f"{MASTER_KEY_ENV} environment variable is required")
    if not _HEX_KEY_PATTERN.match(raw):
        raise ValueError(
            f"{MASTER_KEY_ENV} must be exactly 64 hex characters (32 bytes)"
        )
    return bytes.fromhex(raw)


def derive_site_key(master_key: bytes, site_id: str) -> bytes:
    """Derive the per-site AES key from the master key.

    Args:
        master_key: 32-byte master key.
        site_id: Site identifier (the manager URL).

    Returns:
        32-byte key. Deterministic for a given (master_key, site_id) pair.
    """
    if len(master_key) != _KEY_LENGTH:
        raise ValueError(
            f"Master key must be exactly {_KEY_LENGTH} bytes (got {len(master_key)})"
        )
    salt = hashlib.sha256(site_id.encode("utf-8")).digest()
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=_KEY_LENGTH,
        salt=salt,
        iterations=_PBKDF2_ITERATIONS,
    )
    return kdf.derive(master_key)


class TokenCipher:
    """Encrypts and decrypts API tokens, bound to the site they belong to.

    Args:
        master_key: 32-byte master key. Loaded from TOKEN_MASTER_KEY when None.

    Raises:
        ValueError: If no valid master key is available.
    """

    def __init__(self, master_key: bytes | None = None) -> None:
        if master_key is None:
            master_key = load_master_key()
        if len(master_key) != _KEY_LENGTH:
            raise ValueError(
                f"Master key must be exactly {_KEY_LENGTH} bytes (got {len(master_key)})"
            )
        self._master_key = master_key

    @classmethod
    def from_hex(cls, hex_key: str) -> "TokenCipher":
        """Build a cipher from a 64-character hex key."""
        return cls(load_master_key(hex_key))

    def derive_site_key(self, site_id: str) -> bytes:
        """Derive the key used for site_id."""
        return derive_site_key(self._master_key, site_id)

    def encrypt(self, plaintext: str, site_id: str) -> EncryptedSecret:
        """Encrypt a token for one site with a fresh random IV.

        Args:
            plaintext: Token to encrypt.
            site_id: Site URL, used for key derivation and as AAD.

        Returns:
            EncryptedSecret with base64 ciphertext, IV and tag.
        """
        aad = site_id.encode("utf-8")
        iv = os.urandom(_IV_LENGTH)
        aesgcm = AESGCM(self.derive_site_key(site_id))
        # cryptography appends the 16-byte tag to the ciphertext
        sealed = aesgcm.encrypt(iv, plaintext.encode("utf-8"), aad)
        ciphertext, tag = sealed[:-_TAG_LENGTH], sealed[-_TAG_LENGTH:]
        return EncryptedSecret(
            encrypted=base64.b64encode(ciphertext).decode("ascii"),
            iv=base64.b64encode(iv).decode("ascii"),
            tag=base64.b64encode(tag).decode("ascii"),
        )

    def decrypt(self, secret: EncryptedSecret | Mapping[str, Any], site_id: str) -> str:
        """Decrypt a token previously encrypted for site_id.

        Raises:
            DecryptionError: On malformed input or if authentication fails
                (tampered data, different site_id, different master key).
        """
        if not isinstance(secret, EncryptedSecret):
            secret = EncryptedSecret.from_dict(secret)

        try:
            ciphertext = base64.b64decode(secret.encrypted, validate=True)
            iv = base64.b64decode(secret.iv, validate=True)
            tag = base64.b64decode(secret.tag, validate=True)
        except (binascii.Error, ValueError) as e:
            raise DecryptionError(f"Malformed encrypted token: {e}") from e

        if len(iv) != _IV_LENGTH:
            raise DecryptionError(f"Invalid IV length {len(iv)} (expected {_IV_LENGTH})")
        if len(tag) != _TAG_LENGTH:
            raise DecryptionError(f"Invalid tag length {len(tag)} (expected {_TAG_LENGTH})")

        aesgcm = AESGCM(self.derive_site_key(site_id))
        try:
            plaintext = aesgcm.decrypt(iv, ciphertext + tag, site_id.encode("utf-8"))
        except InvalidTag as e:
            raise DecryptionError("Token decryption failed: authentication tag mismatch") from e

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecryptionError(f"Decrypted token is not valid UTF-8: {e}") from e
