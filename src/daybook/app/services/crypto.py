from __future__ import annotations

import base64
import binascii
import hashlib
from logging import getLogger

from nacl import pwhash, utils
from nacl.bindings import (
    crypto_aead_xchacha20poly1305_ietf_decrypt,
    crypto_aead_xchacha20poly1305_ietf_encrypt,
)
from nacl.exceptions import CryptoError

ALG = "xchacha20poly1305_ietf"
KEY_BYTES = 32
NONCE_BYTES = 24
OPSLIMIT = pwhash.argon2id.OPSLIMIT_MODERATE
MEMLIMIT = pwhash.argon2id.MEMLIMIT_MODERATE
OWNER_SALT_CONTEXT = b"daybook:owner-key-salt:v1"

logger = getLogger(__name__)


class PayloadDecryptionError(Exception):
    """Raised when a payload cannot be unpacked or authenticated."""


class CryptoContext:
    """Encryption capability bound to a single owner's key."""

    __slots__ = ("owner_id", "_key", "_dropped")

    def __init__(self, *, owner_id: str, key: bytes) -> None:
        if len(key) != KEY_BYTES:
            raise ValueError("encryption key must be 32 bytes")
        self.owner_id = str(owner_id)
        self._key = bytearray(key)
        self._dropped = False

    def drop(self) -> None:
        """Best-effort zeroize key material."""

        if self._dropped:
            return
        for idx in range(len(self._key)):
            self._key[idx] = 0
        self._dropped = True

    def _require_key(self) -> bytes:
        if self._dropped:
            raise ValueError("crypto context has been dropped")
        return bytes(self._key)

    def _aad(self, entry_id: str) -> bytes:
        return f"{self.owner_id}|{entry_id}|{ALG}".encode("utf-8")

    def encrypt_payload(self, entry_id: str, plaintext: bytes) -> str:
        """Encrypt ``plaintext`` and return ``base64(nonce || ciphertext)``."""

        nonce = utils.random(NONCE_BYTES)
        ct = crypto_aead_xchacha20poly1305_ietf_encrypt(
            plaintext, self._aad(entry_id), nonce, self._require_key()
        )
        return base64.b64encode(nonce + ct).decode("ascii")

    def decrypt_payload(self, entry_id: str, token: str) -> bytes:
        try:
            packed = base64.b64decode(token.encode("ascii"), validate=True)
        except (binascii.Error, ValueError, UnicodeEncodeError) as exc:
            raise PayloadDecryptionError("payload is not valid base64") from exc
        if len(packed) <= NONCE_BYTES:
            raise PayloadDecryptionError("payload is too short")
        nonce, ct = packed[:NONCE_BYTES], packed[NONCE_BYTES:]
        try:
            return crypto_aead_xchacha20poly1305_ietf_decrypt(
                ct, self._aad(entry_id), nonce, self._require_key()
            )
        except CryptoError as exc:
            raise PayloadDecryptionError("payload failed authentication") from exc


# ---------------------------------------------------------------------------
# Key generation & derivation
# ---------------------------------------------------------------------------


def generate_key() -> bytes:
    return utils.random(KEY_BYTES)


def owner_salt(owner_id: str) -> bytes:
    digest = hashlib.blake2b(
        owner_id.encode("utf-8"),
        key=OWNER_SALT_CONTEXT,
        digest_size=pwhash.argon2id.SALTBYTES,
    )
    return digest.digest()


def derive_key(
    secret: bytes,
    salt: bytes,
    *,
    opslimit: int = OPSLIMIT,
    memlimit: int = MEMLIMIT,
) -> bytes:
    return pwhash.argon2id.kdf(
        KEY_BYTES, secret, salt, opslimit=opslimit, memlimit=memlimit
    )


def derive_owner_key(master_secret: str, owner_id: str, **limits: int) -> bytes:
    """Deterministically derive ``owner_id``'s key from a deployment secret."""

    return derive_key(master_secret.encode("utf-8"), owner_salt(owner_id), **limits)


def encode_key(key: bytes) -> str:
    return base64.urlsafe_b64encode(key).decode("ascii")


def decode_key(text: str) -> bytes:
    key = base64.urlsafe_b64decode(text.encode("ascii"))
    if len(key) != KEY_BYTES:
        raise ValueError("stored key has the wrong length")
    return key


__all__ = [
    "ALG",
    "CryptoContext",
    "PayloadDecryptionError",
    "decode_key",
    "derive_key",
    "derive_owner_key",
    "encode_key",
    "generate_key",
    "owner_salt",
]
