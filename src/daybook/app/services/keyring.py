"""Per-owner encryption key retrieval with an in-process cache."""

from __future__ import annotations

import asyncio
import logging

from daybook.app.db.device_storage import DeviceStorage, StorageUnavailable
from daybook.app.services.crypto import (
    CryptoContext,
    decode_key,
    derive_owner_key,
    encode_key,
    generate_key,
)

logger = logging.getLogger(__name__)

KEY_NAMESPACE = "journal_encryption_key"


class KeyUnavailable(Exception):
    """Raised when no persisted key can be produced for an owner."""


class KeyRing:
    """Create, persist and cache one symmetric key per owner.

    ``policy`` selects how a missing key is created: ``"random"`` draws 32
    fresh bytes, ``"derived"`` runs argon2id over ``master_secret`` with an
    owner-specific salt. Either way the key is written to device storage
    before it is used, so ciphertext never depends on an unpersisted key.
    """

    def __init__(
        self,
        storage: DeviceStorage,
        *,
        policy: str = "random",
        master_secret: str | None = None,
    ) -> None:
        if policy not in {"random", "derived"}:
            raise ValueError(f"unknown key policy: {policy}")
        if policy == "derived" and not master_secret:
            raise ValueError("derived key policy requires a master secret")
        self._storage = storage
        self._policy = policy
        self._master_secret = master_secret
        self._keys: dict[str, bytes] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def policy(self) -> str:
        return self._policy

    async def get_key(self, owner_id: str) -> bytes:
        key = self._keys.get(owner_id)
        if key is not None:
            return key

        lock = self._locks.setdefault(owner_id, asyncio.Lock())
        async with lock:
            key = self._keys.get(owner_id)
            if key is None:
                key = await self._load_or_create(owner_id)
                self._keys[owner_id] = key
        return key

    async def context(self, owner_id: str) -> CryptoContext:
        return CryptoContext(owner_id=owner_id, key=await self.get_key(owner_id))

    async def _load_or_create(self, owner_id: str) -> bytes:
        try:
            stored = await self._storage.get(KEY_NAMESPACE, owner_id)
        except StorageUnavailable as exc:
            logger.error("Key storage unreadable for owner %s", owner_id)
            raise KeyUnavailable("encryption key storage is unavailable") from exc

        if stored is not None:
            try:
                return decode_key(stored)
            except ValueError as exc:
                raise KeyUnavailable("stored encryption key is malformed") from exc

        if self._policy == "derived":
            assert self._master_secret is not None
            key = await asyncio.to_thread(
                derive_owner_key, self._master_secret, owner_id
            )
        else:
            key = generate_key()

        try:
            await self._storage.set(KEY_NAMESPACE, owner_id, encode_key(key))
        except StorageUnavailable as exc:
            logger.error("Could not persist new key for owner %s", owner_id)
            raise KeyUnavailable("encryption key could not be persisted") from exc
        logger.info("Created %s encryption key for owner %s", self._policy, owner_id)
        return key

    def clear(self, owner_id: str | None = None) -> None:
        """Forget cached keys. Persisted keys stay in device storage."""

        if owner_id is None:
            self._keys.clear()
            self._locks.clear()
            return
        self._keys.pop(owner_id, None)
        self._locks.pop(owner_id, None)


__all__ = ["KEY_NAMESPACE", "KeyRing", "KeyUnavailable"]
