"""
Encrypted, session-scoped persistence for accounts and note caches.

Every value in the ``accounts`` and ``notes`` stores is sealed with the
session key (XSalsa20-Poly1305 SecretBox). Keys are namespaced by account
name; note caches add sha256 hashes of the public key and pool address so the
raw identifiers never reach disk. Pre-authentication material (per-account
user salt, passkey credential metadata) lives in plaintext stores because it
is needed before a session key exists.

The session key only lives in memory. ``clear_session()`` drops it; the same
key restores access, a different key yields StorageError on read.
"""
from __future__ import annotations

import asyncio
import base64
import json
import time
from typing import Callable, Dict, List, Optional

from pydantic import ValidationError

from shinobi import config
from shinobi.crypto_core.field_encryption import (
    KEY_LENGTH,
    decrypt_json,
    derive_key_from_passkey,
    derive_key_from_password,
    encrypt_json,
    hash_pubkey,
    new_user_salt,
)
from shinobi.crypto_core.notes import NoteChain
from shinobi.database.adapters import MemoryRecordAdapter, RecordAdapter
from shinobi.database.records import AccountRecord, CachedNoteData, PasskeyRecord
from shinobi.errors import SessionNotInitializedError, StorageError
from shinobi.logging_config import get_logger

logger = get_logger("database.note_store")

ACCOUNTS = "accounts"
NOTES = "notes"
PASSKEYS = "passkeys"
SALTS = "salts"

NoteCacheMutator = Callable[[CachedNoteData], CachedNoteData]


def _name_key(account_name: str) -> str:
    return account_name.lower().strip()


class EncryptedNoteStore:
    def __init__(
        self,
        adapter: Optional[RecordAdapter] = None,
        session_timeout: float = config.SESSION_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            adapter: Raw record backend (defaults to an in-memory adapter)
            session_timeout: Seconds after which the session key is dropped
            clock: Time source, injectable for tests
        """
        self.adapter = adapter or MemoryRecordAdapter()
        self.session_timeout = session_timeout
        self._clock = clock
        self._key: Optional[bytes] = None
        self._account: Optional[str] = None
        self._auth_method: Optional[str] = None
        self._session_started: float = 0.0
        self._locks: Dict[str, asyncio.Lock] = {}

    # ===== Session =====

    def initialize_account_session(self, account_name: str, symmetric_key: bytes, auth_method: str = "key") -> None:
        if not account_name or not account_name.strip():
            raise StorageError("account name is required")
        if len(symmetric_key) != KEY_LENGTH:
            raise StorageError(f"session key must be {KEY_LENGTH} bytes")
        self._key = bytes(symmetric_key)
        self._account = _name_key(account_name)
        self._auth_method = auth_method
        self._session_started = self._clock()
        logger.info(f"Session opened for account '{self._account}' via {auth_method}")

    async def unlock_with_password(self, account_name: str, password: str, iterations: Optional[int] = None) -> None:
        user_salt = await self.get_or_create_user_salt(account_name)
        key = await asyncio.to_thread(
            derive_key_from_password,
            password,
            account_name,
            user_salt,
            iterations or config.PBKDF2_ITERATIONS,
        )
        self.initialize_account_session(account_name, key, auth_method="password")

    def unlock_with_passkey(self, account_name: str, prf_output: bytes) -> None:
        self.initialize_account_session(account_name, derive_key_from_passkey(prf_output, account_name), "passkey")

    def clear_session(self) -> None:
        if self._account:
            logger.info(f"Session cleared for account '{self._account}'")
        self._key = None
        self._account = None
        self._auth_method = None

    @property
    def session_active(self) -> bool:
        if self._key is None:
            return False
        if self._clock() - self._session_started > self.session_timeout:
            logger.warning("Session expired, re-authentication required")
            self.clear_session()
            return False
        return True

    @property
    def account_name(self) -> Optional[str]:
        return self._account if self.session_active else None

    def _require_session(self) -> bytes:
        if not self.session_active:
            raise SessionNotInitializedError("no active session; unlock the account first")
        return self._key  # type: ignore[return-value]

    # ===== Encrypted record helpers =====

    async def _read(self, store: str, key: str) -> Optional[dict]:
        session_key = self._require_session()
        raw = await self.adapter.get(store, key)
        if raw is None:
            return None
        try:
            envelope = json.loads(raw)
        except ValueError:
            raise StorageError(f"corrupt record {store}/{key}") from None
        return decrypt_json(session_key, envelope)

    async def _write(self, store: str, key: str, value: dict) -> None:
        session_key = self._require_session()
        await self.adapter.put(store, key, json.dumps(encrypt_json(session_key, value)))

    def _lock(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    # ===== Pre-authentication material =====

    async def get_or_create_user_salt(self, account_name: str) -> bytes:
        key = _name_key(account_name)
        raw = await self.adapter.get(SALTS, key)
        if raw is not None:
            return base64.b64decode(raw)
        salt = new_user_salt()
        await self.adapter.put(SALTS, key, base64.b64encode(salt).decode())
        return salt

    async def store_passkey(self, record: PasskeyRecord) -> None:
        await self.adapter.put(PASSKEYS, _name_key(record.account_name), record.model_dump_json())

    async def get_passkey(self, account_name: str) -> Optional[PasskeyRecord]:
        raw = await self.adapter.get(PASSKEYS, _name_key(account_name))
        return None if raw is None else PasskeyRecord.model_validate_json(raw)

    # ===== Accounts =====

    async def store_account(self, record: AccountRecord) -> None:
        self._require_session()
        if _name_key(record.account_name) != self._account:
            raise StorageError("account record does not belong to the active session")
        await self._write(ACCOUNTS, self._account, record.model_dump(mode="json"))

    async def get_account(self) -> Optional[AccountRecord]:
        data = await self._read(ACCOUNTS, self._require_account())
        return None if data is None else AccountRecord.model_validate(data)

    async def list_account_names(self) -> List[str]:
        return await self.adapter.keys(ACCOUNTS)

    async def account_exists(self, account_name: str) -> bool:
        return await self.adapter.get(ACCOUNTS, _name_key(account_name)) is not None

    async def remove_account(self, account_name: str) -> None:
        """Delete every record of an account, including its note caches and pre-auth material."""
        name = _name_key(account_name)
        for key in await self.adapter.keys(NOTES, prefix=f"{name}:"):
            await self.adapter.delete(NOTES, key)
        for store in (ACCOUNTS, PASSKEYS, SALTS):
            await self.adapter.delete(store, name)
        if self._account == name:
            self.clear_session()
        logger.info(f"Account '{name}' removed")

    def _require_account(self) -> str:
        self._require_session()
        return self._account  # type: ignore[return-value]

    # ===== Note caches =====

    def _notes_key(self, public_key: str, pool_address: str) -> str:
        return f"{self._require_account()}:{hash_pubkey(public_key)}_{hash_pubkey(pool_address)}"

    async def get_cached_notes(self, public_key: str, pool_address: str) -> Optional[CachedNoteData]:
        data = await self._read(NOTES, self._notes_key(public_key, pool_address))
        if data is None:
            return None
        try:
            return CachedNoteData.model_validate(data)
        except ValidationError as e:
            raise StorageError(f"cached note data failed validation: {e.error_count()} errors") from None

    async def update_note_cache(
        self,
        public_key: str,
        pool_address: str,
        mutate: NoteCacheMutator,
    ) -> CachedNoteData:
        """Read-modify-write under the record's lock; creates the record when missing."""
        key = self._notes_key(public_key, pool_address)
        async with self._lock(key):
            current = await self.get_cached_notes(public_key, pool_address)
            if current is None:
                current = CachedNoteData(pool_address=pool_address, public_key=public_key)
            updated = mutate(current)
            await self._write(NOTES, key, updated.model_dump(mode="json"))
            return updated

    async def store_discovered_notes(
        self,
        public_key: str,
        pool_address: str,
        chains: List[NoteChain],
        cursor: Optional[str],
        confirmed_indices: Optional[List[int]] = None,
    ) -> CachedNoteData:
        confirmed = set(confirmed_indices or [])

        now = self._clock()

        def apply(data: CachedNoteData) -> CachedNoteData:
            merged = data.merged_with(chains)
            pending = {
                i: exp for i, exp in merged.pending_deposits.items()
                if i not in confirmed and merged.chain_for(i) is None and exp > now
            }
            return merged.model_copy(update={
                "sync_cursor": cursor if cursor is not None else data.sync_cursor,
                "pending_deposits": pending,
                "last_sync_time": now,
            })

        return await self.update_note_cache(public_key, pool_address, apply)

    async def get_next_deposit_index(self, public_key: str, pool_address: str) -> int:
        cached = await self.get_cached_notes(public_key, pool_address)
        return 0 if cached is None else cached.last_used_deposit_index + 1

    async def update_last_used_deposit_index(self, public_key: str, pool_address: str, index: int) -> CachedNoteData:
        def apply(data: CachedNoteData) -> CachedNoteData:
            return data.model_copy(update={"last_used_deposit_index": max(data.last_used_deposit_index, index)})

        return await self.update_note_cache(public_key, pool_address, apply)

    async def reserve_deposit_index(
        self,
        public_key: str,
        pool_address: str,
        index: int,
        ttl: float = config.PENDING_RESERVATION_TTL,
    ) -> CachedNoteData:
        """Record index as used and mark it pending until ttl seconds from now."""
        expires = self._clock() + ttl

        def apply(data: CachedNoteData) -> CachedNoteData:
            pending = dict(data.pending_deposits)
            pending[index] = expires
            return data.model_copy(update={
                "last_used_deposit_index": max(data.last_used_deposit_index, index),
                "pending_deposits": pending,
            })

        return await self.update_note_cache(public_key, pool_address, apply)

    async def initialize_sync_baseline(self, public_key: str, pool_address: str, cursor: Optional[str]) -> CachedNoteData:
        """Start a brand-new account's sync from the current head so history is never scanned."""
        def apply(data: CachedNoteData) -> CachedNoteData:
            return data.model_copy(update={"sync_cursor": cursor, "last_sync_time": self._clock()})

        return await self.update_note_cache(public_key, pool_address, apply)

