"""
Record adapters: the raw key/value persistence under the encrypted store.

Adapters never see plaintext for encrypted stores; they move JSON strings.
"""
from __future__ import annotations

from typing import Dict, List, Optional, Tuple

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from shinobi.database.config import init_database, make_engine, make_session_factory
from shinobi.database.models import StoredRecord
from shinobi.errors import StorageError


class RecordAdapter:
    async def get(self, store: str, key: str) -> Optional[str]:
        raise NotImplementedError

    async def put(self, store: str, key: str, payload: str) -> None:
        raise NotImplementedError

    async def delete(self, store: str, key: str) -> None:
        raise NotImplementedError

    async def keys(self, store: str, prefix: str = "") -> List[str]:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class MemoryRecordAdapter(RecordAdapter):
    """Process-local adapter, used by tests and throwaway sessions."""

    def __init__(self):
        self._data: Dict[Tuple[str, str], str] = {}

    async def get(self, store: str, key: str) -> Optional[str]:
        return self._data.get((store, key))

    async def put(self, store: str, key: str, payload: str) -> None:
        self._data[(store, key)] = payload

    async def delete(self, store: str, key: str) -> None:
        self._data.pop((store, key), None)

    async def keys(self, store: str, prefix: str = "") -> List[str]:
        return sorted(k for s, k in self._data if s == store and k.startswith(prefix))


class SqlRecordAdapter(RecordAdapter):
    """SQLAlchemy async adapter (sqlite+aiosqlite by default)."""

    def __init__(self, engine: Optional[AsyncEngine] = None, url: Optional[str] = None):
        self._engine = engine or make_engine(url)
        self._sessions = make_session_factory(self._engine)
        self._ready = False

    async def _ensure_schema(self) -> None:
        if not self._ready:
            await init_database(self._engine)
            self._ready = True

    async def get(self, store: str, key: str) -> Optional[str]:
        await self._ensure_schema()
        try:
            async with self._sessions() as session:
                row = await session.get(StoredRecord, (store, key))
                return None if row is None else row.payload
        except SQLAlchemyError as e:
            raise StorageError(f"read {store}/{key} failed: {e}") from e

    async def put(self, store: str, key: str, payload: str) -> None:
        await self._ensure_schema()
        try:
            async with self._sessions() as session:
                async with session.begin():
                    row = await session.get(StoredRecord, (store, key))
                    if row is None:
                        session.add(StoredRecord(store=store, key=key, payload=payload))
                    else:
                        row.payload = payload
        except SQLAlchemyError as e:
            raise StorageError(f"write {store}/{key} failed: {e}") from e

    async def delete(self, store: str, key: str) -> None:
        await self._ensure_schema()
        try:
            async with self._sessions() as session:
                async with session.begin():
                    await session.execute(
                        delete(StoredRecord).where(StoredRecord.store == store, StoredRecord.key == key)
                    )
        except SQLAlchemyError as e:
            raise StorageError(f"delete {store}/{key} failed: {e}") from e

    async def keys(self, store: str, prefix: str = "") -> List[str]:
        await self._ensure_schema()
        try:
            async with self._sessions() as session:
                result = await session.execute(
                    select(StoredRecord.key).where(StoredRecord.store == store).order_by(StoredRecord.key)
                )
                return [k for k in result.scalars().all() if k.startswith(prefix)]
        except SQLAlchemyError as e:
            raise StorageError(f"list {store} failed: {e}") from e

    async def close(self) -> None:
        await self._engine.dispose()
