"""Generic document persistence for tracked media items."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db_models import MediaItemRecord

logger = logging.getLogger(__name__)


class DocumentNotFoundError(KeyError):
    """Raised when updating a document that does not exist."""


@dataclass(slots=True)
class StoredDocument:
    """A document identifier together with its field payload."""

    id: str
    data: dict[str, Any] = field(default_factory=dict)


class DocumentStore:
    """Stores media item documents as JSON payloads.

    ``userId`` and ``type`` are mirrored onto indexed columns so enumeration
    queries do not need to scan documents. Query results come back in creation
    order, which is stable within a single run.
    """

    _INDEXED_FIELDS = {
        "userId": MediaItemRecord.user_id,
        "type": MediaItemRecord.media_type,
    }

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get(self, doc_id: str) -> StoredDocument | None:
        async with self._session_factory() as session:
            record = await session.get(MediaItemRecord, doc_id)
            if record is None:
                return None
            return StoredDocument(id=record.id, data=dict(record.data or {}))

    async def create(self, fields: Mapping[str, Any], *, doc_id: str | None = None) -> str:
        """Insert a new document and return its identifier."""

        resolved_id = doc_id or uuid.uuid4().hex
        await self.set(resolved_id, fields)
        return resolved_id

    async def set(self, doc_id: str, fields: Mapping[str, Any]) -> None:
        """Create or fully replace a document."""

        payload = dict(fields)
        now = datetime.utcnow()
        async with self._session_factory() as session:
            record = await session.get(MediaItemRecord, doc_id)
            if record is None:
                record = MediaItemRecord(id=doc_id, created_at=now)
                session.add(record)
            record.data = payload
            record.user_id = self._str_or_none(payload.get("userId"))
            record.media_type = self._str_or_none(payload.get("type"))
            record.updated_at = now
            await session.commit()

    async def update(
        self, doc_id: str, partial_fields: Mapping[str, Any]
    ) -> StoredDocument:
        """Merge ``partial_fields`` into an existing document."""

        async with self._session_factory() as session:
            record = await session.get(MediaItemRecord, doc_id)
            if record is None:
                raise DocumentNotFoundError(f"Document {doc_id} not found")
            merged = {**(record.data or {}), **dict(partial_fields)}
            record.data = merged
            if "userId" in partial_fields:
                record.user_id = self._str_or_none(merged.get("userId"))
            if "type" in partial_fields:
                record.media_type = self._str_or_none(merged.get("type"))
            record.updated_at = datetime.utcnow()
            await session.commit()
            return StoredDocument(id=record.id, data=dict(merged))

    async def query(self, filters: Mapping[str, Any] | None = None) -> list[StoredDocument]:
        """Return documents whose fields equal every value in ``filters``."""

        filters = dict(filters or {})
        stmt = select(MediaItemRecord).order_by(
            MediaItemRecord.created_at, MediaItemRecord.id
        )
        remaining: dict[str, Any] = {}
        for key, value in filters.items():
            column = self._INDEXED_FIELDS.get(key)
            if column is not None:
                stmt = stmt.where(column == value)
            else:
                remaining[key] = value

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            records = result.scalars().all()

        documents: list[StoredDocument] = []
        for record in records:
            data = dict(record.data or {})
            if any(data.get(key) != value for key, value in remaining.items()):
                continue
            documents.append(StoredDocument(id=record.id, data=data))
        return documents

    async def delete(self, doc_id: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                delete(MediaItemRecord).where(MediaItemRecord.id == doc_id)
            )
            await session.commit()
        deleted = bool(result.rowcount)
        if deleted:
            logger.debug("Deleted document %s", doc_id)
        return deleted

    @staticmethod
    def _str_or_none(value: Any) -> str | None:
        if value is None:
            return None
        return str(value)
