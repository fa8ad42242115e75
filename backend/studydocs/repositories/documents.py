"""Document rows: create on upload, read and status updates during processing."""

from __future__ import annotations

import logging
import uuid

from sqlalchemy.ext.asyncio import AsyncSession

from studydocs.core.exceptions import NotFoundError
from studydocs.models.documents import Document, DocumentStatus

logger = logging.getLogger(__name__)


class DocumentRepository:

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        *,
        project_id:   uuid.UUID,
        name:         str,
        storage_path: str,
        mime_type:    str,
        file_size:    int,
        document_id:  uuid.UUID | None = None,
    ) -> Document:
        document = Document(
            id=document_id or uuid.uuid4(),
            project_id=project_id,
            name=name,
            storage_path=storage_path,
            mime_type=mime_type,
            file_size=file_size,
            status=DocumentStatus.PENDING.value,
        )
        self._session.add(document)
        await self._session.flush()
        logger.info("Document created | document=%s project=%s name=%s", document.id, project_id, name)
        return document

    async def find(self, document_id: uuid.UUID) -> Document | None:
        return await self._session.get(Document, document_id)

    async def get(self, document_id: uuid.UUID) -> Document:
        document = await self.find(document_id)
        if document is None:
            raise NotFoundError("Document", document_id)
        return document

    async def set_status(self, document_id: uuid.UUID, status: DocumentStatus) -> Document:
        document = await self.get(document_id)
        document.status = DocumentStatus(status).value
        await self._session.flush()
        logger.info("Document status | document=%s status=%s", document_id, document.status)
        return document

    async def delete(self, document_id: uuid.UUID) -> Document:
        """Delete the row; chunks and jobs go with it (ON DELETE CASCADE)."""
        document = await self.get(document_id)
        await self._session.delete(document)
        await self._session.flush()
        logger.info("Document deleted | document=%s", document_id)
        return document
