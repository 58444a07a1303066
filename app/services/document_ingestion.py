"""Document ingestion: extract, hash, chunk, embed and store uploaded project documents.

PDF text comes from pypdf, DOCX text from python-docx; plain text and
markdown are decoded directly. Anything else is rejected.
"""

from __future__ import annotations

import hashlib
import io
import time
from datetime import datetime, timezone
from pathlib import PurePath
from typing import Dict, Optional
from zipfile import BadZipFile

from docx import Document as DocxDocument
from docx.opc.exceptions import PackageNotFoundError
from pypdf import PdfReader
from pypdf.errors import PdfReadError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from app.config.logger import app_logger, log_performance
from app.models.document import Document
from app.services.chunk_store import ChunkInsert, ChunkStore
from app.services.chunking import chunk_text
from app.services.embedding import EmbeddingService


PDF_MIME = "application/pdf"
DOCX_MIME = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
TEXT_MIMES = ("text/plain", "text/markdown", "text/x-markdown")

_EXTENSION_TYPES = {
    ".pdf": PDF_MIME,
    ".docx": DOCX_MIME,
    ".txt": "text/plain",
    ".md": "text/markdown",
    ".markdown": "text/markdown",
}


class UnsupportedDocumentError(ValueError):
    """Upload whose type cannot be turned into indexable text."""


def _compute_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def resolve_content_type(file_name: str, content_type: Optional[str] = None) -> str:
    """File extension wins over the client-sent type, which browsers often leave generic."""
    extension = PurePath(file_name or "").suffix.lower()
    if extension in _EXTENSION_TYPES:
        return _EXTENSION_TYPES[extension]
    mime = (content_type or "").split(";")[0].strip().lower()
    if mime in (PDF_MIME, DOCX_MIME) or mime in TEXT_MIMES:
        return mime
    raise UnsupportedDocumentError(f"Unsupported document type for {file_name!r}: {content_type or 'unknown'}")


def decode_upload(raw: bytes) -> str:
    """Decode a plain-text upload; binary payloads are rejected."""
    if b"\x00" in raw:
        raise UnsupportedDocumentError("Binary content cannot be indexed as a text document")
    try:
        return raw.decode("utf-8-sig")
    except UnicodeDecodeError:
        return raw.decode("latin-1")


def extract_pdf_text(raw: bytes) -> str:
    try:
        reader = PdfReader(io.BytesIO(raw))
        pages = [page.extract_text() or "" for page in reader.pages]
    except (PdfReadError, ValueError, KeyError) as e:
        raise UnsupportedDocumentError(f"Could not read PDF: {e}")
    return "\n\n".join(p.strip() for p in pages if p.strip())


def extract_docx_text(raw: bytes) -> str:
    try:
        document = DocxDocument(io.BytesIO(raw))
    except (PackageNotFoundError, BadZipFile, KeyError) as e:
        raise UnsupportedDocumentError(f"Could not read DOCX: {e}")

    blocks = [p.text for p in document.paragraphs if p.text.strip()]
    for table in document.tables:
        for row in table.rows:
            cells = [cell.text.strip() for cell in row.cells if cell.text.strip()]
            if cells:
                blocks.append(" | ".join(cells))
    return "\n".join(blocks)


def extract_text(raw: bytes, file_name: str, content_type: Optional[str] = None) -> str:
    """Text of an uploaded PDF, DOCX or plain-text/markdown file, without NUL bytes."""
    kind = resolve_content_type(file_name, content_type)
    if kind == PDF_MIME:
        text = extract_pdf_text(raw)
    elif kind == DOCX_MIME:
        text = extract_docx_text(raw)
    else:
        text = decode_upload(raw)
    text = text.replace("\x00", "").strip()
    if not text:
        raise ValueError(f"No extractable text in {file_name!r}")
    return text


async def ingest_document(
    session: AsyncSession,
    project_id: str,
    file_name: str,
    text: str,
    embedder: Optional[EmbeddingService] = None,
    store: Optional[ChunkStore] = None,
) -> Dict[str, object]:
    """Chunk and index a document. Re-uploading identical content is a no-op."""
    start_time = time.time()
    embedder = embedder or EmbeddingService()
    store = store or ChunkStore(session)

    text = text.replace("\x00", "").strip()
    if not text:
        raise ValueError("Document is empty")
    content_hash = _compute_hash(text)

    result = await session.execute(
        select(Document).where(Document.project_id == project_id).where(Document.file_name == file_name)
    )
    doc = result.scalars().first()

    if doc and doc.content_hash == content_hash and doc.status == "indexed":
        return {"document_id": doc.id, "file_name": file_name, "action": "unchanged", "chunk_count": doc.chunk_count}

    if doc is None:
        doc = Document(project_id=project_id, file_name=file_name, content_hash=content_hash)
        action = "created"
    else:
        await store.delete_by_document(doc.id)
        action = "updated"

    chunks = chunk_text(text, source_type="document", document_name=file_name, document_id=doc.id)
    embeddings = await embedder.embed_batch([c.content for c in chunks])

    inserted = await store.insert_chunks(
        [
            ChunkInsert(
                project_id=project_id,
                source_type="document",
                content=chunk.content,
                embedding=embedding.embedding,
                metadata=chunk.metadata,
                chunk_index=chunk.chunk_index,
                token_count=chunk.token_count,
                document_id=doc.id,
            )
            for chunk, embedding in zip(chunks, embeddings)
        ]
    )

    doc.content_hash = content_hash
    doc.chunk_count = inserted
    doc.status = "indexed"
    doc.updated_at = datetime.now(timezone.utc)
    session.add(doc)
    await session.commit()

    elapsed = time.time() - start_time
    app_logger.info(f"Document {file_name} {action} for project {project_id} - {inserted} chunks")
    log_performance("ingest_document", elapsed, chunks=inserted)
    return {"document_id": doc.id, "file_name": file_name, "action": action, "chunk_count": inserted}
