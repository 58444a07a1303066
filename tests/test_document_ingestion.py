"""Tests for document ingestion and chunk metadata helpers."""

import io
from types import SimpleNamespace

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from docx import Document as DocxDocument
from pypdf import PdfWriter
from sqlmodel import SQLModel, select

import app.models  # noqa: F401  registers tables
from app.models.document import Document
from app.services.chunk_store import DEFAULT_DOCUMENT_NAME, safe_metadata, to_vector_literal
from app.services import document_ingestion
from app.services.document_ingestion import (
    DOCX_MIME,
    PDF_MIME,
    UnsupportedDocumentError,
    decode_upload,
    extract_text,
    ingest_document,
    resolve_content_type,
)
from app.services.embedding import EmbeddingResult


class RecordingStore:
    def __init__(self):
        self.inserted = []
        self.deleted_documents = []

    async def insert_chunks(self, chunks):
        self.inserted.extend(chunks)
        return len(chunks)

    async def delete_by_document(self, document_id):
        self.deleted_documents.append(document_id)
        return 0


class CountingEmbedder:
    def __init__(self):
        self.calls = 0

    async def embed_batch(self, texts, batch_size=None):
        self.calls += 1
        return [EmbeddingResult(text=t, embedding=[0.5], token_count=1) for t in texts]


@pytest_asyncio.fixture
async def session(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'docs.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    async with async_sessionmaker(engine, expire_on_commit=False)() as session:
        yield session
    await engine.dispose()


class TestChunkMetadata:
    def test_safe_metadata_defaults(self):
        assert safe_metadata(None) == {"documentName": DEFAULT_DOCUMENT_NAME, "contentType": "text", "position": 0}

    def test_safe_metadata_decodes_json(self):
        metadata = safe_metadata('{"documentName": "escopo.md", "position": 2, "periodKey": "2025-03"}')

        assert metadata["documentName"] == "escopo.md"
        assert metadata["position"] == 2
        assert metadata["periodKey"] == "2025-03"

    def test_safe_metadata_invalid_json(self):
        assert safe_metadata("{not json")["documentName"] == DEFAULT_DOCUMENT_NAME

    def test_vector_literal(self):
        assert to_vector_literal([1, 0.25]) == "[1.0,0.25]"


class TestDecodeUpload:
    def test_utf8(self):
        assert decode_upload("Relatório".encode("utf-8")) == "Relatório"

    def test_latin1_fallback(self):
        assert decode_upload("Relatório".encode("latin-1")) == "Relatório"

    def test_binary_payload_is_rejected(self):
        with pytest.raises(UnsupportedDocumentError):
            decode_upload(b"\x89PNG\r\n\x1a\n\x00\x00\x00\rIHDR")


def _docx_bytes(*paragraphs, table=None):
    document = DocxDocument()
    for paragraph in paragraphs:
        document.add_paragraph(paragraph)
    if table:
        grid = document.add_table(rows=len(table), cols=len(table[0]))
        for r, row in enumerate(table):
            for c, value in enumerate(row):
                grid.cell(r, c).text = value
    buffer = io.BytesIO()
    document.save(buffer)
    return buffer.getvalue()


def _blank_pdf_bytes():
    writer = PdfWriter()
    writer.add_blank_page(width=200, height=200)
    buffer = io.BytesIO()
    writer.write(buffer)
    return buffer.getvalue()


class TestExtractText:
    def test_type_from_extension_wins(self):
        assert resolve_content_type("Escopo.PDF", "application/octet-stream") == PDF_MIME
        assert resolve_content_type("ata.docx", None) == DOCX_MIME
        assert resolve_content_type("notas", "text/plain; charset=utf-8") == "text/plain"

    def test_unsupported_type_is_rejected(self):
        with pytest.raises(UnsupportedDocumentError):
            resolve_content_type("planilha.xlsx", "application/vnd.ms-excel")
        with pytest.raises(UnsupportedDocumentError):
            extract_text(b"\x00\x01\x02", "blob.bin", "application/octet-stream")

    def test_docx_paragraphs_and_tables(self):
        raw = _docx_bytes("Escopo do portal", "Entrega em março", table=[["Fase", "Prazo"], ["Piloto", "Abril"]])

        text = extract_text(raw, "escopo.docx", DOCX_MIME)

        assert "Escopo do portal" in text
        assert "Entrega em março" in text
        assert "Piloto | Abril" in text

    def test_corrupt_docx_is_rejected(self):
        with pytest.raises(UnsupportedDocumentError):
            extract_text(b"not a zip archive", "ata.docx")

    def test_pdf_pages_are_joined(self, monkeypatch):
        pages = [
            SimpleNamespace(extract_text=lambda: "Página um\x00"),
            SimpleNamespace(extract_text=lambda: "Página dois"),
        ]
        monkeypatch.setattr(document_ingestion, "PdfReader", lambda stream: SimpleNamespace(pages=pages))

        assert extract_text(b"%PDF-1.7", "relatorio.pdf") == "Página um\n\nPágina dois"

    def test_pdf_without_text_is_rejected(self):
        with pytest.raises(ValueError, match="No extractable text"):
            extract_text(_blank_pdf_bytes(), "digitalizado.pdf", PDF_MIME)

    def test_unreadable_pdf_is_rejected(self):
        with pytest.raises(ValueError):
            extract_text(b"%PDF-garbage", "quebrado.pdf")


class TestIngestDocument:
    @pytest.mark.asyncio
    async def test_create_then_unchanged_then_update(self, session):
        store, embedder = RecordingStore(), CountingEmbedder()

        created = await ingest_document(session, "p-1", "escopo.md", "## Escopo\nEntrega do portal", embedder, store)
        assert created["action"] == "created"
        assert created["chunk_count"] == 1
        assert store.inserted[0].document_id == created["document_id"]
        assert store.inserted[0].source_type == "document"

        unchanged = await ingest_document(session, "p-1", "escopo.md", "## Escopo\nEntrega do portal", embedder, store)
        assert unchanged["action"] == "unchanged"
        assert embedder.calls == 1

        updated = await ingest_document(session, "p-1", "escopo.md", "## Escopo\nNovo prazo", embedder, store)
        assert updated["action"] == "updated"
        assert updated["document_id"] == created["document_id"]
        assert store.deleted_documents == [created["document_id"]]

        docs = (await session.execute(select(Document))).scalars().all()
        assert len(docs) == 1
        assert docs[0].status == "indexed"

    @pytest.mark.asyncio
    async def test_empty_document_is_rejected(self, session):
        with pytest.raises(ValueError):
            await ingest_document(session, "p-1", "vazio.txt", "  \n ", CountingEmbedder(), RecordingStore())

    @pytest.mark.asyncio
    async def test_nul_characters_never_reach_the_store(self, session):
        store = RecordingStore()

        await ingest_document(session, "p-1", "ata.txt", "Ata\x00 da reunião", CountingEmbedder(), store)

        assert "\x00" not in store.inserted[0].content
