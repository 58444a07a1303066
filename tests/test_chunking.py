"""Tests for semantic chunking."""

from app.services.chunking import (
    ChunkingOptions,
    apply_overlap,
    chunk_text,
    detect_content_type,
    detect_heading,
    extract_urls,
    hard_split,
    normalize_text,
    semantic_split,
)


class TestHelpers:
    def test_normalize_text(self):
        assert normalize_text("a\r\nb\t c d\n\n\n\ne") == "a\nb c d\n\ne"

    def test_normalize_text_drops_nul(self):
        assert normalize_text("Sprint\x00 12") == "Sprint 12"

    def test_hard_split(self):
        words = " ".join(f"w{i}" for i in range(10))

        assert hard_split(words, 4) == ["w0 w1 w2 w3", "w4 w5 w6 w7", "w8 w9"]

    def test_apply_overlap(self):
        assert apply_overlap(["one two three", "four"], 2) == ["one two three", "two three\nfour"]
        assert apply_overlap(["only"], 5) == ["only"]

    def test_detect_content_type(self):
        assert detect_content_type("plain prose here") == "text"
        assert detect_content_type("- item one\n- item two") == "list"
        assert detect_content_type("| a | b |") == "table"
        assert detect_content_type("```\ndef run(): pass\n```\n- step") == "mixed"

    def test_detect_heading(self):
        assert detect_heading("## Escopo do projeto\ntexto") == "Escopo do projeto"
        assert detect_heading("RESUMO EXECUTIVO\ncorpo") == "RESUMO EXECUTIVO"
        assert detect_heading("nothing here") is None

    def test_extract_urls_dedupes_and_trims(self):
        text = "see https://dev.azure.com/org/a. and https://dev.azure.com/org/a, plus http://x.io/b"

        assert extract_urls(text) == ["https://dev.azure.com/org/a", "http://x.io/b"]


class TestChunkText:
    def test_short_text_is_one_chunk(self):
        chunks = chunk_text("Work Item 42\nEstado: Active", source_type="workitem", document_name="WORKITEM-42")

        assert len(chunks) == 1
        assert chunks[0].chunk_index == 0
        assert chunks[0].metadata["documentName"] == "WORKITEM-42"
        assert chunks[0].metadata["sourceType"] == "workitem"
        assert chunks[0].metadata["position"] == 0

    def test_empty_text(self):
        assert chunk_text("  \n ", source_type="document", document_name="x") == []

    def test_long_text_is_split_on_paragraphs(self):
        options = ChunkingOptions(target_size=20, max_size=30, overlap=0)
        paragraphs = "\n\n".join(" ".join(["palavra"] * 25) for _ in range(6))

        pieces = semantic_split(normalize_text(paragraphs), options)

        assert len(pieces) > 1
        assert all(len(p.split()) <= options.max_size for p in pieces)

    def test_metadata_carries_ids_and_extras(self):
        chunks = chunk_text(
            "## Entregas\nVer https://example.com/board",
            source_type="document",
            document_name="relatorio.md",
            document_id="doc-1",
            extra_metadata={"periodKey": "2025-03"},
        )

        metadata = chunks[0].metadata
        assert metadata["documentId"] == "doc-1"
        assert metadata["sectionHeading"] == "Entregas"
        assert metadata["urls"] == ["https://example.com/board"]
        assert metadata["periodKey"] == "2025-03"
