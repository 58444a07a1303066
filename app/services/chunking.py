"""Semantic text chunking for retrieval.

Text is split on progressively finer separators (markdown headings, blank
lines, lines, sentences) only while a segment is above ``max_size`` tokens,
the parts are packed back up towards ``target_size``, and each chunk after
the first is prefixed with the last ``overlap`` words of its predecessor.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from app.services.embedding import estimate_tokens

DEFAULT_SEPARATORS = ("\n## ", "\n### ", "\n\n", "\n", ". ")
TINY_CHUNK_RATIO = 0.35

_URL_PATTERN = re.compile(r"https?://[^\s<>\"')\]]+")
_SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?])\s+")
_HEADING_MARKDOWN = re.compile(r"^#{1,4}\s+")
_HEADING_UPPER = re.compile(r"^[A-Z][A-Z0-9\s_\-]{8,}$")
_CODE_KEYWORDS = re.compile(r"\b(function|class|const|let|var|import|export|def)\b")


@dataclass(frozen=True)
class ChunkingOptions:
    target_size: int = 1000
    max_size: int = 1500
    overlap: int = 120
    separators: Sequence[str] = DEFAULT_SEPARATORS


@dataclass
class TextChunk:
    content: str
    chunk_index: int
    token_count: int
    metadata: Dict[str, Any] = field(default_factory=dict)


def _token_len(text: str) -> int:
    return estimate_tokens(text) if text else 0


def normalize_text(text: str) -> str:
    text = text.replace("\x00", "").replace("\r\n", "\n").replace("\t", " ").replace("\u00a0", " ")
    text = re.sub(r"[ ]{2,}", " ", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def _split_by_separator(content: str, separator: str) -> List[str]:
    if separator not in content:
        return [content]
    if separator.strip() == ".":
        return [p.strip() for p in _SENTENCE_BOUNDARY.split(content) if p.strip()]

    parts = []
    for index, part in enumerate(content.split(separator)):
        # Keep heading markers attached to the section they introduce
        piece = part.strip() if index == 0 else f"{separator.strip()} {part}".strip()
        if piece:
            parts.append(piece)
    return parts


def hard_split(text: str, max_size: int) -> List[str]:
    words = text.split()
    if len(words) <= max_size:
        return [text.strip()]
    return [" ".join(words[i : i + max_size]) for i in range(0, len(words), max_size)]


def _repack_tiny_chunks(chunks: List[str], target_size: int, max_size: int) -> List[str]:
    if len(chunks) <= 1:
        return chunks

    output: List[str] = []
    carry = ""
    for chunk in chunks:
        if not carry:
            carry = chunk
            continue

        combined = f"{carry}\n{chunk}"
        if _token_len(carry) < target_size * TINY_CHUNK_RATIO and _token_len(combined) <= max_size:
            carry = combined
            continue

        output.append(carry)
        carry = chunk
        if _token_len(chunk) >= target_size:
            output.append(carry)
            carry = ""

    if carry:
        output.append(carry)
    return output


def _pack_parts(parts: List[str], target_size: int, max_size: int, separator: str) -> List[str]:
    chunks: List[str] = []
    current = ""
    joiner = " " if separator.strip() == "." else "\n"

    for part in parts:
        candidate = f"{current}{joiner}{part}" if current else part
        if _token_len(candidate) <= max_size:
            current = candidate
            continue

        if current:
            chunks.append(current.strip())

        if _token_len(part) > max_size:
            chunks.extend(hard_split(part, max_size))
            current = ""
        else:
            current = part

    if current.strip():
        chunks.append(current.strip())

    return _repack_tiny_chunks(chunks, target_size, max_size)


def semantic_split(text: str, options: ChunkingOptions) -> List[str]:
    if _token_len(text) <= options.max_size:
        return [text]

    segments = [text]
    for separator in options.separators:
        next_segments: List[str] = []
        for segment in segments:
            if _token_len(segment) <= options.max_size:
                next_segments.append(segment)
                continue
            parts = _split_by_separator(segment, separator)
            if len(parts) <= 1:
                next_segments.append(segment)
                continue
            next_segments.extend(_pack_parts(parts, options.target_size, options.max_size, separator))
        segments = next_segments

    result: List[str] = []
    for segment in segments:
        result.extend(hard_split(segment, options.max_size))
    return result


def _take_last_words(text: str, count: int) -> str:
    words = text.split()
    if len(words) <= count:
        return text
    return " ".join(words[-count:])


def apply_overlap(chunks: List[str], overlap: int) -> List[str]:
    if len(chunks) <= 1 or overlap <= 0:
        return chunks
    output = [chunks[0]]
    for previous, current in zip(chunks, chunks[1:]):
        tail = _take_last_words(previous, overlap)
        output.append(f"{tail}\n{current}" if tail else current)
    return output


def detect_content_type(text: str) -> str:
    has_table = bool(re.search(r"\|.+\|", text)) or "\t" in text
    has_list = bool(re.search(r"^\s*[-*]\s+", text, re.M) or re.search(r"^\s*\d+\.\s+", text, re.M))
    has_code = "```" in text or bool(_CODE_KEYWORDS.search(text))

    hits = sum((has_table, has_list, has_code))
    if hits > 1:
        return "mixed"
    if has_table:
        return "table"
    if has_list:
        return "list"
    if has_code:
        return "code"
    return "text"


def detect_heading(text: str) -> Optional[str]:
    for line in text.split("\n"):
        line = line.strip()
        if _HEADING_MARKDOWN.match(line) or _HEADING_UPPER.match(line):
            return _HEADING_MARKDOWN.sub("", line).strip()
    return None


def extract_urls(text: str) -> List[str]:
    return list(dict.fromkeys(u.rstrip(".,;:") for u in _URL_PATTERN.findall(text)))


def chunk_text(
    text: str,
    source_type: str,
    document_name: str,
    document_id: Optional[str] = None,
    wiki_page_id: Optional[str] = None,
    options: Optional[ChunkingOptions] = None,
    extra_metadata: Optional[Dict[str, Any]] = None,
) -> List[TextChunk]:
    """Split ``text`` into retrievable chunks with display metadata."""
    options = options or ChunkingOptions()
    normalized = normalize_text(text or "")
    if not normalized:
        return []

    pieces = apply_overlap(semantic_split(normalized, options), options.overlap)

    chunks: List[TextChunk] = []
    for index, content in enumerate(pieces):
        metadata: Dict[str, Any] = {
            "documentName": document_name,
            "contentType": detect_content_type(content),
            "position": index,
            "sourceType": source_type,
        }
        if document_id:
            metadata["documentId"] = document_id
        if wiki_page_id:
            metadata["wikiPageId"] = wiki_page_id
        heading = detect_heading(content)
        if heading:
            metadata["sectionHeading"] = heading
        urls = extract_urls(content)
        if urls:
            metadata["urls"] = urls
        if extra_metadata:
            metadata.update(extra_metadata)
        chunks.append(
            TextChunk(content=content, chunk_index=index, token_count=estimate_tokens(content), metadata=metadata)
        )
    return chunks
