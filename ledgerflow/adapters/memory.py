"""In-process document store with token-overlap search.

Keeps uploaded document text per owner, split into overlapping chunks.
Implements both DocumentStore and SemanticSearch so a single instance can
back the reconciliation workflow without a vector database.
"""
from __future__ import annotations

import asyncio
import re
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from ledgerflow.adapters.base import SearchHit

CHUNK_SIZE = 1500
CHUNK_OVERLAP = 200

_TOKEN = re.compile(r"[a-z0-9]+(?:\.[0-9]+)?")


def chunk_text(text: str, chunk_size: int = CHUNK_SIZE, overlap: int = CHUNK_OVERLAP) -> List[str]:
    """Split text into overlapping chunks, preferring to break after a sentence."""
    if overlap >= chunk_size:
        raise ValueError("overlap must be smaller than chunk_size")
    text = text.strip()
    chunks: List[str] = []
    start = 0
    while start < len(text):
        end = min(start + chunk_size, len(text))
        if end < len(text):
            sentence_end = text.rfind(". ", start, end)
            if sentence_end != -1 and sentence_end - start > chunk_size * 0.7:
                end = sentence_end + 1
        chunk = text[start:end].strip()
        if chunk:
            chunks.append(chunk)
        if end >= len(text):
            break
        start = end - overlap
    return chunks


def _stitch(left: str, right: str, overlap: int) -> str:
    for size in range(min(len(left), len(right), overlap), 0, -1):
        if left.endswith(right[:size]):
            return left + right[size:]
    return f"{left}\n{right}"


def document_texts(details: Sequence[Any], overlap: int = CHUNK_OVERLAP) -> Dict[str, str]:
    """
    Rebuild full document text from fetched chunk details.

    Chunks are grouped by document_id, put back in index order and joined
    with their overlap removed. Plain strings are treated as whole documents.
    """
    grouped: Dict[str, List[Tuple[int, str]]] = defaultdict(list)
    for position, item in enumerate(details or []):
        if isinstance(item, str):
            grouped[f"document_{position + 1}"].append((0, item))
        elif isinstance(item, Mapping) and item.get("content"):
            document_id = str(item.get("document_id") or "document")
            grouped[document_id].append((int(item.get("index") or 0), str(item["content"])))

    texts: Dict[str, str] = {}
    for document_id, parts in grouped.items():
        parts.sort(key=lambda part: part[0])
        text = parts[0][1]
        for _, content in parts[1:]:
            text = _stitch(text, content, overlap)
        texts[document_id] = text
    return texts


def _tokens(text: str) -> set:
    return {token for token in _TOKEN.findall(text.lower()) if len(token) > 2 or token[0].isdigit()}


@dataclass
class DocumentChunk:
    document_id: str
    index: int
    content: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "document_id": self.document_id,
            "index": self.index,
            "content": self.content,
            "metadata": dict(self.metadata),
        }


class InMemoryDocumentStore:
    def __init__(self, chunk_size: int = CHUNK_SIZE, overlap: int = CHUNK_OVERLAP):
        self.chunk_size = chunk_size
        self.overlap = overlap
        self._chunks: Dict[str, List[DocumentChunk]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def add_document(
        self,
        owner_id: str,
        document_id: str,
        text: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> int:
        chunks = [
            DocumentChunk(document_id=document_id, index=i, content=content, metadata=dict(metadata or {}))
            for i, content in enumerate(chunk_text(text, self.chunk_size, self.overlap))
        ]
        async with self._lock:
            self._chunks[owner_id] = [c for c in self._chunks[owner_id] if c.document_id != document_id]
            self._chunks[owner_id].extend(chunks)
        return len(chunks)

    async def clear(self, owner_id: str) -> None:
        async with self._lock:
            self._chunks.pop(owner_id, None)

    async def fetch_details(self, owner_id: str) -> List[Dict[str, Any]]:
        return [chunk.to_dict() for chunk in self._chunks.get(owner_id, [])]

    async def query(self, text: str, owner_id: str, k: int = 3) -> List[SearchHit]:
        """Rank the owner's chunks by the share of query tokens they contain."""
        wanted = _tokens(text)
        if not wanted or k <= 0:
            return []
        hits = []
        for chunk in self._chunks.get(owner_id, []):
            overlap = len(wanted & _tokens(chunk.content))
            if overlap:
                hits.append(
                    SearchHit(
                        content=chunk.content,
                        similarity_score=round(overlap / len(wanted), 6),
                        metadata={"document_id": chunk.document_id, "index": chunk.index},
                    )
                )
        hits.sort(key=lambda hit: hit.similarity_score, reverse=True)
        return hits[:k]
