# =============================================================================
# Guideline Knowledge Base — local search over brand / SEO writing guides
# =============================================================================
#
# Agents call `search_guidelines` before editing a section. Guides are plain
# markdown or text files in KNOWLEDGE_BASE_DIR; each file is split into
# paragraph chunks and ranked with BM25 over the heading plus chunk text.
# =============================================================================

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from rank_bm25 import BM25Okapi

logger = logging.getLogger("knowledge-base")

_TOKEN_RE = re.compile(r"[a-z0-9][a-z0-9'-]*")


def _tokenize(text: str) -> list[str]:
    return _TOKEN_RE.findall(text.lower())


@dataclass
class GuideChunk:
    source: str
    heading: str
    text: str


class KnowledgeBase:
    def __init__(self, directory: Optional[str] = None, max_chunk_chars: int = 1200):
        self.directory = Path(directory) if directory else None
        self.max_chunk_chars = max_chunk_chars
        self.chunks: list[GuideChunk] = []
        self._tokens: list[list[str]] = []
        self._bm25: Optional[BM25Okapi] = None
        if self.directory:
            self.load()

    def load(self) -> int:
        """(Re)read every guide file. Returns the number of chunks indexed."""
        self.chunks = []
        if not self.directory or not self.directory.is_dir():
            logger.warning(f"Knowledge base directory not found: {self.directory}")
            self._reindex()
            return 0
        for path in sorted(self.directory.iterdir()):
            if path.suffix.lower() not in (".md", ".txt"):
                continue
            self.chunks.extend(self._split(path.name, path.read_text(encoding="utf-8")))
        self._reindex()
        logger.info(f"Knowledge base loaded: {len(self.chunks)} chunks from {self.directory}")
        return len(self.chunks)

    def add_document(self, source: str, text: str) -> None:
        self.chunks.extend(self._split(source, text))
        self._reindex()

    def _reindex(self) -> None:
        self._tokens = [_tokenize(f"{chunk.heading} {chunk.text}") for chunk in self.chunks]
        self._bm25 = BM25Okapi(self._tokens) if any(self._tokens) else None

    def _split(self, source: str, text: str) -> list[GuideChunk]:
        chunks = []
        heading = ""
        for block in re.split(r"\n\s*\n", text):
            block = block.strip()
            if not block:
                continue
            if block.startswith("#"):
                first_line, _, rest = block.partition("\n")
                heading = first_line.lstrip("#").strip()
                block = rest.strip()
                if not block:
                    continue
            chunks.append(GuideChunk(source=source, heading=heading, text=block[: self.max_chunk_chars]))
        return chunks

    def search(self, query: str, max_results: int = 4) -> list[GuideChunk]:
        query_terms = _tokenize(query)
        if not query_terms or self._bm25 is None:
            return self.chunks[:max_results]

        wanted = set(query_terms)
        scores = self._bm25.get_scores(query_terms)
        # Only chunks sharing a term with the query; BM25 order, file order on ties
        ranked = sorted(
            (index for index, tokens in enumerate(self._tokens) if wanted.intersection(tokens)),
            key=lambda index: (-scores[index], index),
        )
        return [self.chunks[index] for index in ranked[:max_results]]

    def render(self, query: str, max_results: int = 4) -> str:
        """Search results as a tool output string."""
        if not self.chunks:
            return "No guideline documents are configured. Rely on general semantic SEO and brand voice practice."
        results = self.search(query, max_results)
        if not results:
            return f'No guideline passages matched "{query}". Try broader terms such as "brand voice" or "semantic SEO".'
        parts = []
        for chunk in results:
            title = f"{chunk.source} — {chunk.heading}" if chunk.heading else chunk.source
            parts.append(f"[{title}]\n{chunk.text}")
        return "\n\n---\n\n".join(parts)
