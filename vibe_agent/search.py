from __future__ import annotations

import asyncio
import logging
import math
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .chunking import DEFAULT_STRIDE_LINES, DEFAULT_WINDOW_LINES, Chunk, chunk_file, tokenize
from .workspace import FileEntry, render_tree


SparseVector = Dict[str, float]


@dataclass(frozen=True)
class SearchResult:
    file_id: str
    file_path: str
    score: float
    snippet: str
    start_line: int
    end_line: int

    def to_dict(self) -> Dict[str, object]:
        return {
            "file_id": self.file_id,
            "file_path": self.file_path,
            "score": self.score,
            "snippet": self.snippet,
            "start_line": self.start_line,
            "end_line": self.end_line,
        }


@dataclass(frozen=True)
class RetrievalIndex:
    """One complete TF-IDF snapshot. Never mutated after construction."""

    chunks: Tuple[Chunk, ...]
    vocabulary: Tuple[str, ...]
    idf: Dict[str, float]
    vectors: Dict[str, SparseVector]
    built_at: float = field(default_factory=time.time)


def _weigh(term_counts: Counter, idf: Dict[str, float]) -> SparseVector:
    distinct = len(term_counts) or 1
    vector: SparseVector = {}
    for term, freq in term_counts.items():
        vector[term] = (freq / distinct) * idf.get(term, 0.0)
    norm = math.sqrt(sum(v * v for v in vector.values()))
    if norm > 0:
        for term in vector:
            vector[term] /= norm
    return vector


def vectorize(text: str, idf: Dict[str, float]) -> SparseVector:
    return _weigh(Counter(tokenize(text)), idf)


def cosine_similarity(a: SparseVector, b: SparseVector) -> float:
    # Both vectors are L2-normalised, so the dot product is the cosine.
    small, large = (a, b) if len(a) < len(b) else (b, a)
    return sum(val * large[term] for term, val in small.items() if term in large)


def build_index(
    files: Iterable[FileEntry],
    *,
    window_lines: int = DEFAULT_WINDOW_LINES,
    stride_lines: int = DEFAULT_STRIDE_LINES,
    max_file_chars: int = 100_000,
) -> Optional[RetrievalIndex]:
    """Chunk every eligible file and compute per-chunk TF-IDF vectors.

    Returns None when the corpus has no chunks.
    """
    chunks: List[Chunk] = []
    for entry in files:
        if not entry.content or len(entry.content) >= max_file_chars:
            continue
        chunks.extend(
            chunk_file(
                file_id=entry.file_id,
                file_path=entry.path,
                content=entry.content,
                window_lines=window_lines,
                stride_lines=stride_lines,
            )
        )
    if not chunks:
        return None

    term_counts: List[Counter] = []
    doc_freq: Counter = Counter()
    for chunk in chunks:
        counts = Counter(tokenize(chunk.content))
        term_counts.append(counts)
        doc_freq.update(counts.keys())

    n_docs = len(chunks)
    idf = {term: math.log((n_docs + 1) / (df + 1)) + 1 for term, df in doc_freq.items()}
    vectors = {chunk.chunk_id: _weigh(counts, idf) for chunk, counts in zip(chunks, term_counts)}
    return RetrievalIndex(
        chunks=tuple(chunks),
        vocabulary=tuple(doc_freq.keys()),
        idf=idf,
        vectors=vectors,
    )


def search_index(
    index: Optional[RetrievalIndex],
    query: str,
    *,
    limit: int = 5,
    min_score: float = 0.05,
) -> List[SearchResult]:
    if index is None or limit <= 0:
        return []
    query_vec = vectorize(query, index.idf)
    if not query_vec:
        return []
    scored = [
        (cosine_similarity(query_vec, index.vectors.get(chunk.chunk_id, {})), chunk)
        for chunk in index.chunks
    ]
    # sorted() is stable: equal scores keep corpus order.
    scored = sorted(scored, key=lambda item: -item[0])
    results: List[SearchResult] = []
    for score, chunk in scored:
        if score < min_score:
            break
        results.append(
            SearchResult(
                file_id=chunk.file_id,
                file_path=chunk.file_path,
                score=score,
                snippet=chunk.content,
                start_line=chunk.start_line,
                end_line=chunk.end_line,
            )
        )
        if len(results) >= limit:
            break
    return results


class SearchEngine:
    """Owns the current index snapshot of one project.

    Rebuilds replace the snapshot in a single assignment, so a search always
    sees one complete index. ``schedule_reindex`` coalesces bursts of edits
    behind a timer.
    """

    def __init__(
        self,
        *,
        window_lines: int = DEFAULT_WINDOW_LINES,
        stride_lines: int = DEFAULT_STRIDE_LINES,
        min_score: float = 0.05,
        max_file_chars: int = 100_000,
        debounce_s: float = 2.0,
    ) -> None:
        self.window_lines = window_lines
        self.stride_lines = stride_lines
        self.min_score = min_score
        self.max_file_chars = max_file_chars
        self.debounce_s = max(0.0, float(debounce_s))
        self._index: Optional[RetrievalIndex] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._rebuild_task: Optional[asyncio.Task] = None
        self._queued_files: Optional[List[FileEntry]] = None
        self.status = "idle"
        self.progress: Tuple[int, int] = (0, 0)
        self.rebuild_count = 0

    @property
    def snapshot(self) -> Optional[RetrievalIndex]:
        return self._index

    def _build(self, files: Sequence[FileEntry]) -> Optional[RetrievalIndex]:
        return build_index(
            files,
            window_lines=self.window_lines,
            stride_lines=self.stride_lines,
            max_file_chars=self.max_file_chars,
        )

    def reindex(self, files: Iterable[FileEntry]) -> int:
        """Synchronous whole-corpus rebuild. Returns the chunk count."""
        snapshot = list(files)
        index = self._build(snapshot)
        self._index = index
        self.rebuild_count += 1
        self.status = "ready"
        self.progress = (len(snapshot), len(snapshot))
        return len(index.chunks) if index else 0

    async def reindex_async(self, files: Iterable[FileEntry]) -> int:
        snapshot = list(files)
        self.status = "indexing"
        self.progress = (0, len(snapshot))
        start = time.time()
        try:
            index = await asyncio.to_thread(self._build, snapshot)
        except Exception:
            logging.warning("Index rebuild failed; keeping previous snapshot.", exc_info=True)
            self.status = "ready" if self._index is not None else "idle"
            raise
        self._index = index
        self.rebuild_count += 1
        self.status = "ready"
        self.progress = (len(snapshot), len(snapshot))
        count = len(index.chunks) if index else 0
        logging.info(
            "Rebuilt retrieval index: %s files, %s chunks in %sms",
            len(snapshot),
            count,
            int((time.time() - start) * 1000),
        )
        return count

    def schedule_reindex(self, files: Iterable[FileEntry]) -> None:
        """Debounced rebuild; the latest file set wins."""
        self._queued_files = list(files)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            queued, self._queued_files = self._queued_files, None
            self.reindex(queued)
            return
        if self._timer is not None:
            self._timer.cancel()
        self._timer = loop.call_later(self.debounce_s, self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        if self._rebuild_task is not None and not self._rebuild_task.done():
            # The running rebuild picks up the queued files when it finishes.
            return
        self._rebuild_task = asyncio.get_running_loop().create_task(self._drain())

    async def _drain(self) -> None:
        while self._queued_files is not None:
            files, self._queued_files = self._queued_files, None
            try:
                await self.reindex_async(files)
            except Exception:
                # Already logged; the next scheduled edit retries.
                return

    async def wait_idle(self) -> None:
        """Wait for any scheduled or running rebuild to finish."""
        while True:
            if self._timer is not None:
                await asyncio.sleep(self.debounce_s)
                continue
            task = self._rebuild_task
            if task is not None and not task.done():
                await asyncio.shield(task)
                continue
            return

    def search(self, query: str, limit: int = 5) -> List[SearchResult]:
        return search_index(self._index, query, limit=limit, min_score=self.min_score)

    def get_context(
        self,
        query: str,
        files: Sequence[FileEntry],
        *,
        active_path: Optional[str] = None,
        top_k: int = 5,
    ) -> str:
        """Project tree plus the most relevant snippets, for chat prompts."""
        context = render_tree(f.path for f in files)
        if self._index is None:
            return context
        results = self.search(query, top_k)
        context += "\n\n"
        if results:
            context += "Potentially relevant code snippets:\n"
            for r in results:
                context += f"---\nFile: {r.file_path} (lines {r.start_line}-{r.end_line})\n{r.snippet}\n"
            context += "---\n\n"
        if active_path:
            active = next((f for f in files if f.path == active_path), None)
            if active is not None and not any(r.file_id == active.file_id for r in results):
                context += f"Currently active file ({active.path}):\n{active.content}\n\n"
        return context

    def close(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._rebuild_task is not None and not self._rebuild_task.done():
            self._rebuild_task.cancel()
