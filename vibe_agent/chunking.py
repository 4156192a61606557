from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from typing import List


# Natural-language function words plus common code keywords, so that ranking
# leans on identifiers rather than syntax.
STOP_WORDS = frozenset(
    {
        "a", "about", "above", "after", "again", "against", "all", "am", "an", "and", "any", "are", "as", "at",
        "be", "because", "been", "before", "being", "below", "between", "both", "but", "by", "can", "did", "do",
        "does", "doing", "down", "during", "each", "few", "for", "from", "further", "had", "has", "have", "having",
        "he", "her", "here", "hers", "herself", "him", "himself", "his", "how", "i", "if", "in", "into", "is", "it",
        "its", "itself", "just", "me", "more", "most", "my", "myself", "no", "nor", "not", "now", "of", "off", "on",
        "once", "only", "or", "other", "our", "ours", "ourselves", "out", "over", "own", "s", "same", "she", "should",
        "so", "some", "such", "t", "than", "that", "the", "their", "theirs", "them", "themselves", "then", "there",
        "these", "they", "this", "those", "through", "to", "too", "under", "until", "up", "very", "was", "we", "were",
        "what", "when", "where", "which", "while", "who", "whom", "why", "will", "with", "you", "your", "yours",
        "yourself", "yourselves", "return", "const", "let", "var", "function", "import", "export", "div",
        "class", "classname", "interface", "type", "public", "private", "protected", "static", "async", "await",
        "new", "super", "extends", "implements", "switch", "case", "default", "try", "catch",
    }
)

DEFAULT_WINDOW_LINES = 20
DEFAULT_STRIDE_LINES = 15

_SPLIT_RE = re.compile(r"[^a-z0-9_]+")


@dataclass(frozen=True)
class Chunk:
    chunk_id: str
    file_id: str
    file_path: str
    content: str
    start_line: int  # 1-based, inclusive
    end_line: int  # 1-based, inclusive


def make_file_id(path: str) -> str:
    """Stable id for a project-relative path.

    Files created through a patch get the same id before and after commit.
    """
    normalized = normalize_path(path)
    return hashlib.sha1(normalized.encode("utf-8", errors="ignore")).hexdigest()[:16]


def normalize_path(path: str) -> str:
    cleaned = str(path).replace("\\", "/").strip()
    parts = [p for p in cleaned.split("/") if p and p != "."]
    return "/".join(parts)


def tokenize(text: str) -> List[str]:
    if not text:
        return []
    return [
        token
        for token in _SPLIT_RE.split(text.lower())
        if len(token) > 1 and token not in STOP_WORDS
    ]


def chunk_file(
    *,
    file_id: str,
    file_path: str,
    content: str,
    window_lines: int = DEFAULT_WINDOW_LINES,
    stride_lines: int = DEFAULT_STRIDE_LINES,
) -> List[Chunk]:
    """Sliding line windows; consecutive windows overlap by window - stride lines."""

    window_lines = max(1, int(window_lines))
    stride_lines = max(1, min(int(stride_lines), window_lines))

    lines = content.split("\n")
    chunks: List[Chunk] = []
    for start in range(0, len(lines), stride_lines):
        end = min(start + window_lines, len(lines))
        text = "\n".join(lines[start:end])
        if not text.strip():
            continue
        chunks.append(
            Chunk(
                chunk_id=f"{file_id}-{start}",
                file_id=file_id,
                file_path=file_path,
                content=text,
                start_line=start + 1,
                end_line=end,
            )
        )
    return chunks
