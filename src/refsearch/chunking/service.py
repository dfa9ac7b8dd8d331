"""Text chunking for semantic indexing."""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, replace
from functools import lru_cache
from typing import List, Literal, Sequence

from langchain_text_splitters import RecursiveCharacterTextSplitter

from refsearch.metrics.observability import get_logger
from refsearch.models import Chunk, Language

_CJK_PATTERN = re.compile(r"[\u4e00-\u9fff\u3400-\u4dbf]")
_WHITESPACE_PATTERN = re.compile(r"\s")

# Paragraph, line, sentence end, clause punctuation, word, character.
_SEPARATORS: Sequence[str] = (
    r"\n\n",
    r"\n",
    r"(?<=[。！？.!?;；])\s*",
    r"(?<=[，,、])\s*",
    r" ",
    "",
)


@dataclass(frozen=True)
class ChunkerConfig:
    """Configuration for the text chunker (sizes are in characters)."""

    chunk_size: int = 450
    chunk_overlap: int = 50
    min_chunk_size: int = 20
    language_hint: Literal["auto", "zh", "en"] = "auto"

    def __post_init__(self) -> None:
        if self.chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if not 0 <= self.chunk_overlap < self.chunk_size:
            raise ValueError("chunk_overlap must be in [0, chunk_size)")
        if self.min_chunk_size < 0:
            raise ValueError("min_chunk_size must not be negative")


def preprocess_text(text: str) -> str:
    cleaned = text.replace("\r\n", "\n").replace("\t", " ")
    cleaned = re.sub(r" +", " ", cleaned)
    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned)
    return cleaned.strip()


def detect_language(text: str) -> Language:
    """Return ``zh`` when CJK ideographs exceed 30% of non-whitespace characters."""

    total = len(_WHITESPACE_PATTERN.sub("", text))
    if total == 0:
        return "en"
    cjk = len(_CJK_PATTERN.findall(text))
    return "zh" if cjk / total > 0.3 else "en"


def estimate_tokens(text: str) -> int:
    """Rough token count: ~1.5 CJK characters or ~4 other characters per token."""

    cjk = len(_CJK_PATTERN.findall(text))
    other = len(text) - cjk
    return math.ceil(cjk / 1.5 + other / 4)


@lru_cache(maxsize=8)
def _build_splitter(chunk_size: int, chunk_overlap: int) -> RecursiveCharacterTextSplitter:
    return RecursiveCharacterTextSplitter(
        separators=list(_SEPARATORS),
        chunk_size=chunk_size,
        chunk_overlap=chunk_overlap,
        keep_separator="end",
        is_separator_regex=True,
        length_function=len,
        strip_whitespace=True,
    )


class TextChunker:
    """Split document text into overlapping, language-tagged chunks.

    The output is a pure function of the text and the configuration, so chunk
    indices are stable across runs.
    """

    _logger = get_logger("chunking")

    def __init__(self, config: ChunkerConfig | None = None) -> None:
        self._config = config or ChunkerConfig()

    @property
    def config(self) -> ChunkerConfig:
        return self._config

    def split_text(self, text: str, options: ChunkerConfig | None = None) -> List[str]:
        config = options or self._config
        if not text or not text.strip():
            return []
        stripped = text.strip()
        if len(stripped) < config.min_chunk_size:
            return [stripped]
        cleaned = preprocess_text(text)
        splitter = _build_splitter(config.chunk_size, config.chunk_overlap)
        pieces = [piece.strip() for piece in splitter.split_text(cleaned)]
        return [piece for piece in pieces if len(piece) >= config.min_chunk_size]

    def chunk(
        self,
        text: str,
        *,
        document_id: str = "",
        options: ChunkerConfig | None = None,
    ) -> List[Chunk]:
        config = options or self._config
        pieces = self.split_text(text, config)
        chunks = [
            Chunk(
                document_id=document_id,
                chunk_index=index,
                text=piece,
                language=self._language_for(piece, config),
            )
            for index, piece in enumerate(pieces)
        ]
        self._logger.debug(
            "chunking.complete",
            document_id=document_id,
            input_length=len(text or ""),
            chunk_count=len(chunks),
        )
        return chunks

    def with_options(self, **changes: object) -> "TextChunker":
        return TextChunker(replace(self._config, **changes))

    @staticmethod
    def _language_for(text: str, config: ChunkerConfig) -> Language:
        if config.language_hint in ("zh", "en"):
            return config.language_hint
        return detect_language(text)


__all__ = [
    "ChunkerConfig",
    "TextChunker",
    "detect_language",
    "estimate_tokens",
    "preprocess_text",
]
