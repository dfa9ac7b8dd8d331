"""Text chunking."""

from .service import ChunkerConfig, TextChunker, detect_language, estimate_tokens, preprocess_text

__all__ = [
    "ChunkerConfig",
    "TextChunker",
    "detect_language",
    "estimate_tokens",
    "preprocess_text",
]
