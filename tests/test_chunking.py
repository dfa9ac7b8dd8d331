from __future__ import annotations

import pytest

from refsearch.chunking import ChunkerConfig, TextChunker, detect_language, estimate_tokens, preprocess_text

ENGLISH = (
    "Retrieval augmented generation combines a search step with a language model. "
    "The search step finds passages related to the question. "
    "Those passages are placed in the prompt so the model can cite them. "
) * 12

CHINESE = "机器学习是人工智能的一个分支，它研究计算机如何从数据中学习规律。" * 20


def test_empty_text_yields_no_chunks():
    chunker = TextChunker()
    assert chunker.chunk("") == []
    assert chunker.chunk("   \n\t  ") == []


def test_short_text_is_single_chunk():
    chunks = TextChunker().chunk("  tiny note  ", document_id="doc")
    assert len(chunks) == 1
    assert chunks[0].text == "tiny note"
    assert chunks[0].chunk_index == 0
    assert chunks[0].document_id == "doc"


def test_long_text_respects_size_bounds():
    config = ChunkerConfig(chunk_size=200, chunk_overlap=30, min_chunk_size=20)
    chunks = TextChunker(config).chunk(ENGLISH, document_id="doc")
    assert len(chunks) > 1
    assert [chunk.chunk_index for chunk in chunks] == list(range(len(chunks)))
    for chunk in chunks:
        assert config.min_chunk_size <= len(chunk.text) <= config.chunk_size
        assert chunk.language == "en"


def test_chunks_prefer_sentence_boundaries():
    config = ChunkerConfig(chunk_size=200, chunk_overlap=0, min_chunk_size=20)
    chunks = TextChunker(config).chunk(ENGLISH)
    assert all(chunk.text.endswith(".") for chunk in chunks)


def test_chunking_is_deterministic():
    chunker = TextChunker()
    first = chunker.chunk(ENGLISH, document_id="a")
    second = chunker.chunk(ENGLISH, document_id="a")
    assert first == second


def test_chinese_text_is_tagged_zh():
    chunks = TextChunker(ChunkerConfig(chunk_size=120, chunk_overlap=10)).chunk(CHINESE)
    assert chunks
    assert {chunk.language for chunk in chunks} == {"zh"}
    assert all(len(chunk.text) <= 120 for chunk in chunks)


def test_language_hint_overrides_detection():
    chunker = TextChunker().with_options(language_hint="zh")
    chunks = chunker.chunk(ENGLISH)
    assert {chunk.language for chunk in chunks} == {"zh"}


def test_detect_language_threshold():
    assert detect_language("这是中文文本") == "zh"
    assert detect_language("plain english words") == "en"
    assert detect_language("") == "en"
    # two ideographs out of ten visible characters stays below 30%
    assert detect_language("abcdefgh中文") == "en"


def test_estimate_tokens():
    assert estimate_tokens("abcd") == 1
    assert estimate_tokens("中文字") == 2
    assert estimate_tokens("") == 0


def test_preprocess_normalises_whitespace():
    assert preprocess_text("a\r\nb\t\tc   d\n\n\n\ne") == "a\nb c d\n\ne"


def test_invalid_config_rejected():
    with pytest.raises(ValueError):
        ChunkerConfig(chunk_size=100, chunk_overlap=100)
    with pytest.raises(ValueError):
        ChunkerConfig(chunk_size=0)
