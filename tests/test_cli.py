from __future__ import annotations

import json
from pathlib import Path

import pytest

from refsearch.cli import main

ALPHA = "Graph neural networks propagate information along the edges of a graph."
BETA = "Sourdough bread needs a lively starter and a long, cool fermentation."


@pytest.fixture()
def library(tmp_path: Path) -> Path:
    docs = tmp_path / "docs"
    (docs / "nested").mkdir(parents=True)
    (docs / "alpha.txt").write_text(ALPHA, encoding="utf-8")
    (docs / "nested" / "beta.md").write_text(BETA, encoding="utf-8")
    (docs / "ignored.pdf").write_bytes(b"%PDF-1.4")
    return docs


def _run(capsys, data_dir: Path, *args: str):
    code = main(["--data-dir", str(data_dir), "--provider", "hash", *args])
    return code, json.loads(capsys.readouterr().out)


def test_index_search_and_stats(tmp_path, library, capsys):
    data_dir = tmp_path / "data"
    code, payload = _run(capsys, data_dir, "index", str(library))
    assert code == 0
    assert payload["result"]["status"] == "completed"
    assert payload["result"]["indexed"] == 2

    code, payload = _run(capsys, data_dir, "index", str(library))
    assert code == 0
    assert payload["result"]["total"] == 0

    code, matches = _run(capsys, data_dir, "search", str(library), ALPHA, "--top-k", "1")
    assert code == 0
    assert matches[0]["document_id"] == "alpha.txt"
    assert matches[0]["matched_chunks"][0]["text"] == ALPHA

    code, stats = _run(capsys, data_dir, "stats")
    assert stats["index"]["total_documents"] == 2
    assert stats["index"]["cached_items"] == 2


def test_fulltext_searches_cached_text(tmp_path, library, capsys):
    data_dir = tmp_path / "data"
    _run(capsys, data_dir, "index", str(library))
    code, hits = _run(capsys, data_dir, "fulltext", "sourdough")
    assert code == 0
    assert [hit["document_id"] for hit in hits] == ["nested/beta.md"]
    code, hits = _run(capsys, data_dir, "fulltext", "sourdough", "--case-sensitive")
    assert hits == []


def test_usage_and_reset(tmp_path, library, capsys):
    data_dir = tmp_path / "data"
    _run(capsys, data_dir, "index", str(library))
    code, usage = _run(capsys, data_dir, "usage")
    assert usage["total_texts"] == 2
    code, usage = _run(capsys, data_dir, "usage", "--reset", "--cumulative")
    assert usage["total_texts"] == 0


def test_clear_keeps_or_drops_cache(tmp_path, library, capsys):
    data_dir = tmp_path / "data"
    _run(capsys, data_dir, "index", str(library))
    _run(capsys, data_dir, "clear")
    code, stats = _run(capsys, data_dir, "stats")
    assert stats["index"]["total_vectors"] == 0
    assert stats["index"]["cached_items"] == 2
    _run(capsys, data_dir, "clear", "--all")
    code, stats = _run(capsys, data_dir, "stats")
    assert stats["index"]["cached_items"] == 0


def test_similar_documents(tmp_path, library, capsys):
    (library / "copy.txt").write_text(ALPHA, encoding="utf-8")
    data_dir = tmp_path / "data"
    _run(capsys, data_dir, "index", str(library))
    code, matches = _run(capsys, data_dir, "similar", str(library), "alpha.txt")
    assert code == 0
    assert matches[0]["document_id"] == "copy.txt"


def test_index_exits_non_zero_on_error(tmp_path, library, capsys, monkeypatch):
    monkeypatch.setenv("REFSEARCH_EMBEDDING_API_BASE", "")
    code = main(["--data-dir", str(tmp_path / "data"), "--provider", "openai", "index", str(library)])
    payload = json.loads(capsys.readouterr().out)
    assert code == 1
    assert payload["result"]["status"] == "error"
