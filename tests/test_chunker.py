"""
Tests para rag/ingest/chunker.py — Partición de fuentes de conocimiento.
"""

import math

import pytest

from rag.ingest.chunker import build_chunks, chunk_id, chunk_text


class TestChunkText:
    def test_empty_text_returns_no_chunks(self):
        assert chunk_text("") == []

    def test_short_text_single_chunk(self):
        assert chunk_text("hola", chunk_size=1000) == ["hola"]

    def test_exact_multiple(self):
        chunks = chunk_text("abcdef", chunk_size=3)
        assert chunks == ["abc", "def"]

    def test_last_chunk_can_be_shorter(self):
        chunks = chunk_text("abcdefg", chunk_size=3)
        assert chunks == ["abc", "def", "g"]

    @pytest.mark.parametrize("length,size", [(1, 1), (999, 1000), (1000, 1000), (2500, 1000), (7, 2)])
    def test_chunk_count_is_ceiling(self, length, size):
        text = "x" * length
        assert len(chunk_text(text, size)) == math.ceil(length / size)

    def test_concatenation_reproduces_text(self):
        text = "  Línea uno.\n\nLínea dos con espacios   \t y tabs.  " * 40
        assert "".join(chunk_text(text, chunk_size=37)) == text

    def test_no_chunk_exceeds_size(self):
        chunks = chunk_text("a" * 2345, chunk_size=1000)
        assert all(len(c) <= 1000 for c in chunks)

    @pytest.mark.parametrize("size", [0, -5])
    def test_non_positive_size_rejected(self, size):
        with pytest.raises(ValueError):
            chunk_text("abc", chunk_size=size)


class TestBuildChunks:
    def test_indices_are_consecutive(self):
        chunks = build_chunks("ks-1", "abcdefgh", chunk_size=3)
        assert [c.index for c in chunks] == [0, 1, 2]
        assert all(c.source_id == "ks-1" for c in chunks)

    def test_ids_are_deterministic(self):
        first = build_chunks("ks-1", "abcdefgh", chunk_size=3)
        second = build_chunks("ks-1", "abcdefgh", chunk_size=3)
        assert [c.id for c in first] == [c.id for c in second]
        assert first[1].id == chunk_id("ks-1", 1)

    def test_empty_source_has_no_chunks(self):
        assert build_chunks("ks-1", "") == []
