"""
Tests para rag/query/retriever.py — Ranking de chunks por keywords.
"""

import pytest

from agent.domain import KnowledgeChunk
from rag.query.retriever import KeywordRetriever, score_chunk, tokenize_query


def _chunk(index: int, content: str, source_id: str = "ks-1") -> KnowledgeChunk:
    return KnowledgeChunk(
        id=f"{source_id}:{index}", source_id=source_id, index=index, content=content
    )


@pytest.fixture
def chunks():
    return [
        _chunk(0, "Our office hours are 9 to 5 on weekdays."),
        _chunk(1, "Pricing starts at $99 per month for the basic plan."),
        _chunk(2, "The premium plan pricing includes priority support."),
        _chunk(3, "Parking is free for visitors."),
    ]


class TestTokenize:
    def test_lowercases_and_splits_on_whitespace(self):
        assert tokenize_query("Premium   PLAN\tpricing") == ["premium", "plan", "pricing"]

    def test_short_tokens_ignored_by_default(self):
        assert tokenize_query("is it on the plan") == ["the", "plan"]

    def test_min_length_one_keeps_everything(self):
        assert tokenize_query("a b plan", min_token_length=1) == ["a", "b", "plan"]


class TestScore:
    def test_counts_contained_tokens(self):
        assert score_chunk(["plan", "pricing"], "The premium plan PRICING") == 2

    def test_substring_match(self):
        # "plan" está contenido en "planning"
        assert score_chunk(["plan"], "Event planning services") == 1


class TestKeywordRetriever:
    def test_ranks_by_overlap(self, chunks):
        retriever = KeywordRetriever(top_k=3)
        result = retriever.retrieve("premium plan pricing", chunks)
        assert [c.index for c in result] == [2, 1]

    def test_zero_score_chunks_excluded(self, chunks):
        result = KeywordRetriever().retrieve("parking", chunks)
        assert [c.index for c in result] == [3]

    def test_no_overlap_returns_empty(self, chunks):
        assert KeywordRetriever().retrieve("zebra giraffe", chunks) == []

    def test_top_k_limits_result(self, chunks):
        result = KeywordRetriever(top_k=1).retrieve("plan pricing", chunks)
        assert len(result) == 1

    def test_ties_keep_input_order(self):
        tied = [_chunk(0, "plan A"), _chunk(1, "plan B"), _chunk(2, "plan C")]
        result = KeywordRetriever(top_k=3).retrieve("plan", tied)
        assert [c.index for c in result] == [0, 1, 2]

    def test_deterministic(self, chunks):
        retriever = KeywordRetriever()
        first = retriever.retrieve("plan pricing support", chunks)
        second = retriever.retrieve("plan pricing support", chunks)
        assert [c.id for c in first] == [c.id for c in second]

    def test_adding_matching_token_never_lowers_score(self, chunks):
        retriever = KeywordRetriever(top_k=10)
        base = dict((c.id, s) for c, s in retriever.score("plan", chunks))
        extended = dict((c.id, s) for c, s in retriever.score("plan pricing", chunks))
        for chunk_id, score in base.items():
            assert extended[chunk_id] >= score

    def test_filters_by_source_ids(self, chunks):
        other = _chunk(0, "premium plan pricing everywhere", source_id="ks-2")
        result = KeywordRetriever().retrieve(
            "premium plan pricing", chunks + [other], source_ids=["ks-1"]
        )
        assert all(c.source_id == "ks-1" for c in result)

    def test_empty_query(self, chunks):
        assert KeywordRetriever().retrieve("", chunks) == []

    def test_negative_top_k_rejected(self):
        with pytest.raises(ValueError):
            KeywordRetriever(top_k=-1)

    @pytest.mark.parametrize("position", [0, 2, None])
    def test_zero_match_chunk_never_changes_selection(self, chunks, position):
        """Agregar un chunk sin tokens de la query (al inicio, al medio o al final) no altera el top-K."""
        retriever = KeywordRetriever(top_k=2)
        query = "premium plan pricing"
        noise = _chunk(9, "Completely unrelated text about gardening.")
        assert retriever.score(query, [noise]) == []

        extended = list(chunks)
        if position is None:
            extended.append(noise)
        else:
            extended.insert(position, noise)

        assert retriever.retrieve(query, extended) == retriever.retrieve(query, chunks)
