"""
Retriever - Selecciona los chunks relevantes para una consulta.

Heurística léxica deliberadamente barata (no es búsqueda semántica):
1. Query y chunk se pasan a minúsculas
2. La query se tokeniza por espacios
3. Score = cantidad de tokens de la query contenidos en el chunk
4. Se descartan los chunks con score 0 y se ordena de mayor a menor
   (sort estable: los empates conservan el orden original)
"""

import logging
from typing import List, Sequence, Tuple

from agent.domain import KnowledgeChunk

logger = logging.getLogger(__name__)

DEFAULT_TOP_K = 3
DEFAULT_MIN_TOKEN_LENGTH = 3


def tokenize_query(query: str, min_token_length: int = DEFAULT_MIN_TOKEN_LENGTH) -> List[str]:
    """Tokens en minúsculas; los más cortos que min_token_length se ignoran."""
    return [token for token in query.lower().split() if len(token) >= min_token_length]


def score_chunk(tokens: Sequence[str], content: str) -> int:
    content_lower = content.lower()
    return sum(1 for token in tokens if token in content_lower)


class KeywordRetriever:
    """Ranking de chunks por solapamiento de keywords."""

    def __init__(
        self,
        top_k: int = DEFAULT_TOP_K,
        min_token_length: int = DEFAULT_MIN_TOKEN_LENGTH,
    ):
        """
        Args:
            top_k: Máximo de chunks a devolver (default: 3)
            min_token_length: Largo mínimo de un token para contar. Con 1
                se cuenta cualquier token, incluso "a" o "de".
        """
        if top_k < 0:
            raise ValueError(f"top_k no puede ser negativo: {top_k}")
        self.top_k = top_k
        self.min_token_length = max(1, min_token_length)

    def score(
        self, query: str, chunks: Sequence[KnowledgeChunk]
    ) -> List[Tuple[KnowledgeChunk, int]]:
        """Devuelve (chunk, score) para los chunks con score > 0, ya rankeados."""
        tokens = tokenize_query(query, self.min_token_length)
        if not tokens:
            return []

        scored = [(chunk, score_chunk(tokens, chunk.content)) for chunk in chunks]
        scored = [item for item in scored if item[1] > 0]
        # sorted() es estable: a igual score se mantiene el orden de entrada
        return sorted(scored, key=lambda item: item[1], reverse=True)

    def retrieve(
        self,
        query: str,
        chunks: Sequence[KnowledgeChunk],
        source_ids: Sequence[str] = None,
    ) -> List[KnowledgeChunk]:
        """
        Selecciona los top_k chunks más relevantes para la query.

        Args:
            query: Último mensaje del usuario
            chunks: Candidatos (en el orden en que se cargaron)
            source_ids: Si se indica, solo se consideran chunks de esas fuentes

        Returns:
            Lista (posiblemente vacía) de chunks. Vacío significa
            "no hay conocimiento relevante", no es un error.
        """
        if source_ids is not None:
            allowed = set(source_ids)
            chunks = [chunk for chunk in chunks if chunk.source_id in allowed]

        ranked = self.score(query, chunks)
        selected = [chunk for chunk, _ in ranked[: self.top_k]]

        logger.debug(
            f"Retriever: {len(chunks)} candidatos, {len(ranked)} con score > 0, "
            f"{len(selected)} seleccionados"
        )
        return selected
